"""Application configuration."""

from typing import Optional

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict

from agentcore.llm.retry import RetryPolicy
from agentcore.orchestrator.permission_gate import PermissionMode


class Settings(BaseSettings):
    """Application settings."""

    # Redis
    redis_url: str = "redis://localhost:6379"
    persistence: str = "memory"  # memory or redis

    # AWS Bedrock
    aws_profile: Optional[str] = None
    aws_region: str = "eu-west-1"
    bedrock_model_id: str = "eu.anthropic.claude-sonnet-4-5-20250929-v1:0"

    # Retry
    max_retries: int = 3  # total attempts
    retry_base_delay: float = 1.0  # seconds

    # Tasks and tools
    task_timeout: float = 1800  # seconds
    tool_timeout: float = 120  # seconds
    max_tool_iterations: int = 20

    # Reaper
    inactive_threshold_hours: float = 24
    reaper_interval: float = 3600  # seconds

    # Permissions
    allow_bypass_mode: bool = False
    default_permission_mode: PermissionMode = PermissionMode.ASK

    # Paths
    worktrees_dir: str = ".codex/worktrees"
    skills_dir: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    debug: bool = False  # forces DEBUG logging

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False
    )


class OrchestratorConfig(BaseModel):
    """Knobs the agent registry runs with."""
    task_timeout: float = 1800  # seconds
    tool_timeout: float = 120  # seconds
    max_tool_iterations: int = 20
    retry_policy: RetryPolicy = RetryPolicy()
    inactive_threshold_hours: float = 24
    reaper_interval: float = 3600  # seconds
    allow_bypass_mode: bool = False
    default_permission_mode: PermissionMode = PermissionMode.ASK

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrchestratorConfig":
        return cls(
            task_timeout=settings.task_timeout,
            tool_timeout=settings.tool_timeout,
            max_tool_iterations=settings.max_tool_iterations,
            retry_policy=RetryPolicy(
                max_retries=settings.max_retries,
                base_delay=settings.retry_base_delay
            ),
            inactive_threshold_hours=settings.inactive_threshold_hours,
            reaper_interval=settings.reaper_interval,
            allow_bypass_mode=settings.allow_bypass_mode,
            default_permission_mode=settings.default_permission_mode
        )


# Global settings instance
settings = Settings()
