"""FastAPI application for the agent orchestration core."""

import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from agentcore.app.config import OrchestratorConfig, Settings, settings
from agentcore.app.models.agent import Agent, AgentCreate, AgentMessage
from agentcore.app.models.change import CodeChange
from agentcore.app.models.task import AgentTask
from agentcore.git.worktree_manager import WorktreeManager
from agentcore.llm.bedrock_client import BedrockClient
from agentcore.orchestrator.cancellation import TaskCancelledError
from agentcore.orchestrator.permission_gate import (
    BypassNotAllowedError,
    PermissionMode,
    PermissionRequest,
)
from agentcore.orchestrator.registry import (
    AgentRegistry,
    TaskNotFoundError,
    WorkspaceAllocationError,
)
from agentcore.orchestrator.task_engine import AgentBusyError
from agentcore.skills.skill_provider import DirectorySkillProvider
from agentcore.storage.base import InMemoryAgentStore
from agentcore.storage.redis_store import RedisAgentStore

# Configure logging
logging.basicConfig(
    level="DEBUG" if settings.debug else settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

EVENT_QUEUE_SIZE = 1000


class MessageRequest(BaseModel):
    text: str


class TaskRequest(BaseModel):
    description: str
    timeout: Optional[float] = None  # seconds


class PermissionModeRequest(BaseModel):
    mode: PermissionMode


class PermissionModeInfo(BaseModel):
    mode: PermissionMode
    description: str
    available: bool


class ResolutionResponse(BaseModel):
    resolved: bool


def build_registry(config: Settings) -> AgentRegistry:
    """Assemble a registry with Bedrock, git worktrees and the configured store."""
    if config.persistence == "redis":
        store = RedisAgentStore.from_url(config.redis_url)
    else:
        store = InMemoryAgentStore()

    skills = DirectorySkillProvider(Path(config.skills_dir)) if config.skills_dir else None
    bedrock = BedrockClient(
        profile=config.aws_profile,
        region=config.aws_region,
        model_id=config.bedrock_model_id
    )

    return AgentRegistry(
        OrchestratorConfig.from_settings(config),
        backends={"bedrock": bedrock},
        workspaces=WorktreeManager(worktrees_subdir=config.worktrees_dir),
        store=store,
        skills=skills
    )


def get_registry(request: Request) -> AgentRegistry:
    return request.app.state.registry


def create_app(registry: Optional[AgentRegistry] = None) -> FastAPI:
    """
    Create the API application.

    Args:
        registry: Registry to serve (default: built from settings at startup)

    Returns:
        Configured FastAPI app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup/shutdown."""
        # Startup
        logger.info("Starting agentcore API")
        owned = app.state.registry is None
        if owned:
            app.state.registry = build_registry(settings)
            await app.state.registry.initialize()
            app.state.registry.start()
            logger.info("Agent registry initialized")

        yield

        # Shutdown
        logger.info("Shutting down agentcore API")
        if owned:
            await app.state.registry.close()
            if isinstance(app.state.registry.store, RedisAgentStore):
                await app.state.registry.store.close()

    app = FastAPI(
        title="Agentcore API",
        description="Agent task orchestration and code mutation service",
        version="0.1.0",
        lifespan=lifespan
    )
    app.state.registry = registry

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)
    _register_routes(app)
    return app


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(LookupError)
    async def not_found(request: Request, exc: LookupError):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(AgentBusyError)
    async def busy(request: Request, exc: AgentBusyError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(TaskCancelledError)
    async def interrupted(request: Request, exc: TaskCancelledError):
        return JSONResponse(status_code=409, content={"detail": f"Interrupted: {exc}"})

    @app.exception_handler(BypassNotAllowedError)
    async def bypass_not_allowed(request: Request, exc: BypassNotAllowedError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.exception_handler(WorkspaceAllocationError)
    async def workspace_failed(request: Request, exc: WorkspaceAllocationError):
        logger.error(f"Workspace allocation failed: {exc}")
        return JSONResponse(status_code=500, content={"detail": str(exc)})


def _register_routes(app: FastAPI) -> None:

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "Agentcore API",
            "version": "0.1.0",
            "status": "running"
        }

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.post("/agents", response_model=Agent, status_code=201)
    async def create_agent(body: AgentCreate, registry: AgentRegistry = Depends(get_registry)):
        return await registry.create_agent(body)

    @app.get("/agents", response_model=list[Agent])
    async def list_agents(registry: AgentRegistry = Depends(get_registry)):
        return registry.list_agents()

    @app.get("/agents/{agent_id}", response_model=Agent)
    async def get_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)):
        return registry.require_agent(agent_id)

    @app.delete("/agents/{agent_id}", status_code=204)
    async def delete_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)):
        await registry.delete_agent(agent_id)

    @app.post("/agents/{agent_id}/messages", response_model=AgentMessage)
    async def send_message(
        agent_id: str,
        body: MessageRequest,
        registry: AgentRegistry = Depends(get_registry)
    ):
        return await registry.send_message(agent_id, body.text)

    @app.post("/agents/{agent_id}/tasks", response_model=AgentTask, status_code=202)
    async def execute_task(
        agent_id: str,
        body: TaskRequest,
        registry: AgentRegistry = Depends(get_registry)
    ):
        return await registry.execute_task(agent_id, body.description, timeout=body.timeout)

    @app.get("/tasks/{task_id}", response_model=AgentTask)
    async def get_task(task_id: str, registry: AgentRegistry = Depends(get_registry)):
        task = registry.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        return task

    @app.post("/agents/{agent_id}/pause", response_model=Agent)
    async def pause_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)):
        await registry.pause_agent(agent_id)
        return registry.require_agent(agent_id)

    @app.post("/agents/{agent_id}/resume", response_model=Agent)
    async def resume_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)):
        await registry.resume_agent(agent_id)
        return registry.require_agent(agent_id)

    @app.post("/agents/{agent_id}/stop", response_model=Agent)
    async def stop_agent(agent_id: str, registry: AgentRegistry = Depends(get_registry)):
        await registry.stop_agent(agent_id)
        return registry.require_agent(agent_id)

    @app.put("/agents/{agent_id}/permission-mode", response_model=Agent)
    async def set_permission_mode(
        agent_id: str,
        body: PermissionModeRequest,
        registry: AgentRegistry = Depends(get_registry)
    ):
        await registry.set_permission_mode(agent_id, body.mode)
        return registry.require_agent(agent_id)

    @app.get("/agents/{agent_id}/changes", response_model=list[CodeChange])
    async def get_code_changes(agent_id: str, registry: AgentRegistry = Depends(get_registry)):
        return await registry.get_code_changes(agent_id)

    @app.get("/permission-modes", response_model=list[PermissionModeInfo])
    async def list_permission_modes(registry: AgentRegistry = Depends(get_registry)):
        return registry.gate.describe_modes()

    @app.get("/permissions", response_model=list[PermissionRequest])
    async def get_pending_requests(
        agent_id: Optional[str] = None,
        registry: AgentRegistry = Depends(get_registry)
    ):
        return registry.get_pending_requests(agent_id)

    @app.post("/permissions/{request_id}/approve", response_model=ResolutionResponse)
    async def approve_request(request_id: str, registry: AgentRegistry = Depends(get_registry)):
        return ResolutionResponse(resolved=registry.approve_request(request_id))

    @app.post("/permissions/{request_id}/reject", response_model=ResolutionResponse)
    async def reject_request(request_id: str, registry: AgentRegistry = Depends(get_registry)):
        return ResolutionResponse(resolved=registry.reject_request(request_id))

    @app.post("/changes/{change_id}/approve", response_model=ResolutionResponse)
    async def approve_change(change_id: str, registry: AgentRegistry = Depends(get_registry)):
        return ResolutionResponse(resolved=await registry.approve_change(change_id))

    @app.post("/changes/{change_id}/reject", response_model=ResolutionResponse)
    async def reject_change(change_id: str, registry: AgentRegistry = Depends(get_registry)):
        return ResolutionResponse(resolved=await registry.reject_change(change_id))

    @app.websocket("/ws/events")
    async def stream_events(websocket: WebSocket):
        """Forward every lifecycle event as JSON, in emission order."""
        events = websocket.app.state.registry.events
        queue = events.subscribe_queue(maxsize=EVENT_QUEUE_SIZE)

        async def forward() -> None:
            while True:
                event = await queue.get()
                await websocket.send_json(event.model_dump(mode="json"))

        sender = None
        try:
            await websocket.accept()
            sender = asyncio.create_task(forward())
            # Incoming frames are ignored; receiving surfaces the disconnect
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Event stream client disconnected")
        finally:
            if sender is not None:
                sender.cancel()
            events.unsubscribe_queue(queue)


# Create FastAPI app
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
