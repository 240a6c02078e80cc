"""Permission gate for mutating sandbox actions."""

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from agentcore.app.models.task import utc_now
from agentcore.orchestrator.cancellation import CancellationToken, TaskCancelledError
from agentcore.orchestrator.events import EventBus, EventType

logger = logging.getLogger(__name__)


class PermissionMode(str, Enum):
    """Per-agent policy for mutating actions."""
    ASK = "ask"  # every mutating action needs approval
    AUTO_ACCEPT_EDITS = "auto_accept_edits"  # edits allowed, commands need approval
    PLAN = "plan"  # analysis only, mutating actions denied
    BYPASS = "bypass"  # skip the gate; requires the process-wide switch


MODE_DESCRIPTIONS = {
    PermissionMode.ASK: "Ask before editing files or running commands",
    PermissionMode.AUTO_ACCEPT_EDITS: "Auto-accept file edits, ask for commands",
    PermissionMode.PLAN: "Analyze only, no changes or commands",
    PermissionMode.BYPASS: "Run without any permission prompts (dangerous)",
}


class ActionType(str, Enum):
    EDIT = "edit"
    COMMAND = "command"


class PermissionOutcome(str, Enum):
    ALLOW = "allow"
    DENY = "deny"
    PENDING = "pending"


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"  # the waiting task was cancelled first


class PermissionRequest(BaseModel):
    """A gated action waiting for an external decision."""
    id: str
    agent_id: str
    action_type: ActionType
    action: str
    details: dict[str, Any] = {}
    status: RequestStatus = RequestStatus.PENDING
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None


class PermissionDecision(BaseModel):
    """Result of consulting the gate."""
    outcome: PermissionOutcome
    request_id: Optional[str] = None
    reason: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == PermissionOutcome.ALLOW


class PermissionGate:
    """
    Decides whether an agent's mutating action may proceed.

    Decisions are returned, never raised. A pending decision carries a request
    id; the action stays blocked until approve_request or reject_request
    resolves it. Each request resolves exactly once.
    """

    def __init__(
        self,
        events: Optional[EventBus] = None,
        allow_bypass_mode: bool = False,
        default_mode: PermissionMode = PermissionMode.ASK
    ):
        """
        Initialize permission gate.

        Args:
            events: Event bus for request and mode notifications
            allow_bypass_mode: Process-wide switch permitting BYPASS agents
            default_mode: Mode for agents without an explicit one
        """
        if default_mode == PermissionMode.BYPASS:
            raise BypassNotAllowedError("Bypass cannot be the default permission mode")

        self.events = events or EventBus()
        self.allow_bypass_mode = allow_bypass_mode
        self.default_mode = default_mode

        self._agent_modes: dict[str, PermissionMode] = {}
        self._requests: dict[str, PermissionRequest] = {}
        self._signals: dict[str, asyncio.Event] = {}

    def set_allow_bypass_mode(self, allowed: bool) -> None:
        self.allow_bypass_mode = allowed
        logger.warning(f"Bypass permission mode {'enabled' if allowed else 'disabled'} by operator")

    def set_agent_mode(self, agent_id: str, mode: PermissionMode) -> None:
        """
        Set an agent's permission mode.

        Raises:
            BypassNotAllowedError: If mode is BYPASS and the switch is off
        """
        self.validate_mode(mode)
        self._agent_modes[agent_id] = mode
        self.events.emit(EventType.PERMISSION_MODE_CHANGED, agent_id, mode=mode)
        logger.info(f"Permission mode set to {mode.value} for agent {agent_id}")

    def validate_mode(self, mode: PermissionMode) -> None:
        if mode == PermissionMode.BYPASS and not self.allow_bypass_mode:
            raise BypassNotAllowedError(
                "Bypass permission mode is not enabled. Enable it in settings first."
            )

    def get_agent_mode(self, agent_id: str) -> PermissionMode:
        return self._agent_modes.get(agent_id, self.default_mode)

    async def check(
        self,
        agent_id: str,
        action_type: ActionType,
        action: str,
        details: Optional[dict[str, Any]] = None
    ) -> PermissionDecision:
        """
        Consult the gate before a mutating action.

        Args:
            agent_id: Agent requesting the action
            action_type: edit or command
            action: Short descriptor (e.g. the command line or file path)
            details: Structured arguments of the action

        Returns:
            PermissionDecision with allow, deny or pending (plus request id)
        """
        mode = self.get_agent_mode(agent_id)

        if mode == PermissionMode.BYPASS:
            if self.allow_bypass_mode:
                return PermissionDecision(outcome=PermissionOutcome.ALLOW, reason="bypass")
            logger.warning(
                f"Agent {agent_id} is in bypass mode but bypass is disabled; asking instead"
            )
            mode = PermissionMode.ASK

        if mode == PermissionMode.PLAN:
            return PermissionDecision(
                outcome=PermissionOutcome.DENY,
                reason="Agent is in plan mode; no changes or commands allowed"
            )

        if mode == PermissionMode.AUTO_ACCEPT_EDITS and action_type == ActionType.EDIT:
            return PermissionDecision(outcome=PermissionOutcome.ALLOW, reason="auto-accepted edit")

        request = self._create_request(agent_id, action_type, action, details or {})
        return PermissionDecision(outcome=PermissionOutcome.PENDING, request_id=request.id)

    def _create_request(
        self,
        agent_id: str,
        action_type: ActionType,
        action: str,
        details: dict[str, Any]
    ) -> PermissionRequest:
        request = PermissionRequest(
            id=str(uuid.uuid4()),
            agent_id=agent_id,
            action_type=action_type,
            action=action,
            details=details
        )
        self._requests[request.id] = request
        self._signals[request.id] = asyncio.Event()

        self.events.emit(EventType.PERMISSION_REQUESTED, agent_id, request=request)
        logger.info(f"Permission requested for agent {agent_id}: {action_type.value} - {action}")
        return request

    def approve_request(self, request_id: str) -> bool:
        """Approve a pending request. Returns False (no-op) if unknown or already resolved."""
        return self._resolve(request_id, RequestStatus.APPROVED)

    def reject_request(self, request_id: str) -> bool:
        """Reject a pending request. Returns False (no-op) if unknown or already resolved."""
        return self._resolve(request_id, RequestStatus.REJECTED)

    def _resolve(self, request_id: str, status: RequestStatus) -> bool:
        request = self._requests.get(request_id)
        if request is None:
            logger.debug(f"Ignoring resolution of unknown permission request {request_id}")
            return False
        if request.status != RequestStatus.PENDING:
            logger.debug(f"Permission request {request_id} already {request.status.value}")
            return False

        request.status = status
        request.resolved_at = utc_now()
        self._signals[request_id].set()

        self.events.emit(EventType.PERMISSION_RESOLVED, request.agent_id, request=request)
        logger.info(f"Permission request {request_id} {status.value}")
        return True

    async def wait_for_decision(
        self,
        request_id: str,
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None
    ) -> RequestStatus:
        """
        Block until a request is resolved.

        Args:
            request_id: Pending request id
            token: Cancellation token of the waiting task
            timeout: Seconds to wait before giving up (None waits indefinitely)

        Returns:
            Final status; PENDING only if timeout elapsed first

        Raises:
            KeyError: If the request id is unknown
            TaskCancelledError: If the token is cancelled while waiting; the
                request is then resolved as expired
        """
        request = self._requests[request_id]
        signal = self._signals[request_id]

        try:
            if token is not None:
                token.raise_if_cancelled()
                await token.run(asyncio.wait_for(signal.wait(), timeout=timeout))
            else:
                await asyncio.wait_for(signal.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Permission request {request_id} not resolved within {timeout}s")
        except (TaskCancelledError, asyncio.CancelledError):
            self._resolve(request_id, RequestStatus.EXPIRED)
            raise

        return request.status

    def get_request(self, request_id: str) -> Optional[PermissionRequest]:
        return self._requests.get(request_id)

    def get_pending_requests(self, agent_id: Optional[str] = None) -> list[PermissionRequest]:
        requests = [r for r in self._requests.values() if r.status == RequestStatus.PENDING]
        if agent_id:
            requests = [r for r in requests if r.agent_id == agent_id]
        return requests

    def clear_resolved_requests(self, before: Optional[datetime] = None) -> int:
        """
        Drop resolved requests and their signals.

        Args:
            before: Only drop requests resolved earlier than this (default: all)

        Returns:
            Number of requests dropped
        """
        stale = [
            rid for rid, r in self._requests.items()
            if r.status != RequestStatus.PENDING
            and (before is None or (r.resolved_at is not None and r.resolved_at < before))
        ]
        for request_id in stale:
            del self._requests[request_id]
            self._signals.pop(request_id, None)
        if stale:
            logger.debug(f"Dropped {len(stale)} resolved permission requests")
        return len(stale)

    def describe_modes(self) -> list[dict[str, Any]]:
        """Every permission mode with its description and whether it can be selected."""
        return [
            {
                "mode": mode,
                "description": MODE_DESCRIPTIONS[mode],
                "available": mode != PermissionMode.BYPASS or self.allow_bypass_mode,
            }
            for mode in PermissionMode
        ]

    def forget_agent(self, agent_id: str) -> None:
        """Drop an agent's mode and reject its outstanding requests."""
        for request in self.get_pending_requests(agent_id):
            self.reject_request(request.id)
        for request_id in [rid for rid, r in self._requests.items() if r.agent_id == agent_id]:
            del self._requests[request_id]
            self._signals.pop(request_id, None)
        self._agent_modes.pop(agent_id, None)


class BypassNotAllowedError(Exception):
    """Raised when bypass mode is requested without the operator switch."""
    pass
