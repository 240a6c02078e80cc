"""Iterative tool-calling conversation between the AI backend and the sandbox."""

import logging
from typing import Any, Callable, Optional

from agentcore.llm.backend import ToolCall, ToolCallingBackend, ToolResponse
from agentcore.llm.retry import RetryPolicy, get_ai_response_with_retry
from agentcore.orchestrator.cancellation import CancellationToken
from agentcore.orchestrator.permission_gate import (
    ActionType,
    PermissionGate,
    PermissionOutcome,
    RequestStatus,
)
from agentcore.sandbox.tools import Sandbox, ToolResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 20

GATED_TOOLS = {
    "edit": ActionType.EDIT,
    "bash": ActionType.COMMAND,
}

ToolObserver = Callable[[str, ToolCall, ToolResult], None]


class ToolCallingLoop:
    """
    Drives a model through sandbox tool calls until it gives a final answer.

    Tool calls run one at a time in the order the model requested them.
    Mutating tools pass the permission gate first; a denied or rejected call
    is reported back to the model as a failed result and the loop continues.
    """

    def __init__(
        self,
        backend: ToolCallingBackend,
        sandbox: Sandbox,
        gate: PermissionGate,
        agent_id: str,
        retry_policy: Optional[RetryPolicy] = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        observer: Optional[ToolObserver] = None,
        on_iteration: Optional[Callable[[int], None]] = None
    ):
        """
        Initialize tool-calling loop.

        Args:
            backend: AI backend supporting send_with_tools
            sandbox: Sandbox bound to the agent's workspace
            gate: Permission gate consulted for mutating tools
            agent_id: Agent the calls are made for
            retry_policy: Retry policy for each backend call
            max_iterations: Backend round-trips allowed before giving up
            observer: Called with (agent_id, call, result) for every tool call
            on_iteration: Called with the iteration number after each round-trip
        """
        self.backend = backend
        self.sandbox = sandbox
        self.gate = gate
        self.agent_id = agent_id
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_iterations = max_iterations
        self.observer = observer
        self.on_iteration = on_iteration

    async def run(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        token: Optional[CancellationToken] = None
    ) -> str:
        """
        Run the loop to completion.

        Args:
            model: Model identifier passed to the backend
            system_prompt: System instructions
            user_prompt: Task request
            token: Cancellation token of the owning task

        Returns:
            Final answer text from the first response without tool calls

        Raises:
            MaxIterationsError: If max_iterations round-trips produce no final answer
            TaskCancelledError: If the token is cancelled
        """
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        tools = self.sandbox.tool_definitions()

        for iteration in range(1, self.max_iterations + 1):
            logger.info(f"Tool calling iteration {iteration} for agent {self.agent_id}")

            response: ToolResponse = await get_ai_response_with_retry(
                lambda: self.backend.send_with_tools(model, messages, tools),
                policy=self.retry_policy,
                token=token,
                label=f"tool call for agent {self.agent_id}"
            )

            if not response.tool_calls:
                return response.content

            messages.append({
                "role": "assistant",
                "content": response.content,
                "tool_calls": [call.model_dump() for call in response.tool_calls],
            })

            for call in response.tool_calls:
                result = await self._execute(call, token)
                self._notify(call, result)
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": result.output if result.success else f"Error: {result.error or 'Unknown error'}",
                })

            if self.on_iteration:
                self.on_iteration(iteration)

        raise MaxIterationsError(f"Max iterations ({self.max_iterations}) reached")

    async def _execute(self, call: ToolCall, token: Optional[CancellationToken]) -> ToolResult:
        if token is not None:
            token.raise_if_cancelled()

        action_type = GATED_TOOLS.get(call.name)
        if action_type is not None:
            denial = await self._authorize(call, action_type, token)
            if denial is not None:
                return denial

        logger.info(f"Executing tool {call.name} for agent {self.agent_id}")
        return await self.sandbox.execute(call.name, call.arguments, token)

    async def _authorize(
        self,
        call: ToolCall,
        action_type: ActionType,
        token: Optional[CancellationToken]
    ) -> Optional[ToolResult]:
        """Return a failure result if the gate refuses the call, None if it may run."""
        if call.name == "bash":
            action = str(call.arguments.get("command", ""))
        else:
            action = str(call.arguments.get("file_path", ""))

        decision = await self.gate.check(self.agent_id, action_type, action, call.arguments)

        if decision.outcome == PermissionOutcome.ALLOW:
            return None
        if decision.outcome == PermissionOutcome.DENY:
            return ToolResult.failure(f"Permission denied: {decision.reason}")

        status = await self.gate.wait_for_decision(decision.request_id, token)
        if status == RequestStatus.APPROVED:
            return None
        return ToolResult.failure(f"Permission {status.value} for {call.name}: {action}")

    def _notify(self, call: ToolCall, result: ToolResult) -> None:
        if not self.observer:
            return
        try:
            self.observer(self.agent_id, call, result)
        except Exception as e:
            logger.error(f"Tool observer failed for {call.name}: {e}", exc_info=True)


class MaxIterationsError(Exception):
    """Raised when the model keeps requesting tools past the iteration cap."""
    pass
