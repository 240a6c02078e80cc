"""Tests for the AI request retry wrapper."""

import asyncio

import pytest

from agentcore.llm.bedrock_client import BedrockInvocationError
from agentcore.llm.retry import RetryPolicy, get_ai_response_with_retry, is_retryable_error
from agentcore.orchestrator.cancellation import CancellationToken, TaskCancelledError


class StatusError(Exception):
    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def failing_call(error: Exception, attempts: list):
    async def call():
        attempts.append(1)
        raise error
    return call


@pytest.mark.parametrize("error", [
    ConnectionResetError(),
    ConnectionRefusedError(),
    asyncio.TimeoutError(),
    BedrockInvocationError("throttled", code="RATE_LIMITED"),
    BedrockInvocationError("boom", code="ECONNRESET"),
    StatusError("busy", 503),
    BedrockInvocationError("bad gateway", status_code=502),
    Exception("Request Timeout while reading"),
    Exception("Rate limit exceeded"),
])
def test_retryable_errors(error):
    assert is_retryable_error(error)


@pytest.mark.parametrize("error", [
    ValueError("invalid model"),
    StatusError("unauthorized", 401),
    BedrockInvocationError("validation", code="ValidationException", status_code=400),
    None,
])
def test_non_retryable_errors(error):
    assert not is_retryable_error(error)


@pytest.mark.asyncio
async def test_rate_limit_exhausts_three_attempts():
    attempts = []
    sleep = RecordingSleep()

    with pytest.raises(Exception, match="rate limit"):
        await get_ai_response_with_retry(
            failing_call(Exception("rate limit"), attempts),
            policy=RetryPolicy(max_retries=3, base_delay=1.0),
            sleep=sleep
        )

    assert len(attempts) == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_non_retryable_fails_on_first_attempt():
    attempts = []
    sleep = RecordingSleep()

    with pytest.raises(ValueError):
        await get_ai_response_with_retry(failing_call(ValueError("bad"), attempts), sleep=sleep)

    assert len(attempts) == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_recovers_after_transient_failure():
    attempts = []

    async def call():
        attempts.append(1)
        if len(attempts) < 2:
            raise ConnectionResetError("reset")
        return "answer"

    result = await get_ai_response_with_retry(call, sleep=RecordingSleep())
    assert result == "answer"
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_cancelled_token_stops_retries():
    attempts = []
    token = CancellationToken()

    async def sleep(delay: float) -> None:
        token.cancel("stopped")

    with pytest.raises(TaskCancelledError):
        await get_ai_response_with_retry(
            failing_call(Exception("timeout"), attempts), token=token, sleep=sleep
        )

    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_token_interrupts_pending_call():
    token = CancellationToken()

    async def call():
        await asyncio.sleep(30)

    asyncio.get_running_loop().call_later(0.05, token.cancel, "paused")
    with pytest.raises(TaskCancelledError, match="paused"):
        await get_ai_response_with_retry(call, token=token)
