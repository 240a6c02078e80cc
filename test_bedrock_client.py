"""Tests for the Bedrock backend using a stand-in bedrock-runtime client."""

import io
import json

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from agentcore.llm.backend import SendOptions
from agentcore.llm.bedrock_client import BedrockClient, BedrockInvocationError
from agentcore.llm.retry import is_retryable_error


class MockRuntimeClient:
    """Records invoke_model calls and replays canned response bodies."""

    def __init__(self, response=None, error=None, stream_events=None):
        self.response = response or {}
        self.error = error
        self.stream_events = stream_events or []
        self.requests = []

    def invoke_model(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        return {"body": io.BytesIO(json.dumps(self.response).encode())}

    def invoke_model_with_response_stream(self, **kwargs):
        self.requests.append(kwargs)
        if self.error:
            raise self.error
        return {"body": iter(self.stream_events)}

    def sent_body(self, index: int = -1) -> dict:
        return json.loads(self.requests[index]["body"])


def text_reply(text: str) -> dict:
    return {
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 12, "output_tokens": 3},
    }


def stream_event(payload: dict) -> dict:
    return {"chunk": {"bytes": json.dumps(payload).encode()}}


@pytest.mark.asyncio
async def test_send_message():
    runtime = MockRuntimeClient(response=text_reply("Hello!"))
    client = BedrockClient(client=runtime)
    progress = []

    response = await client.send_message(
        "model-x",
        [
            {"role": "system", "content": "Be brief."},
            {"role": "system", "content": "[SKILL: Style]\nUse black."},
            {"role": "user", "content": "hi"},
        ],
        SendOptions(max_tokens=100, on_progress=progress.append)
    )

    assert response.content == "Hello!"
    assert response.metadata["usage"]["output_tokens"] == 3
    assert response.metadata["model"] == "model-x"
    assert progress == [50]

    assert runtime.requests[0]["modelId"] == "model-x"
    body = runtime.sent_body()
    assert body["system"] == "Be brief.\n\n[SKILL: Style]\nUse black."
    assert body["messages"] == [{"role": "user", "content": [{"type": "text", "text": "hi"}]}]
    assert body["max_tokens"] == 100
    assert body["temperature"] == 1.0


@pytest.mark.asyncio
async def test_default_model_and_zero_temperature():
    runtime = MockRuntimeClient(response=text_reply("ok"))
    client = BedrockClient(model_id="default-model", client=runtime)

    await client.send_message("", [{"role": "user", "content": "hi"}], SendOptions(temperature=0.0))

    assert runtime.requests[0]["modelId"] == "default-model"
    assert runtime.sent_body()["temperature"] == 0.0


@pytest.mark.asyncio
async def test_send_with_tools():
    runtime = MockRuntimeClient(response={
        "content": [
            {"type": "text", "text": "Let me look."},
            {"type": "tool_use", "id": "toolu_1", "name": "view", "input": {"file_path": "app.py"}},
        ],
        "stop_reason": "tool_use",
    })
    client = BedrockClient(client=runtime)
    tools = [{"name": "view", "description": "View a file", "parameters": {"type": "object"}}]

    response = await client.send_with_tools(
        "model-x",
        [
            {"role": "user", "content": "fix app.py"},
            {
                "role": "assistant",
                "content": "",
                "tool_calls": [{"id": "toolu_0", "name": "ls", "arguments": {}}],
            },
            {"role": "tool", "tool_call_id": "toolu_0", "content": "f app.py"},
            {"role": "user", "content": "go on"},
        ],
        tools
    )

    assert response.content == "Let me look."
    assert [(c.id, c.name, c.arguments) for c in response.tool_calls] == [
        ("toolu_1", "view", {"file_path": "app.py"})
    ]

    body = runtime.sent_body()
    assert body["tools"] == [
        {"name": "view", "description": "View a file", "input_schema": {"type": "object"}}
    ]
    assert body["tool_choice"] == {"type": "auto"}
    # the tool result and the following user text merge into one user turn
    assert [m["role"] for m in body["messages"]] == ["user", "assistant", "user"]
    assert body["messages"][1]["content"] == [
        {"type": "tool_use", "id": "toolu_0", "name": "ls", "input": {}}
    ]
    assert body["messages"][2]["content"] == [
        {"type": "tool_result", "tool_use_id": "toolu_0", "content": "f app.py"},
        {"type": "text", "text": "go on"},
    ]


@pytest.mark.asyncio
async def test_stream_message():
    runtime = MockRuntimeClient(stream_events=[
        stream_event({"type": "message_start"}),
        stream_event({"type": "content_block_delta", "delta": {"text": "Hel"}}),
        {"metadata": {}},
        stream_event({"type": "content_block_delta", "delta": {"text": "lo"}}),
        stream_event({"type": "message_stop"}),
    ])
    client = BedrockClient(client=runtime)

    chunks = [chunk async for chunk in client.stream_message("model-x", [{"role": "user", "content": "hi"}])]

    assert chunks == ["Hel", "lo"]


@pytest.mark.asyncio
async def test_throttling_is_retryable():
    error = ClientError(
        {
            "Error": {"Code": "ThrottlingException", "Message": "Too many requests"},
            "ResponseMetadata": {"HTTPStatusCode": 429},
        },
        "InvokeModel"
    )
    client = BedrockClient(client=MockRuntimeClient(error=error))

    with pytest.raises(BedrockInvocationError) as excinfo:
        await client.send_message("model-x", [{"role": "user", "content": "hi"}])

    assert excinfo.value.code == "RATE_LIMITED"
    assert excinfo.value.status_code == 429
    assert is_retryable_error(excinfo.value)


@pytest.mark.asyncio
async def test_validation_error_is_not_retryable():
    error = ClientError(
        {
            "Error": {"Code": "ValidationException", "Message": "Malformed input request"},
            "ResponseMetadata": {"HTTPStatusCode": 400},
        },
        "InvokeModel"
    )
    client = BedrockClient(client=MockRuntimeClient(error=error))

    with pytest.raises(BedrockInvocationError) as excinfo:
        await client.send_message("model-x", [{"role": "user", "content": "hi"}])

    assert excinfo.value.code == "ValidationException"
    assert not is_retryable_error(excinfo.value)


@pytest.mark.asyncio
async def test_unreachable_endpoint_is_retryable():
    error = EndpointConnectionError(endpoint_url="https://bedrock-runtime.eu-west-1.amazonaws.com")
    client = BedrockClient(client=MockRuntimeClient(error=error))

    with pytest.raises(BedrockInvocationError) as excinfo:
        await client.send_message("model-x", [{"role": "user", "content": "hi"}])

    assert excinfo.value.code == "ECONNREFUSED"
    assert is_retryable_error(excinfo.value)
