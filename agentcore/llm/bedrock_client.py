"""AWS Bedrock backend for Anthropic Claude models."""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from pydantic import BaseModel

from agentcore.llm.backend import AIResponse, SendOptions, ToolCall, ToolResponse

logger = logging.getLogger(__name__)

THROTTLING_CODES = {"ThrottlingException", "TooManyRequestsException"}


class BedrockConfig(BaseModel):
    """Bedrock configuration."""
    profile: Optional[str] = None
    region: str = "eu-west-1"
    model_id: str = "eu.anthropic.claude-sonnet-4-5-20250929-v1:0"
    max_tokens: int = 8000
    temperature: float = 1.0
    # Note: Claude Sonnet 4.5 doesn't support both temperature and top_p
    # Only use temperature


class BedrockClient:
    """
    AI backend that talks to Claude on AWS Bedrock.

    Implements send_message, send_with_tools and stream_message. boto3 calls
    block, so each one runs in a worker thread to keep the event loop free.
    Retries are left to the orchestration layer; the boto3 client itself
    makes a single attempt.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        model_id: Optional[str] = None,
        client: Any = None
    ):
        """
        Initialize Bedrock client.

        Args:
            profile: AWS profile name (default: environment credentials)
            region: AWS region (default: "eu-west-1")
            model_id: Default model ID when an agent does not name one
            client: Pre-built bedrock-runtime client (skips session setup)
        """
        self.config = BedrockConfig(
            profile=profile,
            region=region or "eu-west-1",
            model_id=model_id or "eu.anthropic.claude-sonnet-4-5-20250929-v1:0"
        )

        if client is not None:
            self.client = client
        else:
            session = boto3.Session(
                profile_name=self.config.profile,
                region_name=self.config.region
            )
            retry_config = Config(
                region_name=self.config.region,
                retries={
                    'max_attempts': 1,
                    'mode': 'standard'
                }
            )
            self.client = session.client(
                service_name='bedrock-runtime',
                config=retry_config
            )

        logger.info(
            f"Initialized Bedrock client: profile={self.config.profile}, "
            f"region={self.config.region}, model={self.config.model_id}"
        )

    async def send_message(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: Optional[SendOptions] = None
    ) -> AIResponse:
        """
        Send an ordered conversation and return the assistant's text.

        Args:
            model: Bedrock model ID (falls back to the configured default)
            messages: Ordered conversation (system/user/assistant/tool dicts)
            options: Token and temperature overrides

        Returns:
            AIResponse with content and usage metadata

        Raises:
            BedrockInvocationError: If the API call fails
        """
        body = self._build_request(messages, options)
        response_body = await self._invoke(model, body)
        content, _ = self._parse_content(response_body)

        if options and options.on_progress:
            options.on_progress(50)

        return AIResponse(content=content, metadata=self._metadata(response_body, model))

    async def send_with_tools(
        self,
        model: str,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        options: Optional[SendOptions] = None
    ) -> ToolResponse:
        """
        Send a conversation with tool definitions attached.

        Args:
            model: Bedrock model ID
            messages: Conversation including previous tool calls and results
            tools: Tool definitions ({name, description, parameters})
            options: Token and temperature overrides

        Returns:
            ToolResponse with text and any requested tool calls
        """
        body = self._build_request(messages, options)
        body["tools"] = [
            {
                "name": tool["name"],
                "description": tool["description"],
                "input_schema": tool["parameters"],
            }
            for tool in tools
        ]
        body["tool_choice"] = {"type": "auto"}

        response_body = await self._invoke(model, body)
        content, tool_calls = self._parse_content(response_body)
        return ToolResponse(
            content=content,
            tool_calls=tool_calls,
            metadata=self._metadata(response_body, model)
        )

    async def stream_message(
        self,
        model: str,
        messages: list[dict[str, Any]],
        options: Optional[SendOptions] = None
    ) -> AsyncIterator[str]:
        """Yield text deltas of the assistant reply as they arrive."""
        body = self._build_request(messages, options)
        model_id = model or self.config.model_id

        try:
            response = await asyncio.to_thread(
                self.client.invoke_model_with_response_stream,
                modelId=model_id,
                body=json.dumps(body),
                contentType='application/json',
                accept='application/json'
            )
            events = iter(response['body'])
            while True:
                event = await asyncio.to_thread(next, events, None)
                if event is None:
                    break
                chunk = event.get('chunk')
                if not chunk:
                    continue
                payload = json.loads(chunk['bytes'])
                if payload.get('type') == 'content_block_delta':
                    text = payload.get('delta', {}).get('text')
                    if text:
                        yield text
        except (BotoCoreError, ClientError) as e:
            raise self._wrap_error(e) from e

    def _build_request(
        self,
        messages: list[dict[str, Any]],
        options: Optional[SendOptions]
    ) -> dict[str, Any]:
        system_parts = [m["content"] for m in messages if m["role"] == "system"]
        request_body: dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "messages": self._convert_messages(messages),
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature
        }
        if options and options.max_tokens is not None:
            request_body["max_tokens"] = options.max_tokens
        if options and options.temperature is not None:
            request_body["temperature"] = options.temperature
        if system_parts:
            request_body["system"] = "\n\n".join(system_parts)
        return request_body

    @staticmethod
    def _convert_messages(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """
        Convert neutral conversation dicts into Anthropic message blocks.

        System messages are lifted out separately. Tool results become user
        turns, and consecutive turns of the same role are merged.
        """
        converted: list[dict[str, Any]] = []

        for message in messages:
            role = message["role"]
            if role == "system":
                continue

            if role == "tool":
                role = "user"
                blocks = [{
                    "type": "tool_result",
                    "tool_use_id": message["tool_call_id"],
                    "content": message["content"],
                }]
            else:
                blocks = []
                if message.get("content"):
                    blocks.append({"type": "text", "text": message["content"]})
                for call in message.get("tool_calls") or []:
                    blocks.append({
                        "type": "tool_use",
                        "id": call["id"],
                        "name": call["name"],
                        "input": call.get("arguments", {}),
                    })

            if not blocks:
                continue
            if converted and converted[-1]["role"] == role:
                converted[-1]["content"].extend(blocks)
            else:
                converted.append({"role": role, "content": blocks})

        return converted

    async def _invoke(self, model: str, request_body: dict[str, Any]) -> dict[str, Any]:
        model_id = model or self.config.model_id
        logger.debug(
            f"Invoking model: {model_id} "
            f"(messages={len(request_body['messages'])}, max_tokens={request_body['max_tokens']})"
        )

        try:
            response = await asyncio.to_thread(
                self.client.invoke_model,
                modelId=model_id,
                body=json.dumps(request_body),
                contentType='application/json',
                accept='application/json'
            )
            response_body = json.loads(response['body'].read())
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Bedrock invocation failed: {e}")
            raise self._wrap_error(e) from e

        logger.info(
            f"Model invocation successful: "
            f"stop_reason={response_body.get('stop_reason')}, "
            f"input_tokens={response_body.get('usage', {}).get('input_tokens')}, "
            f"output_tokens={response_body.get('usage', {}).get('output_tokens')}"
        )
        return response_body

    @staticmethod
    def _parse_content(response_body: dict[str, Any]) -> tuple[str, list[ToolCall]]:
        content = ""
        tool_calls = []
        for block in response_body.get("content") or []:
            if block.get("type") == "text":
                content += block.get("text", "")
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    id=block["id"],
                    name=block["name"],
                    arguments=block.get("input") or {}
                ))
        return content, tool_calls

    def _metadata(self, response_body: dict[str, Any], model: str) -> dict[str, Any]:
        return {
            "stop_reason": response_body.get("stop_reason", ""),
            "usage": response_body.get("usage", {}),
            "model": response_body.get("model", model or self.config.model_id),
        }

    @staticmethod
    def _wrap_error(error: Exception) -> "BedrockInvocationError":
        """Attach code and HTTP status so the retry layer can classify the failure."""
        code = None
        status_code = None

        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code")
            status_code = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            if code in THROTTLING_CODES:
                code = "RATE_LIMITED"
        elif isinstance(error, (ReadTimeoutError, ConnectTimeoutError)):
            code = "ETIMEDOUT"
        elif isinstance(error, EndpointConnectionError):
            code = "ECONNREFUSED"

        return BedrockInvocationError(
            f"Failed to invoke model: {error}",
            code=code,
            status_code=status_code
        )


class BedrockInvocationError(Exception):
    """Raised when Bedrock API invocation fails."""

    def __init__(self, message: str, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status_code = status_code
