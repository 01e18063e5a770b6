"""AWS Bedrock backend using the Converse streaming API."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from drawagent.agent.messages import StorageMessage, render_for_model
from drawagent.agent.provider import (
    ModelInfo,
    ProviderError,
    ProviderEvent,
    TextChunk,
    ToolCall,
    ToolCallEvent,
    UsageEvent,
    build_model_info,
    parse_tool_arguments,
)
from drawagent.agent.registry import ToolSpec

logger = logging.getLogger(__name__)

_STREAM_ERRORS = (
    "internalServerException",
    "modelStreamErrorException",
    "validationException",
    "throttlingException",
    "serviceUnavailableException",
)


class BedrockHandler:
    provider_id = "bedrock"

    def __init__(
        self,
        model_id: str,
        region: str = "us-east-1",
        max_tokens: int = 8192,
        client=None,
    ) -> None:
        self._model_id = model_id
        self._max_tokens = max_tokens
        self._client = client or boto3.client("bedrock-runtime", region_name=region)
        self._model = build_model_info("bedrock", model_id, max_tokens)

    def get_model(self) -> ModelInfo:
        return self._model

    def _build_request(
        self, system_prompt: str, messages: list[StorageMessage], tools: list[ToolSpec],
    ) -> dict:
        request: dict = {
            "modelId": self._model_id,
            "messages": [
                {"role": role, "content": [{"text": text}]}
                for role, text in render_for_model(messages)
            ],
            "inferenceConfig": {"maxTokens": self._max_tokens, "temperature": 0},
        }
        if system_prompt:
            request["system"] = [{"text": system_prompt}]
        if tools:
            request["toolConfig"] = {
                "tools": [
                    {"toolSpec": {
                        "name": t.name,
                        "description": t.description,
                        "inputSchema": {"json": t.input_schema},
                    }}
                    for t in tools
                ]
            }
        return request

    def stream(
        self,
        system_prompt: str,
        messages: list[StorageMessage],
        tools: list[ToolSpec],
    ) -> Iterator[ProviderEvent]:
        request = self._build_request(system_prompt, messages, tools)
        logger.debug("Bedrock converse_stream via %s (%d messages)", self._model_id, len(request["messages"]))
        t0 = time.perf_counter()
        try:
            response = self._client.converse_stream(**request)
            yield from self._parse_stream(response["stream"])
        except (BotoCoreError, ClientError) as e:
            raise ProviderError(f"Bedrock streaming error: {e}") from e
        logger.debug("Bedrock stream complete (%.2fs)", time.perf_counter() - t0)

    def _parse_stream(self, events) -> Iterator[ProviderEvent]:
        current: dict | None = None
        for event in events:
            if "contentBlockStart" in event:
                tool_use = event["contentBlockStart"].get("start", {}).get("toolUse")
                if tool_use:
                    current = {"id": tool_use["toolUseId"], "name": tool_use["name"], "input": ""}
            elif "contentBlockDelta" in event:
                delta = event["contentBlockDelta"].get("delta", {})
                if "text" in delta:
                    yield TextChunk(delta["text"])
                elif "toolUse" in delta and current is not None:
                    current["input"] += delta["toolUse"].get("input", "")
            elif "contentBlockStop" in event:
                if current is not None:
                    yield ToolCallEvent(ToolCall(
                        id=current["id"],
                        name=current["name"],
                        input=parse_tool_arguments(current["input"], current["name"]),
                    ))
                    current = None
            elif "metadata" in event:
                usage = event["metadata"].get("usage", {})
                yield UsageEvent(
                    input_tokens=usage.get("inputTokens", 0),
                    output_tokens=usage.get("outputTokens", 0),
                    cache_write_tokens=usage.get("cacheWriteInputTokens"),
                    cache_read_tokens=usage.get("cacheReadInputTokens"),
                )
            else:
                for key in _STREAM_ERRORS:
                    if key in event:
                        message = event[key].get("message", key)
                        raise ProviderError(f"Bedrock stream error ({key}): {message}")
