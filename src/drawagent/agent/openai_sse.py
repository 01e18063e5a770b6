"""OpenAI-compatible chat-completions backend over server-sent events."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Iterable, Iterator

import httpx

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

DEFAULT_BASE_URL = "https://api.openai.com/v1"
REQUEST_TIMEOUT = httpx.Timeout(300.0, connect=10.0)


def _completions_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.endswith("/chat/completions"):
        return base
    return base + "/chat/completions"


def parse_sse_stream(lines: Iterable[str]) -> Iterator[ProviderEvent]:
    """Turn chat-completions SSE lines into provider events.

    Tool-call deltas are accumulated per ``index`` and flushed, in index
    order, when the choice reports a finish_reason or the stream ends.
    """
    pending: dict[int, dict] = {}

    def _flush() -> Iterator[ProviderEvent]:
        for index in sorted(pending):
            call = pending[index]
            yield ToolCallEvent(ToolCall(
                id=call["id"] or f"call_{index}",
                name=call["name"],
                input=parse_tool_arguments(call["arguments"], call["name"]),
            ))
        pending.clear()

    for line in lines:
        line = line.strip()
        if not line.startswith("data:"):
            continue
        data = line[len("data:"):].strip()
        if data == "[DONE]":
            break
        try:
            chunk = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed SSE chunk: %r", data[:200])
            continue
        if "error" in chunk:
            raise ProviderError(f"OpenAI stream error: {chunk['error']}")

        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                yield TextChunk(delta["content"])
            for tc in delta.get("tool_calls") or []:
                index = tc.get("index", 0)
                call = pending.setdefault(index, {"id": "", "name": "", "arguments": ""})
                if tc.get("id"):
                    call["id"] = tc["id"]
                fn = tc.get("function") or {}
                if fn.get("name"):
                    call["name"] = fn["name"]
                if fn.get("arguments"):
                    call["arguments"] += fn["arguments"]
            if choice.get("finish_reason") and pending:
                yield from _flush()

        usage = chunk.get("usage")
        if usage:
            cached = (usage.get("prompt_tokens_details") or {}).get("cached_tokens")
            yield UsageEvent(
                input_tokens=usage.get("prompt_tokens", 0),
                output_tokens=usage.get("completion_tokens", 0),
                cache_read_tokens=cached,
            )

    if pending:
        yield from _flush()


class OpenAIHandler:
    provider_id = "openai"

    def __init__(
        self,
        model_id: str,
        api_key: str,
        base_url: str | None = None,
        max_tokens: int = 8192,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._model_id = model_id
        self._api_key = api_key
        self._url = _completions_url(base_url or DEFAULT_BASE_URL)
        self._max_tokens = max_tokens
        self._http = http_client or httpx.Client(timeout=REQUEST_TIMEOUT)
        self._model = build_model_info("openai", model_id, max_tokens)

    def get_model(self) -> ModelInfo:
        return self._model

    def _build_body(
        self, system_prompt: str, messages: list[StorageMessage], tools: list[ToolSpec],
    ) -> dict:
        wire = [{"role": "system", "content": system_prompt}] if system_prompt else []
        wire += [{"role": role, "content": text} for role, text in render_for_model(messages)]
        body: dict = {
            "model": self._model_id,
            "messages": wire,
            "max_tokens": self._max_tokens,
            "temperature": 0,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            body["tools"] = [
                {"type": "function", "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.input_schema,
                }}
                for t in tools
            ]
        return body

    def stream(
        self,
        system_prompt: str,
        messages: list[StorageMessage],
        tools: list[ToolSpec],
    ) -> Iterator[ProviderEvent]:
        body = self._build_body(system_prompt, messages, tools)
        headers = {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}
        logger.debug("OpenAI stream via %s (%d messages)", self._model_id, len(body["messages"]))
        t0 = time.perf_counter()
        try:
            with self._http.stream("POST", self._url, headers=headers, json=body) as response:
                if response.status_code >= 400:
                    response.read()
                    raise ProviderError(
                        f"OpenAI API error {response.status_code}: {response.text[:500]}"
                    )
                yield from parse_sse_stream(response.iter_lines())
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenAI streaming error: {e}") from e
        logger.debug("OpenAI stream complete (%.2fs)", time.perf_counter() - t0)
