"""Gemini backend using google-genai streaming with native function calls."""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

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
)
from drawagent.agent.registry import ToolSpec

logger = logging.getLogger(__name__)


class GeminiHandler:
    provider_id = "gemini"

    def __init__(
        self,
        model_id: str,
        api_key: str | None = None,
        max_tokens: int = 8192,
        client=None,
    ) -> None:
        self._model_id = model_id
        self._max_tokens = max_tokens
        self._client = client or genai.Client(api_key=api_key)
        self._model = build_model_info("gemini", model_id, max_tokens)

    def get_model(self) -> ModelInfo:
        return self._model

    def _build_config(self, system_prompt: str, tools: list[ToolSpec]) -> types.GenerateContentConfig:
        gen_tools = None
        if tools:
            gen_tools = [types.Tool(function_declarations=[
                types.FunctionDeclaration(
                    name=t.name,
                    description=t.description,
                    parameters_json_schema=t.input_schema,
                )
                for t in tools
            ])]
        return types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            tools=gen_tools,
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
            max_output_tokens=self._max_tokens,
            temperature=0,
        )

    def stream(
        self,
        system_prompt: str,
        messages: list[StorageMessage],
        tools: list[ToolSpec],
    ) -> Iterator[ProviderEvent]:
        contents = [
            types.Content(
                role="user" if role == "user" else "model",
                parts=[types.Part.from_text(text=text)],
            )
            for role, text in render_for_model(messages)
        ]
        gen_config = self._build_config(system_prompt, tools)
        logger.debug("Gemini stream via %s (%d messages)", self._model_id, len(contents))
        t0 = time.perf_counter()
        usage = None
        try:
            for chunk in self._client.models.generate_content_stream(
                model=self._model_id, contents=contents, config=gen_config,
            ):
                if chunk.usage_metadata is not None:
                    usage = chunk.usage_metadata
                for candidate in chunk.candidates or []:
                    if candidate.content is None:
                        continue
                    for part in candidate.content.parts or []:
                        if part.function_call is not None:
                            fc = part.function_call
                            yield ToolCallEvent(ToolCall(
                                id=fc.id or f"call_{uuid.uuid4().hex[:12]}",
                                name=fc.name,
                                input=dict(fc.args) if fc.args else {},
                            ))
                        elif part.text:
                            yield TextChunk(part.text)
        except genai_errors.APIError as e:
            raise ProviderError(f"Gemini streaming error: {e}") from e
        if usage is not None:
            yield UsageEvent(
                input_tokens=usage.prompt_token_count or 0,
                output_tokens=usage.candidates_token_count or 0,
                cache_read_tokens=usage.cached_content_token_count,
            )
        logger.debug("Gemini stream complete (%.2fs)", time.perf_counter() - t0)
