"""LLM provider interface: stream events, model info, and the factory."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, Union

from drawagent.agent.messages import StorageMessage

if TYPE_CHECKING:
    from drawagent.agent.registry import ToolSpec
    from drawagent.config import ProviderSettings

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """Transport or protocol failure while streaming from a provider."""


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True)
class TextChunk:
    text: str


@dataclass(frozen=True)
class ToolCallEvent:
    call: ToolCall


@dataclass(frozen=True)
class UsageEvent:
    input_tokens: int
    output_tokens: int
    cache_write_tokens: int | None = None
    cache_read_tokens: int | None = None


ProviderEvent = Union[TextChunk, ToolCallEvent, UsageEvent]


@dataclass(frozen=True)
class ModelInfo:
    id: str
    context_window: int
    max_tokens: int = 8192
    supports_prompt_cache: bool = False


class ProviderHandler(Protocol):
    """A streaming chat backend with native tool calling."""

    provider_id: str

    def stream(
        self,
        system_prompt: str,
        messages: list[StorageMessage],
        tools: list[ToolSpec],
    ) -> Iterator[ProviderEvent]:
        """Yield text, tool-call and usage events for one model response."""
        ...

    def get_model(self) -> ModelInfo:
        ...


# ---------------------------------------------------------------------------
# Helpers shared by the backends
# ---------------------------------------------------------------------------


def parse_tool_arguments(raw: str, tool_name: str = "") -> dict:
    """Parse accumulated argument fragments; malformed input yields {}."""
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Could not parse arguments for tool %s (%s); using empty input", tool_name, e)
        return {}
    if not isinstance(parsed, dict):
        logger.warning("Arguments for tool %s are not an object; using empty input", tool_name)
        return {}
    return parsed


def infer_context_window(provider: str, model_id: str) -> int:
    model = model_id.lower()
    if provider == "bedrock":
        return 200_000 if "claude" in model else 128_000
    if provider == "gemini":
        return 1_048_576
    if "gpt-4-turbo" in model or "gpt-4o" in model or "gpt-4.1" in model:
        return 128_000
    if "gpt-4" in model:
        return 8_192
    if "gpt-3.5-turbo-16k" in model:
        return 16_385
    if "gpt-3.5" in model:
        return 4_096
    return 128_000


def build_model_info(provider: str, model_id: str, max_tokens: int) -> ModelInfo:
    return ModelInfo(
        id=model_id,
        context_window=infer_context_window(provider, model_id),
        max_tokens=max_tokens,
        supports_prompt_cache=provider in ("bedrock", "gemini"),
    )


def create_provider(settings: ProviderSettings) -> ProviderHandler:
    """Build the handler for ``settings.provider``."""
    if settings.provider == "bedrock":
        from drawagent.agent.bedrock import BedrockHandler

        return BedrockHandler(
            model_id=settings.model_id, region=settings.region, max_tokens=settings.max_tokens,
        )
    if settings.provider == "openai":
        from drawagent.agent.openai_sse import OpenAIHandler

        return OpenAIHandler(
            model_id=settings.model_id, api_key=settings.api_key,
            base_url=settings.base_url or None, max_tokens=settings.max_tokens,
        )
    if settings.provider == "gemini":
        from drawagent.agent.gemini import GeminiHandler

        return GeminiHandler(
            model_id=settings.model_id, api_key=settings.api_key, max_tokens=settings.max_tokens,
        )
    raise ValueError(f"Unknown provider: {settings.provider!r}")
