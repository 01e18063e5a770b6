"""Shared test helpers: a scripted provider and event/fragment factories."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field

from drawagent.agent.messages import StorageMessage, render_for_model
from drawagent.agent.provider import (
    ModelInfo,
    ProviderError,
    TextChunk,
    ToolCall,
    ToolCallEvent,
    UsageEvent,
)
from drawagent.config import AgentConfig, ProviderSettings

_call_ids = itertools.count(1)


@dataclass
class RecordedCall:
    """What the loop sent to the provider on one turn."""

    system_prompt: str
    messages: list[StorageMessage]
    tool_names: list[str] = field(default_factory=list)

    @property
    def turns(self):
        return render_for_model(self.messages)

    @property
    def last_text(self) -> str:
        return self.messages[-1].text()


class ScriptedProvider:
    """Plays back one scripted list of events per ``stream`` call.

    When the script runs out, ``default`` is replayed (a text-only reply
    unless given). An event list containing an exception instance raises it.
    """

    provider_id = "fake"

    def __init__(self, turns, model: ModelInfo | None = None, default=None) -> None:
        self._turns = list(turns)
        self._model = model or ModelInfo(id="fake-model", context_window=128_000)
        self._default = default if default is not None else [text("Thinking...")]
        self.calls: list[RecordedCall] = []

    def get_model(self) -> ModelInfo:
        return self._model

    def stream(self, system_prompt, messages, tools):
        self.calls.append(RecordedCall(system_prompt, list(messages), [t.name for t in tools]))
        events = self._turns.pop(0) if self._turns else self._default
        for event in events:
            if isinstance(event, Exception):
                raise event
            yield event


class FailingProvider(ScriptedProvider):
    def stream(self, system_prompt, messages, tools):
        self.calls.append(RecordedCall(system_prompt, list(messages), [t.name for t in tools]))
        raise ProviderError("connection reset by peer")
        yield  # pragma: no cover


def text(value: str) -> TextChunk:
    return TextChunk(value)


def tool(name: str, call_id: str | None = None, **args) -> ToolCallEvent:
    return ToolCallEvent(ToolCall(id=call_id or f"call-{next(_call_ids)}", name=name, input=args))


def usage(tokens_in: int = 100, tokens_out: int = 20, **cache) -> UsageEvent:
    return UsageEvent(input_tokens=tokens_in, output_tokens=tokens_out, **cache)


def agent_config(**overrides) -> AgentConfig:
    settings = ProviderSettings(provider="openai", model_id="fake-model", api_key="test-key")
    return AgentConfig(provider=settings, **overrides)


# ── Diagram fragments ──


def vertex(cid: str, label: str = "Box", parent: str = "1") -> str:
    return (
        f'<mxCell id="{cid}" value="{label}" style="rounded=1;" vertex="1" parent="{parent}">'
        '<mxGeometry x="40" y="40" width="120" height="60" as="geometry"/></mxCell>'
    )


def edge(cid: str, source: str, target: str, parent: str = "1") -> str:
    return (
        f'<mxCell id="{cid}" style="endArrow=classic;" edge="1" parent="{parent}" '
        f'source="{source}" target="{target}"><mxGeometry relative="1" as="geometry"/></mxCell>'
    )


def fragment(*cells: str) -> str:
    return "\n".join(cells)
