"""attempt_completion and summarize_task tools."""

from __future__ import annotations

from drawagent.agent.prompts import continuation_prompt


def attempt_completion(result: str, command: str | None = None) -> str:
    if not result:
        raise ValueError("Missing required parameter: result")
    text = f"[attempt_completion] Result:\n{result}"
    if command:
        text += f"\n\nDemo command: {command}"
    return text


def summarize_task(context: str) -> str:
    if not context:
        raise ValueError("Missing required parameter: context")
    return continuation_prompt(context)
