#!/usr/bin/env python3
"""CLI: Analyze a codebase and write a draw.io diagram."""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from pathlib import Path

# Ensure the package is importable when running as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from drawagent import config
from drawagent.agent.loop import AgentLoop, StreamEvent, TaskRequest
from drawagent.agent.prompts import DEFAULT_DIAGRAM_TYPE, DIAGRAM_TYPES
from drawagent.agent.provider import create_provider
from drawagent.config import AgentConfig
from drawagent.storage.sqlite_store import TaskStore


def _print_event(event: StreamEvent, as_json: bool) -> None:
    if as_json:
        print(json.dumps(event.to_dict()), flush=True)
        return
    if event.type == "text":
        print(event.data["text"], end="", flush=True)
    elif event.type == "tool_call":
        print(f"\n[tool] {event.data['name']}", flush=True)
    elif event.type == "tool_result" and event.data.get("is_error"):
        print(f"[tool error] {event.data['content']}", flush=True)
    elif event.type == "artifact_updated":
        print(f"[diagram] {event.data['cell_count']} cells", flush=True)
    elif event.type == "error":
        print(f"\n[error] {event.data['message']}", file=sys.stderr, flush=True)
    elif event.type == "max_turns_exceeded":
        print(f"\n[stopped] {event.data['message']}", file=sys.stderr, flush=True)


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a draw.io diagram of a codebase")
    parser.add_argument("message", help="Task instruction, e.g. 'Diagram the architecture of /path/to/repo'")
    parser.add_argument(
        "--type", dest="diagram_type", default=DEFAULT_DIAGRAM_TYPE, choices=sorted(DIAGRAM_TYPES),
        help=f"Diagram type (default: {DEFAULT_DIAGRAM_TYPE})",
    )
    parser.add_argument("--provider", choices=config.SUPPORTED_PROVIDERS, help="Override AI_PROVIDER")
    parser.add_argument("--model", help="Override AI_MODEL")
    parser.add_argument("--max-turns", type=int, help="Override MAX_TURNS")
    parser.add_argument(
        "--output", "-o", type=Path, default=Path("diagram.drawio"),
        help="Where to write the diagram (default: diagram.drawio)",
    )
    parser.add_argument("--json", action="store_true", help="Print raw events as JSON lines")
    parser.add_argument("--no-store", action="store_true", help="Do not persist the task to SQLite")
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)-5s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    if args.model:
        os.environ["AI_MODEL"] = args.model
    if args.provider:
        os.environ["AI_PROVIDER"] = args.provider

    try:
        cfg = AgentConfig.from_env()
    except (RuntimeError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Set AI_PROVIDER / AI_MODEL (and credentials) in .env or pass --provider/--model.", file=sys.stderr)
        sys.exit(1)
    if args.max_turns:
        cfg = dataclasses.replace(cfg, max_turns=args.max_turns)

    store = None
    if not args.no_store:
        store = TaskStore(config.SQLITE_PATH)
        store.init_db()

    agent = AgentLoop(create_provider(cfg.provider), cfg, store)
    result = agent.run(
        TaskRequest(message=args.message, diagram_type=args.diagram_type),
        on_event=lambda event: _print_event(event, args.json),
    )

    print()
    print(f"Task {result.task_id}: {result.status} after {result.turns} turn(s)")
    if result.artifact:
        args.output.write_text(result.artifact, encoding="utf-8")
        print(f"Diagram written to {args.output}")
    if result.completion:
        print(f"\n{result.completion}")
    if result.status != "completed":
        sys.exit(1)


if __name__ == "__main__":
    main()
