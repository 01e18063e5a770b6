"""Tool registry, the per-task tool catalog, and the built-in tool set."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from drawagent.tools.code_definitions import list_code_definition_names
from drawagent.tools.completion import attempt_completion, summarize_task
from drawagent.tools.diagram import DiagramDocument, DiagramResult
from drawagent.tools.listing import DEFAULT_MAX_DEPTH, list_directories, list_files_recursive
from drawagent.tools.read_file import read_file
from drawagent.tools.search_files import search_files

logger = logging.getLogger(__name__)

MAX_RESULT_CHARS = 100_000


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ToolSpec:
    """Provider-independent tool descriptor."""

    name: str
    description: str
    input_schema: dict


@dataclass
class ToolResult:
    """Text handed back to the model, plus anything the loop acts on.

    ``path`` is set for full file reads. ``data`` carries a DiagramResult,
    CompletionSignal or SummarySignal for the mutating tools.
    """

    content: str
    is_error: bool = False
    data: Any = None
    path: str | None = None


@dataclass(frozen=True)
class CompletionSignal:
    result: str
    command: str | None = None


@dataclass(frozen=True)
class SummarySignal:
    context: str


# ---------------------------------------------------------------------------
# Tool Registry
# ---------------------------------------------------------------------------


@dataclass
class ToolDef:
    """Definition of a tool callable by the agent loop."""

    fn: Callable[..., str | ToolResult]
    schema: dict
    description: str
    read_only: bool = False


class ToolRegistry:
    """Registry of named tools."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolDef] = {}

    def register(
        self, name: str, fn: Callable[..., str | ToolResult], schema: dict,
        description: str, read_only: bool = False,
    ) -> None:
        self._tools[name] = ToolDef(fn=fn, schema=schema, description=description, read_only=read_only)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolDef | None:
        return self._tools.get(name)

    def specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(name=name, description=d.description, input_schema=d.schema)
            for name, d in self._tools.items()
        ]

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())


def _run_tool(name: str, tool_def: ToolDef, args: dict) -> ToolResult:
    """Execute one tool. Never raises: faults come back as error results."""
    properties = tool_def.schema.get("properties", {})
    for param in tool_def.schema.get("required", []):
        if args.get(param) in (None, ""):
            return ToolResult(
                content=f"Error: Missing required parameter '{param}' for tool '{name}'.",
                is_error=True,
            )
    unknown = [k for k in args if k not in properties]
    if unknown:
        logger.debug("  dropping unknown args for %s: %s", name, unknown)
    call_args = {k: v for k, v in args.items() if k in properties}

    logger.debug("  tool exec: %s(%s)", name, call_args)
    t0 = time.perf_counter()
    try:
        raw = tool_def.fn(**call_args)
    except Exception as e:
        logger.error("  tool error: %s: %s", name, e)
        return ToolResult(content=f"Error executing {name}: {e}", is_error=True)

    result = raw if isinstance(raw, ToolResult) else ToolResult(
        content=raw, is_error=raw.startswith("Error")
    )
    if len(result.content) > MAX_RESULT_CHARS:
        logger.debug("  truncating result from %d to %d chars", len(result.content), MAX_RESULT_CHARS)
        result.content = result.content[:MAX_RESULT_CHARS] + "\n... (truncated)"

    elapsed = time.perf_counter() - t0
    logger.debug("  tool done: %s -> %d chars (%.3fs)", name, len(result.content), elapsed)
    return result


class ToolCatalog:
    """Base tool set plus an extension overlay.

    The base registry is never modified; tools that only become available
    mid-task (summarize_task) go into the overlay. Lookups and ``specs``
    see the union, base tools first.
    """

    def __init__(self, base: ToolRegistry) -> None:
        self._base = base
        self._extension = ToolRegistry()

    def extend(
        self, name: str, fn: Callable[..., str | ToolResult], schema: dict,
        description: str, read_only: bool = False,
    ) -> bool:
        """Add an overlay tool. Returns False if it was already available."""
        if name in self._base or name in self._extension:
            return False
        self._extension.register(name, fn, schema, description, read_only)
        logger.info("Tool catalog extended with %s", name)
        return True

    def _lookup(self, name: str) -> ToolDef | None:
        return self._extension.get(name) or self._base.get(name)

    def has(self, name: str) -> bool:
        return self._lookup(name) is not None

    def is_read_only(self, name: str) -> bool:
        tool_def = self._lookup(name)
        return bool(tool_def and tool_def.read_only)

    def specs(self) -> list[ToolSpec]:
        return self._base.specs() + self._extension.specs()

    @property
    def tool_names(self) -> list[str]:
        return self._base.tool_names + self._extension.tool_names

    def execute(self, name: str, args: dict) -> ToolResult:
        tool_def = self._lookup(name)
        if tool_def is None:
            return ToolResult(
                content=f"Error: Unknown tool: {name}. Available tools: {', '.join(self.tool_names)}",
                is_error=True,
            )
        return _run_tool(name, tool_def, args or {})


# ---------------------------------------------------------------------------
# Built-in tools
# ---------------------------------------------------------------------------


def _path_schema(description: str, extra: dict | None = None, required: list[str] | None = None) -> dict:
    properties = {"path": {"type": "string", "description": description}}
    properties.update(extra or {})
    return {"type": "object", "properties": properties, "required": required or ["path"]}


def _as_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    return int(value)


def _format_display_result(result: DiagramResult) -> ToolResult:
    if not result.success:
        return ToolResult(content=result.error or "display_diagram failed", is_error=True, data=result)
    ids = ", ".join(result.cell_ids[:50])
    if len(result.cell_ids) > 50:
        ids += ", ..."
    return ToolResult(
        content=(
            f"Diagram generated and displayed successfully ({result.cell_count} cells; ids: {ids}). "
            "You should now call attempt_completion to finish the task."
        ),
        data=result,
    )


def _format_append_result(result: DiagramResult) -> ToolResult:
    if not result.success:
        return ToolResult(content=result.error or "append_diagram failed", is_error=True, data=result)
    text = (
        f"Successfully appended {result.appended_count} component(s) to the diagram "
        f"(now {result.cell_count} cells)."
    )
    if result.errors:
        text += f"\nNote: {len(result.errors)} cell(s) were rejected:\n" + "\n".join(
            f"- {e}" for e in result.errors
        )
    text += "\nYou can continue appending more if needed, or call attempt_completion to finish."
    return ToolResult(content=text, data=result)


SUMMARIZE_TASK_SCHEMA = {
    "type": "object",
    "properties": {
        "context": {
            "type": "string",
            "description": (
                "Detailed summary of the conversation so far, following the numbered "
                "sections requested (request, findings, files, components, diagram progress, "
                "problems, next steps, required files)."
            ),
        },
    },
    "required": ["context"],
}

SUMMARIZE_TASK_DESCRIPTION = (
    "Summarize the task so far when the context window is nearly full. The conversation "
    "history is replaced by this summary, so include everything needed to continue."
)


def summarize_task_tool(context: str) -> ToolResult:
    return ToolResult(content=summarize_task(context), data=SummarySignal(context=context))


def build_tool_registry(document: DiagramDocument) -> ToolRegistry:
    """Build the base tool set bound to one task's diagram document."""
    registry = ToolRegistry()

    registry.register(
        "list_directories",
        fn=list_directories,
        schema=_path_schema("Absolute path of the directory to list."),
        description="List the files and directories directly inside a directory (non-recursive).",
        read_only=True,
    )

    def _list_files_recursive(path: str, max_depth: int | None = None) -> str:
        depth = _as_int(max_depth)
        return list_files_recursive(path, DEFAULT_MAX_DEPTH if depth is None else depth)

    registry.register(
        "list_files_recursive",
        fn=_list_files_recursive,
        schema=_path_schema(
            "Absolute path of the directory to list.",
            extra={"max_depth": {
                "type": "integer",
                "description": f"Maximum depth to descend (default {DEFAULT_MAX_DEPTH}).",
            }},
        ),
        description=(
            "Show the directory tree under a path, recursively. Stops after 200 entries; "
            "use it first to understand the project structure."
        ),
        read_only=True,
    )

    def _read_file(path: str, start_line: int | None = None, end_line: int | None = None) -> ToolResult:
        start, end = _as_int(start_line), _as_int(end_line)
        content = read_file(path, start, end)
        is_error = content.startswith("Error")
        full_read = start is None and end is None and not is_error
        return ToolResult(content=content, is_error=is_error, path=path if full_read else None)

    registry.register(
        "read_file",
        fn=_read_file,
        schema=_path_schema(
            "Absolute path of the file to read.",
            extra={
                "start_line": {"type": "integer", "description": "First line to read (1-based, inclusive). Optional."},
                "end_line": {"type": "integer", "description": "Last line to read (1-based, inclusive). Optional."},
            },
        ),
        description=(
            "Read a file with line numbers. Supports source and text files plus PDF, DOCX, "
            "XLSX and Jupyter notebooks. Files over 20MB are rejected."
        ),
        read_only=True,
    )

    registry.register(
        "list_code_definition_names",
        fn=list_code_definition_names,
        schema=_path_schema("Absolute path of the source file to scan."),
        description=(
            "List function, class, interface, type and exported const names declared in a "
            "source file, without reading the full content."
        ),
        read_only=True,
    )

    registry.register(
        "search_files",
        fn=search_files,
        schema=_path_schema(
            "Absolute path of the directory to search in.",
            extra={
                "pattern": {"type": "string", "description": "Regular expression to search for (case-insensitive)."},
                "file_pattern": {"type": "string", "description": "Glob filter for files, e.g. '**/*.py'. Default '**/*'."},
            },
            required=["path", "pattern"],
        ),
        description=(
            "Regex search across files in a directory. Scans at most 50 files and returns up to "
            "10 matching lines per file."
        ),
        read_only=True,
    )

    def _display_diagram(xml: str) -> ToolResult:
        return _format_display_result(document.initialize(xml))

    registry.register(
        "display_diagram",
        fn=_display_diagram,
        schema={
            "type": "object",
            "properties": {
                "xml": {
                    "type": "string",
                    "description": (
                        "mxCell elements only (no mxfile, mxGraphModel or root tags). "
                        "Start ids from 2 and use parent=\"1\" for top-level shapes."
                    ),
                },
            },
            "required": ["xml"],
        },
        description=(
            "Create the diagram from mxCell elements. Replaces any existing diagram. For large "
            "diagrams send a first part here and add the rest with append_diagram."
        ),
    )

    def _append_diagram(xml: str) -> ToolResult:
        return _format_append_result(document.append(xml))

    registry.register(
        "append_diagram",
        fn=_append_diagram,
        schema={
            "type": "object",
            "properties": {
                "xml": {
                    "type": "string",
                    "description": "mxCell elements to add (8-12 per call). Ids must not already exist.",
                },
            },
            "required": ["xml"],
        },
        description="Add mxCell elements to the diagram created by display_diagram.",
    )

    def _attempt_completion(result: str, command: str | None = None) -> ToolResult:
        return ToolResult(
            content=attempt_completion(result, command),
            data=CompletionSignal(result=result, command=command),
        )

    registry.register(
        "attempt_completion",
        fn=_attempt_completion,
        schema={
            "type": "object",
            "properties": {
                "result": {"type": "string", "description": "Final description of the generated diagram."},
                "command": {"type": "string", "description": "Optional CLI command to showcase the result."},
            },
            "required": ["result"],
        },
        description=(
            "Finish the task once the diagram is generated. This is the only way to end the task."
        ),
    )

    return registry
