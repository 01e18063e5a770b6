"""Prompt text: system prompt, diagram types, and loop-injected messages."""

from __future__ import annotations

import re

DIAGRAM_TYPES: dict[str, dict[str, str]] = {
    "system-architecture": {
        "name": "System Architecture",
        "description": (
            "Create a System Architecture diagram showing overall system components, their "
            "relationships, and how they interact. Include frontend, backend, databases, "
            "external services, and system boundaries."
        ),
    },
    "component-structure": {
        "name": "Component Structure",
        "description": (
            "Create a Component/Module Structure diagram showing the directory structure, main "
            "files/modules, and their dependencies. Focus on code organization and module "
            "relationships."
        ),
    },
    "data-flow": {
        "name": "Data Flow",
        "description": (
            "Create a Data Flow Diagram showing how data moves through the system, from user "
            "requests through processing to storage and responses. Include all data "
            "transformations."
        ),
    },
    "microservices": {
        "name": "Microservices",
        "description": (
            "Create a Microservices Architecture diagram showing individual services, their "
            "communication patterns, message queues, service discovery, and inter-service "
            "dependencies."
        ),
    },
    "class-diagram": {
        "name": "Class Diagram",
        "description": (
            "Create a Class/Interface Diagram showing OOP structure with classes, interfaces, "
            "inheritance relationships, and method signatures. Focus on the object-oriented design."
        ),
    },
    "api-architecture": {
        "name": "API Architecture",
        "description": (
            "Create an API Architecture diagram showing all REST/GraphQL endpoints, route "
            "structure, middleware layers, authentication flow, and request/response patterns."
        ),
    },
    "database-er": {
        "name": "Database ER",
        "description": (
            "Create a Database ER Diagram showing entity relationships, tables, columns, foreign "
            "keys, and data model structure based on ORM models or schema definitions."
        ),
    },
}

DEFAULT_DIAGRAM_TYPE = "system-architecture"

SYSTEM_PROMPT_TEMPLATE = """\
You are Draw.io Agent, a highly skilled software engineer with extensive knowledge of many \
programming languages, frameworks and design patterns. Your specialty is analyzing codebases \
and turning what you find into clear, professional Draw.io diagrams.

====

TOOL USE

You work only through tools, and every response MUST include at least one tool call.
Current working directory: {cwd}
Always pass absolute paths. You cannot cd into another directory.

Read-only tools (list_directories, list_files_recursive, read_file, \
list_code_definition_names, search_files) run in parallel when called together in one \
response. Plan ahead and batch them instead of calling one, waiting, and calling the next.

====

WORKFLOW

1. Explore: start with list_files_recursive, then list_code_definition_names and read_file \
on the key files (aim for 5-8 files).
2. Generate: call display_diagram with the {diagram_type} diagram.
   Focus: {diagram_description}
3. Extend (optional): add more cells with append_diagram, 8-12 cells per call.
4. Finish: call attempt_completion. The task does NOT end without attempt_completion.

====

DRAW.IO XML REFERENCE

The system wraps your cells in <mxfile>, <mxGraphModel> and <root> and adds the root cells \
id="0" and id="1". Send ONLY mxCell elements.

Rules (XML that breaks them is rejected):
1. Every mxCell is a direct child of root; never nest an mxCell inside another.
2. Every mxCell has a unique id. Start from id="2"; ids "0" and "1" are reserved.
3. Every mxCell has a parent that exists: parent="1" for top-level shapes, or the id of a \
container cell.
4. Edge source and target must reference existing cell ids.
5. Escape special characters in values: &lt; &gt; &amp; &quot;

Shape:
<mxCell id="2" value="API Server" style="rounded=1;whiteSpace=wrap;html=1;" vertex="1" parent="1">
  <mxGeometry x="100" y="100" width="120" height="60" as="geometry"/>
</mxCell>

Edge:
<mxCell id="3" style="endArrow=classic;html=1;" edge="1" parent="1" source="2" target="4">
  <mxGeometry relative="1" as="geometry"/>
</mxCell>

Common styles: rounded=1, fillColor=#hex, strokeColor=#hex, endArrow=classic/block/open/none, \
edgeStyle=orthogonalEdgeStyle, fontSize=14, fontStyle=1.

====

RULES

- Your first response must call a tool (list_files_recursive is recommended).
- Be thorough but efficient; do not read every file.
- After display_diagram succeeds, call attempt_completion. Never end with a question or an \
offer of further help.
"""

NO_TOOLS_USED = (
    "[ERROR] You did not use a tool in your previous response! Please retry with a tool use.\n\n"
    "If you have completed the analysis and generated the diagram, use the attempt_completion tool.\n"
    "If you need to generate the diagram, use the display_diagram tool.\n"
    "Otherwise, continue with the next step of the analysis.\n\n"
    "(This is an automated message, so do not respond to it conversationally.)"
)

SUMMARIZE_TASK_PROMPT = """\
[CONTEXT WINDOW LIMIT] The conversation is approaching the model's context window limit.

If the diagram is already generated, call attempt_completion now.

Otherwise you MUST call the summarize_task tool with a detailed summary of the task so far. \
The conversation history will then be condensed to that summary, so include everything \
needed to continue:

1. Primary Request: what the user asked for, including the diagram type.
2. Key Findings: architecture, components and technologies discovered.
3. Files Examined: the files read and what each contributes.
4. Components and Relationships: what should appear in the diagram and how it connects.
5. Diagram Progress: whether display_diagram or append_diagram succeeded, and which cell ids exist.
6. Problems Encountered: errors and how they were handled.
7. Next Steps: what remains to be done.
8. Required Files:
   - /absolute/path/of/a/file/to/re-read

Call summarize_task now; do not call any other tool in this response."""


def continuation_prompt(summary: str) -> str:
    """Message the model sees after its history was condensed to ``summary``."""
    required = parse_required_files(summary)
    text = (
        "This session is being continued from a previous conversation that ran out of context. "
        "The conversation is summarized below:\n\n"
        f"{summary}\n\n"
    )
    if required:
        text += (
            "Files you marked as required (re-read them with read_file if you need their "
            "contents):\n" + "\n".join(f"- {p}" for p in required) + "\n\n"
        )
    text += (
        "Continue the task from where it left off without asking the user any further "
        "questions. Use a tool in your next response."
    )
    return text


_REQUIRED_FILES_SECTION = re.compile(
    r"8\.\s*(?:Optional\s+)?Required Files:\s*((?:\n\s*-\s*.+)+)", re.MULTILINE
)


def parse_required_files(summary: str) -> list[str]:
    """Return the paths listed under a "8. Required Files:" section."""
    match = _REQUIRED_FILES_SECTION.search(summary)
    if not match:
        return []
    paths = []
    for line in match.group(1).splitlines():
        item = re.match(r"^\s*-\s*(.+)$", line)
        if item:
            paths.append(item.group(1).strip())
    return paths


def build_system_prompt(diagram_type: str, cwd: str) -> str:
    if diagram_type not in DIAGRAM_TYPES:
        raise ValueError(
            f"Unknown diagram type {diagram_type!r} (expected one of: {', '.join(DIAGRAM_TYPES)})"
        )
    return SYSTEM_PROMPT_TEMPLATE.format(
        cwd=cwd,
        diagram_type=diagram_type,
        diagram_description=DIAGRAM_TYPES[diagram_type]["description"],
    )
