"""list_code_definition_names tool.

A regex scan, not a parser: declarations inside comments or string
literals are reported too, and nested or unusual syntax can be missed.
That is good enough for the agent to decide which files to read in full.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from drawagent.tools.extract_text import UnsupportedFileError, decode_text
from drawagent.tools.path_guard import is_path_safe

logger = logging.getLogger(__name__)

DEFINITION_PATTERNS = [
    re.compile(r"(?:export\s+)?(?:async\s+)?function\s+(\w+)"),
    re.compile(r"(?:export\s+)?class\s+(\w+)"),
    re.compile(r"(?:export\s+)?interface\s+(\w+)"),
    re.compile(r"(?:export\s+)?type\s+(\w+)\s*[=<]"),
    re.compile(r"(?:export\s+)?const\s+(\w+)\s*="),
    re.compile(r"^\s*(?:async\s+)?def\s+(\w+)", re.MULTILINE),
    # Indented call-like lines: method declarations in class bodies
    re.compile(r"^\s+(?:async\s+)?(\w+)\s*\(", re.MULTILINE),
]

_KEYWORDS = {"if", "for", "while", "switch", "catch", "return", "with", "elif", "def", "await", "print"}


def extract_definitions(content: str) -> list[str]:
    """Return declared names in pattern order, deduplicated."""
    names: list[str] = []
    seen: set[str] = set()
    for pattern in DEFINITION_PATTERNS:
        for match in pattern.finditer(content):
            name = match.group(1)
            if name in seen or name in _KEYWORDS:
                continue
            seen.add(name)
            names.append(name)
    return names


def list_code_definition_names(path: str) -> str:
    if not is_path_safe(path):
        return "Error: Access denied to sensitive file"
    file = Path(path)
    if not file.is_file():
        return f"Error: File '{path}' not found."
    try:
        content = decode_text(file.read_bytes(), file.name)
    except (OSError, UnsupportedFileError) as e:
        return f"Error analyzing file: {e}"

    definitions = extract_definitions(content)
    logger.debug("list_code_definition_names(%s): %d names", path, len(definitions))
    if not definitions:
        return f"No code definitions found in {path}"
    return f"Code definitions in {path}:\n" + "\n".join(f"  - {d}" for d in definitions)
