"""search_files tool: regex search over a glob-filtered file set."""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from drawagent.tools.path_guard import ensure_safe, is_path_safe

logger = logging.getLogger(__name__)

MAX_FILES_SCANNED = 50
MAX_MATCHES_PER_FILE = 10
EXCLUDED_DIRS = {"node_modules", ".git", "dist"}


def _glob_regex(file_pattern: str) -> re.Pattern:
    """Compile a root-relative glob: '**/' spans directories, '*' and '?' stay within one."""
    out = []
    i = 0
    while i < len(file_pattern):
        if file_pattern.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
        elif file_pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif file_pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        elif file_pattern[i] == "?":
            out.append("[^/]")
            i += 1
        else:
            out.append(re.escape(file_pattern[i]))
            i += 1
    return re.compile("".join(out) + r"\Z")


def _candidate_files(root: Path, file_pattern: str) -> list[Path]:
    matcher = _glob_regex(file_pattern)
    files = []
    for current, dirs, filenames in os.walk(root):
        # Prune excluded directories before descending
        dirs[:] = sorted(d for d in dirs if d not in EXCLUDED_DIRS)
        base = Path(current)
        for fname in sorted(filenames):
            p = base / fname
            if not matcher.match(p.relative_to(root).as_posix()):
                continue
            if not is_path_safe(str(p)):
                continue
            files.append(p)
            if len(files) >= MAX_FILES_SCANNED:
                return files
    return files


def search_files(path: str, pattern: str, file_pattern: str = "**/*") -> str:
    """Search files under ``path`` for a case-insensitive regex."""
    ensure_safe(path)
    root = Path(path)
    if not root.is_dir():
        return f"Error: Directory not found: {path}"
    try:
        regex = re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        return f"Error: Invalid regex pattern {pattern!r}: {e}"

    results: list[tuple[str, list[tuple[int, str]]]] = []
    files = _candidate_files(root, file_pattern or "**/*")
    for file in files:
        try:
            text = file.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        matches = []
        for lineno, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                matches.append((lineno, line.strip()))
                if len(matches) >= MAX_MATCHES_PER_FILE:
                    break
        if matches:
            results.append((file.relative_to(root).as_posix(), matches))

    logger.debug("search_files(%r): %d files scanned, %d with matches", pattern, len(files), len(results))

    if not results:
        return f"No matches found for pattern: {pattern}"

    out = [f"Found {len(results)} file(s) with matches:", ""]
    for rel, matches in results:
        out.append(f"[FILE] {rel}")
        for lineno, line in matches:
            out.append(f"  Line {lineno}: {line}")
        out.append("")
    return "\n".join(out).rstrip()
