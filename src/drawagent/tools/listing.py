"""list_directories and list_files_recursive tools."""

from __future__ import annotations

import logging
from pathlib import Path

from drawagent.tools.path_guard import ensure_safe

logger = logging.getLogger(__name__)

MAX_ENTRIES = 200
DEFAULT_MAX_DEPTH = 3
# Listed, but never descended into
SKIP_DESCEND = {".git", "node_modules", "__pycache__", ".venv", "venv"}


def _sorted_entries(directory: Path) -> list[Path]:
    return sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower()))


def list_directories(path: str) -> str:
    """List the immediate children of a directory."""
    ensure_safe(path)
    directory = Path(path)
    if not directory.exists():
        return f"Error: Directory not found: {path}"
    if not directory.is_dir():
        return f"Error: Not a directory: {path}"

    lines = []
    for entry in _sorted_entries(directory):
        if entry.is_dir():
            lines.append(f"[DIR]  {entry.name}")
        else:
            lines.append(f"[FILE] {entry.name}")
    if not lines:
        return "Empty directory"
    return "\n".join(lines)


def list_files_recursive(path: str, max_depth: int = DEFAULT_MAX_DEPTH) -> str:
    """Render a directory tree, bounded by depth and by MAX_ENTRIES."""
    ensure_safe(path)
    root = Path(path)
    if not root.is_dir():
        return f"Error: Directory not found: {path}"
    max_depth = max(1, int(max_depth))

    lines: list[str] = [f"{root.resolve().name or path}/"]
    count = 0
    stopped = False

    def _walk(directory: Path, prefix: str, depth: int) -> None:
        nonlocal count, stopped
        try:
            entries = _sorted_entries(directory)
        except OSError as e:
            lines.append(f"{prefix}└── [unreadable: {e.strerror}]")
            return
        for i, entry in enumerate(entries):
            if count >= MAX_ENTRIES:
                if not stopped:
                    lines.append(
                        f"{prefix}[Stopped: listed {MAX_ENTRIES} entries. "
                        "Use search_files to find specific files.]"
                    )
                    stopped = True
                return
            last = i == len(entries) - 1
            connector = "└── " if last else "├── "
            is_dir = entry.is_dir()
            lines.append(f"{prefix}{connector}{entry.name}{'/' if is_dir else ''}")
            count += 1
            if is_dir and entry.name not in SKIP_DESCEND and depth < max_depth:
                _walk(entry, prefix + ("    " if last else "│   "), depth + 1)

    _walk(root, "", 1)
    logger.debug("list_files_recursive(%s, depth=%d): %d entries", path, max_depth, count)

    if stopped:
        lines.append("")
        lines.append(
            f"Listing stopped at {MAX_ENTRIES} items. The directory has more content; "
            "use search_files or list_files_recursive on a subdirectory to narrow down."
        )
    return "\n".join(lines)
