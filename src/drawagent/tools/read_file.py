"""read_file tool: read a file from disk with line numbers."""

from __future__ import annotations

import logging
from pathlib import Path

from drawagent.tools.extract_text import (
    MAX_FILE_BYTES,
    FileTooLargeError,
    UnsupportedFileError,
    extract_text,
)
from drawagent.tools.path_guard import is_path_safe

logger = logging.getLogger(__name__)


def format_file_content(
    content: str,
    path: str,
    start_line: int | None = None,
    end_line: int | None = None,
) -> str:
    """Format raw file content with line numbers and optional range slicing.

    Args:
        content: Raw file text.
        path: Display path for the header.
        start_line: Optional first line (1-based, inclusive).
        end_line: Optional last line (1-based, inclusive).

    Returns:
        Formatted string with header and numbered lines.
    """
    lines = content.splitlines()

    if start_line is not None or end_line is not None:
        s = max(0, (start_line or 1) - 1)
        e = min(len(lines), end_line or len(lines))
        selected = lines[s:e]
        line_offset = s + 1
    else:
        selected = lines
        line_offset = 1

    numbered = [f"{line_offset + i:>6} | {line}" for i, line in enumerate(selected)]

    header = f"File: {path}"
    if start_line or end_line:
        header += f" (lines {line_offset}-{line_offset + len(selected) - 1} of {len(lines)})"
    header += f"\n{'─' * 60}"

    if not selected:
        return header + "\n(empty)"
    return header + "\n" + "\n".join(numbered)


def read_file(
    path: str,
    start_line: int | None = None,
    end_line: int | None = None,
) -> str:
    """Read a file with line numbers.

    Without a range the whole file is returned; such full reads are what
    file-read deduplication later collapses.

    Returns:
        File content with line numbers, or an error message with a hint.
    """
    if not is_path_safe(path):
        return f"Error: Access denied: '{path}' matches a protected path pattern."

    full_path = Path(path)
    if not full_path.exists():
        return (
            f"Error: File '{path}' not found.\n"
            "Suggestion: use list_files_recursive or search_files to locate the file, "
            "and pass an absolute path."
        )
    if not full_path.is_file():
        return (
            f"Error: '{path}' is not a file.\n"
            "Suggestion: use list_directories to see what it contains."
        )

    try:
        content = extract_text(full_path)
    except FileTooLargeError as e:
        return (
            f"Error: {e}\n"
            f"Suggestion: files above {MAX_FILE_BYTES} bytes cannot be read; "
            "use search_files to find the relevant lines instead."
        )
    except UnsupportedFileError as e:
        return f"Error: {e}\nSuggestion: this looks like a binary file; skip it."
    except OSError as e:
        return f"Error reading '{path}': {e}"

    result = format_file_content(content, path, start_line, end_line)
    logger.debug("read_file: %s (%d chars)", path, len(result))
    return result
