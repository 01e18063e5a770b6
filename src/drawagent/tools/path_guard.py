"""Deny-list check for paths handed to the explorer tools."""

from __future__ import annotations

import os
import re

BLOCKED_PATTERNS = [
    re.compile(r"/etc/passwd"),
    re.compile(r"/etc/shadow"),
    re.compile(r"\.ssh"),
    re.compile(r"\.aws"),
    re.compile(r"\.env"),
    re.compile(r"node_modules/.*\.env"),
]


class UnsafePathError(PermissionError):
    pass


def is_path_safe(path: str) -> bool:
    normalized = os.path.normpath(path).replace(os.sep, "/")
    return not any(p.search(normalized) for p in BLOCKED_PATTERNS)


def ensure_safe(path: str) -> None:
    if not is_path_safe(path):
        raise UnsafePathError(f"Access denied: {path} matches a protected path pattern")
