"""Workspace paths whose prompts and responses the pipeline must not ingest.

These are the directories our own background LLM calls and the IDE itself run in.
Reacting to them would feed the pipeline its own output.
"""

from __future__ import annotations

import re

IGNORED_PATHS = (
    ".devark/temp-prompt-analysis",
    ".devark/temp-standup",
    ".devark/temp-productivity-report",
    "devark-temp",
    "devark-hooks",
    "devark-analysis",
    "programs/cursor",
    "appdata/local/programs/cursor",
    ".cursor",
)

_PATTERNS = [
    re.compile(rf"(^|/){re.escape(segment)}(/|$)", re.IGNORECASE) for segment in IGNORED_PATHS
]


def normalize_path(path: str) -> str:
    normalized = path.replace("\\", "/")
    if len(normalized) > 1:
        normalized = normalized.rstrip("/")
    return normalized


def should_ignore_path(path: str | None) -> bool:
    if not path:
        return False
    normalized = normalize_path(path)
    return any(pattern.search(normalized) for pattern in _PATTERNS)


def matching_ignored_segment(path: str | None) -> str | None:
    """The first ignored segment found in ``path``, for log lines."""
    if not path:
        return None
    normalized = normalize_path(path)
    for segment, pattern in zip(IGNORED_PATHS, _PATTERNS):
        if pattern.search(normalized):
            return segment
    return None
