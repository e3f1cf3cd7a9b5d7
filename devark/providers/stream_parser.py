"""Line-delimited JSON event parser for CLI and SDK output streams."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Iterable, TypedDict

logger = logging.getLogger("devark.providers.stream_parser")

# Non-JSON chatter that CLIs print between events.
IGNORABLE_LINE_PATTERNS = [
    re.compile(r"^Claude configuration file", re.IGNORECASE),
    re.compile(r"^The corrupted file has been backed up", re.IGNORECASE),
    re.compile(r"^A backup file exists at:", re.IGNORECASE),
    re.compile(r"is corrupted:", re.IGNORECASE),
    re.compile(r"JSON Parse error:", re.IGNORECASE),
    re.compile(r"Unexpected EOF", re.IGNORECASE),
    re.compile(r"^\s*Warning:", re.IGNORECASE),
    re.compile(r"^\s*Error:", re.IGNORECASE),
    re.compile(r"^\s*Note:", re.IGNORECASE),
    re.compile(r"^\[.*\]"),
]


class StreamEvent(TypedDict, total=False):
    type: str
    subtype: str
    message: Any
    delta: Any
    result: Any
    content: Any
    duration_ms: int
    num_turns: int
    total_cost_usd: float
    session_id: str
    is_error: bool


def _should_ignore(line: str) -> bool:
    return any(pattern.search(line) for pattern in IGNORABLE_LINE_PATTERNS)


def _looks_like_json(line: str) -> bool:
    return line.startswith("{") or line.startswith("[")


def _stringify(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value)


class StreamJSONParser:
    """Incrementally turns stdout chunks into events.

    Partial trailing lines are buffered until the next chunk. Lines that are not
    JSON are counted and skipped. A line holding several concatenated objects
    yields each object that decodes cleanly.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._ignored_lines = 0
        self._decoder = json.JSONDecoder()

    def parse_chunk(self, chunk: str) -> list[StreamEvent]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        events: list[StreamEvent] = []
        for line in lines:
            events.extend(self.parse_line(line))
        return events

    def flush(self) -> list[StreamEvent]:
        """Parse whatever is left in the buffer once the stream has ended."""
        remainder, self._buffer = self._buffer, ""
        return self.parse_line(remainder)

    def parse_line(self, line: str) -> list[StreamEvent]:
        trimmed = line.strip()
        if not trimmed:
            return []
        if not _looks_like_json(trimmed):
            self._ignored_lines += 1
            return []

        try:
            value = json.loads(trimmed)
        except json.JSONDecodeError:
            events = self._recover(trimmed)
            if not events:
                # Known CLI diagnostics are expected noise; anything else is worth a debug line.
                if not _should_ignore(trimmed):
                    logger.debug("Skipping undecodable stream line", extra={"line_length": len(trimmed)})
                self._ignored_lines += 1
            return events
        if not isinstance(value, dict):
            self._ignored_lines += 1
            return []
        return [value]

    def _recover(self, line: str) -> list[StreamEvent]:
        # Walk the line object by object, skipping garbage up to the next opening brace.
        events: list[StreamEvent] = []
        index = 0
        while index < len(line):
            start = line.find("{", index)
            if start == -1:
                break
            try:
                value, end = self._decoder.raw_decode(line, start)
            except json.JSONDecodeError:
                index = start + 1
                continue
            if isinstance(value, dict):
                events.append(value)  # type: ignore[arg-type]
            index = end
        return events

    def extract_result(self, events: Iterable[StreamEvent]) -> str:
        """Return the final text of a run, trying progressively looser event shapes."""
        events = list(events)

        for event in events:
            if event.get("type") == "result" and event.get("result"):
                return _stringify(event["result"])

        assistant_parts: list[str] = []
        for event in events:
            message = event.get("message")
            if event.get("type") != "assistant" or not isinstance(message, dict):
                continue
            content = message.get("content")
            if isinstance(content, list):
                assistant_parts.extend(
                    block["text"]
                    for block in content
                    if isinstance(block, dict) and block.get("type") == "text" and block.get("text")
                )
            elif isinstance(content, str):
                assistant_parts.append(content)
        if assistant_parts:
            return "".join(assistant_parts)

        message_parts: list[str] = []
        for event in events:
            message = event.get("message")
            if event.get("type") != "message" or not isinstance(message, dict):
                continue
            content = message.get("content")
            if isinstance(content, list):
                message_parts.extend(
                    block.get("text") or "" for block in content if isinstance(block, dict)
                )
            elif isinstance(content, str):
                message_parts.append(content)
        if message_parts and any(message_parts):
            return "".join(message_parts)

        for event in events:
            if event.get("content"):
                return _stringify(event["content"])
        return ""

    def reset(self) -> None:
        self._buffer = ""
        self._ignored_lines = 0

    def get_stats(self) -> dict[str, int]:
        return {"ignored_lines": self._ignored_lines, "buffer_length": len(self._buffer)}
