"""Discovery, reading and deletion of one family of drop files."""

from __future__ import annotations

import json
import logging
import re
from collections import OrderedDict
from pathlib import Path
from typing import Any, Iterable

logger = logging.getLogger("devark.hooks")

_TRAILING_COMMA = re.compile(r",\s*([}\]])")


class DropFileParseError(ValueError):
    def __init__(self, filename: str, reason: str) -> None:
        super().__init__(f"Could not parse {filename}: {reason}")
        self.filename = filename
        self.reason = reason


def recover_json(content: str) -> Any:
    """Parse ``content``, tolerating the damage half-written drop files show.

    Handles a UTF-8 BOM, trailing commas, and a second object appended after
    the first one (only the first is returned).
    """
    text = content.lstrip("\ufeff").strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    if start < 0:
        raise json.JSONDecodeError("No JSON object found", text, 0)
    decoder = json.JSONDecoder()
    candidate = text[start:]
    try:
        value, _ = decoder.raw_decode(candidate)
        return value
    except json.JSONDecodeError:
        value, _ = decoder.raw_decode(_TRAILING_COMMA.sub(r"\1", candidate))
        return value


class HookFileProcessor:
    """Tracks which drop files of one family were already handled.

    The processed set is an insertion-ordered LRU capped at ``max_processed``;
    the oldest names fall out first. Files are deleted once handled, so an
    evicted name can only come back if the writer reuses it.
    """

    def __init__(
        self,
        hook_dir: Path,
        prefixes: Iterable[str],
        *,
        suffix: str = ".json",
        skip_files: Iterable[str] = (),
        max_processed: int = 200,
    ) -> None:
        self.hook_dir = Path(hook_dir)
        self.prefixes = tuple(prefixes)
        self.suffix = suffix
        self.skip_files = frozenset(skip_files)
        self.max_processed = max_processed
        self._processed: OrderedDict[str, None] = OrderedDict()
        self._attempts: dict[str, int] = {}

    def matches(self, filename: str) -> bool:
        if filename in self.skip_files:
            return False
        return filename.startswith(self.prefixes) and filename.endswith(self.suffix)

    def list_matching_files(self) -> list[str]:
        try:
            names = [entry.name for entry in self.hook_dir.iterdir() if entry.is_file()]
        except FileNotFoundError:
            return []
        return sorted(name for name in names if self.matches(name))

    def is_processed(self, filename: str) -> bool:
        return filename in self._processed

    def mark_processed(self, filename: str) -> None:
        self._processed[filename] = None
        self._processed.move_to_end(filename)
        while len(self._processed) > self.max_processed:
            self._processed.popitem(last=False)

    def unmark(self, filename: str) -> None:
        self._processed.pop(filename, None)

    @property
    def processed_count(self) -> int:
        return len(self._processed)

    def record_failure(self, filename: str) -> int:
        attempts = self._attempts.get(filename, 0) + 1
        self._attempts[filename] = attempts
        return attempts

    def forget_failures(self, filename: str) -> None:
        self._attempts.pop(filename, None)

    def read_file(self, filename: str) -> str | None:
        try:
            return (self.hook_dir / filename).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def parse_data(self, filename: str, content: str, required: Iterable[str]) -> dict[str, Any]:
        try:
            data = recover_json(content)
        except json.JSONDecodeError as exc:
            raise DropFileParseError(filename, exc.msg) from exc
        if not isinstance(data, dict):
            raise DropFileParseError(filename, "expected a JSON object")
        missing = [name for name in required if not data.get(name)]
        if missing:
            raise DropFileParseError(filename, f"missing required fields: {', '.join(missing)}")
        return data

    def delete_file(self, filename: str) -> bool:
        try:
            (self.hook_dir / filename).unlink()
        except FileNotFoundError:
            return True
        except OSError as exc:
            logger.warning(
                "Could not delete drop file",
                extra={"event": "drop_file_delete_failed", "file": filename, "error": str(exc)},
            )
            return False
        return True

    def reset(self) -> None:
        self._processed.clear()
        self._attempts.clear()
