"""Drop-box writer invoked by the agents' hooks.

Usage: ``python -m devark.hooks.capture {cursor-prompt,cursor-response,claude-prompt,claude-response}``

Reads the hook's JSON payload from stdin, writes one drop file (plus the
matching ``latest-*.json`` mirror) and always answers ``{"continue": true}``
so the agent is never blocked.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import secrets
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, TextIO

from devark.core.config import default_hook_dir

logger = logging.getLogger("devark.hooks.capture")

MAX_RESPONSE_CHARS = 5000
MAX_TOOL_CALLS = 10
MAX_FILES_MODIFIED = 20
MAX_TOOL_RESULT_CHARS = 1000
CONTINUE_REPLY = {"continue": True}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _record_id(prefix: str) -> str:
    return f"{prefix}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def _drop_none(record: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in record.items() if value is not None}


def cursor_prompt_record(payload: dict[str, Any]) -> dict[str, Any]:
    return _drop_none(
        {
            "id": _record_id("prompt"),
            "timestamp": _now_iso(),
            "prompt": payload.get("prompt") or "",
            "source": "cursor",
            "attachments": payload.get("attachments") or [],
            "conversationId": payload.get("conversation_id"),
            "generationId": payload.get("generation_id"),
            "model": payload.get("model"),
            "cursorVersion": payload.get("cursor_version"),
            "workspaceRoots": payload.get("workspace_roots") or [],
            "userEmail": payload.get("user_email"),
        }
    )


def claude_prompt_record(payload: dict[str, Any]) -> dict[str, Any]:
    cwd = payload.get("cwd")
    return _drop_none(
        {
            "id": _record_id("claude-prompt"),
            "timestamp": _now_iso(),
            "prompt": payload.get("prompt") or "",
            "source": "claude_code",
            "attachments": [],
            "sessionId": payload.get("session_id"),
            "transcriptPath": payload.get("transcript_path"),
            "cwd": cwd,
            "hookEventName": payload.get("hook_event_name"),
            "workspaceRoots": [cwd] if cwd else [],
        }
    )


def cursor_response_record(payload: dict[str, Any]) -> dict[str, Any]:
    """Map either ``afterAgentResponse`` or ``stop``; the latter marks the loop final."""
    hook_type = payload.get("hook_event_name") or "afterAgentResponse"
    is_stop = hook_type == "stop"

    tool_calls: list[dict[str, Any]] = []
    files_modified: list[str] = []
    if not is_stop:
        for call in (payload.get("tool_calls") or [])[:MAX_TOOL_CALLS]:
            tool_calls.append(
                {
                    "name": call.get("name") or call.get("tool") or "unknown",
                    "arguments": call.get("arguments") or call.get("params") or {},
                }
            )
        files_modified = list((payload.get("files_modified") or [])[:MAX_FILES_MODIFIED])

    text = "" if is_stop else str(payload.get("response") or payload.get("text") or "")
    return _drop_none(
        {
            "id": _record_id("cursor-response"),
            "timestamp": _now_iso(),
            "source": "cursor",
            "hookType": hook_type,
            "isFinal": is_stop,
            "stopReason": (payload.get("status") or "error") if is_stop else None,
            "loopCount": (payload.get("loop_count") or 0) if is_stop else None,
            "response": text[:MAX_RESPONSE_CHARS],
            "conversationId": payload.get("conversation_id"),
            "generationId": payload.get("generation_id"),
            "model": payload.get("model"),
            "workspaceRoots": payload.get("workspace_roots") or [],
            "cursorVersion": payload.get("cursor_version"),
            "userEmail": payload.get("user_email"),
            "toolCalls": tool_calls,
            "filesModified": files_modified,
            "success": payload.get("status") == "completed"
            if is_stop
            else payload.get("success") is not False,
        }
    )


def extract_text(content: Any) -> str:
    """Text of a transcript message body, whatever shape the agent stored."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text") or ""))
        return "\n".join(part for part in parts if part)
    if isinstance(content, dict):
        if content.get("text"):
            return str(content["text"])
        if "content" in content:
            return extract_text(content["content"])
        if "message" in content:
            return extract_text(content["message"])
    return ""


def last_assistant_message(transcript_path: str | None) -> str:
    if not transcript_path:
        return ""
    try:
        lines = Path(transcript_path).read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        logger.debug("Transcript unreadable: %s", exc)
        return ""

    for line in reversed(lines):
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(entry, dict):
            continue
        if entry.get("type") == "assistant" or entry.get("role") == "assistant":
            text = extract_text(entry.get("message") or entry.get("content") or entry.get("text") or "")
            if text:
                return text[:MAX_RESPONSE_CHARS]
    return ""


def claude_response_record(payload: dict[str, Any]) -> dict[str, Any]:
    text = payload.get("last_assistant_message") or payload.get("response") or ""
    if not text:
        text = last_assistant_message(payload.get("transcript_path"))
    reason = payload.get("stop_reason") or payload.get("reason") or "completed"
    cwd = payload.get("cwd")

    tool_results = []
    for result in (payload.get("tool_results") or [])[:MAX_TOOL_CALLS]:
        value = result.get("result")
        rendered = value if isinstance(value, str) else json.dumps(value)
        tool_results.append(
            {"tool": result.get("tool") or result.get("name"), "result": rendered[:MAX_TOOL_RESULT_CHARS]}
        )

    return _drop_none(
        {
            "id": _record_id("claude-response"),
            "timestamp": _now_iso(),
            "source": "claude_code",
            "response": str(text)[:MAX_RESPONSE_CHARS],
            "sessionId": payload.get("session_id"),
            "transcriptPath": payload.get("transcript_path"),
            "cwd": cwd,
            "stopReason": reason,
            "toolResults": tool_results,
            "success": reason == "completed",
            "workspaceRoots": [cwd] if cwd else [],
        }
    )


BUILDERS: dict[str, tuple[Callable[[dict[str, Any]], dict[str, Any]], str]] = {
    "cursor-prompt": (cursor_prompt_record, "latest-prompt.json"),
    "claude-prompt": (claude_prompt_record, "latest-claude-prompt.json"),
    "cursor-response": (cursor_response_record, "latest-cursor-response.json"),
    "claude-response": (claude_response_record, "latest-claude-response.json"),
}


def drop_file_name(record: dict[str, Any]) -> str:
    record_id = record["id"]
    if record.get("isFinal") and record_id.startswith("cursor-response-"):
        record_id = "cursor-response-final-" + record_id[len("cursor-response-"):]
    return f"{record_id}.json"


def _write_atomic(path: Path, data: dict[str, Any]) -> None:
    # The hidden temp name never matches a drop file prefix.
    tmp = path.with_name(f".{path.name}.tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


def write_drop_file(kind: str, payload: dict[str, Any], hook_dir: Path | None = None) -> Path:
    builder, latest_name = BUILDERS[kind]
    record = builder(payload)
    directory = Path(hook_dir) if hook_dir else default_hook_dir()
    directory.mkdir(parents=True, exist_ok=True)

    target = directory / drop_file_name(record)
    _write_atomic(target, record)
    latest = latest_name
    if record.get("isFinal"):
        latest = "latest-cursor-response-final.json"
    _write_atomic(directory / latest, record)
    logger.info("Wrote %s", target.name)
    return target


def _read_payload(stream: TextIO) -> dict[str, Any]:
    raw = stream.read().strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Hook payload is not JSON; ignoring")
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _configure_debug_log(hook_dir: Path) -> None:
    try:
        hook_dir.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(hook_dir / "debug.log", encoding="utf-8")
    except OSError:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(name)s] %(message)s"))
    for previous in list(logger.handlers):
        logger.removeHandler(previous)
        previous.close()
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def main(
    argv: list[str] | None = None,
    stdin: TextIO | None = None,
    stdout: TextIO | None = None,
    hook_dir: Path | None = None,
) -> int:
    parser = argparse.ArgumentParser(prog="devark.hooks.capture", description=__doc__, exit_on_error=False)
    parser.add_argument("kind")

    directory = Path(hook_dir) if hook_dir else default_hook_dir()
    _configure_debug_log(directory)
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout

    try:
        args = parser.parse_args(argv)
        if args.kind not in BUILDERS:
            raise ValueError(f"unknown hook kind {args.kind!r}, expected one of {sorted(BUILDERS)}")
        payload = _read_payload(stdin)
        if payload:
            write_drop_file(args.kind, payload, directory)
        else:
            logger.info("No hook payload received")
    except (argparse.ArgumentError, SystemExit) as exc:
        # A bad invocation must not block the agent either.
        logger.error("Invalid capture arguments: %s", exc)
    except (OSError, ValueError, TypeError, AttributeError) as exc:
        logger.error("Capture failed: %s", exc)
    finally:
        stdout.write(json.dumps(CONTINUE_REPLY))
        stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
