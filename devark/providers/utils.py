"""Helper utilities for HTTP provider adapters."""

from __future__ import annotations

from typing import Any

import httpx


def extract_error_body(response: httpx.Response) -> Any:
    """Return structured error details if available, else a trimmed text body."""

    try:
        return response.json()
    except ValueError:
        text = getattr(response, "text", None)
        if text:
            stripped = text.strip()
            if stripped:
                return stripped
        return None


def describe_http_error(response: httpx.Response) -> str:
    """Best human-readable message for a failed HTTP response."""

    body = extract_error_body(response)
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if body.get("message"):
            return str(body["message"])
    elif isinstance(body, str):
        return body[:200]
    return f"HTTP {response.status_code}"


def iter_lines(buffer: str) -> tuple[list[str], str]:
    """Split buffered wire text into complete lines and the trailing partial line."""

    *lines, remainder = buffer.split("\n")
    return [line.rstrip("\r") for line in lines], remainder


__all__ = ["describe_http_error", "extract_error_body", "iter_lines"]
