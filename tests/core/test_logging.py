import json
import logging

from devark.logging import (
    CorrelationFilter,
    JsonFormatter,
    get_correlation_id,
    log_file_path,
    preview,
    reset_correlation_id,
    set_correlation_id,
)


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("devark.hooks", logging.INFO, __file__, 1, "Prompt captured", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extras_and_correlation_id():
    token = set_correlation_id("prompt-1.json")
    try:
        record = _record(event="prompt_detected", prompt_id="abc")
        CorrelationFilter().filter(record)
        payload = json.loads(JsonFormatter().format(record))
    finally:
        reset_correlation_id(token)

    assert payload["message"] == "Prompt captured"
    assert payload["logger"] == "devark.hooks"
    assert payload["correlation_id"] == "prompt-1.json"
    assert payload["event"] == "prompt_detected"
    assert payload["prompt_id"] == "abc"
    assert get_correlation_id() is None


def test_preview_truncates():
    assert preview(None) == ""
    assert preview("short") == "short"
    assert preview("x" * 150) == "x" * 100 + "..."


def test_component_and_long_prompt_fields():
    record = _record(event="prompt_detected", prompt="p" * 500, prompt_id="abc")
    CorrelationFilter().filter(record)

    payload = json.loads(JsonFormatter().format(record))

    assert payload["component"] == "hooks"
    assert payload["prompt"] == "p" * 100 + "..."
    assert payload["prompt_id"] == "abc"
    assert "correlation_id" not in payload


def test_log_file_path_from_environment(tmp_path, monkeypatch):
    target = tmp_path / "logs" / "copilot.jsonl"
    monkeypatch.setenv("DEVARK_LOG_FILE", str(target))

    assert log_file_path() == target
    assert target.parent.is_dir()
    assert log_file_path(str(tmp_path / "other.jsonl")) == tmp_path / "other.jsonl"
