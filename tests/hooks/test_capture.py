import io
import json

import pytest

from devark.hooks import capture
from devark.hooks.capture import claude_response_record, cursor_response_record, main, write_drop_file


def _run(kind, payload, hook_dir):
    stdout = io.StringIO()
    code = main([kind], stdin=io.StringIO(json.dumps(payload)), stdout=stdout, hook_dir=hook_dir)
    return code, stdout.getvalue()


def test_cursor_prompt_is_written(tmp_path):
    code, output = _run(
        "cursor-prompt",
        {"prompt": "Refactor this", "conversation_id": "C1", "workspace_roots": ["/repo"]},
        tmp_path,
    )

    assert code == 0
    assert json.loads(output) == {"continue": True}
    drops = sorted(path.name for path in tmp_path.glob("prompt-*.json"))
    assert len(drops) == 1
    record = json.loads((tmp_path / drops[0]).read_text())
    assert record["prompt"] == "Refactor this"
    assert record["conversationId"] == "C1"
    assert record["source"] == "cursor"
    assert json.loads((tmp_path / "latest-prompt.json").read_text())["id"] == record["id"]
    assert not list(tmp_path.glob(".*.tmp"))


def test_bad_payload_still_continues(tmp_path):
    stdout = io.StringIO()

    main(["claude-prompt"], stdin=io.StringIO("not json"), stdout=stdout, hook_dir=tmp_path)

    assert json.loads(stdout.getvalue()) == {"continue": True}
    assert not list(tmp_path.glob("claude-prompt-*.json"))


@pytest.mark.parametrize("argv", [["cursor-stop"], []])
def test_bad_invocation_still_continues(tmp_path, argv):
    stdout = io.StringIO()

    code = main(argv, stdin=io.StringIO(json.dumps({"prompt": "hi"})), stdout=stdout, hook_dir=tmp_path)

    assert code == 0
    assert json.loads(stdout.getvalue()) == {"continue": True}
    assert not list(tmp_path.glob("*.json"))


def test_write_failure_still_continues(tmp_path, monkeypatch):
    def broken(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(capture, "_write_atomic", broken)

    code, output = _run("cursor-prompt", {"prompt": "x"}, tmp_path)

    assert code == 0
    assert json.loads(output) == {"continue": True}


def test_cursor_stop_becomes_final_drop(tmp_path):
    path = write_drop_file(
        "cursor-response",
        {"hook_event_name": "stop", "status": "completed", "loop_count": 3, "conversation_id": "C1"},
        tmp_path,
    )

    assert path.name.startswith("cursor-response-final-")
    record = json.loads(path.read_text())
    assert record["isFinal"] is True
    assert record["stopReason"] == "completed"
    assert record["loopCount"] == 3
    assert (tmp_path / "latest-cursor-response-final.json").exists()


def test_cursor_response_limits():
    record = cursor_response_record(
        {
            "response": "x" * 6000,
            "tool_calls": [{"tool": f"t{index}", "params": {}} for index in range(12)],
            "files_modified": [f"f{index}.py" for index in range(25)],
        }
    )

    assert len(record["response"]) == 5000
    assert len(record["toolCalls"]) == 10
    assert record["toolCalls"][0] == {"name": "t0", "arguments": {}}
    assert len(record["filesModified"]) == 20
    assert record["isFinal"] is False


def test_claude_response_reads_transcript(tmp_path):
    transcript = tmp_path / "session.jsonl"
    transcript.write_text(
        "\n".join(
            [
                json.dumps({"type": "user", "message": {"content": "hi"}}),
                json.dumps({"type": "assistant", "message": {"content": [{"type": "text", "text": "first"}]}}),
                json.dumps(
                    {"type": "assistant", "message": {"content": [{"type": "tool_use"}, {"type": "text", "text": "last"}]}}
                ),
                "not json",
            ]
        ),
        encoding="utf-8",
    )

    record = claude_response_record({"session_id": "S1", "transcript_path": str(transcript), "cwd": "/repo"})

    assert record["response"] == "last"
    assert record["sessionId"] == "S1"
    assert record["workspaceRoots"] == ["/repo"]
    assert record["success"] is True
