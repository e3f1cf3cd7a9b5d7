"""Records written to the drop-box by external hook scripts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from devark.providers.base import utcnow

HookSource = Literal["cursor", "claude_code"]


class DropRecord(BaseModel):
    """Common shape of prompt and response drop files.

    Field names follow the camelCase JSON written by the hook scripts; unknown
    fields are kept so nothing the agent reported is lost on the way through.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    timestamp: datetime = Field(default_factory=utcnow)
    source: HookSource | None = None
    conversation_id: str | None = None
    session_id: str | None = None
    cwd: str | None = None
    workspace_roots: list[str] | None = None

    def link_key(self) -> str | None:
        if self.source == "cursor" and self.conversation_id:
            return f"cursor:{self.conversation_id}"
        if self.source == "claude_code" and self.session_id:
            return f"claude:{self.session_id}"
        return None

    def workspace_path(self) -> str:
        if self.cwd:
            return self.cwd
        if self.workspace_roots:
            return self.workspace_roots[0]
        return ""

    def dump(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class CapturedPrompt(DropRecord):
    prompt: str
    attachments: list[Any] = Field(default_factory=list)
    generation_id: str | None = None
    model: str | None = None
    cursor_version: str | None = None
    user_email: str | None = None
    transcript_path: str | None = None


class ToolCall(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    arguments: Any = None


class CapturedResponse(DropRecord):
    response: str = ""
    success: bool = True
    prompt_id: str | None = None
    prompt_text: str | None = None
    prompt_timestamp: datetime | None = None
    is_final: bool = False
    stop_reason: str | None = None
    loop_count: int | None = None
    files_modified: list[str] = Field(default_factory=list)
    tool_calls: list[ToolCall] = Field(default_factory=list)
    transcript_path: str | None = None


class ConversationState(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    conversation_id: str
    start_time: datetime
    end_time: datetime
    duration_ms: int
    total_prompts: int
    total_responses: int
    stop_reason: str = "completed"
    loop_count: int = 0
    files_modified: list[str] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
