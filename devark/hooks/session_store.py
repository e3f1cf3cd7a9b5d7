"""Session store contract the hook pipeline forwards records to."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Protocol, Union

from .models import CapturedPrompt, CapturedResponse


class SessionStore(Protocol):
    """Downstream consumer of captured prompts and responses.

    Methods may be plain or async. Implementations should be idempotent on
    record ``id``; two processes scanning one drop-box can both deliver.
    """

    def on_prompt_detected(self, prompt: CapturedPrompt) -> Union[str, Awaitable[str]]: ...

    def add_response(
        self, prompt_id: str, response: CapturedResponse
    ) -> Union[None, Awaitable[None]]: ...

    def sync_session_context(self, prompt: CapturedPrompt) -> Union[None, Awaitable[None]]: ...


@dataclass
class SessionContext:
    link_key: str
    workspace: str
    prompt_ids: list[str] = field(default_factory=list)


class InMemorySessionStore:
    """Keeps prompts and responses in memory, keyed by prompt id."""

    def __init__(self) -> None:
        self.prompts: dict[str, CapturedPrompt] = {}
        self.responses: dict[str, list[CapturedResponse]] = {}
        self.sessions: dict[str, SessionContext] = {}
        self._ids_by_record: dict[str, str] = {}

    def on_prompt_detected(self, prompt: CapturedPrompt) -> str:
        existing = self._ids_by_record.get(prompt.id)
        if existing is not None:
            return existing
        prompt_id = uuid.uuid4().hex
        self._ids_by_record[prompt.id] = prompt_id
        self.prompts[prompt_id] = prompt
        return prompt_id

    def add_response(self, prompt_id: str, response: CapturedResponse) -> None:
        bucket = self.responses.setdefault(prompt_id, [])
        if any(item.id == response.id for item in bucket):
            return
        bucket.append(response)

    def sync_session_context(self, prompt: CapturedPrompt) -> None:
        key = prompt.link_key() or prompt.id
        context = self.sessions.setdefault(key, SessionContext(key, prompt.workspace_path()))
        prompt_id = self._ids_by_record.get(prompt.id)
        if prompt_id and prompt_id not in context.prompt_ids:
            context.prompt_ids.append(prompt_id)
        if prompt.workspace_path():
            context.workspace = prompt.workspace_path()
