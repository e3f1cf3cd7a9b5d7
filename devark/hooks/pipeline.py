"""Hook ingestion pipeline: drop-box files in, session store calls and events out."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Literal

from pydantic import ValidationError
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from devark.core.config import HooksConfig
from devark.logging import preview, reset_correlation_id, set_correlation_id

from .file_processor import DropFileParseError, HookFileProcessor
from .ignore_paths import matching_ignored_segment
from .models import CapturedPrompt, CapturedResponse, ConversationState
from .session_store import SessionStore

logger = logging.getLogger("devark.hooks")

PipelineEvent = Literal[
    "promptDetected", "responseDetected", "finalResponseDetected", "responseDropped"
]
EVENTS: tuple[str, ...] = (
    "promptDetected",
    "responseDetected",
    "finalResponseDetected",
    "responseDropped",
)

PROMPT_PREFIXES = ("prompt-", "claude-prompt-")
PROMPT_SKIP_FILES = ("latest-prompt.json", "latest-claude-prompt.json")
RESPONSE_PREFIXES = ("cursor-response-", "claude-response-")
RESPONSE_SKIP_FILES = (
    "latest-cursor-response.json",
    "latest-cursor-response-final.json",
    "latest-claude-response.json",
)

CONVERSATION_TTL_SECONDS = 30 * 60


@dataclass
class _Link:
    prompt_id: str
    prompt: CapturedPrompt
    expires_at: float


@dataclass
class _Parked:
    response: CapturedResponse
    filename: str
    parked_at: float


@dataclass
class _Conversation:
    conversation_id: str
    start_time: datetime
    last_seen: float
    prompts: list[str] = field(default_factory=list)
    responses: list[str] = field(default_factory=list)
    files_modified: set[str] = field(default_factory=set)
    tools_used: set[str] = field(default_factory=set)


def infer_prompt_source(filename: str) -> str:
    return "claude_code" if filename.startswith("claude-prompt-") else "cursor"


def infer_response_source(filename: str) -> str:
    return "claude_code" if filename.startswith("claude-") else "cursor"


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class _DropBoxEventHandler(FileSystemEventHandler):
    """Bridges watchdog's observer thread back onto the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, on_file: Callable[[], None]) -> None:
        self._loop = loop
        self._on_file = on_file

    def _wake(self, event: FileSystemEvent) -> None:
        if event.is_directory or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._on_file)

    def on_created(self, event: FileSystemEvent) -> None:
        self._wake(event)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._wake(event)


class HookPipeline:
    """Ingests drop files written by the agents' hook scripts.

    A poll task scans the drop-box every ``poll_interval_seconds`` and a watchdog
    observer triggers an extra scan whenever a file appears. Scans never overlap.
    """

    def __init__(
        self,
        session_store: SessionStore,
        config: HooksConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or HooksConfig()
        self._store = session_store
        self._clock = clock
        self.hook_dir = Path(self._config.drop_box_dir)

        self._prompts = HookFileProcessor(
            self.hook_dir,
            PROMPT_PREFIXES,
            skip_files=PROMPT_SKIP_FILES,
            max_processed=self._config.max_processed_files,
        )
        self._responses = HookFileProcessor(
            self.hook_dir,
            RESPONSE_PREFIXES,
            skip_files=RESPONSE_SKIP_FILES,
            max_processed=self._config.max_processed_files,
        )

        self._links: dict[str, _Link] = {}
        self._parked: dict[str, _Parked] = {}
        self._conversations: dict[str, _Conversation] = {}
        self._listeners: dict[str, list[Callable[[Any], Any]]] = {name: [] for name in EVENTS}

        self._scan_lock = asyncio.Lock()
        self._running = False
        self._poll_task: asyncio.Task[None] | None = None
        self._pending_scans: set[asyncio.Task[Any]] = set()
        self._observer: Any = None
        self._stats = {"prompts": 0, "responses": 0, "ignored": 0, "dropped": 0, "failed": 0}
        self._last_scan: float | None = None

    # events

    def on(self, event: PipelineEvent, callback: Callable[[Any], Any]) -> None:
        self._listeners[event].append(callback)

    def off(self, event: PipelineEvent, callback: Callable[[Any], Any]) -> None:
        listeners = self._listeners.get(event, [])
        if callback in listeners:
            listeners.remove(callback)

    async def _emit(self, event: str, payload: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                await _maybe_await(callback(payload))
            except Exception:  # listeners belong to other components
                logger.exception(
                    "Hook pipeline listener failed",
                    extra={"event": "hook_listener_error", "pipeline_event": event},
                )

    # lifecycle

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self.hook_dir.mkdir(parents=True, exist_ok=True)
        self._prompts.reset()
        self._responses.reset()
        self._running = True
        self._poll_task = asyncio.create_task(self._poll_loop())
        if self._config.use_file_watcher:
            self._start_observer()
        logger.info(
            "Hook pipeline started",
            extra={
                "event": "hook_pipeline_started",
                "hook_dir": str(self.hook_dir),
                "poll_interval_seconds": self._config.poll_interval_seconds,
                "file_watcher": self._observer is not None,
            },
        )

    def _start_observer(self) -> None:
        handler = _DropBoxEventHandler(asyncio.get_running_loop(), self._schedule_scan)
        observer = Observer()
        try:
            observer.schedule(handler, str(self.hook_dir), recursive=False)
            observer.start()
        except OSError as exc:
            logger.warning(
                "File watcher unavailable; relying on polling",
                extra={"event": "hook_watcher_unavailable", "error": str(exc)},
            )
            return
        self._observer = observer

    async def stop(self) -> None:
        """Stop scheduling scans. A scan already in flight runs to completion."""
        if not self._running:
            return
        self._running = False

        if self._observer is not None:
            observer, self._observer = self._observer, None
            observer.stop()
            await asyncio.to_thread(observer.join)

        if self._poll_task is not None:
            task, self._poll_task = self._poll_task, None
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._pending_scans:
            await asyncio.gather(*self._pending_scans, return_exceptions=True)
        logger.info("Hook pipeline stopped", extra={"event": "hook_pipeline_stopped"})

    async def dispose(self) -> None:
        await self.stop()
        for listeners in self._listeners.values():
            listeners.clear()
        self._links.clear()
        self._parked.clear()
        self._conversations.clear()
        self._prompts.reset()
        self._responses.reset()

    async def _poll_loop(self) -> None:
        while self._running:
            # Shielded so stop() lets an in-flight scan finish.
            await asyncio.shield(self._tracked_scan())
            await asyncio.sleep(self._config.poll_interval_seconds)

    def _schedule_scan(self) -> None:
        if not self._running:
            return
        self._tracked_scan()

    def _tracked_scan(self) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(self.process_hook_files())
        self._pending_scans.add(task)
        task.add_done_callback(self._pending_scans.discard)
        return task

    # scanning

    async def process_hook_files(self) -> dict[str, int]:
        """Scan the drop-box once. Safe to call while the pipeline is stopped."""
        async with self._scan_lock:
            before = dict(self._stats)
            self._expire()
            try:
                for filename in self._prompts.list_matching_files():
                    await self._handle_prompt_file(filename)
                for filename in self._responses.list_matching_files():
                    await self._handle_response_file(filename)
                await self._recheck_parked()
            except OSError as exc:
                logger.warning(
                    "Hook scan aborted",
                    extra={"event": "hook_scan_failed", "error": str(exc)},
                )
            self._last_scan = self._clock()
            return {key: self._stats[key] - before[key] for key in self._stats}

    def _read(
        self, processor: HookFileProcessor, filename: str, required: tuple[str, ...]
    ) -> dict[str, Any] | None:
        """Read and parse one file, counting failed attempts toward the retry limit."""
        try:
            content = processor.read_file(filename)
        except (OSError, UnicodeDecodeError) as exc:
            content = ""
            logger.debug("Drop file unreadable", extra={"file": filename, "error": str(exc)})
        if content is None:
            return None

        try:
            data = processor.parse_data(filename, content, required)
        except DropFileParseError as exc:
            attempts = processor.record_failure(filename)
            if attempts < self._config.max_parse_attempts:
                processor.unmark(filename)
                logger.info(
                    "Drop file not parseable yet; will retry",
                    extra={"event": "drop_file_retry", "file": filename, "attempt": attempts},
                )
                return None
            processor.forget_failures(filename)
            processor.delete_file(filename)
            self._stats["failed"] += 1
            logger.warning(
                "Dropping unparseable drop file",
                extra={"event": "drop_file_discarded", "file": filename, "reason": exc.reason},
            )
            return None

        processor.forget_failures(filename)
        processor.delete_file(filename)
        return data

    def _ignored(self, record: CapturedPrompt | CapturedResponse, filename: str) -> bool:
        segment = matching_ignored_segment(record.workspace_path())
        if segment is None:
            return False
        self._stats["ignored"] += 1
        logger.info(
            "Ignoring drop file from internal workspace",
            extra={"event": "drop_file_ignored", "file": filename, "segment": segment},
        )
        return True

    async def _handle_prompt_file(self, filename: str) -> None:
        if self._prompts.is_processed(filename):
            return
        self._prompts.mark_processed(filename)
        token = set_correlation_id(filename)
        try:
            data = self._read(self._prompts, filename, ("id", "prompt"))
            if data is None:
                return
            data.setdefault("source", infer_prompt_source(filename))
            try:
                prompt = CapturedPrompt.model_validate(data)
            except ValidationError as exc:
                self._stats["failed"] += 1
                logger.warning(
                    "Prompt drop file has an invalid shape",
                    extra={"event": "drop_file_invalid", "file": filename, "error": str(exc)},
                )
                return
            if self._ignored(prompt, filename):
                return
            try:
                await self._deliver_prompt(prompt)
            except Exception:  # session store is downstream code
                self._stats["failed"] += 1
                logger.exception(
                    "Session store rejected prompt",
                    extra={"event": "prompt_delivery_failed", "file": filename},
                )
        finally:
            reset_correlation_id(token)

    async def _deliver_prompt(self, prompt: CapturedPrompt) -> None:
        prompt_id = await _maybe_await(self._store.on_prompt_detected(prompt))
        await _maybe_await(self._store.sync_session_context(prompt))
        self._stats["prompts"] += 1

        key = prompt.link_key()
        if key:
            self._links[key] = _Link(prompt_id, prompt, self._clock() + self._config.link_ttl_seconds)
            self._conversation(key, prompt.timestamp).prompts.append(prompt.id)

        logger.info(
            "Prompt captured",
            extra={
                "event": "prompt_detected",
                "source": prompt.source,
                "prompt_id": prompt_id,
                "link_key": key,
                "prompt_preview": preview(prompt.prompt),
            },
        )
        await self._emit("promptDetected", {"prompt": prompt, "prompt_id": prompt_id})

    async def _handle_response_file(self, filename: str) -> None:
        if self._responses.is_processed(filename):
            return
        self._responses.mark_processed(filename)
        token = set_correlation_id(filename)
        try:
            data = self._read(self._responses, filename, ("id",))
            if data is None:
                return
            data.setdefault("source", infer_response_source(filename))
            if filename.startswith("cursor-response-final-"):
                data.setdefault("isFinal", True)
            try:
                response = CapturedResponse.model_validate(data)
            except ValidationError as exc:
                self._stats["failed"] += 1
                logger.warning(
                    "Response drop file has an invalid shape",
                    extra={"event": "drop_file_invalid", "file": filename, "error": str(exc)},
                )
                return
            if self._ignored(response, filename):
                return
            try:
                linked = await self._try_link(response)
            except Exception:  # session store is downstream code
                self._stats["failed"] += 1
                logger.exception(
                    "Session store rejected response",
                    extra={"event": "response_delivery_failed", "file": filename},
                )
                return
            if not linked:
                self._park(response, filename)
        finally:
            reset_correlation_id(token)

    def _lookup_link(self, response: CapturedResponse) -> _Link | None:
        key = response.link_key()
        if key is None:
            return None
        link = self._links.get(key)
        if link is None or link.expires_at <= self._clock():
            return None
        return link

    async def _try_link(self, response: CapturedResponse) -> bool:
        if response.prompt_id:
            await self._deliver_response(response, response.prompt_id, None)
            return True
        link = self._lookup_link(response)
        if link is None:
            return False
        await self._deliver_response(response, link.prompt_id, link)
        return True

    def _park(self, response: CapturedResponse, filename: str) -> None:
        self._parked[response.id] = _Parked(response, filename, self._clock())
        logger.debug(
            "Response waiting for its prompt",
            extra={"event": "response_parked", "file": filename, "link_key": response.link_key()},
        )

    async def _recheck_parked(self) -> None:
        now = self._clock()
        for response_id, parked in list(self._parked.items()):
            try:
                linked = await self._try_link(parked.response)
            except Exception:  # session store is downstream code
                del self._parked[response_id]
                self._stats["failed"] += 1
                logger.exception(
                    "Session store rejected response",
                    extra={"event": "response_delivery_failed", "file": parked.filename},
                )
                continue
            if linked:
                del self._parked[response_id]
                continue
            expired = now - parked.parked_at >= self._config.response_grace_seconds
            if expired or parked.response.link_key() is None:
                del self._parked[response_id]
                await self._drop_response(parked)

    async def _drop_response(self, parked: _Parked) -> None:
        self._stats["dropped"] += 1
        logger.warning(
            "Dropping response with no matching prompt",
            extra={
                "event": "response_dropped",
                "file": parked.filename,
                "link_key": parked.response.link_key(),
            },
        )
        await self._emit("responseDropped", {"response": parked.response})

    async def _deliver_response(self, response: CapturedResponse, prompt_id: str, link: _Link | None) -> None:
        response.prompt_id = prompt_id
        if link is not None:
            response.prompt_text = link.prompt.prompt
            response.prompt_timestamp = link.prompt.timestamp

        await _maybe_await(self._store.add_response(prompt_id, response))
        self._stats["responses"] += 1

        key = response.link_key()
        conversation = self._conversation(key, response.timestamp) if key else None
        if conversation is not None:
            conversation.responses.append(response.id)
            conversation.files_modified.update(response.files_modified)
            conversation.tools_used.update(call.name for call in response.tool_calls)

        logger.info(
            "Response captured",
            extra={
                "event": "response_detected",
                "source": response.source,
                "prompt_id": prompt_id,
                "link_key": key,
                "final": response.is_final,
                "response_preview": preview(response.response),
            },
        )
        linked_prompt = link.prompt if link is not None else None
        await self._emit("responseDetected", {"response": response, "linked_prompt": linked_prompt})

        if response.is_final and key:
            state = self.build_conversation_state(key, response)
            self._conversations.pop(key, None)
            await self._emit(
                "finalResponseDetected",
                {"response": response, "linked_prompt": linked_prompt, "conversation_state": state},
            )

    # conversation state

    def _conversation(self, key: str, started: datetime) -> _Conversation:
        conversation = self._conversations.get(key)
        if conversation is None:
            conversation = _Conversation(key.split(":", 1)[-1], started, self._clock())
            self._conversations[key] = conversation
        conversation.last_seen = self._clock()
        return conversation

    def build_conversation_state(self, key: str, final: CapturedResponse) -> ConversationState:
        conversation = self._conversations.get(key) or _Conversation(
            key.split(":", 1)[-1], final.timestamp, self._clock()
        )
        files = conversation.files_modified | set(final.files_modified)
        tools = conversation.tools_used | {call.name for call in final.tool_calls}
        duration = final.timestamp - conversation.start_time
        return ConversationState(
            conversation_id=conversation.conversation_id,
            start_time=conversation.start_time,
            end_time=final.timestamp,
            duration_ms=max(0, int(duration.total_seconds() * 1000)),
            total_prompts=len(conversation.prompts),
            total_responses=len(conversation.responses),
            stop_reason=final.stop_reason or "completed",
            loop_count=final.loop_count or 0,
            files_modified=sorted(files),
            tools_used=sorted(tools),
        )

    def _expire(self) -> None:
        now = self._clock()
        for key in [key for key, link in self._links.items() if link.expires_at <= now]:
            del self._links[key]
        for key in [
            key
            for key, conversation in self._conversations.items()
            if now - conversation.last_seen > CONVERSATION_TTL_SECONDS
        ]:
            del self._conversations[key]

    # introspection

    def get_status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "hook_dir": str(self.hook_dir),
            "file_watcher": self._observer is not None,
            "poll_interval_seconds": self._config.poll_interval_seconds,
            "processed_prompt_files": self._prompts.processed_count,
            "processed_response_files": self._responses.processed_count,
            "active_links": len(self._links),
            "parked_responses": len(self._parked),
            "active_conversations": len(self._conversations),
            "stats": dict(self._stats),
        }
