"""Claude Agent SDK provider.

Runs each query through the locally logged-in Claude Code installation. Every
query gets its own scratch working directory so the agent never resumes a
cached session, and both that directory and the project folder Claude Code
creates for it are removed afterwards.
"""

from __future__ import annotations

import importlib.util
import logging
import os
import pathlib
import re
import secrets
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from devark.core.config import ANALYSIS_DIR_NAME
from devark.core.exceptions import ProviderUnavailableError

from .base import (
    CompletionOptions,
    CompletionResponse,
    ConfigField,
    ConnectionTestResult,
    Cost,
    LLMProvider,
    ModelInfo,
    ProviderCapabilities,
    ProviderMetadata,
    StreamChunk,
    Usage,
)

logger = logging.getLogger("devark.providers.claude_agent_sdk")

PROVIDER_ID = "claude-agent-sdk"
SDK_PACKAGE = "claude_agent_sdk"
DEFAULT_MODEL = "haiku"

SDK_NOT_INSTALLED_ERROR = (
    "Claude Agent SDK not installed.\n\n"
    "To use this provider, install the SDK:\n"
    "  pip install claude-agent-sdk\n\n"
    "Also requires Claude Code to be installed and logged in."
)

# Listed by name; an empty allow-list alone does not stop the agent from using them.
BUILTIN_TOOLS = [
    "Task",
    "Bash",
    "Glob",
    "Grep",
    "LS",
    "ExitPlanMode",
    "Read",
    "Edit",
    "MultiEdit",
    "Write",
    "NotebookEdit",
    "WebFetch",
    "TodoWrite",
    "WebSearch",
    "BashOutput",
    "KillShell",
    "SlashCommand",
]

MODELS: list[ModelInfo] = [
    ModelInfo(id="haiku", name="Claude Haiku", description="Fast model, ideal for scoring"),
    ModelInfo(id="sonnet", name="Claude Sonnet", description="Balanced speed and quality"),
    ModelInfo(id="opus", name="Claude Opus", description="Most capable model"),
]

METADATA = ProviderMetadata(
    id=PROVIDER_ID,
    display_name="Claude Agent SDK",
    description="Requires: pip install claude-agent-sdk",
    requires_auth=False,
    supports_streaming=True,
    supports_cost_tracking=True,
    config_schema={
        "model": ConfigField(
            type="string", default=DEFAULT_MODEL, description="Claude model (haiku, sonnet, opus)"
        ),
        "enabled": ConfigField(
            type="boolean", default=False, description="Enable Claude Agent SDK provider"
        ),
    },
)

_PATH_SEPARATORS = re.compile(r"[:\\/]")


def sdk_installed() -> bool:
    return importlib.util.find_spec(SDK_PACKAGE) is not None


def _load_sdk():
    try:
        import claude_agent_sdk
    except ImportError as exc:
        raise ProviderUnavailableError(PROVIDER_ID, message=SDK_NOT_INSTALLED_ERROR) from exc
    return claude_agent_sdk


def scratch_root() -> pathlib.Path:
    return pathlib.Path(tempfile.gettempdir()) / ANALYSIS_DIR_NAME


def project_folder_for(cwd: pathlib.Path) -> pathlib.Path:
    """Claude Code's per-cwd project folder: the real path with separators replaced by ``-``."""
    sanitized = _PATH_SEPARATORS.sub("-", os.path.realpath(cwd))
    return pathlib.Path.home() / ".claude" / "projects" / sanitized


def create_scratch_dir() -> pathlib.Path:
    path = scratch_root() / f"query-{int(time.time() * 1000)}-{secrets.token_hex(4)}"
    path.mkdir(parents=True, exist_ok=True)
    return path


def cleanup_scratch_dir(path: pathlib.Path) -> None:
    project_folder = project_folder_for(path)
    for target in (path, project_folder):
        try:
            shutil.rmtree(target)
        except FileNotFoundError:
            continue
        except OSError:
            logger.debug("Scratch cleanup failed", extra={"path_tail": target.name})


@dataclass
class _QueryOutcome:
    parts: list[str] = field(default_factory=list)
    result_text: str | None = None
    saw_delta: bool = False
    usage: Usage | None = None
    cost: Cost | None = None
    error: str | None = None

    @property
    def text(self) -> str:
        return "".join(self.parts) or (self.result_text or "")


class ClaudeAgentSDKProvider(LLMProvider):
    provider_id = PROVIDER_ID
    capabilities = ProviderCapabilities(
        streaming=True,
        cost_tracking=True,
        model_listing=True,
        custom_endpoints=False,
        requires_auth=False,
    )

    def __init__(self, config: dict[str, Any]) -> None:
        super().__init__(config)
        self._model: str = config.get("model") or DEFAULT_MODEL

    @property
    def model(self) -> str:
        return self._model

    def _options(self, sdk, options: CompletionOptions, cwd: pathlib.Path, stream: bool):
        return sdk.ClaudeAgentOptions(
            system_prompt=options.system_prompt,
            model=options.model or self._model,
            allowed_tools=[],
            disallowed_tools=list(BUILTIN_TOOLS),
            permission_mode="bypassPermissions",
            max_turns=1,
            cwd=str(cwd),
            setting_sources=[],
            include_partial_messages=stream,
        )

    def _absorb(self, sdk, message: Any, outcome: _QueryOutcome) -> list[str]:
        """Fold one SDK message into ``outcome`` and return any newly produced text."""
        new_text: list[str] = []
        if isinstance(message, sdk.AssistantMessage):
            if outcome.saw_delta:
                return new_text
            for block in message.content:
                # Thinking blocks are not TextBlocks and are skipped.
                if isinstance(block, sdk.TextBlock) and block.text:
                    new_text.append(block.text)
        elif isinstance(message, sdk.ResultMessage):
            if message.total_cost_usd is not None:
                outcome.cost = Cost(amount=message.total_cost_usd, currency="USD")
            usage = message.usage or {}
            if usage:
                prompt_tokens = int(usage.get("input_tokens") or 0)
                completion_tokens = int(usage.get("output_tokens") or 0)
                outcome.usage = Usage(
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    total_tokens=prompt_tokens + completion_tokens,
                )
            if message.is_error:
                outcome.error = message.result or "query failed"
            elif message.result:
                outcome.result_text = message.result
        else:
            event = getattr(message, "event", None)
            if isinstance(event, dict):
                if event.get("type") == "content_block_delta":
                    text = (event.get("delta") or {}).get("text")
                    if text:
                        outcome.saw_delta = True
                        new_text.append(text)
                elif event.get("type") == "text" and event.get("text"):
                    outcome.saw_delta = True
                    new_text.append(event["text"])
        outcome.parts.extend(new_text)
        return new_text

    async def _query(self, options: CompletionOptions, stream: bool) -> AsyncIterator[tuple[list[str], _QueryOutcome]]:
        sdk = _load_sdk()
        cwd = create_scratch_dir()
        outcome = _QueryOutcome()
        try:
            client = sdk.ClaudeSDKClient(options=self._options(sdk, options, cwd, stream))
            await client.connect()
            try:
                await client.query(options.prompt)
                async for message in client.receive_response():
                    new_text = self._absorb(sdk, message, outcome)
                    if new_text:
                        yield new_text, outcome
            finally:
                await client.disconnect()
        finally:
            cleanup_scratch_dir(cwd)
        yield [], outcome

    async def is_available(self) -> bool:
        if not sdk_installed():
            return False
        result = await self.test_connection()
        return result.success

    async def test_connection(self) -> ConnectionTestResult:
        try:
            _load_sdk()
        except ProviderUnavailableError as exc:
            return ConnectionTestResult(success=False, error=exc.message)

        response = await self.generate_completion(CompletionOptions(prompt='Say "ok"', max_tokens=10))
        if response.error:
            lowered = response.error.lower()
            if "not found" in lowered or "enoent" in lowered:
                error = "Claude Code not installed. Please install Claude Code first."
            elif "not logged in" in lowered or "auth" in lowered:
                error = 'Not logged into Claude Code. Run "claude login" first.'
            else:
                error = response.error
            return ConnectionTestResult(success=False, error=error)
        if not response.text:
            return ConnectionTestResult(success=False, error="No response from Claude SDK")
        return ConnectionTestResult(success=True, details={"endpoint": "local Claude Code"})

    async def list_models(self) -> list[ModelInfo]:
        return list(MODELS)

    async def generate_completion(self, options: CompletionOptions) -> CompletionResponse:
        model = options.model or self._model
        outcome = _QueryOutcome()
        try:
            async for _, outcome in self._query(options, stream=False):
                pass
        except ProviderUnavailableError as exc:
            return self._failure(exc.message, model)
        except Exception as exc:  # SDK transport errors have no common base class
            logger.warning(
                "Claude Agent SDK query failed",
                extra={"event": "provider_fail", "provider_id": self.provider_id, "model": model},
            )
            return self._failure(f"Claude Agent SDK error: {exc}", model)

        if outcome.error:
            return self._failure(f"Claude Agent SDK error: {outcome.error}", model)
        return CompletionResponse(
            text=outcome.text,
            model=model,
            provider=self.provider_id,
            usage=outcome.usage,
            cost=outcome.cost,
        )

    async def stream_completion(self, options: CompletionOptions) -> AsyncIterator[StreamChunk]:
        model = options.model or self._model
        outcome = _QueryOutcome()
        try:
            async for new_text, outcome in self._query(options, stream=True):
                for text in new_text:
                    yield StreamChunk(text=text, model=model, provider=self.provider_id)
        except ProviderUnavailableError as exc:
            yield self._terminal_chunk(model=model, error=exc.message)
            return
        except Exception as exc:  # SDK transport errors have no common base class
            yield self._terminal_chunk(model=model, error=f"Claude Agent SDK streaming error: {exc}")
            return

        if outcome.error:
            yield self._terminal_chunk(
                model=model, error=f"Claude Agent SDK streaming error: {outcome.error}"
            )
            return
        # Deltas-free runs only carry the text in the result record.
        text = "" if outcome.parts else (outcome.result_text or "")
        yield StreamChunk(
            text=text,
            is_complete=True,
            model=model,
            provider=self.provider_id,
            usage=outcome.usage,
            cost=outcome.cost,
        )


def create_claude_agent_sdk_provider(config: dict[str, Any]) -> ClaudeAgentSDKProvider:
    return ClaudeAgentSDKProvider(config)
