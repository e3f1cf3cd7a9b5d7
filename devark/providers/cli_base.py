"""Shared plumbing for providers that drive a local CLI tool."""

from __future__ import annotations

import asyncio
import logging
import os
import pathlib
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal

from devark.core.config import default_hook_dir
from devark.core.exceptions import CLIErrorType, CLIProviderError

from .base import (
    CompletionOptions,
    CompletionResponse,
    ConnectionTestResult,
    LLMProvider,
    ModelInfo,
    ProviderCapabilities,
    StreamChunk,
    Usage,
)
from .commands import command_exists
from .stream_parser import StreamEvent, StreamJSONParser

logger = logging.getLogger("devark.providers.cli")

OutputFormat = Literal["stream-json", "json", "text"]
PromptDelivery = Literal["stdin", "argument"]

READ_CHUNK_SIZE = 4096

# (substrings, type, suggestion); first match wins.
_ERROR_CLASSES: list[tuple[tuple[str, ...], CLIErrorType, str]] = [
    (
        ("resource_exhausted", "rate limit", "rate_limit"),
        "rate_limit",
        "Wait a few minutes or switch AI provider in Settings",
    ),
    (
        ("not logged in", "unauthorized", "authentication"),
        "auth_failed",
        "Run the CLI login command in your terminal",
    ),
    (
        ("econnrefused", "network", "connection"),
        "network",
        "Check your internet connection",
    ),
]


def classify_error(stderr: str) -> tuple[CLIErrorType, str]:
    lowered = stderr.lower()
    for needles, error_type, suggestion in _ERROR_CLASSES:
        if any(needle in lowered for needle in needles):
            return error_type, suggestion
    return "unknown", "Check the CLI output for details"


def command_not_found_message(command: str) -> str:
    return (
        f"Command '{command}' not found in PATH. "
        "Please ensure it is installed and available in your system PATH."
    )


@dataclass
class CLIConfig:
    command: str
    args: list[str] = field(default_factory=list)
    output_format: OutputFormat = "stream-json"
    prompt_delivery: PromptDelivery = "stdin"
    env: dict[str, str] = field(default_factory=dict)


class CLIProvider(LLMProvider):
    """Runs one child process per completion and parses its JSON event stream.

    The child runs inside the hook drop-box directory so the hook pipeline can
    recognise and discard prompts the copilot issued itself.
    """

    capabilities = ProviderCapabilities(
        streaming=True,
        cost_tracking=False,
        model_listing=False,
        custom_endpoints=False,
        requires_auth=False,
    )

    def __init__(self, config: dict[str, Any], cli_config: CLIConfig, default_model: str = "default") -> None:
        super().__init__(config)
        self.cli_config = cli_config
        self._model: str = config.get("model") or default_model

    @property
    def model(self) -> str:
        return self._model

    @property
    def working_directory(self) -> pathlib.Path:
        return default_hook_dir()

    def build_args(self, options: CompletionOptions) -> list[str]:
        args = list(self.cli_config.args)
        if options.temperature is not None:
            args.extend(["--temperature", str(options.temperature)])
        if options.max_tokens:
            args.extend(["--max-tokens", str(options.max_tokens)])
        return args

    def build_prompt(self, options: CompletionOptions) -> str:
        parts: list[str] = []
        if options.system_prompt:
            parts.append(f"System: {options.system_prompt}")
        parts.append(options.prompt)
        return "\n\n".join(parts)

    async def is_available(self) -> bool:
        if not command_exists(self.cli_config.command):
            return False
        result = await self.test_connection()
        return result.success

    async def test_connection(self) -> ConnectionTestResult:
        if not command_exists(self.cli_config.command):
            return ConnectionTestResult(
                success=False, error=command_not_found_message(self.cli_config.command)
            )
        try:
            await self.generate_completion(CompletionOptions(prompt="Hello", max_tokens=10))
        except CLIProviderError as exc:
            return ConnectionTestResult(success=False, error=exc.message)
        return ConnectionTestResult(
            success=True, details={"endpoint": f"CLI: {self.cli_config.command}"}
        )

    async def list_models(self) -> list[ModelInfo]:
        return [
            ModelInfo(
                id=self._model,
                name=self._model,
                description=f"{self.provider_id} CLI model",
                supports_streaming=True,
            )
        ]

    async def _run(self, args: list[str], prompt: str | None) -> tuple[int | None, list[StreamEvent], str]:
        cwd = self.working_directory
        cwd.mkdir(parents=True, exist_ok=True)
        try:
            process = await asyncio.create_subprocess_exec(
                self.cli_config.command,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd),
                env={**os.environ, **self.cli_config.env},
            )
        except FileNotFoundError as exc:
            raise CLIProviderError(
                command_not_found_message(self.cli_config.command),
                "unknown",
                "Install the CLI or switch AI provider in Settings",
            ) from exc

        parser = StreamJSONParser()
        events: list[StreamEvent] = []

        async def feed_stdin() -> None:
            try:
                if prompt is not None:
                    process.stdin.write(prompt.encode("utf-8"))
                    await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                # The CLI exited without reading its input; stderr and the exit code tell why.
                logger.debug("CLI closed stdin early", extra={"provider_id": self.provider_id})
            finally:
                process.stdin.close()

        async def read_stdout() -> None:
            while True:
                data = await process.stdout.read(READ_CHUNK_SIZE)
                if not data:
                    break
                events.extend(parser.parse_chunk(data.decode("utf-8", errors="replace")))
            events.extend(parser.flush())

        async def read_stderr() -> str:
            data = await process.stderr.read()
            return data.decode("utf-8", errors="replace")

        _, _, stderr = await asyncio.gather(feed_stdin(), read_stdout(), read_stderr())
        returncode = await process.wait()

        if parser.get_stats()["ignored_lines"]:
            logger.debug(
                "Ignored non-JSON CLI output",
                extra={"provider_id": self.provider_id, "ignored_lines": parser.get_stats()["ignored_lines"]},
            )
        return returncode, events, stderr

    async def generate_completion(self, options: CompletionOptions) -> CompletionResponse:
        prompt = self.build_prompt(options)
        args = self.build_args(options)
        use_argument = self.cli_config.prompt_delivery == "argument"
        if use_argument:
            args = [*args, prompt]

        returncode, events, stderr = await self._run(args, None if use_argument else prompt)

        if returncode != 0:
            error_type, suggestion = classify_error(stderr)
            logger.warning(
                "CLI exited with an error",
                extra={
                    "event": "provider_fail",
                    "provider_id": self.provider_id,
                    "returncode": returncode,
                    "error_type": error_type,
                },
            )
            # The prompt itself is left out of the reported argument vector.
            shown_args = args[:-1] if use_argument else args
            raise CLIProviderError(
                f"CLI exited with code {returncode}\n"
                f"Command: {self.cli_config.command} {' '.join(shown_args)}\n"
                f"Error: {stderr[:500]}",
                error_type,
                suggestion,
            )

        text = StreamJSONParser().extract_result(events)
        if not text:
            logger.warning(
                "Empty result extracted from CLI output",
                extra={
                    "provider_id": self.provider_id,
                    "event_count": len(events),
                    "event_types": [event.get("type") for event in events[:10]],
                },
            )
        return CompletionResponse(
            text=text,
            model=options.model or self._model,
            provider=self.provider_id,
            usage=Usage(),
        )

    async def stream_completion(self, options: CompletionOptions) -> AsyncIterator[StreamChunk]:
        model = options.model or self._model
        try:
            response = await self.generate_completion(options)
        except CLIProviderError as exc:
            yield self._terminal_chunk(model=model, error=exc.message)
            return
        yield StreamChunk(
            text=response.text,
            is_complete=True,
            model=model,
            provider=self.provider_id,
            usage=response.usage,
            cost=response.cost,
        )
