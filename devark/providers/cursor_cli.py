"""Cursor CLI (``cursor-agent``) provider."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from .base import (
    CompletionOptions,
    ConfigField,
    ConnectionTestResult,
    ModelInfo,
    ProviderCapabilities,
    ProviderMetadata,
)
from .cli_base import CLIConfig, CLIProvider
from .commands import run_command

logger = logging.getLogger("devark.providers.cursor_cli")

COMMAND = "cursor-agent"
DEFAULT_MODEL = "auto"

_LOGGED_IN_RE = re.compile(r"Logged in as (.+)")
_MODEL_LINE_RE = re.compile(r"^([a-zA-Z0-9._-]+)(?::\s*(.+))?$")

FALLBACK_MODELS: list[ModelInfo] = [
    ModelInfo(id="auto", name="Auto (recommended)", description="Automatically selects the best model"),
    ModelInfo(id="claude-4-sonnet", name="Claude 4 Sonnet"),
    ModelInfo(id="claude-4-opus", name="Claude 4 Opus"),
    ModelInfo(id="gpt-4o", name="GPT-4o"),
    ModelInfo(id="gpt-4o-mini", name="GPT-4o Mini"),
    ModelInfo(id="gemini-2.0-flash", name="Gemini 2.0 Flash"),
]

METADATA = ProviderMetadata(
    id="cursor-cli",
    display_name="Cursor CLI",
    description="Cursor CLI tool with streaming JSON output (requires cursor-agent login)",
    requires_auth=False,
    supports_streaming=True,
    supports_cost_tracking=False,
    config_schema={
        "model": ConfigField(
            type="string",
            default=DEFAULT_MODEL,
            description="Cursor model to use (auto recommended to avoid rate limits)",
        ),
        "enabled": ConfigField(type="boolean", default=False, description="Enable Cursor CLI provider"),
    },
)


def parse_models_output(output: str) -> list[ModelInfo]:
    """Parse ``--list-models`` output: JSON lines first, then ``id[: name]`` lines."""
    models: list[ModelInfo] = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict) and parsed.get("id"):
            models.append(
                ModelInfo(
                    id=parsed["id"],
                    name=parsed.get("name") or parsed["id"],
                    description=parsed.get("description"),
                )
            )
            continue
        match = _MODEL_LINE_RE.match(line)
        if match:
            models.append(ModelInfo(id=match.group(1), name=match.group(2) or match.group(1)))
    return models


class CursorCLIProvider(CLIProvider):
    provider_id = "cursor-cli"
    capabilities = ProviderCapabilities(
        streaming=True,
        cost_tracking=False,
        model_listing=True,
        custom_endpoints=False,
        requires_auth=False,
    )

    def __init__(self, config: dict[str, Any]) -> None:
        model = config.get("model") or DEFAULT_MODEL
        super().__init__(
            {**config, "model": model},
            CLIConfig(
                command=COMMAND,
                args=["-p", "--model", model, "--output-format", "stream-json"],
                output_format="stream-json",
                prompt_delivery="argument",
            ),
            default_model=DEFAULT_MODEL,
        )

    def build_args(self, options: CompletionOptions) -> list[str]:
        # cursor-agent takes neither --temperature nor --max-tokens.
        return ["-p", "--model", options.model or self._model, "--output-format", "stream-json"]

    def build_prompt(self, options: CompletionOptions) -> str:
        if options.system_prompt:
            return f"{options.system_prompt}\n\n{options.prompt}"
        return options.prompt

    async def check_login_status(self) -> dict[str, Any]:
        try:
            result = await run_command(COMMAND, ["status"])
        except OSError as exc:
            return {"logged_in": False, "error": f"Failed to check login status: {exc}"}

        match = _LOGGED_IN_RE.search(result.stdout)
        if match:
            return {"logged_in": True, "email": match.group(1).strip()}
        if result.returncode == 0:
            return {"logged_in": False, "error": "Not logged in to Cursor"}
        return {"logged_in": False, "error": result.stderr or "Failed to check login status"}

    async def test_connection(self) -> ConnectionTestResult:
        status = await self.check_login_status()
        if not status["logged_in"]:
            return ConnectionTestResult(
                success=False,
                error=status.get("error")
                or 'Not logged in to Cursor. Run "cursor-agent login" to authenticate via browser.',
            )
        result = await super().test_connection()
        if not result.success:
            return result
        return ConnectionTestResult(
            success=True,
            details={"endpoint": f"cursor-agent CLI ({status.get('email') or 'logged in'})"},
        )

    async def list_models(self) -> list[ModelInfo]:
        try:
            result = await run_command(COMMAND, ["--list-models"])
        except OSError:
            logger.info("cursor-agent --list-models could not be run", extra={"provider_id": self.provider_id})
        else:
            if result.returncode == 0:
                models = parse_models_output(result.stdout)
                if models:
                    return models
            else:
                logger.info(
                    "cursor-agent --list-models failed",
                    extra={"provider_id": self.provider_id, "returncode": result.returncode},
                )
        return list(FALLBACK_MODELS)


def create_cursor_cli_provider(config: dict[str, Any]) -> CursorCLIProvider:
    return CursorCLIProvider(config)
