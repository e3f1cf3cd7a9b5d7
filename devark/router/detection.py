"""Environment probing that reports a status per registered provider."""

from __future__ import annotations

import asyncio
import importlib.util
import logging
import time
from typing import Callable, Literal

import httpx
from pydantic import BaseModel

from devark.core.config import AppConfig, load_config
from devark.core.exceptions import ProviderUnavailableError
from devark.providers import cursor_cli
from devark.providers.base import ProviderMetadata
from devark.providers.claude_agent_sdk import SDK_PACKAGE
from devark.providers.commands import command_exists
from devark.providers.ollama import DEFAULT_ENDPOINT as OLLAMA_DEFAULT_ENDPOINT

from .manager import LLMManager

logger = logging.getLogger("devark.detection")

CACHE_TTL_SECONDS = 30.0
DIRECT_PROBE_TIMEOUT = 3.0

ProviderType = Literal["cli", "local", "cloud"]
Status = Literal["connected", "available", "not-detected", "not-running", "not-configured"]

CURSOR_ORDER = ["cursor-cli", "claude-agent-sdk", "ollama", "openrouter"]
DEFAULT_ORDER = ["claude-agent-sdk", "cursor-cli", "ollama", "openrouter"]

DESCRIPTIONS = {
    "cursor-cli": "Your Cursor subscription",
    "claude-agent-sdk": "Your Claude subscription",
    "ollama": "Free, local, private",
    "openrouter": "Needs API key",
}

PROVIDER_TYPES: dict[str, ProviderType] = {
    "cursor-cli": "cli",
    "claude-agent-sdk": "local",
    "ollama": "local",
}


class ProviderStatus(BaseModel):
    id: str
    name: str
    type: ProviderType
    status: Status
    model: str | None = None
    available_models: list[str] | None = None
    description: str | None = None
    requires_api_key: bool = False


def sdk_package_installed() -> bool:
    return importlib.util.find_spec(SDK_PACKAGE) is not None


async def probe_local_server(endpoint: str = OLLAMA_DEFAULT_ENDPOINT) -> bool:
    try:
        async with httpx.AsyncClient(timeout=DIRECT_PROBE_TIMEOUT) as client:
            response = await client.get(f"{endpoint}/api/version")
    except httpx.HTTPError:
        return False
    return not response.is_error


class ProviderDetectionService:
    def __init__(
        self,
        manager: LLMManager,
        config: AppConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._manager = manager
        self._config = config or load_config()
        self._clock = clock
        self._cache: tuple[list[ProviderStatus], float] | None = None

    def _order(self) -> list[str]:
        return CURSOR_ORDER if self._config.is_cursor_host else DEFAULT_ORDER

    def _sort_key(self, status: ProviderStatus) -> int:
        order = self._order()
        return order.index(status.id) if status.id in order else len(order)

    async def detect_all(self) -> list[ProviderStatus]:
        cached = self.get_cached()
        if cached is not None:
            return cached

        metadata = self._manager.get_available_providers()
        statuses = await asyncio.gather(*(self._build_status(meta) for meta in metadata))
        ordered = sorted(statuses, key=self._sort_key)
        self._cache = (ordered, self._clock())
        logger.debug(
            "Provider detection finished",
            extra={"event": "detection_complete", "statuses": {s.id: s.status for s in ordered}},
        )
        return ordered

    async def detect_one(self, provider_id: str) -> ProviderStatus:
        for meta in self._manager.get_available_providers():
            if meta.id == provider_id:
                return await self._build_status(meta)
        raise ProviderUnavailableError(provider_id, message=f"Provider '{provider_id}' not found in registry")

    def get_cached(self) -> list[ProviderStatus] | None:
        if self._cache is None:
            return None
        providers, stamp = self._cache
        if self._clock() - stamp >= CACHE_TTL_SECONDS:
            return None
        return providers

    def clear_cache(self) -> None:
        self._cache = None

    def get_active_provider_id(self) -> str | None:
        info = self._manager.get_active_provider_info()
        return info["type"] if info else None

    async def _build_status(self, meta: ProviderMetadata) -> ProviderStatus:
        status = await self._status_for(meta)
        model: str | None = None
        available_models: list[str] | None = None
        instance = self._manager.get_provider(meta.id)

        if meta.id == "ollama" and instance is not None and status == "connected":
            try:
                models = await instance.list_models()
            except ProviderUnavailableError:
                logger.info("Could not list local models", extra={"provider_id": meta.id})
            else:
                available_models = [m.id for m in models]
                if instance.model in available_models:
                    model = instance.model
                elif available_models:
                    model = available_models[0]
        elif meta.id == "openrouter" and instance is not None:
            model = instance.model

        return ProviderStatus(
            id=meta.id,
            name=meta.display_name,
            type=PROVIDER_TYPES.get(meta.id, "cloud"),
            status=status,
            model=model,
            available_models=available_models,
            description=DESCRIPTIONS.get(meta.id, "LLM provider"),
            requires_api_key=meta.id == "openrouter",
        )

    async def _status_for(self, meta: ProviderMetadata) -> Status:
        instance = self._manager.get_provider(meta.id)
        active_id = self.get_active_provider_id()

        if active_id == meta.id:
            if meta.id == "ollama" and instance is not None and not await instance.is_available():
                return "not-running"
            return "connected"

        if meta.id == "claude-agent-sdk" and instance is None:
            return "available" if sdk_package_installed() else "not-detected"

        if meta.id == "cursor-cli" and instance is None:
            return "available" if command_exists(cursor_cli.COMMAND) else "not-detected"

        if meta.id == "ollama":
            if instance is not None:
                return "connected" if await instance.is_available() else "not-running"
            return "available" if await probe_local_server() else "not-running"

        if meta.requires_auth and instance is None:
            return "not-configured"

        return "available"
