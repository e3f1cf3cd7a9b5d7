"""Wiring of the long-lived components the HTTP surface exposes."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request

from devark.core.config import AppConfig, build_settings_store
from devark.core.exceptions import ConfigurationError
from devark.hooks.pipeline import HookPipeline
from devark.hooks.session_store import InMemorySessionStore, SessionStore
from devark.router.bootstrap import build_registry
from devark.router.detection import ProviderDetectionService
from devark.router.manager import LLMManager
from devark.router.registry import ProviderRegistry
from devark.settings.gateway import SettingsGateway
from devark.settings.llm_settings import LLMSettingsManager
from devark.storage.credentials import SecretStore, init_db

logger = logging.getLogger("devark.app")


@dataclass
class Services:
    config: AppConfig
    gateway: SettingsGateway
    llm_settings: LLMSettingsManager
    secret_store: SecretStore
    registry: ProviderRegistry
    manager: LLMManager
    detection: ProviderDetectionService
    session_store: SessionStore
    pipeline: HookPipeline

    async def initialize_manager(self) -> bool:
        """(Re)build provider instances; a bad configuration leaves the manager empty."""
        try:
            await self.manager.reinitialize()
        except ConfigurationError as exc:
            logger.warning(
                "LLM manager not initialized",
                extra={"event": "manager_init_failed", "errors": exc.errors or [str(exc)]},
            )
            return False
        finally:
            self.detection.clear_cache()
        return True

    async def start(self) -> None:
        await self.initialize_manager()
        if self.gateway.get("detection.useHooks"):
            await self.pipeline.start()

    async def shutdown(self) -> None:
        await self.pipeline.dispose()
        await self.manager.dispose()
        self.gateway.dispose()


def build_services(config: AppConfig) -> Services:
    init_db()
    gateway = SettingsGateway(build_settings_store(config))
    llm_settings = LLMSettingsManager(gateway)
    secret_store = SecretStore()
    registry = build_registry(secret_store)
    manager = LLMManager(registry, llm_settings)
    session_store = InMemorySessionStore()
    return Services(
        config=config,
        gateway=gateway,
        llm_settings=llm_settings,
        secret_store=secret_store,
        registry=registry,
        manager=manager,
        detection=ProviderDetectionService(manager, config),
        session_store=session_store,
        pipeline=HookPipeline(session_store, config.hooks),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services
