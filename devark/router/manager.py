"""LLM manager: owns provider instances and routes completions."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from devark.core.exceptions import (
    AuthenticationRequiredError,
    ConfigurationError,
    DevarkError,
    ProviderUnavailableError,
)
from devark.providers.base import (
    CompletionOptions,
    CompletionResponse,
    ConnectionTestResult,
    FeatureType,
    LLMProvider,
    ModelInfo,
    ProviderMetadata,
    StreamChunk,
)
from devark.settings.llm_settings import LLMSettingsManager

from .registry import ProviderRegistry

logger = logging.getLogger("devark.manager")

MISSING_KEY_MARKER = "requires an API key"


def parse_feature_model(value: str | None) -> tuple[str, str] | None:
    """Split ``providerId:modelId`` on the first colon."""
    if not value:
        return None
    provider_id, sep, model_id = value.partition(":")
    if not sep or not provider_id or not model_id:
        return None
    return provider_id, model_id


class LLMManager:
    def __init__(self, registry: ProviderRegistry, settings: LLMSettingsManager) -> None:
        self._registry = registry
        self._settings = settings
        self._providers: dict[str, LLMProvider] = {}
        self._active: LLMProvider | None = None
        self._initialized = False

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def settings(self) -> LLMSettingsManager:
        return self._settings

    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        if self._initialized:
            return

        config = self._settings.get_config()
        validation = self._settings.validate_config()
        if not validation["valid"]:
            raise ConfigurationError(
                "LLM configuration is invalid:\n" + "\n".join(validation["errors"]),
                errors=validation["errors"],
            )

        await self._initialize_providers(config)

        active_id = config["provider"]
        provider = self._providers.get(active_id)
        if provider is None:
            raise ConfigurationError(
                f"Failed to initialize {active_id} provider. "
                "Please check your configuration and ensure the provider is available."
            )
        self._active = provider
        self._initialized = True
        logger.info(
            "LLM manager initialized",
            extra={
                "event": "manager_initialized",
                "active_provider": active_id,
                "configured_providers": sorted(self._providers),
            },
        )

    async def _initialize_providers(self, config: dict[str, Any]) -> None:
        self._providers = {}
        available = self._registry.list_available()
        if not available:
            raise ConfigurationError("No LLM providers are registered.")

        for metadata in available:
            provider_config = config.get(metadata.id)
            if not provider_config or provider_config.get("enabled") is False:
                continue
            try:
                provider = await self._registry.get_provider(metadata.id, provider_config)
            except AuthenticationRequiredError as exc:
                if MISSING_KEY_MARKER in exc.message:
                    logger.info(
                        "Skipping provider without API key",
                        extra={"event": "provider_skipped", "provider_id": metadata.id},
                    )
                    continue
                raise ConfigurationError(
                    f"Failed to initialize {metadata.display_name} provider: {exc.message}"
                ) from exc
            except DevarkError as exc:
                raise ConfigurationError(
                    f"Failed to initialize {metadata.display_name} provider: {exc}"
                ) from exc
            self._providers[metadata.id] = provider

        if not self._providers:
            names = ", ".join(metadata.display_name for metadata in available)
            raise ConfigurationError(
                f"No LLM providers are configured. Please configure at least one provider ({names})."
            )

    def _require_active(self) -> LLMProvider:
        if self._active is None:
            raise ProviderUnavailableError("none", message="No active provider. Call initialize() first.")
        return self._active

    def get_active_provider(self) -> LLMProvider | None:
        return self._active

    def get_provider(self, provider_id: str) -> LLMProvider | None:
        return self._providers.get(provider_id)

    async def generate_completion(self, options: CompletionOptions) -> CompletionResponse:
        return await self._require_active().generate_completion(options)

    async def stream_completion(self, options: CompletionOptions) -> AsyncIterator[StreamChunk]:
        provider = self._require_active()
        async for chunk in provider.stream_completion(options):
            yield chunk

    async def list_models(self) -> list[ModelInfo]:
        return await self._require_active().list_models()

    async def test_all_providers(self) -> dict[str, ConnectionTestResult]:
        results: dict[str, ConnectionTestResult] = {}
        for provider_id, provider in self._providers.items():
            try:
                results[provider_id] = await provider.test_connection()
            except Exception as exc:  # a misbehaving provider must not hide the others
                results[provider_id] = ConnectionTestResult(success=False, error=f"Test failed: {exc}")
        return results

    async def switch_provider(self, provider_id: str) -> None:
        provider = self._providers.get(provider_id)
        if provider is None:
            raise ProviderUnavailableError(
                provider_id,
                message=f"Provider '{provider_id}' is not available. Please configure it in settings first.",
            )
        if not await provider.is_available():
            raise ProviderUnavailableError(
                provider_id,
                message=(
                    f"Provider '{provider_id}' is not accessible. "
                    "Please check your configuration and ensure the provider is running."
                ),
            )
        self._active = provider
        self._settings.set_active_provider(provider_id)
        logger.info("Switched active provider", extra={"event": "provider_switched", "provider_id": provider_id})

    # per-feature routing

    def _feature_override(self, feature: FeatureType) -> tuple[str, str] | None:
        raw = self._settings.get_feature_model(feature)
        parsed = parse_feature_model(raw)
        if raw and parsed is None:
            logger.warning(
                "Malformed feature model override; using active provider",
                extra={"event": "feature_override_invalid", "feature": feature, "value": raw},
            )
        return parsed

    def get_provider_for_feature(self, feature: FeatureType) -> LLMProvider | None:
        override = self._feature_override(feature)
        if override is None:
            return self._active
        provider = self._providers.get(override[0])
        if provider is None:
            logger.warning(
                "Feature override names an unconfigured provider; using active provider",
                extra={"event": "feature_override_unknown", "feature": feature, "provider_id": override[0]},
            )
            return self._active
        return provider

    def get_model_for_feature(self, feature: FeatureType) -> str | None:
        override = self._feature_override(feature)
        if override is None or override[0] not in self._providers:
            return None
        return override[1]

    async def generate_completion_for_feature(
        self, feature: FeatureType, options: CompletionOptions
    ) -> CompletionResponse:
        provider = self.get_provider_for_feature(feature)
        if provider is None:
            raise ProviderUnavailableError("none", message=f"No provider available for feature: {feature}")
        model = self.get_model_for_feature(feature)
        if model:
            options = options.model_copy(update={"model": model})
        return await provider.generate_completion(options)

    # introspection

    def get_active_provider_info(self) -> dict[str, Any] | None:
        if self._active is None:
            return None
        return {"type": self._active.provider_id, "model": self._active.model, "available": True}

    def get_configured_providers(self) -> list[str]:
        return list(self._providers)

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def get_available_providers(self) -> list[ProviderMetadata]:
        return self._registry.list_available()

    def get_status_summary(self) -> dict[str, Any]:
        return {
            "initialized": self._initialized,
            "registered_providers": [metadata.id for metadata in self._registry.list_available()],
            "configured_providers": self.get_configured_providers(),
            "active_provider": self._active.provider_id if self._active else None,
            "active_model": self._active.model if self._active else None,
        }

    async def reinitialize(self) -> None:
        await self.dispose()
        await self.initialize()

    async def dispose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
        self._initialized = False
        self._active = None
        self._providers = {}
