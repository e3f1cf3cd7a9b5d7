import logging

import pytest

from devark.core.config import InMemorySettingsStore
from devark.core.exceptions import ConfigurationError, ProviderUnavailableError
from devark.providers.base import (
    CompletionOptions,
    CompletionResponse,
    ConnectionTestResult,
    LLMProvider,
    ProviderMetadata,
)
from devark.router.manager import LLMManager, parse_feature_model
from devark.router.registry import ProviderRegistry
from devark.settings.gateway import SettingsGateway
from devark.settings.llm_settings import LLMSettingsManager


class FakeProvider(LLMProvider):
    def __init__(self, provider_id: str, config: dict) -> None:
        super().__init__(config)
        self.provider_id = provider_id
        self.available = True
        self.closed = False

    @property
    def model(self) -> str:
        return self._config.get("model") or "default"

    async def is_available(self) -> bool:
        return self.available

    async def test_connection(self) -> ConnectionTestResult:
        if self.provider_id == "openrouter":
            raise RuntimeError("boom")
        return ConnectionTestResult(success=True)

    async def generate_completion(self, options: CompletionOptions) -> CompletionResponse:
        return CompletionResponse(
            text=f"{self.provider_id}:{options.prompt}",
            model=options.model or self.model,
            provider=self.provider_id,
        )

    async def aclose(self) -> None:
        self.closed = True


class KeyStore:
    def __init__(self, keys: dict[str, str] | None = None) -> None:
        self.keys = keys or {}

    def get_api_key(self, provider_id: str) -> str | None:
        return self.keys.get(provider_id)


def _metadata(provider_id: str, requires_auth: bool = False) -> ProviderMetadata:
    return ProviderMetadata(
        id=provider_id, display_name=provider_id.title(), description="", requires_auth=requires_auth
    )


def _manager(values: dict, keys: dict[str, str] | None = None):
    created: list[FakeProvider] = []
    registry = ProviderRegistry()
    registry.set_secure_config_store(KeyStore(keys))
    for provider_id, requires_auth in (("ollama", False), ("openrouter", True), ("cursor-cli", False)):

        def factory(config, provider_id=provider_id):
            provider = FakeProvider(provider_id, config)
            created.append(provider)
            return provider

        registry.register(_metadata(provider_id, requires_auth), factory)
    settings = LLMSettingsManager(SettingsGateway(InMemorySettingsStore(values)))
    return LLMManager(registry, settings), settings, created


def test_parse_feature_model():
    assert parse_feature_model("openrouter:meta-llama/llama-3:free") == ("openrouter", "meta-llama/llama-3:free")
    assert parse_feature_model("ollama") is None
    assert parse_feature_model(":model") is None
    assert parse_feature_model("") is None


@pytest.mark.asyncio
async def test_provider_without_key_is_skipped():
    manager, _, _ = _manager({"llm.activeProvider": "ollama"})

    await manager.initialize()

    assert manager.is_initialized()
    assert manager.get_configured_providers() == ["ollama"]
    assert manager.get_active_provider_info() == {"type": "ollama", "model": "default", "available": True}


@pytest.mark.asyncio
async def test_active_provider_must_initialize():
    manager, _, _ = _manager({"llm.activeProvider": "openrouter", "llm.providers": {"openrouter": {"model": "x"}}})

    with pytest.raises(ConfigurationError, match="Failed to initialize openrouter provider"):
        await manager.initialize()


@pytest.mark.asyncio
async def test_invalid_settings_are_rejected():
    manager, _, _ = _manager({"llm.activeProvider": "gemini"})

    with pytest.raises(ConfigurationError) as excinfo:
        await manager.initialize()

    assert "Invalid provider: gemini" in excinfo.value.errors[0]


@pytest.mark.asyncio
async def test_feature_routing_uses_override_model():
    manager, _, _ = _manager(
        {
            "llm.activeProvider": "ollama",
            "llm.providers": {"openrouter": {"model": "anthropic/claude-3.5-sonnet"}},
            "llm.featureModels.enabled": True,
            "llm.featureModels.promptScoring": "openrouter:openai/gpt-4-turbo",
        },
        keys={"openrouter": "router-key"},
    )
    await manager.initialize()

    scored = await manager.generate_completion_for_feature("scoring", CompletionOptions(prompt="rate"))
    summary = await manager.generate_completion_for_feature("summaries", CompletionOptions(prompt="sum"))

    assert scored.provider == "openrouter"
    assert scored.model == "openai/gpt-4-turbo"
    assert summary.provider == "ollama"


@pytest.mark.asyncio
async def test_malformed_override_falls_back(caplog):
    manager, _, _ = _manager(
        {
            "llm.activeProvider": "ollama",
            "llm.featureModels.enabled": True,
            "llm.featureModels.summaries": "no-colon-here",
        }
    )
    await manager.initialize()

    with caplog.at_level(logging.WARNING, logger="devark.manager"):
        response = await manager.generate_completion_for_feature("summaries", CompletionOptions(prompt="x"))

    assert response.provider == "ollama"
    assert any(getattr(record, "event", None) == "feature_override_invalid" for record in caplog.records)


@pytest.mark.asyncio
async def test_switch_provider_persists_choice():
    manager, settings, created = _manager(
        {"llm.activeProvider": "ollama", "llm.providers": {"cursor-cli": {"enabled": True}}}
    )
    await manager.initialize()

    await manager.switch_provider("cursor-cli")

    assert manager.get_active_provider().provider_id == "cursor-cli"
    assert settings.get_active_provider() == "cursor-cli"

    cursor = next(provider for provider in created if provider.provider_id == "cursor-cli")
    cursor.available = False
    with pytest.raises(ProviderUnavailableError, match="not accessible"):
        await manager.switch_provider("cursor-cli")
    with pytest.raises(ProviderUnavailableError, match="not available"):
        await manager.switch_provider("openrouter")


@pytest.mark.asyncio
async def test_test_all_providers_isolates_failures():
    manager, _, _ = _manager({"llm.activeProvider": "ollama"}, keys={"openrouter": "k"})
    await manager.initialize()

    results = await manager.test_all_providers()

    assert results["ollama"].success is True
    assert results["openrouter"].success is False
    assert results["openrouter"].error == "Test failed: boom"


@pytest.mark.asyncio
async def test_reinitialize_builds_fresh_instances():
    manager, _, created = _manager({"llm.activeProvider": "ollama"})
    await manager.initialize()
    first = manager.get_active_provider()

    await manager.reinitialize()

    assert first.closed is True
    assert manager.get_active_provider() is not first
    assert len(created) == 2


@pytest.mark.asyncio
async def test_calls_before_initialize_fail():
    manager, _, _ = _manager({})

    with pytest.raises(ProviderUnavailableError):
        await manager.generate_completion(CompletionOptions(prompt="x"))
    assert manager.get_status_summary()["initialized"] is False
