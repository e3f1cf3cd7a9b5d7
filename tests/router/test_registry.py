import pytest

from devark.core.exceptions import AuthenticationRequiredError, ProviderRegistryError
from devark.providers.base import ConfigField, LLMProvider, ProviderMetadata
from devark.router.bootstrap import build_registry
from devark.router.registry import ProviderRegistry


class _DummyProvider(LLMProvider):
    provider_id = "dummy"

    @property
    def model(self) -> str:
        return self._config.get("model", "m")


def _metadata(provider_id: str = "dummy", requires_auth: bool = False) -> ProviderMetadata:
    return ProviderMetadata(
        id=provider_id,
        display_name="Dummy",
        description="Test provider",
        requires_auth=requires_auth,
        config_schema={
            "model": ConfigField(type="string", required=True),
            "temperature": ConfigField(type="number"),
            "enabled": ConfigField(type="boolean"),
        },
    )


class _Secrets:
    def __init__(self, keys: dict[str, str]) -> None:
        self.keys = keys

    def get_api_key(self, provider_id: str) -> str | None:
        return self.keys.get(provider_id)


def test_duplicate_registration_fails():
    registry = ProviderRegistry()
    registry.register(_metadata(), _DummyProvider)

    with pytest.raises(ProviderRegistryError, match="already registered"):
        registry.register(_metadata(), _DummyProvider)


@pytest.mark.asyncio
async def test_unknown_provider_lists_available():
    registry = ProviderRegistry()
    registry.register(_metadata("one"), _DummyProvider)
    registry.register(_metadata("two"), _DummyProvider)

    with pytest.raises(ProviderRegistryError) as excinfo:
        await registry.get_provider("three", {})

    assert "one, two" in str(excinfo.value)


@pytest.mark.asyncio
async def test_factory_receives_config():
    registry = ProviderRegistry()
    registry.register(_metadata(), _DummyProvider)

    provider = await registry.get_provider("dummy", {"model": "small"})

    assert isinstance(provider, _DummyProvider)
    assert provider.model == "small"


@pytest.mark.asyncio
async def test_auth_provider_needs_store():
    registry = ProviderRegistry()
    registry.register(_metadata(requires_auth=True), _DummyProvider)

    with pytest.raises(AuthenticationRequiredError, match="SecureConfigStore is not configured"):
        await registry.get_provider("dummy", {"model": "m"})


@pytest.mark.asyncio
async def test_auth_provider_needs_key():
    registry = ProviderRegistry()
    registry.register(_metadata(requires_auth=True), _DummyProvider)
    registry.set_secure_config_store(_Secrets({}))

    with pytest.raises(AuthenticationRequiredError, match="requires an API key"):
        await registry.get_provider("dummy", {"model": "m"})


@pytest.mark.asyncio
async def test_api_key_is_injected_without_touching_caller_config():
    captured: dict = {}

    def factory(config):
        captured.update(config)
        return _DummyProvider(config)

    registry = ProviderRegistry()
    registry.register(_metadata(requires_auth=True), factory)
    registry.set_secure_config_store(_Secrets({"dummy": "secret"}))
    config = {"model": "m"}

    await registry.get_provider("dummy", config)

    assert captured["apiKey"] == "secret"
    assert "apiKey" not in config


@pytest.mark.asyncio
async def test_factory_errors_are_wrapped():
    def factory(config):
        raise ValueError("bad endpoint")

    registry = ProviderRegistry()
    registry.register(_metadata(), factory)

    with pytest.raises(ProviderRegistryError, match="Failed to instantiate provider 'dummy': bad endpoint"):
        await registry.get_provider("dummy", {})


def test_validate_config_reports_missing_and_mismatched_fields():
    registry = ProviderRegistry()
    registry.register(_metadata(), _DummyProvider)

    result = registry.validate_config("dummy", {"model": "", "temperature": "hot", "enabled": True})

    assert result["valid"] is False
    assert result["errors"] == [
        "Required field 'model' is missing",
        "Field 'temperature' must be of type 'number', got 'string'",
    ]
    assert registry.validate_config("dummy", {"model": "m", "temperature": 0.2}) == {
        "valid": True,
        "errors": [],
    }


def test_builtin_registration():
    registry = build_registry()

    assert registry.get_provider_count() == 4
    assert [meta.id for meta in registry.list_available()] == [
        "ollama",
        "openrouter",
        "cursor-cli",
        "claude-agent-sdk",
    ]
    assert registry.get_metadata("openrouter").requires_auth is True

    registry.clear()
    assert registry.has_provider("ollama") is False
