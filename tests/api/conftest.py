import pytest

from devark.api.services import Services
from devark.core.config import AppConfig, HooksConfig, InMemorySettingsStore
from devark.hooks.pipeline import HookPipeline
from devark.hooks.session_store import InMemorySessionStore
from devark.providers.base import (
    CompletionOptions,
    CompletionResponse,
    ConnectionTestResult,
    LLMProvider,
    ModelInfo,
    ProviderMetadata,
)
from devark.router.detection import ProviderDetectionService
from devark.router.manager import LLMManager
from devark.router.registry import ProviderRegistry
from devark.settings.gateway import SettingsGateway
from devark.settings.llm_settings import LLMSettingsManager


class DummyProvider(LLMProvider):
    def __init__(self, provider_id: str, config: dict) -> None:
        super().__init__(config)
        self.provider_id = provider_id
        self.available = True
        self.last_options: CompletionOptions | None = None
        self.error: Exception | None = None

    @property
    def model(self) -> str:
        return self._config.get("model") or "default"

    async def is_available(self) -> bool:
        return self.available

    async def test_connection(self) -> ConnectionTestResult:
        return ConnectionTestResult(success=True, details={"endpoint": "dummy"})

    async def list_models(self) -> list[ModelInfo]:
        return [ModelInfo(id=self.model, name=self.model)]

    async def generate_completion(self, options: CompletionOptions) -> CompletionResponse:
        self.last_options = options
        if self.error is not None:
            raise self.error
        return CompletionResponse(text=options.prompt, model=options.model or self.model, provider=self.provider_id)


class DictSecretStore:
    def __init__(self) -> None:
        self.keys: dict[str, str] = {}

    def get_api_key(self, provider_id: str) -> str | None:
        return self.keys.get(provider_id)

    def set_api_key(self, provider_id: str, api_key: str) -> None:
        self.keys[provider_id] = api_key

    def delete_api_key(self, provider_id: str) -> bool:
        return self.keys.pop(provider_id, None) is not None

    def list_provider_ids(self) -> list[str]:
        return sorted(self.keys)


def build_test_services(tmp_path, values: dict | None = None) -> Services:
    config = AppConfig(hooks=HooksConfig(drop_box_dir=str(tmp_path / "hooks"), use_file_watcher=False))
    gateway = SettingsGateway(InMemorySettingsStore(values or {"llm.activeProvider": "ollama"}))
    llm_settings = LLMSettingsManager(gateway)
    secret_store = DictSecretStore()
    registry = ProviderRegistry()
    registry.set_secure_config_store(secret_store)
    for provider_id, requires_auth in (("ollama", False), ("openrouter", True), ("cursor-cli", False)):
        registry.register(
            ProviderMetadata(id=provider_id, display_name=provider_id, description="", requires_auth=requires_auth),
            lambda config, provider_id=provider_id: DummyProvider(provider_id, config),
        )
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


@pytest.fixture
def make_services(tmp_path):
    def _make(values: dict | None = None) -> Services:
        return build_test_services(tmp_path, values)

    return _make
