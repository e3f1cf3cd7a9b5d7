from http import HTTPStatus

import httpx
import pytest

from devark.core.config import AppConfig
from devark.core.exceptions import ProviderUnavailableError
from devark.providers import claude_agent_sdk, cursor_cli, ollama, openrouter
from devark.providers.base import ModelInfo
from devark.router import detection
from devark.router.detection import ProviderDetectionService, probe_local_server

ALL_METADATA = [ollama.METADATA, openrouter.METADATA, cursor_cli.METADATA, claude_agent_sdk.METADATA]


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class FakeLocalProvider:
    provider_id = "ollama"

    def __init__(self, available: bool = True, model: str = "llama3") -> None:
        self.available = available
        self.model = model

    async def is_available(self) -> bool:
        return self.available

    async def list_models(self):
        return [ModelInfo(id="mistral", name="mistral"), ModelInfo(id="llama3", name="llama3")]


class FakeManager:
    def __init__(self, providers: dict, active: str | None) -> None:
        self.providers = providers
        self.active = active

    def get_available_providers(self):
        return list(ALL_METADATA)

    def get_provider(self, provider_id):
        return self.providers.get(provider_id)

    def get_active_provider_info(self):
        if self.active is None:
            return None
        return {"type": self.active, "model": "m", "available": True}


@pytest.fixture
def environment(monkeypatch):
    state = {"server": True, "sdk": False, "cli": True, "probes": 0}

    async def fake_probe(endpoint=ollama.DEFAULT_ENDPOINT):
        state["probes"] += 1
        return state["server"]

    monkeypatch.setattr(detection, "probe_local_server", fake_probe)
    monkeypatch.setattr(detection, "sdk_package_installed", lambda: state["sdk"])
    monkeypatch.setattr(detection, "command_exists", lambda command: state["cli"])
    return state


def _by_id(statuses):
    return {status.id: status for status in statuses}


@pytest.mark.asyncio
async def test_statuses_for_default_host(environment):
    manager = FakeManager({"ollama": FakeLocalProvider()}, active="ollama")
    service = ProviderDetectionService(manager, AppConfig(host_app="vscode"))

    statuses = await service.detect_all()

    assert [status.id for status in statuses] == ["claude-agent-sdk", "cursor-cli", "ollama", "openrouter"]
    by_id = _by_id(statuses)
    assert by_id["ollama"].status == "connected"
    assert by_id["ollama"].model == "llama3"
    assert by_id["ollama"].available_models == ["mistral", "llama3"]
    assert by_id["openrouter"].status == "not-configured"
    assert by_id["openrouter"].requires_api_key is True
    assert by_id["cursor-cli"].status == "available"
    assert by_id["claude-agent-sdk"].status == "not-detected"
    assert service.get_active_provider_id() == "ollama"


@pytest.mark.asyncio
async def test_cursor_host_ordering(environment):
    service = ProviderDetectionService(FakeManager({}, active=None), AppConfig(host_app="Cursor"))

    statuses = await service.detect_all()

    assert [status.id for status in statuses] == ["cursor-cli", "claude-agent-sdk", "ollama", "openrouter"]


@pytest.mark.asyncio
async def test_local_server_not_running(environment):
    environment["server"] = False
    manager = FakeManager({"ollama": FakeLocalProvider(available=False)}, active="ollama")

    status = await ProviderDetectionService(manager, AppConfig()).detect_one("ollama")

    assert status.status == "not-running"
    assert status.available_models is None


@pytest.mark.asyncio
async def test_unconfigured_local_server_is_probed(environment):
    service = ProviderDetectionService(FakeManager({}, active=None), AppConfig())

    assert (await service.detect_one("ollama")).status == "available"
    environment["server"] = False
    assert (await service.detect_one("ollama")).status == "not-running"


@pytest.mark.asyncio
async def test_results_are_cached(environment):
    clock = FakeClock()
    service = ProviderDetectionService(FakeManager({}, active=None), AppConfig(), clock=clock)

    first = await service.detect_all()
    clock.now = 29
    assert await service.detect_all() is first
    assert environment["probes"] == 1

    clock.now = 31
    await service.detect_all()
    assert environment["probes"] == 2

    service.clear_cache()
    assert service.get_cached() is None


@pytest.mark.asyncio
async def test_detect_one_unknown(environment):
    service = ProviderDetectionService(FakeManager({}, active=None), AppConfig())

    with pytest.raises(ProviderUnavailableError):
        await service.detect_one("gemini")


@pytest.mark.asyncio
async def test_probe_local_server(monkeypatch):
    answers = [httpx.Response(HTTPStatus.OK, json={"version": "0.3.0"}), httpx.ConnectError("refused")]

    class _DummyAsyncClient:
        def __init__(self, *args, **kwargs) -> None:
            return None

        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc, tb):
            return False

        async def get(self, url):
            answer = answers.pop(0)
            if isinstance(answer, Exception):
                raise answer
            return answer

    monkeypatch.setattr("devark.router.detection.httpx.AsyncClient", _DummyAsyncClient)

    assert await probe_local_server() is True
    assert await probe_local_server() is False
