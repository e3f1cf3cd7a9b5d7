import pytest

from devark.core.config import InMemorySettingsStore, YamlSettingsStore
from devark.core.exceptions import ConfigurationError
from devark.settings.gateway import SettingsGateway


def test_typed_reads_fall_back_to_defaults():
    gateway = SettingsGateway(InMemorySettingsStore())

    assert gateway.get("llm.activeProvider") == "ollama"
    assert gateway.get("detection.useHooks") is True
    assert gateway.get_with_default("llm.timeout", 5) == 5
    assert gateway.has_custom_value("llm.timeout") is False


def test_defaults_are_not_shared():
    gateway = SettingsGateway(InMemorySettingsStore())

    providers = gateway.get("llm.providers")
    providers["ollama"] = {"model": "x"}

    assert gateway.get("llm.providers") == {}


def test_set_checks_type_and_key():
    gateway = SettingsGateway(InMemorySettingsStore())

    with pytest.raises(ConfigurationError, match="expects bool"):
        gateway.set("detection.useHooks", "yes")
    with pytest.raises(ConfigurationError, match="Unknown setting"):
        gateway.get("llm.unknown")  # type: ignore[arg-type]

    gateway.set("llm.timeout", 60000)
    assert gateway.get("llm.timeout") == 60000
    assert gateway.has_custom_value("llm.timeout") is True

    gateway.reset("llm.timeout")
    assert gateway.get("llm.timeout") == 30000


def test_listeners_fire_and_failures_are_isolated():
    gateway = SettingsGateway(InMemorySettingsStore())
    seen: list = []

    def broken(value):
        raise RuntimeError("listener bug")

    gateway.on_change("llm.activeProvider", broken)
    unsubscribe = gateway.on_change("llm.activeProvider", seen.append)
    gateway.on_any_change(lambda key, value: seen.append((key, value)))
    gateway.on_raw_change("devark.llm", lambda: seen.append("raw"))

    gateway.set("llm.activeProvider", "openrouter")
    unsubscribe()
    gateway.set_raw("devark.llm", "activeProvider", "cursor-cli")

    assert seen == [
        "openrouter",
        ("llm.activeProvider", "openrouter"),
        "raw",
        ("llm.activeProvider", "cursor-cli"),
        "raw",
    ]


def test_raw_surface_maps_sections():
    store = InMemorySettingsStore()
    gateway = SettingsGateway(store)

    gateway.set_raw("devark.llm", "featureModels.summaries", "ollama:llama3")

    assert store.get("llm.featureModels.summaries") == "ollama:llama3"
    assert gateway.get("llm.featureModels.summaries") == "ollama:llama3"

    gateway.set_raw("devark.llm", "featureModels.summaries", None)
    assert not store.has("llm.featureModels.summaries")


def test_workspace_scope_shadows_global():
    store = InMemorySettingsStore({"llm.activeProvider": "ollama"}, {"llm.activeProvider": "openrouter"})

    assert SettingsGateway(store).get("llm.activeProvider") == "openrouter"


def test_reset_clears_workspace_override_too():
    store = InMemorySettingsStore({"llm.activeProvider": "ollama"}, {"llm.activeProvider": "openrouter"})
    gateway = SettingsGateway(store)
    seen: list = []
    gateway.on_change("llm.activeProvider", seen.append)

    gateway.reset("llm.activeProvider")

    assert gateway.get("llm.activeProvider") == "ollama"
    assert not store.has("llm.activeProvider")
    assert seen == [None]


def test_reset_can_target_one_scope():
    store = InMemorySettingsStore({"llm.timeout": 1000}, {"llm.timeout": 2000})
    gateway = SettingsGateway(store)

    gateway.reset("llm.timeout", scope="workspace")

    assert gateway.get("llm.timeout") == 1000
    assert store.has("llm.timeout", "global")


def test_yaml_store_persists(tmp_path):
    path = tmp_path / "settings.yaml"
    gateway = SettingsGateway(YamlSettingsStore(path))

    gateway.set("llm.activeProvider", "cursor-cli")

    assert SettingsGateway(YamlSettingsStore(path)).get("llm.activeProvider") == "cursor-cli"
    with pytest.raises(ConfigurationError, match="workspace"):
        gateway.set("llm.timeout", 1, scope="workspace")
