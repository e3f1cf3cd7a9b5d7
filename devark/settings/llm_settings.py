"""LLM-specific view over the settings gateway."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlsplit

from devark.providers.base import FeatureType

from .gateway import SettingsGateway

SECTION = "devark.llm"

DEFAULT_ACTIVE_PROVIDER = "ollama"
DEFAULT_OLLAMA_ENDPOINT = "http://localhost:11434"
VALID_PROVIDERS = ("ollama", "openrouter", "cursor-cli", "claude-agent-sdk")

FEATURE_KEYS: dict[str, str] = {
    "summaries": "summaries",
    "scoring": "promptScoring",
    "improvement": "promptImprovement",
}

_RESETTABLE_DEFAULTS: dict[str, Any] = {
    "activeProvider": DEFAULT_ACTIVE_PROVIDER,
    "providers": {},
    "timeout": 30000,
    "featureModels.enabled": False,
    "featureModels.summaries": "",
    "featureModels.promptScoring": "",
    "featureModels.promptImprovement": "",
}


def _is_http_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


class LLMSettingsManager:
    """Reads and writes the ``devark.llm`` section through the gateway."""

    def __init__(self, gateway: SettingsGateway) -> None:
        self._gateway = gateway

    @property
    def gateway(self) -> SettingsGateway:
        return self._gateway

    def get_active_provider(self) -> str:
        return self._gateway.get_raw(SECTION, "activeProvider", DEFAULT_ACTIVE_PROVIDER)

    def _providers(self) -> dict[str, dict[str, Any]]:
        providers = self._gateway.get_raw(SECTION, "providers", {})
        return providers if isinstance(providers, dict) else {}

    def get_provider_config(self, provider_id: str) -> dict[str, Any]:
        return dict(self._providers().get(provider_id) or {})

    def get_config(self) -> dict[str, Any]:
        """Per-provider config map plus the active provider under ``provider``.

        Ollama is always present with its default endpoint. CLI and SDK providers
        are disabled unless explicitly enabled or currently active.
        """
        active = self.get_active_provider()
        providers = self._providers()

        ollama = dict(providers.get("ollama") or {})
        ollama.setdefault("enabled", True)
        ollama["endpoint"] = ollama.get("endpoint") or DEFAULT_OLLAMA_ENDPOINT

        openrouter = {
            key: value
            for key, value in (providers.get("openrouter") or {}).items()
            if key != "apiKey" and value not in ("", None)
        }
        openrouter.setdefault("enabled", True)

        cursor = dict(providers.get("cursor-cli") or {})
        cursor["enabled"] = bool(cursor.get("enabled")) or active == "cursor-cli"

        sdk = dict(providers.get("claude-agent-sdk") or {})
        sdk["enabled"] = bool(sdk.get("enabled")) or active == "claude-agent-sdk"
        sdk["model"] = sdk.get("model") or "haiku"

        config: dict[str, Any] = {
            "provider": active,
            "ollama": ollama,
            "openrouter": openrouter,
            "cursor-cli": cursor,
            "claude-agent-sdk": sdk,
        }
        for provider_id, extra in providers.items():
            config.setdefault(provider_id, dict(extra or {}))
        return config

    def set_active_provider(self, provider_id: str) -> None:
        self._gateway.set_raw(SECTION, "activeProvider", provider_id)

    def update_provider_config(self, provider_id: str, updates: dict[str, Any]) -> None:
        if "apiKey" in updates:
            raise ValueError("API keys belong in the secret store, not in settings")
        providers = self._providers()
        providers[provider_id] = {**(providers.get(provider_id) or {}), **updates}
        self._gateway.set_raw(SECTION, "providers", providers)

    def validate_config(self) -> dict[str, Any]:
        errors: list[str] = []
        warnings: list[str] = []
        active = self.get_active_provider()

        if active not in VALID_PROVIDERS:
            errors.append(f"Invalid provider: {active}. Must be one of: {', '.join(VALID_PROVIDERS)}.")

        ollama = self.get_config()["ollama"]
        if active == "ollama":
            endpoint = ollama.get("endpoint")
            if not endpoint:
                errors.append("Ollama endpoint is required")
            elif not _is_http_url(str(endpoint)):
                errors.append("Ollama endpoint must use http:// or https://")

        if active == "openrouter":
            if not self.get_provider_config("openrouter").get("model"):
                errors.append("OpenRouter model is required")
            if ollama.get("endpoint") != DEFAULT_OLLAMA_ENDPOINT:
                warnings.append("Ollama endpoint is configured but OpenRouter is selected as provider")

        for feature in FEATURE_KEYS:
            override = self.get_feature_model(feature)  # type: ignore[arg-type]
            if override and ":" not in override:
                warnings.append(
                    f"Feature model for '{feature}' should look like 'providerId:modelId', got '{override}'"
                )

        return {"valid": not errors, "errors": errors, "warnings": warnings}

    def is_feature_models_enabled(self) -> bool:
        return bool(self._gateway.get_raw(SECTION, "featureModels.enabled", False))

    def set_feature_models_enabled(self, enabled: bool) -> None:
        self._gateway.set_raw(SECTION, "featureModels.enabled", enabled)

    def get_feature_model(self, feature: FeatureType) -> str | None:
        if not self.is_feature_models_enabled():
            return None
        value = self._gateway.get_raw(SECTION, f"featureModels.{FEATURE_KEYS[feature]}", "")
        return value or None

    def set_feature_model(self, feature: FeatureType, model: str) -> None:
        self._gateway.set_raw(SECTION, f"featureModels.{FEATURE_KEYS[feature]}", model)

    def get_feature_models_config(self) -> dict[str, Any]:
        return {
            "enabled": self.is_feature_models_enabled(),
            **{
                key: self._gateway.get_raw(SECTION, f"featureModels.{key}", "")
                for key in FEATURE_KEYS.values()
            },
        }

    def has_custom_value(self, setting_key: str) -> bool:
        value = self._gateway.get_raw(SECTION, setting_key)
        if value is None:
            return False
        return value != _RESETTABLE_DEFAULTS.get(setting_key)

    def reset_setting(self, setting_key: str) -> None:
        self._gateway.set_raw(SECTION, setting_key, None)

    def reset_all(self) -> None:
        for key in _RESETTABLE_DEFAULTS:
            self._gateway.set_raw(SECTION, key, None)

    def on_config_change(self, callback):
        return self._gateway.on_raw_change(SECTION, lambda: callback(self.get_config()))

    def get_config_summary(self) -> dict[str, Any]:
        active = self.get_active_provider()
        config = self.get_config()
        provider_config = {
            key: value for key, value in config.get(active, {}).items() if key != "apiKey"
        }
        return {
            "active_provider": active,
            "provider_config": provider_config,
            "feature_models": self.get_feature_models_config(),
            "validation": self.validate_config(),
        }
