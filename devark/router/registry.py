"""Provider registry: metadata, factories and secret injection."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from devark.core.exceptions import (
    AuthenticationRequiredError,
    DevarkError,
    ProviderRegistryError,
)
from devark.providers.base import FieldType, LLMProvider, ProviderMetadata

logger = logging.getLogger("devark.registry")

ProviderFactory = Callable[[dict[str, Any]], LLMProvider]


class SecureConfigStore(Protocol):
    def get_api_key(self, provider_id: str) -> str | None: ...


@dataclass(frozen=True)
class ProviderRegistration:
    metadata: ProviderMetadata
    factory: ProviderFactory


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    return type(value).__name__


def _matches(value: Any, expected: FieldType) -> bool:
    return _type_name(value) == expected


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


class ProviderRegistry:
    """Registry of provider factories keyed by provider id.

    Secrets are only ever read here and merged into the config handed to the
    factory; providers never see the secret store.
    """

    def __init__(self) -> None:
        self._providers: dict[str, ProviderRegistration] = {}
        self._secure_store: SecureConfigStore | None = None

    def set_secure_config_store(self, store: SecureConfigStore | None) -> None:
        self._secure_store = store

    def register(self, metadata: ProviderMetadata, factory: ProviderFactory) -> None:
        if metadata.id in self._providers:
            raise ProviderRegistryError(
                f"Provider '{metadata.id}' is already registered. "
                "Each provider must have a unique ID."
            )
        self._providers[metadata.id] = ProviderRegistration(metadata=metadata, factory=factory)
        logger.debug("Registered provider", extra={"event": "provider_registered", "provider_id": metadata.id})

    async def get_provider(self, provider_id: str, config: dict[str, Any]) -> LLMProvider:
        registration = self._providers.get(provider_id)
        if registration is None:
            available = ", ".join(self._providers) or "none"
            raise ProviderRegistryError(
                f"Unknown provider: '{provider_id}'. Available providers: {available}"
            )

        final_config = dict(config)
        if registration.metadata.requires_auth:
            if self._secure_store is None:
                raise AuthenticationRequiredError(
                    provider_id,
                    message=f"Provider '{provider_id}' requires auth but SecureConfigStore is not configured",
                )
            api_key = self._secure_store.get_api_key(provider_id)
            if not api_key:
                raise AuthenticationRequiredError(
                    provider_id,
                    message=f"Provider '{provider_id}' requires an API key. Please configure it in settings.",
                )
            final_config["apiKey"] = api_key

        try:
            return registration.factory(final_config)
        except (DevarkError, ValueError, TypeError, KeyError) as exc:
            raise ProviderRegistryError(
                f"Failed to instantiate provider '{provider_id}': {exc}"
            ) from exc

    def get_metadata(self, provider_id: str) -> ProviderMetadata | None:
        registration = self._providers.get(provider_id)
        return registration.metadata if registration else None

    def list_available(self) -> list[ProviderMetadata]:
        return [registration.metadata for registration in self._providers.values()]

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def get_provider_count(self) -> int:
        return len(self._providers)

    def validate_config(self, provider_id: str, config: dict[str, Any]) -> dict[str, Any]:
        metadata = self.get_metadata(provider_id)
        if metadata is None:
            return {"valid": False, "errors": [f"Unknown provider: '{provider_id}'"]}

        errors: list[str] = []
        for name, field in metadata.config_schema.items():
            value = config.get(name)
            if _is_missing(value):
                if field.required:
                    errors.append(f"Required field '{name}' is missing")
                continue
            if not _matches(value, field.type):
                errors.append(
                    f"Field '{name}' must be of type '{field.type}', got '{_type_name(value)}'"
                )
        return {"valid": not errors, "errors": errors}

    def clear(self) -> None:
        self._providers.clear()
