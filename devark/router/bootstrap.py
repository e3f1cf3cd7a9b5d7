"""Explicit startup registration of the built-in providers."""

from __future__ import annotations

from devark.providers import claude_agent_sdk, cursor_cli, ollama, openrouter

from .registry import ProviderRegistry, SecureConfigStore

BUILTIN_PROVIDERS = (
    (ollama.METADATA, ollama.create_ollama_provider),
    (openrouter.METADATA, openrouter.create_openrouter_provider),
    (cursor_cli.METADATA, cursor_cli.create_cursor_cli_provider),
    (claude_agent_sdk.METADATA, claude_agent_sdk.create_claude_agent_sdk_provider),
)


def register_builtin_providers(registry: ProviderRegistry) -> ProviderRegistry:
    for metadata, factory in BUILTIN_PROVIDERS:
        registry.register(metadata, factory)
    return registry


def build_registry(secret_store: SecureConfigStore | None = None) -> ProviderRegistry:
    registry = register_builtin_providers(ProviderRegistry())
    registry.set_secure_config_store(secret_store)
    return registry
