"""Single funnel for host configuration reads, writes and change notification."""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Literal, Protocol

from devark.core.config import SettingsScope
from devark.core.exceptions import ConfigurationError

logger = logging.getLogger("devark.settings")

SettingKey = Literal[
    "llm.providers",
    "llm.activeProvider",
    "llm.timeout",
    "llm.featureModels.enabled",
    "llm.featureModels.summaries",
    "llm.featureModels.promptScoring",
    "llm.featureModels.promptImprovement",
    "onboarding.completed",
    "autoAnalyze.enabled",
    "responseAnalysis.enabled",
    "detection.useHooks",
]

DEFAULTS: dict[str, Any] = {
    "llm.providers": {},
    "llm.activeProvider": "ollama",
    "llm.timeout": 30000,
    "llm.featureModels.enabled": False,
    "llm.featureModels.summaries": "",
    "llm.featureModels.promptScoring": "",
    "llm.featureModels.promptImprovement": "",
    "onboarding.completed": False,
    "autoAnalyze.enabled": True,
    "responseAnalysis.enabled": True,
    "detection.useHooks": True,
}

# Raw sections carry this prefix; the store itself is keyed without it.
RAW_PREFIX = "devark"

Unsubscribe = Callable[[], None]


class SettingsStore(Protocol):
    def get(self, key: str) -> Any | None: ...

    def has(self, key: str, scope: SettingsScope | None = None) -> bool: ...

    def set(self, key: str, value: Any, scope: SettingsScope = "global") -> None: ...

    def delete(self, key: str, scope: SettingsScope | None = None) -> None: ...


def _store_key(section: str, key: str) -> str:
    parts = section.split(".")
    if parts and parts[0] == RAW_PREFIX:
        parts = parts[1:]
    return ".".join([*parts, key]) if parts else key


def _section_of(store_key: str) -> str:
    head = store_key.split(".", 1)[0]
    return f"{RAW_PREFIX}.{head}"


def _check_type(key: str, value: Any) -> None:
    default = DEFAULTS[key]
    if isinstance(default, bool):
        ok = isinstance(value, bool)
    elif isinstance(default, int):
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
    else:
        ok = isinstance(value, type(default))
    if not ok:
        raise ConfigurationError(
            f"Setting '{key}' expects {type(default).__name__}, got {type(value).__name__}"
        )


class SettingsGateway:
    """Typed and raw access to one settings store.

    Typed keys are the ``DEFAULTS`` table. The raw surface addresses the same
    values by ``(section, key)``, e.g. ``("devark.llm", "activeProvider")``.
    Listener exceptions are logged and never reach the writer or other listeners.
    """

    def __init__(self, store: SettingsStore) -> None:
        self._store = store
        self._listeners: dict[str, list[Callable[[Any], None]]] = {}
        self._any_listeners: list[Callable[[str, Any], None]] = []
        self._raw_listeners: dict[str, list[Callable[[], None]]] = {}

    @property
    def store(self) -> SettingsStore:
        return self._store

    # typed surface

    def get(self, key: SettingKey) -> Any:
        self._require_known(key)
        value = self._store.get(key)
        if value is None:
            return copy.deepcopy(DEFAULTS[key])
        return copy.deepcopy(value)

    def get_with_default(self, key: SettingKey, default: Any) -> Any:
        self._require_known(key)
        value = self._store.get(key)
        return default if value is None else copy.deepcopy(value)

    def set(self, key: SettingKey, value: Any, scope: SettingsScope = "global") -> None:
        self._require_known(key)
        _check_type(key, value)
        self._store.set(key, copy.deepcopy(value), scope)
        self._notify(key, value)

    def set_multiple(self, updates: dict[str, Any], scope: SettingsScope = "global") -> None:
        for key, value in updates.items():
            self.set(key, value, scope)  # type: ignore[arg-type]

    def has_custom_value(self, key: SettingKey) -> bool:
        self._require_known(key)
        value = self._store.get(key)
        return value is not None and value != DEFAULTS[key]

    def reset(self, key: SettingKey, scope: SettingsScope | None = None) -> None:
        """Drop the stored value; without a scope every scope is cleared."""
        self._require_known(key)
        self._store.delete(key, scope)
        self._notify(key, None)

    def reset_all(self) -> None:
        for key in DEFAULTS:
            self.reset(key)  # type: ignore[arg-type]

    def on_change(self, key: SettingKey, callback: Callable[[Any], None]) -> Unsubscribe:
        self._require_known(key)
        listeners = self._listeners.setdefault(key, [])
        listeners.append(callback)
        return lambda: _discard(listeners, callback)

    def on_any_change(self, callback: Callable[[str, Any], None]) -> Unsubscribe:
        self._any_listeners.append(callback)
        return lambda: _discard(self._any_listeners, callback)

    # raw surface

    def get_raw(self, section: str, key: str, default: Any = None) -> Any:
        value = self._store.get(_store_key(section, key))
        return default if value is None else copy.deepcopy(value)

    def set_raw(self, section: str, key: str, value: Any, scope: SettingsScope | None = None) -> None:
        """Write a raw value; ``None`` deletes it from ``scope``, or from every scope."""
        store_key = _store_key(section, key)
        if value is None:
            self._store.delete(store_key, scope)
        else:
            self._store.set(store_key, copy.deepcopy(value), scope or "global")
        self._notify(store_key, value)

    def on_raw_change(self, section: str, callback: Callable[[], None]) -> Unsubscribe:
        listeners = self._raw_listeners.setdefault(section, [])
        listeners.append(callback)
        return lambda: _discard(listeners, callback)

    def dispose(self) -> None:
        self._listeners.clear()
        self._any_listeners.clear()
        self._raw_listeners.clear()

    def _require_known(self, key: str) -> None:
        if key not in DEFAULTS:
            raise ConfigurationError(f"Unknown setting '{key}'")

    def _notify(self, store_key: str, value: Any) -> None:
        callbacks: list[Callable[[], None]] = []
        if store_key in DEFAULTS:
            callbacks.extend(
                _bind(callback, value) for callback in list(self._listeners.get(store_key, []))
            )
            callbacks.extend(
                _bind(callback, store_key, value) for callback in list(self._any_listeners)
            )
        callbacks.extend(self._raw_listeners.get(_section_of(store_key), []))

        for callback in list(callbacks):
            try:
                callback()
            except Exception:  # listeners are third-party code
                logger.exception(
                    "Settings listener failed",
                    extra={"event": "settings_listener_error", "key": store_key},
                )


def _bind(callback: Callable[..., None], *args: Any) -> Callable[[], None]:
    return lambda: callback(*args)


def _discard(listeners: list, callback: Callable[..., Any]) -> None:
    if callback in listeners:
        listeners.remove(callback)
