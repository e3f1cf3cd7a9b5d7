"""Application configuration loading utilities and host settings stores."""

from __future__ import annotations

import os
import pathlib
import tempfile
from functools import lru_cache
from typing import Any, Dict, Literal

import yaml
from pydantic import BaseModel, Field

from .exceptions import ConfigurationError

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR.parent / "config" / "devark.yaml"

HOOK_DIR_NAME = "devark-hooks"
ANALYSIS_DIR_NAME = "devark-analysis"

SettingsScope = Literal["global", "workspace"]


def default_hook_dir() -> pathlib.Path:
    """The drop-box directory shared with external hook scripts."""
    return pathlib.Path(tempfile.gettempdir()) / HOOK_DIR_NAME


class HooksConfig(BaseModel):
    drop_box_dir: str = Field(default_factory=lambda: str(default_hook_dir()))
    poll_interval_seconds: float = Field(default=5.0, gt=0)
    max_processed_files: int = Field(default=200, ge=1)
    max_parse_attempts: int = Field(default=3, ge=1)
    link_ttl_seconds: float = Field(default=300.0, gt=0)
    response_grace_seconds: float = Field(default=5.0, ge=0)
    use_file_watcher: bool = True


class SettingsFilesConfig(BaseModel):
    global_path: str = "config/settings.yaml"
    workspace_path: str | None = None


class AppConfig(BaseModel):
    hooks: HooksConfig = Field(default_factory=HooksConfig)
    settings: SettingsFilesConfig = Field(default_factory=SettingsFilesConfig)
    database_url: str | None = None
    host_app: str = Field(default_factory=lambda: os.getenv("DEVARK_HOST_APP", "vscode"))

    @property
    def is_cursor_host(self) -> bool:
        return "cursor" in self.host_app.lower()


def _config_path() -> pathlib.Path:
    configured = os.getenv("DEVARK_CONFIG")
    return pathlib.Path(configured) if configured else DEFAULT_CONFIG_PATH


@lru_cache(maxsize=1)
def load_config(path: pathlib.Path | None = None) -> AppConfig:
    """Load application configuration from YAML, falling back to defaults."""
    config_path = path or _config_path()
    if not config_path.exists():
        return AppConfig()
    raw = yaml.safe_load(config_path.read_text()) or {}
    return AppConfig(**raw)


def resolve_path(value: str) -> pathlib.Path:
    path = pathlib.Path(value).expanduser()
    if not path.is_absolute():
        path = BASE_DIR.parent / path
    return path


class InMemorySettingsStore:
    """Two-scope key/value store keyed by dotted ``section.key`` names.

    Workspace values shadow global ones on read.
    """

    def __init__(
        self,
        global_values: Dict[str, Any] | None = None,
        workspace_values: Dict[str, Any] | None = None,
    ) -> None:
        self._scopes: Dict[str, Dict[str, Any]] = {
            "global": dict(global_values or {}),
            "workspace": dict(workspace_values or {}),
        }

    def get(self, key: str) -> Any | None:
        for scope in ("workspace", "global"):
            if key in self._scopes[scope]:
                return self._scopes[scope][key]
        return None

    def has(self, key: str, scope: SettingsScope | None = None) -> bool:
        scopes = [scope] if scope else ["workspace", "global"]
        return any(key in self._scopes[name] for name in scopes)

    def set(self, key: str, value: Any, scope: SettingsScope = "global") -> None:
        self._scopes[scope][key] = value
        self._persist(scope)

    def delete(self, key: str, scope: SettingsScope | None = None) -> None:
        for name in [scope] if scope else ["workspace", "global"]:
            if key in self._scopes[name]:
                del self._scopes[name][key]
                self._persist(name)

    def keys(self) -> set[str]:
        return set(self._scopes["global"]) | set(self._scopes["workspace"])

    def _persist(self, scope: str) -> None:
        return None


class YamlSettingsStore(InMemorySettingsStore):
    """Settings store persisted as flat YAML documents, one per scope."""

    def __init__(
        self, global_path: pathlib.Path, workspace_path: pathlib.Path | None = None
    ) -> None:
        self._paths: Dict[str, pathlib.Path | None] = {
            "global": global_path,
            "workspace": workspace_path,
        }
        super().__init__(self._read(global_path), self._read(workspace_path))

    @staticmethod
    def _read(path: pathlib.Path | None) -> Dict[str, Any]:
        if path is None or not path.exists():
            return {}
        raw = yaml.safe_load(path.read_text()) or {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Settings file {path} must contain a mapping")
        return raw

    def set(self, key: str, value: Any, scope: SettingsScope = "global") -> None:
        if self._paths[scope] is None:
            raise ConfigurationError(f"No settings file configured for {scope} scope")
        super().set(key, value, scope)

    def _persist(self, scope: str) -> None:
        path = self._paths[scope]
        if path is None:
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(self._scopes[scope], sort_keys=True))


def build_settings_store(config: AppConfig) -> YamlSettingsStore:
    workspace = config.settings.workspace_path
    return YamlSettingsStore(
        resolve_path(config.settings.global_path),
        resolve_path(workspace) if workspace else None,
    )
