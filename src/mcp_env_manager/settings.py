from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from mcp_env_manager.models import (
    DEFAULT_INSTALLATION_CONFIG,
    InstallationConfig,
    PackageManagerName,
    WatcherConfig,
)
from mcp_env_manager.storage import load_document, write_document

logger = logging.getLogger(__name__)


class SettingsError(RuntimeError):
    pass


class InstallationSettings:
    """Process-wide installation config: loaded once, persisted on every update."""

    def __init__(self, path: Path, default: InstallationConfig | None = None) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._config = load_document(path, InstallationConfig, default or DEFAULT_INSTALLATION_CONFIG)

    @property
    def current(self) -> InstallationConfig:
        return self._config.model_copy(deep=True)

    def update(self, changes: dict[str, Any]) -> InstallationConfig:
        """Deep-merge a partial update (camelCase keys, as on disk) and persist it."""
        with self._lock:
            merged = _deep_merge(self._config.model_dump(by_alias=True), changes)
            try:
                updated = InstallationConfig.model_validate(merged)
            except ValidationError as exc:
                raise SettingsError(f"Invalid installation config: {exc}") from exc
            write_document(self._path, updated)
            self._config = updated
        logger.info("Installation config updated: %s", ", ".join(sorted(changes)))
        return self.current

    def configure_watcher(
        self,
        host: str,
        enabled: bool | None = None,
        config_path: str | None = None,
    ) -> InstallationConfig:
        watcher: dict[str, Any] = {}
        if enabled is not None:
            watcher["enabled"] = enabled
        if config_path is not None:
            watcher["configPath"] = config_path
        if host not in self._config.watchers and "configPath" not in watcher:
            raise SettingsError(f"Unknown host '{host}': a config path is required to add it")
        return self.update({"watchers": {host: watcher}})

    def configure_installation(
        self,
        installation_dir: str | None = None,
        preferred_package_manager: PackageManagerName | None = None,
        auto_localize: bool | None = None,
    ) -> InstallationConfig:
        changes = {
            "installationDir": installation_dir,
            "preferredPackageManager": preferred_package_manager,
            "autoLocalize": auto_localize,
        }
        return self.update({"packageManager": _present(changes)})

    def configure_notifications(
        self,
        on_new_server_detected: bool | None = None,
        on_update_available: bool | None = None,
    ) -> InstallationConfig:
        changes = {
            "onNewServerDetected": on_new_server_detected,
            "onUpdateAvailable": on_update_available,
        }
        return self.update({"notifications": _present(changes)})

    def enabled_watchers(self) -> dict[str, WatcherConfig]:
        return {host: cfg for host, cfg in self.current.watchers.items() if cfg.enabled}


def _present(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def _deep_merge(base: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged

