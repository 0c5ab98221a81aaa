from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from mcp_env_manager.config import STORAGE_DIR
from mcp_env_manager.models import (
    EnvVar,
    InstallationConfig,
    InstalledPackage,
    PackageManagerName,
    Profile,
    default_installation_config,
)
from mcp_env_manager.notifications import Notifier
from mcp_env_manager.package_manager import PackageManagerAdapter
from mcp_env_manager.profiles import ExportFormat, ProfileError, ProfileStore
from mcp_env_manager.reconcile import CycleReport, ReconciliationEngine
from mcp_env_manager.registry import PackageRegistryStore
from mcp_env_manager.settings import InstallationSettings
from mcp_env_manager.vault import Vault
from mcp_env_manager.watcher import HostSnapshot, WatcherPool

logger = logging.getLogger(__name__)


class OrphanError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class StoragePaths:
    root: Path

    @property
    def profiles(self) -> Path:
        return self.root / "profiles.json"

    @property
    def installation_config(self) -> Path:
        return self.root / "installation-config.json"

    @property
    def registry(self) -> Path:
        return self.root / "registry.json"

    @property
    def packages(self) -> Path:
        return self.root / "packages"


@dataclass(frozen=True, slots=True)
class RunContext:
    profile_id: str
    injected_env: dict[str, str]


class EnvManagerService:
    """Owns every store and the reconciliation pipeline for one process.

    The CLI and the local API call into this object; nothing here is global.
    """

    def __init__(
        self,
        settings: InstallationSettings,
        profiles: ProfileStore,
        registry: PackageRegistryStore,
        installer: PackageManagerAdapter,
        notifier: Notifier | None = None,
        force_polling: bool = False,
    ) -> None:
        self.settings = settings
        self.profiles = profiles
        self.registry = registry
        self.installer = installer
        self.engine = ReconciliationEngine(
            registry=registry,
            installer=installer,
            settings=lambda: settings.current,
            snapshots=self._snapshots,
            notifier=notifier,
        )
        self.watchers = WatcherPool(self.engine.handle_change, force_polling=force_polling)
        self.watchers.configure(settings.current)
        self._watching = False

    def create_profile(self, name: str, description: str | None = None) -> Profile:
        return self.profiles.create_profile(name, description)

    def get_profile(self, profile_id: str) -> Profile:
        return self.profiles.get_profile(profile_id)

    def list_profiles(self) -> list[Profile]:
        return self.profiles.list_profiles()

    def update_profile(self, profile_id: str, name: str | None = None, description: str | None = None) -> Profile:
        return self.profiles.update_profile(profile_id, name, description)

    def delete_profile(self, profile_id: str) -> None:
        self.profiles.delete_profile(profile_id)

    def set_active_profile(self, profile_id: str) -> None:
        self.profiles.set_active_profile(profile_id)

    def active_profile_id(self) -> str | None:
        return self.profiles.get_active_profile_id()

    def set_var(
        self,
        profile_id: str,
        name: str,
        value: str,
        sensitive: bool = False,
        description: str | None = None,
    ) -> None:
        self.profiles.set_var(profile_id, name, value, sensitive, description)

    def delete_var(self, profile_id: str, name: str) -> None:
        self.profiles.delete_var(profile_id, name)

    def get_var(self, profile_id: str, name: str) -> EnvVar:
        return self.profiles.get_var(profile_id, name)

    def list_vars(self, profile_id: str) -> dict[str, EnvVar]:
        return self.profiles.list_vars(profile_id)

    def export_profile(self, profile_id: str) -> dict[str, str]:
        return self.profiles.export_profile(profile_id)

    def render_export(self, profile_id: str, fmt: ExportFormat) -> str:
        return self.profiles.render_export(profile_id, fmt)

    def build_run_context(self, profile_id: str | None) -> RunContext:
        chosen = profile_id or self.profiles.get_active_profile_id()
        if not chosen:
            raise ProfileError("No profile given and no active profile set")
        return RunContext(profile_id=chosen, injected_env=self.profiles.export_profile(chosen))

    def list_packages(self) -> list[InstalledPackage]:
        return self.registry.all()

    def get_package(self, name: str) -> InstalledPackage:
        return self.registry.get(name)

    def install_package(self, name: str, version: str | None = None) -> InstalledPackage:
        with self.engine.exclusive():
            package = self.installer.install_or_localize(name, self._installation_dir(), version)
            existing = self.registry.find(package.name)
            if existing is not None:
                package = package.model_copy(
                    update={"installed_at": existing.installed_at, "used_by_configs": existing.used_by_configs}
                )
            self.registry.upsert(package)
        return package

    def update_package(self, name: str, version: str | None = None) -> InstalledPackage:
        with self.engine.exclusive():
            existing = self.registry.get(name)
            fresh = self.installer.install_or_localize(name, self._installation_dir(), version)
            package = fresh.model_copy(
                update={"installed_at": existing.installed_at, "used_by_configs": existing.used_by_configs}
            )
            self.registry.upsert(package)
        logger.info("Updated %s from %s to %s", name, existing.version, package.version)
        return package

    def remove_orphan(self, name: str, delete_files: bool = True) -> InstalledPackage:
        """Drop a package no host entry resolves to right now.

        References are recomputed from freshly read host files rather than the
        registry's last cycle. The registry entry is committed before any file
        is deleted, so a failed write leaves both untouched.
        """
        with self.engine.exclusive():
            package = self.registry.get(name)
            self.watchers.refresh_all()
            users = self.engine.references_to(name)
            if users:
                listed = ", ".join(f"{ref.platform}:{ref.server_name}" for ref in users)
                raise OrphanError(f"Package {name} is still used by {listed}")
            self.registry.remove(name)
            if delete_files:
                self.installer.remove(package)
        return package

    def reconcile_now(self) -> CycleReport:
        if not self._watching:
            self.watchers.refresh_all()
        return self.engine.reconcile_now()

    def host_snapshots(self) -> list[HostSnapshot]:
        return self._snapshots()

    def start_watching(self) -> CycleReport:
        self.watchers.start(self.settings.current)
        self._watching = True
        return self.engine.reconcile_now()

    def stop_watching(self) -> None:
        self.watchers.stop()
        self._watching = False

    def configure_watcher(
        self,
        host: str,
        enabled: bool | None = None,
        config_path: str | None = None,
    ) -> InstallationConfig:
        config = self.settings.configure_watcher(host, enabled, config_path)
        if self._watching:
            self.watchers.start(config)
        else:
            self.watchers.configure(config)
        return config

    def configure_installation(
        self,
        installation_dir: str | None = None,
        preferred_package_manager: PackageManagerName | None = None,
        auto_localize: bool | None = None,
    ) -> InstallationConfig:
        config = self.settings.configure_installation(installation_dir, preferred_package_manager, auto_localize)
        self.installer.reconfigure(
            config.package_manager.preferred_package_manager,
            config.package_manager.timeout_seconds,
        )
        return config

    def configure_notifications(
        self,
        on_new_server_detected: bool | None = None,
        on_update_available: bool | None = None,
    ) -> InstallationConfig:
        return self.settings.configure_notifications(on_new_server_detected, on_update_available)

    def _installation_dir(self) -> Path:
        return Path(self.settings.current.package_manager.installation_dir).expanduser()

    def _snapshots(self) -> list[HostSnapshot]:
        return self.watchers.snapshots()


def build_service(
    storage_dir: Path = STORAGE_DIR,
    vault: Vault | None = None,
    notifier: Notifier | None = None,
    force_polling: bool = False,
) -> EnvManagerService:
    paths = StoragePaths(storage_dir)
    settings = InstallationSettings(paths.installation_config, default_installation_config(paths.packages))
    package_manager = settings.current.package_manager
    return EnvManagerService(
        settings=settings,
        profiles=ProfileStore(paths.profiles, vault or Vault()),
        registry=PackageRegistryStore(paths.registry),
        installer=PackageManagerAdapter(package_manager.preferred_package_manager, package_manager.timeout_seconds),
        notifier=notifier,
        force_polling=force_polling,
    )
