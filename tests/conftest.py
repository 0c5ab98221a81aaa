from __future__ import annotations

from pathlib import Path

import pytest

from mcp_env_manager.models import (
    InstallationConfig,
    InstalledPackage,
    PackageManagerConfig,
    WatcherConfig,
    utc_now,
)
from mcp_env_manager.package_manager import InstallFailed
from mcp_env_manager.profiles import ProfileStore
from mcp_env_manager.registry import PackageRegistryStore
from mcp_env_manager.service import EnvManagerService
from mcp_env_manager.settings import InstallationSettings
from mcp_env_manager.vault import Vault

TEST_KEY = "0123456789abcdef0123456789abcdef"


class FakeInstaller:
    """Stands in for npm: records calls and fabricates registry records."""

    def __init__(self, bins: dict[str, tuple[str, str]] | None = None, fail: set[str] | None = None) -> None:
        self.bins = bins or {}
        self.fail = fail or set()
        self.calls: list[str] = []
        self.removed: list[str] = []

    def install_or_localize(self, package_name: str, target_dir: Path, version: str | None = None) -> InstalledPackage:
        self.calls.append(package_name)
        if package_name in self.fail:
            raise InstallFailed(f"'install {package_name}' exited with code 1", output="npm ERR! 404")
        name, bin_name = self.bins.get(package_name, (package_name, package_name))
        node_modules = target_dir / name.replace("/", "-") / "node_modules"
        now = utc_now()
        return InstalledPackage(
            name=name,
            version=version or "1.0.0",
            local_path=str(node_modules / name),
            bin_path=str(node_modules / ".bin" / bin_name),
            installed_at=now,
            updated_at=now,
        )

    def remove(self, package: InstalledPackage) -> bool:
        self.removed.append(package.name)
        return True

    def reconfigure(self, preferred: str, timeout: float) -> None:
        pass


class RecordingNotifier:
    def __init__(self) -> None:
        self.new_servers: list[tuple[str, str]] = []
        self.orphaned: list[str] = []
        self.failures: list[str] = []

    def new_server_detected(self, platform: str, server_name: str) -> None:
        self.new_servers.append((platform, server_name))

    def package_orphaned(self, package_name: str) -> None:
        self.orphaned.append(package_name)

    def install_failed(self, package_name: str, error: str) -> None:
        self.failures.append(package_name)


def installation_config(tmp_path: Path, hosts: tuple[str, ...] = ("alpha",), auto_localize: bool = True) -> InstallationConfig:
    return InstallationConfig(
        watchers={host: WatcherConfig(config_path=str(tmp_path / f"{host}.json")) for host in hosts},
        package_manager=PackageManagerConfig(
            installation_dir=str(tmp_path / "packages"),
            auto_localize=auto_localize,
        ),
    )


def make_service(
    tmp_path: Path,
    installer: FakeInstaller | None = None,
    notifier: RecordingNotifier | None = None,
    hosts: tuple[str, ...] = ("alpha",),
    auto_localize: bool = True,
) -> EnvManagerService:
    return EnvManagerService(
        settings=InstallationSettings(
            tmp_path / "installation-config.json",
            installation_config(tmp_path, hosts, auto_localize),
        ),
        profiles=ProfileStore(tmp_path / "profiles.json", Vault(TEST_KEY, keyring_service=None)),
        registry=PackageRegistryStore(tmp_path / "registry.json"),
        installer=installer or FakeInstaller(),  # type: ignore[arg-type]
        notifier=notifier,
    )


@pytest.fixture
def vault() -> Vault:
    return Vault(TEST_KEY, keyring_service=None)
