from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from mcp_env_manager.config import PACKAGES_DIR, claude_config_path, cursor_config_path


PackageManagerName = Literal["npm", "yarn", "pnpm"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base for every persisted document; files use camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EnvVar(CamelModel):
    value: str
    sensitive: bool = False
    description: str | None = None


class Profile(CamelModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: str | None = None
    created_at: datetime
    updated_at: datetime
    variables: dict[str, EnvVar] = Field(default_factory=dict)


class ProfilesConfig(CamelModel):
    profiles: list[Profile] = Field(default_factory=list)
    active_profile: str | None = None


class ConfigReference(CamelModel):
    model_config = ConfigDict(frozen=True)

    path: str
    platform: str
    server_name: str

    @property
    def identity(self) -> tuple[str, str]:
        return (self.path, self.server_name)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ConfigReference):
            return NotImplemented
        return self.identity == other.identity

    def __hash__(self) -> int:
        return hash(self.identity)


class InstalledPackage(CamelModel):
    name: str = Field(min_length=1)
    version: str
    local_path: str
    bin_path: str | None = None
    installed_at: datetime
    updated_at: datetime | None = None
    dependencies: list[str] = Field(default_factory=list)
    used_by_configs: list[ConfigReference] = Field(default_factory=list)


class PackageRegistry(CamelModel):
    packages: dict[str, InstalledPackage] = Field(default_factory=dict)


class WatcherConfig(CamelModel):
    enabled: bool = True
    config_path: str
    debounce_seconds: float = Field(default=0.3, ge=0)


class PackageManagerConfig(CamelModel):
    installation_dir: str
    auto_localize: bool = True
    preferred_package_manager: PackageManagerName = "npm"
    timeout_seconds: float = Field(default=300.0, gt=0)


class NotificationConfig(CamelModel):
    on_new_server_detected: bool = True
    on_update_available: bool = True


class InstallationConfig(CamelModel):
    watchers: dict[str, WatcherConfig]
    package_manager: PackageManagerConfig
    notifications: NotificationConfig = Field(default_factory=NotificationConfig)
    poll_interval_seconds: float = Field(default=1.0, gt=0)


def default_installation_config(packages_dir: Path = PACKAGES_DIR) -> InstallationConfig:
    return InstallationConfig(
        watchers={
            "claude": WatcherConfig(config_path=str(claude_config_path())),
            "cursor": WatcherConfig(config_path=str(cursor_config_path())),
        },
        package_manager=PackageManagerConfig(installation_dir=str(packages_dir)),
    )


DEFAULT_INSTALLATION_CONFIG = default_installation_config()
