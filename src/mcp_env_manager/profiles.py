from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Literal

from mcp_env_manager.models import EnvVar, Profile, ProfilesConfig, utc_now
from mcp_env_manager.storage import load_document, write_document
from mcp_env_manager.vault import DecryptFailure, Vault, is_sealed

logger = logging.getLogger(__name__)

MASKED_VALUE = "********"

ExportFormat = Literal["dotenv", "json", "shell"]


class ProfileError(RuntimeError):
    pass


class NotFound(ProfileError):
    pass


def _slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]", "-", name.lower())


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while True:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
        if number == 0:
            return out


class ProfileStore:
    """Named environment profiles persisted as one JSON document.

    Sensitive values are sealed by the vault before they reach the document and
    are only opened on explicit reads. Every mutation rewrites the whole file
    under a single lock; a failed write restores the last durable state.
    """

    def __init__(self, path: Path, vault: Vault) -> None:
        self._path = path
        self._vault = vault
        self._lock = threading.RLock()
        self._config = load_document(path, ProfilesConfig, ProfilesConfig())

    @property
    def path(self) -> Path:
        return self._path

    def list_profiles(self) -> list[Profile]:
        with self._lock:
            return [self._public(profile) for profile in self._config.profiles]

    def get_profile(self, profile_id: str) -> Profile:
        with self._lock:
            return self._public(self._find(profile_id))

    def get_active_profile_id(self) -> str | None:
        return self._config.active_profile

    def get_active_profile(self) -> Profile | None:
        with self._lock:
            active = self._config.active_profile
            return self.get_profile(active) if active else None

    def create_profile(self, name: str, description: str | None = None) -> Profile:
        if not name.strip():
            raise ProfileError("Profile name cannot be empty")

        with self._mutation() as config:
            now = utc_now()
            profile = Profile(
                id=self._new_id(config, name),
                name=name,
                description=description,
                created_at=now,
                updated_at=now,
            )
            config.profiles.append(profile)
        logger.info("Created profile %s", profile.id)
        return self._public(profile)

    def update_profile(
        self,
        profile_id: str,
        name: str | None = None,
        description: str | None = None,
    ) -> Profile:
        if name is not None and not name.strip():
            raise ProfileError("Profile name cannot be empty")

        with self._mutation() as config:
            profile = self._find(profile_id, config)
            if name is not None:
                profile.name = name
            if description is not None:
                profile.description = description
            self._touch(profile)
        return self._public(profile)

    def delete_profile(self, profile_id: str) -> None:
        with self._mutation() as config:
            profile = self._find(profile_id, config)
            config.profiles.remove(profile)
            if config.active_profile == profile_id:
                config.active_profile = None
        logger.info("Deleted profile %s", profile_id)

    def set_active_profile(self, profile_id: str) -> None:
        with self._mutation() as config:
            self._find(profile_id, config)
            config.active_profile = profile_id

    def set_var(
        self,
        profile_id: str,
        name: str,
        value: str,
        sensitive: bool = False,
        description: str | None = None,
    ) -> None:
        if not name.strip():
            raise ProfileError("Environment variable name cannot be empty")

        stored = self._vault.encrypt(value) if sensitive else value
        with self._mutation() as config:
            profile = self._find(profile_id, config)
            profile.variables[name] = EnvVar(value=stored, sensitive=sensitive, description=description)
            self._touch(profile)

    def delete_var(self, profile_id: str, name: str) -> None:
        with self._mutation() as config:
            profile = self._find(profile_id, config)
            if name not in profile.variables:
                raise NotFound(f"Environment variable not found: {name}")
            del profile.variables[name]
            self._touch(profile)

    def get_var(self, profile_id: str, name: str) -> EnvVar:
        with self._lock:
            env_var = self._find(profile_id).variables.get(name)
            if env_var is None:
                raise NotFound(f"Environment variable not found: {name}")
            return EnvVar(value=self._open(name, env_var), sensitive=env_var.sensitive, description=env_var.description)

    def list_vars(self, profile_id: str) -> dict[str, EnvVar]:
        """Variables with sensitive values masked."""
        with self._lock:
            return {
                name: EnvVar(
                    value=MASKED_VALUE if env_var.sensitive else env_var.value,
                    sensitive=env_var.sensitive,
                    description=env_var.description,
                )
                for name, env_var in self._find(profile_id).variables.items()
            }

    def export_profile(self, profile_id: str) -> dict[str, str]:
        """Plaintext environment for a launched process; opens every sealed value."""
        with self._lock:
            profile = self._find(profile_id)
            return {name: self._open(name, env_var) for name, env_var in profile.variables.items()}

    def render_export(self, profile_id: str, fmt: ExportFormat) -> str:
        with self._lock:
            variables = self._find(profile_id).variables
            values = self.export_profile(profile_id)
            if fmt == "json":
                return json.dumps(values, indent=2)

            render: Callable[[str], str] = _dotenv_value if fmt == "dotenv" else _shell_value
            prefix = "" if fmt == "dotenv" else "export "
            lines: list[str] = []
            for name, value in values.items():
                if variables[name].description:
                    lines.append(f"# {variables[name].description}")
                lines.append(f"{prefix}{name}={render(value)}")
            return "\n".join(lines) + ("\n" if lines else "")

    def _open(self, name: str, env_var: EnvVar) -> str:
        if not env_var.sensitive:
            return env_var.value
        if not is_sealed(env_var.value):
            raise DecryptFailure(f"Sensitive variable {name} is not sealed; set it again to re-encrypt")
        return self._vault.decrypt(env_var.value)

    @contextmanager
    def _mutation(self) -> Iterator[ProfilesConfig]:
        with self._lock:
            snapshot = self._config.model_copy(deep=True)
            try:
                yield self._config
                write_document(self._path, self._config)
            except BaseException:
                self._config = snapshot
                raise

    def _find(self, profile_id: str, config: ProfilesConfig | None = None) -> Profile:
        for profile in (config or self._config).profiles:
            if profile.id == profile_id:
                return profile
        raise NotFound(f"Profile not found: {profile_id}")

    @staticmethod
    def _new_id(config: ProfilesConfig, name: str) -> str:
        taken = {profile.id for profile in config.profiles}
        stamp = int(time.time() * 1000)
        while True:
            candidate = f"{_slugify(name)}-{_base36(stamp)}"
            if candidate not in taken:
                return candidate
            stamp += 1

    @staticmethod
    def _touch(profile: Profile) -> None:
        now = utc_now()
        if now <= profile.updated_at:
            now = profile.updated_at + timedelta(microseconds=1)
        profile.updated_at = now

    @staticmethod
    def _public(profile: Profile) -> Profile:
        return profile.model_copy(deep=True)


def _dotenv_value(value: str) -> str:
    if re.search(r"[\s\"']", value):
        escaped = value.replace('"', '\\"')
        return f'"{escaped}"'
    return value


def _shell_value(value: str) -> str:
    escaped = value.replace("'", "'\\''")
    return f"'{escaped}'"
