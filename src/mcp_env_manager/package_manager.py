from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from mcp_env_manager.models import InstalledPackage, PackageManagerName, utc_now

logger = logging.getLogger(__name__)

_ADD_VERB: dict[str, str] = {"npm": "install", "yarn": "add", "pnpm": "add"}
_WRAPPER_MANIFEST = {
    "name": "mcp-package-wrapper",
    "version": "1.0.0",
    "private": True,
    "type": "module",
}


class PackageManagerError(RuntimeError):
    pass


class PackageManagerNotFound(PackageManagerError):
    pass


class InstallFailed(PackageManagerError):
    def __init__(self, message: str, output: str = "") -> None:
        super().__init__(message)
        self.output = output


class InstallTimeout(PackageManagerError):
    pass


@dataclass(frozen=True, slots=True)
class PackageMetadata:
    version: str
    bin_name: str | None
    dependencies: tuple[str, ...]


def package_dir_name(package_name: str) -> str:
    return package_name.replace("/", "-")


class PackageManagerAdapter:
    """Installs packages by shelling out to npm, yarn or pnpm.

    Each package lives in its own wrapper directory under the target dir.
    Nothing is retried here; callers decide when to try again.
    """

    def __init__(self, preferred: PackageManagerName = "npm", timeout: float = 300.0) -> None:
        self._preferred = preferred
        self._timeout = timeout

    def reconfigure(self, preferred: PackageManagerName, timeout: float) -> None:
        self._preferred = preferred
        self._timeout = timeout

    def install_or_localize(
        self,
        package_name: str,
        target_dir: Path,
        version: str | None = None,
    ) -> InstalledPackage:
        package_dir = target_dir / package_dir_name(package_name)
        self._ensure_wrapper(package_dir)

        spec = f"{package_name}@{version}" if version else package_name
        self._run([self._executable(), _ADD_VERB[self._preferred], spec], cwd=package_dir)

        node_modules = package_dir / "node_modules"
        metadata = read_package_metadata(node_modules / package_name)
        bin_path = str(node_modules / ".bin" / metadata.bin_name) if metadata.bin_name else None
        now = utc_now()
        logger.info("Installed %s %s into %s", package_name, metadata.version, package_dir)
        return InstalledPackage(
            name=package_name,
            version=metadata.version,
            local_path=str(node_modules / package_name),
            bin_path=bin_path,
            installed_at=now,
            updated_at=now,
            dependencies=list(metadata.dependencies),
        )

    def remove(self, package: InstalledPackage) -> bool:
        """Delete the wrapper directory holding ``package``; False if it was already gone."""
        package_dir = _wrapper_dir(Path(package.local_path))
        if package_dir.name != package_dir_name(package.name):
            raise PackageManagerError(f"Refusing to delete unexpected directory {package_dir}")
        if not package_dir.exists():
            return False
        try:
            shutil.rmtree(package_dir)
        except OSError as exc:
            raise PackageManagerError(f"Cannot remove {package_dir}: {exc}") from exc
        logger.info("Removed %s from %s", package.name, package_dir)
        return True

    def _executable(self) -> str:
        executable = shutil.which(self._preferred)
        if executable is None:
            raise PackageManagerNotFound(f"Package manager not found on PATH: {self._preferred}")
        return executable

    def _run(self, command: list[str], cwd: Path) -> None:
        logger.debug("Running %s in %s", command, cwd)
        try:
            result = subprocess.run(
                command,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise InstallTimeout(f"'{' '.join(command[1:])}' timed out after {self._timeout:g}s") from exc
        except FileNotFoundError as exc:
            raise PackageManagerNotFound(str(exc)) from exc
        except OSError as exc:
            raise PackageManagerError(f"Cannot run {command[0]}: {exc}") from exc

        if result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise InstallFailed(
                f"'{' '.join(command[1:])}' exited with code {result.returncode}",
                output=output,
            )

    @staticmethod
    def _ensure_wrapper(package_dir: Path) -> None:
        try:
            package_dir.mkdir(parents=True, exist_ok=True)
            manifest = package_dir / "package.json"
            if not manifest.exists():
                manifest.write_text(json.dumps(_WRAPPER_MANIFEST, indent=2), encoding="utf-8")
        except OSError as exc:
            raise InstallFailed(f"Cannot prepare {package_dir}: {exc}") from exc


def _wrapper_dir(local_path: Path) -> Path:
    for parent in local_path.parents:
        if parent.name == "node_modules":
            return parent.parent
    return local_path.parent


def read_package_metadata(package_root: Path) -> PackageMetadata:
    try:
        data: Any = json.loads((package_root / "package.json").read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return PackageMetadata(version="unknown", bin_name=None, dependencies=())
    if not isinstance(data, dict):
        return PackageMetadata(version="unknown", bin_name=None, dependencies=())

    bin_field = data.get("bin")
    bin_name: str | None = None
    if isinstance(bin_field, str):
        bin_name = str(data.get("name") or package_root.name).split("/")[-1]
    elif isinstance(bin_field, dict) and bin_field:
        bin_name = next(iter(bin_field))

    dependencies = data.get("dependencies")
    return PackageMetadata(
        version=str(data.get("version") or "unknown"),
        bin_name=bin_name,
        dependencies=tuple(dependencies) if isinstance(dependencies, dict) else (),
    )
