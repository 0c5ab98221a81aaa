from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from pathlib import Path

from mcp_env_manager.models import InstalledPackage, PackageRegistry
from mcp_env_manager.storage import load_document, write_document

logger = logging.getLogger(__name__)


class RegistryError(RuntimeError):
    pass


class PackageNotFound(RegistryError):
    pass


class PackageRegistryStore:
    """Durable name -> InstalledPackage mapping.

    Writers are serialized; readers get copies of the last committed state.
    Iteration order is registration order, which reconciliation relies on for
    tie-breaks.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._registry = load_document(path, PackageRegistry, PackageRegistry())

    def get(self, name: str) -> InstalledPackage:
        with self._lock:
            package = self._registry.packages.get(name)
            if package is None:
                raise PackageNotFound(f"Package not installed: {name}")
            return package.model_copy(deep=True)

    def find(self, name: str) -> InstalledPackage | None:
        with self._lock:
            package = self._registry.packages.get(name)
            return package.model_copy(deep=True) if package else None

    def all(self) -> list[InstalledPackage]:
        with self._lock:
            return [package.model_copy(deep=True) for package in self._registry.packages.values()]

    def upsert(self, package: InstalledPackage) -> None:
        self.replace_all([package], merge=True)

    def replace_all(self, packages: Iterable[InstalledPackage], merge: bool = False) -> None:
        """Commit several packages in one atomic write.

        With ``merge`` the given packages are upserted; without it they become
        the full registry content.
        """
        with self._lock:
            updated = self._registry.model_copy(deep=True) if merge else PackageRegistry()
            for package in packages:
                updated.packages[package.name] = package.model_copy(deep=True)
            write_document(self._path, updated)
            self._registry = updated

    def remove(self, name: str) -> InstalledPackage:
        with self._lock:
            if name not in self._registry.packages:
                raise PackageNotFound(f"Package not installed: {name}")
            updated = self._registry.model_copy(deep=True)
            removed = updated.packages.pop(name)
            write_document(self._path, updated)
            self._registry = updated
        logger.info("Removed %s from registry", name)
        return removed
