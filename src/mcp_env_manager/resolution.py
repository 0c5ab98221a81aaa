from __future__ import annotations

import os
import re
from collections.abc import Iterable
from dataclasses import dataclass

from mcp_env_manager.hosts import ServerEntry
from mcp_env_manager.models import InstalledPackage

RUNNERS = frozenset({"npx", "pnpx", "bunx"})
DLX_RUNNERS = frozenset({"pnpm", "yarn"})
INTERPRETERS = frozenset({"node", "deno", "bun", "python", "python3", "uv", "uvx", "docker"})

_NPM_NAME = re.compile(r"^(@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*$")


@dataclass(frozen=True, slots=True)
class Resolution:
    package: str | None
    candidates: tuple[str, ...] = ()

    @property
    def ambiguous(self) -> bool:
        return len(self.candidates) > 1


def _basename(command: str) -> str:
    name = re.split(r"[\\/]", command)[-1]
    for suffix in (".cmd", ".exe"):
        if name.lower().endswith(suffix):
            return name[: -len(suffix)]
    return name


def strip_version(spec: str) -> str:
    """``@scope/pkg@1.2`` -> ``@scope/pkg``; ``pkg@latest`` -> ``pkg``."""
    if spec.startswith("@"):
        return "@" + spec[1:].partition("@")[0]
    return spec.partition("@")[0]


def _first_positional(args: Iterable[str]) -> str | None:
    for arg in args:
        if not arg.startswith("-"):
            return arg
    return None


def package_spec(entry: ServerEntry) -> str | None:
    """The package name an entry invokes, if it names one rather than a file."""
    command = _basename(entry.command)
    spec: str | None = None
    if command in RUNNERS:
        spec = _first_positional(entry.args)
    elif command in DLX_RUNNERS:
        if entry.args[:1] != ("dlx",):
            return None
        spec = _first_positional(entry.args[1:])
    elif command in INTERPRETERS or re.search(r"[\\/]", entry.command):
        return None
    else:
        spec = entry.command

    if not spec:
        return None
    name = strip_version(spec)
    return name if _NPM_NAME.match(name) else None


def matches(entry: ServerEntry, package: InstalledPackage) -> bool:
    local_root = package.local_path.rstrip("/\\")
    for token in entry.tokens:
        if package.bin_path and token == package.bin_path:
            return True
        if local_root and (token == local_root or token.startswith(local_root + os.sep)):
            return True

    if package.bin_path and _basename(entry.command) == _basename(package.bin_path):
        return True
    return package_spec(entry) == package.name


def resolve(entry: ServerEntry, packages: Iterable[InstalledPackage]) -> Resolution:
    """First match in registration order wins; every match is reported."""
    candidates = tuple(package.name for package in packages if matches(entry, package))
    return Resolution(package=candidates[0] if candidates else None, candidates=candidates)
