"""Parsing of host application config files.

Hosts (desktop clients) keep their own JSON listing the server processes they
launch. Real hosts nest the list under ``mcpServers``; a bare top-level map is
accepted as well. Parsing never raises: a file that is not a JSON object of
servers is an ``InvalidHostConfig``, while entries this engine cannot launch
(remote ``url`` servers, malformed ``env``) are listed in
``ValidHostConfig.skipped`` next to the entries that parsed.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

SERVERS_KEY = "mcpServers"


class ConfigParseError(ValueError):
    pass


class ServerEntry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    command: str = Field(min_length=1)
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)

    @property
    def tokens(self) -> tuple[str, ...]:
        return (self.command, *self.args)


@dataclass(frozen=True, slots=True)
class ValidHostConfig:
    entries: dict[str, ServerEntry] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class InvalidHostConfig:
    error: str


ParsedHostConfig = Union[ValidHostConfig, InvalidHostConfig]


def parse_host_config(text: str) -> ParsedHostConfig:
    try:
        servers = _parse_servers(text)
    except ConfigParseError as exc:
        return InvalidHostConfig(error=str(exc))

    entries: dict[str, ServerEntry] = {}
    skipped: dict[str, str] = {}
    for name, raw in servers.items():
        try:
            entries[name] = ServerEntry.model_validate(raw)
        except ValidationError as exc:
            skipped[name] = _first_error(exc)
    return ValidHostConfig(entries=entries, skipped=skipped)


def read_host_config(path: Path) -> ParsedHostConfig:
    """Read and parse a host file; a missing file lists no servers."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ValidHostConfig()
    except (OSError, UnicodeDecodeError) as exc:
        return InvalidHostConfig(error=f"Cannot read {path}: {exc}")
    return parse_host_config(text)


def _parse_servers(text: str) -> dict[str, Any]:
    if not text.strip():
        return {}

    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigParseError(f"Invalid JSON: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigParseError("Top-level value must be an object")

    servers = data[SERVERS_KEY] if SERVERS_KEY in data else data
    if not isinstance(servers, dict):
        raise ConfigParseError(f"'{SERVERS_KEY}' must be an object")
    return servers


def _first_error(exc: ValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error["loc"]) or "entry"
    return f"{location}: {error['msg']}"
