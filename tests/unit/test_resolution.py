from datetime import datetime, timezone

import pytest

from mcp_env_manager.hosts import ServerEntry
from mcp_env_manager.models import InstalledPackage
from mcp_env_manager.resolution import package_spec, resolve, strip_version


def _package(name: str, bin_name: str | None = None, root: str = "/opt/pkgs") -> InstalledPackage:
    node_modules = f"{root}/{name.replace('/', '-')}/node_modules"
    return InstalledPackage(
        name=name,
        version="1.0.0",
        local_path=f"{node_modules}/{name}",
        bin_path=f"{node_modules}/.bin/{bin_name}" if bin_name else None,
        installed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )


@pytest.mark.parametrize(
    ("spec", "expected"),
    [
        ("pkg", "pkg"),
        ("pkg@1.2.3", "pkg"),
        ("@scope/pkg", "@scope/pkg"),
        ("@scope/pkg@latest", "@scope/pkg"),
    ],
)
def test_strip_version(spec: str, expected: str) -> None:
    assert strip_version(spec) == expected


@pytest.mark.parametrize(
    ("command", "args", "expected"),
    [
        ("npx", ["-y", "@modelcontextprotocol/server-github"], "@modelcontextprotocol/server-github"),
        ("npx", ["foo-bin@2"], "foo-bin"),
        ("/usr/local/bin/npx", ["-y", "foo"], "foo"),
        ("pnpm", ["dlx", "foo"], "foo"),
        ("pnpm", ["install"], None),
        ("foo-bin", [], "foo-bin"),
        ("node", ["/srv/server.js"], None),
        ("python", ["-m", "server"], None),
        ("/srv/bin/server", [], None),
        ("npx", ["-y"], None),
    ],
)
def test_package_spec(command: str, args: list[str], expected: str | None) -> None:
    assert package_spec(ServerEntry(command=command, args=tuple(args))) == expected


def test_resolves_by_bin_path_token() -> None:
    package = _package("foo", "foo-bin")
    entry = ServerEntry(command="node", args=(package.bin_path or "",))

    assert resolve(entry, [package]).package == "foo"


def test_resolves_by_path_under_local_path() -> None:
    package = _package("foo", "foo-bin")
    entry = ServerEntry(command="node", args=(f"{package.local_path}/dist/index.js",))

    assert resolve(entry, [package]).package == "foo"


def test_local_path_prefix_needs_a_separator() -> None:
    package = _package("foo", "foo-bin")
    entry = ServerEntry(command="node", args=(f"{package.local_path}-other/index.js",))

    assert resolve(entry, [package]).package is None


def test_resolves_by_bin_basename() -> None:
    entry = ServerEntry(command="foo-bin")

    assert resolve(entry, [_package("foo", "foo-bin")]).package == "foo"


def test_resolves_by_runner_spec() -> None:
    entry = ServerEntry(command="npx", args=("-y", "@scope/tool@1.0"))

    assert resolve(entry, [_package("@scope/tool")]).package == "@scope/tool"


def test_first_registered_wins_and_ambiguity_is_reported() -> None:
    first = _package("first", "shared-bin", root="/a")
    second = _package("second", "shared-bin", root="/b")

    resolution = resolve(ServerEntry(command="shared-bin"), [first, second])

    assert resolution.package == "first"
    assert resolution.ambiguous
    assert resolution.candidates == ("first", "second")


def test_unmatched_entry() -> None:
    resolution = resolve(ServerEntry(command="python", args=("server.py",)), [_package("foo", "foo-bin")])

    assert resolution.package is None
    assert not resolution.ambiguous
