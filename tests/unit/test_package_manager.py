import json
import subprocess
from pathlib import Path
from typing import Any

import pytest

from mcp_env_manager import package_manager
from mcp_env_manager.package_manager import (
    InstallFailed,
    InstallTimeout,
    PackageManagerAdapter,
    PackageManagerError,
    PackageManagerNotFound,
    read_package_metadata,
)


def _fake_npm(monkeypatch: pytest.MonkeyPatch, manifest: dict[str, Any], returncode: int = 0) -> list[list[str]]:
    commands: list[list[str]] = []
    monkeypatch.setattr(package_manager.shutil, "which", lambda name: f"/usr/bin/{name}")

    def fake_run(command: list[str], cwd: Path, **kwargs: Any) -> subprocess.CompletedProcess[str]:
        commands.append(command)
        if returncode == 0:
            package_root = Path(cwd) / "node_modules" / manifest["name"]
            package_root.mkdir(parents=True)
            (package_root / "package.json").write_text(json.dumps(manifest), encoding="utf-8")
        return subprocess.CompletedProcess(command, returncode, stdout="", stderr="npm ERR! 404 Not Found")

    monkeypatch.setattr(package_manager.subprocess, "run", fake_run)
    return commands


def test_install_creates_wrapper_and_registers_bin(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    commands = _fake_npm(
        monkeypatch,
        {"name": "@scope/tool", "version": "2.1.0", "bin": {"tool-bin": "dist/cli.js"}, "dependencies": {"zod": "^3"}},
    )

    package = PackageManagerAdapter("npm").install_or_localize("@scope/tool", tmp_path)

    wrapper = tmp_path / "@scope-tool"
    assert json.loads((wrapper / "package.json").read_text(encoding="utf-8"))["private"] is True
    assert commands == [["/usr/bin/npm", "install", "@scope/tool"]]
    assert package.name == "@scope/tool"
    assert package.version == "2.1.0"
    assert package.local_path == str(wrapper / "node_modules" / "@scope/tool")
    assert package.bin_path == str(wrapper / "node_modules" / ".bin" / "tool-bin")
    assert package.dependencies == ["zod"]


@pytest.mark.parametrize(("manager", "verb"), [("yarn", "add"), ("pnpm", "add")])
def test_install_uses_preferred_manager(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, manager: str, verb: str
) -> None:
    commands = _fake_npm(monkeypatch, {"name": "foo", "version": "1.0.0"})

    package = PackageManagerAdapter(manager).install_or_localize("foo", tmp_path, version="1.0.0")  # type: ignore[arg-type]

    assert commands == [[f"/usr/bin/{manager}", verb, "foo@1.0.0"]]
    assert package.bin_path is None


def test_failed_install_carries_output(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_npm(monkeypatch, {"name": "foo"}, returncode=1)

    with pytest.raises(InstallFailed) as excinfo:
        PackageManagerAdapter().install_or_localize("foo", tmp_path)

    assert "exited with code 1" in str(excinfo.value)
    assert excinfo.value.output == "npm ERR! 404 Not Found"


def test_install_timeout(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(package_manager.shutil, "which", lambda name: f"/usr/bin/{name}")

    def slow_run(command: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    monkeypatch.setattr(package_manager.subprocess, "run", slow_run)

    with pytest.raises(InstallTimeout):
        PackageManagerAdapter(timeout=0.5).install_or_localize("foo", tmp_path)


def test_missing_package_manager(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(package_manager.shutil, "which", lambda name: None)

    with pytest.raises(PackageManagerNotFound):
        PackageManagerAdapter("pnpm").install_or_localize("foo", tmp_path)


def test_string_bin_uses_unscoped_package_name(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text(
        json.dumps({"name": "@scope/server", "version": "0.3.0", "bin": "cli.js"}), encoding="utf-8"
    )

    metadata = read_package_metadata(tmp_path)

    assert metadata.bin_name == "server"
    assert metadata.version == "0.3.0"


def test_unreadable_metadata(tmp_path: Path) -> None:
    metadata = read_package_metadata(tmp_path / "missing")

    assert metadata.version == "unknown"
    assert metadata.bin_name is None


def test_remove_deletes_wrapper_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    _fake_npm(monkeypatch, {"name": "@scope/tool", "version": "1.0.0"})
    adapter = PackageManagerAdapter()
    package = adapter.install_or_localize("@scope/tool", tmp_path)

    assert adapter.remove(package) is True
    assert not (tmp_path / "@scope-tool").exists()
    assert adapter.remove(package) is False


def test_unrunnable_package_manager_is_a_package_manager_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(package_manager.shutil, "which", lambda name: f"/usr/bin/{name}")

    def denied(command: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise PermissionError(13, "Permission denied", command[0])

    monkeypatch.setattr(package_manager.subprocess, "run", denied)

    with pytest.raises(PackageManagerError) as excinfo:
        PackageManagerAdapter().install_or_localize("foo", tmp_path)

    assert not isinstance(excinfo.value, PackageManagerNotFound)
    assert "Permission denied" in str(excinfo.value)
