from __future__ import annotations

import json
from pathlib import Path

from fastapi.testclient import TestClient

from mcp_env_manager.api import create_app

from conftest import FakeInstaller, make_service

TOKEN = {"X-MCP-Env-Token": "topsecret"}


def _client(tmp_path: Path, installer: FakeInstaller | None = None) -> TestClient:
    return TestClient(create_app(make_service(tmp_path, installer), "topsecret"))


def test_mutating_endpoints_require_token(tmp_path: Path) -> None:
    client = _client(tmp_path)

    assert client.post("/profiles", json={"name": "dev"}).status_code == 401
    assert client.post("/profiles", json={"name": "dev"}, headers={"X-MCP-Env-Token": "wrong"}).status_code == 401
    assert client.get("/profiles").json()["profiles"] == []


def test_profile_lifecycle(tmp_path: Path) -> None:
    client = _client(tmp_path)

    created = client.post("/profiles", json={"name": "dev", "description": "local"}, headers=TOKEN)
    assert created.status_code == 200
    profile_id = created.json()["id"]

    stored = client.put(
        f"/profiles/{profile_id}/vars/API_KEY",
        json={"value": "sk-secret", "sensitive": True},
        headers=TOKEN,
    )
    activated = client.post(f"/profiles/{profile_id}/activate", headers=TOKEN)
    shown = client.get(f"/profiles/{profile_id}").json()

    assert stored.status_code == 200
    assert activated.status_code == 200
    assert shown["is_active"] is True
    assert shown["variables"]["API_KEY"]["value"] == "********"
    assert "sk-secret" not in json.dumps(client.get("/profiles").json())

    deleted = client.delete(f"/profiles/{profile_id}", headers=TOKEN)
    assert deleted.status_code == 200
    assert client.get("/profiles").json()["activeProfileId"] is None


def test_export_requires_token_and_returns_plaintext(tmp_path: Path) -> None:
    client = _client(tmp_path)
    profile_id = client.post("/profiles", json={"name": "dev"}, headers=TOKEN).json()["id"]
    client.put(f"/profiles/{profile_id}/vars/API_KEY", json={"value": "sk-secret", "sensitive": True}, headers=TOKEN)

    assert client.get(f"/profiles/{profile_id}/export").status_code == 401

    exported = client.get(f"/profiles/{profile_id}/export", headers=TOKEN)
    shell = client.get(f"/profiles/{profile_id}/export", params={"format": "shell"}, headers=TOKEN)

    assert exported.json() == {"variables": {"API_KEY": "sk-secret"}}
    assert shell.json()["output"] == "export API_KEY='sk-secret'\n"


def test_unknown_profile_is_404(tmp_path: Path) -> None:
    client = _client(tmp_path)

    assert client.get("/profiles/missing").status_code == 404
    assert client.post("/profiles/missing/activate", headers=TOKEN).status_code == 404


def test_reconcile_and_packages(tmp_path: Path) -> None:
    (tmp_path / "alpha.json").write_text(json.dumps({"mcpServers": {"foo": {"command": "foo-bin"}}}), encoding="utf-8")
    client = _client(tmp_path, FakeInstaller(bins={"foo-bin": ("foo", "foo-bin")}))

    report = client.post("/reconcile", headers=TOKEN)
    packages = client.get("/packages").json()["packages"]
    in_use = client.delete("/packages/foo", headers=TOKEN)

    assert report.status_code == 200
    assert report.json()["installed"] == ["foo"]
    assert packages[0]["usedByConfigs"][0]["serverName"] == "foo"
    assert in_use.status_code == 409
    assert client.get("/packages/missing").status_code == 404


def test_failed_install_is_502(tmp_path: Path) -> None:
    client = _client(tmp_path, FakeInstaller(fail={"broken"}))

    response = client.post("/packages", json={"name": "broken"}, headers=TOKEN)

    assert response.status_code == 502
    assert response.json()["detail"]["output"] == "npm ERR! 404"


def test_settings_updates(tmp_path: Path) -> None:
    client = _client(tmp_path)

    updated = client.patch("/settings/installation", json={"auto_localize": False}, headers=TOKEN)
    rejected = client.patch("/settings/watchers/beta", json={"enabled": True}, headers=TOKEN)

    assert updated.json()["packageManager"]["autoLocalize"] is False
    assert client.get("/settings").json()["packageManager"]["autoLocalize"] is False
    assert rejected.status_code == 400
