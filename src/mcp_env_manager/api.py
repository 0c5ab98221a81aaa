from __future__ import annotations

import secrets
from collections.abc import Callable
from typing import Any, Literal, TypeVar

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field

from mcp_env_manager.models import InstalledPackage, PackageManagerName, Profile
from mcp_env_manager.package_manager import InstallFailed, PackageManagerError, PackageManagerNotFound
from mcp_env_manager.profiles import NotFound, ProfileError
from mcp_env_manager.reconcile import CycleReport
from mcp_env_manager.registry import PackageNotFound
from mcp_env_manager.service import EnvManagerService, OrphanError
from mcp_env_manager.settings import SettingsError
from mcp_env_manager.storage import PersistenceError
from mcp_env_manager.vault import DecryptFailure, MissingKey, VaultError

T = TypeVar("T")

TOKEN_HEADER = "X-MCP-Env-Token"


class ProfileCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None


class ProfileUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None


class VarWriteRequest(BaseModel):
    value: str
    sensitive: bool = False
    description: str | None = None


class PackageInstallRequest(BaseModel):
    name: str = Field(min_length=1)
    version: str | None = None


class WatcherUpdateRequest(BaseModel):
    enabled: bool | None = None
    config_path: str | None = None


class InstallationUpdateRequest(BaseModel):
    installation_dir: str | None = None
    preferred_package_manager: PackageManagerName | None = None
    auto_localize: bool | None = None


class NotificationUpdateRequest(BaseModel):
    on_new_server_detected: bool | None = None
    on_update_available: bool | None = None


class ProfileResponse(BaseModel):
    id: str
    name: str
    description: str | None
    created_at: str
    updated_at: str
    is_active: bool
    variables: dict[str, dict[str, Any]]


def create_app(service: EnvManagerService, auth_token: str) -> FastAPI:
    app = FastAPI(title="MCP Env Manager Local API", version="0.1.0")

    def require_token(request: Request) -> None:
        provided = request.headers.get(TOKEN_HEADER)
        if not provided or not secrets.compare_digest(provided, auth_token):
            raise HTTPException(status_code=401, detail="Unauthorized")

    def run_service_call(fn: Callable[[], T]) -> T:
        try:
            return fn()
        except (NotFound, PackageNotFound) as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except OrphanError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except (ProfileError, SettingsError, DecryptFailure) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except InstallFailed as exc:
            raise HTTPException(status_code=502, detail={"error": str(exc), "output": exc.output}) from exc
        except (MissingKey, PackageManagerNotFound) as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        except (VaultError, PackageManagerError, PersistenceError) as exc:
            raise HTTPException(status_code=500, detail=str(exc)) from exc

    def profile_response(profile: Profile) -> ProfileResponse:
        masked = service.list_vars(profile.id)
        return ProfileResponse(
            id=profile.id,
            name=profile.name,
            description=profile.description,
            created_at=profile.created_at.isoformat(),
            updated_at=profile.updated_at.isoformat(),
            is_active=profile.id == service.active_profile_id(),
            variables={name: var.model_dump(by_alias=True) for name, var in masked.items()},
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/profiles")
    def list_profiles() -> dict[str, Any]:
        profiles = run_service_call(service.list_profiles)
        return {
            "profiles": [profile_response(profile) for profile in profiles],
            "activeProfileId": service.active_profile_id(),
        }

    @app.post("/profiles")
    def create_profile(payload: ProfileCreateRequest, request: Request) -> ProfileResponse:
        require_token(request)
        profile = run_service_call(lambda: service.create_profile(payload.name, payload.description))
        return profile_response(profile)

    @app.get("/profiles/{profile_id}")
    def get_profile(profile_id: str) -> ProfileResponse:
        return run_service_call(lambda: profile_response(service.get_profile(profile_id)))

    @app.patch("/profiles/{profile_id}")
    def update_profile(profile_id: str, payload: ProfileUpdateRequest, request: Request) -> ProfileResponse:
        require_token(request)
        profile = run_service_call(
            lambda: service.update_profile(profile_id, payload.name, payload.description)
        )
        return profile_response(profile)

    @app.delete("/profiles/{profile_id}")
    def delete_profile(profile_id: str, request: Request) -> dict[str, str]:
        require_token(request)
        run_service_call(lambda: service.delete_profile(profile_id))
        return {"status": "deleted"}

    @app.post("/profiles/{profile_id}/activate")
    def activate_profile(profile_id: str, request: Request) -> dict[str, str]:
        require_token(request)
        run_service_call(lambda: service.set_active_profile(profile_id))
        return {"status": "active"}

    @app.put("/profiles/{profile_id}/vars/{name}")
    def set_var(profile_id: str, name: str, payload: VarWriteRequest, request: Request) -> dict[str, str]:
        require_token(request)
        run_service_call(
            lambda: service.set_var(profile_id, name, payload.value, payload.sensitive, payload.description)
        )
        return {"status": "stored"}

    @app.delete("/profiles/{profile_id}/vars/{name}")
    def delete_var(profile_id: str, name: str, request: Request) -> dict[str, str]:
        require_token(request)
        run_service_call(lambda: service.delete_var(profile_id, name))
        return {"status": "deleted"}

    @app.get("/profiles/{profile_id}/export")
    def export_profile(
        profile_id: str,
        request: Request,
        format: Literal["map", "dotenv", "json", "shell"] = "map",
    ) -> dict[str, Any]:
        require_token(request)
        if format == "map":
            return {"variables": run_service_call(lambda: service.export_profile(profile_id))}
        return {"format": format, "output": run_service_call(lambda: service.render_export(profile_id, format))}

    @app.get("/packages")
    def list_packages() -> dict[str, list[dict[str, Any]]]:
        packages = run_service_call(service.list_packages)
        return {"packages": [_package_json(package) for package in packages]}

    @app.get("/packages/{name:path}")
    def get_package(name: str) -> dict[str, Any]:
        return _package_json(run_service_call(lambda: service.get_package(name)))

    @app.post("/packages")
    def install_package(payload: PackageInstallRequest, request: Request) -> dict[str, Any]:
        require_token(request)
        package = run_service_call(lambda: service.install_package(payload.name, payload.version))
        return _package_json(package)

    @app.delete("/packages/{name:path}")
    def remove_orphan(name: str, request: Request, keep_files: bool = False) -> dict[str, str]:
        require_token(request)
        run_service_call(lambda: service.remove_orphan(name, delete_files=not keep_files))
        return {"status": "removed"}

    @app.post("/reconcile")
    def reconcile_now(request: Request) -> dict[str, Any]:
        require_token(request)
        return _report_json(run_service_call(service.reconcile_now))

    @app.get("/settings")
    def get_settings() -> dict[str, Any]:
        return service.settings.current.model_dump(mode="json", by_alias=True)

    @app.patch("/settings/watchers/{host}")
    def update_watcher(host: str, payload: WatcherUpdateRequest, request: Request) -> dict[str, Any]:
        require_token(request)
        config = run_service_call(lambda: service.configure_watcher(host, payload.enabled, payload.config_path))
        return config.model_dump(mode="json", by_alias=True)

    @app.patch("/settings/installation")
    def update_installation(payload: InstallationUpdateRequest, request: Request) -> dict[str, Any]:
        require_token(request)
        config = run_service_call(
            lambda: service.configure_installation(
                payload.installation_dir,
                payload.preferred_package_manager,
                payload.auto_localize,
            )
        )
        return config.model_dump(mode="json", by_alias=True)

    @app.patch("/settings/notifications")
    def update_notifications(payload: NotificationUpdateRequest, request: Request) -> dict[str, Any]:
        require_token(request)
        config = run_service_call(
            lambda: service.configure_notifications(payload.on_new_server_detected, payload.on_update_available)
        )
        return config.model_dump(mode="json", by_alias=True)

    return app


def _package_json(package: InstalledPackage) -> dict[str, Any]:
    return package.model_dump(mode="json", by_alias=True)


def _report_json(report: CycleReport) -> dict[str, Any]:
    return {
        "observed": report.observed,
        "installed": report.installed,
        "failed": report.failed,
        "unmanaged": [ref.model_dump(by_alias=True) for ref in report.unmanaged],
        "orphaned": report.orphaned,
        "ambiguous": [
            {"reference": match.reference.model_dump(by_alias=True), "candidates": list(match.candidates)}
            for match in report.ambiguous
        ],
        "newServers": report.new_servers,
        "parseErrors": report.parse_errors,
        "skipped": report.skipped,
        "registryChanged": report.registry_changed,
    }
