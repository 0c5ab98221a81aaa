from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from mcp_env_manager.hosts import ServerEntry
from mcp_env_manager.models import ConfigReference, InstallationConfig, InstalledPackage
from mcp_env_manager.notifications import LogNotifier, Notifier
from mcp_env_manager.package_manager import PackageManagerError
from mcp_env_manager.registry import PackageRegistryStore
from mcp_env_manager.resolution import package_spec, resolve
from mcp_env_manager.watcher import ConfigChanged, HostSnapshot

logger = logging.getLogger(__name__)


class Installer(Protocol):
    def install_or_localize(
        self,
        package_name: str,
        target_dir: Path,
        version: str | None = None,
    ) -> InstalledPackage: ...


@dataclass(frozen=True, slots=True)
class AmbiguousMatch:
    reference: ConfigReference
    candidates: tuple[str, ...]


@dataclass(slots=True)
class CycleReport:
    observed: int = 0
    installed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    unmanaged: list[ConfigReference] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    newly_orphaned: list[str] = field(default_factory=list)
    ambiguous: list[AmbiguousMatch] = field(default_factory=list)
    new_servers: list[str] = field(default_factory=list)
    parse_errors: dict[str, str] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)
    registry_changed: bool = False


def _ref_key(ref: ConfigReference) -> tuple[str, str]:
    return ref.identity


class ReconciliationEngine:
    """Keeps the package registry in step with what every host config declares.

    Each cycle reads the snapshots of all hosts, installs what is missing and
    rebuilds every package's ``used_by_configs`` from scratch. Cycles never
    overlap; triggers that arrive mid-cycle collapse into one follow-up cycle.
    """

    def __init__(
        self,
        registry: PackageRegistryStore,
        installer: Installer,
        settings: Callable[[], InstallationConfig],
        snapshots: Callable[[], Iterable[HostSnapshot]],
        notifier: Notifier | None = None,
    ) -> None:
        self._registry = registry
        self._installer = installer
        self._settings = settings
        self._snapshots = snapshots
        self._notifier = notifier or LogNotifier()
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._running = False
        self._pending = False
        self._previous_servers: set[str] = set()
        self.last_report: CycleReport | None = None

    @contextmanager
    def exclusive(self) -> Iterator[None]:
        """Hold off reconciliation while the caller writes the registry."""
        with self._cycle_lock:
            yield

    def handle_change(self, event: ConfigChanged) -> None:
        if event.parse_error:
            logger.warning("Keeping previous %s snapshot: %s", event.platform, event.parse_error)
        else:
            logger.debug("%s config changed: %d servers", event.platform, len(event.entries))
        try:
            self.trigger()
        except Exception:
            logger.exception("Reconciliation after %s change failed", event.platform)

    def trigger(self) -> CycleReport | None:
        """Run a cycle now, or queue one if a cycle is already in flight.

        Returns None when the request was folded into the running cycle.
        """
        with self._state_lock:
            if self._running:
                self._pending = True
                return None
            self._running = True
            self._pending = False

        try:
            while True:
                report = self.reconcile_now()
                with self._state_lock:
                    if not self._pending:
                        self._running = False
                        return report
                    self._pending = False
        except BaseException:
            with self._state_lock:
                self._running = False
                self._pending = False
            raise

    def reconcile_now(self) -> CycleReport:
        with self._cycle_lock:
            report = self._run_cycle()
        self.last_report = report
        return report

    def references_to(self, package_name: str) -> list[ConfigReference]:
        """Host entries that resolve to ``package_name`` in the current snapshots.

        Callers hold ``exclusive()`` so no cycle rewrites the registry meanwhile.
        """
        observed = self._observe(CycleReport())
        packages = self._registry.all()
        refs = [ref for ref, entry in observed.items() if resolve(entry, packages).package == package_name]
        return sorted(refs, key=_ref_key)

    def _observe(self, report: CycleReport) -> dict[ConfigReference, ServerEntry]:
        observed: dict[ConfigReference, ServerEntry] = {}
        for snapshot in self._snapshots():
            if snapshot.parse_error:
                report.parse_errors[snapshot.platform] = snapshot.parse_error
            for server_name, error in snapshot.skipped.items():
                report.skipped[f"{snapshot.platform}:{server_name}"] = error
            for server_name, entry in snapshot.entries.items():
                ref = ConfigReference(path=snapshot.path, platform=snapshot.platform, server_name=server_name)
                observed[ref] = entry
        return observed

    def _run_cycle(self) -> CycleReport:
        config = self._settings()
        report = CycleReport()

        observed = self._observe(report)
        report.observed = len(observed)

        before = {package.name: package for package in self._registry.all()}
        packages = dict(before)
        refs_by_package: dict[str, set[ConfigReference]] = {}
        attempted: set[str] = set()

        for ref, entry in observed.items():
            resolution = resolve(entry, packages.values())
            if resolution.package is None and config.package_manager.auto_localize:
                candidate = package_spec(entry)
                if candidate and candidate not in attempted and candidate not in packages:
                    attempted.add(candidate)
                    self._install(candidate, config, packages, report)
                    resolution = resolve(entry, packages.values())

            if resolution.ambiguous:
                logger.warning(
                    "%s/%s matches several packages %s; using %s",
                    ref.platform,
                    ref.server_name,
                    ", ".join(resolution.candidates),
                    resolution.package,
                )
                report.ambiguous.append(AmbiguousMatch(ref, resolution.candidates))

            if resolution.package is None:
                report.unmanaged.append(ref)
                continue
            refs_by_package.setdefault(resolution.package, set()).add(ref)

        for name, package in list(packages.items()):
            refs = sorted(refs_by_package.get(name, set()), key=_ref_key)
            if not refs:
                report.orphaned.append(name)
                if package.used_by_configs:
                    report.newly_orphaned.append(name)
            packages[name] = package.model_copy(update={"used_by_configs": refs})

        report.registry_changed = _dump(packages) != _dump(before)
        if report.registry_changed:
            self._registry.replace_all(packages.values())

        seen_now: set[str] = set()
        for ref in observed:
            if ref.server_name not in self._previous_servers and ref.server_name not in seen_now:
                report.new_servers.append(ref.server_name)
                if config.notifications.on_new_server_detected:
                    self._notifier.new_server_detected(ref.platform, ref.server_name)
            seen_now.add(ref.server_name)
        self._previous_servers = seen_now

        if config.notifications.on_update_available:
            for name in report.newly_orphaned:
                self._notifier.package_orphaned(name)

        logger.info(
            "Reconciled %d entries: %d installed, %d failed, %d unmanaged, %d orphaned",
            report.observed,
            len(report.installed),
            len(report.failed),
            len(report.unmanaged),
            len(report.orphaned),
        )
        return report

    def _install(
        self,
        candidate: str,
        config: InstallationConfig,
        packages: dict[str, InstalledPackage],
        report: CycleReport,
    ) -> None:
        target_dir = Path(config.package_manager.installation_dir).expanduser()
        try:
            package = self._installer.install_or_localize(candidate, target_dir)
        except PackageManagerError as exc:
            report.failed[candidate] = str(exc)
            self._notifier.install_failed(candidate, str(exc))
            return

        existing = packages.get(package.name)
        if existing is not None:
            package = package.model_copy(
                update={"installed_at": existing.installed_at, "used_by_configs": existing.used_by_configs}
            )
        packages[package.name] = package
        report.installed.append(package.name)


def _dump(packages: dict[str, InstalledPackage]) -> list[dict]:
    return [package.model_dump(mode="json") for package in packages.values()]
