from __future__ import annotations

import enum
import logging
import os
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from types import MappingProxyType

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver
from watchdog.observers.polling import PollingObserver

from mcp_env_manager.hosts import InvalidHostConfig, ServerEntry, read_host_config
from mcp_env_manager.models import InstallationConfig, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConfigChanged:
    platform: str
    path: str
    entries: Mapping[str, ServerEntry]
    parse_error: str | None = None


@dataclass(frozen=True, slots=True)
class HostSnapshot:
    """Last good server list of one host, plus the latest parse error if any."""

    platform: str
    path: str
    entries: Mapping[str, ServerEntry] = field(default_factory=dict)
    skipped: Mapping[str, str] = field(default_factory=dict)
    parse_error: str | None = None
    observed_at: datetime | None = None


ChangeHandler = Callable[[ConfigChanged], None]


class DebounceState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    FIRING = "firing"


class Debouncer:
    """Trailing-edge coalescing: fires once, ``delay`` seconds after the last poke.

    A poke while firing schedules a fresh run after the current one.
    """

    def __init__(self, delay: float, callback: Callable[[], None], name: str = "debounce") -> None:
        self._delay = delay
        self._callback = callback
        self._name = name
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._state = DebounceState.IDLE

    @property
    def state(self) -> DebounceState:
        return self._state

    def poke(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            self._timer = threading.Timer(self._delay, self._fire, args=(self._generation,))
            self._timer.name = f"{self._name}-timer"
            self._timer.daemon = True
            if self._state is DebounceState.IDLE:
                self._state = DebounceState.PENDING
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
            if self._state is DebounceState.PENDING:
                self._state = DebounceState.IDLE

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            self._timer = None
            self._state = DebounceState.FIRING
        try:
            self._callback()
        except Exception:
            logger.exception("%s handler failed", self._name)
        finally:
            with self._lock:
                self._state = DebounceState.PENDING if self._timer is not None else DebounceState.IDLE


# Our own reads of the host file show up as open/close events.
_READ_ONLY_EVENTS = frozenset({"opened", "closed", "closed_no_write"})


def _canonical(path: str) -> str:
    return os.path.normcase(os.path.realpath(path))


class _HostFileHandler(FileSystemEventHandler):
    def __init__(self, target: Path, on_touch: Callable[[], None]) -> None:
        super().__init__()
        self._target = _canonical(str(target))
        self._on_touch = on_touch

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in _READ_ONLY_EVENTS:
            return
        paths = [event.src_path, getattr(event, "dest_path", "") or ""]
        if any(_canonical(os.fsdecode(p)) == self._target for p in paths if p):
            self._on_touch()


class HostWatcher:
    """Watches one host's config file and keeps its last good snapshot.

    A host whose config directory does not exist yet is checked again every
    ``poll_interval`` seconds and watched as soon as the directory appears.
    """

    def __init__(
        self,
        platform: str,
        config_path: Path,
        on_change: ChangeHandler,
        debounce_seconds: float = 0.3,
        poll_interval: float = 1.0,
        force_polling: bool = False,
    ) -> None:
        self.platform = platform
        self.config_path = config_path.expanduser().absolute()
        self._on_change = on_change
        self._poll_interval = poll_interval
        self._force_polling = force_polling
        self._lock = threading.Lock()
        self._observer_lock = threading.Lock()
        self._snapshot = HostSnapshot(platform=platform, path=str(self.config_path))
        self._debouncer = Debouncer(debounce_seconds, self.refresh, name=f"watch-{platform}")
        self._observer: BaseObserver | None = None
        self._retry: threading.Timer | None = None
        self._active = False

    @property
    def snapshot(self) -> HostSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def running(self) -> bool:
        return self._observer is not None

    def start(self) -> None:
        with self._observer_lock:
            if self._active:
                logger.warning("Watcher for %s is already running", self.platform)
                return
            self._active = True

        self.refresh(emit=False)
        if not self.config_path.parent.is_dir():
            logger.warning(
                "Directory %s for %s does not exist yet; waiting for it",
                self.config_path.parent,
                self.platform,
            )
        self._attach()

    def stop(self) -> None:
        with self._observer_lock:
            self._active = False
            if self._retry is not None:
                self._retry.cancel()
                self._retry = None
            observer, self._observer = self._observer, None
        self._debouncer.cancel()
        if observer is None:
            return
        observer.stop()
        observer.join(timeout=5)
        logger.info("Stopped watching %s", self.platform)

    def notify(self) -> None:
        """Report a change as if the file system had; goes through the debounce window."""
        self._debouncer.poke()

    def refresh(self, emit: bool = True) -> ConfigChanged:
        parsed = read_host_config(self.config_path)
        with self._lock:
            if isinstance(parsed, InvalidHostConfig):
                logger.warning("Malformed %s config %s: %s", self.platform, self.config_path, parsed.error)
                self._snapshot = HostSnapshot(
                    platform=self.platform,
                    path=self._snapshot.path,
                    entries=self._snapshot.entries,
                    skipped=self._snapshot.skipped,
                    parse_error=parsed.error,
                    observed_at=self._snapshot.observed_at,
                )
                event = ConfigChanged(self.platform, self._snapshot.path, MappingProxyType({}), parsed.error)
            else:
                for name, error in parsed.skipped.items():
                    logger.warning("Skipping %s server %s: %s", self.platform, name, error)
                entries = MappingProxyType(dict(parsed.entries))
                self._snapshot = HostSnapshot(
                    platform=self.platform,
                    path=self._snapshot.path,
                    entries=entries,
                    skipped=MappingProxyType(dict(parsed.skipped)),
                    observed_at=utc_now(),
                )
                event = ConfigChanged(self.platform, self._snapshot.path, entries)

        if emit:
            self._on_change(event)
        return event

    def _attach(self) -> bool:
        directory = self.config_path.parent
        with self._observer_lock:
            if not self._active or self._observer is not None:
                return False
            if not directory.is_dir():
                self._retry = threading.Timer(self._poll_interval, self._retry_attach)
                self._retry.name = f"watch-{self.platform}-retry"
                self._retry.daemon = True
                self._retry.start()
                return False
            handler = _HostFileHandler(self.config_path, self._debouncer.poke)
            self._observer = self._start_observer(handler, directory)
        logger.info("Watching %s config file: %s", self.platform, self.config_path)
        return True

    def _retry_attach(self) -> None:
        try:
            attached = self._attach()
        except OSError:
            logger.exception("Cannot watch %s config directory", self.platform)
            return
        if attached:
            self.refresh()

    def _start_observer(self, handler: FileSystemEventHandler, directory: Path) -> BaseObserver:
        if not self._force_polling:
            observer = Observer()
            try:
                observer.schedule(handler, str(directory), recursive=False)
                observer.start()
                return observer
            except OSError as exc:
                logger.warning("Native file notification unavailable (%s); polling %s", exc, directory)

        observer = PollingObserver(timeout=self._poll_interval)
        observer.schedule(handler, str(directory), recursive=False)
        observer.start()
        return observer


class WatcherPool:
    """One HostWatcher per enabled host; disabled hosts are never opened."""

    def __init__(self, on_change: ChangeHandler, force_polling: bool = False) -> None:
        self._on_change = on_change
        self._force_polling = force_polling
        self._lock = threading.Lock()
        self._watchers: dict[str, HostWatcher] = {}

    def configure(self, config: InstallationConfig) -> None:
        """Build watchers for the enabled hosts without starting them."""
        with self._lock:
            self._stop_all()
            self._watchers = {
                host: HostWatcher(
                    platform=host,
                    config_path=Path(watcher.config_path),
                    on_change=self._on_change,
                    debounce_seconds=watcher.debounce_seconds,
                    poll_interval=config.poll_interval_seconds,
                    force_polling=self._force_polling,
                )
                for host, watcher in config.watchers.items()
                if watcher.enabled
            }

    def start(self, config: InstallationConfig) -> None:
        self.configure(config)
        with self._lock:
            for watcher in self._watchers.values():
                watcher.start()

    def stop(self) -> None:
        with self._lock:
            self._stop_all()

    def refresh_all(self) -> None:
        """Re-read every host file now, without emitting events."""
        with self._lock:
            watchers = list(self._watchers.values())
        for watcher in watchers:
            watcher.refresh(emit=False)

    def snapshots(self) -> list[HostSnapshot]:
        with self._lock:
            return [watcher.snapshot for watcher in self._watchers.values()]

    def get(self, platform: str) -> HostWatcher | None:
        return self._watchers.get(platform)

    def _stop_all(self) -> None:
        for watcher in self._watchers.values():
            watcher.stop()
        self._watchers = {}
