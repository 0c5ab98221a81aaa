import threading
import time
from pathlib import Path

from mcp_env_manager.models import WatcherConfig
from mcp_env_manager.watcher import ConfigChanged, Debouncer, DebounceState, HostWatcher, WatcherPool

from conftest import installation_config


def _write(path: Path, servers: dict[str, str]) -> None:
    body = ", ".join(f'"{name}": {{"command": "{command}"}}' for name, command in servers.items())
    path.write_text(f'{{"mcpServers": {{{body}}}}}', encoding="utf-8")


def test_debouncer_coalesces_bursts() -> None:
    fired = threading.Event()
    calls: list[float] = []

    def callback() -> None:
        calls.append(time.monotonic())
        fired.set()

    debouncer = Debouncer(0.1, callback)
    for _ in range(5):
        debouncer.poke()

    assert debouncer.state is DebounceState.PENDING
    assert fired.wait(2)
    time.sleep(0.2)
    assert len(calls) == 1
    assert debouncer.state is DebounceState.IDLE


def test_debouncer_cancel() -> None:
    calls: list[int] = []
    debouncer = Debouncer(0.05, lambda: calls.append(1))

    debouncer.poke()
    debouncer.cancel()
    time.sleep(0.15)

    assert calls == []
    assert debouncer.state is DebounceState.IDLE


def test_refresh_keeps_last_good_snapshot(tmp_path: Path) -> None:
    path = tmp_path / "alpha.json"
    _write(path, {"foo": "foo-bin"})
    events: list[ConfigChanged] = []
    watcher = HostWatcher("alpha", path, events.append)

    watcher.refresh()
    path.write_text('{"mcpServers": {', encoding="utf-8")
    watcher.refresh()

    assert list(events[0].entries) == ["foo"]
    assert events[1].parse_error
    assert dict(events[1].entries) == {}
    assert list(watcher.snapshot.entries) == ["foo"]
    assert watcher.snapshot.parse_error


def test_recovery_clears_parse_error(tmp_path: Path) -> None:
    path = tmp_path / "alpha.json"
    path.write_text("not json", encoding="utf-8")
    watcher = HostWatcher("alpha", path, lambda event: None)

    watcher.refresh()
    _write(path, {"bar": "bar-bin"})
    event = watcher.refresh()

    assert event.parse_error is None
    assert watcher.snapshot.parse_error is None
    assert list(watcher.snapshot.entries) == ["bar"]


def test_notify_goes_through_debounce(tmp_path: Path) -> None:
    path = tmp_path / "alpha.json"
    _write(path, {"foo": "foo-bin"})
    events: list[ConfigChanged] = []
    done = threading.Event()

    def on_change(event: ConfigChanged) -> None:
        events.append(event)
        done.set()

    watcher = HostWatcher("alpha", path, on_change, debounce_seconds=0.05)
    watcher.notify()
    watcher.notify()

    assert done.wait(2)
    time.sleep(0.15)
    assert len(events) == 1
    assert events[0].platform == "alpha"


def test_start_with_missing_directory_does_not_watch(tmp_path: Path) -> None:
    watcher = HostWatcher("alpha", tmp_path / "absent" / "alpha.json", lambda event: None)

    watcher.start()

    assert not watcher.running
    assert dict(watcher.snapshot.entries) == {}
    watcher.stop()


def test_file_change_is_picked_up_by_polling(tmp_path: Path) -> None:
    path = tmp_path / "alpha.json"
    _write(path, {})
    events: list[ConfigChanged] = []
    changed = threading.Event()

    def on_change(event: ConfigChanged) -> None:
        events.append(event)
        if "foo" in event.entries:
            changed.set()

    watcher = HostWatcher("alpha", path, on_change, debounce_seconds=0.05, poll_interval=0.05, force_polling=True)
    watcher.start()
    try:
        assert events == []
        time.sleep(0.2)
        _write(path, {"foo": "foo-bin"})
        assert changed.wait(5)
    finally:
        watcher.stop()

    assert not watcher.running


def test_pool_skips_disabled_hosts(tmp_path: Path) -> None:
    config = installation_config(tmp_path, hosts=("alpha", "beta"))
    config.watchers["beta"] = WatcherConfig(enabled=False, config_path=str(tmp_path / "beta.json"))
    _write(tmp_path / "alpha.json", {"foo": "foo-bin"})
    pool = WatcherPool(lambda event: None)

    pool.configure(config)
    pool.refresh_all()

    assert [snapshot.platform for snapshot in pool.snapshots()] == ["alpha"]
    assert pool.get("beta") is None
    assert list(pool.snapshots()[0].entries) == ["foo"]


def test_directory_created_after_start_is_watched(tmp_path: Path) -> None:
    path = tmp_path / "later" / "alpha.json"
    changed = threading.Event()

    def on_change(event: ConfigChanged) -> None:
        if "foo" in event.entries:
            changed.set()

    watcher = HostWatcher("alpha", path, on_change, debounce_seconds=0.05, poll_interval=0.05, force_polling=True)
    watcher.start()
    try:
        assert not watcher.running
        path.parent.mkdir()
        _write(path, {"foo": "foo-bin"})
        assert changed.wait(5)
        assert watcher.running
    finally:
        watcher.stop()

    assert not watcher.running
