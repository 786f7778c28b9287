# tests/test_state.py

import json
import threading

from table_importer.guard import RunGuard
from table_importer.state import CheckpointStore


def test_set_get_delete(tmp_path):
    store = CheckpointStore(tmp_path / "state.json")
    assert store.get("events:offset") is None
    assert store.get("events:offset", 0) == 0

    store.set("events:offset", 30)
    assert store.get("events:offset") == 30
    # visible to a second instance, nothing is cached
    assert CheckpointStore(tmp_path / "state.json").get("events:offset") == 30

    assert store.delete("events:offset") is True
    assert store.delete("events:offset") is False
    assert store.get("events:offset") is None


def test_write_keeps_backup_and_leaves_no_temp_file(tmp_path):
    path = tmp_path / "state.json"
    store = CheckpointStore(path)
    store.set("a", 1)
    store.set("b", 2)

    assert json.loads(path.read_text()) == {"a": 1, "b": 2}
    assert json.loads(store.backup_path.read_text()) == {"a": 1}
    assert not path.with_suffix(".tmp").exists()


def test_corrupted_file_falls_back_to_backup(tmp_path):
    path = tmp_path / "state.json"
    store = CheckpointStore(path)
    store.set("a", 1)
    store.set("b", 2)
    path.write_text("{ not json")

    assert store.load() == {"a": 1}


def test_corrupted_file_without_backup_gives_empty_state(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{ not json")
    assert CheckpointStore(path).load() == {}


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_guard_acquire_and_release(tmp_path):
    guard = RunGuard(CheckpointStore(tmp_path / "state.json"), "events:guard")
    assert not guard.is_held()

    assert guard.acquire("run-a")
    assert guard.is_held()
    assert guard.holder() == "run-a"
    assert not guard.acquire("run-b")
    # the holder may re-acquire
    assert guard.acquire("run-a")

    guard.release()
    assert not guard.is_held()
    assert guard.holder() is None
    guard.release()
    assert guard.acquire("run-b")


def test_guard_refresh_only_for_holder(tmp_path):
    clock = FakeClock()
    store = CheckpointStore(tmp_path / "state.json")
    guard = RunGuard(store, "events:guard", ttl=60, clock=clock)
    guard.acquire("run-a")

    clock.now += 30
    assert guard.refresh("run-a")
    assert store.get("events:guard")["heartbeat_at"] == 1030.0
    assert not guard.refresh("run-b")


def test_stale_guard_is_taken_over(tmp_path):
    clock = FakeClock()
    guard = RunGuard(CheckpointStore(tmp_path / "state.json"), "events:guard", ttl=60, clock=clock)
    guard.acquire("crashed-run")

    clock.now += 30
    assert not guard.acquire("run-b")

    clock.now += 31
    assert not guard.is_held()
    assert guard.acquire("run-b")
    assert guard.holder() == "run-b"
    # the crashed chain cannot come back
    assert not guard.refresh("crashed-run")


def test_guard_without_ttl_never_expires(tmp_path):
    clock = FakeClock()
    guard = RunGuard(CheckpointStore(tmp_path / "state.json"), "events:guard", clock=clock)
    guard.acquire("run-a")
    clock.now += 10 ** 9
    assert not guard.acquire("run-b")


def test_update_reads_and_writes_under_lock(tmp_path):
    store = CheckpointStore(tmp_path / "state.json")
    assert store.update("events:offset", lambda current: (current or 0) + 10) == 10
    assert store.update("events:offset", lambda current: current + 5) == 15
    assert store.get("events:offset") == 15


def test_update_skips_write_when_value_is_unchanged(tmp_path):
    path = tmp_path / "state.json"
    store = CheckpointStore(path)
    store.set("a", 1)
    store.update("a", lambda current: current)
    # no second write, so no backup was rotated in
    assert not store.backup_path.exists()


def test_simultaneous_triggers_cannot_both_take_the_guard(tmp_path):
    """A second acquire started while the first is deciding has to wait and then lose."""
    path = tmp_path / "state.json"
    results = {}
    rival = RunGuard(CheckpointStore(path), "events:guard")
    rival_thread = threading.Thread(target=lambda: results.setdefault("b", rival.acquire("run-b")))

    started = []

    def clock():
        # runs inside the first acquire, after it has read the free guard
        if not started:
            started.append(True)
            rival_thread.start()
            rival_thread.join(timeout=0.3)
        return 1000.0

    guard = RunGuard(CheckpointStore(path), "events:guard", clock=clock)
    results["a"] = guard.acquire("run-a")
    rival_thread.join()

    assert results == {"a": True, "b": False}
    assert guard.holder() == "run-a"
