from __future__ import annotations

import asyncio
import json
import os
import shutil
import time
from pathlib import Path

import allure
import pytest

from beads_exec.execution import locks as locks_module
from beads_exec.execution.locks import (
    OWNER_FILENAME,
    LockTimeoutError,
    RepoLockManager,
    evict_lock_dir,
    is_pid_alive,
    read_owner,
)
from beads_exec.execution.models import LockOwnerRecord

pytestmark = [
    allure.epic("Store Execution"),
    allure.feature("Repo Locks"),
]

_DEAD_PID = 999_999_999


def _manager(tmp_path: Path, **overrides) -> RepoLockManager:
    options = {
        "root_dir": tmp_path / "locks",
        "poll_interval_seconds": 0.01,
        "stale_after_seconds": 300.0,
        "wait_timeout_seconds": 0.2,
    }
    options.update(overrides)
    return RepoLockManager(**options)


def _plant_lock(manager: RepoLockManager, key: str, *, pid: int, age: float = 0.0) -> Path:
    lock_dir = manager.lock_dir_for(key)
    lock_dir.mkdir(parents=True)
    acquired_at = time.time() - age
    (lock_dir / OWNER_FILENAME).write_text(
        json.dumps(
            {"pid": pid, "resource_key": key, "acquired_at": acquired_at, "token": "other"},
        ),
        "utf-8",
    )
    os.utime(lock_dir, (acquired_at, acquired_at))
    return lock_dir


def test_acquire_writes_owner_and_release_removes_dir(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    lock = asyncio.run(manager.acquire("/repo-a"))

    owner = read_owner(lock.lock_dir)
    assert owner is not None
    assert owner.pid == os.getpid()
    assert owner.resource_key == "/repo-a"
    assert owner.token == lock.owner.token

    lock.release()
    assert lock.released
    assert not lock.lock_dir.exists()


def test_release_is_idempotent_and_tolerates_missing_dir(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    lock = asyncio.run(manager.acquire("/repo-a"))
    lock.release()

    lock.release()

    assert not lock.lock_dir.exists()


def test_release_leaves_lock_taken_over_by_another_owner(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    lock = asyncio.run(manager.acquire("/repo-a"))
    (lock.lock_dir / OWNER_FILENAME).write_text(
        json.dumps(
            {"pid": 4242, "resource_key": "/repo-a", "acquired_at": time.time(), "token": "x"},
        ),
        "utf-8",
    )

    lock.release()

    assert lock.lock_dir.exists()


def test_live_owner_causes_timeout_naming_pid(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    _plant_lock(manager, "/repo-a", pid=os.getpid())

    with pytest.raises(LockTimeoutError, match=f"held by pid {os.getpid()}") as exc_info:
        asyncio.run(manager.acquire("/repo-a"))

    assert exc_info.value.owner is not None
    assert exc_info.value.resource_key == "/repo-a"
    assert isinstance(exc_info.value, TimeoutError)


def test_dead_owner_is_evicted(tmp_path: Path) -> None:
    manager = _manager(tmp_path, pid_alive=lambda pid: pid != _DEAD_PID)
    _plant_lock(manager, "/repo-a", pid=_DEAD_PID)

    lock = asyncio.run(manager.acquire("/repo-a"))

    assert lock.owner.pid == os.getpid()
    assert read_owner(lock.lock_dir) == lock.owner


def test_expired_lock_is_evicted_even_with_live_owner(tmp_path: Path) -> None:
    manager = _manager(tmp_path, stale_after_seconds=60.0)
    _plant_lock(manager, "/repo-a", pid=os.getpid(), age=120.0)

    lock = asyncio.run(manager.acquire("/repo-a"))

    assert lock.owner.token != "other"


def test_corrupt_owner_is_evicted_after_grace(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    lock_dir = manager.lock_dir_for("/repo-a")
    lock_dir.mkdir(parents=True)
    (lock_dir / OWNER_FILENAME).write_text("{not json", "utf-8")
    old = time.time() - 10
    os.utime(lock_dir, (old, old))

    lock = asyncio.run(manager.acquire("/repo-a"))

    assert read_owner(lock.lock_dir) == lock.owner


def test_hold_releases_on_error(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> None:
        async with manager.hold("/repo-a") as lock:
            assert lock.lock_dir.exists()
            raise RuntimeError("inside")

    with pytest.raises(RuntimeError, match="inside"):
        asyncio.run(scenario())

    assert manager.list_locks() == []


def test_distinct_keys_map_to_distinct_dirs(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    assert manager.lock_dir_for("/repo-a") != manager.lock_dir_for("/repo-b")
    assert manager.lock_dir_for("/repo-a") == manager.lock_dir_for("/repo-a")


def test_list_and_evict_stale(tmp_path: Path) -> None:
    manager = _manager(tmp_path, pid_alive=lambda pid: pid != _DEAD_PID)
    live_dir = _plant_lock(manager, "/repo-live", pid=os.getpid())
    dead_dir = _plant_lock(manager, "/repo-dead", pid=_DEAD_PID)

    statuses = {status.lock_dir: status for status in manager.list_locks()}
    assert statuses[live_dir].owner_alive
    assert not statuses[live_dir].stale
    assert statuses[dead_dir].stale

    evicted = manager.evict_stale()

    assert [status.lock_dir for status in evicted] == [dead_dir]
    assert live_dir.exists()
    assert not dead_dir.exists()


def test_list_locks_on_missing_root(tmp_path: Path) -> None:
    assert _manager(tmp_path).list_locks() == []


def test_owner_record_rejects_bad_payload() -> None:
    with pytest.raises(ValueError, match="Invalid lock owner record"):
        LockOwnerRecord.from_payload({"pid": 1})


def test_is_pid_alive() -> None:
    assert is_pid_alive(os.getpid())
    assert not is_pid_alive(0)


def test_eviction_spares_lock_that_changed_hands(tmp_path: Path) -> None:
    manager = _manager(tmp_path, pid_alive=lambda pid: pid != _DEAD_PID)
    lock_dir = _plant_lock(manager, "/repo-a", pid=_DEAD_PID)
    observed = read_owner(lock_dir)
    observed_inode = lock_dir.stat().st_ino

    rival = asyncio.run(manager.acquire("/repo-a"))

    assert not evict_lock_dir(lock_dir, observed, observed_inode)
    assert read_owner(lock_dir) == rival.owner
    assert [path.name for path in manager.root_dir.iterdir()] == [lock_dir.name]


def test_eviction_removes_lock_still_held_by_stale_owner(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    lock_dir = _plant_lock(manager, "/repo-a", pid=_DEAD_PID)

    assert evict_lock_dir(lock_dir, read_owner(lock_dir), lock_dir.stat().st_ino)
    assert list(manager.root_dir.iterdir()) == []


def test_acquire_does_not_evict_lock_taken_over_after_stale_read(
    tmp_path: Path,
    monkeypatch,
) -> None:
    manager = _manager(tmp_path, pid_alive=lambda pid: pid != _DEAD_PID)
    lock_dir = _plant_lock(manager, "/repo-a", pid=_DEAD_PID)
    real_read_owner = locks_module.read_owner
    reads: list[Path] = []

    def read_then_lose_race(path: Path) -> LockOwnerRecord | None:
        reads.append(path)
        record = real_read_owner(path)
        if len(reads) == 1:
            # Another process evicts the dead owner and takes the lock right now.
            shutil.rmtree(lock_dir)
            lock_dir.mkdir()
            (lock_dir / OWNER_FILENAME).write_text(
                json.dumps(
                    {
                        "pid": os.getpid(),
                        "resource_key": "/repo-a",
                        "acquired_at": time.time(),
                        "token": "rival",
                    },
                ),
                "utf-8",
            )
        return record

    monkeypatch.setattr(locks_module, "read_owner", read_then_lose_race)

    with pytest.raises(LockTimeoutError):
        asyncio.run(manager.acquire("/repo-a"))

    current = real_read_owner(lock_dir)
    assert current is not None
    assert current.token == "rival"


def test_list_locks_skips_eviction_tombstones(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    manager.root_dir.mkdir(parents=True)
    (manager.root_dir / ".abc.evict-123").mkdir()

    assert manager.list_locks() == []
