"""Durable cross-process repository locks backed by lock directories.

Layout: ``<root>/<sha256(resource_key)[:24]>/owner.json``. Creating the
directory is the atomic ownership test; the owner file only carries
diagnostics and liveness data for eviction.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from beads_exec.execution.models import LockOwnerRecord

logger = logging.getLogger(__name__)

OWNER_FILENAME = "owner.json"
_LOCK_NAME_CHARS = 24
_OWNER_WRITE_GRACE_SECONDS = 1.0


class LockTimeoutError(TimeoutError):
    """Lock wait ceiling exceeded while another live owner held the lock."""

    def __init__(self, resource_key: str, owner: LockOwnerRecord | None, waited: float) -> None:
        if owner is None:
            holder = "unknown owner"
        else:
            holder = f"pid {owner.pid} since {_format_timestamp(owner.acquired_at)}"
        super().__init__(
            f"Timed out after {waited:.1f}s waiting for repo lock on {resource_key} "
            f"(held by {holder})",
        )
        self.resource_key = resource_key
        self.owner = owner


@dataclass(slots=True)
class LockStatus:
    """Operator view of one lock directory."""

    lock_dir: Path
    owner: LockOwnerRecord | None
    age_seconds: float
    owner_alive: bool
    stale: bool
    inode: int = 0


class RepoLock:
    """Handle for a held repository lock; release is idempotent and never raises."""

    def __init__(self, *, lock_dir: Path, owner: LockOwnerRecord) -> None:
        self.lock_dir = lock_dir
        self.owner = owner
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            current = read_owner(self.lock_dir)
            if current is not None and current.token != self.owner.token:
                logger.warning(
                    "Repo lock %s was taken over by pid %d; leaving it in place",
                    self.lock_dir,
                    current.pid,
                )
                return
            shutil.rmtree(self.lock_dir)
        except FileNotFoundError:
            logger.debug("Repo lock %s already removed", self.lock_dir)
        except OSError as error:
            logger.warning("Failed to release repo lock %s: %s", self.lock_dir, error)


class RepoLockManager:
    """Acquire per-resource lock directories, evicting dead or expired owners."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        root_dir: Path,
        poll_interval_seconds: float = 0.1,
        stale_after_seconds: float = 300.0,
        wait_timeout_seconds: float = 60.0,
        clock: Callable[[], float] = time.time,
        pid_alive: Callable[[int], bool] | None = None,
    ) -> None:
        self.root_dir = root_dir
        self.poll_interval_seconds = poll_interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.clock = clock
        self.pid_alive = pid_alive or is_pid_alive

    def lock_dir_for(self, resource_key: str) -> Path:
        digest = hashlib.sha256(resource_key.encode("utf-8")).hexdigest()
        return self.root_dir / digest[:_LOCK_NAME_CHARS]

    async def acquire(self, resource_key: str) -> RepoLock:
        """Poll until the lock is ours or the wait ceiling elapses."""

        lock_dir = self.lock_dir_for(resource_key)
        self.root_dir.mkdir(parents=True, exist_ok=True)
        started = time.monotonic()

        while True:
            lock = self._try_create(lock_dir, resource_key)
            if lock is not None:
                return lock

            owner = read_owner(lock_dir)
            info = _stat_lock_dir(lock_dir)
            if info is None:
                continue
            age = max(0.0, self.clock() - info.st_mtime)
            stale_reason = self._stale_reason(owner, age)
            if stale_reason is not None:
                logger.warning(
                    "Evicting stale repo lock for %s (%s)",
                    resource_key,
                    stale_reason,
                )
                if not evict_lock_dir(lock_dir, owner, info.st_ino):
                    logger.info("Repo lock for %s changed hands before eviction", resource_key)
                continue

            waited = time.monotonic() - started
            if waited >= self.wait_timeout_seconds:
                raise LockTimeoutError(resource_key, owner, waited)
            await asyncio.sleep(self.poll_interval_seconds)

    @asynccontextmanager
    async def hold(self, resource_key: str) -> AsyncIterator[RepoLock]:
        """Hold the repository lock for the duration of the block."""

        lock = await self.acquire(resource_key)
        try:
            yield lock
        finally:
            lock.release()

    def list_locks(self) -> list[LockStatus]:
        if not self.root_dir.is_dir():
            return []
        statuses: list[LockStatus] = []
        for lock_dir in sorted(self.root_dir.iterdir()):
            # Dot-prefixed entries are eviction tombstones.
            if lock_dir.name.startswith(".") or not lock_dir.is_dir():
                continue
            owner = read_owner(lock_dir)
            info = _stat_lock_dir(lock_dir)
            if info is None:
                continue
            age = max(0.0, self.clock() - info.st_mtime)
            alive = owner is not None and self.pid_alive(owner.pid)
            statuses.append(
                LockStatus(
                    lock_dir=lock_dir,
                    owner=owner,
                    age_seconds=age,
                    owner_alive=alive,
                    stale=self._stale_reason(owner, age) is not None,
                    inode=info.st_ino,
                ),
            )
        return statuses

    def evict_stale(self) -> list[LockStatus]:
        """Remove every stale lock and return what was evicted."""

        evicted: list[LockStatus] = []
        for status in self.list_locks():
            if not status.stale:
                continue
            if evict_lock_dir(status.lock_dir, status.owner, status.inode):
                evicted.append(status)
        return evicted

    def _try_create(self, lock_dir: Path, resource_key: str) -> RepoLock | None:
        try:
            lock_dir.mkdir()
        except FileExistsError:
            return None

        owner = LockOwnerRecord(
            pid=os.getpid(),
            resource_key=resource_key,
            acquired_at=self.clock(),
            token=uuid.uuid4().hex,
        )
        try:
            _write_owner(lock_dir, owner)
        except OSError:
            _remove_lock_dir(lock_dir)
            raise
        return RepoLock(lock_dir=lock_dir, owner=owner)

    def _stale_reason(self, owner: LockOwnerRecord | None, age: float) -> str | None:
        if owner is None:
            # A fresh directory may not have its owner file written yet.
            if age < _OWNER_WRITE_GRACE_SECONDS:
                return None
            return "owner record missing or corrupt"
        if not self.pid_alive(owner.pid):
            return f"owner pid {owner.pid} is not running"
        if age > self.stale_after_seconds:
            return f"lock age {age:.0f}s exceeds {self.stale_after_seconds:.0f}s"
        return None



def read_owner(lock_dir: Path) -> LockOwnerRecord | None:
    """Read the owner record; missing or corrupt files yield None."""

    try:
        payload = json.loads((lock_dir / OWNER_FILENAME).read_text("utf-8"))
    except (OSError, ValueError):
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return LockOwnerRecord.from_payload(payload)
    except ValueError:
        return None


def evict_lock_dir(lock_dir: Path, observed: LockOwnerRecord | None, inode: int) -> bool:
    """Remove a stale lock only if it is still the one that was judged stale.

    The directory is first renamed to a private tombstone, which is atomic. If the
    tombstone turns out to be a different lock (new inode or owner token), it is
    moved back and nothing is removed.
    """

    tombstone = lock_dir.with_name(f".{lock_dir.name}.evict-{uuid.uuid4().hex}")
    try:
        os.rename(lock_dir, tombstone)
    except FileNotFoundError:
        return False

    current = read_owner(tombstone)
    same_owner = _owner_token(current) == _owner_token(observed)
    if tombstone.stat().st_ino == inode and same_owner:
        _remove_lock_dir(tombstone)
        return True

    try:
        os.rename(tombstone, lock_dir)
    except OSError as error:
        logger.warning(
            "Could not restore repo lock %s from %s: %s",
            lock_dir,
            tombstone,
            error,
        )
    return False


def is_pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _owner_token(owner: LockOwnerRecord | None) -> str | None:
    return owner.token if owner is not None else None


def _stat_lock_dir(lock_dir: Path) -> os.stat_result | None:
    try:
        return lock_dir.stat()
    except FileNotFoundError:
        return None


def _write_owner(lock_dir: Path, owner: LockOwnerRecord) -> None:
    tmp_path = lock_dir / f".{OWNER_FILENAME}.tmp"
    tmp_path.write_text(json.dumps(owner.to_payload()), "utf-8")
    os.replace(tmp_path, lock_dir / OWNER_FILENAME)


def _remove_lock_dir(lock_dir: Path) -> None:
    try:
        shutil.rmtree(lock_dir)
    except FileNotFoundError:
        return


def _format_timestamp(value: float) -> str:
    return datetime.fromtimestamp(value, tz=UTC).isoformat(timespec="seconds")
