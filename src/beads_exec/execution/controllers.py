"""Controllers for beads-exec CLI commands."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path

from beads_exec.config import Settings
from beads_exec.execution.errors import error_from_result
from beads_exec.execution.locks import LockStatus, RepoLockManager
from beads_exec.execution.service import StoreExecutor


@dataclass(slots=True)
class ExecRunCommand:
    """CLI input for one store command run."""

    argv: tuple[str, ...]
    repo_path: Path | None
    bypass: bool | None = None


@dataclass(slots=True)
class ExecRunResult:
    """Run report to render in CLI."""

    lines: list[str]
    exit_code: int


@dataclass(slots=True)
class ExecClassifyCommand:
    """CLI input for command classification."""

    argv: tuple[str, ...]


@dataclass(slots=True)
class LocksCommand:
    """CLI input for lock inspection and eviction."""

    lock_dir: Path | None = None


class ExecCliController:
    """Coordinates store execution and lock inspection CLI operations."""

    def run(self, command: ExecRunCommand) -> ExecRunResult:
        settings = Settings.from_env()
        executor = StoreExecutor(settings=settings)
        result = asyncio.run(
            executor.execute(command.argv, repo_path=command.repo_path, bypass=command.bypass),
        )

        lines: list[str] = []
        if result.stdout:
            lines.append(result.stdout)
        error = error_from_result(result)
        if error is not None:
            if result.stderr:
                lines.append(result.stderr)
            lines.append(
                f"bd {' '.join(command.argv[:2])} failed: "
                f"code={error.code.value} retryable={str(error.retryable).lower()} "
                f"exit_code={result.exit_code}",
            )
        return ExecRunResult(lines=lines, exit_code=result.exit_code)

    def classify(self, command: ExecClassifyCommand) -> list[str]:
        settings = Settings.from_env()
        descriptor = StoreExecutor(settings=settings).describe(command.argv)
        return [
            f"verb={descriptor.verb or '-'} category={descriptor.category.value} "
            f"timeout_ms={int(descriptor.timeout_seconds * 1000)} "
            f"retry_budget={descriptor.retry_budget}",
        ]

    def list_locks(self, command: LocksCommand) -> list[str]:
        statuses = _lock_manager(command).list_locks()
        if not statuses:
            return ["No repo locks held."]
        return [_render_lock_status(status) for status in statuses]

    def evict_stale(self, command: LocksCommand) -> list[str]:
        evicted = _lock_manager(command).evict_stale()
        lines = [_render_lock_status(status) for status in evicted]
        lines.append(f"Evicted stale locks: {len(evicted)}")
        return lines


def _lock_manager(command: LocksCommand) -> RepoLockManager:
    settings = Settings.from_env()
    return RepoLockManager(
        root_dir=command.lock_dir or settings.locks.root_dir,
        poll_interval_seconds=settings.locks.poll_interval_seconds,
        stale_after_seconds=settings.locks.stale_after_seconds,
        wait_timeout_seconds=settings.locks.wait_timeout_seconds,
    )


def _render_lock_status(status: LockStatus) -> str:
    owner = status.owner
    if owner is None:
        holder = "owner=unknown"
    else:
        holder = f"repo={owner.resource_key} pid={owner.pid}"
    return (
        f"{status.lock_dir.name} {holder} age={status.age_seconds:.0f}s "
        f"alive={str(status.owner_alive).lower()} stale={str(status.stale).lower()}"
    )
