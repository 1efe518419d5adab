"""Store executor: queue, lock, run and recover one store command."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from pathlib import Path

from beads_exec.config import Settings
from beads_exec.execution.classifier import CommandTimeouts, classify_command
from beads_exec.execution.locks import LockTimeoutError, RepoLockManager
from beads_exec.execution.models import CommandDescriptor, ExecutionResult, StoreResult
from beads_exec.execution.queue import ResourceQueue
from beads_exec.execution.recovery import AttemptRunner, RecoveryEngine
from beads_exec.execution.runner import StoreCommandRunner, StoreRunError
from beads_exec.execution.suppression import SuppressionCache

logger = logging.getLogger(__name__)


def resolve_resource_key(repo_path: str | Path | None) -> str:
    """Canonical absolute path identifying the repository a command targets."""

    return str(Path(repo_path or Path.cwd()).expanduser().resolve())


class StoreExecutor:
    """Coordinates per-repository serialization, locking and recovery."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        settings: Settings,
        runner: AttemptRunner | None = None,
        lock_manager: RepoLockManager | None = None,
        queue: ResourceQueue | None = None,
        suppression: SuppressionCache | None = None,
    ) -> None:
        self.settings = settings
        self.runner = runner or StoreCommandRunner(
            bd_command=settings.execution.bd_command,
            db_path=settings.execution.db_path,
        )
        self.lock_manager = lock_manager or RepoLockManager(
            root_dir=settings.locks.root_dir,
            poll_interval_seconds=settings.locks.poll_interval_seconds,
            stale_after_seconds=settings.locks.stale_after_seconds,
            wait_timeout_seconds=settings.locks.wait_timeout_seconds,
        )
        self.queue = queue or ResourceQueue()
        self.suppression = suppression or SuppressionCache(
            window_seconds=settings.suppression.window_seconds,
            max_entries=settings.suppression.max_entries,
        )
        self.recovery = RecoveryEngine(runner=self.runner)
        self.timeouts = CommandTimeouts(
            read_seconds=settings.execution.read_timeout_seconds,
            write_seconds=settings.execution.write_timeout_seconds,
        )

    def describe(self, argv: Sequence[str]) -> CommandDescriptor:
        return classify_command(argv, self.timeouts)

    def resolve_bypass(self, descriptor: CommandDescriptor, bypass: bool | None) -> bool:
        """Per-call override wins; otherwise reads follow the process default."""

        if bypass is not None:
            return bypass
        return self.settings.execution.read_bypass_default and descriptor.is_read_only

    async def execute(
        self,
        argv: Sequence[str],
        *,
        repo_path: str | Path | None = None,
        bypass: bool | None = None,
    ) -> ExecutionResult:
        """Run a command against a repository with serialization and recovery."""

        if not argv:
            raise ValueError("Store command vector must not be empty.")

        descriptor = self.describe(argv)
        resource_key = resolve_resource_key(repo_path)
        use_bypass = self.resolve_bypass(descriptor, bypass)

        async with self.queue.turn(resource_key):
            try:
                async with self.lock_manager.hold(resource_key):
                    return await self.recovery.run(
                        descriptor,
                        cwd=Path(resource_key),
                        bypass=use_bypass,
                    )
            except LockTimeoutError as error:
                logger.warning("bd %s not run: %s", descriptor.verb, error)
                return ExecutionResult(stdout="", stderr=str(error), exit_code=1)
            except StoreRunError as error:
                logger.error("bd %s could not start: %s", descriptor.verb, error)
                return ExecutionResult(stdout="", stderr=str(error), exit_code=error.exit_code)

    async def run_json(  # noqa: PLR0913
        self,
        argv: Sequence[str],
        *,
        repo_path: str | Path | None = None,
        operation: str | None = None,
        params: Mapping[str, object] | None = None,
        query: str | None = None,
        bypass: bool | None = None,
    ) -> StoreResult:
        """Run a command and decode its JSON output into ``StoreResult``.

        Read-only commands are wrapped by the suppression cache, keyed by
        ``operation`` (defaults to the verb), ``query``, ``params`` (defaults to
        the remaining arguments) and the canonical repository path.
        """

        descriptor = self.describe(argv)
        result = await self.execute(argv, repo_path=repo_path, bypass=bypass)
        store_result = _to_store_result(descriptor, result)
        if not descriptor.is_read_only:
            return store_result

        return self.suppression.wrap(
            operation or descriptor.verb,
            store_result,
            params=params if params is not None else {"args": list(argv[1:])},
            resource_path=resolve_resource_key(repo_path),
            query=query,
        )


def _to_store_result(descriptor: CommandDescriptor, result: ExecutionResult) -> StoreResult:
    if not result.ok:
        return StoreResult(ok=False, error=result.stderr or f"bd {descriptor.verb} failed")
    if not result.stdout:
        return StoreResult(ok=True, data=None)
    try:
        return StoreResult(ok=True, data=json.loads(result.stdout))
    except ValueError:
        return StoreResult(ok=False, error=f"Failed to parse bd {descriptor.verb} output")
