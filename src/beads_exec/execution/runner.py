"""Subprocess-based runner for single bd store invocations."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Sequence
from pathlib import Path

from beads_exec.execution.failure_classifier import TIMEOUT_MARKER
from beads_exec.execution.models import ExecutionResult

logger = logging.getLogger(__name__)

BYPASS_ENV_VAR = "BD_NO_DB"
MISSING_BINARY_EXIT_CODE = 127


class StoreRunError(RuntimeError):
    """Store process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool, exit_code: int = 1) -> None:
        super().__init__(message)
        self.transient = transient
        self.exit_code = exit_code


class StoreCommandRunner:
    """Spawn the store binary once per call and capture its outcome."""

    def __init__(
        self,
        *,
        bd_command: Sequence[str] = ("bd",),
        db_path: str | None = None,
    ) -> None:
        if not bd_command:
            raise ValueError("Store command must not be empty.")
        self.bd_command = tuple(bd_command)
        self.db_path = db_path

    def base_args(self) -> list[str]:
        args = list(self.bd_command)
        if self.db_path:
            args.extend(["--db", self.db_path])
        return args

    def build_env(self, *, bypass: bool) -> dict[str, str]:
        env = os.environ.copy()
        if bypass:
            env[BYPASS_ENV_VAR] = "true"
        return env

    async def run_once(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None,
        timeout_seconds: float,
        bypass: bool = False,
    ) -> ExecutionResult:
        """Run one attempt, killing the process when it exceeds the timeout."""

        run_args = [*self.base_args(), *argv]
        if cwd is not None and not cwd.is_dir():
            raise StoreRunError(f"Repository directory not found: {cwd}", transient=False)
        try:
            process = await asyncio.create_subprocess_exec(
                *run_args,
                cwd=str(cwd) if cwd is not None else None,
                env=self.build_env(bypass=bypass),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as error:
            raise StoreRunError(
                f"Store command not found: {error.filename or run_args[0]}",
                transient=False,
                exit_code=MISSING_BINARY_EXIT_CODE,
            ) from error
        except OSError as error:
            raise StoreRunError(
                f"Store command failed to start: {error}",
                transient=True,
            ) from error

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            await _kill_process(process)
            timeout_ms = int(timeout_seconds * 1000)
            logger.warning(
                "Killed store command %s after %dms",
                " ".join(argv[:2]),
                timeout_ms,
            )
            return ExecutionResult(
                stdout="",
                stderr=f"{TIMEOUT_MARKER} {timeout_ms}ms",
                exit_code=1,
                timed_out=True,
            )
        except asyncio.CancelledError:
            # Cancellation releases the repo lock, so the child must not outlive it.
            await _kill_process(process)
            raise

        returncode = process.returncode if process.returncode is not None else 1
        return ExecutionResult(
            stdout=_decode(stdout_bytes),
            stderr=_decode(stderr_bytes),
            # Killed by a signal shows up as a negative return code.
            exit_code=returncode if returncode >= 0 else 1,
            timed_out=False,
        )


async def _kill_process(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


def _decode(raw: bytes | None) -> str:
    return (raw or b"").decode("utf-8", errors="replace").strip()
