"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from beads_exec.config import ExecutionSettings, LockSettings, Settings, SuppressionSettings
from beads_exec.execution.models import ExecutionResult


@dataclass(slots=True)
class RunnerCall:
    argv: tuple[str, ...]
    cwd: Path | None
    timeout_seconds: float
    bypass: bool


@dataclass(slots=True)
class FakeRunner:
    """Replays queued results; unqueued calls succeed with empty output."""

    responses: list[ExecutionResult] = field(default_factory=list)
    calls: list[RunnerCall] = field(default_factory=list)

    def queue(self, *results: ExecutionResult) -> None:
        self.responses.extend(results)

    async def run_once(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None,
        timeout_seconds: float,
        bypass: bool = False,
    ) -> ExecutionResult:
        self.calls.append(
            RunnerCall(
                argv=tuple(argv),
                cwd=cwd,
                timeout_seconds=timeout_seconds,
                bypass=bypass,
            ),
        )
        await asyncio.sleep(0)
        if self.responses:
            return self.responses.pop(0)
        return ExecutionResult(stdout="", stderr="", exit_code=0)

    @property
    def argvs(self) -> list[tuple[str, ...]]:
        return [call.argv for call in self.calls]


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        execution=ExecutionSettings(
            bd_command=("bd",),
            read_timeout_seconds=15.0,
            write_timeout_seconds=30.0,
            read_bypass_default=True,
        ),
        locks=LockSettings(
            root_dir=tmp_path / "locks",
            poll_interval_seconds=0.01,
            stale_after_seconds=300.0,
            wait_timeout_seconds=1.0,
        ),
        suppression=SuppressionSettings(window_seconds=120.0, max_entries=64),
    )
