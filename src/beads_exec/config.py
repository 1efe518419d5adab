"""Runtime configuration for store command execution."""

from __future__ import annotations

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class ExecutionSettings:
    """Store binary and per-attempt timeout settings."""

    bd_command: tuple[str, ...] = ("bd",)
    db_path: str | None = None
    command_timeout_seconds: float = 30.0
    read_timeout_seconds: float = 15.0
    write_timeout_seconds: float = 30.0
    read_bypass_default: bool = True


@dataclass(slots=True)
class LockSettings:
    """Cross-process repository lock settings."""

    root_dir: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "beads-exec-locks",
    )
    poll_interval_seconds: float = 0.1
    stale_after_seconds: float = 300.0
    wait_timeout_seconds: float = 60.0


@dataclass(slots=True)
class SuppressionSettings:
    """Read-path error suppression settings."""

    window_seconds: float = 120.0
    max_entries: int = 64


@dataclass(slots=True)
class Settings:
    """Application settings grouped by subsystem."""

    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    suppression: SuppressionSettings = field(default_factory=SuppressionSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        command_timeout_ms = _env_int("BEADS_EXEC_COMMAND_TIMEOUT_MS", 30_000)
        settings = cls(
            execution=ExecutionSettings(
                bd_command=_parse_bd_command(os.getenv("BD_BIN", "bd")),
                db_path=os.getenv("BD_DB") or None,
                command_timeout_seconds=command_timeout_ms / 1000,
                read_timeout_seconds=(
                    _env_int("BEADS_EXEC_READ_TIMEOUT_MS", min(15_000, command_timeout_ms)) / 1000
                ),
                write_timeout_seconds=(
                    _env_int("BEADS_EXEC_WRITE_TIMEOUT_MS", command_timeout_ms) / 1000
                ),
                read_bypass_default=_env_bool("BEADS_EXEC_READ_NO_DB", default=True),
            ),
            locks=LockSettings(
                root_dir=Path(
                    os.getenv(
                        "BEADS_EXEC_LOCK_DIR",
                        str(Path(tempfile.gettempdir()) / "beads-exec-locks"),
                    ),
                ),
                poll_interval_seconds=_env_int("BEADS_EXEC_LOCK_POLL_MS", 100) / 1000,
                stale_after_seconds=_env_int("BEADS_EXEC_LOCK_STALE_MS", 300_000) / 1000,
                wait_timeout_seconds=_env_int("BEADS_EXEC_LOCK_WAIT_MS", 60_000) / 1000,
            ),
            suppression=SuppressionSettings(
                window_seconds=_env_int("BEADS_EXEC_SUPPRESSION_WINDOW_MS", 120_000) / 1000,
                max_entries=_env_int("BEADS_EXEC_SUPPRESSION_MAX_ENTRIES", 64),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error if any limit is out of range."""

        if not self.execution.bd_command:
            raise ValueError("BD_BIN must not be empty.")
        if self.execution.command_timeout_seconds <= 0:
            raise ValueError("BEADS_EXEC_COMMAND_TIMEOUT_MS must be > 0.")
        if self.execution.read_timeout_seconds <= 0:
            raise ValueError("BEADS_EXEC_READ_TIMEOUT_MS must be > 0.")
        if self.execution.write_timeout_seconds <= 0:
            raise ValueError("BEADS_EXEC_WRITE_TIMEOUT_MS must be > 0.")
        if self.locks.poll_interval_seconds <= 0:
            raise ValueError("BEADS_EXEC_LOCK_POLL_MS must be > 0.")
        if self.locks.stale_after_seconds <= 0:
            raise ValueError("BEADS_EXEC_LOCK_STALE_MS must be > 0.")
        if self.locks.wait_timeout_seconds <= 0:
            raise ValueError("BEADS_EXEC_LOCK_WAIT_MS must be > 0.")
        if self.suppression.window_seconds < 0:
            raise ValueError("BEADS_EXEC_SUPPRESSION_WINDOW_MS must be >= 0.")
        if self.suppression.max_entries <= 0:
            raise ValueError("BEADS_EXEC_SUPPRESSION_MAX_ENTRIES must be a positive integer.")


def _parse_bd_command(raw: str) -> tuple[str, ...]:
    return tuple(shlex.split(raw.strip()))


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
