"""Domain models for store command execution."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class CommandCategory(str, Enum):
    """Repeat-safety class of a store command."""

    READ_ONLY = "read_only"
    IDEMPOTENT_WRITE = "idempotent_write"
    NON_IDEMPOTENT_WRITE = "non_idempotent_write"


class FailureClass(str, Enum):
    """Normalized failure classes used by recovery policy."""

    CONTENTION = "contention"
    STALENESS = "staleness"
    ENGINE_FAULT = "engine_fault"
    COMPATIBILITY = "compatibility"
    TIMEOUT = "timeout"
    TERMINAL = "terminal"


@dataclass(slots=True, frozen=True)
class CommandDescriptor:
    """Argument vector with its derived classification."""

    argv: tuple[str, ...]
    verb: str
    category: CommandCategory
    timeout_seconds: float
    retry_budget: int

    @property
    def is_read_only(self) -> bool:
        return self.category is CommandCategory.READ_ONLY


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Outcome of one store process run."""

    stdout: str
    stderr: str
    exit_code: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(slots=True, frozen=True)
class StoreResult:
    """Public-facing result of a wrapped store operation."""

    ok: bool
    data: Any = None
    error: str | None = None


@dataclass(slots=True, frozen=True)
class LockOwnerRecord:
    """Persisted proof of current lock ownership."""

    pid: int
    resource_key: str
    acquired_at: float
    token: str

    def to_payload(self) -> dict[str, object]:
        return {
            "pid": self.pid,
            "resource_key": self.resource_key,
            "acquired_at": self.acquired_at,
            "token": self.token,
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> LockOwnerRecord:
        """Build a record from decoded JSON, raising ValueError on bad shape."""

        try:
            return cls(
                pid=int(payload["pid"]),
                resource_key=str(payload["resource_key"]),
                acquired_at=float(payload["acquired_at"]),
                token=str(payload.get("token", "")),
            )
        except (KeyError, TypeError) as error:
            raise ValueError(f"Invalid lock owner record: {payload!r}") from error
