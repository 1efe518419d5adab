"""Store error taxonomy for callers that translate raw CLI failures."""

from __future__ import annotations

from enum import Enum

from beads_exec.execution.models import ExecutionResult, StoreResult


class StoreErrorCode(str, Enum):
    """Typed error codes surfaced to store callers."""

    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    INVALID_INPUT = "INVALID_INPUT"
    LOCKED = "LOCKED"
    TIMEOUT = "TIMEOUT"
    UNAVAILABLE = "UNAVAILABLE"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    INTERNAL = "INTERNAL"
    CONFLICT = "CONFLICT"
    RATE_LIMITED = "RATE_LIMITED"
    UNSUPPORTED = "UNSUPPORTED"


_DEFAULT_RETRYABLE: dict[StoreErrorCode, bool] = {
    StoreErrorCode.NOT_FOUND: False,
    StoreErrorCode.ALREADY_EXISTS: False,
    StoreErrorCode.INVALID_INPUT: False,
    StoreErrorCode.LOCKED: True,
    StoreErrorCode.TIMEOUT: True,
    StoreErrorCode.UNAVAILABLE: True,
    StoreErrorCode.PERMISSION_DENIED: False,
    StoreErrorCode.INTERNAL: False,
    StoreErrorCode.CONFLICT: False,
    StoreErrorCode.RATE_LIMITED: True,
    StoreErrorCode.UNSUPPORTED: False,
}

# Order matters: the first rule with a matching pattern wins.
_CLASSIFICATION_RULES: tuple[tuple[tuple[str, ...], StoreErrorCode], ...] = (
    (("not found", "no such", "does not exist"), StoreErrorCode.NOT_FOUND),
    (("already exists", "duplicate"), StoreErrorCode.ALREADY_EXISTS),
    (("lock", "locked", "database is locked"), StoreErrorCode.LOCKED),
    (("timed out", "timeout"), StoreErrorCode.TIMEOUT),
    (("permission denied", "unauthorized", "eacces"), StoreErrorCode.PERMISSION_DENIED),
    (("busy", "unavailable", "unable to open"), StoreErrorCode.UNAVAILABLE),
    (("unknown flag", "unknown command"), StoreErrorCode.UNSUPPORTED),
)

_SUPPRESSIBLE_CODES: frozenset[StoreErrorCode] = frozenset(
    {
        StoreErrorCode.LOCKED,
        StoreErrorCode.TIMEOUT,
        StoreErrorCode.UNAVAILABLE,
        StoreErrorCode.RATE_LIMITED,
    },
)


class StoreError(Exception):
    """Typed store failure with a retryability flag."""

    def __init__(
        self,
        code: StoreErrorCode,
        message: str,
        *,
        retryable: bool | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = _DEFAULT_RETRYABLE[code] if retryable is None else retryable
        self.details = details or {}


def is_retryable_by_default(code: StoreErrorCode) -> bool:
    return _DEFAULT_RETRYABLE[code]


def classify_error_message(raw: str) -> StoreErrorCode:
    """Map a raw CLI error string to an error code; unmatched text is INTERNAL."""

    lower = raw.lower()
    for patterns, code in _CLASSIFICATION_RULES:
        if any(pattern in lower for pattern in patterns):
            return code
    return StoreErrorCode.INTERNAL


def error_from_result(result: ExecutionResult | StoreResult) -> StoreError | None:
    """Build a typed error from a failed result, or None on success."""

    if result.ok:
        return None
    if isinstance(result, ExecutionResult):
        fallback = f"store command failed (exit {result.exit_code})"
        message = result.stderr or result.stdout or fallback
        details: dict[str, object] = {
            "exit_code": result.exit_code,
            "timed_out": result.timed_out,
        }
        code = StoreErrorCode.TIMEOUT if result.timed_out else classify_error_message(message)
    else:
        message = result.error or "store command failed"
        details = {}
        code = classify_error_message(message)
    return StoreError(code, message, details=details)


def is_suppressible(error: StoreError) -> bool:
    """Return True for transient infrastructure errors that resolve on their own."""

    return error.code in _SUPPRESSIBLE_CODES
