"""Deterministic store failure classification for recovery policy."""

from __future__ import annotations

import re
from dataclasses import dataclass

from beads_exec.execution.models import ExecutionResult, FailureClass

STORE_FAILURE_CLASSIFIER_VERSION = 1

TIMEOUT_MARKER = "bd command timed out after"

_STALENESS_PATTERNS: tuple[str, ...] = (
    "out of sync with jsonl",
    "database out of sync",
    "bd sync --import-only",
)
_ENGINE_PANIC_MARKER = "panic:"
_ENGINE_PANIC_DETAILS: tuple[str, ...] = (
    "nil pointer dereference",
    "invalid memory address",
    "runtime error",
)
_CONTENTION_PATTERNS: tuple[str, ...] = (
    "database is locked",
    "unable to open database",
    "could not obtain lock",
    "locked",
    "lock",
    "busy",
    "eacces",
    "permission denied",
)
_TIMEOUT_PATTERNS: tuple[str, ...] = (TIMEOUT_MARKER,)
_UNKNOWN_FLAG_RE = re.compile(
    r"unknown shorthand flag:?\s+'\w'\s+in\s+(-\w+)"
    r"|unknown (?:shorthand )?flag:?\s+'?(--?[A-Za-z0-9][\w-]*)",
    re.IGNORECASE,
)


@dataclass(slots=True)
class StoreFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    def to_log_details(self, *, verb: str) -> dict[str, object]:
        """Serialize classifier diagnostics for recovery log lines."""

        return {
            "classifier_version": STORE_FAILURE_CLASSIFIER_VERSION,
            "verb": verb,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_store_failure(result: ExecutionResult) -> StoreFailureClassification:
    """Classify a failed attempt into a deterministic recovery class."""

    if result.timed_out:
        return StoreFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="killed_on_timeout",
            matched_pattern=None,
        )

    haystack = failure_text(result)

    flag = unknown_flag(result)
    if flag is not None:
        return StoreFailureClassification(
            failure_class=FailureClass.COMPATIBILITY,
            matched_rule="unknown_flag",
            matched_pattern=flag,
        )

    pattern = _first_match(haystack, _STALENESS_PATTERNS)
    if pattern is not None:
        return StoreFailureClassification(
            failure_class=FailureClass.STALENESS,
            matched_rule="stale_cache",
            matched_pattern=pattern,
        )

    pattern = engine_panic_pattern(result)
    if pattern is not None:
        return StoreFailureClassification(
            failure_class=FailureClass.ENGINE_FAULT,
            matched_rule="engine_panic",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TIMEOUT_PATTERNS)
    if pattern is not None:
        return StoreFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout_marker",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _CONTENTION_PATTERNS)
    if pattern is not None:
        return StoreFailureClassification(
            failure_class=FailureClass.CONTENTION,
            matched_rule="contention",
            matched_pattern=pattern,
        )

    return StoreFailureClassification(
        failure_class=FailureClass.TERMINAL,
        matched_rule="fallback_terminal",
        matched_pattern=None,
    )


def failure_text(result: ExecutionResult) -> str:
    """Lower-cased stderr and stdout, where the store reports its errors."""

    return f"{result.stderr}\n{result.stdout}".lower()


def is_stale_cache_failure(result: ExecutionResult) -> bool:
    return not result.ok and _first_match(failure_text(result), _STALENESS_PATTERNS) is not None


def engine_panic_pattern(result: ExecutionResult) -> str | None:
    if result.ok:
        return None
    haystack = failure_text(result)
    if _ENGINE_PANIC_MARKER not in haystack:
        return None
    return _first_match(haystack, _ENGINE_PANIC_DETAILS)


def is_timeout_failure(result: ExecutionResult) -> bool:
    if result.ok:
        return False
    return result.timed_out or TIMEOUT_MARKER in result.stderr.lower()


def unknown_flag(result: ExecutionResult) -> str | None:
    """Return the flag named in an ``unknown flag`` rejection, if any."""

    if result.ok:
        return None
    match = _UNKNOWN_FLAG_RE.search(f"{result.stderr}\n{result.stdout}")
    if match is None:
        return None
    return match.group(1) or match.group(2)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
