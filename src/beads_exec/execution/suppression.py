"""Error-suppression cache for read operations.

When a read fails because the store is locked, busy or inaccessible, the last
successful result for the same operation/parameters/repository is served for a
bounded window. After the window the caller gets an explicit degraded-service
error instead of indefinitely stale data. Any success clears failure tracking.
Errors that are not contention-related are never suppressed.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from beads_exec.execution.models import StoreResult

logger = logging.getLogger(__name__)

DEGRADED_ERROR_MESSAGE = (
    "Unable to interact with the beads store. Retry shortly or restart the service; "
    "if the problem persists, investigate the beads installation."
)

SUPPRESSIBLE_PATTERNS: tuple[str, ...] = (
    "lock",
    "locked",
    "database is locked",
    "unable to open database",
    "could not obtain lock",
    "busy",
    "eacces",
    "permission denied",
)


@dataclass(slots=True)
class CacheEntry:
    result: StoreResult
    cached_at: float


@dataclass(slots=True)
class FailureState:
    first_failed_at: float


def is_suppressible_error(message: str) -> bool:
    """Return True if the error message looks like lock/access contention."""

    lower = message.lower()
    return any(pattern in lower for pattern in SUPPRESSIBLE_PATTERNS)


def cache_key(
    operation: str,
    params: Mapping[str, object] | None = None,
    resource_path: str | None = None,
    query: str | None = None,
) -> str:
    normalized = json.dumps(dict(params or {}), sort_keys=True, separators=(",", ":"))
    return f"{operation}:{query or ''}:{normalized}:{resource_path or ''}"


class SuppressionCache:
    """Serve last-good read results while contention lasts, within a window."""

    def __init__(
        self,
        *,
        window_seconds: float = 120.0,
        max_entries: int = 64,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window_seconds = window_seconds
        self.max_entries = max_entries
        self.clock = clock
        self._results: dict[str, CacheEntry] = {}
        self._failures: dict[str, FailureState] = {}

    def __len__(self) -> int:
        return len(self._results)

    def failure_state(self, key: str) -> FailureState | None:
        return self._failures.get(key)

    def cached(self, key: str) -> StoreResult | None:
        entry = self._results.get(key)
        return entry.result if entry is not None else None

    def reset(self) -> None:
        self._results.clear()
        self._failures.clear()

    def wrap(  # noqa: PLR0913
        self,
        operation: str,
        result: StoreResult,
        *,
        params: Mapping[str, object] | None = None,
        resource_path: str | None = None,
        query: str | None = None,
    ) -> StoreResult:
        """Return the effective result for a read given its raw outcome."""

        key = cache_key(operation, params, resource_path, query)

        if result.ok:
            self._results[key] = CacheEntry(result=result, cached_at=self.clock())
            self._evict_if_needed()
            if self._failures.pop(key, None) is not None:
                logger.info("Store reads recovered for %s", key)
            return result

        if not is_suppressible_error(result.error or ""):
            return result

        cached = self._results.get(key)
        if cached is None:
            return result

        failure = self._failures.get(key)
        if failure is None:
            self._failures[key] = FailureState(first_failed_at=self.clock())
            logger.warning("Serving cached result for %s: %s", key, result.error)
            return cached.result

        elapsed = self.clock() - failure.first_failed_at
        if elapsed < self.window_seconds:
            return cached.result

        logger.error(
            "Store contention for %s persisted %.0fs; reporting degraded service",
            key,
            elapsed,
        )
        return StoreResult(ok=False, error=DEGRADED_ERROR_MESSAGE)

    def _evict_if_needed(self) -> None:
        while len(self._results) > self.max_entries:
            oldest_key = min(self._results, key=lambda key: self._results[key].cached_at)
            del self._results[oldest_key]
            self._failures.pop(oldest_key, None)
