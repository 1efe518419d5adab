"""Recovery policy for failed store attempts.

Each rule is a pure function from the latest ``ExecutionResult`` (plus what has
already been tried) to a ``RecoveryDecision``. ``RecoveryEngine`` applies the
rules in sequence; every rule fires at most once per overall attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Protocol

from beads_exec.execution.failure_classifier import (
    classify_store_failure,
    engine_panic_pattern,
    is_stale_cache_failure,
    is_timeout_failure,
    unknown_flag,
)
from beads_exec.execution.models import CommandDescriptor, ExecutionResult

logger = logging.getLogger(__name__)

AUTO_HEAL_ARGV: tuple[str, ...] = ("sync", "--import-only")


class RecoveryAction(str, Enum):
    """Next step chosen by the recovery policy."""

    SURFACE = "surface"
    STRIP_FLAG = "strip_flag"
    AUTO_HEAL = "auto_heal"
    BYPASS_RETRY = "bypass_retry"
    TIMEOUT_RETRY = "timeout_retry"


@dataclass(slots=True)
class RecoveryDecision:
    """Decision returned by a recovery rule."""

    action: RecoveryAction
    reason: str
    argv: tuple[str, ...] = ()


@dataclass(slots=True)
class RecoveryState:
    """What has already been attempted within one overall attempt."""

    argv: tuple[str, ...]
    bypass: bool
    flag_stripped: bool = False
    healed: bool = False


class AttemptRunner(Protocol):
    """Protocol implemented by single-attempt runners."""

    async def run_once(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None,
        timeout_seconds: float,
        bypass: bool = False,
    ) -> ExecutionResult:
        """Run one attempt and return its outcome."""


_SURFACE = RecoveryDecision(action=RecoveryAction.SURFACE, reason="No recovery rule applies.")


def decide_flag_fallback(
    descriptor: CommandDescriptor,
    result: ExecutionResult,
    state: RecoveryState,
) -> RecoveryDecision:
    """Drop a feature flag the installed store binary does not recognize."""

    if state.flag_stripped:
        return _SURFACE
    flag = unknown_flag(result)
    if flag is None:
        return _SURFACE
    stripped = strip_flag(state.argv, flag)
    if stripped == state.argv:
        return _SURFACE
    return RecoveryDecision(
        action=RecoveryAction.STRIP_FLAG,
        reason=f"Store binary rejected {flag}; retrying without it.",
        argv=stripped,
    )


def decide_auto_heal(
    descriptor: CommandDescriptor,
    result: ExecutionResult,
    state: RecoveryState,
) -> RecoveryDecision:
    """Re-import the append log when the on-disk index is out of sync."""

    if state.healed or descriptor.verb == "sync":
        return _SURFACE
    if not is_stale_cache_failure(result):
        return _SURFACE
    return RecoveryDecision(
        action=RecoveryAction.AUTO_HEAL,
        reason="Store index out of sync with its append log.",
        argv=AUTO_HEAL_ARGV,
    )


def decide_engine_fallback(
    descriptor: CommandDescriptor,
    result: ExecutionResult,
    state: RecoveryState,
) -> RecoveryDecision:
    """Fall back to bypass mode for reads that hit an engine panic."""

    if state.bypass or not descriptor.is_read_only:
        return _SURFACE
    pattern = engine_panic_pattern(result)
    if pattern is None:
        return _SURFACE
    return RecoveryDecision(
        action=RecoveryAction.BYPASS_RETRY,
        reason=f"Store engine panic ({pattern}); retrying read in bypass mode.",
        argv=state.argv,
    )


def decide_timeout_retry(
    descriptor: CommandDescriptor,
    result: ExecutionResult,
    retries_used: int,
) -> RecoveryDecision:
    """Allow bounded whole-attempt retries on timeout for repeat-safe commands."""

    if not is_timeout_failure(result):
        return _SURFACE
    if retries_used >= descriptor.retry_budget:
        return RecoveryDecision(
            action=RecoveryAction.SURFACE,
            reason="Timeout retry budget exhausted.",
        )
    return RecoveryDecision(
        action=RecoveryAction.TIMEOUT_RETRY,
        reason="Command timed out and is safe to repeat.",
        argv=descriptor.argv,
    )


RecoveryRule = Callable[[CommandDescriptor, ExecutionResult, RecoveryState], RecoveryDecision]

RECOVERY_RULES: tuple[RecoveryRule, ...] = (
    decide_flag_fallback,
    decide_auto_heal,
    decide_engine_fallback,
)


def strip_flag(argv: Sequence[str], flag: str) -> tuple[str, ...]:
    """Remove ``flag`` and ``flag=value`` tokens from a command vector."""

    return tuple(token for token in argv if token != flag and not token.startswith(f"{flag}="))


class RecoveryEngine:
    """Run a classified command with in-attempt recovery and timeout retries."""

    def __init__(
        self,
        *,
        runner: AttemptRunner,
        rules: Sequence[RecoveryRule] = RECOVERY_RULES,
    ) -> None:
        self.runner = runner
        self.rules = tuple(rules)

    async def run(
        self,
        descriptor: CommandDescriptor,
        *,
        cwd: Path | None,
        bypass: bool,
    ) -> ExecutionResult:
        """Return the first success or the failure left after all applicable recovery."""

        retries_used = 0
        while True:
            result = await self.run_attempt(descriptor, cwd=cwd, bypass=bypass)
            decision = decide_timeout_retry(descriptor, result, retries_used)
            if decision.action is not RecoveryAction.TIMEOUT_RETRY:
                return result
            retries_used += 1
            logger.info(
                "Retrying bd %s (%d/%d): %s",
                descriptor.verb,
                retries_used,
                descriptor.retry_budget,
                decision.reason,
            )

    async def run_attempt(
        self,
        descriptor: CommandDescriptor,
        *,
        cwd: Path | None,
        bypass: bool,
    ) -> ExecutionResult:
        """Run one overall attempt, applying each in-attempt recovery rule at most once."""

        state = RecoveryState(argv=descriptor.argv, bypass=bypass)
        result = await self._run(state.argv, descriptor, cwd=cwd, bypass=bypass)

        while not result.ok:
            decision = self._decide(descriptor, result, state)
            if decision.action is RecoveryAction.SURFACE:
                return result

            classification = classify_store_failure(result)
            logger.info(
                "Recovering bd %s via %s: %s %s",
                descriptor.verb,
                decision.action.value,
                decision.reason,
                classification.to_log_details(verb=descriptor.verb),
            )

            if decision.action is RecoveryAction.STRIP_FLAG:
                state.flag_stripped = True
                state.argv = decision.argv
                result = await self._run(state.argv, descriptor, cwd=cwd, bypass=state.bypass)
                continue

            if decision.action is RecoveryAction.AUTO_HEAL:
                state.healed = True
                heal = await self._run(decision.argv, descriptor, cwd=cwd, bypass=False)
                if not heal.ok:
                    logger.warning(
                        "Auto-heal for bd %s failed (exit %d): %s",
                        descriptor.verb,
                        heal.exit_code,
                        heal.stderr or heal.stdout,
                    )
                    return result
                result = await self._run(state.argv, descriptor, cwd=cwd, bypass=state.bypass)
                continue

            # Bypass fallback is terminal: its result is returned as-is.
            state.bypass = True
            return await self._run(state.argv, descriptor, cwd=cwd, bypass=True)

        return result

    def _decide(
        self,
        descriptor: CommandDescriptor,
        result: ExecutionResult,
        state: RecoveryState,
    ) -> RecoveryDecision:
        for rule in self.rules:
            decision = rule(descriptor, result, state)
            if decision.action is not RecoveryAction.SURFACE:
                return decision
        return _SURFACE

    async def _run(
        self,
        argv: Sequence[str],
        descriptor: CommandDescriptor,
        *,
        cwd: Path | None,
        bypass: bool,
    ) -> ExecutionResult:
        return await self.runner.run_once(
            argv,
            cwd=cwd,
            timeout_seconds=descriptor.timeout_seconds,
            bypass=bypass,
        )
