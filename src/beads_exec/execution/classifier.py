"""Deterministic command classification for timeout and retry policy."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from beads_exec.execution.models import CommandCategory, CommandDescriptor

_READ_ONLY_VERBS: frozenset[str] = frozenset(
    {"list", "ready", "show", "search", "query", "count", "stats", "blocked"},
)
_READ_ONLY_SUBCOMMANDS: frozenset[tuple[str, str]] = frozenset(
    {
        ("dep", "list"),
        ("dep", "tree"),
        ("label", "list"),
        ("label", "list-all"),
    },
)
_IDEMPOTENT_WRITE_VERBS: frozenset[str] = frozenset({"update", "sync"})
_IDEMPOTENT_WRITE_SUBCOMMANDS: frozenset[tuple[str, str]] = frozenset(
    {
        ("label", "add"),
        ("label", "remove"),
        ("dep", "remove"),
        ("dep", "rm"),
    },
)
_RETRY_BUDGETS: dict[CommandCategory, int] = {
    CommandCategory.READ_ONLY: 1,
    CommandCategory.IDEMPOTENT_WRITE: 1,
    CommandCategory.NON_IDEMPOTENT_WRITE: 0,
}


@dataclass(slots=True, frozen=True)
class CommandTimeouts:
    """Timeout ceilings applied per command category."""

    read_seconds: float
    write_seconds: float


def command_verb(argv: Sequence[str]) -> str:
    """Return the leading verb of a command vector, or an empty string."""

    return argv[0].strip().lower() if argv else ""


def classify_category(argv: Sequence[str]) -> CommandCategory:
    verb = command_verb(argv)
    subcommand = argv[1].strip().lower() if len(argv) > 1 else ""
    if verb in _READ_ONLY_VERBS or (verb, subcommand) in _READ_ONLY_SUBCOMMANDS:
        return CommandCategory.READ_ONLY
    if verb in _IDEMPOTENT_WRITE_VERBS or (verb, subcommand) in _IDEMPOTENT_WRITE_SUBCOMMANDS:
        return CommandCategory.IDEMPOTENT_WRITE
    return CommandCategory.NON_IDEMPOTENT_WRITE


def classify_command(argv: Sequence[str], timeouts: CommandTimeouts) -> CommandDescriptor:
    """Derive category, timeout and timeout-retry budget for a command vector."""

    category = classify_category(argv)
    timeout_seconds = (
        timeouts.read_seconds
        if category is CommandCategory.READ_ONLY
        else timeouts.write_seconds
    )
    return CommandDescriptor(
        argv=tuple(argv),
        verb=command_verb(argv),
        category=category,
        timeout_seconds=timeout_seconds,
        retry_budget=_RETRY_BUDGETS[category],
    )
