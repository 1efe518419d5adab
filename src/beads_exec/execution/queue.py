"""In-process FIFO serialization of store commands per resource key."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TypeVar

T = TypeVar("T")


@dataclass(slots=True)
class _QueueState:
    gate: asyncio.Lock = field(default_factory=asyncio.Lock)
    pending_count: int = 0


class ResourceQueue:
    """Admit at most one caller per resource key at a time, in arrival order.

    ``asyncio.Lock`` wakes waiters in the order they started waiting and does
    not let a newcomer overtake a queued waiter, which gives FIFO admission per
    key. Keys share no state, so different repositories proceed in parallel.
    The state entry for a key is dropped once nobody waits for or holds it.
    """

    def __init__(self) -> None:
        self._states: dict[str, _QueueState] = {}

    def pending_count(self, resource_key: str) -> int:
        state = self._states.get(resource_key)
        return state.pending_count if state is not None else 0

    def active_keys(self) -> list[str]:
        return list(self._states)

    @asynccontextmanager
    async def turn(self, resource_key: str) -> AsyncIterator[None]:
        """Hold the serialized turn for ``resource_key`` for the duration of the block."""

        state = self._states.get(resource_key)
        if state is None:
            state = _QueueState()
            self._states[resource_key] = state
        state.pending_count += 1
        try:
            async with state.gate:
                yield
        finally:
            state.pending_count -= 1
            if state.pending_count == 0 and self._states.get(resource_key) is state:
                del self._states[resource_key]

    async def run_exclusive(
        self,
        resource_key: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        """Run ``fn`` once every earlier caller for the same key has finished."""

        async with self.turn(resource_key):
            return await fn()
