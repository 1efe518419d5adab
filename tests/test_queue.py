from __future__ import annotations

import asyncio

import allure
import pytest

from beads_exec.execution.queue import ResourceQueue

pytestmark = [
    allure.epic("Store Execution"),
    allure.feature("Repo Serialization"),
]


def test_same_key_runs_one_at_a_time_in_arrival_order() -> None:
    queue = ResourceQueue()
    events: list[str] = []

    async def job(name: str) -> str:
        events.append(f"start:{name}")
        await asyncio.sleep(0.01)
        events.append(f"end:{name}")
        return name

    async def scenario() -> list[str]:
        return await asyncio.gather(
            *(queue.run_exclusive("/repo-a", lambda name=name: job(name)) for name in "abc"),
        )

    results = asyncio.run(scenario())

    assert results == ["a", "b", "c"]
    assert events == ["start:a", "end:a", "start:b", "end:b", "start:c", "end:c"]
    assert queue.active_keys() == []


def test_different_keys_overlap() -> None:
    queue = ResourceQueue()
    running: set[str] = set()
    overlaps: list[set[str]] = []

    async def job(key: str) -> None:
        running.add(key)
        await asyncio.sleep(0.01)
        overlaps.append(set(running))
        running.discard(key)

    async def scenario() -> None:
        await asyncio.gather(
            queue.run_exclusive("/repo-a", lambda: job("/repo-a")),
            queue.run_exclusive("/repo-b", lambda: job("/repo-b")),
        )

    asyncio.run(scenario())

    assert {"/repo-a", "/repo-b"} in overlaps


def test_failed_turn_does_not_block_next_caller() -> None:
    queue = ResourceQueue()

    async def boom() -> None:
        await asyncio.sleep(0)
        raise RuntimeError("boom")

    async def fine() -> str:
        return "ok"

    async def scenario() -> tuple[object, str]:
        first = asyncio.ensure_future(queue.run_exclusive("/repo", boom))
        second = asyncio.ensure_future(queue.run_exclusive("/repo", fine))
        with pytest.raises(RuntimeError, match="boom"):
            await first
        return first.exception(), await second

    error, value = asyncio.run(scenario())

    assert isinstance(error, RuntimeError)
    assert value == "ok"
    assert queue.pending_count("/repo") == 0


def test_pending_count_tracks_waiters_and_cleans_up() -> None:
    queue = ResourceQueue()
    seen: list[int] = []

    async def scenario() -> None:
        release = asyncio.Event()

        async def holder() -> None:
            async with queue.turn("/repo"):
                await release.wait()

        async def waiter() -> None:
            async with queue.turn("/repo"):
                seen.append(queue.pending_count("/repo"))

        tasks = [asyncio.create_task(holder()), asyncio.create_task(waiter())]
        await asyncio.sleep(0.01)
        seen.append(queue.pending_count("/repo"))
        release.set()
        await asyncio.gather(*tasks)

    asyncio.run(scenario())

    assert seen == [2, 1]
    assert queue.pending_count("/repo") == 0
    assert "/repo" not in queue.active_keys()
