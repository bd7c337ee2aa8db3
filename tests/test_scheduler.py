from __future__ import annotations

import asyncio
import logging

import pytest

from branchchat.responses import CANNED_RESPONSES, generate_response
from branchchat.scheduler import ResponseScheduler


def test_generate_response_picks_canned_reply() -> None:
    import random

    rng = random.Random(3)
    replies = {generate_response(rng) for _ in range(50)}

    assert replies <= set(CANNED_RESPONSES)
    assert generate_response() in CANNED_RESPONSES
    assert len(CANNED_RESPONSES) == 7


def test_schedule_produces_reply_after_delay() -> None:
    async def scenario():
        scheduler = ResponseScheduler(0, lambda: "That's interesting! Tell me more.")
        timer = scheduler.schedule(1)
        assert scheduler.pending == 1
        reply = await timer
        await asyncio.sleep(0)
        return scheduler, reply

    scheduler, reply = asyncio.run(scenario())

    assert reply == "That's interesting! Tell me more."
    assert scheduler.pending == 0


def test_close_cancels_pending_timers(caplog) -> None:
    async def scenario():
        scheduler = ResponseScheduler(60)
        first = scheduler.schedule(1)
        second = scheduler.schedule(2)
        await asyncio.sleep(0)
        scheduler.close()
        await asyncio.gather(first, second, return_exceptions=True)
        return scheduler, first, second

    with caplog.at_level(logging.INFO, logger="branchchat.scheduler"):
        scheduler, first, second = asyncio.run(scenario())

    assert first.cancelled() and second.cancelled()
    assert scheduler.closed
    assert "Cancelled 2 pending reply timer(s)" in caplog.text


def test_schedule_after_close_is_refused() -> None:
    async def scenario():
        scheduler = ResponseScheduler(0)
        scheduler.close()
        scheduler.schedule(1)

    with pytest.raises(RuntimeError, match="closed"):
        asyncio.run(scenario())


def test_join_waits_for_spawned_work() -> None:
    done = []

    async def work():
        await asyncio.sleep(0.01)
        done.append(True)

    async def scenario():
        scheduler = ResponseScheduler(0)
        scheduler.spawn(work())
        await scheduler.join()

    asyncio.run(scenario())

    assert done == [True]
