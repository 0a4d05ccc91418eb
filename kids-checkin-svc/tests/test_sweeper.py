from __future__ import annotations
import asyncio
import logging

import pytest

from kids_checkin.models import CheckInRequestStatus
from kids_checkin.services.sweeper import JOB_ID, ExpirySweeper


async def test_run_once_expires_lapsed_requests(run, world, clock, session_maker, fetch):
    view, _ = await run(lambda e: e.create(world.parent1, world.child, world.service))
    clock.advance(minutes=16)

    sweeper = ExpirySweeper(session_maker, interval_seconds=60, clock=clock)
    assert await sweeper.run_once() == 1
    assert await sweeper.run_once() == 0

    stored = await fetch(view.request.id)
    assert stored.status == CheckInRequestStatus.EXPIRED
    assert stored.processed_at == clock()
    assert stored.processed_by is None


async def test_failed_tick_is_logged_and_swallowed(caplog):
    def broken_session_maker():
        raise RuntimeError("database unreachable")

    sweeper = ExpirySweeper(broken_session_maker, interval_seconds=60)
    with caplog.at_level(logging.ERROR, logger="kids_checkin.services.sweeper"):
        assert await sweeper.run_once() == 0
    assert "expiry sweep failed" in caplog.text


async def test_overlapping_tick_is_skipped(session_maker):
    sweeper = ExpirySweeper(session_maker, interval_seconds=60)
    async with sweeper._lock:
        assert await sweeper.run_once() == 0


async def test_start_registers_single_instance_job(session_maker):
    sweeper = ExpirySweeper(session_maker, interval_seconds=42)
    sweeper.start()
    try:
        job = sweeper.scheduler.get_job(JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True
        assert job.trigger.interval.total_seconds() == 42
    finally:
        await sweeper.shutdown()
    assert sweeper.scheduler.get_job(JOB_ID) is None
    assert not sweeper.scheduler.running


async def test_restart_in_same_process_keeps_the_job(session_maker):
    sweeper = ExpirySweeper(session_maker, interval_seconds=42)
    sweeper.start()
    await sweeper.shutdown()

    sweeper.start()
    try:
        assert sweeper.scheduler.running
        assert sweeper.scheduler.get_job(JOB_ID) is not None
        # a stop left over from the first shutdown must not land now
        await asyncio.sleep(0)
        assert sweeper.scheduler.running
        assert sweeper.scheduler.get_job(JOB_ID) is not None
    finally:
        await sweeper.shutdown()
