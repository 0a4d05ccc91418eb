from __future__ import annotations
import asyncio
import logging
from datetime import datetime
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import utcnow
from .checkin_requests import CheckInRequestEngine
from .notifications import NullNotifier

logger = logging.getLogger(__name__)

JOB_ID = "expire_stale_checkin_requests"


class ExpirySweeper:
    """Periodically expires PENDING check-in requests whose window has closed.

    Talks to request handlers only through the database. A failed tick is
    logged and the schedule carries on.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        *,
        interval_seconds: int = 300,
        clock: Callable[[], datetime] = utcnow,
        scheduler: AsyncIOScheduler | None = None,
    ):
        self.session_maker = session_maker
        self.interval_seconds = interval_seconds
        self.clock = clock
        self.scheduler = scheduler or AsyncIOScheduler()
        self._lock = asyncio.Lock()

    def start(self) -> None:
        self.scheduler.add_job(
            self.run_once,
            "interval",
            seconds=self.interval_seconds,
            id=JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()
        logger.info(f"Check-in expiry sweep scheduled every {self.interval_seconds}s")

    async def shutdown(self) -> None:
        if self.scheduler.get_job(JOB_ID) is not None:
            self.scheduler.remove_job(JOB_ID)
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            # newer AsyncIOScheduler releases hand the stop to the event loop
            await asyncio.sleep(0)

    async def run_once(self) -> int:
        """One sweep tick; returns how many requests were expired (0 on failure or overlap)."""
        if self._lock.locked():
            logger.debug("Previous expiry sweep still running; skipping tick")
            return 0
        async with self._lock:
            try:
                async with self.session_maker() as db:
                    engine = CheckInRequestEngine(db, notifier=NullNotifier(), clock=self.clock)
                    expired = await engine.expire_stale(self.clock())
            except Exception:
                logger.exception("Check-in expiry sweep failed")
                return 0
        if expired:
            logger.info(f"Expired {expired} stale check-in request(s)")
        else:
            logger.debug("Expiry sweep found nothing to expire")
        return expired
