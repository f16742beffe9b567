import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .models import PERIODS
from .periods import period_start
from .store import Store

logger = logging.getLogger(__name__)

MISFIRE_GRACE_SECONDS = 3600


class PeriodResetScheduler:
    """Owns the cron jobs that zero each period's family counters.

    Created and torn down by the app lifecycle; each job is isolated so a
    failing reset is logged and the next scheduled run still happens.
    """

    def __init__(
        self,
        store: Store,
        *,
        tz=None,
        week_start: Optional[str] = None,
        reconcile: Optional[Callable[[], Awaitable[Any]]] = None,
        reconcile_minutes: Optional[int] = None,
    ):
        self.store = store
        self.tz = tz or config.get_leaderboard_tz()
        self.week_start = week_start or config.get_week_start()
        self.reconcile = reconcile
        self.reconcile_minutes = reconcile_minutes or config.RECONCILE_INTERVAL_MINUTES
        self._scheduler: Optional[AsyncIOScheduler] = None

    def triggers(self) -> Dict[str, CronTrigger]:
        return {
            "daily": CronTrigger(hour=0, minute=0, timezone=self.tz),
            "weekly": CronTrigger(day_of_week=self.week_start, hour=0, minute=0, timezone=self.tz),
            "monthly": CronTrigger(day=1, hour=0, minute=0, timezone=self.tz),
            "yearly": CronTrigger(month=1, day=1, hour=0, minute=0, timezone=self.tz),
        }

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> AsyncIOScheduler:
        if self._scheduler is not None:
            return self._scheduler

        scheduler = AsyncIOScheduler(timezone=self.tz)
        for period, trigger in self.triggers().items():
            scheduler.add_job(
                self.reset_period,
                trigger,
                args=[period],
                id=f"{period}_leaderboard_reset",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=MISFIRE_GRACE_SECONDS,
            )
        if self.reconcile is not None:
            scheduler.add_job(
                self.run_reconcile,
                IntervalTrigger(minutes=self.reconcile_minutes, timezone=self.tz),
                id="reward_reconcile",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
        scheduler.start()
        self._scheduler = scheduler
        logger.info("Leaderboard scheduler started (tz=%s, week starts %s)", self.tz, self.week_start)
        return scheduler

    def shutdown(self) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.shutdown(wait=False)
        except Exception:
            logger.exception("Error shutting down leaderboard scheduler")
        self._scheduler = None

    def job_ids(self) -> List[str]:
        if self._scheduler is None:
            return []
        return sorted(job.id for job in self._scheduler.get_jobs())

    async def reset_period(self, period: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        try:
            count = await self.store.reset_period_counters(period)
            await self.store.record_reset(period, now)
        except Exception:
            logger.exception("Failed to reset %s leaderboard", period)
            return False
        logger.info("%s leaderboard reset successfully (%s families).", period.capitalize(), count)
        return True

    async def run_reconcile(self) -> None:
        try:
            await self.reconcile()
        except Exception:
            logger.exception("Reward reconciliation failed")

    async def catch_up(self, now: Optional[datetime] = None) -> List[str]:
        """Reset any period whose window rolled over while the process was down."""
        now = now or datetime.now(timezone.utc)
        try:
            state = await self.store.get_reset_state()
        except Exception:
            logger.exception("Could not read leaderboard reset state")
            return []

        reset: List[str] = []
        for period in PERIODS:
            boundary = period_start(period, now, self.tz, self.week_start)
            last = state.get(period)
            if last is None:
                # First run: nothing to catch up on, just start tracking.
                try:
                    await self.store.record_reset(period, now)
                except Exception:
                    logger.exception("Could not record %s reset state", period)
                continue
            if datetime.fromisoformat(last) < boundary:
                logger.info("Missed %s reset (last %s), resetting now", period, last)
                if await self.reset_period(period, now):
                    reset.append(period)
        return reset
