"""APScheduler integration for the trading engine.

Jobs:
    keepalive      renew the exchange session at a fixed interval
    fixture_sync   discover upcoming fixtures and seed trades
    plan           decide whether to poll now or sleep until the next kickoff
    poll           run processing cycles at the in-play interval
    login_retry    one-shot re-login once a backoff or ban cool-down elapses

Wake decisions are pure functions of the open trades and ``now`` so they
can be exercised with a fake clock.
"""

import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from goalreact.engine.trade_job import TradeEngine
from goalreact.services.betfair_session import SessionManager
from goalreact.utils.clock import SystemClock, ensure_utc

logger = logging.getLogger(__name__)

MIN_SLEEP = timedelta(minutes=1)
MAX_SLEEP = timedelta(hours=24)
IMMINENT_KICKOFF = timedelta(minutes=10)

_JOB_DEFAULTS = {"max_instances": 1, "coalesce": True, "misfire_grace_time": 60}


def next_wake_delay(kickoffs: list[datetime], now: datetime) -> timedelta:
    """How long to sleep before the engine next needs to look at the trades.

    Zero when any open trade has already kicked off, otherwise the time to
    the next kickoff clamped to [1 minute, 24 hours].
    """
    kickoffs = [ensure_utc(k) for k in kickoffs]
    if any(k <= now for k in kickoffs):
        return timedelta(0)
    upcoming = [k for k in kickoffs if k > now]
    if not upcoming:
        return MAX_SLEEP
    return min(max(min(upcoming) - now, MIN_SLEEP), MAX_SLEEP)


def polling_needed(kickoffs: list[datetime], now: datetime) -> bool:
    """True while any open trade is in-play or about to kick off."""
    return any(ensure_utc(k) <= now + IMMINENT_KICKOFF for k in kickoffs)


class StrategyScheduler:
    """Owns the APScheduler instance and the job set for one engine."""

    def __init__(
        self,
        engine: TradeEngine,
        session: SessionManager,
        scheduler: AsyncIOScheduler | None = None,
        clock=None,
        keepalive_minutes: int = 15,
        fixture_sync_hours: int = 24,
    ):
        self.engine = engine
        self.session = session
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self.clock = clock or SystemClock()
        self.keepalive_minutes = keepalive_minutes
        self.fixture_sync_hours = fixture_sync_hours
        self.poll_interval_seconds: int | None = None
        self.paused = False

    def _open_kickoffs(self) -> list[datetime]:
        return [t.kickoff_at for t in self.engine.store.list_open_trades(self.engine.strategy_key)]

    def start(self):
        now = self.clock.now()
        self.scheduler.add_job(
            self.keepalive,
            trigger=IntervalTrigger(minutes=self.keepalive_minutes),
            id="keepalive",
            name="Session keep-alive",
            replace_existing=True,
            **_JOB_DEFAULTS,
        )
        self.scheduler.add_job(
            self.sync_fixtures,
            trigger=IntervalTrigger(hours=self.fixture_sync_hours),
            id="fixture_sync",
            name="Fixture sync",
            next_run_time=now,
            replace_existing=True,
            **_JOB_DEFAULTS,
        )
        self._schedule_plan(now)
        self.scheduler.start()
        logger.info(f"Scheduler started with {len(self.scheduler.get_jobs())} jobs")

    def stop(self):
        self.scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

    def pause(self):
        """Manual stop: freeze all jobs without losing them."""
        self.scheduler.pause()
        self.paused = True
        logger.info("Scheduler paused")

    def resume(self):
        self.scheduler.resume()
        self.paused = False
        self._schedule_plan(self.clock.now())
        logger.info("Scheduler resumed")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def keepalive(self):
        renewed = await self.session.keep_alive()
        if not renewed:
            logger.warning("Keep-alive did not renew the session")

    async def sync_fixtures(self):
        await self.engine.sync_fixtures()
        await self.plan()

    async def plan(self):
        """Start polling if anything needs attention, else sleep until the next kickoff."""
        now = self.clock.now()
        kickoffs = self._open_kickoffs()
        if polling_needed(kickoffs, now):
            params = self.engine.store.load_settings(self.engine.strategy_key)
            self._start_polling(params.in_play_poll_interval_seconds)
            return

        self._stop_polling()
        delay = next_wake_delay(kickoffs, now)
        self._schedule_plan(now + delay)
        logger.info(f"No trades need attention; next check in {delay}")

    async def poll(self):
        result = await self.engine.run_cycle()
        if result.skipped_overlap:
            return
        now = self.clock.now()
        kickoffs = self._open_kickoffs()
        if not polling_needed(kickoffs, now):
            logger.info("No active or imminent trades, stopping in-play polling")
            self._stop_polling()
            self._schedule_plan(now + next_wake_delay(kickoffs, now))
            return

        # Pick up poll interval changes from settings
        params = self.engine.store.load_settings(self.engine.strategy_key)
        if params.in_play_poll_interval_seconds != self.poll_interval_seconds:
            self._start_polling(params.in_play_poll_interval_seconds)

    def schedule_login_retry(self, when: datetime):
        """Callback for the session manager after a failed login."""
        self.scheduler.add_job(
            self.session.retry_login,
            trigger=DateTrigger(run_date=when),
            id="login_retry",
            name="Login retry",
            replace_existing=True,
            misfire_grace_time=60,
        )
        logger.info(f"Login retry scheduled for {when.isoformat()}")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _schedule_plan(self, when: datetime):
        self.scheduler.add_job(
            self.plan,
            trigger=DateTrigger(run_date=when),
            id="plan",
            name="Wake planner",
            replace_existing=True,
            misfire_grace_time=60,
        )

    def _start_polling(self, interval_seconds: int):
        if self.poll_interval_seconds == interval_seconds and self.scheduler.get_job("poll"):
            return
        self.scheduler.add_job(
            self.poll,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id="poll",
            name="In-play poll",
            next_run_time=self.clock.now(),
            replace_existing=True,
            **_JOB_DEFAULTS,
        )
        self.poll_interval_seconds = interval_seconds
        logger.info(f"In-play polling every {interval_seconds}s")

    def _stop_polling(self):
        if self.scheduler.get_job("poll"):
            self.scheduler.remove_job("poll")
            logger.info("In-play polling stopped")
        self.poll_interval_seconds = None

    def status(self) -> dict:
        """Current scheduler state for the status endpoint."""
        jobs = self.scheduler.get_jobs()
        return {
            "running": self.scheduler.running,
            "paused": self.paused,
            "polling": self.poll_interval_seconds is not None,
            "poll_interval_seconds": self.poll_interval_seconds,
            "processing_active": self.engine.processing_active,
            "syncing_fixtures": self.engine.syncing_fixtures,
            "job_count": len(jobs),
            "jobs": [
                {
                    "id": j.id,
                    "name": j.name,
                    "next_run": str(j.next_run_time) if j.next_run_time else None,
                    "trigger": str(j.trigger),
                }
                for j in jobs
            ],
        }
