"""Daily balance refresh and low-balance reminders.

Once a day at a fixed wall-clock time: for every stored login, fetch the
balance (and daily usage where the account's backend supports it), persist
new per-day usage, prune old usage, and send at most one alert to users
with reminders enabled.

Scheduled as a one-shot APScheduler DateTrigger job that re-registers itself
after every run, so each run is pinned to the configured local time rather
than to "24h after the previous run".
"""

import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Optional
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from logger import logger
from domains.evs.alerts import evaluate_alert
from domains.evs.config import (
    AVERAGE_WINDOW_DAYS,
    SLOW_REQUEST_MS,
    USAGE_REFRESH_DAYS,
    USAGE_RETENTION_DAYS,
)
from domains.evs.errors import EvsError, NotAuthorized, StorageError
from domains.evs.services import EvsClientPool
from domains.evs.storage import EncryptedStorage, UserCreds
from domains.evs.types import ClientMode

JOB_ID = "evs_daily_refresh"

Notifier = Callable[[int, str], Awaitable[None]]


@dataclass
class RefreshReport:
    """Outcome of one batch run."""
    checked: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    alerted: list[int] = field(default_factory=list)


class DailyRefreshJob:
    """Refreshes every stored account once a day."""

    def __init__(
        self,
        pool: EvsClientPool,
        storage: EncryptedStorage,
        notifier: Notifier,
        hour: int = 9,
        minute: int = 0,
        timezone: str = "Asia/Singapore",
        debug: bool = False,
    ):
        self.pool = pool
        self.storage = storage
        self.notifier = notifier
        self.hour = hour
        self.minute = minute
        self.tz = ZoneInfo(timezone)
        self.debug = debug

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def next_run_at(self, now: Optional[datetime] = None) -> datetime:
        """Next occurrence of hour:minute local time, strictly after ``now``."""
        now = now.astimezone(self.tz) if now else datetime.now(self.tz)
        target = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if target <= now:
            target += timedelta(days=1)
        return target

    def schedule_next(self, scheduler: AsyncIOScheduler) -> datetime:
        run_at = self.next_run_at()
        scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_at),
            args=[scheduler],
            id=JOB_ID,
            name="evs daily refresh",
            replace_existing=True,
            misfire_grace_time=None,  # run late after a pause, never drop the run
            coalesce=True,
        )
        hours = (run_at - datetime.now(self.tz)).total_seconds() / 3600
        logger.info(f"[refresh] next run at {run_at.isoformat()} (in {hours:.1f}h)")
        return run_at

    async def _fire(self, scheduler: AsyncIOScheduler) -> None:
        try:
            await self.run_once()
        except Exception as e:
            logger.exception(f"[refresh] run crashed: {e}")
        finally:
            self.schedule_next(scheduler)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    async def run_once(self, today: Optional[date] = None) -> RefreshReport:
        """Refresh every stored account. One account failing never stops the batch."""
        today = today or datetime.now(self.tz).date()
        report = RefreshReport()
        all_creds = self.storage.get_all_creds()
        started = time.monotonic()
        logger.info(f"[refresh] running daily check for {len(all_creds)} users")

        for user_id, creds in all_creds.items():
            user_started = time.monotonic()
            try:
                alerted = await self._refresh_user(user_id, creds, today)
            except Exception as e:
                report.failed.append(user_id)
                logger.error(f"[refresh] user {user_id} failed: {e}")
                continue

            report.checked.append(user_id)
            if alerted:
                report.alerted.append(user_id)

            user_ms = (time.monotonic() - user_started) * 1000
            if self.debug or user_ms > SLOW_REQUEST_MS:
                logger.info(f"[refresh] user {user_id} done in {user_ms:.0f}ms")

        total_ms = (time.monotonic() - started) * 1000
        logger.info(
            f"[refresh] finished in {total_ms:.0f}ms: {len(report.checked)} ok, "
            f"{len(report.failed)} failed, {len(report.alerted)} alerted"
        )
        return report

    async def _refresh_user(self, user_id: int, creds: UserCreds, today: date) -> bool:
        """Returns True when an alert was sent."""
        client = self.pool.for_user(creds.username)
        balance = await client.get_balance(creds.username, creds.password)

        avg_per_day = None
        if balance.mode is ClientMode.MODERN:
            avg_per_day = await self._refresh_usage(user_id, creds, today)
        if avg_per_day is None:
            avg_per_day = self.storage.get_total_spent(user_id, AVERAGE_WINDOW_DAYS, today).average or 0.0

        try:
            self.storage.prune_old_usage(user_id, USAGE_RETENTION_DAYS, today)
        except StorageError as e:
            logger.warning(f"[refresh] prune failed for user {user_id}: {e}")

        reminder = self.storage.get_reminder(user_id)
        if reminder is None or not reminder.enabled:
            return False

        alert = evaluate_alert(balance.balance, avg_per_day)
        if alert is None:
            return False

        await self.notifier(reminder.chat_id, alert.message())
        logger.info(f"[refresh] sent {alert.level.value} alert to user {user_id}")
        return True

    async def _refresh_usage(self, user_id: int, creds: UserCreds, today: date) -> Optional[float]:
        """Store recent daily usage and return the average per day, if known."""
        client = self.pool.for_user(creds.username)
        try:
            usage = await client.get_daily_usage(creds.username, creds.password, USAGE_REFRESH_DAYS)
        except NotAuthorized:
            # History is a list-scope claim some accounts lack; month-to-date is read scope.
            try:
                month = await client.get_month_to_date_usage(creds.username, creds.password)
            except EvsError as e:
                logger.warning(f"[refresh] no usage data for user {user_id}: {e}")
                return None
            return month.usage / today.day
        except EvsError as e:
            logger.warning(f"[refresh] usage fetch failed for user {user_id}: {e}")
            return None

        try:
            self.storage.set_daily_usage_bulk(user_id, {d.date: d.usage for d in usage.daily})
        except StorageError as e:
            logger.warning(f"[refresh] could not store usage for user {user_id}: {e}")
        return usage.avg_per_day if usage.daily else None


def register_daily_refresh(scheduler: AsyncIOScheduler, job: DailyRefreshJob) -> None:
    """Register the daily refresh job with the scheduler."""
    job.schedule_next(scheduler)
    logger.info(f"Registered EVS daily refresh job ({job.hour:02d}:{job.minute:02d} {job.tz.key})")
