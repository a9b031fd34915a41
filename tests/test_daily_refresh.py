"""Tests for the daily refresh / reminder job."""

import asyncio
import os
import sys
import time
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock
from zoneinfo import ZoneInfo

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from domains.evs.errors import NotAuthorized, TransportError
from domains.evs.storage import UserCreds, UserReminder
from domains.evs.types import BalanceResult, ClientMode, DailyUsage, MonthToDateUsage, UsageResult
from jobs.daily_refresh import JOB_ID, DailyRefreshJob

SGT = ZoneInfo("Asia/Singapore")
TODAY = date(2024, 6, 10)


def evs_client(balance=None, mode=ClientMode.MODERN, usage=None):
    client = Mock()
    client.get_balance = AsyncMock(return_value=BalanceResult(mode=mode, balance=balance))
    client.get_daily_usage = AsyncMock(return_value=usage or UsageResult(mode=mode))
    client.get_month_to_date_usage = AsyncMock()
    return client


@pytest.fixture
def clients():
    return {}


@pytest.fixture
def pool(clients):
    pool = Mock()
    pool.for_user = Mock(side_effect=lambda username: clients[username])
    return pool


@pytest.fixture
def notifier():
    return AsyncMock()


@pytest.fixture
def job(pool, storage, notifier):
    return DailyRefreshJob(pool, storage, notifier, hour=9, minute=0, timezone="Asia/Singapore")


def add_user(storage, user_id, username, chat_id, enabled=True):
    storage.set_creds(user_id, UserCreds(username, "pw"))
    storage.set_reminder(user_id, UserReminder(chat_id=chat_id, enabled=enabled))


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_batch(self, job, storage, clients, notifier):
        add_user(storage, 1, "alice", chat_id=100)
        add_user(storage, 2, "bob", chat_id=200)
        clients["alice"] = evs_client()
        clients["alice"].get_balance.side_effect = TransportError("get_credit_bal failed: timeout")
        clients["bob"] = evs_client(
            balance=1.0,
            usage=UsageResult(ClientMode.MODERN, [DailyUsage("2024-06-09", 0.5)], 0.5),
        )

        report = await job.run_once(today=TODAY)

        assert report.failed == [1]
        assert report.checked == [2]
        assert report.alerted == [2]
        notifier.assert_awaited_once()
        chat_id, text = notifier.await_args.args
        assert chat_id == 200
        assert "critical" in text

    @pytest.mark.asyncio
    async def test_stores_usage_and_prunes(self, job, storage, clients):
        add_user(storage, 1, "alice", chat_id=100)
        storage.set_daily_usage_bulk(1, {"2024-01-01": 9.0})
        clients["alice"] = evs_client(
            balance=50.0,
            usage=UsageResult(ClientMode.MODERN, [DailyUsage("2024-06-08", 1.0), DailyUsage("2024-06-09", 2.0)], 1.5),
        )

        await job.run_once(today=TODAY)

        assert storage.get_daily_usage(1) == {"2024-06-08": 1.0, "2024-06-09": 2.0}
        clients["alice"].get_daily_usage.assert_awaited_once_with("alice", "pw", 7)

    @pytest.mark.asyncio
    async def test_at_most_one_alert_per_user(self, job, storage, clients, notifier):
        add_user(storage, 1, "alice", chat_id=100)
        clients["alice"] = evs_client(
            balance=1.0,
            usage=UsageResult(ClientMode.MODERN, [DailyUsage("2024-06-09", 3.0)], 3.0),
        )

        await job.run_once(today=TODAY)

        assert notifier.await_count == 1

    @pytest.mark.asyncio
    async def test_reminders_off_means_no_alert(self, job, storage, clients, notifier):
        add_user(storage, 1, "alice", chat_id=100, enabled=False)
        clients["alice"] = evs_client(balance=0.5)

        report = await job.run_once(today=TODAY)

        assert report.checked == [1]
        notifier.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_month_to_date_when_history_forbidden(self, job, storage, clients, notifier):
        add_user(storage, 1, "alice", chat_id=100)
        client = evs_client(balance=6.0)
        client.get_daily_usage.side_effect = NotAuthorized("get_history: Not authorized (403)")
        client.get_month_to_date_usage.return_value = MonthToDateUsage(usage=40.0, endpoint_used="mtd")
        clients["alice"] = client

        await job.run_once(today=TODAY)

        # 40 over 10 days -> 4/day -> 1.5 days left
        notifier.assert_awaited_once()
        assert "heads up" in notifier.await_args.args[1]

    @pytest.mark.asyncio
    async def test_legacy_account_uses_stored_usage(self, job, storage, clients, notifier):
        add_user(storage, 1, "alice", chat_id=100)
        storage.set_daily_usage_bulk(1, {"2024-06-09": 4.0, "2024-06-10": 4.0})
        clients["alice"] = evs_client(balance=6.0, mode=ClientMode.LEGACY)

        await job.run_once(today=TODAY)

        clients["alice"].get_daily_usage.assert_not_awaited()
        notifier.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_notifier_failure_is_contained(self, job, storage, clients, notifier):
        add_user(storage, 1, "alice", chat_id=100)
        add_user(storage, 2, "bob", chat_id=200)
        clients["alice"] = evs_client(balance=1.0)
        clients["bob"] = evs_client(balance=1.0)
        notifier.side_effect = [RuntimeError("channel gone"), None]

        report = await job.run_once(today=TODAY)

        assert report.failed == [1]
        assert report.alerted == [2]


class TestScheduling:

    def test_next_run_later_today(self, job):
        now = datetime(2024, 6, 1, 8, 30, tzinfo=SGT)
        assert job.next_run_at(now) == datetime(2024, 6, 1, 9, 0, tzinfo=SGT)

    def test_next_run_tomorrow_when_passed(self, job):
        now = datetime(2024, 6, 1, 9, 0, tzinfo=SGT)
        assert job.next_run_at(now) == datetime(2024, 6, 2, 9, 0, tzinfo=SGT)

    def test_next_run_converts_timezone(self, job):
        now = datetime(2024, 6, 1, 0, 30, tzinfo=timezone.utc)  # 08:30 SGT
        assert job.next_run_at(now) == datetime(2024, 6, 1, 9, 0, tzinfo=SGT)

    def test_schedule_next_registers_one_shot_job(self, job):
        scheduler = Mock()

        run_at = job.schedule_next(scheduler)

        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["id"] == JOB_ID
        assert kwargs["replace_existing"] is True
        assert kwargs["trigger"].run_date == run_at

    @pytest.mark.asyncio
    async def test_reschedules_after_crash(self, job):
        scheduler = Mock()
        job.run_once = AsyncMock(side_effect=RuntimeError("boom"))

        await job._fire(scheduler)

        scheduler.add_job.assert_called_once()

    def test_schedule_next_never_drops_a_late_run(self, job):
        scheduler = Mock()

        job.schedule_next(scheduler)

        kwargs = scheduler.add_job.call_args.kwargs
        assert kwargs["misfire_grace_time"] is None
        assert kwargs["coalesce"] is True

    @pytest.mark.asyncio
    async def test_blocked_loop_still_runs_and_reschedules(self, job):
        soon = datetime.now(job.tz) + timedelta(milliseconds=300)
        tomorrow = soon + timedelta(days=1)
        job.next_run_at = Mock(side_effect=[soon, tomorrow])
        job.run_once = AsyncMock()
        scheduler = AsyncIOScheduler()

        job.schedule_next(scheduler)
        scheduler.start()
        try:
            time.sleep(2.5)  # block the event loop well past the run time
            for _ in range(20):
                await asyncio.sleep(0.1)
                if job.run_once.await_count:
                    break
            await asyncio.sleep(0.1)

            job.run_once.assert_awaited_once()
            rescheduled = scheduler.get_job(JOB_ID)
            assert rescheduled is not None
            assert rescheduled.trigger.run_date == tomorrow
        finally:
            scheduler.shutdown(wait=False)
