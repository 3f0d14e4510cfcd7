"""
Tests for schedule parsing and per-site trigger management.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from jobcrawler.core.errors import SiteNotFoundError
from jobcrawler.core.models import CrawlResult
from jobcrawler.orchestrator import CrawlScheduler, build_trigger, parse_duration

SUNDAY_NOON = datetime(2024, 1, 7, 12, 0, tzinfo=timezone.utc)


class TestBuildTrigger:

    def test_five_field_crontab(self):
        trigger = build_trigger("30 9 * * *")

        assert isinstance(trigger, CronTrigger)
        assert trigger.get_next_fire_time(None, SUNDAY_NOON) == datetime(2024, 1, 8, 9, 30, tzinfo=timezone.utc)

    def test_six_field_with_seconds(self):
        trigger = build_trigger("15 0 12 * * *")
        assert trigger.get_next_fire_time(None, SUNDAY_NOON) == datetime(2024, 1, 7, 12, 0, 15, tzinfo=timezone.utc)

    def test_crontab_weekday_numbering(self):
        # 1 is Monday in crontab
        trigger = build_trigger("0 9 * * 1")
        assert trigger.get_next_fire_time(None, SUNDAY_NOON) == datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)

    def test_weekday_range(self):
        trigger = build_trigger("0 9 * * 1-5")
        saturday = datetime(2024, 1, 6, 12, 0, tzinfo=timezone.utc)
        assert trigger.get_next_fire_time(None, saturday) == datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("descriptor,expected", [
        ("@daily", datetime(2024, 1, 8, 0, 0, tzinfo=timezone.utc)),
        ("@midnight", datetime(2024, 1, 8, 0, 0, tzinfo=timezone.utc)),
        ("@hourly", datetime(2024, 1, 7, 13, 0, tzinfo=timezone.utc)),
        ("@weekly", datetime(2024, 1, 14, 0, 0, tzinfo=timezone.utc)),
        ("@monthly", datetime(2024, 2, 1, 0, 0, tzinfo=timezone.utc)),
        ("@yearly", datetime(2025, 1, 1, 0, 0, tzinfo=timezone.utc)),
    ])
    def test_descriptors(self, descriptor, expected):
        # fire times equal to "now" count as next, so start just past the hour
        now = SUNDAY_NOON + timedelta(seconds=1)
        assert build_trigger(descriptor).get_next_fire_time(None, now) == expected

    def test_every(self):
        trigger = build_trigger("@every 1h30m")

        assert isinstance(trigger, IntervalTrigger)
        assert trigger.interval == timedelta(hours=1, minutes=30)

    @pytest.mark.parametrize("schedule", [
        "", "not a schedule", "* * *", "61 * * * *", "@fortnightly", "@every", "@every soon",
    ])
    def test_invalid(self, schedule):
        with pytest.raises(ValueError):
            build_trigger(schedule)

    def test_parse_duration(self):
        assert parse_duration("45s") == 45
        assert parse_duration("2h") == 7200
        assert parse_duration("500ms") == 0.5
        with pytest.raises(ValueError):
            parse_duration("0s")


@pytest.fixture
def runner():
    runner = Mock()
    runner.execute = AsyncMock(return_value=CrawlResult(jobs_saved=1))
    return runner


@pytest.fixture
def scheduler(runner, site_repo):
    return CrawlScheduler(runner, site_repo)


class TestCrawlScheduler:

    def test_schedule_site(self, scheduler, make_site):
        assert scheduler.schedule_site(make_site())

        assert scheduler.is_scheduled("site-1")
        assert scheduler.scheduled_site_ids() == ["site-1"]
        assert scheduler.scheduler.get_job("crawl:site-1") is not None

    def test_rescheduling_replaces_trigger(self, scheduler, make_site):
        scheduler.schedule_site(make_site(schedule="0 * * * *"))
        scheduler.schedule_site(make_site(schedule="@every 10m"))

        jobs = scheduler.scheduler.get_jobs()
        assert len(jobs) == 1
        assert isinstance(jobs[0].trigger, IntervalTrigger)

    def test_invalid_schedule_leaves_site_unscheduled(self, scheduler, make_site):
        scheduler.schedule_site(make_site())

        assert not scheduler.schedule_site(make_site(schedule="whenever"))
        assert not scheduler.is_scheduled("site-1")
        assert scheduler.scheduler.get_jobs() == []

    def test_unschedule(self, scheduler, make_site):
        scheduler.schedule_site(make_site())

        assert scheduler.unschedule_site("site-1")
        assert not scheduler.unschedule_site("site-1")
        assert scheduler.scheduled_site_ids() == []

    def test_reload_inactive_site(self, scheduler, site_repo, make_site):
        site = make_site()
        site_repo.create(site)
        scheduler.schedule_site(site)

        site.active = False
        site_repo.update(site)

        assert scheduler.reload_site("site-1") is False
        assert not scheduler.is_scheduled("site-1")

    def test_reload_deleted_site(self, scheduler, make_site):
        scheduler.schedule_site(make_site())

        with pytest.raises(SiteNotFoundError):
            scheduler.reload_site("site-1")
        assert not scheduler.is_scheduled("site-1")

    @pytest.mark.asyncio
    async def test_fire_runs_crawl(self, scheduler, runner):
        await scheduler._run_site("site-1")

        runner.execute.assert_awaited_once()
        assert runner.execute.await_args.args == ("site-1",)
        assert scheduler._in_flight == {}

    @pytest.mark.asyncio
    async def test_fire_failure_is_logged_not_raised(self, scheduler, runner, make_site):
        scheduler.schedule_site(make_site())
        runner.execute.side_effect = RuntimeError("boom")

        await scheduler._run_site("site-1")

        assert scheduler.is_scheduled("site-1")

    @pytest.mark.asyncio
    async def test_start_schedules_active_sites(self, scheduler, site_repo, make_site):
        site_repo.create(make_site(id="a"))
        site_repo.create(make_site(id="b", active=False))
        site_repo.create(make_site(id="c", schedule="bad schedule"))

        await scheduler.start()
        try:
            assert scheduler.running
            assert scheduler.scheduled_site_ids() == ["a"]
        finally:
            await scheduler.stop()

        assert not scheduler.running
        assert scheduler.scheduled_site_ids() == []

    @pytest.mark.asyncio
    async def test_cancel_site_signals_running_crawl(self, scheduler, runner):
        seen = {}

        async def execute(site_id, cancel_event=None, next_crawl_at=None):
            seen["event"] = cancel_event
            assert scheduler.cancel_site(site_id)
            return CrawlResult(cancelled=cancel_event.is_set())

        runner.execute = AsyncMock(side_effect=execute)
        await scheduler._run_site("site-1")

        assert seen["event"].is_set()
        assert not scheduler.cancel_site("site-1")
