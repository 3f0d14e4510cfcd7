"""
Cron-driven crawl scheduling.

Each active site gets one APScheduler job bound to its schedule string. A fire
runs the site's crawl through CrawlRunner, which records the crawl log and
stamps last_crawled_at / next_crawl_at.
"""
import re
import asyncio
import logging
import threading
from datetime import datetime
from typing import Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.base import BaseTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from .core.errors import SiteNotFoundError
from .core.models import CrawlSite
from .core.repositories import SiteRepository
from .crawler.runner import CrawlRunner

logger = logging.getLogger(__name__)

DESCRIPTORS = {
    "@yearly": "0 0 0 1 1 *",
    "@annually": "0 0 0 1 1 *",
    "@monthly": "0 0 0 1 * *",
    "@weekly": "0 0 0 * * sun",
    "@daily": "0 0 0 * * *",
    "@midnight": "0 0 0 * * *",
    "@hourly": "0 0 * * * *",
}

# crontab numbering (0 and 7 are Sunday); APScheduler counts from Monday
WEEKDAY_NAMES = ("sun", "mon", "tue", "wed", "thu", "fri", "sat")

DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
DURATION_UNITS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600}

MISFIRE_GRACE_SECONDS = 60


def parse_duration(value: str) -> float:
    """
    Parse a duration such as ``1h30m`` or ``45s`` into seconds.

    Raises:
        ValueError: for empty, malformed or non-positive durations
    """
    text = value.strip()
    if not text or DURATION_RE.sub("", text):
        raise ValueError(f"invalid duration: {value!r}")
    seconds = sum(float(amount) * DURATION_UNITS[unit] for amount, unit in DURATION_RE.findall(text))
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return seconds


def _day_of_week(expr: str) -> str:
    # step values ("*/2") stay numeric
    return re.sub(r"(?<![/\d])\d+", lambda m: WEEKDAY_NAMES[int(m.group(0)) % 7], expr)


def build_trigger(schedule: str, timezone: str = "UTC") -> BaseTrigger:
    """
    Build an APScheduler trigger from a site schedule string.

    Accepts 5-field crontab, 6-field crontab with leading seconds, the
    ``@daily`` style descriptors and ``@every <duration>``.

    Raises:
        ValueError: if the schedule cannot be parsed
    """
    text = (schedule or "").strip()
    if not text:
        raise ValueError("empty schedule")

    if text.startswith("@every"):
        return IntervalTrigger(seconds=parse_duration(text[len("@every"):]), timezone=timezone)

    text = DESCRIPTORS.get(text.lower(), text)
    if text.startswith("@"):
        raise ValueError(f"unknown schedule descriptor: {schedule!r}")

    fields = text.replace("?", "*").split()
    if len(fields) == 5:
        fields = ["0"] + fields
    if len(fields) != 6:
        raise ValueError(f"expected 5 or 6 cron fields, got {len(fields)}: {schedule!r}")

    second, minute, hour, day, month, day_of_week = fields
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=_day_of_week(day_of_week),
        timezone=timezone,
    )


class CrawlScheduler:
    """Keeps one live cron trigger per active site"""

    def __init__(
        self,
        runner: CrawlRunner,
        site_repo: SiteRepository,
        timezone: str = "UTC",
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.runner = runner
        self.site_repo = site_repo
        self.timezone = timezone
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone)
        self.running = False
        self._entries: Dict[str, str] = {}
        self._in_flight: Dict[str, asyncio.Event] = {}
        self._lock = threading.RLock()

    async def start(self):
        """Schedule every active site and start firing triggers"""
        sites = self.site_repo.find_active()
        scheduled = sum(1 for site in sites if self.schedule_site(site))
        self.scheduler.start()
        self.running = True
        logger.info(f"[scheduler] Started with {scheduled}/{len(sites)} active site(s) scheduled")

    async def stop(self):
        """Stop firing triggers and ask in-flight crawls to cancel"""
        self.running = False
        for site_id, cancel_event in list(self._in_flight.items()):
            logger.info(f"[scheduler] Cancelling in-flight crawl for {site_id}")
            cancel_event.set()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        with self._lock:
            self._entries.clear()
        logger.info("[scheduler] Stopped")

    def schedule_site(self, site: CrawlSite) -> bool:
        """
        Install (or replace) the trigger for a site.

        Returns:
            False when the schedule string is invalid; the site is left
            unscheduled in that case.
        """
        with self._lock:
            self._remove_entry(site.id)
            try:
                trigger = build_trigger(site.schedule, self.timezone)
            except ValueError as e:
                logger.error(f"[scheduler] Invalid schedule {site.schedule!r} for {site.name} ({site.id}): {e}")
                return False

            job = self.scheduler.add_job(
                self._run_site,
                trigger=trigger,
                args=[site.id],
                id=f"crawl:{site.id}",
                name=site.name,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=MISFIRE_GRACE_SECONDS,
                replace_existing=True,
            )
            self._entries[site.id] = job.id

        logger.info(f"[scheduler] Scheduled {site.name} ({site.id}) with schedule {site.schedule!r}")
        return True

    def unschedule_site(self, site_id: str) -> bool:
        with self._lock:
            removed = self._remove_entry(site_id)
        if removed:
            logger.info(f"[scheduler] Unscheduled site {site_id}")
        return removed

    def reload_site(self, site_id: str) -> bool:
        """
        Re-read a site and schedule or unschedule it by its active flag.

        Raises:
            SiteNotFoundError: if the site no longer exists (it is unscheduled)
        """
        try:
            site = self.site_repo.find_by_id(site_id)
        except SiteNotFoundError:
            self.unschedule_site(site_id)
            raise

        if not site.active:
            self.unschedule_site(site_id)
            return False
        return self.schedule_site(site)

    def is_scheduled(self, site_id: str) -> bool:
        with self._lock:
            return site_id in self._entries

    def scheduled_site_ids(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def next_run_time(self, site_id: str) -> Optional[datetime]:
        with self._lock:
            job_id = self._entries.get(site_id)
        if job_id is None:
            return None
        job = self.scheduler.get_job(job_id)
        return getattr(job, "next_run_time", None) if job else None

    def cancel_site(self, site_id: str) -> bool:
        """Signal a running crawl for the site to stop"""
        cancel_event = self._in_flight.get(site_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        return True

    def _remove_entry(self, site_id: str) -> bool:
        job_id = self._entries.pop(site_id, None)
        if job_id is None:
            return False
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug(f"[scheduler] Job {job_id} already gone")
        return True

    async def _run_site(self, site_id: str):
        cancel_event = asyncio.Event()
        self._in_flight[site_id] = cancel_event
        try:
            result = await self.runner.execute(
                site_id,
                cancel_event=cancel_event,
                next_crawl_at=self.next_run_time(site_id),
            )
            logger.info(
                f"[scheduler] Crawl for {site_id} done: {result.jobs_saved} saved, "
                f"{result.jobs_skipped} skipped, {len(result.errors)} errors"
            )
        except Exception as e:
            logger.error(f"[scheduler] Error crawling site {site_id}: {e}", exc_info=True)
        finally:
            self._in_flight.pop(site_id, None)
