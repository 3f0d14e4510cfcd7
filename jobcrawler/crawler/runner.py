"""
Executes a crawl for a site and records it as a CrawlLog.
"""
import asyncio
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from ..core.models import CrawlLog, CrawlResult, CrawlSite, utcnow
from ..core.repositories import CrawlLogRepository, SiteRepository
from .engine import CrawlEngine

logger = logging.getLogger(__name__)


class CrawlRunner:
    """Runs the engine for one site and keeps the crawl log in step with it"""

    def __init__(self, engine: CrawlEngine, site_repo: SiteRepository, crawl_log_repo: CrawlLogRepository):
        self.engine = engine
        self.site_repo = site_repo
        self.crawl_log_repo = crawl_log_repo

    async def execute(
        self,
        site_id: str,
        cancel_event: Optional[asyncio.Event] = None,
        next_crawl_at: Optional[datetime] = None,
    ) -> CrawlResult:
        """
        Crawl a site by id.

        Raises:
            SiteNotFoundError: if the site does not exist
            PaginationError: if the run aborted (recorded as a failed log)
        """
        site = self.site_repo.find_by_id(site_id)
        return await self.execute_site(site, cancel_event=cancel_event, next_crawl_at=next_crawl_at)

    async def execute_site(
        self,
        site: CrawlSite,
        cancel_event: Optional[asyncio.Event] = None,
        next_crawl_at: Optional[datetime] = None,
    ) -> CrawlResult:
        crawl_log = CrawlLog(id=str(uuid.uuid4()), site_id=site.id, started_at=utcnow())
        crawl_log.add_log("info", f"Starting crawl for site: {site.name}")
        crawl_log.add_log("info", f"Base URL: {site.base_url}")

        try:
            self.crawl_log_repo.create(crawl_log)
        except Exception as e:
            logger.warning(f"[runner] Failed to create crawl log for {site.id}: {e}")
            crawl_log.add_log("warning", f"Failed to create crawl log: {e}")

        crawl_log.add_log("info", "Fetching pages...")
        try:
            result = await self.engine.crawl(site, cancel_event=cancel_event)
        except Exception as e:
            logger.error(f"[runner] Crawl of {site.name} aborted: {e}")
            crawl_log.fail(e)
            self._save_log(crawl_log)
            raise

        crawl_log.jobs_found = result.jobs_found
        crawl_log.jobs_saved = result.jobs_saved
        crawl_log.jobs_skipped = result.jobs_skipped
        crawl_log.pages_crawled = result.pages_crawled
        for error in result.errors:
            crawl_log.add_error(error)

        summary = (
            f"{result.jobs_found} jobs found, {result.jobs_saved} saved, "
            f"{result.jobs_skipped} skipped"
        )
        if result.cancelled:
            crawl_log.fail()
            crawl_log.add_log("warning", f"Crawl cancelled: {summary}")
            self._save_log(crawl_log)
            return result

        crawl_log.complete()
        crawl_log.add_log("info", f"Crawl completed: {summary}")
        self._save_log(crawl_log)

        try:
            self.site_repo.update_last_crawled_at(site.id, next_crawl_at)
        except Exception as e:
            logger.error(f"[runner] Failed to update last_crawled_at for {site.id}: {e}")

        return result

    def _save_log(self, crawl_log: CrawlLog):
        try:
            self.crawl_log_repo.update(crawl_log)
        except Exception as e:
            logger.error(f"[runner] Failed to update crawl log {crawl_log.id}: {e}")

    def get_logs(self, site_id: str, limit: int = 20) -> List[CrawlLog]:
        return self.crawl_log_repo.find_by_site(site_id, limit)

    def get_latest_log(self, site_id: str) -> Optional[CrawlLog]:
        return self.crawl_log_repo.find_latest_by_site(site_id)
