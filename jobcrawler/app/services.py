"""
Wiring of repositories, crawler components and background services.
"""
import logging
from typing import Optional

import httpx
from fastapi import HTTPException, Request

from ..core.config import Settings
from ..core.net import HTTPClient
from ..core.postgres import (
    PostgresCrawlLogRepository,
    PostgresJobRepository,
    PostgresSiteRepository,
    ensure_schema,
)
from ..core.repositories import CrawlLogRepository, JobRepository, SiteRepository
from ..core.sync_service import SyncService
from ..crawler.engine import CrawlEngine
from ..crawler.runner import CrawlRunner
from ..orchestrator import CrawlScheduler

logger = logging.getLogger(__name__)


class Services:
    """Everything the HTTP layer and background loops share"""

    def __init__(
        self,
        settings: Settings,
        site_repo: SiteRepository,
        job_repo: JobRepository,
        crawl_log_repo: CrawlLogRepository,
        http_client: Optional[HTTPClient] = None,
        sync_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.site_repo = site_repo
        self.job_repo = job_repo
        self.crawl_log_repo = crawl_log_repo
        self.http_client = http_client or HTTPClient(
            user_agent=settings.user_agent,
            timeout=settings.http_timeout,
        )
        self.engine = CrawlEngine(job_repo, self.http_client)
        self.runner = CrawlRunner(self.engine, site_repo, crawl_log_repo)
        self.scheduler = CrawlScheduler(self.runner, site_repo)
        self.sync_service = SyncService(
            backend_url=settings.backend_url,
            api_token=settings.backend_token,
            job_repo=job_repo,
            site_repo=site_repo,
            client=sync_client,
            batch_size=settings.sync_batch_size,
            timeout=settings.http_timeout,
            interval_seconds=settings.sync_interval_seconds,
        )

    async def start(self):
        if self.settings.scheduler_disabled:
            logger.info("[services] Scheduler disabled by CRAWLER_DISABLE_SCHEDULER")
            return
        # sync runs on its own cadence even if scheduling fails
        self.sync_service.start()
        await self.scheduler.start()

    async def stop(self):
        if self.scheduler.running:
            await self.scheduler.stop()
        await self.sync_service.aclose()
        await self.http_client.aclose()


def build_services(settings: Settings) -> Services:
    """PostgreSQL-backed services for the running application"""
    ensure_schema(settings.database_url)
    return Services(
        settings=settings,
        site_repo=PostgresSiteRepository(settings.database_url),
        job_repo=PostgresJobRepository(settings.database_url),
        crawl_log_repo=PostgresCrawlLogRepository(settings.database_url),
    )


def get_services(request: Request) -> Services:
    """FastAPI dependency returning the app's Services"""
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return services
