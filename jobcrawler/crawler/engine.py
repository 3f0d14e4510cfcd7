"""
Crawl engine: one sequential fetch/extract/persist pass over a single site.
"""
import asyncio
import logging
import uuid
from typing import List, Optional

from ..core.errors import CrawlerError, FetchError
from ..core.models import CrawledJob, CrawlResult, CrawlSite, utcnow
from ..core.net import HTTPClient
from ..core.repositories import JobRepository
from .dedupe import compute_hash, is_duplicate
from .extractor import ExtractionEngine, parse_document
from .paginator import Paginator

logger = logging.getLogger(__name__)


class CrawlCancelled(CrawlerError):
    """Raised internally when a run's cancel event fires."""
    pass


async def run_cancellable(coro, cancel_event: Optional[asyncio.Event]):
    """
    Await ``coro`` unless ``cancel_event`` fires first.

    Raises:
        CrawlCancelled: if the event was set before or while ``coro`` ran
    """
    if cancel_event is None:
        return await coro
    if cancel_event.is_set():
        coro.close()
        raise CrawlCancelled()

    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.debug(f"[engine] Cancelled request finished with error: {e}")
    raise CrawlCancelled()


class CrawlEngine:
    """
    Runs a full crawl pass for one site.

    Pages are processed strictly in order with the site's politeness delay
    before each fetch. Per-page and per-job failures are collected in the
    result; only pagination failures abort the run.
    """

    def __init__(self, job_repo: JobRepository, http_client: Optional[HTTPClient] = None, sleep=asyncio.sleep):
        self.job_repo = job_repo
        self.http_client = http_client or HTTPClient()
        self._sleep = sleep

    async def crawl(self, site: CrawlSite, cancel_event: Optional[asyncio.Event] = None) -> CrawlResult:
        """
        Crawl every page of a site and store new jobs.

        Raises:
            PaginationError: when page URLs cannot be generated
        """
        result = CrawlResult()
        extractor = ExtractionEngine(site.extraction_rules)
        paginator = Paginator(site.pagination_config)

        page_urls: List[str] = paginator.get_page_urls(site.base_url)
        max_pages = site.pagination_config.max_pages if paginator.follows_links else len(page_urls)
        visited = set()

        logger.info(f"[engine] Crawling {site.name} ({site.id}): {len(page_urls)} initial page(s)")

        index = 0
        while index < len(page_urls):
            page_url = page_urls[index]
            index += 1
            if page_url in visited:
                continue
            visited.add(page_url)

            try:
                if site.request_delay > 0:
                    await run_cancellable(self._sleep(site.request_delay), cancel_event)
                elif cancel_event is not None and cancel_event.is_set():
                    raise CrawlCancelled()
                result.pages_crawled += 1
                html = await run_cancellable(
                    self.http_client.fetch_html(
                        page_url,
                        user_agent=site.effective_user_agent,
                        timeout=site.request_timeout,
                    ),
                    cancel_event,
                )
            except CrawlCancelled:
                logger.info(f"[engine] Crawl of {site.name} cancelled after {result.pages_crawled} page(s)")
                result.cancelled = True
                result.errors.append("crawl cancelled")
                break
            except FetchError as e:
                logger.warning(f"[engine] Failed to fetch {page_url}: {e}")
                result.errors.append(f"failed to fetch {page_url}: {e}")
                continue

            try:
                document = parse_document(html)
                jobs = extractor.extract_jobs(document, page_url)
            except Exception as e:
                logger.warning(f"[engine] Failed to extract jobs from {page_url}: {e}")
                result.errors.append(f"failed to extract jobs from {page_url}: {e}")
                continue

            result.jobs_found += len(jobs)
            for job in jobs:
                self.save_job(job, site, result)

            if paginator.follows_links:
                next_url = paginator.get_next_page_url(document, page_url)
                if next_url and next_url not in visited and next_url not in page_urls[index:]:
                    if len(page_urls) >= max_pages:
                        logger.warning(f"[engine] Page cap ({max_pages}) reached for {site.name}, not following {next_url}")
                    else:
                        page_urls.append(next_url)

        logger.info(
            f"[engine] Crawl of {site.name} finished: {result.pages_crawled} pages, "
            f"{result.jobs_found} found, {result.jobs_saved} saved, {result.jobs_skipped} skipped, "
            f"{len(result.errors)} errors"
        )
        return result

    def save_job(self, job: CrawledJob, site: CrawlSite, result: CrawlResult) -> bool:
        """
        Store a job unless an equivalent one already exists.

        Duplicates count as skipped. Persistence failures count as skipped and
        are recorded as errors.
        """
        job.site_id = site.id
        job.deduplication_hash = compute_hash(job, site.deduplication_key)

        try:
            if is_duplicate(job, site.deduplication_key, self.job_repo):
                result.jobs_skipped += 1
                return False

            now = utcnow()
            job.id = str(uuid.uuid4())
            job.created_at = now
            job.updated_at = now
            job.synced = False
            job.synced_at = None
            self.job_repo.create(job)
        except Exception as e:
            logger.error(f"[engine] Failed to save job {job.detail_url}: {e}")
            result.errors.append(f"failed to save job {job.detail_url}: {e}")
            result.jobs_skipped += 1
            return False

        result.jobs_saved += 1
        return True
