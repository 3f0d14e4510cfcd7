"""
Pushes unsynced crawled jobs to the backend jobs API.

Records are sent one at a time in batches; a failure on one record never
stops the rest. A crash between a successful POST and mark_synced can cause
the same job to be submitted again on the next run.
"""
import json
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

import httpx

from .config import DEFAULT_HTTP_TIMEOUT, DEFAULT_SYNC_BATCH_SIZE, DEFAULT_SYNC_INTERVAL_SECONDS
from .errors import SyncError
from .models import CrawledJob, CrawlSite, SyncResult
from .repositories import JobRepository, SiteRepository

logger = logging.getLogger(__name__)

JOBS_ENDPOINT = "/api/v1/token/jobs"

JOB_TYPE_MAP = {
    "full-time": "full_time",
    "fulltime": "full_time",
    "full_time": "full_time",
    "part-time": "part_time",
    "parttime": "part_time",
    "part_time": "part_time",
    "contract": "contract",
    "internship": "internship",
    "freelance": "contract",
}
DEFAULT_JOB_TYPE = "full_time"

LOCATION_TYPE_MAP = {
    "remote": "remote",
    "hybrid": "hybrid",
    "onsite": "onsite",
    "on-site": "onsite",
    "office": "onsite",
}
DEFAULT_LOCATION_TYPE = "remote"

DEFAULT_CURRENCY = "USD"


def normalize_job_type(value: Optional[str]) -> str:
    return JOB_TYPE_MAP.get((value or "").strip().lower(), DEFAULT_JOB_TYPE)


def normalize_location_type(value: Optional[str]) -> str:
    return LOCATION_TYPE_MAP.get((value or "").strip().lower(), DEFAULT_LOCATION_TYPE)


def normalize_currency(value: Optional[str]) -> str:
    """Three-letter codes are kept (uppercased); anything else becomes USD."""
    code = (value or "").strip()
    if len(code) == 3 and code.isalpha():
        return code.upper()
    return DEFAULT_CURRENCY


def format_timestamp(value: datetime) -> str:
    """RFC 3339 in UTC, e.g. 2025-01-31T00:00:00Z"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def build_payload(job: CrawledJob, startup_id: str) -> Dict:
    """
    Map a crawled job onto the backend's job schema.

    Optional fields are only included when set.
    """
    payload = {
        "startup_id": startup_id,
        "title": job.title,
        "description": job.description,
        "requirements": job.requirements,
        "job_type": normalize_job_type(job.job_type),
        "location_type": normalize_location_type(job.location_type),
        "city": job.city,
        "country": job.country,
        "currency": normalize_currency(job.currency),
        "application_url": job.application_url,
    }
    if job.salary_min is not None:
        payload["salary_min"] = job.salary_min
    if job.salary_max is not None:
        payload["salary_max"] = job.salary_max
    if job.application_email:
        payload["application_email"] = job.application_email
    if job.expires_at is not None:
        payload["expires_at"] = format_timestamp(job.expires_at)
    return payload


class SyncService:
    """Batched push of unsynced jobs to the backend"""

    def __init__(
        self,
        backend_url: str,
        api_token: str,
        job_repo: JobRepository,
        site_repo: SiteRepository,
        client: Optional[httpx.AsyncClient] = None,
        batch_size: int = DEFAULT_SYNC_BATCH_SIZE,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        interval_seconds: int = DEFAULT_SYNC_INTERVAL_SECONDS,
    ):
        self.backend_url = backend_url.rstrip("/")
        self.api_token = api_token
        self.job_repo = job_repo
        self.site_repo = site_repo
        self.batch_size = batch_size if batch_size > 0 else DEFAULT_SYNC_BATCH_SIZE
        self.interval_seconds = interval_seconds
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self.running = False

    @property
    def jobs_url(self) -> str:
        return f"{self.backend_url}{JOBS_ENDPOINT}"

    def _get_headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_token}",
        }

    async def sync_jobs(self, limit: Optional[int] = None) -> SyncResult:
        """
        Sync all unsynced jobs (or the oldest ``limit`` of them).

        Concurrent calls run one after another.

        Raises:
            SyncError: if the unsynced jobs cannot be loaded
        """
        async with self._lock:
            try:
                jobs = self.job_repo.find_unsynced(limit or 0)
            except Exception as e:
                raise SyncError(f"failed to fetch unsynced jobs: {e}") from e

            result = SyncResult()
            if not jobs:
                logger.info("[sync] No unsynced jobs")
                return result

            logger.info(f"[sync] Syncing {len(jobs)} job(s) in batches of {self.batch_size}")
            submitted: Set[str] = set()
            sites: Dict[str, CrawlSite] = {}
            total_batches = (len(jobs) + self.batch_size - 1) // self.batch_size

            for batch_no, start in enumerate(range(0, len(jobs), self.batch_size), start=1):
                batch = jobs[start:start + self.batch_size]
                logger.info(f"[sync] Batch {batch_no}/{total_batches} ({len(batch)} jobs)")
                await self._sync_batch(batch, result, submitted, sites)

            logger.info(
                f"[sync] Done: {result.success_count} synced, {result.failure_count} failed"
            )
            return result

    async def _sync_batch(
        self,
        batch: List[CrawledJob],
        result: SyncResult,
        submitted: Set[str],
        sites: Dict[str, CrawlSite],
    ):
        for job in batch:
            if job.id in submitted:
                continue
            submitted.add(job.id)
            try:
                await self.sync_job(job, sites)
            except SyncError as e:
                logger.warning(f"[sync] Job {job.id} failed: {e}")
                result.failure_count += 1
                result.errors.append(f"job {job.id}: {e}")
                continue
            result.success_count += 1

    def _get_site(self, site_id: str, sites: Dict[str, CrawlSite]) -> CrawlSite:
        if site_id not in sites:
            try:
                sites[site_id] = self.site_repo.find_by_id(site_id)
            except Exception as e:
                raise SyncError(f"failed to get site: {e}") from e
        return sites[site_id]

    async def sync_job(self, job: CrawledJob, sites: Optional[Dict[str, CrawlSite]] = None):
        """
        Submit one job and mark it synced on a 2xx response.

        Raises:
            SyncError: on any failure; the job stays unsynced
        """
        site = self._get_site(job.site_id, sites if sites is not None else {})

        try:
            body = json.dumps(build_payload(job, site.backend_startup_id))
        except (TypeError, ValueError) as e:
            raise SyncError(f"failed to marshal job: {e}") from e

        try:
            response = await self._client.post(self.jobs_url, content=body, headers=self._get_headers())
        except httpx.HTTPError as e:
            raise SyncError(f"failed to send request: {e or e.__class__.__name__}") from e

        if not response.is_success:
            raise SyncError(f"backend API error: {response.status_code} - {response.text[:500]}")

        try:
            self.job_repo.mark_synced(job.id)
        except Exception as e:
            raise SyncError(f"failed to mark job as synced: {e}") from e

    def pending_count(self) -> int:
        return self.job_repo.count_unsynced()

    async def run_periodic(self):
        """Background sync loop"""
        logger.info(f"[sync] Periodic sync started (every {self.interval_seconds}s)")
        while self.running:
            await asyncio.sleep(self.interval_seconds)
            if not self.running:
                break
            try:
                await self.sync_jobs()
            except Exception as e:
                logger.error(f"[sync] Periodic sync error: {e}", exc_info=True)
        logger.info("[sync] Periodic sync stopped")

    def start(self):
        if self.running:
            return
        self.running = True
        self._task = asyncio.create_task(self.run_periodic())

    async def stop(self):
        self.running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def aclose(self):
        await self.stop()
        if self._owns_client:
            await self._client.aclose()
