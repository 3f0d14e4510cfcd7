"""
Deduplication strategies for crawled jobs.
"""
import logging

from ..core.models import DEDUP_COMPOSITE, DEDUP_EXTERNAL_ID, DEDUP_URL, CrawledJob
from ..core.repositories import JobRepository

logger = logging.getLogger(__name__)

COMPOSITE_DELIMITER = "|"


def composite_key(*fields: str) -> str:
    """Order- and case-sensitive join of the given fields."""
    return "".join(f"{field}{COMPOSITE_DELIMITER}" for field in fields)


def compute_hash(job: CrawledJob, strategy: str) -> str:
    """Deduplication hash for a job under the configured strategy."""
    if strategy == DEDUP_COMPOSITE:
        return composite_key(job.title, job.company, job.location)
    if strategy == DEDUP_EXTERNAL_ID:
        return job.external_id
    return job.detail_url


def is_duplicate(job: CrawledJob, strategy: str, job_repo: JobRepository) -> bool:
    """
    Check whether an equivalent job is already stored.

    The external_id strategy falls back to a detail URL check for jobs
    without an external id.
    """
    if strategy == DEDUP_COMPOSITE:
        return job_repo.exists_by_hash(job.deduplication_hash)
    if strategy == DEDUP_EXTERNAL_ID and job.external_id:
        return job_repo.exists_by_external_id(job.external_id)
    if strategy not in (DEDUP_URL, DEDUP_COMPOSITE, DEDUP_EXTERNAL_ID):
        logger.debug(f"[dedupe] Unknown strategy {strategy!r}, using url")
    return job_repo.exists_by_url(job.detail_url)
