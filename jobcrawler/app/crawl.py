"""
Manual crawl trigger and crawl log endpoints.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from ..core.errors import CrawlerError, SiteNotFoundError
from .services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sites", tags=["crawl"])


@router.post("/{site_id}/crawl")
async def run_crawl(site_id: str, services: Services = Depends(get_services)):
    """
    Crawl a site now and wait for the result.

    The run is recorded as a crawl log like a scheduled one.
    """
    try:
        result = await services.runner.execute(
            site_id,
            next_crawl_at=services.scheduler.next_run_time(site_id),
        )
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except CrawlerError as e:
        logger.error(f"[crawl] Crawl for {site_id} failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    return {"status": "ok", "data": result.model_dump(), "error": None}


@router.get("/{site_id}/logs")
def get_crawl_logs(
    site_id: str,
    limit: int = Query(20, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """Most recent crawl logs for a site, newest first."""
    try:
        services.site_repo.find_by_id(site_id)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    logs = services.runner.get_logs(site_id, limit)
    return {"status": "ok", "data": [log.model_dump(mode="json") for log in logs], "error": None}


@router.get("/{site_id}/logs/latest")
def get_latest_crawl_log(site_id: str, services: Services = Depends(get_services)):
    crawl_log = services.runner.get_latest_log(site_id)
    if crawl_log is None:
        raise HTTPException(status_code=404, detail=f"no crawl logs for site {site_id}")
    return {"status": "ok", "data": crawl_log.model_dump(mode="json"), "error": None}
