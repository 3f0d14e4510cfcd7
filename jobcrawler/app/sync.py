"""
Backend sync endpoints.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from ..core.errors import SyncError
from .services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sync", tags=["sync"])


@router.post("")
async def trigger_sync(
    limit: Optional[int] = Query(None, ge=1),
    services: Services = Depends(get_services),
):
    """Push unsynced jobs to the backend now."""
    try:
        result = await services.sync_service.sync_jobs(limit)
    except SyncError as e:
        logger.error(f"[sync] Manual sync failed: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", "data": result.model_dump(), "error": None}


@router.get("/status")
def sync_status(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "data": {"unsynced": services.sync_service.pending_count()},
        "error": None,
    }
