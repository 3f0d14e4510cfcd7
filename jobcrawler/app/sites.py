"""
Crawl site management endpoints.
"""
import uuid
import logging
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..core.config import DEFAULT_USER_AGENT
from ..core.errors import InvalidSiteError, SiteNotFoundError
from ..core.models import DEFAULT_REQUEST_DELAY, CrawlSite, utcnow
from ..orchestrator import build_trigger
from .services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/sites", tags=["sites"])


class SiteCreate(BaseModel):
    name: str = Field(min_length=3, max_length=100)
    base_url: str
    backend_startup_id: str
    schedule: str
    crawl_interval: Literal["daily", "weekly", "custom"] = "custom"
    pagination_config: Optional[Dict[str, Any]] = None
    extraction_rules: Dict[str, Any]
    deduplication_key: Optional[Literal["url", "composite", "external_id"]] = None
    request_delay: Optional[int] = Field(default=None, ge=0, le=60)
    request_timeout: Optional[float] = Field(default=None, gt=0)
    user_agent: Optional[str] = None
    active: bool = True


class SiteUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=100)
    base_url: Optional[str] = None
    backend_startup_id: Optional[str] = None
    schedule: Optional[str] = None
    crawl_interval: Optional[Literal["daily", "weekly", "custom"]] = None
    pagination_config: Optional[Dict[str, Any]] = None
    extraction_rules: Optional[Dict[str, Any]] = None
    deduplication_key: Optional[Literal["url", "composite", "external_id"]] = None
    request_delay: Optional[int] = Field(default=None, ge=0, le=60)
    request_timeout: Optional[float] = Field(default=None, gt=0)
    user_agent: Optional[str] = None
    active: Optional[bool] = None


def _ok(data):
    return {"status": "ok", "data": data, "error": None}


def _validated_site(data: Dict[str, Any]) -> CrawlSite:
    try:
        site = CrawlSite.model_validate(data)
        site.ensure_valid()
    except (InvalidSiteError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    try:
        build_trigger(site.schedule)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"invalid schedule: {e}")
    return site


def _refresh_schedule(services: Services, site: CrawlSite):
    if not services.scheduler.running:
        return
    if site.active:
        services.scheduler.schedule_site(site)
    else:
        services.scheduler.unschedule_site(site.id)


@router.get("")
def list_sites(services: Services = Depends(get_services)):
    """List all crawl sites."""
    sites = services.site_repo.find_all()
    return _ok([site.model_dump(mode="json") for site in sites])


@router.post("", status_code=201)
def create_site(payload: SiteCreate, services: Services = Depends(get_services)):
    """Create a crawl site and schedule it when active."""
    data = payload.model_dump()
    now = utcnow()
    data.update(
        id=str(uuid.uuid4()),
        request_delay=DEFAULT_REQUEST_DELAY if payload.request_delay is None else payload.request_delay,
        user_agent=payload.user_agent or DEFAULT_USER_AGENT,
        created_at=now,
        updated_at=now,
    )
    for optional in ("request_timeout", "pagination_config"):
        if data[optional] is None:
            data.pop(optional)

    site = _validated_site(data)
    services.site_repo.create(site)
    _refresh_schedule(services, site)

    logger.info(f"[sites] Created site {site.id} ({site.name})")
    return _ok(site.model_dump(mode="json"))


@router.get("/{site_id}")
def get_site(site_id: str, services: Services = Depends(get_services)):
    try:
        site = services.site_repo.find_by_id(site_id)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return _ok(site.model_dump(mode="json"))


@router.put("/{site_id}")
def update_site(site_id: str, payload: SiteUpdate, services: Services = Depends(get_services)):
    """Apply a partial update and reload the site's schedule."""
    try:
        existing = services.site_repo.find_by_id(site_id)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    data = existing.model_dump()
    data.update(payload.model_dump(exclude_unset=True))
    data.update(id=existing.id, created_at=existing.created_at, updated_at=utcnow())

    site = _validated_site(data)
    try:
        services.site_repo.update(site)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _refresh_schedule(services, site)

    logger.info(f"[sites] Updated site {site.id}")
    return _ok(site.model_dump(mode="json"))


@router.delete("/{site_id}")
def delete_site(site_id: str, services: Services = Depends(get_services)):
    try:
        services.site_repo.delete(site_id)
    except SiteNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    services.scheduler.unschedule_site(site_id)

    logger.info(f"[sites] Deleted site {site_id}")
    return _ok({"id": site_id})
