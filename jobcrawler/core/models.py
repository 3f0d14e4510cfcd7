"""
Entities and configuration types for the crawler.

Pagination and extraction configs are stored as JSONB documents; the models
here are the parse/serialize path for them (``model_validate`` /
``model_dump(mode="json")``) and must round-trip losslessly.
"""
import re
import logging
from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import DEFAULT_USER_AGENT
from .errors import CrawlLogStateError, InvalidSiteError

logger = logging.getLogger(__name__)

DEDUP_URL = "url"
DEDUP_COMPOSITE = "composite"
DEDUP_EXTERNAL_ID = "external_id"
DEDUP_STRATEGIES = (DEDUP_URL, DEDUP_COMPOSITE, DEDUP_EXTERNAL_ID)

CRAWL_INTERVALS = ("daily", "weekly", "custom")

TRANSFORMATIONS = (
    "trim", "lowercase", "uppercase", "strip_html", "remove_commas",
    # type markers, consumed by field parsing rather than string transforms
    "parse_int", "parse_date",
)

DEFAULT_MAX_PAGES = 100
DEFAULT_REQUEST_DELAY = 2
DEFAULT_REQUEST_TIMEOUT = 30.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Pagination config (tagged union on "type")
# ---------------------------------------------------------------------------

class _PageProgression(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    start_page: int = Field(default=1, ge=1)
    increment: int = Field(default=1, ge=1)
    max_pages: int = Field(default=DEFAULT_MAX_PAGES, ge=1)

    # stored configs use 0 for "not set"
    @field_validator("start_page", "increment", "max_pages", mode="before")
    @classmethod
    def _unset_to_default(cls, value, info):
        if value is None or value == 0:
            return cls.model_fields[info.field_name].default
        return value

    def page_numbers(self) -> List[int]:
        return [self.start_page + i * self.increment for i in range(self.max_pages)]


class QueryParamPagination(_PageProgression):
    type: Literal["query_param"] = "query_param"
    param_name: str = "page"

    @field_validator("param_name", mode="before")
    @classmethod
    def _default_param(cls, value):
        return value or "page"


class URLPatternPagination(_PageProgression):
    type: Literal["url_pattern"] = "url_pattern"
    url_pattern: str

    @field_validator("url_pattern")
    @classmethod
    def _has_placeholder(cls, value: str) -> str:
        if "{page}" not in value:
            raise ValueError("url_pattern must contain a {page} placeholder")
        return value


class LinkFollowPagination(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["link_follow"] = "link_follow"
    next_page_selector: str = Field(min_length=1)
    # upper bound on pages discovered by following "next" links
    max_pages: int = Field(default=DEFAULT_MAX_PAGES, ge=1)

    @field_validator("max_pages", mode="before")
    @classmethod
    def _unset_to_default(cls, value):
        return DEFAULT_MAX_PAGES if value is None or value == 0 else value


class APIPaginationConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    endpoint: str = Field(min_length=1)
    page_param: str = "page"
    page_size: Optional[int] = Field(default=None, ge=1)
    max_pages: int = Field(default=DEFAULT_MAX_PAGES, ge=1)

    @field_validator("page_param", mode="before")
    @classmethod
    def _default_param(cls, value):
        return value or "page"

    @field_validator("page_size", mode="before")
    @classmethod
    def _zero_size_is_unset(cls, value):
        return None if not value else value

    @field_validator("max_pages", mode="before")
    @classmethod
    def _unset_to_default(cls, value):
        return DEFAULT_MAX_PAGES if value is None or value == 0 else value


class APIPagination(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["api_pagination"] = "api_pagination"
    start_page: int = Field(default=1, ge=1)
    increment: int = Field(default=1, ge=1)
    api_config: APIPaginationConfig

    @field_validator("start_page", "increment", mode="before")
    @classmethod
    def _unset_to_default(cls, value):
        return 1 if value is None or value == 0 else value

    def page_numbers(self) -> List[int]:
        return [self.start_page + i * self.increment for i in range(self.api_config.max_pages)]


class SinglePagePagination(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["single"] = "single"


PaginationConfig = Annotated[
    Union[
        QueryParamPagination,
        URLPatternPagination,
        LinkFollowPagination,
        APIPagination,
        SinglePagePagination,
    ],
    Field(discriminator="type"),
]

PAGINATION_TYPES = ("query_param", "url_pattern", "link_follow", "api_pagination", "single")


def _coerce_pagination(value):
    """Missing or unknown pagination types degrade to a single-page crawl."""
    if isinstance(value, BaseModel):
        return value
    if not isinstance(value, dict) or value.get("type") not in PAGINATION_TYPES:
        kind = value.get("type") if isinstance(value, dict) else None
        logger.warning(f"[models] Unknown pagination type {kind!r}, falling back to single page")
        return {"type": "single"}
    return value


class _PaginationHolder(BaseModel):
    config: PaginationConfig

    @field_validator("config", mode="before")
    @classmethod
    def _coerce(cls, value):
        return _coerce_pagination(value)


def parse_pagination_config(data) -> PaginationConfig:
    """Parse a stored pagination document into its typed variant."""
    return _PaginationHolder(config=data).config


# ---------------------------------------------------------------------------
# Extraction rules
# ---------------------------------------------------------------------------

class JobURLRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    type: Literal["relative", "absolute", "attribute"] = "relative"
    selector: str = Field(min_length=1)
    attribute: str = "href"
    base_url: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value):
        return value or "relative"

    @field_validator("attribute", mode="before")
    @classmethod
    def _default_attribute(cls, value):
        return value or "href"

    @field_validator("base_url", mode="before")
    @classmethod
    def _empty_base(cls, value):
        return value or None


class FieldRule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    selector: str = Field(min_length=1)
    type: Literal["text", "html", "attribute", "regex"] = "text"
    attribute: Optional[str] = None
    regex_pattern: Optional[str] = None
    required: bool = False
    default_value: str = ""
    transformations: List[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def _default_type(cls, value):
        return value or "text"

    @field_validator("default_value", mode="before")
    @classmethod
    def _none_default(cls, value):
        return "" if value is None else value

    @field_validator("transformations", mode="before")
    @classmethod
    def _none_transformations(cls, value):
        return [] if value is None else value

    @field_validator("transformations")
    @classmethod
    def _known_transformations(cls, value: List[str]) -> List[str]:
        unknown = [t for t in value if t not in TRANSFORMATIONS]
        if unknown:
            raise ValueError(f"unknown transformations: {', '.join(unknown)}")
        return value

    @model_validator(mode="after")
    def _check_type_fields(self):
        if self.type == "attribute" and not self.attribute:
            raise ValueError("attribute rules need an attribute name")
        if self.type == "regex":
            if not self.regex_pattern:
                raise ValueError("regex rules need a regex_pattern")
            try:
                re.compile(self.regex_pattern)
            except re.error as e:
                raise ValueError(f"invalid regex_pattern: {e}")
        return self


class ExtractionRules(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    job_list_selector: str = Field(min_length=1)
    job_detail_url: JobURLRule
    external_id: Optional[FieldRule] = None
    fields: Dict[str, FieldRule] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class CrawlSite(BaseModel):
    """A configured crawl target."""

    id: str = ""
    name: str = ""
    base_url: str = ""
    backend_startup_id: str = ""
    active: bool = True
    schedule: str = ""
    crawl_interval: str = "custom"
    last_crawled_at: Optional[datetime] = None
    next_crawl_at: Optional[datetime] = None
    pagination_config: PaginationConfig = Field(default_factory=SinglePagePagination)
    extraction_rules: ExtractionRules
    deduplication_key: str = DEDUP_URL
    request_delay: int = Field(default=0, ge=0)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)
    user_agent: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("pagination_config", mode="before")
    @classmethod
    def _coerce_pagination(cls, value):
        return _coerce_pagination(value)

    @field_validator("deduplication_key", mode="before")
    @classmethod
    def _default_dedup(cls, value):
        return value or DEDUP_URL

    @field_validator("request_delay", mode="before")
    @classmethod
    def _none_delay(cls, value):
        return 0 if value is None else value

    @field_validator("user_agent", mode="before")
    @classmethod
    def _none_user_agent(cls, value):
        return value or ""

    @property
    def effective_user_agent(self) -> str:
        return self.user_agent or DEFAULT_USER_AGENT

    def ensure_valid(self):
        """Raise InvalidSiteError when required settings are missing."""
        if not self.name.strip():
            raise InvalidSiteError("site name is required")
        if not self.base_url.strip():
            raise InvalidSiteError("base URL is required")
        if not self.schedule.strip():
            raise InvalidSiteError("schedule is required")
        if not self.deduplication_key:
            self.deduplication_key = DEDUP_URL
        if self.deduplication_key not in DEDUP_STRATEGIES:
            raise InvalidSiteError(f"unknown deduplication key: {self.deduplication_key}")
        if self.crawl_interval not in CRAWL_INTERVALS:
            raise InvalidSiteError(f"crawl interval must be one of {', '.join(CRAWL_INTERVALS)}")


class CrawledJob(BaseModel):
    """One harvested job listing."""

    id: str = ""
    site_id: str = ""
    external_id: str = ""
    detail_url: str = ""
    title: str = ""
    description: str = ""
    requirements: str = ""
    company: str = ""
    location: str = ""
    city: str = ""
    country: str = ""
    job_type: str = ""
    location_type: str = ""
    salary_min: Optional[int] = None
    salary_max: Optional[int] = None
    currency: str = ""
    application_url: Optional[str] = None
    application_email: Optional[str] = None
    expires_at: Optional[datetime] = None
    raw_html: str = ""
    deduplication_hash: str = ""
    synced: bool = False
    synced_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LogEntry(BaseModel):
    timestamp: datetime
    level: Literal["info", "warning", "error"]
    message: str


class CrawlLog(BaseModel):
    """Append-only record of a single crawl run."""

    id: str = ""
    site_id: str = ""
    status: Literal["running", "completed", "failed"] = "running"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration_ms: int = 0
    jobs_found: int = 0
    jobs_saved: int = 0
    jobs_skipped: int = 0
    pages_crawled: int = 0
    errors: List[str] = Field(default_factory=list)
    logs: List[LogEntry] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "failed")

    def add_log(self, level: str, message: str):
        self.logs.append(LogEntry(timestamp=utcnow(), level=level, message=message))

    def add_error(self, err):
        if err is None:
            return
        message = str(err)
        self.errors.append(message)
        self.add_log("error", message)

    def _finalize(self, status: str):
        if self.is_terminal:
            raise CrawlLogStateError(f"crawl log {self.id} already {self.status}")
        now = utcnow()
        if now < self.started_at:
            now = self.started_at
        self.completed_at = now
        self.status = status
        self.duration_ms = int((now - self.started_at).total_seconds() * 1000)

    def complete(self):
        """Mark the run completed."""
        self._finalize("completed")

    def fail(self, err=None):
        """Mark the run failed, recording the error that aborted it."""
        self._finalize("failed")
        self.add_error(err)


class CrawlResult(BaseModel):
    jobs_found: int = 0
    jobs_saved: int = 0
    jobs_skipped: int = 0
    pages_crawled: int = 0
    errors: List[str] = Field(default_factory=list)
    cancelled: bool = False


class SyncResult(BaseModel):
    success_count: int = 0
    failure_count: int = 0
    errors: List[str] = Field(default_factory=list)
