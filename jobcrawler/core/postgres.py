"""
PostgreSQL repositories (psycopg2).

Sites and jobs are soft-deleted through ``deleted_at``; the crawler core never
deletes jobs.
"""
import logging
from typing import Dict, List, Optional

import psycopg2
from psycopg2.extras import Json, RealDictCursor
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import JobNotFoundError, SiteNotFoundError
from .models import CrawledJob, CrawlLog, CrawlSite
from .repositories import CrawlLogRepository, JobRepository, SiteRepository

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10
CONNECT_RETRIES = 3

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS crawl_sites (
    id UUID PRIMARY KEY,
    name VARCHAR(255) NOT NULL,
    base_url TEXT NOT NULL,
    backend_startup_id TEXT NOT NULL DEFAULT '',
    active BOOLEAN NOT NULL DEFAULT TRUE,
    schedule VARCHAR(100) NOT NULL,
    crawl_interval VARCHAR(50) NOT NULL DEFAULT 'custom',
    last_crawled_at TIMESTAMPTZ,
    next_crawl_at TIMESTAMPTZ,
    pagination_config JSONB NOT NULL DEFAULT '{}'::jsonb,
    extraction_rules JSONB NOT NULL,
    deduplication_key VARCHAR(50) NOT NULL DEFAULT 'url',
    request_delay INTEGER NOT NULL DEFAULT 2,
    request_timeout DOUBLE PRECISION NOT NULL DEFAULT 30,
    user_agent TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS crawled_jobs (
    id UUID PRIMARY KEY,
    site_id UUID NOT NULL,
    external_id VARCHAR(255) NOT NULL DEFAULT '',
    detail_url TEXT NOT NULL,
    title VARCHAR(500) NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    requirements TEXT NOT NULL DEFAULT '',
    company VARCHAR(255) NOT NULL DEFAULT '',
    location VARCHAR(255) NOT NULL DEFAULT '',
    city VARCHAR(100) NOT NULL DEFAULT '',
    country VARCHAR(100) NOT NULL DEFAULT '',
    job_type VARCHAR(50) NOT NULL DEFAULT '',
    location_type VARCHAR(50) NOT NULL DEFAULT '',
    salary_min INTEGER,
    salary_max INTEGER,
    currency VARCHAR(10) NOT NULL DEFAULT '',
    application_url TEXT,
    application_email VARCHAR(255),
    expires_at TIMESTAMPTZ,
    raw_html TEXT NOT NULL DEFAULT '',
    deduplication_hash TEXT NOT NULL DEFAULT '',
    synced BOOLEAN NOT NULL DEFAULT FALSE,
    synced_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    deleted_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_crawled_jobs_site_id ON crawled_jobs (site_id);
CREATE INDEX IF NOT EXISTS idx_crawled_jobs_detail_url ON crawled_jobs (detail_url);
CREATE INDEX IF NOT EXISTS idx_crawled_jobs_hash ON crawled_jobs (deduplication_hash);
CREATE INDEX IF NOT EXISTS idx_crawled_jobs_external_id ON crawled_jobs (external_id);
CREATE INDEX IF NOT EXISTS idx_crawled_jobs_synced ON crawled_jobs (synced);

CREATE TABLE IF NOT EXISTS crawl_logs (
    id UUID PRIMARY KEY,
    site_id UUID NOT NULL,
    status VARCHAR(50) NOT NULL DEFAULT 'running',
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    duration_ms INTEGER NOT NULL DEFAULT 0,
    jobs_found INTEGER NOT NULL DEFAULT 0,
    jobs_saved INTEGER NOT NULL DEFAULT 0,
    jobs_skipped INTEGER NOT NULL DEFAULT 0,
    pages_crawled INTEGER NOT NULL DEFAULT 0,
    errors JSONB NOT NULL DEFAULT '[]'::jsonb,
    logs JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_crawl_logs_site_id ON crawl_logs (site_id);
CREATE INDEX IF NOT EXISTS idx_crawl_logs_started_at ON crawl_logs (started_at);
"""

SITE_COLUMNS = (
    "id, name, base_url, backend_startup_id, active, schedule, crawl_interval, "
    "last_crawled_at, next_crawl_at, pagination_config, extraction_rules, "
    "deduplication_key, request_delay, request_timeout, user_agent, created_at, updated_at"
)

JOB_FIELDS = (
    "id", "site_id", "external_id", "detail_url", "title", "description", "requirements",
    "company", "location", "city", "country", "job_type", "location_type", "salary_min",
    "salary_max", "currency", "application_url", "application_email", "expires_at",
    "raw_html", "deduplication_hash", "synced", "synced_at", "created_at", "updated_at",
)

LOG_COLUMNS = (
    "id, site_id, status, started_at, completed_at, duration_ms, jobs_found, jobs_saved, "
    "jobs_skipped, pages_crawled, errors, logs, created_at"
)


class PostgresRepository:
    """Shared connection handling for the repositories."""

    def __init__(self, db_url: str):
        self.db_url = db_url

    @retry(
        stop=stop_after_attempt(CONNECT_RETRIES),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type(psycopg2.OperationalError),
        reraise=True,
    )
    def _get_db_conn(self):
        """Get database connection, retrying transient connection failures"""
        try:
            return psycopg2.connect(self.db_url, connect_timeout=CONNECT_TIMEOUT)
        except psycopg2.OperationalError as e:
            logger.warning(f"[postgres] Connection attempt failed: {e}")
            raise

    def _execute(self, query: str, params=None) -> int:
        conn = self._get_db_conn()
        try:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rowcount = cur.rowcount
            conn.commit()
            return rowcount
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _fetch_all(self, query: str, params=None) -> List[Dict]:
        conn = self._get_db_conn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return [dict(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def _fetch_one(self, query: str, params=None) -> Optional[Dict]:
        rows = self._fetch_all(query, params)
        return rows[0] if rows else None


def ensure_schema(db_url: str):
    """Create crawler tables and indexes if they do not exist."""
    PostgresRepository(db_url)._execute(SCHEMA_SQL)
    logger.info("[postgres] Schema ensured")


class PostgresSiteRepository(PostgresRepository, SiteRepository):

    def _params(self, site: CrawlSite) -> tuple:
        return (
            site.name,
            site.base_url,
            site.backend_startup_id,
            site.active,
            site.schedule,
            site.crawl_interval,
            site.last_crawled_at,
            site.next_crawl_at,
            Json(site.pagination_config.model_dump(mode="json")),
            Json(site.extraction_rules.model_dump(mode="json")),
            site.deduplication_key,
            site.request_delay,
            site.request_timeout,
            site.user_agent,
        )

    def create(self, site: CrawlSite) -> None:
        self._execute(f"""
            INSERT INTO crawl_sites ({SITE_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                    COALESCE(%s, NOW()), COALESCE(%s, NOW()))
        """, (site.id,) + self._params(site) + (site.created_at, site.updated_at))

    def update(self, site: CrawlSite) -> None:
        rowcount = self._execute("""
            UPDATE crawl_sites SET
                name = %s, base_url = %s, backend_startup_id = %s, active = %s,
                schedule = %s, crawl_interval = %s, last_crawled_at = %s, next_crawl_at = %s,
                pagination_config = %s, extraction_rules = %s, deduplication_key = %s,
                request_delay = %s, request_timeout = %s, user_agent = %s,
                updated_at = NOW()
            WHERE id::text = %s AND deleted_at IS NULL
        """, self._params(site) + (site.id,))
        if rowcount == 0:
            raise SiteNotFoundError(site.id)

    def delete(self, site_id: str) -> None:
        rowcount = self._execute("""
            UPDATE crawl_sites SET deleted_at = NOW(), active = FALSE
            WHERE id::text = %s AND deleted_at IS NULL
        """, (site_id,))
        if rowcount == 0:
            raise SiteNotFoundError(site_id)

    def find_by_id(self, site_id: str) -> CrawlSite:
        row = self._fetch_one(f"""
            SELECT {SITE_COLUMNS} FROM crawl_sites
            WHERE id::text = %s AND deleted_at IS NULL
        """, (site_id,))
        if not row:
            raise SiteNotFoundError(site_id)
        return _row_to_site(row)

    def find_all(self) -> List[CrawlSite]:
        rows = self._fetch_all(f"""
            SELECT {SITE_COLUMNS} FROM crawl_sites
            WHERE deleted_at IS NULL
            ORDER BY created_at DESC
        """)
        return [_row_to_site(row) for row in rows]

    def find_active(self) -> List[CrawlSite]:
        rows = self._fetch_all(f"""
            SELECT {SITE_COLUMNS} FROM crawl_sites
            WHERE active = TRUE AND deleted_at IS NULL
            ORDER BY created_at
        """)
        return [_row_to_site(row) for row in rows]

    def update_last_crawled_at(self, site_id: str, next_crawl_at=None) -> None:
        self._execute("""
            UPDATE crawl_sites
            SET last_crawled_at = NOW(),
                next_crawl_at = COALESCE(%s, next_crawl_at),
                updated_at = NOW()
            WHERE id::text = %s
        """, (next_crawl_at, site_id))


def _row_to_site(row: Dict) -> CrawlSite:
    row["id"] = str(row["id"])
    return CrawlSite.model_validate(row)


class PostgresJobRepository(PostgresRepository, JobRepository):

    def create(self, job: CrawledJob) -> None:
        data = job.model_dump()
        columns = ", ".join(JOB_FIELDS)
        placeholders = ", ".join(["%s"] * len(JOB_FIELDS))
        self._execute(
            f"INSERT INTO crawled_jobs ({columns}) VALUES ({placeholders})",
            tuple(data[field] for field in JOB_FIELDS),
        )

    def update(self, job: CrawledJob) -> None:
        data = job.model_dump()
        fields = [f for f in JOB_FIELDS if f not in ("id", "created_at", "updated_at")]
        assignments = ", ".join(f"{f} = %s" for f in fields)
        rowcount = self._execute(
            f"UPDATE crawled_jobs SET {assignments}, updated_at = NOW() WHERE id::text = %s",
            tuple(data[f] for f in fields) + (job.id,),
        )
        if rowcount == 0:
            raise JobNotFoundError(job.id)

    def find_by_id(self, job_id: str) -> CrawledJob:
        row = self._fetch_one(f"""
            SELECT {", ".join(JOB_FIELDS)} FROM crawled_jobs
            WHERE id::text = %s AND deleted_at IS NULL
        """, (job_id,))
        if not row:
            raise JobNotFoundError(job_id)
        return _row_to_job(row)

    def find_by_site(self, site_id: str) -> List[CrawledJob]:
        rows = self._fetch_all(f"""
            SELECT {", ".join(JOB_FIELDS)} FROM crawled_jobs
            WHERE site_id::text = %s AND deleted_at IS NULL
            ORDER BY created_at DESC
        """, (site_id,))
        return [_row_to_job(row) for row in rows]

    def find_unsynced(self, limit: int = 0) -> List[CrawledJob]:
        query = f"""
            SELECT {", ".join(JOB_FIELDS)} FROM crawled_jobs
            WHERE synced = FALSE AND deleted_at IS NULL
            ORDER BY created_at
        """
        params = None
        if limit and limit > 0:
            query += " LIMIT %s"
            params = (limit,)
        return [_row_to_job(row) for row in self._fetch_all(query, params)]

    def _exists(self, column: str, value: str) -> bool:
        row = self._fetch_one(
            f"SELECT EXISTS(SELECT 1 FROM crawled_jobs WHERE {column} = %s AND deleted_at IS NULL) AS found",
            (value,),
        )
        return bool(row and row["found"])

    def exists_by_url(self, url: str) -> bool:
        return self._exists("detail_url", url)

    def exists_by_hash(self, dedup_hash: str) -> bool:
        return self._exists("deduplication_hash", dedup_hash)

    def exists_by_external_id(self, external_id: str) -> bool:
        return self._exists("external_id", external_id)

    def mark_synced(self, job_id: str) -> None:
        rowcount = self._execute("""
            UPDATE crawled_jobs
            SET synced = TRUE, synced_at = NOW(), updated_at = NOW()
            WHERE id::text = %s
        """, (job_id,))
        if rowcount == 0:
            raise JobNotFoundError(job_id)

    def count_unsynced(self) -> int:
        row = self._fetch_one(
            "SELECT COUNT(*) AS total FROM crawled_jobs WHERE synced = FALSE AND deleted_at IS NULL"
        )
        return int(row["total"]) if row else 0


def _row_to_job(row: Dict) -> CrawledJob:
    row["id"] = str(row["id"])
    row["site_id"] = str(row["site_id"])
    return CrawledJob.model_validate(row)


class PostgresCrawlLogRepository(PostgresRepository, CrawlLogRepository):

    def create(self, log: CrawlLog) -> None:
        self._execute(f"""
            INSERT INTO crawl_logs ({LOG_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
        """, (
            log.id, log.site_id, log.status, log.started_at, log.completed_at, log.duration_ms,
            log.jobs_found, log.jobs_saved, log.jobs_skipped, log.pages_crawled,
            Json(log.errors), Json([entry.model_dump(mode="json") for entry in log.logs]),
        ))

    def update(self, log: CrawlLog) -> None:
        self._execute("""
            UPDATE crawl_logs SET
                status = %s, completed_at = %s, duration_ms = %s, jobs_found = %s,
                jobs_saved = %s, jobs_skipped = %s, pages_crawled = %s, errors = %s, logs = %s
            WHERE id::text = %s
        """, (
            log.status, log.completed_at, log.duration_ms, log.jobs_found, log.jobs_saved,
            log.jobs_skipped, log.pages_crawled, Json(log.errors),
            Json([entry.model_dump(mode="json") for entry in log.logs]), log.id,
        ))

    def find_by_id(self, log_id: str) -> Optional[CrawlLog]:
        row = self._fetch_one(f"SELECT {LOG_COLUMNS} FROM crawl_logs WHERE id::text = %s", (log_id,))
        return _row_to_log(row) if row else None

    def find_by_site(self, site_id: str, limit: int = 20) -> List[CrawlLog]:
        rows = self._fetch_all(f"""
            SELECT {LOG_COLUMNS} FROM crawl_logs
            WHERE site_id::text = %s
            ORDER BY started_at DESC
            LIMIT %s
        """, (site_id, limit))
        return [_row_to_log(row) for row in rows]

    def find_latest_by_site(self, site_id: str) -> Optional[CrawlLog]:
        logs = self.find_by_site(site_id, limit=1)
        return logs[0] if logs else None


def _row_to_log(row: Dict) -> CrawlLog:
    row["id"] = str(row["id"])
    row["site_id"] = str(row["site_id"])
    return CrawlLog.model_validate(row)
