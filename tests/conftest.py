"""
Shared fixtures: in-memory repositories, sample sites and a mock HTTP layer.
"""
import copy
from typing import Callable, Dict, List, Optional, Union

import httpx
import pytest

from jobcrawler.core.errors import JobNotFoundError, SiteNotFoundError
from jobcrawler.core.models import CrawledJob, CrawlLog, CrawlSite, utcnow
from jobcrawler.core.net import HTTPClient
from jobcrawler.core.repositories import CrawlLogRepository, JobRepository, SiteRepository


class InMemorySiteRepository(SiteRepository):

    def __init__(self):
        self.sites: Dict[str, CrawlSite] = {}

    def create(self, site):
        self.sites[site.id] = site.model_copy(deep=True)

    def update(self, site):
        if site.id not in self.sites:
            raise SiteNotFoundError(site.id)
        self.sites[site.id] = site.model_copy(deep=True)

    def delete(self, site_id):
        if self.sites.pop(site_id, None) is None:
            raise SiteNotFoundError(site_id)

    def find_by_id(self, site_id):
        if site_id not in self.sites:
            raise SiteNotFoundError(site_id)
        return self.sites[site_id].model_copy(deep=True)

    def find_all(self):
        return [s.model_copy(deep=True) for s in self.sites.values()]

    def find_active(self):
        return [s.model_copy(deep=True) for s in self.sites.values() if s.active]

    def update_last_crawled_at(self, site_id, next_crawl_at=None):
        site = self.sites[site_id]
        site.last_crawled_at = utcnow()
        site.next_crawl_at = next_crawl_at


class InMemoryJobRepository(JobRepository):

    def __init__(self):
        self.jobs: Dict[str, CrawledJob] = {}
        self.fail_on_create = False
        self.fail_on_mark_synced: set = set()

    def create(self, job):
        if self.fail_on_create:
            raise RuntimeError("database unavailable")
        self.jobs[job.id] = job.model_copy(deep=True)

    def update(self, job):
        if job.id not in self.jobs:
            raise JobNotFoundError(job.id)
        self.jobs[job.id] = job.model_copy(deep=True)

    def find_by_id(self, job_id):
        if job_id not in self.jobs:
            raise JobNotFoundError(job_id)
        return self.jobs[job_id].model_copy(deep=True)

    def find_by_site(self, site_id):
        return [j for j in self.jobs.values() if j.site_id == site_id]

    def find_unsynced(self, limit=0):
        unsynced = [j.model_copy(deep=True) for j in self.jobs.values() if not j.synced]
        return unsynced[:limit] if limit else unsynced

    def exists_by_url(self, url):
        return any(j.detail_url == url for j in self.jobs.values())

    def exists_by_hash(self, dedup_hash):
        return any(j.deduplication_hash == dedup_hash for j in self.jobs.values())

    def exists_by_external_id(self, external_id):
        return any(j.external_id == external_id for j in self.jobs.values())

    def mark_synced(self, job_id):
        if job_id in self.fail_on_mark_synced:
            raise RuntimeError("update failed")
        if job_id not in self.jobs:
            raise JobNotFoundError(job_id)
        self.jobs[job_id].synced = True
        self.jobs[job_id].synced_at = utcnow()

    def count_unsynced(self):
        return sum(1 for j in self.jobs.values() if not j.synced)


class InMemoryCrawlLogRepository(CrawlLogRepository):

    def __init__(self):
        self.logs: Dict[str, CrawlLog] = {}
        self.fail_on_create = False

    def create(self, log):
        if self.fail_on_create:
            raise RuntimeError("insert failed")
        self.logs[log.id] = log.model_copy(deep=True)

    def update(self, log):
        self.logs[log.id] = log.model_copy(deep=True)

    def find_by_id(self, log_id):
        return self.logs.get(log_id)

    def find_by_site(self, site_id, limit=20):
        logs = [l for l in self.logs.values() if l.site_id == site_id]
        logs.sort(key=lambda l: l.started_at, reverse=True)
        return logs[:limit]

    def find_latest_by_site(self, site_id):
        logs = self.find_by_site(site_id, 1)
        return logs[0] if logs else None


BASE_RULES = {
    "job_list_selector": "div.job",
    "job_detail_url": {"type": "relative", "selector": "a.link", "attribute": "href"},
    "fields": {
        "title": {"selector": ".title", "type": "text", "transformations": ["trim"]},
        "company": {"selector": ".company", "type": "text"},
        "location": {"selector": ".loc", "type": "text", "default_value": "Remote"},
        "salary_min": {
            "selector": ".salary",
            "type": "regex",
            "regex_pattern": r"([\d,]+)",
            "transformations": ["remove_commas", "parse_int"],
        },
    },
}


def listing_page(*jobs: Dict[str, str], next_href: Optional[str] = None) -> str:
    """
    Render a listing page. Each job dict may carry href, title, company,
    location and salary; a job without href gets no link.
    """
    items = []
    for job in jobs:
        parts = []
        if job.get("href"):
            parts.append(f'<a class="link" href="{job["href"]}">View</a>')
        parts.append(f'<h2 class="title"> {job.get("title", "")} </h2>')
        if job.get("company"):
            parts.append(f'<span class="company">{job["company"]}</span>')
        if job.get("location"):
            parts.append(f'<span class="loc">{job["location"]}</span>')
        if job.get("salary"):
            parts.append(f'<span class="salary">{job["salary"]}</span>')
        items.append(f'<div class="job">{"".join(parts)}</div>')
    next_link = f'<a class="next" href="{next_href}">Next</a>' if next_href else ""
    return f"<html><body>{''.join(items)}{next_link}</body></html>"


@pytest.fixture
def rules_dict():
    return copy.deepcopy(BASE_RULES)


@pytest.fixture
def make_site(rules_dict) -> Callable[..., CrawlSite]:
    def _make(**overrides) -> CrawlSite:
        data = {
            "id": "site-1",
            "name": "Example Jobs",
            "base_url": "https://jobs.example.com/list",
            "backend_startup_id": "startup-1",
            "schedule": "0 */6 * * *",
            "pagination_config": {"type": "single"},
            "extraction_rules": rules_dict,
            "request_delay": 0,
        }
        data.update(overrides)
        return CrawlSite.model_validate(data)
    return _make


@pytest.fixture
def site_repo():
    return InMemorySiteRepository()


@pytest.fixture
def job_repo():
    return InMemoryJobRepository()


@pytest.fixture
def crawl_log_repo():
    return InMemoryCrawlLogRepository()


class PageServer:
    """httpx.MockTransport handler serving canned pages by URL"""

    def __init__(self, pages: Dict[str, Union[str, int]]):
        self.pages = pages
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        page = self.pages.get(str(request.url))
        if page is None:
            return httpx.Response(404, text="not found")
        if isinstance(page, int):
            return httpx.Response(page, text="error")
        return httpx.Response(200, text=page, headers={"Content-Type": "text/html"})

    @property
    def urls(self) -> List[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture
def page_server():
    def _make(pages: Dict[str, Union[str, int]]):
        server = PageServer(pages)
        client = HTTPClient(client=httpx.AsyncClient(transport=httpx.MockTransport(server)))
        return server, client
    return _make
