"""
Persistence interfaces consumed by the crawl engine, scheduler and sync service.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from .models import CrawledJob, CrawlLog, CrawlSite


class SiteRepository(ABC):

    @abstractmethod
    def create(self, site: CrawlSite) -> None: ...

    @abstractmethod
    def update(self, site: CrawlSite) -> None: ...

    @abstractmethod
    def delete(self, site_id: str) -> None: ...

    @abstractmethod
    def find_by_id(self, site_id: str) -> CrawlSite:
        """Return the site or raise SiteNotFoundError."""

    @abstractmethod
    def find_all(self) -> List[CrawlSite]: ...

    @abstractmethod
    def find_active(self) -> List[CrawlSite]: ...

    @abstractmethod
    def update_last_crawled_at(self, site_id: str, next_crawl_at=None) -> None: ...


class JobRepository(ABC):

    @abstractmethod
    def create(self, job: CrawledJob) -> None: ...

    @abstractmethod
    def update(self, job: CrawledJob) -> None: ...

    @abstractmethod
    def find_by_id(self, job_id: str) -> CrawledJob:
        """Return the job or raise JobNotFoundError."""

    @abstractmethod
    def find_by_site(self, site_id: str) -> List[CrawledJob]: ...

    @abstractmethod
    def find_unsynced(self, limit: int = 0) -> List[CrawledJob]:
        """Unsynced jobs, oldest first. A limit of 0 means no limit."""

    @abstractmethod
    def exists_by_url(self, url: str) -> bool: ...

    @abstractmethod
    def exists_by_hash(self, dedup_hash: str) -> bool: ...

    @abstractmethod
    def exists_by_external_id(self, external_id: str) -> bool: ...

    @abstractmethod
    def mark_synced(self, job_id: str) -> None: ...

    @abstractmethod
    def count_unsynced(self) -> int: ...


class CrawlLogRepository(ABC):

    @abstractmethod
    def create(self, log: CrawlLog) -> None: ...

    @abstractmethod
    def update(self, log: CrawlLog) -> None: ...

    @abstractmethod
    def find_by_id(self, log_id: str) -> Optional[CrawlLog]: ...

    @abstractmethod
    def find_by_site(self, site_id: str, limit: int = 20) -> List[CrawlLog]: ...

    @abstractmethod
    def find_latest_by_site(self, site_id: str) -> Optional[CrawlLog]: ...
