"""
Crawler error types.
"""


class CrawlerError(Exception):
    """Base class for crawler errors."""
    pass


class InvalidSiteError(CrawlerError):
    """Raised when a crawl site configuration is invalid."""
    pass


class SiteNotFoundError(CrawlerError):
    def __init__(self, site_id: str):
        super().__init__(f"site not found: {site_id}")
        self.site_id = site_id


class JobNotFoundError(CrawlerError):
    def __init__(self, job_id: str):
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class PaginationError(CrawlerError):
    """Raised when page URLs cannot be generated; aborts the whole crawl run."""
    pass


class FetchError(CrawlerError):
    """Raised when a page cannot be fetched (transport error or non-2xx status)."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class SyncError(CrawlerError):
    """Raised when a single job cannot be forwarded to the downstream API."""
    pass


class CrawlLogStateError(CrawlerError):
    """Raised when a crawl log is finalized more than once."""
    pass
