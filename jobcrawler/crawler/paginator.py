"""
Page enumeration for crawl runs.

query_param, url_pattern and api_pagination produce their full URL list up
front. link_follow starts from the base URL and discovers further pages one at
a time from each fetched document.
"""
import logging
from typing import List, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup, Tag

from ..core.errors import PaginationError
from ..core.models import (
    APIPagination,
    LinkFollowPagination,
    PaginationConfig,
    QueryParamPagination,
    URLPatternPagination,
    parse_pagination_config,
)

logger = logging.getLogger(__name__)


def set_query_params(url: str, params: dict) -> str:
    """Set (or replace) query parameters on a URL, keeping the others in place."""
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend((k, str(v)) for k, v in params.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def _split_absolute(url: str):
    try:
        parts = urlsplit(url)
    except ValueError as e:
        raise PaginationError(f"invalid URL {url!r}: {e}") from e
    if not parts.scheme or not parts.netloc:
        raise PaginationError(f"invalid URL {url!r}: expected an absolute http(s) URL")
    return parts


class Paginator:
    """Produces the ordered page URLs for one crawl run"""

    def __init__(self, config: PaginationConfig):
        if isinstance(config, dict) or config is None:
            config = parse_pagination_config(config)
        self.config = config

    @property
    def follows_links(self) -> bool:
        return isinstance(self.config, LinkFollowPagination)

    def get_page_urls(self, base_url: str) -> List[str]:
        """
        Initial page URLs to crawl, in order.

        Raises:
            PaginationError: when the base URL (or API endpoint) is unusable
        """
        config = self.config
        if isinstance(config, QueryParamPagination):
            return self._query_param_urls(base_url, config)
        if isinstance(config, URLPatternPagination):
            return self._url_pattern_urls(base_url, config)
        if isinstance(config, APIPagination):
            return self._api_urls(config)
        # link_follow and single-page crawls both start from the base URL
        _split_absolute(base_url)
        return [base_url]

    def _query_param_urls(self, base_url: str, config: QueryParamPagination) -> List[str]:
        _split_absolute(base_url)
        return [
            set_query_params(base_url, {config.param_name: page})
            for page in config.page_numbers()
        ]

    def _url_pattern_urls(self, base_url: str, config: URLPatternPagination) -> List[str]:
        parts = _split_absolute(base_url)
        base_path = parts.path if parts.path.endswith("/") else parts.path + "/"
        urls = []
        for page in config.page_numbers():
            pattern = config.url_pattern.replace("{page}", str(page)).lstrip("/")
            urls.append(urlunsplit((parts.scheme, parts.netloc, base_path + pattern, parts.query, parts.fragment)))
        return urls

    def _api_urls(self, config: APIPagination) -> List[str]:
        api = config.api_config
        _split_absolute(api.endpoint)
        urls = []
        for page in config.page_numbers():
            params = {api.page_param: page}
            if api.page_size:
                params["page_size"] = api.page_size
            urls.append(set_query_params(api.endpoint, params))
        return urls

    def _next_link(self, document) -> Optional[Tag]:
        if not self.follows_links:
            return None
        if isinstance(document, (str, bytes)):
            document = BeautifulSoup(document, "lxml")
        return document.select_one(self.config.next_page_selector)

    def has_next_page(self, document) -> bool:
        """True when link_follow is active and the next-page selector matches."""
        return self._next_link(document) is not None

    def get_next_page_url(self, document, current_url: str) -> Optional[str]:
        """
        Resolve the next-page link against the page it was found on.

        Returns None when there is no next link or it has no href.
        """
        link = self._next_link(document)
        if link is None:
            return None
        href = link.get("href")
        if not href or not str(href).strip():
            logger.debug(f"[paginator] Next page link on {current_url} has no href")
            return None
        return urljoin(current_url, str(href).strip())
