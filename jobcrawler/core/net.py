"""
Shared async HTTP client for page fetches.

One long-lived httpx.AsyncClient is reused across crawls. Tests pass a client
built on httpx.MockTransport.
"""
import time
import logging
from typing import Dict, Optional

import httpx

from .config import DEFAULT_HTTP_TIMEOUT, DEFAULT_USER_AGENT
from .errors import FetchError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE_KB = 5 * 1024


class HTTPClient:
    """Page fetcher with a bounded client-level timeout. No retries."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
        max_size_kb: int = MAX_PAGE_SIZE_KB,
    ):
        self.user_agent = user_agent
        self.timeout = httpx.Timeout(timeout)
        self.max_size_kb = max_size_kb
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)

    def _get_headers(self, user_agent: Optional[str] = None, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            "User-Agent": user_agent or self.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.5",
        }
        if extra:
            headers.update(extra)
        return headers

    async def fetch_html(
        self,
        url: str,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> str:
        """
        GET a page and return its decoded body.

        Raises:
            FetchError: on transport errors, timeouts or a non-2xx status
        """
        request_timeout = httpx.Timeout(timeout) if timeout else self.timeout
        start_time = time.time()
        try:
            response = await self._client.get(
                url,
                headers=self._get_headers(user_agent),
                timeout=request_timeout,
            )
        except httpx.TimeoutException as e:
            logger.error(f"[net] Timeout fetching {url}: {e}")
            raise FetchError(f"timeout: {e}") from e
        except httpx.HTTPError as e:
            logger.error(f"[net] Connection error fetching {url}: {e}")
            raise FetchError(str(e) or e.__class__.__name__) from e

        elapsed_ms = int((time.time() - start_time) * 1000)
        content_length = len(response.content)
        logger.info(f"[net] GET {response.status_code} {url} ({content_length} bytes, {elapsed_ms}ms)")

        if not response.is_success:
            raise FetchError(f"unexpected status code: {response.status_code}", status_code=response.status_code)

        if content_length > self.max_size_kb * 1024:
            logger.warning(f"[net] Content too large: {content_length} bytes (limit: {self.max_size_kb}KB) - {url}")
            return response.content[:self.max_size_kb * 1024].decode(response.encoding or "utf-8", errors="ignore")

        return response.text

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
