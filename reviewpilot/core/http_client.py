"""
Centralized HTTP Client Configuration

Synchronous httpx client used by review sources and reply posting from
Celery workers. Every request carries a bounded timeout; a short in-call
retry smooths over blips, anything longer is left to the next poll cycle.
"""
import time
import logging
from typing import Optional

import httpx

from reviewpilot.core.config import get_settings

logger = logging.getLogger(__name__)


class HTTPClientConfig:
    """Configuration for HTTP client."""

    def __init__(self, timeout: Optional[float] = None, max_retries: int = 1):
        self.timeout = timeout if timeout is not None else get_settings().http_timeout_seconds
        self.max_retries = max_retries
        self.user_agent = 'ReviewPilot/1.0'

        self.retry_on_status = [408, 429, 500, 502, 503, 504]
        self.retry_backoff_factor = 0.3

    def to_timeout(self):
        """Convert to httpx.Timeout object."""
        return httpx.Timeout(self.timeout)


class HTTPClient:
    """Sync HTTP client with standard configuration."""

    def __init__(self, config: Optional[HTTPClientConfig] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.config = config or HTTPClientConfig()
        self._client = httpx.Client(
            timeout=self.config.to_timeout(),
            headers={'User-Agent': self.config.user_agent},
            follow_redirects=True,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request with retry logic.

        Returns the final response, which may still carry a retryable status
        once retries are exhausted. Connection errors and timeouts are
        re-raised after the last attempt.
        """
        retry_count = 0

        while True:
            try:
                response = self._client.request(method, url, **kwargs)
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                if retry_count >= self.config.max_retries:
                    raise
                retry_count += 1
                backoff_time = self.config.retry_backoff_factor * (2 ** (retry_count - 1))
                logger.warning(
                    f"HTTP {method} {url} failed: {e}. Retrying in {backoff_time:.1f}s "
                    f"(attempt {retry_count}/{self.config.max_retries})"
                )
                time.sleep(backoff_time)
                continue

            if response.status_code in self.config.retry_on_status and retry_count < self.config.max_retries:
                retry_count += 1
                backoff_time = self.config.retry_backoff_factor * (2 ** (retry_count - 1))
                logger.warning(
                    f"HTTP {method} {url} returned {response.status_code}. Retrying in "
                    f"{backoff_time:.1f}s (attempt {retry_count}/{self.config.max_retries})"
                )
                time.sleep(backoff_time)
                continue

            return response

    def get(self, url: str, **kwargs) -> httpx.Response:
        return self.request('GET', url, **kwargs)

    def post(self, url: str, **kwargs) -> httpx.Response:
        return self.request('POST', url, **kwargs)

    def put(self, url: str, **kwargs) -> httpx.Response:
        return self.request('PUT', url, **kwargs)
