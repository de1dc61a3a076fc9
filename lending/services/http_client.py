import logging
import time
from typing import Optional

import httpx

from lending.config import settings

logger = logging.getLogger(__name__)

class OptimizedHTTPClient:
    """Pooled HTTP client with retry logic for outbound calls."""

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.BaseTransport] = None):
        # Connection limits
        limits = httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20,
            keepalive_expiry=30.0
        )

        # Timeout configuration
        total = timeout or settings.notification_timeout
        timeout_config = httpx.Timeout(
            timeout=total,
            connect=min(total, 5.0),
        )

        self._client = httpx.Client(
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            transport=transport,
        )

    def post(self, url: str, **kwargs) -> httpx.Response:
        return self._client.post(url, **kwargs)

    def post_with_retry(self, url: str, retries: int = 3, backoff: float = 0.5, **kwargs) -> Optional[httpx.Response]:
        """POST with exponential backoff on transport errors. Returns None when every attempt failed."""
        for attempt in range(retries):
            try:
                return self.post(url, **kwargs)
            except httpx.RequestError as e:
                if attempt < retries - 1:
                    wait_time = backoff * (2 ** attempt)
                    logger.debug(f"POST {url} failed ({e}); retrying in {wait_time:.2f}s")
                    time.sleep(wait_time)
                    continue
                logger.warning(f"POST {url} failed after {retries} attempts: {e}")
                return None
        return None

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
