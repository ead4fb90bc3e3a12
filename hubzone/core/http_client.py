"""
HTTP client for source dataset downloads.

Implements bounded concurrency, per-request timeout, exponential backoff
with jitter (capped), and standardized error classification.
"""
import asyncio
import logging
import random
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, Optional, Any

import httpx

from hubzone.core.api_errors import (
    APIError,
    RetryableError,
    RateLimitError,
    CorruptPayloadError,
    FatalError,
    classify_http_error,
)

logger = logging.getLogger(__name__)

PayloadValidator = Callable[[bytes], None]


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """
    Seconds to wait from a Retry-After header.

    Accepts both delay-seconds ("120") and HTTP-date
    ("Wed, 21 Oct 2015 07:28:00 GMT") forms; a date in the past means no
    wait. Returns None when the header is absent or unparseable.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable Retry-After header: {value!r}")
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


class DatasetHttpClient:
    """
    Async HTTP client used by the dataset cache manager.

    Provides:
    - Connection pooling via a lazily created httpx.AsyncClient
    - Bounded concurrency via semaphore
    - Retry with exponential backoff + jitter, capped at max_delay
    - Payload validation hook (invalid payloads are retried like 5xx)
    """

    DEFAULT_JITTER_FACTOR: float = 0.25

    def __init__(
        self,
        max_concurrency: int = 4,
        max_retries: int = 3,
        base_delay: float = 1.0,
        backoff_factor: float = 2.0,
        max_delay: float = 30.0,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        user_agent: str = "hubzone-pipeline/1.0",
    ):
        """
        Initialize the client.

        Args:
            max_concurrency: Maximum concurrent requests (semaphore size)
            max_retries: Maximum attempts per download
            base_delay: Delay before the first retry, in seconds
            backoff_factor: Exponential backoff multiplier
            max_delay: Cap on a single backoff delay
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests inject MockTransport)
        """
        self.max_concurrency = max_concurrency
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.backoff_factor = backoff_factor
        self.max_delay = max_delay
        self.timeout = timeout
        self.transport = transport
        self.user_agent = user_agent

        self.semaphore = asyncio.Semaphore(max_concurrency)
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(
            f"Initialized DatasetHttpClient: max_concurrency={max_concurrency}, "
            f"max_retries={max_retries}, timeout={timeout}s"
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client with connection pooling."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                transport=self.transport,
                headers={"User-Agent": self.user_agent},
                limits=httpx.Limits(
                    max_connections=self.max_concurrency * 2,
                    max_keepalive_connections=self.max_concurrency
                )
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def backoff_delay(self, attempt: int) -> float:
        """
        Exponential backoff with jitter for the given 0-indexed attempt.

        delay = min(base * factor^attempt, max_delay) ± 25%
        """
        delay = min(self.base_delay * (self.backoff_factor ** attempt), self.max_delay)
        jitter = delay * self.DEFAULT_JITTER_FACTOR * (2 * random.random() - 1)
        return max(0.0, delay + jitter)

    async def _backoff(self, attempt: int) -> None:
        delay = self.backoff_delay(attempt)
        logger.debug(f"Backing off for {delay:.2f}s (attempt {attempt + 1})")
        await asyncio.sleep(delay)

    async def fetch_bytes(
        self,
        url: str,
        source: str,
        params: Optional[Dict[str, Any]] = None,
        validate: Optional[PayloadValidator] = None,
    ) -> bytes:
        """
        Download a payload with retry logic.

        Args:
            url: Full URL
            source: Source identifier for logging and errors
            params: Query parameters
            validate: Callable raising CorruptPayloadError on a bad payload

        Returns:
            Raw response body

        Raises:
            APIError: When all attempts fail or the error is not retryable
        """
        async with self.semaphore:
            client = await self._get_client()
            last_error: Optional[APIError] = None

            for attempt in range(self.max_retries):
                try:
                    logger.debug(
                        f"[{source}] GET {url} (attempt {attempt + 1}/{self.max_retries})"
                    )
                    response = await client.get(url, params=params)
                    response.raise_for_status()
                    body = response.content

                    if validate is not None:
                        validate(body)

                    return body

                except httpx.HTTPStatusError as e:
                    error = classify_http_error(
                        e.response.status_code, e.response.text[:500], source
                    )
                    if not error.retryable:
                        raise error
                    last_error = error
                    if attempt >= self.max_retries - 1:
                        break

                    if isinstance(error, RateLimitError):
                        retry_after = parse_retry_after(e.response.headers.get("Retry-After"))
                        if retry_after is not None:
                            wait_time = min(retry_after, self.max_delay)
                            logger.warning(f"[{source}] Rate limited. Waiting {wait_time}s")
                            await asyncio.sleep(wait_time)
                            continue

                    logger.warning(f"[{source}] Retryable HTTP error: {error}")
                    await self._backoff(attempt)

                except CorruptPayloadError as e:
                    e.source = e.source or source
                    last_error = e
                    if attempt >= self.max_retries - 1:
                        break
                    logger.warning(f"[{source}] Corrupt payload (attempt {attempt + 1}): {e}")
                    await self._backoff(attempt)

                except httpx.RequestError as e:
                    last_error = RetryableError(message=f"Request failed: {e}", source=source)
                    if attempt >= self.max_retries - 1:
                        break
                    logger.warning(f"[{source}] Request error (attempt {attempt + 1}): {e}")
                    await self._backoff(attempt)

            logger.error(f"[{source}] Giving up after {self.max_retries} attempts: {last_error}")
            if last_error is None:
                raise FatalError(message="No attempts were made", source=source)
            raise last_error
