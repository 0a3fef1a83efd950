from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from urllib.parse import urljoin, urlsplit
from urllib.robotparser import RobotFileParser

import httpx

from src.app.domain.errors import BlockedError, FetchFailedError, TransientError
from src.app.services.circuit_breaker import CircuitBreaker
from src.app.services.ssrf_guard import SsrfGuard
from src.app.services.url_utils import origin_of

logger = logging.getLogger(__name__)

REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
RETRYABLE_STATUS_CODES = {408, 425, 429}
ROBOTS_TIMEOUT_SECONDS = 5.0


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class FetchOptions:
    timeout_seconds: float = 30.0
    max_retries: int = 2
    max_size_bytes: int = 5 * 1024 * 1024
    max_redirects: int = 5
    user_agent: str = "RecipeIngestAgent/1.0"
    respect_robots_txt: bool = True
    backoff_base_seconds: float = 1.0
    robots_cache_size: int = 512
    robots_cache_ttl_seconds: float = 3600.0


@dataclass(frozen=True)
class FetchResult:
    url: str
    final_url: str
    status_code: int
    content: str
    content_type: Optional[str]
    fetched_at: datetime


class _RetryableFetchError(Exception):
    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class Fetcher:
    """
    Retrieves untrusted pages through the SSRF guard and circuit breaker.

    Redirects are followed by hand so every hop is validated before it is
    requested. Transient failures are retried with exponential backoff; a
    fetch that exhausts its retries counts as a single breaker failure.
    """

    def __init__(
        self,
        guard: SsrfGuard,
        breaker: CircuitBreaker,
        options: FetchOptions | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._guard = guard
        self._breaker = breaker
        self.options = options or FetchOptions()
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.options.timeout_seconds),
            follow_redirects=False,
        )
        self._sleep = sleep
        # origin -> (monotonic load time, parser or None when robots.txt is unavailable)
        self._robots_cache: OrderedDict[str, tuple[float, Optional[RobotFileParser]]] = OrderedDict()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def fetch(self, url: str, deadline_seconds: float | None = None) -> FetchResult:
        await self._guard.validate(url)

        origin = origin_of(url)
        if not self._breaker.allow_request(origin):
            logger.warning("fetch.circuit_open url=%s origin=%s", url, origin)
            raise BlockedError(url, f"circuit open for {origin}", code="CIRCUIT_BREAKER_OPEN")

        if self.options.respect_robots_txt:
            await self._check_robots(url, origin)

        if deadline_seconds is None:
            return await self._fetch_with_retry(url, origin)

        try:
            return await asyncio.wait_for(self._fetch_with_retry(url, origin), timeout=deadline_seconds)
        except asyncio.TimeoutError as error:
            self._breaker.record_failure(origin)
            raise TransientError(f"Fetch deadline of {deadline_seconds}s exceeded for {url}") from error

    async def _fetch_with_retry(self, url: str, origin: str) -> FetchResult:
        attempts = self.options.max_retries + 1
        last_error: _RetryableFetchError | None = None

        for attempt in range(attempts):
            try:
                result = await self._fetch_once(url)
            except _RetryableFetchError as error:
                last_error = error
                logger.info(
                    "fetch.retryable url=%s attempt=%d/%d reason=%s",
                    url, attempt + 1, attempts, error.reason,
                )
                if attempt + 1 < attempts:
                    await self._sleep(self.options.backoff_base_seconds * (2 ** attempt))
                continue
            except FetchFailedError:
                self._breaker.record_failure(origin)
                raise

            self._breaker.record_success(origin)
            logger.info(
                "fetch.ok url=%s final_url=%s status=%d bytes=%d",
                url, result.final_url, result.status_code, len(result.content),
            )
            return result

        self._breaker.record_failure(origin)
        reason = last_error.reason if last_error else "unknown error"
        logger.warning("fetch.exhausted url=%s attempts=%d reason=%s", url, attempts, reason)
        raise TransientError(f"Failed to fetch {url} after {attempts} attempts: {reason}")

    async def _fetch_once(self, url: str) -> FetchResult:
        current_url = url
        for hop in range(self.options.max_redirects + 1):
            if hop > 0:
                await self._guard.validate(current_url)

            try:
                async with self._client.stream("GET", current_url, headers=self._headers()) as response:
                    location = response.headers.get("location")
                    if response.status_code in REDIRECT_STATUS_CODES and location:
                        current_url = urljoin(current_url, location)
                        logger.debug("fetch.redirect from=%s to=%s", url, current_url)
                        continue

                    self._raise_for_status(current_url, response.status_code)
                    body = await self._read_limited(current_url, response)
                    return FetchResult(
                        url=url,
                        final_url=current_url,
                        status_code=response.status_code,
                        content=self._decode(body, response.encoding),
                        content_type=response.headers.get("content-type"),
                        fetched_at=_now_utc(),
                    )
            except httpx.TimeoutException as error:
                raise _RetryableFetchError(f"timeout: {error}") from error
            except httpx.TransportError as error:
                raise _RetryableFetchError(f"transport error: {error}") from error

        raise FetchFailedError(url, f"more than {self.options.max_redirects} redirects", code="TOO_MANY_REDIRECTS")

    def _raise_for_status(self, url: str, status_code: int) -> None:
        if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
            raise _RetryableFetchError(f"HTTP {status_code}", status_code)
        if status_code >= 400:
            raise FetchFailedError(url, f"HTTP {status_code}", status_code=status_code)

    async def _read_limited(self, url: str, response: httpx.Response) -> bytes:
        limit = self.options.max_size_bytes
        declared = response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise FetchFailedError(url, f"content length {declared} exceeds {limit} bytes", code="CONTENT_TOO_LARGE")

        chunks: list[bytes] = []
        received = 0
        async for chunk in response.aiter_bytes():
            received += len(chunk)
            if received > limit:
                raise FetchFailedError(url, f"content exceeds {limit} bytes", code="CONTENT_TOO_LARGE")
            chunks.append(chunk)
        return b"".join(chunks)

    @staticmethod
    def _decode(body: bytes, encoding: str | None) -> str:
        try:
            return body.decode(encoding or "utf-8", errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.options.user_agent,
            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
        }

    async def _check_robots(self, url: str, origin: str) -> None:
        parser = await self._robots_for(url, origin)
        if parser is not None and not parser.can_fetch(self.options.user_agent, url):
            logger.info("fetch.robots_blocked url=%s", url)
            raise BlockedError(url, "disallowed by robots.txt", code="ROBOTS_TXT_BLOCKED")

    async def _robots_for(self, url: str, origin: str) -> Optional[RobotFileParser]:
        now = time.monotonic()
        cached = self._robots_cache.get(origin)
        if cached is not None and now - cached[0] < self.options.robots_cache_ttl_seconds:
            self._robots_cache.move_to_end(origin)
            return cached[1]

        parser = await self._load_robots(url)
        self._robots_cache[origin] = (now, parser)
        self._robots_cache.move_to_end(origin)
        while len(self._robots_cache) > self.options.robots_cache_size:
            self._robots_cache.popitem(last=False)
        return parser

    async def _load_robots(self, url: str) -> Optional[RobotFileParser]:
        parts = urlsplit(url)
        robots_url = f"{parts.scheme}://{parts.netloc}/robots.txt"
        try:
            response = await self._client.get(
                robots_url,
                headers=self._headers(),
                timeout=ROBOTS_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as error:
            logger.debug("fetch.robots_unavailable url=%s error=%s", robots_url, error)
            return None

        if response.status_code != 200:
            return None

        parser = RobotFileParser()
        parser.parse(response.text.splitlines())
        return parser
