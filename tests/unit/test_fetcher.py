from __future__ import annotations

import asyncio

import httpx
import pytest

from src.app.domain.errors import BlockedError, FetchFailedError, TransientError
from src.app.services.circuit_breaker import CircuitBreaker
from src.app.services.fetcher import Fetcher, FetchOptions
from src.app.services.ssrf_guard import SsrfGuard

PAGE = "<html><head><title>Soup</title></head><body><p>Tomato soup</p></body></html>"
ORIGIN = "https://recipes.example:443"


def reply(status_code: int, **kwargs: object) -> tuple[int, dict]:
    return status_code, kwargs


class ResolverStub:
    def __init__(self) -> None:
        self.answers = {
            "recipes.example": ["93.184.216.34"],
            "cdn.example": ["93.184.216.35"],
            "internal.example": ["10.0.0.7"],
        }

    async def __call__(self, host: str, port: int) -> list[str]:
        if host not in self.answers:
            raise OSError(host)
        return self.answers[host]


class SleepStub:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Site:
    """Serves scripted responses per path and records every request."""

    def __init__(self, routes: dict[str, list[tuple[int, dict]]] | None = None, robots: str | None = None) -> None:
        self.routes = routes or {}
        self.robots = robots
        self.requested: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requested.append(str(request.url))
        if request.url.path == "/robots.txt":
            if self.robots is None:
                return httpx.Response(404)
            return httpx.Response(200, text=self.robots)
        responses = self.routes.get(f"{request.url.host}{request.url.path}")
        if not responses:
            return httpx.Response(404)
        status_code, kwargs = responses.pop(0) if len(responses) > 1 else responses[0]
        return httpx.Response(status_code, **kwargs)


def make_fetcher(site: Site, **options: object) -> tuple[Fetcher, CircuitBreaker, SleepStub]:
    breaker = CircuitBreaker()
    sleep = SleepStub()
    client = httpx.AsyncClient(transport=httpx.MockTransport(site))
    fetcher = Fetcher(
        SsrfGuard(resolver=ResolverStub()),
        breaker,
        FetchOptions(**options),
        client=client,
        sleep=sleep,
    )
    return fetcher, breaker, sleep


class TestFetcherSuccess:
    def test_fetches_page(self) -> None:
        site = Site({"recipes.example/soup": [reply(200, html=PAGE)]})
        fetcher, breaker, _ = make_fetcher(site)

        result = asyncio.run(fetcher.fetch("https://recipes.example/soup"))

        assert result.status_code == 200
        assert "Tomato soup" in result.content
        assert result.final_url == "https://recipes.example/soup"
        assert breaker.failure_count(ORIGIN) == 0

    def test_follows_public_redirect(self) -> None:
        site = Site({
            "recipes.example/old": [reply(301, headers={"location": "https://cdn.example/new"})],
            "cdn.example/new": [reply(200, html=PAGE)],
        })
        fetcher, _, _ = make_fetcher(site, respect_robots_txt=False)

        result = asyncio.run(fetcher.fetch("https://recipes.example/old"))

        assert result.url == "https://recipes.example/old"
        assert result.final_url == "https://cdn.example/new"

    def test_retries_transient_status_with_backoff(self) -> None:
        site = Site({"recipes.example/soup": [reply(503), reply(200, html=PAGE)]})
        fetcher, breaker, sleep = make_fetcher(site, respect_robots_txt=False)

        result = asyncio.run(fetcher.fetch("https://recipes.example/soup"))

        assert result.status_code == 200
        assert sleep.delays == [1.0]
        assert breaker.failure_count(ORIGIN) == 0


class TestFetcherGuarding:
    def test_private_target_never_requested(self) -> None:
        site = Site()
        fetcher, _, _ = make_fetcher(site)

        with pytest.raises(BlockedError):
            asyncio.run(fetcher.fetch("https://internal.example/admin"))

        assert site.requested == []

    def test_redirect_into_private_network_blocked(self) -> None:
        site = Site({
            "recipes.example/soup": [reply(302, headers={"location": "http://internal.example/secret"})],
        })
        fetcher, _, _ = make_fetcher(site, respect_robots_txt=False)

        with pytest.raises(BlockedError):
            asyncio.run(fetcher.fetch("https://recipes.example/soup"))

        assert all("internal.example" not in url for url in site.requested)

    def test_open_circuit_short_circuits(self) -> None:
        site = Site({"recipes.example/soup": [reply(200, html=PAGE)]})
        fetcher, breaker, _ = make_fetcher(site)
        for _ in range(5):
            breaker.record_failure(ORIGIN)

        with pytest.raises(BlockedError) as exc_info:
            asyncio.run(fetcher.fetch("https://recipes.example/soup"))

        assert exc_info.value.code == "CIRCUIT_BREAKER_OPEN"
        assert site.requested == []

    def test_robots_disallow(self) -> None:
        site = Site(
            {"recipes.example/private/soup": [reply(200, html=PAGE)]},
            robots="User-agent: *\nDisallow: /private/\n",
        )
        fetcher, _, _ = make_fetcher(site)

        with pytest.raises(BlockedError) as exc_info:
            asyncio.run(fetcher.fetch("https://recipes.example/private/soup"))

        assert exc_info.value.code == "ROBOTS_TXT_BLOCKED"


class TestFetcherFailures:
    def test_exhausted_retries_count_one_failure(self) -> None:
        site = Site({"recipes.example/soup": [reply(503)]})
        fetcher, breaker, sleep = make_fetcher(site, respect_robots_txt=False, max_retries=2)

        with pytest.raises(TransientError):
            asyncio.run(fetcher.fetch("https://recipes.example/soup"))

        assert len(site.requested) == 3
        assert sleep.delays == [1.0, 2.0]
        assert breaker.failure_count(ORIGIN) == 1

    def test_client_error_is_not_retried(self) -> None:
        site = Site({"recipes.example/gone": [reply(410)]})
        fetcher, breaker, sleep = make_fetcher(site, respect_robots_txt=False)

        with pytest.raises(FetchFailedError) as exc_info:
            asyncio.run(fetcher.fetch("https://recipes.example/gone"))

        assert exc_info.value.status_code == 410
        assert sleep.delays == []
        assert breaker.failure_count(ORIGIN) == 1

    def test_oversized_body_rejected(self) -> None:
        site = Site({"recipes.example/big": [reply(200, content=b"x" * 2048)]})
        fetcher, _, _ = make_fetcher(site, respect_robots_txt=False, max_size_bytes=1024)

        with pytest.raises(FetchFailedError) as exc_info:
            asyncio.run(fetcher.fetch("https://recipes.example/big"))

        assert exc_info.value.code == "CONTENT_TOO_LARGE"

    def test_redirect_loop_limited(self) -> None:
        site = Site({
            "recipes.example/loop": [reply(302, headers={"location": "https://recipes.example/loop"})],
        })
        fetcher, _, _ = make_fetcher(site, respect_robots_txt=False, max_redirects=2)

        with pytest.raises(FetchFailedError) as exc_info:
            asyncio.run(fetcher.fetch("https://recipes.example/loop"))

        assert exc_info.value.code == "TOO_MANY_REDIRECTS"
        assert len(site.requested) == 3


class TestRobotsCache:
    def _site(self) -> Site:
        return Site(
            {
                "recipes.example/soup": [reply(200, html=PAGE)],
                "cdn.example/soup": [reply(200, html=PAGE)],
            },
            robots="User-agent: *\nAllow: /\n",
        )

    @staticmethod
    def _robots_requests(site: Site) -> list[str]:
        return [url for url in site.requested if url.endswith("/robots.txt")]

    def test_robots_loaded_once_per_origin(self) -> None:
        site = self._site()
        fetcher, _, _ = make_fetcher(site)

        async def scenario() -> None:
            for url in ("https://recipes.example/soup", "https://cdn.example/soup", "https://recipes.example/soup"):
                await fetcher.fetch(url)

        asyncio.run(scenario())

        assert len(self._robots_requests(site)) == 2

    def test_least_recently_used_origin_is_evicted(self) -> None:
        site = self._site()
        fetcher, _, _ = make_fetcher(site, robots_cache_size=1)

        async def scenario() -> None:
            for url in ("https://recipes.example/soup", "https://cdn.example/soup", "https://recipes.example/soup"):
                await fetcher.fetch(url)

        asyncio.run(scenario())

        assert len(self._robots_requests(site)) == 3
        assert len(fetcher._robots_cache) == 1

    def test_stale_entry_is_reloaded(self) -> None:
        site = self._site()
        fetcher, _, _ = make_fetcher(site, robots_cache_ttl_seconds=0)

        async def scenario() -> None:
            await fetcher.fetch("https://recipes.example/soup")
            await fetcher.fetch("https://recipes.example/soup")

        asyncio.run(scenario())

        assert len(self._robots_requests(site)) == 2


class TestFetcherLifecycle:
    def test_aclose_closes_client(self) -> None:
        client = httpx.AsyncClient(transport=httpx.MockTransport(Site()))
        fetcher = Fetcher(SsrfGuard(resolver=ResolverStub()), CircuitBreaker(), client=client)

        asyncio.run(fetcher.aclose())

        assert client.is_closed
