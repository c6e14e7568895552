"""Tests for the rate limiter, response hardening and the management CLI."""

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.requests import Request

from onboarding import cli
from onboarding.middleware import rate_limit
from onboarding.middleware.rate_limit import RateLimitMiddleware, client_ip
from onboarding.middleware.security import HTTPSRedirectMiddleware


class SortedSetRedis:
    """Just enough of the Redis sorted-set API for the sliding window."""

    def __init__(self):
        self.sets: dict[str, dict[str, float]] = {}

    async def zremrangebyscore(self, key, low, high):
        members = self.sets.get(key, {})
        for member, score in list(members.items()):
            if low <= score <= high:
                del members[member]

    async def zcard(self, key):
        return len(self.sets.get(key, {}))

    async def zrange(self, key, start, end, withscores=False):
        ordered = sorted(self.sets.get(key, {}).items(), key=lambda item: item[1])
        return ordered[start:end + 1]

    async def zadd(self, key, mapping):
        self.sets.setdefault(key, {}).update(mapping)

    async def expire(self, key, seconds):
        return True


def limited_app(**options) -> FastAPI:
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, **options)

    @app.post("/api/onboarding/start")
    async def start():
        return {"ok": True}

    @app.get("/health")
    async def health():
        return {"ok": True}

    return app


def make_request(headers: dict | None = None, client=("198.51.100.4", 5000)) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


@pytest.mark.unit
class TestClientIp:

    def test_forwarded_for_wins(self):
        request = make_request({"X-Forwarded-For": "203.0.113.1, 10.0.0.1", "X-Real-IP": "10.0.0.2"})
        assert client_ip(request) == "203.0.113.1"

    def test_real_ip(self):
        assert client_ip(make_request({"X-Real-IP": "203.0.113.2"})) == "203.0.113.2"

    def test_socket_address(self):
        assert client_ip(make_request()) == "198.51.100.4"

    def test_unknown(self):
        assert client_ip(make_request(client=None)) == "unknown"


@pytest.mark.unit
@pytest.mark.asyncio
class TestRateLimit:

    async def test_session_creation_is_limited(self, monkeypatch):
        fake = SortedSetRedis()

        async def get_fake():
            return fake

        monkeypatch.setattr(rate_limit, "get_redis", get_fake)
        app = limited_app()

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            for _ in range(10):
                response = await client.post("/api/onboarding/start")
                assert response.status_code == 200
            response = await client.post("/api/onboarding/start")

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"
        assert response.headers["x-ratelimit-remaining"] == "0"
        assert int(response.headers["retry-after"]) >= 1

    async def test_exempt_paths(self, monkeypatch):
        async def unreachable():
            raise AssertionError("redis must not be consulted")

        monkeypatch.setattr(rate_limit, "get_redis", unreachable)
        app = limited_app(exempt_paths=["/health"])

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/health")
        assert response.status_code == 200

    async def test_fails_open_without_redis(self, monkeypatch):
        async def down():
            raise RedisConnectionError("connection refused")

        monkeypatch.setattr(rate_limit, "get_redis", down)
        app = limited_app()

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/api/onboarding/start")
        assert response.status_code == 200

    async def test_disabled(self, monkeypatch):
        async def unreachable():
            raise AssertionError("redis must not be consulted")

        monkeypatch.setattr(rate_limit, "get_redis", unreachable)
        app = limited_app(enabled=False)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post("/api/onboarding/start")
        assert response.status_code == 200


@pytest.mark.unit
@pytest.mark.asyncio
class TestHTTPSRedirect:

    async def test_plain_http_is_redirected(self):
        app = FastAPI()
        app.add_middleware(HTTPSRedirectMiddleware, force_https=True)

        @app.get("/ping")
        async def ping():
            return {"ok": True}

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            redirected = await client.get("/ping")
            proxied = await client.get("/ping", headers={"x-forwarded-proto": "https"})

        assert redirected.status_code == 301
        assert redirected.headers["location"].startswith("https://test/ping")
        assert proxied.status_code == 200


@pytest.mark.unit
class TestCli:

    def test_unknown_command_prints_usage(self, capsys):
        assert cli.main(["frobnicate"]) == 2
        assert "python -m onboarding.cli cleanup" in capsys.readouterr().out
