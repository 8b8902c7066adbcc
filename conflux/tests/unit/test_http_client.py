"""
CONFLUX™ — Unit Tests for the Vendor HTTP Client
"""
import asyncio

import aiohttp
import pytest

from conflux.data.errors import DataProviderError


class TestGetJson:
    async def test_success(self, make_client, fake_session, fake_response):
        fake_session.add("/v1/ping", fake_response(200, {"ok": True}))
        client = make_client()
        assert await client.get_json("/v1/ping", {"a": 1, "b": None}) == {"ok": True}
        assert fake_session.calls[0]["params"] == {"a": 1}
        assert fake_session.calls[0]["url"] == "https://massive.test/v1/ping"

    async def test_retries_5xx_then_succeeds(self, make_client, fake_session, fake_response, sleeper):
        fake_session.add("/x", fake_response(503, reason="Unavailable"), fake_response(200, [1, 2]))
        client = make_client()
        assert await client.get_json("/x") == [1, 2]
        assert len(fake_session.calls) == 2
        assert sleeper.delays == [0.1]

    async def test_backoff_doubles_and_exhausts(self, make_client, fake_session, fake_response, sleeper):
        fake_session.add("/x", fake_response(500, reason="Boom"))
        client = make_client(max_retries=2)
        with pytest.raises(DataProviderError) as exc:
            await client.get_json("/x")
        assert exc.value.code == "MAX_RETRIES_EXCEEDED"
        assert exc.value.status_code == 500
        assert exc.value.vendor == "massive"
        assert len(fake_session.calls) == 3
        assert sleeper.delays == [0.1, 0.2]

    async def test_backoff_is_capped(self, make_client):
        client = make_client()
        assert client.backoff_seconds(0) == 0.1
        assert client.backoff_seconds(3) == 0.8
        assert client.backoff_seconds(10) == 2.0

    async def test_rate_limit_honors_retry_after(self, make_client, fake_session, fake_response, sleeper):
        fake_session.add(
            "/x",
            fake_response(429, headers={"Retry-After": "3"}, reason="Too Many Requests"),
            fake_response(200, {"ok": 1}),
        )
        client = make_client()
        assert await client.get_json("/x") == {"ok": 1}
        assert sleeper.delays == [3.0]

    async def test_retry_after_is_capped(self, make_client, fake_session, fake_response, sleeper):
        fake_session.add("/x", fake_response(429, headers={"Retry-After": "600"}), fake_response(200, {}))
        await make_client().get_json("/x")
        assert sleeper.delays == [30.0]

    async def test_client_error_not_retried(self, make_client, fake_session, fake_response, sleeper):
        fake_session.add("/x", fake_response(404, body="not found", reason="Not Found"))
        with pytest.raises(DataProviderError) as exc:
            await make_client().get_json("/x")
        assert exc.value.code == "VENDOR_API_ERROR"
        assert exc.value.status_code == 404
        assert not exc.value.retryable
        assert len(fake_session.calls) == 1
        assert sleeper.delays == []

    async def test_malformed_body_not_retried(self, make_client, fake_session, fake_response):
        fake_session.add("/x", fake_response(200, body="<html>oops"))
        with pytest.raises(DataProviderError) as exc:
            await make_client().get_json("/x")
        assert exc.value.code == "MALFORMED_RESPONSE"
        assert len(fake_session.calls) == 1

    async def test_timeout_retried(self, make_client, fake_session, fake_response):
        fake_session.add("/x", asyncio.TimeoutError(), fake_response(200, {"ok": True}))
        assert await make_client().get_json("/x") == {"ok": True}

    async def test_network_error_exhausts(self, make_client, fake_session):
        fake_session.add("/x", aiohttp.ClientConnectionError("refused"))
        with pytest.raises(DataProviderError) as exc:
            await make_client(max_retries=1).get_json("/x")
        assert exc.value.code == "MAX_RETRIES_EXCEEDED"
        assert isinstance(exc.value.cause, DataProviderError)
        assert exc.value.cause.code == "NETWORK_ERROR"

    async def test_absolute_urls_pass_through(self, make_client, fake_session, fake_response):
        fake_session.add("/v3/snapshot/options/SPY", fake_response(200, {}))
        await make_client().get_json("https://other.test/v3/snapshot/options/SPY?cursor=abc")
        assert fake_session.calls[0]["url"].startswith("https://other.test/")

    async def test_injected_session_not_closed(self, make_client, fake_session):
        client = make_client()
        await client.close()
        assert not fake_session.closed

    async def test_stats(self, make_client, fake_session, fake_response):
        fake_session.add("/x", fake_response(502), fake_response(200, {}))
        client = make_client()
        await client.get_json("/x")
        stats = client.stats
        assert stats["requests"] == 2
        assert stats["successes"] == 1
        assert stats["failures"] == 1
        assert stats["retries"] == 1

    async def test_timeout_applied_to_injected_session(self, make_client, fake_session, fake_response):
        fake_session.add("/x", fake_response(200, {}))
        client = make_client()
        await client.get_json("/x")
        timeout = fake_session.calls[0]["timeout"]
        assert isinstance(timeout, aiohttp.ClientTimeout)
        assert timeout.total == client.timeout_seconds
