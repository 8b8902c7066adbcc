"""
CONFLUX™ — Integration Tests for the HTTP API
"""
import pytest
from fastapi.testclient import TestClient

from conflux.api.app import create_app
from conflux.data.errors import DataProviderError
from conflux.data.router import HybridRouter
from conflux.hub.market_data_hub import HubConfig, MarketDataHub


def outage(vendor):
    return DataProviderError("Max retries exceeded", "MAX_RETRIES_EXCEEDED", vendor, 503)


def build_hub(primary, secondary, settings):
    config = HubConfig(watchlist_symbols=["SPY"], index_tickers=["SPX", "NDX"], ws_enabled=False)
    return MarketDataHub(HybridRouter(primary, secondary, settings), config)


@pytest.fixture
def client(healthy_primary, secondary, settings):
    with TestClient(create_app(hub=build_hub(healthy_primary, secondary, settings))) as c:
        yield c


class TestSystem:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_metrics(self, client):
        body = client.get("/metrics").json()
        assert body["hub"]["running"] is True
        assert body["hub"]["data"]["option_chains"] == 1
        assert "providers" in body["hub"]

    def test_provider_health(self, client):
        body = client.get("/api/v1/health/providers").json()
        assert body["primary_healthy"] is True
        assert body["can_fallback"] is True
        assert body["primary"]["total_calls"] >= 1


class TestMarketData:
    def test_snapshot(self, client):
        body = client.get("/api/v1/snapshot").json()
        assert set(body["option_chains"]) == {"SPY"}
        assert set(body["indices"]) == {"SPX", "NDX"}
        assert body["quality"]["source"] == "hybrid"

    def test_chain_from_snapshot(self, client, healthy_primary):
        calls = len(healthy_primary.calls)
        response = client.get("/api/v1/chains/spy")
        assert response.status_code == 200
        assert response.json()["underlying"] == "SPY"
        assert len(healthy_primary.calls) == calls

    def test_chain_off_watchlist_goes_through_router(self, client, healthy_primary):
        calls = healthy_primary.calls.count("get_option_chain")
        response = client.get("/api/v1/chains/QQQ")
        assert response.status_code == 200
        assert healthy_primary.calls.count("get_option_chain") == calls + 1

    def test_index(self, client):
        response = client.get("/api/v1/indices/I:SPX")
        assert response.status_code == 200
        assert response.json()["quote"]["value"] == 5000.0

    def test_untracked_index(self, client):
        response = client.get("/api/v1/indices/RUT")
        assert response.status_code == 404
        assert "RUT" in response.json()["detail"]


class TestChainFailure:
    def test_both_providers_down(self, primary, secondary, settings, make_equity, make_index):
        primary.set("get_option_chain", outage("massive"))
        primary.set("get_equity_quote", make_equity())
        primary.set("get_index_snapshot", {"SPX": make_index("SPX")})
        secondary.set("get_option_chain", outage("tradier"))

        with TestClient(create_app(hub=build_hub(primary, secondary, settings))) as c:
            assert c.get("/healthz").status_code == 200
            response = c.get("/api/v1/chains/SPY")
            assert response.status_code == 502
            assert "All providers failed" in response.json()["detail"]


class TestWatchlist:
    def test_replace(self, client):
        response = client.put("/api/v1/watchlist", json={"symbols": ["qqq"]})
        assert response.status_code == 200
        assert response.json() == {"added": ["QQQ"], "removed": ["SPY"], "watchlist": ["QQQ"]}
        snapshot = client.get("/api/v1/snapshot").json()
        assert set(snapshot["option_chains"]) == {"QQQ"}

    def test_empty_list_rejected(self, client):
        assert client.put("/api/v1/watchlist", json={"symbols": []}).status_code == 422
