"""
CONFLUX™ — Unit Tests for the Market Data Hub
"""
import asyncio

import pytest

from conflux.data.errors import DataProviderError
from conflux.data.models import (
    DataQualityLevel,
    DataSource,
    FlowData,
    MarketDataSnapshot,
    QualityFlags,
    TickType,
)
from conflux.data.router import HybridRouter
from conflux.hub.market_data_hub import HubConfig, MarketDataHub, aggregate_quality


def hub_config(**overrides):
    values = dict(
        watchlist_symbols=["SPY"],
        index_tickers=["SPX", "NDX"],
        refresh_interval_ms=60_000,
        batch_window_ms=20,
        ws_enabled=True,
    )
    values.update(overrides)
    return HubConfig(**values)


def flags(confidence, quality=DataQualityLevel.GOOD, warnings=()):
    return QualityFlags(
        source=DataSource.PRIMARY, quality=quality, confidence=confidence,
        has_warnings=bool(warnings), warnings=tuple(warnings),
    )


@pytest.fixture
def router(healthy_primary, secondary, settings):
    return HybridRouter(healthy_primary, secondary, settings)


@pytest.fixture
async def hub(router):
    hub = MarketDataHub(router, hub_config())
    await hub.initialize()
    yield hub
    await hub.shutdown()


class TestInitialize:
    async def test_first_snapshot_holds_fetched_data(self, router):
        hub = MarketDataHub(router, hub_config())
        snapshots = []
        hub.subscribe_snapshot("ui", snapshots.append)
        await hub.initialize()

        assert hub.is_running
        assert hub.get_option_chain("spy") is not None
        assert hub.get_equity("SPY").price == 450.0
        assert set(hub.get_snapshot().indices) == {"SPX", "NDX"}
        assert len(snapshots) == 1
        await hub.shutdown()

    async def test_push_subscriptions_opened(self, hub, healthy_primary):
        for key in ("chain:SPY", "flow:SPY", "equity:SPY", "index:SPX", "index:NDX"):
            assert healthy_primary.registry.has(key)

    async def test_no_push_or_polling_when_disabled(self, router, healthy_primary):
        hub = MarketDataHub(router, hub_config(ws_enabled=False))
        await hub.initialize()
        assert healthy_primary.registry.keys() == []
        assert hub._poll_handle is None
        await hub.shutdown()

    async def test_initialize_twice_is_noop(self, hub, healthy_primary):
        calls = len(healthy_primary.calls)
        await hub.initialize()
        assert len(healthy_primary.calls) == calls


class TestBatching:
    async def test_three_pushes_emit_one_tick(self, hub, healthy_primary, make_chain):
        ticks = []
        hub.subscribe_tick("t", ticks.append)
        chains = [make_chain(price=p) for p in (450.0, 451.0, 452.0)]
        for chain in chains:
            healthy_primary.registry.publish("chain:SPY", chain)
        assert ticks == []

        await asyncio.sleep(0.06)
        assert len(ticks) == 1
        assert ticks[0].key == "option:SPY"
        assert ticks[0].type == TickType.OPTION
        assert ticks[0].data.underlying_price == 452.0

    async def test_distinct_keys_each_tick(self, hub, healthy_primary, make_chain):
        ticks = []
        hub.subscribe_tick("t", ticks.append)
        healthy_primary.registry.publish("chain:SPY", make_chain())
        healthy_primary.registry.publish("flow:SPY", FlowData(flow_score=40.0))
        assert hub.flush_pending() == 2
        assert {t.key for t in ticks} == {"option:SPY", "flow:SPY"}
        assert hub.get_flow("SPY").flow_score == 40.0

    async def test_push_visible_in_snapshot_before_flush(self, hub, healthy_primary, make_chain):
        healthy_primary.registry.publish("chain:SPY", make_chain(price=455.0))
        assert hub.get_option_chain("SPY").underlying_price == 455.0

    async def test_one_snapshot_per_batch(self, hub, healthy_primary, make_chain, make_index):
        snapshots = []
        hub.subscribe_snapshot("s", snapshots.append)
        healthy_primary.registry.publish("chain:SPY", make_chain())
        healthy_primary.registry.publish("index:SPX", make_index())
        hub.flush_pending()
        assert len(snapshots) == 1

    async def test_direct_publish_supersedes_pending(self, hub, healthy_primary, make_chain):
        ticks = []
        hub.subscribe_tick("t", ticks.append)
        healthy_primary.registry.publish("chain:SPY", make_chain(price=999.0))
        await hub.poll_once()

        option_ticks = [t for t in ticks if t.key == "option:SPY"]
        assert len(option_ticks) == 1
        assert option_ticks[0].data.underlying_price == 450.0
        assert hub.flush_pending() == 0

    async def test_subscriber_error_isolated(self, hub, healthy_primary, make_chain):
        received = []

        def broken(tick):
            raise RuntimeError("consumer bug")

        hub.subscribe_tick("broken", broken)
        hub.subscribe_tick("ok", received.append)
        healthy_primary.registry.publish("chain:SPY", make_chain())
        hub.flush_pending()
        assert len(received) == 1

    async def test_unsubscribe(self, hub, healthy_primary, make_chain):
        ticks = []
        unsubscribe = hub.subscribe_tick("t", ticks.append)
        unsubscribe()
        healthy_primary.registry.publish("chain:SPY", make_chain())
        hub.flush_pending()
        assert ticks == []


class TestPolling:
    async def test_failure_isolated_per_symbol(self, healthy_primary, secondary, settings, make_chain, monkeypatch):
        async def chain_for(underlying, options=None):
            if underlying == "BAD":
                raise DataProviderError("Max retries exceeded", "MAX_RETRIES_EXCEEDED", "massive", 503)
            return make_chain(underlying=underlying)

        monkeypatch.setattr(healthy_primary, "get_option_chain", chain_for)
        secondary.set("get_option_chain", DataProviderError("down", "NETWORK_ERROR", "tradier"))
        router = HybridRouter(healthy_primary, secondary, settings)
        hub = MarketDataHub(router, hub_config(watchlist_symbols=["SPY", "BAD"], ws_enabled=False))
        await hub.initialize()

        assert hub.get_option_chain("SPY") is not None
        assert hub.get_option_chain("BAD") is None
        assert hub.get_equity("BAD") is not None
        assert hub.get_metrics()["poll_errors"] == 1
        await hub.shutdown()

    async def test_timer_drives_polls(self, router):
        hub = MarketDataHub(router, hub_config(refresh_interval_ms=20))
        await hub.initialize()
        await asyncio.sleep(0.1)
        assert hub.get_metrics()["polls"] >= 2
        await hub.shutdown()

    async def test_poll_publishes_one_snapshot(self, hub):
        snapshots = []
        hub.subscribe_snapshot("s", snapshots.append)
        await hub.poll_once()
        assert len(snapshots) == 1


class TestWatchlist:
    async def test_add_and_remove(self, hub, healthy_primary):
        result = await hub.update_watchlist(["qqq"])
        assert result == {"added": ["QQQ"], "removed": ["SPY"], "watchlist": ["QQQ"]}
        assert hub.get_option_chain("SPY") is None
        assert hub.get_option_chain("QQQ") is not None
        assert not healthy_primary.registry.has("chain:SPY")
        assert healthy_primary.registry.has("chain:QQQ")

    async def test_unchanged_list(self, hub):
        result = await hub.update_watchlist(["SPY", "spy"])
        assert result == {"added": [], "removed": [], "watchlist": ["SPY"]}


class TestShutdown:
    async def test_releases_everything(self, router, healthy_primary, make_chain):
        hub = MarketDataHub(router, hub_config())
        await hub.initialize()
        ticks = []
        hub.subscribe_tick("t", ticks.append)
        await hub.shutdown()

        assert not hub.is_running
        assert healthy_primary.registry.keys() == []
        healthy_primary.registry.publish("chain:SPY", make_chain())
        assert hub.flush_pending() == 0
        assert ticks == []


class TestMetrics:
    async def test_metrics_include_providers(self, hub):
        metrics = hub.get_metrics()
        assert metrics["running"]
        assert metrics["data"]["option_chains"] == 1
        assert metrics["subscribers"]["push"] == 5
        assert metrics["providers"]["primary_healthy"] is True
        assert "fallbacks" in metrics["router"]

    async def test_metrics_without_provider_detail(self, router):
        hub = MarketDataHub(router, hub_config(enable_metrics=False))
        assert "providers" not in hub.get_metrics()


class TestAggregateQuality:
    def test_empty_snapshot_is_excellent(self):
        quality = aggregate_quality(MarketDataSnapshot())
        assert quality.confidence == 100
        assert quality.quality == DataQualityLevel.EXCELLENT
        assert not quality.is_stale

    def test_mean_confidence(self, make_chain, make_index):
        snapshot = MarketDataSnapshot(
            option_chains={"SPY": make_chain(quality=flags(100, DataQualityLevel.EXCELLENT))},
            indices={"SPX": make_index(quality=flags(40, DataQualityLevel.FAIR, ["Zero volume"]))},
        )
        quality = aggregate_quality(snapshot)
        assert quality.confidence == 70
        assert quality.quality == DataQualityLevel.GOOD
        assert quality.has_warnings
        assert quality.warnings == ("Zero volume",)
        assert quality.source == DataSource.HYBRID

    def test_low_mean_is_stale(self, make_chain, make_index):
        snapshot = MarketDataSnapshot(
            option_chains={"SPY": make_chain(quality=flags(30, DataQualityLevel.POOR))},
            indices={"SPX": make_index(quality=flags(40, DataQualityLevel.FAIR))},
        )
        quality = aggregate_quality(snapshot)
        assert quality.is_stale
        assert quality.quality == DataQualityLevel.POOR
