"""
CONFLUX™ — Unit Tests for the Tradier Adapter
"""
from datetime import date, timedelta

import pytest

from conflux.data.adapters.tradier_adapter import TradierAdapter, as_list, resample_candles
from conflux.data.errors import DataProviderError
from conflux.data.models import Candle, ChainQueryOptions, DataSource
from conflux.data.subscriptions import noop_unsubscribe

HOUR_MS = 3_600_000
SESSION_OPEN_MS = 1_704_205_800_000  # 2024-01-02 14:30 UTC


def option_row(strike, type, bid=5.0, ask=5.2, mid_iv=25.0):
    return {
        "symbol": f"SPY{type[0].upper()}{int(strike)}",
        "strike": strike,
        "option_type": type,
        "bid": bid,
        "ask": ask,
        "last": (bid + ask) / 2,
        "bidsize": 10,
        "asksize": 12,
        "volume": 1000,
        "open_interest": 5000,
        "greeks": {"delta": 0.5 if type == "call" else -0.5, "gamma": 0.02, "theta": -0.04,
                   "vega": 0.12, "mid_iv": mid_iv, "smv_vol": 24.0},
    }


def quote_row(symbol="SPY", last=450.5, prevclose=448.0):
    change = last - prevclose
    return {
        "symbol": symbol, "last": last, "open": prevclose, "high": last + 1, "low": prevclose - 1,
        "volume": 1_000_000, "prevclose": prevclose, "change": change,
        "change_percentage": round(change / prevclose * 100, 4),
    }


@pytest.fixture
def adapter(settings, make_client):
    return TradierAdapter(settings, client=make_client("tradier"))


@pytest.fixture
def second_expiration():
    return (date.today() + timedelta(days=60)).isoformat()


class TestAsList:
    def test_collapsed_shapes(self):
        assert as_list(None) == []
        assert as_list("null") == []
        assert as_list({"a": 1}) == [{"a": 1}]
        assert as_list([1, 2]) == [1, 2]


class TestOptionChain:
    async def test_chain_across_expirations(self, adapter, fake_session, fake_response, expiration, second_expiration):
        fake_session.add("/markets/quotes", fake_response(200, {"quotes": {"quote": quote_row()}}))
        fake_session.add(
            "/markets/options/expirations",
            fake_response(200, {"expirations": {"date": [second_expiration, expiration]}}),
        )
        rows = [option_row(450.0, "call"), option_row(450.0, "put")]
        fake_session.add("/markets/options/chains", fake_response(200, {"options": {"option": rows}}))

        chain = await adapter.get_option_chain("SPY")
        assert chain.underlying_price == 450.5
        assert len(chain.contracts) == 4
        assert {c.expiration for c in chain.contracts} == {expiration, second_expiration}
        assert chain.quality.source == DataSource.SECONDARY
        assert chain.contracts[0].greeks.iv == pytest.approx(0.25)
        assert chain.contracts[0].quote.bid_size == 10

    async def test_smv_vol_used_without_mid_iv(self, adapter, fake_session, fake_response, expiration):
        fake_session.add("/markets/quotes", fake_response(200, {"quotes": {"quote": quote_row()}}))
        fake_session.add("/markets/options/expirations", fake_response(200, {"expirations": {"date": expiration}}))
        fake_session.add(
            "/markets/options/chains",
            fake_response(200, {"options": {"option": [option_row(450.0, "call", mid_iv=0), option_row(450.0, "put")]}}),
        )
        chain = await adapter.get_option_chain("SPY")
        assert chain.calls[0].greeks.iv == pytest.approx(0.24)

    async def test_failing_expiration_skipped(self, adapter, fake_session, fake_response, expiration, second_expiration):
        fake_session.add("/markets/quotes", fake_response(200, {"quotes": {"quote": quote_row()}}))
        fake_session.add(
            "/markets/options/expirations",
            fake_response(200, {"expirations": {"date": [expiration, second_expiration]}}),
        )
        rows = [option_row(450.0, "call"), option_row(450.0, "put")]
        fake_session.add(
            "/markets/options/chains",
            fake_response(400, body="bad expiration", reason="Bad Request"),
            fake_response(200, {"options": {"option": rows}}),
        )
        chain = await adapter.get_option_chain("SPY")
        assert len(chain.contracts) == 2
        assert len({c.expiration for c in chain.contracts}) == 1

    async def test_limit_bounds_expiration_fanout(self, adapter, fake_session, fake_response, expiration, second_expiration):
        fake_session.add("/markets/quotes", fake_response(200, {"quotes": {"quote": quote_row()}}))
        fake_session.add(
            "/markets/options/expirations",
            fake_response(200, {"expirations": {"date": [expiration, second_expiration]}}),
        )
        fake_session.add("/markets/options/chains", fake_response(200, {"options": {"option": [option_row(450.0, "call")]}}))
        await adapter.get_option_chain("SPY", ChainQueryOptions(limit=5))
        assert len(fake_session.calls_to("/markets/options/chains")) == 1

    async def test_contract_not_found(self, adapter, fake_session, fake_response, expiration):
        fake_session.add("/markets/quotes", fake_response(200, {"quotes": {"quote": quote_row()}}))
        fake_session.add("/markets/options/expirations", fake_response(200, {"expirations": {"date": [expiration]}}))
        fake_session.add("/markets/options/chains", fake_response(200, {"options": None}))
        with pytest.raises(DataProviderError) as exc:
            await adapter.get_option_contract("SPY", 450.0, expiration, "call")
        assert exc.value.code == "CONTRACT_NOT_FOUND"

    async def test_expirations_filtered(self, adapter, fake_session, fake_response):
        dates = ["2031-01-17", "2031-02-21", "2031-03-21"]
        fake_session.add("/markets/options/expirations", fake_response(200, {"expirations": {"date": dates}}))
        assert await adapter.get_expirations("SPY", min_date="2031-02-01") == ["2031-02-21", "2031-03-21"]


class TestQuotes:
    async def test_equity_quote(self, adapter, fake_session, fake_response):
        fake_session.add("/markets/quotes", fake_response(200, {"quotes": {"quote": quote_row()}}))
        quote = await adapter.get_equity_quote("spy")
        assert quote.symbol == "SPY"
        assert quote.price == 450.5
        assert quote.prev_close == 448.0
        assert quote.quality.source == DataSource.SECONDARY
        assert fake_session.calls[0]["params"]["symbols"] == "SPY"

    async def test_unknown_symbol(self, adapter, fake_session, fake_response):
        fake_session.add("/markets/quotes", fake_response(200, {"quotes": {"unmatched_symbols": {"symbol": "ZZZ"}}}))
        with pytest.raises(DataProviderError) as exc:
            await adapter.get_equity_quote("ZZZ")
        assert exc.value.code == "QUOTE_NOT_FOUND"

    async def test_index_snapshot(self, adapter, fake_session, fake_response):
        quotes = [quote_row("SPX", 5000.0, 4980.0), quote_row("NDX", 17_500.0, 17_400.0)]
        fake_session.add("/markets/quotes", fake_response(200, {"quotes": {"quote": quotes}}))
        snapshots = await adapter.get_index_snapshot(["SPX", "I:NDX"])
        assert set(snapshots) == {"SPX", "NDX"}
        assert snapshots["SPX"].quote.change == pytest.approx(20.0)
        assert snapshots["NDX"].quality.is_stale is False

    async def test_flow_has_no_signal(self, adapter):
        flow = await adapter.get_flow_data("SPY")
        assert not flow.has_signal


class TestHistory:
    def _timesales(self, count, step_ms):
        return [
            {"timestamp": (SESSION_OPEN_MS + i * step_ms) // 1000, "open": 100 + i, "high": 101 + i,
             "low": 99 + i, "close": 100.5 + i, "volume": 100, "vwap": 100.2 + i}
            for i in range(count)
        ]

    async def test_intraday_from_timesales(self, adapter, fake_session, fake_response):
        fake_session.add("/markets/timesales", fake_response(200, {"series": {"data": self._timesales(3, 300_000)}}))
        candles = await adapter.get_candles("SPY", "5m", "2024-01-02", "2024-01-02")
        assert [c.time for c in candles] == [SESSION_OPEN_MS, SESSION_OPEN_MS + 300_000, SESSION_OPEN_MS + 600_000]
        assert fake_session.calls[0]["params"]["interval"] == "5min"

    async def test_hourly_resampled_from_quarter_hours(self, adapter, fake_session, fake_response):
        fake_session.add("/markets/timesales", fake_response(200, {"series": {"data": self._timesales(4, 900_000)}}))
        candles = await adapter.get_candles("SPY", "1h", "2024-01-02", "2024-01-02")

        assert fake_session.calls[0]["params"]["interval"] == "15min"
        assert len(candles) == 2
        first = candles[0]
        assert first.time == SESSION_OPEN_MS - HOUR_MS // 2
        assert first.open == 100
        assert first.high == 102
        assert first.close == 101.5
        assert first.volume == 200

    async def test_daily_history_single_row(self, adapter, fake_session, fake_response):
        day = {"date": "2024-01-02", "open": 470.0, "high": 475.0, "low": 468.0, "close": 472.0, "volume": 5e7}
        fake_session.add("/markets/history", fake_response(200, {"history": {"day": day}}))
        bars = await adapter.get_bars("SPY", "daily", "2024-01-01", "2024-01-03")
        assert len(bars) == 1
        assert bars[0].time == 1_704_153_600_000
        assert bars[0].close == 472.0

    async def test_bad_rows_skipped(self, adapter, fake_session, fake_response):
        rows = [{"date": "2024-01-02", "open": 1.0}, {"date": "2024-01-03", "open": 1, "high": 2, "low": 0.5, "close": 1.5}]
        fake_session.add("/markets/history", fake_response(200, {"history": {"day": rows}}))
        assert len(await adapter.get_candles("SPY", "1d", "2024-01-01", "2024-01-03")) == 1


class TestResample:
    def test_empty(self):
        assert resample_candles([], "1h") == []

    def test_buckets(self):
        candles = [
            Candle(time=SESSION_OPEN_MS + i * 60_000, open=10 + i, high=11 + i, low=9 + i, close=10.5 + i, volume=10)
            for i in range(90)
        ]
        hourly = resample_candles(candles, "1h")
        assert len(hourly) == 2
        assert hourly[0].volume == 300
        assert hourly[1].close == candles[-1].close


class TestSubscriptions:
    def test_all_noop(self, adapter):
        assert adapter.subscribe_to_chain("SPY", lambda c: None) is noop_unsubscribe
        assert adapter.subscribe_to_equity("SPY", lambda q: None) is noop_unsubscribe
        assert adapter.subscribe_to_index("SPX", lambda s: None) is noop_unsubscribe
