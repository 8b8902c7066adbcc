"""
CONFLUX™ — Test Configuration & Fixtures
Entity factories, a fake aiohttp session and scripted providers shared by all
test modules.
"""
import asyncio
import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
import pytest

from conflux.config.settings import AppSettings
from conflux.data.adapters.base import MarketDataProvider
from conflux.data.adapters.http_client import VendorHttpClient
from conflux.data.models import (
    Candle,
    DataSource,
    EquityQuote,
    FlowData,
    IndexQuote,
    IndexSnapshot,
    OptionChain,
    OptionContract,
    OptionGreeks,
    OptionLiquidity,
    OptionQuote,
    QualityFlags,
)
from conflux.data.subscriptions import SubscriptionRegistry
from conflux.utils.helpers import utc_now


# ─── Clock ──────────────────────────────────────────────────────

class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


# ─── aiohttp doubles ────────────────────────────────────────────

class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None, body: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None, reason: str = "OK"):
        self.status = status
        self._payload = payload
        self._body = body
        self.headers = headers or {}
        self.reason = reason

    async def text(self) -> str:
        if self._body is not None:
            return self._body
        return json.dumps(self._payload)

    async def json(self, content_type=None) -> Any:
        if self._body is not None:
            return json.loads(self._body)
        return self._payload


class _RequestContext:
    def __init__(self, outcome):
        self._outcome = outcome

    async def __aenter__(self):
        if isinstance(self._outcome, BaseException):
            raise self._outcome
        return self._outcome

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    """
    Scripted replacement for aiohttp.ClientSession.get. Routes map a path
    suffix to a list of outcomes consumed in order (the last one repeats);
    an outcome is a FakeResponse or an exception to raise.
    """

    def __init__(self, routes: Optional[Dict[str, List[Any]]] = None):
        self.routes: Dict[str, List[Any]] = {k: list(v) for k, v in (routes or {}).items()}
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def add(self, path: str, *outcomes: Any) -> None:
        self.routes.setdefault(path, []).extend(outcomes)

    def replace(self, path: str, *outcomes: Any) -> None:
        self.routes[path] = list(outcomes)

    def _match(self, url: str) -> List[Any]:
        path = url.split("?", 1)[0]
        for suffix in sorted(self.routes, key=len, reverse=True):
            if path.endswith(suffix):
                return self.routes[suffix]
        raise AssertionError(f"unexpected request: {url}")

    def get(self, url: str, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "headers": headers, "timeout": timeout})
        outcomes = self._match(url)
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        return _RequestContext(outcome)

    def calls_to(self, suffix: str) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["url"].split("?", 1)[0].endswith(suffix)]

    async def close(self) -> None:
        self.closed = True


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def vendor_sessions():
    """One scripted session per vendor, for tests wiring both adapters."""
    return {"massive": FakeSession(), "tradier": FakeSession()}


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def settings():
    return AppSettings(_env_file=None)


@pytest.fixture
def make_client(fake_session, sleeper):
    def _make(vendor: str = "massive", max_retries: int = 2, session: Optional[FakeSession] = None):
        return VendorHttpClient(
            vendor=vendor,
            base_url=f"https://{vendor}.test",
            headers={"Authorization": "Bearer test"},
            max_retries=max_retries,
            session=session or fake_session,
            sleep=sleeper,
        )
    return _make


# ─── Entity factories ───────────────────────────────────────────

def _future_expiration(days: int = 30) -> str:
    return (date.today() + timedelta(days=days)).isoformat()


@pytest.fixture
def expiration():
    return _future_expiration()


def build_contract(
    strike: float = 450.0,
    type: str = "call",
    expiration: Optional[str] = None,
    bid: float = 5.0,
    ask: float = 5.2,
    volume: float = 1_000,
    open_interest: float = 5_000,
    delta: Optional[float] = None,
    gamma: float = 0.02,
    iv: float = 0.25,
    updated_at: Optional[datetime] = None,
    source: DataSource = DataSource.PRIMARY,
    ticker: Optional[str] = None,
) -> OptionContract:
    expiration = expiration or _future_expiration()
    mid = (bid + ask) / 2
    if delta is None:
        delta = 0.5 if type == "call" else -0.5
    return OptionContract(
        ticker=ticker or f"O:SPY{expiration.replace('-', '')[2:]}{type[0].upper()}{int(strike * 1000):08d}",
        root_symbol="SPY",
        strike=strike,
        expiration=expiration,
        type=type,
        dte=30,
        quote=OptionQuote(bid=bid, ask=ask, mid=mid, last=mid),
        greeks=OptionGreeks(delta=delta, gamma=gamma, theta=-0.05, vega=0.1, iv=iv),
        liquidity=OptionLiquidity(
            volume=volume,
            open_interest=open_interest,
            spread_points=ask - bid,
            spread_percent=(ask - bid) / mid * 100 if mid else 0.0,
        ),
        quality=QualityFlags(source=source, updated_at=updated_at or utc_now()),
    )


def build_chain(
    strikes=(440.0, 445.0, 450.0, 455.0, 460.0),
    underlying: str = "SPY",
    price: float = 450.0,
    updated_at: Optional[datetime] = None,
    source: DataSource = DataSource.PRIMARY,
    quality: Optional[QualityFlags] = None,
    **contract_kwargs,
) -> OptionChain:
    contracts = [
        build_contract(strike=s, type=t, updated_at=updated_at, source=source, **contract_kwargs)
        for s in strikes
        for t in ("call", "put")
    ]
    return OptionChain(
        underlying=underlying,
        underlying_price=price,
        contracts=contracts,
        quality=quality or QualityFlags(source=source, updated_at=updated_at or utc_now()),
    )


def build_index(
    symbol: str = "SPX",
    value: float = 5_000.0,
    prev_close: float = 4_980.0,
    updated_at: Optional[datetime] = None,
    source: DataSource = DataSource.PRIMARY,
    quality: Optional[QualityFlags] = None,
) -> IndexSnapshot:
    return IndexSnapshot(
        symbol=symbol,
        quote=IndexQuote(
            symbol=symbol,
            value=value,
            change=value - prev_close,
            change_percent=(value - prev_close) / prev_close * 100,
            open=prev_close,
            high=max(value, prev_close) + 5,
            low=min(value, prev_close) - 5,
            prev_close=prev_close,
        ),
        quality=quality or QualityFlags(source=source, updated_at=updated_at or utc_now()),
        updated_at=updated_at or utc_now(),
    )


def build_equity(symbol: str = "SPY", price: float = 450.0, source: DataSource = DataSource.PRIMARY) -> EquityQuote:
    return EquityQuote(
        symbol=symbol,
        price=price,
        open=448.0,
        high=452.0,
        low=447.0,
        volume=1_000_000,
        prev_close=448.0,
        change=price - 448.0,
        change_percent=(price - 448.0) / 448.0 * 100,
        quality=QualityFlags(source=source),
    )


@pytest.fixture
def make_contract():
    return build_contract


@pytest.fixture
def make_chain():
    return build_chain


@pytest.fixture
def make_index():
    return build_index


@pytest.fixture
def make_equity():
    return build_equity


@pytest.fixture
def sample_candles() -> List[Candle]:
    """Realistic one-minute candles."""
    np.random.seed(42)
    n = 200
    start = pd.Timestamp("2024-01-02 14:30", tz=timezone.utc)
    prices = 100.0 * np.exp(np.cumsum(np.random.normal(0.0001, 0.002, n))) + np.linspace(0, 5, n)
    candles = []
    for i, p in enumerate(prices):
        open_ = p + np.random.normal(0, 0.1)
        high = max(open_, p) + abs(np.random.normal(0, 0.5)) + 0.01
        low = min(open_, p) - abs(np.random.normal(0, 0.5)) - 0.01
        candles.append(
            Candle(
                time=int((start + pd.Timedelta(minutes=i)).value // 1_000_000),
                open=float(open_),
                high=float(high),
                low=float(low),
                close=float(p),
                volume=float(np.random.randint(1000, 50000)),
            )
        )
    return candles


# ─── Scripted provider ──────────────────────────────────────────

class ScriptedProvider(MarketDataProvider):
    """
    Provider whose results are set per operation. A result that is an
    exception is raised; a list of results is consumed in order.
    """

    def __init__(self, name: str = "scripted"):
        self.name = name
        self.results: Dict[str, Any] = {}
        self.calls: List[str] = []
        self.registry = SubscriptionRegistry(name)
        self.connected = False

    def set(self, operation: str, *results: Any) -> None:
        self.results[operation] = list(results)

    async def _answer(self, operation: str) -> Any:
        self.calls.append(operation)
        await asyncio.sleep(0)
        script = self.results.get(operation)
        if not script:
            raise AssertionError(f"{self.name}: no result scripted for {operation}")
        outcome = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def get_option_chain(self, underlying, options=None):
        return await self._answer("get_option_chain")

    async def get_option_contract(self, underlying, strike, expiration, type):
        return await self._answer("get_option_contract")

    async def get_expirations(self, underlying, min_date=None, max_date=None):
        return await self._answer("get_expirations")

    async def get_flow_data(self, underlying, start_time=None, end_time=None):
        return await self._answer("get_flow_data")

    async def get_index_snapshot(self, tickers):
        return await self._answer("get_index_snapshot")

    async def get_indicators(self, ticker, timeframe, lookback=None):
        return await self._answer("get_indicators")

    async def get_candles(self, ticker, timeframe, from_date, to_date, limit=None):
        return await self._answer("get_candles")

    async def get_equity_quote(self, symbol):
        return await self._answer("get_equity_quote")

    async def get_bars(self, symbol, interval, from_date, to_date, limit=None):
        return await self._answer("get_bars")

    def subscribe_to_chain(self, underlying, callback):
        return self.registry.add(f"chain:{underlying}", callback)

    def subscribe_to_option(self, underlying, strike, expiration, type, callback):
        return self.registry.add(f"option:{underlying}:{strike:g}:{expiration}:{type}", callback)

    def subscribe_to_flow(self, underlying, callback):
        return self.registry.add(f"flow:{underlying}", callback)

    def subscribe_to_index(self, ticker, callback):
        return self.registry.add(f"index:{ticker}", callback)

    def subscribe_to_timeframe(self, ticker, timeframe, callback):
        return self.registry.add(f"timeframe:{ticker}:{timeframe}", callback)

    def subscribe_to_equity(self, symbol, callback):
        return self.registry.add(f"equity:{symbol}", callback)


@pytest.fixture
def primary():
    return ScriptedProvider("primary")


@pytest.fixture
def secondary():
    return ScriptedProvider("secondary")


@pytest.fixture
def healthy_primary(primary, make_chain, make_index, make_equity):
    """Primary answering every hub fetch with good data."""
    primary.set("get_option_chain", make_chain())
    primary.set("get_equity_quote", make_equity())
    primary.set("get_index_snapshot", {"SPX": make_index("SPX"), "NDX": make_index("NDX", 17_500.0, 17_400.0)})
    primary.set("get_flow_data", FlowData(flow_score=65.0, sweep_count=3))
    return primary
