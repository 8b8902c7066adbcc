"""
CONFLUX™ — Tradier Data Adapter
Secondary vendor: per-expiration chains with percent-encoded IV, quotes for
equities and indices, daily history and intraday timesales. No push channel.
"""
import asyncio
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

import pandas as pd

from conflux.config.settings import AppSettings, get_settings
from conflux.data.adapters.base import BaseProviderAdapter
from conflux.data.adapters.http_client import VendorHttpClient
from conflux.data.cache.ttl_cache import make_key
from conflux.data.errors import DataProviderError, ValidationError
from conflux.data.iv import IVEncoding
from conflux.data.models import (
    Bar,
    Candle,
    ChainQueryOptions,
    DataSource,
    EquityQuote,
    FlowData,
    IndexQuote,
    IndexSnapshot,
    OptionChain,
    OptionContract,
    OptionType,
    Timeframe,
)
from conflux.data.subscriptions import Unsubscribe, noop_unsubscribe
from conflux.data.validation import validate_equity_quote, validate_index_snapshot, with_quality
from conflux.utils.helpers import normalize_symbol, to_float, utc_now
from conflux.utils.logger import get_logger

logger = get_logger("tradier_adapter")

DEFAULT_EXPIRATION_FANOUT = 5

# canonical timeframe -> (endpoint, vendor interval, resample rule)
TIMEFRAME_QUERIES = {
    "1m": ("timesales", "1min", None),
    "5m": ("timesales", "5min", None),
    "15m": ("timesales", "15min", None),
    "1h": ("timesales", "15min", "1h"),
    "1d": ("history", "daily", None),
}

BAR_INTERVALS = {
    "1min": "1m", "1m": "1m", "minute": "1m",
    "5min": "5m", "5m": "5m",
    "15min": "15m", "15m": "15m",
    "hour": "1h", "1h": "1h",
    "daily": "1d", "day": "1d", "1d": "1d",
}


def as_list(value: Any) -> List[Any]:
    """Tradier collapses one-element arrays to a bare object and empty ones to null."""
    if value is None or value == "null":
        return []
    return value if isinstance(value, list) else [value]


def resample_candles(candles: List[Candle], rule: str) -> List[Candle]:
    """Aggregate finer candles into `rule` buckets (e.g. '1h')."""
    if not candles:
        return []
    df = pd.DataFrame([c.model_dump() for c in candles])
    df.index = pd.to_datetime(df["time"], unit="ms", utc=True)
    agg = df.resample(rule).agg(
        {"time": "first", "open": "first", "high": "max", "low": "min", "close": "last", "volume": "sum"}
    ).dropna(subset=["open"])
    return [
        Candle(
            time=int(ts.value // 1_000_000),
            open=row.open,
            high=row.high,
            low=row.low,
            close=row.close,
            volume=row.volume,
        )
        for ts, row in agg.iterrows()
    ]


class TradierAdapter(BaseProviderAdapter):
    """Tradier brokerage market data. Fallback source, fetch only."""

    vendor = "tradier"

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        role: DataSource = DataSource.SECONDARY,
        client: Optional[VendorHttpClient] = None,
        **kwargs: Any,
    ):
        settings = settings or get_settings()
        data = settings.data
        client = client or VendorHttpClient(
            vendor=self.vendor,
            base_url=data.tradier_base_url,
            headers={"Authorization": f"Bearer {data.tradier_api_key}", "Accept": "application/json"},
            timeout_seconds=data.request_timeout_seconds,
            max_retries=data.max_retries,
            backoff_base_ms=data.backoff_base_ms,
            backoff_cap_ms=data.backoff_cap_ms,
        )
        super().__init__(
            role=role,
            client=client,
            settings=settings,
            iv_encoding=IVEncoding(data.tradier_iv_encoding),
            **kwargs,
        )

    # ── quotes ──

    async def _quotes(self, symbols: Sequence[str]) -> List[dict]:
        payload = await self.client.get_json("/markets/quotes", {"symbols": ",".join(symbols), "greeks": "false"})
        return [q for q in as_list(((payload or {}).get("quotes") or {}).get("quote")) if isinstance(q, dict)]

    async def _underlying_price(self, symbol: str) -> float:
        try:
            quotes = await self._quotes([symbol])
        except DataProviderError as e:
            logger.warning("tradier_underlying_price_unavailable", symbol=symbol, error=str(e))
            return 0.0
        if not quotes:
            return 0.0
        q = quotes[0]
        return to_float(q.get("last")) or to_float(q.get("close")) or to_float(q.get("bid"))

    # ── options ──

    async def get_expirations(
        self, underlying: str, min_date: Optional[str] = None, max_date: Optional[str] = None
    ) -> List[str]:
        symbol = normalize_symbol(underlying)
        key = make_key("expirations", symbol, min_date or "all", max_date or "all")
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        payload = await self.client.get_json(
            "/markets/options/expirations",
            {"symbol": symbol, "includeAllRoots": "true", "strikes": "false"},
        )
        dates = as_list(((payload or {}).get("expirations") or {}).get("date"))
        dates = [
            d for d in dates
            if isinstance(d, str) and (not min_date or d >= min_date) and (not max_date or d <= max_date)
        ]
        expirations = sorted(set(dates))
        self.cache.set(key, expirations, self.cache_ttl.expirations_ttl_ms)
        return expirations

    def _normalize_contract(self, raw: dict, underlying: str, expiration: str) -> Optional[OptionContract]:
        strike = to_float(raw.get("strike"))
        if strike <= 0:
            return None
        raw_type = str(raw.get("option_type") or raw.get("type") or "").lower()
        if raw_type not in (OptionType.CALL.value, OptionType.PUT.value):
            return None
        greeks = raw.get("greeks") or {}
        raw_iv = greeks.get("mid_iv")
        if not raw_iv:
            raw_iv = greeks.get("smv_vol")
        return self.build_contract(
            ticker=raw.get("symbol") or raw.get("option_symbol") or "",
            root_symbol=underlying,
            strike=strike,
            expiration=raw.get("expiration_date") or expiration,
            type=raw_type,
            bid=raw.get("bid"),
            ask=raw.get("ask"),
            last=raw.get("last"),
            bid_size=raw.get("bidsize", raw.get("bid_size")),
            ask_size=raw.get("asksize", raw.get("ask_size")),
            greeks=greeks,
            raw_iv=raw_iv,
            volume=raw.get("volume"),
            open_interest=raw.get("open_interest"),
        )

    async def _expiration_contracts(self, symbol: str, expiration: str) -> List[OptionContract]:
        try:
            payload = await self.client.get_json(
                "/markets/options/chains", {"symbol": symbol, "expiration": expiration, "greeks": "true"}
            )
        except DataProviderError as e:
            logger.warning("tradier_expiration_failed", symbol=symbol, expiration=expiration, error=str(e))
            return []
        rows = as_list(((payload or {}).get("options") or {}).get("option"))
        contracts = []
        for raw in rows:
            if not isinstance(raw, dict):
                continue
            contract = self._normalize_contract(raw, symbol, expiration)
            if contract is not None:
                contracts.append(contract)
        return contracts

    async def get_option_chain(self, underlying: str, options: Optional[ChainQueryOptions] = None) -> OptionChain:
        """One request per expiration, nearest first. A failing expiration is skipped."""
        symbol = normalize_symbol(underlying)
        key = make_key("chain", symbol, options.cache_key() if options else "{}")
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        exp_range = options.expiration_range if options else None
        price, expirations = await asyncio.gather(
            self._underlying_price(symbol),
            self.get_expirations(symbol, *(exp_range or (None, None))),
        )
        fanout = math.ceil(options.limit / 10) if options and options.limit else DEFAULT_EXPIRATION_FANOUT
        expirations = expirations[:fanout]

        per_expiration = await asyncio.gather(*(self._expiration_contracts(symbol, e) for e in expirations))
        contracts = [c for batch in per_expiration for c in batch]
        contracts = self.filter_contracts(contracts, options)

        chain = self.finalize_chain(symbol, price, contracts)
        self.cache.set(key, chain, self.chain_ttl_ms(options))
        logger.debug("tradier_chain_fetched", underlying=symbol, expirations=len(expirations), contracts=len(contracts))
        return chain

    async def get_option_contract(self, underlying: str, strike: float, expiration: str, type: str) -> OptionContract:
        symbol = normalize_symbol(underlying)
        key = make_key("contract", symbol, strike, expiration, type)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        chain = await self.get_option_chain(symbol, ChainQueryOptions(expiration_range=(expiration, expiration)))
        contract = self.pick_contract(chain, strike, type)
        if contract is None:
            raise DataProviderError(
                f"Contract not found: {symbol} {strike} {type} {expiration}",
                "CONTRACT_NOT_FOUND",
                self.vendor,
            )
        if contract.quality.confidence == 0:
            raise ValidationError(
                f"Contract {contract.ticker} failed validation", "contract", contract.ticker,
                list(contract.quality.warnings),
            )
        self.cache.set(key, contract, self.cache_ttl.contract_ttl_ms)
        return contract

    async def get_flow_data(
        self, underlying: str, start_time: Optional[datetime] = None, end_time: Optional[datetime] = None
    ) -> FlowData:
        """Tradier has no flow feed; always a zero-signal value."""
        return FlowData(flow_score=0.0, updated_at=utc_now(), quality=self.fresh_flags())

    # ── indices ──

    async def get_index_snapshot(self, tickers: Sequence[str]) -> Dict[str, IndexSnapshot]:
        clean = sorted({normalize_symbol(t) for t in tickers})
        if not clean:
            return {}
        key = make_key("indices", ",".join(clean))
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        snapshots: Dict[str, IndexSnapshot] = {}
        for q in await self._quotes(clean):
            symbol = normalize_symbol(q.get("symbol") or "")
            if not symbol:
                continue
            prev_close = to_float(q.get("prevclose", q.get("prev_close")))
            quote = IndexQuote(
                symbol=symbol,
                value=to_float(q.get("last")) or to_float(q.get("close")),
                change=to_float(q.get("change")),
                change_percent=to_float(q.get("change_percentage", q.get("change_percent"))),
                open=to_float(q.get("open")),
                high=to_float(q.get("high")),
                low=to_float(q.get("low")),
                prev_close=prev_close,
            )
            snapshot = IndexSnapshot(symbol=symbol, quote=quote, quality=self.fresh_flags(), updated_at=utc_now())
            snapshots[symbol] = with_quality(
                snapshot, validate_index_snapshot(snapshot, self.quality_options), self.role
            )
        self.cache.set(key, snapshots, self.cache_ttl.index_ttl_ms)
        return snapshots

    @staticmethod
    def _bar_time(bar: dict) -> int:
        if isinstance(bar.get("timestamp"), (int, float)):
            return int(bar["timestamp"] * 1000)
        for field in ("time", "date"):
            if bar.get(field):
                ts = pd.Timestamp(bar[field])
                ts = ts.tz_localize("UTC") if ts.tzinfo is None else ts.tz_convert("UTC")
                return int(ts.value // 1_000_000)
        return 0

    async def _history(
        self, symbol: str, timeframe: str, from_date: str, to_date: str, limit: Optional[int]
    ) -> List[Candle]:
        endpoint, interval, rule = TIMEFRAME_QUERIES.get(timeframe, TIMEFRAME_QUERIES["1d"])
        if endpoint == "timesales":
            payload = await self.client.get_json(
                "/markets/timesales",
                {"symbol": symbol, "interval": interval, "start": f"{from_date} 09:30", "end": f"{to_date} 16:00"},
            )
            rows = as_list(((payload or {}).get("series") or {}).get("data"))
        else:
            payload = await self.client.get_json(
                "/markets/history", {"symbol": symbol, "interval": interval, "start": from_date, "end": to_date}
            )
            rows = as_list(((payload or {}).get("history") or {}).get("day"))

        candles = []
        for bar in rows:
            try:
                candles.append(
                    Candle(
                        time=self._bar_time(bar),
                        open=float(bar["open"]),
                        high=float(bar["high"]),
                        low=float(bar["low"]),
                        close=float(bar["close"]),
                        volume=to_float(bar.get("volume")),
                        vwap=bar.get("vwap"),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("tradier_bad_bar", symbol=symbol, bar=bar)
        if rule:
            candles = resample_candles(candles, rule)
        return candles[-limit:] if limit else candles

    async def get_candles(
        self, ticker: str, timeframe: str, from_date: str, to_date: str, limit: Optional[int] = None
    ) -> List[Candle]:
        symbol = normalize_symbol(ticker)
        key = make_key("candles", symbol, timeframe, from_date, to_date, limit or "all")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        candles = await self._history(symbol, timeframe, from_date, to_date, limit)
        self.cache.set(key, candles, self.cache_ttl.candles_ttl_ms)
        return candles

    # ── equities ──

    async def get_equity_quote(self, symbol: str) -> EquityQuote:
        clean = normalize_symbol(symbol)
        key = make_key("equity", clean)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        quotes = await self._quotes([clean])
        if not quotes:
            raise DataProviderError(f"No quote found for {clean}", "QUOTE_NOT_FOUND", self.vendor)
        q = quotes[0]
        quote = EquityQuote(
            symbol=clean,
            price=to_float(q.get("last")) or to_float(q.get("close")),
            open=to_float(q.get("open")),
            high=to_float(q.get("high")),
            low=to_float(q.get("low")),
            volume=to_float(q.get("volume")),
            prev_close=to_float(q.get("prevclose", q.get("prev_close"))),
            change=to_float(q.get("change")),
            change_percent=to_float(q.get("change_percentage", q.get("change_percent"))),
            updated_at=utc_now(),
        )
        quote = with_quality(quote, validate_equity_quote(quote, self.quality_options), self.role)
        self.cache.set(key, quote, self.cache_ttl.equity_ttl_ms)
        return quote

    async def get_bars(
        self, symbol: str, interval: str, from_date: str, to_date: str, limit: Optional[int] = None
    ) -> List[Bar]:
        return await self.get_candles(symbol, BAR_INTERVALS.get(interval, "1d"), from_date, to_date, limit)

    # ── subscriptions ──

    def subscribe_to_chain(self, underlying: str, callback: Callable[[OptionChain], None]) -> Unsubscribe:
        return noop_unsubscribe

    def subscribe_to_option(
        self, underlying: str, strike: float, expiration: str, type: str,
        callback: Callable[[OptionContract], None],
    ) -> Unsubscribe:
        return noop_unsubscribe

    def subscribe_to_flow(self, underlying: str, callback: Callable[[FlowData], None]) -> Unsubscribe:
        return noop_unsubscribe

    def subscribe_to_index(self, ticker: str, callback: Callable[[IndexSnapshot], None]) -> Unsubscribe:
        return noop_unsubscribe

    def subscribe_to_timeframe(self, ticker: str, timeframe: str, callback: Callable[[Timeframe], None]) -> Unsubscribe:
        return noop_unsubscribe

    def subscribe_to_equity(self, symbol: str, callback: Callable[[EquityQuote], None]) -> Unsubscribe:
        return noop_unsubscribe
