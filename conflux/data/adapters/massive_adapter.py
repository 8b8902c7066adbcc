"""
CONFLUX™ — Massive Data Adapter
Primary vendor: Polygon-compatible REST snapshots (decimal IV) plus the
websocket push channel for live chain, index and equity updates.
"""
import asyncio
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Set

from conflux.config.settings import AppSettings, get_settings
from conflux.data.adapters.base import TIMEFRAME_SPANS, BaseProviderAdapter
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
from conflux.data.stream.massive_stream import (
    MassiveStream,
    index_value_channel,
    minute_agg_channel,
    option_quote_channel,
)
from conflux.data.subscriptions import Unsubscribe
from conflux.data.validation import (
    ValidationResult,
    validate_equity_quote,
    validate_index_snapshot,
    with_quality,
)
from conflux.utils.helpers import ms_to_datetime, normalize_symbol, safe_divide, to_float, utc_now
from conflux.utils.logger import get_logger

logger = get_logger("massive_adapter")

INDEX_SYMBOLS = {"SPX", "NDX", "VIX", "RUT", "DJX", "XSP", "OEX"}
SNAPSHOT_PAGE_LIMIT = 250
MAX_SNAPSHOT_PAGES = 20
LIVE_CANDLE_HISTORY = 500

# Flow heuristics over a chain snapshot
LARGE_VOLUME = 500
BLOCK_VOLUME = 1000
SWEEP_MIN_VOLUME = 100
TIGHT_SPREAD = 0.02

BAR_INTERVALS = {
    "minute": "1m", "1min": "1m", "1m": "1m",
    "5min": "5m", "5m": "5m",
    "15min": "15m", "15m": "15m",
    "hour": "1h", "1h": "1h",
    "day": "1d", "daily": "1d", "1d": "1d",
}


def flow_from_chain(chain: OptionChain) -> FlowData:
    """
    Derive flow metrics from a chain snapshot: call/put volume balance, large
    and block prints, tight-spread activity and OI backing. A chain without
    traded volume carries no signal and yields a zero-score result.
    """
    contracts = chain.contracts
    call_volume = put_volume = call_oi = put_oi = 0.0
    large = tight = blocks = sweeps = 0
    for c in contracts:
        vol = c.liquidity.volume
        oi = c.liquidity.open_interest
        bid, ask = c.quote.bid, c.quote.ask
        mid = (bid + ask) / 2 if bid > 0 and ask > 0 else 0.0
        spread = (ask - bid) / mid if mid > 0 else 1.0
        if c.type == OptionType.CALL.value:
            call_volume += vol
            call_oi += oi
        else:
            put_volume += vol
            put_oi += oi
        if vol > LARGE_VOLUME:
            large += 1
        if vol > BLOCK_VOLUME:
            blocks += 1
        if 0 < spread < TIGHT_SPREAD:
            tight += 1
            if vol > SWEEP_MIN_VOLUME:
                sweeps += 1

    total_volume = call_volume + put_volume
    if not contracts or total_volume <= 0:
        return FlowData(flow_score=0.0, updated_at=utc_now(), quality=chain.quality)

    call_ratio = call_volume / total_volume
    bias, buy_pressure = "neutral", 50.0
    if call_ratio > 0.55:
        bias, buy_pressure = "bullish", min(100.0, 50 + (call_ratio - 0.5) * 100)
    elif call_ratio < 0.45:
        bias, buy_pressure = "bearish", max(0.0, 50 + (call_ratio - 0.5) * 100)

    total_oi = call_oi + put_oi
    oi_ratio = total_oi / total_volume
    unusual = (large / len(contracts)) * 100 > 10 or oi_ratio > 5 or oi_ratio < 0.2

    score = 50.0
    if tight > len(contracts) * 0.6:
        score += 20
    if total_volume > 10_000:
        score += 15
    if total_oi > total_volume * 2:
        score += 10
    if unusual:
        score -= 10

    return FlowData(
        sweep_count=sweeps,
        block_count=blocks,
        dark_pool_percent=round(min(100.0, tight / len(contracts) * 80)),
        flow_bias=bias,
        buy_pressure=round(buy_pressure, 2),
        unusual_activity=unusual,
        flow_score=max(0.0, min(100.0, score)),
        updated_at=utc_now(),
        quality=chain.quality,
    )


class MassiveAdapter(BaseProviderAdapter):
    """Massive (Polygon-compatible) adapter: primary source with live push."""

    vendor = "massive"

    def __init__(
        self,
        settings: Optional[AppSettings] = None,
        role: DataSource = DataSource.PRIMARY,
        client: Optional[VendorHttpClient] = None,
        stream: Optional[MassiveStream] = None,
        **kwargs: Any,
    ):
        settings = settings or get_settings()
        data = settings.data
        client = client or VendorHttpClient(
            vendor=self.vendor,
            base_url=data.massive_base_url,
            headers={"Authorization": f"Bearer {data.massive_api_key}", "Accept": "application/json"},
            timeout_seconds=data.request_timeout_seconds,
            max_retries=data.max_retries,
            backoff_base_ms=data.backoff_base_ms,
            backoff_cap_ms=data.backoff_cap_ms,
        )
        super().__init__(
            role=role,
            client=client,
            settings=settings,
            iv_encoding=IVEncoding(data.massive_iv_encoding),
            **kwargs,
        )
        self.stream = stream
        # last full value per entity, patched by push events
        self._live_chains: Dict[str, OptionChain] = {}
        self._contract_owner: Dict[str, str] = {}
        # push-patched contracts, their chain positions and the per-contract score memo
        self._live_contracts: Dict[str, List[OptionContract]] = {}
        self._live_positions: Dict[str, Dict[str, int]] = {}
        self._contract_scores: Dict[str, Dict[str, ValidationResult]] = {}
        self._dirty_chains: Set[str] = set()
        self._chain_flush_handle: Optional[asyncio.TimerHandle] = None
        self.chain_window_ms = settings.data.stream_chain_window_ms
        self._live_indices: Dict[str, IndexSnapshot] = {}
        self._live_equities: Dict[str, EquityQuote] = {}
        self._live_candles: Dict[str, Deque[Candle]] = {}

    def attach_stream(self, stream: MassiveStream) -> None:
        self.stream = stream

    async def connect(self) -> None:
        await super().connect()
        if self.stream is not None:
            await self.stream.start()

    async def disconnect(self) -> None:
        if self._chain_flush_handle is not None:
            self._chain_flush_handle.cancel()
            self._chain_flush_handle = None
        self._dirty_chains.clear()
        if self.stream is not None:
            await self.stream.stop()
        await super().disconnect()

    # ── symbol helpers ──

    @staticmethod
    def is_index(symbol: str) -> bool:
        return symbol.upper().startswith("I:") or normalize_symbol(symbol) in INDEX_SYMBOLS

    def _vendor_ticker(self, symbol: str) -> str:
        clean = normalize_symbol(symbol)
        return f"I:{clean}" if self.is_index(symbol) else clean

    # ── options ──

    async def _snapshot_results(self, underlying: str, params: Dict[str, Any], max_items: Optional[int]) -> List[dict]:
        """Walk the chain snapshot, following next_url until `max_items` or the last page."""
        path = f"/v3/snapshot/options/{self._vendor_ticker(underlying)}"
        results: List[dict] = []
        page_params: Optional[Dict[str, Any]] = params
        for _ in range(MAX_SNAPSHOT_PAGES):
            payload = await self.client.get_json(path, page_params)
            if not isinstance(payload, dict):
                raise ValidationError("Unexpected chain payload", "results", type(payload).__name__)
            results.extend(payload.get("results") or [])
            next_url = payload.get("next_url")
            if not next_url or (max_items is not None and len(results) >= max_items):
                break
            path, page_params = next_url, None
        return results[:max_items] if max_items is not None else results

    def _normalize_contract(self, raw: dict, underlying: str) -> Optional[OptionContract]:
        details = raw.get("details") or {}
        strike = to_float(details.get("strike_price", raw.get("strike_price")))
        expiration = details.get("expiration_date") or raw.get("expiration_date") or ""
        if strike <= 0 or not expiration:
            return None
        raw_type = str(details.get("contract_type") or raw.get("contract_type") or "").lower()
        if raw_type not in (OptionType.CALL.value, OptionType.PUT.value):
            return None

        quote = raw.get("last_quote") or {}
        trade = raw.get("last_trade") or {}
        day = raw.get("day") or {}
        greeks = raw.get("greeks") or {}
        return self.build_contract(
            ticker=details.get("ticker") or raw.get("ticker") or "",
            root_symbol=normalize_symbol(underlying),
            strike=strike,
            expiration=expiration,
            type=raw_type,
            bid=quote.get("bid", quote.get("bp")),
            ask=quote.get("ask", quote.get("ap")),
            last=trade.get("price", quote.get("last")),
            bid_size=quote.get("bid_size", quote.get("bs")),
            ask_size=quote.get("ask_size", quote.get("as")),
            greeks=greeks,
            raw_iv=raw.get("implied_volatility", greeks.get("iv")),
            volume=day.get("volume", raw.get("volume")),
            open_interest=raw.get("open_interest", day.get("open_interest")),
        )

    async def _underlying_price(self, underlying: str, results: Sequence[dict]) -> float:
        for raw in results:
            price = to_float((raw.get("underlying_asset") or {}).get("price"))
            if price > 0:
                return price
        try:
            if self.is_index(underlying):
                snapshots = await self.get_index_snapshot([underlying])
                snap = snapshots.get(normalize_symbol(underlying))
                return snap.quote.value if snap and snap.quote else 0.0
            return (await self.get_equity_quote(underlying)).price
        except (DataProviderError, ValidationError) as e:
            logger.warning("massive_underlying_price_unavailable", underlying=underlying, error=str(e))
            return 0.0

    async def get_option_chain(self, underlying: str, options: Optional[ChainQueryOptions] = None) -> OptionChain:
        """Chain snapshot with server-side filters; client-side filters cover the rest."""
        key = make_key("chain", normalize_symbol(underlying), options.cache_key() if options else "{}")
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        params: Dict[str, Any] = {"limit": min(options.limit, SNAPSHOT_PAGE_LIMIT) if options and options.limit else SNAPSHOT_PAGE_LIMIT}
        if options and options.strike_range:
            params["strike_price.gte"], params["strike_price.lte"] = options.strike_range
        if options and options.expiration_range:
            params["expiration_date.gte"], params["expiration_date.lte"] = options.expiration_range

        results = await self._snapshot_results(underlying, params, options.limit if options else None)
        contracts = [c for c in (self._normalize_contract(r, underlying) for r in results) if c is not None]
        contracts = self.filter_contracts(contracts, options)
        price = await self._underlying_price(underlying, results)

        scores: Dict[str, ValidationResult] = {}
        chain = self.finalize_chain(normalize_symbol(underlying), price, contracts, contract_results=scores)
        self.cache.set(key, chain, self.chain_ttl_ms(options))
        if options is None:
            self._remember_chain(chain, scores)
        logger.debug("massive_chain_fetched", underlying=underlying, contracts=len(contracts), quality=chain.quality.quality.value)
        return chain

    async def get_option_contract(self, underlying: str, strike: float, expiration: str, type: str) -> OptionContract:
        key = make_key("contract", normalize_symbol(underlying), strike, expiration, type)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        chain = await self.get_option_chain(
            underlying,
            ChainQueryOptions(strike_range=(strike, strike), expiration_range=(expiration, expiration)),
        )
        contract = self.pick_contract(chain, strike, type)
        if contract is None:
            raise DataProviderError(
                f"Contract not found: {underlying} {strike} {type} {expiration}",
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

    async def get_expirations(
        self, underlying: str, min_date: Optional[str] = None, max_date: Optional[str] = None
    ) -> List[str]:
        key = make_key("expirations", normalize_symbol(underlying), min_date or "all", max_date or "all")
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        params: Dict[str, Any] = {"limit": SNAPSHOT_PAGE_LIMIT}
        if min_date:
            params["expiration_date.gte"] = min_date
        if max_date:
            params["expiration_date.lte"] = max_date
        results = await self._snapshot_results(underlying, params, None)
        dates = {
            (r.get("details") or {}).get("expiration_date") or r.get("expiration_date")
            for r in results
        }
        expirations = sorted(d for d in dates if d)
        self.cache.set(key, expirations, self.cache_ttl.expirations_ttl_ms)
        return expirations

    async def get_flow_data(
        self, underlying: str, start_time: Optional[datetime] = None, end_time: Optional[datetime] = None
    ) -> FlowData:
        """Flow derived from the current chain snapshot. The time range only scopes the cache key."""
        key = make_key(
            "flow", normalize_symbol(underlying),
            start_time.isoformat() if start_time else "all",
            end_time.isoformat() if end_time else "all",
        )
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        chain = await self.get_option_chain(underlying, ChainQueryOptions(limit=SNAPSHOT_PAGE_LIMIT))
        flow = flow_from_chain(chain)
        self.cache.set(key, flow, self.cache_ttl.flow_ttl_ms)
        return flow

    # ── indices ──

    def _normalize_index(self, raw: dict) -> Optional[IndexSnapshot]:
        if raw.get("error"):
            logger.warning("massive_index_error", ticker=raw.get("ticker"), error=raw.get("error"))
            return None
        symbol = normalize_symbol(raw.get("ticker") or "")
        session = raw.get("session") or {}
        value = to_float(raw.get("value"))
        prev_close = to_float(session.get("previous_close", raw.get("prev_close")))
        change = session.get("change", raw.get("change"))
        quote = IndexQuote(
            symbol=symbol,
            value=value,
            change=to_float(change) if change is not None else (value - prev_close if prev_close else 0.0),
            change_percent=to_float(session.get("change_percent", raw.get("change_percent"))),
            open=to_float(session.get("open", raw.get("open"))),
            high=to_float(session.get("high", raw.get("high"))),
            low=to_float(session.get("low", raw.get("low"))),
            prev_close=prev_close,
        )
        now = utc_now()
        snapshot = IndexSnapshot(symbol=symbol, quote=quote, quality=self.fresh_flags(), updated_at=now)
        return with_quality(snapshot, validate_index_snapshot(snapshot, self.quality_options), self.role)

    async def get_index_snapshot(self, tickers: Sequence[str]) -> Dict[str, IndexSnapshot]:
        clean = sorted({normalize_symbol(t) for t in tickers})
        if not clean:
            return {}
        key = make_key("indices", ",".join(clean))
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        payload = await self.client.get_json(
            "/v3/snapshot/indices", {"ticker.any_of": ",".join(f"I:{t}" for t in clean)}
        )
        snapshots: Dict[str, IndexSnapshot] = {}
        for raw in (payload or {}).get("results") or []:
            snapshot = self._normalize_index(raw)
            if snapshot is not None:
                snapshots[snapshot.symbol] = snapshot
                self._live_indices[snapshot.symbol] = snapshot
        self.cache.set(key, snapshots, self.cache_ttl.index_ttl_ms)
        return snapshots

    async def _aggregates(self, ticker: str, timeframe: str, from_date: str, to_date: str, limit: Optional[int]) -> List[Candle]:
        multiplier, timespan, _ = TIMEFRAME_SPANS.get(timeframe, TIMEFRAME_SPANS["1d"])
        payload = await self.client.get_json(
            f"/v2/aggs/ticker/{self._vendor_ticker(ticker)}/range/{multiplier}/{timespan}/{from_date}/{to_date}",
            {"adjusted": "true", "sort": "asc", "limit": limit or 5000},
        )
        candles = []
        for bar in (payload or {}).get("results") or []:
            try:
                candles.append(
                    Candle(
                        time=int(bar["t"]),
                        open=float(bar["o"]),
                        high=float(bar["h"]),
                        low=float(bar["l"]),
                        close=float(bar["c"]),
                        volume=to_float(bar.get("v")),
                        vwap=bar.get("vw"),
                        trades=bar.get("n"),
                    )
                )
            except (KeyError, TypeError, ValueError):
                logger.warning("massive_bad_aggregate", ticker=ticker, bar=bar)
        return candles[-limit:] if limit else candles

    async def get_candles(
        self, ticker: str, timeframe: str, from_date: str, to_date: str, limit: Optional[int] = None
    ) -> List[Candle]:
        key = make_key("candles", normalize_symbol(ticker), timeframe, from_date, to_date, limit or "all")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        candles = await self._aggregates(ticker, timeframe, from_date, to_date, limit)
        self.cache.set(key, candles, self.cache_ttl.candles_ttl_ms)
        return candles

    # ── equities ──

    async def get_equity_quote(self, symbol: str) -> EquityQuote:
        clean = normalize_symbol(symbol)
        key = make_key("equity", clean)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        payload = await self.client.get_json(f"/v2/snapshot/locale/us/markets/stocks/tickers/{clean}")
        ticker = (payload or {}).get("ticker")
        if not ticker:
            raise DataProviderError(f"No quote found for {clean}", "QUOTE_NOT_FOUND", self.vendor)

        day = ticker.get("day") or {}
        prev = ticker.get("prevDay") or {}
        price = to_float((ticker.get("lastTrade") or {}).get("p")) or to_float(day.get("c")) or to_float((ticker.get("min") or {}).get("c"))
        if price <= 0:
            raise ValidationError(f"No usable price for {clean}", "price", price, ["Invalid price"])

        quote = EquityQuote(
            symbol=clean,
            price=price,
            open=to_float(day.get("o")),
            high=to_float(day.get("h")),
            low=to_float(day.get("l")),
            volume=to_float(day.get("v")),
            prev_close=to_float(prev.get("c")),
            change=to_float(ticker.get("todaysChange")),
            change_percent=to_float(ticker.get("todaysChangePerc")),
            vwap=day.get("vw"),
            updated_at=utc_now(),
        )
        quote = with_quality(quote, validate_equity_quote(quote, self.quality_options), self.role)
        self._live_equities[clean] = quote
        self.cache.set(key, quote, self.cache_ttl.equity_ttl_ms)
        return quote

    async def get_bars(
        self, symbol: str, interval: str, from_date: str, to_date: str, limit: Optional[int] = None
    ) -> List[Bar]:
        timeframe = BAR_INTERVALS.get(interval, "1d")
        key = make_key("bars", normalize_symbol(symbol), timeframe, from_date, to_date, limit or "all")
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        bars = await self._aggregates(symbol, timeframe, from_date, to_date, limit)
        self.cache.set(key, bars, self.cache_ttl.candles_ttl_ms)
        return bars

    # ── push subscriptions ──

    def _remember_chain(self, chain: OptionChain, scores: Optional[Dict[str, ValidationResult]] = None) -> None:
        underlying = chain.underlying
        if scores is not None or underlying not in self._live_contracts:
            self._live_chains[underlying] = chain
            self._live_contracts[underlying] = list(chain.contracts)
            self._live_positions[underlying] = {c.ticker: i for i, c in enumerate(chain.contracts) if c.ticker}
            self._contract_scores[underlying] = scores if scores is not None else {}
            self._dirty_chains.discard(underlying)
        for contract in chain.contracts:
            self._contract_owner[contract.ticker] = underlying
        if self.stream is not None and (
            self.registry.has(f"chain:{chain.underlying}") or self.registry.has(f"flow:{chain.underlying}")
        ):
            self.stream.subscribe("options", [option_quote_channel(c.ticker) for c in chain.contracts if c.ticker])

    def _with_release(self, key: str, unsubscribe: Unsubscribe, release: Callable[[], None]) -> Unsubscribe:
        def _unsubscribe() -> None:
            unsubscribe()
            if not self.registry.has(key):
                release()
        return _unsubscribe

    def _release_chain_channels(self, underlying: str) -> None:
        if self.stream is None:
            return
        if self.registry.has(f"chain:{underlying}") or self.registry.has(f"flow:{underlying}"):
            return
        chain = self._live_chains.get(underlying)
        if chain is not None:
            self.stream.unsubscribe("options", [option_quote_channel(c.ticker) for c in chain.contracts])

    def subscribe_to_chain(self, underlying: str, callback: Callable[[OptionChain], None]) -> Unsubscribe:
        clean = normalize_symbol(underlying)
        key = f"chain:{clean}"
        unsubscribe = self.registry.add(key, callback)
        if clean in self._live_chains:
            self._remember_chain(self._live_chains[clean])
        return self._with_release(key, unsubscribe, lambda: self._release_chain_channels(clean))

    def subscribe_to_option(
        self, underlying: str, strike: float, expiration: str, type: str,
        callback: Callable[[OptionContract], None],
    ) -> Unsubscribe:
        clean = normalize_symbol(underlying)
        key = f"option:{clean}:{strike:g}:{expiration}:{type}"
        unsubscribe = self.registry.add(key, callback)
        chain = self._live_chains.get(clean)
        contract = self.pick_contract(chain, strike, type) if chain else None
        if contract is not None and self.stream is not None:
            self._contract_owner[contract.ticker] = clean
            self.stream.subscribe("options", [option_quote_channel(contract.ticker)])
        return unsubscribe

    def subscribe_to_flow(self, underlying: str, callback: Callable[[FlowData], None]) -> Unsubscribe:
        clean = normalize_symbol(underlying)
        key = f"flow:{clean}"
        unsubscribe = self.registry.add(key, callback)
        if clean in self._live_chains:
            self._remember_chain(self._live_chains[clean])
        return self._with_release(key, unsubscribe, lambda: self._release_chain_channels(clean))

    def subscribe_to_index(self, ticker: str, callback: Callable[[IndexSnapshot], None]) -> Unsubscribe:
        clean = normalize_symbol(ticker)
        key = f"index:{clean}"
        unsubscribe = self.registry.add(key, callback)
        if self.stream is not None:
            self.stream.subscribe("indices", [index_value_channel(clean)])
        return self._with_release(
            key, unsubscribe,
            lambda: self.stream and self.stream.unsubscribe("indices", [index_value_channel(clean)]),
        )

    def subscribe_to_timeframe(self, ticker: str, timeframe: str, callback: Callable[[Timeframe], None]) -> Unsubscribe:
        """Live minute bars only; other timeframes are served by polling."""
        clean = normalize_symbol(ticker)
        key = f"timeframe:{clean}:{timeframe}"
        unsubscribe = self.registry.add(key, callback)
        if timeframe == "1m" and self.stream is not None:
            cluster = "indices" if self.is_index(clean) else "stocks"
            self.stream.subscribe(cluster, [minute_agg_channel(self._vendor_ticker(clean))])
        return unsubscribe

    def subscribe_to_equity(self, symbol: str, callback: Callable[[EquityQuote], None]) -> Unsubscribe:
        clean = normalize_symbol(symbol)
        key = f"equity:{clean}"
        unsubscribe = self.registry.add(key, callback)
        if self.stream is not None:
            self.stream.subscribe("stocks", [minute_agg_channel(clean)])
        return self._with_release(
            key, unsubscribe,
            lambda: self.stream and self.stream.unsubscribe("stocks", [minute_agg_channel(clean)]),
        )

    # ── push event handling ──

    def handle_stream_event(self, cluster: str, event: Dict[str, Any]) -> None:
        """Apply one decoded push event to the last known entity and fan it out."""
        kind = event.get("ev")
        if kind == "Q" and cluster == "options":
            self._on_option_quote(event)
        elif kind == "V":
            self._on_index_value(event)
        elif kind in ("AM", "A"):
            self._on_minute_aggregate(event)

    def _on_option_quote(self, event: Dict[str, Any]) -> None:
        """
        Patch one contract in place and publish it. The owning chain is only
        marked dirty; `flush_chain_updates` republishes it once per window.
        """
        ticker = event.get("sym") or ""
        underlying = self._contract_owner.get(ticker)
        position = self._live_positions.get(underlying, {}).get(ticker) if underlying else None
        if position is None:
            return
        contracts = self._live_contracts[underlying]
        contract = contracts[position]
        updated = self.build_contract(
            ticker=contract.ticker,
            root_symbol=contract.root_symbol,
            strike=contract.strike,
            expiration=contract.expiration,
            type=contract.type,
            bid=event.get("bp", contract.quote.bid),
            ask=event.get("ap", contract.quote.ask),
            last=contract.quote.last,
            bid_size=event.get("bs", contract.quote.bid_size),
            ask_size=event.get("as", contract.quote.ask_size),
            greeks=contract.greeks.model_dump(),
            raw_iv=contract.greeks.iv,
            volume=contract.liquidity.volume,
            open_interest=contract.liquidity.open_interest,
        ).model_copy(update={"greeks": contract.greeks})
        contracts[position] = updated
        self._contract_scores[underlying].pop(ticker, None)

        self.registry.publish(
            f"option:{underlying}:{updated.strike:g}:{updated.expiration}:{updated.type}", updated
        )
        if self.registry.has(f"chain:{underlying}") or self.registry.has(f"flow:{underlying}"):
            self._mark_chain_dirty(underlying)

    def _mark_chain_dirty(self, underlying: str) -> None:
        self._dirty_chains.add(underlying)
        if self._chain_flush_handle is None:
            loop = asyncio.get_running_loop()
            self._chain_flush_handle = loop.call_later(self.chain_window_ms / 1000.0, self.flush_chain_updates)

    def flush_chain_updates(self) -> int:
        """Re-score and republish every chain patched since the last flush."""
        if self._chain_flush_handle is not None:
            self._chain_flush_handle.cancel()
            self._chain_flush_handle = None
        dirty, self._dirty_chains = self._dirty_chains, set()
        for underlying in dirty:
            previous = self._live_chains[underlying]
            chain = self.finalize_chain(
                underlying,
                previous.underlying_price,
                list(self._live_contracts[underlying]),
                contract_results=self._contract_scores[underlying],
            )
            self._live_chains[underlying] = chain
            self.registry.publish(f"chain:{underlying}", chain)
            if self.registry.has(f"flow:{underlying}"):
                self.registry.publish(f"flow:{underlying}", flow_from_chain(chain))
        return len(dirty)

    def _on_index_value(self, event: Dict[str, Any]) -> None:
        symbol = normalize_symbol(event.get("T") or event.get("sym") or "")
        previous = self._live_indices.get(symbol)
        value = to_float(event.get("val"))
        if value <= 0:
            return
        base = previous.quote if previous and previous.quote else IndexQuote(symbol=symbol, value=value)
        change = value - base.prev_close if base.prev_close else base.change
        quote = base.model_copy(update={
            "value": value,
            "change": change,
            "change_percent": safe_divide(change, base.prev_close) * 100 if base.prev_close else base.change_percent,
            "high": max(base.high, value) if base.high else value,
            "low": min(base.low, value) if base.low else value,
        })
        stamped = ms_to_datetime(event["t"]) if isinstance(event.get("t"), (int, float)) else utc_now()
        stamped = min(stamped, utc_now())
        snapshot = IndexSnapshot(
            symbol=symbol,
            quote=quote,
            timeframes=previous.timeframes if previous else {},
            quality=self.fresh_flags().model_copy(update={"updated_at": stamped}),
            updated_at=stamped,
        )
        snapshot = with_quality(snapshot, validate_index_snapshot(snapshot, self.quality_options), self.role)
        self._live_indices[symbol] = snapshot
        self.registry.publish(f"index:{symbol}", snapshot)

    def _on_minute_aggregate(self, event: Dict[str, Any]) -> None:
        symbol = normalize_symbol(event.get("sym") or "")
        try:
            candle = Candle(
                time=int(event.get("s") or event.get("e") or 0),
                open=float(event["o"]),
                high=float(event["h"]),
                low=float(event["l"]),
                close=float(event["c"]),
                volume=to_float(event.get("v")),
                vwap=event.get("vw"),
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("massive_bad_stream_aggregate", symbol=symbol)
            return

        history = self._live_candles.setdefault(symbol, deque(maxlen=LIVE_CANDLE_HISTORY))
        history.append(candle)
        if self.registry.has(f"timeframe:{symbol}:1m"):
            candles = list(history)
            self.registry.publish(
                f"timeframe:{symbol}:1m",
                Timeframe(period="1m", candles=candles, indicators=self.indicators.build(candles), updated_at=utc_now()),
            )

        previous = self._live_equities.get(symbol)
        if previous is None or not self.registry.has(f"equity:{symbol}"):
            return
        change = candle.close - previous.prev_close if previous.prev_close else previous.change
        quote = previous.model_copy(update={
            "price": candle.close,
            "high": max(previous.high, candle.high),
            "low": min(previous.low, candle.low) if previous.low else candle.low,
            "volume": previous.volume + candle.volume,
            "change": change,
            "change_percent": safe_divide(change, previous.prev_close) * 100 if previous.prev_close else previous.change_percent,
            "vwap": candle.vwap if candle.vwap is not None else previous.vwap,
            "updated_at": utc_now(),
        })
        quote = with_quality(quote, validate_equity_quote(quote, self.quality_options), self.role)
        self._live_equities[symbol] = quote
        self.registry.publish(f"equity:{symbol}", quote)

    @property
    def stats(self):
        stats = super().stats
        stats["live"] = {
            "chains": len(self._live_chains),
            "indices": len(self._live_indices),
            "equities": len(self._live_equities),
            "pending_chains": len(self._dirty_chains),
        }
        if self.stream is not None:
            stats["stream"] = self.stream.stats
        return stats
