"""
CONFLUX™ — Provider Capability Contracts
Options / Indices / Broker contracts implemented by every vendor adapter and by
the hybrid router, plus the shared adapter base.
"""
import asyncio
import math
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from conflux.config.settings import AppSettings, get_settings
from conflux.data.adapters.http_client import VendorHttpClient
from conflux.data.cache.ttl_cache import TTLCache, make_key
from conflux.data.iv import IVEncoding, normalize_vendor_iv
from conflux.data.models import (
    Bar,
    Candle,
    ChainQueryOptions,
    DataQualityLevel,
    DataSource,
    EquityQuote,
    FlowData,
    IndexSnapshot,
    IndicatorSet,
    OptionChain,
    OptionContract,
    OptionGreeks,
    OptionLiquidity,
    OptionQuote,
    QualityFlags,
    QualityOptions,
    Timeframe,
)
from conflux.data.subscriptions import SubscriptionRegistry, Unsubscribe
from conflux.data.validation import ValidationResult, validate_chain, validate_contract, with_quality
from conflux.indicators.registry import IndicatorRegistry
from conflux.utils.helpers import days_to_expiration, optional_float, to_float, utc_now
from conflux.utils.logger import get_logger

logger = get_logger("adapter_base")

# label -> (multiplier, timespan, minutes per bar)
TIMEFRAME_SPANS: Dict[str, Tuple[int, str, int]] = {
    "1m": (1, "minute", 1),
    "5m": (5, "minute", 5),
    "15m": (15, "minute", 15),
    "1h": (1, "hour", 60),
    "1d": (1, "day", 1440),
}
TRADING_MINUTES_PER_DAY = 390


# ─── Capability contracts ───────────────────────────────────────

class OptionsProvider(ABC):

    @abstractmethod
    async def get_option_chain(self, underlying: str, options: Optional[ChainQueryOptions] = None) -> OptionChain:
        """Full or filtered chain for an underlying."""

    @abstractmethod
    async def get_option_contract(self, underlying: str, strike: float, expiration: str, type: str) -> OptionContract:
        """One contract identified by strike, expiration and call/put."""

    @abstractmethod
    async def get_expirations(
        self, underlying: str, min_date: Optional[str] = None, max_date: Optional[str] = None
    ) -> List[str]:
        """Sorted expiration dates (YYYY-MM-DD)."""

    @abstractmethod
    async def get_flow_data(
        self, underlying: str, start_time: Optional[datetime] = None, end_time: Optional[datetime] = None
    ) -> FlowData:
        """Aggregated options flow."""

    @abstractmethod
    def subscribe_to_chain(self, underlying: str, callback: Callable[[OptionChain], None]) -> Unsubscribe:
        pass

    @abstractmethod
    def subscribe_to_option(
        self, underlying: str, strike: float, expiration: str, type: str,
        callback: Callable[[OptionContract], None],
    ) -> Unsubscribe:
        pass

    @abstractmethod
    def subscribe_to_flow(self, underlying: str, callback: Callable[[FlowData], None]) -> Unsubscribe:
        pass


class IndicesProvider(ABC):

    @abstractmethod
    async def get_index_snapshot(self, tickers: Sequence[str]) -> Dict[str, IndexSnapshot]:
        """Snapshots keyed by normalized ticker."""

    @abstractmethod
    async def get_indicators(self, ticker: str, timeframe: str, lookback: Optional[int] = None) -> IndicatorSet:
        pass

    @abstractmethod
    async def get_candles(
        self, ticker: str, timeframe: str, from_date: str, to_date: str, limit: Optional[int] = None
    ) -> List[Candle]:
        pass

    async def get_timeframe(
        self,
        ticker: str,
        timeframe: str,
        from_date: Optional[str] = None,
        to_date: Optional[str] = None,
        lookback: Optional[int] = None,
    ) -> Timeframe:
        """Candles plus indicators for one timeframe, fetched concurrently."""
        today = utc_now().date()
        from_date = from_date or (today - timedelta(days=1)).isoformat()
        to_date = to_date or today.isoformat()
        candles, indicators = await asyncio.gather(
            self.get_candles(ticker, timeframe, from_date, to_date, lookback),
            self.get_indicators(ticker, timeframe, lookback),
        )
        return Timeframe(period=timeframe, candles=candles, indicators=indicators, updated_at=utc_now())

    @abstractmethod
    def subscribe_to_index(self, ticker: str, callback: Callable[[IndexSnapshot], None]) -> Unsubscribe:
        pass

    @abstractmethod
    def subscribe_to_timeframe(
        self, ticker: str, timeframe: str, callback: Callable[[Timeframe], None]
    ) -> Unsubscribe:
        pass


class BrokerProvider(ABC):

    @abstractmethod
    async def get_equity_quote(self, symbol: str) -> EquityQuote:
        pass

    @abstractmethod
    async def get_bars(
        self, symbol: str, interval: str, from_date: str, to_date: str, limit: Optional[int] = None
    ) -> List[Bar]:
        pass

    @abstractmethod
    def subscribe_to_equity(self, symbol: str, callback: Callable[[EquityQuote], None]) -> Unsubscribe:
        pass


class MarketDataProvider(OptionsProvider, IndicesProvider, BrokerProvider):
    """All three capabilities behind one connect/disconnect lifecycle."""

    @abstractmethod
    async def connect(self) -> None:
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        pass


# ─── Shared adapter base ────────────────────────────────────────

class BaseProviderAdapter(MarketDataProvider):
    """
    Vendor-independent plumbing: cache, HTTP client, validation, subscription
    registry and local indicator computation. Subclasses only translate
    vendor payloads.
    """

    vendor: str = "vendor"

    def __init__(
        self,
        role: DataSource,
        client: VendorHttpClient,
        settings: Optional[AppSettings] = None,
        iv_encoding: IVEncoding = IVEncoding.DECIMAL,
        cache: Optional[TTLCache] = None,
        quality_options: Optional[QualityOptions] = None,
    ):
        self.settings = settings or get_settings()
        self.role = role
        self.client = client
        self.iv_encoding = IVEncoding(iv_encoding)
        self.cache_ttl = self.settings.cache
        self.cache: TTLCache = cache or TTLCache(name=self.vendor, maxsize=self.cache_ttl.maxsize)
        self.quality_options = quality_options or self.settings.quality.to_options()
        self.registry = SubscriptionRegistry(self.vendor)
        self.indicators = IndicatorRegistry(self.settings.indicators)

    async def connect(self) -> None:
        await self.client.connect()
        logger.info("adapter_connected", vendor=self.vendor, role=self.role.value)

    async def disconnect(self) -> None:
        await self.client.close()
        self.registry.clear()
        logger.info("adapter_disconnected", vendor=self.vendor)

    # ── normalization helpers ──

    def fresh_flags(self) -> QualityFlags:
        return QualityFlags.fresh(self.role)

    @staticmethod
    def assess_liquidity(volume: float, open_interest: float, spread_percent: float) -> DataQualityLevel:
        if spread_percent > 5:
            return DataQualityLevel.POOR
        if volume < 10 or open_interest < 10:
            return DataQualityLevel.FAIR
        if volume < 100 or open_interest < 100:
            return DataQualityLevel.GOOD
        return DataQualityLevel.EXCELLENT

    def build_contract(
        self,
        ticker: str,
        root_symbol: str,
        strike: float,
        expiration: str,
        type: str,
        bid: Any,
        ask: Any,
        last: Any = None,
        bid_size: Any = None,
        ask_size: Any = None,
        greeks: Optional[Dict[str, Any]] = None,
        raw_iv: Any = None,
        volume: Any = 0,
        open_interest: Any = 0,
        flags: Optional[QualityFlags] = None,
    ) -> OptionContract:
        """Assemble, validate and stamp one contract from already-extracted vendor fields."""
        greeks = greeks or {}
        bid_f, ask_f = to_float(bid), to_float(ask)
        last_f = optional_float(last)
        if bid_f > 0 and ask_f > 0:
            mid = (bid_f + ask_f) / 2.0
        else:
            mid = last_f or 0.0
        has_two_sided = bid_f > 0 and ask_f > 0 and mid > 0
        spread_pct = (ask_f - bid_f) / mid * 100.0 if has_two_sided else 0.0
        vol = to_float(volume)
        oi = to_float(open_interest)

        iv, anomaly = normalize_vendor_iv(raw_iv, self.iv_encoding)
        if anomaly:
            logger.warning("iv_anomaly", vendor=self.vendor, ticker=ticker, detail=anomaly)
        iv_bid, _ = normalize_vendor_iv(greeks.get("bid_iv"), self.iv_encoding)
        iv_ask, _ = normalize_vendor_iv(greeks.get("ask_iv"), self.iv_encoding)

        contract = OptionContract(
            ticker=ticker or "",
            root_symbol=root_symbol or "",
            strike=strike,
            expiration=expiration or "",
            type=type,
            dte=days_to_expiration(expiration),
            quote=OptionQuote(
                bid=bid_f,
                ask=ask_f,
                mid=mid,
                last=last_f,
                bid_size=optional_float(bid_size),
                ask_size=optional_float(ask_size),
            ),
            greeks=OptionGreeks(
                delta=to_float(greeks.get("delta")),
                gamma=to_float(greeks.get("gamma")),
                theta=to_float(greeks.get("theta")),
                vega=to_float(greeks.get("vega")),
                rho=optional_float(greeks.get("rho")),
                iv=iv,
                iv_bid=iv_bid or None,
                iv_ask=iv_ask or None,
            ),
            liquidity=OptionLiquidity(
                volume=vol,
                open_interest=oi,
                spread_points=max(0.0, ask_f - bid_f) if has_two_sided else 0.0,
                spread_percent=spread_pct,
                liquidity_quality=self.assess_liquidity(vol, oi, spread_pct if has_two_sided else 100.0),
            ),
            quality=flags or self.fresh_flags(),
        )
        return self.score_contract(contract)

    def score_contract(self, contract: OptionContract) -> OptionContract:
        return with_quality(contract, validate_contract(contract, self.quality_options), self.role)

    def finalize_chain(
        self,
        underlying: str,
        underlying_price: float,
        contracts: List[OptionContract],
        contract_results: Optional[Dict[str, ValidationResult]] = None,
    ) -> OptionChain:
        chain = OptionChain(
            underlying=underlying,
            underlying_price=underlying_price,
            contracts=contracts,
            quality=self.fresh_flags(),
        )
        result = validate_chain(chain, self.quality_options, contract_results=contract_results)
        if not result.is_valid:
            logger.warning(
                "chain_validation_failed",
                vendor=self.vendor,
                underlying=underlying,
                errors=result.errors[:5],
            )
        return with_quality(chain, result, self.role)

    @staticmethod
    def filter_contracts(contracts: List[OptionContract], options: Optional[ChainQueryOptions]) -> List[OptionContract]:
        """Client-side chain filters, applied after normalization."""
        if options is None:
            return contracts
        result = contracts
        if options.strike_range:
            low, high = options.strike_range
            result = [c for c in result if low <= c.strike <= high]
        if options.expiration_range:
            start, end = options.expiration_range
            result = [c for c in result if start <= c.expiration <= end]
        if options.min_volume is not None:
            result = [c for c in result if c.liquidity.volume >= options.min_volume]
        if options.min_open_interest is not None:
            result = [c for c in result if c.liquidity.open_interest >= options.min_open_interest]
        if options.max_spread_percent is not None:
            result = [c for c in result if c.liquidity.spread_percent <= options.max_spread_percent]
        if options.limit is not None:
            result = result[: options.limit]
        return result

    def chain_ttl_ms(self, options: Optional[ChainQueryOptions]) -> int:
        if options is not None and options.limit:
            return self.cache_ttl.limited_chain_ttl_ms
        return self.cache_ttl.chain_ttl_ms

    @staticmethod
    def pick_contract(chain: OptionChain, strike: float, type: str) -> Optional[OptionContract]:
        for contract in chain.contracts:
            if math.isclose(contract.strike, strike, abs_tol=1e-6) and contract.type == type:
                return contract
        return None

    # ── indicators ──

    @staticmethod
    def lookback_window(timeframe: str, lookback: int) -> Tuple[str, str]:
        """Calendar date range wide enough to hold `lookback` bars of `timeframe`."""
        _, _, minutes = TIMEFRAME_SPANS.get(timeframe, TIMEFRAME_SPANS["1d"])
        if minutes >= 1440:
            days = math.ceil(lookback * 1.5) + 5
        else:
            days = math.ceil(lookback * minutes / TRADING_MINUTES_PER_DAY * 1.5) + 3
        today = utc_now().date()
        return (today - timedelta(days=days)).isoformat(), today.isoformat()

    async def get_indicators(self, ticker: str, timeframe: str, lookback: Optional[int] = None) -> IndicatorSet:
        """Indicators computed locally from this vendor's candles."""
        lookback = lookback or self.settings.indicators.default_lookback
        key = make_key("indicators", ticker, timeframe, lookback)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        from_date, to_date = self.lookback_window(timeframe, lookback)
        candles = await self.get_candles(ticker, timeframe, from_date, to_date)
        indicator_set = self.indicators.build(candles[-lookback:])
        self.cache.set(key, indicator_set, self.cache_ttl.indicators_ttl_ms)
        return indicator_set

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "vendor": self.vendor,
            "role": self.role.value,
            "cache": self.cache.stats,
            "http": self.client.stats,
            "subscriptions": self.registry.count(),
        }
