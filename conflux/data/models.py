"""
CONFLUX™ — Canonical Market Data Models
Entity shapes every vendor adapter must produce. Nothing vendor-specific
crosses this boundary.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

from conflux.utils.helpers import utc_now

T = TypeVar("T")


class DataSource(str, Enum):
    """Routing role that served a value, never a vendor name."""
    PRIMARY = "primary"
    SECONDARY = "secondary"
    HYBRID = "hybrid"


class DataQualityLevel(str, Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class OptionType(str, Enum):
    CALL = "call"
    PUT = "put"


class TickType(str, Enum):
    OPTION = "option"
    INDEX = "index"
    EQUITY = "equity"
    FLOW = "flow"


FLOW_BIASES: Tuple[str, ...] = ("bullish", "bearish", "neutral")


# ─── Quality ────────────────────────────────────────────────────

class QualityOptions(BaseModel):
    """Age thresholds (ms) and minimum confidence used when scoring."""
    model_config = ConfigDict(frozen=True)

    max_age_ms_for_good: int = 5_000
    max_age_ms_for_fair: int = 15_000
    max_age_ms_for_acceptable: int = 30_000
    min_confidence_score: int = 60


class QualityFlags(BaseModel):
    """Freshness and trust annotation attached to every fetched entity."""
    model_config = ConfigDict(frozen=True)

    source: DataSource
    quality: DataQualityLevel = DataQualityLevel.EXCELLENT
    confidence: int = Field(default=100, ge=0, le=100)
    is_stale: bool = False
    has_warnings: bool = False
    warnings: Tuple[str, ...] = ()
    updated_at: datetime = Field(default_factory=utc_now)
    fallback_reason: Optional[str] = None
    stale_since_ms: Optional[float] = None

    @model_validator(mode="after")
    def _zero_confidence_is_poor(self) -> "QualityFlags":
        if self.confidence == 0 and self.quality != DataQualityLevel.POOR:
            raise ValueError("confidence 0 requires quality 'poor'")
        return self

    @classmethod
    def fresh(cls, source: DataSource, updated_at: Optional[datetime] = None) -> "QualityFlags":
        """Provisional flags stamped at fetch time, replaced once validation runs."""
        return cls(source=source, updated_at=updated_at or utc_now())


# ─── Options ────────────────────────────────────────────────────

class OptionQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    bid: float = 0.0
    ask: float = 0.0
    mid: float = 0.0
    last: Optional[float] = None
    bid_size: Optional[float] = None
    ask_size: Optional[float] = None


class OptionGreeks(BaseModel):
    """Greeks with implied volatility in decimal form (0.35 == 35%)."""
    model_config = ConfigDict(frozen=True)

    delta: float = 0.0
    gamma: float = 0.0
    theta: float = 0.0
    vega: float = 0.0
    rho: Optional[float] = None
    iv: float = 0.0
    iv_bid: Optional[float] = None
    iv_ask: Optional[float] = None


class OptionLiquidity(BaseModel):
    model_config = ConfigDict(frozen=True)

    volume: float = 0.0
    open_interest: float = 0.0
    spread_points: float = 0.0
    spread_percent: float = 0.0
    liquidity_quality: DataQualityLevel = DataQualityLevel.POOR


class FlowData(BaseModel):
    """Aggregated options flow for one underlying."""
    model_config = ConfigDict(frozen=True)

    sweep_count: int = 0
    block_count: int = 0
    dark_pool_percent: float = 0.0
    flow_bias: str = "neutral"
    buy_pressure: float = 50.0
    unusual_activity: bool = False
    flow_score: float = 0.0
    updated_at: datetime = Field(default_factory=utc_now)
    is_synthetic: bool = False
    quality: Optional[QualityFlags] = None

    @property
    def has_signal(self) -> bool:
        return self.flow_score > 0 or self.sweep_count > 0 or self.block_count > 0


class OptionContract(BaseModel):
    """
    One listed option. Identity fields accept raw values so malformed vendor
    records can still be scored by the validation engine.
    """
    model_config = ConfigDict(frozen=True)

    ticker: str
    root_symbol: str
    strike: float
    expiration: str
    type: str
    dte: int = 0
    quote: OptionQuote = Field(default_factory=OptionQuote)
    greeks: OptionGreeks = Field(default_factory=OptionGreeks)
    liquidity: OptionLiquidity = Field(default_factory=OptionLiquidity)
    flow: Optional[FlowData] = None
    vwap: Optional[float] = None
    quality: QualityFlags


class ChainQueryOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    strike_range: Optional[Tuple[float, float]] = None
    expiration_range: Optional[Tuple[str, str]] = None
    limit: Optional[int] = None
    min_volume: Optional[float] = None
    min_open_interest: Optional[float] = None
    max_spread_percent: Optional[float] = None

    def cache_key(self) -> str:
        return self.model_dump_json(exclude_none=True)


class OptionChain(BaseModel):
    model_config = ConfigDict(frozen=True)

    underlying: str
    underlying_price: float
    contracts: List[OptionContract] = Field(default_factory=list)
    quality: QualityFlags

    @property
    def calls(self) -> List[OptionContract]:
        return [c for c in self.contracts if c.type == OptionType.CALL.value]

    @property
    def puts(self) -> List[OptionContract]:
        return [c for c in self.contracts if c.type == OptionType.PUT.value]


# ─── Indices & candles ──────────────────────────────────────────

class Candle(BaseModel):
    """OHLCV bar; `time` is epoch milliseconds."""
    model_config = ConfigDict(frozen=True)

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    vwap: Optional[float] = None
    trades: Optional[int] = None


Bar = Candle


class MACDValue(BaseModel):
    value: float
    signal: float
    histogram: float


class BollingerBands(BaseModel):
    upper: float
    middle: float
    lower: float


class Pivots(BaseModel):
    pivot: float
    r1: float
    r2: float
    s1: float
    s2: float


class IndicatorSet(BaseModel):
    ema: Dict[int, float] = Field(default_factory=dict)
    rsi: Optional[float] = None
    macd: Optional[MACDValue] = None
    atr: Optional[float] = None
    bollinger_bands: Optional[BollingerBands] = None
    vwap: Optional[float] = None
    adx: Optional[float] = None
    pivots: Optional[Pivots] = None


class Timeframe(BaseModel):
    model_config = ConfigDict(frozen=True)

    period: str
    candles: List[Candle] = Field(default_factory=list)
    indicators: IndicatorSet = Field(default_factory=IndicatorSet)
    updated_at: datetime = Field(default_factory=utc_now)


class IndexQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    value: float
    change: float = 0.0
    change_percent: float = 0.0
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    prev_close: float = 0.0


class IndexSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    quote: Optional[IndexQuote] = None
    timeframes: Dict[str, Timeframe] = Field(default_factory=dict)
    quality: QualityFlags
    updated_at: datetime = Field(default_factory=utc_now)


# ─── Equities ───────────────────────────────────────────────────

class EquityQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    volume: float = 0.0
    prev_close: float = 0.0
    change: float = 0.0
    change_percent: float = 0.0
    vwap: Optional[float] = None
    updated_at: datetime = Field(default_factory=utc_now)
    quality: Optional[QualityFlags] = None


# ─── Router / cache / hub state ─────────────────────────────────

class ProviderHealth(BaseModel):
    """Rolling health for one vendor. Mutated only by the router."""
    healthy: bool = True
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_errors: int = 0
    response_time_ms: float = 0.0
    total_calls: int = 0
    total_errors: int = 0


class CacheEntry(BaseModel, Generic[T]):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    data: T
    timestamp: float  # ms on the owning cache's clock
    ttl_ms: float

    def is_expired(self, now_ms: float) -> bool:
        return now_ms - self.timestamp > self.ttl_ms


TickPayload = Union[OptionChain, IndexSnapshot, EquityQuote, FlowData, OptionContract]


class MarketDataTick(BaseModel):
    """Point-in-time replacement for one entity. Consumers treat it as a full value."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    source: DataSource
    type: TickType
    key: str
    data: TickPayload
    quality: Optional[QualityFlags] = None


class MarketDataSnapshot(BaseModel):
    """Consolidated hub state, mutated in place by the owning hub."""
    timestamp: datetime = Field(default_factory=utc_now)
    option_chains: Dict[str, OptionChain] = Field(default_factory=dict)
    indices: Dict[str, IndexSnapshot] = Field(default_factory=dict)
    equities: Dict[str, EquityQuote] = Field(default_factory=dict)
    flows: Dict[str, FlowData] = Field(default_factory=dict)
    quality: QualityFlags = Field(
        default_factory=lambda: QualityFlags(source=DataSource.HYBRID)
    )

    def counts(self) -> Dict[str, Any]:
        return {
            "option_chains": len(self.option_chains),
            "indices": len(self.indices),
            "equities": len(self.equities),
            "flows": len(self.flows),
        }
