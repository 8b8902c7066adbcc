"""
CONFLUX™ — Validation & Quality Engine
Structural, numeric and freshness checks that turn a normalized entity into a
quality tier and a 0-100 confidence score. The router trusts nothing else when
deciding whether a primary result is usable.
"""
from datetime import datetime
from typing import Dict, List, Optional, Tuple, TypeVar

from pydantic import BaseModel, Field

from conflux.data.models import (
    DataQualityLevel,
    DataSource,
    EquityQuote,
    FLOW_BIASES,
    IndexSnapshot,
    OptionChain,
    OptionContract,
    OptionType,
    QualityFlags,
    QualityOptions,
)
from conflux.utils.helpers import age_ms, clamp, is_finite, parse_iso_date, utc_now

DEFAULT_QUALITY_OPTIONS = QualityOptions()

# Clock skew tolerated before a timestamp counts as "in the future".
FUTURE_SKEW_MS = 1_000.0

WIDE_SPREAD_PERCENT = 20.0
MAX_ABS_DELTA = 1.5
MAX_GAMMA = 0.5
MAX_ABS_THETA = 2.0
MAX_VEGA = 1.0
MAX_IV = 10.0
CHANGE_TOLERANCE_POINTS = 1.0

E = TypeVar("E", bound=BaseModel)


class ValidationResult(BaseModel):
    is_valid: bool
    quality: DataQualityLevel
    confidence: int
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    info: List[str] = Field(default_factory=list)
    age_ms: float = 0.0
    is_stale: bool = False


# ─── Scoring helpers ────────────────────────────────────────────

def _score_entity(errors: List[str], warnings: List[str]) -> Tuple[DataQualityLevel, float]:
    """Stepwise tier used for contracts, indices and equities."""
    n = len(warnings)
    if errors:
        return DataQualityLevel.POOR, 0.0
    if n > 3:
        return DataQualityLevel.FAIR, max(40.0, 100.0 - n * 10)
    if n > 1:
        return DataQualityLevel.GOOD, max(70.0, 100.0 - n * 5)
    if n == 1:
        return DataQualityLevel.GOOD, 90.0
    return DataQualityLevel.EXCELLENT, 100.0


def _score_chain(errors: List[str], warnings: List[str], min_confidence: float) -> Tuple[DataQualityLevel, float]:
    n = len(warnings)
    if errors:
        return DataQualityLevel.POOR, 0.0
    if n > 5:
        return DataQualityLevel.FAIR, min(min_confidence, max(40.0, 100.0 - n * 5))
    if n > 2:
        return DataQualityLevel.GOOD, min(min_confidence, max(70.0, 100.0 - n * 5))
    return DataQualityLevel.EXCELLENT, min_confidence


def _age_discount(confidence: float, age: float, opts: QualityOptions) -> int:
    if age > opts.max_age_ms_for_good:
        confidence *= 0.9
    if age > opts.max_age_ms_for_fair:
        confidence *= 0.75
    return int(round(clamp(confidence, 0.0, 100.0)))


def _check_freshness(
    label: str,
    updated_at: datetime,
    now: datetime,
    opts: QualityOptions,
    errors: List[str],
    warnings: List[str],
) -> float:
    age = age_ms(updated_at, now)
    if age < -FUTURE_SKEW_MS:
        errors.append(f"{label} timestamp in future ({-age / 1000:.1f}s ahead)")
    elif age > opts.max_age_ms_for_acceptable:
        errors.append(
            f"{label} is {age / 1000:.1f}s old (max {opts.max_age_ms_for_acceptable / 1000:g}s)"
        )
    elif age > opts.max_age_ms_for_good:
        warnings.append(
            f"{label} is {age / 1000:.1f}s old (good threshold {opts.max_age_ms_for_good / 1000:g}s)"
        )
    return max(0.0, age)


def _result(
    errors: List[str],
    warnings: List[str],
    info: List[str],
    quality: DataQualityLevel,
    confidence: float,
    age: float,
    opts: QualityOptions,
) -> ValidationResult:
    confidence = _age_discount(confidence, age, opts)
    if confidence == 0:
        quality = DataQualityLevel.POOR
    return ValidationResult(
        is_valid=not errors,
        quality=quality,
        confidence=confidence,
        errors=errors,
        warnings=warnings,
        info=info,
        age_ms=age,
        is_stale=age > opts.max_age_ms_for_acceptable,
    )


def _fmt(value) -> str:
    return f"{value:g}" if isinstance(value, float) else str(value)


# ─── Option contract ────────────────────────────────────────────

def validate_contract(
    contract: OptionContract,
    options: Optional[QualityOptions] = None,
    now: Optional[datetime] = None,
) -> ValidationResult:
    """Validate a single option contract."""
    opts = options or DEFAULT_QUALITY_OPTIONS
    now = now or utc_now()
    errors: List[str] = []
    warnings: List[str] = []
    info: List[str] = []

    # Identity
    if not contract.ticker:
        errors.append("Invalid or missing ticker")
    if not contract.root_symbol:
        errors.append("Invalid or missing root symbol")
    if not is_finite(contract.strike) or contract.strike <= 0:
        errors.append(f"Invalid strike: {_fmt(contract.strike)}")
    if parse_iso_date(contract.expiration) is None:
        errors.append(f"Invalid expiration: {contract.expiration!r}")
    if contract.type not in (OptionType.CALL.value, OptionType.PUT.value):
        errors.append(f"Invalid type: {contract.type!r}")
    if contract.dte < 0:
        errors.append(f"Invalid DTE: {contract.dte}")

    # Quote
    q = contract.quote
    for name, value in (("bid", q.bid), ("ask", q.ask), ("mid", q.mid)):
        if not is_finite(value) or value < 0:
            errors.append(f"Invalid {name}: {_fmt(value)}")
    if is_finite(q.bid) and is_finite(q.ask):
        if q.bid > q.ask:
            errors.append(f"Inverted quote: bid ({_fmt(q.bid)}) > ask ({_fmt(q.ask)})")
        elif is_finite(q.mid) and q.mid > 0:
            spread_pct = (q.ask - q.bid) / q.mid * 100.0
            if spread_pct > WIDE_SPREAD_PERCENT:
                warnings.append(f"Wide spread: {spread_pct:.2f}%")
    if q.last is not None and (not is_finite(q.last) or q.last < 0):
        warnings.append(f"Invalid last price: {_fmt(q.last)}")

    # Greeks
    g = contract.greeks
    if not is_finite(g.delta) or abs(g.delta) > MAX_ABS_DELTA:
        warnings.append(f"Unusual delta: {_fmt(g.delta)}")
    if not is_finite(g.gamma):
        warnings.append(f"Invalid gamma: {_fmt(g.gamma)}")
    elif g.gamma < 0:
        warnings.append(f"Negative gamma: {g.gamma:.4f}")
    elif g.gamma > MAX_GAMMA:
        warnings.append(f"High gamma: {g.gamma:.4f}")
    if not is_finite(g.theta):
        warnings.append(f"Invalid theta: {_fmt(g.theta)}")
    elif abs(g.theta) > MAX_ABS_THETA:
        warnings.append(f"Very high theta magnitude: {g.theta:.4f}")
    if not is_finite(g.vega) or g.vega < 0:
        warnings.append(f"Invalid or negative vega: {_fmt(g.vega)}")
    elif g.vega > MAX_VEGA:
        warnings.append(f"Very high vega: {g.vega:.4f}")
    if not is_finite(g.iv) or g.iv < 0 or g.iv > MAX_IV:
        warnings.append(f"Unusual IV: {g.iv * 100:.1f}%")

    # Liquidity
    liq = contract.liquidity
    if not is_finite(liq.volume) or liq.volume < 0:
        warnings.append(f"Invalid volume: {_fmt(liq.volume)}")
    elif liq.volume == 0:
        warnings.append("Zero volume")
    if not is_finite(liq.open_interest) or liq.open_interest < 0:
        warnings.append(f"Invalid open interest: {_fmt(liq.open_interest)}")
    elif liq.open_interest == 0:
        warnings.append("Zero open interest")

    age = _check_freshness("Data", contract.quality.updated_at, now, opts, errors, warnings)

    # Consistency
    if contract.type == OptionType.CALL.value and is_finite(g.delta) and g.delta < 0:
        warnings.append(f"Call with negative delta: {_fmt(g.delta)}")
    if contract.type == OptionType.PUT.value and is_finite(g.delta) and g.delta > 0:
        warnings.append(f"Put with positive delta: {_fmt(g.delta)}")

    if contract.flow is not None:
        if contract.flow.flow_bias not in FLOW_BIASES:
            warnings.append(f"Invalid flow bias: {contract.flow.flow_bias!r}")
        if not 0 <= contract.flow.buy_pressure <= 100:
            warnings.append(f"Invalid buy pressure: {_fmt(contract.flow.buy_pressure)}")

    quality, confidence = _score_entity(errors, warnings)
    return _result(errors, warnings, info, quality, confidence, age, opts)


# ─── Option chain ───────────────────────────────────────────────

def validate_chain(
    chain: OptionChain,
    options: Optional[QualityOptions] = None,
    now: Optional[datetime] = None,
    contract_results: Optional[Dict[str, ValidationResult]] = None,
) -> ValidationResult:
    """
    Validate an entire chain.

    Confidence is the weakest contract's confidence. The tier itself is driven
    by chain-level findings (coverage, freshness), so a sound two-sided chain
    stays excellent even if thin strikes carry liquidity warnings.

    `contract_results` is a per-ticker memo: entries already present are
    reused as scored, missing ones are computed and stored. Callers that
    patch single contracts drop that ticker's entry so only it is re-scored.
    """
    opts = options or DEFAULT_QUALITY_OPTIONS
    now = now or utc_now()
    errors: List[str] = []
    warnings: List[str] = []
    info: List[str] = []

    if not chain.underlying:
        errors.append("Invalid or missing underlying")
    if not is_finite(chain.underlying_price) or chain.underlying_price <= 0:
        errors.append(f"Invalid underlying price: {_fmt(chain.underlying_price)}")
    if not chain.contracts:
        errors.append("Empty chain")

    min_confidence = 100.0
    flagged = 0
    calls = puts = 0
    strikes = set()
    for contract in chain.contracts:
        result = contract_results.get(contract.ticker) if contract_results is not None else None
        if result is None:
            result = validate_contract(contract, opts, now)
            if contract_results is not None and contract.ticker:
                contract_results[contract.ticker] = result
        if not result.is_valid:
            errors.append(f"Contract {contract.ticker}: {'; '.join(result.errors)}")
        elif result.warnings:
            flagged += 1
        min_confidence = min(min_confidence, result.confidence)
        if contract.type == OptionType.CALL.value:
            calls += 1
        elif contract.type == OptionType.PUT.value:
            puts += 1
        if is_finite(contract.strike) and contract.strike > 0:
            strikes.add(contract.strike)

    if chain.contracts:
        if calls == 0:
            warnings.append("No calls in chain")
        if puts == 0:
            warnings.append("No puts in chain")
    if flagged:
        info.append(f"{flagged} of {len(chain.contracts)} contracts carry warnings")

    if len(strikes) > 2:
        ordered = sorted(strikes)
        gaps = [b - a for a, b in zip(ordered, ordered[1:])]
        typical = sorted(gaps)[len(gaps) // 2]
        for (low, high), gap in zip(zip(ordered, ordered[1:]), gaps):
            if gap > max(5.0, typical * 2):
                info.append(f"Strike gap: {_fmt(low)} to {_fmt(high)} ({_fmt(gap)})")

    age = _check_freshness("Chain", chain.quality.updated_at, now, opts, errors, warnings)

    quality, confidence = _score_chain(errors, warnings, min_confidence)
    return _result(errors, warnings, info, quality, confidence, age, opts)


# ─── Index snapshot ─────────────────────────────────────────────

def validate_index_snapshot(
    snapshot: IndexSnapshot,
    options: Optional[QualityOptions] = None,
    now: Optional[datetime] = None,
) -> ValidationResult:
    """Validate an index snapshot and any attached timeframes."""
    opts = options or DEFAULT_QUALITY_OPTIONS
    now = now or utc_now()
    errors: List[str] = []
    warnings: List[str] = []
    info: List[str] = []

    if not snapshot.symbol:
        errors.append("Invalid or missing symbol")

    quote = snapshot.quote
    if quote is None:
        errors.append("Missing quote data")
    else:
        if not is_finite(quote.value) or quote.value <= 0:
            errors.append(f"Invalid index value: {_fmt(quote.value)}")
        if not is_finite(quote.change):
            warnings.append(f"Invalid change: {_fmt(quote.change)}")
        if not is_finite(quote.change_percent):
            warnings.append(f"Invalid change percent: {_fmt(quote.change_percent)}")
        if quote.high > 0 and quote.low > 0 and quote.high < quote.low:
            errors.append(f"Quote inverted: high {_fmt(quote.high)} < low {_fmt(quote.low)}")
        if (
            is_finite(quote.value)
            and is_finite(quote.change)
            and is_finite(quote.prev_close)
            and quote.prev_close > 0
        ):
            expected = quote.value - quote.prev_close
            if abs(quote.change - expected) > CHANGE_TOLERANCE_POINTS:
                warnings.append(f"Inconsistent change: {_fmt(quote.change)} vs expected {expected:.2f}")

    if not snapshot.timeframes:
        info.append("No timeframes data")
    for label, timeframe in snapshot.timeframes.items():
        if not timeframe.candles:
            warnings.append(f"No candles for timeframe {label}")
        for candle in timeframe.candles:
            if not candle.high >= candle.low:
                errors.append(f"Candle inverted: {label} high {_fmt(candle.high)} < low {_fmt(candle.low)}")
            elif not candle.low <= candle.close <= candle.high:
                warnings.append(f"Close {_fmt(candle.close)} outside high/low for {label}")

    age = _check_freshness("Snapshot", snapshot.updated_at, now, opts, errors, warnings)

    quality, confidence = _score_entity(errors, warnings)
    return _result(errors, warnings, info, quality, confidence, age, opts)


# ─── Equity quote ───────────────────────────────────────────────

def validate_equity_quote(
    quote: EquityQuote,
    options: Optional[QualityOptions] = None,
    now: Optional[datetime] = None,
) -> ValidationResult:
    opts = options or DEFAULT_QUALITY_OPTIONS
    now = now or utc_now()
    errors: List[str] = []
    warnings: List[str] = []

    if not quote.symbol:
        errors.append("Invalid or missing symbol")
    if not is_finite(quote.price) or quote.price <= 0:
        errors.append(f"Invalid price: {_fmt(quote.price)}")
    if quote.volume == 0:
        warnings.append("Zero volume")
    if quote.high > 0 and quote.low > 0 and quote.high < quote.low:
        warnings.append(f"High {_fmt(quote.high)} below low {_fmt(quote.low)}")
    if quote.prev_close > 0 and is_finite(quote.price) and quote.price > 0:
        expected = quote.price - quote.prev_close
        if abs(quote.change - expected) > CHANGE_TOLERANCE_POINTS:
            warnings.append(f"Inconsistent change: {_fmt(quote.change)} vs expected {expected:.2f}")

    age = _check_freshness("Quote", quote.updated_at, now, opts, errors, warnings)

    quality, confidence = _score_entity(errors, warnings)
    return _result(errors, warnings, [], quality, confidence, age, opts)


# ─── Flags ──────────────────────────────────────────────────────

def create_quality_flags(
    result: ValidationResult,
    source: DataSource,
    fallback_reason: Optional[str] = None,
    updated_at: Optional[datetime] = None,
) -> QualityFlags:
    """Build fresh QualityFlags from a validation result."""
    return QualityFlags(
        source=source,
        quality=result.quality,
        confidence=result.confidence,
        is_stale=result.is_stale,
        has_warnings=bool(result.warnings),
        warnings=tuple(result.warnings),
        updated_at=updated_at or utc_now(),
        fallback_reason=fallback_reason,
        stale_since_ms=result.age_ms if result.is_stale else None,
    )


def with_quality(entity: E, result: ValidationResult, source: DataSource) -> E:
    """Return a copy of `entity` carrying flags derived from `result`."""
    current = getattr(entity, "quality", None)
    stamped = current.updated_at if current is not None else getattr(entity, "updated_at", None)
    flags = create_quality_flags(result, source, updated_at=stamped)
    return entity.model_copy(update={"quality": flags})
