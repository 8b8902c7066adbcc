"""
CONFLUX™ — Common Utility Functions
"""
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Optional

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


def utc_timestamp() -> str:
    """Return current UTC timestamp as ISO string."""
    return utc_now().isoformat()


def ms_to_datetime(ms: float) -> datetime:
    return datetime.fromtimestamp(ms / 1000.0, tz=timezone.utc)


def age_ms(then: datetime, now: Optional[datetime] = None) -> float:
    """Milliseconds elapsed since `then`. Negative when `then` is in the future."""
    now = now or utc_now()
    return (now - then).total_seconds() * 1000.0


def safe_divide(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Safe division avoiding ZeroDivisionError."""
    if denominator == 0:
        return default
    return numerator / denominator


def clamp(value: float, min_val: float = 0.0, max_val: float = 100.0) -> float:
    """Clamp a value between min and max."""
    return max(min_val, min(max_val, value))


def to_float(value: Any, default: float = 0.0) -> float:
    """Coerce a vendor JSON value to float; None, blanks and garbage become `default`."""
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError):
        return default
    return result if math.isfinite(result) else default


def optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def is_finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def normalize_symbol(symbol: str) -> str:
    """Normalize symbol format: 'I:SPX' -> 'SPX', ' spy ' -> 'SPY'."""
    symbol = symbol.strip().upper()
    if symbol.startswith("I:"):
        symbol = symbol[2:]
    return symbol


def parse_iso_date(value: str) -> Optional[date]:
    """Parse a strict YYYY-MM-DD calendar date, None when malformed or impossible."""
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        return None


def days_to_expiration(expiration: str, today: Optional[date] = None) -> int:
    """Whole days from today (UTC) until expiration, floored at zero."""
    exp = parse_iso_date(expiration)
    if exp is None:
        return 0
    today = today or utc_now().date()
    return max(0, (exp - today).days)
