"""
CONFLUX™ — Implied Volatility Normalization
Vendors disagree on IV encoding: some send decimals (0.35), some percentages (35).
Everything past the adapters uses decimals.
"""
import math
from enum import Enum
from typing import Any, Optional, Tuple

IV_MIN = 0.01
IV_MAX = 5.0
# Above this a decimal-encoded value is almost certainly a percentage (1000%).
DECIMAL_ANOMALY_CEILING = 10.0


class IVEncoding(str, Enum):
    DECIMAL = "decimal"
    PERCENT = "percent"


def iv_to_percent(iv: float) -> float:
    return iv * 100.0


def iv_from_percent(pct: float) -> float:
    return pct / 100.0


def _as_float(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


def normalize_iv(raw: Any, encoding: IVEncoding = IVEncoding.DECIMAL) -> float:
    """Convert a vendor IV to decimal. Missing, non-finite or negative values become 0.0."""
    value = _as_float(raw)
    if value is None or value < 0:
        return 0.0
    if IVEncoding(encoding) == IVEncoding.PERCENT:
        return iv_from_percent(value)
    return value


def detect_iv_anomaly(raw: Any, encoding: IVEncoding = IVEncoding.DECIMAL) -> Optional[str]:
    """Describe why a raw IV looks wrong for its declared encoding, or None."""
    if raw is None:
        return None
    value = _as_float(raw)
    if value is None:
        return f"non-numeric IV {raw!r}"
    if value < 0:
        return f"negative IV {value}"
    encoding = IVEncoding(encoding)
    if encoding == IVEncoding.DECIMAL and value > DECIMAL_ANOMALY_CEILING:
        return f"decimal IV {value} looks percent-encoded"
    if encoding == IVEncoding.PERCENT and 0 < value < 1:
        return f"percent IV {value} looks decimal-encoded"
    return None


def clamp_iv(iv: float) -> float:
    """Clamp to [IV_MIN, IV_MAX]. 0.0 means "missing" and is kept as is."""
    if not math.isfinite(iv) or iv <= 0:
        return 0.0
    return min(IV_MAX, max(IV_MIN, iv))


def normalize_vendor_iv(raw: Any, encoding: IVEncoding = IVEncoding.DECIMAL) -> Tuple[float, Optional[str]]:
    """
    Normalize and clamp one vendor IV field.

    A decimal-tagged value above the anomaly ceiling is re-read as a percentage,
    since feeds occasionally leak percent values on individual contracts.
    Returns (decimal_iv, anomaly_message).
    """
    anomaly = detect_iv_anomaly(raw, encoding)
    value = normalize_iv(raw, encoding)
    if IVEncoding(encoding) == IVEncoding.DECIMAL and value > DECIMAL_ANOMALY_CEILING:
        value = iv_from_percent(value)
    clamped = clamp_iv(value)
    if anomaly is None and value > 0 and clamped != value:
        anomaly = f"IV clamped from {value:.4f} to {clamped:.4f}"
    return clamped, anomaly
