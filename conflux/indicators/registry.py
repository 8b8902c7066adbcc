"""
CONFLUX™ — Indicator Registry
Computes every registered indicator over a candle list in one pass and folds
the latest values into an IndicatorSet.
"""
from typing import Dict, List, Optional, Sequence

import pandas as pd

from conflux.config.settings import IndicatorSettings, get_settings
from conflux.data.models import Candle, IndicatorSet
from conflux.indicators.base import BaseIndicator
from conflux.indicators.composite import PivotPointsIndicator, VWAPIndicator
from conflux.indicators.directional import ADXIndicator
from conflux.indicators.momentum import RSIIndicator
from conflux.indicators.oscillators import MACDIndicator
from conflux.indicators.trend import EMAIndicator
from conflux.indicators.volatility import ATRIndicator, BollingerBandsIndicator
from conflux.utils.logger import get_logger

logger = get_logger("indicator_registry")

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]


def candles_to_dataframe(candles: Sequence[Candle]) -> pd.DataFrame:
    """Candles to a time-indexed OHLCV frame, oldest first."""
    if not candles:
        return pd.DataFrame(columns=OHLCV_COLUMNS, dtype=float)
    df = pd.DataFrame(
        [
            {
                "time": pd.to_datetime(c.time, unit="ms", utc=True),
                "open": c.open,
                "high": c.high,
                "low": c.low,
                "close": c.close,
                "volume": c.volume,
            }
            for c in candles
        ]
    )
    df.set_index("time", inplace=True)
    df.sort_index(inplace=True)
    return df[~df.index.duplicated(keep="last")]


class IndicatorRegistry:
    """Registry of the indicators published in an IndicatorSet."""

    def __init__(self, settings: Optional[IndicatorSettings] = None):
        self.settings = settings or get_settings().indicators
        self._indicators: Dict[str, BaseIndicator] = {}
        self._register_all()

    def _register_all(self) -> None:
        s = self.settings
        for indicator in (
            EMAIndicator(periods=s.ema_periods),
            RSIIndicator(period=s.rsi_period),
            MACDIndicator(fast=s.macd_fast, slow=s.macd_slow, signal=s.macd_signal),
            ATRIndicator(period=s.atr_period),
            BollingerBandsIndicator(period=s.bb_period, std_dev=s.bb_std),
            VWAPIndicator(),
            ADXIndicator(period=s.adx_period),
            PivotPointsIndicator(),
        ):
            self.register(indicator)

    def register(self, indicator: BaseIndicator) -> None:
        self._indicators[indicator.name] = indicator

    def get(self, name: str) -> Optional[BaseIndicator]:
        return self._indicators.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._indicators)

    @property
    def count(self) -> int:
        return len(self._indicators)

    def compute_all(self, df: pd.DataFrame) -> pd.DataFrame:
        """Run every indicator; one failing indicator does not sink the rest."""
        result = df.copy()
        for name, indicator in self._indicators.items():
            try:
                result = indicator.calculate(result)
            except (KeyError, ValueError, ZeroDivisionError) as e:
                logger.error("indicator_calculation_failed", indicator=name, error=str(e))
        return result

    def build(self, candles: Sequence[Candle]) -> IndicatorSet:
        """IndicatorSet for the latest candle. Indicators lacking history are left unset."""
        df = candles_to_dataframe(candles)
        if df.empty:
            return IndicatorSet()

        enriched = self.compute_all(df)
        fields: Dict[str, object] = {}
        for indicator in self._indicators.values():
            if len(enriched) < indicator.min_bars:
                continue
            fields.update({k: v for k, v in indicator.summarize(enriched).items() if v is not None})
        return IndicatorSet(**fields)
