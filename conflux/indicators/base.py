"""
CONFLUX™ — Base Indicator Interface
Indicators add columns to an OHLCV frame and summarize the latest bar.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
import math

import pandas as pd


class BaseIndicator(ABC):
    """Abstract base class for candle-derived indicators."""

    def __init__(self, name: str, params: Optional[Dict[str, Any]] = None, min_bars: int = 1):
        self.name = name
        self.params = params or {}
        self.min_bars = min_bars

    @abstractmethod
    def calculate(self, data: pd.DataFrame) -> pd.DataFrame:
        """
        Return a copy of `data` with this indicator's columns added.
        The input frame has columns: open, high, low, close, volume.
        """

    @abstractmethod
    def summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        """IndicatorSet fields for the most recent bar of a calculated frame."""

    @staticmethod
    def latest(df: pd.DataFrame, column: str) -> Optional[float]:
        """Last non-NaN value of a column, or None."""
        if column not in df.columns or df.empty:
            return None
        series = df[column].dropna()
        if series.empty:
            return None
        value = float(series.iloc[-1])
        return value if math.isfinite(value) else None

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name}, params={self.params})"
