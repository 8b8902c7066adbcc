"""
CONFLUX™ — Composite Indicators
VWAP (anchored to the first bar), classic floor pivots
"""
from typing import Any, Dict

import numpy as np
import pandas as pd

from conflux.data.models import Pivots
from conflux.indicators.base import BaseIndicator


class VWAPIndicator(BaseIndicator):
    """Volume Weighted Average Price over the whole frame."""

    def __init__(self):
        super().__init__(name="vwap")

    def calculate(self, data: pd.DataFrame) -> pd.DataFrame:
        df = data.copy()
        typical_price = (df["high"] + df["low"] + df["close"]) / 3.0
        cum_vol = df["volume"].cumsum()
        df["vwap"] = (typical_price * df["volume"]).cumsum() / cum_vol.replace(0, np.nan)
        df["vwap"] = df["vwap"].fillna(df["close"])
        return df

    def summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        return {"vwap": self.latest(df, "vwap")}


class PivotPointsIndicator(BaseIndicator):
    """Floor-trader pivots computed from the previous bar."""

    def __init__(self):
        super().__init__(name="pivots", min_bars=2)

    def calculate(self, data: pd.DataFrame) -> pd.DataFrame:
        df = data.copy()
        prev_high = df["high"].shift(1)
        prev_low = df["low"].shift(1)
        prev_close = df["close"].shift(1)

        pivot = (prev_high + prev_low + prev_close) / 3.0
        df["pivot"] = pivot
        df["pivot_r1"] = 2 * pivot - prev_low
        df["pivot_s1"] = 2 * pivot - prev_high
        df["pivot_r2"] = pivot + (prev_high - prev_low)
        df["pivot_s2"] = pivot - (prev_high - prev_low)
        return df

    def summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        values = {
            key: self.latest(df, column)
            for key, column in (
                ("pivot", "pivot"), ("r1", "pivot_r1"), ("r2", "pivot_r2"),
                ("s1", "pivot_s1"), ("s2", "pivot_s2"),
            )
        }
        if any(v is None for v in values.values()):
            return {}
        return {"pivots": Pivots(**values)}
