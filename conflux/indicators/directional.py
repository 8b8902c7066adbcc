"""
CONFLUX™ — Directional Indicators
ADX (14)
"""
from typing import Any, Dict

import numpy as np
import pandas as pd

from conflux.indicators.base import BaseIndicator
from conflux.indicators.volatility import true_range


class ADXIndicator(BaseIndicator):
    """Average Directional Index from Wilder-smoothed +DI/-DI."""

    def __init__(self, period: int = 14):
        self.period = period
        super().__init__(name="adx", params={"period": period}, min_bars=period * 2)

    def calculate(self, data: pd.DataFrame) -> pd.DataFrame:
        df = data.copy()
        tr = true_range(df)

        up_move = df["high"] - df["high"].shift(1)
        down_move = df["low"].shift(1) - df["low"]
        plus_dm = pd.Series(
            np.where((up_move > down_move) & (up_move > 0), up_move, 0.0), index=df.index
        )
        minus_dm = pd.Series(
            np.where((down_move > up_move) & (down_move > 0), down_move, 0.0), index=df.index
        )

        alpha = 1.0 / self.period
        atr_smooth = tr.ewm(alpha=alpha, min_periods=self.period, adjust=False).mean()
        plus_di = 100.0 * plus_dm.ewm(alpha=alpha, min_periods=self.period, adjust=False).mean() / atr_smooth.replace(0, np.nan)
        minus_di = 100.0 * minus_dm.ewm(alpha=alpha, min_periods=self.period, adjust=False).mean() / atr_smooth.replace(0, np.nan)

        di_sum = (plus_di + minus_di).replace(0, np.nan)
        dx = 100.0 * (plus_di - minus_di).abs() / di_sum

        df["plus_di"] = plus_di
        df["minus_di"] = minus_di
        df["adx"] = dx.ewm(alpha=alpha, min_periods=self.period, adjust=False).mean()
        return df

    def summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        return {"adx": self.latest(df, "adx")}
