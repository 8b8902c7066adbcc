"""
CONFLUX™ — Momentum Indicators
RSI (14)
"""
from typing import Any, Dict

import numpy as np
import pandas as pd

from conflux.indicators.base import BaseIndicator


class RSIIndicator(BaseIndicator):
    """Relative Strength Index with Wilder smoothing."""

    def __init__(self, period: int = 14):
        self.period = period
        super().__init__(name="rsi", params={"period": period}, min_bars=period + 1)

    def calculate(self, data: pd.DataFrame) -> pd.DataFrame:
        df = data.copy()
        delta = df["close"].diff()
        gain = delta.where(delta > 0, 0.0)
        loss = (-delta).where(delta < 0, 0.0)

        avg_gain = gain.ewm(alpha=1.0 / self.period, min_periods=self.period, adjust=False).mean()
        avg_loss = loss.ewm(alpha=1.0 / self.period, min_periods=self.period, adjust=False).mean()

        rs = avg_gain / avg_loss.replace(0, np.nan)
        rsi = 100.0 - (100.0 / (1.0 + rs))
        rsi = rsi.mask((avg_loss == 0) & (avg_gain > 0), 100.0)
        rsi = rsi.mask((avg_loss == 0) & (avg_gain == 0), 50.0)
        df["rsi"] = rsi
        return df

    def summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        return {"rsi": self.latest(df, "rsi")}
