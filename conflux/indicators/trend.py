"""
CONFLUX™ — Trend Indicators
EMA set (8, 20, 50, 200 by default)
"""
from typing import Any, Dict, List

import pandas as pd

from conflux.indicators.base import BaseIndicator


class EMAIndicator(BaseIndicator):
    """Exponential moving averages for several periods at once."""

    def __init__(self, periods: List[int] = None):
        self.periods = sorted(periods or [8, 20, 50, 200])
        super().__init__(name="ema", params={"periods": self.periods}, min_bars=min(self.periods))

    def calculate(self, data: pd.DataFrame) -> pd.DataFrame:
        df = data.copy()
        for period in self.periods:
            df[f"ema_{period}"] = df["close"].ewm(span=period, adjust=False, min_periods=period).mean()
        return df

    def summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        values = {}
        for period in self.periods:
            value = self.latest(df, f"ema_{period}")
            if value is not None:
                values[period] = value
        return {"ema": values}
