"""
CONFLUX™ — Oscillators
MACD (12, 26, 9)
"""
from typing import Any, Dict

import pandas as pd

from conflux.data.models import MACDValue
from conflux.indicators.base import BaseIndicator


class MACDIndicator(BaseIndicator):
    """Moving Average Convergence Divergence."""

    def __init__(self, fast: int = 12, slow: int = 26, signal: int = 9):
        self.fast = fast
        self.slow = slow
        self.signal_period = signal
        super().__init__(
            name="macd",
            params={"fast": fast, "slow": slow, "signal": signal},
            min_bars=slow,
        )

    def calculate(self, data: pd.DataFrame) -> pd.DataFrame:
        df = data.copy()
        ema_fast = df["close"].ewm(span=self.fast, adjust=False).mean()
        ema_slow = df["close"].ewm(span=self.slow, adjust=False).mean()

        df["macd_line"] = ema_fast - ema_slow
        df["macd_signal"] = df["macd_line"].ewm(span=self.signal_period, adjust=False).mean()
        df["macd_histogram"] = df["macd_line"] - df["macd_signal"]
        return df

    def summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        if len(df) < self.min_bars:
            return {}
        line = self.latest(df, "macd_line")
        signal = self.latest(df, "macd_signal")
        hist = self.latest(df, "macd_histogram")
        if line is None or signal is None or hist is None:
            return {}
        return {"macd": MACDValue(value=line, signal=signal, histogram=hist)}
