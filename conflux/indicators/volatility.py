"""
CONFLUX™ — Volatility Indicators
ATR (14), Bollinger Bands (20, 2)
"""
from typing import Any, Dict

import pandas as pd

from conflux.data.models import BollingerBands
from conflux.indicators.base import BaseIndicator


def true_range(df: pd.DataFrame) -> pd.Series:
    high_low = df["high"] - df["low"]
    high_close = (df["high"] - df["close"].shift(1)).abs()
    low_close = (df["low"] - df["close"].shift(1)).abs()
    return pd.concat([high_low, high_close, low_close], axis=1).max(axis=1)


class ATRIndicator(BaseIndicator):
    """Average True Range."""

    def __init__(self, period: int = 14):
        self.period = period
        super().__init__(name="atr", params={"period": period}, min_bars=period)

    def calculate(self, data: pd.DataFrame) -> pd.DataFrame:
        df = data.copy()
        df["atr"] = true_range(df).ewm(alpha=1.0 / self.period, min_periods=self.period, adjust=False).mean()
        return df

    def summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        return {"atr": self.latest(df, "atr")}


class BollingerBandsIndicator(BaseIndicator):
    """Bollinger Bands around a simple moving average."""

    def __init__(self, period: int = 20, std_dev: float = 2.0):
        self.period = period
        self.std_dev = std_dev
        super().__init__(name="bollinger", params={"period": period, "std_dev": std_dev}, min_bars=period)

    def calculate(self, data: pd.DataFrame) -> pd.DataFrame:
        df = data.copy()
        sma = df["close"].rolling(window=self.period).mean()
        std = df["close"].rolling(window=self.period).std()
        df["bb_middle"] = sma
        df["bb_upper"] = sma + self.std_dev * std
        df["bb_lower"] = sma - self.std_dev * std
        return df

    def summarize(self, df: pd.DataFrame) -> Dict[str, Any]:
        upper = self.latest(df, "bb_upper")
        middle = self.latest(df, "bb_middle")
        lower = self.latest(df, "bb_lower")
        if upper is None or middle is None or lower is None:
            return {}
        return {"bollinger_bands": BollingerBands(upper=upper, middle=middle, lower=lower)}
