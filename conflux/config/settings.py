"""
CONFLUX™ — Central Configuration
All settings are loaded from environment variables with sensible defaults.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional

from conflux.data.models import QualityOptions


class DataSourceSettings(BaseSettings):
    """Vendor API keys, endpoints and transport limits."""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    massive_api_key: str = ""
    massive_base_url: str = "https://api.massive.com"
    massive_ws_url: str = "wss://socket.massive.com"
    massive_iv_encoding: str = "decimal"

    tradier_api_key: str = ""
    tradier_base_url: str = "https://api.tradier.com/v1"
    tradier_iv_encoding: str = "percent"

    request_timeout_seconds: float = 10.0
    max_retries: int = 2  # retries after the first attempt
    backoff_base_ms: int = 100
    backoff_cap_ms: int = 2000

    stream_heartbeat_seconds: float = 25.0
    stream_max_reconnect_attempts: int = 5
    stream_chain_window_ms: int = 50


class CacheSettings(BaseSettings):
    """Per-entity cache lifetimes (milliseconds)."""
    model_config = SettingsConfigDict(env_file=".env", env_prefix="CACHE_", extra="ignore")

    maxsize: int = 1024
    chain_ttl_ms: int = 30_000
    limited_chain_ttl_ms: int = 10_000
    contract_ttl_ms: int = 30_000
    expirations_ttl_ms: int = 300_000
    flow_ttl_ms: int = 60_000
    index_ttl_ms: int = 5_000
    indicators_ttl_ms: int = 30_000
    candles_ttl_ms: int = 60_000
    equity_ttl_ms: int = 5_000


class QualitySettings(BaseSettings):
    """Freshness thresholds used by the validation engine."""
    model_config = SettingsConfigDict(env_file=".env", env_prefix="QUALITY_", extra="ignore")

    max_age_ms_for_good: int = 5_000
    max_age_ms_for_fair: int = 15_000
    max_age_ms_for_acceptable: int = 30_000
    min_confidence_score: int = 60

    def to_options(self) -> QualityOptions:
        return QualityOptions(
            max_age_ms_for_good=self.max_age_ms_for_good,
            max_age_ms_for_fair=self.max_age_ms_for_fair,
            max_age_ms_for_acceptable=self.max_age_ms_for_acceptable,
            min_confidence_score=self.min_confidence_score,
        )


class RoutingSettings(BaseSettings):
    """Fallback and health thresholds for the hybrid router."""
    model_config = SettingsConfigDict(env_file=".env", env_prefix="ROUTER_", extra="ignore")

    enable_fallback: bool = True
    reject_below_confidence: int = 40
    unhealthy_after_errors: int = 3


class HubSettings(BaseSettings):
    """Consolidation hub watch list and timers."""
    model_config = SettingsConfigDict(env_file=".env", env_prefix="HUB_", extra="ignore")

    watchlist_symbols: List[str] = ["SPY", "QQQ"]
    index_tickers: List[str] = ["SPX", "NDX", "VIX"]
    refresh_interval_ms: int = 5_000
    batch_window_ms: int = 100
    ws_enabled: bool = True
    enable_logging: bool = True
    enable_metrics: bool = True


class IndicatorSettings(BaseSettings):
    """Indicator computation parameters."""
    model_config = SettingsConfigDict(env_file=".env", env_prefix="IND_", extra="ignore")

    ema_periods: List[int] = [8, 20, 50, 200]
    rsi_period: int = 14
    atr_period: int = 14
    bb_period: int = 20
    bb_std: float = 2.0
    adx_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    default_lookback: int = 200


class AppSettings(BaseSettings):
    """Top-level application settings."""
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    app_name: str = "CONFLUX™"
    version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    data: DataSourceSettings = Field(default_factory=DataSourceSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    quality: QualitySettings = Field(default_factory=QualitySettings)
    routing: RoutingSettings = Field(default_factory=RoutingSettings)
    hub: HubSettings = Field(default_factory=HubSettings)
    indicators: IndicatorSettings = Field(default_factory=IndicatorSettings)


# Singleton
_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    global _settings
    if _settings is None:
        _settings = AppSettings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None
