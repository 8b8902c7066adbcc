"""
CONFLUX™ — Hybrid Provider Router
Serves every capability through a primary adapter, falling back to the
secondary one when the primary fails or returns data not worth using.
Tracks rolling health per role.
"""
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from conflux.config.settings import AppSettings, get_settings
from conflux.data.adapters.base import MarketDataProvider
from conflux.data.errors import AllProvidersFailedError, DataProviderError
from conflux.data.models import (
    Bar,
    Candle,
    ChainQueryOptions,
    DataQualityLevel,
    DataSource,
    EquityQuote,
    FlowData,
    IndexSnapshot,
    IndicatorSet,
    OptionChain,
    OptionContract,
    ProviderHealth,
    QualityFlags,
    Timeframe,
)
from conflux.data.subscriptions import Unsubscribe
from conflux.utils.helpers import utc_now
from conflux.utils.logger import get_logger

logger = get_logger("router")

SYNTHETIC_FLOW_REASON = "No flow signal available from the primary source"


class QualityRejected(Exception):
    """A primary result that arrived but is not usable."""


class HybridRouter(MarketDataProvider):
    """
    One provider facade over a primary and a secondary adapter.

    Fallback is strictly sequential: the secondary is only called after the
    primary has failed or been rejected on quality. Subscriptions always go
    to the primary.
    """

    def __init__(
        self,
        primary: MarketDataProvider,
        secondary: MarketDataProvider,
        settings: Optional[AppSettings] = None,
    ):
        self.settings = (settings or get_settings()).routing
        self.primary = primary
        self.secondary = secondary
        self._health: Dict[DataSource, ProviderHealth] = {
            DataSource.PRIMARY: ProviderHealth(),
            DataSource.SECONDARY: ProviderHealth(),
        }
        self._fallbacks = 0
        self._quality_rejections = 0

    async def connect(self) -> None:
        for role, adapter in ((DataSource.PRIMARY, self.primary), (DataSource.SECONDARY, self.secondary)):
            try:
                await adapter.connect()
            except DataProviderError as e:
                self._record_error(role, e)
                logger.warning("adapter_connect_failed", role=role.value, error=str(e))
        logger.info("router_connected")

    async def disconnect(self) -> None:
        await self.primary.disconnect()
        await self.secondary.disconnect()
        logger.info("router_disconnected")

    # ── health ──

    def _record_success(self, role: DataSource, elapsed_ms: float) -> None:
        health = self._health[role]
        health.healthy = True
        health.last_success = utc_now()
        health.consecutive_errors = 0
        health.response_time_ms = round(elapsed_ms, 2)
        health.total_calls += 1

    def _record_error(self, role: DataSource, error: BaseException) -> None:
        health = self._health[role]
        health.consecutive_errors += 1
        health.total_calls += 1
        health.total_errors += 1
        health.last_error = str(error)
        if health.consecutive_errors >= self.settings.unhealthy_after_errors:
            if health.healthy:
                logger.warning("provider_unhealthy", role=role.value, consecutive_errors=health.consecutive_errors)
            health.healthy = False

    def get_health(self) -> Dict[str, Any]:
        primary = self._health[DataSource.PRIMARY]
        secondary = self._health[DataSource.SECONDARY]
        return {
            "primary": primary.model_copy(),
            "secondary": secondary.model_copy(),
            "primary_healthy": primary.healthy,
            "can_fallback": secondary.healthy,
        }

    # ── routing core ──

    async def _timed(self, role: DataSource, call: Callable[[], Awaitable[Any]]) -> Any:
        started = time.perf_counter()
        try:
            result = await call()
        except Exception as e:
            self._record_error(role, e)
            raise
        self._record_success(role, (time.perf_counter() - started) * 1000.0)
        return result

    async def _route(
        self,
        operation: str,
        primary_call: Callable[[], Awaitable[Any]],
        secondary_call: Callable[[], Awaitable[Any]],
        reject: Optional[Callable[[Any], Optional[str]]] = None,
        annotate: Optional[Callable[[Any, str], Any]] = None,
    ) -> Any:
        try:
            result = await self._timed(DataSource.PRIMARY, primary_call)
            reason = reject(result) if reject else None
            if reason is None:
                return result
            self._quality_rejections += 1
            primary_error: Exception = QualityRejected(reason)
            logger.warning("primary_rejected", operation=operation, reason=reason)
        except Exception as e:
            primary_error = e
            reason = f"Primary failed: {e}"
            logger.warning("primary_failed", operation=operation, error=str(e))

        if not self.settings.enable_fallback:
            raise AllProvidersFailedError(operation, primary_error, RuntimeError("fallback disabled"))

        self._fallbacks += 1
        try:
            result = await self._timed(DataSource.SECONDARY, secondary_call)
        except Exception as e:
            logger.error("all_providers_failed", operation=operation, primary=str(primary_error), secondary=str(e))
            raise AllProvidersFailedError(operation, primary_error, e) from e

        logger.info("fallback_used", operation=operation, reason=reason)
        return annotate(result, reason) if annotate else result

    @staticmethod
    def _fallback_flags(flags: QualityFlags, reason: str) -> QualityFlags:
        return flags.model_copy(update={
            "source": DataSource.SECONDARY,
            "fallback_reason": reason,
            "has_warnings": True,
            "warnings": flags.warnings + (f"Served by secondary source: {reason}",),
        })

    def _annotate_entity(self, entity: Any, reason: str) -> Any:
        flags = getattr(entity, "quality", None)
        if flags is None:
            flags = QualityFlags.fresh(DataSource.SECONDARY)
        return entity.model_copy(update={"quality": self._fallback_flags(flags, reason)})

    def _annotate_indices(self, snapshots: Dict[str, IndexSnapshot], reason: str) -> Dict[str, IndexSnapshot]:
        return {k: self._annotate_entity(v, reason) for k, v in snapshots.items()}

    def _unusable(self, flags: Optional[QualityFlags]) -> bool:
        return (
            flags is not None
            and flags.quality == DataQualityLevel.POOR
            and flags.confidence < self.settings.reject_below_confidence
        )

    def _reject_chain(self, chain: OptionChain) -> Optional[str]:
        if not chain.contracts:
            return "Primary returned an empty chain"
        if self._unusable(chain.quality):
            return f"Primary chain quality poor (confidence {chain.quality.confidence})"
        return None

    def _reject_indices(self, snapshots: Dict[str, IndexSnapshot]) -> Optional[str]:
        if not snapshots:
            return "Primary returned no index snapshots"
        if all(self._unusable(s.quality) for s in snapshots.values()):
            return "Primary index snapshots all poor quality"
        return None

    # ── options ──

    async def get_option_chain(self, underlying: str, options: Optional[ChainQueryOptions] = None) -> OptionChain:
        return await self._route(
            f"get_option_chain({underlying})",
            lambda: self.primary.get_option_chain(underlying, options),
            lambda: self.secondary.get_option_chain(underlying, options),
            reject=self._reject_chain,
            annotate=self._annotate_entity,
        )

    async def get_option_contract(self, underlying: str, strike: float, expiration: str, type: str) -> OptionContract:
        return await self._route(
            f"get_option_contract({underlying} {strike:g} {expiration} {type})",
            lambda: self.primary.get_option_contract(underlying, strike, expiration, type),
            lambda: self.secondary.get_option_contract(underlying, strike, expiration, type),
            annotate=self._annotate_entity,
        )

    async def get_expirations(
        self, underlying: str, min_date: Optional[str] = None, max_date: Optional[str] = None
    ) -> List[str]:
        return await self._route(
            f"get_expirations({underlying})",
            lambda: self.primary.get_expirations(underlying, min_date, max_date),
            lambda: self.secondary.get_expirations(underlying, min_date, max_date),
            reject=lambda dates: None if dates else "Primary returned no expirations",
        )

    async def get_flow_data(
        self, underlying: str, start_time: Optional[datetime] = None, end_time: Optional[datetime] = None
    ) -> FlowData:
        """Primary only. Missing or empty flow becomes an explicit neutral placeholder."""
        try:
            flow = await self._timed(
                DataSource.PRIMARY, lambda: self.primary.get_flow_data(underlying, start_time, end_time)
            )
            if flow.has_signal:
                return flow
            reason = SYNTHETIC_FLOW_REASON
        except Exception as e:
            logger.warning("flow_unavailable", underlying=underlying, error=str(e))
            reason = f"Primary flow failed: {e}"
        return self.synthetic_flow(reason)

    @staticmethod
    def synthetic_flow(reason: str = SYNTHETIC_FLOW_REASON) -> FlowData:
        return FlowData(
            flow_bias="neutral",
            buy_pressure=50.0,
            flow_score=0.0,
            is_synthetic=True,
            quality=QualityFlags(
                source=DataSource.HYBRID,
                quality=DataQualityLevel.POOR,
                confidence=0,
                has_warnings=True,
                warnings=("Synthetic neutral flow, no real flow data",),
                fallback_reason=reason,
            ),
        )

    # ── indices ──

    async def get_index_snapshot(self, tickers: Sequence[str]) -> Dict[str, IndexSnapshot]:
        return await self._route(
            f"get_index_snapshot({','.join(tickers)})",
            lambda: self.primary.get_index_snapshot(tickers),
            lambda: self.secondary.get_index_snapshot(tickers),
            reject=self._reject_indices,
            annotate=self._annotate_indices,
        )

    async def get_indicators(self, ticker: str, timeframe: str, lookback: Optional[int] = None) -> IndicatorSet:
        return await self._route(
            f"get_indicators({ticker} {timeframe})",
            lambda: self.primary.get_indicators(ticker, timeframe, lookback),
            lambda: self.secondary.get_indicators(ticker, timeframe, lookback),
        )

    async def get_candles(
        self, ticker: str, timeframe: str, from_date: str, to_date: str, limit: Optional[int] = None
    ) -> List[Candle]:
        return await self._route(
            f"get_candles({ticker} {timeframe})",
            lambda: self.primary.get_candles(ticker, timeframe, from_date, to_date, limit),
            lambda: self.secondary.get_candles(ticker, timeframe, from_date, to_date, limit),
        )

    # ── equities ──

    async def get_equity_quote(self, symbol: str) -> EquityQuote:
        return await self._route(
            f"get_equity_quote({symbol})",
            lambda: self.primary.get_equity_quote(symbol),
            lambda: self.secondary.get_equity_quote(symbol),
            reject=lambda q: "Primary quote unusable" if self._unusable(q.quality) else None,
            annotate=self._annotate_entity,
        )

    async def get_bars(
        self, symbol: str, interval: str, from_date: str, to_date: str, limit: Optional[int] = None
    ) -> List[Bar]:
        return await self._route(
            f"get_bars({symbol} {interval})",
            lambda: self.primary.get_bars(symbol, interval, from_date, to_date, limit),
            lambda: self.secondary.get_bars(symbol, interval, from_date, to_date, limit),
        )

    # ── subscriptions (primary only) ──

    def subscribe_to_chain(self, underlying: str, callback: Callable[[OptionChain], None]) -> Unsubscribe:
        return self.primary.subscribe_to_chain(underlying, callback)

    def subscribe_to_option(
        self, underlying: str, strike: float, expiration: str, type: str,
        callback: Callable[[OptionContract], None],
    ) -> Unsubscribe:
        return self.primary.subscribe_to_option(underlying, strike, expiration, type, callback)

    def subscribe_to_flow(self, underlying: str, callback: Callable[[FlowData], None]) -> Unsubscribe:
        return self.primary.subscribe_to_flow(underlying, callback)

    def subscribe_to_index(self, ticker: str, callback: Callable[[IndexSnapshot], None]) -> Unsubscribe:
        return self.primary.subscribe_to_index(ticker, callback)

    def subscribe_to_timeframe(self, ticker: str, timeframe: str, callback: Callable[[Timeframe], None]) -> Unsubscribe:
        return self.primary.subscribe_to_timeframe(ticker, timeframe, callback)

    def subscribe_to_equity(self, symbol: str, callback: Callable[[EquityQuote], None]) -> Unsubscribe:
        return self.primary.subscribe_to_equity(symbol, callback)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "fallbacks": self._fallbacks,
            "quality_rejections": self._quality_rejections,
            "health": {
                role.value: health.model_dump(mode="json") for role, health in self._health.items()
            },
        }
