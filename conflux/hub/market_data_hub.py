"""
CONFLUX™ — Market Data Hub
Owns the consolidated snapshot for a watch list. Polled fetches are published
immediately; push updates are coalesced per entity inside a short batch
window. Everything runs on the owning event loop, so state needs no locks.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from pydantic import BaseModel, Field

from conflux.config.settings import AppSettings, get_settings
from conflux.data.errors import DataProviderError, ValidationError
from conflux.data.models import (
    DataQualityLevel,
    DataSource,
    EquityQuote,
    FlowData,
    IndexSnapshot,
    MarketDataSnapshot,
    MarketDataTick,
    OptionChain,
    QualityFlags,
    QualityOptions,
    TickPayload,
    TickType,
)
from conflux.data.router import HybridRouter
from conflux.data.subscriptions import Unsubscribe
from conflux.utils.helpers import normalize_symbol, utc_now
from conflux.utils.logger import get_logger

logger = get_logger("market_data_hub")

TickCallback = Callable[[MarketDataTick], None]
SnapshotCallback = Callable[[MarketDataSnapshot], None]

STALE_CONFIDENCE = 50

# Failures a single symbol refresh may raise without aborting the cycle
FETCH_ERRORS = (DataProviderError, ValidationError, asyncio.TimeoutError)


class HubConfig(BaseModel):
    watchlist_symbols: List[str] = Field(default_factory=list)
    index_tickers: List[str] = Field(default_factory=lambda: ["SPX", "NDX", "VIX"])
    refresh_interval_ms: int = 5_000
    batch_window_ms: int = 100
    ws_enabled: bool = True
    quality_options: QualityOptions = Field(default_factory=QualityOptions)
    enable_logging: bool = True
    enable_metrics: bool = True

    @classmethod
    def from_settings(cls, settings: Optional[AppSettings] = None) -> "HubConfig":
        settings = settings or get_settings()
        hub = settings.hub
        return cls(
            watchlist_symbols=[normalize_symbol(s) for s in hub.watchlist_symbols],
            index_tickers=[normalize_symbol(t) for t in hub.index_tickers],
            refresh_interval_ms=hub.refresh_interval_ms,
            batch_window_ms=hub.batch_window_ms,
            ws_enabled=hub.ws_enabled,
            quality_options=settings.quality.to_options(),
            enable_logging=hub.enable_logging,
            enable_metrics=hub.enable_metrics,
        )


def aggregate_quality(snapshot: MarketDataSnapshot) -> QualityFlags:
    """
    Snapshot-level flags: mean confidence over held chains and indices (100
    when there are none), OR of their warning flags, ordered union of their
    warnings. Stale once the mean drops below 50.
    """
    flags = [c.quality for c in snapshot.option_chains.values()]
    flags += [i.quality for i in snapshot.indices.values()]

    average = sum(f.confidence for f in flags) / len(flags) if flags else 100.0
    warnings: Dict[str, None] = {}
    for f in flags:
        for w in f.warnings:
            warnings.setdefault(w, None)

    confidence = int(round(average))
    if confidence >= 90:
        level = DataQualityLevel.EXCELLENT
    elif confidence >= 70:
        level = DataQualityLevel.GOOD
    elif confidence >= 40:
        level = DataQualityLevel.FAIR
    else:
        level = DataQualityLevel.POOR
    if confidence == 0:
        level = DataQualityLevel.POOR

    return QualityFlags(
        source=DataSource.HYBRID,
        quality=level,
        confidence=confidence,
        is_stale=average < STALE_CONFIDENCE,
        has_warnings=any(f.has_warnings for f in flags),
        warnings=tuple(warnings),
        updated_at=utc_now(),
    )


class MarketDataHub:
    """Snapshot owner for one watch list, fed by a HybridRouter."""

    def __init__(self, router: HybridRouter, config: Optional[HubConfig] = None):
        self.router = router
        self.config = config or HubConfig.from_settings()
        self.snapshot = MarketDataSnapshot()

        self._watchlist: List[str] = [normalize_symbol(s) for s in self.config.watchlist_symbols]
        self._tick_subscribers: Dict[str, TickCallback] = {}
        self._snapshot_subscribers: Dict[str, SnapshotCallback] = {}
        self._push_releases: Dict[str, List[Unsubscribe]] = {}

        self._pending: Dict[str, MarketDataTick] = {}
        self._batch_handle: Optional[asyncio.TimerHandle] = None
        self._poll_handle: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

        self._initialized = False
        self._closed = False

        self._ticks_published = 0
        self._snapshots_published = 0
        self._push_updates = 0
        self._batches_flushed = 0
        self._polls = 0
        self._poll_errors = 0

    @property
    def watchlist(self) -> List[str]:
        return list(self._watchlist)

    @property
    def is_running(self) -> bool:
        return self._initialized and not self._closed

    # ── lifecycle ──

    async def initialize(self) -> None:
        if self._initialized:
            return
        self._closed = False
        await self._fetch_all()
        self._publish_snapshot()

        if self.config.ws_enabled:
            self._schedule_poll()
            for symbol in self._watchlist:
                self._open_symbol_subscriptions(symbol)
            for ticker in self.config.index_tickers:
                self._open_index_subscription(normalize_symbol(ticker))

        self._initialized = True
        logger.info(
            "hub_initialized",
            symbols=self._watchlist,
            indices=self.config.index_tickers,
            polling=self.config.ws_enabled,
            counts=self.snapshot.counts(),
        )

    async def shutdown(self) -> None:
        """Stop timers and drop every subscriber. In-flight fetches finish on their own."""
        self._closed = True
        self._initialized = False
        if self._poll_handle is not None:
            self._poll_handle.cancel()
            self._poll_handle = None
        if self._batch_handle is not None:
            self._batch_handle.cancel()
            self._batch_handle = None
        self._pending.clear()
        for key in list(self._push_releases):
            self._release(key)
        self._tick_subscribers.clear()
        self._snapshot_subscribers.clear()
        logger.info("hub_shutdown", ticks=self._ticks_published, snapshots=self._snapshots_published)

    # ── fetching ──

    async def _fetch_all(self) -> None:
        await asyncio.gather(
            *(self._refresh_symbol(symbol) for symbol in self._watchlist),
            self._refresh_indices(),
        )

    async def _guarded(self, what: str, symbol: str, call) -> Any:
        try:
            return await call
        except FETCH_ERRORS as e:
            self._poll_errors += 1
            logger.warning("hub_fetch_failed", what=what, symbol=symbol, error=str(e))
            return None

    async def _refresh_symbol(self, symbol: str) -> None:
        chain, quote = await asyncio.gather(
            self._guarded("chain", symbol, self.router.get_option_chain(symbol)),
            self._guarded("equity", symbol, self.router.get_equity_quote(symbol)),
        )
        if chain is not None:
            self._publish_direct(TickType.OPTION, symbol, chain)
        if quote is not None:
            self._publish_direct(TickType.EQUITY, symbol, quote)

    async def _refresh_indices(self) -> None:
        if not self.config.index_tickers:
            return
        snapshots = await self._guarded(
            "indices", ",".join(self.config.index_tickers),
            self.router.get_index_snapshot(self.config.index_tickers),
        )
        for ticker, snapshot in (snapshots or {}).items():
            self._publish_direct(TickType.INDEX, ticker, snapshot)

    def _schedule_poll(self) -> None:
        loop = asyncio.get_running_loop()
        self._poll_handle = loop.call_later(self.config.refresh_interval_ms / 1000.0, self._on_poll_timer)

    def _on_poll_timer(self) -> None:
        if self._closed:
            return
        if self._poll_task is not None and not self._poll_task.done():
            logger.debug("hub_poll_skipped", reason="previous poll still running")
        else:
            self._poll_task = self._spawn(self.poll_once())
        self._schedule_poll()

    async def poll_once(self) -> None:
        """One refresh cycle over the whole watch list, then one snapshot publication."""
        self._polls += 1
        await self._fetch_all()
        if not self._closed:
            self._publish_snapshot()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ── push subscriptions ──

    def _open_symbol_subscriptions(self, symbol: str) -> None:
        self._push_releases[f"symbol:{symbol}"] = [
            self.router.subscribe_to_chain(symbol, lambda chain, s=symbol: self._on_push(TickType.OPTION, s, chain)),
            self.router.subscribe_to_flow(symbol, lambda flow, s=symbol: self._on_push(TickType.FLOW, s, flow)),
            self.router.subscribe_to_equity(symbol, lambda quote, s=symbol: self._on_push(TickType.EQUITY, s, quote)),
        ]

    def _open_index_subscription(self, ticker: str) -> None:
        self._push_releases[f"index:{ticker}"] = [
            self.router.subscribe_to_index(ticker, lambda snap, t=ticker: self._on_push(TickType.INDEX, t, snap)),
        ]

    def _release(self, key: str) -> None:
        for unsubscribe in self._push_releases.pop(key, []):
            unsubscribe()

    # ── publication ──

    def _store(self, kind: TickType, symbol: str, entity: TickPayload) -> None:
        if kind == TickType.OPTION:
            self.snapshot.option_chains[symbol] = entity
        elif kind == TickType.INDEX:
            self.snapshot.indices[symbol] = entity
        elif kind == TickType.EQUITY:
            self.snapshot.equities[symbol] = entity
        elif kind == TickType.FLOW:
            self.snapshot.flows[symbol] = entity
        self.snapshot.timestamp = utc_now()

    @staticmethod
    def _make_tick(kind: TickType, symbol: str, entity: TickPayload) -> MarketDataTick:
        quality = getattr(entity, "quality", None)
        return MarketDataTick(
            source=quality.source if quality is not None else DataSource.HYBRID,
            type=kind,
            key=f"{kind.value}:{symbol}",
            data=entity,
            quality=quality,
        )

    def _publish_direct(self, kind: TickType, symbol: str, entity: TickPayload) -> None:
        """Fetched value: store and emit now. A queued push for the same key is superseded."""
        if self._closed:
            return
        self._store(kind, symbol, entity)
        tick = self._make_tick(kind, symbol, entity)
        self._pending.pop(tick.key, None)
        self._emit_tick(tick)

    def _on_push(self, kind: TickType, symbol: str, entity: TickPayload) -> None:
        if self._closed:
            return
        self._push_updates += 1
        self._store(kind, symbol, entity)
        tick = self._make_tick(kind, symbol, entity)
        self._pending[tick.key] = tick
        if self._batch_handle is None:
            loop = asyncio.get_running_loop()
            self._batch_handle = loop.call_later(self.config.batch_window_ms / 1000.0, self.flush_pending)

    def flush_pending(self) -> int:
        """Emit one tick per queued key (latest wins), then the snapshot once."""
        if self._batch_handle is not None:
            self._batch_handle.cancel()
            self._batch_handle = None
        pending, self._pending = self._pending, {}
        for tick in pending.values():
            self._emit_tick(tick)
        if pending:
            self._batches_flushed += 1
            self._publish_snapshot()
            if self.config.enable_logging:
                logger.debug("hub_batch_flushed", ticks=len(pending))
        return len(pending)

    def _emit_tick(self, tick: MarketDataTick) -> None:
        self._ticks_published += 1
        for sub_id, callback in list(self._tick_subscribers.items()):
            try:
                callback(tick)
            except Exception as e:
                logger.error("tick_subscriber_error", subscriber=sub_id, key=tick.key, error=str(e))

    def _publish_snapshot(self) -> None:
        self.snapshot.quality = aggregate_quality(self.snapshot)
        self.snapshot.timestamp = utc_now()
        self._snapshots_published += 1
        for sub_id, callback in list(self._snapshot_subscribers.items()):
            try:
                callback(self.snapshot)
            except Exception as e:
                logger.error("snapshot_subscriber_error", subscriber=sub_id, error=str(e))

    # ── consumer surface ──

    def subscribe_tick(self, subscriber_id: str, callback: TickCallback) -> Unsubscribe:
        self._tick_subscribers[subscriber_id] = callback

        def unsubscribe() -> None:
            if self._tick_subscribers.get(subscriber_id) is callback:
                del self._tick_subscribers[subscriber_id]

        return unsubscribe

    def subscribe_snapshot(self, subscriber_id: str, callback: SnapshotCallback) -> Unsubscribe:
        self._snapshot_subscribers[subscriber_id] = callback

        def unsubscribe() -> None:
            if self._snapshot_subscribers.get(subscriber_id) is callback:
                del self._snapshot_subscribers[subscriber_id]

        return unsubscribe

    def get_snapshot(self) -> MarketDataSnapshot:
        return self.snapshot

    def get_option_chain(self, symbol: str) -> Optional[OptionChain]:
        return self.snapshot.option_chains.get(normalize_symbol(symbol))

    def get_index(self, ticker: str) -> Optional[IndexSnapshot]:
        return self.snapshot.indices.get(normalize_symbol(ticker))

    def get_equity(self, symbol: str) -> Optional[EquityQuote]:
        return self.snapshot.equities.get(normalize_symbol(symbol))

    def get_flow(self, symbol: str) -> Optional[FlowData]:
        return self.snapshot.flows.get(normalize_symbol(symbol))

    def get_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {
            "running": self.is_running,
            "watchlist": self.watchlist,
            "ticks_published": self._ticks_published,
            "snapshots_published": self._snapshots_published,
            "push_updates": self._push_updates,
            "batches_flushed": self._batches_flushed,
            "pending": len(self._pending),
            "polls": self._polls,
            "poll_errors": self._poll_errors,
            "subscribers": {
                "tick": len(self._tick_subscribers),
                "snapshot": len(self._snapshot_subscribers),
                "push": sum(len(v) for v in self._push_releases.values()),
            },
            "data": self.snapshot.counts(),
            "quality": self.snapshot.quality.model_dump(mode="json"),
        }
        if self.config.enable_metrics:
            metrics["providers"] = {
                k: v.model_dump(mode="json") if isinstance(v, BaseModel) else v
                for k, v in self.router.get_health().items()
            }
            metrics["router"] = self.router.stats
        return metrics

    async def update_watchlist(self, symbols: Sequence[str]) -> Dict[str, List[str]]:
        """
        Replace the watch list. Added symbols are subscribed and fetched right
        away; removed ones lose their subscriptions and snapshot entries.
        """
        wanted = list(dict.fromkeys(normalize_symbol(s) for s in symbols if s))
        current = set(self._watchlist)
        added = [s for s in wanted if s not in current]
        removed = [s for s in self._watchlist if s not in set(wanted)]
        self._watchlist = wanted

        for symbol in removed:
            self._release(f"symbol:{symbol}")
            self.snapshot.option_chains.pop(symbol, None)
            self.snapshot.equities.pop(symbol, None)
            self.snapshot.flows.pop(symbol, None)
            for kind in (TickType.OPTION, TickType.EQUITY, TickType.FLOW):
                self._pending.pop(f"{kind.value}:{symbol}", None)

        if self.config.ws_enabled and self.is_running:
            for symbol in added:
                self._open_symbol_subscriptions(symbol)

        if added:
            await asyncio.gather(*(self._refresh_symbol(s) for s in added))
        if added or removed:
            self._publish_snapshot()
            logger.info("watchlist_updated", added=added, removed=removed, watchlist=wanted)
        return {"added": added, "removed": removed, "watchlist": wanted}
