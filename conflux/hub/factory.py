"""
CONFLUX™ — Wiring
Builds vendor adapters, the hybrid router and a hub from settings. Nothing
here is cached globally; callers own what they create.
"""
from typing import Optional

from conflux.config.settings import AppSettings, get_settings
from conflux.data.adapters.massive_adapter import MassiveAdapter
from conflux.data.adapters.tradier_adapter import TradierAdapter
from conflux.data.router import HybridRouter
from conflux.data.stream.massive_stream import MassiveStream
from conflux.hub.market_data_hub import HubConfig, MarketDataHub
from conflux.utils.logger import get_logger

logger = get_logger("factory")


def create_data_router(settings: Optional[AppSettings] = None) -> HybridRouter:
    """Massive as primary (with its push channel when enabled), Tradier as fallback."""
    settings = settings or get_settings()
    primary = MassiveAdapter(settings)
    if settings.hub.ws_enabled and settings.data.massive_api_key:
        primary.attach_stream(
            MassiveStream(
                api_key=settings.data.massive_api_key,
                ws_url=settings.data.massive_ws_url,
                on_event=primary.handle_stream_event,
                heartbeat_seconds=settings.data.stream_heartbeat_seconds,
                max_reconnect_attempts=settings.data.stream_max_reconnect_attempts,
            )
        )
    secondary = TradierAdapter(settings)
    if not settings.data.massive_api_key:
        logger.warning("missing_api_key", vendor=primary.vendor)
    if not settings.data.tradier_api_key:
        logger.warning("missing_api_key", vendor=secondary.vendor)
    return HybridRouter(primary, secondary, settings)


def create_hub(
    settings: Optional[AppSettings] = None,
    config: Optional[HubConfig] = None,
    router: Optional[HybridRouter] = None,
) -> MarketDataHub:
    settings = settings or get_settings()
    return MarketDataHub(router or create_data_router(settings), config or HubConfig.from_settings(settings))


async def create_and_initialize_hub(
    settings: Optional[AppSettings] = None,
    config: Optional[HubConfig] = None,
    router: Optional[HybridRouter] = None,
) -> MarketDataHub:
    """Connect the router's adapters and run the hub's first full fetch."""
    hub = create_hub(settings, config, router)
    await hub.router.connect()
    await hub.initialize()
    return hub
