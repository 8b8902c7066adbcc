"""
CONFLUX™ — FastAPI Application
Read-only view of the hub's snapshot plus provider health and watch-list control.
"""
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from conflux.config.settings import get_settings
from conflux.data.errors import DataProviderError, ValidationError
from conflux.hub.factory import create_hub
from conflux.hub.market_data_hub import MarketDataHub
from conflux.utils.helpers import normalize_symbol, utc_timestamp
from conflux.utils.logger import get_logger, setup_logging

logger = get_logger("api")


class WatchlistRequest(BaseModel):
    symbols: List[str] = Field(min_length=1)


def _hub(request: Request) -> MarketDataHub:
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise HTTPException(status_code=503, detail="Market data hub not ready")
    return hub


def create_app(hub: Optional[MarketDataHub] = None) -> FastAPI:
    """Build the API. An injected hub is initialized and shut down but its router is left connected."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        settings = get_settings()
        app.state.instance_id = str(uuid.uuid4())[:8]
        app.state.started_at = utc_timestamp()

        owned = hub is None
        app.state.hub = hub or create_hub(settings)
        logger.info("conflux_starting", version=settings.version, instance=app.state.instance_id)
        if owned:
            await app.state.hub.router.connect()
        await app.state.hub.initialize()
        logger.info("conflux_ready", watchlist=app.state.hub.watchlist)

        yield

        logger.info("conflux_shutting_down")
        await app.state.hub.shutdown()
        if owned:
            await app.state.hub.router.disconnect()

    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        description="Hybrid market-data provider and consolidation hub",
        version=settings.version,
        lifespan=lifespan,
    )

    # ─── Health & Metrics ───────────────────────────────────────────

    @app.get("/healthz", tags=["System"])
    async def health_check(request: Request):
        hub = getattr(request.app.state, "hub", None)
        running = hub is not None and hub.is_running
        return JSONResponse(
            status_code=200 if running else 503,
            content={
                "status": "healthy" if running else "starting",
                "instance": getattr(request.app.state, "instance_id", None),
                "uptime_since": getattr(request.app.state, "started_at", None),
                "timestamp": utc_timestamp(),
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics(request: Request) -> Dict[str, Any]:
        hub = _hub(request)
        return {
            "app": {
                "name": settings.app_name,
                "version": settings.version,
                "instance_id": request.app.state.instance_id,
                "started_at": request.app.state.started_at,
            },
            "hub": hub.get_metrics(),
            "timestamp": utc_timestamp(),
        }

    # ─── Market Data ────────────────────────────────────────────────

    @app.get("/api/v1/snapshot", tags=["Market Data"])
    async def snapshot(request: Request):
        return _hub(request).get_snapshot().model_dump(mode="json")

    @app.get("/api/v1/chains/{symbol}", tags=["Market Data"])
    async def option_chain(symbol: str, request: Request):
        """Chain from the snapshot, or fetched through the router for symbols off the watch list."""
        hub = _hub(request)
        chain = hub.get_option_chain(symbol)
        if chain is None:
            try:
                chain = await hub.router.get_option_chain(normalize_symbol(symbol))
            except (DataProviderError, ValidationError) as e:
                logger.warning("chain_request_failed", symbol=symbol, error=str(e))
                raise HTTPException(status_code=502, detail=str(e))
        return chain.model_dump(mode="json")

    @app.get("/api/v1/indices/{ticker}", tags=["Market Data"])
    async def index_snapshot(ticker: str, request: Request):
        snap = _hub(request).get_index(ticker)
        if snap is None:
            raise HTTPException(status_code=404, detail=f"Index {normalize_symbol(ticker)} not tracked")
        return snap.model_dump(mode="json")

    @app.get("/api/v1/health/providers", tags=["System"])
    async def provider_health(request: Request):
        health = _hub(request).router.get_health()
        return {
            "primary": health["primary"].model_dump(mode="json"),
            "secondary": health["secondary"].model_dump(mode="json"),
            "primary_healthy": health["primary_healthy"],
            "can_fallback": health["can_fallback"],
        }

    @app.put("/api/v1/watchlist", tags=["Control"])
    async def update_watchlist(body: WatchlistRequest, request: Request):
        return await _hub(request).update_watchlist(body.symbols)

    return app


app = create_app()
