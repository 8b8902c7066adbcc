"""
CONFLUX™ — Massive Push Channel
One aiohttp websocket per cluster (options, indices, stocks): authenticate,
subscribe, reconnect with capped backoff, hand decoded events to a callback.
"""
import asyncio
import json
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import aiohttp

from conflux.utils.logger import get_logger

logger = get_logger("massive_stream")

CLUSTERS = ("options", "indices", "stocks")
RECONNECT_BASE_MS = 1_000
RECONNECT_CAP_MS = 30_000

EventHandler = Callable[[str, Dict[str, Any]], None]


def option_quote_channel(contract_ticker: str) -> str:
    return f"Q.{contract_ticker}"


def index_value_channel(ticker: str) -> str:
    return f"V.I:{ticker}"


def minute_agg_channel(symbol: str) -> str:
    return f"AM.{symbol}"


class MassiveStream:
    """Websocket client; subscriptions made before connecting are replayed on connect."""

    def __init__(
        self,
        api_key: str,
        ws_url: str,
        on_event: EventHandler,
        heartbeat_seconds: float = 25.0,
        max_reconnect_attempts: int = 5,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.ws_url = ws_url.rstrip("/")
        self.on_event = on_event
        self.heartbeat_seconds = heartbeat_seconds
        self.max_reconnect_attempts = max_reconnect_attempts
        self._session = session
        self._owns_session = session is None
        self._desired: Dict[str, Set[str]] = {cluster: set() for cluster in CLUSTERS}
        self._sockets: Dict[str, aiohttp.ClientWebSocketResponse] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._sends: Set[asyncio.Task] = set()
        self._running = False
        self._events_received = 0
        self._reconnects = 0
        self._send_failures = 0

    # ── lifecycle ──

    async def start(self) -> None:
        if self._running:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        self._running = True
        for cluster, params in self._desired.items():
            if params:
                self._ensure_task(cluster)
        logger.info("stream_started")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        for task in list(self._tasks.values()):
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        for task in list(self._sends):
            task.cancel()
        for ws in list(self._sockets.values()):
            await ws.close()
        self._sockets.clear()
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
        logger.info("stream_stopped")

    # ── subscriptions ──

    def subscribe(self, cluster: str, params: Iterable[str]) -> None:
        new = set(params) - self._desired[cluster]
        if not new:
            return
        self._desired[cluster] |= new
        self._send(cluster, "subscribe", new)
        if self._running:
            self._ensure_task(cluster)

    def unsubscribe(self, cluster: str, params: Iterable[str]) -> None:
        gone = set(params) & self._desired[cluster]
        if not gone:
            return
        self._desired[cluster] -= gone
        self._send(cluster, "unsubscribe", gone)

    def subscribed(self, cluster: str) -> Set[str]:
        return set(self._desired[cluster])

    def _send(self, cluster: str, action: str, params: Set[str]) -> None:
        ws = self._sockets.get(cluster)
        if ws is None or ws.closed:
            return
        message = {"action": action, "params": ",".join(sorted(params))}
        task = asyncio.get_running_loop().create_task(ws.send_json(message))
        self._sends.add(task)
        task.add_done_callback(lambda t: self._on_sent(cluster, action, t))

    def _on_sent(self, cluster: str, action: str, task: asyncio.Task) -> None:
        self._sends.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._send_failures += 1
            logger.warning("stream_send_failed", cluster=cluster, action=action, error=str(error))

    def _ensure_task(self, cluster: str) -> None:
        task = self._tasks.get(cluster)
        if task is None or task.done():
            self._tasks[cluster] = asyncio.get_running_loop().create_task(self._run(cluster))

    # ── connection loop ──

    async def _run(self, cluster: str) -> None:
        attempts = 0
        while self._running:
            try:
                async with self._session.ws_connect(
                    f"{self.ws_url}/{cluster}", heartbeat=self.heartbeat_seconds
                ) as ws:
                    self._sockets[cluster] = ws
                    await ws.send_json({"action": "auth", "params": self.api_key})
                    if self._desired[cluster]:
                        await ws.send_json(
                            {"action": "subscribe", "params": ",".join(sorted(self._desired[cluster]))}
                        )
                    logger.info("stream_connected", cluster=cluster, channels=len(self._desired[cluster]))
                    attempts = 0
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            self.dispatch(cluster, msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.warning("stream_socket_error", cluster=cluster, error=str(ws.exception()))
                            break
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("stream_connection_failed", cluster=cluster, error=str(e))
            except Exception as e:
                logger.exception("stream_loop_error", cluster=cluster, error=str(e))
            finally:
                self._sockets.pop(cluster, None)

            if not self._running:
                break
            attempts += 1
            if attempts > self.max_reconnect_attempts:
                logger.error("stream_reconnect_exhausted", cluster=cluster, attempts=attempts - 1)
                break
            self._reconnects += 1
            delay_ms = min(RECONNECT_BASE_MS * (2 ** (attempts - 1)), RECONNECT_CAP_MS)
            logger.info("stream_reconnecting", cluster=cluster, attempt=attempts, delay_ms=delay_ms)
            await asyncio.sleep(delay_ms / 1000.0)

    def dispatch(self, cluster: str, raw: str) -> int:
        """Decode one frame (a JSON array of events) and forward each data event."""
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("stream_bad_frame", cluster=cluster, frame=raw[:200])
            return 0
        events: List[Any] = decoded if isinstance(decoded, list) else [decoded]
        forwarded = 0
        for event in events:
            if not isinstance(event, dict):
                continue
            if event.get("ev") == "status":
                logger.info("stream_status", cluster=cluster, status=event.get("status"), message=event.get("message"))
                continue
            self._events_received += 1
            try:
                self.on_event(cluster, event)
                forwarded += 1
            except Exception as e:
                logger.error("stream_handler_error", cluster=cluster, ev=event.get("ev"), error=str(e))
        return forwarded

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "connected": sorted(c for c, ws in self._sockets.items() if not ws.closed),
            "channels": {c: len(p) for c, p in self._desired.items()},
            "events_received": self._events_received,
            "reconnects": self._reconnects,
            "send_failures": self._send_failures,
        }
