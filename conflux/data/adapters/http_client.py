"""
CONFLUX™ — Vendor HTTP Client
aiohttp GET wrapper shared by the vendor adapters: bounded timeout, capped
exponential backoff on 5xx / 429 / transport failures, typed errors.
"""
import asyncio
import json
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from conflux.data.errors import DataProviderError
from conflux.utils.logger import get_logger

logger = get_logger("http_client")

MAX_RETRY_AFTER_SECONDS = 30.0


class VendorHttpClient:
    """One client per adapter. Owns its session unless one is injected."""

    def __init__(
        self,
        vendor: str,
        base_url: str,
        headers: Optional[Dict[str, str]] = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 2,
        backoff_base_ms: int = 100,
        backoff_cap_ms: int = 2000,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.vendor = vendor
        self.base_url = base_url.rstrip("/")
        self.headers = headers or {}
        self.timeout_seconds = timeout_seconds
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.max_retries = max(0, max_retries)
        self.backoff_base_ms = backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms
        self._session = session
        self._owns_session = session is None
        self._sleep = sleep

        self._requests = 0
        self._successes = 0
        self._failures = 0
        self._retries = 0
        self._total_latency_ms = 0.0
        self._last_status: Optional[int] = None

    async def connect(self) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self.headers)
            self._owns_session = True
            logger.info("http_client_connected", vendor=self.vendor)

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
            logger.info("http_client_closed", vendor=self.vendor)

    def backoff_seconds(self, attempt: int) -> float:
        return min(self.backoff_base_ms * (2 ** attempt), self.backoff_cap_ms) / 1000.0

    def _retry_after_seconds(self, header: Optional[str], attempt: int) -> float:
        if header:
            try:
                return min(max(float(header), 0.0), MAX_RETRY_AFTER_SECONDS)
            except ValueError:
                pass
        return self.backoff_seconds(attempt)

    def _url(self, path: str) -> str:
        return path if path.startswith("http") else f"{self.base_url}{path}"

    async def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        GET `path` and decode JSON.

        5xx, 429, timeouts and connection errors are retried up to `max_retries`
        times. Other 4xx and undecodable bodies fail immediately.
        """
        if self._session is None:
            await self.connect()

        url = self._url(path)
        query = {k: v for k, v in (params or {}).items() if v is not None}
        last_error: Optional[BaseException] = None
        last_status: Optional[int] = None

        for attempt in range(self.max_retries + 1):
            self._requests += 1
            started = time.perf_counter()
            delay = self.backoff_seconds(attempt)
            try:
                async with self._session.get(url, params=query, headers=self.headers, timeout=self.timeout) as resp:
                    last_status = self._last_status = resp.status
                    if resp.status == 429:
                        delay = self._retry_after_seconds(resp.headers.get("Retry-After"), attempt)
                        last_error = DataProviderError(
                            f"{self.vendor} rate limited", "RATE_LIMITED", self.vendor, 429
                        )
                        logger.warning("vendor_rate_limited", vendor=self.vendor, url=url, retry_after=delay)
                    elif resp.status >= 500:
                        body = await resp.text()
                        last_error = DataProviderError(
                            f"{self.vendor} API error: {resp.reason}",
                            "VENDOR_API_ERROR",
                            self.vendor,
                            resp.status,
                            RuntimeError(body[:500]),
                        )
                        logger.warning("vendor_server_error", vendor=self.vendor, url=url, status=resp.status)
                    elif resp.status >= 400:
                        body = await resp.text()
                        self._record_failure(started)
                        raise DataProviderError(
                            f"{self.vendor} API error: {resp.reason}",
                            "VENDOR_API_ERROR",
                            self.vendor,
                            resp.status,
                            RuntimeError(body[:500]),
                        )
                    else:
                        try:
                            data = await resp.json(content_type=None)
                        except (json.JSONDecodeError, aiohttp.ContentTypeError, ValueError) as e:
                            self._record_failure(started)
                            raise DataProviderError(
                                f"{self.vendor} returned a malformed response",
                                "MALFORMED_RESPONSE",
                                self.vendor,
                                resp.status,
                                e,
                            ) from e
                        self._record_success(started)
                        return data
            except asyncio.TimeoutError as e:
                last_error = DataProviderError(
                    f"{self.vendor} request timed out after {self.timeout_seconds}s",
                    "TIMEOUT",
                    self.vendor,
                    cause=e,
                )
                logger.warning("vendor_timeout", vendor=self.vendor, url=url, attempt=attempt + 1)
            except aiohttp.ClientError as e:
                last_error = DataProviderError(
                    f"{self.vendor} connection failed: {e}", "NETWORK_ERROR", self.vendor, cause=e
                )
                logger.warning("vendor_network_error", vendor=self.vendor, url=url, error=str(e))

            self._record_failure(started)
            if attempt < self.max_retries:
                self._retries += 1
                await self._sleep(delay)

        raise DataProviderError(
            "All retry attempts exhausted",
            "MAX_RETRIES_EXCEEDED",
            self.vendor,
            last_status,
            last_error,
        )

    def _record_success(self, started: float) -> None:
        self._successes += 1
        self._total_latency_ms += (time.perf_counter() - started) * 1000.0

    def _record_failure(self, started: float) -> None:
        self._failures += 1
        self._total_latency_ms += (time.perf_counter() - started) * 1000.0

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "vendor": self.vendor,
            "requests": self._requests,
            "successes": self._successes,
            "failures": self._failures,
            "retries": self._retries,
            "avg_latency_ms": round(self._total_latency_ms / self._requests, 2) if self._requests else 0.0,
            "last_status": self._last_status,
        }
