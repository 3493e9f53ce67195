"""Client HTTP résilient: rate limit, timeout par tentative, retries avec backoff."""
from __future__ import annotations

import asyncio
import logging
import math
import random
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Protocol

import httpx

from hlsignal.common.errors import TransportError
from hlsignal.services.config import HttpClientConfig, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_EXPECTED_STATUSES = (200,)
JITTER_RATIO = 0.2


class MetricsRecorder(Protocol):
    def increment(self, metric: str, tags: Optional[Dict[str, str]] = None) -> None: ...

    def observe(self, metric: str, value: float, tags: Optional[Dict[str, str]] = None) -> None: ...


class NoopMetrics:
    def increment(self, metric: str, tags: Optional[Dict[str, str]] = None) -> None:
        pass

    def observe(self, metric: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        pass


# --- petites utils ---

def build_url(base_url: str, path: str) -> str:
    base = base_url if base_url.endswith("/") else base_url + "/"
    return base + path.lstrip("/")


def should_retry(status: int, expected: Iterable[int]) -> bool:
    if status in expected:
        return False
    return status == 429 or status >= 500


def compute_delay(attempt: int, retry: RetryPolicy, rng: Callable[[], float] = random.random) -> float:
    """min(initial * mult^(attempt-1), max) + jusqu'à 20% de jitter (secondes)."""
    bounded = min(retry.initial_delay_sec * (retry.backoff_multiplier ** (attempt - 1)), retry.max_delay_sec)
    return bounded + bounded * JITTER_RATIO * rng()


def retry_after_seconds(headers) -> Optional[float]:
    raw = headers.get("Retry-After") if headers is not None else None
    if raw is None:
        return None
    try:
        return max(0.0, float(raw))
    except (TypeError, ValueError):
        return None


class RetryingHttpClient:
    """
    Exécuteur de requêtes pour une API donnée.
      - rate limit: au moins floor(1000/rate) ms entre deux envois, file FIFO partagée
      - chaque tentative bornée par un timeout (retryable)
      - retry sur 429, >=500, timeout et erreurs réseau ; pas sur les autres 4xx
      - seule la dernière erreur remonte (TransportError)
    """

    def __init__(
        self,
        config: HttpClientConfig,
        client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[MetricsRecorder] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Callable[[], float] = random.random,
        name: str = "hyperliquid",
    ):
        self.config = config
        self.name = name
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient()
        self.metrics: MetricsRecorder = metrics or NoopMetrics()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        rate = config.rate_limit_per_second
        self.min_interval_sec = math.floor(1000 / rate) / 1000.0 if rate > 0 else 0.0
        self._rate_lock = asyncio.Lock()
        self._next_slot = 0.0

    async def __aenter__(self) -> "RetryingHttpClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def get(self, path: str, **kwargs) -> Any:
        return await self.request(path, method="GET", **kwargs)

    async def post(self, path: str, **kwargs) -> Any:
        return await self.request(path, method="POST", **kwargs)

    async def _apply_rate_limit(self) -> None:
        if self.min_interval_sec <= 0:
            return
        # asyncio.Lock réveille les attentes dans l'ordre d'arrivée
        async with self._rate_lock:
            wait = self._next_slot - self._clock()
            if wait > 0:
                await self._sleep(wait)
            self._next_slot = self._clock() + self.min_interval_sec

    async def request(
        self,
        path: str,
        method: str = "GET",
        headers: Optional[Dict[str, str]] = None,
        json: Any = None,
        content: Optional[bytes] = None,
        params: Optional[Dict[str, Any]] = None,
        timeout_sec: Optional[float] = None,
        expected_statuses: Optional[Iterable[int]] = None,
        parse_json: bool = True,
    ) -> Any:
        url = build_url(self.config.base_url, path)
        query = {k: v for k, v in (params or {}).items() if v is not None}
        expected = tuple(expected_statuses or DEFAULT_EXPECTED_STATUSES)
        retry = self.config.retry
        timeout = timeout_sec or self.config.timeout_sec
        tags = {"path": path, "client": self.name}

        await self._apply_rate_limit()

        started = self._clock()
        for attempt in range(1, retry.max_attempts + 1):
            try:
                response = await asyncio.wait_for(
                    self.client.request(
                        method, url, headers=headers, json=json, content=content,
                        params=query or None, timeout=timeout,
                    ),
                    timeout,
                )
            except (asyncio.TimeoutError, httpx.TransportError) as e:
                reason = "timeout" if isinstance(e, (asyncio.TimeoutError, httpx.TimeoutException)) else "network"
                if attempt >= retry.max_attempts:
                    logger.error("[%s] %s %s failed after %d attempts (%s: %r)", self.name, method, path, attempt, reason, e)
                    self.metrics.increment("hyperliquid_http_failure", tags)
                    raise TransportError(
                        f"{method} {path} failed after {attempt} attempts ({reason})", attempts=attempt,
                    ) from e
                logger.warning("[%s] %s %s attempt %d %s error, retrying: %r", self.name, method, path, attempt, reason, e)
                self.metrics.increment("hyperliquid_http_retry", {**tags, "status": reason})
                await self._sleep(compute_delay(attempt, retry, self._rng))
                continue

            status = response.status_code
            if status not in expected:
                body = response.text
                status_tags = {**tags, "status": str(status)}
                if not should_retry(status, expected):
                    logger.error("[%s] %s %s unexpected status %d: %s", self.name, method, path, status, body[:200])
                    self.metrics.increment("hyperliquid_http_error", status_tags)
                    raise TransportError(f"Unexpected status {status}", status=status, attempts=attempt, body=body)
                if attempt >= retry.max_attempts:
                    logger.error("[%s] %s %s exhausted retries (status %d)", self.name, method, path, status)
                    self.metrics.increment("hyperliquid_http_retry_exhausted", status_tags)
                    raise TransportError(
                        f"Failed after {attempt} attempts with status {status}",
                        status=status, attempts=attempt, body=body,
                    )
                delay = compute_delay(attempt, retry, self._rng)
                if status == 429:
                    ra = retry_after_seconds(response.headers)
                    if ra is not None:
                        delay = max(delay, ra)
                logger.warning("[%s] %s %s status %d, retry %d in %.3fs", self.name, method, path, status, attempt, delay)
                self.metrics.increment("hyperliquid_http_retry", status_tags)
                await self._sleep(delay)
                continue

            self.metrics.observe("hyperliquid_http_latency_ms", (self._clock() - started) * 1000.0, tags)
            if not parse_json:
                return response.text
            try:
                return response.json()
            except ValueError as e:
                raise TransportError(
                    f"Invalid JSON body from {path}", status=status, attempts=attempt, body=response.text,
                ) from e

        raise TransportError("Retry loop exited unexpectedly")
