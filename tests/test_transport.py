"""Tests du client HTTP résilient (httpx.MockTransport, sommeil et horloge injectés)."""
from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Tuple

import httpx
import pytest

from hlsignal.common.errors import TransportError
from hlsignal.services.config import HttpClientConfig, RetryPolicy
from hlsignal.services.transport import RetryingHttpClient, build_url, compute_delay, should_retry


class RecordingSleep:
    def __init__(self, clock=None) -> None:
        self.calls: List[float] = []
        self.clock = clock

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        if self.clock is not None:
            self.clock.advance(seconds)


class RecordingMetrics:
    def __init__(self) -> None:
        self.counters: List[Tuple[str, Dict[str, str]]] = []

    def increment(self, metric: str, tags: Optional[Dict[str, str]] = None) -> None:
        self.counters.append((metric, dict(tags or {})))

    def observe(self, metric: str, value: float, tags: Optional[Dict[str, str]] = None) -> None:
        pass

    def count(self, metric: str) -> int:
        return sum(1 for name, _ in self.counters if name == metric)


def make_config(max_attempts: int = 3, rate: float = 0, timeout: float = 1.0) -> HttpClientConfig:
    return HttpClientConfig(
        base_url="https://api.test/",
        timeout_sec=timeout,
        rate_limit_per_second=rate,
        retry=RetryPolicy(max_attempts=max_attempts, initial_delay_sec=0.1, backoff_multiplier=2, max_delay_sec=1.0),
    )


def make_client(handler, sleep=None, clock=None, metrics=None, **cfg) -> RetryingHttpClient:
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    return RetryingHttpClient(
        make_config(**cfg),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        metrics=metrics,
        sleep=sleep or RecordingSleep(),
        rng=lambda: 0.0,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_success_returns_json() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    http = make_client(handler)
    assert await http.post("info", json={"type": "meta"}, params={"a": 1, "b": None}) == {"ok": True}
    assert str(seen[0].url) == "https://api.test/info?a=1"


@pytest.mark.asyncio
async def test_502_on_every_attempt_exhausts_exactly_max_attempts() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(502, text="bad gateway")

    sleep = RecordingSleep()
    metrics = RecordingMetrics()
    http = make_client(handler, sleep=sleep, metrics=metrics, max_attempts=3)
    with pytest.raises(TransportError) as exc:
        await http.get("info")
    assert calls["n"] == 3
    assert exc.value.status == 502
    assert exc.value.attempts == 3
    assert sleep.calls == [pytest.approx(0.1), pytest.approx(0.2)]
    assert metrics.count("hyperliquid_http_retry") == 2
    assert metrics.count("hyperliquid_http_retry_exhausted") == 1


@pytest.mark.asyncio
async def test_network_error_then_success() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json=[1, 2])

    http = make_client(handler)
    assert await http.get("signals") == [1, 2]
    assert calls["n"] == 2


@pytest.mark.asyncio
async def test_network_errors_surface_last_error_after_budget() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    http = make_client(handler, max_attempts=2)
    with pytest.raises(TransportError) as exc:
        await http.get("info")
    assert exc.value.attempts == 2
    assert isinstance(exc.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_client_error_is_not_retried() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(400, json={"error": "bad"})

    sleep = RecordingSleep()
    http = make_client(handler, sleep=sleep)
    with pytest.raises(TransportError) as exc:
        await http.post("exchange", json={})
    assert calls["n"] == 1
    assert exc.value.status == 400
    assert sleep.calls == []


@pytest.mark.asyncio
async def test_expected_statuses_accept_non_200() -> None:
    http = make_client(lambda request: httpx.Response(202, json={"queued": True}))
    assert await http.post("exchange", json={}, expected_statuses=(200, 202)) == {"queued": True}


@pytest.mark.asyncio
async def test_timeout_is_retried_then_fails() -> None:
    calls = {"n": 0}

    async def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        await asyncio.sleep(1)
        return httpx.Response(200, json={})

    http = make_client(handler, max_attempts=2)
    with pytest.raises(TransportError) as exc:
        await http.get("info", timeout_sec=0.01)
    assert calls["n"] == 2
    assert "timeout" in str(exc.value)


@pytest.mark.asyncio
async def test_retry_after_raises_delay_floor() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        if calls["n"] == 1:
            return httpx.Response(429, headers={"Retry-After": "3"})
        return httpx.Response(200, json={"ok": 1})

    sleep = RecordingSleep()
    http = make_client(handler, sleep=sleep)
    assert await http.get("info") == {"ok": 1}
    assert sleep.calls == [3.0]


@pytest.mark.asyncio
async def test_rate_limit_spaces_requests(clock) -> None:
    sleep = RecordingSleep(clock)
    http = make_client(lambda request: httpx.Response(200, json={}), sleep=sleep, clock=clock, rate=4)
    assert http.min_interval_sec == 0.25
    for _ in range(3):
        await http.get("info")
    assert sleep.calls == [pytest.approx(0.25), pytest.approx(0.25)]


@pytest.mark.asyncio
async def test_invalid_json_body() -> None:
    http = make_client(lambda request: httpx.Response(200, text="<html>"))
    with pytest.raises(TransportError):
        await http.get("info")
    assert await http.get("info", parse_json=False) == "<html>"


def test_helpers() -> None:
    assert build_url("https://api.test", "/info") == "https://api.test/info"
    assert should_retry(429, (200,))
    assert should_retry(503, (200,))
    assert not should_retry(404, (200,))
    policy = RetryPolicy(max_attempts=5, initial_delay_sec=0.5, backoff_multiplier=2, max_delay_sec=1.5)
    assert compute_delay(1, policy, lambda: 0.0) == 0.5
    assert compute_delay(4, policy, lambda: 0.0) == 1.5
    assert compute_delay(1, policy, lambda: 1.0) == pytest.approx(0.6)
