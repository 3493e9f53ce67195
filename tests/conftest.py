"""Fakes partagés: venue en mémoire, horloge manuelle."""
from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from hlsignal.common.models import AssetContext, AssetMeta, OrderPayload


class FakeInfoClient:
    def __init__(self, universe: Optional[List[AssetMeta]] = None,
                 contexts: Optional[List[AssetContext]] = None, delay: float = 0.0) -> None:
        self.universe = universe or [
            AssetMeta(id=0, name="BTC", size_decimals=3, max_leverage=50),
            AssetMeta(id=1, name="ETH", size_decimals=4, max_leverage=50),
        ]
        self.contexts = contexts or [
            AssetContext(mid_px=60500.0, mark_px=60500.0, oracle_px=60500.0),
            AssetContext(mid_px=3000.0, mark_px=3000.0, oracle_px=3000.0),
        ]
        self.delay = delay
        self.fail: Optional[Exception] = None
        self.calls = 0

    async def meta_and_asset_ctxs(self):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return list(self.universe), list(self.contexts)


class FakeExchangeClient:
    def __init__(self, response: Optional[Dict[str, Any]] = None) -> None:
        self.response = response or {
            "status": "ok",
            "response": {"type": "order", "data": {"statuses": [{"resting": {"oid": 1}}]}},
        }
        self.fail: Optional[Exception] = None
        self.payloads: List[OrderPayload] = []

    async def order(self, payload: OrderPayload) -> Dict[str, Any]:
        self.payloads.append(payload)
        if self.fail is not None:
            raise self.fail
        return self.response


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def info() -> FakeInfoClient:
    return FakeInfoClient()


@pytest.fixture
def slow_info() -> FakeInfoClient:
    return FakeInfoClient(delay=0.01)


@pytest.fixture
def exchange() -> FakeExchangeClient:
    return FakeExchangeClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_info():
    return FakeInfoClient
