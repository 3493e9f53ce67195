from __future__ import annotations

import pytest

from hlsignal.common.execution_math import (
    compute_notional_usd, estimate_leverage, estimate_max_risk_usd, estimate_target_pnl_usd, resolve_entry_price,
)
from hlsignal.common.models import (
    Distance, LimitSpec, OrderPayload, OrderSpec, OrderType, PriceLevel, TradeSignal, TriggerSpec,
)


def make_signal(side="long", entry=None, stops=(58000.0, 59000.0), tps=((62000.0, None),), size=2.0) -> TradeSignal:
    return TradeSignal(
        side=side, symbol="BTC", raw_symbol="BTC", size=size, entry_price=entry,
        stop_losses=tuple(PriceLevel(price=p) for p in stops),
        take_profits=tuple(PriceLevel(price=p, size_fraction=f) for p, f in tps),
    )


def test_entry_price_prefers_signal_then_first_entry_order() -> None:
    payload = OrderPayload(orders=(
        OrderSpec(asset_id=0, is_buy=False, price="62000", size="2", reduce_only=True,
                  order_type=OrderType(trigger=TriggerSpec(trigger_price="62000", tpsl="tp"))),
        OrderSpec(asset_id=0, is_buy=True, price="61105", size="2", reduce_only=False,
                  order_type=OrderType(limit=LimitSpec(tif="Ioc"))),
    ))
    assert resolve_entry_price(make_signal(entry=60000), payload) == 60000
    assert resolve_entry_price(make_signal(), payload) == 61105
    assert resolve_entry_price(make_signal(), None) is None


def test_notional_and_leverage() -> None:
    assert compute_notional_usd(2, 100) == 200
    assert compute_notional_usd(0, 100) is None
    assert compute_notional_usd(1, None) is None
    assert estimate_leverage(5000, 1000) == 5
    assert estimate_leverage(5000, None) is None
    assert estimate_leverage(5000, 0) is None


def test_max_risk_uses_nearest_stop() -> None:
    assert estimate_max_risk_usd(make_signal(), 60000) == 2000
    short = make_signal(side="short", stops=(62000.0, 61000.0), tps=((58000.0, None),))
    assert estimate_max_risk_usd(short, 60000) == 2000


def test_max_risk_none_when_stop_on_wrong_side() -> None:
    short = make_signal(side="short", stops=(59000.0,), tps=((58000.0, None),))
    assert estimate_max_risk_usd(short, 60000) is None
    assert estimate_max_risk_usd(make_signal(), None) is None


def test_max_risk_falls_back_to_payload_stop_orders() -> None:
    trailing = TradeSignal(
        side="long", symbol="BTC", raw_symbol="BTC", size=2.0,
        take_profits=(PriceLevel(price=62000.0),), trailing_stop=Distance(mode="absolute", value=1500),
    )
    payload = OrderPayload(orders=(
        OrderSpec(asset_id=0, is_buy=False, price="62000", size="2", reduce_only=True,
                  order_type=OrderType(trigger=TriggerSpec(trigger_price="62000", tpsl="tp"))),
        OrderSpec(asset_id=0, is_buy=False, price="58500", size="2", reduce_only=True,
                  order_type=OrderType(trigger=TriggerSpec(trigger_price="58500", tpsl="sl"))),
    ))
    assert estimate_max_risk_usd(trailing, 60000) is None
    assert estimate_max_risk_usd(trailing, 60000, payload) == 3000
    # un stop fixe du signal reste prioritaire
    assert estimate_max_risk_usd(make_signal(), 60000, payload) == 2000


def test_target_pnl_weights_unspecified_fractions() -> None:
    signal = make_signal(tps=((62000.0, 0.25), (64000.0, None)))
    assert estimate_target_pnl_usd(signal, 60000) == pytest.approx(7000)
    even = make_signal(tps=((61000.0, None), (63000.0, None)))
    assert estimate_target_pnl_usd(even, 60000) == pytest.approx(4000)
    assert estimate_target_pnl_usd(even, None) is None
