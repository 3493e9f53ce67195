from __future__ import annotations
import math
from typing import Optional, List

from hlsignal.common.models import TradeSignal, OrderPayload


def _num(value) -> Optional[float]:
    try:
        f = float(value)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def resolve_entry_price(signal: TradeSignal, payload: Optional[OrderPayload]) -> Optional[float]:
    """Prix d'entrée du signal, sinon celui du premier ordre non reduce-only du payload."""
    if signal.entry_price and signal.entry_price > 0:
        return signal.entry_price
    if payload is None:
        return None
    for order in payload.orders:
        if not order.reduce_only:
            return _num(order.price)
    return None


def compute_notional_usd(size: Optional[float], price: Optional[float]) -> Optional[float]:
    if not size or not price or size <= 0 or price <= 0:
        return None
    return size * price


def payload_stop_prices(payload: Optional[OrderPayload]) -> List[float]:
    """Prix de déclenchement des ordres stop (reduce-only, tpsl=sl) du payload."""
    if payload is None:
        return []
    out: List[float] = []
    for order in payload.orders:
        trigger = order.order_type.trigger
        if order.reduce_only and trigger is not None and trigger.tpsl == "sl":
            price = _num(trigger.trigger_price)
            if price is not None and price > 0:
                out.append(price)
    return out


def estimate_max_risk_usd(signal: TradeSignal, entry_price: Optional[float],
                          payload: Optional[OrderPayload] = None) -> Optional[float]:
    """
    Perte max si le stop le plus proche est touché (long: stop le plus haut, short: le plus bas).
    Sans stop fixe (trailing seul), on lit le stop calculé dans le payload.
    None si pas de stop exploitable ou stop du mauvais côté.
    """
    if not entry_price or entry_price <= 0:
        return None
    stops = [lvl.price for lvl in signal.stop_losses if lvl.price > 0] or payload_stop_prices(payload)
    if not stops:
        return None
    if signal.is_long:
        delta = entry_price - max(stops)
    else:
        delta = min(stops) - entry_price
    if delta <= 0:
        return None
    return delta * signal.size


def estimate_target_pnl_usd(signal: TradeSignal, entry_price: Optional[float]) -> Optional[float]:
    if not entry_price or entry_price <= 0 or not signal.take_profits:
        return None
    n = len(signal.take_profits)
    weights: List[float] = []
    specified = sum(tp.size_fraction or 0.0 for tp in signal.take_profits)
    unspecified = sum(1 for tp in signal.take_profits if tp.size_fraction is None)
    share = max(0.0, 1.0 - specified) / unspecified if unspecified else 0.0
    for tp in signal.take_profits:
        w = tp.size_fraction if tp.size_fraction is not None else share
        weights.append(w if w > 0 else 1.0 / n)
    total = sum(weights)
    avg_target = sum(w * tp.price for w, tp in zip(weights, signal.take_profits)) / total
    delta = avg_target - entry_price if signal.is_long else entry_price - avg_target
    return delta * signal.size


def estimate_leverage(notional_usd: Optional[float], equity_usd: Optional[float]) -> Optional[float]:
    if not notional_usd or not equity_usd or equity_usd <= 0:
        return None
    return notional_usd / equity_usd
