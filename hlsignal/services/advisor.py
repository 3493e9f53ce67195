# hlsignal/services/advisor.py
from __future__ import annotations
import math
import re
from typing import Optional, List, Tuple, Iterable

from pydantic import BaseModel, ConfigDict

from hlsignal.common.models import EntryStrategy, Distance, TradeSignal, ExecutionType

RISK_MULTIPLIERS = {
    "low": 1.15,
    "medium": 1.0,
    "high": 0.75,
    "extreme": 0.55,
}

TIMEFRAME_KEYWORDS = {
    "scalp": 5,
    "intraday": 240,
    "swing": 1_440,
    "position": 10_080,
}

_UNIT_MINUTES = {"m": 1, "h": 60, "d": 1_440, "w": 10_080}


class AdviceOptions(BaseModel):
    """
    Réglages de l'advisor. Les seuils "rapide" (marché vs trailing entry) sont
    volontairement distincts: 15m pour forcer le market, 20m pour l'entrée trailing.
    """
    default_leverage: float = 5.0
    min_leverage: Optional[float] = 1.0
    max_leverage: Optional[float] = 25.0
    volatility_bias: float = 1.0
    fast_market_minutes: int = 15
    slow_limit_minutes: int = 240
    trailing_entry_max_minutes: int = 20
    grid_entry_min_minutes: int = 360


class SignalAdvice(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommended_leverage: float
    execution: ExecutionType
    entry_strategy: EntryStrategy
    adjusted_signal: TradeSignal
    notes: Tuple[str, ...] = ()


# --- petites utils ---

def clamp(v: float, lo: float, hi: float) -> float:
    if not math.isfinite(v):
        return lo
    return max(lo, min(hi, v))


def _round2(v: float) -> float:
    return math.floor(v * 100 + 0.5) / 100


def _sanitize_bound(bound: Optional[float], fallback: float) -> float:
    if bound is not None and math.isfinite(bound) and bound > 0:
        return float(bound)
    return fallback


def resolve_leverage_bounds(options: AdviceOptions) -> Tuple[float, float]:
    lo = _sanitize_bound(options.min_leverage, 1.0)
    hi = _sanitize_bound(options.max_leverage, 25.0)
    return min(lo, hi), max(lo, hi)


def timeframe_to_minutes(hint: str) -> Optional[int]:
    normalized = (hint or "").strip().lower()
    m = re.fullmatch(r"(\d+)([mhdw])", normalized)
    if m:
        value = int(m.group(1))
        return value * _UNIT_MINUTES[m.group(2)] if value > 0 else None
    return TIMEFRAME_KEYWORDS.get(normalized)


def dominant_timeframe(hints: Iterable[str]) -> Optional[int]:
    """Le timeframe le plus rapide parmi les indices reconnus."""
    minutes = [m for m in (timeframe_to_minutes(h) for h in hints) if m is not None]
    return min(minutes) if minutes else None


def timeframe_multiplier(minutes: int) -> float:
    if minutes <= 5:
        return 0.8
    if minutes <= 30:
        return 0.9
    if minutes <= 240:
        return 1.0
    if minutes <= 1_440:
        return 1.1
    return 1.2


def _derive_entry_strategy(signal: TradeSignal, minutes: Optional[int], options: AdviceOptions,
                           notes: List[str]) -> EntryStrategy:
    if signal.entry_strategy.type != "single":
        return signal.entry_strategy

    tp_count = len(signal.take_profits)
    if minutes is not None and minutes <= options.trailing_entry_max_minutes:
        levels = min(3, max(2, tp_count))
        step = 0.2 if signal.risk_label == "extreme" else 0.3 if signal.risk_label == "high" else 0.4
        notes.append(f"Applied trailing entry ({levels} levels, {step}% step) for rapid execution")
        return EntryStrategy.trailing(levels, Distance(mode="percent", value=step))

    if minutes is not None and minutes >= options.grid_entry_min_minutes:
        levels = min(4, max(2, tp_count or 2))
        spacing = 0.8 if signal.risk_label == "low" else 0.6 if signal.risk_label == "medium" else 0.5
        notes.append(f"Applied grid entry ({levels} levels, {spacing}% spacing) for swing trade")
        return EntryStrategy.grid(levels, Distance(mode="percent", value=spacing))

    if tp_count >= 3:
        levels = min(3, tp_count)
        notes.append(f"Distributed entries across {levels} grid levels to align with targets")
        return EntryStrategy.grid(levels, Distance(mode="percent", value=0.45))

    return signal.entry_strategy


def advise_signal(signal: TradeSignal, options: Optional[AdviceOptions] = None) -> SignalAdvice:
    """
    Levier recommandé, mode d'exécution et stratégie d'entrée à partir du profil de risque
    et des indices de timeframe du signal. Les notes tracent chaque ajustement.
    """
    options = options or AdviceOptions()
    notes: List[str] = []

    leverage = signal.leverage or options.default_leverage
    if signal.risk_label in RISK_MULTIPLIERS:
        mult = RISK_MULTIPLIERS[signal.risk_label]
        leverage *= mult
        if mult != 1:
            notes.append(f"Risk profile {signal.risk_label} applied multiplier {mult:.2f}")

    minutes = dominant_timeframe(signal.timeframe_hints)
    if minutes is not None:
        mult = timeframe_multiplier(minutes)
        leverage *= mult
        if mult != 1:
            notes.append(f"Timeframe {minutes}m adjusted leverage by multiplier {mult:.2f}")

    if options.volatility_bias != 1:
        leverage *= options.volatility_bias
        notes.append(f"Volatility bias {options.volatility_bias:.2f} applied to leverage")

    lo, hi = resolve_leverage_bounds(options)
    recommended = clamp(leverage, lo, hi)
    if recommended != leverage:
        notes.append(f"Leverage clamped to range [{lo:.2f}, {hi:.2f}]")
    recommended = _round2(recommended)

    # le risque extrême prime sur le timeframe rapide
    execution = signal.execution
    if signal.risk_label == "extreme":
        if execution != "limit":
            notes.append("Extreme risk profile prefers limit execution")
        execution = "limit"
    elif minutes is not None and minutes <= options.fast_market_minutes and execution != "market":
        execution = "market"
        notes.append("Fast timeframe detected; switching to market execution")
    elif minutes is not None and minutes >= options.slow_limit_minutes and execution != "limit":
        execution = "limit"
        notes.append("Slow timeframe detected; switching to limit execution")

    entry_strategy = _derive_entry_strategy(signal, minutes, options, notes)
    adjusted = signal.model_copy(update={
        "leverage": recommended,
        "execution": execution,
        "entry_strategy": entry_strategy,
    })
    return SignalAdvice(
        recommended_leverage=recommended,
        execution=execution,
        entry_strategy=entry_strategy,
        adjusted_signal=adjusted,
        notes=tuple(notes),
    )
