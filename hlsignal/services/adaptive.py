from __future__ import annotations
import time
import logging
from typing import Dict, List, Optional, Protocol, Tuple

from pydantic import BaseModel, ConfigDict, Field

from hlsignal.common.models import Distance, EntryStrategy, TradeSignal
from hlsignal.common.signals import ParserConfig, parse_trade_signal
from hlsignal.services.advisor import (
    AdviceOptions, SignalAdvice, advise_signal, dominant_timeframe, resolve_leverage_bounds,
)
from hlsignal.services.hard_rules import HardRuleEvaluation, evaluate_hard_rules

logger = logging.getLogger(__name__)

# seuils du moteur adaptatif
RISK_REDUCE_THRESHOLD = 0.55
RISK_BOOST_THRESHOLD = 0.35
BOOST_MIN_WIN_RATE = 0.6
LOW_LIQUIDITY = 120
GRID_MIN_LIQUIDITY = 150
TREND_MARKET = 0.7
TREND_TRAILING = 0.65


class MarketKpiSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    timestamp: float = Field(default_factory=time.time)
    volatility_score: float     # 0-10
    trend_strength: float       # 0-1
    drawdown_percent: float     # 0-100
    win_rate: float             # 0-1
    liquidity_score: float      # score venue
    slippage_bps: float


class AdaptiveAdjustment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    rationale: str
    applied: bool
    delta: Optional[float] = None
    details: Optional[str] = None


class AdaptiveSignalAdvice(SignalAdvice):
    hard_rules: Tuple[HardRuleEvaluation, ...] = ()
    adaptive_adjustments: Tuple[AdaptiveAdjustment, ...] = ()
    risk_score: float = 0.0
    kpis: Optional[MarketKpiSnapshot] = None


class KpiProvider(Protocol):
    async def get_kpis(self, symbol: str) -> Optional[MarketKpiSnapshot]: ...


class StaticKpiProvider:
    """KPIs fournis de l'extérieur (tests, config), par symbole."""

    def __init__(self, kpis: Optional[Dict[str, MarketKpiSnapshot]] = None):
        self.kpis = dict(kpis or {})

    async def get_kpis(self, symbol: str) -> Optional[MarketKpiSnapshot]:
        return self.kpis.get(symbol)


# --- petites utils ---

def _clamp(v: float, lo: float, hi: float) -> float:
    return min(hi, max(lo, v))


def compute_risk_score(kpis: MarketKpiSnapshot) -> float:
    """0.45*vol/10 + 0.35*dd/35 + 0.20*slip/150, chaque composante bornée à [0, 1]."""
    volatility = _clamp(kpis.volatility_score / 10, 0, 1)
    drawdown = _clamp(kpis.drawdown_percent / 35, 0, 1)
    slippage = _clamp(kpis.slippage_bps / 150, 0, 1)
    return round(volatility * 0.45 + drawdown * 0.35 + slippage * 0.2, 4)


def trailing_entry_from_trend(kpis: MarketKpiSnapshot) -> EntryStrategy:
    levels = int(_clamp(round(3 + kpis.trend_strength * 4), 3, 7))
    step = _clamp(kpis.volatility_score / (levels * 1.8), 0.15, 1.2)
    return EntryStrategy.trailing(levels, Distance(mode="percent", value=round(step, 2)))


def grid_from_liquidity(kpis: MarketKpiSnapshot) -> EntryStrategy:
    levels = int(_clamp(round(2 + (kpis.liquidity_score / 150) * 2), 2, 5))
    spacing = _clamp(kpis.volatility_score / (levels * 2.4), 0.1, 1.5)
    return EntryStrategy.grid(levels, Distance(mode="percent", value=round(spacing, 2)))


def _adjust_leverage(advice: SignalAdvice, kpis: MarketKpiSnapshot, options: AdviceOptions,
                     risk_score: float, out: List[AdaptiveAdjustment]) -> float:
    lo, hi = resolve_leverage_bounds(options)
    leverage = advice.recommended_leverage

    if risk_score >= RISK_REDUCE_THRESHOLD:
        factor = _clamp(1 - (risk_score - RISK_REDUCE_THRESHOLD) * 0.8, 0.35, 0.95)
        reduced = _clamp(leverage * factor, lo, hi)
        out.append(AdaptiveAdjustment(
            id="dynamic-risk-threshold",
            description="Dynamic risk pressure reduced leverage.",
            rationale="High volatility/drawdown combo requires deleveraging.",
            applied=reduced != leverage,
            delta=round(reduced - leverage, 4),
            details=f"Risk score {risk_score:.2f} with volatility {kpis.volatility_score:.2f}.",
        ))
        leverage = reduced
    elif risk_score <= RISK_BOOST_THRESHOLD and kpis.win_rate >= BOOST_MIN_WIN_RATE:
        factor = _clamp(1 + (kpis.win_rate - BOOST_MIN_WIN_RATE) * 0.4, 1, 1.18)
        boosted = _clamp(leverage * factor, lo, hi)
        out.append(AdaptiveAdjustment(
            id="performance-bonus",
            description="Positive KPI regime allows a minor leverage boost.",
            rationale="Sustained win-rate with low risk lets the strategy scale up slightly.",
            applied=boosted != leverage,
            delta=round(boosted - leverage, 4),
            details=f"Win-rate {kpis.win_rate * 100:.1f}% with risk {risk_score:.2f}.",
        ))
        leverage = boosted

    return round(leverage, 2)


def _adjust_execution(advice: SignalAdvice, kpis: MarketKpiSnapshot, out: List[AdaptiveAdjustment]) -> str:
    execution = advice.execution
    if kpis.liquidity_score < LOW_LIQUIDITY:
        applied = execution != "limit"
        out.append(AdaptiveAdjustment(
            id="liquidity-guard",
            description="Low liquidity enforces limit execution.",
            rationale="Avoid high slippage on illiquid pairs.",
            applied=applied,
            details=f"Liquidity score {kpis.liquidity_score:.1f} < {LOW_LIQUIDITY}",
        ))
        return "limit"
    if kpis.trend_strength >= TREND_MARKET:
        applied = execution != "market"
        out.append(AdaptiveAdjustment(
            id="trend-urgency",
            description="Strong trend urges market execution for immediacy.",
            rationale="Momentum setups benefit from immediate fills.",
            applied=applied,
            details=f"Trend strength {kpis.trend_strength:.2f} >= {TREND_MARKET:.2f}",
        ))
        return "market"
    out.append(AdaptiveAdjustment(
        id="execution-stable",
        description="No execution change required.",
        rationale="Market conditions support current execution mode.",
        applied=False,
    ))
    return execution


def _adjust_entry(baseline: EntryStrategy, execution: str, kpis: MarketKpiSnapshot,
                  out: List[AdaptiveAdjustment]) -> EntryStrategy:
    if kpis.trend_strength >= TREND_TRAILING:
        out.append(AdaptiveAdjustment(
            id="trend-trailing-entry",
            description="Momentum-driven trailing entry applied.",
            rationale="High trend strength rewards adaptive trailing entries.",
            applied=True,
            details=f"Trend strength {kpis.trend_strength:.2f}.",
        ))
        return trailing_entry_from_trend(kpis)
    if execution == "limit" and kpis.liquidity_score >= GRID_MIN_LIQUIDITY:
        out.append(AdaptiveAdjustment(
            id="liquidity-grid-entry",
            description="Grid entry tuned for book depth.",
            rationale="Healthy liquidity enables staged limit orders.",
            applied=True,
            details=f"Liquidity score {kpis.liquidity_score:.1f} supports grid entries.",
        ))
        return grid_from_liquidity(kpis)
    out.append(AdaptiveAdjustment(
        id="entry-unchanged",
        description="Entry strategy kept as-is.",
        rationale="Market KPIs do not mandate entry modifications.",
        applied=False,
    ))
    return baseline


def advise_with_adaptive_rules(signal: TradeSignal, options: Optional[AdviceOptions] = None,
                               kpis: Optional[MarketKpiSnapshot] = None) -> AdaptiveSignalAdvice:
    """
    Conseil de base + règles dures, puis ajustements à partir d'un snapshot de KPIs marché
    (levier selon le score de risque, exécution selon liquidité/tendance, entrée étagée).
    Sans KPIs: conseil de base, score de risque 0.
    """
    options = options or AdviceOptions()
    base = advise_signal(signal, options)
    hard_rules = tuple(evaluate_hard_rules(signal, base, options))
    base_fields = base.model_dump(exclude={"adjusted_signal", "entry_strategy"})

    if kpis is None:
        return AdaptiveSignalAdvice(
            **base_fields,
            entry_strategy=base.entry_strategy,
            adjusted_signal=base.adjusted_signal,
            hard_rules=hard_rules,
        )

    adjustments: List[AdaptiveAdjustment] = []
    risk_score = compute_risk_score(kpis)
    leverage = _adjust_leverage(base, kpis, options, risk_score, adjustments)
    execution = _adjust_execution(base, kpis, adjustments)
    entry = _adjust_entry(base.entry_strategy, execution, kpis, adjustments)

    notes = list(base.notes)
    notes.append(
        f"Risk score {risk_score:.2f} derived from volatility {kpis.volatility_score:.2f}, "
        f"drawdown {kpis.drawdown_percent:.1f}%, slippage {kpis.slippage_bps:.1f}bps."
    )
    if execution != base.execution:
        notes.append(f"Execution adjusted from {base.execution} to {execution} using market KPIs.")
    if leverage != base.recommended_leverage:
        notes.append(
            f"Leverage adjusted from {base.recommended_leverage:.2f} to {leverage:.2f} due to adaptive rules."
        )
    if entry.type != base.entry_strategy.type or dominant_timeframe(signal.timeframe_hints) is None:
        notes.append(f"Entry strategy recalibrated ({base.entry_strategy.type} -> {entry.type}).")

    adjusted = signal.model_copy(update={"leverage": leverage, "execution": execution, "entry_strategy": entry})
    return AdaptiveSignalAdvice(
        recommended_leverage=leverage,
        execution=execution,
        entry_strategy=entry,
        adjusted_signal=adjusted,
        notes=tuple(notes),
        hard_rules=hard_rules,
        adaptive_adjustments=tuple(adjustments),
        risk_score=risk_score,
        kpis=kpis,
    )


async def generate_adaptive_advice(text: str, options: Optional[AdviceOptions] = None,
                                   provider: Optional[KpiProvider] = None,
                                   parser_config: Optional[ParserConfig] = None
                                   ) -> Tuple[TradeSignal, AdaptiveSignalAdvice]:
    signal = parse_trade_signal(text, parser_config)
    kpis = await provider.get_kpis(signal.symbol) if provider is not None else None
    if kpis is None:
        logger.debug("no KPI snapshot for %s, baseline advice only", signal.symbol)
    return signal, advise_with_adaptive_rules(signal, options, kpis)
