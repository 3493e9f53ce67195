from __future__ import annotations
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from hlsignal.common.models import TradeSignal
from hlsignal.services.advisor import (
    AdviceOptions, SignalAdvice, advise_signal, dominant_timeframe, resolve_leverage_bounds,
)

Severity = Literal["info", "warning", "critical"]


class HardRuleEvaluation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    description: str
    rationale: str
    severity: Severity
    triggered: bool
    details: Optional[str] = None


def _fmt_bound(v: float) -> str:
    s = f"{v:.2f}".rstrip("0").rstrip(".")
    return s or "0"


def evaluate_hard_rules(signal: TradeSignal, advice: SignalAdvice,
                        options: Optional[AdviceOptions] = None) -> List[HardRuleEvaluation]:
    """Batterie fixe de contrôles, purement informative (ne bloque rien)."""
    options = options or AdviceOptions()
    minutes = dominant_timeframe(signal.timeframe_hints)
    lo, hi = resolve_leverage_bounds(options)
    fast = options.fast_market_minutes
    slow = options.slow_limit_minutes

    return [
        HardRuleEvaluation(
            id="leverage-bounds",
            description="Recommended leverage must stay inside configured bounds.",
            rationale="Protects from accidental over-sizing when signals request extreme leverage.",
            severity="critical",
            triggered=advice.recommended_leverage <= lo + 1e-2 or advice.recommended_leverage >= hi - 1e-2,
            details=f"Clamp range [{_fmt_bound(lo)}, {_fmt_bound(hi)}] enforced.",
        ),
        HardRuleEvaluation(
            id="extreme-risk-limit-order",
            description="Extreme-risk signals are downgraded to limit execution.",
            rationale="Avoids market slippage when volatility spikes under extreme risk labels.",
            severity="warning",
            triggered=signal.risk_label == "extreme" and advice.execution == "limit",
            details="Execution forced to limit due to risk policy." if signal.risk_label == "extreme" else None,
        ),
        HardRuleEvaluation(
            id="fast-timeframe-market",
            description=f"Scalp or intraday signals within {fast} minutes execute as market orders.",
            rationale="Ensures fills on rapidly moving markets when the planning window is tiny.",
            severity="warning",
            triggered=minutes is not None and minutes <= fast and advice.execution == "market",
            details=f"Dominant timeframe {minutes}m triggers market execution." if minutes is not None else None,
        ),
        HardRuleEvaluation(
            id="slow-timeframe-limit",
            description="Swing trades revert to limit execution for better entry precision.",
            rationale="Gives orders time to rest on order book when setup horizon is long.",
            severity="info",
            triggered=minutes is not None and minutes >= slow and advice.execution == "limit",
            details=f"Dominant timeframe {minutes}m keeps execution on limit." if minutes is not None else None,
        ),
    ]


def advise_with_hard_rules(signal: TradeSignal,
                           options: Optional[AdviceOptions] = None) -> Tuple[SignalAdvice, List[HardRuleEvaluation]]:
    options = options or AdviceOptions()
    advice = advise_signal(signal, options)
    return advice, evaluate_hard_rules(signal, advice, options)
