from __future__ import annotations

import pytest

from hlsignal.common.signals import parse_trade_signal
from hlsignal.services.adaptive import (
    MarketKpiSnapshot, StaticKpiProvider, advise_with_adaptive_rules, compute_risk_score, generate_adaptive_advice,
    grid_from_liquidity, trailing_entry_from_trend,
)
from hlsignal.services.advisor import AdviceOptions

HIGH_RISK_TEXT = "Long BTC size 2 entry 62000 stop 60000 tp1 64000 leverage 12 risk extreme timeframe 5m"
LOW_RISK_TEXT = "Long ETH size 3 entry 3000 stop 2850 tp1 3200 tp2 3300 leverage 2 risk low timeframe 4h"

STRESSED = MarketKpiSnapshot(
    symbol="BTC", volatility_score=8.4, trend_strength=0.4, drawdown_percent=27.5,
    win_rate=0.44, liquidity_score=95, slippage_bps=142,
)
STRONG = MarketKpiSnapshot(
    symbol="ETH", volatility_score=3.2, trend_strength=0.82, drawdown_percent=6.5,
    win_rate=0.71, liquidity_score=480, slippage_bps=35,
)


def adjustment(advice, adjustment_id):
    return next((a for a in advice.adaptive_adjustments if a.id == adjustment_id), None)


def test_stressed_kpis_deleverage_and_force_limit() -> None:
    signal = parse_trade_signal(HIGH_RISK_TEXT)
    advice = advise_with_adaptive_rules(signal, AdviceOptions(min_leverage=1, max_leverage=25), STRESSED)

    assert advice.recommended_leverage < 12
    assert advice.execution == "limit"
    assert any(r.id == "extreme-risk-limit-order" and r.triggered for r in advice.hard_rules)
    deleverage = adjustment(advice, "dynamic-risk-threshold")
    assert deleverage is not None and deleverage.applied
    assert deleverage.delta < 0
    assert adjustment(advice, "liquidity-guard") is not None
    assert adjustment(advice, "entry-unchanged") is not None
    assert advice.risk_score > 0.55
    assert advice.kpis == STRESSED


def test_strong_kpis_boost_and_trail() -> None:
    signal = parse_trade_signal(LOW_RISK_TEXT)
    advice = advise_with_adaptive_rules(signal, AdviceOptions(min_leverage=1, max_leverage=12), STRONG)

    assert advice.recommended_leverage > signal.leverage
    assert advice.execution == "market"
    assert advice.entry_strategy.type == "trailing"
    assert advice.entry_strategy.levels == 6
    assert advice.entry_strategy.step.value == 0.3
    assert adjustment(advice, "performance-bonus").applied
    assert adjustment(advice, "trend-urgency").applied
    assert advice.risk_score < 0.35
    assert advice.adjusted_signal.execution == "market"
    assert "Execution adjusted from limit to market using market KPIs." in advice.notes
    assert "Entry strategy recalibrated (single -> trailing)." in advice.notes


def test_liquidity_grid_for_limit_orders() -> None:
    signal = parse_trade_signal(LOW_RISK_TEXT)
    kpis = STRONG.model_copy(update={"trend_strength": 0.3, "liquidity_score": 300, "volatility_score": 6})
    advice = advise_with_adaptive_rules(signal, None, kpis)
    assert advice.execution == "limit"
    assert adjustment(advice, "execution-stable") is not None
    grid = adjustment(advice, "liquidity-grid-entry")
    assert grid is not None and grid.applied
    assert advice.entry_strategy.type == "grid"
    assert advice.entry_strategy.levels == 5
    assert advice.entry_strategy.spacing.value == 0.5


def test_without_kpis_returns_baseline_with_rules() -> None:
    signal = parse_trade_signal(LOW_RISK_TEXT)
    advice = advise_with_adaptive_rules(signal)
    assert advice.risk_score == 0
    assert advice.adaptive_adjustments == ()
    assert len(advice.hard_rules) == 4
    assert advice.kpis is None


def test_risk_score_components_are_capped() -> None:
    extreme = STRESSED.model_copy(update={"volatility_score": 50, "drawdown_percent": 90, "slippage_bps": 900})
    assert compute_risk_score(extreme) == 1.0
    calm = STRESSED.model_copy(update={"volatility_score": 0, "drawdown_percent": 0, "slippage_bps": 0})
    assert compute_risk_score(calm) == 0.0


def test_entry_builders_respect_bounds() -> None:
    trailing = trailing_entry_from_trend(STRONG.model_copy(update={"trend_strength": 1.0, "volatility_score": 0.1}))
    assert trailing.levels == 7
    assert trailing.step.value == 0.15
    grid = grid_from_liquidity(STRONG.model_copy(update={"liquidity_score": 10, "volatility_score": 10}))
    assert grid.levels == 2
    assert grid.spacing.value == 1.5


@pytest.mark.asyncio
async def test_generate_adaptive_advice_uses_provider() -> None:
    provider = StaticKpiProvider({"BTC": STRESSED})
    signal, advice = await generate_adaptive_advice(HIGH_RISK_TEXT, provider=provider)
    assert signal.symbol == "BTC"
    assert advice.kpis == STRESSED

    _, baseline = await generate_adaptive_advice(LOW_RISK_TEXT, provider=provider)
    assert baseline.kpis is None
