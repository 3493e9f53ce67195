from __future__ import annotations

import pytest

from hlsignal.common.models import AggregatedStats, ExecutionMetrics
from hlsignal.common.signals import parse_trade_signal
from hlsignal.services.execution import TradingEngine
from hlsignal.services.risk_engine import RiskEngine, RiskLimits


class StubMetrics:
    def __init__(self, metrics: ExecutionMetrics = None, fail: Exception = None) -> None:
        self.metrics = metrics or ExecutionMetrics()
        self.fail = fail

    async def get_metrics(self) -> ExecutionMetrics:
        if self.fail is not None:
            raise self.fail
        return self.metrics


@pytest.mark.asyncio
async def test_position_notional_cap_blocks() -> None:
    signal = parse_trade_signal("Long BTC 2 entry 3000 stop 2900 tp 3100 limit")
    engine = RiskEngine(RiskLimits(account_equity_usd=1000, max_position_notional_usd=5000))
    assessment = await engine.evaluate(signal, None, "test")
    assert not assessment.allowed
    assert assessment.violations[0].code == "position-notional"
    assert assessment.violations[0].observed == 6000
    assert assessment.notional_usd == 6000
    assert assessment.leverage == 6
    assert assessment.estimated_risk_usd == 200


@pytest.mark.asyncio
async def test_all_position_checks_are_evaluated() -> None:
    signal = parse_trade_signal("Long BTC 2 entry 3000 stop 2900 tp 3100 limit")
    limits = RiskLimits(account_equity_usd=1000, max_position_notional_usd=5000,
                        max_position_risk_usd=100, max_leverage=5)
    assessment = await RiskEngine(limits).evaluate(signal, None, "test")
    assert assessment.codes == ("position-notional", "position-risk", "leverage")


@pytest.mark.asyncio
async def test_daily_limits_include_this_order() -> None:
    signal = parse_trade_signal("Long BTC 1 entry 1000 stop 750 tp 1200 limit")
    metrics = ExecutionMetrics(daily=AggregatedStats(submitted=5, risk_usd=100, submitted_notional_usd=20000))
    limits = RiskLimits(daily_trade_count_limit=5, daily_loss_limit_usd=200, daily_notional_limit_usd=20000)
    assessment = await RiskEngine(limits, StubMetrics(metrics)).evaluate(signal, None, "live")

    assert assessment.codes == ("daily-trades", "daily-loss", "daily-notional")
    by_code = {v.code: v for v in assessment.violations}
    assert by_code["daily-trades"].observed == 6
    assert by_code["daily-loss"].observed == 350
    assert by_code["daily-notional"].observed == 21000
    assert assessment.metrics == metrics
    assert assessment.mode == "live"


@pytest.mark.asyncio
async def test_limits_at_boundary_pass() -> None:
    signal = parse_trade_signal("Long BTC 1 entry 1000 stop 750 tp 1200 limit")
    metrics = ExecutionMetrics(daily=AggregatedStats(submitted=4, risk_usd=0, submitted_notional_usd=0))
    limits = RiskLimits(max_position_notional_usd=1000, daily_trade_count_limit=5, daily_loss_limit_usd=250)
    assessment = await RiskEngine(limits, StubMetrics(metrics)).evaluate(signal, None, "test")
    assert assessment.allowed


@pytest.mark.asyncio
async def test_metrics_failure_skips_daily_checks() -> None:
    signal = parse_trade_signal("Long BTC 1 entry 1000 stop 750 tp 1200 limit")
    limits = RiskLimits(daily_trade_count_limit=1)
    engine = RiskEngine(limits, StubMetrics(fail=RuntimeError("db down")))
    assessment = await engine.evaluate(signal, None, "test")
    assert assessment.allowed
    assert assessment.metrics is None


@pytest.mark.asyncio
async def test_zero_or_missing_limits_are_ignored() -> None:
    signal = parse_trade_signal("Long BTC 100 entry 60000 stop 59000 tp 70000 limit")
    limits = RiskLimits(max_position_notional_usd=0, max_position_risk_usd=None)
    assessment = await RiskEngine(limits).evaluate(signal, None, "test")
    assert assessment.allowed
    assert assessment.leverage is None


@pytest.mark.asyncio
async def test_explicit_figures_override_estimates() -> None:
    signal = parse_trade_signal("Long BTC 1 entry 1000 stop 750 tp 1200 limit")
    limits = RiskLimits(max_position_notional_usd=500, max_leverage=3)
    assessment = await RiskEngine(limits).evaluate(signal, None, "test", notional_usd=400, leverage=4)
    assert assessment.codes == ("leverage",)
    assert assessment.notional_usd == 400


@pytest.mark.asyncio
async def test_blocked_records_do_not_count_toward_daily_limits() -> None:
    signal = parse_trade_signal("Long BTC 1 entry 1000 stop 750 tp 1200 limit")
    # 10 ordres vus aujourd'hui, tous bloqués: rien n'a été soumis
    daily = AggregatedStats(trades=10, blocked=10, gross_notional_usd=1_000_000)
    limits = RiskLimits(daily_trade_count_limit=2, daily_notional_limit_usd=5000)
    assessment = await RiskEngine(limits, StubMetrics(ExecutionMetrics(daily=daily))).evaluate(signal, None, "test")
    assert assessment.allowed


@pytest.mark.asyncio
async def test_approaching_limits_warn_without_blocking() -> None:
    signal = parse_trade_signal("Long BTC 1 entry 1000 stop 750 tp 1200 limit")
    limits = RiskLimits(max_position_notional_usd=1200, max_position_risk_usd=1000)
    assessment = await RiskEngine(limits).evaluate(signal, None, "test")

    assert assessment.allowed
    assert [w.code for w in assessment.warnings] == ["position-notional"]
    assert assessment.warnings[0].message == "Notional $1000.00 is nearing cap $1200.00"
    assert [u.code for u in assessment.usage] == ["position-notional", "position-risk"]
    assert assessment.usage[0].ratio == pytest.approx(1000 / 1200)
    assert assessment.usage[1].ratio == pytest.approx(0.25)


@pytest.mark.asyncio
async def test_warning_ratio_is_configurable() -> None:
    signal = parse_trade_signal("Long BTC 1 entry 1000 stop 750 tp 1200 limit")
    strict = RiskLimits(max_position_risk_usd=1000, warning_ratio=0.2)
    assessment = await RiskEngine(strict).evaluate(signal, None, "test")
    assert [w.code for w in assessment.warnings] == ["position-risk"]

    silent = RiskLimits(max_position_notional_usd=1000, warning_ratio=0)
    assessment = await RiskEngine(silent).evaluate(signal, None, "test")
    assert assessment.allowed
    assert assessment.warnings == ()
    assert assessment.usage[0].ratio == 1


@pytest.mark.asyncio
async def test_violations_are_not_repeated_as_warnings() -> None:
    signal = parse_trade_signal("Long BTC 2 entry 3000 stop 2900 tp 3100 limit")
    assessment = await RiskEngine(RiskLimits(max_position_notional_usd=5000)).evaluate(signal, None, "test")
    assert assessment.codes == ("position-notional",)
    assert assessment.warnings == ()


@pytest.mark.asyncio
async def test_trailing_only_signal_takes_risk_from_payload_stop(info, exchange) -> None:
    signal = parse_trade_signal("Long BTC 10 entry 60000 limit trailing stop 5000 tp 65000")
    assert signal.stop_losses == ()
    prepared = await TradingEngine(info, exchange).build_order(signal)

    limits = RiskLimits(max_position_risk_usd=1000)
    assessment = await RiskEngine(limits).evaluate(signal, prepared.payload, "test")
    assert assessment.estimated_risk_usd == pytest.approx(50_000)
    assert assessment.codes == ("position-risk",)
