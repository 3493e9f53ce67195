# hlsignal/services/risk_engine.py
from __future__ import annotations
import logging
from typing import List, Optional, Protocol

from pydantic import BaseModel

from hlsignal.common.models import (
    ExecutionMetrics, OrderPayload, RiskAssessment, RiskUsage, RiskViolation, TradeSignal,
)
from hlsignal.common.execution_math import (
    compute_notional_usd, estimate_leverage, estimate_max_risk_usd, resolve_entry_price,
)

logger = logging.getLogger(__name__)

DEFAULT_WARNING_RATIO = 0.8


class RiskLimits(BaseModel):
    """Limites de risque ; une limite absente ou <= 0 n'est pas contrôlée."""
    account_equity_usd: Optional[float] = None
    max_position_notional_usd: Optional[float] = None
    max_position_risk_usd: Optional[float] = None
    max_leverage: Optional[float] = None
    daily_trade_count_limit: Optional[int] = None
    daily_loss_limit_usd: Optional[float] = None
    daily_notional_limit_usd: Optional[float] = None
    # part de la limite à partir de laquelle on avertit sans bloquer
    warning_ratio: float = DEFAULT_WARNING_RATIO


class MetricsProvider(Protocol):
    async def get_metrics(self) -> ExecutionMetrics: ...


def _active(limit: Optional[float]) -> bool:
    return limit is not None and limit > 0


class RiskEngine:
    def __init__(self, limits: Optional[RiskLimits] = None, metrics_provider: Optional[MetricsProvider] = None):
        self.limits = limits or RiskLimits()
        self.metrics_provider = metrics_provider

    async def _load_metrics(self) -> Optional[ExecutionMetrics]:
        if self.metrics_provider is None:
            return None
        try:
            return await self.metrics_provider.get_metrics()
        except Exception as e:
            logger.warning("unable to load execution metrics, daily checks skipped: %s", e)
            return None

    async def evaluate(
        self,
        signal: TradeSignal,
        payload: Optional[OrderPayload],
        mode: str,
        entry_price: Optional[float] = None,
        notional_usd: Optional[float] = None,
        leverage: Optional[float] = None,
        estimated_risk_usd: Optional[float] = None,
    ) -> RiskAssessment:
        """
        Contrôles indépendants (tous évalués, aucun court-circuit) :
          - position-notional / position-risk / leverage sur l'ordre seul
          - daily-trades / daily-loss / daily-notional: ordres soumis du jour + contribution de cet ordre
        Sous la limite mais au-delà de `warning_ratio`, le contrôle produit un avertissement
        non bloquant. Ne lève jamais: une violation est une donnée, pas une exception.
        """
        lim = self.limits
        entry = entry_price if entry_price is not None else resolve_entry_price(signal, payload)
        notional = notional_usd if notional_usd is not None else compute_notional_usd(signal.size, entry)
        risk = estimated_risk_usd
        if risk is None:
            risk = estimate_max_risk_usd(signal, entry, payload)
        if leverage is None:
            leverage = estimate_leverage(notional, lim.account_equity_usd) or signal.leverage

        violations: List[RiskViolation] = []
        warnings: List[RiskViolation] = []
        usage: List[RiskUsage] = []

        def check(code: str, observed: Optional[float], limit: Optional[float], message: str, warning: str) -> None:
            if observed is None or not _active(limit):
                return
            ratio = observed / limit
            usage.append(RiskUsage(code=code, observed=float(observed), limit=float(limit), ratio=ratio))
            if observed > limit:
                target, text = violations, message
            elif lim.warning_ratio > 0 and ratio >= lim.warning_ratio:
                target, text = warnings, warning
            else:
                return
            target.append(RiskViolation(
                code=code,
                message=text.format(observed=observed, limit=limit),
                observed=float(observed),
                limit=float(limit),
            ))

        check("position-notional", notional, lim.max_position_notional_usd,
              "Notional ${observed:.2f} exceeds per-position cap ${limit:.2f}",
              "Notional ${observed:.2f} is nearing cap ${limit:.2f}")
        check("position-risk", risk, lim.max_position_risk_usd,
              "Risk {observed:.2f} USD exceeds stop-loss allowance {limit:.2f} USD",
              "Risk {observed:.2f} USD is close to limit {limit:.2f} USD")
        check("leverage", leverage, lim.max_leverage,
              "Leverage {observed:.2f} exceeds limit {limit:.2f}",
              "Leverage {observed:.2f} is approaching configured limit {limit:.2f}")

        metrics = await self._load_metrics()
        if metrics is not None:
            daily = metrics.daily
            check("daily-trades", daily.submitted + 1, lim.daily_trade_count_limit,
                  "Daily trade count {observed:.0f} exceeds limit {limit:.0f}",
                  "Daily trade count {observed:.0f} is approaching limit {limit:.0f}")
            check("daily-loss", daily.risk_usd + max(risk or 0.0, 0.0), lim.daily_loss_limit_usd,
                  "Projected daily loss {observed:.2f} USD exceeds limit {limit:.2f} USD",
                  "Projected daily loss {observed:.2f} USD is nearing limit {limit:.2f} USD")
            check("daily-notional", daily.submitted_notional_usd + (notional or 0.0), lim.daily_notional_limit_usd,
                  "Daily notional {observed:.2f} USD exceeds cap {limit:.2f} USD",
                  "Daily volume {observed:.2f} USD is approaching cap {limit:.2f} USD")

        if violations:
            logger.info("risk gate blocked %s %s (%s): %s", signal.side, signal.symbol, mode,
                        ", ".join(v.code for v in violations))
        elif warnings:
            logger.info("risk gate warnings for %s %s (%s): %s", signal.side, signal.symbol, mode,
                        ", ".join(w.code for w in warnings))

        return RiskAssessment(
            allowed=not violations,
            violations=tuple(violations),
            warnings=tuple(warnings),
            usage=tuple(usage),
            metrics=metrics,
            mode=mode,
            entry_price=entry,
            notional_usd=notional,
            leverage=leverage,
            estimated_risk_usd=risk,
        )
