# hlsignal/services/ledger.py
from __future__ import annotations
import time
import uuid
import logging
from datetime import datetime
from typing import Any, Callable, List, Literal, Optional, Sequence, Tuple

from hlsignal.common.models import (
    AggregatedStats, ExecutionMetrics, FrozenModel, OrderPayload, RiskLabel, RiskViolation, Side, TradeSignal,
)
from hlsignal.common.execution_math import (
    compute_notional_usd, estimate_leverage, estimate_max_risk_usd, estimate_target_pnl_usd, resolve_entry_price,
)

logger = logging.getLogger(__name__)

ExecutionStatus = Literal["fulfilled", "partial", "rejected", "error", "blocked"]

DEFAULT_MAX_RECORDS = 5_000


class SignalSnapshot(FrozenModel):
    text: str
    symbol: str
    side: Side
    size: float
    entry_price: Optional[float] = None
    stop_loss: Optional[float] = None
    leverage: Optional[float] = None
    risk_label: Optional[RiskLabel] = None


class ResponseSummary(FrozenModel):
    status: Optional[str] = None
    statuses: Tuple[str, ...] = ()


class ExecutionRecord(FrozenModel):
    id: str
    timestamp: float
    signal: SignalSnapshot
    mode: str
    status: ExecutionStatus
    message: Optional[str] = None
    notional_usd: Optional[float] = None
    entry_price_usd: Optional[float] = None
    estimated_risk_usd: Optional[float] = None
    estimated_pnl_usd: Optional[float] = None
    leverage: Optional[float] = None
    response_summary: Optional[ResponseSummary] = None
    risk_violations: Tuple[RiskViolation, ...] = ()


# --- petites utils ---

def summarize_response(response: Any) -> Optional[ResponseSummary]:
    """Résumé {status, statuses} d'une réponse d'ordre ; None si rien d'exploitable."""
    if not isinstance(response, dict):
        return None
    status = response.get("status") if isinstance(response.get("status"), str) else None
    statuses: List[str] = []
    inner = response.get("response")
    data = inner.get("data") if isinstance(inner, dict) else response.get("data")
    for item in data.get("statuses", []) if isinstance(data, dict) else []:
        if isinstance(item, dict):
            if isinstance(item.get("status"), str):
                statuses.append(item["status"])
            else:
                # format venue: {"resting": {...}} / {"filled": {...}} / {"error": "..."}
                statuses.extend(k for k in item.keys() if isinstance(k, str))
        elif isinstance(item, str):
            statuses.append(item)
    if status is None and not statuses:
        return None
    return ResponseSummary(status=status, statuses=tuple(statuses))


def aggregate(records: Sequence[ExecutionRecord]) -> AggregatedStats:
    if not records:
        return AggregatedStats()

    successes = failures = blocked = 0
    pnl = positive = loss = gross = total_risk = max_risk = total_lev = max_lev = 0.0
    submitted_notional = submitted_risk = 0.0
    for r in records:
        if r.status in ("fulfilled", "partial"):
            successes += 1
            submitted_notional += r.notional_usd or 0.0
            submitted_risk += max(r.estimated_risk_usd or 0.0, 0.0)
        elif r.status == "blocked":
            blocked += 1
        else:
            failures += 1
        if r.estimated_pnl_usd:
            pnl += r.estimated_pnl_usd
            if r.estimated_pnl_usd >= 0:
                positive += r.estimated_pnl_usd
            else:
                loss += abs(r.estimated_pnl_usd)
        if r.notional_usd:
            gross += r.notional_usd
        if r.estimated_risk_usd:
            total_risk += r.estimated_risk_usd
            max_risk = max(max_risk, r.estimated_risk_usd)
        if r.leverage:
            total_lev += r.leverage
            max_lev = max(max_lev, r.leverage)

    trades = len(records)
    decided = successes + failures
    return AggregatedStats(
        trades=trades,
        successes=successes,
        failures=failures,
        blocked=blocked,
        win_rate=successes / (decided or trades),
        pnl_usd=pnl,
        positive_pnl_usd=positive,
        loss_usd=loss,
        gross_notional_usd=gross,
        average_notional_usd=gross / trades,
        average_pnl_usd=pnl / trades,
        average_risk_usd=total_risk / trades,
        max_risk_usd=max_risk,
        average_leverage=total_lev / trades,
        max_leverage=max_lev,
        submitted=successes,
        submitted_notional_usd=submitted_notional,
        risk_usd=submitted_risk,
    )


def start_of_day(ts: float) -> float:
    """Minuit local du jour de `ts` (epoch secondes)."""
    return datetime.fromtimestamp(ts).replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


class ExecutionLedger:
    """
    Journal d'exécutions en mémoire (plus récent en tête). Sert de fournisseur
    de métriques au moteur de risque: totaux + agrégat du jour.
    """

    def __init__(self, account_equity_usd: Optional[float] = None,
                 clock: Callable[[], float] = time.time, max_records: int = DEFAULT_MAX_RECORDS):
        self.account_equity_usd = account_equity_usd
        self.clock = clock
        self.max_records = max_records
        self._records: List[ExecutionRecord] = []

    def _snapshot(self, signal: TradeSignal, leverage: Optional[float]) -> SignalSnapshot:
        return SignalSnapshot(
            text=signal.text,
            symbol=signal.symbol,
            side=signal.side,
            size=signal.size,
            entry_price=signal.entry_price,
            stop_loss=signal.stop_loss,
            leverage=leverage if leverage is not None else signal.leverage,
            risk_label=signal.risk_label,
        )

    def _append(self, record: ExecutionRecord) -> ExecutionRecord:
        self._records.insert(0, record)
        del self._records[self.max_records:]
        logger.debug("ledger %s %s %s (%s)", record.status, record.signal.side, record.signal.symbol, record.mode)
        return record

    def _build(self, signal: TradeSignal, payload: Optional[OrderPayload], mode: str, status: ExecutionStatus,
               message: Optional[str], response: Any, violations: Sequence[RiskViolation]) -> ExecutionRecord:
        entry = resolve_entry_price(signal, payload)
        notional = compute_notional_usd(signal.size, entry)
        leverage = estimate_leverage(notional, self.account_equity_usd)
        return ExecutionRecord(
            id=str(uuid.uuid4()),
            timestamp=self.clock(),
            signal=self._snapshot(signal, leverage),
            mode=mode,
            status=status,
            message=message,
            notional_usd=notional,
            entry_price_usd=entry,
            estimated_risk_usd=estimate_max_risk_usd(signal, entry, payload),
            estimated_pnl_usd=estimate_target_pnl_usd(signal, entry),
            leverage=leverage if leverage is not None else signal.leverage,
            response_summary=summarize_response(response),
            risk_violations=tuple(violations),
        )

    def record_execution(self, signal: TradeSignal, payload: OrderPayload, response: Any, mode: str,
                         status: ExecutionStatus = "fulfilled", message: Optional[str] = None,
                         violations: Sequence[RiskViolation] = ()) -> ExecutionRecord:
        return self._append(self._build(signal, payload, mode, status, message, response, violations))

    def record_failure(self, signal: TradeSignal, payload: Optional[OrderPayload], mode: str, message: str,
                       status: ExecutionStatus = "error",
                       violations: Sequence[RiskViolation] = ()) -> ExecutionRecord:
        return self._append(self._build(signal, payload, mode, status, message, None, violations))

    def record_blocked(self, signal: TradeSignal, payload: Optional[OrderPayload], mode: str,
                       violations: Sequence[RiskViolation]) -> ExecutionRecord:
        message = "; ".join(v.message for v in violations) or "blocked by risk engine"
        return self.record_failure(signal, payload, mode, message, status="blocked", violations=violations)

    def history(self, limit: int = 50) -> List[ExecutionRecord]:
        return list(self._records[:max(0, limit)])

    async def get_metrics(self) -> ExecutionMetrics:
        records = list(self._records)
        day = start_of_day(self.clock())
        last = records[0].timestamp if records else None
        return ExecutionMetrics(
            totals=aggregate(records),
            daily=aggregate([r for r in records if r.timestamp >= day]),
            last_execution=last,
        )

