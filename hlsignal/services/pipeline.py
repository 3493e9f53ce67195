# hlsignal/services/pipeline.py
from __future__ import annotations
import sys
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Tuple

import httpx

from hlsignal.common.errors import SignalBotError
from hlsignal.common.models import AssetContext, AssetMeta, OrderPayload, RiskAssessment, TradeSignal
from hlsignal.common.signals import ParserConfig, parse_trade_signal, signal_summary
from hlsignal.services.adaptive import AdaptiveSignalAdvice, KpiProvider, advise_with_adaptive_rules
from hlsignal.services.advisor import AdviceOptions
from hlsignal.services.config import AppConfig, configure_logging, load_config
from hlsignal.services.execution import MetadataCache, TradingEngine
from hlsignal.services.ledger import ExecutionLedger
from hlsignal.services.notify import NotificationEvent, NotificationService
from hlsignal.services.risk_engine import RiskEngine
from hlsignal.services.venue import Signer, VenueClients, create_venue_clients

logger = logging.getLogger(__name__)

DEFAULT_SIGNAL = "Long BTC 2 stop 58000 tp1 62000 tp2 63000 market"

OutcomeStatus = Literal["executed", "blocked"]


# ---------- Demo venue (aucun appel réseau) ----------
DEMO_UNIVERSE = [AssetMeta(id=0, name="BTC", size_decimals=3, max_leverage=100)]
DEMO_CONTEXTS = [AssetContext(mid_px=60500.0, mark_px=60500.0, oracle_px=60500.0)]


class DemoInfoClient:
    def __init__(self, universe: Optional[List[AssetMeta]] = None, contexts: Optional[List[AssetContext]] = None):
        self.universe = list(universe or DEMO_UNIVERSE)
        self.contexts = list(contexts or DEMO_CONTEXTS)

    async def meta_and_asset_ctxs(self) -> Tuple[List[AssetMeta], List[AssetContext]]:
        return self.universe, self.contexts


class DemoExchangeClient:
    async def order(self, payload: OrderPayload) -> Dict[str, Any]:
        return {
            "status": "ok",
            "response": {"type": "order", "data": {"statuses": [{"status": "fulfilled"} for _ in payload.orders]}},
        }


# ---------- Pipeline ----------
@dataclass(frozen=True)
class PipelineOutcome:
    status: OutcomeStatus
    signal: TradeSignal
    advice: AdaptiveSignalAdvice
    payload: OrderPayload
    assessment: RiskAssessment
    response: Optional[Dict[str, Any]] = None

    @property
    def executed(self) -> bool:
        return self.status == "executed"


class SignalPipeline:
    """
    Texte -> signal -> conseil (règles dures + KPIs) -> payload -> garde-fou risque -> soumission.
    Un signal bloqué par le risque n'est pas une erreur: l'issue porte les violations.
    Les erreurs de construction/soumission sont journalisées, notifiées puis relancées.
    """

    def __init__(self, engine: TradingEngine, risk_engine: RiskEngine, ledger: ExecutionLedger,
                 notifier: Optional[NotificationService] = None, advice_options: Optional[AdviceOptions] = None,
                 kpi_provider: Optional[KpiProvider] = None, mode: str = "demo",
                 parser_config: Optional[ParserConfig] = None, venue: Optional[VenueClients] = None):
        self.engine = engine
        self.risk_engine = risk_engine
        self.ledger = ledger
        self.notifier = notifier or NotificationService()
        self.advice_options = advice_options or AdviceOptions()
        self.kpi_provider = kpi_provider
        self.mode = mode
        self.parser_config = parser_config
        self.venue = venue

    async def advise(self, signal: TradeSignal, adaptive: bool = True) -> AdaptiveSignalAdvice:
        kpis = None
        if adaptive and self.kpi_provider is not None:
            kpis = await self.kpi_provider.get_kpis(signal.symbol)
        return advise_with_adaptive_rules(signal, self.advice_options, kpis)

    async def process(self, text: str, adaptive: bool = True) -> PipelineOutcome:
        signal = parse_trade_signal(text, self.parser_config)
        advice = await self.advise(signal, adaptive)
        target = advice.adjusted_signal
        for note in advice.notes:
            logger.debug("advice %s: %s", signal.symbol, note)

        try:
            prepared = await self.engine.build_order(target)
        except SignalBotError as e:
            await self._fail(target, None, e)
            raise

        assessment = await self.risk_engine.evaluate(target, prepared.payload, self.mode)
        if not assessment.allowed:
            self.ledger.record_blocked(target, prepared.payload, self.mode, assessment.violations)
            await self.notifier.notify(NotificationEvent(
                type="risk-guard",
                severity="warning",
                message=f"Signal {signal.side} {signal.symbol} blocked by risk engine",
                details={"violations": [v.model_dump() for v in assessment.violations],
                         "signal": signal_summary(target)},
            ))
            return PipelineOutcome("blocked", target, advice, prepared.payload, assessment)

        try:
            response = await self.engine.submit(prepared.payload)
        except (SignalBotError, httpx.HTTPError) as e:
            await self._fail(target, prepared.payload, e)
            raise

        self.ledger.record_execution(target, prepared.payload, response, self.mode)
        await self.notifier.notify(NotificationEvent(
            type="execution",
            severity="info",
            message=f"Executed {signal.side} {signal.symbol} ({len(prepared.payload.orders)} orders, {self.mode})",
            details={"signal": signal_summary(target), "leverage": advice.recommended_leverage},
        ))
        return PipelineOutcome("executed", target, advice, prepared.payload, assessment, response)

    async def _fail(self, signal: TradeSignal, payload: Optional[OrderPayload], error: Exception) -> None:
        logger.error("execution failed for %s %s: %s", signal.side, signal.symbol, error)
        self.ledger.record_failure(signal, payload, self.mode, str(error))
        await self.notifier.notify(NotificationEvent(
            type="exchange-error",
            severity="critical",
            message=f"Execution failed for {signal.side} {signal.symbol}",
            details={"error": str(error), "kind": type(error).__name__},
        ))

    async def aclose(self) -> None:
        if self.venue is not None:
            await self.venue.aclose()


def build_pipeline(config: AppConfig, client: Optional[httpx.AsyncClient] = None, signer: Optional[Signer] = None,
                   kpi_provider: Optional[KpiProvider] = None) -> SignalPipeline:
    """Câblage complet depuis AppConfig ; en mode demo, venue simulée en mémoire."""
    venue: Optional[VenueClients] = None
    if config.mode == "demo":
        info, exchange = DemoInfoClient(), DemoExchangeClient()
    else:
        venue = create_venue_clients(config.venue, client=client, signer=signer)
        info, exchange = venue.info, venue.exchange

    ex = config.execution
    cache = MetadataCache(ttl_sec=ex.meta_refresh_interval_sec, max_staleness_sec=ex.meta_max_staleness_sec)
    parser_config = ParserConfig(**config.parser)
    engine = TradingEngine(info, exchange, cache=cache, slippage_bps=ex.slippage_bps,
                           refresh_mode=ex.meta_refresh_mode, parser_config=parser_config)
    ledger = ExecutionLedger(account_equity_usd=config.risk.account_equity_usd)
    return SignalPipeline(
        engine=engine,
        risk_engine=RiskEngine(config.risk, metrics_provider=ledger),
        ledger=ledger,
        notifier=NotificationService(config.notify.webhook_url, timeout_sec=config.notify.timeout_sec),
        advice_options=config.advice,
        kpi_provider=kpi_provider,
        mode=config.mode,
        parser_config=parser_config,
        venue=venue,
    )


async def main(text: Optional[str] = None) -> PipelineOutcome:
    cfg = load_config()
    configure_logging(cfg.log_level)
    pipeline = build_pipeline(cfg)
    try:
        outcome = await pipeline.process(text or DEFAULT_SIGNAL)
    finally:
        await pipeline.aclose()
    logger.info("outcome=%s orders=%d violations=%s", outcome.status, len(outcome.payload.orders),
                [v.code for v in outcome.assessment.violations])
    return outcome


def run() -> None:
    asyncio.run(main(" ".join(sys.argv[1:]) or None))


if __name__ == "__main__":
    run()
