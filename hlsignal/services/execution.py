from __future__ import annotations
import time
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence, Tuple

from hlsignal.common.errors import OrderConstructionError, StaleMetadataError, UnknownSymbolError
from hlsignal.common.filters import allocate_sizes, format_price
from hlsignal.common.models import (
    AssetContext, AssetMeta, EntryPlan, EntryStrategy, ExecutionResult, LimitSpec,
    MetadataSnapshot, OrderPayload, OrderSpec, OrderType, PriceLevel, TradeSignal, TriggerSpec,
)
from hlsignal.common.signals import ParserConfig, normalize_symbol, parse_trade_signal

logger = logging.getLogger(__name__)

DEFAULT_SLIPPAGE_BPS = 50        # 0.5%
DEFAULT_CACHE_TTL_SEC = 5.0
DEFAULT_MAX_STALENESS_SEC = 60.0

RefreshMode = Literal["blocking", "background"]
Fetcher = Callable[[], Awaitable[Tuple[Dict[str, AssetMeta], Sequence[AssetContext]]]]


# ---------- cache des métadonnées venue (single-flight)

class MetadataCache:
    """
    Snapshot {timestamp, actifs par symbole, contextes} remplacé en bloc à chaque refresh.
    Un seul refresh en vol: les appelants concurrents attendent la même tâche,
    dont la référence est effacée dès qu'elle se termine.
    Partagé entre moteurs en passant la même instance (voir TradingEngineFactory).
    """

    def __init__(self, ttl_sec: float = DEFAULT_CACHE_TTL_SEC,
                 max_staleness_sec: float = DEFAULT_MAX_STALENESS_SEC,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl_sec = ttl_sec
        self.max_staleness_sec = max(max_staleness_sec, ttl_sec)
        self._clock = clock
        self.snapshot: Optional[MetadataSnapshot] = None
        self._inflight: Optional[asyncio.Future] = None

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None

    def age(self) -> Optional[float]:
        if self.snapshot is None:
            return None
        return self._clock() - self.snapshot.timestamp

    def _usable(self) -> bool:
        age = self.age()
        return age is not None and age < self.max_staleness_sec

    async def _run_refresh(self, fetch: Fetcher) -> MetadataSnapshot:
        assets, contexts = await fetch()
        snapshot = MetadataSnapshot(timestamp=self._clock(), assets_by_symbol=dict(assets), contexts=tuple(contexts))
        self.snapshot = snapshot
        logger.debug("metadata refreshed (%d assets)", len(snapshot.assets_by_symbol))
        return snapshot

    def _settled(self, task: asyncio.Future) -> None:
        if self._inflight is task:
            self._inflight = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("metadata refresh failed: %r", exc)

    def _start(self, fetch: Fetcher) -> asyncio.Future:
        # vérif + installation sans await entre les deux: aucun appelant ne peut passer à côté
        if self._inflight is None:
            task = asyncio.ensure_future(self._run_refresh(fetch))
            self._inflight = task
            task.add_done_callback(self._settled)
        return self._inflight

    async def refresh(self, fetch: Fetcher) -> MetadataSnapshot:
        # shield: l'annulation d'un appelant n'annule pas le refresh des autres
        return await asyncio.shield(self._start(fetch))

    async def _refresh_or_stale(self, fetch: Fetcher) -> MetadataSnapshot:
        try:
            return await self.refresh(fetch)
        except Exception as e:
            if self._usable():
                logger.warning("serving stale metadata (age %.1fs) after refresh failure", self.age())
                return self.snapshot
            raise StaleMetadataError("Venue metadata unavailable and no usable snapshot") from e

    async def get(self, fetch: Fetcher, mode: RefreshMode = "blocking", force: bool = False) -> MetadataSnapshot:
        """
        blocking   : frais -> cache, sinon on attend un refresh
        background : frais -> cache ; périmé mais < max_staleness -> cache + refresh non attendu ;
                     sinon on attend un refresh
        """
        age = self.age()
        if force or age is None:
            return await self._refresh_or_stale(fetch)
        if age < self.ttl_sec:
            return self.snapshot
        if mode == "background" and age < self.max_staleness_sec:
            self._start(fetch)
            return self.snapshot
        return await self._refresh_or_stale(fetch)


# --- petites utils ---

def _bps_to_float(bps: float) -> float:
    """Convertit des basis points en ratio (20 bps -> 0.002)."""
    return float(bps) / 10_000.0


def ladder_prices(reference: float, side: str, strategy: EntryStrategy) -> List[float]:
    """
    Génère les prix d'une entrée étagée à partir du prix de référence (niveau 0).
      long  : niveaux SOUS la référence (servi sur repli)
      short : niveaux AU-DESSUS
    grid     : pas linéaire  (ref*(1+d*p*i) ou ref+d*v*i)
    trailing : pas composé   (ref*(1+d*p)^i ou ref+d*v*i(i+1)/2)
    """
    n = strategy.levels if strategy.type != "single" else 1
    if n < 1:
        raise OrderConstructionError("Entry strategy needs at least one level")
    if strategy.type == "single":
        return [reference]

    dist = strategy.distance
    direction = -1.0 if side == "long" else 1.0
    pct = dist.value / 100.0
    prices: List[float] = []
    for i in range(n):
        if strategy.type == "grid":
            if dist.mode == "percent":
                px = reference * (1.0 + direction * pct * i)
            else:
                px = reference + direction * dist.value * i
        else:
            if dist.mode == "percent":
                px = reference * (1.0 + direction * pct) ** i
            else:
                px = reference + direction * dist.value * i * (i + 1) / 2.0
        if px <= 0:
            raise OrderConstructionError(f"Entry level {i} price {px:.6f} is not positive")
        prices.append(px)
    return prices


@dataclass(frozen=True)
class PreparedOrder:
    signal: TradeSignal
    asset: AssetMeta
    entry_plans: Tuple[EntryPlan, ...]
    payload: OrderPayload


# ---------- moteur

class TradingEngine:
    """Signal -> payload d'ordres (entrées, TP, SL) aux précisions de l'actif, puis soumission."""

    def __init__(self, info, exchange, cache: Optional[MetadataCache] = None,
                 slippage_bps: float = DEFAULT_SLIPPAGE_BPS, refresh_mode: RefreshMode = "blocking",
                 parser_config: Optional[ParserConfig] = None):
        self.info = info
        self.exchange = exchange
        self.cache = cache or MetadataCache()
        self.slippage_bps = slippage_bps
        self.refresh_mode = refresh_mode
        self.parser_config = parser_config

    # -------- metadata
    async def _fetch_metadata(self) -> Tuple[Dict[str, AssetMeta], List[AssetContext]]:
        universe, contexts = await self.info.meta_and_asset_ctxs()
        assets: Dict[str, AssetMeta] = {}
        for asset in universe:
            key = normalize_symbol(asset.name)
            if key and key not in assets:
                assets[key] = asset
        return assets, list(contexts)

    async def ensure_metadata(self, force: bool = False) -> MetadataSnapshot:
        return await self.cache.get(self._fetch_metadata, self.refresh_mode, force=force)

    def resolve_asset(self, snapshot: MetadataSnapshot, symbol: str) -> AssetMeta:
        asset = snapshot.assets_by_symbol.get(normalize_symbol(symbol))
        if asset is None:
            raise UnknownSymbolError(symbol)
        return asset

    def resolve_mid_price(self, snapshot: MetadataSnapshot, asset: AssetMeta) -> float:
        ctx = snapshot.context_for(asset)
        if ctx is None or ctx.mid_px is None:
            raise StaleMetadataError(f"No mid price available for {asset.name}")
        if not ctx.mid_px > 0:
            raise StaleMetadataError(f"Invalid mid price {ctx.mid_px!r} for {asset.name}")
        return float(ctx.mid_px)

    def resolve_entry_price(self, signal: TradeSignal, asset: AssetMeta,
                            snapshot: MetadataSnapshot) -> Tuple[float, str]:
        if signal.execution == "limit" and signal.entry_price is not None:
            return signal.entry_price, "Gtc"
        mid = self.resolve_mid_price(snapshot, asset)
        slippage = _bps_to_float(self.slippage_bps)
        factor = 1.0 + slippage if signal.is_long else 1.0 - slippage
        tif = "Ioc" if signal.execution == "market" else "Gtc"
        return mid * factor, tif

    # -------- construction
    def build_entry_plans(self, signal: TradeSignal, asset: AssetMeta, price: float, tif: str) -> List[EntryPlan]:
        strategy = signal.entry_strategy
        if strategy.type == "single":
            size = allocate_sizes(signal.size, [None], asset.size_decimals)[0]
            return [EntryPlan(price=price, tif=tif, size=size)]

        reference = signal.entry_price if signal.entry_price is not None else price
        prices = ladder_prices(reference, signal.side, strategy)
        sizes = allocate_sizes(signal.size, [None] * len(prices), asset.size_decimals)
        # seul le niveau 0 garde le TIF résolu, les suivants restent au carnet
        return [
            EntryPlan(price=px, tif=tif if i == 0 else "Gtc", size=sz)
            for i, (px, sz) in enumerate(zip(prices, sizes))
        ]

    def trailing_stop_price(self, signal: TradeSignal, plans: Sequence[EntryPlan]) -> float:
        ts = signal.trailing_stop
        prices = [p.price for p in plans]
        reference = max(prices) if signal.is_long else min(prices)
        distance = reference * ts.value / 100.0 if ts.mode == "percent" else ts.value
        price = reference - distance if signal.is_long else reference + distance
        beyond = price < reference if signal.is_long else price > reference
        if price <= 0 or not beyond:
            raise OrderConstructionError(
                f"Trailing stop {ts.value} {ts.mode} gives invalid stop {price:.6f} from {reference:.6f}"
            )
        return price

    def resolve_stop_levels(self, signal: TradeSignal, plans: Sequence[EntryPlan]) -> List[PriceLevel]:
        levels = list(signal.stop_losses)
        if signal.trailing_stop is None:
            return levels
        trail_px = self.trailing_stop_price(signal, plans)
        if not levels:
            return [PriceLevel(price=trail_px, label="trailing")]
        # on resserre le stop le plus proche de la position au lieu d'ajouter un doublon
        pick = max if signal.is_long else min
        idx = pick(range(len(levels)), key=lambda i: levels[i].price)
        tightened = pick(levels[idx].price, trail_px)
        levels[idx] = levels[idx].model_copy(update={"price": tightened})
        return levels

    @staticmethod
    def _exit_order(asset: AssetMeta, is_buy: bool, price: float, size: str, tpsl: str) -> OrderSpec:
        px = format_price(price)
        return OrderSpec(
            asset_id=asset.id, is_buy=is_buy, price=px, size=size, reduce_only=True,
            order_type=OrderType(trigger=TriggerSpec(is_market=True, trigger_price=px, tpsl=tpsl)),
        )

    def build_payload(self, signal: TradeSignal, asset: AssetMeta, plans: Sequence[EntryPlan]) -> OrderPayload:
        entry_side = signal.is_long
        exit_side = not entry_side
        decimals = asset.size_decimals

        orders: List[OrderSpec] = [
            OrderSpec(
                asset_id=asset.id, is_buy=entry_side, price=format_price(p.price), size=p.size,
                reduce_only=False, order_type=OrderType(limit=LimitSpec(tif=p.tif)),
            )
            for p in plans
        ]
        if not orders:
            raise OrderConstructionError("No entry order could be built")

        tps = signal.take_profits
        tp_sizes = allocate_sizes(signal.size, [tp.size_fraction for tp in tps], decimals)
        for tp, size in zip(tps, tp_sizes):
            orders.append(self._exit_order(asset, exit_side, tp.price, size, "tp"))

        stops = self.resolve_stop_levels(signal, plans)
        sl_sizes = allocate_sizes(signal.size, [sl.size_fraction for sl in stops], decimals)
        for sl, size in zip(stops, sl_sizes):
            orders.append(self._exit_order(asset, exit_side, sl.price, size, "sl"))

        if not tps:
            raise OrderConstructionError("At least one take profit order is required")
        return OrderPayload(orders=tuple(orders), grouping="positionTpsl" if tps else "na")

    async def build_order(self, signal: TradeSignal) -> PreparedOrder:
        snapshot = await self.ensure_metadata()
        asset = self.resolve_asset(snapshot, signal.symbol)
        price, tif = self.resolve_entry_price(signal, asset, snapshot)
        plans = self.build_entry_plans(signal, asset, price, tif)
        payload = self.build_payload(signal, asset, plans)
        return PreparedOrder(signal=signal, asset=asset, entry_plans=tuple(plans), payload=payload)

    # -------- soumission
    async def submit(self, payload: OrderPayload) -> Dict[str, Any]:
        return await self.exchange.order(payload)

    async def execute_signal(self, signal: TradeSignal) -> ExecutionResult:
        prepared = await self.build_order(signal)
        logger.info("submitting %s %s size=%s (%d orders, %s)", signal.side, signal.symbol,
                    signal.size, len(prepared.payload.orders), prepared.payload.grouping)
        response = await self.submit(prepared.payload)
        return ExecutionResult(signal=signal, payload=prepared.payload, response=response)

    async def execute_signal_text(self, text: str) -> ExecutionResult:
        return await self.execute_signal(parse_trade_signal(text, self.parser_config))


class TradingEngineFactory:
    """Fabrique de moteurs partageant un même MetadataCache (une instance par process)."""

    def __init__(self, info, exchange, cache: Optional[MetadataCache] = None, **engine_kwargs):
        self.info = info
        self.exchange = exchange
        self.cache = cache or MetadataCache()
        self.engine_kwargs = engine_kwargs

    def create(self, **overrides) -> TradingEngine:
        kwargs = {**self.engine_kwargs, **overrides}
        return TradingEngine(self.info, self.exchange, cache=self.cache, **kwargs)
