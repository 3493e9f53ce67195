from __future__ import annotations
from typing import Optional, Literal, Tuple, Dict, Any
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

Side = Literal["long", "short"]
ExecutionType = Literal["market", "limit"]
DistanceMode = Literal["percent", "absolute"]
RiskLabel = Literal["low", "medium", "high", "extreme"]
Tif = Literal["Gtc", "Ioc"]
Grouping = Literal["positionTpsl", "na"]


class FrozenModel(BaseModel):
    # camelCase côté fil (assetId, reduceOnly, ...), snake_case côté Python
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)


# --- signal ---

class PriceLevel(FrozenModel):
    price: float = Field(gt=0)
    size_fraction: Optional[float] = Field(default=None, gt=0, le=1)
    label: Optional[str] = None


class Distance(FrozenModel):
    mode: DistanceMode
    value: float = Field(gt=0)


TrailingStop = Distance


class EntryStrategy(FrozenModel):
    type: Literal["single", "grid", "trailing"] = "single"
    levels: int = Field(default=1, gt=0)
    spacing: Optional[Distance] = None   # grid
    step: Optional[Distance] = None      # trailing

    @model_validator(mode="after")
    def _check_shape(self):
        if self.type == "grid" and self.spacing is None:
            raise ValueError("grid entry strategy requires a spacing")
        if self.type == "trailing" and self.step is None:
            raise ValueError("trailing entry strategy requires a step")
        return self

    @classmethod
    def single(cls) -> "EntryStrategy":
        return cls(type="single", levels=1)

    @classmethod
    def grid(cls, levels: int, spacing: Distance) -> "EntryStrategy":
        return cls(type="grid", levels=levels, spacing=spacing)

    @classmethod
    def trailing(cls, levels: int, step: Distance) -> "EntryStrategy":
        return cls(type="trailing", levels=levels, step=step)

    @property
    def distance(self) -> Optional[Distance]:
        return self.spacing if self.type == "grid" else self.step


class TradeSignal(FrozenModel):
    side: Side
    symbol: str = Field(min_length=1)
    raw_symbol: str
    size: float = Field(gt=0)
    entry_price: Optional[float] = Field(default=None, gt=0)
    stop_losses: Tuple[PriceLevel, ...] = ()
    take_profits: Tuple[PriceLevel, ...] = ()
    leverage: Optional[float] = Field(default=None, gt=0)
    execution: ExecutionType = "market"
    trailing_stop: Optional[Distance] = None
    entry_strategy: EntryStrategy = Field(default_factory=EntryStrategy.single)
    risk_label: Optional[RiskLabel] = None
    timeframe_hints: Tuple[str, ...] = ()
    text: str = ""

    @model_validator(mode="after")
    def _check_exits(self):
        if not self.take_profits:
            raise ValueError("at least one take profit is required")
        if not self.stop_losses and self.trailing_stop is None:
            raise ValueError("a stop loss or a trailing stop is required")
        return self

    @property
    def stop_loss(self) -> Optional[float]:
        return self.stop_losses[0].price if self.stop_losses else None

    @property
    def is_long(self) -> bool:
        return self.side == "long"


# --- venue ---

class AssetMeta(FrozenModel):
    id: int = Field(ge=0)
    name: str
    size_decimals: int = Field(ge=0)
    max_leverage: Optional[float] = None


class AssetContext(FrozenModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel, extra="ignore")

    mid_px: Optional[float] = None
    mark_px: Optional[float] = None
    oracle_px: Optional[float] = None


class MetadataSnapshot(FrozenModel):
    timestamp: float
    assets_by_symbol: Dict[str, AssetMeta]
    contexts: Tuple[AssetContext, ...]

    def context_for(self, asset: AssetMeta) -> Optional[AssetContext]:
        if 0 <= asset.id < len(self.contexts):
            return self.contexts[asset.id]
        return None


# --- ordres ---

class EntryPlan(FrozenModel):
    price: float
    tif: Tif
    size: str


class LimitSpec(FrozenModel):
    tif: Tif


class TriggerSpec(FrozenModel):
    is_market: bool = True
    trigger_price: str
    tpsl: Literal["tp", "sl"]


class OrderType(FrozenModel):
    limit: Optional[LimitSpec] = None
    trigger: Optional[TriggerSpec] = None

    def to_wire(self) -> Dict[str, Any]:
        if self.limit is not None:
            return {"limit": {"tif": self.limit.tif}}
        return {"trigger": {
            "isMarket": self.trigger.is_market,
            "triggerPx": self.trigger.trigger_price,
            "tpsl": self.trigger.tpsl,
        }}


class OrderSpec(FrozenModel):
    asset_id: int
    is_buy: bool
    price: str
    size: str
    reduce_only: bool
    order_type: OrderType

    def to_wire(self) -> Dict[str, Any]:
        """Format compact attendu par l'endpoint /exchange (a, b, p, s, r, t)."""
        return {
            "a": self.asset_id,
            "b": self.is_buy,
            "p": self.price,
            "s": self.size,
            "r": self.reduce_only,
            "t": self.order_type.to_wire(),
        }


class OrderPayload(FrozenModel):
    orders: Tuple[OrderSpec, ...]
    grouping: Grouping = "na"

    @property
    def entry_orders(self) -> Tuple[OrderSpec, ...]:
        return tuple(o for o in self.orders if not o.reduce_only)

    def to_wire(self) -> Dict[str, Any]:
        return {"orders": [o.to_wire() for o in self.orders], "grouping": self.grouping}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ExecutionResult(FrozenModel):
    signal: TradeSignal
    payload: OrderPayload
    response: Dict[str, Any]


# --- métriques / risque ---

class AggregatedStats(FrozenModel):
    trades: int = 0
    successes: int = 0
    failures: int = 0
    blocked: int = 0
    win_rate: float = 0.0
    pnl_usd: float = 0.0
    positive_pnl_usd: float = 0.0
    loss_usd: float = 0.0
    gross_notional_usd: float = 0.0
    average_notional_usd: float = 0.0
    average_pnl_usd: float = 0.0
    average_risk_usd: float = 0.0
    max_risk_usd: float = 0.0
    average_leverage: float = 0.0
    max_leverage: float = 0.0
    # ordres réellement soumis (fulfilled / partial) : base des contrôles journaliers
    submitted: int = 0
    submitted_notional_usd: float = 0.0
    risk_usd: float = 0.0


class ExecutionMetrics(FrozenModel):
    totals: AggregatedStats = Field(default_factory=AggregatedStats)
    daily: AggregatedStats = Field(default_factory=AggregatedStats)
    last_execution: Optional[float] = None  # epoch secondes


class RiskViolation(FrozenModel):
    code: str
    message: str
    observed: float
    limit: float


class RiskUsage(FrozenModel):
    code: str
    observed: float
    limit: float
    ratio: float


class RiskAssessment(FrozenModel):
    allowed: bool
    violations: Tuple[RiskViolation, ...] = ()
    warnings: Tuple[RiskViolation, ...] = ()
    usage: Tuple[RiskUsage, ...] = ()
    metrics: Optional[ExecutionMetrics] = None
    mode: str = "test"
    entry_price: Optional[float] = None
    notional_usd: Optional[float] = None
    leverage: Optional[float] = None
    estimated_risk_usd: Optional[float] = None

    @property
    def codes(self) -> Tuple[str, ...]:
        return tuple(v.code for v in self.violations)
