from __future__ import annotations
import os
import logging
from typing import Any, Dict, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, Field

from hlsignal.services.advisor import AdviceOptions
from hlsignal.services.risk_engine import RiskLimits

logger = logging.getLogger(__name__)

CONFIG_PATH = os.environ.get("HL_CONFIG_PATH", "config/app.yaml")
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


# ---------------- Config ----------------
class RetryPolicy(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    initial_delay_sec: float = Field(default=0.25, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay_sec: float = Field(default=4.0, ge=0)


class HttpClientConfig(BaseModel):
    base_url: str
    timeout_sec: float = Field(default=5.0, gt=0)
    rate_limit_per_second: float = 4.0      # <= 0 : pas de limitation
    retry: RetryPolicy = Field(default_factory=RetryPolicy)


def _signal_api() -> HttpClientConfig:
    return HttpClientConfig(
        base_url="https://signals.hyperliquid.local/", timeout_sec=5.0, rate_limit_per_second=4,
        retry=RetryPolicy(max_attempts=3, initial_delay_sec=0.25, backoff_multiplier=2, max_delay_sec=4.0),
    )


def _info_api() -> HttpClientConfig:
    return HttpClientConfig(
        base_url="https://api.hyperliquid.xyz/", timeout_sec=7.5, rate_limit_per_second=6,
        retry=RetryPolicy(max_attempts=4, initial_delay_sec=0.2, backoff_multiplier=2, max_delay_sec=5.0),
    )


def _exchange_api() -> HttpClientConfig:
    return HttpClientConfig(
        base_url="https://api.hyperliquid.xyz/", timeout_sec=10.0, rate_limit_per_second=3,
        retry=RetryPolicy(max_attempts=4, initial_delay_sec=0.4, backoff_multiplier=2, max_delay_sec=6.0),
    )


class VenueConfig(BaseModel):
    info_api: HttpClientConfig = Field(default_factory=_info_api)
    exchange_api: HttpClientConfig = Field(default_factory=_exchange_api)
    signal_api: HttpClientConfig = Field(default_factory=_signal_api)
    api_key: Optional[str] = None
    api_secret: Optional[str] = None


class ExecutionConfig(BaseModel):
    slippage_bps: float = Field(default=50, ge=0)
    meta_refresh_interval_sec: float = Field(default=5.0, gt=0)
    meta_max_staleness_sec: float = Field(default=60.0, gt=0)
    meta_refresh_mode: Literal["blocking", "background"] = "blocking"


class NotifyConfig(BaseModel):
    webhook_url: Optional[str] = None
    timeout_sec: float = 5.0


class AppConfig(BaseModel):
    env: str = "dev"
    mode: Literal["demo", "test", "live"] = "demo"
    log_level: str = "INFO"
    venue: VenueConfig = Field(default_factory=VenueConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    risk: RiskLimits = Field(default_factory=RiskLimits)
    advice: AdviceOptions = Field(default_factory=AdviceOptions)
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    parser: Dict[str, Any] = Field(default_factory=dict)


# ---------------- Helpers ----------------
def deep_merge(a, b):
    if not isinstance(a, dict): a = {}
    if not isinstance(b, dict): b = {}
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _positive(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        v = float(raw)
    except ValueError:
        logger.warning("ignoring non numeric env value %r", raw)
        return None
    return v if v > 0 else None


# préfixe env -> section venue
_HTTP_PREFIXES = {
    "HYPERLIQUID_SIGNAL": "signal_api",
    "HYPERLIQUID_MARKET": "info_api",
    "HYPERLIQUID_ORDER": "exchange_api",
}


def _http_overrides(env: Mapping[str, str], prefix: str) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    retry: Dict[str, Any] = {}
    if env.get(f"{prefix}_BASE_URL"):
        out["base_url"] = env[f"{prefix}_BASE_URL"]
    # les variables d'env sont en ms, la config en secondes
    v = _positive(env.get(f"{prefix}_TIMEOUT_MS"))
    if v: out["timeout_sec"] = v / 1000.0
    v = _positive(env.get(f"{prefix}_RATE_LIMIT_PER_SECOND"))
    if v: out["rate_limit_per_second"] = v
    v = _positive(env.get(f"{prefix}_RETRY_MAX_ATTEMPTS"))
    if v: retry["max_attempts"] = int(v)
    v = _positive(env.get(f"{prefix}_RETRY_INITIAL_DELAY_MS"))
    if v: retry["initial_delay_sec"] = v / 1000.0
    v = _positive(env.get(f"{prefix}_RETRY_BACKOFF_MULTIPLIER"))
    if v: retry["backoff_multiplier"] = v
    v = _positive(env.get(f"{prefix}_RETRY_MAX_DELAY_MS"))
    if v: retry["max_delay_sec"] = v / 1000.0
    if retry:
        out["retry"] = retry
    return out


def env_overrides(env: Mapping[str, str]) -> Dict[str, Any]:
    """Surcharges issues de l'environnement (secrets, mode, endpoints)."""
    venue: Dict[str, Any] = {}
    for prefix, section in _HTTP_PREFIXES.items():
        http = _http_overrides(env, prefix)
        if http:
            venue[section] = http
    if env.get("HYPERLIQUID_API_KEY"):
        venue["api_key"] = env["HYPERLIQUID_API_KEY"]
    if env.get("HYPERLIQUID_API_SECRET"):
        venue["api_secret"] = env["HYPERLIQUID_API_SECRET"]

    out: Dict[str, Any] = {}
    if venue:
        out["venue"] = venue
    if env.get("HL_MODE"):
        out["mode"] = env["HL_MODE"].strip().lower()
    if env.get("HL_LOG_LEVEL"):
        out["log_level"] = env["HL_LOG_LEVEL"].strip().upper()
    slippage = _positive(env.get("HL_SLIPPAGE_BPS"))
    if slippage:
        out["execution"] = {"slippage_bps": slippage}
    if env.get("HL_WEBHOOK_URL"):
        out["notify"] = {"webhook_url": env["HL_WEBHOOK_URL"].strip()}
    return out


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """
    Défauts <- YAML (deep_merge) <- variables d'environnement.
    Un fichier absent n'est pas une erreur (on tourne sur les défauts).
    """
    env = os.environ if env is None else env
    path = path or env.get("HL_CONFIG_PATH") or CONFIG_PATH
    data: Dict[str, Any] = {}
    if path and os.path.exists(path):
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        logger.info("config loaded from %s", path)
    else:
        logger.info("no config file at %s, using defaults", path)
    data = deep_merge(data, env_overrides(env))
    cfg = AppConfig(**data)
    if cfg.mode == "live" and not cfg.venue.api_key:
        logger.warning("live mode requested without API credentials, falling back to demo")
        cfg = cfg.model_copy(update={"mode": "demo"})
    return cfg


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
