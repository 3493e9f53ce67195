# hlsignal/services/notify.py
from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

Severity = Literal["info", "warning", "critical"]
EventType = Literal["risk-guard", "exchange-error", "execution", "telemetry"]

_LOG_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "critical": logging.ERROR}


class NotificationEvent(BaseModel):
    type: EventType
    severity: Severity = "info"
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class NotificationService:
    """
    Notifications d'exécution:
      - toujours un log (niveau selon la sévérité),
      - POST JSON vers le webhook si configuré.
    Un échec de livraison est loggé, jamais propagé.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout_sec: float = 5.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = (webhook_url or "").strip() or None
        self.timeout_sec = timeout_sec
        self._client = client

    async def notify(self, event: NotificationEvent) -> None:
        logger.log(_LOG_LEVELS[event.severity], "[%s] %s %s", event.type, event.message, event.details or "")
        if not self.webhook_url:
            return
        body = {**event.model_dump(mode="json"), "timestamp": datetime.now(timezone.utc).isoformat()}
        try:
            await self._post(body)
        except (httpx.HTTPError, RuntimeError) as e:
            logger.warning("webhook delivery failed: %r", e)

    async def _post(self, body: Dict[str, Any]) -> None:
        if self._client is not None:
            await self._send(self._client, body)
            return
        async with httpx.AsyncClient(timeout=self.timeout_sec) as cli:
            await self._send(cli, body)

    async def _send(self, cli: httpx.AsyncClient, body: Dict[str, Any]) -> None:
        r = await cli.post(self.webhook_url, json=body, timeout=self.timeout_sec)
        if r.status_code == 429:
            try:
                data = r.json()
            except ValueError:
                data = {}
            retry = float(data.get("retry_after", 1.5)) if isinstance(data, dict) else 1.5
            logger.info("webhook rate limited, retry_after=%ss", retry)
            await asyncio.sleep(min(retry, self.timeout_sec))
            r = await cli.post(self.webhook_url, json=body, timeout=self.timeout_sec)
        if r.status_code >= 400:
            raise RuntimeError(f"webhook HTTP {r.status_code}: {r.text[:200]}")
