from __future__ import annotations
import time
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import httpx

from hlsignal.common.errors import OrderRejectedError, TransportError
from hlsignal.common.models import AssetContext, AssetMeta, OrderPayload
from hlsignal.services.config import VenueConfig
from hlsignal.services.transport import MetricsRecorder, RetryingHttpClient

logger = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json"}

# signe l'action avant envoi: (action, nonce) -> champs à fusionner dans le corps (signature, vaultAddress...)
Signer = Callable[[Dict[str, Any], int], Awaitable[Dict[str, Any]]]


def _auth_headers(api_key: Optional[str], api_secret: Optional[str]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    if api_key:
        headers["X-API-KEY"] = api_key
    if api_secret:
        headers["X-API-SECRET"] = api_secret
    return headers


def _now_ms() -> int:
    return int(time.time() * 1000)


class InfoClient:
    """Endpoint public /info (univers et contextes d'actifs)."""

    def __init__(self, http: RetryingHttpClient):
        self.http = http

    async def _info(self, body: Dict[str, Any]) -> Any:
        return await self.http.post("info", headers=JSON_HEADERS, json=body)

    async def meta_and_asset_ctxs(self) -> Tuple[List[AssetMeta], List[AssetContext]]:
        """Retourne (univers, contextes) ; l'index dans l'univers est l'asset id."""
        data = await self._info({"type": "metaAndAssetCtxs"})
        if not isinstance(data, list) or len(data) < 2:
            raise TransportError("Malformed metaAndAssetCtxs response")
        universe = self._universe(data[0])
        contexts = [AssetContext.model_validate(c or {}) for c in data[1]]
        return universe, contexts

    @staticmethod
    def _universe(meta: Dict[str, Any]) -> List[AssetMeta]:
        out: List[AssetMeta] = []
        for idx, item in enumerate((meta or {}).get("universe", [])):
            out.append(AssetMeta(
                id=idx,
                name=item["name"],
                size_decimals=int(item.get("szDecimals", 0)),
                max_leverage=item.get("maxLeverage"),
            ))
        return out


class ExchangeClient:
    """Endpoint /exchange (ordres). Les clés API partent en headers, la signature via `signer`."""

    def __init__(self, http: RetryingHttpClient, api_key: Optional[str] = None,
                 api_secret: Optional[str] = None, signer: Optional[Signer] = None):
        self.http = http
        self.api_key = api_key
        self.api_secret = api_secret
        self.signer = signer

    async def order(self, payload: OrderPayload) -> Dict[str, Any]:
        action = {"type": "order", **payload.to_wire()}
        nonce = _now_ms()
        body: Dict[str, Any] = {"action": action, "nonce": nonce}
        if self.signer is not None:
            body.update(await self.signer(action, nonce))
        headers = {**JSON_HEADERS, **_auth_headers(self.api_key, self.api_secret)}
        response = await self.http.post("exchange", headers=headers, json=body)
        if not isinstance(response, dict) or response.get("status") != "ok":
            logger.error("order rejected by venue: %s", response)
            raise OrderRejectedError(f"Order rejected: {response!r}", response if isinstance(response, dict) else None)
        return response


class SignalFeedClient:
    """Flux de signaux externe (auth Bearer)."""

    def __init__(self, http: RetryingHttpClient, api_key: Optional[str] = None):
        self.http = http
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    async def fetch_signals(self, limit: Optional[int] = None, since: Optional[str] = None) -> List[Dict[str, Any]]:
        return await self.http.get("signals", headers=self._headers(), params={"limit": limit, "since": since})

    async def acknowledge(self, signal_id: str) -> Dict[str, Any]:
        if not signal_id:
            raise ValueError("Signal identifier is required")
        return await self.http.post(
            f"signals/{signal_id}/ack",
            headers={**JSON_HEADERS, **self._headers()},
            json={"id": signal_id},
        )


class VenueClients:
    def __init__(self, info: InfoClient, exchange: ExchangeClient, signals: SignalFeedClient,
                 owned_client: Optional[httpx.AsyncClient] = None):
        self.info = info
        self.exchange = exchange
        self.signals = signals
        self._owned_client = owned_client

    async def aclose(self) -> None:
        for http in (self.info.http, self.exchange.http, self.signals.http):
            await http.aclose()
        if self._owned_client is not None:
            await self._owned_client.aclose()


def create_venue_clients(
    config: VenueConfig,
    metrics: Optional[MetricsRecorder] = None,
    client: Optional[httpx.AsyncClient] = None,
    signer: Optional[Signer] = None,
) -> VenueClients:
    """
    Un RetryingHttpClient par API (chacune son rate limit et sa politique de retry),
    tous sur le même httpx.AsyncClient. Créé ici si absent, il est fermé par VenueClients.aclose().
    """
    owned = None
    if client is None:
        client = owned = httpx.AsyncClient()
    info_http = RetryingHttpClient(config.info_api, client=client, metrics=metrics, name="info")
    exchange_http = RetryingHttpClient(config.exchange_api, client=client, metrics=metrics, name="exchange")
    signal_http = RetryingHttpClient(config.signal_api, client=client, metrics=metrics, name="signal")
    return VenueClients(
        info=InfoClient(info_http),
        exchange=ExchangeClient(exchange_http, config.api_key, config.api_secret, signer=signer),
        signals=SignalFeedClient(signal_http, config.api_key),
        owned_client=owned,
    )
