from __future__ import annotations
from typing import Optional


class SignalBotError(Exception):
    """Base de toutes les erreurs du bot."""


class ParseError(SignalBotError, ValueError):
    """Texte de signal illisible (à faire reformuler par l'appelant)."""


class UnknownSymbolError(SignalBotError):
    def __init__(self, symbol: str):
        super().__init__(f'Symbol "{symbol}" is not available on the venue')
        self.symbol = symbol


class StaleMetadataError(SignalBotError):
    """Métadonnées venue absentes, périmées ou incohérentes (mid manquant, etc.)."""


class AllocationError(SignalBotError):
    """Précision de l'actif trop grossière pour représenter la répartition demandée."""


class OrderConstructionError(SignalBotError):
    pass


class TransportError(SignalBotError):
    def __init__(self, message: str, status: Optional[int] = None, attempts: int = 0, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.attempts = attempts
        self.body = body


class OrderRejectedError(SignalBotError):
    def __init__(self, message: str, response: Optional[dict] = None):
        super().__init__(message)
        self.response = response
