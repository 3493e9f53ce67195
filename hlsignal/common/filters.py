from __future__ import annotations
from typing import List, Optional, Sequence
from decimal import Decimal, ROUND_HALF_UP, ROUND_FLOOR, InvalidOperation, getcontext

from hlsignal.common.errors import AllocationError, OrderConstructionError

# précision suffisante pour éviter les artefacts binaires
getcontext().prec = 40

PRICE_DECIMALS = 6
# poids des fractions en virgule fixe (1e-9 près), tout le partage se fait en entiers
WEIGHT_SCALE = 10 ** 9


def _dec(value) -> Decimal:
    try:
        d = Decimal(str(value))
    except InvalidOperation:
        raise OrderConstructionError(f"Invalid numeric value {value!r}")
    if not d.is_finite():
        raise OrderConstructionError(f"Invalid numeric value {value!r}")
    return d


def _plain(d: Decimal) -> str:
    # string fixe, sans expo, sans trailing zeros inutiles
    s = format(d.normalize(), "f")
    return s if s else "0"


def format_price(value: float) -> str:
    """Prix arrondi à 6 décimales, zéros de fin retirés. Doit rester > 0."""
    q = _dec(value).quantize(Decimal(1).scaleb(-PRICE_DECIMALS), rounding=ROUND_HALF_UP)
    if q <= 0:
        raise OrderConstructionError(f"Price must be positive (got {value!r})")
    return _plain(q)


def format_size(value: float, decimals: int) -> str:
    """Taille arrondie à la précision de l'actif (szDecimals), zéros de fin retirés."""
    q = _dec(value).quantize(Decimal(1).scaleb(-int(decimals)), rounding=ROUND_HALF_UP)
    if q <= 0:
        raise OrderConstructionError(f"Size must be positive at {decimals} decimals (got {value!r})")
    return _plain(q)


# ---------- unités de précision

def to_units(size: float, decimals: int) -> int:
    """Convertit une taille en unités entières (size * 10^decimals, arrondi half-up)."""
    q = (_dec(size).scaleb(int(decimals))).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return int(q)


def units_to_str(units: int, decimals: int) -> str:
    if units <= 0:
        raise OrderConstructionError("Size must be positive")
    return _plain(Decimal(int(units)).scaleb(-int(decimals)))


def _weight(fraction: float) -> int:
    return int((_dec(fraction) * WEIGHT_SCALE).to_integral_value(rounding=ROUND_FLOOR))


def _weights(fractions: Sequence[Optional[float]]) -> List[int]:
    n = len(fractions)
    specified = [f for f in fractions if f is not None]
    if not specified:
        return [1] * n
    if len(specified) == n:
        # toutes renseignées: proportionnel (sur- ou sous-spécifié -> rééchelonné)
        return [_weight(f) for f in fractions]

    # partiel: les slots libres se partagent le reste à parts égales.
    # On multiplie les poids connus par k (nb de slots libres) pour rester en entiers.
    k = n - len(specified)
    known = sum(_weight(f) for f in specified)
    remaining = WEIGHT_SCALE - known
    if remaining > 0:
        return [_weight(f) * k if f is not None else remaining for f in fractions]
    # plus rien à répartir: chaque slot libre pèse 1/n
    return [_weight(f) * n if f is not None else WEIGHT_SCALE for f in fractions]


def allocate_units(total_units: int, fractions: Sequence[Optional[float]]) -> List[int]:
    """
    Répartit exactement `total_units` entre les slots selon les fractions demandées.
      - aucune fraction : parts égales
      - toutes          : proportionnel
      - partielles      : le reste est partagé entre les slots sans fraction
    Plancher de chaque part, puis les unités restantes vont une par une aux plus
    gros restes (égalité -> ordre du tableau). La somme vaut toujours total_units.
    """
    n = len(fractions)
    if n == 0:
        return []
    if total_units <= 0:
        raise AllocationError("Total size rounds to zero at asset precision")

    weights = _weights(fractions)
    total_weight = sum(weights)
    if total_weight <= 0:
        raise AllocationError("Allocation weights must be positive")

    shares: List[int] = []
    remainders: List[int] = []
    for w in weights:
        q, r = divmod(total_units * w, total_weight)
        shares.append(q)
        remainders.append(r)

    leftover = total_units - sum(shares)
    order = sorted(range(n), key=lambda i: (-remainders[i], i))
    for i in order[:leftover]:
        shares[i] += 1

    if any(s <= 0 for s in shares):
        raise AllocationError(
            f"Cannot split {total_units} precision units across {n} orders without an empty slice"
        )
    return shares


def allocate_sizes(size: float, fractions: Sequence[Optional[float]], decimals: int) -> List[str]:
    """Répartition exacte d'une taille en strings formatées à la précision de l'actif."""
    units = to_units(size, decimals)
    return [units_to_str(u, decimals) for u in allocate_units(units, fractions)]
