from __future__ import annotations
import re
from typing import List, Dict, Any, Optional, Tuple, NamedTuple

from pydantic import ValidationError

from hlsignal.common.errors import ParseError
from hlsignal.common.models import Distance, EntryStrategy, PriceLevel, TradeSignal

# --- tables de mots-clés ---

class ParserConfig(dict):
    """
    Tables du parseur (mots à ignorer pour deviner le symbole, suffixes, alias...).
    Surchargeable via le bloc `parser:` de config/app.yaml.
    """
    DEFAULTS = {
        "value_keywords": [
            "size", "qty", "quantity", "amount", "volume",
            "entry", "price", "stop", "sl", "loss", "stoploss",
            "take", "profit", "tp", "target", "at",
            "leverage", "lev", "market", "limit",
            "grid", "trail", "trailing",
            "risk", "timeframe", "tf",
        ],
        "symbol_suffixes": ["PERPETUAL", "PERP", "USDT", "USD", "SPOT"],
        "symbol_aliases": {"XBT": "BTC"},
        "risk_aliases": {
            "low": "low", "safe": "low", "conservative": "low",
            "medium": "medium", "mid": "medium", "moderate": "medium", "normal": "medium",
            "high": "high", "aggressive": "high",
            "extreme": "extreme", "degen": "extreme", "ultra": "extreme",
        },
        "timeframe_keywords": ["scalp", "intraday", "swing", "position"],
        "timeframe_aliases": {"hourly": "1h", "daily": "1d", "weekly": "1w"},
        "level_window": 120,             # nb max de caractères lus après un label tp/sl
    }

    def __init__(self, **kwargs):
        d = dict(self.DEFAULTS)
        d.update(kwargs or {})
        super().__init__(d)

    def skip_words(self) -> set:
        words = {w.lower() for w in self["value_keywords"]}
        words.update(w.lower() for w in self["risk_aliases"])
        words.update(w.lower() for w in self["timeframe_keywords"])
        words.update(w.lower() for w in self["timeframe_aliases"])
        words.update(("long", "short", "buy", "sell"))
        return words


# --- petites utils ---

NUM = r"-?(?:\d{1,3}(?:,\d{3})+(?!\d)|\d+)(?:[.,]\d+)?"
PERCENT = r"(?:%|pct\b|percent\b)"

_SPLIT_RE = re.compile(r"[\s;]+|(?<!\d),|,(?!\d)")
_EDGE_RE = re.compile(r"^[^A-Za-z0-9@]+|[^A-Za-z0-9@]+$")
_THOUSANDS_RE = re.compile(r"-?\d{1,3}(?:,\d{3})+(?:\.\d+)?")
_PLAIN_NUM_RE = re.compile(r"-?\d+(?:\.\d+)?")
_LEVEL_LABEL_RE = re.compile(r"^(?:tp|sl|stop|stoploss|target)\d*$")
_TIMEFRAME_RE = re.compile(r"^(\d+)(m|mins?|minutes?|h|hrs?|hours?|d|days?|w|wks?|weeks?)$")

SIZE_PATTERNS = [
    re.compile(rf"\b(?:size|qty|quantity|amount|volume)\b\s*[=:]?\s*\$?\s*({NUM})", re.I),
]
ENTRY_PATTERNS = [
    re.compile(rf"\bentry(?:\s+price)?\b\s*[=:@]?\s*\$?\s*({NUM})", re.I),
    re.compile(rf"\bprice\b\s*[=:]?\s*\$?\s*({NUM})", re.I),
    re.compile(rf"(?:^|\s)@\s*\$?\s*({NUM})", re.I),
]
LEVERAGE_PATTERNS = [
    re.compile(rf"\b(?:leverage|lev)\b\s*[=:]?\s*({NUM})", re.I),
    re.compile(rf"(?<![\w.,])({NUM})\s*x\b", re.I),
]

# stratégies: excisées du texte avant toute autre extraction numérique
TRAILING_ENTRY_RE = re.compile(
    rf"\btrail(?:ing)?[\s-]*entr(?:y|ies)\b\s*[=:]?\s*(?P<levels>-?\d+)\s+\$?(?P<value>{NUM})\s*(?P<unit>{PERCENT})?", re.I)
GRID_RE = re.compile(
    rf"\bgrid\b\s*[=:]?\s*(?P<levels>-?\d+)\s+\$?(?P<value>{NUM})\s*(?P<unit>{PERCENT})?", re.I)
TRAILING_STOP_RE = re.compile(
    rf"\btrail(?:ing)?[\s-]*(?:stop(?:[\s-]*loss)?|sl)\b\s*[=:]?\s*\$?(?P<value>{NUM})\s*(?P<unit>{PERCENT})?", re.I)

# alternances: la plus longue d'abord
TP_LABEL_RE = re.compile(r"\b(?:take[\s-]*profit|target|tp)(?P<num>\d*)\b", re.I)
SL_LABEL_RE = re.compile(r"\b(?:stop[\s-]*loss|stoploss|stop|sl)(?P<num>\d*)\b", re.I)
LEVEL_VALUE_RE = re.compile(
    rf"^\s*(?:[=:@]|at\b)?\s*\$?\s*(?P<price>{NUM})"
    rf"(?:\s*\(?\s*(?P<pct>{NUM})\s*{PERCENT}\s*\)?)?", re.I)

RISK_PATTERNS = [
    re.compile(r"\brisk\b\s*[=:]?\s*(?P<word>[a-z]+)", re.I),
    re.compile(r"\b(?P<word>[a-z]+)\s+risk\b", re.I),
]


class Token(NamedTuple):
    raw: str
    clean: str


def tokenize(text: str) -> List[Token]:
    out: List[Token] = []
    for piece in _SPLIT_RE.split(text):
        if not piece:
            continue
        clean = _EDGE_RE.sub("", piece)
        if clean:
            out.append(Token(piece, clean))
    return out


def parse_number(raw: str) -> Optional[float]:
    """'63,000' -> 63000 ; '140,2' -> 140.2 ; '$2.40' -> 2.4 ; sinon None."""
    s = raw.strip().lstrip("$").replace(" ", "")
    if _THOUSANDS_RE.fullmatch(s):
        s = s.replace(",", "")
    else:
        s = s.replace(",", ".")
    if not _PLAIN_NUM_RE.fullmatch(s):
        return None
    return float(s)


def normalize_symbol(raw: str, cfg: Optional[ParserConfig] = None) -> str:
    cfg = cfg or ParserConfig()
    symbol = re.sub(r"[^A-Z0-9]", "", (raw or "").strip().upper())
    for suffix in cfg["symbol_suffixes"]:
        # jamais jusqu'à la chaîne vide ("USD" reste "USD")
        if symbol.endswith(suffix) and len(symbol) > len(suffix):
            symbol = symbol[: -len(suffix)]
    return cfg["symbol_aliases"].get(symbol, symbol)


def _is_url_like(token: Token) -> bool:
    low = token.raw.lower()
    return "://" in low or low.startswith("www.") or "/" in low


def _is_label(word: str) -> bool:
    return bool(_LEVEL_LABEL_RE.match(word))


# --- extracteurs ---

def find_side(tokens: List[Token]) -> Tuple[str, int]:
    for i, tok in enumerate(tokens):
        low = tok.clean.lower()
        if low in ("long", "buy"):
            return "long", i
        if low in ("short", "sell"):
            return "short", i
    raise ParseError("Signal side (long/short) is missing")


def extract_symbol(tokens: List[Token], side_index: int, cfg: ParserConfig) -> str:
    """
    Symbole = premier candidat après le side. On préfère un token tout en majuscules
    tant qu'aucun nombre n'a été vu (au-delà, on est dans les valeurs du signal).
    """
    skip = cfg.skip_words()
    candidates: List[str] = []
    caps: Optional[str] = None
    for tok in tokens[side_index + 1:]:
        word = tok.clean
        low = word.lower()
        if parse_number(word) is not None:
            if candidates:
                break
            continue
        if low in skip or _is_label(low):
            continue
        if word[0].isdigit() or word[0] == "@":
            continue
        if "=" in word or ":" in word or _is_url_like(tok):
            continue
        candidates.append(word)
        if caps is None and len(word) >= 2 and word.isalnum() and word.isupper():
            caps = word
    if caps:
        return caps
    if candidates:
        return candidates[0]
    raise ParseError("Trading symbol could not be detected")


def extract_keyword_number(text: str, patterns: List[re.Pattern]) -> Optional[float]:
    for pattern in patterns:
        m = pattern.search(text)
        if m:
            value = parse_number(m.group(m.lastindex or 1))
            if value is not None:
                return value
    return None


def _distance(m: re.Match) -> Distance:
    value = parse_number(m.group("value"))
    if value is None or value <= 0:
        raise ParseError(f'Distance must be positive in "{m.group(0).strip()}"')
    mode = "percent" if m.group("unit") else "absolute"
    return Distance(mode=mode, value=value)


def _levels(m: re.Match) -> int:
    levels = int(m.group("levels"))
    if levels <= 0:
        raise ParseError(f'Level count must be positive in "{m.group(0).strip()}"')
    return levels


def _excise(text: str, m: re.Match) -> str:
    return text[: m.start()] + " " + text[m.end():]


def extract_strategies(text: str) -> Tuple[str, EntryStrategy, Optional[Distance]]:
    """
    Repère trailing entry / grid / trailing stop et retire leur span du texte de travail,
    pour qu'une distance de trailing ne soit jamais relue comme un prix de stop.
    """
    working = text
    trail_entry = TRAILING_ENTRY_RE.search(working)
    if trail_entry:
        working = _excise(working, trail_entry)
    grid = GRID_RE.search(working)
    if grid:
        working = _excise(working, grid)
    if trail_entry and grid:
        raise ParseError("Only one of grid or trailing entry may be specified")

    strategy = EntryStrategy.single()
    if trail_entry:
        strategy = EntryStrategy.trailing(_levels(trail_entry), _distance(trail_entry))
    elif grid:
        strategy = EntryStrategy.grid(_levels(grid), _distance(grid))

    trailing_stop = None
    ts = TRAILING_STOP_RE.search(working)
    if ts:
        trailing_stop = _distance(ts)
        working = _excise(working, ts)
    return working, strategy, trailing_stop


def extract_levels(text: str, label_re: re.Pattern, prefix: str, cfg: ParserConfig) -> List[PriceLevel]:
    """Liste ordonnée de niveaux (prix + fraction optionnelle) pour un type de label."""
    window = int(cfg["level_window"])
    out: List[PriceLevel] = []
    seen = set()
    for m in label_re.finditer(text):
        chunk = text[m.end(): m.end() + window].split("\n", 1)[0]
        vm = LEVEL_VALUE_RE.match(chunk)
        if not vm:
            continue
        price = parse_number(vm.group("price"))
        if price is None or price <= 0:
            continue
        fraction = None
        if vm.group("pct"):
            pct = parse_number(vm.group("pct"))
            if pct is not None and 0 < pct <= 100:
                fraction = round(pct / 100.0, 10)
        label = f"{prefix}{m.group('num')}"
        key = (label, price, fraction)
        if key in seen:
            continue
        seen.add(key)
        out.append(PriceLevel(price=price, size_fraction=fraction, label=label))
    return out


def extract_size(text: str, tokens: List[Token], side_index: int, cfg: ParserConfig) -> Tuple[Optional[float], Optional[float]]:
    """
    Taille via mot-clé (size/qty/amount...), sinon premier nombre "nu" après le side.
    Retourne (size, entry_depuis_@) : un @prix croisé pendant le scan sert d'entrée.
    """
    size = extract_keyword_number(text, SIZE_PATTERNS)
    if size is not None:
        return size, None

    skip = cfg.skip_words()
    at_entry = None
    prev = ""
    for tok in tokens[side_index + 1:]:
        word = tok.clean
        if word.startswith("@"):
            if len(word) > 1 and at_entry is None:
                at_entry = parse_number(word[1:])
            prev = "@"
            continue
        value = parse_number(word)
        anchored = prev in skip or _is_label(prev) or prev == "@"
        prev = word.lower()
        if value is None or anchored or tok.raw.rstrip(")").endswith("%"):
            continue
        return value, at_entry
    return None, at_entry


def extract_risk_label(text: str, cfg: ParserConfig) -> Optional[str]:
    aliases = cfg["risk_aliases"]
    for pattern in RISK_PATTERNS:
        for m in pattern.finditer(text):
            label = aliases.get(m.group("word").lower())
            if label:
                return label
    return None


def extract_timeframe_hints(tokens: List[Token], cfg: ParserConfig) -> Tuple[str, ...]:
    keywords = {k.lower() for k in cfg["timeframe_keywords"]}
    aliases = cfg["timeframe_aliases"]
    hints: List[str] = []
    for tok in tokens:
        low = tok.clean.lower()
        hint = None
        m = _TIMEFRAME_RE.match(low)
        if m and int(m.group(1)) > 0:
            hint = f"{int(m.group(1))}{m.group(2)[0]}"
        elif low in keywords:
            hint = low
        elif low in aliases:
            hint = aliases[low]
        if hint and hint not in hints:
            hints.append(hint)
    return tuple(hints)


def _resolve_execution(text: str, entry_price: Optional[float]) -> str:
    has_market = re.search(r"\bmarket\b", text, re.I) is not None
    has_limit = re.search(r"\blimit\b", text, re.I) is not None
    execution = "limit"
    if has_market and not has_limit:
        execution = "market"
    elif not has_market and not has_limit and entry_price is None:
        execution = "market"
    if execution == "limit" and entry_price is None:
        execution = "market"
    return execution


# --- point d'entrée ---

def parse_trade_signal(text: str, cfg: Optional[ParserConfig] = None) -> TradeSignal:
    """
    Texte libre -> TradeSignal validé. Lève ParseError si le side, le symbole,
    la taille, les TP ou la protection (stop ou trailing stop) manquent.
    """
    cfg = cfg or ParserConfig()
    trimmed = (text or "").strip()
    if not trimmed:
        raise ParseError("Signal text is empty")

    tokens = tokenize(trimmed)
    if not tokens:
        raise ParseError("Signal does not contain recognizable tokens")

    side, side_index = find_side(tokens)
    raw_symbol = extract_symbol(tokens, side_index, cfg)
    symbol = normalize_symbol(raw_symbol, cfg)
    if not symbol:
        raise ParseError(f'Invalid trading symbol "{raw_symbol}"')

    working, entry_strategy, trailing_stop = extract_strategies(trimmed)
    work_tokens = tokenize(working)
    try:
        _, work_side_index = find_side(work_tokens)
    except ParseError:
        work_side_index = -1

    entry_price = extract_keyword_number(working, ENTRY_PATTERNS)
    size, at_entry = extract_size(working, work_tokens, work_side_index, cfg)
    if entry_price is None:
        entry_price = at_entry
    if size is None or size <= 0:
        raise ParseError("Position size is missing or invalid")
    if entry_price is not None and entry_price <= 0:
        raise ParseError("Entry price must be positive")

    stop_losses = extract_levels(working, SL_LABEL_RE, "sl", cfg)
    take_profits = extract_levels(working, TP_LABEL_RE, "tp", cfg)
    if not stop_losses and trailing_stop is None:
        raise ParseError("Stop loss is required")
    if not take_profits:
        raise ParseError("At least one take profit is required")

    leverage = extract_keyword_number(working, LEVERAGE_PATTERNS)
    if leverage is not None and leverage <= 0:
        leverage = None

    try:
        return TradeSignal(
            side=side,
            symbol=symbol,
            raw_symbol=raw_symbol,
            size=size,
            entry_price=entry_price,
            stop_losses=tuple(stop_losses),
            take_profits=tuple(take_profits),
            leverage=leverage,
            execution=_resolve_execution(working, entry_price),
            trailing_stop=trailing_stop,
            entry_strategy=entry_strategy,
            risk_label=extract_risk_label(working, cfg),
            timeframe_hints=extract_timeframe_hints(tokens, cfg),
            text=trimmed,
        )
    except ValidationError as e:
        raise ParseError(f"Invalid signal: {e.errors()[0].get('msg')}") from e


def signal_summary(signal: TradeSignal) -> Dict[str, Any]:
    """Résumé court (logs / notifications)."""
    return {
        "side": signal.side,
        "symbol": signal.symbol,
        "size": signal.size,
        "entry": signal.entry_price,
        "execution": signal.execution,
        "strategy": signal.entry_strategy.type,
        "tps": [tp.price for tp in signal.take_profits],
        "sls": [sl.price for sl in signal.stop_losses],
    }
