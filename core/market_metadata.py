"""Shared market metadata and normalization helpers."""

from __future__ import annotations

import re

# User-facing aliases for common symbols.
SYMBOL_ALIASES: dict[str, str] = {
    "GOLD": "XAUUSD",
    "SILVER": "XAGUSD",
    "BTC": "BITCOIN",
    "BTCUSD": "BITCOIN",
    "ETH": "ETHEREUM",
    "ETHUSD": "ETHEREUM",
    "SP500": "US500",
    "SPX": "US500",
}

# Canonical timeframe aliases used across commands/providers.
TIMEFRAME_ALIASES: dict[str, str] = {
    "1m": "M1",
    "m1": "M1",
    "5m": "M5",
    "m5": "M5",
    "15m": "M15",
    "m15": "M15",
    "30m": "M30",
    "m30": "M30",
    "1h": "H1",
    "h1": "H1",
    "4h": "H4",
    "h4": "H4",
    "1d": "D",
    "d": "D",
    "d1": "D",
    "daily": "D",
    "1w": "W",
    "w": "W",
    "w1": "W",
    "weekly": "W",
}

SUPPORTED_TIMEFRAMES = {"M1", "M5", "M15", "M30", "H1", "H4", "D", "W"}

# Nanosecond durations for the supported timeframes.
TIMEFRAME_NS: dict[str, int] = {
    "M1": 60_000_000_000,
    "M5": 300_000_000_000,
    "M15": 900_000_000_000,
    "M30": 1_800_000_000_000,
    "H1": 3_600_000_000_000,
    "H4": 14_400_000_000_000,
    "D": 86_400_000_000_000,
    "W": 604_800_000_000_000,
}

MARKETS = ("FOREX", "CRYPTO", "STOCK")

_SYMBOL_RE = re.compile(r"^[A-Z0-9.]{2,20}$")
_METALS = ("XAU", "XAG")


def resolve_symbol_alias(raw: str) -> str:
    """Resolve user alias to canonical symbol if available."""
    key = raw.strip().upper()
    return SYMBOL_ALIASES.get(key, key)


def normalize_symbol(raw: str, *, allow_aliases: bool = True) -> str:
    """
    Normalize user input to the canonical symbol format.

    Examples:
    - eur/usd -> EURUSD
    - EUR_USD -> EURUSD
    - gold -> XAUUSD
    """
    if not raw or not raw.strip():
        raise ValueError("Symbol is required.")

    normalized = raw.strip().upper()
    for separator in ("/", "_", "-", " "):
        normalized = normalized.replace(separator, "")

    if allow_aliases:
        normalized = resolve_symbol_alias(normalized)

    if not _SYMBOL_RE.match(normalized):
        raise ValueError(f"Invalid symbol format: {raw}")

    return normalized


def normalize_timeframe(raw: str) -> str:
    """Normalize timeframe aliases to canonical form (M1/M5/M15/M30/H1/H4/D/W)."""
    if not raw or not raw.strip():
        raise ValueError("Timeframe is required.")

    key = raw.strip().lower()
    if key in TIMEFRAME_ALIASES:
        return TIMEFRAME_ALIASES[key]

    normalized = raw.strip().upper()
    if normalized in SUPPORTED_TIMEFRAMES:
        return normalized

    raise ValueError(
        f"Unsupported timeframe: {raw}. "
        "Supported aliases: 1m/m1, 5m/m5, 15m/m15, 30m/m30, 1h/h1, 4h/h4, 1d/d1, 1w/w1."
    )


def timeframe_duration_ns(timeframe: str) -> int:
    """Return the bar duration of a timeframe in nanoseconds."""
    return TIMEFRAME_NS[normalize_timeframe(timeframe)]


def normalize_market(raw: str) -> str:
    if not raw or not raw.strip():
        raise ValueError("Market is required.")
    market = raw.strip().upper()
    if market not in MARKETS:
        raise ValueError(f"Unsupported market: {raw}. Supported markets: {', '.join(MARKETS)}")
    return market


def get_instrument_class(symbol: str, market: str = "FOREX") -> str:
    """Classify a symbol for spread/precision policies."""
    market = normalize_market(market)
    if market != "FOREX":
        return market
    sym = normalize_symbol(symbol, allow_aliases=True)
    if sym.endswith("JPY"):
        return "JPY"
    if sym.startswith(_METALS):
        return "METAL"
    return "FX"


def get_pip_value(symbol: str, market: str = "FOREX") -> float:
    """Get pip size for a symbol."""
    instrument_class = get_instrument_class(symbol, market)
    if instrument_class == "FX":
        return 0.0001
    return 0.01
