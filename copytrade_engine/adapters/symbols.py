"""
Exchange Adapter - Symbol Normalization.

============================================================
PURPOSE
============================================================
Every symbol inside the engine is canonical:

    BASE/QUOTE          spot style        BTC/USD
    BASE/QUOTE:SETTLE   perpetual style   BTC/USDT:USDT

Accepted input formats:
- BTC-USDT, BTC_USDT, btc-usdt
- BTCUSDT (split on known quote suffixes)
- BTC-USDT-SWAP, BTCUSDT.P, BTCUSDTPERP (perpetuals)
- Canonical input (returned unchanged)

Anything that cannot be split (stock tickers, broker epics) is
upper-cased and otherwise left alone. normalize_symbol is
idempotent.

============================================================
"""

from typing import Optional, Tuple


# Longest first so USDT wins over USD
KNOWN_QUOTES: Tuple[str, ...] = (
    "FDUSD",
    "USDT",
    "USDC",
    "BUSD",
    "TUSD",
    "USD",
    "EUR",
    "GBP",
    "BTC",
    "ETH",
)

PERPETUAL_SUFFIXES: Tuple[str, ...] = (".P", "-SWAP", "_SWAP", "-PERP", "_PERP", "PERP")


def _split_concatenated(token: str) -> Optional[Tuple[str, str]]:
    for quote in KNOWN_QUOTES:
        if token.endswith(quote):
            base = token[: -len(quote)]
            if len(base) >= 2 and base.isalnum():
                return base, quote
    return None


def _split_pair(token: str) -> Optional[Tuple[str, str]]:
    for separator in ("-", "_"):
        if separator in token:
            parts = token.split(separator)
            if len(parts) == 2 and all(parts):
                return parts[0], parts[1]
            return None
    return _split_concatenated(token)


def normalize_symbol(symbol: str) -> str:
    """
    Convert any supported symbol format to canonical form.

    Examples:
        BTCUSDT        -> BTC/USDT
        BTC-USD        -> BTC/USD
        BTC-USDT-SWAP  -> BTC/USDT:USDT
        BTCUSDT.P      -> BTC/USDT:USDT
        AAPL           -> AAPL
    """
    token = symbol.strip().upper()
    if not token or "/" in token:
        return token

    perpetual = False
    for suffix in PERPETUAL_SUFFIXES:
        if token.endswith(suffix) and len(token) > len(suffix):
            candidate = token[: -len(suffix)]
            if _split_pair(candidate):
                token = candidate
                perpetual = True
                break

    pair = _split_pair(token)
    if pair is None:
        return token

    base, quote = pair
    if perpetual:
        return f"{base}/{quote}:{quote}"
    return f"{base}/{quote}"


def split_symbol(symbol: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Return (base, quote, settle) for a symbol in any accepted format."""
    canonical = normalize_symbol(symbol)
    if "/" not in canonical:
        return canonical, None, None
    pair, _, settle = canonical.partition(":")
    base, _, quote = pair.partition("/")
    return base, quote, settle or None


def base_asset(symbol: str) -> str:
    return split_symbol(symbol)[0]


def to_dashed(symbol: str) -> str:
    """BTC/USD -> BTC-USD. Unsplittable symbols are returned unchanged."""
    base, quote, _ = split_symbol(symbol)
    return f"{base}-{quote}" if quote else base


def to_concatenated(symbol: str) -> str:
    """BTC/USDT:USDT -> BTCUSDT. Unsplittable symbols are returned unchanged."""
    base, quote, _ = split_symbol(symbol)
    return f"{base}{quote}" if quote else base


def is_perpetual(symbol: str) -> bool:
    return split_symbol(symbol)[2] is not None
