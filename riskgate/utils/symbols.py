"""
Shared symbol helpers.

Venues name the same contract differently: ``AVAX``, ``AVAX_USDT``,
``AVAX/USDT:USDT``, ``AVAXUSDT``. Loss history, cooldowns and the
protective-order ledger are keyed by base asset, so every entry point
normalises through ``normalize_to_base`` before touching the store.
"""
from __future__ import annotations

# Longest first so USDT is not mistaken for USD + "T"
_QUOTE_SUFFIXES = ("USDT", "USDC", "USD")


def normalize_symbol_for_match(symbol: str) -> str:
    """
    Canonical form for "same contract" comparison across formats.

    AVAX/USDT, AVAX/USDT:USDT, AVAX_USDT, avax-usdt -> AVAXUSDT.
    """
    if not symbol:
        return ""
    s = str(symbol).upper().strip()
    s = s.split(":")[0]
    s = s.replace("/", "").replace("-", "").replace("_", "")
    return s


def normalize_to_base(symbol: str) -> str:
    """
    Extract the base asset name from any symbol format.

    AVAX, AVAX_USDT, AVAX/USDT:USDT, AVAXUSDT -> AVAX.  BTC/USD -> BTC.

    A bare quote asset (``USDT``) is returned unchanged rather than
    collapsing to an empty string.
    """
    s = normalize_symbol_for_match(symbol)
    for quote in _QUOTE_SUFFIXES:
        if s.endswith(quote) and len(s) > len(quote):
            return s[: -len(quote)]
    return s
