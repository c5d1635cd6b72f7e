from __future__ import annotations

from dataclasses import dataclass

from pairbot.core.models import SYMBOL_RE

# Longest first so "FDUSD" wins over "USD"
KNOWN_QUOTES = ("FDUSD", "USDT", "USDC", "BUSD", "TUSD", "BTC", "ETH", "BNB", "TRY", "EUR", "USD")


@dataclass
class SymbolMeta:
    instrument: str
    base: str
    quote: str | None = None

    @property
    def display(self) -> str:
        if self.quote:
            return f"{self.base}/{self.quote}"
        return self.base


def normalize_instrument(raw: object) -> str | None:
    """Trim and uppercase a model-supplied ticker; None when it is not syntactically a ticker."""
    if raw is None:
        return None
    symbol = str(raw).strip().upper()
    if not symbol or not SYMBOL_RE.fullmatch(symbol):
        return None
    return symbol


def split_pair(instrument: str) -> SymbolMeta:
    symbol = str(instrument or "").strip().upper()
    for quote in KNOWN_QUOTES:
        if symbol.endswith(quote) and len(symbol) > len(quote):
            return SymbolMeta(instrument=symbol, base=symbol[: -len(quote)], quote=quote)
    return SymbolMeta(instrument=symbol, base=symbol)
