from pairbot.adapters.exchanges.binance import BinanceExchangeAdapter

__all__ = [
    "BinanceExchangeAdapter",
]
