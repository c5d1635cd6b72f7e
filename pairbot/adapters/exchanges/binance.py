from __future__ import annotations

import asyncio
import logging

from pairbot.adapters.exchanges.utils import check_intervals, kline_row_to_candle
from pairbot.core.errors import AnalysisError, UpstreamError
from pairbot.core.http import ResilientHTTPClient
from pairbot.core.models import MarketType

logger = logging.getLogger(__name__)


class BinanceExchangeAdapter:
    """Catalog, existence probe and kline source over the public Binance REST API."""

    name = "binance"
    label = "Binance"

    def __init__(
        self,
        http: ResilientHTTPClient,
        spot_base_url: str,
        futures_base_url: str,
        catalog_timeout_sec: float = 10.0,
        probe_timeout_sec: float = 3.0,
        kline_timeout_sec: float = 10.0,
    ) -> None:
        self.http = http
        self.spot_base_url = spot_base_url.rstrip("/")
        self.futures_base_url = futures_base_url.rstrip("/")
        self.catalog_timeout_sec = float(catalog_timeout_sec)
        self.probe_timeout_sec = float(probe_timeout_sec)
        self.kline_timeout_sec = float(kline_timeout_sec)

    def _endpoint(self, market_type: MarketType, path: str) -> str:
        if market_type is MarketType.SPOT:
            return f"{self.spot_base_url}/api/v3/{path}"
        return f"{self.futures_base_url}/fapi/v1/{path}"

    async def list_tradable_symbols(self, market_type: MarketType) -> set[str]:
        data = await self.http.get_json(
            self._endpoint(market_type, "exchangeInfo"),
            timeout=self.catalog_timeout_sec,
        )
        out: set[str] = set()
        for row in data.get("symbols", []):
            if row.get("status") != "TRADING":
                continue
            symbol = str(row.get("symbol", "")).upper()
            if symbol:
                out.add(symbol)
        logger.debug(
            "catalog_fetched",
            extra={"event": "catalog_fetched", "market_type": market_type.value, "count": len(out)},
        )
        return out

    async def probe_existence(self, symbol: str, market_type: MarketType) -> bool:
        rows = await self.http.get_json(
            self._endpoint(market_type, "klines"),
            params={"symbol": symbol.upper(), "interval": "1h", "limit": 1},
            timeout=self.probe_timeout_sec,
            retries=0,
        )
        return isinstance(rows, list) and len(rows) > 0

    async def get_klines(self, symbol: str, market_type: MarketType, interval: str, limit: int = 100) -> list[dict]:
        try:
            rows = await self.http.get_json(
                self._endpoint(market_type, "klines"),
                params={"symbol": symbol.upper(), "interval": interval, "limit": max(1, min(int(limit), 1000))},
                timeout=self.kline_timeout_sec,
            )
        except UpstreamError as exc:
            detail = exc.detail or ""
            if exc.status_code == 400 and "Invalid symbol" in detail:
                raise AnalysisError(f"Invalid symbol: {symbol}", "INVALID_SYMBOL", {"symbol": symbol}) from exc
            if exc.status_code == 429:
                raise AnalysisError("Binance rate limit hit", "RATE_LIMIT", {"symbol": symbol}) from exc
            raise AnalysisError(
                f"Binance kline request failed: {exc}",
                "BINANCE_API_ERROR",
                {"symbol": symbol, "interval": interval},
            ) from exc
        return [kline_row_to_candle(row) for row in rows]

    async def fetch_series(
        self,
        symbol: str,
        market_type: MarketType,
        intervals: list[str],
        limit: int = 100,
    ) -> dict[str, list[dict]]:
        check_intervals(intervals)
        results = await asyncio.gather(
            *(self.get_klines(symbol, market_type, tf, limit) for tf in intervals)
        )
        series = dict(zip(intervals, results))
        logger.info(
            "klines_fetched",
            extra={
                "event": "klines_fetched",
                "symbol": symbol,
                "market_type": market_type.value,
                "intervals": ",".join(intervals),
            },
        )
        return series
