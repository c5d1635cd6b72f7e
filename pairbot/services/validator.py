from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from pairbot.core.models import MarketType, ValidationResult

logger = logging.getLogger(__name__)


class QuoteProbeSource(Protocol):
    async def probe_existence(self, symbol: str, market_type: MarketType) -> bool: ...


class ExistenceValidator:
    def __init__(self, probe_source: QuoteProbeSource, timeout_sec: float = 3.0, prefer_spot: bool = True) -> None:
        self.probe_source = probe_source
        self.timeout_sec = float(timeout_sec)
        self.prefer_spot = prefer_spot

    def probe_order(self, market_type: MarketType) -> tuple[MarketType, MarketType]:
        if self.prefer_spot:
            return MarketType.SPOT, MarketType.DERIVATIVES
        return market_type, market_type.other()

    async def _probe(self, symbol: str, market_type: MarketType) -> bool:
        try:
            return bool(
                await asyncio.wait_for(
                    self.probe_source.probe_existence(symbol, market_type),
                    timeout=self.timeout_sec,
                )
            )
        except asyncio.TimeoutError:
            logger.info(
                "probe_timeout",
                extra={"event": "probe_timeout", "symbol": symbol, "market_type": market_type.value},
            )
        except Exception as exc:  # noqa: BLE001
            logger.info(
                "probe_failed",
                extra={
                    "event": "probe_failed",
                    "symbol": symbol,
                    "market_type": market_type.value,
                    "error": str(exc)[:200],
                },
            )
        return False

    async def validate(self, symbol: str, market_type: MarketType) -> ValidationResult:
        for candidate in self.probe_order(market_type):
            if await self._probe(symbol, candidate):
                if candidate is not market_type:
                    logger.info(
                        "market_type_corrected",
                        extra={"event": "market_type_corrected", "symbol": symbol, "market_type": candidate.value},
                    )
                return ValidationResult(valid=True, confirmed_market_type=candidate)
        return ValidationResult(valid=False)
