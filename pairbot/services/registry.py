from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from pairbot.core.cache import RedisCache
from pairbot.core.errors import RegistryUnavailable
from pairbot.core.models import InstrumentUniverse, MarketType, Membership

logger = logging.getLogger(__name__)


class CatalogSource(Protocol):
    async def list_tradable_symbols(self, market_type: MarketType) -> set[str]: ...


class InstrumentRegistry:
    """Read-only view over the spot and derivatives instrument catalogs."""

    def __init__(
        self,
        catalog: CatalogSource,
        cache: RedisCache | None = None,
        ttl_min: int = 360,
        timeout_sec: float = 10.0,
        prefer_spot: bool = True,
    ) -> None:
        self.catalog = catalog
        self.cache = cache
        self.ttl_sec = max(60, int(ttl_min) * 60)
        self.timeout_sec = float(timeout_sec)
        self.prefer_spot = prefer_spot

    @staticmethod
    def _cache_key(market_type: MarketType) -> str:
        return f"universe:{market_type.value}"

    async def _fetch_side(self, market_type: MarketType, use_cache: bool = True) -> frozenset[str]:
        if self.cache is not None and use_cache:
            cached = await self.cache.get_json(self._cache_key(market_type))
            if isinstance(cached, list) and cached:
                return frozenset(str(s) for s in cached)

        symbols = await asyncio.wait_for(
            self.catalog.list_tradable_symbols(market_type),
            timeout=self.timeout_sec,
        )
        if self.cache is not None and symbols:
            await self.cache.set_json(self._cache_key(market_type), sorted(symbols), ttl=self.ttl_sec)
        return frozenset(symbols)

    async def fetch_universe(self, strict: bool = True, use_cache: bool = True) -> InstrumentUniverse:
        spot_res, deriv_res = await asyncio.gather(
            self._fetch_side(MarketType.SPOT, use_cache),
            self._fetch_side(MarketType.DERIVATIVES, use_cache),
            return_exceptions=True,
        )

        failed: list[str] = []
        sides: dict[MarketType, frozenset[str]] = {}
        for market_type, result in ((MarketType.SPOT, spot_res), (MarketType.DERIVATIVES, deriv_res)):
            if isinstance(result, BaseException):
                failed.append(market_type.value)
                sides[market_type] = frozenset()
                logger.warning(
                    "catalog_fetch_failed",
                    extra={
                        "event": "catalog_fetch_failed",
                        "market_type": market_type.value,
                        "error": repr(result)[:300],
                    },
                )
            else:
                sides[market_type] = result

        if failed and strict:
            raise RegistryUnavailable(f"instrument catalog unavailable: {', '.join(failed)}", failed=failed)

        return InstrumentUniverse(
            spot_symbols=sides[MarketType.SPOT],
            derivative_symbols=sides[MarketType.DERIVATIVES],
            spot_available=MarketType.SPOT.value not in failed,
            derivatives_available=MarketType.DERIVATIVES.value not in failed,
        )

    async def membership_of(self, symbol: str) -> Membership:
        universe = await self.fetch_universe(strict=False)
        return universe.membership_of(symbol)

    def preferred_market(self, membership: Membership) -> MarketType | None:
        if membership is Membership.SPOT_ONLY:
            return MarketType.SPOT
        if membership is Membership.DERIVATIVES_ONLY:
            return MarketType.DERIVATIVES
        if membership is Membership.BOTH:
            return MarketType.SPOT if self.prefer_spot else MarketType.DERIVATIVES
        return None

    async def warm(self) -> InstrumentUniverse:
        """Refresh both catalogs into the cache, bypassing cached copies."""
        universe = await self.fetch_universe(strict=False, use_cache=False)
        logger.info(
            "universe_warmed",
            extra={
                "event": "universe_warmed",
                "count": len(universe.spot_symbols) + len(universe.derivative_symbols),
            },
        )
        return universe
