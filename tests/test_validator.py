from __future__ import annotations

import asyncio

import pytest

from pairbot.core.errors import UpstreamError
from pairbot.core.models import MarketType
from pairbot.services.validator import ExistenceValidator


class _FakeProbe:
    def __init__(
        self,
        tradable: dict[MarketType, set[str]],
        slow: set[MarketType] | None = None,
        broken: set[MarketType] | None = None,
    ) -> None:
        self.tradable = tradable
        self.slow = slow or set()
        self.broken = broken or set()
        self.calls: list[tuple[str, MarketType]] = []

    async def probe_existence(self, symbol: str, market_type: MarketType) -> bool:
        self.calls.append((symbol, market_type))
        if market_type in self.slow:
            await asyncio.sleep(0.2)
        if market_type in self.broken:
            raise UpstreamError("HTTP 400", status_code=400, detail="Invalid symbol.")
        return symbol in self.tradable.get(market_type, set())


@pytest.mark.asyncio
async def test_requested_type_confirmed() -> None:
    probe = _FakeProbe({MarketType.SPOT: {"BTCUSDT"}})
    result = await ExistenceValidator(probe).validate("BTCUSDT", MarketType.SPOT)  # type: ignore[arg-type]

    assert result.valid
    assert result.confirmed_market_type is MarketType.SPOT
    assert probe.calls == [("BTCUSDT", MarketType.SPOT)]


@pytest.mark.asyncio
async def test_falls_back_to_other_type() -> None:
    probe = _FakeProbe({MarketType.DERIVATIVES: {"BTCUSDT"}})
    result = await ExistenceValidator(probe).validate("BTCUSDT", MarketType.SPOT)  # type: ignore[arg-type]

    assert result.valid
    assert result.confirmed_market_type is MarketType.DERIVATIVES


@pytest.mark.asyncio
async def test_neither_type_is_invalid() -> None:
    probe = _FakeProbe({})
    result = await ExistenceValidator(probe).validate("FAKEUSDT", MarketType.SPOT)  # type: ignore[arg-type]

    assert not result.valid
    assert result.confirmed_market_type is None
    assert len(probe.calls) == 2


@pytest.mark.parametrize("guess", [MarketType.SPOT, MarketType.DERIVATIVES])
@pytest.mark.asyncio
async def test_spot_priority_when_tradable_on_both(guess: MarketType) -> None:
    probe = _FakeProbe({MarketType.SPOT: {"ETHUSDT"}, MarketType.DERIVATIVES: {"ETHUSDT"}})
    result = await ExistenceValidator(probe, prefer_spot=True).validate("ETHUSDT", guess)  # type: ignore[arg-type]

    assert result.confirmed_market_type is MarketType.SPOT


@pytest.mark.asyncio
async def test_guess_first_without_spot_priority() -> None:
    probe = _FakeProbe({MarketType.SPOT: {"ETHUSDT"}, MarketType.DERIVATIVES: {"ETHUSDT"}})
    validator = ExistenceValidator(probe, prefer_spot=False)  # type: ignore[arg-type]
    result = await validator.validate("ETHUSDT", MarketType.DERIVATIVES)

    assert result.confirmed_market_type is MarketType.DERIVATIVES
    assert probe.calls == [("ETHUSDT", MarketType.DERIVATIVES)]


@pytest.mark.asyncio
async def test_timeout_counts_as_failed_probe() -> None:
    probe = _FakeProbe(
        {MarketType.SPOT: {"SOLUSDT"}, MarketType.DERIVATIVES: {"SOLUSDT"}},
        slow={MarketType.SPOT},
    )
    result = await ExistenceValidator(probe, timeout_sec=0.01).validate("SOLUSDT", MarketType.SPOT)  # type: ignore[arg-type]

    assert result.valid
    assert result.confirmed_market_type is MarketType.DERIVATIVES


@pytest.mark.asyncio
async def test_probe_exception_counts_as_failed_probe() -> None:
    probe = _FakeProbe({MarketType.SPOT: {"SOLUSDT"}}, broken={MarketType.DERIVATIVES})
    result = await ExistenceValidator(probe, prefer_spot=False).validate("SOLUSDT", MarketType.DERIVATIVES)  # type: ignore[arg-type]

    assert result.valid
    assert result.confirmed_market_type is MarketType.SPOT
