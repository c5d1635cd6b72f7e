from __future__ import annotations

import pytest

from pairbot.adapters.llm import LLMReply
from pairbot.core.errors import UpstreamError
from pairbot.core.models import MarketType
from pairbot.services.classifier import IntentClassifier
from pairbot.services.registry import InstrumentRegistry
from pairbot.services.resolver import PairResolver, build_grounding_candidates
from pairbot.services.validator import ExistenceValidator


class _ScriptedLLM:
    name = "scripted"
    model = "test-model"

    def __init__(self, replies: list[object]) -> None:
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def complete(self, messages, *, temperature=0.1, max_tokens=500, model=None) -> LLMReply:  # noqa: ARG002
        self.prompts.append(messages[-1]["content"])
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return LLMReply(content=str(reply))


class _FakeExchange:
    def __init__(
        self,
        spot: set[str],
        derivatives: set[str],
        catalog_down: bool = False,
    ) -> None:
        self.sides = {MarketType.SPOT: spot, MarketType.DERIVATIVES: derivatives}
        self.catalog_down = catalog_down
        self.catalog_calls = 0
        self.probe_calls: list[tuple[str, MarketType]] = []

    async def list_tradable_symbols(self, market_type: MarketType) -> set[str]:
        self.catalog_calls += 1
        if self.catalog_down:
            raise UpstreamError("catalog down")
        return set(self.sides[market_type])

    async def probe_existence(self, symbol: str, market_type: MarketType) -> bool:
        self.probe_calls.append((symbol, market_type))
        return symbol in self.sides[market_type]


def _resolver(llm: _ScriptedLLM, exchange: _FakeExchange, prefer_spot: bool = True) -> PairResolver:
    return PairResolver(
        classifier=IntentClassifier(llm),  # type: ignore[arg-type]
        validator=ExistenceValidator(exchange, prefer_spot=prefer_spot),  # type: ignore[arg-type]
        registry=InstrumentRegistry(exchange),  # type: ignore[arg-type]
    )


def _reply(analysis: bool, symbol: str | None, market: str = "spot") -> str:
    sym = f'"{symbol}"' if symbol else "null"
    return f'{{"isAnalysisRequest": {str(analysis).lower()}, "instrumentSymbol": {sym}, "marketType": "{market}"}}'


@pytest.mark.asyncio
async def test_empty_input_makes_no_external_calls() -> None:
    llm = _ScriptedLLM([])
    exchange = _FakeExchange({"BTCUSDT"}, set())
    verdict = await _resolver(llm, exchange).resolve("")

    assert verdict.is_analysis_request is False
    assert verdict.instrument_symbol is None
    assert verdict.confidence == 1.0
    assert llm.prompts == []
    assert exchange.catalog_calls == 0
    assert exchange.probe_calls == []


@pytest.mark.asyncio
async def test_first_pass_symbol_confirmed_on_spot() -> None:
    llm = _ScriptedLLM([_reply(True, "BTCUSDT")])
    exchange = _FakeExchange({"BTCUSDT"}, {"BTCUSDT"})
    verdict = await _resolver(llm, exchange).resolve("analyse BTC")

    assert verdict.instrument_symbol == "BTCUSDT"
    assert verdict.market_type is MarketType.SPOT
    assert len(llm.prompts) == 1
    assert exchange.catalog_calls == 0


@pytest.mark.asyncio
async def test_spot_miss_confirms_on_derivatives() -> None:
    llm = _ScriptedLLM([_reply(True, "BTCUSDT")])
    exchange = _FakeExchange(set(), {"BTCUSDT"})
    verdict = await _resolver(llm, exchange).resolve("analyse BTC")

    assert verdict.instrument_symbol == "BTCUSDT"
    assert verdict.market_type is MarketType.DERIVATIVES
    assert len(llm.prompts) == 1


@pytest.mark.asyncio
async def test_missing_symbol_goes_to_grounded_second_pass() -> None:
    llm = _ScriptedLLM([_reply(True, None), _reply(True, "NEARUSDT")])
    exchange = _FakeExchange({"BTCUSDT", "NEARUSDT", "NEARBTC"}, {"NEARUSDT"})
    verdict = await _resolver(llm, exchange).resolve("how is near protocol doing")

    assert verdict.is_analysis_request
    assert verdict.instrument_symbol == "NEARUSDT"
    assert verdict.market_type is MarketType.SPOT
    assert len(llm.prompts) == 2
    assert "BTCUSDT, NEARUSDT, NEARBTC" in llm.prompts[1]


@pytest.mark.asyncio
async def test_unknown_first_pass_symbol_gets_second_chance() -> None:
    llm = _ScriptedLLM([_reply(True, "POLUSDT"), _reply(True, "MATICUSDT")])
    exchange = _FakeExchange({"MATICUSDT"}, set())
    verdict = await _resolver(llm, exchange).resolve("polygon chart")

    assert verdict.instrument_symbol == "MATICUSDT"


@pytest.mark.asyncio
async def test_not_analysis_returned_as_is() -> None:
    llm = _ScriptedLLM([_reply(False, None)])
    exchange = _FakeExchange({"BTCUSDT"}, set())
    verdict = await _resolver(llm, exchange).resolve("nice weather")

    assert verdict.is_analysis_request is False
    assert exchange.probe_calls == []


@pytest.mark.asyncio
async def test_first_pass_transport_error_propagates() -> None:
    llm = _ScriptedLLM([UpstreamError("provider down")])
    with pytest.raises(UpstreamError):
        await _resolver(llm, _FakeExchange(set(), set())).resolve("analyse btc")


@pytest.mark.asyncio
async def test_second_pass_transport_error_returns_unresolved() -> None:
    llm = _ScriptedLLM([_reply(True, None), UpstreamError("provider down")])
    verdict = await _resolver(llm, _FakeExchange({"BTCUSDT"}, set())).resolve("analyse that coin")

    assert verdict.is_analysis_request is True
    assert verdict.instrument_symbol is None
    assert verdict.had_transport_error is True


@pytest.mark.asyncio
async def test_second_pass_garbage_returns_unresolved() -> None:
    llm = _ScriptedLLM([_reply(True, None), "sorry, no idea"])
    verdict = await _resolver(llm, _FakeExchange({"BTCUSDT"}, set())).resolve("analyse that coin")

    assert verdict.is_analysis_request is True
    assert verdict.instrument_symbol is None
    assert verdict.had_transport_error is True


@pytest.mark.asyncio
async def test_registry_outage_still_runs_second_pass() -> None:
    llm = _ScriptedLLM([_reply(True, None), _reply(True, None)])
    exchange = _FakeExchange(set(), set(), catalog_down=True)
    verdict = await _resolver(llm, exchange).resolve("analyse that coin")

    assert len(llm.prompts) == 2
    assert verdict.is_analysis_request is True
    assert verdict.instrument_symbol is None
    assert verdict.had_transport_error is False


@pytest.mark.asyncio
async def test_second_pass_symbol_that_fails_validation() -> None:
    llm = _ScriptedLLM([_reply(True, "FAKEUSDT"), _reply(True, "FAKEUSDT")])
    verdict = await _resolver(llm, _FakeExchange({"BTCUSDT"}, set())).resolve("analyse fake")

    assert verdict.is_analysis_request is True
    assert verdict.instrument_symbol is None


@pytest.mark.parametrize(
    "replies",
    [
        [_reply(False, None)],
        [_reply(True, "BTCUSDT")],
        [_reply(True, None), _reply(False, None)],
        [_reply(True, None), "garbage"],
        [_reply(True, None), UpstreamError("down")],
        [_reply(True, "ZZZUSDT"), _reply(True, "ZZZUSDT")],
        ["garbage"],
    ],
)
@pytest.mark.asyncio
async def test_resolved_symbols_always_validated(replies: list[object]) -> None:
    exchange = _FakeExchange({"BTCUSDT"}, {"ETHUSDT"})
    verdict = await _resolver(_ScriptedLLM(replies), exchange).resolve("some request")

    if verdict.instrument_symbol is not None:
        assert verdict.is_analysis_request
        assert (verdict.instrument_symbol, verdict.market_type) in exchange.probe_calls
        assert verdict.instrument_symbol in exchange.sides[verdict.market_type]


def test_grounding_orders_quote_pairs_first() -> None:
    symbols = {"ETHBTC", "BTCUSDT", "AAVEUSDT", "BNBETH", "ZILUSDT"}
    assert build_grounding_candidates(symbols) == ["AAVEUSDT", "BTCUSDT", "ZILUSDT", "BNBETH", "ETHBTC"]


def test_grounding_caps_each_group() -> None:
    usdt = {f"C{i:04d}USDT" for i in range(1200)}
    other = {f"C{i:04d}BTC" for i in range(700)}
    out = build_grounding_candidates(usdt | other, primary_cap=1000, secondary_cap=500)

    assert len(out) == 1500
    assert all(s.endswith("USDT") for s in out[:1000])
    assert not any(s.endswith("USDT") for s in out[1000:])
    assert out[0] == "C0000USDT"
    assert out[999] == "C0999USDT"


def test_grounding_custom_quote() -> None:
    out = build_grounding_candidates({"BTCUSDC", "BTCUSDT", "ETHUSDC"}, quote="USDC", primary_cap=1, secondary_cap=5)
    assert out == ["BTCUSDC", "BTCUSDT"]
