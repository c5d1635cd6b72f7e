from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Iterable

from pairbot.core.models import InstrumentUniverse, ResolutionStage, ResolutionVerdict
from pairbot.services.classifier import IntentClassifier
from pairbot.services.registry import InstrumentRegistry
from pairbot.services.validator import ExistenceValidator

logger = logging.getLogger(__name__)


def build_grounding_candidates(
    symbols: Iterable[str],
    quote: str = "USDT",
    primary_cap: int = 1000,
    secondary_cap: int = 500,
) -> list[str]:
    """Quote-currency pairs first, each group sorted and capped."""
    quote = quote.upper()
    unique = {str(s).upper() for s in symbols if s}
    primary = sorted(s for s in unique if s.endswith(quote))
    secondary = sorted(s for s in unique if not s.endswith(quote))
    return primary[: max(0, primary_cap)] + secondary[: max(0, secondary_cap)]


class PairResolver:
    """Two-pass resolution of free text into a validated instrument verdict."""

    def __init__(
        self,
        classifier: IntentClassifier,
        validator: ExistenceValidator,
        registry: InstrumentRegistry,
        grounding_quote: str = "USDT",
        primary_cap: int = 1000,
        secondary_cap: int = 500,
    ) -> None:
        self.classifier = classifier
        self.validator = validator
        self.registry = registry
        self.grounding_quote = grounding_quote
        self.primary_cap = primary_cap
        self.secondary_cap = secondary_cap

    def _log(self, verdict: ResolutionVerdict, started: float) -> ResolutionVerdict:
        logger.info(
            "pair_resolved",
            extra={
                "event": "pair_resolved",
                "stage": verdict.stage.value,
                "symbol": verdict.instrument_symbol,
                "market_type": verdict.market_type.value,
                "latency_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return verdict

    async def _grounding(self) -> list[str]:
        try:
            universe = await self.registry.fetch_universe(strict=False)
        except Exception as exc:  # noqa: BLE001
            logger.warning("grounding_universe_failed", extra={"event": "grounding_universe_failed", "error": str(exc)[:200]})
            universe = InstrumentUniverse(spot_available=False, derivatives_available=False)
        return build_grounding_candidates(
            universe.all_symbols(),
            quote=self.grounding_quote,
            primary_cap=self.primary_cap,
            secondary_cap=self.secondary_cap,
        )

    async def resolve(self, free_text: str) -> ResolutionVerdict:
        started = time.perf_counter()

        # first-pass transport errors propagate to the caller
        first = await self.classifier.classify(free_text)
        if not first.is_analysis_request:
            return self._log(first, started)

        if first.instrument_symbol:
            result = await self.validator.validate(first.instrument_symbol, first.market_type)
            if result.valid and result.confirmed_market_type is not None:
                return self._log(
                    replace(first, market_type=result.confirmed_market_type, stage=ResolutionStage.VALIDATED),
                    started,
                )

        unresolved = replace(first, instrument_symbol=None, stage=ResolutionStage.FINAL)
        candidates = await self._grounding()
        try:
            second = await self.classifier.classify(free_text, candidates)
        except Exception as exc:  # noqa: BLE001
            logger.warning("second_pass_failed", extra={"event": "second_pass_failed", "error": str(exc)[:200]})
            return self._log(
                replace(unresolved, had_transport_error=True, transport_error_detail=str(exc)[:200]),
                started,
            )

        if second.had_transport_error:
            return self._log(
                replace(
                    unresolved,
                    had_transport_error=True,
                    transport_error_detail=second.transport_error_detail,
                ),
                started,
            )
        if not second.instrument_symbol:
            return self._log(unresolved, started)

        result = await self.validator.validate(second.instrument_symbol, second.market_type)
        if not result.valid or result.confirmed_market_type is None:
            return self._log(unresolved, started)

        return self._log(
            ResolutionVerdict(
                is_analysis_request=True,
                instrument_symbol=second.instrument_symbol,
                market_type=result.confirmed_market_type,
                confidence=second.confidence,
                stage=ResolutionStage.FINAL,
            ),
            started,
        )
