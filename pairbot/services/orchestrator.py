from __future__ import annotations

import logging
import time
from typing import Callable, Protocol

from pairbot.core.errors import AdmissionDenied, AnalysisError
from pairbot.core.models import AnalysisOutcome, ResolutionVerdict, StreamSegment
from pairbot.services.admission import AdmissionGate
from pairbot.services.analysis import AnalysisService
from pairbot.services.resolver import PairResolver
from pairbot.services.segmenter import StreamSegmenter

logger = logging.getLogger(__name__)

STAGE_FETCHING = "fetching"
STAGE_ANALYSING = "analysing"


class DeliverySink(Protocol):
    """Outbound side of one conversation. Implementations log their own failures and never raise."""

    async def progress(self, conversation_id: int, stage: str, symbol: str | None) -> None: ...

    async def deliver(self, conversation_id: int, segment: StreamSegment) -> None: ...

    async def notify(
        self,
        conversation_id: int,
        outcome: AnalysisOutcome,
        verdict: ResolutionVerdict | None,
        error_code: str | None = None,
    ) -> None: ...


class Orchestrator:
    def __init__(
        self,
        gate: AdmissionGate,
        resolver: PairResolver,
        analysis: AnalysisService,
        segmenter_factory: Callable[[], StreamSegmenter] = StreamSegmenter,
    ) -> None:
        self.gate = gate
        self.resolver = resolver
        self.analysis = analysis
        self.segmenter_factory = segmenter_factory

    async def handle(self, conversation_id: int, text: str, sink: DeliverySink) -> AnalysisOutcome:
        started = time.perf_counter()
        verdict: ResolutionVerdict | None = None
        error_code: str | None = None
        try:
            async with self.gate.ticket(conversation_id):
                outcome, verdict, error_code = await self._run(conversation_id, text, sink)
        except AdmissionDenied as exc:
            outcome = AnalysisOutcome.BUSY
            logger.info("analysis_busy", extra={"event": "analysis_busy", "chat_id": conversation_id, "reason": exc.reason})

        await sink.notify(conversation_id, outcome, verdict, error_code=error_code)
        logger.info(
            "analysis_finished",
            extra={
                "event": "analysis_finished",
                "chat_id": conversation_id,
                "outcome": outcome.value,
                "reason": error_code,
                "symbol": verdict.instrument_symbol if verdict else None,
                "latency_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return outcome

    async def _run(
        self,
        conversation_id: int,
        text: str,
        sink: DeliverySink,
    ) -> tuple[AnalysisOutcome, ResolutionVerdict | None, str | None]:
        try:
            verdict = await self.resolver.resolve(text)
        except Exception as exc:  # noqa: BLE001
            logger.exception(
                "resolution_failed",
                extra={"event": "resolution_failed", "chat_id": conversation_id, "error": str(exc)[:300]},
            )
            return AnalysisOutcome.FAILED, None, None

        if not verdict.is_analysis_request:
            return AnalysisOutcome.NOT_ANALYSIS, verdict, None
        if not verdict.instrument_symbol:
            return AnalysisOutcome.NOT_FOUND, verdict, None

        symbol = verdict.instrument_symbol
        await sink.progress(conversation_id, STAGE_FETCHING, symbol)
        try:
            series = await self.analysis.fetch_klines(symbol, verdict.market_type)
        except Exception as exc:  # noqa: BLE001
            code = exc.code if isinstance(exc, AnalysisError) else None
            logger.warning(
                "kline_fetch_failed",
                extra={
                    "event": "kline_fetch_failed",
                    "chat_id": conversation_id,
                    "symbol": symbol,
                    "reason": code,
                    "error": str(exc)[:300],
                },
            )
            return AnalysisOutcome.FAILED, verdict, code

        await sink.progress(conversation_id, STAGE_ANALYSING, symbol)
        segmenter = self.segmenter_factory()
        try:
            stream = self.analysis.stream(text, symbol, verdict.market_type, series)
            async for segment in segmenter.consume(stream):
                await sink.deliver(conversation_id, segment)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "analysis_stream_failed",
                extra={
                    "event": "analysis_stream_failed",
                    "chat_id": conversation_id,
                    "symbol": symbol,
                    "count": segmenter.emitted,
                    "error": str(exc)[:300],
                },
            )
            return AnalysisOutcome.TRUNCATED, verdict, None

        if not segmenter.finished:
            return AnalysisOutcome.TRUNCATED, verdict, None
        return AnalysisOutcome.COMPLETED, verdict, None
