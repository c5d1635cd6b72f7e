from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Protocol

import pandas as pd

from pairbot.adapters.exchanges.utils import candles_are_sane
from pairbot.adapters.llm import LLMProvider
from pairbot.adapters.symbols import split_pair
from pairbot.core.errors import AnalysisError
from pairbot.core.models import MarketType
from pairbot.services.segmenter import FINAL_MARKER, SEGMENT_MARKER

logger = logging.getLogger(__name__)

ANALYST_SYSTEM = (
    "You are a senior crypto market analyst with over ten years of experience. You are fluent in "
    "Wyckoff, Gann, Dow theory, Elliott waves and classic technical analysis, and you pick the "
    "method that fits the user's question. Your analysis is concrete, numeric and practical."
)

ANALYSIS_PROMPT = """Current time: {now} (UTC). Quote any candle time converted to the {tz} timezone as "YY-MM-DD HH:mm".

Analyse {display} on the {market} market and answer the user's question: ** {question} **

Multi-timeframe candles follow (15m up to monthly, at most {limit} recent candles per timeframe, so short timeframes do not cover the whole history):
{payload}

Notes:
- Use every timeframe; combine them for the final read.
- Judge recency from the candle times: near term is hours on 15m and 1-2 days on 1h, mid term is 1-3 months on 1d, long term is 6+ months on 1w and 1M.
- Call a high from 20 weeks ago a long-term high, not a recent one.
- Look at structure, trendlines, support and resistance, and volume.

Write the analysis in the sections below and put the marker after each section exactly as shown. Sections may be shortened or extended; answering the question is what matters.

1. **Market overview and trend** (current price, main trend direction)
{segment}

2. **Indicators** (state of the key technical indicators)
{segment}

3. **Key levels** (support, resistance, pivots)
{segment}

4. **Trade plan** (entries, exits, stop)
{segment}

5. **Risks and summary** (risk assessment and conclusion)
{final}

Requirements:
- Do not introduce yourself; go straight to the analysis.
- Cite concrete prices and candle open or close times.
- Keep every marker exactly as written.
- Markdown emphasis and a few icons are welcome.
"""


class KlineSource(Protocol):
    async def fetch_series(
        self,
        symbol: str,
        market_type: MarketType,
        intervals: list[str],
        limit: int = 100,
    ) -> dict[str, list[dict]]: ...


def summarize_interval(timeframe: str, candles: list[dict]) -> dict:
    df = pd.DataFrame(candles)
    close = df["close"].astype(float)
    start = float(close.iloc[0])
    end = float(close.iloc[-1])
    change_pct = (end - start) / start * 100 if start else 0.0
    return {
        "timeframe": timeframe,
        "dataCount": int(len(df)),
        "timeRange": {"from": str(df["open_time"].iloc[0]), "to": str(df["close_time"].iloc[-1])},
        "priceRange": {
            "start": start,
            "end": end,
            "changePercent": f"{change_pct:.2f}",
            "high": float(df["high"].astype(float).max()),
            "low": float(df["low"].astype(float).min()),
        },
        "klines": candles,
    }


class AnalysisService:
    def __init__(
        self,
        llm: LLMProvider,
        klines: KlineSource,
        intervals: list[str],
        kline_limit: int = 100,
        temperature: float = 0.3,
        max_tokens: int = 8000,
        display_timezone: str = "UTC",
    ) -> None:
        self.llm = llm
        self.klines = klines
        self.intervals = intervals
        self.kline_limit = kline_limit
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.display_timezone = display_timezone

    async def fetch_klines(self, symbol: str, market_type: MarketType) -> dict[str, list[dict]]:
        series = await self.klines.fetch_series(symbol, market_type, self.intervals, self.kline_limit)
        usable = {tf: rows for tf, rows in series.items() if candles_are_sane(rows)}
        skipped = [tf for tf in series if tf not in usable]
        if skipped:
            logger.warning(
                "klines_skipped",
                extra={"event": "klines_skipped", "symbol": symbol, "intervals": ",".join(skipped)},
            )
        if not usable:
            raise AnalysisError("No usable kline data", "EMPTY_KLINE_DATA", {"symbol": symbol})
        return usable

    def build_prompt(
        self,
        question: str,
        symbol: str,
        market_type: MarketType,
        series: dict[str, list[dict]],
        now: datetime | None = None,
    ) -> str:
        if not series:
            raise AnalysisError("No kline data to analyse", "EMPTY_KLINE_DATA", {"symbol": symbol})
        now = now or datetime.now(timezone.utc)
        payload = [summarize_interval(tf, rows) for tf, rows in series.items()]
        return ANALYSIS_PROMPT.format(
            now=now.isoformat().replace("+00:00", "Z"),
            tz=self.display_timezone,
            display=split_pair(symbol).display,
            market="derivatives (perpetual futures)" if market_type is MarketType.DERIVATIVES else "spot",
            question=question.strip(),
            limit=self.kline_limit,
            payload=json.dumps(payload, ensure_ascii=False, indent=2),
            segment=SEGMENT_MARKER,
            final=FINAL_MARKER,
        )

    def build_messages(
        self,
        question: str,
        symbol: str,
        market_type: MarketType,
        series: dict[str, list[dict]],
    ) -> list[dict[str, str]]:
        return [
            {"role": "system", "content": ANALYST_SYSTEM},
            {"role": "user", "content": self.build_prompt(question, symbol, market_type, series)},
        ]

    def stream(
        self,
        question: str,
        symbol: str,
        market_type: MarketType,
        series: dict[str, list[dict]],
    ) -> AsyncIterator[str]:
        messages = self.build_messages(question, symbol, market_type, series)
        logger.info(
            "analysis_stream_started",
            extra={
                "event": "analysis_stream_started",
                "symbol": symbol,
                "market_type": market_type.value,
                "provider": self.llm.name,
                "model": self.llm.model,
            },
        )
        return self.llm.stream(messages, temperature=self.temperature, max_tokens=self.max_tokens)
