from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Sequence

from pydantic import BaseModel, ConfigDict, StrictBool, ValidationError, field_validator

from pairbot.adapters.llm import LLMProvider
from pairbot.adapters.symbols import normalize_instrument
from pairbot.core.models import MarketType, ResolutionStage, ResolutionVerdict

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.9
CLASSIFY_TEMPERATURE = 0.1

RESPONSE_SCHEMA = """{
  "isAnalysisRequest": true,
  "instrumentSymbol": "BTCUSDT",
  "marketType": "spot",
  "confidence": 0.9
}"""

FIRST_PASS_PROMPT = """Decide whether the user message asks for an analysis of a cryptocurrency trading pair, and if so extract the pair.

User message: "{message}"

Return ONLY valid JSON in exactly this shape. No markdown. No extra text.
{schema}

Rules:
1. Questions about price, trend, outlook, levels or indicators of any coin mean isAnalysisRequest=true.
2. Analysis methods (Wyckoff, Elliott waves, Gann, Dow theory) are not coins; focus on which coin is meant.
3. instrumentSymbol uses Binance format: base + quote, e.g. BTCUSDT, ETHUSDT, SOLUSDT. Default the quote to USDT.
4. Common names map to tickers: bitcoin -> BTCUSDT, ether/ethereum -> ETHUSDT, doge -> DOGEUSDT, solana -> SOLUSDT.
5. marketType is "derivatives" when the user mentions futures, perps, perpetual or contracts, otherwise "spot".
6. If the coin cannot be identified, set instrumentSymbol to null.
7. If the message is not an analysis request, return isAnalysisRequest=false and instrumentSymbol=null.

Examples:
"analyse bitcoin" -> {{"isAnalysisRequest": true, "instrumentSymbol": "BTCUSDT", "marketType": "spot", "confidence": 0.95}}
"wyckoff read on ETH perp" -> {{"isAnalysisRequest": true, "instrumentSymbol": "ETHUSDT", "marketType": "derivatives", "confidence": 0.9}}
"how is the weather today" -> {{"isAnalysisRequest": false, "instrumentSymbol": null, "marketType": "spot", "confidence": 0.95}}"""

GROUNDED_PROMPT = """Decide whether the user message asks for an analysis of a cryptocurrency trading pair, and if so pick the best match from the Binance pair list below.

User message: "{message}"

Binance pairs (USDT pairs first):
{candidates}

Return ONLY valid JSON in exactly this shape. No markdown. No extra text.
{schema}

Rules:
1. Questions about price, trend, outlook, levels or indicators of any coin mean isAnalysisRequest=true.
2. instrumentSymbol MUST be one of the listed pairs, copied exactly. Never invent a pair.
3. Prefer pairs ending in USDT.
4. Match loosely on names and old tickers (Polygon, MATIC -> MATICUSDT).
5. marketType is "derivatives" when the user mentions futures, perps, perpetual or contracts, otherwise "spot".
6. If no listed pair matches, set instrumentSymbol to null.
7. If the message is not an analysis request, return isAnalysisRequest=false and instrumentSymbol=null."""

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class VerdictPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    isAnalysisRequest: StrictBool
    instrumentSymbol: str | None = None
    marketType: str | None = None
    confidence: float | None = None

    # optional fields fall back to their defaults instead of failing the whole reply
    @field_validator("confidence", mode="before")
    @classmethod
    def _lenient_confidence(cls, value: Any) -> float | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None

    @field_validator("marketType", "instrumentSymbol", mode="before")
    @classmethod
    def _string_or_none(cls, value: Any) -> str | None:
        return value if isinstance(value, str) else None


def _first_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` span, ignoring braces inside string literals."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            ch = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_string = False
                continue
            if ch == '"':
                in_string = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    return text[start : idx + 1]
        start = text.find("{", start + 1)
    return None


def extract_json_payload(raw_text: str) -> dict[str, Any]:
    """Decode the JSON object embedded in a model reply; raises ValueError when there is none."""
    text = (raw_text or "").strip()
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1).strip()
    candidate = _first_json_object(text)
    if candidate is None:
        raise ValueError("no JSON object in model reply")
    payload = json.loads(candidate)
    if not isinstance(payload, dict):
        raise ValueError("model reply JSON is not an object")
    return payload


class IntentClassifier:
    def __init__(
        self,
        llm: LLMProvider,
        model: str | None = None,
        max_tokens: int = 500,
    ) -> None:
        self.llm = llm
        self.model = model
        self.max_tokens = max_tokens

    def build_prompt(self, message: str, candidates: Sequence[str] | None = None) -> str:
        if candidates is None:
            return FIRST_PASS_PROMPT.format(message=message, schema=RESPONSE_SCHEMA)
        return GROUNDED_PROMPT.format(
            message=message,
            candidates=", ".join(candidates) if candidates else "(list unavailable)",
            schema=RESPONSE_SCHEMA,
        )

    async def classify(self, free_text: str, candidates: Sequence[str] | None = None) -> ResolutionVerdict:
        stage = ResolutionStage.FIRST_PASS if candidates is None else ResolutionStage.SECOND_PASS
        text = (free_text or "").strip()
        if not text:
            return ResolutionVerdict(is_analysis_request=False, confidence=1.0, stage=stage)

        messages = [{"role": "user", "content": self.build_prompt(text, candidates)}]
        # transport failures propagate as UpstreamError
        reply = await self.llm.complete(
            messages,
            temperature=CLASSIFY_TEMPERATURE,
            max_tokens=self.max_tokens,
            model=self.model,
        )
        if reply.thoughts:
            logger.debug(
                "classifier_thoughts",
                extra={"event": "classifier_thoughts", "stage": stage.value, "count": len(reply.thoughts)},
            )
        return self.parse_reply(reply.content, stage)

    def parse_reply(self, raw_text: str, stage: ResolutionStage = ResolutionStage.FIRST_PASS) -> ResolutionVerdict:
        try:
            payload = VerdictPayload.model_validate(extract_json_payload(raw_text))
        except (ValueError, ValidationError) as exc:
            logger.warning(
                "classifier_decode_failed",
                extra={"event": "classifier_decode_failed", "stage": stage.value, "error": str(exc)[:300]},
            )
            return ResolutionVerdict(
                is_analysis_request=False,
                confidence=0.0,
                had_transport_error=True,
                transport_error_detail=f"undecodable classifier reply: {str(exc)[:200]}",
                stage=stage,
            )

        confidence = DEFAULT_CONFIDENCE if payload.confidence is None else payload.confidence
        if not payload.isAnalysisRequest:
            return ResolutionVerdict(is_analysis_request=False, confidence=confidence, stage=stage)

        symbol = normalize_instrument(payload.instrumentSymbol)
        if payload.instrumentSymbol and symbol is None:
            logger.info(
                "classifier_symbol_dropped",
                extra={"event": "classifier_symbol_dropped", "stage": stage.value, "symbol": payload.instrumentSymbol},
            )
        return ResolutionVerdict(
            is_analysis_request=True,
            instrument_symbol=symbol,
            market_type=MarketType.parse(payload.marketType),
            confidence=confidence,
            stage=stage,
        )
