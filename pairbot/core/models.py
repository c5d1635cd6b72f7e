from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

SYMBOL_RE = re.compile(r"^[A-Z]{2,15}$")

_MARKET_ALIASES = {
    "spot": "spot",
    "derivatives": "derivatives",
    "derivative": "derivatives",
    "futures": "derivatives",
    "future": "derivatives",
    "perp": "derivatives",
    "perps": "derivatives",
    "perpetual": "derivatives",
    "swap": "derivatives",
    "contract": "derivatives",
}


class MarketType(str, Enum):
    SPOT = "spot"
    DERIVATIVES = "derivatives"

    def other(self) -> "MarketType":
        return MarketType.DERIVATIVES if self is MarketType.SPOT else MarketType.SPOT

    @classmethod
    def parse(cls, value: object) -> "MarketType":
        raw = str(value or "").strip().lower()
        return cls(_MARKET_ALIASES.get(raw, "spot"))


class Membership(str, Enum):
    SPOT_ONLY = "spot_only"
    DERIVATIVES_ONLY = "derivatives_only"
    BOTH = "both"
    NEITHER = "neither"


class ResolutionStage(str, Enum):
    START = "start"
    FIRST_PASS = "first_pass"
    NEEDS_VALIDATION = "needs_validation"
    NEEDS_SECOND_PASS = "needs_second_pass"
    SECOND_PASS = "second_pass"
    VALIDATED = "validated"
    FINAL = "final"


class AnalysisOutcome(str, Enum):
    NOT_ANALYSIS = "not_analysis"
    NOT_FOUND = "not_found"
    BUSY = "busy"
    COMPLETED = "completed"
    TRUNCATED = "truncated"
    FAILED = "failed"


@dataclass(frozen=True)
class ResolutionVerdict:
    is_analysis_request: bool
    instrument_symbol: str | None = None
    market_type: MarketType = MarketType.SPOT
    confidence: float = 0.0
    had_transport_error: bool = False
    transport_error_detail: str | None = None
    stage: ResolutionStage = ResolutionStage.FIRST_PASS

    def __post_init__(self) -> None:
        if not self.is_analysis_request and self.instrument_symbol is not None:
            raise ValueError("non-analysis verdict cannot carry an instrument symbol")
        if self.instrument_symbol is not None and not SYMBOL_RE.fullmatch(self.instrument_symbol):
            raise ValueError(f"malformed instrument symbol: {self.instrument_symbol!r}")
        object.__setattr__(self, "confidence", max(0.0, min(float(self.confidence), 1.0)))

    @property
    def resolved(self) -> bool:
        return self.is_analysis_request and self.instrument_symbol is not None

    def to_dict(self) -> dict:
        return {
            "is_analysis_request": self.is_analysis_request,
            "instrument_symbol": self.instrument_symbol,
            "market_type": self.market_type.value,
            "confidence": self.confidence,
            "had_transport_error": self.had_transport_error,
            "transport_error_detail": self.transport_error_detail,
            "stage": self.stage.value,
        }


@dataclass(frozen=True)
class InstrumentUniverse:
    spot_symbols: frozenset[str] = frozenset()
    derivative_symbols: frozenset[str] = frozenset()
    spot_available: bool = True
    derivatives_available: bool = True

    @property
    def is_empty(self) -> bool:
        return not self.spot_symbols and not self.derivative_symbols

    def all_symbols(self) -> set[str]:
        return set(self.spot_symbols) | set(self.derivative_symbols)

    def membership_of(self, symbol: str) -> Membership:
        key = str(symbol or "").strip().upper()
        in_spot = key in self.spot_symbols
        in_derivatives = key in self.derivative_symbols
        if in_spot and in_derivatives:
            return Membership.BOTH
        if in_spot:
            return Membership.SPOT_ONLY
        if in_derivatives:
            return Membership.DERIVATIVES_ONLY
        return Membership.NEITHER


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    confirmed_market_type: MarketType | None = None


@dataclass(frozen=True)
class StreamSegment:
    content: str
    is_final: bool
    sequence_index: int

    def __post_init__(self) -> None:
        if self.sequence_index < 0:
            raise ValueError("sequence_index must be >= 0")


@dataclass(frozen=True)
class AdmissionTicket:
    conversation_id: int
    granted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
