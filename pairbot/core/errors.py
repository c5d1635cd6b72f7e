from __future__ import annotations

from typing import Any


class BotError(Exception):
    """Base bot error."""


class UpstreamError(BotError):
    """Raised when an upstream API is unavailable."""

    def __init__(self, message: str, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class RegistryUnavailable(UpstreamError):
    """Raised when an instrument catalog could not be fetched."""

    def __init__(self, message: str, failed: list[str] | None = None) -> None:
        super().__init__(message)
        self.failed = failed or []


class AdmissionDenied(BotError):
    """Raised when the admission gate refuses new work."""

    def __init__(self, conversation_id: int, reason: str) -> None:
        super().__init__(f"admission denied for {conversation_id}: {reason}")
        self.conversation_id = conversation_id
        self.reason = reason


class AnalysisError(BotError):
    """Analysis pipeline failure carrying a machine-readable code."""

    def __init__(self, message: str, code: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
