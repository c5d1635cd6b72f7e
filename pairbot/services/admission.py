from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from pairbot.core.errors import AdmissionDenied
from pairbot.core.models import AdmissionTicket

logger = logging.getLogger(__name__)

GLOBAL_LIMIT = "global_limit"
CONVERSATION_BUSY = "conversation_busy"


class AdmissionGate:
    """Bounds analyses in flight: one per conversation and ``max_concurrent`` overall.

    All mutations happen between awaits on the event loop thread, so no lock is needed.
    """

    def __init__(self, max_concurrent: int = 3) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self._active: dict[int, AdmissionTicket] = {}

    @property
    def global_count(self) -> int:
        return len(self._active)

    def _denial_reason(self, conversation_id: int) -> str | None:
        if conversation_id in self._active:
            return CONVERSATION_BUSY
        if self.global_count >= self.max_concurrent:
            return GLOBAL_LIMIT
        return None

    def can_enter(self, conversation_id: int) -> bool:
        return self._denial_reason(conversation_id) is None

    def enter(self, conversation_id: int) -> AdmissionTicket:
        reason = self._denial_reason(conversation_id)
        if reason is not None:
            logger.info(
                "admission_denied",
                extra={
                    "event": "admission_denied",
                    "chat_id": conversation_id,
                    "reason": reason,
                    "global_count": self.global_count,
                    "max_concurrent": self.max_concurrent,
                },
            )
            raise AdmissionDenied(conversation_id, reason)
        ticket = AdmissionTicket(conversation_id=conversation_id)
        self._active[conversation_id] = ticket
        logger.info(
            "admission_granted",
            extra={
                "event": "admission_granted",
                "chat_id": conversation_id,
                "global_count": self.global_count,
                "max_concurrent": self.max_concurrent,
            },
        )
        return ticket

    def try_enter(self, conversation_id: int) -> bool:
        try:
            self.enter(conversation_id)
        except AdmissionDenied:
            return False
        return True

    def leave(self, conversation_id: int) -> None:
        if self._active.pop(conversation_id, None) is None:
            logger.warning(
                "admission_leave_unknown",
                extra={"event": "admission_leave_unknown", "chat_id": conversation_id, "global_count": self.global_count},
            )
            return
        logger.info(
            "admission_released",
            extra={
                "event": "admission_released",
                "chat_id": conversation_id,
                "global_count": self.global_count,
                "max_concurrent": self.max_concurrent,
            },
        )

    @asynccontextmanager
    async def ticket(self, conversation_id: int) -> AsyncIterator[AdmissionTicket]:
        granted = self.enter(conversation_id)
        try:
            yield granted
        finally:
            self.leave(conversation_id)

    def status(self) -> dict:
        return {
            "global_count": self.global_count,
            "max_concurrent": self.max_concurrent,
            "active_conversations": sorted(self._active),
        }
