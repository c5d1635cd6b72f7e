from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from aiogram import Bot
from aiogram.enums import ChatAction, ParseMode
from aiogram.exceptions import TelegramBadRequest
from aiogram.types import Message

from pairbot.bot.templates import DISCLAIMER, analysing_text, fetching_text, outcome_text, with_disclaimer
from pairbot.core.fmt import split_message, strip_markdown
from pairbot.core.models import AnalysisOutcome, ResolutionVerdict, StreamSegment
from pairbot.services.orchestrator import STAGE_ANALYSING

logger = logging.getLogger(__name__)

# pause between chunks of one long message
CHUNK_DELAY_SEC = 0.1


class TelegramDeliverySink:
    """Delivers one analysis to a Telegram chat: status message, segments, closing notice."""

    def __init__(self, bot: Bot, reply_to_message_id: int | None = None) -> None:
        self.bot = bot
        self.reply_to_message_id = reply_to_message_id
        self._status: Message | None = None
        self._final_sent = False

    async def _send_markdown(self, chat_id: int, text: str) -> None:
        chunks = split_message(text)
        for idx, chunk in enumerate(chunks):
            try:
                await self.bot.send_message(chat_id, chunk, parse_mode=ParseMode.MARKDOWN)
            except TelegramBadRequest as exc:
                logger.info(
                    "markdown_rejected",
                    extra={"event": "markdown_rejected", "chat_id": chat_id, "error": str(exc)[:200]},
                )
                await self.bot.send_message(chat_id, strip_markdown(chunk), parse_mode=None)
            if idx < len(chunks) - 1:
                await asyncio.sleep(CHUNK_DELAY_SEC)

    async def _drop_status(self, chat_id: int) -> None:
        if self._status is None:
            return
        status, self._status = self._status, None
        with suppress(Exception):
            await self.bot.delete_message(chat_id, status.message_id)

    async def progress(self, conversation_id: int, stage: str, symbol: str | None) -> None:
        if not symbol:
            return
        text = analysing_text(symbol) if stage == STAGE_ANALYSING else fetching_text(symbol)
        try:
            if self._status is None:
                self._status = await self.bot.send_message(
                    conversation_id,
                    text,
                    reply_to_message_id=self.reply_to_message_id,
                )
            else:
                await self.bot.edit_message_text(
                    text,
                    chat_id=conversation_id,
                    message_id=self._status.message_id,
                )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "status_update_failed",
                extra={"event": "status_update_failed", "chat_id": conversation_id, "stage": stage, "error": str(exc)[:200]},
            )

    async def deliver(self, conversation_id: int, segment: StreamSegment) -> None:
        content = with_disclaimer(segment.content) if segment.is_final else segment.content
        if segment.is_final:
            self._final_sent = True
        try:
            await self._send_markdown(conversation_id, content)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "segment_delivery_failed",
                extra={
                    "event": "segment_delivery_failed",
                    "chat_id": conversation_id,
                    "sequence_index": segment.sequence_index,
                    "error": str(exc)[:200],
                },
            )
        await self._drop_status(conversation_id)
        if not segment.is_final:
            with suppress(Exception):
                await self.bot.send_chat_action(chat_id=conversation_id, action=ChatAction.TYPING)

    async def notify(
        self,
        conversation_id: int,
        outcome: AnalysisOutcome,
        verdict: ResolutionVerdict | None,
        error_code: str | None = None,
    ) -> None:
        await self._drop_status(conversation_id)
        if outcome is AnalysisOutcome.COMPLETED and not self._final_sent:
            # the closing marker arrived right after a section break
            try:
                await self._send_markdown(conversation_id, DISCLAIMER.strip())
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "disclaimer_delivery_failed",
                    extra={"event": "disclaimer_delivery_failed", "chat_id": conversation_id, "error": str(exc)[:200]},
                )
            self._final_sent = True
        text = outcome_text(outcome, error_code)
        if not text:
            return
        try:
            await self.bot.send_message(conversation_id, text, reply_to_message_id=self.reply_to_message_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "notice_delivery_failed",
                extra={
                    "event": "notice_delivery_failed",
                    "chat_id": conversation_id,
                    "outcome": outcome.value,
                    "symbol": verdict.instrument_symbol if verdict else None,
                    "error": str(exc)[:200],
                },
            )
