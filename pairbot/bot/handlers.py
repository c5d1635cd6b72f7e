from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from aiogram import F, Router
from aiogram.enums import ChatAction
from aiogram.filters import Command
from aiogram.types import Message

from pairbot.bot.delivery import TelegramDeliverySink
from pairbot.bot.templates import help_text, status_text, welcome_text
from pairbot.core.config import get_settings
from pairbot.core.container import ServiceHub

router = Router()
_settings = get_settings()
_hub: ServiceHub | None = None
logger = logging.getLogger(__name__)

SEEN_MESSAGE_TTL_SEC = 60 * 60 * 6


def init_handlers(hub: ServiceHub) -> None:
    global _hub
    _hub = hub


def _require_hub() -> ServiceHub:
    if _hub is None:
        raise RuntimeError("Service hub not initialized")
    return _hub


async def _acquire_message_once(message: Message, ttl: int = SEEN_MESSAGE_TTL_SEC) -> bool:
    hub = _require_hub()
    key = f"seen:message:{message.chat.id}:{message.message_id}"
    try:
        return await hub.cache.set_if_absent(key, ttl=ttl)
    except Exception:  # noqa: BLE001
        logger.exception("dedupe_cache_error", extra={"event": "dedupe_cache_error", "chat_id": message.chat.id})
        return True


async def _typing_loop(bot, chat_id: int, stop: asyncio.Event) -> None:
    while not stop.is_set():
        with suppress(Exception):
            await bot.send_chat_action(chat_id=chat_id, action=ChatAction.TYPING)
        try:
            await asyncio.wait_for(stop.wait(), timeout=4.0)
        except asyncio.TimeoutError:
            pass


@router.message(Command("start"))
async def start_cmd(message: Message) -> None:
    name = message.from_user.first_name if message.from_user else None
    logger.info(
        "bot_started",
        extra={
            "event": "bot_started",
            "chat_id": message.chat.id,
            "user_id": message.from_user.id if message.from_user else None,
        },
    )
    await message.answer(welcome_text(name))


@router.message(Command("help"))
async def help_cmd(message: Message) -> None:
    await message.answer(help_text())


@router.message(Command("status"))
async def status_cmd(message: Message) -> None:
    hub = _require_hub()
    await message.answer(status_text(hub.admission.status()))


@router.message(F.new_chat_members)
async def new_members(message: Message) -> None:
    if not _settings.enable_new_member_welcome:
        return
    for member in message.new_chat_members or []:
        if member.is_bot:
            continue
        logger.info(
            "member_welcomed",
            extra={"event": "member_welcomed", "chat_id": message.chat.id, "user_id": member.id},
        )
        with suppress(Exception):
            await message.answer(welcome_text(member.first_name))


@router.message(F.text)
async def route_text(message: Message) -> None:
    hub = _require_hub()
    text = (message.text or "").strip()
    chat_id = message.chat.id

    if not text or text.startswith("/"):
        return

    if not await _acquire_message_once(message):
        logger.info(
            "duplicate_message_ignored",
            extra={"event": "duplicate_message_ignored", "chat_id": chat_id},
        )
        return

    logger.info(
        "message_received",
        extra={
            "event": "message_received",
            "chat_id": chat_id,
            "user_id": message.from_user.id if message.from_user else None,
            "count": len(text),
        },
    )

    sink = TelegramDeliverySink(message.bot, reply_to_message_id=message.message_id)
    stop = asyncio.Event()
    typing_task = asyncio.create_task(_typing_loop(message.bot, chat_id, stop))
    try:
        await hub.orchestrator.handle(chat_id, text, sink)
    except Exception as exc:  # noqa: BLE001
        logger.exception("route_text_failed", extra={"event": "route_text_failed", "chat_id": chat_id, "error": str(exc)})
    finally:
        stop.set()
        typing_task.cancel()
        with suppress(Exception):
            await typing_task
