from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiogram.types import BotCommand, Update
from fastapi import FastAPI, HTTPException, Request

from pairbot.adapters.exchanges.binance import BinanceExchangeAdapter
from pairbot.adapters.llm import build_llm_provider
from pairbot.bot.handlers import init_handlers, router
from pairbot.core.cache import RedisCache
from pairbot.core.config import Settings, get_settings
from pairbot.core.container import ServiceHub
from pairbot.core.http import ResilientHTTPClient
from pairbot.core.logging import setup_logging
from pairbot.services.admission import AdmissionGate
from pairbot.services.analysis import AnalysisService
from pairbot.services.classifier import IntentClassifier
from pairbot.services.orchestrator import Orchestrator
from pairbot.services.registry import InstrumentRegistry
from pairbot.services.resolver import PairResolver
from pairbot.services.validator import ExistenceValidator
from pairbot.workers.scheduler import WorkerScheduler

logger = logging.getLogger(__name__)


async def _sync_bot_commands(bot: Bot) -> None:
    command_specs = [
        ("help", "How to ask for a pair analysis"),
        ("start", "Welcome and examples"),
        ("status", "Show running analyses"),
    ]
    await bot.set_my_commands([BotCommand(command=c, description=d) for c, d in command_specs])


def build_hub(settings: Settings, bot: Bot, cache: RedisCache, http: ResilientHTTPClient) -> ServiceHub:
    llm = build_llm_provider(settings, http)
    exchange = BinanceExchangeAdapter(
        http=http,
        spot_base_url=settings.binance_base_url,
        futures_base_url=settings.binance_futures_base_url,
        catalog_timeout_sec=settings.catalog_timeout_sec,
        probe_timeout_sec=settings.probe_timeout_sec,
    )
    registry = InstrumentRegistry(
        exchange,
        cache=cache,
        ttl_min=settings.universe_ttl_min,
        timeout_sec=settings.catalog_timeout_sec,
        prefer_spot=settings.prefer_spot_on_overlap,
    )
    resolver = PairResolver(
        classifier=IntentClassifier(
            llm,
            model=settings.classify_model(),
            max_tokens=settings.ai_classify_max_tokens,
        ),
        validator=ExistenceValidator(
            exchange,
            timeout_sec=settings.probe_timeout_sec,
            prefer_spot=settings.prefer_spot_on_overlap,
        ),
        registry=registry,
        grounding_quote=settings.grounding_quote,
        primary_cap=settings.grounding_primary_cap,
        secondary_cap=settings.grounding_secondary_cap,
    )
    analysis_service = AnalysisService(
        llm,
        exchange,
        intervals=settings.kline_intervals_list(),
        kline_limit=settings.kline_limit,
        temperature=settings.ai_analysis_temperature,
        max_tokens=settings.ai_analysis_max_tokens,
        display_timezone=settings.timezone,
    )
    admission = AdmissionGate(settings.max_concurrent_analysis)

    return ServiceHub(
        bot=bot,
        cache=cache,
        llm=llm,
        exchange=exchange,
        registry=registry,
        resolver=resolver,
        analysis_service=analysis_service,
        admission=admission,
        orchestrator=Orchestrator(admission, resolver, analysis_service),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.log_level)

    if not settings.telegram_bot_token:
        raise RuntimeError("TELEGRAM_BOT_TOKEN is required")
    if not settings.ai_api_key:
        raise RuntimeError("AI_API_KEY is required")

    cache = RedisCache(settings.redis_url)
    http = ResilientHTTPClient()

    bot = Bot(token=settings.telegram_bot_token, default=DefaultBotProperties(parse_mode=ParseMode.HTML))
    dp = Dispatcher()

    hub = build_hub(settings, bot, cache, http)
    try:
        await _sync_bot_commands(bot)
    except Exception as exc:  # noqa: BLE001
        logger.warning("set_bot_commands_failed", extra={"event": "set_bot_commands_failed", "error": str(exc)})
    init_handlers(hub)
    dp.include_router(router)

    scheduler = WorkerScheduler(hub)
    scheduler.start()

    logger.info(
        "bot_configured",
        extra={
            "event": "bot_configured",
            "provider": hub.llm.name,
            "model": hub.llm.model,
            "max_concurrent": settings.max_concurrent_analysis,
        },
    )

    polling_task = None
    if settings.telegram_use_webhook:
        webhook_url = settings.telegram_webhook_url.rstrip("/") + settings.telegram_webhook_path
        try:
            await bot.set_webhook(webhook_url, secret_token=settings.telegram_webhook_secret or None)
            logger.info("webhook_configured", extra={"event": "webhook_configured"})
        except Exception as exc:  # noqa: BLE001
            logger.exception("webhook_configure_failed", extra={"event": "webhook_configure_failed", "error": str(exc)})
    else:
        polling_task = asyncio.create_task(dp.start_polling(bot, allowed_updates=dp.resolve_used_update_types()))

    app.state.settings = settings
    app.state.hub = hub
    app.state.dp = dp
    app.state.bot = bot
    app.state.http = http
    app.state.cache = cache
    app.state.scheduler = scheduler
    app.state.polling_task = polling_task

    try:
        yield
    finally:
        scheduler.stop()
        if polling_task:
            polling_task.cancel()
            with contextlib.suppress(Exception):
                await polling_task
        await bot.session.close()
        await http.close()
        await cache.close()


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="pairbot", version="1.0.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/ready")
    async def ready() -> dict:
        try:
            if not await app.state.cache.ping():
                raise RuntimeError("Redis ping failed")
            return {"status": "ready"}
        except Exception as exc:  # noqa: BLE001
            raise HTTPException(status_code=503, detail=str(exc)) from exc

    @app.get("/status")
    async def status() -> dict:
        return app.state.hub.admission.status()

    @app.post(settings.telegram_webhook_path)
    async def telegram_webhook(req: Request) -> dict:
        app_settings = app.state.settings
        if not app_settings.telegram_use_webhook:
            raise HTTPException(status_code=400, detail="Webhook mode disabled")

        if app_settings.telegram_webhook_secret:
            secret = req.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
            if secret != app_settings.telegram_webhook_secret:
                raise HTTPException(status_code=403, detail="Invalid secret")

        payload = await req.json()
        update = Update.model_validate(payload)
        await app.state.dp.feed_update(app.state.bot, update)
        return {"ok": True}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run("pairbot.main:app", host=settings.host, port=settings.port, reload=False)
