from __future__ import annotations

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from pairbot.core.config import get_settings
from pairbot.core.container import ServiceHub

logger = logging.getLogger(__name__)


class WorkerScheduler:
    def __init__(self, hub: ServiceHub) -> None:
        self.hub = hub
        self.settings = get_settings()
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    async def _warm_universe(self) -> None:
        try:
            await self.hub.registry.warm()
        except Exception as exc:  # noqa: BLE001
            logger.warning("universe_warm_failed", extra={"event": "universe_warm_failed", "error": str(exc)})

    async def _log_admission(self) -> None:
        snapshot = self.hub.admission.status()
        logger.info(
            "admission_snapshot",
            extra={
                "event": "admission_snapshot",
                "global_count": snapshot["global_count"],
                "max_concurrent": snapshot["max_concurrent"],
            },
        )

    def start(self) -> None:
        self.scheduler.add_job(
            self._warm_universe,
            "interval",
            minutes=self.settings.universe_warm_interval_min,
            max_instances=1,
        )
        self.scheduler.add_job(self._log_admission, "interval", minutes=5, max_instances=1)
        self.scheduler.start()

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
