import logging
import os
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from metrics_service import MetricsService

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = int(os.getenv("CACHE_PURGE_INTERVAL_MINUTES", "60"))
MIN_INTERVAL_MINUTES = 5


class CacheMaintenanceScheduler:
    def __init__(self, service: MetricsService, interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
                 scheduler: Optional[BackgroundScheduler] = None):
        self.service = service
        self.interval_minutes = max(MIN_INTERVAL_MINUTES, interval_minutes)
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self._started:
            return

        self._scheduler.add_job(
            self.run_purge_cycle,
            "interval",
            minutes=self.interval_minutes,
            id="social_cache_purge",
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._started = True
        logger.info("Limpeza de cache agendada (intervalo %s minutos).", self.interval_minutes)

    def shutdown(self) -> None:
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False

    def run_purge_cycle(self) -> int:
        try:
            count = self.service.purge_expired()
        except Exception as err:  # noqa: BLE001
            logger.exception("Falha na limpeza do cache: %s", err)
            return 0
        if count:
            logger.info("Limpeza do cache removeu %s registro(s).", count)
        return count
