"""Background jobs: periodic health refresh and optional periodic sync."""
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from config.settings import Settings, settings as default_settings
from .health_service import HealthMonitor
from .sync_service import SyncCoordinator


class BackgroundJobs:
    """
    Owns the APScheduler instance. Jobs use ``max_instances=1`` and
    ``coalesce=True`` so a slow run is never overlapped by the next one.
    """

    def __init__(
        self,
        health_monitor: HealthMonitor,
        sync_coordinator: Optional[SyncCoordinator] = None,
        config: Optional[Settings] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.logger = logger.bind(name=self.__class__.__name__)
        self.settings = config or default_settings
        self.health_monitor = health_monitor
        self.sync_coordinator = sync_coordinator
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    def _refresh_health(self):
        try:
            self.health_monitor.refresh()
        except Exception as e:
            self.logger.warning(f"Health refresh job failed: {e}")

    def _run_sync(self):
        result = self.sync_coordinator.sync()
        if not result.success:
            self.logger.warning(f"Scheduled sync finished with {len(result.errors)} errors")

    def start(self):
        self.scheduler.add_job(
            self._refresh_health,
            trigger=IntervalTrigger(seconds=self.settings.health_check_interval_seconds),
            id="health_refresh",
            name="Refresh store health",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        if self.sync_coordinator is not None and self.settings.sync_interval_seconds > 0:
            self.scheduler.add_job(
                self._run_sync,
                trigger=IntervalTrigger(seconds=self.settings.sync_interval_seconds),
                id="periodic_sync",
                name="Synchronize stores",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            self.logger.info(f"Periodic sync every {self.settings.sync_interval_seconds}s")
        else:
            self.logger.info("Periodic sync is disabled")

        self.scheduler.start()
        self.logger.info(f"Health refresh every {self.settings.health_check_interval_seconds}s")

    def shutdown(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            self.logger.info("Background jobs stopped")
