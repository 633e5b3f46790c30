"""
Suggestions External Services
=============================

Background housekeeping for stored suggestions (APScheduler).
"""

from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.shared.infrastructure.logging import get_logger
from src.suggestions.application import SuggestionLifecycleManager

logger = get_logger(__name__)


class SuggestionCleanupScheduler:
    """
    Wrapper for APScheduler that periodically prunes expired suggestions.

    Manages the lifecycle of the scheduler and its single job.
    """

    def __init__(self, lifecycle: SuggestionLifecycleManager, interval_seconds: int = 300):
        self.lifecycle = lifecycle
        self.interval_seconds = interval_seconds
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    async def run_cleanup(self) -> int:
        """Job body: prune expired suggestions."""
        return self.lifecycle.prune()

    async def start(self) -> None:
        if self._running:
            logger.warning("Suggestion cleanup scheduler already running")
            return

        self._scheduler = AsyncIOScheduler()
        self._scheduler.add_job(
            self.run_cleanup,
            "interval",
            seconds=self.interval_seconds,
            id="suggestion_cleanup",
            name="Suggestion Cleanup Job",
            misfire_grace_time=60,
            max_instances=1,
            replace_existing=True
        )
        self._scheduler.start()
        self._running = True

        logger.info(
            "Suggestion cleanup scheduler started",
            extra={"interval_seconds": self.interval_seconds}
        )

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        if not self._running:
            return

        if self._scheduler:
            self._scheduler.shutdown(wait=False)

        self._running = False
        logger.info("Suggestion cleanup scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running
