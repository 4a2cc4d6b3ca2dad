"""
StaleResourceReaper - periodic sweep of abandoned in-flight entries.
Uses APScheduler to run the sweep on a fixed interval, independent of traffic.
"""

from datetime import timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from loguru import logger

from vendorlink.services.tracker import InFlightTracker


class StaleResourceReaper:
    """Removes tracker entries older than ``stale_after`` every ``interval``."""

    JOB_ID = "stale_entry_reaper"

    def __init__(
        self,
        tracker: InFlightTracker,
        interval: timedelta = timedelta(minutes=5),
        stale_after: timedelta = timedelta(minutes=30),
    ):
        self.tracker = tracker
        self.interval = interval
        self.stale_after = stale_after
        self.scheduler: AsyncIOScheduler | None = None
        self._is_running = False

    def sweep(self) -> int:
        """Run one sweep now and return how many entries were removed."""
        removed = self.tracker.remove_stale(self.stale_after)
        if removed:
            logger.info(
                f"Reaped {removed} stale in-flight entries "
                f"(older than {self.stale_after.total_seconds():.0f}s)"
            )
        return removed

    async def sweep_job(self) -> None:
        """Scheduled sweep; runs on the event loop thread."""
        try:
            self.sweep()
        except Exception as e:
            logger.error(f"Error in stale entry sweep: {e}")

    def start(self) -> None:
        """Start the sweep timer. Needs a running event loop."""
        if self._is_running:
            logger.warning("Stale entry reaper is already running")
            return

        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self.sweep_job,
            trigger="interval",
            seconds=self.interval.total_seconds(),
            id=self.JOB_ID,
            name="Stale In-Flight Entry Reaper",
            replace_existing=True,
        )
        self.scheduler.start()
        self._is_running = True

        logger.info(
            f"Stale entry reaper started: sweeping every "
            f"{self.interval.total_seconds():.0f}s"
        )

    def stop(self) -> None:
        """Stop the sweep timer. Safe to call more than once."""
        if not self._is_running:
            return

        if self.scheduler is not None:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
        self._is_running = False
        logger.info("Stale entry reaper stopped")

    def is_running(self) -> bool:
        return self._is_running
