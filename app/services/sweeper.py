import logging
import threading
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler

from app.services.otp import OtpStore

LOGGER = logging.getLogger(__name__)

SWEEP_JOB_ID = "sweep_expired_otps"


class ExpirySweeper:
    """Recurring purge of expired codes, started and stopped with the app."""

    def __init__(self, store: OtpStore, interval_seconds: int) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._store = store
        self._interval_seconds = interval_seconds
        self._scheduler: Optional[BackgroundScheduler] = None
        self._run_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def run_once(self) -> int:
        with self._run_lock:
            removed = self._store.sweep()
        if removed:
            LOGGER.info("Swept %s expired OTP record(s)", removed)
        return removed

    def start(self) -> None:
        if self.running:
            return
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.run_once,
            "interval",
            seconds=self._interval_seconds,
            id=SWEEP_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        LOGGER.info("OTP sweeper started interval=%ss", self._interval_seconds)

    def stop(self) -> None:
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None and scheduler.running:
            scheduler.shutdown(wait=False)
            LOGGER.info("OTP sweeper stopped")
