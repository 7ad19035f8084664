import logging
import threading
from typing import Optional

import schedule

from ..analytics.sync import AnalyticsSync
from ..integrations.slack import alert_error, notify
from ..models import SweepReport
from ..stages.cleanup import Cleanup

logger = logging.getLogger(__name__)


class BackgroundScheduler:
    """
    Runs the analytics sweep on a fixed cadence in a daemon thread.

    Runs never overlap: a tick that fires while a sweep is still going is
    skipped. ``stop`` cancels an in-flight sweep between experiments.
    """

    def __init__(
        self,
        sync: AnalyticsSync,
        interval_minutes: int = 60,
        cleanup: Optional[Cleanup] = None,
        poll_seconds: float = 30.0,
    ):
        self.sync = sync
        self.cleanup = cleanup
        self.tick_interval_minutes = interval_minutes if interval_minutes > 0 else 60
        self.poll_seconds = poll_seconds
        self.jobs = schedule.Scheduler()
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._run_lock = threading.Lock()
        self.last_report: Optional[SweepReport] = None

    def start(self):
        if self.running:
            return
        self.running = True
        self._stop.clear()
        self.jobs.clear()
        if self.tick_interval_minutes % 60 == 0:
            self.jobs.every(self.tick_interval_minutes // 60).hours.do(self.run_once)
        else:
            self.jobs.every(self.tick_interval_minutes).minutes.do(self.run_once)
        self.thread = threading.Thread(target=self._run_scheduler, name="adlab-scheduler", daemon=True)
        self.thread.start()
        notify(f"🤖 Analytics sync scheduler started - every {self.tick_interval_minutes} minutes")

    def cancel(self):
        """Ask an in-flight sweep to wind down. Safe to call from a signal handler."""
        self._stop.set()

    def stop(self, timeout: float = 10.0):
        self.running = False
        self._stop.set()
        if self.thread:
            self.thread.join(timeout=timeout)
            self.thread = None
        self.jobs.clear()
        notify("🛑 Analytics sync scheduler stopped")

    def _run_scheduler(self):
        while self.running and not self._stop.is_set():
            self.jobs.run_pending()
            self._stop.wait(self.poll_seconds)

    def run_once(self) -> Optional[SweepReport]:
        """One sweep (plus orphan cleanup). Returns None when a sweep is already running."""
        if not self._run_lock.acquire(blocking=False):
            logger.warning("Previous sweep still running; skipping this tick")
            return None
        try:
            report = self._run_stage_safely(self.sync.sweep, "Analytics sweep", self._stop)
            if report is not None:
                self.last_report = report
            if self.cleanup is not None and not self._stop.is_set():
                self._run_stage_safely(self.cleanup.run, "Cleanup")
            return report
        finally:
            self._run_lock.release()

    def _run_stage_safely(self, stage_func, stage_name: str, *args, **kwargs):
        try:
            return stage_func(*args, **kwargs)
        except Exception as e:
            logger.exception("%s failed", stage_name)
            alert_error(f"{stage_name} failed: {e}")
            return None
