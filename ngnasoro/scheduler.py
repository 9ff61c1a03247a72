"""
Daily Scheduler Module

In-process trigger for the reminder sweep. Understands daily cron
expressions of the form ``"M H * * *"``, evaluated in UTC (Bamako time).
"""

from datetime import datetime, timezone, timedelta
from typing import Any, Callable, Optional, Tuple
import logging
import threading

from .exceptions import ConfigurationError

logger = logging.getLogger("ngnasoro.scheduler")


def parse_daily_cron(expression: str) -> Tuple[int, int]:
    """
    Parse ``"M H * * *"`` into (minute, hour)

    Raises:
        ConfigurationError: The expression is not a daily schedule
    """
    parts = expression.split()
    if len(parts) != 5 or parts[2:] != ["*", "*", "*"]:
        raise ConfigurationError(
            f"Only daily cron expressions 'M H * * *' are supported, got {expression!r}"
        )
    try:
        minute, hour = int(parts[0]), int(parts[1])
    except ValueError:
        raise ConfigurationError(f"Invalid minute or hour in cron expression {expression!r}")
    if not 0 <= minute <= 59 or not 0 <= hour <= 23:
        raise ConfigurationError(f"Minute or hour out of range in {expression!r}")
    return minute, hour


def compute_next_run(now: datetime, minute: int, hour: int) -> datetime:
    """First firing time strictly after ``now``"""
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class DailyScheduler:
    """
    Runs a job once a day on a background thread
    """

    def __init__(
        self,
        job: Callable[[], Any],
        cron: str = "0 8 * * *",
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.job = job
        self.cron = cron
        self.minute, self.hour = parse_daily_cron(cron)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self.running = False
        self.last_run: Optional[datetime] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.RLock()

    def next_run(self) -> datetime:
        return compute_next_run(self.clock(), self.minute, self.hour)

    def run_pending(self) -> bool:
        """Run the job now. Returns False if it raised."""
        self.last_run = self.clock()
        try:
            self.job()
            return True
        except Exception:
            logger.exception("Scheduled job failed")
            return False

    def following_run(self, scheduled: datetime) -> datetime:
        """Firing time after the run scheduled at ``scheduled``, never the same one again"""
        return compute_next_run(max(scheduled, self.clock()), self.minute, self.hour)

    def _loop(self) -> None:
        next_run = self.next_run()
        while not self._stop_event.is_set():
            delay = (next_run - self.clock()).total_seconds()
            logger.info("Next scheduled run at %s", next_run.isoformat())
            if self._stop_event.wait(timeout=max(delay, 0)):
                break
            # The wall clock was set back while we waited
            if self.clock() < next_run:
                continue
            self.run_pending()
            next_run = self.following_run(next_run)

    def start(self) -> None:
        """Start the scheduler thread"""
        with self._lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._loop, name="ngnasoro-scheduler")
            self._thread.daemon = True
            self._thread.start()
            self.running = True
        logger.info("DailyScheduler started with cron %r", self.cron)

    def stop(self) -> None:
        """Stop the scheduler thread"""
        with self._lock:
            if not self.running:
                return
            self._stop_event.set()
            if self._thread:
                self._thread.join(timeout=5.0)
            self._thread = None
            self.running = False
        logger.info("DailyScheduler stopped")

    def is_running(self) -> bool:
        return self.running
