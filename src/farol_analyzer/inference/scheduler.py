"""
Daily scheduler for the update job.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

# Initialize logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def local_now() -> datetime:
    # Naive wall-clock time; the UTC offset is resolved per date when measuring waits
    return datetime.now()


def next_run_at(now: datetime, hour: int, minute: int) -> datetime:
    """Next occurrence of hour:minute strictly after now (tomorrow if already passed)."""
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def time_until_next_run(now: datetime, hour: int, minute: int) -> timedelta:
    """
    Time to wait before the next scheduled run.

    The trigger is found on the wall clock, then both ends are converted
    to absolute time, so a daylight saving change in between shortens or
    lengthens the wait by the shift instead of moving the trigger.

    Args:
        now: Current time, naive local or aware
        hour: Scheduled hour (0-23)
        minute: Scheduled minute (0-59)

    Returns:
        Positive timedelta, about one day at most
    """
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        raise ValueError(f"Invalid schedule time {hour}:{minute}")
    return next_run_at(now, hour, minute).astimezone(timezone.utc) - now.astimezone(timezone.utc)


def format_duration(seconds: float) -> str:
    """Human readable duration: "3h 5m", "12m" or "40s"."""
    total_seconds = int(seconds)
    minutes = total_seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m"
    if minutes > 0:
        return f"{minutes}m"
    return f"{total_seconds}s"


class Scheduler:
    """
    Runs the orchestrator once a day at a fixed local time.

    start() blocks until stop() is called from another thread (or a signal
    handler). Stopping only prevents the next run; a run in progress is not
    interrupted.

    Args:
        orchestrator: Object with run_with_retry()
        hour: Scheduled hour
        minute: Scheduled minute
        clock: Source of the current time
    """

    def __init__(
        self,
        orchestrator,
        hour: int = 3,
        minute: int = 0,
        clock: Callable[[], datetime] = local_now,
    ):
        time_until_next_run(clock(), hour, minute)
        self.orchestrator = orchestrator
        self.hour = hour
        self.minute = minute
        self.clock = clock
        self._stop_event = threading.Event()
        self._job_lock = threading.Lock()
        self._stopped = True

    @property
    def scheduled_time(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"

    @property
    def is_running(self) -> bool:
        return self._job_lock.locked()

    def execute_job(self) -> Optional[Any]:
        """Run the job now unless a scheduled run is already executing."""
        if not self._job_lock.acquire(blocking=False):
            logger.warning("Job is already running, skipping this execution")
            return None
        try:
            logger.info("Starting scheduled job execution...")
            result = self.orchestrator.run_with_retry()
            if result is None:
                logger.warning("Orchestrator busy, execution skipped")
            elif result.ok:
                logger.info(f"Job completed with status: {result.value.status}")
            else:
                logger.error(f"Job failed: {result.error.message}")
            return result
        except Exception as e:
            logger.exception(f"Unexpected error during job execution: {e}")
            return None
        finally:
            self._job_lock.release()

    def start(self, run_immediately: bool = False) -> None:
        logger.info(f"Starting scheduler, scheduled time: {self.scheduled_time} daily")
        self._stopped = False
        self._stop_event.clear()

        if run_immediately:
            logger.info("Running immediately as requested...")
            self.execute_job()

        while not self._stop_event.is_set():
            now = self.clock()
            wait = time_until_next_run(now, self.hour, self.minute)
            logger.info(
                f"Next run scheduled for {next_run_at(now, self.hour, self.minute).isoformat()} "
                f"(in {format_duration(wait.total_seconds())})"
            )
            if self._stop_event.wait(wait.total_seconds()):
                break
            self.execute_job()

        self._stopped = True
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        logger.info("Stopping scheduler...")
        self._stopped = True
        self._stop_event.set()

    def get_status(self) -> Dict[str, Any]:
        wait = None
        if not self._stopped:
            wait = time_until_next_run(self.clock(), self.hour, self.minute)
        return {
            "is_running": self.is_running,
            "is_stopped": self._stopped,
            "next_run_in": format_duration(wait.total_seconds()) if wait is not None else None,
            "scheduled_time": self.scheduled_time,
        }
