"""Job scheduling for periodic workflow runs."""

import logging
import os
import time as _time
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import pytz
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger("prnudge.scheduler")

# Heartbeat file for health checks, written on start and after each run
_default_heartbeat = "/app/data/heartbeat" if Path("/app").is_dir() else "data/heartbeat"
HEARTBEAT_PATH = Path(os.environ.get("HEARTBEAT_PATH", _default_heartbeat)).resolve()


def _write_heartbeat() -> None:
    """Write current timestamp to heartbeat file for health checks."""
    try:
        HEARTBEAT_PATH.parent.mkdir(parents=True, exist_ok=True)
        HEARTBEAT_PATH.write_text(str(int(_time.time())))
    except OSError as e:
        logger.warning(f"Failed to write heartbeat: {e}")


def check_heartbeat(max_age_seconds: int = 4200) -> bool:
    """Check if the heartbeat file is recent enough.

    Args:
        max_age_seconds: Maximum age in seconds, see heartbeat_max_age.

    Returns:
        True if heartbeat is recent.
    """
    try:
        if not HEARTBEAT_PATH.exists():
            return False
        ts = int(HEARTBEAT_PATH.read_text().strip())
        return (_time.time() - ts) < max_age_seconds
    except (OSError, ValueError):
        return False


def interval_seconds(value: int, unit: str) -> int:
    """Convert a poll interval to seconds.

    Raises:
        ValueError: If unit is not 'h' or 'm'.
    """
    if unit == "h":
        return value * 3600
    if unit == "m":
        return value * 60
    raise ValueError(f"Unsupported interval unit '{unit}', expected 'h' or 'm'")


def heartbeat_max_age(interval: int, unit: str, grace_seconds: int = 600) -> int:
    """Oldest heartbeat still considered healthy for a poll interval.

    The heartbeat is written once per run, so it ages by a full interval plus
    the duration of the run before it is refreshed.
    """
    return interval_seconds(interval, unit) + grace_seconds


class WorkflowScheduler:
    """Runs the workflow on a fixed interval, one run at a time."""

    def __init__(self, timezone: str = "UTC"):
        """Initialize scheduler.

        Args:
            timezone: Timezone for the scheduler (IANA format).
        """
        self.timezone = pytz.timezone(timezone)
        self.scheduler = BlockingScheduler(timezone=self.timezone)
        self._workflow_job_id = "workflow"

    def schedule_workflow(
        self,
        interval: int,
        unit: str,
        workflow_func: Callable[[], object],
        run_immediately: bool = False,
    ) -> None:
        """Schedule the periodic workflow job.

        Args:
            interval: Interval between runs.
            unit: 'h' for hours or 'm' for minutes.
            workflow_func: Function to call for each run.
            run_immediately: Fire the first run at start instead of after one interval.
        """
        seconds = interval_seconds(interval, unit)

        def _workflow_with_heartbeat() -> None:
            try:
                workflow_func()
            except Exception:
                logger.exception("Workflow run failed")
            finally:
                _write_heartbeat()

        trigger = IntervalTrigger(seconds=seconds, timezone=self.timezone)
        kwargs = {}
        if run_immediately:
            kwargs["next_run_time"] = datetime.now(self.timezone)

        self.scheduler.add_job(
            _workflow_with_heartbeat,
            trigger,
            id=self._workflow_job_id,
            replace_existing=True,
            name="PR Nudge Workflow",
            misfire_grace_time=seconds,
            coalesce=True,
            max_instances=1,
            **kwargs,
        )

        logger.info(f"Scheduled workflow every {interval}{unit}")

    def start(self) -> None:
        """Start the scheduler (blocking)."""
        logger.info("Starting scheduler...")
        _write_heartbeat()
        self.scheduler.start()

    def stop(self) -> None:
        """Stop the scheduler."""
        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=False)

    def get_next_run_time(self, job_id: str | None = None) -> datetime | None:
        """Get next scheduled run time.

        Args:
            job_id: Specific job ID, or None for the workflow job.

        Returns:
            Next run datetime if scheduled.
        """
        job = self.scheduler.get_job(job_id or self._workflow_job_id)
        if job:
            return getattr(job, "next_run_time", None)
        return None
