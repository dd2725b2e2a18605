"""Reallocation Scheduler - APScheduler integration for periodic optimization.

This module provides the periodic trigger for the batch driver with:
- Interval scheduling (hourly by default, UTC)
- Task registration
- Error handling and a circuit breaker for critical failures
"""

from datetime import datetime
from typing import Any, Callable, Dict, Optional

import pytz
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.utils.exceptions import ConfigurationError, StorageError
from src.utils.logging import get_logger

logger = get_logger(__name__)

UTC = pytz.utc

OPTIMIZATION_JOB_ID = "yield_optimization"


class ReallocationScheduler:
    """APScheduler wrapper for the reallocation batch.

    Example:
        >>> scheduler = ReallocationScheduler({"interval_minutes": 60})
        >>> scheduler.schedule_optimization(workflow.optimization_cycle)
        >>> scheduler.start()
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """Initialize the scheduler.

        Args:
            config: Configuration dictionary with scheduler settings
                - interval_minutes: Batch interval (default: 60)
                - max_instances: Max concurrent job instances (default: 1)
                - coalesce: Combine missed runs (default: True)
                - misfire_grace_time: Seconds a late run may still start (default: 300)
        """
        self.config = config or {}
        self.timezone = UTC
        self.interval_minutes = self.config.get("interval_minutes", 60)
        if self.interval_minutes <= 0:
            raise ValueError(f"interval_minutes must be > 0, got {self.interval_minutes}")

        self.scheduler = BackgroundScheduler(
            timezone=self.timezone,
            job_defaults={
                "coalesce": self.config.get("coalesce", True),
                "max_instances": self.config.get("max_instances", 1),
                "misfire_grace_time": self.config.get("misfire_grace_time", 300),
            },
        )

        self.tasks: Dict[str, dict] = {}
        self.last_run: Dict[str, datetime] = {}
        self.circuit_breaker_active = False

        self.scheduler.add_listener(self._on_job_executed, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

        logger.info(
            "ReallocationScheduler initialized (interval: %d min, timezone: %s)",
            self.interval_minutes,
            self.timezone,
        )

    def schedule_optimization(self, func: Callable, run_immediately: bool = False) -> None:
        """Register the batch driver on the configured interval.

        Args:
            func: Callable running one optimization cycle
            run_immediately: Also fire once as soon as the scheduler starts
        """
        self.register_task(OPTIMIZATION_JOB_ID, func, self.interval_minutes, run_immediately)

    def register_task(
        self,
        name: str,
        func: Callable,
        interval_minutes: float,
        run_immediately: bool = False,
    ) -> None:
        """Register a task on an interval trigger.

        Args:
            name: Unique task identifier
            func: Function to execute
            interval_minutes: Minutes between runs
            run_immediately: First run when the scheduler starts instead of
                one interval later
        """
        if name in self.tasks:
            logger.warning("Task '%s' already registered, replacing", name)

        self.tasks[name] = {
            "func": func,
            "interval_minutes": interval_minutes,
            "run_immediately": run_immediately,
        }

        job_kwargs: Dict[str, Any] = {}
        if run_immediately:
            job_kwargs["next_run_time"] = datetime.now(self.timezone)

        job = self.scheduler.add_job(
            func=self._wrap(name, func),
            trigger=IntervalTrigger(minutes=interval_minutes, timezone=self.timezone),
            id=name,
            name=name,
            replace_existing=True,
            **job_kwargs,
        )

        logger.info(
            "Registered task '%s' every %s min (next run: %s)",
            name,
            interval_minutes,
            getattr(job, "next_run_time", "N/A"),
        )

    def _wrap(self, task_name: str, func: Callable) -> Callable:
        """Wrap function with circuit breaker check and bookkeeping."""

        def wrapped():
            if self.circuit_breaker_active:
                logger.warning("Circuit breaker active, skipping task '%s'", task_name)
                return None

            try:
                logger.info("Executing task '%s'", task_name)
                result = func()
                self.last_run[task_name] = datetime.now(self.timezone)
                logger.info("Task '%s' completed successfully", task_name)
                return result

            except Exception as e:
                logger.error("Task '%s' failed: %s", task_name, e, exc_info=True)
                if self._is_critical_error(e):
                    self.activate_circuit_breaker()
                raise

        return wrapped

    def _is_critical_error(self, error: Exception) -> bool:
        """Errors no retry can fix: broken configuration or record store."""
        return isinstance(error, (ConfigurationError, StorageError))

    def activate_circuit_breaker(self):
        """Pause every job until an operator deactivates the breaker."""
        logger.error("CIRCUIT BREAKER ACTIVATED - Pausing reallocation tasks")
        self.circuit_breaker_active = True

        for job in self.scheduler.get_jobs():
            job.pause()
            logger.info("Paused job '%s'", job.id)

    def deactivate_circuit_breaker(self):
        """Deactivate circuit breaker and resume paused jobs."""
        logger.info("Circuit breaker deactivated - Resuming normal operations")
        self.circuit_breaker_active = False

        for job in self.scheduler.get_jobs():
            if getattr(job, "next_run_time", None) is None:
                job.resume()
                logger.info("Resumed job '%s'", job.id)

    def _on_job_executed(self, event):
        """Event listener for job execution/errors."""
        if event.exception:
            logger.error(
                "Job '%s' raised exception: %s",
                event.job_id,
                event.exception,
                exc_info=event.exception,
            )
        else:
            logger.debug("Job '%s' executed successfully", event.job_id)

    def start(self):
        """Start the scheduler (non-blocking)."""
        if self.scheduler.running:
            logger.warning("Scheduler already running")
            return

        self.scheduler.start()
        logger.info("Scheduler started successfully")

        for job in self.scheduler.get_jobs():
            logger.info("  - %s: next run at %s", job.id, getattr(job, "next_run_time", "N/A"))

    def stop(self, wait: bool = True):
        """Stop the scheduler.

        Args:
            wait: Wait for a running batch to finish
        """
        if not self.scheduler.running:
            logger.warning("Scheduler not running")
            return

        logger.info("Shutting down scheduler...")
        self.scheduler.shutdown(wait=wait)
        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        return self.scheduler.running

    def get_jobs(self) -> list:
        return self.scheduler.get_jobs()

    def get_status(self) -> Dict[str, Any]:
        """Running flag, breaker state and next/last run per job."""
        return {
            "running": self.is_running(),
            "circuit_breaker_active": self.circuit_breaker_active,
            "interval_minutes": self.interval_minutes,
            "jobs": {
                job.id: {
                    "next_run": _iso(getattr(job, "next_run_time", None)),
                    "last_run": _iso(self.last_run.get(job.id)),
                }
                for job in self.scheduler.get_jobs()
            },
        }


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
