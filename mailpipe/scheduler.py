"""
Recurring background tasks.

Wraps an APScheduler BackgroundScheduler. Every task runs inside the Flask
application context, at most one run per task at a time, and missed runs are
coalesced into one.
"""
import time

from apscheduler.events import EVENT_JOB_ERROR
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler

from mailpipe.exceptions import NotFound
from mailpipe.logging_config import get_logger

logger = get_logger(__name__)

GENERATION_SCAN = "template_generation_scan"
DISPATCH_SCAN = "email_dispatch_scan"
EXECUTION_LOG_PURGE = "execution_log_purge"


class ScanScheduler:
    """Named recurring tasks with pause/resume/cancel and a bounded shutdown."""

    def __init__(self, app, engine, max_workers=3):
        self.app = app
        self.engine = engine
        self._scheduler = BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone="UTC",
        )
        self._scheduler.add_listener(self._on_job_error, EVENT_JOB_ERROR)

    @property
    def running(self):
        return self._scheduler.running

    def _on_job_error(self, event):
        logger.error("Scheduled task failed", task=event.job_id, error=str(event.exception),
                     traceback=event.traceback)

    def _in_app_context(self, func, *args, **kwargs):
        def run():
            with self.app.app_context():
                return func(*args, **kwargs)
        run.__name__ = getattr(func, "__name__", "task")
        return run

    def add_recurring(self, name, func, seconds=None, **trigger_args):
        """
        Register `func` to run every `seconds`, or on a cron trigger when
        cron fields (hour=..., minute=...) are given instead.
        """
        if seconds is not None:
            trigger, trigger_args = "interval", {"seconds": seconds, **trigger_args}
        else:
            trigger = "cron"
        self._scheduler.add_job(
            func=self._in_app_context(func),
            trigger=trigger,
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **trigger_args,
        )
        logger.info("Recurring task registered", task=name, trigger=trigger, **trigger_args)

    def register_default_tasks(self):
        settings = self.engine.settings
        self.add_recurring(GENERATION_SCAN, self.engine.generation.scan,
                           seconds=settings.generation_scan_interval_seconds)
        self.add_recurring(DISPATCH_SCAN, self.engine.dispatch.scan,
                           seconds=settings.dispatch_scan_interval_seconds)
        self.add_recurring(EXECUTION_LOG_PURGE, self.engine.orchestrator.purge_old_executions,
                           hour=3, minute=0)

    def start(self):
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Scheduler started", tasks=self.task_names())

    def task_names(self):
        return [job.id for job in self._scheduler.get_jobs()]

    def tasks(self):
        tasks = []
        for job in self._scheduler.get_jobs():
            # Jobs added before start() have no next_run_time yet
            next_run_time = getattr(job, "next_run_time", None)
            tasks.append({
                "name": job.id,
                "pending": job.pending,
                "next_run_time": next_run_time.isoformat() if next_run_time else None,
                "paused": not job.pending and next_run_time is None,
            })
        return tasks

    def pause(self, name):
        try:
            self._scheduler.pause_job(name)
        except JobLookupError:
            raise NotFound("Scheduled task", name) from None
        logger.info("Scheduled task paused", task=name)

    def resume(self, name):
        try:
            self._scheduler.resume_job(name)
        except JobLookupError:
            raise NotFound("Scheduled task", name) from None
        logger.info("Scheduled task resumed", task=name)

    def cancel(self, name):
        try:
            self._scheduler.remove_job(name)
        except JobLookupError:
            raise NotFound("Scheduled task", name) from None
        logger.info("Scheduled task cancelled", task=name)

    def shutdown(self, timeout=None):
        """
        Stop starting new runs, wait up to `timeout` seconds for running scans
        and pipelines, then stop the scheduler.

        Returns:
            bool: True if everything finished within the timeout
        """
        if timeout is None:
            timeout = self.engine.settings.shutdown_timeout_seconds
        if not self._scheduler.running:
            return True

        self._scheduler.pause()
        deadline = time.monotonic() + timeout

        def remaining():
            return max(0.0, deadline - time.monotonic())

        idle = (
            self.engine.generation.in_flight.wait_until_idle(remaining())
            and self.engine.dispatch.in_flight.wait_until_idle(remaining())
            and self.engine.orchestrator.wait_for_idle(remaining())
        )
        if not idle:
            logger.warning("Shutdown timeout reached with work still running", timeout_seconds=timeout,
                           running_pipelines=self.engine.orchestrator.running_pipelines(),
                           generation_in_progress=self.engine.generation.is_in_progress(),
                           dispatch_in_progress=self.engine.dispatch.is_in_progress())

        self._scheduler.shutdown(wait=idle)
        logger.info("Scheduler stopped", clean=idle)
        return idle
