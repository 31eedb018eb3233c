"""
Tests for the recurring task scheduler and the bounded shutdown.
"""
import pytest
from flask import current_app

from mailpipe import create_app, init_scheduler
from mailpipe.config import TestingConfig as BaseTestingConfig
from mailpipe.exceptions import NotFound
from mailpipe.models import db
from mailpipe.scheduler import DISPATCH_SCAN, EXECUTION_LOG_PURGE, GENERATION_SCAN, ScanScheduler


@pytest.fixture
def scheduler(app, engine):
    scheduler = ScanScheduler(app, engine)
    scheduler.register_default_tasks()
    yield scheduler
    if scheduler.running:
        scheduler.shutdown(timeout=0)


class TestTasks:

    def test_default_tasks(self, scheduler):
        assert sorted(scheduler.task_names()) == sorted([GENERATION_SCAN, DISPATCH_SCAN, EXECUTION_LOG_PURGE])

    def test_start_schedules_next_runs(self, scheduler):
        scheduler.start()

        tasks = {t["name"]: t for t in scheduler.tasks()}

        assert scheduler.running is True
        assert tasks[GENERATION_SCAN]["next_run_time"] is not None
        assert tasks[GENERATION_SCAN]["paused"] is False

    def test_pause_and_resume(self, scheduler):
        scheduler.start()

        scheduler.pause(DISPATCH_SCAN)
        paused = {t["name"]: t for t in scheduler.tasks()}[DISPATCH_SCAN]
        scheduler.resume(DISPATCH_SCAN)
        resumed = {t["name"]: t for t in scheduler.tasks()}[DISPATCH_SCAN]

        assert paused["paused"] is True
        assert resumed["paused"] is False

    def test_cancel(self, scheduler):
        scheduler.cancel(EXECUTION_LOG_PURGE)
        assert EXECUTION_LOG_PURGE not in scheduler.task_names()

    @pytest.mark.parametrize("action", ["pause", "resume", "cancel"])
    def test_unknown_task(self, scheduler, action):
        with pytest.raises(NotFound):
            getattr(scheduler, action)("heartbeat")

    def test_tasks_run_inside_app_context(self, app, scheduler):
        seen = []
        scheduler.add_recurring("heartbeat", lambda: seen.append(current_app.name), seconds=3600)

        job = scheduler._scheduler.get_job("heartbeat")
        job.func()

        assert seen == [app.name]


class TestShutdown:

    def test_clean_shutdown(self, scheduler):
        scheduler.start()
        assert scheduler.shutdown(timeout=1) is True
        assert scheduler.running is False

    def test_shutdown_times_out_with_scan_in_flight(self, scheduler, engine):
        scheduler.start()
        engine.generation.in_flight.try_acquire(engine.generation.SCAN_KEY)

        assert scheduler.shutdown(timeout=0.1) is False
        assert scheduler.running is False

    def test_shutdown_waits_for_running_pipeline(self, scheduler, engine):
        scheduler.start()
        engine.orchestrator.running.try_acquire("WELCOME_NEW_MEMBER")

        assert scheduler.shutdown(timeout=0.1) is False

    def test_shutdown_when_not_started(self, scheduler):
        assert scheduler.shutdown(timeout=0) is True


class SchedulerEnabledConfig(BaseTestingConfig):
    SCHEDULER_ENABLED = True


class TestInitScheduler:

    def test_disabled_by_default_in_tests(self, app):
        assert init_scheduler(app) is None

    def test_enabled(self):
        app = create_app(SchedulerEnabledConfig)
        engine = app.extensions["mailpipe"]
        try:
            assert engine.scheduler is not None
            assert engine.scheduler.running is True
            assert sorted(engine.scheduler.task_names()) == sorted(
                [GENERATION_SCAN, DISPATCH_SCAN, EXECUTION_LOG_PURGE]
            )
        finally:
            engine.scheduler.shutdown(timeout=0)
            with app.app_context():
                db.drop_all()
