"""
Tests for escrow_release.services.scheduler.

Uses a recording stand-in for the engine so that trigger evaluation is
tested without a database.
"""

import threading
from datetime import timedelta
from uuid import uuid4

import pytest

from conftest import NOW
from escrow_config.schema import TriggerDef
from escrow_kernel.exceptions import InvalidCronExpressionError, ReleaseRunError
from escrow_release.domain.types import RunStatus, RunSummary
from escrow_release.services.scheduler import ReleaseScheduler

HOURLY = TriggerDef(
    name="milestone_hourly",
    cron="0 * * * *",
    classes=("milestone_auto_release", "marketer_scheduled"),
)
BIHOURLY = TriggerDef(
    name="comprehensive_bihourly",
    cron="0 */2 * * *",
    classes=(
        "completed_grace", "milestone_auto_release", "marketer_scheduled", "overdue_escrow",
    ),
)


class FakeEngine:
    """Records run_once() calls and returns canned summaries."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error
        self.called = threading.Event()

    def run_once(self, now=None, *, trigger="manual", classes=None, cancel_event=None, timeout_seconds=None):
        self.calls.append({
            "now": now, "trigger": trigger, "classes": classes, "cancel_event": cancel_event,
        })
        self.called.set()
        if self.error is not None:
            raise self.error
        return RunSummary(
            run_id=uuid4(), trigger=trigger, status=RunStatus.COMPLETED, started_at=now,
        )


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def scheduler(engine, clock):
    return ReleaseScheduler(engine, [HOURLY, BIHOURLY], clock=clock, tick_interval_seconds=1)


class TestTick:
    def test_fires_all_due_triggers(self, scheduler, engine):
        assert scheduler.tick(NOW) == 2
        assert [c["trigger"] for c in engine.calls] == ["milestone_hourly", "comprehensive_bihourly"]
        assert engine.calls[0]["classes"] == HOURLY.classes
        assert engine.calls[1]["classes"] == BIHOURLY.classes
        assert engine.calls[0]["now"] == NOW

    def test_odd_hour_fires_hourly_only(self, scheduler, engine):
        assert scheduler.tick(NOW + timedelta(hours=1)) == 1
        assert engine.calls[0]["trigger"] == "milestone_hourly"

    def test_non_matching_minute(self, scheduler, engine):
        assert scheduler.tick(NOW + timedelta(minutes=7)) == 0
        assert engine.calls == []

    def test_fires_once_per_minute(self, scheduler, engine):
        scheduler.tick(NOW)
        assert scheduler.tick(NOW + timedelta(seconds=30)) == 0
        assert len(engine.calls) == 2
        assert scheduler.last_fired_at("milestone_hourly") == NOW

    def test_defaults_to_clock(self, scheduler, engine):
        assert scheduler.tick() == 2

    def test_passes_stop_event_as_cancel(self, scheduler, engine):
        scheduler.tick(NOW)
        assert isinstance(engine.calls[0]["cancel_event"], threading.Event)

    def test_disabled_triggers_ignored(self, engine, clock):
        disabled = TriggerDef(name="off", cron="* * * * *", classes=(), enabled=False)
        scheduler = ReleaseScheduler(engine, [disabled, HOURLY], clock=clock)
        assert scheduler.trigger_names == ["milestone_hourly"]

    def test_invalid_cron_rejected(self, engine):
        with pytest.raises(InvalidCronExpressionError):
            ReleaseScheduler(engine, [TriggerDef(name="bad", cron="61 * * * *", classes=())])


class TestFailures:
    def test_run_error_is_logged_and_next_trigger_fires(self, clock, captured_logs):
        engine = FakeEngine(error=ReleaseRunError("r-1", "store unreachable"))
        scheduler = ReleaseScheduler(engine, [HOURLY, BIHOURLY], clock=clock)

        assert scheduler.tick(NOW) == 2
        assert len(engine.calls) == 2
        failed = [r for r in captured_logs() if r["message"] == "scheduled_run_failed"]
        assert len(failed) == 2
        assert failed[0]["error_code"] == "RELEASE_RUN_FAILED"

    def test_unexpected_exception_does_not_stop_scheduler(self, clock, captured_logs):
        engine = FakeEngine(error=RuntimeError("boom"))
        scheduler = ReleaseScheduler(engine, [HOURLY], clock=clock)

        assert scheduler.tick(NOW) == 1
        assert any(r["message"] == "scheduled_run_exception" for r in captured_logs())

    def test_success_logs_next_fire(self, scheduler, captured_logs):
        scheduler.tick(NOW)
        fired = [r for r in captured_logs() if r["message"] == "trigger_fired"]
        assert fired[0]["trigger"] == "milestone_hourly"
        assert fired[0]["next_fire_at"].startswith("2024-06-01T13:00:00")


class TestLifecycle:
    def test_start_runs_tick_and_stop_joins(self, scheduler, engine):
        scheduler.start()
        try:
            assert engine.called.wait(timeout=5)
            assert scheduler.is_running
        finally:
            scheduler.stop(timeout=5)
        assert not scheduler.is_running
        assert scheduler.wait(timeout=0)

    def test_start_twice_is_noop(self, scheduler):
        scheduler.start()
        first = scheduler._thread
        scheduler.start()
        assert scheduler._thread is first
        scheduler.stop(timeout=5)
