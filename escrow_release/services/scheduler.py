"""
ReleaseScheduler -- fires release runs from cron triggers.

A background thread wakes every ``tick_interval_seconds`` and hands each
due trigger's eligibility classes to ``ReleaseEngine.run_once()``.  Times
come from the injected Clock, and each trigger fires at most once per
matching minute.  ``stop()`` doubles as the cancel signal of the run in
progress, which lets in-flight claims finish before the thread exits.

Several scheduler processes may run side by side: without leader election
they can fire the same trigger, and the conditional claim keeps every
earning to a single release.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Iterable

from escrow_config.schema import TriggerDef
from escrow_kernel.domain.clock import Clock, SystemClock
from escrow_kernel.exceptions import ReleaseRunError
from escrow_kernel.logging_config import get_logger
from escrow_release.domain.schedule import CronSpec, next_fire_time, parse_cron, should_fire

if TYPE_CHECKING:
    from escrow_release.orchestrator import ReleaseEngine

logger = get_logger("release.scheduler")


@dataclass
class _ArmedTrigger:
    definition: TriggerDef
    spec: CronSpec
    last_fired_at: datetime | None = None

    @property
    def name(self) -> str:
        return self.definition.name


class ReleaseScheduler:
    def __init__(
        self,
        engine: ReleaseEngine,
        triggers: Iterable[TriggerDef],
        clock: Clock | None = None,
        tick_interval_seconds: int = 30,
    ):
        self._engine = engine
        self._clock = clock or SystemClock()
        self._tick_interval = tick_interval_seconds
        # parse_cron raises InvalidCronExpressionError before anything starts
        self._armed = [
            _ArmedTrigger(definition, parse_cron(definition.cron))
            for definition in triggers
            if definition.enabled
        ]
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def trigger_names(self) -> list[str]:
        return [armed.name for armed in self._armed]

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def last_fired_at(self, trigger_name: str) -> datetime | None:
        for armed in self._armed:
            if armed.name == trigger_name:
                return armed.last_fired_at
        return None

    def tick(self, now: datetime | None = None) -> int:
        """Fire every trigger due at ``now``; returns how many fired."""
        now = now or self._clock.now()
        fired = 0
        for armed in self._armed:
            if self._stop_event.is_set():
                break
            if should_fire(armed.spec, now, armed.last_fired_at):
                armed.last_fired_at = now
                self._fire(armed, now)
                fired += 1
        return fired

    def _fire(self, armed: _ArmedTrigger, now: datetime) -> None:
        trigger = armed.definition
        try:
            summary = self._engine.run_once(
                now,
                trigger=trigger.name,
                classes=trigger.classes,
                cancel_event=self._stop_event,
            )
        except ReleaseRunError as exc:
            logger.error(
                "scheduled_run_failed",
                extra={"trigger": trigger.name, "error_code": exc.code, "error": str(exc)},
            )
            return
        except Exception:
            # one bad run must not take the scheduler thread down
            logger.exception("scheduled_run_exception", extra={"trigger": trigger.name})
            return

        logger.info(
            "trigger_fired",
            extra={
                "trigger": trigger.name,
                "run_id": str(summary.run_id),
                "status": summary.status.value,
                "total_released": summary.total_released,
                "next_fire_at": next_fire_time(armed.spec, now),
            },
        )

    def start(self) -> None:
        """Start polling on a daemon thread; no-op when already running."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._poll, name="escrow-release-scheduler", daemon=True,
        )
        self._thread.start()
        logger.info(
            "scheduler_started",
            extra={"tick_interval": self._tick_interval, "triggers": self.trigger_names},
        )

    def stop(self, timeout: float = 30.0) -> None:
        """Cancel the current run and join the polling thread."""
        self._stop_event.set()
        if self.is_running:
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until ``stop()``; True once stopped."""
        return self._stop_event.wait(timeout=timeout)

    def _poll(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._stop_event.wait(timeout=self._tick_interval)
