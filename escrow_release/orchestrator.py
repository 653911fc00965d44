"""
ReleaseEngine -- run orchestrator and DI container for the release engine.

Contract:
    ``run_once()`` performs one full release run: scan each requested
    eligibility class in a fixed order, process candidates on a bounded
    worker pool, finalize deals, assemble and persist a ``RunSummary``,
    publish alerts.  ``from_config()`` wires every collaborator from a
    ``ReleaseConfig``.

Architecture: escrow_release (top-level).  Canonical entry point for the
    scheduler, the CLI and tests.

Invariants enforced:
    - Class order is fixed: completed_grace, milestone_auto_release,
      marketer_scheduled, overdue_escrow.  The first class to claim an
      Earning determines its release_type.
    - At most ``max_in_flight`` items are submitted at once, to a pool of
      ``max_workers`` threads.
    - Cancellation (event or deadline) stops new dispatch only; claims
      already in flight complete and are counted.
    - No in-process lock: concurrent runs are safe because every release
      goes through the conditional claim.

Failure modes:
    - ReleaseRunError (run-scoped) when scanning or finalization cannot
      reach the store, or on any unexpected exception outside item
      processing.  The best-effort summary is persisted, logged and
      attached to the exception; a critical alert is published.
"""

from __future__ import annotations

import contextvars
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Iterable
from uuid import UUID, uuid4

from sqlalchemy.orm import Session, sessionmaker

from escrow_config import ReleaseConfig, get_active_config
from escrow_kernel.domain.clock import Clock, SystemClock, as_utc
from escrow_kernel.exceptions import ReleaseRunError, ScanError, StoreError
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.services.retry import RetryPolicy
from escrow_release.domain.events import AlertKind, RunAlert
from escrow_release.domain.rules import RuleCatalog
from escrow_release.domain.types import (
    CLASS_ORDER,
    Candidate,
    ClassStats,
    EligibilityClass,
    ItemError,
    ItemOutcome,
    ItemResult,
    RunStatus,
    RunSummary,
)
from escrow_release.services.finalizer import DealFinalizer, FinalizationResult
from escrow_release.services.notifications import (
    NotificationDispatcher,
    NotificationSink,
    StoreNotificationSink,
)
from escrow_release.services.scanner import CandidateStream, EligibilityScanner
from escrow_release.services.store import ReleaseStore
from escrow_release.services.transactor import ClaimAndReleaseTransactor, PayoutInitiator

logger = get_logger("release.orchestrator")

DEFAULT_MAX_WORKERS = 8
DEFAULT_MAX_IN_FLIGHT = 32
DEFAULT_ALERT_ERROR_THRESHOLD = 5


class ReleaseEngine:
    """Release run orchestrator.

    Contract:
        - ``run_once()`` returns a RunSummary or raises ReleaseRunError.
        - ``from_config()`` factory creates a fully wired engine.
        - ``create_scheduler()`` / ``create_operator_service()`` build the
          trigger loop and operator API on the same collaborators.

    Non-goals:
        - Does NOT start the scheduler automatically -- caller decides.
        - Does NOT wait for notification delivery; use
          ``dispatcher.flush()``.
    """

    def __init__(
        self,
        store: ReleaseStore,
        scanner: EligibilityScanner,
        transactor: ClaimAndReleaseTransactor,
        finalizer: DealFinalizer,
        dispatcher: NotificationDispatcher,
        catalog: RuleCatalog,
        clock: Clock | None = None,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        alert_error_threshold: int = DEFAULT_ALERT_ERROR_THRESHOLD,
        run_timeout_seconds: float | None = None,
        config: ReleaseConfig | None = None,
    ):
        self._store = store
        self._scanner = scanner
        self._transactor = transactor
        self._finalizer = finalizer
        self._dispatcher = dispatcher
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._max_workers = max_workers
        self._max_in_flight = max(max_in_flight, max_workers)
        self._alert_error_threshold = alert_error_threshold
        self._run_timeout = run_timeout_seconds
        self._config = config

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        session_factory: sessionmaker[Session],
        config: ReleaseConfig | None = None,
        *,
        clock: Clock | None = None,
        sink: NotificationSink | None = None,
        payout: PayoutInitiator | None = None,
    ) -> ReleaseEngine:
        """Create a fully wired ReleaseEngine.

        Args:
            session_factory: Factory for short-lived sessions.
            config: Release configuration.  Defaults to ``get_active_config()``.
            clock: Optional clock for deterministic testing.
            sink: Notification backend.  Defaults to persisting rows.
            payout: Optional payout hook.
        """
        config = config or get_active_config()
        clock = clock or SystemClock()

        store_retry = RetryPolicy(
            attempts=config.retry.attempts,
            backoff_seconds=config.retry.backoff_seconds,
            max_backoff_seconds=config.retry.max_backoff_seconds,
        )
        call_retry = RetryPolicy(
            attempts=config.retry.attempts,
            backoff_seconds=config.retry.backoff_seconds,
            max_backoff_seconds=config.retry.max_backoff_seconds,
            timeout_seconds=config.retry.call_timeout_seconds,
        )

        store = ReleaseStore(session_factory, store_retry)
        catalog = RuleCatalog(config.rules)
        dispatcher = NotificationDispatcher(
            sink or StoreNotificationSink(session_factory),
            admin_recipients=config.notifications.admin_recipients,
            retry_policy=call_retry,
            queue_size=config.notifications.queue_size,
            enabled=config.notifications.enabled,
        )
        page_size = config.engine.scan_page_size

        return cls(
            store=store,
            scanner=EligibilityScanner(store, catalog, page_size),
            transactor=ClaimAndReleaseTransactor(
                store, dispatcher.publish, payout=payout, payout_retry=call_retry,
            ),
            finalizer=DealFinalizer(store, dispatcher.publish, page_size),
            dispatcher=dispatcher,
            catalog=catalog,
            clock=clock,
            max_workers=config.engine.max_workers,
            max_in_flight=config.engine.max_in_flight,
            alert_error_threshold=config.engine.alert_error_threshold,
            run_timeout_seconds=config.engine.run_timeout_seconds,
            config=config,
        )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run_once(
        self,
        now: datetime | None = None,
        *,
        trigger: str = "manual",
        classes: Iterable[EligibilityClass | str] | None = None,
        cancel_event: threading.Event | None = None,
        timeout_seconds: float | None = None,
    ) -> RunSummary:
        """Execute one release run.

        Args:
            now: Evaluation time for every eligibility decision in the run.
                Defaults to the injected clock.
            trigger: Label recorded on the summary and in logs.
            classes: Subset of eligibility classes.  Always processed in
                the fixed class order.
            cancel_event: Set to stop dispatching new items.
            timeout_seconds: Run deadline.  Defaults to the configured
                ``run_timeout_seconds``.

        Raises:
            ReleaseRunError: On a run-scoped failure.
        """
        now = as_utc(now) if now is not None else self._clock.now()
        run_id = uuid4()
        started_at = self._clock.now()
        selected = _select_classes(classes)

        timeout = timeout_seconds if timeout_seconds is not None else self._run_timeout
        deadline = time.monotonic() + timeout if timeout is not None else None

        def should_stop() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                return True
            return deadline is not None and time.monotonic() >= deadline

        results: dict[EligibilityClass, list[ItemResult]] = {}
        malformed: dict[EligibilityClass, int] = {}
        finalization = FinalizationResult()
        cancelled = False

        with LogContext.bind(
            run_id=str(run_id), trigger=trigger, correlation_id=str(run_id),
        ):
            logger.info(
                "release_run_started",
                extra={
                    "as_of": now,
                    "classes": [c.value for c in selected],
                    "config_checksum": self.config_checksum,
                    "max_workers": self._max_workers,
                },
            )
            self._persist(RunSummary(
                run_id=run_id,
                trigger=trigger,
                status=RunStatus.RUNNING,
                started_at=started_at,
                config_checksum=self.config_checksum,
            ))

            try:
                for eligibility_class in selected:
                    if should_stop():
                        cancelled = True
                        break
                    class_results: list[ItemResult] = []
                    results[eligibility_class] = class_results
                    stream = self._scanner.scan(eligibility_class, now)
                    try:
                        stopped = self._process_class(
                            stream, now, class_results, should_stop,
                        )
                    finally:
                        malformed[eligibility_class] = stream.skipped_malformed
                    self._log_class(eligibility_class, class_results, stream)
                    if stopped:
                        cancelled = True
                        break

                if not cancelled:
                    finalization = self._finalizer.finalize(
                        _released_deals(results), now,
                    )
            except Exception as exc:
                summary = self._assemble(
                    run_id, trigger, started_at, selected, results, malformed,
                    finalization, cancelled=False, fatal_error=str(exc),
                )
                error_code = getattr(exc, "code", "UNHANDLED_EXCEPTION")
                logger.error(
                    "release_run_failed",
                    exc_info=not isinstance(exc, (ScanError, StoreError)),
                    extra={
                        "error_code": error_code,
                        "error": str(exc),
                        "total_released": summary.total_released,
                    },
                )
                self._persist(summary)
                self._dispatcher.publish(RunAlert(
                    kind=AlertKind.CRITICAL_ERROR,
                    run_id=run_id,
                    trigger=trigger,
                    message=f"Release run failed: {exc}",
                    details={"error_code": error_code},
                ))
                raise ReleaseRunError(str(run_id), str(exc), summary) from exc

            summary = self._assemble(
                run_id, trigger, started_at, selected, results, malformed,
                finalization, cancelled=cancelled,
            )
            self._persist(summary)
            self._publish_alerts(summary)

            logger.info(
                "release_run_completed",
                extra={
                    "status": summary.status.value,
                    "total_scanned": summary.total_scanned,
                    "total_released": summary.total_released,
                    "released_amount": summary.released_amount,
                    "error_count": summary.error_count,
                    "awaiting_approval_count": len(summary.awaiting_approval),
                    "finalized_deal_count": len(summary.finalized_deals),
                    "cancelled": summary.cancelled,
                    "duration_ms": summary.duration_ms,
                    "config_checksum": summary.config_checksum,
                },
            )
            return summary

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _process_class(
        self,
        stream: CandidateStream,
        now: datetime,
        results: list[ItemResult],
        should_stop: Callable[[], bool],
    ) -> bool:
        """Dispatch the stream to the worker pool; returns True if stopped early.

        In-flight items always complete and land in ``results``, including
        when the stream raises.
        """
        stopped = False
        in_flight: set[Future[ItemResult]] = set()

        with ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix=f"escrow-{stream.eligibility_class.value}",
        ) as pool:
            try:
                for candidate in stream:
                    if should_stop():
                        stopped = True
                        break
                    if len(in_flight) >= self._max_in_flight:
                        done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                        results.extend(f.result() for f in done)
                    in_flight.add(self._submit(pool, candidate, now))
            finally:
                done, _ = wait(in_flight)
                results.extend(f.result() for f in done)

        return stopped

    def _submit(
        self,
        pool: ThreadPoolExecutor,
        candidate: Candidate,
        now: datetime,
    ) -> Future[ItemResult]:
        # Worker threads do not inherit context vars; carry the run's LogContext
        context = contextvars.copy_context()
        return pool.submit(context.run, self._transactor.process, candidate, now)

    def _assemble(
        self,
        run_id: UUID,
        trigger: str,
        started_at: datetime,
        selected: tuple[EligibilityClass, ...],
        results: dict[EligibilityClass, list[ItemResult]],
        malformed: dict[EligibilityClass, int],
        finalization: FinalizationResult,
        *,
        cancelled: bool,
        fatal_error: str | None = None,
    ) -> RunSummary:
        classes = tuple(
            ClassStats.from_results(c, results[c], malformed.get(c, 0))
            for c in selected
            if c in results
        )
        flat = [r for c in selected for r in results.get(c, ())]

        errors = tuple(
            ItemError(
                eligibility_class=r.eligibility_class,
                earning_id=r.earning_id,
                deal_id=r.deal_id,
                code=r.error_code or "UNHANDLED_EXCEPTION",
                message=r.error_message or "",
            )
            for r in flat
            if r.outcome == ItemOutcome.FAILED or r.error_code is not None
        ) + finalization.errors

        if fatal_error is not None:
            status = RunStatus.FAILED
        elif cancelled:
            status = RunStatus.CANCELLED
        elif errors:
            status = RunStatus.PARTIALLY_COMPLETED
        else:
            status = RunStatus.COMPLETED

        return RunSummary(
            run_id=run_id,
            trigger=trigger,
            status=status,
            started_at=started_at,
            completed_at=self._clock.now(),
            classes=classes,
            errors=errors,
            awaiting_approval=_unique(
                r.earning_id for r in flat if r.outcome == ItemOutcome.AWAITING_APPROVAL
            ),
            high_value_releases=tuple(
                r.earning_id for r in flat
                if r.outcome == ItemOutcome.RELEASED and r.high_value
            ),
            finalized_deals=finalization.finalized,
            config_checksum=self.config_checksum,
            cancelled=cancelled,
            fatal_error=fatal_error,
        )

    def _log_class(
        self,
        eligibility_class: EligibilityClass,
        results: list[ItemResult],
        stream: CandidateStream,
    ) -> None:
        stats = ClassStats.from_results(eligibility_class, results, stream.skipped_malformed)
        logger.info(
            "release_class_processed",
            extra={"eligibility_class": eligibility_class.value, **stats.to_dict()},
        )

    def _persist(self, summary: RunSummary) -> None:
        try:
            self._store.save_run(summary)
        except Exception as exc:
            logger.error(
                "release_run_persist_failed",
                extra={"status": summary.status.value, "error": str(exc)},
            )

    def _publish_alerts(self, summary: RunSummary) -> None:
        if summary.error_count > self._alert_error_threshold:
            logger.warning(
                "release_error_threshold_exceeded",
                extra={
                    "error_count": summary.error_count,
                    "threshold": self._alert_error_threshold,
                },
            )
            self._dispatcher.publish(RunAlert(
                kind=AlertKind.ADMIN_ERROR,
                run_id=summary.run_id,
                trigger=summary.trigger,
                message=(
                    f"{summary.error_count} payment release errors in run "
                    f"(threshold {self._alert_error_threshold})"
                ),
                details={
                    "error_count": summary.error_count,
                    "errors": [e.to_dict() for e in summary.errors[:20]],
                },
            ))

        if summary.high_value_releases:
            self._dispatcher.publish(RunAlert(
                kind=AlertKind.HIGH_VALUE_REPORT,
                run_id=summary.run_id,
                trigger=summary.trigger,
                message=(
                    f"{len(summary.high_value_releases)} high-value payment(s) released"
                ),
                details={
                    "earning_ids": [str(e) for e in summary.high_value_releases],
                },
            ))

    # -------------------------------------------------------------------------
    # Collaborators
    # -------------------------------------------------------------------------

    def create_scheduler(self, tick_interval_seconds: int = 30):
        """Create a ReleaseScheduler over the configured triggers."""
        from escrow_release.services.scheduler import ReleaseScheduler

        triggers = self._config.triggers if self._config is not None else ()
        return ReleaseScheduler(
            engine=self,
            triggers=triggers,
            clock=self._clock,
            tick_interval_seconds=tick_interval_seconds,
        )

    def create_operator_service(self):
        """Create an EscrowOperatorService sharing this engine's store."""
        from escrow_release.services.operator import EscrowOperatorService

        return EscrowOperatorService(
            store=self._store,
            catalog=self._catalog,
            publish=self._dispatcher.publish,
            clock=self._clock,
            transactor=self._transactor,
        )

    def close(self, timeout: float | None = 10.0) -> None:
        """Deliver queued notifications and stop the dispatcher thread."""
        self._dispatcher.stop(timeout=timeout)

    @property
    def store(self) -> ReleaseStore:
        return self._store

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher

    @property
    def catalog(self) -> RuleCatalog:
        return self._catalog

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def config(self) -> ReleaseConfig | None:
        return self._config

    @property
    def config_checksum(self) -> str | None:
        return self._config.checksum if self._config is not None else None


def _select_classes(
    classes: Iterable[EligibilityClass | str] | None,
) -> tuple[EligibilityClass, ...]:
    if classes is None:
        return CLASS_ORDER
    wanted = {EligibilityClass(c) for c in classes}
    return tuple(c for c in CLASS_ORDER if c in wanted)


def _released_deals(results: dict[EligibilityClass, list[ItemResult]]) -> set[UUID]:
    return {
        r.deal_id
        for class_results in results.values()
        for r in class_results
        if r.outcome == ItemOutcome.RELEASED
    }


def _unique(values: Iterable[UUID]) -> tuple[UUID, ...]:
    seen: dict[UUID, None] = {}
    for v in values:
        seen.setdefault(v, None)
    return tuple(seen)
