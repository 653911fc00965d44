"""
NotificationDispatcher -- asynchronous delivery of release events.

Contract:
    ``publish(event)`` enqueues a domain event and returns immediately.  A
    single worker thread renders each event and hands the result to a
    ``NotificationSink`` through ``call_with_retry``.  ``flush()`` waits
    until everything published so far has been attempted.

Architecture: escrow_release/services.  Consumed by the transactor,
    finalizer, orchestrator and operator service; none of them observe
    delivery results.

Invariants enforced:
    - Persistence never depends on notification success.
    - Delivery is at-least-once per attempt budget; failures are logged
      (``notification_delivery_failed``) and dropped.
    - A full queue drops the event (``notification_dropped``) rather than
      blocking a release worker.
"""

from __future__ import annotations

import queue
import threading
import time
from typing import Any, Protocol
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from escrow_kernel.exceptions import NotificationDeliveryError
from escrow_kernel.logging_config import LogContext, get_logger
from escrow_kernel.models.notification import NotificationModel
from escrow_kernel.services.retry import RetryPolicy, call_with_retry
from escrow_release.domain.events import ReleaseEvent, RenderedNotification, render

logger = get_logger("release.notifications")

_STOP = object()


class NotificationSink(Protocol):
    """Delivery backend.  ``payload`` carries ``title`` and ``subtitle``."""

    def notify(self, kind: str, recipients: tuple[str, ...], payload: dict[str, Any]) -> None:
        ...


class StoreNotificationSink:
    """Persists one ``notifications`` row per recipient."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def notify(self, kind: str, recipients: tuple[str, ...], payload: dict[str, Any]) -> None:
        data = dict(payload)
        title = data.pop("title", kind)
        subtitle = data.pop("subtitle", "")
        with self._session_factory() as session:
            with session.begin():
                for recipient in recipients:
                    session.add(NotificationModel(
                        recipient_id=_as_uuid(recipient),
                        recipient=recipient,
                        kind=kind,
                        title=title,
                        subtitle=subtitle,
                        payload=data,
                    ))


class LoggingNotificationSink:
    """Writes notifications to the structured log."""

    def notify(self, kind: str, recipients: tuple[str, ...], payload: dict[str, Any]) -> None:
        logger.info(
            "notification_sent",
            extra={
                "kind": kind,
                "recipients": list(recipients),
                "title": payload.get("title"),
                "subtitle": payload.get("subtitle"),
            },
        )


def _as_uuid(value: str) -> UUID | None:
    try:
        return UUID(value)
    except ValueError:
        return None


class NotificationDispatcher:
    """Queue plus worker thread in front of a NotificationSink."""

    def __init__(
        self,
        sink: NotificationSink,
        *,
        admin_recipients: tuple[str, ...] = (),
        retry_policy: RetryPolicy | None = None,
        queue_size: int = 1000,
        enabled: bool = True,
    ):
        self._sink = sink
        self._admin_recipients = tuple(admin_recipients)
        self._retry = retry_policy or RetryPolicy()
        self._queue: queue.Queue[Any] = queue.Queue(maxsize=queue_size)
        self._enabled = enabled
        self._thread: threading.Thread | None = None
        self._stop_requested = False
        self._lock = threading.Lock()
        self._idle = threading.Condition()
        self._pending = 0

        self.delivered = 0
        self.failed = 0
        self.dropped = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self.is_running:
                return
            self._stop_requested = False
            self._thread = threading.Thread(
                target=self._run,
                name="escrow-notification-dispatcher",
                daemon=True,
            )
            self._thread.start()
        logger.debug("notification_dispatcher_started")

    def stop(self, timeout: float | None = 10.0) -> bool:
        """Deliver what is queued, then stop the worker.

        Returns:
            False if the worker was still delivering when ``timeout``
            elapsed.  It keeps running, drains the queue and exits at the
            stop marker; ``is_running`` stays True until it does, so no
            second worker is started next to it.
        """
        with self._lock:
            thread = self._thread
            if thread is None:
                return True
            # one marker per worker, however often stop() times out
            if not self._stop_requested:
                self._stop_requested = True
                self._queue.put(_STOP)
        thread.join(timeout=timeout)
        if thread.is_alive():
            logger.warning("notification_dispatcher_stop_timeout", extra={"timeout": timeout})
            return False
        with self._lock:
            if self._thread is thread:
                self._thread = None
        logger.debug("notification_dispatcher_stopped")
        return True

    def flush(self, timeout: float | None = 10.0) -> bool:
        """Block until every published event was attempted.

        Returns:
            False if ``timeout`` elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while self._pending > 0:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    # -------------------------------------------------------------------------
    # Publish
    # -------------------------------------------------------------------------

    def publish(self, event: ReleaseEvent) -> None:
        if not self._enabled:
            return
        self.start()
        with self._idle:
            self._pending += 1
        try:
            self._queue.put_nowait((event, LogContext.get_all()))
        except queue.Full:
            self._done()
            self.dropped += 1
            logger.warning(
                "notification_dropped",
                extra={"event_type": type(event).__name__, "reason": "queue_full"},
            )

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    def _done(self) -> None:
        with self._idle:
            self._pending -= 1
            if self._pending <= 0:
                self._idle.notify_all()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            event, context = item
            try:
                with LogContext.bind(**context):
                    for notification in render(event, self._admin_recipients):
                        self._deliver(notification)
            except Exception:
                logger.exception(
                    "notification_render_failed",
                    extra={"event_type": type(event).__name__},
                )
            finally:
                self._done()

    def _deliver(self, notification: RenderedNotification) -> None:
        payload = {
            "title": notification.title,
            "subtitle": notification.subtitle,
            **notification.payload,
        }
        try:
            call_with_retry(
                lambda: self._sink.notify(
                    notification.kind.value, notification.recipients, payload,
                ),
                policy=self._retry,
                operation_name=f"notify:{notification.kind.value}",
            )
        except Exception as exc:
            self.failed += 1
            error = NotificationDeliveryError(
                notification.kind.value, self._retry.attempts, str(exc),
            )
            logger.error(
                "notification_delivery_failed",
                extra={
                    "error_code": error.code,
                    "kind": notification.kind.value,
                    "recipient_count": len(notification.recipients),
                    "error": str(error),
                },
            )
            return
        self.delivered += 1
