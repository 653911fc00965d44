"""
Pytest fixtures for the escrow release engine test suite.

Provides:
- Structured logging setup and captured JSON log records
- SQLite databases: in-memory (single-threaded tests) and file-backed
  (anything that runs worker threads or real races)
- Deterministic clock and a fast-retry release config
- Data builders for deals, milestones and earnings
"""

import json
import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from io import StringIO
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy import update
from sqlalchemy.orm import sessionmaker

from escrow_config import get_active_config
from escrow_kernel.db.engine import build_engine, create_tables
from escrow_kernel.domain.clock import DeterministicClock
from escrow_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from escrow_kernel.models.deal import (
    DealModel,
    DealStatus,
    MilestoneModel,
    MilestoneStatus,
)
from escrow_kernel.models.earning import EarningModel, EarningStatus
from escrow_kernel.services.retry import RetryPolicy

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)

# Id imported from a document store; not a UUID
LEGACY_ID = "64f1a2b3c4d5e6f7a8b9c0d1"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture escrow_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, release_engine):
            release_engine.run_once()
            logs = captured_logs()
            assert any(r["message"] == "release_run_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("escrow_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture
def memory_engine():
    """In-memory SQLite (StaticPool).  Single-threaded use only."""
    eng = build_engine("sqlite:///:memory:")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite, safe for worker threads and concurrent runs."""
    eng = build_engine(f"sqlite:///{tmp_path / 'escrow.db'}")
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(memory_engine):
    return sessionmaker(bind=memory_engine, expire_on_commit=False)


@pytest.fixture
def file_session_factory(file_engine):
    return sessionmaker(bind=file_engine, expire_on_commit=False)


# =============================================================================
# Clock / config
# =============================================================================


@pytest.fixture
def clock():
    return DeterministicClock(fixed_time=NOW)


@pytest.fixture
def fast_retry():
    return RetryPolicy(attempts=3, backoff_seconds=0.0, max_backoff_seconds=0.0)


@pytest.fixture
def release_config():
    """Packaged default config with zero retry backoff."""
    config = get_active_config()
    return replace(
        config,
        retry=replace(config.retry, backoff_seconds=0.0, max_backoff_seconds=0.0),
        engine=replace(config.engine, max_workers=4, max_in_flight=8),
    )


# =============================================================================
# Notification sink
# =============================================================================


class RecordingSink:
    """NotificationSink that keeps every delivery in memory."""

    def __init__(self):
        self.sent: list[tuple[str, tuple[str, ...], dict[str, Any]]] = []

    def notify(self, kind: str, recipients: tuple[str, ...], payload: dict[str, Any]) -> None:
        self.sent.append((kind, tuple(recipients), payload))

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.sent]


@pytest.fixture
def recording_sink():
    return RecordingSink()


# =============================================================================
# Data builders
# =============================================================================


class EscrowBuilder:
    """Inserts deals, milestones and earnings through short sessions."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._counter = 0

    def deal(
        self,
        *,
        status: DealStatus = DealStatus.ACTIVE,
        payment_amount: Decimal | str = Decimal("1000"),
        completed_at: datetime | None = None,
        marketer_id: UUID | None = None,
        creator_id: UUID | None = None,
        name: str = "Spring campaign",
    ) -> UUID:
        self._counter += 1
        deal_id = uuid4()
        with self._session_factory() as session, session.begin():
            session.add(DealModel(
                id=deal_id,
                deal_number=f"D-{self._counter:05d}-{deal_id.hex[:6]}",
                deal_name=name,
                marketer_id=marketer_id or uuid4(),
                creator_id=creator_id or uuid4(),
                status=status.value,
                payment_amount=Decimal(payment_amount),
                currency="USD",
                completed_at=completed_at,
            ))
        return deal_id

    def milestone(
        self,
        deal_id: UUID,
        *,
        name: str = "Draft",
        sequence: int = 1,
        status: MilestoneStatus = MilestoneStatus.FUNDED,
        amount: Decimal | str | None = Decimal("500"),
        auto_release_date: datetime | None = None,
        release_scheduled: bool = False,
        dispute_flag: bool = False,
        completed_at: datetime | None = None,
    ) -> UUID:
        milestone_id = uuid4()
        with self._session_factory() as session, session.begin():
            session.add(MilestoneModel(
                id=milestone_id,
                deal_id=deal_id,
                name=name,
                sequence=sequence,
                amount=Decimal(amount) if amount is not None else None,
                status=status.value,
                auto_release_date=auto_release_date,
                release_scheduled=release_scheduled,
                dispute_flag=dispute_flag,
                completed_at=completed_at,
            ))
        return milestone_id

    def earning(
        self,
        deal_id: UUID,
        *,
        amount: Decimal | str = Decimal("120"),
        status: EarningStatus = EarningStatus.ESCROWED,
        created_at: datetime = NOW,
        metadata: dict[str, Any] | None = None,
        creator_id: UUID | None = None,
    ) -> UUID:
        earning_id = uuid4()
        with self._session_factory() as session, session.begin():
            session.add(EarningModel(
                id=earning_id,
                deal_id=deal_id,
                creator_id=creator_id,
                amount=Decimal(amount),
                currency="USD",
                status=status.value,
                created_at=created_at,
                meta=metadata,
            ))
        return earning_id

    def rekey_earning(self, earning_id: UUID, raw_id: str) -> None:
        """Overwrite an Earning's id with arbitrary stored text."""
        with self._session_factory() as session, session.begin():
            session.execute(
                update(EarningModel)
                .where(EarningModel.id == earning_id)
                .values(id=raw_id)
            )

    def get_earning(self, earning_id: UUID) -> EarningModel:
        with self._session_factory() as session:
            return session.get(EarningModel, earning_id)

    def get_deal(self, deal_id: UUID) -> DealModel:
        with self._session_factory() as session:
            return session.get(DealModel, deal_id)

    def get_milestone(self, milestone_id: UUID) -> MilestoneModel:
        with self._session_factory() as session:
            return session.get(MilestoneModel, milestone_id)


@pytest.fixture
def builder(session_factory):
    return EscrowBuilder(session_factory)


@pytest.fixture
def file_builder(file_session_factory):
    return EscrowBuilder(file_session_factory)


def days_ago(days: float, now: datetime = NOW) -> datetime:
    return now - timedelta(days=days)
