"""
ReleaseStore -- the only component that talks to the database.

Contract:
    Every read and write opens its own short session and transaction.
    Worker threads share the store, never a session.  Readers return frozen
    snapshots; writers are single-row conditional UPDATEs that report
    whether they matched.

Architecture: escrow_release/services.  Imports from escrow_kernel models,
    escrow_release.domain and escrow_release.models.

Invariants enforced:
    - ``claim_earning`` is the sole ``escrowed -> completed`` transition:
      ``UPDATE earnings ... WHERE id = :id AND status = :expected``.  One
      row matched means this caller won; zero means someone else did.
    - Milestone and deal writes are guarded by their source statuses, so
      no write moves an entity backward.
    - Metadata edits are guarded by ``version`` (optimistic concurrency).
    - Transient failures are retried with bounded backoff; when attempts
      are exhausted a ``TransientStoreError`` is raised.

Failure modes:
    - TransientStoreError after retries are exhausted.
    - DealNotFoundError / EarningNotFoundError from single-entity readers.
    - OptimisticLockError when a versioned metadata update loses a race.
    - EarningNotEscrowedError when metadata edits target a released Earning.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, TypeVar
from uuid import UUID

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from escrow_kernel.domain.clock import as_utc
from escrow_kernel.exceptions import (
    DealNotFoundError,
    EarningNotEscrowedError,
    EarningNotFoundError,
    OptimisticLockError,
    TransientStoreError,
)
from escrow_kernel.logging_config import get_logger
from escrow_kernel.models.deal import (
    DEAL_FINALIZABLE,
    MILESTONE_RELEASABLE,
    DealModel,
    DealStatus,
    DealTransactionModel,
    MilestoneModel,
    MilestoneStatus,
)
from escrow_kernel.models.earning import EarningModel, EarningStatus
from escrow_kernel.services.retry import RetryPolicy, call_with_retry, is_transient
from escrow_release.domain.types import (
    DealSnapshot,
    EarningSnapshot,
    MilestoneSnapshot,
    RunSummary,
)
from escrow_release.models.run import ReleaseRunModel

logger = get_logger("release.store")

T = TypeVar("T")

# DealTransaction.transaction_type for rows appended by the engine
AUTO_RELEASE_TRANSACTION = "auto_release"


@dataclass(frozen=True)
class MalformedRow:
    """A row that could not be turned into a snapshot."""

    entity: str
    entity_id: str
    reason: str


# =============================================================================
# Snapshot conversion
# =============================================================================


def _uuid(value: Any, column: str) -> UUID:
    """Reject ids that UUIDString handed back as raw text."""
    if not isinstance(value, UUID):
        raise ValueError(f"{column} is not a UUID: {value!r}")
    return value


def _optional_uuid(value: Any, column: str) -> UUID | None:
    return None if value is None else _uuid(value, column)


def milestone_snapshot(model: MilestoneModel) -> MilestoneSnapshot:
    return MilestoneSnapshot(
        milestone_id=_uuid(model.id, "milestone id"),
        deal_id=_uuid(model.deal_id, "milestone deal_id"),
        name=model.name,
        sequence=model.sequence,
        status=MilestoneStatus(model.status),
        amount=model.amount,
        auto_release_date=as_utc(model.auto_release_date),
        release_scheduled=bool(model.release_scheduled),
        dispute_flag=bool(model.dispute_flag),
        completed_at=as_utc(model.completed_at),
    )


def deal_snapshot(model: DealModel) -> DealSnapshot:
    """Convert a Deal row (milestones loaded) to a snapshot.

    Raises:
        ValueError: On unknown statuses or a null payment amount.
    """
    if model.payment_amount is None:
        raise ValueError("payment_amount is null")
    return DealSnapshot(
        deal_id=_uuid(model.id, "deal id"),
        deal_number=model.deal_number,
        deal_name=model.deal_name or "",
        marketer_id=_uuid(model.marketer_id, "marketer_id"),
        creator_id=_uuid(model.creator_id, "creator_id"),
        status=DealStatus(model.status),
        payment_amount=model.payment_amount,
        currency=model.currency,
        completed_at=as_utc(model.completed_at),
        milestones=tuple(milestone_snapshot(m) for m in model.milestones),
    )


def earning_snapshot(model: EarningModel) -> EarningSnapshot:
    """Convert an Earning row to a snapshot.

    Raises:
        ValueError: On unknown status, null amount, non-dict metadata or an
            id column holding text that is not a UUID.
    """
    if model.amount is None:
        raise ValueError("amount is null")
    if model.meta is not None and not isinstance(model.meta, dict):
        raise ValueError("metadata is not an object")
    return EarningSnapshot(
        earning_id=_uuid(model.id, "earning id"),
        deal_id=_uuid(model.deal_id, "earning deal_id"),
        amount=model.amount,
        status=EarningStatus(model.status),
        created_at=as_utc(model.created_at),
        creator_id=_optional_uuid(model.creator_id, "creator_id"),
        currency=model.currency,
        released_at=as_utc(model.released_at),
        release_type=model.release_type,
        transaction_id=model.transaction_id,
        metadata=dict(model.meta or {}),
        version=model.version,
    )


def _convert(
    entity: str,
    model: Any,
    converter: Callable[[Any], T],
) -> T | MalformedRow:
    try:
        return converter(model)
    except (ValueError, TypeError) as exc:
        return MalformedRow(entity=entity, entity_id=str(model.id), reason=str(exc))


# =============================================================================
# Store
# =============================================================================


class ReleaseStore:
    """Persistence gateway for the release engine.

    Contract:
        - Each public method is one short transaction.
        - Writers return ``bool`` (row matched) rather than raising on a
          lost race.

    Non-goals:
        - Does NOT hold sessions across calls.
        - Does NOT decide eligibility; see ``EligibilityScanner``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        retry_policy: RetryPolicy | None = None,
    ):
        self._session_factory = session_factory
        self._retry = retry_policy or RetryPolicy()

    # -------------------------------------------------------------------------
    # Plumbing
    # -------------------------------------------------------------------------

    def _retrying(self, operation: str, fn: Callable[[], T]) -> T:
        try:
            return call_with_retry(fn, policy=self._retry, operation_name=operation)
        except TransientStoreError:
            raise
        except Exception as exc:
            if is_transient(exc):
                raise TransientStoreError(operation, self._retry.attempts, str(exc)) from exc
            raise

    def _read(self, operation: str, fn: Callable[[Session], T]) -> T:
        def attempt() -> T:
            with self._session_factory() as session:
                return fn(session)

        return self._retrying(operation, attempt)

    def _write(self, operation: str, fn: Callable[[Session], T]) -> T:
        def attempt() -> T:
            with self._session_factory() as session:
                with session.begin():
                    return fn(session)

        return self._retrying(operation, attempt)

    # -------------------------------------------------------------------------
    # Deal readers
    # -------------------------------------------------------------------------

    def get_deal(self, deal_id: UUID) -> DealSnapshot:
        """Load one deal with milestones.

        Raises:
            DealNotFoundError: If the deal does not exist.
            ValueError: If the row is malformed.
        """
        def fn(session: Session) -> DealSnapshot:
            model = session.execute(
                select(DealModel)
                .options(selectinload(DealModel.milestones))
                .where(DealModel.id == deal_id)
            ).scalar_one_or_none()
            if model is None:
                raise DealNotFoundError(str(deal_id))
            return deal_snapshot(model)

        return self._read("get_deal", fn)

    def load_deals(
        self, deal_ids: Iterable[UUID],
    ) -> dict[UUID, DealSnapshot | MalformedRow]:
        """Batch-load deals by id.  Missing ids are absent from the result."""
        ids = list(set(deal_ids))
        if not ids:
            return {}

        def fn(session: Session) -> dict[UUID, DealSnapshot | MalformedRow]:
            rows = session.execute(
                select(DealModel)
                .options(selectinload(DealModel.milestones))
                .where(DealModel.id.in_(ids))
            ).scalars().all()
            return {row.id: _convert("deal", row, deal_snapshot) for row in rows}

        return self._read("load_deals", fn)

    def page_deals(
        self,
        statuses: Iterable[DealStatus],
        *,
        after_id: UUID | str | None,
        limit: int,
        completed_before: datetime | None = None,
    ) -> list[DealSnapshot | MalformedRow]:
        """Keyset page of deals in ``statuses`` ordered by id."""
        status_values = [s.value for s in statuses]

        def fn(session: Session) -> list[DealSnapshot | MalformedRow]:
            stmt = (
                select(DealModel)
                .options(selectinload(DealModel.milestones))
                .where(DealModel.status.in_(status_values))
            )
            if completed_before is not None:
                stmt = stmt.where(
                    DealModel.completed_at.is_not(None),
                    DealModel.completed_at <= completed_before,
                )
            if after_id is not None:
                stmt = stmt.where(DealModel.id > after_id)
            rows = session.execute(stmt.order_by(DealModel.id).limit(limit)).scalars().all()
            return [_convert("deal", row, deal_snapshot) for row in rows]

        return self._read("page_deals", fn)

    def page_finalizable_deal_ids(
        self, *, after_id: UUID | str | None, limit: int,
    ) -> list[UUID]:
        """Active/accepted deals with no escrowed Earnings, ordered by id."""
        def fn(session: Session) -> list[UUID]:
            escrowed = exists().where(
                EarningModel.deal_id == DealModel.id,
                EarningModel.status == EarningStatus.ESCROWED.value,
            )
            stmt = select(DealModel.id).where(
                DealModel.status.in_([s.value for s in DEAL_FINALIZABLE]),
                ~escrowed,
            )
            if after_id is not None:
                stmt = stmt.where(DealModel.id > after_id)
            return list(session.execute(stmt.order_by(DealModel.id).limit(limit)).scalars())

        return self._read("page_finalizable_deal_ids", fn)

    # -------------------------------------------------------------------------
    # Earning readers
    # -------------------------------------------------------------------------

    def get_earning(self, earning_id: UUID) -> EarningSnapshot:
        def fn(session: Session) -> EarningSnapshot:
            model = session.get(EarningModel, earning_id)
            if model is None:
                raise EarningNotFoundError(str(earning_id))
            return earning_snapshot(model)

        return self._read("get_earning", fn)

    def earnings_for_deal(self, deal_id: UUID) -> list[EarningSnapshot | MalformedRow]:
        def fn(session: Session) -> list[EarningSnapshot | MalformedRow]:
            rows = session.execute(
                select(EarningModel)
                .where(EarningModel.deal_id == deal_id)
                .order_by(EarningModel.created_at, EarningModel.id)
            ).scalars().all()
            return [_convert("earning", row, earning_snapshot) for row in rows]

        return self._read("earnings_for_deal", fn)

    def page_escrowed_earnings(
        self,
        *,
        after_id: UUID | str | None,
        limit: int,
        deal_id: UUID | None = None,
        created_before: datetime | None = None,
    ) -> list[EarningSnapshot | MalformedRow]:
        """Keyset page of escrowed Earnings ordered by id."""
        def fn(session: Session) -> list[EarningSnapshot | MalformedRow]:
            stmt = select(EarningModel).where(
                EarningModel.status == EarningStatus.ESCROWED.value,
            )
            if deal_id is not None:
                stmt = stmt.where(EarningModel.deal_id == deal_id)
            if created_before is not None:
                stmt = stmt.where(EarningModel.created_at <= created_before)
            if after_id is not None:
                stmt = stmt.where(EarningModel.id > after_id)
            rows = session.execute(stmt.order_by(EarningModel.id).limit(limit)).scalars().all()
            return [_convert("earning", row, earning_snapshot) for row in rows]

        return self._read("page_escrowed_earnings", fn)

    def count_earnings(self, deal_id: UUID, status: EarningStatus) -> int:
        def fn(session: Session) -> int:
            return session.execute(
                select(func.count(EarningModel.id)).where(
                    EarningModel.deal_id == deal_id,
                    EarningModel.status == status.value,
                )
            ).scalar_one()

        return self._read("count_earnings", fn)

    # -------------------------------------------------------------------------
    # Writers
    # -------------------------------------------------------------------------

    def claim_earning(
        self,
        earning_id: UUID,
        expected_status: EarningStatus,
        *,
        released_at: datetime,
        release_type: str,
        release_reason: str,
        new_status: EarningStatus = EarningStatus.COMPLETED,
    ) -> bool:
        """Atomically move an Earning out of ``expected_status``.

        Returns True iff this call performed the transition.  If a retry
        follows an attempt whose commit outcome is unknown, the row is
        re-read and recognised as ours by its release stamp.
        """
        attempts = 0

        def fn(session: Session) -> bool:
            nonlocal attempts
            attempts += 1
            result = session.execute(
                update(EarningModel)
                .where(
                    EarningModel.id == earning_id,
                    EarningModel.status == expected_status.value,
                )
                .values(
                    status=new_status.value,
                    released_at=released_at,
                    release_type=release_type,
                    release_reason=release_reason,
                    version=EarningModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True
            if attempts > 1:
                row = session.get(EarningModel, earning_id)
                return (
                    row is not None
                    and row.status == new_status.value
                    and row.release_type == release_type
                    and as_utc(row.released_at) == as_utc(released_at)
                )
            return False

        return self._write("claim_earning", fn)

    def mark_release_failed(self, earning_id: UUID, reason: str) -> bool:
        """``completed -> release_failed`` after the payout hook gave up."""
        def fn(session: Session) -> bool:
            result = session.execute(
                update(EarningModel)
                .where(
                    EarningModel.id == earning_id,
                    EarningModel.status == EarningStatus.COMPLETED.value,
                )
                .values(
                    status=EarningStatus.RELEASE_FAILED.value,
                    release_reason=reason,
                    version=EarningModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return self._write("mark_release_failed", fn)

    def set_transaction_id(self, earning_id: UUID, transaction_id: str) -> bool:
        def fn(session: Session) -> bool:
            result = session.execute(
                update(EarningModel)
                .where(
                    EarningModel.id == earning_id,
                    EarningModel.transaction_id.is_(None),
                )
                .values(transaction_id=transaction_id, version=EarningModel.version + 1)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return self._write("set_transaction_id", fn)

    def update_milestone(self, milestone_id: UUID, *, completed_at: datetime) -> bool:
        """Complete a releasable milestone and clear its release flag.

        Returns True iff the status moved to ``completed``.  An existing
        ``completed_at`` is kept.
        """
        def fn(session: Session) -> bool:
            moved = session.execute(
                update(MilestoneModel)
                .where(
                    MilestoneModel.id == milestone_id,
                    MilestoneModel.status.in_([s.value for s in MILESTONE_RELEASABLE]),
                )
                .values(
                    status=MilestoneStatus.COMPLETED.value,
                    completed_at=func.coalesce(MilestoneModel.completed_at, completed_at),
                    release_scheduled=False,
                )
                .execution_options(synchronize_session=False)
            ).rowcount == 1
            if not moved:
                session.execute(
                    update(MilestoneModel)
                    .where(
                        MilestoneModel.id == milestone_id,
                        MilestoneModel.release_scheduled.is_(True),
                    )
                    .values(release_scheduled=False)
                    .execution_options(synchronize_session=False)
                )
            return moved

        return self._write("update_milestone", fn)

    def update_deal(
        self,
        deal_id: UUID,
        expected_statuses: Iterable[DealStatus],
        values: dict[str, Any],
    ) -> bool:
        """Conditional single-row update of a deal guarded by its status."""
        status_values = [s.value for s in expected_statuses]

        def fn(session: Session) -> bool:
            result = session.execute(
                update(DealModel)
                .where(DealModel.id == deal_id, DealModel.status.in_(status_values))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

        return self._write("update_deal", fn)

    def complete_deal(self, deal_id: UUID, completed_at: datetime) -> bool:
        """``active|accepted -> completed``; keeps an existing completed_at."""
        return self.update_deal(
            deal_id,
            DEAL_FINALIZABLE,
            {
                "status": DealStatus.COMPLETED.value,
                "completed_at": func.coalesce(DealModel.completed_at, completed_at),
            },
        )

    def mirror_transaction(
        self,
        deal_id: UUID,
        *,
        earning_id: UUID,
        amount: Decimal,
        released_at: datetime,
        release_type: str,
        milestone_id: UUID | None = None,
        transaction_id: str | None = None,
    ) -> str:
        """Reflect a release on the deal's payment-info projection.

        Matches an existing row by earning, then milestone, then transaction
        id; appends an ``auto_release`` row when none matches.

        Returns:
            ``"updated"``, ``"appended"`` or ``"unchanged"``.
        """
        def find(session: Session) -> DealTransactionModel | None:
            base = select(DealTransactionModel).where(
                DealTransactionModel.deal_id == deal_id,
            )
            row = session.execute(
                base.where(DealTransactionModel.earning_id == earning_id)
            ).scalars().first()
            if row is not None:
                return row
            if milestone_id is not None:
                row = session.execute(
                    base.where(
                        DealTransactionModel.milestone_id == milestone_id,
                        DealTransactionModel.earning_id.is_(None),
                    ).order_by(DealTransactionModel.created_at)
                ).scalars().first()
                if row is not None:
                    return row
            if transaction_id is not None:
                return session.execute(
                    base.where(
                        DealTransactionModel.transaction_id == transaction_id,
                        DealTransactionModel.earning_id.is_(None),
                    )
                ).scalars().first()
            return None

        def fn(session: Session) -> str:
            row = find(session)
            if row is None:
                session.add(DealTransactionModel(
                    deal_id=deal_id,
                    milestone_id=milestone_id,
                    earning_id=earning_id,
                    transaction_id=transaction_id,
                    transaction_type=AUTO_RELEASE_TRANSACTION,
                    status=EarningStatus.COMPLETED.value,
                    amount=amount,
                    released_at=released_at,
                    release_type=release_type,
                    is_automatic=True,
                ))
                return "appended"
            if row.earning_id == earning_id and row.status == EarningStatus.COMPLETED.value:
                return "unchanged"
            row.earning_id = earning_id
            row.status = EarningStatus.COMPLETED.value
            row.released_at = released_at
            row.release_type = release_type
            row.is_automatic = True
            return "updated"

        try:
            return self._write("mirror_transaction", fn)
        except IntegrityError:
            # Another writer mirrored this earning first
            return "unchanged"

    def update_earning_metadata(
        self,
        earning_id: UUID,
        updates: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> EarningSnapshot:
        """Merge ``updates`` into an escrowed Earning's metadata.

        Raises:
            EarningNotFoundError: If the earning does not exist.
            EarningNotEscrowedError: If it has already left escrow.
            OptimisticLockError: If ``version`` changed since it was read.
        """
        def fn(session: Session) -> EarningSnapshot:
            model = session.get(EarningModel, earning_id)
            if model is None:
                raise EarningNotFoundError(str(earning_id))
            if model.status != EarningStatus.ESCROWED.value:
                raise EarningNotEscrowedError(str(earning_id), model.status)
            version = model.version if expected_version is None else expected_version
            merged = {**(model.meta or {}), **updates}
            result = session.execute(
                update(EarningModel)
                .where(
                    EarningModel.id == earning_id,
                    EarningModel.version == version,
                    EarningModel.status == EarningStatus.ESCROWED.value,
                )
                .values({
                    EarningModel.meta: merged,
                    EarningModel.version: EarningModel.version + 1,
                })
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise OptimisticLockError("Earning", str(earning_id))
            session.flush()
            session.expire(model)
            return earning_snapshot(session.get(EarningModel, earning_id))

        return self._write("update_earning_metadata", fn)

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def save_run(self, summary: RunSummary) -> None:
        """Insert or overwrite the ``release_runs`` row for ``summary``."""
        def fn(session: Session) -> None:
            row = session.get(ReleaseRunModel, summary.run_id)
            if row is None:
                session.add(ReleaseRunModel.from_dto(summary))
            else:
                row.apply_summary(summary)

        self._write("save_run", fn)

    def get_run(self, run_id: UUID) -> RunSummary | None:
        def fn(session: Session) -> RunSummary | None:
            row = session.get(ReleaseRunModel, run_id)
            return row.to_dto() if row is not None else None

        return self._read("get_run", fn)

    def recent_runs(self, limit: int = 10) -> list[RunSummary]:
        def fn(session: Session) -> list[RunSummary]:
            rows = session.execute(
                select(ReleaseRunModel)
                .order_by(ReleaseRunModel.started_at.desc())
                .limit(limit)
            ).scalars().all()
            return [row.to_dto() for row in rows]

        return self._read("recent_runs", fn)
