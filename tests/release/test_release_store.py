"""
Tests for escrow_release.services.store.

Validates the conditional claim, guarded milestone/deal writes, the
payment-info mirror, optimistic metadata edits, malformed-row conversion,
transient retry and release-run persistence.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import OperationalError

from conftest import LEGACY_ID, NOW, days_ago
from escrow_kernel.exceptions import (
    DealNotFoundError,
    EarningNotEscrowedError,
    EarningNotFoundError,
    OptimisticLockError,
    TransientStoreError,
)
from escrow_kernel.models.deal import (
    DealStatus,
    DealTransactionModel,
    MilestoneStatus,
)
from escrow_kernel.models.earning import EarningModel, EarningStatus
from escrow_release.domain.types import (
    ClassStats,
    EligibilityClass,
    ItemError,
    RunStatus,
    RunSummary,
)
from escrow_release.services.store import AUTO_RELEASE_TRANSACTION, MalformedRow, ReleaseStore


@pytest.fixture
def store(session_factory, fast_retry):
    return ReleaseStore(session_factory, fast_retry)


def _claim(store, earning_id, release_type="overdue_escrow"):
    return store.claim_earning(
        earning_id,
        EarningStatus.ESCROWED,
        released_at=NOW,
        release_type=release_type,
        release_reason="Maximum escrow period of 30 days exceeded",
    )


# =============================================================================
# Claim
# =============================================================================


class TestClaimEarning:
    def test_first_claim_wins(self, store, builder):
        deal_id = builder.deal()
        earning_id = builder.earning(deal_id)

        assert _claim(store, earning_id) is True

        row = builder.get_earning(earning_id)
        assert row.status == EarningStatus.COMPLETED.value
        assert row.release_type == "overdue_escrow"
        assert row.release_reason.startswith("Maximum escrow period")
        assert row.version == 2

    def test_second_claim_loses(self, store, builder):
        earning_id = builder.earning(builder.deal())
        assert _claim(store, earning_id) is True
        assert _claim(store, earning_id, release_type="scheduled") is False
        assert builder.get_earning(earning_id).release_type == "overdue_escrow"

    def test_claim_on_missing_earning_is_false(self, store):
        assert _claim(store, uuid4()) is False

    def test_mark_release_failed_only_from_completed(self, store, builder):
        earning_id = builder.earning(builder.deal())
        assert store.mark_release_failed(earning_id, "Payout failed") is False
        _claim(store, earning_id)
        assert store.mark_release_failed(earning_id, "Payout failed") is True
        assert builder.get_earning(earning_id).status == EarningStatus.RELEASE_FAILED.value

    def test_set_transaction_id_once(self, store, builder):
        earning_id = builder.earning(builder.deal())
        assert store.set_transaction_id(earning_id, "tx-1") is True
        assert store.set_transaction_id(earning_id, "tx-2") is False
        assert builder.get_earning(earning_id).transaction_id == "tx-1"


# =============================================================================
# Guarded writes
# =============================================================================


class TestMilestoneAndDealWrites:
    def test_update_milestone_completes_releasable(self, store, builder):
        deal_id = builder.deal()
        milestone_id = builder.milestone(deal_id, release_scheduled=True)

        assert store.update_milestone(milestone_id, completed_at=NOW) is True

        row = builder.get_milestone(milestone_id)
        assert row.status == MilestoneStatus.COMPLETED.value
        assert row.release_scheduled is False
        assert row.completed_at is not None

    def test_update_milestone_never_moves_backward(self, store, builder):
        deal_id = builder.deal()
        milestone_id = builder.milestone(deal_id, status=MilestoneStatus.CANCELLED)
        assert store.update_milestone(milestone_id, completed_at=NOW) is False
        assert builder.get_milestone(milestone_id).status == MilestoneStatus.CANCELLED.value

    def test_update_milestone_keeps_existing_completed_at(self, store, builder):
        deal_id = builder.deal()
        earlier = days_ago(3)
        milestone_id = builder.milestone(deal_id, status=MilestoneStatus.APPROVED, completed_at=earlier)
        store.update_milestone(milestone_id, completed_at=NOW)
        snapshot = store.get_deal(deal_id).milestone(milestone_id)
        assert snapshot.completed_at == earlier

    def test_update_milestone_clears_flag_on_completed(self, store, builder):
        deal_id = builder.deal()
        milestone_id = builder.milestone(
            deal_id, status=MilestoneStatus.COMPLETED, release_scheduled=True,
        )
        assert store.update_milestone(milestone_id, completed_at=NOW) is False
        assert builder.get_milestone(milestone_id).release_scheduled is False

    def test_complete_deal_is_conditional(self, store, builder):
        deal_id = builder.deal(status=DealStatus.ACCEPTED)
        assert store.complete_deal(deal_id, NOW) is True
        assert store.complete_deal(deal_id, NOW + timedelta(days=1)) is False
        snapshot = store.get_deal(deal_id)
        assert snapshot.status == DealStatus.COMPLETED
        assert snapshot.completed_at == NOW

    def test_complete_deal_skips_disputed(self, store, builder):
        deal_id = builder.deal(status=DealStatus.DISPUTED)
        assert store.complete_deal(deal_id, NOW) is False


# =============================================================================
# Payment-info mirror
# =============================================================================


class TestMirrorTransaction:
    def _rows(self, session_factory, deal_id):
        with session_factory() as session:
            return session.execute(
                select(DealTransactionModel).where(DealTransactionModel.deal_id == deal_id)
            ).scalars().all()

    def test_appends_when_no_row_matches(self, store, builder, session_factory):
        deal_id = builder.deal()
        earning_id = builder.earning(deal_id)

        result = store.mirror_transaction(
            deal_id, earning_id=earning_id, amount=Decimal("120"),
            released_at=NOW, release_type="overdue_escrow",
        )

        assert result == "appended"
        (row,) = self._rows(session_factory, deal_id)
        assert row.transaction_type == AUTO_RELEASE_TRANSACTION
        assert row.is_automatic is True
        assert row.earning_id == earning_id

    def test_updates_matching_milestone_row(self, store, builder, session_factory):
        deal_id = builder.deal()
        milestone_id = builder.milestone(deal_id)
        earning_id = builder.earning(deal_id)
        with session_factory() as session, session.begin():
            session.add(DealTransactionModel(
                deal_id=deal_id, milestone_id=milestone_id,
                transaction_type="milestone_payment", status="pending",
                amount=Decimal("500"),
            ))

        result = store.mirror_transaction(
            deal_id, earning_id=earning_id, amount=Decimal("500"),
            released_at=NOW, release_type="automatic_milestone", milestone_id=milestone_id,
        )

        assert result == "updated"
        (row,) = self._rows(session_factory, deal_id)
        assert row.status == EarningStatus.COMPLETED.value
        assert row.earning_id == earning_id
        assert row.release_type == "automatic_milestone"

    def test_second_mirror_is_unchanged(self, store, builder, session_factory):
        deal_id = builder.deal()
        earning_id = builder.earning(deal_id)
        kwargs = dict(
            earning_id=earning_id, amount=Decimal("120"),
            released_at=NOW, release_type="overdue_escrow",
        )
        store.mirror_transaction(deal_id, **kwargs)
        assert store.mirror_transaction(deal_id, **kwargs) == "unchanged"
        assert len(self._rows(session_factory, deal_id)) == 1


# =============================================================================
# Metadata
# =============================================================================


class TestUpdateEarningMetadata:
    def test_merges_and_bumps_version(self, store, builder):
        earning_id = builder.earning(builder.deal(), metadata={"milestone_id": None, "note": "x"})

        updated = store.update_earning_metadata(earning_id, {"approved_by": "ops"})

        assert updated.metadata == {"milestone_id": None, "note": "x", "approved_by": "ops"}
        assert updated.version == 2

    def test_stale_version_conflicts(self, store, builder):
        earning_id = builder.earning(builder.deal())
        store.update_earning_metadata(earning_id, {"a": 1})
        with pytest.raises(OptimisticLockError):
            store.update_earning_metadata(earning_id, {"b": 2}, expected_version=1)

    def test_released_earning_rejected(self, store, builder):
        earning_id = builder.earning(builder.deal())
        _claim(store, earning_id)
        with pytest.raises(EarningNotEscrowedError):
            store.update_earning_metadata(earning_id, {"a": 1})

    def test_missing_earning(self, store):
        with pytest.raises(EarningNotFoundError):
            store.update_earning_metadata(uuid4(), {"a": 1})


# =============================================================================
# Readers
# =============================================================================


class TestReaders:
    def test_get_deal_missing(self, store):
        with pytest.raises(DealNotFoundError):
            store.get_deal(uuid4())

    def test_get_deal_includes_milestones(self, store, builder):
        deal_id = builder.deal()
        builder.milestone(deal_id, name="Draft", sequence=1)
        builder.milestone(deal_id, name="Final", sequence=2)
        deal = store.get_deal(deal_id)
        assert {m.name for m in deal.milestones} == {"Draft", "Final"}
        assert deal.has_milestones

    def test_malformed_earning_becomes_malformed_row(self, store, builder, session_factory):
        deal_id = builder.deal()
        earning_id = builder.earning(deal_id)
        with session_factory() as session, session.begin():
            session.execute(
                update(EarningModel)
                .where(EarningModel.id == earning_id)
                .values(status="bogus")
            )

        rows = store.earnings_for_deal(deal_id)
        assert len(rows) == 1
        assert isinstance(rows[0], MalformedRow)
        assert rows[0].entity_id == str(earning_id)

    def test_non_uuid_creator_id_becomes_malformed_row(self, store, builder):
        deal_id = builder.deal()
        good = builder.earning(deal_id)
        legacy = builder.earning(deal_id, creator_id=LEGACY_ID)

        rows = store.page_escrowed_earnings(after_id=None, limit=10)

        malformed = [r for r in rows if isinstance(r, MalformedRow)]
        assert [r.entity_id for r in malformed] == [str(legacy)]
        assert LEGACY_ID in malformed[0].reason
        assert [r.earning_id for r in rows if not isinstance(r, MalformedRow)] == [good]

    def test_non_uuid_earning_id_pages_by_raw_text(self, store, builder):
        deal_id = builder.deal()
        legacy = builder.earning(deal_id)
        builder.rekey_earning(legacy, LEGACY_ID)

        (row,) = store.page_escrowed_earnings(after_id=None, limit=10)
        assert isinstance(row, MalformedRow)
        assert row.entity_id == LEGACY_ID

        others = [builder.earning(deal_id) for _ in range(4)]
        after = store.page_escrowed_earnings(after_id=LEGACY_ID, limit=10)
        assert [r.earning_id for r in after] == sorted(
            (e for e in others if str(e) > LEGACY_ID), key=str,
        )

    def test_page_escrowed_earnings_keyset(self, store, builder):
        deal_id = builder.deal()
        ids = sorted((builder.earning(deal_id) for _ in range(5)), key=str)

        first = store.page_escrowed_earnings(after_id=None, limit=2)
        second = store.page_escrowed_earnings(after_id=first[-1].earning_id, limit=2)
        third = store.page_escrowed_earnings(after_id=second[-1].earning_id, limit=2)

        seen = [e.earning_id for e in first + second + third]
        assert seen == ids

    def test_page_escrowed_earnings_created_before(self, store, builder):
        deal_id = builder.deal()
        old = builder.earning(deal_id, created_at=days_ago(40))
        builder.earning(deal_id, created_at=days_ago(1))
        rows = store.page_escrowed_earnings(after_id=None, limit=10, created_before=days_ago(14))
        assert [e.earning_id for e in rows] == [old]

    def test_page_finalizable_excludes_escrowed(self, store, builder):
        drained = builder.deal()
        builder.earning(drained, status=EarningStatus.COMPLETED)
        holding = builder.deal()
        builder.earning(holding)
        builder.deal(status=DealStatus.COMPLETED)

        ids = store.page_finalizable_deal_ids(after_id=None, limit=10)
        assert drained in ids
        assert holding not in ids

    def test_count_earnings(self, store, builder):
        deal_id = builder.deal()
        builder.earning(deal_id)
        builder.earning(deal_id)
        builder.earning(deal_id, status=EarningStatus.COMPLETED)
        assert store.count_earnings(deal_id, EarningStatus.ESCROWED) == 2
        assert store.count_earnings(deal_id, EarningStatus.COMPLETED) == 1


# =============================================================================
# Retry
# =============================================================================


class TestTransientRetry:
    def test_exhausted_transient_becomes_transient_store_error(self, fast_retry):
        calls = []

        def broken_factory():
            calls.append(1)
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        store = ReleaseStore(broken_factory, fast_retry)
        with pytest.raises(TransientStoreError) as exc_info:
            store.get_earning(uuid4())
        assert len(calls) == 3
        assert exc_info.value.operation == "get_earning"
        assert exc_info.value.code == "TRANSIENT_STORE_ERROR"

    def test_non_transient_is_not_retried(self, fast_retry):
        calls = []

        def broken_factory():
            calls.append(1)
            raise RuntimeError("bug")

        store = ReleaseStore(broken_factory, fast_retry)
        with pytest.raises(RuntimeError):
            store.get_earning(uuid4())
        assert len(calls) == 1


# =============================================================================
# Runs
# =============================================================================


class TestRunPersistence:
    def test_save_and_reload_summary(self, store):
        run_id = uuid4()
        earning_id, deal_id = uuid4(), uuid4()
        running = RunSummary(run_id=run_id, trigger="manual", status=RunStatus.RUNNING, started_at=NOW)
        store.save_run(running)

        final = RunSummary(
            run_id=run_id,
            trigger="manual",
            status=RunStatus.PARTIALLY_COMPLETED,
            started_at=NOW,
            completed_at=NOW + timedelta(seconds=3),
            classes=(
                ClassStats(
                    EligibilityClass.OVERDUE_ESCROW, scanned=2, released=1, errored=1,
                    released_amount=Decimal("120"),
                ),
            ),
            errors=(
                ItemError(EligibilityClass.OVERDUE_ESCROW, earning_id, deal_id, "X", "boom"),
                ItemError(None, None, deal_id, "Y", "finalize"),
            ),
            finalized_deals=(deal_id,),
            config_checksum="abc",
        )
        store.save_run(final)

        loaded = store.get_run(run_id)
        assert loaded.status == RunStatus.PARTIALLY_COMPLETED
        assert loaded.total_released == 1
        assert loaded.released_amount == Decimal("120")
        assert loaded.errors[0].earning_id == earning_id
        assert loaded.errors[1].eligibility_class is None
        assert loaded.finalized_deals == (deal_id,)
        assert loaded.duration_ms == 3000

    def test_recent_runs_newest_first(self, store):
        older = RunSummary(uuid4(), "a", RunStatus.COMPLETED, NOW - timedelta(hours=1))
        newer = RunSummary(uuid4(), "b", RunStatus.COMPLETED, NOW)
        store.save_run(older)
        store.save_run(newer)
        assert [r.trigger for r in store.recent_runs(5)] == ["b", "a"]
