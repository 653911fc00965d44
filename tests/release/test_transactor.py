"""
Tests for escrow_release.services.transactor.

Validates the approval gate, the claim as sole release gate, milestone and
payment-info follow-ups, the optional payout hook and conversion of
exceptions into item results: a failure before or during the claim is
FAILED, a follow-up write failing after a won claim stays RELEASED with the
error attached.
"""

from decimal import Decimal

import pytest

from conftest import NOW, days_ago
from escrow_config import get_active_config
from escrow_kernel.models.deal import DealStatus, MilestoneStatus
from escrow_kernel.exceptions import TransientStoreError
from escrow_kernel.models.earning import EarningStatus
from escrow_release.domain.events import ApprovalRequired, ReleaseCompleted
from escrow_release.domain.rules import RuleCatalog
from escrow_release.domain.types import EligibilityClass, ItemOutcome
from escrow_release.services.scanner import EligibilityScanner
from escrow_release.services.store import ReleaseStore
from escrow_release.services.transactor import ClaimAndReleaseTransactor


@pytest.fixture
def store(session_factory, fast_retry):
    return ReleaseStore(session_factory, fast_retry)


@pytest.fixture
def scanner(store):
    return EligibilityScanner(store, RuleCatalog(get_active_config().rules))


@pytest.fixture
def published():
    return []


@pytest.fixture
def transactor(store, published, fast_retry):
    return ClaimAndReleaseTransactor(store, published.append, payout_retry=fast_retry)


def _only_candidate(scanner, eligibility_class=EligibilityClass.OVERDUE_ESCROW):
    (candidate,) = list(scanner.scan(eligibility_class, NOW))
    return candidate


class RecordingPayout:
    def __init__(self, transaction_id="tx-100", error=None):
        self.transaction_id = transaction_id
        self.error = error
        self.calls = []

    def initiate(self, earning, deal):
        self.calls.append(earning.earning_id)
        if self.error is not None:
            raise self.error
        return self.transaction_id


# =============================================================================
# Release
# =============================================================================


class TestRelease:
    def test_releases_overdue_earning(self, scanner, transactor, builder, published):
        deal_id = builder.deal()
        earning_id = builder.earning(deal_id, amount="120", created_at=days_ago(31))

        result = transactor.process(_only_candidate(scanner), NOW)

        assert result.outcome == ItemOutcome.RELEASED
        assert result.amount == Decimal("120")
        assert result.release_type.value == "overdue_escrow"
        assert result.high_value is False

        row = builder.get_earning(earning_id)
        assert row.status == EarningStatus.COMPLETED.value
        assert row.release_type == "overdue_escrow"

        (event,) = published
        assert isinstance(event, ReleaseCompleted)
        assert event.days_escrowed == 31

    def test_completes_milestone(self, scanner, transactor, builder):
        deal_id = builder.deal()
        milestone_id = builder.milestone(
            deal_id, status=MilestoneStatus.FUNDED,
            auto_release_date=days_ago(1), release_scheduled=True,
        )
        builder.earning(deal_id, metadata={"milestone_id": str(milestone_id)})

        candidate = _only_candidate(scanner, EligibilityClass.MILESTONE_AUTO_RELEASE)
        result = transactor.process(candidate, NOW)

        assert result.outcome == ItemOutcome.RELEASED
        milestone = builder.get_milestone(milestone_id)
        assert milestone.status == MilestoneStatus.COMPLETED.value
        assert milestone.release_scheduled is False

    def test_stale_candidate_is_already_claimed(self, scanner, transactor, builder, published, captured_logs):
        builder.earning(builder.deal(), created_at=days_ago(31))
        candidate = _only_candidate(scanner)

        first = transactor.process(candidate, NOW)
        second = transactor.process(candidate, NOW)

        assert first.outcome == ItemOutcome.RELEASED
        assert second.outcome == ItemOutcome.ALREADY_CLAIMED
        assert len(published) == 1
        assert any(r["message"] == "earning_claim_lost" for r in captured_logs())

    def test_log_records_carry_item_context(self, scanner, transactor, builder, captured_logs):
        deal_id = builder.deal()
        earning_id = builder.earning(deal_id, created_at=days_ago(31))

        transactor.process(_only_candidate(scanner), NOW)

        claimed = [r for r in captured_logs() if r["message"] == "earning_claimed"]
        assert claimed[0]["earning_id"] == str(earning_id)
        assert claimed[0]["deal_id"] == str(deal_id)


# =============================================================================
# Approval gate
# =============================================================================


class TestApprovalGate:
    def test_high_value_without_approval_is_held(self, scanner, transactor, builder, published):
        deal_id = builder.deal(payment_amount="9000")
        earning_id = builder.earning(deal_id, created_at=days_ago(50))

        result = transactor.process(_only_candidate(scanner), NOW)

        assert result.outcome == ItemOutcome.AWAITING_APPROVAL
        assert builder.get_earning(earning_id).status == EarningStatus.ESCROWED.value
        (event,) = published
        assert isinstance(event, ApprovalRequired)
        assert event.policy_kind == "high_value"

    def test_high_value_with_approval_is_released(self, scanner, transactor, builder):
        deal_id = builder.deal(payment_amount="9000")
        builder.earning(
            deal_id, created_at=days_ago(50),
            metadata={"approved_by": "ops", "approved_at": days_ago(1).isoformat()},
        )

        result = transactor.process(_only_candidate(scanner), NOW)

        assert result.outcome == ItemOutcome.RELEASED
        assert result.high_value is True

    def test_disputed_milestone_is_held(self, scanner, transactor, builder):
        deal_id = builder.deal()
        milestone_id = builder.milestone(
            deal_id, status=MilestoneStatus.COMPLETED,
            auto_release_date=days_ago(1), dispute_flag=True,
        )
        builder.earning(deal_id, metadata={"milestone_id": str(milestone_id)})

        candidate = _only_candidate(scanner, EligibilityClass.MILESTONE_AUTO_RELEASE)
        assert transactor.process(candidate, NOW).outcome == ItemOutcome.AWAITING_APPROVAL

    def test_disputed_deal_past_ceiling_is_held(self, scanner, transactor, builder):
        deal_id = builder.deal(status=DealStatus.DISPUTED)
        builder.earning(deal_id, created_at=days_ago(61))
        assert transactor.process(_only_candidate(scanner), NOW).outcome == ItemOutcome.AWAITING_APPROVAL

    def test_approval_requested_once_per_earning(self, scanner, transactor, builder, published):
        deal_id = builder.deal(payment_amount="9000")
        earning_id = builder.earning(deal_id, created_at=days_ago(50))
        stale = _only_candidate(scanner)

        transactor.process(stale, NOW)
        transactor.process(stale, NOW)
        fresh = transactor.process(_only_candidate(scanner), NOW)

        assert fresh.outcome == ItemOutcome.AWAITING_APPROVAL
        assert [type(e) for e in published] == [ApprovalRequired]
        meta = builder.get_earning(earning_id).meta
        assert meta["approval_requested_at"] == NOW.isoformat()


# =============================================================================
# Payout hook
# =============================================================================


class TestPayout:
    def test_transaction_id_recorded(self, store, scanner, builder, fast_retry):
        earning_id = builder.earning(builder.deal(), created_at=days_ago(31))
        payout = RecordingPayout("tx-9")
        transactor = ClaimAndReleaseTransactor(store, lambda e: None, payout, fast_retry)

        result = transactor.process(_only_candidate(scanner), NOW)

        assert result.outcome == ItemOutcome.RELEASED
        assert payout.calls == [earning_id]
        assert builder.get_earning(earning_id).transaction_id == "tx-9"

    def test_transient_payout_failure_retried(self, store, scanner, builder, fast_retry):
        builder.earning(builder.deal(), created_at=days_ago(31))

        class Flaky(RecordingPayout):
            def initiate(self, earning, deal):
                self.calls.append(earning.earning_id)
                if len(self.calls) < 3:
                    raise TimeoutError("gateway slow")
                return "tx-3"

        payout = Flaky()
        transactor = ClaimAndReleaseTransactor(store, lambda e: None, payout, fast_retry)
        assert transactor.process(_only_candidate(scanner), NOW).outcome == ItemOutcome.RELEASED
        assert len(payout.calls) == 3

    def test_payout_failure_marks_release_failed(self, store, scanner, builder, fast_retry):
        earning_id = builder.earning(builder.deal(), created_at=days_ago(31))
        payout = RecordingPayout(error=ValueError("account closed"))
        published = []
        transactor = ClaimAndReleaseTransactor(store, published.append, payout, fast_retry)

        result = transactor.process(_only_candidate(scanner), NOW)

        assert result.outcome == ItemOutcome.FAILED
        assert result.error_code == "PAYOUT_FAILED"
        assert "account closed" in result.error_message
        assert builder.get_earning(earning_id).status == EarningStatus.RELEASE_FAILED.value
        assert published == []


# =============================================================================
# Failure isolation
# =============================================================================


class TestFailures:
    def test_store_exception_becomes_failed_result(self, scanner, store, builder, published, captured_logs):
        builder.earning(builder.deal(), created_at=days_ago(31))
        candidate = _only_candidate(scanner)

        class ExplodingStore:
            def __getattr__(self, name):
                return getattr(store, name)

            def claim_earning(self, *args, **kwargs):
                raise RuntimeError("disk on fire")

        transactor = ClaimAndReleaseTransactor(ExplodingStore(), published.append)
        result = transactor.process(candidate, NOW)

        assert result.outcome == ItemOutcome.FAILED
        assert result.error_code == "UNHANDLED_EXCEPTION"
        assert result.error_message == "disk on fire"
        assert any(r["message"] == "release_item_failed" for r in captured_logs())

    def test_milestone_write_failure_keeps_release(self, scanner, store, builder, published, captured_logs):
        deal_id = builder.deal()
        milestone_id = builder.milestone(
            deal_id, status=MilestoneStatus.FUNDED,
            auto_release_date=days_ago(1), release_scheduled=True,
        )
        earning_id = builder.earning(deal_id, metadata={"milestone_id": str(milestone_id)})
        candidate = _only_candidate(scanner, EligibilityClass.MILESTONE_AUTO_RELEASE)

        class LockedMilestones:
            def __getattr__(self, name):
                return getattr(store, name)

            def update_milestone(self, *args, **kwargs):
                raise TransientStoreError("update_milestone", 3, "database is locked")

        transactor = ClaimAndReleaseTransactor(LockedMilestones(), published.append)
        result = transactor.process(candidate, NOW)

        assert result.outcome == ItemOutcome.RELEASED
        assert result.release_type.value == "automatic_milestone"
        assert result.error_code == "TRANSIENT_STORE_ERROR"
        assert "database is locked" in result.error_message
        assert builder.get_earning(earning_id).status == EarningStatus.COMPLETED.value
        assert builder.get_milestone(milestone_id).status == MilestoneStatus.FUNDED.value

        (event,) = published
        assert isinstance(event, ReleaseCompleted)
        failed = [r for r in captured_logs() if r["message"] == "release_follow_up_failed"]
        assert failed[0]["step"] == "update_milestone"

    def test_mirror_failure_keeps_release(self, scanner, store, builder, published):
        earning_id = builder.earning(builder.deal(), created_at=days_ago(31))
        candidate = _only_candidate(scanner)

        class BrokenMirror:
            def __getattr__(self, name):
                return getattr(store, name)

            def mirror_transaction(self, *args, **kwargs):
                raise TransientStoreError("mirror_transaction", 3, "connection reset")

        result = ClaimAndReleaseTransactor(BrokenMirror(), published.append).process(candidate, NOW)

        assert result.outcome == ItemOutcome.RELEASED
        assert result.error_code == "TRANSIENT_STORE_ERROR"
        assert builder.get_earning(earning_id).status == EarningStatus.COMPLETED.value
        assert len(published) == 1
