"""ORM models for the escrow kernel."""

from escrow_kernel.models.deal import (
    DEAL_FINALIZABLE,
    MILESTONE_RELEASABLE,
    MILESTONE_TERMINAL,
    DealModel,
    DealStatus,
    DealTransactionModel,
    MilestoneModel,
    MilestoneStatus,
)
from escrow_kernel.models.earning import EarningModel, EarningStatus, ReleaseType
from escrow_kernel.models.notification import NotificationModel


def import_all_models() -> None:
    """Import every ORM module so Base.metadata discovers all tables.

    Includes the release-run table owned by ``escrow_release``.
    """
    import escrow_release.models.run  # noqa: F401


__all__ = [
    "DEAL_FINALIZABLE",
    "MILESTONE_RELEASABLE",
    "MILESTONE_TERMINAL",
    "DealModel",
    "DealStatus",
    "DealTransactionModel",
    "EarningModel",
    "EarningStatus",
    "MilestoneModel",
    "MilestoneStatus",
    "NotificationModel",
    "ReleaseType",
    "import_all_models",
]
