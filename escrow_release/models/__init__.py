"""ORM models owned by the release engine."""

from escrow_release.models.run import ReleaseRunModel

__all__ = ["ReleaseRunModel"]
