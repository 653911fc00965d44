"""
Declarative base for the escrow ORM models.

Column conventions shared by every table:

* primary keys are uuid4 values stored as ``String(36)`` so the same schema
  runs on PostgreSQL and SQLite;
* money is ``Numeric(38, 9)`` mapped to ``Decimal``, never float;
* timestamps are timezone-aware.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID column persisted as its 36-character text form.

    Stored text that does not parse as a UUID (ids imported from another
    system) comes back as the raw string.  The snapshot converters reject
    such rows, so one bad id cannot fail a whole page.
    """

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        try:
            return UUID(value)
        except ValueError:
            return value


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        UUID: UUIDString(),
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """Adds ``created_at`` / ``updated_at``.

    ``created_at`` falls back to the database clock but callers may set it;
    an Earning's escrow age is measured from it.  ``updated_at`` is bumped by
    ORM flushes and Core ``update()`` statements alike.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(), onupdate=func.now(), nullable=False,
    )
