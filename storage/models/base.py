"""
Base ORM Model and Mixins.

============================================================
PURPOSE
============================================================
Declarative base and shared column mixins for the copy-trade
engine's tables.

============================================================
COMPONENTS
============================================================
- Base: declarative base; Decimal maps to NUMERIC(28, 10),
  datetime to timezone-aware DATETIME, dict to JSON
- TimestampMixin: created_at / updated_at columns
- new_id: string UUID primary keys

============================================================
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import JSON, DateTime, Numeric, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    return str(uuid.uuid4())


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """
    Declarative base for all ORM models.
    """

    type_annotation_map = {
        datetime: DateTime(timezone=True),
        Decimal: Numeric(28, 10),
        Dict[str, Any]: JSON,
    }


class TimestampMixin:
    """
    created_at / updated_at columns, timezone-aware.

    Usage:
        class MyModel(Base, TimestampMixin):
            __tablename__ = "my_table"
    """

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=_utc_now,
        server_default=func.now(),
        comment="Record creation timestamp (UTC)",
    )

    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=_utc_now,
        onupdate=_utc_now,
        server_default=func.now(),
        comment="Last update timestamp (UTC)",
    )
