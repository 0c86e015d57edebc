"""Base model class for SQLAlchemy ORM."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import BigInteger, DateTime, Numeric, Uuid, func
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator, TypeEngine

HOURS_SCALE = 4
HOURS_QUANTUM = Decimal(1).scaleb(-HOURS_SCALE)


class Hours(TypeDecorator[Decimal]):
    """Hour amounts with four decimal places.

    PostgreSQL keeps them as NUMERIC. SQLite has no exact decimal type and
    would hand back floats, so there they are stored as integer
    ten-thousandths of an hour. Literals compared with or added to an
    hours column bind through this type too, so guarded updates stay exact
    on both backends.
    """

    impl = Numeric(12, HOURS_SCALE)
    cache_ok = True

    def load_dialect_impl(self, dialect: Dialect) -> TypeEngine[Any]:
        if dialect.name == "sqlite":
            return dialect.type_descriptor(BigInteger())
        return dialect.type_descriptor(Numeric(12, HOURS_SCALE))

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        hours = Decimal(str(value)).quantize(HOURS_QUANTUM, rounding=ROUND_HALF_UP)
        if dialect.name == "sqlite":
            return int(hours.scaleb(HOURS_SCALE))
        return hours

    def process_result_value(self, value: Any, dialect: Dialect) -> Decimal | None:
        if value is None:
            return None
        if dialect.name == "sqlite":
            return Decimal(int(value)).scaleb(-HOURS_SCALE).quantize(HOURS_QUANTUM)
        return Decimal(str(value)).quantize(HOURS_QUANTUM)


# Minute-based durations (20 minutes = 0.3333h) round-trip through rollback exactly.
HOURS = Hours()


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        UUID: Uuid(as_uuid=True),
        datetime: DateTime(timezone=True),
    }

    def to_dict(self) -> dict[str, Any]:
        """Convert model to dictionary."""
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class TimestampMixin:
    """Mixin for models with created_at timestamp."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
