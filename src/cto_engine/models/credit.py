"""CTO credit batch and per-employee sub-ledger models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cto_engine.models.base import HOURS, Base, TimestampMixin

if TYPE_CHECKING:
    from cto_engine.models.employee import Employee


class CtoCredit(Base, TimestampMixin):
    """One memo-backed issuance event fanned out to one or more employees."""

    __tablename__ = "cto_credit"

    credit_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    memo_no: Mapped[str] = mapped_column(String, nullable=False)
    date_approved: Mapped[date | None] = mapped_column(Date, nullable=True)
    attachment_ref: Mapped[str | None] = mapped_column(String, nullable=True)
    duration_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    total_hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="CREDITED")
    date_credited: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    credited_by_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id"), nullable=True
    )
    date_rolled_back: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rolled_back_by_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("employee.employee_id"), nullable=True
    )

    __table_args__ = (
        CheckConstraint("status IN ('CREDITED', 'ROLLEDBACK')", name="cto_credit_status_check"),
        CheckConstraint("total_hours > 0", name="cto_credit_total_hours_positive"),
        CheckConstraint(
            "duration_minutes >= 0 AND duration_minutes < 60",
            name="cto_credit_minutes_range",
        ),
    )

    # Relationships
    entries: Mapped[list[CtoCreditEntry]] = relationship(
        back_populates="credit",
        order_by="CtoCreditEntry.entry_id",
    )


class CtoCreditEntry(Base):
    """Per-employee sub-ledger line of a credit batch.

    remaining_hours is always credited_hours - used_hours - reserved_hours.
    """

    __tablename__ = "cto_credit_entry"

    entry_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    credit_id: Mapped[UUID] = mapped_column(
        ForeignKey("cto_credit.credit_id", ondelete="RESTRICT"), nullable=False
    )
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"), nullable=False
    )
    credited_hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False)
    used_hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False, default=Decimal("0"))
    reserved_hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False, default=Decimal("0"))
    remaining_hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False)
    status: Mapped[str] = mapped_column(String, nullable=False, default="ACTIVE")
    date_credited: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("credit_id", "employee_id", name="cto_credit_entry_employee_unique"),
        CheckConstraint(
            "status IN ('ACTIVE', 'EXHAUSTED', 'ROLLEDBACK')",
            name="cto_credit_entry_status_check",
        ),
        CheckConstraint(
            "used_hours >= 0 AND reserved_hours >= 0 AND remaining_hours >= 0",
            name="cto_credit_entry_nonneg",
        ),
        CheckConstraint(
            "used_hours + reserved_hours <= credited_hours",
            name="cto_credit_entry_within_credit",
        ),
    )

    # Relationships
    credit: Mapped[CtoCredit] = relationship(back_populates="entries")
    employee: Mapped[Employee] = relationship()
