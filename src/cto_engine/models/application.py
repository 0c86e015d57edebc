"""CTO application, approval step and memo allocation models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from cto_engine.models.base import HOURS, Base, TimestampMixin, utcnow

if TYPE_CHECKING:
    from cto_engine.models.credit import CtoCredit
    from cto_engine.models.employee import Employee


class CtoApplication(Base, TimestampMixin):
    """A request to spend CTO hours, approved through up to three levels."""

    __tablename__ = "cto_application"

    application_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    employee_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"), nullable=False
    )
    requested_hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    inclusive_dates: Mapped[list[Any] | None] = mapped_column(JSON, nullable=True)
    overall_status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("requested_hours > 0", name="cto_application_hours_positive"),
        CheckConstraint(
            "overall_status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED')",
            name="cto_application_status_check",
        ),
    )

    # Relationships
    employee: Mapped[Employee] = relationship()
    steps: Mapped[list[ApprovalStep]] = relationship(
        back_populates="application",
        order_by="ApprovalStep.level",
    )
    allocations: Mapped[list[CtoApplicationMemo]] = relationship(
        back_populates="application",
        order_by="CtoApplicationMemo.position",
    )


class ApprovalStep(Base, TimestampMixin):
    """One approver's checkpoint in an application's chain."""

    __tablename__ = "cto_approval_step"

    step_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    application_id: Mapped[UUID] = mapped_column(
        ForeignKey("cto_application.application_id", ondelete="CASCADE"),
        nullable=False,
    )
    level: Mapped[int] = mapped_column(Integer, nullable=False)
    approver_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"), nullable=False
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="PENDING")
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("application_id", "level", name="cto_step_level_unique"),
        UniqueConstraint("application_id", "approver_id", name="cto_step_approver_unique"),
        CheckConstraint("level BETWEEN 1 AND 3", name="cto_step_level_range"),
        CheckConstraint(
            "status IN ('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED')",
            name="cto_step_status_check",
        ),
    )

    # Relationships
    application: Mapped[CtoApplication] = relationship(back_populates="steps")
    approver: Mapped[Employee] = relationship()


class CtoApplicationMemo(Base):
    """Hours of one credit batch reserved against an application."""

    __tablename__ = "cto_application_memo"

    allocation_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    application_id: Mapped[UUID] = mapped_column(
        ForeignKey("cto_application.application_id", ondelete="CASCADE"),
        nullable=False,
    )
    credit_id: Mapped[UUID] = mapped_column(
        ForeignKey("cto_credit.credit_id"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False)

    __table_args__ = (
        UniqueConstraint("application_id", "credit_id", name="cto_application_memo_unique"),
        CheckConstraint("applied_hours > 0", name="cto_application_memo_positive"),
    )

    # Relationships
    application: Mapped[CtoApplication] = relationship(back_populates="allocations")
    credit: Mapped[CtoCredit] = relationship()
