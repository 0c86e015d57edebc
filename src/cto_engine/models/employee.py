"""Employee and approver setting models."""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from cto_engine.models.base import HOURS, Base, TimestampMixin


class Employee(Base, TimestampMixin):
    """Employee record with aggregate CTO balance.

    Only the identity fields the CTO workflow reads are modelled here; the
    rest of the employee directory lives outside this service.
    """

    __tablename__ = "employee"

    employee_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    role: Mapped[str] = mapped_column(String, nullable=False, default="employee")
    designation_id: Mapped[UUID | None] = mapped_column(nullable=True)
    cto_hours: Mapped[Decimal] = mapped_column(HOURS, nullable=False, default=Decimal("0"))

    __table_args__ = (
        CheckConstraint(
            "role IN ('employee', 'supervisor', 'hr', 'admin')",
            name="employee_role_check",
        ),
        CheckConstraint("cto_hours >= 0", name="employee_cto_hours_nonneg"),
    )

    @property
    def full_name(self) -> str:
        """Get full name."""
        return f"{self.first_name} {self.last_name}"


class ApproverSetting(Base, TimestampMixin):
    """Three-level approver chain configured per designation."""

    __tablename__ = "cto_approver_setting"

    approver_setting_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    designation_id: Mapped[UUID] = mapped_column(nullable=False, unique=True)
    level1_approver_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"), nullable=False
    )
    level2_approver_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"), nullable=False
    )
    level3_approver_id: Mapped[UUID] = mapped_column(
        ForeignKey("employee.employee_id"), nullable=False
    )

    def chain(self) -> tuple[UUID, UUID, UUID]:
        """Approver ids ordered by level."""
        return (self.level1_approver_id, self.level2_approver_id, self.level3_approver_id)
