"""Status and role values shared by models and services."""

from __future__ import annotations

from enum import Enum


class EmployeeRole(str, Enum):
    """Employee role values."""

    EMPLOYEE = "employee"
    SUPERVISOR = "supervisor"
    HR = "hr"
    ADMIN = "admin"


class CreditStatus(str, Enum):
    """Credit batch status values."""

    CREDITED = "CREDITED"
    ROLLEDBACK = "ROLLEDBACK"


class EntryStatus(str, Enum):
    """Per-employee sub-ledger entry status values."""

    ACTIVE = "ACTIVE"
    EXHAUSTED = "EXHAUSTED"
    ROLLEDBACK = "ROLLEDBACK"


class ApplicationStatus(str, Enum):
    """CTO application overall status values."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    """Approval step status values."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @classmethod
    def parse(cls, value: str) -> StepStatus:
        """Parse a status string, accepting the legacy DENIED spelling."""
        normalized = str(value).strip().upper()
        if normalized == "DENIED":
            return cls.REJECTED
        return cls(normalized)


class Decision(str, Enum):
    """Approver decision values."""

    APPROVE = "APPROVE"
    REJECT = "REJECT"

    @classmethod
    def parse(cls, value: str) -> Decision:
        normalized = str(value).strip().upper()
        if normalized in ("DENY", "DENIED", "REJECTED"):
            return cls.REJECT
        if normalized == "APPROVED":
            return cls.APPROVE
        return cls(normalized)
