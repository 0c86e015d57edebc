"""ORM models for the CTO ledger."""

from cto_engine.models.application import ApprovalStep, CtoApplication, CtoApplicationMemo
from cto_engine.models.audit import AuditEvent
from cto_engine.models.base import HOURS, Base, Hours, TimestampMixin, utcnow
from cto_engine.models.credit import CtoCredit, CtoCreditEntry
from cto_engine.models.employee import ApproverSetting, Employee
from cto_engine.models.status import (
    ApplicationStatus,
    CreditStatus,
    Decision,
    EmployeeRole,
    EntryStatus,
    StepStatus,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "utcnow",
    "HOURS",
    "Hours",
    "Employee",
    "ApproverSetting",
    "CtoCredit",
    "CtoCreditEntry",
    "CtoApplication",
    "ApprovalStep",
    "CtoApplicationMemo",
    "AuditEvent",
    "ApplicationStatus",
    "CreditStatus",
    "Decision",
    "EmployeeRole",
    "EntryStatus",
    "StepStatus",
]
