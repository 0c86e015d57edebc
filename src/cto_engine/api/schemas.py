"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from cto_engine.models import CtoApplication, CtoCreditEntry


# ============================================================================
# Credit schemas
# ============================================================================


class DurationIn(BaseModel):
    """Hours and minutes credited by a memo."""

    hours: int
    minutes: int = 0


class CreditCreate(BaseModel):
    """Schema for issuing a credit batch."""

    employee_ids: list[UUID]
    duration: DurationIn
    memo_no: str
    date_approved: date | None = None
    attachment_ref: str | None = None


class CreditEntryResponse(BaseModel):
    """One employee's line of a credit batch."""

    model_config = ConfigDict(from_attributes=True)

    entry_id: UUID
    employee_id: UUID
    credited_hours: Decimal
    used_hours: Decimal
    reserved_hours: Decimal
    remaining_hours: Decimal
    status: str
    date_credited: datetime


class CreditResponse(BaseModel):
    """Schema for credit batch response."""

    model_config = ConfigDict(from_attributes=True)

    credit_id: UUID
    memo_no: str
    date_approved: date | None = None
    attachment_ref: str | None = None
    duration_hours: int
    duration_minutes: int
    total_hours: Decimal
    status: str
    date_credited: datetime
    credited_by_id: UUID | None = None
    date_rolled_back: datetime | None = None
    rolled_back_by_id: UUID | None = None
    entries: list[CreditEntryResponse]


class EmployeeCreditResponse(CreditEntryResponse):
    """Sub-ledger entry with its batch's memo details."""

    credit_id: UUID
    memo_no: str
    credit_status: str

    @classmethod
    def from_entry(cls, entry: CtoCreditEntry) -> EmployeeCreditResponse:
        return cls(
            entry_id=entry.entry_id,
            employee_id=entry.employee_id,
            credited_hours=entry.credited_hours,
            used_hours=entry.used_hours,
            reserved_hours=entry.reserved_hours,
            remaining_hours=entry.remaining_hours,
            status=entry.status,
            date_credited=entry.date_credited,
            credit_id=entry.credit_id,
            memo_no=entry.credit.memo_no,
            credit_status=entry.credit.status,
        )


class BalanceResponse(BaseModel):
    """Schema for an employee's CTO balance."""

    model_config = ConfigDict(from_attributes=True)

    employee_id: UUID
    balance: Decimal
    credited: Decimal
    used: Decimal
    reserved: Decimal
    remaining: Decimal


# ============================================================================
# Application schemas
# ============================================================================


class ApproverChainIn(BaseModel):
    """Level 1, 2 and 3 approvers."""

    level1: UUID
    level2: UUID
    level3: UUID


class MemoAllocationIn(BaseModel):
    """Hours to draw from one credit batch."""

    memo_id: UUID
    applied_hours: Decimal


class ApplicationCreate(BaseModel):
    """Schema for submitting a CTO application."""

    requested_hours: Decimal
    reason: str | None = None
    inclusive_dates: list[date] | None = None
    approvers: ApproverChainIn | None = None
    memos: list[MemoAllocationIn] | None = None


class ApprovalStepResponse(BaseModel):
    """Schema for approval step response."""

    model_config = ConfigDict(from_attributes=True)

    step_id: UUID
    level: int
    approver_id: UUID
    status: str
    reviewed_at: datetime | None = None
    remarks: str | None = None


class AllocationResponse(BaseModel):
    """Hours reserved from one credit batch."""

    credit_id: UUID
    memo_no: str
    applied_hours: Decimal


class ApplicationResponse(BaseModel):
    """Schema for CTO application response."""

    application_id: UUID
    employee_id: UUID
    requested_hours: Decimal
    reason: str | None = None
    inclusive_dates: list[str] | None = None
    overall_status: str
    created_at: datetime
    updated_at: datetime
    steps: list[ApprovalStepResponse]
    memos: list[AllocationResponse]

    @classmethod
    def from_application(cls, application: CtoApplication) -> ApplicationResponse:
        return cls(
            application_id=application.application_id,
            employee_id=application.employee_id,
            requested_hours=application.requested_hours,
            reason=application.reason,
            inclusive_dates=application.inclusive_dates,
            overall_status=application.overall_status,
            created_at=application.created_at,
            updated_at=application.updated_at,
            steps=[ApprovalStepResponse.model_validate(s) for s in application.steps],
            memos=[
                AllocationResponse(
                    credit_id=a.credit_id,
                    memo_no=a.credit.memo_no,
                    applied_hours=a.applied_hours,
                )
                for a in application.allocations
            ],
        )


class DecisionRequest(BaseModel):
    """Schema for an approver's decision."""

    decision: str
    remarks: str | None = None


class PendingCountResponse(BaseModel):
    """How many applications wait on one approver."""

    approver_id: UUID
    count: int


# ============================================================================
# Approver setting schemas
# ============================================================================


class ApproverSettingResponse(BaseModel):
    """Schema for approver setting response."""

    model_config = ConfigDict(from_attributes=True)

    approver_setting_id: UUID
    designation_id: UUID
    level1_approver_id: UUID
    level2_approver_id: UUID
    level3_approver_id: UUID


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
