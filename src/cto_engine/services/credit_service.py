"""Credit service - memo-backed CTO issuance and rollback.

Operations:
- issue_credit: create a batch and credit every named employee
- rollback_credit: reverse a batch none of whose hours were touched
- get_credit / list_credits / list_employee_credits: read models
- get_balance_summary: aggregate and per-state hours for one employee
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import AbstractSet, Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from cto_engine.errors import ConflictError, NotFoundError, ValidationError
from cto_engine.events import AsyncEventEmitter, CreditIssued, CreditRolledBack, EventMetadata
from cto_engine.models import (
    CreditStatus,
    CtoCredit,
    CtoCreditEntry,
    Employee,
    EntryStatus,
    utcnow,
)
from cto_engine.services.allocation import ZERO, duration_to_hours
from cto_engine.services.approver_resolver import ensure_employees_exist
from cto_engine.services.audit_service import record_audit
from cto_engine.services.common import as_uuid, recipient_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Duration:
    """Hours + minutes credited by a memo."""

    hours: int
    minutes: int = 0

    @property
    def total_hours(self) -> Decimal:
        return duration_to_hours(self.hours, self.minutes)

    @classmethod
    def coerce(cls, value: Duration | Mapping[str, Any]) -> Duration:
        if isinstance(value, Duration):
            return value
        if not isinstance(value, Mapping):
            raise ValidationError("Invalid duration format")
        return cls(hours=value.get("hours", 0), minutes=value.get("minutes", 0))


@dataclass(frozen=True)
class BalanceSummary:
    """CTO hours of one employee."""

    employee_id: UUID
    balance: Decimal  # aggregate balance on the employee record
    credited: Decimal
    used: Decimal
    reserved: Decimal
    remaining: Decimal


class CreditService:
    """Service for CTO credit batches.

    Every mutation runs in one transaction; events are dispatched only
    after that transaction commits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: AsyncEventEmitter | None = None,
    ):
        self.session_factory = session_factory
        self.emitter = emitter or AsyncEventEmitter()

    async def issue_credit(
        self,
        *,
        employee_ids: Sequence[UUID | str],
        duration: Duration | Mapping[str, Any],
        memo_no: str,
        issuer_id: UUID | str,
        date_approved: date | str | None = None,
        attachment_ref: str | None = None,
    ) -> CtoCredit:
        """Credit `duration` to every employee in one batch.

        Every employee id is checked before anything is written; an unknown
        id fails the whole operation.
        """
        # A bare string is a sequence too, but of characters
        if isinstance(employee_ids, (str, bytes)) or not isinstance(
            employee_ids, (Sequence, AbstractSet)
        ):
            raise ValidationError("employee_ids must be a list of employee ids")
        if not employee_ids:
            raise ValidationError("At least one employee is required")
        ids = [as_uuid(e, "employee id") for e in employee_ids]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate employee ids in credit request")
        if not memo_no or not str(memo_no).strip():
            raise ValidationError("Memo number is required")
        memo_no = str(memo_no).strip()
        duration = Duration.coerce(duration)
        total_hours = duration.total_hours
        issuer_id = as_uuid(issuer_id, "issuer id")
        approved_on = _parse_date(date_approved)

        async with self.emitter.batch() as batch:
            async with self.session_factory() as session:
                async with session.begin():
                    employees = await ensure_employees_exist(session, ids)
                    if await session.get(Employee, issuer_id) is None:
                        raise ValidationError(f"Issuer {issuer_id} not found")

                    now = utcnow()
                    credit = CtoCredit(
                        memo_no=memo_no,
                        date_approved=approved_on,
                        attachment_ref=attachment_ref,
                        duration_hours=duration.hours,
                        duration_minutes=duration.minutes,
                        total_hours=total_hours,
                        status=CreditStatus.CREDITED.value,
                        date_credited=now,
                        credited_by_id=issuer_id,
                    )
                    session.add(credit)
                    await session.flush()

                    for employee_id in ids:
                        session.add(
                            CtoCreditEntry(
                                credit_id=credit.credit_id,
                                employee_id=employee_id,
                                credited_hours=total_hours,
                                used_hours=ZERO,
                                reserved_hours=ZERO,
                                remaining_hours=total_hours,
                                status=EntryStatus.ACTIVE.value,
                                date_credited=now,
                            )
                        )

                    await session.execute(
                        update(Employee)
                        .where(Employee.employee_id.in_(ids))
                        .values(cto_hours=Employee.cto_hours + total_hours)
                        .execution_options(synchronize_session=False)
                    )

                    record_audit(
                        session,
                        entity_type="cto_credit",
                        entity_id=credit.credit_id,
                        action="credited",
                        actor_id=issuer_id,
                        details={
                            "memo_no": memo_no,
                            "total_hours": total_hours,
                            "employees": ids,
                        },
                    )
                    await session.flush()
                    credit = await self._load_credit(session, credit.credit_id)

            batch.add(
                CreditIssued(
                    metadata=EventMetadata.create(actor_id=issuer_id),
                    credit_id=credit.credit_id,
                    memo_no=memo_no,
                    total_hours=total_hours,
                    recipients=tuple(recipient_for(employees[i]) for i in ids),
                )
            )

        logger.info(
            "Credited %sh from memo %s to %d employee(s) (batch %s)",
            total_hours,
            memo_no,
            len(ids),
            credit.credit_id,
        )
        return credit

    async def rollback_credit(
        self,
        credit_id: UUID | str,
        actor_id: UUID | str,
    ) -> CtoCredit:
        """Reverse a batch whose hours were never reserved or used.

        Not idempotent: rolling back a ROLLEDBACK batch raises ConflictError
        so balances are never debited twice.
        """
        credit_id = as_uuid(credit_id, "credit id")
        actor_id = as_uuid(actor_id, "actor id")

        async with self.emitter.batch() as batch:
            async with self.session_factory() as session:
                async with session.begin():
                    if await session.get(Employee, actor_id) is None:
                        raise ValidationError(f"Actor {actor_id} not found")
                    credit = await self._load_credit(session, credit_id, for_update=True)
                    if credit is None:
                        raise NotFoundError("CtoCredit", credit_id)
                    if credit.status != CreditStatus.CREDITED:
                        logger.warning("Rollback refused: batch %s is %s", credit_id, credit.status)
                        raise ConflictError("This credit is not active or already rolled back")

                    touched = [
                        e for e in credit.entries
                        if e.used_hours > ZERO or e.reserved_hours > ZERO
                    ]
                    if touched:
                        logger.warning(
                            "Rollback refused: batch %s has %d entries in use",
                            credit_id,
                            len(touched),
                        )
                        raise ConflictError(
                            "Cannot roll back a credit whose hours are already used or reserved"
                        )

                    now = utcnow()
                    result = await session.execute(
                        update(CtoCredit)
                        .where(
                            CtoCredit.credit_id == credit_id,
                            CtoCredit.status == CreditStatus.CREDITED.value,
                        )
                        .values(
                            status=CreditStatus.ROLLEDBACK.value,
                            date_rolled_back=now,
                            rolled_back_by_id=actor_id,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise ConflictError("This credit is not active or already rolled back")

                    # Guard against a reservation that landed after the read above
                    result = await session.execute(
                        update(CtoCreditEntry)
                        .where(
                            CtoCreditEntry.credit_id == credit_id,
                            CtoCreditEntry.used_hours == ZERO,
                            CtoCreditEntry.reserved_hours == ZERO,
                            CtoCreditEntry.status != EntryStatus.ROLLEDBACK.value,
                        )
                        .values(status=EntryStatus.ROLLEDBACK.value)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != len(credit.entries):
                        raise ConflictError(
                            "Cannot roll back a credit whose hours are already used or reserved"
                        )

                    for entry in credit.entries:
                        result = await session.execute(
                            update(Employee)
                            .where(
                                Employee.employee_id == entry.employee_id,
                                Employee.cto_hours >= entry.credited_hours,
                            )
                            .values(cto_hours=Employee.cto_hours - entry.credited_hours)
                            .execution_options(synchronize_session=False)
                        )
                        if result.rowcount != 1:
                            raise ConflictError(
                                f"Employee {entry.employee_id} CTO balance would go negative"
                            )

                    record_audit(
                        session,
                        entity_type="cto_credit",
                        entity_id=credit_id,
                        action="rolled_back",
                        actor_id=actor_id,
                        details={"memo_no": credit.memo_no, "total_hours": credit.total_hours},
                    )
                    await session.flush()
                    credit = await self._load_credit(session, credit_id)

            batch.add(
                CreditRolledBack(
                    metadata=EventMetadata.create(actor_id=actor_id),
                    credit_id=credit.credit_id,
                    memo_no=credit.memo_no,
                    total_hours=credit.total_hours,
                    recipients=tuple(recipient_for(e.employee) for e in credit.entries),
                )
            )

        logger.info("Rolled back credit batch %s (memo %s)", credit_id, credit.memo_no)
        return credit

    async def get_credit(self, credit_id: UUID | str) -> CtoCredit:
        credit_id = as_uuid(credit_id, "credit id")
        async with self.session_factory() as session:
            credit = await self._load_credit(session, credit_id)
        if credit is None:
            raise NotFoundError("CtoCredit", credit_id)
        return credit

    async def list_credits(self, limit: int | None = None) -> list[CtoCredit]:
        """Credit batches, most recent first."""
        query = (
            select(CtoCredit)
            .options(selectinload(CtoCredit.entries).selectinload(CtoCreditEntry.employee))
            .order_by(CtoCredit.date_credited.desc(), CtoCredit.memo_no.desc())
        )
        if limit is not None:
            query = query.limit(limit)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_employee_credits(self, employee_id: UUID | str) -> list[CtoCreditEntry]:
        """Sub-ledger entries of one employee, oldest first."""
        employee_id = as_uuid(employee_id, "employee id")
        async with self.session_factory() as session:
            if await session.get(Employee, employee_id) is None:
                raise NotFoundError("Employee", employee_id)
            result = await session.execute(
                select(CtoCreditEntry)
                .where(CtoCreditEntry.employee_id == employee_id)
                .options(selectinload(CtoCreditEntry.credit))
                .order_by(CtoCreditEntry.date_credited, CtoCreditEntry.entry_id)
            )
            return list(result.scalars().all())

    async def get_balance_summary(self, employee_id: UUID | str) -> BalanceSummary:
        """Aggregate balance plus sub-ledger totals over non-rolled-back entries."""
        employee_id = as_uuid(employee_id, "employee id")
        async with self.session_factory() as session:
            employee = await session.get(Employee, employee_id)
            if employee is None:
                raise NotFoundError("Employee", employee_id)
            row = (
                await session.execute(
                    select(
                        func.coalesce(func.sum(CtoCreditEntry.credited_hours), 0),
                        func.coalesce(func.sum(CtoCreditEntry.used_hours), 0),
                        func.coalesce(func.sum(CtoCreditEntry.reserved_hours), 0),
                        func.coalesce(func.sum(CtoCreditEntry.remaining_hours), 0),
                    ).where(
                        CtoCreditEntry.employee_id == employee_id,
                        CtoCreditEntry.status != EntryStatus.ROLLEDBACK.value,
                    )
                )
            ).one()

        credited, used, reserved, remaining = (_hours(v) for v in row)
        return BalanceSummary(
            employee_id=employee_id,
            balance=_hours(employee.cto_hours),
            credited=credited,
            used=used,
            reserved=reserved,
            remaining=remaining,
        )

    async def _load_credit(
        self,
        session: AsyncSession,
        credit_id: UUID,
        for_update: bool = False,
    ) -> CtoCredit | None:
        query = (
            select(CtoCredit)
            .where(CtoCredit.credit_id == credit_id)
            .options(selectinload(CtoCredit.entries).selectinload(CtoCreditEntry.employee))
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query)
        return result.scalar_one_or_none()


def _parse_date(value: date | str | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError as e:
        raise ValidationError(f"Invalid approval date: {value}") from e


def _hours(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.0001"))
