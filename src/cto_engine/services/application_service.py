"""Application service - CTO spend requests and hour reservation.

Submission reserves hours on the employee's credit entries and creates the
three approval steps in one transaction. Cancellation releases the
reservation again.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Mapping, Sequence
from uuid import UUID

from sqlalchemy import Select, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from cto_engine.errors import (
    ConflictError,
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from cto_engine.events import (
    ApplicationCancelled,
    ApplicationSubmitted,
    AsyncEventEmitter,
    EventMetadata,
)
from cto_engine.models import (
    ApplicationStatus,
    ApprovalStep,
    CreditStatus,
    CtoApplication,
    CtoApplicationMemo,
    CtoCredit,
    CtoCreditEntry,
    Employee,
    EntryStatus,
    StepStatus,
    utcnow,
)
from cto_engine.services.allocation import (
    ZERO,
    Allocation,
    AvailableCredit,
    as_hours,
    plan_allocation,
    validate_explicit_allocation,
)
from cto_engine.services.approver_resolver import (
    ApproverChain,
    ApproverResolver,
    ensure_employees_exist,
)
from cto_engine.services.audit_service import record_audit
from cto_engine.services.common import as_uuid, recipient_for

logger = logging.getLogger(__name__)

EMPLOYEE_CANCEL_REMARK = "Auto-cancelled: the employee cancelled this request."


async def load_application(
    session: AsyncSession,
    application_id: UUID,
    for_update: bool = False,
) -> CtoApplication | None:
    """Load an application with its employee, steps and allocations."""
    query = (
        select(CtoApplication)
        .where(CtoApplication.application_id == application_id)
        .options(
            selectinload(CtoApplication.employee),
            selectinload(CtoApplication.steps).selectinload(ApprovalStep.approver),
            selectinload(CtoApplication.allocations).selectinload(CtoApplicationMemo.credit),
        )
        .execution_options(populate_existing=True)
    )
    if for_update:
        query = query.with_for_update()
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def release_allocations(session: AsyncSession, application: CtoApplication) -> None:
    """Move every reserved hour of the application back to remaining."""
    for allocation in application.allocations:
        result = await session.execute(
            update(CtoCreditEntry)
            .where(
                CtoCreditEntry.credit_id == allocation.credit_id,
                CtoCreditEntry.employee_id == application.employee_id,
                CtoCreditEntry.reserved_hours >= allocation.applied_hours,
            )
            .values(
                reserved_hours=CtoCreditEntry.reserved_hours - allocation.applied_hours,
                remaining_hours=CtoCreditEntry.remaining_hours + allocation.applied_hours,
                status=EntryStatus.ACTIVE.value,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Reserved hours mismatch on credit {allocation.credit_id}"
            )


class ApplicationService:
    """Service for submitting and withdrawing CTO applications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: AsyncEventEmitter | None = None,
        resolver: ApproverResolver | None = None,
        draw_order: str = "oldest_first",
    ):
        self.session_factory = session_factory
        self.emitter = emitter or AsyncEventEmitter()
        self.resolver = resolver
        self.draw_order = draw_order

    async def submit_application(
        self,
        *,
        employee_id: UUID | str,
        requested_hours: Any,
        reason: str | None = None,
        approvers: ApproverChain | Mapping[str, Any] | Sequence[Any] | None = None,
        memos: Sequence[Mapping[str, Any]] | None = None,
        inclusive_dates: Sequence[date | str] | None = None,
    ) -> CtoApplication:
        """Reserve hours and open a three-level approval.

        Hours come from `memos` when given, otherwise from the employee's
        active entries in the configured draw order. Nothing is written
        when the balance cannot cover the request.
        """
        employee_id = as_uuid(employee_id, "employee id")
        requested = as_hours(requested_hours, "requested hours")
        if requested <= ZERO:
            raise ValidationError("Requested hours must be greater than zero")
        dates = _normalize_dates(inclusive_dates)
        explicit_chain = ApproverChain.coerce(approvers) if approvers is not None else None

        async with self.emitter.batch() as batch:
            async with self.session_factory() as session:
                async with session.begin():
                    employee = await session.get(Employee, employee_id)
                    if employee is None:
                        raise NotFoundError("Employee", employee_id)

                    chain = explicit_chain or await self._resolve_chain(employee)
                    approver_rows = await ensure_employees_exist(session, list(chain.as_tuple()))

                    credits = await self._available_credits(session, employee_id)
                    if memos:
                        plan = validate_explicit_allocation(credits, requested, memos)
                    else:
                        plan = plan_allocation(credits, requested, self.draw_order)

                    await self._reserve(session, employee_id, plan)

                    application = CtoApplication(
                        employee_id=employee_id,
                        requested_hours=requested,
                        reason=reason,
                        inclusive_dates=dates,
                        overall_status=ApplicationStatus.PENDING.value,
                    )
                    session.add(application)
                    await session.flush()

                    for level, approver_id in enumerate(chain.as_tuple(), start=1):
                        session.add(
                            ApprovalStep(
                                application_id=application.application_id,
                                level=level,
                                approver_id=approver_id,
                                status=StepStatus.PENDING.value,
                            )
                        )
                    for position, allocation in enumerate(plan):
                        session.add(
                            CtoApplicationMemo(
                                application_id=application.application_id,
                                credit_id=allocation.credit_id,
                                position=position,
                                applied_hours=allocation.applied_hours,
                            )
                        )

                    record_audit(
                        session,
                        entity_type="cto_application",
                        entity_id=application.application_id,
                        action="submitted",
                        actor_id=employee_id,
                        details={
                            "requested_hours": requested,
                            "approvers": chain.as_tuple(),
                            "memos": [
                                {"credit_id": a.credit_id, "applied_hours": a.applied_hours}
                                for a in plan
                            ],
                        },
                    )
                    await session.flush()
                    application = await load_application(session, application.application_id)

            batch.add(
                ApplicationSubmitted(
                    metadata=EventMetadata.create(actor_id=employee_id),
                    application_id=application.application_id,
                    employee=recipient_for(employee),
                    requested_hours=requested,
                    reason=reason,
                    next_level=1,
                    next_approver=recipient_for(approver_rows[chain.level1]),
                )
            )

        logger.info(
            "Application %s submitted by %s for %sh across %d credit(s)",
            application.application_id,
            employee_id,
            requested,
            len(plan),
        )
        return application

    async def cancel_application(
        self,
        application_id: UUID | str,
        employee_id: UUID | str,
    ) -> CtoApplication:
        """Withdraw a PENDING application and release its reserved hours."""
        application_id = as_uuid(application_id, "application id")
        employee_id = as_uuid(employee_id, "employee id")

        async with self.emitter.batch() as batch:
            async with self.session_factory() as session:
                async with session.begin():
                    application = await load_application(session, application_id, for_update=True)
                    if application is None:
                        raise NotFoundError("CtoApplication", application_id)
                    if application.employee_id != employee_id:
                        raise ForbiddenError("Only the applicant can cancel this application.")
                    if application.overall_status != ApplicationStatus.PENDING:
                        raise ConflictError("Only pending applications can be cancelled.")

                    result = await session.execute(
                        update(CtoApplication)
                        .where(
                            CtoApplication.application_id == application_id,
                            CtoApplication.overall_status == ApplicationStatus.PENDING.value,
                        )
                        .values(
                            overall_status=ApplicationStatus.CANCELLED.value,
                            updated_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        raise ConflictError("Application already processed.")

                    await release_allocations(session, application)
                    await session.execute(
                        update(ApprovalStep)
                        .where(
                            ApprovalStep.application_id == application_id,
                            ApprovalStep.status == StepStatus.PENDING.value,
                        )
                        .values(
                            status=StepStatus.CANCELLED.value,
                            remarks=EMPLOYEE_CANCEL_REMARK,
                            reviewed_at=utcnow(),
                        )
                        .execution_options(synchronize_session=False)
                    )

                    record_audit(
                        session,
                        entity_type="cto_application",
                        entity_id=application_id,
                        action="cancelled",
                        actor_id=employee_id,
                        details={"requested_hours": application.requested_hours},
                    )
                    await session.flush()
                    application = await load_application(session, application_id)

            batch.add(
                ApplicationCancelled(
                    metadata=EventMetadata.create(actor_id=employee_id),
                    application_id=application_id,
                    employee=recipient_for(application.employee),
                    requested_hours=application.requested_hours,
                )
            )

        logger.info("Application %s cancelled by its applicant", application_id)
        return application

    async def get_application(self, application_id: UUID | str) -> CtoApplication:
        application_id = as_uuid(application_id, "application id")
        async with self.session_factory() as session:
            application = await load_application(session, application_id)
        if application is None:
            raise NotFoundError("CtoApplication", application_id)
        return application

    async def list_applications(
        self,
        status: str | None = None,
        employee_id: UUID | str | None = None,
    ) -> list[CtoApplication]:
        """Every application, newest first, optionally narrowed by status or employee.

        Meant for administrators; an employee filter that matches nobody
        returns an empty list rather than NotFoundError.
        """
        query = _listing_query(status)
        if employee_id is not None:
            employee_id = as_uuid(employee_id, "employee id")
            query = query.where(CtoApplication.employee_id == employee_id)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def list_employee_applications(
        self,
        employee_id: UUID | str,
        status: str | None = None,
    ) -> list[CtoApplication]:
        """Applications of one employee, newest first."""
        employee_id = as_uuid(employee_id, "employee id")
        query = _listing_query(status).where(CtoApplication.employee_id == employee_id)

        async with self.session_factory() as session:
            if await session.get(Employee, employee_id) is None:
                raise NotFoundError("Employee", employee_id)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _resolve_chain(self, employee: Employee) -> ApproverChain:
        if employee.designation_id is None:
            raise ValidationError("Employee has no designation; approvers must be given.")
        if self.resolver is None:
            raise ValidationError("No approver settings available; approvers must be given.")
        chain = await self.resolver.resolve(employee.designation_id)
        if chain is None:
            raise ValidationError(
                f"No approver setting configured for designation {employee.designation_id}"
            )
        return chain

    async def _available_credits(
        self,
        session: AsyncSession,
        employee_id: UUID,
    ) -> list[AvailableCredit]:
        """Snapshot the employee's spendable entries, locking them."""
        result = await session.execute(
            select(CtoCreditEntry, CtoCredit.memo_no)
            .join(CtoCredit, CtoCredit.credit_id == CtoCreditEntry.credit_id)
            .where(
                CtoCreditEntry.employee_id == employee_id,
                CtoCreditEntry.status == EntryStatus.ACTIVE.value,
                CtoCreditEntry.remaining_hours > ZERO,
                CtoCredit.status == CreditStatus.CREDITED.value,
            )
            .with_for_update(of=CtoCreditEntry)
        )
        return [
            AvailableCredit(
                credit_id=entry.credit_id,
                memo_no=memo_no,
                date_credited=entry.date_credited,
                remaining_hours=as_hours(entry.remaining_hours),
            )
            for entry, memo_no in result.all()
        ]

    async def _reserve(
        self,
        session: AsyncSession,
        employee_id: UUID,
        plan: Sequence[Allocation],
    ) -> None:
        for allocation in plan:
            result = await session.execute(
                update(CtoCreditEntry)
                .where(
                    CtoCreditEntry.credit_id == allocation.credit_id,
                    CtoCreditEntry.employee_id == employee_id,
                    CtoCreditEntry.status == EntryStatus.ACTIVE.value,
                    CtoCreditEntry.remaining_hours >= allocation.applied_hours,
                )
                .values(
                    reserved_hours=CtoCreditEntry.reserved_hours + allocation.applied_hours,
                    remaining_hours=CtoCreditEntry.remaining_hours - allocation.applied_hours,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Another reservation drew from this entry after the snapshot
                raise InsufficientBalanceError(
                    requested=allocation.applied_hours,
                    available=Decimal("0"),
                    message=f"Credit {allocation.credit_id} no longer covers the request",
                )


def _normalize_dates(values: Sequence[date | str] | None) -> list[str] | None:
    if values is None:
        return None
    dates: list[str] = []
    for value in values:
        if isinstance(value, datetime):
            value = value.date()
        if isinstance(value, date):
            dates.append(value.isoformat())
            continue
        try:
            dates.append(date.fromisoformat(str(value)[:10]).isoformat())
        except ValueError as e:
            raise ValidationError(f"Invalid inclusive date: {value}") from e
    return dates


def _listing_query(status: str | None) -> Select[tuple[CtoApplication]]:
    query = (
        select(CtoApplication)
        .options(
            selectinload(CtoApplication.employee),
            selectinload(CtoApplication.steps).selectinload(ApprovalStep.approver),
            selectinload(CtoApplication.allocations).selectinload(CtoApplicationMemo.credit),
        )
        .order_by(CtoApplication.created_at.desc())
    )
    if status is not None:
        try:
            status = ApplicationStatus(str(status).upper()).value
        except ValueError as e:
            raise ValidationError(f"Unknown application status: {status}") from e
        query = query.where(CtoApplication.overall_status == status)
    return query
