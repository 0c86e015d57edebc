"""Approval service - sequential three-level decisions on CTO applications.

A decision is validated against persisted state, applied with
compare-and-swap updates and committed before any notification goes out.
"""

from __future__ import annotations

import logging
from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from cto_engine.errors import ConflictError, NotFoundError, ValidationError
from cto_engine.events import (
    ApplicationApproved,
    ApplicationLevelAdvanced,
    ApplicationRejected,
    AsyncEventEmitter,
    DomainEvent,
    EventMetadata,
)
from cto_engine.models import (
    ApplicationStatus,
    ApprovalStep,
    CtoApplication,
    CtoApplicationMemo,
    CtoCreditEntry,
    Decision,
    Employee,
    EntryStatus,
    StepStatus,
    utcnow,
)
from cto_engine.services.allocation import ZERO
from cto_engine.services.application_service import load_application, release_allocations
from cto_engine.services.audit_service import record_audit
from cto_engine.services.common import as_uuid, recipient_for
from cto_engine.services.state_machine import ApprovalStateMachine

logger = logging.getLogger(__name__)

DEFAULT_REJECTION_REMARK = "No remarks provided"


class ApprovalService:
    """Apply approver decisions to applications.

    Usage:
        service = ApprovalService(session_factory, emitter)
        app = await service.decide(app_id, approver_id, "APPROVE")
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        emitter: AsyncEventEmitter | None = None,
    ):
        self.session_factory = session_factory
        self.emitter = emitter or AsyncEventEmitter()
        self.machine = ApprovalStateMachine()

    async def decide(
        self,
        application_id: UUID | str,
        approver_id: UUID | str,
        decision: Decision | str,
        remarks: str | None = None,
    ) -> CtoApplication:
        """Approve or reject the approver's step.

        Raises:
            ForbiddenError: approver has no step on the application
            OrderError: a lower level has not approved yet
            ConflictError: step or application already decided
        """
        application_id = as_uuid(application_id, "application id")
        approver_id = as_uuid(approver_id, "approver id")
        try:
            decision = Decision.parse(decision)
        except ValueError as e:
            raise ValidationError(f"Invalid decision: {decision}") from e

        async with self.emitter.batch() as batch:
            async with self.session_factory() as session:
                async with session.begin():
                    application = await load_application(session, application_id, for_update=True)
                    if application is None:
                        raise NotFoundError("CtoApplication", application_id)

                    step = self.machine.validate_decision(
                        application.overall_status, application.steps, approver_id
                    )

                    if decision == Decision.APPROVE:
                        event = await self._approve(session, application, step)
                    else:
                        event = await self._reject(session, application, step, remarks)

                    await session.flush()
                    application = await load_application(session, application_id)

            batch.add(event)

        logger.info(
            "Level %d %s on application %s by %s (now %s)",
            step.level,
            decision.value,
            application_id,
            approver_id,
            application.overall_status,
        )
        return application

    async def list_pending_for_approver(self, approver_id: UUID | str) -> list[CtoApplication]:
        """PENDING applications on which it is this approver's turn."""
        approver_id = as_uuid(approver_id, "approver id")
        async with self.session_factory() as session:
            if await session.get(Employee, approver_id) is None:
                raise NotFoundError("Employee", approver_id)
            result = await session.execute(
                select(CtoApplication)
                .join(ApprovalStep, ApprovalStep.application_id == CtoApplication.application_id)
                .where(
                    ApprovalStep.approver_id == approver_id,
                    ApprovalStep.status == StepStatus.PENDING.value,
                    CtoApplication.overall_status == ApplicationStatus.PENDING.value,
                )
                .options(
                    selectinload(CtoApplication.employee),
                    selectinload(CtoApplication.steps).selectinload(ApprovalStep.approver),
                    selectinload(CtoApplication.allocations).selectinload(
                        CtoApplicationMemo.credit
                    ),
                )
                .order_by(CtoApplication.created_at)
            )
            applications = list(result.scalars().unique().all())

        pending = []
        for app in applications:
            turn = self.machine.current_turn(app.overall_status, app.steps)
            if turn is not None and turn.approver_id == approver_id:
                pending.append(app)
        return pending

    async def count_pending_for_approver(self, approver_id: UUID | str) -> int:
        """Number of applications waiting on this approver right now."""
        return len(await self.list_pending_for_approver(approver_id))

    async def _approve(
        self,
        session: AsyncSession,
        application: CtoApplication,
        step: ApprovalStep,
    ) -> DomainEvent:
        now = utcnow()
        await self._transition_step(session, step, StepStatus.APPROVED, reviewed_at=now)

        result = await session.execute(
            select(ApprovalStep.status).where(
                ApprovalStep.application_id == application.application_id
            )
        )
        statuses = list(result.scalars().all())

        record_audit(
            session,
            entity_type="cto_application",
            entity_id=application.application_id,
            action=f"level{step.level}_approved",
            actor_id=step.approver_id,
        )

        if not self.machine.all_approved(statuses):
            next_step = min(
                (s for s in application.steps if s.level > step.level),
                key=lambda s: s.level,
            )
            return ApplicationLevelAdvanced(
                metadata=EventMetadata.create(actor_id=step.approver_id),
                application_id=application.application_id,
                employee=recipient_for(application.employee),
                requested_hours=application.requested_hours,
                reason=application.reason,
                approved_level=step.level,
                next_level=next_step.level,
                next_approver=recipient_for(next_step.approver),
            )

        await self._commit_hours(session, application)
        await self._transition_application(session, application, ApplicationStatus.APPROVED)
        record_audit(
            session,
            entity_type="cto_application",
            entity_id=application.application_id,
            action="approved",
            actor_id=step.approver_id,
            details={"requested_hours": application.requested_hours},
        )
        return ApplicationApproved(
            metadata=EventMetadata.create(actor_id=step.approver_id),
            application_id=application.application_id,
            employee=recipient_for(application.employee),
            requested_hours=application.requested_hours,
        )

    async def _reject(
        self,
        session: AsyncSession,
        application: CtoApplication,
        step: ApprovalStep,
        remarks: str | None,
    ) -> DomainEvent:
        remarks = (remarks or "").strip() or DEFAULT_REJECTION_REMARK
        await self._transition_step(
            session, step, StepStatus.REJECTED, reviewed_at=utcnow(), remarks=remarks
        )
        await release_allocations(session, application)
        # Higher levels stay PENDING; the application is closed
        await self._transition_application(session, application, ApplicationStatus.REJECTED)

        record_audit(
            session,
            entity_type="cto_application",
            entity_id=application.application_id,
            action="rejected",
            actor_id=step.approver_id,
            details={"level": step.level, "remarks": remarks},
        )
        return ApplicationRejected(
            metadata=EventMetadata.create(actor_id=step.approver_id),
            application_id=application.application_id,
            employee=recipient_for(application.employee),
            requested_hours=application.requested_hours,
            rejected_level=step.level,
            rejected_by=recipient_for(step.approver),
            remarks=remarks,
        )

    async def _commit_hours(self, session: AsyncSession, application: CtoApplication) -> None:
        """Turn the application's reservation into used hours and debit the balance."""
        for allocation in application.allocations:
            applied = allocation.applied_hours
            result = await session.execute(
                update(CtoCreditEntry)
                .where(
                    CtoCreditEntry.credit_id == allocation.credit_id,
                    CtoCreditEntry.employee_id == application.employee_id,
                    CtoCreditEntry.reserved_hours >= applied,
                )
                .values(
                    reserved_hours=CtoCreditEntry.reserved_hours - applied,
                    used_hours=CtoCreditEntry.used_hours + applied,
                    status=case(
                        (CtoCreditEntry.remaining_hours <= ZERO, EntryStatus.EXHAUSTED.value),
                        else_=CtoCreditEntry.status,
                    ),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(f"Reserved hours mismatch on credit {allocation.credit_id}")

        result = await session.execute(
            update(Employee)
            .where(
                Employee.employee_id == application.employee_id,
                Employee.cto_hours >= application.requested_hours,
            )
            .values(cto_hours=Employee.cto_hours - application.requested_hours)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Employee CTO balance would go negative.")

    async def _transition_step(
        self,
        session: AsyncSession,
        step: ApprovalStep,
        to_status: StepStatus,
        **values,
    ) -> None:
        if not self.machine.can_transition_step(step.status, to_status):
            raise ConflictError("This step has already been processed.")
        result = await session.execute(
            update(ApprovalStep)
            .where(
                ApprovalStep.step_id == step.step_id,
                ApprovalStep.status == StepStatus.PENDING.value,
            )
            .values(status=to_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning("Lost race deciding step %s", step.step_id)
            raise ConflictError("This step has already been processed.")

    async def _transition_application(
        self,
        session: AsyncSession,
        application: CtoApplication,
        to_status: ApplicationStatus,
    ) -> None:
        if not self.machine.can_transition_application(application.overall_status, to_status):
            raise ConflictError("Application already processed.")
        result = await session.execute(
            update(CtoApplication)
            .where(
                CtoApplication.application_id == application.application_id,
                CtoApplication.overall_status == ApplicationStatus.PENDING.value,
            )
            .values(overall_status=to_status.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError("Application already processed.")
