"""CTO engine facade - one wired entry point for every ledger operation.

Usage:
    engine = CtoEngine.create(session_factory, settings)

    credit = await engine.issue_credit(
        employee_ids=[emp_id],
        duration={"hours": 8, "minutes": 0},
        memo_no="M-1",
        issuer_id=hr_id,
    )
    app = await engine.submit_application(employee_id=emp_id, requested_hours=4)
    app = await engine.decide(app.application_id, level1_id, "APPROVE")

The facade:
- Shares one emitter between all services
- Registers the notification dispatcher on that emitter
- Uses the database approver settings as the approver resolver
"""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cto_engine.config import Settings, get_settings
from cto_engine.events import AsyncEventEmitter
from cto_engine.notifications import LoggingNotifier, NotificationDispatcher, Notifier
from cto_engine.services import (
    ApplicationService,
    ApprovalService,
    ApproverSettingService,
    CreditService,
)


@dataclass
class CtoEngine:
    """Services bound to one session factory and one emitter."""

    credits: CreditService
    applications: ApplicationService
    approvals: ApprovalService
    approver_settings: ApproverSettingService
    emitter: AsyncEventEmitter
    dispatcher: NotificationDispatcher

    @classmethod
    def create(
        cls,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        emitter: AsyncEventEmitter | None = None,
        notifier: Notifier | None = None,
    ) -> CtoEngine:
        settings = settings or get_settings()
        emitter = emitter or AsyncEventEmitter()
        dispatcher = NotificationDispatcher(notifier or LoggingNotifier(), settings)
        dispatcher.register(emitter)

        approver_settings = ApproverSettingService(session_factory)
        return cls(
            credits=CreditService(session_factory, emitter),
            applications=ApplicationService(
                session_factory,
                emitter,
                resolver=approver_settings,
                draw_order=settings.draw_order,
            ),
            approvals=ApprovalService(session_factory, emitter),
            approver_settings=approver_settings,
            emitter=emitter,
            dispatcher=dispatcher,
        )

    # Shortcuts for the core operations

    async def issue_credit(self, **kwargs):
        return await self.credits.issue_credit(**kwargs)

    async def rollback_credit(self, credit_id, actor_id):
        return await self.credits.rollback_credit(credit_id, actor_id)

    async def submit_application(self, **kwargs):
        return await self.applications.submit_application(**kwargs)

    async def cancel_application(self, application_id, employee_id):
        return await self.applications.cancel_application(application_id, employee_id)

    async def decide(self, application_id, approver_id, decision, remarks=None):
        return await self.approvals.decide(application_id, approver_id, decision, remarks)
