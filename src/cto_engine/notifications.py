"""Notification dispatch for CTO workflow events.

The dispatcher listens on the event emitter, so it only ever sees events
whose transaction has committed. Delivery is best effort: a failing
notifier is logged and the business operation is unaffected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from cto_engine.config import Settings, get_settings
from cto_engine.events import (
    ApplicationApproved,
    ApplicationCancelled,
    ApplicationLevelAdvanced,
    ApplicationRejected,
    ApplicationSubmitted,
    AsyncEventEmitter,
    CreditIssued,
    CreditRolledBack,
    DomainEvent,
    Recipient,
)
from cto_engine.events.types import to_jsonable

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    """What a notification tells its recipient."""

    NEXT_APPROVER = "NEXT_APPROVER"
    FINAL_APPROVAL = "FINAL_APPROVAL"
    REJECTION = "REJECTION"
    CREDIT_ADDED = "CREDIT_ADDED"
    CREDIT_ROLLED_BACK = "CREDIT_ROLLED_BACK"
    APPLICATION_CANCELLED = "APPLICATION_CANCELLED"


# Switch keys; kinds without a key are always sent
NOTIFICATION_KEYS: dict[NotificationKind, str] = {
    NotificationKind.NEXT_APPROVER: "cto_approval",
    NotificationKind.FINAL_APPROVAL: "cto_final_approval",
    NotificationKind.REJECTION: "cto_rejection",
    NotificationKind.CREDIT_ADDED: "cto_credit_added",
    NotificationKind.CREDIT_ROLLED_BACK: "cto_credit_rolled_back",
}


@runtime_checkable
class Notifier(Protocol):
    """Delivers one notification."""

    async def notify(self, kind: NotificationKind, payload: dict[str, Any]) -> None:
        ...


@dataclass
class SentNotification:
    kind: NotificationKind
    payload: dict[str, Any]


@dataclass
class LoggingNotifier:
    """Notifier that logs each delivery and keeps it in `sent`."""

    sent: list[SentNotification] = field(default_factory=list)

    async def notify(self, kind: NotificationKind, payload: dict[str, Any]) -> None:
        self.sent.append(SentNotification(kind=kind, payload=payload))
        logger.info(
            "Notification %s to %s: %s",
            kind.value,
            payload.get("to"),
            payload.get("subject"),
        )

    def to(self, employee_id: UUID) -> list[SentNotification]:
        """Deliveries addressed to one employee."""
        return [n for n in self.sent if n.payload["recipient"]["employee_id"] == str(employee_id)]


class NotificationDispatcher:
    """Map committed domain events to notifications.

    Usage:
        dispatcher = NotificationDispatcher(LoggingNotifier(), settings)
        dispatcher.register(emitter)
    """

    def __init__(self, notifier: Notifier, settings: Settings | None = None):
        self.notifier = notifier
        self.settings = settings or get_settings()

    def register(self, emitter: AsyncEventEmitter) -> None:
        emitter.on(ApplicationSubmitted, self.on_application_submitted)
        emitter.on(ApplicationLevelAdvanced, self.on_level_advanced)
        emitter.on(ApplicationApproved, self.on_application_approved)
        emitter.on(ApplicationRejected, self.on_application_rejected)
        emitter.on(ApplicationCancelled, self.on_application_cancelled)
        emitter.on(CreditIssued, self.on_credit_issued)
        emitter.on(CreditRolledBack, self.on_credit_rolled_back)

    def approval_link(self, application_id: UUID) -> str:
        return f"{self.settings.frontend_url}/app/cto/approvals/{application_id}"

    async def on_application_submitted(self, event: ApplicationSubmitted) -> None:
        await self._send(
            NotificationKind.NEXT_APPROVER,
            event.next_approver,
            subject=f"CTO Approval Request (Level {event.next_level}) - {event.employee.name}",
            event=event,
            employee_name=event.employee.name,
            requested_hours=event.requested_hours,
            reason=event.reason,
            level=event.next_level,
            link=self.approval_link(event.application_id),
        )

    async def on_level_advanced(self, event: ApplicationLevelAdvanced) -> None:
        await self._send(
            NotificationKind.NEXT_APPROVER,
            event.next_approver,
            subject=f"CTO Approval Request (Level {event.next_level}) - {event.employee.name}",
            event=event,
            employee_name=event.employee.name,
            requested_hours=event.requested_hours,
            reason=event.reason,
            level=event.next_level,
            link=self.approval_link(event.application_id),
        )

    async def on_application_approved(self, event: ApplicationApproved) -> None:
        await self._send(
            NotificationKind.FINAL_APPROVAL,
            event.employee,
            subject="CTO Application Approved",
            event=event,
            employee_name=event.employee.name,
            requested_hours=event.requested_hours,
        )

    async def on_application_rejected(self, event: ApplicationRejected) -> None:
        await self._send(
            NotificationKind.REJECTION,
            event.employee,
            subject="CTO Application Rejected",
            event=event,
            employee_name=event.employee.name,
            requested_hours=event.requested_hours,
            level=event.rejected_level,
            approver_name=event.rejected_by.name,
            remarks=event.remarks,
        )

    async def on_application_cancelled(self, event: ApplicationCancelled) -> None:
        await self._send(
            NotificationKind.APPLICATION_CANCELLED,
            event.employee,
            subject="CTO Application Cancelled",
            event=event,
            employee_name=event.employee.name,
            requested_hours=event.requested_hours,
        )

    async def on_credit_issued(self, event: CreditIssued) -> None:
        for recipient in event.recipients:
            await self._send(
                NotificationKind.CREDIT_ADDED,
                recipient,
                subject=f"CTO Credit Added - Memo {event.memo_no}",
                event=event,
                employee_name=recipient.name,
                memo_no=event.memo_no,
                credited_hours=event.total_hours,
            )

    async def on_credit_rolled_back(self, event: CreditRolledBack) -> None:
        for recipient in event.recipients:
            await self._send(
                NotificationKind.CREDIT_ROLLED_BACK,
                recipient,
                subject=f"CTO Credit Rolled Back - Memo {event.memo_no}",
                event=event,
                employee_name=recipient.name,
                memo_no=event.memo_no,
                credited_hours=event.total_hours,
            )

    async def _send(
        self,
        kind: NotificationKind,
        recipient: Recipient,
        *,
        subject: str,
        event: DomainEvent,
        **details: Any,
    ) -> None:
        key = NOTIFICATION_KEYS.get(kind)
        if key is not None and not self.settings.notification_enabled(key):
            logger.debug("Notification %s disabled, skipping", key)
            return
        if not recipient.email:
            logger.warning(
                "No email for %s (%s); %s not sent", recipient.name, recipient.employee_id, kind.value
            )
            return

        payload = {
            "to": recipient.email,
            "subject": subject,
            "brand_name": self.settings.brand_name,
            "recipient": to_jsonable(recipient.__dict__),
            "event_id": str(event.metadata.event_id),
            "event_type": event.event_type,
            **to_jsonable(details),
        }
        try:
            await self.notifier.notify(kind, payload)
        except Exception:
            logger.exception(
                "Failed to send %s notification to %s for %s",
                kind.value,
                recipient.email,
                event.event_type,
            )
