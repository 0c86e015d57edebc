"""Domain event types for CTO ledger and approval operations.

All events are:
- Immutable (frozen dataclasses)
- Typed with explicit payloads
- Traceable via metadata
- Serializable for logging and delivery

Events are emitted only after the transaction that produced them commits,
so a subscriber never observes a state change that was rolled back.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID, uuid4


class EventCategory(str, Enum):
    """Event categories for routing and filtering."""

    CREDIT = "credit"
    APPLICATION = "application"
    APPROVAL = "approval"


@dataclass(frozen=True)
class EventMetadata:
    """Metadata attached to every domain event."""

    event_id: UUID
    timestamp: datetime
    correlation_id: UUID  # Links related events
    actor_id: UUID | None  # User that triggered the change
    source_service: str
    version: int = 1  # Schema version for evolution

    @classmethod
    def create(
        cls,
        actor_id: UUID | None = None,
        correlation_id: UUID | None = None,
        source_service: str = "cto",
    ) -> EventMetadata:
        """Create metadata with auto-generated fields."""
        return cls(
            event_id=uuid4(),
            timestamp=datetime.now(timezone.utc),
            correlation_id=correlation_id or uuid4(),
            actor_id=actor_id,
            source_service=source_service,
        )


@dataclass(frozen=True)
class Recipient:
    """Contact details of the person a notification goes to."""

    employee_id: UUID
    name: str
    email: str | None


@dataclass(frozen=True)
class DomainEvent:
    """Base class for all domain events."""

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        """Event type name for routing."""
        return self.__class__.__name__

    @property
    def category(self) -> EventCategory:
        """Event category for filtering."""
        raise NotImplementedError("Subclasses must define category")

    def to_dict(self) -> dict[str, Any]:
        """Serialize event to dictionary."""
        data = asdict(self)
        data["event_type"] = self.event_type
        return to_jsonable(data)

    def to_json(self) -> str:
        """Serialize event to JSON string."""
        return json.dumps(self.to_dict(), default=str)


def to_jsonable(obj: Any) -> Any:
    """Recursively serialize objects for JSON compatibility."""
    if isinstance(obj, dict):
        return {k: to_jsonable(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [to_jsonable(v) for v in obj]
    elif isinstance(obj, UUID):
        return str(obj)
    elif isinstance(obj, datetime):
        return obj.isoformat()
    elif isinstance(obj, date):
        return obj.isoformat()
    elif isinstance(obj, Decimal):
        return str(obj)
    elif isinstance(obj, Enum):
        return obj.value
    return obj


# =============================================================================
# Credit Events
# =============================================================================


@dataclass(frozen=True)
class CreditIssued(DomainEvent):
    """A memo credited hours to one or more employees."""

    credit_id: UUID
    memo_no: str
    total_hours: Decimal
    recipients: tuple[Recipient, ...] = field(default_factory=tuple)

    @property
    def category(self) -> EventCategory:
        return EventCategory.CREDIT


@dataclass(frozen=True)
class CreditRolledBack(DomainEvent):
    """A credit batch was reversed before any of its hours were spent."""

    credit_id: UUID
    memo_no: str
    total_hours: Decimal
    recipients: tuple[Recipient, ...] = field(default_factory=tuple)

    @property
    def category(self) -> EventCategory:
        return EventCategory.CREDIT


# =============================================================================
# Application Events
# =============================================================================


@dataclass(frozen=True)
class ApplicationSubmitted(DomainEvent):
    """An employee applied to spend hours; level 1 is now up."""

    application_id: UUID
    employee: Recipient
    requested_hours: Decimal
    reason: str | None
    next_level: int
    next_approver: Recipient

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPLICATION


@dataclass(frozen=True)
class ApplicationCancelled(DomainEvent):
    """The employee withdrew a pending application."""

    application_id: UUID
    employee: Recipient
    requested_hours: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPLICATION


# =============================================================================
# Approval Events
# =============================================================================


@dataclass(frozen=True)
class ApplicationLevelAdvanced(DomainEvent):
    """A level approved and the next level is now up."""

    application_id: UUID
    employee: Recipient
    requested_hours: Decimal
    reason: str | None
    approved_level: int
    next_level: int
    next_approver: Recipient

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApplicationApproved(DomainEvent):
    """The last level approved; reserved hours are now used."""

    application_id: UUID
    employee: Recipient
    requested_hours: Decimal

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL


@dataclass(frozen=True)
class ApplicationRejected(DomainEvent):
    """An approver rejected the application; reserved hours were released."""

    application_id: UUID
    employee: Recipient
    requested_hours: Decimal
    rejected_level: int
    rejected_by: Recipient
    remarks: str | None

    @property
    def category(self) -> EventCategory:
        return EventCategory.APPROVAL
