"""CTO domain events package.

This package provides:
- Typed domain events for credit, application and approval changes
- An async emitter with post-commit batching
"""

from cto_engine.events.emitter import (
    AsyncEventBatch,
    AsyncEventEmitter,
    AsyncEventHandler,
    EventHandler,
)
from cto_engine.events.types import (
    ApplicationApproved,
    ApplicationCancelled,
    ApplicationLevelAdvanced,
    ApplicationRejected,
    ApplicationSubmitted,
    CreditIssued,
    CreditRolledBack,
    DomainEvent,
    EventCategory,
    EventMetadata,
    Recipient,
)

__all__ = [
    # Base
    "DomainEvent",
    "EventMetadata",
    "EventCategory",
    "Recipient",
    # Credit Events
    "CreditIssued",
    "CreditRolledBack",
    # Application Events
    "ApplicationSubmitted",
    "ApplicationCancelled",
    # Approval Events
    "ApplicationLevelAdvanced",
    "ApplicationApproved",
    "ApplicationRejected",
    # Emitter
    "AsyncEventEmitter",
    "AsyncEventBatch",
    "EventHandler",
    "AsyncEventHandler",
]
