"""Audit trail recording."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cto_engine.events.types import to_jsonable
from cto_engine.models import AuditEvent


def record_audit(
    session: AsyncSession,
    *,
    entity_type: str,
    entity_id: UUID,
    action: str,
    actor_id: UUID | None = None,
    details: dict[str, Any] | None = None,
) -> AuditEvent:
    """Add an audit event to the current transaction."""
    event = AuditEvent(
        actor_id=actor_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        details_json=to_jsonable(details) if details else None,
    )
    session.add(event)
    return event


async def list_audit_events(
    session: AsyncSession,
    entity_type: str,
    entity_id: UUID,
) -> list[AuditEvent]:
    """Audit events for one entity, oldest first."""
    result = await session.execute(
        select(AuditEvent)
        .where(AuditEvent.entity_type == entity_type, AuditEvent.entity_id == entity_id)
        .order_by(AuditEvent.created_at, AuditEvent.audit_event_id)
    )
    return list(result.scalars().all())
