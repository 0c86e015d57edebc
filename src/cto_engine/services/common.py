"""Helpers shared by the CTO services."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from cto_engine.errors import ValidationError
from cto_engine.events.types import Recipient
from cto_engine.models import Employee


def as_uuid(value: Any, label: str = "id") -> UUID:
    """Coerce a UUID or UUID string, raising ValidationError otherwise."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except (ValueError, TypeError, AttributeError) as e:
        raise ValidationError(f"Invalid {label}") from e


def recipient_for(employee: Employee) -> Recipient:
    """Notification recipient details for an employee."""
    return Recipient(
        employee_id=employee.employee_id,
        name=employee.full_name,
        email=employee.email,
    )
