"""Error taxonomy for CTO ledger and approval operations.

Every error is raised before the first mutating statement of a transaction,
or aborts the transaction it is raised in, so callers see either full
success or unchanged state.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class CtoError(Exception):
    """Base class for all business errors raised by the engine."""

    code = "CTO_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code}


class ValidationError(CtoError):
    """Malformed input: missing fields, non-positive hours, unknown ids."""

    code = "VALIDATION_ERROR"


class InsufficientBalanceError(CtoError):
    """Requested hours exceed the unreserved, unused credit."""

    code = "INSUFFICIENT_BALANCE"

    def __init__(self, requested: Decimal, available: Decimal, message: str | None = None):
        self.requested = requested
        self.available = available
        super().__init__(
            message
            or f"Insufficient CTO balance: requested {requested}h, available {available}h"
        )


class ForbiddenError(CtoError):
    """Actor is not a party to the entity they are acting on."""

    code = "FORBIDDEN"


class OrderError(CtoError):
    """Approval attempted before every lower level approved."""

    code = "APPROVAL_ORDER"

    def __init__(self, blocking_level: int):
        self.blocking_level = blocking_level
        super().__init__(f"Level {blocking_level} must approve first.")


class ConflictError(CtoError):
    """Re-entrant or already-terminal state transition."""

    code = "CONFLICT"


class NotFoundError(CtoError):
    """Referenced entity id does not resolve."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")
