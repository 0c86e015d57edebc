"""Hour sourcing: which credit batches cover a CTO application.

Pure functions over snapshots of the employee's sub-ledger; the caller
applies the resulting plan with guarded updates.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Sequence
from uuid import UUID

from cto_engine.errors import InsufficientBalanceError, ValidationError

HOURS_QUANTUM = Decimal("0.0001")
ZERO = Decimal("0")


def as_hours(value: Any, label: str = "hours") -> Decimal:
    """Convert a number to Decimal hours at storage precision."""
    if isinstance(value, bool):
        raise ValidationError(f"{label} must be a number")
    try:
        hours = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValidationError(f"{label} must be a number") from e
    if not hours.is_finite():
        raise ValidationError(f"{label} must be a finite number")
    return hours.quantize(HOURS_QUANTUM)


def duration_to_hours(hours: Any, minutes: Any) -> Decimal:
    """Total hours of an hours+minutes duration."""
    if isinstance(hours, bool) or not isinstance(hours, int):
        raise ValidationError("Invalid duration format: hours must be an integer")
    if isinstance(minutes, bool) or not isinstance(minutes, int):
        raise ValidationError("Invalid duration format: minutes must be an integer")
    if hours < 0:
        raise ValidationError("Hours must not be negative")
    if minutes < 0 or minutes >= 60:
        raise ValidationError("Minutes must be between 0 and 59")
    total = (Decimal(hours) + Decimal(minutes) / Decimal(60)).quantize(HOURS_QUANTUM)
    if total <= ZERO:
        raise ValidationError("Duration must be greater than zero")
    return total


@dataclass(frozen=True)
class AvailableCredit:
    """Snapshot of one active sub-ledger entry."""

    credit_id: UUID
    memo_no: str
    date_credited: datetime
    remaining_hours: Decimal


@dataclass(frozen=True)
class Allocation:
    """Hours drawn from one credit batch."""

    credit_id: UUID
    applied_hours: Decimal


def total_available(credits: Iterable[AvailableCredit]) -> Decimal:
    return sum((c.remaining_hours for c in credits if c.remaining_hours > ZERO), ZERO)


def order_credits(credits: Iterable[AvailableCredit], draw_order: str) -> list[AvailableCredit]:
    """Sort credits into draw order.

    Ties on date_credited are broken by memo number then batch id, in both
    directions, so the plan is deterministic.
    """
    if draw_order not in ("oldest_first", "newest_first"):
        raise ValueError(f"Unknown draw order: {draw_order}")
    by_tiebreak = sorted(credits, key=lambda c: (c.memo_no, str(c.credit_id)))
    return sorted(
        by_tiebreak,
        key=lambda c: c.date_credited,
        reverse=draw_order == "newest_first",
    )


def plan_allocation(
    credits: Sequence[AvailableCredit],
    requested: Decimal,
    draw_order: str = "oldest_first",
) -> list[Allocation]:
    """Greedily draw `requested` hours from the credits in draw order.

    Raises InsufficientBalanceError, without producing a partial plan, when
    the credits cannot cover the request.
    """
    if requested <= ZERO:
        raise ValidationError("Requested hours must be greater than zero")

    available = total_available(credits)
    if available < requested:
        raise InsufficientBalanceError(requested=requested, available=available)

    plan: list[Allocation] = []
    outstanding = requested
    for credit in order_credits(credits, draw_order):
        if outstanding <= ZERO:
            break
        if credit.remaining_hours <= ZERO:
            continue
        take = min(credit.remaining_hours, outstanding)
        plan.append(Allocation(credit_id=credit.credit_id, applied_hours=take))
        outstanding -= take

    return plan


def validate_explicit_allocation(
    credits: Sequence[AvailableCredit],
    requested: Decimal,
    memos: Sequence[Mapping[str, Any]],
) -> list[Allocation]:
    """Check a caller-chosen allocation against the available credits."""
    if not memos:
        raise ValidationError("At least one memo with applied hours must be provided.")

    by_id = {c.credit_id: c for c in credits}
    plan: list[Allocation] = []
    seen: set[UUID] = set()
    total = ZERO

    for memo in memos:
        try:
            credit_id = memo["memo_id"] if "memo_id" in memo else memo["memoId"]
            raw_hours = memo["applied_hours"] if "applied_hours" in memo else memo["appliedHours"]
        except KeyError as e:
            raise ValidationError("Each memo needs memo_id and applied_hours") from e
        if not isinstance(credit_id, UUID):
            try:
                credit_id = UUID(str(credit_id))
            except ValueError as e:
                raise ValidationError(f"Invalid memo id: {credit_id}") from e

        if credit_id in seen:
            raise ValidationError(f"Memo {credit_id} listed more than once")
        seen.add(credit_id)

        credit = by_id.get(credit_id)
        if credit is None:
            raise ValidationError("Some memos are invalid or not credited.")

        applied = as_hours(raw_hours, "applied hours")
        if applied <= ZERO:
            raise ValidationError(f"Invalid applied hours for memo {credit.memo_no}")
        if applied > credit.remaining_hours:
            raise InsufficientBalanceError(
                requested=applied,
                available=credit.remaining_hours,
                message=(
                    f"Invalid applied hours for memo {credit.memo_no}. "
                    f"Available: {credit.remaining_hours}"
                ),
            )

        plan.append(Allocation(credit_id=credit_id, applied_hours=applied))
        total += applied

    if total != requested:
        raise ValidationError(
            f"Sum of applied hours ({total}) does not match requested hours ({requested})"
        )
    return plan
