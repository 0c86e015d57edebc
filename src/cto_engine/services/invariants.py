"""Ledger consistency checks.

Used by the `check-invariants` command and by tests after concurrent or
randomized operation sequences.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cto_engine.models import (
    CtoApplication,
    CtoCreditEntry,
    Employee,
    EntryStatus,
    StepStatus,
)

QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class Violation:
    entity_type: str
    entity_id: UUID
    message: str

    def __str__(self) -> str:
        return f"{self.entity_type} {self.entity_id}: {self.message}"


def _d(value) -> Decimal:
    return Decimal(str(value)).quantize(QUANTUM)


async def find_violations(session: AsyncSession) -> list[Violation]:
    """Scan entries, applications and balances for broken invariants."""
    violations: list[Violation] = []
    spendable: dict[UUID, Decimal] = defaultdict(Decimal)

    entries = (await session.execute(select(CtoCreditEntry))).scalars().all()
    for entry in entries:
        credited = _d(entry.credited_hours)
        used = _d(entry.used_hours)
        reserved = _d(entry.reserved_hours)
        remaining = _d(entry.remaining_hours)

        if min(used, reserved, remaining) < 0:
            violations.append(Violation("cto_credit_entry", entry.entry_id, "negative hours"))
        if used + reserved > credited:
            violations.append(
                Violation("cto_credit_entry", entry.entry_id, "used + reserved exceeds credited")
            )
        if remaining != credited - used - reserved:
            violations.append(
                Violation(
                    "cto_credit_entry",
                    entry.entry_id,
                    f"remaining {remaining} != credited - used - reserved",
                )
            )
        if entry.status != EntryStatus.ROLLEDBACK:
            spendable[entry.employee_id] += credited - used

    applications = (
        await session.execute(
            select(CtoApplication).options(
                selectinload(CtoApplication.steps),
                selectinload(CtoApplication.allocations),
            )
        )
    ).scalars().all()
    for app in applications:
        applied = sum((_d(a.applied_hours) for a in app.allocations), Decimal("0"))
        if applied != _d(app.requested_hours):
            violations.append(
                Violation(
                    "cto_application",
                    app.application_id,
                    f"memo hours {applied} != requested {_d(app.requested_hours)}",
                )
            )
        approved_so_far = True
        for step in sorted(app.steps, key=lambda s: s.level):
            decided = step.status in (StepStatus.APPROVED, StepStatus.REJECTED)
            if decided and not approved_so_far:
                violations.append(
                    Violation(
                        "cto_application",
                        app.application_id,
                        f"level {step.level} decided before lower levels approved",
                    )
                )
            approved_so_far = approved_so_far and step.status == StepStatus.APPROVED

    employees = (await session.execute(select(Employee))).scalars().all()
    for employee in employees:
        expected = spendable.get(employee.employee_id, Decimal("0"))
        if _d(employee.cto_hours) != _d(expected):
            violations.append(
                Violation(
                    "employee",
                    employee.employee_id,
                    f"balance {_d(employee.cto_hours)} != credited - used {_d(expected)}",
                )
            )

    return violations
