"""Approval chain state machine with ordering and re-entrancy guards."""

from __future__ import annotations

from typing import Iterable, Protocol, Sequence, TypeVar
from uuid import UUID

from cto_engine.errors import ConflictError, ForbiddenError, OrderError
from cto_engine.models.status import ApplicationStatus, StepStatus


class StepLike(Protocol):
    """Anything with the three fields the guards inspect."""

    level: int
    approver_id: UUID
    status: str


S = TypeVar("S", bound=StepLike)


class ApprovalStateMachine:
    """State machine for CTO applications and their approval steps.

    Application transitions:
    - PENDING → APPROVED (last level approved)
    - PENDING → REJECTED (any level rejected)
    - PENDING → CANCELLED (employee withdrew)

    Step transitions:
    - PENDING → APPROVED | REJECTED | CANCELLED

    Every non-PENDING state is terminal.
    """

    APPLICATION_TRANSITIONS: dict[str, list[str]] = {
        ApplicationStatus.PENDING: [
            ApplicationStatus.APPROVED,
            ApplicationStatus.REJECTED,
            ApplicationStatus.CANCELLED,
        ],
        ApplicationStatus.APPROVED: [],
        ApplicationStatus.REJECTED: [],
        ApplicationStatus.CANCELLED: [],
    }

    STEP_TRANSITIONS: dict[str, list[str]] = {
        StepStatus.PENDING: [StepStatus.APPROVED, StepStatus.REJECTED, StepStatus.CANCELLED],
        StepStatus.APPROVED: [],
        StepStatus.REJECTED: [],
        StepStatus.CANCELLED: [],
    }

    LEVELS = (1, 2, 3)

    @classmethod
    def can_transition_application(cls, from_status: str, to_status: str) -> bool:
        """Check if an application transition is valid."""
        return to_status in cls.APPLICATION_TRANSITIONS.get(from_status, [])

    @classmethod
    def can_transition_step(cls, from_status: str, to_status: str) -> bool:
        """Check if a step transition is valid."""
        return to_status in cls.STEP_TRANSITIONS.get(StepStatus.parse(from_status), [])

    @classmethod
    def is_terminal(cls, application_status: str) -> bool:
        return not cls.APPLICATION_TRANSITIONS.get(application_status, [])

    @staticmethod
    def ordered(steps: Iterable[S]) -> list[S]:
        """Steps sorted by level."""
        return sorted(steps, key=lambda s: s.level)

    @classmethod
    def resolve_step(cls, steps: Iterable[S], approver_id: UUID) -> S:
        """Find the step bound to an approver, or raise ForbiddenError."""
        for step in steps:
            if step.approver_id == approver_id:
                return step
        raise ForbiddenError("You are not an approver for this application.")

    @classmethod
    def blocking_step(cls, steps: Iterable[S], current: StepLike) -> S | None:
        """Lowest-level step below `current` that has not approved."""
        for step in cls.ordered(steps):
            if step.level >= current.level:
                break
            if StepStatus.parse(step.status) != StepStatus.APPROVED:
                return step
        return None

    @classmethod
    def validate_decision(
        cls,
        application_status: str,
        steps: Sequence[S],
        approver_id: UUID,
    ) -> S:
        """Run every guard for an approver's decision and return their step.

        Order of checks: party to the application, lower levels approved,
        step still pending, application still pending.
        """
        step = cls.resolve_step(steps, approver_id)

        blocker = cls.blocking_step(steps, step)
        if blocker is not None:
            raise OrderError(blocker.level)

        if StepStatus.parse(step.status) != StepStatus.PENDING:
            raise ConflictError("This step has already been processed.")

        if application_status != ApplicationStatus.PENDING:
            raise ConflictError("Application already processed.")

        return step

    @classmethod
    def all_approved(cls, statuses: Iterable[str]) -> bool:
        statuses = list(statuses)
        return bool(statuses) and all(
            StepStatus.parse(s) == StepStatus.APPROVED for s in statuses
        )

    @classmethod
    def next_pending(cls, steps: Iterable[S]) -> S | None:
        """Lowest-level PENDING step, if any."""
        for step in cls.ordered(steps):
            if StepStatus.parse(step.status) == StepStatus.PENDING:
                return step
        return None

    @classmethod
    def current_turn(cls, application_status: str, steps: Iterable[S]) -> S | None:
        """Step whose approver is expected to act now, if any."""
        if application_status != ApplicationStatus.PENDING:
            return None
        steps = list(steps)
        step = cls.next_pending(steps)
        if step is None or cls.blocking_step(steps, step) is not None:
            return None
        return step
