"""Tests for application submission, hour reservation and cancellation."""

import asyncio
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from cto_engine.errors import (
    ConflictError,
    ForbiddenError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from cto_engine.events import ApplicationCancelled, ApplicationSubmitted
from cto_engine.models import ApprovalStep, CtoApplication
from cto_engine.services import ApplicationService, ApproverChain, StaticApproverResolver
from cto_engine.services.invariants import find_violations

from tests.conftest import add_employee, get_balance, get_entry

pytestmark = pytest.mark.asyncio


async def issue(cto, staff, hours: int, memo_no: str = "M-1", minutes: int = 0):
    return await cto.issue_credit(
        employee_ids=[staff.employee.employee_id],
        duration={"hours": hours, "minutes": minutes},
        memo_no=memo_no,
        issuer_id=staff.hr.employee_id,
    )


class TestSubmitApplication:
    """Test submission and reservation."""

    async def test_reserves_hours_without_touching_balance(self, cto, configured_staff, session_factory):
        """10h credited, 4h requested: 4 reserved, 6 remaining, balance still 10."""
        staff = configured_staff
        credit = await issue(cto, staff, 10)

        app = await cto.submit_application(
            employee_id=staff.employee.employee_id,
            requested_hours=4,
            reason="Family matter",
            inclusive_dates=["2026-04-02", date(2026, 4, 3)],
        )

        assert app.overall_status == "PENDING"
        assert app.requested_hours == Decimal("4")
        assert app.inclusive_dates == ["2026-04-02", "2026-04-03"]
        assert [(s.level, s.approver_id, s.status) for s in app.steps] == [
            (1, staff.level1.employee_id, "PENDING"),
            (2, staff.level2.employee_id, "PENDING"),
            (3, staff.level3.employee_id, "PENDING"),
        ]
        assert [(a.credit_id, a.applied_hours) for a in app.allocations] == [
            (credit.credit_id, Decimal("4"))
        ]

        entry = await get_entry(session_factory, credit.credit_id, staff.employee.employee_id)
        assert entry.reserved_hours == Decimal("4")
        assert entry.remaining_hours == Decimal("6")
        assert entry.used_hours == 0
        assert await get_balance(session_factory, staff.employee.employee_id) == Decimal("10")

    async def test_draws_oldest_batches_first(self, cto, configured_staff, session_factory):
        staff = configured_staff
        first = await issue(cto, staff, 3, "M-1")
        second = await issue(cto, staff, 5, "M-2")

        app = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=4)

        assert [(a.credit_id, a.applied_hours) for a in app.allocations] == [
            (first.credit_id, Decimal("3")),
            (second.credit_id, Decimal("1")),
        ]
        entry = await get_entry(session_factory, first.credit_id, staff.employee.employee_id)
        assert entry.remaining_hours == 0
        assert entry.status == "ACTIVE"

    async def test_insufficient_balance_writes_nothing(self, cto, configured_staff, session_factory):
        """3h available, 5h requested: no application, no steps, no reservation."""
        staff = configured_staff
        credit = await issue(cto, staff, 3)

        with pytest.raises(InsufficientBalanceError):
            await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=5)

        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(CtoApplication)) == 0
            assert await session.scalar(select(func.count()).select_from(ApprovalStep)) == 0
        entry = await get_entry(session_factory, credit.credit_id, staff.employee.employee_id)
        assert entry.reserved_hours == 0
        assert entry.remaining_hours == Decimal("3")

    async def test_reserved_hours_are_not_available_twice(self, cto, configured_staff):
        staff = configured_staff
        await issue(cto, staff, 5)
        await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=4)

        with pytest.raises(InsufficientBalanceError):
            await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=2)

    async def test_minute_credit_spent_in_fractions(self, cto, configured_staff, session_factory):
        """20 minutes (0.3333h) covers 0.1h, 0.2h and 0.0333h to the last unit."""
        staff = configured_staff
        credit = await issue(cto, staff, 0, minutes=20)

        for hours in ("0.1", "0.2", "0.0333"):
            await cto.submit_application(
                employee_id=staff.employee.employee_id, requested_hours=Decimal(hours)
            )

        entry = await get_entry(session_factory, credit.credit_id, staff.employee.employee_id)
        assert entry.reserved_hours == Decimal("0.3333")
        assert entry.remaining_hours == 0
        with pytest.raises(InsufficientBalanceError):
            await cto.submit_application(
                employee_id=staff.employee.employee_id, requested_hours=Decimal("0.0001")
            )
        async with session_factory() as session:
            assert await find_violations(session) == []

    async def test_concurrent_submissions_reserve_once(self, cto, configured_staff, session_factory):
        """Two racing 3h requests against a 5h batch: one wins, nothing over-reserved."""
        staff = configured_staff
        credit = await issue(cto, staff, 5)

        results = await asyncio.gather(
            cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=3),
            cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=3),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        # SQLite may refuse the loser's write lock instead of letting its guard fail
        assert isinstance(failures[0], (InsufficientBalanceError, OperationalError))
        entry = await get_entry(session_factory, credit.credit_id, staff.employee.employee_id)
        assert entry.reserved_hours == Decimal("3")
        assert entry.remaining_hours == Decimal("2")
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(CtoApplication)) == 1
            assert await find_violations(session) == []

    async def test_rolled_back_batches_are_not_drawn(self, cto, configured_staff):
        staff = configured_staff
        credit = await issue(cto, staff, 5)
        await cto.rollback_credit(credit.credit_id, staff.hr.employee_id)

        with pytest.raises(InsufficientBalanceError):
            await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=1)

    async def test_explicit_memos(self, cto, configured_staff, session_factory):
        staff = configured_staff
        first = await issue(cto, staff, 3, "M-1")
        second = await issue(cto, staff, 5, "M-2")

        app = await cto.submit_application(
            employee_id=staff.employee.employee_id,
            requested_hours=4,
            memos=[{"memoId": str(second.credit_id), "appliedHours": 4}],
        )

        assert [(a.credit_id, a.applied_hours) for a in app.allocations] == [
            (second.credit_id, Decimal("4"))
        ]
        untouched = await get_entry(session_factory, first.credit_id, staff.employee.employee_id)
        assert untouched.reserved_hours == 0

    async def test_explicit_memo_over_remaining(self, cto, configured_staff):
        staff = configured_staff
        credit = await issue(cto, staff, 3)
        with pytest.raises(InsufficientBalanceError, match="Available"):
            await cto.submit_application(
                employee_id=staff.employee.employee_id,
                requested_hours=4,
                memos=[{"memo_id": credit.credit_id, "applied_hours": 4}],
            )

    async def test_explicit_approvers_override_settings(self, cto, staff, session_factory):
        """Chain passed in directly, no designation setting needed."""
        await issue(cto, staff, 5)
        chain = [staff.level3.employee_id, staff.level2.employee_id, staff.level1.employee_id]

        app = await cto.submit_application(
            employee_id=staff.employee.employee_id, requested_hours=1, approvers=chain
        )

        assert [s.approver_id for s in app.steps] == chain

    async def test_in_memory_resolver(self, cto, staff, session_factory):
        await issue(cto, staff, 5)
        resolver = StaticApproverResolver()
        resolver.set(staff.designation_id, ApproverChain.coerce(staff.chain))
        service = ApplicationService(session_factory, resolver=resolver, draw_order="newest_first")

        app = await service.submit_application(
            employee_id=staff.employee.employee_id, requested_hours=1
        )

        assert [s.approver_id for s in app.steps] == list(staff.chain.values())

    async def test_missing_approver_setting(self, cto, staff):
        await issue(cto, staff, 5)
        with pytest.raises(ValidationError, match="No approver setting"):
            await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=1)

    async def test_employee_without_designation(self, cto, staff, session_factory):
        loner = await add_employee(session_factory, "Nadia")
        with pytest.raises(ValidationError, match="no designation"):
            await cto.submit_application(employee_id=loner.employee_id, requested_hours=1)

    @pytest.mark.parametrize("hours", [0, -1, "abc"])
    async def test_requested_hours_must_be_positive(self, cto, configured_staff, hours):
        with pytest.raises(ValidationError):
            await cto.submit_application(
                employee_id=configured_staff.employee.employee_id, requested_hours=hours
            )

    async def test_approvers_must_be_distinct_and_known(self, cto, staff):
        await issue(cto, staff, 5)
        same = staff.level1.employee_id
        with pytest.raises(ValidationError, match="distinct"):
            await cto.submit_application(
                employee_id=staff.employee.employee_id,
                requested_hours=1,
                approvers=[same, same, staff.level3.employee_id],
            )
        with pytest.raises(ValidationError, match="invalid or not found"):
            await cto.submit_application(
                employee_id=staff.employee.employee_id,
                requested_hours=1,
                approvers=[uuid4(), staff.level2.employee_id, staff.level3.employee_id],
            )
        with pytest.raises(ValidationError, match="Three approvers"):
            await cto.submit_application(
                employee_id=staff.employee.employee_id,
                requested_hours=1,
                approvers={"level1": staff.level1.employee_id},
            )

    async def test_unknown_employee(self, cto):
        with pytest.raises(NotFoundError):
            await cto.submit_application(employee_id=uuid4(), requested_hours=1)

    async def test_invalid_inclusive_date(self, cto, configured_staff):
        with pytest.raises(ValidationError, match="inclusive date"):
            await cto.submit_application(
                employee_id=configured_staff.employee.employee_id,
                requested_hours=1,
                inclusive_dates=["next tuesday"],
            )

    async def test_level_one_notified_only(self, cto, configured_staff, emitter, notifier):
        staff = configured_staff
        await issue(cto, staff, 5)
        seen = []

        async def capture(event):
            seen.append(event)

        emitter.on(ApplicationSubmitted, capture)
        app = await cto.submit_application(
            employee_id=staff.employee.employee_id, requested_hours=2, reason="Rest"
        )
        await emitter.drain()

        assert len(seen) == 1
        assert seen[0].next_level == 1
        assert seen[0].next_approver.employee_id == staff.level1.employee_id
        approval_requests = [n for n in notifier.sent if n.kind.value == "NEXT_APPROVER"]
        assert [n.payload["recipient"]["employee_id"] for n in approval_requests] == [
            str(staff.level1.employee_id)
        ]
        assert approval_requests[0].payload["link"] == (
            f"http://cto.test/app/cto/approvals/{app.application_id}"
        )


class TestCancelApplication:
    """Test withdrawal by the applicant."""

    async def test_cancel_releases_reservation(self, cto, configured_staff, session_factory, emitter):
        staff = configured_staff
        credit = await issue(cto, staff, 10)
        app = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=4)
        seen = []

        async def capture(event):
            seen.append(event)

        emitter.on(ApplicationCancelled, capture)
        cancelled = await cto.cancel_application(app.application_id, staff.employee.employee_id)
        await emitter.drain()

        assert cancelled.overall_status == "CANCELLED"
        assert [s.status for s in cancelled.steps] == ["CANCELLED"] * 3
        assert all(s.remarks.startswith("Auto-cancelled") for s in cancelled.steps)
        entry = await get_entry(session_factory, credit.credit_id, staff.employee.employee_id)
        assert entry.reserved_hours == 0
        assert entry.remaining_hours == Decimal("10")
        assert await get_balance(session_factory, staff.employee.employee_id) == Decimal("10")
        assert [e.application_id for e in seen] == [app.application_id]
        async with session_factory() as session:
            assert await find_violations(session) == []

    async def test_cancel_after_partial_approval(self, cto, configured_staff):
        staff = configured_staff
        await issue(cto, staff, 10)
        app = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=4)
        await cto.decide(app.application_id, staff.level1.employee_id, "APPROVE")

        cancelled = await cto.cancel_application(app.application_id, staff.employee.employee_id)

        assert [s.status for s in cancelled.steps] == ["APPROVED", "CANCELLED", "CANCELLED"]

    async def test_only_applicant_may_cancel(self, cto, configured_staff):
        staff = configured_staff
        await issue(cto, staff, 10)
        app = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=4)

        with pytest.raises(ForbiddenError):
            await cto.cancel_application(app.application_id, staff.level1.employee_id)

    async def test_cannot_cancel_twice(self, cto, configured_staff, session_factory):
        staff = configured_staff
        credit = await issue(cto, staff, 10)
        app = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=4)
        await cto.cancel_application(app.application_id, staff.employee.employee_id)

        with pytest.raises(ConflictError):
            await cto.cancel_application(app.application_id, staff.employee.employee_id)
        entry = await get_entry(session_factory, credit.credit_id, staff.employee.employee_id)
        assert entry.remaining_hours == Decimal("10")

    async def test_cancelled_application_cannot_be_decided(self, cto, configured_staff):
        staff = configured_staff
        await issue(cto, staff, 10)
        app = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=4)
        await cto.cancel_application(app.application_id, staff.employee.employee_id)

        with pytest.raises(ConflictError):
            await cto.decide(app.application_id, staff.level1.employee_id, "APPROVE")


class TestApplicationQueries:
    """Test application read models."""

    async def test_list_employee_applications(self, cto, configured_staff):
        staff = configured_staff
        await issue(cto, staff, 10)
        first = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=1)
        second = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=2)
        await cto.cancel_application(first.application_id, staff.employee.employee_id)

        everything = await cto.applications.list_employee_applications(staff.employee.employee_id)
        pending = await cto.applications.list_employee_applications(
            staff.employee.employee_id, status="pending"
        )

        assert {a.application_id for a in everything} == {first.application_id, second.application_id}
        assert [a.application_id for a in pending] == [second.application_id]

    async def test_list_all_applications(self, cto, configured_staff, session_factory):
        staff = configured_staff
        other = await add_employee(session_factory, "Omar", designation_id=staff.designation_id)
        await issue(cto, staff, 10)
        await cto.issue_credit(
            employee_ids=[other.employee_id],
            duration={"hours": 5, "minutes": 0},
            memo_no="M-2",
            issuer_id=staff.hr.employee_id,
        )
        mine = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=1)
        theirs = await cto.submit_application(employee_id=other.employee_id, requested_hours=2)
        await cto.decide(theirs.application_id, staff.level1.employee_id, "REJECT")

        everything = await cto.applications.list_applications()
        rejected = await cto.applications.list_applications(status="rejected")
        only_mine = await cto.applications.list_applications(employee_id=staff.employee.employee_id)
        nobody = await cto.applications.list_applications(employee_id=uuid4())

        assert [a.application_id for a in everything] == [theirs.application_id, mine.application_id]
        assert [a.application_id for a in rejected] == [theirs.application_id]
        assert [a.application_id for a in only_mine] == [mine.application_id]
        assert nobody == []
        with pytest.raises(ValidationError):
            await cto.applications.list_applications(status="ON_HOLD")

    async def test_unknown_status_filter(self, cto, configured_staff):
        with pytest.raises(ValidationError):
            await cto.applications.list_employee_applications(
                configured_staff.employee.employee_id, status="ON_HOLD"
            )

    async def test_get_unknown_application(self, cto):
        with pytest.raises(NotFoundError):
            await cto.applications.get_application(uuid4())
