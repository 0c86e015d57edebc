"""Tests for credit issuance and rollback."""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from cto_engine.errors import ConflictError, NotFoundError, ValidationError
from cto_engine.events import CreditIssued, CreditRolledBack
from cto_engine.models import AuditEvent, CtoCredit, CtoCreditEntry
from cto_engine.services.invariants import find_violations

from tests.conftest import add_employee, get_balance, get_entry

pytestmark = pytest.mark.asyncio


async def count(session_factory, model) -> int:
    async with session_factory() as session:
        return await session.scalar(select(func.count()).select_from(model))


class TestIssueCredit:
    """Test credit issuance."""

    async def test_credits_every_employee(self, cto, staff, session_factory):
        other = await add_employee(session_factory, "Omar")

        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id, other.employee_id],
            duration={"hours": 7, "minutes": 30},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
            date_approved="2026-03-01",
            attachment_ref="memos/m-1.pdf",
        )

        assert credit.status == "CREDITED"
        assert credit.total_hours == Decimal("7.5")
        assert credit.duration_hours == 7
        assert credit.duration_minutes == 30
        assert credit.credited_by_id == staff.hr.employee_id
        assert str(credit.date_approved) == "2026-03-01"
        assert len(credit.entries) == 2
        for entry in credit.entries:
            assert entry.credited_hours == Decimal("7.5")
            assert entry.remaining_hours == Decimal("7.5")
            assert entry.used_hours == 0
            assert entry.reserved_hours == 0
            assert entry.status == "ACTIVE"

        assert await get_balance(session_factory, staff.employee.employee_id) == Decimal("7.5")
        assert await get_balance(session_factory, other.employee_id) == Decimal("7.5")

    async def test_batches_accumulate(self, cto, staff, session_factory):
        for memo_no in ("M-1", "M-2"):
            await cto.issue_credit(
                employee_ids=[staff.employee.employee_id],
                duration={"hours": 4, "minutes": 0},
                memo_no=memo_no,
                issuer_id=staff.hr.employee_id,
            )
        assert await get_balance(session_factory, staff.employee.employee_id) == Decimal("8")
        assert await count(session_factory, CtoCredit) == 2

    async def test_unknown_employee_writes_nothing(self, cto, staff, session_factory):
        with pytest.raises(ValidationError, match="invalid or not found"):
            await cto.issue_credit(
                employee_ids=[staff.employee.employee_id, uuid4()],
                duration={"hours": 8, "minutes": 0},
                memo_no="M-1",
                issuer_id=staff.hr.employee_id,
            )

        assert await count(session_factory, CtoCredit) == 0
        assert await count(session_factory, CtoCreditEntry) == 0
        assert await get_balance(session_factory, staff.employee.employee_id) == 0

    @pytest.mark.parametrize(
        "duration",
        [{"hours": 0, "minutes": 0}, {"hours": 1, "minutes": 75}, {"hours": -2}, "8h"],
    )
    async def test_bad_duration(self, cto, staff, duration):
        with pytest.raises(ValidationError):
            await cto.issue_credit(
                employee_ids=[staff.employee.employee_id],
                duration=duration,
                memo_no="M-1",
                issuer_id=staff.hr.employee_id,
            )

    async def test_memo_number_required(self, cto, staff):
        with pytest.raises(ValidationError, match="Memo number"):
            await cto.issue_credit(
                employee_ids=[staff.employee.employee_id],
                duration={"hours": 1, "minutes": 0},
                memo_no="  ",
                issuer_id=staff.hr.employee_id,
            )

    async def test_empty_or_duplicate_employees(self, cto, staff):
        with pytest.raises(ValidationError):
            await cto.issue_credit(
                employee_ids=[],
                duration={"hours": 1, "minutes": 0},
                memo_no="M-1",
                issuer_id=staff.hr.employee_id,
            )
        with pytest.raises(ValidationError, match="Duplicate"):
            await cto.issue_credit(
                employee_ids=[staff.employee.employee_id] * 2,
                duration={"hours": 1, "minutes": 0},
                memo_no="M-1",
                issuer_id=staff.hr.employee_id,
            )

    @pytest.mark.parametrize("employee_ids", ["not-a-list", b"raw", 42, {"id": "x"}])
    async def test_employee_ids_must_be_a_list(self, cto, staff, session_factory, employee_ids):
        with pytest.raises(ValidationError, match="list of employee ids"):
            await cto.issue_credit(
                employee_ids=employee_ids,
                duration={"hours": 1, "minutes": 0},
                memo_no="M-1",
                issuer_id=staff.hr.employee_id,
            )
        assert await count(session_factory, CtoCredit) == 0

    async def test_emits_event_after_commit(self, cto, staff, emitter):
        seen = []

        async def capture(event):
            seen.append(event)

        emitter.on(CreditIssued, capture)
        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 2, "minutes": 0},
            memo_no="M-9",
            issuer_id=staff.hr.employee_id,
        )
        await emitter.drain()

        assert len(seen) == 1
        assert seen[0].credit_id == credit.credit_id
        assert [r.employee_id for r in seen[0].recipients] == [staff.employee.employee_id]

    async def test_writes_audit_event(self, cto, staff, session_factory):
        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 2, "minutes": 0},
            memo_no="M-9",
            issuer_id=staff.hr.employee_id,
        )
        async with session_factory() as session:
            events = (await session.execute(select(AuditEvent))).scalars().all()
        assert [(e.entity_id, e.action) for e in events] == [(credit.credit_id, "credited")]
        assert events[0].details_json["memo_no"] == "M-9"


class TestRollbackCredit:
    """Test credit rollback."""

    async def test_round_trip_restores_balance(self, cto, staff, session_factory):
        """Issue then roll back leaves the balance exactly where it was."""
        before = await get_balance(session_factory, staff.employee.employee_id)
        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 8, "minutes": 0},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
        )

        rolled = await cto.rollback_credit(credit.credit_id, staff.hr.employee_id)

        assert rolled.status == "ROLLEDBACK"
        assert rolled.rolled_back_by_id == staff.hr.employee_id
        assert rolled.date_rolled_back is not None
        assert [e.status for e in rolled.entries] == ["ROLLEDBACK"]
        assert await get_balance(session_factory, staff.employee.employee_id) == before
        async with session_factory() as session:
            assert await find_violations(session) == []

    async def test_second_rollback_conflicts(self, cto, staff, session_factory):
        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 8, "minutes": 0},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
        )
        await cto.rollback_credit(credit.credit_id, staff.hr.employee_id)

        with pytest.raises(ConflictError):
            await cto.rollback_credit(credit.credit_id, staff.hr.employee_id)
        assert await get_balance(session_factory, staff.employee.employee_id) == 0

    async def test_used_hours_block_rollback(self, cto, configured_staff, session_factory):
        """A batch with used hours stays CREDITED and balances are untouched."""
        staff = configured_staff
        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 10, "minutes": 0},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
        )
        app = await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=2)
        for approver in (staff.level1, staff.level2, staff.level3):
            await cto.decide(app.application_id, approver.employee_id, "APPROVE")

        entry = await get_entry(session_factory, credit.credit_id, staff.employee.employee_id)
        assert entry.used_hours == Decimal("2")
        balance = await get_balance(session_factory, staff.employee.employee_id)

        with pytest.raises(ConflictError, match="used or reserved"):
            await cto.rollback_credit(credit.credit_id, staff.hr.employee_id)

        unchanged = await cto.credits.get_credit(credit.credit_id)
        assert unchanged.status == "CREDITED"
        assert [e.status for e in unchanged.entries] == ["ACTIVE"]
        assert await get_balance(session_factory, staff.employee.employee_id) == balance == Decimal("8")

    async def test_reserved_hours_block_rollback(self, cto, configured_staff):
        staff = configured_staff
        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 10, "minutes": 0},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
        )
        await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=1)

        with pytest.raises(ConflictError):
            await cto.rollback_credit(credit.credit_id, staff.hr.employee_id)

    async def test_fractional_reservations_release_exactly(self, cto, configured_staff, session_factory):
        """Tenths of an hour reserved and released leave nothing behind."""
        staff = configured_staff
        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 1, "minutes": 0},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
        )
        for hours in ("0.1", "0.2"):
            app = await cto.submit_application(
                employee_id=staff.employee.employee_id, requested_hours=Decimal(hours)
            )
            await cto.decide(app.application_id, staff.level1.employee_id, "REJECT")

        entry = await get_entry(session_factory, credit.credit_id, staff.employee.employee_id)
        assert entry.reserved_hours == 0
        assert entry.remaining_hours == Decimal("1")

        rolled = await cto.rollback_credit(credit.credit_id, staff.hr.employee_id)

        assert rolled.status == "ROLLEDBACK"
        assert await get_balance(session_factory, staff.employee.employee_id) == 0
        async with session_factory() as session:
            assert await find_violations(session) == []

    async def test_unknown_actor_changes_nothing(self, cto, staff, session_factory):
        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 4, "minutes": 0},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
        )

        with pytest.raises(ValidationError, match="Actor"):
            await cto.rollback_credit(credit.credit_id, uuid4())

        unchanged = await cto.credits.get_credit(credit.credit_id)
        assert unchanged.status == "CREDITED"
        assert unchanged.rolled_back_by_id is None
        assert [e.status for e in unchanged.entries] == ["ACTIVE"]
        assert await get_balance(session_factory, staff.employee.employee_id) == Decimal("4")

    async def test_unknown_batch(self, cto, staff):
        with pytest.raises(NotFoundError):
            await cto.rollback_credit(uuid4(), staff.hr.employee_id)

    async def test_emits_rolled_back_event(self, cto, staff, emitter):
        seen = []

        async def capture(event):
            seen.append(event)

        emitter.on(CreditRolledBack, capture)
        credit = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 3, "minutes": 0},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
        )
        await cto.rollback_credit(credit.credit_id, staff.hr.employee_id)
        await emitter.drain()

        assert [e.credit_id for e in seen] == [credit.credit_id]


class TestReadModels:
    """Test credit queries."""

    async def test_balance_summary(self, cto, configured_staff):
        staff = configured_staff
        await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 10, "minutes": 0},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
        )
        await cto.submit_application(employee_id=staff.employee.employee_id, requested_hours=4)

        summary = await cto.credits.get_balance_summary(staff.employee.employee_id)

        assert summary.balance == Decimal("10")
        assert summary.credited == Decimal("10")
        assert summary.reserved == Decimal("4")
        assert summary.remaining == Decimal("6")
        assert summary.used == Decimal("0")

    async def test_employee_credits_and_listing(self, cto, staff):
        first = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 1, "minutes": 0},
            memo_no="M-1",
            issuer_id=staff.hr.employee_id,
        )
        second = await cto.issue_credit(
            employee_ids=[staff.employee.employee_id],
            duration={"hours": 2, "minutes": 0},
            memo_no="M-2",
            issuer_id=staff.hr.employee_id,
        )

        entries = await cto.credits.list_employee_credits(staff.employee.employee_id)
        assert [e.credit.memo_no for e in entries] == ["M-1", "M-2"]

        batches = await cto.credits.list_credits()
        assert [c.credit_id for c in batches] == [second.credit_id, first.credit_id]

    async def test_unknown_employee_balance(self, cto):
        with pytest.raises(NotFoundError):
            await cto.credits.get_balance_summary(uuid4())
