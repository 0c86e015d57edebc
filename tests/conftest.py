"""Pytest fixtures for CTO engine tests."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import AsyncGenerator
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cto_engine.config import Settings
from cto_engine.database import create_schema, get_engine, make_session_factory
from cto_engine.engine import CtoEngine
from cto_engine.events import AsyncEventEmitter
from cto_engine.models import CtoCreditEntry, Employee
from cto_engine.notifications import LoggingNotifier


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite file.

    A file rather than :memory: so concurrent sessions see one database.
    """
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'cto.db'}",
        host="127.0.0.1",
        port=8000,
        debug=False,
        frontend_url="http://cto.test",
    )


@pytest_asyncio.fixture
async def session_factory(settings: Settings) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Create schema and yield a session factory."""
    engine = get_engine(settings.database_url)
    await create_schema(engine)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def emitter() -> AsyncGenerator[AsyncEventEmitter, None]:
    """Emitter whose background dispatches finish before teardown."""
    emitter = AsyncEventEmitter()
    yield emitter
    await emitter.aclose()


@pytest.fixture
def notifier() -> LoggingNotifier:
    return LoggingNotifier()


@pytest.fixture
def cto(session_factory, settings, emitter, notifier) -> CtoEngine:
    """Fully wired engine."""
    return CtoEngine.create(session_factory, settings, emitter=emitter, notifier=notifier)


async def add_employee(
    session_factory: async_sessionmaker[AsyncSession],
    first_name: str,
    last_name: str = "Test",
    *,
    email: str | None = "",
    role: str = "employee",
    designation_id: UUID | None = None,
) -> Employee:
    """Insert one employee and return it."""
    if email == "":
        email = f"{first_name.lower()}@example.com"
    employee = Employee(
        employee_id=uuid4(),
        first_name=first_name,
        last_name=last_name,
        email=email,
        role=role,
        designation_id=designation_id,
        cto_hours=Decimal("0"),
    )
    async with session_factory() as session:
        async with session.begin():
            session.add(employee)
    return employee


async def get_balance(session_factory, employee_id: UUID) -> Decimal:
    async with session_factory() as session:
        employee = await session.get(Employee, employee_id)
        return Decimal(str(employee.cto_hours))


async def get_entry(session_factory, credit_id: UUID, employee_id: UUID) -> CtoCreditEntry:
    async with session_factory() as session:
        result = await session.execute(
            select(CtoCreditEntry).where(
                CtoCreditEntry.credit_id == credit_id,
                CtoCreditEntry.employee_id == employee_id,
            )
        )
        return result.scalar_one()


@dataclass
class Staff:
    """One employee, an HR issuer and three approvers."""

    employee: Employee
    hr: Employee
    level1: Employee
    level2: Employee
    level3: Employee
    designation_id: UUID

    @property
    def chain(self) -> dict[str, UUID]:
        return {
            "level1": self.level1.employee_id,
            "level2": self.level2.employee_id,
            "level3": self.level3.employee_id,
        }


@pytest_asyncio.fixture
async def staff(session_factory) -> Staff:
    designation_id = uuid4()
    return Staff(
        employee=await add_employee(session_factory, "Erin", designation_id=designation_id),
        hr=await add_employee(session_factory, "Harper", role="hr"),
        level1=await add_employee(session_factory, "Lee", "One", role="supervisor"),
        level2=await add_employee(session_factory, "Lou", "Two", role="supervisor"),
        level3=await add_employee(session_factory, "Lin", "Three", role="admin"),
        designation_id=designation_id,
    )


@pytest_asyncio.fixture
async def configured_staff(cto: CtoEngine, staff: Staff) -> Staff:
    """Staff whose designation has an approver chain configured."""
    await cto.approver_settings.upsert(staff.designation_id, staff.chain, actor_id=staff.hr.employee_id)
    return staff
