"""Approver chain resolution and per-designation approver settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Protocol
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cto_engine.errors import ValidationError
from cto_engine.models import ApproverSetting, Employee
from cto_engine.services.audit_service import record_audit
from cto_engine.services.common import as_uuid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApproverChain:
    """Level 1, 2 and 3 approvers of an application."""

    level1: UUID
    level2: UUID
    level3: UUID

    def as_tuple(self) -> tuple[UUID, UUID, UUID]:
        return (self.level1, self.level2, self.level3)

    @classmethod
    def coerce(cls, value: Any) -> ApproverChain:
        """Build a chain from a chain, a mapping or a three-item sequence."""
        if isinstance(value, ApproverChain):
            return value
        if isinstance(value, Mapping):
            ids = [
                value.get(f"level{n}") or value.get(f"level{n}_approver_id")
                for n in (1, 2, 3)
            ]
        elif isinstance(value, (list, tuple)):
            ids = list(value)
        else:
            raise ValidationError("Three approvers (Level 1, 2, 3) are required.")

        if len(ids) != 3 or any(not i for i in ids):
            raise ValidationError("Three approvers (Level 1, 2, 3) are required.")
        level1, level2, level3 = (as_uuid(i, "approver id") for i in ids)
        chain = cls(level1=level1, level2=level2, level3=level3)
        if len(set(chain.as_tuple())) != 3:
            raise ValidationError("Approvers for the three levels must be distinct.")
        return chain


class ApproverResolver(Protocol):
    """Read-only lookup of the approver chain configured for a designation."""

    async def resolve(self, designation_id: UUID) -> ApproverChain | None:
        ...


class StaticApproverResolver:
    """Resolver backed by an in-memory mapping."""

    def __init__(self, chains: Mapping[UUID, ApproverChain] | None = None):
        self._chains = dict(chains or {})

    def set(self, designation_id: UUID, chain: ApproverChain) -> None:
        self._chains[designation_id] = chain

    async def resolve(self, designation_id: UUID) -> ApproverChain | None:
        return self._chains.get(designation_id)


async def ensure_employees_exist(session: AsyncSession, employee_ids: list[UUID]) -> dict[UUID, Employee]:
    """Load employees by id, raising ValidationError if any is unknown."""
    result = await session.execute(
        select(Employee).where(Employee.employee_id.in_(employee_ids))
    )
    found = {e.employee_id: e for e in result.scalars().all()}
    missing = [i for i in employee_ids if i not in found]
    if missing:
        raise ValidationError(
            "Some employee IDs are invalid or not found: "
            + ", ".join(str(i) for i in missing)
        )
    return found


class ApproverSettingService:
    """Maintain the approver chain per designation.

    Also serves as the database-backed ApproverResolver.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def resolve(self, designation_id: UUID) -> ApproverChain | None:
        setting = await self.get(designation_id)
        if setting is None:
            return None
        return ApproverChain(*setting.chain())

    async def get(self, designation_id: UUID) -> ApproverSetting | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(ApproverSetting).where(ApproverSetting.designation_id == designation_id)
            )
            return result.scalar_one_or_none()

    async def upsert(
        self,
        designation_id: UUID | str,
        chain: ApproverChain | Mapping[str, Any] | list[Any],
        actor_id: UUID | None = None,
    ) -> ApproverSetting:
        """Create or replace the chain for a designation."""
        designation_id = as_uuid(designation_id, "designation id")
        chain = ApproverChain.coerce(chain)

        async with self.session_factory() as session:
            async with session.begin():
                await ensure_employees_exist(session, list(chain.as_tuple()))

                result = await session.execute(
                    select(ApproverSetting)
                    .where(ApproverSetting.designation_id == designation_id)
                    .with_for_update()
                )
                setting = result.scalar_one_or_none()
                if setting is None:
                    setting = ApproverSetting(designation_id=designation_id)
                    session.add(setting)
                setting.level1_approver_id = chain.level1
                setting.level2_approver_id = chain.level2
                setting.level3_approver_id = chain.level3
                await session.flush()

                record_audit(
                    session,
                    entity_type="cto_approver_setting",
                    entity_id=setting.approver_setting_id,
                    action="upsert",
                    actor_id=actor_id,
                    details={"designation_id": designation_id, "chain": chain.as_tuple()},
                )

        logger.info("Approver chain for designation %s set to %s", designation_id, chain.as_tuple())
        return setting
