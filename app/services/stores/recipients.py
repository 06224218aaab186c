from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.agency_member import AgencyMember
from app.schemas.loan import UserRole
from app.services.org_scoping import apply_agency_filter


class RecipientResolver(ABC):
    @abstractmethod
    async def resolve(self, agency_id: str, roles: Iterable[UserRole]) -> set[str]:
        """Return ids of active agency members holding any of ``roles``."""


class SqlRecipientResolver(RecipientResolver):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def resolve(self, agency_id: str, roles: Iterable[UserRole]) -> set[str]:
        role_values = sorted({UserRole(role).value for role in roles})
        if not role_values:
            return set()
        stmt = apply_agency_filter(
            select(AgencyMember.user_id).where(
                AgencyMember.role.in_(role_values),
                AgencyMember.is_active.is_(True),
            ),
            agency_id,
            AgencyMember.agency_id,
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return {row[0] for row in result.all() if row[0]}
