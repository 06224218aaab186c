from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.loan import Loan
from app.services.stores.errors import RelationalWriteError


# table -> (model, columns the workflow may write)
WRITABLE_COLUMNS: dict[str, tuple[type, frozenset[str]]] = {
    "loans": (Loan, frozenset({"status", "approved_by", "updated_at"})),
}


class RelationalStore(ABC):
    @abstractmethod
    async def update(self, table: str, match: dict[str, Any], fields: dict[str, Any]) -> None:
        """Update rows of ``table`` matching every ``match`` column.

        Raises ``RelationalWriteError`` when the write fails or touches no row.
        """


class SqlRelationalStore(RelationalStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def _resolve(table: str, match: dict[str, Any], fields: dict[str, Any]):
        try:
            model, writable = WRITABLE_COLUMNS[table]
        except KeyError as exc:
            raise RelationalWriteError(f"Table {table!r} is not writable") from exc
        if "agency_id" not in match:
            raise RelationalWriteError("Relational writes must be scoped by agency_id")
        rejected = set(fields) - writable
        if rejected:
            raise RelationalWriteError(f"Columns not writable on {table}: {sorted(rejected)}")
        unknown = [name for name in match if not hasattr(model, name)]
        if unknown:
            raise RelationalWriteError(f"Unknown match columns on {table}: {unknown}")
        return model

    async def update(self, table: str, match: dict[str, Any], fields: dict[str, Any]) -> None:
        model = self._resolve(table, match, fields)
        stmt = (
            update(model)
            .where(*[getattr(model, name) == value for name, value in match.items()])
            .values(**fields)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise RelationalWriteError(f"Update of {table} failed") from exc
        if not result.rowcount:
            raise RelationalWriteError(f"No {table} row matched {sorted(match)}")
