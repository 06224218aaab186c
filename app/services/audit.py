from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from fastapi.encoders import jsonable_encoder
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.logging import get_audit_logger
from app.models.audit_log import AuditLog
from app.schemas.loan import LoanAuditEntry
from app.services.stores.document import DocumentStore
from app.services.stores.paths import DocumentPaths


logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

LOAN_RESOURCE_TYPE = "loan"
LOAN_STATUS_CHANGE_ACTION = "loan_status_change"


def serialize_for_audit(value: Any) -> Any:
    return jsonable_encoder(
        value,
        custom_encoder={
            Decimal: lambda v: str(v),
            datetime: lambda v: v.isoformat(),
            date: lambda v: v.isoformat(),
        },
    )


def _diff_values(old: Any, new: Any, prefix: str = "") -> dict[str, dict[str, Any]]:
    changes: dict[str, dict[str, Any]] = {}
    if isinstance(old, dict) and isinstance(new, dict):
        keys = set(old.keys()) | set(new.keys())
        for key in keys:
            path = f"{prefix}.{key}" if prefix else str(key)
            changes.update(_diff_values(old.get(key), new.get(key), path))
        return changes
    if old != new:
        changes[prefix or "value"] = {"from": old, "to": new}
    return changes


def _build_summary(action: str, changes: dict[str, dict[str, Any]] | None) -> str:
    if not changes:
        return action
    keys = sorted(changes.keys())
    snippet = ", ".join(keys[:3])
    suffix = "..." if len(keys) > 3 else ""
    return f"{action}: {snippet}{suffix}"


def build_agency_audit_log(entry: LoanAuditEntry) -> AuditLog:
    """Rollup row for the agency-wide stream from a loan audit entry."""
    old_value = serialize_for_audit({"status": entry.previous_status})
    new_value = serialize_for_audit(
        {
            "status": entry.new_status,
            "notes": entry.notes,
            "audit_action": entry.action,
            "loan_audit_id": entry.id,
            "timestamp": entry.timestamp,
            **entry.metadata,
        }
    )
    changes = _diff_values(old_value, new_value) or None
    return AuditLog(
        agency_id=entry.agency_id,
        actor_id=entry.performed_by,
        actor_role=entry.performed_by_role.value,
        action=LOAN_STATUS_CHANGE_ACTION,
        resource_type=LOAN_RESOURCE_TYPE,
        resource_id=entry.loan_id,
        old_value=old_value,
        new_value=new_value,
        changes=changes,
        summary=_build_summary(LOAN_STATUS_CHANGE_ACTION, changes),
    )


class AgencyAuditStream(ABC):
    @abstractmethod
    async def record(self, entry: LoanAuditEntry) -> None:
        pass


class SqlAgencyAuditStream(AgencyAuditStream):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, entry: LoanAuditEntry) -> None:
        async with self._session_factory() as session:
            session.add(build_agency_audit_log(entry))
            await session.commit()


class LoanAuditWriter:
    """Appends transition entries to the loan log, then the agency rollup.

    The loan-scoped append is the compliance record and its failure
    propagates. The agency rollup is best-effort.
    """

    def __init__(self, documents: DocumentStore, agency_stream: AgencyAuditStream) -> None:
        self._documents = documents
        self._agency_stream = agency_stream

    async def next_timestamp(self, agency_id: str, loan_id: str, at: datetime) -> datetime:
        """Clamp ``at`` to the loan's latest stored audit timestamp."""
        last = await self._documents.last(DocumentPaths.loan_audit_logs(agency_id, loan_id))
        if last is None:
            return at
        floor = LoanAuditEntry.model_validate(last).timestamp
        return floor if at < floor else at

    async def record_transition(self, loan_id: str, agency_id: str, entry: LoanAuditEntry) -> LoanAuditEntry:
        if entry.loan_id != loan_id or entry.agency_id != agency_id:
            raise ValueError("Audit entry does not belong to the loan being audited")
        timestamp = await self.next_timestamp(agency_id, loan_id, entry.timestamp)
        payload = entry.model_copy(update={"timestamp": timestamp}).model_dump(mode="json", exclude={"id"})

        entry_id = await self._documents.append(DocumentPaths.loan_audit_logs(agency_id, loan_id), payload)
        stored = entry.model_copy(update={"id": entry_id, "timestamp": timestamp})

        audit_logger.info(
            "loan %s %s -> %s by %s (%s)",
            loan_id,
            stored.previous_status.value,
            stored.new_status.value,
            stored.performed_by,
            stored.performed_by_role.value,
            extra={"loan_id": loan_id, "audit_entry_id": entry_id},
        )

        try:
            await self._agency_stream.record(stored)
        except Exception:
            logger.exception(
                "Agency audit stream write failed for loan=%s entry=%s", loan_id, entry_id
            )
        return stored


async def list_loan_audit_trail(documents: DocumentStore, agency_id: str, loan_id: str) -> list[LoanAuditEntry]:
    rows = await documents.list(DocumentPaths.loan_audit_logs(agency_id, loan_id))
    return [LoanAuditEntry.model_validate(row) for row in rows]
