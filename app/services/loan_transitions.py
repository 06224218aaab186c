from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from app.schemas.loan import LoanApproval, LoanStatus
from app.services.stores.document import DocumentStore
from app.services.stores.paths import DocumentPaths
from app.services.stores.relational import RelationalStore


logger = logging.getLogger(__name__)

LOANS_TABLE = "loans"


@dataclass(slots=True, frozen=True)
class StatusWrite:
    loan_id: str
    agency_id: str
    previous_status: LoanStatus
    new_status: LoanStatus
    actor_id: str
    at: datetime
    approval: LoanApproval | None = None
    disbursed_at: datetime | None = None


def document_fields(write: StatusWrite) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "status": write.new_status.value,
        "updated_at": write.at,
    }
    if write.approval is not None:
        fields["approval"] = write.approval.model_dump(mode="json")
        fields["approved_by"] = write.approval.reviewed_by
    if write.new_status is LoanStatus.DISBURSED:
        fields["disbursed_at"] = write.disbursed_at or write.at
        fields["disbursed_by"] = write.actor_id
    if write.new_status is LoanStatus.CLOSED:
        fields["closed_at"] = write.at
        fields["closed_by"] = write.actor_id
    return fields


def relational_fields(write: StatusWrite) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "status": write.new_status.value,
        "updated_at": write.at,
    }
    if write.approval is not None:
        fields["approved_by"] = write.approval.reviewed_by
    return fields


class DualStoreTransitionWriter:
    """Writes a status change to the relational mirror, then the document store.

    The relational store is written first and its failure is only logged:
    the document write still runs and alone decides whether the transition
    happened. Divergence between the two is left to reconciliation.
    The document write is conditional on the status the caller validated
    against, so two racing transitions cannot both commit. The relational
    row is matched on that status too, so a losing write leaves it untouched.
    """

    def __init__(self, documents: DocumentStore, relational: RelationalStore) -> None:
        self._documents = documents
        self._relational = relational

    async def write(self, write: StatusWrite) -> None:
        try:
            await self._relational.update(
                LOANS_TABLE,
                {"id": write.loan_id, "agency_id": write.agency_id, "status": write.previous_status.value},
                relational_fields(write),
            )
        except Exception:
            logger.exception(
                "Relational status write failed for loan=%s (%s -> %s); continuing with document store",
                write.loan_id,
                write.previous_status.value,
                write.new_status.value,
            )

        await self._documents.update(
            DocumentPaths.loan(write.agency_id, write.loan_id),
            document_fields(write),
            expected={"status": write.previous_status.value},
        )
