from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Literal

from pydantic import ValidationError
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.settings import Settings
from app.schemas.loan import (
    LoanAction,
    LoanApproval,
    LoanAuditEntry,
    LoanRecord,
    LoanStatus,
    TransitionErrorKind,
    TransitionResult,
    UserRole,
)
from app.services.audit import LoanAuditWriter, SqlAgencyAuditStream, list_loan_audit_trail
from app.services.loan_notifications import NotificationDispatcher, event_for_transition
from app.services.loan_permissions import (
    action_for_transition,
    can_perform_action,
    can_transition_status,
)
from app.services.loan_transitions import DualStoreTransitionWriter, StatusWrite
from app.services.stores.document import DocumentStore, RedisDocumentStore
from app.services.stores.errors import DocumentNotFoundError, StaleDocumentError, StoreError
from app.services.stores.messages import SqlMessageSender
from app.services.stores.paths import DocumentPaths
from app.services.stores.recipients import SqlRecipientResolver
from app.services.stores.relational import SqlRelationalStore


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
Decision = Literal["approved", "rejected"]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _LoadFailed(Exception):
    def __init__(self, result: TransitionResult) -> None:
        super().__init__(result.error)
        self.result = result


def _role_label(role: UserRole | str) -> str:
    return role.value if isinstance(role, UserRole) else str(role)


class LoanWorkflow:
    """Entry points for moving a loan through its lifecycle.

    Each transition runs: load -> permission check -> dual-store write ->
    loan audit entry -> notification dispatch (not awaited). A denied or
    not-found transition has no side effects.
    """

    def __init__(
        self,
        documents: DocumentStore,
        writer: DualStoreTransitionWriter,
        auditor: LoanAuditWriter,
        notifier: NotificationDispatcher,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self._documents = documents
        self._writer = writer
        self._auditor = auditor
        self._notifier = notifier
        self._clock = clock

    @property
    def notifier(self) -> NotificationDispatcher:
        return self._notifier

    @property
    def documents(self) -> DocumentStore:
        return self._documents

    async def load_loan(self, loan_id: str, agency_id: str) -> LoanRecord:
        data = await self._documents.get(DocumentPaths.loan(agency_id, loan_id))
        stored_agency = data.get("agency_id")
        if stored_agency is not None and stored_agency != agency_id:
            # Never hand out another tenant's document.
            raise DocumentNotFoundError(DocumentPaths.loan(agency_id, loan_id))
        return LoanRecord.model_validate({**data, "id": loan_id, "agency_id": agency_id})

    async def _load_or_fail(self, loan_id: str, agency_id: str) -> LoanRecord:
        try:
            return await self.load_loan(loan_id, agency_id)
        except ValidationError:
            logger.exception("Stored loan=%s does not parse", loan_id)
            raise _LoadFailed(
                TransitionResult.failed(loan_id, TransitionErrorKind.PERSISTENCE_FAILED, "Loan record is invalid")
            ) from None
        except (DocumentNotFoundError, ValueError):
            # ValueError: ids that cannot name a document
            raise _LoadFailed(
                TransitionResult.failed(loan_id, TransitionErrorKind.NOT_FOUND, "Loan not found")
            ) from None
        except StoreError:
            logger.exception("Loading loan=%s failed", loan_id)
            raise _LoadFailed(
                TransitionResult.failed(loan_id, TransitionErrorKind.PERSISTENCE_FAILED, "Failed to load loan")
            ) from None

    async def get_audit_trail(self, loan_id: str, agency_id: str) -> list[LoanAuditEntry]:
        return await list_loan_audit_trail(self._documents, agency_id, loan_id)

    async def _apply(
        self,
        loan: LoanRecord,
        new_status: LoanStatus,
        user_id: str,
        role: UserRole,
        *,
        notes: str | None = None,
        decision: Decision | None = None,
        disbursed_at: datetime | None = None,
        notify: bool = True,
    ) -> TransitionResult:
        current = loan.status
        if not can_transition_status(current, new_status, role):
            return TransitionResult.failed(
                loan.id,
                TransitionErrorKind.PERMISSION_DENIED,
                f"Cannot transition from {current.value} to {new_status.value} with role {_role_label(role)}",
                previous=current,
            )
        action = action_for_transition(current, new_status)
        if not can_perform_action(action, role, current, loan.is_owned_by(user_id)):
            return TransitionResult.failed(
                loan.id,
                TransitionErrorKind.PERMISSION_DENIED,
                f"You do not have permission to {action.value} this loan",
                previous=current,
            )

        try:
            at = await self._auditor.next_timestamp(loan.agency_id, loan.id, self._clock())
        except (StoreError, ValidationError):
            logger.exception("Reading audit log of loan=%s failed", loan.id)
            return TransitionResult.failed(
                loan.id,
                TransitionErrorKind.PERSISTENCE_FAILED,
                "Failed to read the loan audit log",
                previous=current,
            )
        approval = None
        if decision is not None:
            approval = LoanApproval(
                decision=decision,
                reviewed_by=user_id,
                reviewed_at=at,
                notes=notes or "",
                previous_status=current,
                new_status=new_status,
            )
        write = StatusWrite(
            loan_id=loan.id,
            agency_id=loan.agency_id,
            previous_status=current,
            new_status=new_status,
            actor_id=user_id,
            at=at,
            approval=approval,
            disbursed_at=disbursed_at,
        )
        try:
            await self._writer.write(write)
        except StaleDocumentError:
            return TransitionResult.failed(
                loan.id,
                TransitionErrorKind.CONFLICT,
                "Loan status changed concurrently; reload and try again",
                previous=current,
            )
        except DocumentNotFoundError:
            return TransitionResult.failed(loan.id, TransitionErrorKind.NOT_FOUND, "Loan not found", previous=current)
        except StoreError:
            logger.exception("Document write failed for loan=%s (%s -> %s)", loan.id, current.value, new_status.value)
            return TransitionResult.failed(
                loan.id,
                TransitionErrorKind.PERSISTENCE_FAILED,
                "Failed to change loan status",
                previous=current,
            )

        entry = LoanAuditEntry(
            loan_id=loan.id,
            agency_id=loan.agency_id,
            previous_status=current,
            new_status=new_status,
            performed_by=user_id,
            performed_by_role=role,
            timestamp=at,
            notes=notes or "",
            metadata={
                "transition": action.value,
                "approval": approval.model_dump(mode="json") if approval else None,
            },
        )
        try:
            await self._auditor.record_transition(loan.id, loan.agency_id, entry)
        except Exception:
            logger.exception("Loan audit write failed for loan=%s (%s -> %s)", loan.id, current.value, new_status.value)
            return TransitionResult.failed(
                loan.id,
                TransitionErrorKind.PERSISTENCE_FAILED,
                "Loan status changed but the audit entry could not be recorded",
                previous=current,
            )

        updated = loan.model_copy(update={"status": new_status, "approval": approval or loan.approval})
        event = event_for_transition(current, new_status)
        if notify and event is not None:
            try:
                self._notifier.dispatch(event, updated, performed_by=user_id, notes=notes)
            except Exception:
                logger.exception("Scheduling %s notification failed for loan=%s", event.value, loan.id)

        logger.info("Loan %s moved %s -> %s", loan.id, current.value, new_status.value)
        return TransitionResult.ok(loan.id, current, new_status)

    async def change_loan_status(
        self,
        loan_id: str,
        agency_id: str,
        new_status: LoanStatus,
        user_id: str,
        role: UserRole,
        *,
        notes: str | None = None,
        disbursed_at: datetime | None = None,
    ) -> TransitionResult:
        try:
            loan = await self._load_or_fail(loan_id, agency_id)
        except _LoadFailed as failure:
            return failure.result
        return await self._apply(loan, new_status, user_id, role, notes=notes, disbursed_at=disbursed_at)

    async def submit_loan_for_review(self, loan_id: str, agency_id: str, user_id: str, role: UserRole) -> TransitionResult:
        if not can_perform_action(LoanAction.SUBMIT, role, LoanStatus.DRAFT, True):
            return TransitionResult.failed(
                loan_id, TransitionErrorKind.PERMISSION_DENIED, "You do not have permission to submit loans"
            )
        return await self.change_loan_status(
            loan_id,
            agency_id,
            LoanStatus.PENDING,
            user_id,
            role,
            notes="Loan submitted for review",
        )

    async def _decide(
        self,
        loan_id: str,
        agency_id: str,
        user_id: str,
        role: UserRole,
        notes: str,
        *,
        action: LoanAction,
        target: LoanStatus,
        decision: Decision,
    ) -> TransitionResult:
        try:
            loan = await self._load_or_fail(loan_id, agency_id)
        except _LoadFailed as failure:
            return failure.result

        original = loan.status
        # Both edges are checked before either is written.
        allowed = can_perform_action(action, role, original, loan.is_owned_by(user_id))
        if allowed and original is LoanStatus.PENDING:
            allowed = can_perform_action(LoanAction.REVIEW, role, original)
        if not allowed:
            return TransitionResult.failed(
                loan_id,
                TransitionErrorKind.PERMISSION_DENIED,
                f"You do not have permission to {action.value} this loan in status {original.value}",
                previous=original,
            )

        if original is LoanStatus.PENDING:
            review = await self._apply(
                loan,
                LoanStatus.UNDER_REVIEW,
                user_id,
                role,
                notes="Loan moved to under review",
                notify=False,
            )
            if not review.success:
                return review
            loan = loan.model_copy(update={"status": LoanStatus.UNDER_REVIEW})

        result = await self._apply(loan, target, user_id, role, notes=notes, decision=decision)
        if result.success:
            return result.model_copy(update={"previous_status": original})
        return result

    async def approve_loan(
        self, loan_id: str, agency_id: str, user_id: str, role: UserRole, notes: str = ""
    ) -> TransitionResult:
        return await self._decide(
            loan_id,
            agency_id,
            user_id,
            role,
            notes,
            action=LoanAction.APPROVE,
            target=LoanStatus.APPROVED,
            decision="approved",
        )

    async def reject_loan(
        self, loan_id: str, agency_id: str, user_id: str, role: UserRole, notes: str = ""
    ) -> TransitionResult:
        return await self._decide(
            loan_id,
            agency_id,
            user_id,
            role,
            notes,
            action=LoanAction.REJECT,
            target=LoanStatus.REJECTED,
            decision="rejected",
        )

    async def disburse_loan(
        self,
        loan_id: str,
        agency_id: str,
        user_id: str,
        role: UserRole,
        disbursement_date: datetime | None = None,
    ) -> TransitionResult:
        if not can_perform_action(LoanAction.DISBURSE, role, LoanStatus.APPROVED):
            return TransitionResult.failed(
                loan_id, TransitionErrorKind.PERMISSION_DENIED, "You do not have permission to disburse loans"
            )
        disbursed_on = disbursement_date or self._clock()
        result = await self.change_loan_status(
            loan_id,
            agency_id,
            LoanStatus.DISBURSED,
            user_id,
            role,
            notes=f"Loan disbursed on {disbursed_on.isoformat()}",
            disbursed_at=disbursed_on,
        )
        if not result.success:
            return result

        # Caller sees the disbursement result whatever happens here.
        activation = await self.change_loan_status(
            loan_id,
            agency_id,
            LoanStatus.ACTIVE,
            user_id,
            role,
            notes="Loan activated after disbursement",
        )
        if not activation.success:
            logger.warning(
                "Auto-activation of loan=%s after disbursement failed: %s (%s)",
                loan_id,
                activation.error,
                activation.error_kind.value if activation.error_kind else "-",
            )
        return result

    async def mark_loan_overdue(
        self, loan_id: str, agency_id: str, user_id: str, role: UserRole, notes: str | None = None
    ) -> TransitionResult:
        return await self.change_loan_status(
            loan_id, agency_id, LoanStatus.OVERDUE, user_id, role, notes=notes or "Loan marked overdue"
        )

    async def close_loan(
        self, loan_id: str, agency_id: str, user_id: str, role: UserRole, notes: str | None = None
    ) -> TransitionResult:
        return await self.change_loan_status(
            loan_id, agency_id, LoanStatus.CLOSED, user_id, role, notes=notes or "Loan closed"
        )


def build_loan_workflow(
    session_factory: async_sessionmaker[AsyncSession],
    redis: Redis,
    settings: Settings,
    *,
    clock: Clock = utc_now,
) -> LoanWorkflow:
    documents = RedisDocumentStore(redis, prefix=settings.document_key_prefix)
    return LoanWorkflow(
        documents,
        DualStoreTransitionWriter(documents, SqlRelationalStore(session_factory)),
        LoanAuditWriter(documents, SqlAgencyAuditStream(session_factory)),
        NotificationDispatcher(
            SqlRecipientResolver(session_factory),
            SqlMessageSender(session_factory, redis, prefix=settings.document_key_prefix),
            lookup_timeout=settings.recipient_lookup_timeout_seconds,
            delivery_timeout=settings.notification_delivery_timeout_seconds,
        ),
        clock=clock,
    )
