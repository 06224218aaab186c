from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from app.schemas.loan import LoanRecord, LoanStatus, UserRole
from app.services.stores.messages import MessageSender, NotificationMessage
from app.services.stores.recipients import RecipientResolver


logger = logging.getLogger(__name__)

CURRENCY = "ZMW"

STAFF_ROLES = (UserRole.ADMIN, UserRole.MANAGER)
REVIEWER_POOL_ROLES = (UserRole.ACCOUNTANT, UserRole.UNDERWRITER)


class LoanEvent(str, Enum):
    SUBMITTED = "loan_submitted"
    APPROVED = "loan_approved"
    REJECTED = "loan_rejected"
    DISBURSED = "loan_disbursed"


EVENT_FOR_TRANSITION: dict[tuple[LoanStatus, LoanStatus], LoanEvent] = {
    (LoanStatus.DRAFT, LoanStatus.PENDING): LoanEvent.SUBMITTED,
    (LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED): LoanEvent.APPROVED,
    (LoanStatus.UNDER_REVIEW, LoanStatus.REJECTED): LoanEvent.REJECTED,
    (LoanStatus.APPROVED, LoanStatus.DISBURSED): LoanEvent.DISBURSED,
}

_EVENT_VERB = {
    LoanEvent.SUBMITTED: "has been submitted for review",
    LoanEvent.APPROVED: "has been approved",
    LoanEvent.REJECTED: "has been rejected",
    LoanEvent.DISBURSED: "has been disbursed",
}


class Audience(str, Enum):
    OFFICER = "officer"
    STAFF = "staff"
    REVIEWER = "reviewer"
    CUSTOMER = "customer"


_AUDIENCE_TITLE = {
    Audience.OFFICER: "Loan Status Update",
    Audience.STAFF: "Loan Status Update",
    Audience.REVIEWER: "Loan Review Required",
    Audience.CUSTOMER: "Your Loan Update",
}

_AUDIENCE_LINK = {
    Audience.OFFICER: "/employee/loans/{loan_id}",
    Audience.STAFF: "/admin/loans/{loan_id}",
    Audience.REVIEWER: "/admin/loans/{loan_id}",
    Audience.CUSTOMER: "/customer/loans/{loan_id}",
}


def event_for_transition(previous: LoanStatus, new: LoanStatus) -> LoanEvent | None:
    return EVENT_FOR_TRANSITION.get((previous, new))


def format_amount(amount: Decimal | None) -> str:
    if amount is None:
        return "N/A"
    if amount == amount.to_integral_value():
        return f"{int(amount):,}"
    return f"{amount:,.2f}"


def build_message_text(event: LoanEvent, loan: LoanRecord, notes: str | None = None) -> str:
    text = (
        f"Loan {loan.loan_number or loan.id} for {loan.customer_name or 'customer'} "
        f"({format_amount(loan.amount)} {CURRENCY}) {_EVENT_VERB[event]}."
    )
    if event is LoanEvent.REJECTED and notes:
        text += f" Reason: {notes}"
    return text


@dataclass
class DispatchReport:
    event: LoanEvent
    loan_id: str
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class NotificationDispatcher:
    """Fire-and-forget fan-out of loan events.

    ``dispatch`` schedules a task and returns immediately. Nothing raised by
    recipient lookup or delivery escapes the task; outcomes are only logged.
    """

    def __init__(
        self,
        resolver: RecipientResolver,
        sender: MessageSender,
        *,
        lookup_timeout: float = 2.0,
        delivery_timeout: float = 5.0,
    ) -> None:
        self._resolver = resolver
        self._sender = sender
        self._lookup_timeout = lookup_timeout
        self._delivery_timeout = delivery_timeout
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(
        self,
        event: LoanEvent,
        loan: LoanRecord,
        *,
        performed_by: str,
        notes: str | None = None,
    ) -> asyncio.Task:
        task = asyncio.create_task(
            self.deliver(event, loan, performed_by=performed_by, notes=notes),
            name=f"loan-notify:{loan.id}:{event.value}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("Notification task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Notification task %s failed", task.get_name(), exc_info=exc)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight dispatches, e.g. on shutdown."""
        if not self._tasks:
            return
        await asyncio.wait(set(self._tasks), timeout=timeout)

    async def _lookup(self, agency_id: str, roles: tuple[UserRole, ...]) -> set[str]:
        try:
            return await asyncio.wait_for(self._resolver.resolve(agency_id, roles), timeout=self._lookup_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Recipient lookup timed out after %.1fs for agency=%s roles=%s",
                self._lookup_timeout,
                agency_id,
                [role.value for role in roles],
            )
        except Exception:
            logger.exception("Recipient lookup failed for agency=%s", agency_id)
        return set()

    async def resolve_recipients(self, event: LoanEvent, loan: LoanRecord) -> dict[str, Audience]:
        """Map each recipient to the audience that decides its title and link.

        A user reachable through several audiences gets a single message,
        under the first audience that names them.
        """
        recipients: dict[str, Audience] = {}
        if loan.officer_id:
            recipients[loan.officer_id] = Audience.OFFICER
        for user_id in sorted(await self._lookup(loan.agency_id, STAFF_ROLES)):
            recipients.setdefault(user_id, Audience.STAFF)
        if event is LoanEvent.SUBMITTED:
            for user_id in sorted(await self._lookup(loan.agency_id, REVIEWER_POOL_ROLES)):
                recipients.setdefault(user_id, Audience.REVIEWER)
        elif loan.customer_user_id:
            recipients.setdefault(loan.customer_user_id, Audience.CUSTOMER)
        return recipients

    async def _send_one(self, user_id: str, message: NotificationMessage) -> bool:
        try:
            await asyncio.wait_for(self._sender.send(user_id, message), timeout=self._delivery_timeout)
        except Exception:
            logger.warning(
                "Notification %s to user=%s failed", message.type, user_id, exc_info=True
            )
            return False
        return True

    async def deliver(
        self,
        event: LoanEvent,
        loan: LoanRecord,
        *,
        performed_by: str,
        notes: str | None = None,
    ) -> DispatchReport:
        report = DispatchReport(event=event, loan_id=loan.id)
        recipients = await self.resolve_recipients(event, loan)
        text = build_message_text(event, loan, notes)
        messages = {
            user_id: NotificationMessage(
                agency_id=loan.agency_id,
                type=event.value,
                title=_AUDIENCE_TITLE[audience],
                message=text,
                link=_AUDIENCE_LINK[audience].format(loan_id=loan.id),
                metadata={"loan_id": loan.id, "status": loan.status.value, "performed_by": performed_by},
            )
            for user_id, audience in recipients.items()
        }
        outcomes = await asyncio.gather(*(self._send_one(user_id, message) for user_id, message in messages.items()))
        for user_id, delivered in zip(messages, outcomes):
            (report.delivered if delivered else report.failed).append(user_id)
        logger.info(
            "Dispatched %s for loan=%s delivered=%d failed=%d",
            event.value,
            loan.id,
            len(report.delivered),
            len(report.failed),
        )
        return report
