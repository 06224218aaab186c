from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class LoanStatus(str, Enum):
    """Loan lifecycle.

    DRAFT -> PENDING -> UNDER_REVIEW -> APPROVED -> DISBURSED -> ACTIVE -> CLOSED
                                    \\-> REJECTED              \\-> OVERDUE -> CLOSED
    """

    DRAFT = "draft"
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    DISBURSED = "disbursed"
    ACTIVE = "active"
    OVERDUE = "overdue"
    CLOSED = "closed"


class UserRole(str, Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    UNDERWRITER = "underwriter"
    ACCOUNTANT = "accountant"
    LOAN_OFFICER = "loan_officer"
    COLLECTIONS = "collections"
    CUSTOMER = "customer"


class LoanAction(str, Enum):
    EDIT = "edit"
    SUBMIT = "submit"
    REVIEW = "review"
    APPROVE = "approve"
    REJECT = "reject"
    DISBURSE = "disburse"
    ACTIVATE = "activate"
    MARK_OVERDUE = "mark_overdue"
    CLOSE = "close"


class LoanAuditAction(str, Enum):
    STATUS_CHANGE = "STATUS_CHANGE"


class TransitionErrorKind(str, Enum):
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    PERSISTENCE_FAILED = "persistence_failed"
    CONFLICT = "conflict"


class LoanApproval(BaseModel):
    """Decision record attached to a loan on approve/reject; replaced, never edited."""

    model_config = ConfigDict(frozen=True)

    decision: Literal["approved", "rejected"]
    reviewed_by: str
    reviewed_at: datetime
    notes: str = ""
    previous_status: LoanStatus
    new_status: LoanStatus


class LoanRecord(BaseModel):
    """The slice of the loan document the workflow reads."""

    model_config = ConfigDict(extra="ignore")

    id: str
    agency_id: str
    status: LoanStatus
    amount: Decimal | None = None
    officer_id: str | None = None
    created_by: str | None = None
    customer_user_id: str | None = None
    customer_name: str | None = None
    loan_number: str | None = None
    approval: LoanApproval | None = None
    approved_by: str | None = None
    disbursed_at: datetime | None = None
    disbursed_by: str | None = None
    closed_at: datetime | None = None
    closed_by: str | None = None
    updated_at: datetime | None = None

    def is_owned_by(self, user_id: str) -> bool:
        return bool(user_id) and user_id in {self.created_by, self.officer_id}


class LoanAuditEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    loan_id: str
    agency_id: str
    action: LoanAuditAction = LoanAuditAction.STATUS_CHANGE
    previous_status: LoanStatus
    new_status: LoanStatus
    performed_by: str
    performed_by_role: UserRole
    timestamp: datetime
    notes: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class TransitionResult(BaseModel):
    success: bool
    loan_id: str
    error: str | None = None
    error_kind: TransitionErrorKind | None = None
    previous_status: LoanStatus | None = None
    new_status: LoanStatus | None = None

    @classmethod
    def ok(cls, loan_id: str, previous: LoanStatus, new: LoanStatus) -> "TransitionResult":
        return cls(success=True, loan_id=loan_id, previous_status=previous, new_status=new)

    @classmethod
    def failed(
        cls,
        loan_id: str,
        kind: TransitionErrorKind,
        error: str,
        *,
        previous: LoanStatus | None = None,
    ) -> "TransitionResult":
        return cls(success=False, loan_id=loan_id, error=error, error_kind=kind, previous_status=previous)


class LoanPermissionSet(BaseModel):
    can_view: bool = False
    can_edit: bool = False
    can_submit: bool = False
    can_review: bool = False
    can_approve: bool = False
    can_reject: bool = False
    can_disburse: bool = False
    can_mark_overdue: bool = False
    can_close: bool = False


class LoanDecisionRequest(BaseModel):
    notes: str = Field(default="", max_length=2000)


class LoanDisburseRequest(BaseModel):
    disbursement_date: datetime | None = None


class LoanTransitionRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=2000)


class LoanPermissionsResponse(BaseModel):
    loan_id: str
    status: LoanStatus
    role: UserRole
    is_owner: bool
    permissions: LoanPermissionSet
    next_statuses: list[LoanStatus]


class LoanAuditTrailResponse(BaseModel):
    loan_id: str
    items: list[LoanAuditEntry]
    total: int
