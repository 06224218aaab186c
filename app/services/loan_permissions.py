"""Loan lifecycle permission matrix.

Every function here is pure: no I/O, no clock, no exceptions for unknown
input. The matrix is a whitelist; anything not listed is denied.
"""

from __future__ import annotations

from typing import Any

from app.schemas.loan import LoanAction, LoanPermissionSet, LoanStatus, UserRole


REVIEW_ROLES = frozenset({UserRole.ADMIN, UserRole.MANAGER, UserRole.UNDERWRITER, UserRole.ACCOUNTANT})
DISBURSE_ROLES = frozenset({UserRole.ADMIN, UserRole.MANAGER})
SUPERVISOR_ROLES = frozenset({UserRole.ADMIN, UserRole.MANAGER})

# Roles that may submit/edit any draft; loan officers only their own.
_OWNER_SCOPED_ROLES = frozenset({UserRole.LOAN_OFFICER})


# (from, to) -> action performing that edge
STATUS_TRANSITIONS: dict[tuple[LoanStatus, LoanStatus], LoanAction] = {
    (LoanStatus.DRAFT, LoanStatus.PENDING): LoanAction.SUBMIT,
    (LoanStatus.PENDING, LoanStatus.UNDER_REVIEW): LoanAction.REVIEW,
    (LoanStatus.UNDER_REVIEW, LoanStatus.APPROVED): LoanAction.APPROVE,
    (LoanStatus.UNDER_REVIEW, LoanStatus.REJECTED): LoanAction.REJECT,
    (LoanStatus.APPROVED, LoanStatus.DISBURSED): LoanAction.DISBURSE,
    (LoanStatus.DISBURSED, LoanStatus.ACTIVE): LoanAction.ACTIVATE,
    (LoanStatus.ACTIVE, LoanStatus.OVERDUE): LoanAction.MARK_OVERDUE,
    (LoanStatus.ACTIVE, LoanStatus.CLOSED): LoanAction.CLOSE,
    (LoanStatus.OVERDUE, LoanStatus.CLOSED): LoanAction.CLOSE,
}

ACTION_ROLES: dict[LoanAction, frozenset[UserRole]] = {
    LoanAction.EDIT: SUPERVISOR_ROLES | _OWNER_SCOPED_ROLES,
    LoanAction.SUBMIT: SUPERVISOR_ROLES | _OWNER_SCOPED_ROLES,
    LoanAction.REVIEW: REVIEW_ROLES,
    LoanAction.APPROVE: REVIEW_ROLES,
    LoanAction.REJECT: REVIEW_ROLES,
    LoanAction.DISBURSE: DISBURSE_ROLES,
    LoanAction.ACTIVATE: DISBURSE_ROLES,
    LoanAction.MARK_OVERDUE: SUPERVISOR_ROLES | {UserRole.COLLECTIONS},
    LoanAction.CLOSE: SUPERVISOR_ROLES,
}

# States an action may start from. Approve/reject also start from PENDING,
# via the composite PENDING -> UNDER_REVIEW -> decision path.
ACTION_SOURCE_STATES: dict[LoanAction, frozenset[LoanStatus]] = {
    LoanAction.EDIT: frozenset({LoanStatus.DRAFT}),
    LoanAction.SUBMIT: frozenset({LoanStatus.DRAFT}),
    LoanAction.REVIEW: frozenset({LoanStatus.PENDING}),
    LoanAction.APPROVE: frozenset({LoanStatus.PENDING, LoanStatus.UNDER_REVIEW}),
    LoanAction.REJECT: frozenset({LoanStatus.PENDING, LoanStatus.UNDER_REVIEW}),
    LoanAction.DISBURSE: frozenset({LoanStatus.APPROVED}),
    LoanAction.ACTIVATE: frozenset({LoanStatus.DISBURSED}),
    LoanAction.MARK_OVERDUE: frozenset({LoanStatus.ACTIVE}),
    LoanAction.CLOSE: frozenset({LoanStatus.ACTIVE, LoanStatus.OVERDUE}),
}

_VIEW_STATES: dict[UserRole, frozenset[LoanStatus]] = {
    UserRole.ACCOUNTANT: frozenset(
        {
            LoanStatus.PENDING,
            LoanStatus.UNDER_REVIEW,
            LoanStatus.APPROVED,
            LoanStatus.DISBURSED,
            LoanStatus.ACTIVE,
            LoanStatus.OVERDUE,
        }
    ),
    UserRole.COLLECTIONS: frozenset({LoanStatus.DISBURSED, LoanStatus.ACTIVE, LoanStatus.OVERDUE, LoanStatus.CLOSED}),
}


def _coerce(enum_cls, value: Any):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except (ValueError, TypeError):
        return None


def action_for_transition(current: Any, target: Any) -> LoanAction | None:
    current_status = _coerce(LoanStatus, current)
    target_status = _coerce(LoanStatus, target)
    if current_status is None or target_status is None:
        return None
    return STATUS_TRANSITIONS.get((current_status, target_status))


def can_transition_status(current: Any, target: Any, role: Any) -> bool:
    """True when ``current -> target`` is a whitelisted edge and ``role`` may walk it.

    Ownership is not considered here; ``can_perform_action`` covers it.
    """
    action = action_for_transition(current, target)
    user_role = _coerce(UserRole, role)
    if action is None or user_role is None:
        return False
    return user_role in ACTION_ROLES[action]


def can_perform_action(action: Any, role: Any, current: Any, is_owner: bool = False) -> bool:
    loan_action = _coerce(LoanAction, action)
    user_role = _coerce(UserRole, role)
    current_status = _coerce(LoanStatus, current)
    if loan_action is None or user_role is None or current_status is None:
        return False
    if current_status not in ACTION_SOURCE_STATES[loan_action]:
        return False
    if user_role not in ACTION_ROLES[loan_action]:
        return False
    if user_role in _OWNER_SCOPED_ROLES and loan_action in {LoanAction.EDIT, LoanAction.SUBMIT}:
        return bool(is_owner)
    return True


def can_view(role: Any, current: Any, is_owner: bool = False) -> bool:
    user_role = _coerce(UserRole, role)
    current_status = _coerce(LoanStatus, current)
    if user_role is None or current_status is None:
        return False
    if user_role in REVIEW_ROLES - {UserRole.ACCOUNTANT}:
        return True
    if user_role is UserRole.LOAN_OFFICER:
        return True
    if user_role is UserRole.CUSTOMER:
        return bool(is_owner)
    return current_status in _VIEW_STATES.get(user_role, frozenset())


def get_loan_permissions(role: Any, current: Any, is_owner: bool = False) -> LoanPermissionSet:
    def _can(action: LoanAction) -> bool:
        return can_perform_action(action, role, current, is_owner)

    return LoanPermissionSet(
        can_view=can_view(role, current, is_owner),
        can_edit=_can(LoanAction.EDIT),
        can_submit=_can(LoanAction.SUBMIT),
        can_review=_can(LoanAction.REVIEW),
        can_approve=_can(LoanAction.APPROVE),
        can_reject=_can(LoanAction.REJECT),
        can_disburse=_can(LoanAction.DISBURSE),
        can_mark_overdue=_can(LoanAction.MARK_OVERDUE),
        can_close=_can(LoanAction.CLOSE),
    )


def get_next_valid_statuses(current: Any, role: Any) -> list[LoanStatus]:
    current_status = _coerce(LoanStatus, current)
    if current_status is None:
        return []
    return [
        target
        for (source, target) in STATUS_TRANSITIONS
        if source is current_status and can_transition_status(source, target, role)
    ]
