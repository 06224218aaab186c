import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from app.api import deps
from app.core.errors import TRANSITION_ERROR_STATUS
from app.schemas.loan import (
    LoanAuditTrailResponse,
    LoanDecisionRequest,
    LoanDisburseRequest,
    LoanPermissionsResponse,
    LoanRecord,
    LoanTransitionRequest,
    TransitionErrorKind,
    TransitionResult,
)
from app.services import loan_permissions
from app.services.loan_workflow import LoanWorkflow
from app.services.stores.errors import DocumentNotFoundError, StoreError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/loans", tags=["loan-workflow"])


def _failure(result: TransitionResult) -> HTTPException:
    kind = result.error_kind or TransitionErrorKind.PERSISTENCE_FAILED
    return HTTPException(
        status_code=TRANSITION_ERROR_STATUS[kind],
        detail={
            "code": kind.value,
            "message": result.error,
            "details": {
                "loan_id": result.loan_id,
                "previous_status": result.previous_status.value if result.previous_status else None,
            },
        },
    )


def _ensure_success(result: TransitionResult) -> TransitionResult:
    if not result.success:
        raise _failure(result)
    return result


def _unavailable(loan_id: str, message: str) -> HTTPException:
    return _failure(TransitionResult.failed(loan_id, TransitionErrorKind.PERSISTENCE_FAILED, message))


async def _load_loan(workflow: LoanWorkflow, loan_id: str, agency_id: str) -> LoanRecord:
    try:
        return await workflow.load_loan(loan_id, agency_id)
    except ValidationError as exc:
        logger.exception("Stored loan=%s does not parse", loan_id)
        raise _unavailable(loan_id, "Loan record is invalid") from exc
    except (DocumentNotFoundError, ValueError) as exc:
        raise HTTPException(status_code=404, detail="Loan not found") from exc
    except StoreError as exc:
        logger.exception("Loading loan=%s failed", loan_id)
        raise _unavailable(loan_id, "Failed to load loan") from exc


@router.post("/{loan_id}/submit", response_model=TransitionResult, summary="Submit a draft loan for review")
async def submit_loan(
    loan_id: str,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    actor: deps.Actor = Depends(deps.get_actor),
    workflow: LoanWorkflow = Depends(deps.get_loan_workflow),
) -> TransitionResult:
    result = await workflow.submit_loan_for_review(loan_id, ctx.agency_id, actor.user_id, actor.role)
    return _ensure_success(result)


@router.post("/{loan_id}/approve", response_model=TransitionResult, summary="Approve a pending or in-review loan")
async def approve_loan(
    loan_id: str,
    payload: LoanDecisionRequest | None = None,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    actor: deps.Actor = Depends(deps.get_actor),
    workflow: LoanWorkflow = Depends(deps.get_loan_workflow),
) -> TransitionResult:
    notes = payload.notes if payload else ""
    result = await workflow.approve_loan(loan_id, ctx.agency_id, actor.user_id, actor.role, notes)
    return _ensure_success(result)


@router.post("/{loan_id}/reject", response_model=TransitionResult, summary="Reject a pending or in-review loan")
async def reject_loan(
    loan_id: str,
    payload: LoanDecisionRequest | None = None,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    actor: deps.Actor = Depends(deps.get_actor),
    workflow: LoanWorkflow = Depends(deps.get_loan_workflow),
) -> TransitionResult:
    notes = payload.notes if payload else ""
    result = await workflow.reject_loan(loan_id, ctx.agency_id, actor.user_id, actor.role, notes)
    return _ensure_success(result)


@router.post("/{loan_id}/disburse", response_model=TransitionResult, summary="Disburse an approved loan")
async def disburse_loan(
    loan_id: str,
    payload: LoanDisburseRequest | None = None,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    actor: deps.Actor = Depends(deps.get_actor),
    workflow: LoanWorkflow = Depends(deps.get_loan_workflow),
) -> TransitionResult:
    disbursed_on = payload.disbursement_date if payload else None
    result = await workflow.disburse_loan(loan_id, ctx.agency_id, actor.user_id, actor.role, disbursed_on)
    return _ensure_success(result)


@router.post("/{loan_id}/mark-overdue", response_model=TransitionResult, summary="Flag an active loan as overdue")
async def mark_loan_overdue(
    loan_id: str,
    payload: LoanTransitionRequest | None = None,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    actor: deps.Actor = Depends(deps.get_actor),
    workflow: LoanWorkflow = Depends(deps.get_loan_workflow),
) -> TransitionResult:
    notes = payload.notes if payload else None
    result = await workflow.mark_loan_overdue(loan_id, ctx.agency_id, actor.user_id, actor.role, notes)
    return _ensure_success(result)


@router.post("/{loan_id}/close", response_model=TransitionResult, summary="Close an active or overdue loan")
async def close_loan(
    loan_id: str,
    payload: LoanTransitionRequest | None = None,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    actor: deps.Actor = Depends(deps.get_actor),
    workflow: LoanWorkflow = Depends(deps.get_loan_workflow),
) -> TransitionResult:
    notes = payload.notes if payload else None
    result = await workflow.close_loan(loan_id, ctx.agency_id, actor.user_id, actor.role, notes)
    return _ensure_success(result)


@router.get("/{loan_id}/permissions", response_model=LoanPermissionsResponse)
async def get_loan_permissions(
    loan_id: str,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    actor: deps.Actor = Depends(deps.get_actor),
    workflow: LoanWorkflow = Depends(deps.get_loan_workflow),
) -> LoanPermissionsResponse:
    loan = await _load_loan(workflow, loan_id, ctx.agency_id)
    is_owner = loan.is_owned_by(actor.user_id) or loan.customer_user_id == actor.user_id
    return LoanPermissionsResponse(
        loan_id=loan.id,
        status=loan.status,
        role=actor.role,
        is_owner=is_owner,
        permissions=loan_permissions.get_loan_permissions(actor.role, loan.status, is_owner),
        next_statuses=loan_permissions.get_next_valid_statuses(loan.status, actor.role),
    )


@router.get("/{loan_id}/audit-logs", response_model=LoanAuditTrailResponse)
async def list_loan_audit_logs(
    loan_id: str,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    actor: deps.Actor = Depends(deps.get_actor),
    workflow: LoanWorkflow = Depends(deps.get_loan_workflow),
) -> LoanAuditTrailResponse:
    loan = await _load_loan(workflow, loan_id, ctx.agency_id)
    is_owner = loan.is_owned_by(actor.user_id) or loan.customer_user_id == actor.user_id
    if not loan_permissions.can_view(actor.role, loan.status, is_owner):
        raise HTTPException(status_code=403, detail="Not allowed to view this loan")
    try:
        items = await workflow.get_audit_trail(loan.id, ctx.agency_id)
    except (StoreError, ValidationError) as exc:
        logger.exception("Reading audit trail of loan=%s failed", loan.id)
        raise _unavailable(loan.id, "Failed to read the loan audit log") from exc
    return LoanAuditTrailResponse(loan_id=loan.id, items=items, total=len(items))
