from dataclasses import dataclass
from datetime import datetime

from fastapi import Header, HTTPException, Request, status

from app.core.context import set_actor_id, set_tenant_id
from app.core.settings import settings
from app.core.tenant import normalize_agency_id
from app.schemas.loan import UserRole
from app.services.loan_workflow import LoanWorkflow, utc_now
from app.services.stores.document import DocumentStore


@dataclass(slots=True)
class TenantContext:
    agency_id: str


@dataclass(slots=True)
class Actor:
    """Caller identity as asserted by the authenticating gateway."""

    user_id: str
    role: UserRole


async def get_tenant_context(
    agency_id: str | None = Header(default=None, alias="X-Agency-ID"),
) -> TenantContext:
    candidate = agency_id if settings.tenancy_mode == "multi" else settings.default_agency_id
    if not candidate:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Tenant resolution failed: provide X-Agency-ID header",
        )
    try:
        resolved = normalize_agency_id(candidate)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    set_tenant_id(resolved)
    return TenantContext(agency_id=resolved)


async def get_actor(
    actor_id: str | None = Header(default=None, alias="X-Actor-ID"),
    actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> Actor:
    if not actor_id or not actor_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing actor identity",
        )
    try:
        role = UserRole(actor_role.strip().lower())
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role: {actor_role}",
        ) from exc
    set_actor_id(actor_id)
    return Actor(user_id=actor_id, role=role)


def get_loan_workflow(request: Request) -> LoanWorkflow:
    return request.app.state.loan_workflow


def get_document_store(request: Request) -> DocumentStore:
    return request.app.state.loan_workflow.documents


def get_now() -> datetime:
    return utc_now()
