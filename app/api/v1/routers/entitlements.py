from datetime import datetime

from fastapi import APIRouter, Depends

from app.api import deps
from app.core.settings import settings
from app.schemas.entitlements import EntitlementsResponse, FeatureCheckResponse, FeatureKey
from app.services import entitlements
from app.services.stores.document import DocumentStore


router = APIRouter(prefix="/entitlements", tags=["entitlements"])


@router.get("", response_model=EntitlementsResponse, summary="Plan, limits and feature flags for the agency")
async def get_entitlements(
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    _actor: deps.Actor = Depends(deps.get_actor),
    documents: DocumentStore = Depends(deps.get_document_store),
    now: datetime = Depends(deps.get_now),
) -> EntitlementsResponse:
    subscription = await entitlements.load_agency_subscription(documents, ctx.agency_id)
    return entitlements.evaluate_entitlements(
        subscription, now=now, cutoff=settings.entitlement_override_cutoff
    )


@router.get("/{feature}", response_model=FeatureCheckResponse, summary="Check a single feature")
async def check_feature(
    feature: FeatureKey,
    ctx: deps.TenantContext = Depends(deps.get_tenant_context),
    _actor: deps.Actor = Depends(deps.get_actor),
    documents: DocumentStore = Depends(deps.get_document_store),
    now: datetime = Depends(deps.get_now),
) -> FeatureCheckResponse:
    subscription = await entitlements.load_agency_subscription(documents, ctx.agency_id)
    return entitlements.check_feature(
        subscription, feature, now=now, cutoff=settings.entitlement_override_cutoff
    )
