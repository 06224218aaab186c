"""Feature availability by subscription plan.

A UI convenience, not a security boundary. While the promotional override
runs (``now`` before the configured cutoff) every feature is on regardless
of plan. ``now`` is always passed in so that the result is a pure function
of its arguments.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping

from app.schemas.entitlements import (
    AgencySubscription,
    EntitlementsResponse,
    FeatureCheckResponse,
    FeatureKey,
    PlanCode,
    PlanLimits,
    PlanType,
)
from app.services.stores.document import DocumentStore
from app.services.stores.errors import DocumentNotFoundError
from app.services.stores.paths import DocumentPaths


_PROFESSIONAL_FEATURES = frozenset(
    {
        FeatureKey.UNLIMITED_LOANS,
        FeatureKey.UNLIMITED_TEAM,
        FeatureKey.ADVANCED_ANALYTICS,
        FeatureKey.REAL_TIME_COLLABORATION,
        FeatureKey.API_ACCESS,
        FeatureKey.CUSTOM_INTEGRATIONS,
        FeatureKey.ADVANCED_REPORTING,
        FeatureKey.BULK_OPERATIONS,
        FeatureKey.EXPORT_CAPABILITIES,
        FeatureKey.AUTOMATED_WORKFLOWS,
        FeatureKey.PRIORITY_SUPPORT,
        FeatureKey.ADVANCED_OFFLINE_SYNC,
    }
)

PLAN_FEATURES: dict[PlanType, frozenset[FeatureKey]] = {
    PlanType.FREE: frozenset(),
    PlanType.PAID: _PROFESSIONAL_FEATURES,
    PlanType.ENTERPRISE: frozenset(FeatureKey),
}

PLAN_LIMITS: dict[PlanCode, PlanLimits] = {
    PlanCode.STARTER: PlanLimits(
        loan_type_limit=1, max_customers=50, max_active_loans=30, max_users=1, storage_limit_mb=100
    ),
    PlanCode.PROFESSIONAL: PlanLimits(
        loan_type_limit=3, max_customers=None, max_active_loans=None, max_users=None, storage_limit_mb=500
    ),
    PlanCode.ENTERPRISE: PlanLimits(
        loan_type_limit=None, max_customers=None, max_active_loans=None, max_users=None, storage_limit_mb=2048
    ),
}

_PLAN_CODE_TO_TYPE = {
    PlanCode.STARTER: PlanType.FREE,
    PlanCode.PROFESSIONAL: PlanType.PAID,
    PlanCode.ENTERPRISE: PlanType.ENTERPRISE,
}


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def is_override_active(now: datetime, cutoff: datetime) -> bool:
    return _aware(now) < _aware(cutoff)


def days_until_gating(now: datetime, cutoff: datetime) -> int | None:
    if not is_override_active(now, cutoff):
        return None
    remaining = (_aware(cutoff) - _aware(now)).total_seconds()
    return math.ceil(remaining / 86400)


def _subscription(agency: AgencySubscription | Mapping[str, Any] | None) -> AgencySubscription:
    if agency is None:
        return AgencySubscription()
    if isinstance(agency, AgencySubscription):
        return agency
    return AgencySubscription(
        plan=agency.get("plan"),
        plan_type=agency.get("plan_type", agency.get("planType")),
        subscription_status=agency.get("subscription_status", agency.get("subscriptionStatus")),
    )


def normalize_plan_code(agency: AgencySubscription | Mapping[str, Any] | None) -> PlanCode:
    subscription = _subscription(agency)
    if subscription.plan in {code.value for code in PlanCode}:
        return PlanCode(subscription.plan)
    if subscription.plan_type == PlanType.ENTERPRISE.value:
        return PlanCode.ENTERPRISE
    if subscription.plan_type == PlanType.PAID.value:
        return PlanCode.PROFESSIONAL
    return PlanCode.STARTER


def resolve_plan_type(agency: AgencySubscription | Mapping[str, Any] | None) -> PlanType:
    return _PLAN_CODE_TO_TYPE[normalize_plan_code(agency)]


def _coerce_feature(feature: FeatureKey | str) -> FeatureKey | None:
    try:
        return FeatureKey(feature)
    except ValueError:
        return None


def has_feature(
    feature: FeatureKey | str,
    plan_type: PlanType | str,
    *,
    now: datetime,
    cutoff: datetime,
) -> bool:
    if is_override_active(now, cutoff):
        return True
    key = _coerce_feature(feature)
    try:
        plan = PlanType(plan_type)
    except ValueError:
        return False
    if key is None:
        return False
    return key in PLAN_FEATURES[plan]


def upgrade_required(
    feature: FeatureKey | str,
    plan_type: PlanType | str,
    *,
    now: datetime,
    cutoff: datetime,
) -> bool:
    return not has_feature(feature, plan_type, now=now, cutoff=cutoff)


def check_feature(
    agency: AgencySubscription | Mapping[str, Any] | None,
    feature: FeatureKey,
    *,
    now: datetime,
    cutoff: datetime,
) -> FeatureCheckResponse:
    plan_type = resolve_plan_type(agency)
    enabled = has_feature(feature, plan_type, now=now, cutoff=cutoff)
    return FeatureCheckResponse(
        feature=feature,
        enabled=enabled,
        upgrade_required=not enabled,
        plan_type=plan_type,
        override_active=is_override_active(now, cutoff),
    )


def evaluate_entitlements(
    agency: AgencySubscription | Mapping[str, Any] | None,
    *,
    now: datetime,
    cutoff: datetime,
) -> EntitlementsResponse:
    subscription = _subscription(agency)
    plan_code = normalize_plan_code(subscription)
    plan_type = _PLAN_CODE_TO_TYPE[plan_code]
    return EntitlementsResponse(
        plan_type=plan_type,
        plan_code=plan_code,
        subscription_status=subscription.subscription_status,
        override_active=is_override_active(now, cutoff),
        days_until_gating=days_until_gating(now, cutoff),
        features={feature: has_feature(feature, plan_type, now=now, cutoff=cutoff) for feature in FeatureKey},
        limits=PLAN_LIMITS[plan_code],
    )


async def load_agency_subscription(documents: DocumentStore, agency_id: str) -> AgencySubscription:
    """Read the agency's plan fields; an unknown agency is on the free plan."""
    try:
        record = await documents.get(DocumentPaths.agency(agency_id))
    except DocumentNotFoundError:
        return AgencySubscription()
    return _subscription(record)
