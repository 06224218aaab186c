from enum import Enum

from pydantic import BaseModel


class FeatureKey(str, Enum):
    UNLIMITED_LOANS = "unlimited_loans"
    UNLIMITED_TEAM = "unlimited_team"
    ADVANCED_ANALYTICS = "advanced_analytics"
    REAL_TIME_COLLABORATION = "real_time_collaboration"
    API_ACCESS = "api_access"
    CUSTOM_INTEGRATIONS = "custom_integrations"
    ADVANCED_REPORTING = "advanced_reporting"
    BULK_OPERATIONS = "bulk_operations"
    EXPORT_CAPABILITIES = "export_capabilities"
    AUTOMATED_WORKFLOWS = "automated_workflows"
    PRIORITY_SUPPORT = "priority_support"
    ADVANCED_OFFLINE_SYNC = "advanced_offline_sync"
    WHITE_LABEL = "white_label"
    CUSTOM_DEVELOPMENT = "custom_development"
    SLA_GUARANTEE = "sla_guarantee"
    ON_PREMISE = "on_premise"
    TRAINING_ONBOARDING = "training_onboarding"
    ADVANCED_SECURITY = "advanced_security"
    CUSTOM_WORKFLOWS = "custom_workflows"
    ADVANCED_AUDIT_LOGS = "advanced_audit_logs"


class PlanType(str, Enum):
    FREE = "free"
    PAID = "paid"
    ENTERPRISE = "enterprise"


class PlanCode(str, Enum):
    STARTER = "starter"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


class PlanLimits(BaseModel):
    """``None`` means unlimited."""

    loan_type_limit: int | None
    max_customers: int | None
    max_active_loans: int | None
    max_users: int | None
    storage_limit_mb: int | None


class AgencySubscription(BaseModel):
    plan: str | None = None
    plan_type: str | None = None
    subscription_status: str | None = None


class FeatureCheckResponse(BaseModel):
    feature: FeatureKey
    enabled: bool
    upgrade_required: bool
    plan_type: PlanType
    override_active: bool


class EntitlementsResponse(BaseModel):
    plan_type: PlanType
    plan_code: PlanCode
    subscription_status: str | None
    override_active: bool
    days_until_gating: int | None
    features: dict[FeatureKey, bool]
    limits: PlanLimits
