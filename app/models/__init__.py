from app.models.agency_member import AgencyMember
from app.models.audit_log import AuditLog
from app.models.loan import Loan
from app.models.notification import Notification

__all__ = [
    "AgencyMember",
    "AuditLog",
    "Loan",
    "Notification",
]
