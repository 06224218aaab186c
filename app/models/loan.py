from sqlalchemy import CheckConstraint, Column, DateTime, Numeric, String, func

from app.db.base import Base


LOAN_STATUS_VALUES = (
    "draft",
    "pending",
    "under_review",
    "approved",
    "rejected",
    "disbursed",
    "active",
    "overdue",
    "closed",
)


class Loan(Base):
    """Relational mirror of the loan document, read by billing and reporting."""

    __tablename__ = "loans"
    __table_args__ = (
        CheckConstraint(
            "status IN ({})".format(", ".join(f"'{value}'" for value in LOAN_STATUS_VALUES)),
            name="ck_loans_status",
        ),
        CheckConstraint("amount >= 0", name="ck_loans_amount_nonneg"),
    )

    id = Column(String(128), primary_key=True)
    agency_id = Column(String(64), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="draft", index=True)
    amount = Column(Numeric(18, 2), nullable=True)
    officer_id = Column(String(128), nullable=True)
    approved_by = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
