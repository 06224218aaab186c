"""Create loans mirror, agency members, notifications and partitioned audit_logs"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_loan_workflow"
down_revision = None
branch_labels = None
depends_on = None


LOAN_STATUSES = (
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


def upgrade() -> None:
    op.create_table(
        "loans",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
        sa.Column("amount", sa.Numeric(18, 2), nullable=True),
        sa.Column("officer_id", sa.String(length=128), nullable=True),
        sa.Column("approved_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ({})".format(", ".join(f"'{value}'" for value in LOAN_STATUSES)),
            name="ck_loans_status",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_loans_amount_nonneg"),
    )
    op.create_index("ix_loans_agency_id", "loans", ["agency_id"])
    op.create_index("ix_loans_status", "loans", ["status"])

    op.create_table(
        "agency_members",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("role", sa.String(length=50), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("agency_id", "user_id", name="uq_agency_members_agency_user"),
    )
    op.create_index("ix_agency_members_agency_id", "agency_members", ["agency_id"])
    op.create_index("ix_agency_members_user_id", "agency_members", ["user_id"])

    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("type", sa.String(length=50), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("link", sa.String(length=1024), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_notifications_agency_user_created", "notifications", ["agency_id", "user_id", "created_at"]
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("agency_id", sa.String(length=64), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("actor_role", sa.String(length=50), nullable=True),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("resource_type", sa.String(length=255), nullable=False),
        sa.Column("resource_id", sa.String(length=255), nullable=False),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id", "agency_id"),
        postgresql_partition_by="LIST (agency_id)",
    )
    op.create_index("ix_audit_logs_agency_id", "audit_logs", ["agency_id"])
    op.execute("CREATE TABLE audit_logs_default PARTITION OF audit_logs DEFAULT")


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS audit_logs_default")
    op.drop_index("ix_audit_logs_agency_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("ix_notifications_agency_user_created", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_agency_members_user_id", table_name="agency_members")
    op.drop_index("ix_agency_members_agency_id", table_name="agency_members")
    op.drop_table("agency_members")

    op.drop_index("ix_loans_status", table_name="loans")
    op.drop_index("ix_loans_agency_id", table_name="loans")
    op.drop_table("loans")
