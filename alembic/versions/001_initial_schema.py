"""Initial schema with build jobs, apps, payments and users

Revision ID: 001
Revises: 
Create Date: 2026-10-17 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    "build_job_status": ("queued", "running", "succeeded", "failed"),
    "app_status": ("draft", "processing", "live", "failed"),
    "payment_status": ("pending", "completed", "failed"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    for name, values in ENUMS.items():
        labels = ", ".join(f"'{value}'" for value in values)
        op.execute(f"""
            DO $$ BEGIN
                CREATE TYPE {name} AS ENUM ({labels});
            EXCEPTION
                WHEN duplicate_object THEN null;
            END $$;
        """)

    op.create_table(
        "build_jobs",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("app_id", sa.Uuid, nullable=False),
        sa.Column("owner_id", sa.Uuid, nullable=False),
        sa.Column("status", _enum("build_job_status"), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lock_token", sa.String(320), nullable=True),
        sa.Column("locked_at", sa.DateTime, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_build_jobs_app_id", "build_jobs", ["app_id"])
    op.create_index("ix_build_jobs_owner_id", "build_jobs", ["owner_id"])
    op.create_index("ix_build_jobs_status", "build_jobs", ["status"])
    op.create_index("ix_build_jobs_claim", "build_jobs", ["status", "created_at"])

    op.create_table(
        "apps",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("owner_id", sa.Uuid, nullable=False),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("platform", sa.String(16), nullable=False, server_default="android"),
        sa.Column("status", _enum("app_status"), nullable=False, server_default="draft"),
        sa.Column("package_name", sa.String(255), nullable=True),
        sa.Column("version_code", sa.Integer, nullable=True),
        sa.Column("artifact_path", sa.Text, nullable=True),
        sa.Column("artifact_mime", sa.String(128), nullable=True),
        sa.Column("artifact_size", sa.Integer, nullable=True),
        sa.Column("build_logs", sa.Text, nullable=True),
        sa.Column("build_error", sa.Text, nullable=True),
        sa.Column("last_build_at", sa.DateTime, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_apps_owner_id", "apps", ["owner_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("user_id", sa.Uuid, nullable=False),
        sa.Column("app_id", sa.Uuid, nullable=True),
        sa.Column("provider", sa.String(16), nullable=False, server_default="razorpay"),
        sa.Column("provider_order_id", sa.String(128), nullable=True),
        sa.Column("provider_payment_id", sa.String(128), nullable=True),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("plan", sa.String(50), nullable=False),
        sa.Column("status", _enum("payment_status"), nullable=False, server_default="pending"),
        sa.Column("entitlements_applied_at", sa.DateTime, nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider_order_id", name="uq_payments_provider_order_id"),
    )
    op.create_index("ix_payments_user_id", "payments", ["user_id"])
    op.create_index("ix_payments_app_id", "payments", ["app_id"])
    op.create_index("ix_payments_status", "payments", ["status"])

    # Entitlement repair scans completed payments without a grant
    op.execute("""
        CREATE INDEX ix_payments_unapplied
        ON payments (created_at)
        WHERE status = 'completed' AND entitlements_applied_at IS NULL
    """)

    op.create_table(
        "users",
        sa.Column("id", sa.Uuid, nullable=False),
        sa.Column("plan", sa.String(50), nullable=True),
        sa.Column("plan_status", sa.String(16), nullable=True),
        sa.Column("plan_started_at", sa.DateTime, nullable=True),
        sa.Column("plan_expires_at", sa.DateTime, nullable=True),
        sa.Column("remaining_rebuilds", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_apps_allowed", sa.Integer, nullable=False, server_default="1"),
        sa.Column("extra_app_slots", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )


def downgrade() -> None:
    op.drop_table("users")

    op.execute("DROP INDEX IF EXISTS ix_payments_unapplied")
    op.drop_index("ix_payments_status")
    op.drop_index("ix_payments_app_id")
    op.drop_index("ix_payments_user_id")
    op.drop_table("payments")

    op.drop_index("ix_apps_owner_id")
    op.drop_table("apps")

    op.drop_index("ix_build_jobs_claim")
    op.drop_index("ix_build_jobs_status")
    op.drop_index("ix_build_jobs_owner_id")
    op.drop_index("ix_build_jobs_app_id")
    op.drop_table("build_jobs")

    # Drop enums
    for name in ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name}")
