"""initial policy schema

Revision ID: 0001
Revises:
Create Date: 2026-10-19 00:00:00+00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps(updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column("created_at", sa.DateTime(timezone=True), nullable=False)]
    if updated:
        columns.append(sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False))
    return columns


def upgrade() -> None:
    op.create_table(
        "clients",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(320), nullable=True),
        *_timestamps(updated=False),
    )

    op.create_table(
        "policy_templates",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("policy_number", sa.String(100), nullable=False),
        sa.Column("policy_number_key", sa.String(100), nullable=False),
        sa.Column("policy_type", sa.String(20), nullable=False),
        sa.Column("provider", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_policy_templates_policy_number_key", "policy_templates", ["policy_number_key"], unique=True)
    op.create_index("ix_policy_templates_policy_type", "policy_templates", ["policy_type"])
    op.create_index("ix_policy_templates_provider", "policy_templates", ["provider"])

    op.create_table(
        "policy_instances",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("template_id", sa.Uuid(), sa.ForeignKey("policy_templates.id"), nullable=False),
        sa.Column("client_id", sa.String(64), sa.ForeignKey("clients.id"), nullable=False),
        sa.Column("premium_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("duration_months", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="Active"),
        *_timestamps(),
        sa.UniqueConstraint("template_id", "client_id", name="uq_policy_instances_template_client"),
    )
    op.create_index("ix_policy_instances_template_id", "policy_instances", ["template_id"])
    op.create_index("ix_policy_instances_client_id", "policy_instances", ["client_id"])
    op.create_index("ix_policy_instances_expiry_date", "policy_instances", ["expiry_date"])
    op.create_index("ix_policy_instances_status", "policy_instances", ["status"])

    op.create_table(
        "legacy_policies",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.String(64), nullable=False),
        sa.Column("policy_number", sa.String(100), nullable=False),
        sa.Column("policy_type", sa.String(20), nullable=False),
        sa.Column("provider", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("premium_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("commission_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("expiry_date", sa.Date(), nullable=False),
        sa.Column("duration_months", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="Active"),
        *_timestamps(),
        sa.UniqueConstraint("client_id", "policy_number", name="uq_legacy_policies_client_number"),
    )
    op.create_index("ix_legacy_policies_client_id", "legacy_policies", ["client_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("actor_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(20), nullable=False),
        sa.Column("entity_type", sa.String(30), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("client_id", sa.String(64), nullable=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("details", JSON, nullable=False),
        *_timestamps(updated=False),
    )
    for column in ("action", "entity_type", "entity_id", "client_id", "created_at"):
        op.create_index(f"ix_audit_logs_{column}", "audit_logs", [column])

    op.create_table(
        "migration_runs",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("phase", sa.String(20), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="PENDING"),
        sa.Column("batch_size", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cancel_requested", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("high_water_mark", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("batches_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_read", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("converted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duplicates", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("templates_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("instances_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_record_ids", JSON, nullable=False),
        sa.Column("skipped_reasons", JSON, nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_migration_runs_status", "migration_runs", ["status"])

    op.create_table(
        "migration_backups",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("legacy_policy_id", sa.Integer(), nullable=False),
        sa.Column("run_id", sa.Uuid(), nullable=True),
        sa.Column("template_id", sa.Uuid(), nullable=False),
        sa.Column("instance_id", sa.Uuid(), nullable=True),
        sa.Column("template_created", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("snapshot", JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("restored_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_migration_backups_legacy_policy_id", "migration_backups", ["legacy_policy_id"])
    op.create_index("ix_migration_backups_run_id", "migration_backups", ["run_id"])
    op.create_index("ix_migration_backups_expires_at", "migration_backups", ["expires_at"])


def downgrade() -> None:
    op.drop_table("migration_backups")
    op.drop_table("migration_runs")
    op.drop_table("audit_logs")
    op.drop_table("legacy_policies")
    op.drop_table("policy_instances")
    op.drop_table("policy_templates")
    op.drop_table("clients")
