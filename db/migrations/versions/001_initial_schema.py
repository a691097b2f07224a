"""Initial schema: contacts, segments, sync_jobs.

Revision ID: 001
Revises:
Create Date: 2026-10-18

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "001"
down_revision = None
branch_labels = None
depends_on = None

ACTIVE_JOB_WHERE = sa.text("status IN ('pending', 'running')")


def upgrade() -> None:
    # ─── Contacts ────────────────────────────────────────────────────────────

    op.create_table(
        "contacts",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("first_name", sa.Text, nullable=True),
        sa.Column("last_name", sa.Text, nullable=True),
        sa.Column("job_title", sa.Text, nullable=True),
        sa.Column("email", sa.Text, nullable=False),
        sa.Column("email_is_placeholder", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("phone", sa.Text, nullable=True),
        sa.Column("company", sa.Text, nullable=True),
        sa.Column("address", sa.JSON, nullable=False),
        sa.Column("lifecycle_stage", sa.Text, nullable=False, server_default="lead"),
        sa.Column("status", sa.Text, nullable=False, server_default="active"),
        sa.Column("dnc_status", sa.Text, nullable=True),
        sa.Column("dnc_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dnc_reason", sa.Text, nullable=True),
        sa.Column("tags", sa.JSON, nullable=False),
        sa.Column("custom_fields", sa.JSON, nullable=False),
        sa.Column("source", sa.Text, nullable=False),
        sa.Column("source_id", sa.Text, nullable=False),
        sa.Column("sync_errors", sa.JSON, nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "lifecycle_stage IN ('subscriber', 'lead', 'prospect', 'customer', 'evangelist')",
            name="ck_contact_lifecycle_stage",
        ),
        sa.CheckConstraint(
            "status IN ('active', 'inactive', 'deleted')",
            name="ck_contact_status",
        ),
        sa.CheckConstraint(
            "dnc_status IS NULL OR dnc_status IN "
            "('callable', 'dnc_internal', 'dnc_federal', 'dnc_state', 'dnc_wireless')",
            name="ck_contact_dnc_status",
        ),
        sa.UniqueConstraint("source", "source_id", name="uq_contact_source_record"),
    )
    op.create_index("ix_contact_email", "contacts", ["email"])
    op.create_index("ix_contact_source_status", "contacts", ["source", "status"])
    op.create_index("ix_contact_created", "contacts", ["created_at", "id"])

    # ─── Segments ────────────────────────────────────────────────────────────

    op.create_table(
        "segments",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("name", sa.Text, nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("filters", sa.JSON, nullable=False),
        sa.Column("contact_ids", sa.JSON, nullable=True),
        sa.Column("contact_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_count_update", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.Text, nullable=False, server_default="system"),
        sa.Column("is_system", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("color", sa.Text, nullable=False, server_default="#3B82F6"),
        sa.Column("icon", sa.Text, nullable=False, server_default="users"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("name", name="uq_segment_name"),
    )

    # ─── Sync jobs ───────────────────────────────────────────────────────────

    op.create_table(
        "sync_jobs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("source", sa.Text, nullable=False),
        sa.Column("type", sa.Text, nullable=False),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("total_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("processed_records", sa.Integer, nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sync_errors", sa.JSON, nullable=False),
        sa.Column("summary", sa.JSON, nullable=False),
        sa.Column("config", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("type IN ('full', 'incremental')", name="ck_sync_job_type"),
        sa.CheckConstraint(
            "status IN ('pending', 'running', 'completed', 'failed')",
            name="ck_sync_job_status",
        ),
    )
    # At most one pending/running job per source
    op.create_index(
        "uq_sync_job_active_source",
        "sync_jobs",
        ["source"],
        unique=True,
        postgresql_where=ACTIVE_JOB_WHERE,
        sqlite_where=ACTIVE_JOB_WHERE,
    )
    op.create_index("ix_sync_job_source_completed", "sync_jobs", ["source", "completed_at"])


def downgrade() -> None:
    op.drop_index("ix_sync_job_source_completed", table_name="sync_jobs")
    op.drop_index("uq_sync_job_active_source", table_name="sync_jobs")
    op.drop_table("sync_jobs")
    op.drop_table("segments")
    op.drop_index("ix_contact_created", table_name="contacts")
    op.drop_index("ix_contact_source_status", table_name="contacts")
    op.drop_index("ix_contact_email", table_name="contacts")
    op.drop_table("contacts")
