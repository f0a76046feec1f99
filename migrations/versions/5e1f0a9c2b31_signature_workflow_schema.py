"""signature_workflow_schema

Initial schema: users, documents (+ workflow entries, history), signature
records (+ history), provider event log, scheduled jobs, email log.

Revision ID: 5e1f0a9c2b31
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5e1f0a9c2b31"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=200), nullable=False),
            sa.Column("first_name", sa.String(length=100), nullable=False, server_default=""),
            sa.Column("last_name", sa.String(length=100), nullable=False, server_default=""),
            sa.Column("role", sa.String(length=30), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("email"),
        )

    if "documents" not in existing_tables:
        op.create_table(
            "documents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=255), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("doc_type", sa.String(length=30), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("file_name", sa.String(length=255), nullable=False),
            sa.Column("file_original_name", sa.String(length=255), nullable=True),
            sa.Column("file_path", sa.String(length=500), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=True),
            sa.Column("file_mime_type", sa.String(length=100), nullable=True),
            sa.Column("file_hash", sa.String(length=64), nullable=True),
            sa.Column("signed_file_name", sa.String(length=255), nullable=True),
            sa.Column("signed_file_path", sa.String(length=500), nullable=True),
            sa.Column("signed_file_size", sa.Integer(), nullable=True),
            _ts("signed_file_created_at"),
            sa.Column("signed_file_hash", sa.String(length=64), nullable=True),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="brouillon"),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("owner_id", sa.Integer(), nullable=True),
            _ts("signing_deadline"),
            _ts("archived_at"),
            sa.Column("signature_request_id", sa.String(length=100), nullable=True),
            sa.Column("test_mode", sa.Boolean(), nullable=True),
            sa.Column("external_dispatch_status", sa.String(length=20), nullable=False,
                      server_default="not_sent"),
            sa.Column("external_dispatch_error", sa.Text(), nullable=True),
            sa.Column("external_dispatch_attempts", sa.Integer(), nullable=True),
            _ts("external_dispatched_at"),
            sa.Column("view_count", sa.Integer(), nullable=True),
            sa.Column("download_count", sa.Integer(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("signature_request_id"),
        )
        op.create_index("ix_documents_status", "documents", ["status"])
        op.create_index("ix_documents_created_by_id", "documents", ["created_by_id"])

    if "workflow_entries" not in existing_tables:
        op.create_table(
            "workflow_entries",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("document_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role", sa.String(length=20), nullable=True),
            sa.Column("order", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("required", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="en_attente"),
            _ts("due_date"),
            _ts("signed_at"),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("source_ip", sa.String(length=45), nullable=True),
            _ts("created_at"),
            sa.CheckConstraint('"order" >= 1', name="ck_workflow_entry_order_positive"),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_workflow_entries_document_id", "workflow_entries", ["document_id"])
        op.create_index("ix_workflow_entries_user_id", "workflow_entries", ["user_id"])

    if "document_history" not in existing_tables:
        op.create_table(
            "document_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("document_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("extra", sa.JSON(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_document_history_document_id", "document_history", ["document_id"])

    if "signature_records" not in existing_tables:
        op.create_table(
            "signature_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("document_id", sa.Integer(), nullable=False),
            sa.Column("workflow_entry_id", sa.Integer(), nullable=True),
            sa.Column("signer_id", sa.Integer(), nullable=False),
            sa.Column("created_by_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="en_attente"),
            sa.Column("order", sa.Integer(), nullable=False, server_default="1"),
            _ts("expires_at"),
            _ts("signed_at"),
            _ts("rejected_at"),
            _ts("server_timestamp"),
            sa.Column("source_ip", sa.String(length=45), nullable=True),
            sa.Column("user_agent", sa.String(length=500), nullable=True),
            sa.Column("geolocation", sa.JSON(), nullable=True),
            sa.Column("comment", sa.Text(), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("rejection_comment", sa.Text(), nullable=True),
            sa.Column("provider_request_id", sa.String(length=100), nullable=True),
            sa.Column("provider_signer_id", sa.String(length=100), nullable=True),
            sa.Column("provider_status_code", sa.String(length=30), nullable=True),
            sa.Column("sign_url", sa.String(length=1000), nullable=True),
            _ts("sign_url_expires_at"),
            sa.Column("last_event_type", sa.String(length=50), nullable=True),
            _ts("last_event_at"),
            sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
            _ts("last_reminded_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["workflow_entry_id"], ["workflow_entries.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["signer_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["created_by_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("document_id", "signer_id", name="uq_signature_document_signer"),
        )
        op.create_index("ix_signature_records_document_id", "signature_records", ["document_id"])
        op.create_index("ix_signature_records_signer_id", "signature_records", ["signer_id"])
        op.create_index("ix_signature_records_status", "signature_records", ["status"])
        op.create_index("ix_signature_records_expires_at", "signature_records", ["expires_at"])
        op.create_index("ix_signature_records_provider_signer_id", "signature_records",
                        ["provider_signer_id"])
        op.create_index("ix_signature_status_expires", "signature_records", ["status", "expires_at"])

    if "signature_history" not in existing_tables:
        op.create_table(
            "signature_history",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("record_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("details", sa.Text(), nullable=True),
            sa.Column("extra", sa.JSON(), nullable=True),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["record_id"], ["signature_records.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["actor_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_signature_history_record_id", "signature_history", ["record_id"])

    if "provider_events" not in existing_tables:
        op.create_table(
            "provider_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("dedupe_key", sa.String(length=64), nullable=False),
            sa.Column("correlation_id", sa.String(length=100), nullable=True),
            sa.Column("event_type", sa.String(length=50), nullable=False),
            _ts("event_time"),
            sa.Column("document_id", sa.Integer(), nullable=True),
            sa.Column("outcome", sa.String(length=20), nullable=False, server_default="received"),
            sa.Column("delivery_count", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=True),
            _ts("received_at"),
            _ts("processed_at"),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("dedupe_key"),
        )
        op.create_index("ix_provider_events_correlation_id", "provider_events", ["correlation_id"])
        op.create_index("ix_provider_events_document_id", "provider_events", ["document_id"])
        op.create_index("ix_provider_events_outcome", "provider_events", ["outcome"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            _ts("last_run_at"),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )

    if "email_logs" not in existing_tables:
        op.create_table(
            "email_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_email", sa.String(length=255), nullable=False),
            sa.Column("recipient_name", sa.String(length=150), nullable=True),
            sa.Column("subject", sa.String(length=500), nullable=False),
            sa.Column("template_name", sa.String(length=100), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("error_message", sa.Text(), nullable=True),
            sa.Column("document_id", sa.Integer(), nullable=True),
            _ts("sent_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["document_id"], ["documents.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_email_logs_recipient_email", "email_logs", ["recipient_email"])
        op.create_index("ix_email_logs_document_id", "email_logs", ["document_id"])


def downgrade():
    for table in (
        "email_logs",
        "scheduled_jobs",
        "provider_events",
        "signature_history",
        "signature_records",
        "document_history",
        "workflow_entries",
        "documents",
        "users",
    ):
        op.drop_table(table)
