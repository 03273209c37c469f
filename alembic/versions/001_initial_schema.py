"""Initial schema: user data and compliance ledger tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from __future__ import annotations

from typing import Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, tuple[str, ...], None] = None
depends_on: Union[str, tuple[str, ...], None] = None


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column("id", postgresql.UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    ]


def upgrade() -> None:
    # ── User data ──────────────────────────────────────────────────────

    op.create_table(
        "users",
        sa.Column("email", sa.String(255), index=True),
        sa.Column("nickname", sa.String(100)),
        sa.Column("birth_year", sa.Integer()),
        sa.Column("gender", sa.String(20)),
        sa.Column("height_cm", sa.Float()),
        sa.Column("weight_kg", sa.Float()),
        sa.Column("fitness_level", sa.String(20)),
        sa.Column("language", sa.String(10)),
        sa.Column("deletion_scheduled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("scheduled_deletion_date", sa.DateTime(timezone=True)),
        *_base_columns(),
    )

    op.create_table(
        "training_sessions",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("exercise_type", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True)),
        sa.Column("duration_seconds", sa.Integer()),
        sa.Column("rep_count", sa.Integer(), nullable=False),
        sa.Column("total_score", sa.Float()),
        sa.Column("average_score", sa.Float()),
        *_base_columns(),
    )

    op.create_table(
        "user_settings",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, unique=True),
        sa.Column("notifications_enabled", sa.Boolean(), nullable=False),
        sa.Column("reminder_time", sa.String(5), comment="HH:MM"),
        sa.Column("reminder_days", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("language", sa.String(10)),
        sa.Column("theme", sa.String(20)),
        sa.Column("units", sa.String(10)),
        sa.Column("analytics_enabled", sa.Boolean(), nullable=False),
        sa.Column("crash_reporting_enabled", sa.Boolean(), nullable=False),
        *_base_columns(),
    )

    op.create_table(
        "subscriptions",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("external_subscription_id", sa.String(255), unique=True),
        sa.Column("plan", sa.String(100)),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("store", sa.String(30), comment="billing, app_store, play_store"),
        sa.Column("start_date", sa.DateTime(timezone=True)),
        sa.Column("expiration_date", sa.DateTime(timezone=True)),
        *_base_columns(),
    )

    op.create_table(
        "consent_records",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False, index=True),
        sa.Column("document_type", sa.String(50), nullable=False, comment="tos, privacy_policy"),
        sa.Column("document_version", sa.String(20), nullable=False),
        sa.Column("action", sa.String(20), nullable=False, comment="accept, withdraw"),
        *_base_columns(),
    )

    # ── Compliance ledger (no FKs to users) ────────────────────────────

    op.create_table(
        "deletion_requests",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("scope", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, index=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_deletion_date", sa.DateTime(timezone=True), index=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("can_recover", sa.Boolean(), nullable=False),
        sa.Column("recover_deadline", sa.DateTime(timezone=True)),
        sa.Column("cancelled_at", sa.DateTime(timezone=True)),
        sa.Column("cancellation_reason", sa.String(100)),
        sa.Column("certificate_id", sa.String(64)),
        sa.Column("error", sa.String(1000)),
        *_base_columns(),
    )

    op.create_table(
        "recovery_codes",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("email_hash", sa.String(64), nullable=False, index=True),
        sa.Column("email_encrypted", sa.Text()),
        sa.Column("code", sa.String(6), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False, index=True),
        sa.Column("used_at", sa.DateTime(timezone=True)),
        sa.Column("deletion_request_id", postgresql.UUID(as_uuid=True)),
        sa.Column("ip_address_hash", sa.String(16)),
        *_base_columns(),
    )

    op.create_table(
        "deletion_certificates",
        sa.Column("certificate_id", sa.String(64), nullable=False, unique=True, index=True),
        sa.Column("user_id_hash", sa.String(16), nullable=False, index=True),
        sa.Column("deletion_request_id", sa.String(64), nullable=False),
        sa.Column("deleted_at", sa.String(40), nullable=False),
        sa.Column("deleted_data", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("verification_result", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("signature", sa.String(64), nullable=False),
        sa.Column("signature_algorithm", sa.String(20), nullable=False),
        sa.Column("issued_at", sa.String(40), nullable=False),
        sa.Column("issued_by", sa.String(200), nullable=False),
        *_base_columns(),
    )

    op.create_table(
        "webhook_events",
        sa.Column("event_id", sa.String(255), nullable=False, unique=True, index=True),
        sa.Column("event_type", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("error", sa.Text()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=False),
        *_base_columns(),
    )

    op.create_table(
        "audit_logs",
        sa.Column("user_id_hash", sa.String(16), nullable=False, index=True),
        sa.Column("action", sa.String(64), nullable=False, index=True),
        sa.Column("resource_type", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.String(255)),
        sa.Column("previous_values", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("new_values", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("changed_fields", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("ip_address_hash", sa.String(16)),
        sa.Column("user_agent", sa.String(500)),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text()),
        *_base_columns(),
    )

    op.create_table(
        "access_logs",
        sa.Column("user_id_hash", sa.String(16), nullable=False, index=True),
        sa.Column("action", sa.String(32), nullable=False),
        sa.Column("resource_type", sa.String(64), nullable=False),
        sa.Column("resource_id", sa.String(255)),
        sa.Column("ip_address_hash", sa.String(16)),
        sa.Column("user_agent", sa.String(500)),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text()),
        *_base_columns(),
    )

    op.create_table(
        "export_requests",
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False, index=True),
        sa.Column("format", sa.String(10), nullable=False),
        sa.Column("scope", postgresql.JSONB(astext_type=sa.Text())),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("download_url", sa.Text()),
        sa.Column("expires_at", sa.DateTime(timezone=True)),
        sa.Column("file_size_bytes", sa.Integer()),
        sa.Column("record_count", sa.Integer()),
        sa.Column("error", sa.String(100)),
        *_base_columns(),
    )


def downgrade() -> None:
    for table in (
        "export_requests",
        "access_logs",
        "audit_logs",
        "webhook_events",
        "deletion_certificates",
        "recovery_codes",
        "deletion_requests",
        "consent_records",
        "subscriptions",
        "user_settings",
        "training_sessions",
        "users",
    ):
        op.drop_table(table)
