"""create deal tables

Revision ID: 202610180001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "deal",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("stage", sa.String(length=32), nullable=False),
        sa.Column("value_amount", sa.Numeric(14, 2), nullable=True),
        sa.Column("value_kind", sa.String(length=32), nullable=False, server_default="unknown"),
        sa.Column("range_low", sa.Numeric(14, 2), nullable=True),
        sa.Column("range_high", sa.Numeric(14, 2), nullable=True),
        sa.Column("currency", sa.String(length=8), nullable=False, server_default="CAD"),
        sa.Column("probability", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("account_ref", sa.String(length=128), nullable=False),
        sa.Column("contact_ref", sa.String(length=128), nullable=True),
        sa.Column("owner_ref", sa.String(length=128), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="quote_auto"),
        sa.Column("is_closed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("closed_reason", sa.String(length=255), nullable=True),
        sa.Column("lost_reason", sa.Text(), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("touch_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_touch_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_action_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("at_risk", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("no_contact_streak", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_contact_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_contact_result", sa.String(length=32), nullable=True),
        sa.Column("last_contact_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("latest_quote_id", sa.String(length=128), nullable=True),
        sa.Column("latest_quote_revision_number", sa.Integer(), nullable=True),
        sa.Column("quote_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_quote_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("walkthrough_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("priority_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), nullable=False, server_default="1"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_deal_open_account_contact",
        "deal",
        ["account_ref", "contact_ref"],
        unique=True,
        postgresql_where=sa.text("NOT is_closed"),
        sqlite_where=sa.text("NOT is_closed"),
    )
    op.create_index("ix_deal_account_open", "deal", ["account_ref", "is_closed", "created_at"])
    op.create_index("ix_deal_owner_open", "deal", ["owner_ref", "is_closed"])

    op.create_table(
        "deal_quote_revision",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("revision_id", sa.String(length=128), nullable=False),
        sa.Column("quote_id", sa.String(length=128), nullable=False),
        sa.Column("revision_number", sa.Integer(), nullable=False),
        sa.Column("revision_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="sent"),
        sa.Column("value_kind", sa.String(length=32), nullable=False, server_default="unknown"),
        sa.Column("total", sa.Numeric(14, 2), nullable=True),
        sa.Column("range_low", sa.Numeric(14, 2), nullable=True),
        sa.Column("range_high", sa.Numeric(14, 2), nullable=True),
        sa.Column("contact_ref", sa.String(length=128), nullable=True),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("declined_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["deal.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("revision_id"),
    )
    op.create_index("ix_deal_quote_revision_quote_id", "deal_quote_revision", ["quote_id"])
    op.create_index("ix_deal_quote_revision_deal_id", "deal_quote_revision", ["deal_id"])
    op.create_index("ix_deal_quote_revision_contact_ref", "deal_quote_revision", ["contact_ref"])

    op.create_table(
        "deal_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("deal_id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("old_value", sa.JSON(), nullable=True),
        sa.Column("new_value", sa.JSON(), nullable=True),
        sa.Column("actor_ref", sa.String(length=128), nullable=False),
        sa.Column("source_event_id", sa.String(length=255), nullable=False),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(["deal_id"], ["deal.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_event_id", "event_type", name="uq_deal_event_source_type"),
    )
    op.create_index("ix_deal_event_deal_time", "deal_event", ["deal_id", "occurred_at"])

    op.create_table(
        "deal_idempotency_record",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("request_hash", sa.String(length=128), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("deal_id", sa.Uuid(), nullable=True),
        sa.Column("outcome", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("key"),
    )
    op.create_index("ix_deal_idempotency_record_expires_at", "deal_idempotency_record", ["expires_at"])


def downgrade() -> None:
    op.drop_index("ix_deal_idempotency_record_expires_at", table_name="deal_idempotency_record")
    op.drop_table("deal_idempotency_record")
    op.drop_index("ix_deal_event_deal_time", table_name="deal_event")
    op.drop_table("deal_event")
    op.drop_index("ix_deal_quote_revision_contact_ref", table_name="deal_quote_revision")
    op.drop_index("ix_deal_quote_revision_deal_id", table_name="deal_quote_revision")
    op.drop_index("ix_deal_quote_revision_quote_id", table_name="deal_quote_revision")
    op.drop_table("deal_quote_revision")
    op.drop_index("ix_deal_owner_open", table_name="deal")
    op.drop_index("ix_deal_account_open", table_name="deal")
    op.drop_index("uq_deal_open_account_contact", table_name="deal")
    op.drop_table("deal")
