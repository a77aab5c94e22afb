"""create offsets, acl, tool policy, inbound audit and cron tables

Revision ID: 20261001_0001
Revises:
Create Date: 2026-10-01
"""
from alembic import op
import sqlalchemy as sa

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    existing_tables = set(inspector.get_table_names())

    # ── 1. channel_offsets ─────────────────────────────────────────────────
    if "channel_offsets" not in existing_tables:
        op.create_table(
            "channel_offsets",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("channel", sa.String(32), nullable=False),
            sa.Column("account_tag", sa.String(128), nullable=False, server_default="__default__"),
            sa.Column("offset_value", sa.BigInteger, nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint("channel", "account_tag", name="uq_channel_offsets_channel_account"),
        )

    # ── 2. acl_entries ─────────────────────────────────────────────────────
    if "acl_entries" not in existing_tables:
        op.create_table(
            "acl_entries",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("account_tag", sa.String(128), nullable=False),
            sa.Column("user_id", sa.String(64), nullable=False),
            sa.Column("role", sa.String(16), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.UniqueConstraint("account_tag", "user_id", name="uq_acl_entries_account_user"),
        )
        op.create_index("ix_acl_entries_account_tag", "acl_entries", ["account_tag"])

    # ── 3. acl_settings ────────────────────────────────────────────────────
    if "acl_settings" not in existing_tables:
        op.create_table(
            "acl_settings",
            sa.Column("account_tag", sa.String(128), primary_key=True),
            sa.Column("user_tools_mode", sa.String(16), nullable=True),
            sa.Column("user_allowed_tools", sa.JSON, nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )

    # ── 4. inbound_events ──────────────────────────────────────────────────
    if "inbound_events" not in existing_tables:
        op.create_table(
            "inbound_events",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("channel", sa.String(32), nullable=False),
            sa.Column("account_tag", sa.String(128), nullable=False),
            sa.Column("message_id", sa.String(64), nullable=True),
            sa.Column("chat_id", sa.String(64), nullable=False),
            sa.Column("sender", sa.String(128), nullable=False),
            sa.Column("content", sa.Text, nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )
        op.create_index(
            "ix_inbound_events_account_chat", "inbound_events", ["channel", "account_tag", "chat_id"]
        )

    # ── 5. cron_jobs (unscoped shape; account scoping follows in 0002) ──────
    if "cron_jobs" not in existing_tables:
        op.create_table(
            "cron_jobs",
            sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
            sa.Column("created_by", sa.String(128), nullable=False),
            sa.Column("channel", sa.String(32), nullable=False),
            sa.Column("recipient", sa.String(128), nullable=False),
            sa.Column("message", sa.Text, nullable=False),
            sa.Column("schedule", sa.String(255), nullable=False),
            sa.Column("recurring", sa.Boolean, server_default=sa.false()),
            sa.Column("timezone", sa.String(64), server_default="UTC"),
            sa.Column("enabled", sa.Boolean, server_default=sa.true()),
            sa.Column("next_run", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        )


def downgrade() -> None:
    op.drop_table("cron_jobs")
    op.drop_index("ix_inbound_events_account_chat", table_name="inbound_events")
    op.drop_table("inbound_events")
    op.drop_table("acl_settings")
    op.drop_index("ix_acl_entries_account_tag", table_name="acl_entries")
    op.drop_table("acl_entries")
    op.drop_table("channel_offsets")
