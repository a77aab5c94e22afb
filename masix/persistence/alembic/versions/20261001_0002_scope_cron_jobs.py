"""scope cron_jobs by account_tag and track delivery failures

Legacy rows with no account tag are mapped to "__default__".

Revision ID: 20261001_0002
Revises: 20261001_0001
Create Date: 2026-10-01
"""
from alembic import op
import sqlalchemy as sa

revision = "20261001_0002"
down_revision = "20261001_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    columns = {col["name"] for col in inspector.get_columns("cron_jobs")}
    indexes = {idx["name"] for idx in inspector.get_indexes("cron_jobs")}

    with op.batch_alter_table("cron_jobs") as batch:
        if "account_tag" not in columns:
            batch.add_column(
                sa.Column("account_tag", sa.String(128), nullable=False, server_default="__default__")
            )
        if "failure_count" not in columns:
            batch.add_column(sa.Column("failure_count", sa.Integer, nullable=False, server_default="0"))
        if "last_error" not in columns:
            batch.add_column(sa.Column("last_error", sa.Text, nullable=True))

    op.execute(
        "UPDATE cron_jobs SET account_tag = '__default__' "
        "WHERE account_tag IS NULL OR TRIM(account_tag) = ''"
    )

    if "idx_cron_jobs_enabled_next_run_account" not in indexes:
        op.create_index(
            "idx_cron_jobs_enabled_next_run_account",
            "cron_jobs",
            ["enabled", "next_run", "account_tag"],
        )
    if "idx_cron_jobs_account_enabled" not in indexes:
        op.create_index("idx_cron_jobs_account_enabled", "cron_jobs", ["account_tag", "enabled"])


def downgrade() -> None:
    op.drop_index("idx_cron_jobs_account_enabled", table_name="cron_jobs")
    op.drop_index("idx_cron_jobs_enabled_next_run_account", table_name="cron_jobs")
    with op.batch_alter_table("cron_jobs") as batch:
        batch.drop_column("last_error")
        batch.drop_column("failure_count")
        batch.drop_column("account_tag")
