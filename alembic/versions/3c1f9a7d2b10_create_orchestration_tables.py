"""create orchestration tables

Revision ID: 3c1f9a7d2b10
Revises:
Create Date: 2026-10-18 09:00:00.000000

organizations, locations and google_oauth_tokens are normally owned by the
dashboard schema; they are only created here when missing (fresh databases,
staging). cron_run_log and the durable step ledger belong to this service.

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '3c1f9a7d2b10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    existing_tables = set(inspect(conn).get_table_names())

    if "organizations" not in existing_tables:
        op.create_table(
            "organizations",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("plan", sa.String(32), nullable=False),
            sa.Column("plan_status", sa.String(32), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )

    if "locations" not in existing_tables:
        op.create_table(
            "locations",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("org_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), nullable=False),
            sa.Column("business_name", sa.String(255), nullable=False),
            sa.Column("city", sa.String(128), nullable=True),
            sa.Column("state", sa.String(64), nullable=True),
            sa.Column("is_primary", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("google_place_id", sa.String(255), nullable=True),
            sa.Column("place_details_json", sa.Text(), nullable=True),
            sa.Column("place_details_refreshed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_locations_org_id", "locations", ["org_id"])

    if "google_oauth_tokens" not in existing_tables:
        op.create_table(
            "google_oauth_tokens",
            sa.Column("org_id", sa.String(64), sa.ForeignKey("organizations.id", ondelete="CASCADE"), primary_key=True),
            sa.Column("access_token", sa.Text(), nullable=True),
            sa.Column("refresh_token", sa.Text(), nullable=False),
            sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        )

    op.create_table(
        "cron_run_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("cron_name", sa.String(128), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("summary_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_cron_run_log_cron_name_status", "cron_run_log", ["cron_name", "status"])

    op.create_table(
        "durable_runs",
        sa.Column("run_id", sa.String(64), primary_key=True),
        sa.Column("function_id", sa.String(128), nullable=False),
        sa.Column("event_name", sa.String(128), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=True),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("result_json", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "durable_steps",
        sa.Column("run_id", sa.String(64), sa.ForeignKey("durable_runs.run_id", ondelete="CASCADE"), nullable=False),
        sa.Column("step_name", sa.String(255), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("run_id", "step_name"),
    )


def downgrade() -> None:
    op.drop_table("durable_steps")
    op.drop_table("durable_runs")
    op.drop_index("ix_cron_run_log_cron_name_status", table_name="cron_run_log")
    op.drop_table("cron_run_log")
    # Tenant tables are left in place: they may predate this revision.
