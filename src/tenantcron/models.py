"""Table definitions for the orchestration layer.

SQLAlchemy Core tables so the same queries run on PostgreSQL in production
and on SQLite in tests. JSON payloads are stored as text.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    PrimaryKeyConstraint,
    String,
    Table,
    Text,
)

metadata = MetaData()

# === Tenants (read-only for the orchestrator) ===

organizations_table = Table(
    "organizations",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("plan", String(32), nullable=False),  # trial | starter | growth | agency
    Column("plan_status", String(32), nullable=False),  # active | trialing | past_due | canceled
    Column("created_at", DateTime(timezone=True), nullable=False),
)

locations_table = Table(
    "locations",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("org_id", String(64), ForeignKey("organizations.id"), nullable=False),
    Column("business_name", String(255), nullable=False),
    Column("city", String(128)),
    Column("state", String(64)),
    Column("is_primary", Boolean, nullable=False, default=False),
    Column("is_archived", Boolean, nullable=False, default=False),
    Column("google_place_id", String(255)),
    Column("place_details_json", Text),
    Column("place_details_refreshed_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_locations_org_id", "org_id"),
)

google_oauth_tokens_table = Table(
    "google_oauth_tokens",
    metadata,
    Column("org_id", String(64), ForeignKey("organizations.id"), primary_key=True),
    Column("access_token", Text),
    Column("refresh_token", Text, nullable=False),
    Column("expires_at", DateTime(timezone=True)),
    Column("updated_at", DateTime(timezone=True)),
)

# === Cron health log ===

cron_run_log_table = Table(
    "cron_run_log",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("cron_name", String(128), nullable=False),
    Column("status", String(32), nullable=False),  # running | success | failed | halted | timeout
    Column("started_at", DateTime(timezone=True), nullable=False),
    Column("completed_at", DateTime(timezone=True)),
    Column("duration_ms", Integer),
    Column("summary_json", Text),
    Column("error_message", Text),
    Index("ix_cron_run_log_cron_name_status", "cron_name", "status"),
)

# === Durable step functions ===

durable_runs_table = Table(
    "durable_runs",
    metadata,
    Column("run_id", String(64), primary_key=True),
    Column("function_id", String(128), nullable=False),
    Column("event_name", String(128), nullable=False),
    Column("payload_json", Text),
    Column("status", String(32), nullable=False),  # queued | running | completed | failed
    Column("attempts", Integer, nullable=False, default=0),
    Column("result_json", Text),
    Column("error_message", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("finished_at", DateTime(timezone=True)),
)

# Step-completion ledger: one row per (run, step). A completed row is never re-executed.
durable_steps_table = Table(
    "durable_steps",
    metadata,
    Column("run_id", String(64), ForeignKey("durable_runs.run_id"), nullable=False),
    Column("step_name", String(255), nullable=False),
    Column("status", String(32), nullable=False),  # running | completed | failed
    Column("attempt_count", Integer, nullable=False, default=0),
    Column("last_error", Text),
    Column("output_json", Text),
    Column("completed_at", DateTime(timezone=True)),
    PrimaryKeyConstraint("run_id", "step_name"),
)
