"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# Enums are stored as plain strings (native_enum=False on the models)
BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    ]


def upgrade() -> None:
    # Schedules
    op.create_table(
        "schedules",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("job_type", sa.String(30), nullable=False),
        sa.Column("cron_expression", sa.String(120), nullable=False),
        sa.Column("time_zone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("job_configuration", sa.JSON(), nullable=False),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("retry_delay_minutes", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("timeout_minutes", sa.Integer(), nullable=True),
        sa.Column("retry_attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("next_run_time", sa.DateTime(), nullable=True),
        sa.Column("last_run_time", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_schedules_client_id", "schedules", ["client_id"])
    op.create_index("ix_schedules_is_deleted", "schedules", ["is_deleted"])
    op.create_index("ix_schedules_next_run_time", "schedules", ["next_run_time"])

    op.create_table(
        "job_parameters",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("schedule_id", sa.Integer(), sa.ForeignKey("schedules.id"), nullable=False),
        sa.Column("parameter_name", sa.String(100), nullable=False),
        sa.Column("parameter_type", sa.String(30), nullable=False, server_default="string"),
        sa.Column("parameter_value", sa.Text(), nullable=True),
        sa.Column("is_dynamic", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("source_query", sa.String(256), nullable=True),
        sa.Column("source_connection_string", sa.Text(), nullable=True),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_job_parameters_schedule_id", "job_parameters", ["schedule_id"])

    op.create_table(
        "job_executions",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("schedule_id", sa.Integer(), sa.ForeignKey("schedules.id"), nullable=False),
        sa.Column("start_time", sa.DateTime(), nullable=False),
        sa.Column("end_time", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("output", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("stack_trace", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("duration_seconds", sa.Float(), nullable=True),
        sa.Column("triggered_by", sa.String(200), nullable=False, server_default="Scheduler"),
        sa.Column("cancelled_by", sa.String(200), nullable=True),
    )
    op.create_index("ix_job_executions_schedule_id", "job_executions", ["schedule_id"])
    op.create_index("ix_job_executions_start_time", "job_executions", ["start_time"])
    op.create_index("ix_job_executions_status", "job_executions", ["status"])

    # ADR
    op.create_table(
        "adr_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("external_account_id", sa.Integer(), nullable=False),
        sa.Column("interface_account_id", sa.String(100), nullable=True),
        sa.Column("account_number", sa.String(128), nullable=False),
        sa.Column("vendor_code", sa.String(128), nullable=True),
        sa.Column("client_id", sa.Integer(), nullable=True),
        sa.Column("credential_id", sa.Integer(), nullable=False),
        sa.Column("period_type", sa.String(20), nullable=True),
        sa.Column("period_days", sa.Integer(), nullable=True),
        sa.Column("median_days", sa.Float(), nullable=True),
        sa.Column("invoice_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_invoice_date", sa.Date(), nullable=True),
        sa.Column("last_success_download_date", sa.Date(), nullable=True),
        sa.Column("expected_next_date", sa.Date(), nullable=True),
        sa.Column("expected_range_start", sa.Date(), nullable=True),
        sa.Column("expected_range_end", sa.Date(), nullable=True),
        sa.Column("next_run_date", sa.Date(), nullable=True),
        sa.Column("next_range_start", sa.Date(), nullable=True),
        sa.Column("next_range_end", sa.Date(), nullable=True),
        sa.Column("days_until_next_run", sa.Integer(), nullable=True),
        sa.Column("next_run_status", sa.String(20), nullable=True),
        sa.Column("historical_billing_status", sa.String(20), nullable=True),
        sa.Column("is_manually_overridden", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("overridden_by", sa.String(200), nullable=True),
        sa.Column("overridden_date_time", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_synced_date_time", sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_adr_accounts_external_account_id", "adr_accounts", ["external_account_id"], unique=True
    )
    op.create_index("ix_adr_accounts_client_id", "adr_accounts", ["client_id"])
    op.create_index("ix_adr_accounts_next_run_date", "adr_accounts", ["next_run_date"])
    op.create_index("ix_adr_accounts_is_deleted", "adr_accounts", ["is_deleted"])

    op.create_table(
        "adr_jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("adr_account_id", sa.Integer(), sa.ForeignKey("adr_accounts.id"), nullable=False),
        sa.Column("credential_id", sa.Integer(), nullable=False),
        sa.Column("vendor_code", sa.String(128), nullable=True),
        sa.Column("account_number", sa.String(128), nullable=False),
        sa.Column("period_type", sa.String(20), nullable=True),
        sa.Column("billing_period_start", sa.Date(), nullable=False),
        sa.Column("billing_period_end", sa.Date(), nullable=False),
        sa.Column("next_run_date", sa.Date(), nullable=True),
        sa.Column("next_range_start", sa.Date(), nullable=True),
        sa.Column("next_range_end", sa.Date(), nullable=True),
        sa.Column("status", sa.String(30), nullable=False),
        sa.Column("is_missing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("adr_status_id", sa.Integer(), nullable=True),
        sa.Column("adr_status_description", sa.String(100), nullable=True),
        sa.Column("adr_index_id", sa.Integer(), nullable=True),
        sa.Column("credential_verified_date_time", sa.DateTime(), nullable=True),
        sa.Column("scraping_completed_date_time", sa.DateTime(), nullable=True),
        sa.Column("last_request_sent_date_time", sa.DateTime(), nullable=True),
        sa.Column("last_status_check_date_time", sa.DateTime(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.UniqueConstraint(
            "adr_account_id",
            "billing_period_start",
            "billing_period_end",
            name="uq_adr_jobs_account_period",
        ),
    )
    op.create_index("ix_adr_jobs_adr_account_id", "adr_jobs", ["adr_account_id"])
    op.create_index("ix_adr_jobs_status", "adr_jobs", ["status"])
    op.create_index("ix_adr_jobs_is_deleted", "adr_jobs", ["is_deleted"])

    op.create_table(
        "adr_job_executions",
        sa.Column("id", BIGINT_PK, primary_key=True),
        sa.Column("adr_job_id", sa.Integer(), sa.ForeignKey("adr_jobs.id"), nullable=False),
        sa.Column("adr_request_type_id", sa.Integer(), nullable=False),
        sa.Column("start_date_time", sa.DateTime(), nullable=False),
        sa.Column("end_date_time", sa.DateTime(), nullable=True),
        sa.Column("adr_status_id", sa.Integer(), nullable=True),
        sa.Column("adr_status_description", sa.String(100), nullable=True),
        sa.Column("adr_index_id", sa.Integer(), nullable=True),
        sa.Column("is_error", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_final", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_success", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("http_status_code", sa.Integer(), nullable=True),
        sa.Column("request_payload", sa.Text(), nullable=True),
        sa.Column("response_payload", sa.Text(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_adr_job_executions_adr_job_id", "adr_job_executions", ["adr_job_id"])

    op.create_table(
        "adr_orchestration_runs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("request_id", sa.String(36), nullable=False),
        sa.Column("requested_by", sa.String(200), nullable=False),
        sa.Column("requested_date_time", sa.DateTime(), nullable=False),
        sa.Column("started_date_time", sa.DateTime(), nullable=True),
        sa.Column("completed_date_time", sa.DateTime(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("current_step", sa.String(50), nullable=True),
        sa.Column("current_progress", sa.String(200), nullable=True),
        sa.Column("accounts_synced", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("jobs_created", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credentials_verified", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("credentials_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("requests_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status_checks", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("jobs_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("jobs_needing_review", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("stale_jobs_finalized", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_errors", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status_check_duration_seconds", sa.Float(), nullable=True),
        sa.Column("scraping_duration_seconds", sa.Float(), nullable=True),
        sa.Column("credential_verification_duration_seconds", sa.Float(), nullable=True),
        sa.Column("job_creation_duration_seconds", sa.Float(), nullable=True),
        sa.Column("account_sync_duration_seconds", sa.Float(), nullable=True),
        sa.Column("cleanup_duration_seconds", sa.Float(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index(
        "ix_adr_orchestration_runs_request_id", "adr_orchestration_runs", ["request_id"], unique=True
    )
    op.create_index(
        "ix_adr_orchestration_runs_requested_date_time",
        "adr_orchestration_runs",
        ["requested_date_time"],
    )


def downgrade() -> None:
    op.drop_table("adr_orchestration_runs")
    op.drop_table("adr_job_executions")
    op.drop_table("adr_jobs")
    op.drop_table("adr_accounts")
    op.drop_table("job_executions")
    op.drop_table("job_parameters")
    op.drop_table("schedules")
