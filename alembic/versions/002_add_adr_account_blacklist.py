"""Add adr_account_blacklist table

Revision ID: 002_adr_blacklist
Revises: 001_initial
Create Date: 2026-10-19

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002_adr_blacklist"
down_revision: str = "001_initial"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "adr_account_blacklist",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("vendor_code", sa.String(128), nullable=True),
        sa.Column("external_account_id", sa.Integer(), nullable=True),
        sa.Column("account_number", sa.String(128), nullable=True),
        sa.Column("credential_id", sa.Integer(), nullable=True),
        sa.Column("exclusion_type", sa.String(20), nullable=False, server_default="All"),
        sa.Column("reason", sa.Text(), nullable=False, server_default=""),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("effective_start_date", sa.Date(), nullable=True),
        sa.Column("effective_end_date", sa.Date(), nullable=True),
        sa.Column("blacklisted_by", sa.String(200), nullable=True),
        sa.Column("blacklisted_date_time", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_adr_account_blacklist_is_active", "adr_account_blacklist", ["is_active"])


def downgrade() -> None:
    op.drop_index("ix_adr_account_blacklist_is_active", table_name="adr_account_blacklist")
    op.drop_table("adr_account_blacklist")
