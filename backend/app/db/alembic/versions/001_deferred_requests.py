"""Deferred request tables

Revision ID: 001
Revises:
Create Date: 2026-10-18

Creates:
- deferred_endpoint_rule
- deferred_request
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

JsonType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Create deferred request tables."""
    op.create_table(
        "deferred_endpoint_rule",
        sa.Column("rule_id", sa.Uuid(), primary_key=True),
        sa.Column("org_id", sa.Uuid(), nullable=True),
        sa.Column("http_method", sa.String(10), nullable=False),
        sa.Column("endpoint_pattern", sa.Text(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column("force_deferred", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("priority", sa.String(16), server_default="default", nullable=False),
        sa.Column("timeout_seconds", sa.Integer(), server_default="300", nullable=False),
        sa.Column("result_ttl_seconds", sa.Integer(), nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
    )
    op.create_index(
        "idx_deferred_rule_org_active", "deferred_endpoint_rule", ["org_id", "is_active"]
    )
    op.create_index(
        "idx_deferred_rule_method_pattern",
        "deferred_endpoint_rule",
        ["http_method", "endpoint_pattern"],
    )

    op.create_table(
        "deferred_request",
        sa.Column("request_id", sa.Uuid(), primary_key=True),
        sa.Column("org_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("http_method", sa.String(10), nullable=False),
        sa.Column("endpoint", sa.Text(), nullable=False),
        sa.Column("payload", JsonType, nullable=True),
        sa.Column("query_params", JsonType, nullable=False),
        sa.Column("headers", JsonType, nullable=False),
        sa.Column("status", sa.String(16), server_default="pending", nullable=False),
        sa.Column("progress", sa.Integer(), nullable=True),
        sa.Column("progress_message", sa.Text(), nullable=True),
        sa.Column("result", JsonType, nullable=True),
        sa.Column("result_status_code", sa.Integer(), nullable=True),
        sa.Column("error_code", sa.String(32), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer(), server_default="3", nullable=False),
        sa.Column("is_superadmin", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("priority", sa.String(16), server_default="default", nullable=False),
        sa.Column("timeout_seconds", sa.Integer(), server_default="300", nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_deferred_status_expires", "deferred_request", ["status", "expires_at"])
    op.create_index("idx_deferred_user_created", "deferred_request", ["user_id", "created_at"])
    op.create_index("idx_deferred_expires", "deferred_request", ["expires_at"])


def downgrade() -> None:
    """Drop deferred request tables."""
    op.drop_index("idx_deferred_expires", table_name="deferred_request")
    op.drop_index("idx_deferred_user_created", table_name="deferred_request")
    op.drop_index("idx_deferred_status_expires", table_name="deferred_request")
    op.drop_table("deferred_request")

    op.drop_index("idx_deferred_rule_method_pattern", table_name="deferred_endpoint_rule")
    op.drop_index("idx_deferred_rule_org_active", table_name="deferred_endpoint_rule")
    op.drop_table("deferred_endpoint_rule")
