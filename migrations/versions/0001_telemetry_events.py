"""Telemetry events table

Revision ID: 0001_telemetry_events
Revises:
Create Date: 2026-10-19

"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic
revision = "0001_telemetry_events"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "telemetry_events",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("properties", sa.JSON, nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("session_id", sa.String(255), nullable=False),
        sa.Column("device_id", sa.String(255), nullable=False),
        sa.Column("schema_version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("received_at", sa.DateTime(timezone=True), nullable=False),
    )
    # deletion and read-back are always per user
    op.create_index(
        "ix_telemetry_events_user_occurred", "telemetry_events", ["user_id", "occurred_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_telemetry_events_user_occurred", table_name="telemetry_events")
    op.drop_table("telemetry_events")
