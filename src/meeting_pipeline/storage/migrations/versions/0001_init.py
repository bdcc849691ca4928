"""
Инициальная миграция.

Создаёт таблицы:
- meetings
- meeting_stage_runs
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_MEETING_STATUS = sa.Enum(
    "scheduled",
    "pending",
    "processing",
    "transcribed",
    "completed",
    "cancelled",
    "failed",
    name="meetingstatus",
)
_STAGE_NAME = sa.Enum(
    "transcription", "extraction", "sentiment", "follow_up", "timeline", name="stagename"
)
_STAGE_RUN_STATE = sa.Enum("queued", "completed", "failed", name="stagerunstate")


def upgrade() -> None:
    op.create_table(
        "meetings",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("requester_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", _MEETING_STATUS, nullable=False),
        sa.Column("source_locator", sa.Text(), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("transcript", sa.JSON(), nullable=True),
        sa.Column("participants", sa.JSON(), nullable=False),
        sa.Column("action_items", sa.JSON(), nullable=True),
        sa.Column("decisions", sa.JSON(), nullable=True),
        sa.Column("sentiment", sa.JSON(), nullable=True),
        sa.Column("participant_sentiment", sa.JSON(), nullable=True),
        sa.Column("follow_ups", sa.JSON(), nullable=True),
        sa.Column("timeline", sa.JSON(), nullable=True),
        sa.Column("processing_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("processing_model", sa.String(length=128), nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("outstanding_stages", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_meetings_status_updated", "meetings", ["status", "updated_at"])

    op.create_table(
        "meeting_stage_runs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("meeting_id", sa.String(length=64), sa.ForeignKey("meetings.id"), nullable=False),
        sa.Column("stage", _STAGE_NAME, nullable=False),
        sa.Column("state", _STAGE_RUN_STATE, nullable=False),
        sa.Column("required", sa.Boolean(), nullable=False),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("meeting_id", "stage", name="uq_meeting_stage_runs"),
    )


def downgrade() -> None:
    op.drop_table("meeting_stage_runs")
    op.drop_index("ix_meetings_status_updated", table_name="meetings")
    op.drop_table("meetings")
    _STAGE_RUN_STATE.drop(op.get_bind(), checkfirst=True)
    _STAGE_NAME.drop(op.get_bind(), checkfirst=True)
    _MEETING_STATUS.drop(op.get_bind(), checkfirst=True)
