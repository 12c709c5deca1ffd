"""Create pipeline_sessions, pipeline_stage_progress and document_analyses.

Revision ID: 20261001_pipeline
Revises:
Create Date: 2026-10-01
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

revision = "20261001_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "pipeline_sessions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.Text, nullable=False, unique=True),
        sa.Column("project_id", sa.Text, nullable=False),
        sa.Column(
            "status", sa.String(20), nullable=False,
            server_default=sa.text("'created'"),
        ),
        sa.Column(
            "current_stage", sa.String(32), nullable=False,
            server_default=sa.text("'setup'"),
        ),
        sa.Column(
            "metadata", JSONB, nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
        sa.Column("completed_at", TIMESTAMP(timezone=True), nullable=True),
    )
    op.create_index("ix_pipeline_sessions_project_id", "pipeline_sessions", ["project_id"])
    op.create_index("ix_pipeline_sessions_status", "pipeline_sessions", ["status"])

    op.create_table(
        "pipeline_stage_progress",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.Text, nullable=False),
        sa.Column("stage", sa.String(32), nullable=False),
        sa.Column(
            "status", sa.String(20), nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column(
            "progress", sa.SmallInteger, nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint("session_id", "stage", name="uq_session_stage"),
        sa.CheckConstraint(
            "progress BETWEEN 0 AND 100", name="ck_stage_progress_range",
        ),
    )
    op.create_index(
        "ix_pipeline_stage_progress_session_id",
        "pipeline_stage_progress",
        ["session_id"],
    )

    op.create_table(
        "document_analyses",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("session_id", sa.Text, nullable=False),
        sa.Column("document_id", sa.Text, nullable=False),
        sa.Column("file_name", sa.Text, nullable=True),
        sa.Column(
            "status", sa.String(20), nullable=False,
            server_default=sa.text("'pending'"),
        ),
        sa.Column(
            "progress", sa.SmallInteger, nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("processing_time", sa.Float, nullable=True),
        sa.Column("confidence_score", sa.Float, nullable=True),
        sa.Column("updated_at", TIMESTAMP(timezone=True), nullable=False),
        sa.UniqueConstraint("session_id", "document_id", name="uq_session_document"),
        sa.CheckConstraint(
            "progress BETWEEN 0 AND 100", name="ck_document_progress_range",
        ),
    )
    op.create_index(
        "ix_document_analyses_session_id", "document_analyses", ["session_id"],
    )


def downgrade() -> None:
    op.drop_index("ix_document_analyses_session_id", table_name="document_analyses")
    op.drop_table("document_analyses")
    op.drop_index(
        "ix_pipeline_stage_progress_session_id",
        table_name="pipeline_stage_progress",
    )
    op.drop_table("pipeline_stage_progress")
    op.drop_index("ix_pipeline_sessions_status", table_name="pipeline_sessions")
    op.drop_index("ix_pipeline_sessions_project_id", table_name="pipeline_sessions")
    op.drop_table("pipeline_sessions")
