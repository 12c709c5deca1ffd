"""AnalysisSession ORM model — one row per pre-analysis pipeline run.

The row holds the coarse lifecycle (status, current stage) that the
consumer layer lists and filters on.  Fine-grained progress lives in the
``pipeline_stage_progress`` and ``document_analyses`` tables, which the
external workers write to while they run.
"""

import uuid
from datetime import datetime

from sqlalchemy import Index, String, Text, text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from proposal_db.models.base import Base, UpdatedAtMixin, utcnow
from proposal_db.models.enums import PipelineStage, SessionStatus


class AnalysisSession(UpdatedAtMixin, Base):
    """One row per pipeline session, keyed by the caller-supplied ``session_id``."""

    __tablename__ = "pipeline_sessions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # --- Identity ---
    session_id: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    project_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    # --- Lifecycle ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SessionStatus.CREATED.value,
        server_default=text("'created'"),
    )
    current_stage: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=PipelineStage.SETUP.value,
        server_default=text("'setup'"),
    )

    # Free-form run options (AI model, analysis depth, ...) passed through
    # to the workers untouched.
    session_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        server_default=text("'{}'::jsonb"),
    )

    # --- Timestamps (updated_at comes from UpdatedAtMixin) ---
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), nullable=False, default=utcnow,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_pipeline_sessions_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<AnalysisSession(session={self.session_id!r}, "
            f"project={self.project_id!r}, status={self.status!r}, "
            f"stage={self.current_stage!r})>"
        )
