"""Progress rows written by the external workers.

``StageProgress`` holds one row per (session, stage); ``DocumentAnalysis``
holds one row per (session, document).  Both are upserted by the workers
and only read by the orchestrator, which keeps its own in-memory view.
"""

import uuid

from sqlalchemy import (
    CheckConstraint,
    Float,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from proposal_db.models.base import Base, UpdatedAtMixin


class StageProgress(UpdatedAtMixin, Base):
    """Latest status/progress/message reported for one stage of a session."""

    __tablename__ = "pipeline_stage_progress"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    session_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    # Raw stage name as the worker wrote it (normalised by the SDK on read)
    stage: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    progress: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("session_id", "stage", name="uq_session_stage"),
        CheckConstraint("progress BETWEEN 0 AND 100", name="ck_stage_progress_range"),
    )


class DocumentAnalysis(UpdatedAtMixin, Base):
    """Per-document analysis status for one session."""

    __tablename__ = "document_analyses"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4,
    )
    session_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    document_id: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    progress: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Seconds spent analysing, and the model's self-reported confidence
    processing_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence_score: Mapped[float | None] = mapped_column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("session_id", "document_id", name="uq_session_document"),
        CheckConstraint("progress BETWEEN 0 AND 100", name="ck_document_progress_range"),
    )

    def __repr__(self) -> str:
        return (
            f"<DocumentAnalysis(session={self.session_id!r}, "
            f"document={self.document_id!r}, status={self.status!r})>"
        )
