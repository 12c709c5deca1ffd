"""Async CRUD repository for pipeline sessions and their progress rows.

All public methods accept an ``AsyncSession`` so the caller controls
transaction boundaries.  Methods ``flush()`` but never ``commit()``.

The repository avoids business-logic validation (monotonic statuses,
exactly-once triggers) — that belongs in the orchestrator.  It only
enforces structural invariants through DB constraints.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from proposal_db.models.base import utcnow
from proposal_db.models.enums import PipelineStage, SessionStatus
from proposal_db.models.progress import DocumentAnalysis, StageProgress
from proposal_db.models.session import AnalysisSession

# Statuses after which a session row counts as finished
_FINISHED_STATUSES = {
    SessionStatus.COMPLETED.value,
    SessionStatus.FAILED.value,
    SessionStatus.CANCELLED.value,
}


class PipelineRepository:
    """Async read/write operations on the pipeline tables."""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_session(
        self,
        db: AsyncSession,
        *,
        session_id: str,
        project_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> AnalysisSession:
        """Insert a new session row and return it.

        The caller must ``await db.commit()`` to persist.
        """
        session = AnalysisSession(
            session_id=session_id,
            project_id=project_id,
            session_metadata=metadata or {},
        )
        db.add(session)
        await db.flush()
        return session

    async def get_by_session_id(
        self, db: AsyncSession, session_id: str
    ) -> AnalysisSession | None:
        """Fetch a session by its caller-supplied identifier."""
        stmt = select(AnalysisSession).where(AnalysisSession.session_id == session_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_sessions(
        self,
        db: AsyncSession,
        *,
        project_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> list[AnalysisSession]:
        """List sessions, most recent first, optionally for one project."""
        stmt = select(AnalysisSession)
        if project_id is not None:
            stmt = stmt.where(AnalysisSession.project_id == project_id)
        stmt = stmt.order_by(AnalysisSession.created_at.desc()).limit(limit).offset(offset)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def set_status(
        self, db: AsyncSession, session: AnalysisSession, status: SessionStatus
    ) -> AnalysisSession:
        """Update the lifecycle status; stamps ``completed_at`` on finish."""
        now = utcnow()
        session.status = status.value
        if status.value in _FINISHED_STATUSES:
            session.completed_at = now
        else:
            session.completed_at = None
        session.updated_at = now
        await db.flush()
        return session

    async def set_current_stage(
        self, db: AsyncSession, session: AnalysisSession, stage: PipelineStage
    ) -> AnalysisSession:
        """Record which macro-stage the session is in."""
        session.current_stage = stage.value
        session.updated_at = utcnow()
        await db.flush()
        return session

    # ------------------------------------------------------------------
    # Stage progress
    # ------------------------------------------------------------------

    async def list_stage_progress(
        self, db: AsyncSession, session_id: str
    ) -> list[StageProgress]:
        """Return every stage row for a session, most recently updated first."""
        stmt = (
            select(StageProgress)
            .where(StageProgress.session_id == session_id)
            .order_by(StageProgress.updated_at.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def upsert_stage_progress(
        self,
        db: AsyncSession,
        *,
        session_id: str,
        stage: str,
        progress: int,
        status: str | None = None,
        message: str | None = None,
    ) -> StageProgress:
        """Insert or update the (session_id, stage) row.

        ``status`` and ``message`` are left untouched when ``None`` so the
        orchestrator can write a percentage without clobbering what the
        worker reported.
        """
        stmt = select(StageProgress).where(
            StageProgress.session_id == session_id,
            StageProgress.stage == stage,
        )
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = StageProgress(session_id=session_id, stage=stage, progress=progress)
            db.add(row)
        row.progress = max(0, min(100, progress))
        if status is not None:
            row.status = status
        if message is not None:
            row.message = message
        row.updated_at = utcnow()
        await db.flush()
        return row

    async def reset_progress(self, db: AsyncSession, session_id: str) -> None:
        """Restart support: drop stage rows, put document rows back to pending."""
        stmt = select(StageProgress).where(StageProgress.session_id == session_id)
        for row in (await db.execute(stmt)).scalars().all():
            await db.delete(row)

        now = utcnow()
        stmt = select(DocumentAnalysis).where(DocumentAnalysis.session_id == session_id)
        for row in (await db.execute(stmt)).scalars().all():
            row.status = "pending"
            row.progress = 0
            row.error = None
            row.processing_time = None
            row.confidence_score = None
            row.updated_at = now
        await db.flush()

    # ------------------------------------------------------------------
    # Document analyses
    # ------------------------------------------------------------------

    async def list_document_analyses(
        self, db: AsyncSession, session_id: str
    ) -> list[DocumentAnalysis]:
        """Return every document row for a session."""
        stmt = select(DocumentAnalysis).where(DocumentAnalysis.session_id == session_id)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def upsert_document_analysis(
        self,
        db: AsyncSession,
        *,
        session_id: str,
        document_id: str,
        status: str,
        progress: int = 0,
        file_name: str | None = None,
        error: str | None = None,
        processing_time: float | None = None,
        confidence_score: float | None = None,
    ) -> DocumentAnalysis:
        """Insert or update the (session_id, document_id) row."""
        stmt = select(DocumentAnalysis).where(
            DocumentAnalysis.session_id == session_id,
            DocumentAnalysis.document_id == document_id,
        )
        row = (await db.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = DocumentAnalysis(session_id=session_id, document_id=document_id)
            db.add(row)
        row.status = status
        row.progress = max(0, min(100, progress))
        if file_name is not None:
            row.file_name = file_name
        row.error = error
        if processing_time is not None:
            row.processing_time = processing_time
        if confidence_score is not None:
            row.confidence_score = confidence_score
        row.updated_at = utcnow()
        await db.flush()
        return row
