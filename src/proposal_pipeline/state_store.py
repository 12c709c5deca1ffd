"""PersistedStateStore backed by the ``proposal_db`` tables.

Each call opens its own ``AsyncSession`` from the session factory and owns
the transaction: reads just close, writes commit.  Database errors on reads
surface as ``TransientFetchError`` so the poller backs off and retries;
errors on writes surface as ``PipelineError`` and are logged by the
orchestrator.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from proposal_db.engine import get_session_factory
from proposal_db.models.enums import PipelineStage, SessionStatus, StageStatus
from proposal_db.repository import PipelineRepository
from proposal_pipeline.errors import PipelineError, TransientFetchError
from proposal_pipeline.interfaces import PersistedStateStore
from proposal_pipeline.models.records import DocumentStatusRecord, StageRecord

logger = logging.getLogger(__name__)


def _stage_status(raw: str) -> StageStatus:
    try:
        return StageStatus(raw)
    except ValueError:
        # Workers sometimes write "in_progress"/"error"
        if raw in ("in_progress", "running", "analyzing"):
            return StageStatus.PROCESSING
        if raw == "error":
            return StageStatus.FAILED
        return StageStatus.PENDING


class RepositoryStateStore(PersistedStateStore):
    """State store reading and writing through ``PipelineRepository``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        repository: PipelineRepository | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._repo = repository or PipelineRepository()

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_stage_progress(self, session_id: str) -> dict[str, StageRecord]:
        try:
            async with self._factory()() as db:
                rows = await self._repo.list_stage_progress(db, session_id)
        except SQLAlchemyError as exc:
            raise TransientFetchError(f"stage progress read failed: {exc}") from exc

        records: dict[str, StageRecord] = {}
        # Rows come newest first; keep the newest row per stage
        for row in rows:
            if row.stage in records:
                continue
            records[row.stage] = StageRecord(
                stage=row.stage,
                status=_stage_status(row.status),
                progress=max(0, min(100, row.progress)),
                message=row.message,
            )
        return records

    async def get_document_statuses(
        self, session_id: str
    ) -> dict[str, DocumentStatusRecord]:
        try:
            async with self._factory()() as db:
                rows = await self._repo.list_document_analyses(db, session_id)
        except SQLAlchemyError as exc:
            raise TransientFetchError(f"document status read failed: {exc}") from exc

        return {
            row.document_id: DocumentStatusRecord(
                status=row.status,
                progress=row.progress,
                error=row.error,
                file_name=row.file_name,
                processing_time=row.processing_time,
                confidence_score=row.confidence_score,
            )
            for row in rows
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def update_stage_progress(
        self,
        session_id: str,
        stage: str,
        percent: int,
        *,
        status: StageStatus | None = None,
        message: str | None = None,
    ) -> None:
        try:
            async with self._factory()() as db:
                await self._repo.upsert_stage_progress(
                    db,
                    session_id=session_id,
                    stage=stage,
                    progress=percent,
                    status=status.value if status is not None else None,
                    message=message,
                )
                if status is StageStatus.PROCESSING:
                    session = await self._repo.get_by_session_id(db, session_id)
                    if session is not None:
                        await self._repo.set_current_stage(db, session, PipelineStage(stage))
                await db.commit()
        except SQLAlchemyError as exc:
            raise PipelineError(f"stage progress write failed: {exc}") from exc

    async def update_session_status(
        self, session_id: str, status: SessionStatus
    ) -> None:
        try:
            async with self._factory()() as db:
                session = await self._repo.get_by_session_id(db, session_id)
                if session is None:
                    logger.warning("Status write for unknown session %s", session_id)
                    return
                await self._repo.set_status(db, session, status)
                if status is SessionStatus.CREATED:
                    await self._repo.set_current_stage(db, session, PipelineStage.SETUP)
                await db.commit()
        except SQLAlchemyError as exc:
            raise PipelineError(f"session status write failed: {exc}") from exc

    async def reset_session(self, session_id: str) -> None:
        try:
            async with self._factory()() as db:
                await self._repo.reset_progress(db, session_id)
                await db.commit()
        except SQLAlchemyError as exc:
            raise PipelineError(f"progress reset failed: {exc}") from exc
