"""Pipeline endpoints — create, inspect and control pre-analysis pipelines.

A pipeline is one analysis session: a ``pipeline_sessions`` row plus an
in-process ``PipelineOrchestrator`` that polls the worker-written progress
rows and advances the stages.
"""

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from proposal_db.models.enums import DocumentStatus, SessionStatus
from proposal_db.repository import PipelineRepository
from proposal_pipeline.models.events import PipelineEvent
from proposal_pipeline.models.records import (
    QuestionGenerationOptions,
    ReportGenerationOptions,
)
from proposal_pipeline.models.session import PipelineStatus

from proposal_server.config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from proposal_server.dependencies import get_db, get_registry
from proposal_server.registry import OrchestratorRegistry

router = APIRouter(tags=["pipelines"])

_repo = PipelineRepository()


# ------------------------------------------------------------------
# Request / response models
# ------------------------------------------------------------------

class DocumentRef(BaseModel):
    """A document to analyse, registered as a pending row before start."""
    document_id: str
    file_name: str | None = None


class CreatePipelineRequest(BaseModel):
    """Body for POST /pipelines."""
    session_id: str
    project_id: str
    documents: list[DocumentRef] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
    question_options: QuestionGenerationOptions | None = None
    report_options: ReportGenerationOptions | None = None


class PipelineSummary(BaseModel):
    """One row of GET /pipelines."""
    session_id: str
    project_id: str
    status: str
    current_stage: str
    active: bool
    overall_progress: float | None = None


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.post("/pipelines", status_code=201)
async def create_pipeline(
    body: CreatePipelineRequest,
    db: AsyncSession = Depends(get_db),
    registry: OrchestratorRegistry = Depends(get_registry),
) -> PipelineStatus:
    """Create a pipeline session and start document analysis.

    Returns 201 with the initial status.  Raises 409 if the session
    already exists, 429 if too many pipelines are running, 503 if the
    state store cannot be read.  A session whose start failed stays
    ``created`` and can be created again.
    """
    existing = await _repo.get_by_session_id(db, body.session_id)
    if body.session_id in registry or (
        existing is not None and existing.status != SessionStatus.CREATED.value
    ):
        raise ValueError(f"Pipeline already exists: session_id={body.session_id}")

    if existing is None:
        await _repo.create_session(
            db,
            session_id=body.session_id,
            project_id=body.project_id,
            metadata=body.metadata,
        )
    for doc in body.documents:
        await _repo.upsert_document_analysis(
            db,
            session_id=body.session_id,
            document_id=doc.document_id,
            status=DocumentStatus.PENDING.value,
            file_name=doc.file_name,
        )
    # The orchestrator reads through its own connection
    await db.commit()

    orchestrator = await registry.create(
        body.session_id,
        body.project_id,
        body.question_options,
        body.report_options,
    )
    try:
        await orchestrator.start()
    except Exception:
        await registry.remove(body.session_id)
        raise
    return orchestrator.status()


@router.get("/pipelines")
async def list_pipelines(
    db: AsyncSession = Depends(get_db),
    registry: OrchestratorRegistry = Depends(get_registry),
    project_id: str | None = Query(None),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
) -> list[PipelineSummary]:
    """List pipeline sessions, most recent first.

    ``active`` marks sessions with an orchestrator in this process.
    """
    rows = await _repo.list_sessions(
        db, project_id=project_id, limit=limit, offset=offset,
    )
    summaries = []
    for row in rows:
        orchestrator = registry.get(row.session_id) if row.session_id in registry else None
        summaries.append(PipelineSummary(
            session_id=row.session_id,
            project_id=row.project_id,
            status=row.status,
            current_stage=row.current_stage,
            active=orchestrator is not None,
            overall_progress=(
                round(orchestrator.get_overall_progress(), 1) if orchestrator else None
            ),
        ))
    return summaries


@router.get("/pipelines/{session_id}")
async def get_pipeline(
    session_id: str,
    registry: OrchestratorRegistry = Depends(get_registry),
) -> PipelineStatus:
    """Full status of a running pipeline.  404 if it is not in this process."""
    return registry.get(session_id).status()


@router.post("/pipelines/{session_id}/pause")
async def pause_pipeline(
    session_id: str,
    registry: OrchestratorRegistry = Depends(get_registry),
) -> PipelineStatus:
    """Suspend progress fetches; an in-flight fetch still completes."""
    orchestrator = registry.get(session_id)
    orchestrator.pause()
    return orchestrator.status()


@router.post("/pipelines/{session_id}/resume")
async def resume_pipeline(
    session_id: str,
    registry: OrchestratorRegistry = Depends(get_registry),
) -> PipelineStatus:
    orchestrator = registry.get(session_id)
    orchestrator.resume()
    return orchestrator.status()


@router.post("/pipelines/{session_id}/restart")
async def restart_pipeline(
    session_id: str,
    registry: OrchestratorRegistry = Depends(get_registry),
) -> PipelineStatus:
    """Reset every stage, document and flag, then start from document analysis."""
    orchestrator = registry.get(session_id)
    await orchestrator.restart()
    await orchestrator.start()
    return orchestrator.status()


@router.get("/pipelines/{session_id}/activity")
async def get_activity(
    session_id: str,
    registry: OrchestratorRegistry = Depends(get_registry),
) -> list[PipelineEvent]:
    """Recent activity, newest first."""
    return list(registry.get(session_id).activity_log)


@router.delete("/pipelines/{session_id}", status_code=204)
async def delete_pipeline(
    session_id: str,
    registry: OrchestratorRegistry = Depends(get_registry),
) -> None:
    """Stop the orchestrator and release it.  The session row is kept."""
    await registry.remove(session_id)
