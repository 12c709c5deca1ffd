"""Records exchanged with external collaborators.

The state store returns ``StageRecord`` and ``DocumentStatusRecord`` rows;
a poll fetch or a push notification bundles them into one ``StateChange``
that the orchestrator feeds through its reducer.  Workers return a
``StartResult`` from their ``start`` call.
"""

from typing import Literal

from pydantic import BaseModel, Field

from proposal_db.models.enums import StageStatus
from proposal_pipeline.constants import (
    DEFAULT_MAX_QUESTIONS,
    DEFAULT_QUESTION_CATEGORIES,
)


class StageRecord(BaseModel):
    """Persisted status of one stage as written by its worker."""

    stage: str
    status: StageStatus = StageStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    message: str | None = None


class DocumentStatusRecord(BaseModel):
    """Persisted status of one document.

    ``status`` is kept as the raw worker string; the tracker normalises it.
    """

    status: str = "pending"
    progress: int = 0
    error: str | None = None
    file_name: str | None = None
    processing_time: float | None = None
    confidence_score: float | None = None


class StateChange(BaseModel):
    """One observation of persisted state, from a poll or a push."""

    session_id: str
    # stage name -> record
    stages: dict[str, StageRecord] = Field(default_factory=dict)
    # document id -> record
    documents: dict[str, DocumentStatusRecord] = Field(default_factory=dict)


class StartResult(BaseModel):
    """Outcome of a worker ``start`` call.

    Document analysis reports ``total_documents``; question generation
    reports ``generated_count``.
    """

    success: bool
    total_documents: int | None = None
    generated_count: int | None = None
    error: str | None = None


class QuestionGenerationOptions(BaseModel):
    """Request sent to the question-generation worker."""

    categories: list[str] = Field(
        default_factory=lambda: list(DEFAULT_QUESTION_CATEGORIES)
    )
    max_questions: int = Field(default=DEFAULT_MAX_QUESTIONS, ge=1)
    include_required: bool = True
    custom_context: str | None = None
    # Successfully analyzed documents to draw from; empty means all of them
    document_ids: list[str] = Field(default_factory=list)


class ReportGenerationOptions(BaseModel):
    """Request sent to the report worker."""

    format: Literal["markdown", "html", "pdf"] = "markdown"
    # Empty means every section the worker knows about
    sections: list[str] = Field(default_factory=list)
    include_charts: bool = True
    include_appendix: bool = False
