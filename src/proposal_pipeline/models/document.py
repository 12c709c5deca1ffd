"""Document job models — one tracked job per input document.

``DocumentJob`` is the tracker's record.  ``DocumentJobUpdate`` is a partial
update as read from the state store: every field except the id is optional,
and ``status`` is the raw worker string before normalisation.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from proposal_db.models.enums import DocumentStatus


class DocumentJob(BaseModel):
    """Tracked state for one document.

    Status is monotonic: pending -> analyzing -> {completed | error}.
    A job in a terminal status is never modified again.
    """

    id: str
    file_name: str | None = None
    status: DocumentStatus = DocumentStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    # Reported by the analysis worker once the document finishes
    processing_time: float | None = None
    confidence_score: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (DocumentStatus.COMPLETED, DocumentStatus.ERROR)


class DocumentJobUpdate(BaseModel):
    """Partial update for one job, as observed in persisted state."""

    document_id: str
    status: str | None = None
    progress: int | None = None
    error: str | None = None
    file_name: str | None = None
    processing_time: float | None = None
    confidence_score: float | None = None


class JobSnapshot(BaseModel):
    """Point-in-time view of every job plus derived counts.

    ``total_count`` can exceed ``len(jobs)`` when the analysis worker has
    reported more documents than have rows yet; the difference counts as
    pending.
    """

    jobs: list[DocumentJob] = Field(default_factory=list)
    completed_count: int = 0
    analyzing_count: int = 0
    error_count: int = 0
    pending_count: int = 0
    total_count: int = 0

    @property
    def processed_count(self) -> int:
        """Documents that reached a terminal status."""
        return self.completed_count + self.error_count

    @property
    def all_processed(self) -> bool:
        return self.total_count > 0 and self.processed_count == self.total_count
