"""Document job tracker — merges observed document statuses into job records.

Updates arrive from poll fetches and push notifications, possibly out of
order and repeated.  The tracker makes merging idempotent and monotonic:

  - a ``completed``/``error`` job never changes again;
  - ``analyzing`` never goes back to ``pending``;
  - progress never decreases;
  - an update that changes neither status nor progress (by at least
    ``min_progress_delta``) is dropped so nothing downstream recomputes.
"""

import logging
from datetime import datetime, timezone
from typing import Iterable

from proposal_db.models.enums import DocumentStatus
from proposal_pipeline.constants import RAW_DOCUMENT_STATUSES
from proposal_pipeline.models.document import (
    DocumentJob,
    DocumentJobUpdate,
    JobSnapshot,
)

logger = logging.getLogger(__name__)

# Position in the monotonic status order; terminal statuses share a rank
_STATUS_RANK: dict[DocumentStatus, int] = {
    DocumentStatus.PENDING: 0,
    DocumentStatus.ANALYZING: 1,
    DocumentStatus.COMPLETED: 2,
    DocumentStatus.ERROR: 2,
}


def normalize_document_status(raw: str | DocumentStatus | None) -> DocumentStatus | None:
    """Fold a worker status string onto ``DocumentStatus``.

    ``None`` stays ``None`` (no status in the update).  Unknown strings
    read as ``pending`` so they can never complete a document.
    """
    if raw is None:
        return None
    if isinstance(raw, DocumentStatus):
        return raw
    status = RAW_DOCUMENT_STATUSES.get(raw.strip().lower())
    if status is None:
        logger.debug("Unknown document status %r, treating as pending", raw)
        return DocumentStatus.PENDING
    return status


class DocumentJobTracker:
    """Holds one ``DocumentJob`` per document and merges updates into them.

    Parameters
    ----------
    min_progress_delta:
        Smallest progress movement (percentage points) that counts as a
        change on its own.
    """

    def __init__(self, min_progress_delta: int = 1) -> None:
        self._min_progress_delta = min_progress_delta
        self._jobs: dict[str, DocumentJob] = {}
        # Largest document count reported by the analysis worker
        self._expected_total = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        document_ids: Iterable[str],
        file_names: dict[str, str | None] | None = None,
    ) -> int:
        """Add a ``pending`` job for every id not yet tracked.

        Returns the number of newly registered jobs.
        """
        file_names = file_names or {}
        added = 0
        for doc_id in document_ids:
            if doc_id in self._jobs:
                continue
            self._jobs[doc_id] = DocumentJob(id=doc_id, file_name=file_names.get(doc_id))
            added += 1
        return added

    def expect(self, total: int) -> None:
        """Record the document count reported by the analysis worker.

        The snapshot total never drops below it, so the stage cannot be
        declared complete before every expected document has a row.
        """
        self._expected_total = max(self._expected_total, total)

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def ingest(self, update: DocumentJobUpdate) -> bool:
        """Merge a partial update.  Returns True when the job changed.

        An unknown document id is registered first, which always counts
        as a change.
        """
        job = self._jobs.get(update.document_id)
        is_new = job is None
        if job is None:
            job = DocumentJob(id=update.document_id, file_name=update.file_name)
            self._jobs[job.id] = job

        if job.is_terminal:
            return is_new

        status = normalize_document_status(update.status) or job.status
        if _STATUS_RANK[status] < _STATUS_RANK[job.status]:
            logger.debug(
                "Ignoring regression of %s from %s to %s",
                job.id, job.status.value, status.value,
            )
            status = job.status

        progress = job.progress
        if update.progress is not None:
            progress = max(job.progress, min(100, max(0, update.progress)))
        if status is DocumentStatus.COMPLETED:
            progress = 100

        status_changed = status is not job.status
        progress_changed = progress - job.progress >= self._min_progress_delta
        if not (status_changed or progress_changed):
            if update.file_name and job.file_name is None:
                self._jobs[job.id] = job.model_copy(update={"file_name": update.file_name})
            return is_new

        now = datetime.now(timezone.utc)
        changes: dict = {"status": status, "progress": progress}
        if update.file_name and job.file_name is None:
            changes["file_name"] = update.file_name
        if job.started_at is None and status is not DocumentStatus.PENDING:
            changes["started_at"] = now
        if status in (DocumentStatus.COMPLETED, DocumentStatus.ERROR):
            changes["completed_at"] = now
            changes["processing_time"] = update.processing_time
            changes["confidence_score"] = update.confidence_score
            if status is DocumentStatus.ERROR:
                changes["error"] = update.error or "Analysis failed"
        self._jobs[job.id] = job.model_copy(update=changes)
        return True

    def fail_all(self, message: str) -> int:
        """Mark every non-terminal job ``error``.  Returns how many changed."""
        failed = 0
        for doc_id in list(self._jobs):
            if self.ingest(DocumentJobUpdate(document_id=doc_id, status="error", error=message)):
                failed += 1
        return failed

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, document_id: str) -> DocumentJob | None:
        return self._jobs.get(document_id)

    def snapshot(self) -> JobSnapshot:
        """Return every job plus derived counts."""
        jobs = list(self._jobs.values())
        counts = {status: 0 for status in DocumentStatus}
        for job in jobs:
            counts[job.status] += 1
        total = max(len(jobs), self._expected_total)
        completed = counts[DocumentStatus.COMPLETED]
        analyzing = counts[DocumentStatus.ANALYZING]
        errored = counts[DocumentStatus.ERROR]
        return JobSnapshot(
            jobs=jobs,
            completed_count=completed,
            analyzing_count=analyzing,
            error_count=errored,
            pending_count=total - completed - analyzing - errored,
            total_count=total,
        )

    def estimate_remaining(
        self, document_id: str, now: datetime | None = None
    ) -> float | None:
        """Seconds left for an analyzing job, from its progress rate so far.

        ``None`` when the job is unknown, not analyzing, or has no measurable
        rate yet.
        """
        job = self._jobs.get(document_id)
        if job is None or job.status is not DocumentStatus.ANALYZING:
            return None
        if job.started_at is None or job.progress <= 0:
            return None
        now = now or datetime.now(timezone.utc)
        elapsed = (now - job.started_at).total_seconds()
        if elapsed <= 0:
            return None
        rate = job.progress / elapsed
        return (100 - job.progress) / rate

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Put every tracked job back to ``pending`` with zero progress."""
        self._jobs = {
            doc_id: DocumentJob(id=doc_id, file_name=job.file_name)
            for doc_id, job in self._jobs.items()
        }
        self._expected_total = 0

    def __len__(self) -> int:
        return len(self._jobs)

    def __contains__(self, document_id: object) -> bool:
        return document_id in self._jobs
