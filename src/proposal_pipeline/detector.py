"""Completion detector — one-shot "stage complete" signals.

Each check reads and writes ``session.stage_completed`` in the same
synchronous call, so a second update arriving right after (a push
notification or an overlapping poll response) sees the flag already set
and produces no signal.  The detector never awaits.
"""

import logging
from dataclasses import dataclass

from proposal_db.models.enums import PipelineStage, StageStatus
from proposal_pipeline.models.document import JobSnapshot
from proposal_pipeline.models.records import StageRecord, StartResult
from proposal_pipeline.models.session import DocumentOutcome, PipelineSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionSignal:
    """A stage reached a terminal status for the first time in this run."""

    stage: PipelineStage
    succeeded: bool
    message: str | None = None
    # Only set for the document stage
    outcome: DocumentOutcome | None = None


def classify_outcome(snapshot: JobSnapshot) -> DocumentOutcome:
    if snapshot.completed_count == 0:
        return DocumentOutcome.TOTAL_FAILURE
    if snapshot.error_count > 0:
        return DocumentOutcome.PARTIAL_FAILURE
    return DocumentOutcome.ALL_SUCCEEDED


class CompletionDetector:
    """Evaluates session state and emits each stage's completion once."""

    def evaluate_documents(
        self, session: PipelineSession, snapshot: JobSnapshot
    ) -> CompletionSignal | None:
        """Fire when every expected document reached a terminal status.

        Requires ``total_count > 0``.  A total failure still fires, with
        ``succeeded=False``; the caller fails the next stage instead of
        triggering it.
        """
        if session.stage_completed[PipelineStage.DOCUMENT_ANALYSIS]:
            return None
        if not snapshot.all_processed:
            return None

        session.stage_completed[PipelineStage.DOCUMENT_ANALYSIS] = True
        outcome = classify_outcome(snapshot)
        logger.info(
            "Session %s: document analysis complete (%d ok, %d failed, %s)",
            session.session_id, snapshot.completed_count,
            snapshot.error_count, outcome.value,
        )
        if outcome is DocumentOutcome.TOTAL_FAILURE:
            message = "No documents were successfully analyzed"
        else:
            message = (
                f"{snapshot.completed_count} of {snapshot.total_count} "
                f"documents analyzed"
            )
        return CompletionSignal(
            stage=PipelineStage.DOCUMENT_ANALYSIS,
            succeeded=outcome is not DocumentOutcome.TOTAL_FAILURE,
            message=message,
            outcome=outcome,
        )

    def evaluate_stage_record(
        self, session: PipelineSession, stage: PipelineStage, record: StageRecord
    ) -> CompletionSignal | None:
        """Fire when a worker-written stage record turns terminal.

        Only considered while the stage is ``processing`` in this run, so a
        record left over from an earlier run cannot complete a stage that
        has not been started.  The document stage completes from job
        counts; a record can only fail it.
        """
        if session.stage_completed[stage]:
            return None
        if session.stage(stage).status is not StageStatus.PROCESSING:
            return None
        if record.status is StageStatus.FAILED:
            session.stage_completed[stage] = True
            message = record.message or f"{stage.value} failed"
            logger.warning("Session %s: %s", session.session_id, message)
            return CompletionSignal(stage=stage, succeeded=False, message=message)
        if record.status is StageStatus.COMPLETED and stage is not PipelineStage.DOCUMENT_ANALYSIS:
            session.stage_completed[stage] = True
            logger.info("Session %s: %s complete", session.session_id, stage.value)
            return CompletionSignal(stage=stage, succeeded=True, message=record.message)
        return None

    def evaluate_start_result(
        self, session: PipelineSession, stage: PipelineStage, result: StartResult
    ) -> CompletionSignal | None:
        """Fire when question generation finished inside its start call.

        A worker that answers with ``generated_count`` has already stored
        its questions and writes no stage record afterwards.
        """
        if stage is not PipelineStage.QUESTION_GENERATION or result.generated_count is None:
            return None
        if session.stage_completed[stage]:
            return None
        if session.stage(stage).status is not StageStatus.PROCESSING:
            return None
        session.stage_completed[stage] = True
        count = result.generated_count
        logger.info(
            "Session %s: %s complete (%d generated)",
            session.session_id, stage.value, count,
        )
        return CompletionSignal(
            stage=stage,
            succeeded=True,
            message=f"{count} question{'s' if count != 1 else ''} generated",
        )
