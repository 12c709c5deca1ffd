"""Stage progress aggregation — pure functions over job snapshots.

Document stage::

    doc        = completed / total * 60
    analyzing  = analyzing / total * 20
    stage      = min(100, (doc + analyzing) * 100 / 60)

Completed documents earn full credit and in-flight documents partial credit;
the rescale makes "all completed" exactly 100.  Errored documents earn
nothing here; the orchestrator pins the stage to 100 once every document is
processed.

Overall::

    overall = clamp(stage1 * 0.6 + stage2 * 0.4)

The report stage, once produced, counts as a terminal 100 outside this
formula.
"""

from proposal_db.models.enums import PipelineStage
from proposal_pipeline.constants import (
    ANALYZING_DOCUMENT_POINTS,
    COMPLETED_DOCUMENT_POINTS,
    STAGE_WEIGHTS,
)
from proposal_pipeline.models.document import JobSnapshot


def clamp_progress(value: float) -> float:
    """Clamp *value* to [0, 100]."""
    return max(0.0, min(100.0, value))


def compute_document_stage_progress(snapshot: JobSnapshot) -> float:
    """Stage-level percentage for document analysis; 0 when nothing is tracked."""
    total = snapshot.total_count
    if total <= 0:
        return 0.0
    doc_progress = snapshot.completed_count / total * COMPLETED_DOCUMENT_POINTS
    analyzing_progress = snapshot.analyzing_count / total * ANALYZING_DOCUMENT_POINTS
    stage = (doc_progress + analyzing_progress) * (100.0 / COMPLETED_DOCUMENT_POINTS)
    return clamp_progress(min(100.0, stage))


def compute_overall_progress(stage1_progress: float, stage2_progress: float) -> float:
    """Weighted overall percentage from the two core stages."""
    overall = (
        stage1_progress * STAGE_WEIGHTS[PipelineStage.DOCUMENT_ANALYSIS]
        + stage2_progress * STAGE_WEIGHTS[PipelineStage.QUESTION_GENERATION]
    )
    return clamp_progress(overall)
