"""Public model re-exports for proposal_pipeline.

Consumers should import from ``proposal_pipeline.models`` rather than
reaching into sub-modules directly.
"""

# --- Documents ---
from proposal_pipeline.models.document import (
    DocumentJob,
    DocumentJobUpdate,
    JobSnapshot,
)

# --- Activity log ---
from proposal_pipeline.models.events import EventLevel, PipelineEvent

# --- Collaborator records ---
from proposal_pipeline.models.records import (
    DocumentStatusRecord,
    QuestionGenerationOptions,
    ReportGenerationOptions,
    StageRecord,
    StartResult,
    StateChange,
)

# --- Session ---
from proposal_pipeline.models.session import (
    DocumentOutcome,
    PipelineSession,
    PipelineStatus,
    StageState,
    StageView,
)

__all__ = [
    "DocumentJob",
    "DocumentJobUpdate",
    "JobSnapshot",
    "EventLevel",
    "PipelineEvent",
    "DocumentStatusRecord",
    "QuestionGenerationOptions",
    "ReportGenerationOptions",
    "StageRecord",
    "StartResult",
    "StateChange",
    "DocumentOutcome",
    "PipelineSession",
    "PipelineStatus",
    "StageState",
    "StageView",
]
