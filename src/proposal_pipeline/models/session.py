"""Session state owned by one orchestrator, plus its read-only API view.

``PipelineSession`` is mutable and is only ever changed inside the
orchestrator's synchronous reducer step.  ``PipelineStatus`` is the pydantic
snapshot handed to consumers; it never aliases the live session.

Flags:
  - ``stage_completed[stage]``: set once when the stage's completion is
    detected.
  - ``next_stage_triggered[stage]``: set once when the successor's worker
    is claimed for start.
Both only go from False to True; ``reset()`` (restart) is the sole way back.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone

from pydantic import BaseModel

from proposal_db.models.enums import PipelineStage, StageStatus
from proposal_pipeline.constants import STAGE_ORDER, TRANSITION_STAGES
from proposal_pipeline.models.document import JobSnapshot
from proposal_pipeline.models.events import PipelineEvent


class DocumentOutcome(str, enum.Enum):
    """How the document stage ended once every document was processed.

    ``partial_failure`` still advances using the successful subset;
    ``total_failure`` fails the next stage without triggering it.
    """

    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_FAILURE = "partial_failure"
    TOTAL_FAILURE = "total_failure"


@dataclass
class StageState:
    """Status, progress and timing of one stage."""

    status: StageStatus = StageStatus.PENDING
    progress: float = 0.0
    message: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (StageStatus.COMPLETED, StageStatus.FAILED)

    def mark_processing(self, message: str | None = None) -> None:
        self.status = StageStatus.PROCESSING
        self.started_at = datetime.now(timezone.utc)
        self.message = message

    def mark_completed(self, message: str | None = None) -> None:
        self.status = StageStatus.COMPLETED
        self.progress = 100.0
        self.ended_at = datetime.now(timezone.utc)
        if message is not None:
            self.message = message

    def mark_failed(self, message: str) -> None:
        self.status = StageStatus.FAILED
        self.ended_at = datetime.now(timezone.utc)
        self.message = message


def _stage_states() -> dict[PipelineStage, StageState]:
    return {stage: StageState() for stage in STAGE_ORDER if stage is not PipelineStage.SETUP}


def _flags(stages) -> dict[PipelineStage, bool]:
    return {stage: False for stage in stages}


@dataclass
class PipelineSession:
    """Mutable state of one orchestration run."""

    session_id: str
    project_id: str
    current_stage: PipelineStage = PipelineStage.SETUP
    stages: dict[PipelineStage, StageState] = field(default_factory=_stage_states)
    stage_completed: dict[PipelineStage, bool] = field(
        default_factory=lambda: _flags(STAGE_ORDER[1:])
    )
    next_stage_triggered: dict[PipelineStage, bool] = field(
        default_factory=lambda: _flags(TRANSITION_STAGES)
    )
    # Incremented by every restart; async results from an older run are dropped
    run_id: int = 0
    document_outcome: DocumentOutcome | None = None
    # Set once no further transition can happen in this run
    finished: bool = False

    def stage(self, stage: PipelineStage) -> StageState:
        return self.stages[stage]

    def advance_to(self, stage: PipelineStage) -> bool:
        """Move ``current_stage`` forward.  Returns False for a backward move."""
        if STAGE_ORDER.index(stage) <= STAGE_ORDER.index(self.current_stage):
            return False
        self.current_stage = stage
        return True

    def is_past(self, stage: PipelineStage) -> bool:
        """True when ``current_stage`` is later than *stage*."""
        return STAGE_ORDER.index(self.current_stage) > STAGE_ORDER.index(stage)

    def reset(self) -> None:
        """Return every field to its initial value and bump ``run_id``."""
        self.current_stage = PipelineStage.SETUP
        self.stages = _stage_states()
        self.stage_completed = _flags(STAGE_ORDER[1:])
        self.next_stage_triggered = _flags(TRANSITION_STAGES)
        self.document_outcome = None
        self.finished = False
        self.run_id += 1


# ---------------------------------------------------------------------------
# API views
# ---------------------------------------------------------------------------


class StageView(BaseModel):
    """Read-only view of one stage."""

    status: StageStatus
    progress: float
    message: str | None = None
    started_at: datetime | None = None
    ended_at: datetime | None = None
    completed: bool = False
    next_stage_triggered: bool = False


class PipelineStatus(BaseModel):
    """Consumer-facing snapshot of an orchestrator."""

    session_id: str
    project_id: str
    run_id: int
    current_stage: PipelineStage
    stages: dict[str, StageView]
    overall_progress: float
    documents: JobSnapshot
    document_outcome: DocumentOutcome | None = None
    finished: bool
    paused: bool
    poll_cadence: str
    poll_interval: float | None = None
    elapsed_seconds: float
    activity: list[PipelineEvent] = []
