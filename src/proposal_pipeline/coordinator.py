"""Stage transition coordinator — starts each stage's worker exactly once.

Starting a stage is split in two:

  - ``claim()`` is synchronous.  It checks and sets
    ``next_stage_triggered`` and moves the next stage to ``processing``
    inside the caller's reducer step, before anything is awaited.
  - ``execute()`` is asynchronous.  It waits the settle delay, then calls
    the worker once under a bounded wait.

A failed start is not retried; the stage becomes ``failed``.  A start that
times out is only logged, since the worker may still come up and be
observed on a later poll.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass

from proposal_db.models.enums import PipelineStage
from proposal_pipeline.config import OrchestratorSettings
from proposal_pipeline.constants import NEXT_STAGE
from proposal_pipeline.errors import JobStartError
from proposal_pipeline.interfaces import (
    DocumentAnalysisWorker,
    QuestionGenerationWorker,
    ReportWorker,
)
from proposal_pipeline.models.records import (
    QuestionGenerationOptions,
    ReportGenerationOptions,
    StartResult,
)
from proposal_pipeline.models.session import PipelineSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageTrigger:
    """A claimed, not yet executed, start of *stage*."""

    session_id: str
    project_id: str
    run_id: int
    stage: PipelineStage
    # Wait for the prior stage's final writes before starting
    settle: bool = True
    # Documents the stage should work from (question generation only)
    document_ids: tuple[str, ...] = ()


class TransitionOutcome(str, enum.Enum):
    STARTED = "started"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class TransitionResult:
    trigger: StageTrigger
    outcome: TransitionOutcome
    result: StartResult | None = None
    error: str | None = None


class StageTransitionCoordinator:
    """Claims and executes stage starts for one orchestrator."""

    def __init__(
        self,
        document_worker: DocumentAnalysisWorker,
        question_worker: QuestionGenerationWorker,
        report_worker: ReportWorker | None = None,
        *,
        settings: OrchestratorSettings | None = None,
        question_options: QuestionGenerationOptions | None = None,
        report_options: ReportGenerationOptions | None = None,
    ) -> None:
        self._document_worker = document_worker
        self._question_worker = question_worker
        self._report_worker = report_worker
        self._settings = settings or OrchestratorSettings()
        self._question_options = question_options or QuestionGenerationOptions()
        self._report_options = report_options or ReportGenerationOptions()

    def has_worker(self, stage: PipelineStage) -> bool:
        if stage is PipelineStage.REPORT:
            return self._report_worker is not None
        return stage in (PipelineStage.DOCUMENT_ANALYSIS, PipelineStage.QUESTION_GENERATION)

    # ------------------------------------------------------------------
    # Claim (synchronous)
    # ------------------------------------------------------------------

    def claim_initial(self, session: PipelineSession) -> StageTrigger:
        """Claim the ``setup -> document_analysis`` start.

        Raises ValueError when the session has already left setup.
        """
        if session.current_stage is not PipelineStage.SETUP:
            raise ValueError(
                f"Pipeline {session.session_id} already started "
                f"(stage={session.current_stage.value})"
            )
        session.advance_to(PipelineStage.DOCUMENT_ANALYSIS)
        session.stage(PipelineStage.DOCUMENT_ANALYSIS).mark_processing(
            "Starting document analysis"
        )
        return StageTrigger(
            session_id=session.session_id,
            project_id=session.project_id,
            run_id=session.run_id,
            stage=PipelineStage.DOCUMENT_ANALYSIS,
            settle=False,
        )

    def claim(
        self,
        session: PipelineSession,
        from_stage: PipelineStage,
        document_ids: tuple[str, ...] = (),
    ) -> StageTrigger | None:
        """Claim the start of the stage after *from_stage*.

        Returns None when the successor was already triggered in this run
        or has no worker.  Otherwise sets ``next_stage_triggered`` before
        returning, so no later caller can claim it again.  *document_ids*
        restricts question generation to those documents.
        """
        if session.next_stage_triggered.get(from_stage, True):
            return None
        next_stage = NEXT_STAGE[from_stage]
        if not self.has_worker(next_stage):
            return None

        session.next_stage_triggered[from_stage] = True
        session.advance_to(next_stage)
        session.stage(next_stage).mark_processing(f"Starting {next_stage.value}")
        logger.info(
            "Session %s: claimed %s -> %s (run %d)",
            session.session_id, from_stage.value, next_stage.value, session.run_id,
        )
        return StageTrigger(
            session_id=session.session_id,
            project_id=session.project_id,
            run_id=session.run_id,
            stage=next_stage,
            document_ids=tuple(document_ids),
        )

    # ------------------------------------------------------------------
    # Execute (asynchronous)
    # ------------------------------------------------------------------

    async def execute(self, trigger: StageTrigger) -> TransitionResult:
        """Run a claimed start: settle, then one bounded worker call."""
        if trigger.settle and self._settings.settle_delay > 0:
            await asyncio.sleep(self._settings.settle_delay)

        try:
            result = await asyncio.wait_for(
                self._start(trigger), timeout=self._settings.start_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Session %s: %s start not confirmed within %.1fs; "
                "leaving stage as is",
                trigger.session_id, trigger.stage.value, self._settings.start_timeout,
            )
            return TransitionResult(trigger, TransitionOutcome.TIMED_OUT)
        except JobStartError as exc:
            logger.error("Session %s: %s", trigger.session_id, exc)
            return TransitionResult(trigger, TransitionOutcome.FAILED, error=exc.message)

        if not result.success:
            message = result.error or f"Failed to start {trigger.stage.value}"
            logger.error(
                "Session %s: %s start rejected: %s",
                trigger.session_id, trigger.stage.value, message,
            )
            return TransitionResult(trigger, TransitionOutcome.FAILED, result, message)

        if trigger.stage is PipelineStage.DOCUMENT_ANALYSIS and result.total_documents == 0:
            message = "No documents to analyze"
            logger.error("Session %s: %s", trigger.session_id, message)
            return TransitionResult(trigger, TransitionOutcome.FAILED, result, message)

        logger.info("Session %s: %s started", trigger.session_id, trigger.stage.value)
        return TransitionResult(trigger, TransitionOutcome.STARTED, result)

    async def _start(self, trigger: StageTrigger) -> StartResult:
        """Call the worker for ``trigger.stage``; any failure is a JobStartError."""
        try:
            if trigger.stage is PipelineStage.DOCUMENT_ANALYSIS:
                return await self._document_worker.start(
                    trigger.session_id, trigger.project_id
                )
            if trigger.stage is PipelineStage.QUESTION_GENERATION:
                options = self._question_options
                if trigger.document_ids:
                    options = options.model_copy(
                        update={"document_ids": list(trigger.document_ids)}
                    )
                return await self._question_worker.start(trigger.session_id, options)
            if trigger.stage is PipelineStage.REPORT and self._report_worker is not None:
                return await self._report_worker.start(
                    trigger.session_id, self._report_options
                )
        except JobStartError:
            raise
        except Exception as exc:
            raise JobStartError(trigger.stage.value, str(exc) or type(exc).__name__) from exc
        raise JobStartError(trigger.stage.value, "no worker configured")
