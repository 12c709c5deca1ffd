"""PipelineOrchestrator — top-level wiring for one pre-analysis pipeline.

Every observation of persisted state, whether fetched by the poller
(``refresh``) or pushed by the store (``apply_change``), goes through one
synchronous transition function, ``_reduce``:

    merge documents -> aggregate progress -> detect completion -> claim next stage

``_reduce`` never awaits, so completion flags and trigger flags are read and
written without any other update interleaving.  It returns a list of effects
(persist progress, persist status, start a stage, notify listeners) which
run afterwards as tracked asyncio tasks.

Lifecycle::

    orchestrator = PipelineOrchestrator(session_id, project_id, store,
                                        document_worker, question_worker)
    async with orchestrator:
        await orchestrator.start()
        ...
        await orchestrator.restart()   # back to setup, reloads document ids
        await orchestrator.start()

Expected failures (fetch errors, start failures, write timeouts, failed
documents) never raise out of the orchestrator; they show up as stage
statuses and activity log entries.  Misuse (starting twice, starting a
stopped pipeline) raises ValueError.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Union

from proposal_db.models.enums import (
    DocumentStatus,
    PipelineStage,
    SessionStatus,
    StageStatus,
)
from proposal_pipeline.activity_log import ActivityLog
from proposal_pipeline.aggregator import (
    compute_document_stage_progress,
    compute_overall_progress,
)
from proposal_pipeline.config import OrchestratorSettings
from proposal_pipeline.constants import RAW_STAGE_ALIASES
from proposal_pipeline.coordinator import (
    StageTransitionCoordinator,
    StageTrigger,
    TransitionOutcome,
    TransitionResult,
)
from proposal_pipeline.detector import CompletionDetector, CompletionSignal
from proposal_pipeline.errors import (
    PersistenceTimeout,
    PipelineError,
    TransientFetchError,
)
from proposal_pipeline.interfaces import (
    DocumentAnalysisWorker,
    PersistedStateStore,
    ProgressSubscriber,
    QuestionGenerationWorker,
    ReportWorker,
)
from proposal_pipeline.models.document import DocumentJobUpdate, JobSnapshot
from proposal_pipeline.models.events import PipelineEvent
from proposal_pipeline.models.records import (
    QuestionGenerationOptions,
    ReportGenerationOptions,
    StageRecord,
    StateChange,
)
from proposal_pipeline.models.session import (
    DocumentOutcome,
    PipelineSession,
    PipelineStatus,
    StageView,
)
from proposal_pipeline.poller import AdaptivePoller, Cadence
from proposal_pipeline.tracker import DocumentJobTracker

logger = logging.getLogger(__name__)

StageListener = Callable[[PipelineStage], None]

_STAGE_LABELS: dict[PipelineStage, str] = {
    PipelineStage.SETUP: "Setup",
    PipelineStage.DOCUMENT_ANALYSIS: "Document analysis",
    PipelineStage.QUESTION_GENERATION: "Question generation",
    PipelineStage.REPORT: "Report generation",
}


def parse_stage(name: str) -> PipelineStage | None:
    """Map a persisted stage name (including legacy aliases) to a stage."""
    name = RAW_STAGE_ALIASES.get(name, name)
    try:
        return PipelineStage(name)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Effects returned by the reducer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PersistProgress:
    stage: PipelineStage
    percent: int
    status: StageStatus | None = None
    message: str | None = None


@dataclass(frozen=True)
class PersistStatus:
    status: SessionStatus


@dataclass(frozen=True)
class StartStage:
    trigger: StageTrigger


@dataclass(frozen=True)
class NotifyStageChange:
    stage: PipelineStage


Effect = Union[PersistProgress, PersistStatus, StartStage, NotifyStageChange]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class PipelineOrchestrator:
    """Drives one session through document analysis, question generation
    and (optionally) report generation.

    Parameters
    ----------
    session_id, project_id:
        Identity of the pipeline session in the state store.
    store:
        Persisted state source.  If it also implements
        ``ProgressSubscriber``, pushed changes are applied as they arrive.
    document_worker, question_worker, report_worker:
        External stage workers.  Without a report worker the pipeline
        finishes once question generation completes.
    settings:
        Tuning knobs; defaults to ``OrchestratorSettings()``.
    """

    def __init__(
        self,
        session_id: str,
        project_id: str,
        store: PersistedStateStore,
        document_worker: DocumentAnalysisWorker,
        question_worker: QuestionGenerationWorker,
        report_worker: ReportWorker | None = None,
        *,
        settings: OrchestratorSettings | None = None,
        question_options: QuestionGenerationOptions | None = None,
        report_options: ReportGenerationOptions | None = None,
    ) -> None:
        self._settings = settings or OrchestratorSettings()
        self._store = store
        self.session = PipelineSession(session_id=session_id, project_id=project_id)

        self._tracker = DocumentJobTracker(self._settings.min_progress_delta)
        self._detector = CompletionDetector()
        self._coordinator = StageTransitionCoordinator(
            document_worker,
            question_worker,
            report_worker,
            settings=self._settings,
            question_options=question_options,
            report_options=report_options,
        )
        self._activity = ActivityLog(self._settings.activity_log_size)
        self._poller = AdaptivePoller(
            self.refresh,
            self._cadence,
            settings=self._settings,
            should_fetch=self._should_fetch,
            name=session_id,
        )

        self._listeners: list[StageListener] = []
        self._tasks: set[asyncio.Task] = set()
        # Stages whose start was claimed but whose worker has not answered
        self._pending_starts: set[PipelineStage] = set()
        # Last stage progress sent to the store, for write hysteresis
        self._last_written: dict[PipelineStage, float] = {}
        # Serializes persist effects
        self._write_lock = asyncio.Lock()
        self._fetch_seq = 0
        self._applied_seq = 0
        self._unsubscribe: Callable[[], None] | None = None
        self._initialized = False
        self._stopped = False

    # ------------------------------------------------------------------
    # Read-only surface
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self.session.session_id

    @property
    def project_id(self) -> str:
        return self.session.project_id

    @property
    def poller(self) -> AdaptivePoller:
        return self._poller

    @property
    def activity_log(self) -> tuple[PipelineEvent, ...]:
        """Newest-first activity entries."""
        return self._activity.entries()

    @property
    def stopped(self) -> bool:
        return self._stopped

    def documents(self) -> JobSnapshot:
        return self._tracker.snapshot()

    def estimate_remaining(self, document_id: str) -> float | None:
        """Seconds left for one analyzing document, if measurable."""
        return self._tracker.estimate_remaining(document_id)

    def get_overall_progress(self) -> float:
        """Overall percentage; 100 once the report stage has completed."""
        if self.session.stage(PipelineStage.REPORT).status is StageStatus.COMPLETED:
            return 100.0
        return compute_overall_progress(
            self.session.stage(PipelineStage.DOCUMENT_ANALYSIS).progress,
            self.session.stage(PipelineStage.QUESTION_GENERATION).progress,
        )

    def status(self) -> PipelineStatus:
        """Snapshot of the whole pipeline for API consumers."""
        s = self.session
        stages = {
            stage.value: StageView(
                status=state.status,
                progress=round(state.progress, 1),
                message=state.message,
                started_at=state.started_at,
                ended_at=state.ended_at,
                completed=s.stage_completed.get(stage, False),
                next_stage_triggered=s.next_stage_triggered.get(stage, False),
            )
            for stage, state in s.stages.items()
        }
        return PipelineStatus(
            session_id=s.session_id,
            project_id=s.project_id,
            run_id=s.run_id,
            current_stage=s.current_stage,
            stages=stages,
            overall_progress=round(self.get_overall_progress(), 1),
            documents=self._tracker.snapshot(),
            document_outcome=s.document_outcome,
            finished=s.finished,
            paused=self._poller.paused,
            poll_cadence=self._poller.cadence.value,
            poll_interval=self._poller.interval,
            elapsed_seconds=round(self._poller.elapsed_seconds, 1),
            activity=list(self._activity.entries()),
        )

    def on_stage_change(self, listener: StageListener) -> Callable[[], None]:
        """Register a listener called with the new stage on every advance.

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> int:
        """Load the session's document ids from the store as pending jobs.

        Returns the number of documents now tracked.
        """
        try:
            documents = await self._store.get_document_statuses(self.session_id)
        except PipelineError:
            raise
        except Exception as exc:
            raise TransientFetchError(
                f"loading documents for {self.session_id} failed: {exc}"
            ) from exc
        self._tracker.register(
            documents.keys(),
            {doc_id: record.file_name for doc_id, record in documents.items()},
        )
        self._initialized = True
        logger.info(
            "Session %s: initialized with %d documents",
            self.session_id, len(self._tracker),
        )
        return len(self._tracker)

    async def start(self) -> None:
        """Leave setup: start document analysis, polling and push updates.

        Raises ValueError if the pipeline was already started in this run
        or has been stopped.
        """
        if self._stopped:
            raise ValueError(f"Pipeline {self.session_id} has been stopped")
        if not self._initialized:
            await self.initialize()
        trigger = self._coordinator.claim_initial(self.session)
        self._last_written[PipelineStage.DOCUMENT_ANALYSIS] = 0.0
        count = len(self._tracker)
        self._activity.append(
            f"Starting document analysis for {count} document{'s' if count != 1 else ''}"
        )
        self._subscribe()
        self._poller.start()
        self._run_effects([
            PersistStatus(SessionStatus.PROCESSING),
            PersistProgress(
                PipelineStage.DOCUMENT_ANALYSIS, 0,
                StageStatus.PROCESSING, "Starting document analysis",
            ),
            NotifyStageChange(PipelineStage.DOCUMENT_ANALYSIS),
            StartStage(trigger),
        ])

    def pause(self) -> None:
        """Stop fetching.  A fetch already in flight still completes."""
        if self._poller.paused:
            return
        self._poller.pause()
        self._activity.append("Progress updates paused")
        logger.info("Session %s: paused", self.session_id)

    def resume(self) -> None:
        if not self._poller.paused:
            return
        self._poller.resume()
        self._activity.append("Progress updates resumed")
        logger.info("Session %s: resumed", self.session_id)

    async def restart(self) -> None:
        """Reset the session, jobs, flags, poller and activity log.

        In-flight effects are cancelled and late results from the previous
        run are discarded.  Document ids are reloaded from the store; call
        ``start()`` to run again.
        """
        if self._stopped:
            raise ValueError(f"Pipeline {self.session_id} has been stopped")
        logger.info("Session %s: restarting (run %d)", self.session_id, self.session.run_id)
        self._release_subscription()
        await self._cancel_tasks()

        self.session.reset()
        self._tracker.reset()
        self._pending_starts.clear()
        self._last_written.clear()
        self._applied_seq = self._fetch_seq
        self._poller.reset()
        self._activity.clear()

        try:
            await self._bounded_write("progress reset", self._store.reset_session(self.session_id))
        except PipelineError as exc:
            logger.warning("Session %s: %s; continuing", self.session_id, exc)
        await self._persist(PersistStatus(SessionStatus.CREATED))
        self._initialized = False
        await self.initialize()

    async def stop(self) -> None:
        """Stop polling, drop the push subscription and cancel effects.

        A pipeline stopped before it finished is recorded as cancelled.
        """
        if self._stopped:
            return
        self._stopped = True
        self._release_subscription()
        await self._poller.stop()
        await self._cancel_tasks()
        if not self.session.finished and self.session.current_stage is not PipelineStage.SETUP:
            await self._persist(PersistStatus(SessionStatus.CANCELLED))
        self._activity.append("Pipeline stopped")
        logger.info("Session %s: stopped", self.session_id)

    async def drain(self) -> None:
        """Wait until every effect task (including ones they spawn) is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def __aenter__(self) -> "PipelineOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Update producers
    # ------------------------------------------------------------------

    async def refresh(self) -> bool:
        """Fetch stage records and document statuses once and apply them.

        Returns False when the response was discarded as stale: the run
        was restarted, the stage advanced past the one current when the
        fetch began, or a newer fetch was already applied.

        Raises TransientFetchError when the store cannot be read.
        """
        self._fetch_seq += 1
        seq = self._fetch_seq
        run_id = self.session.run_id
        captured_stage = self.session.current_stage
        try:
            stages = await self._store.get_stage_progress(self.session_id)
            documents = await self._store.get_document_statuses(self.session_id)
        except TransientFetchError:
            self._activity.append("Failed to fetch progress; retrying", "warning")
            raise
        except Exception as exc:
            self._activity.append("Failed to fetch progress; retrying", "warning")
            raise TransientFetchError(
                f"fetch for {self.session_id} failed: {exc}"
            ) from exc

        if run_id != self.session.run_id:
            logger.debug("Session %s: discarding fetch from run %d", self.session_id, run_id)
            return False
        if seq < self._applied_seq:
            logger.debug("Session %s: discarding superseded fetch #%d", self.session_id, seq)
            return False
        if self.session.is_past(captured_stage):
            logger.debug(
                "Session %s: discarding fetch captured at %s",
                self.session_id, captured_stage.value,
            )
            return False

        self._applied_seq = seq
        change = StateChange(session_id=self.session_id, stages=stages, documents=documents)
        self._run_effects(self._reduce(change))
        return True

    async def apply_change(self, change: StateChange) -> None:
        """Push entry point: apply a change delivered by the store."""
        if change.session_id != self.session_id:
            raise ValueError(
                f"Change for session {change.session_id} sent to {self.session_id}"
            )
        self._run_effects(self._reduce(change))

    # ------------------------------------------------------------------
    # Reducer (synchronous)
    # ------------------------------------------------------------------

    def _reduce(self, change: StateChange) -> list[Effect]:
        """Apply one observation and decide every consequence.

        Must not await: the completion checks and the flag writes they
        guard happen together in this call.
        """
        s = self.session
        if s.finished or s.current_stage is PipelineStage.SETUP:
            return []

        effects: list[Effect] = []
        records: dict[PipelineStage, StageRecord] = {}
        for name, record in change.stages.items():
            stage = parse_stage(name)
            if stage is not None:
                records[stage] = record

        # 1. Merge documents
        for doc_id, record in change.documents.items():
            self._tracker.ingest(DocumentJobUpdate(document_id=doc_id, **record.model_dump()))
        snapshot = self._tracker.snapshot()

        # 2. Aggregate the document stage
        doc_state = s.stage(PipelineStage.DOCUMENT_ANALYSIS)
        if doc_state.status is StageStatus.PROCESSING:
            progress = compute_document_stage_progress(snapshot)
            if progress > doc_state.progress:
                doc_state.progress = progress
                doc_state.message = (
                    f"Analyzed {snapshot.processed_count} of {snapshot.total_count} documents"
                )

            # 3. Detect document-stage completion (or a worker-reported failure)
            doc_record = records.get(PipelineStage.DOCUMENT_ANALYSIS)
            signal = None
            if doc_record is not None:
                signal = self._detector.evaluate_stage_record(
                    s, PipelineStage.DOCUMENT_ANALYSIS, doc_record
                )
            if signal is None:
                signal = self._detector.evaluate_documents(s, snapshot)
            if signal is not None:
                effects.extend(self._on_documents_done(signal, snapshot))
            else:
                effects.extend(self._progress_write(PipelineStage.DOCUMENT_ANALYSIS))

        # 4. Later stages report through their own records
        for stage in (PipelineStage.QUESTION_GENERATION, PipelineStage.REPORT):
            if s.finished:
                break
            record = records.get(stage)
            if record is None:
                continue
            state = s.stage(stage)
            if state.status is StageStatus.PROCESSING and record.progress > state.progress:
                state.progress = float(record.progress)
                if record.message:
                    state.message = record.message
            signal = self._detector.evaluate_stage_record(s, stage, record)
            if signal is not None:
                effects.extend(self._on_stage_done(signal))
        return effects

    def _on_documents_done(
        self, signal: CompletionSignal, snapshot: JobSnapshot
    ) -> list[Effect]:
        s = self.session
        doc_state = s.stage(PipelineStage.DOCUMENT_ANALYSIS)

        if signal.outcome is None:
            # Worker-reported failure of the whole stage
            doc_state.mark_failed(signal.message or "Document analysis failed")
            s.finished = True
            self._activity.append(f"Document analysis failed: {doc_state.message}", "error")
            return [
                PersistProgress(
                    PipelineStage.DOCUMENT_ANALYSIS, round(doc_state.progress),
                    StageStatus.FAILED, doc_state.message,
                ),
                PersistStatus(SessionStatus.FAILED),
            ]

        s.document_outcome = signal.outcome
        doc_state.mark_completed(signal.message)
        self._last_written[PipelineStage.DOCUMENT_ANALYSIS] = 100.0
        effects: list[Effect] = [
            PersistProgress(
                PipelineStage.DOCUMENT_ANALYSIS, 100, StageStatus.COMPLETED, signal.message,
            ),
        ]

        if signal.outcome is DocumentOutcome.TOTAL_FAILURE:
            message = signal.message or "No documents were successfully analyzed"
            s.stage(PipelineStage.QUESTION_GENERATION).mark_failed(message)
            s.finished = True
            self._activity.append(
                f"All {snapshot.total_count} documents failed analysis", "error"
            )
            effects.extend([
                PersistProgress(
                    PipelineStage.QUESTION_GENERATION, 0, StageStatus.FAILED, message,
                ),
                PersistStatus(SessionStatus.FAILED),
            ])
            return effects

        if signal.outcome is DocumentOutcome.PARTIAL_FAILURE:
            self._activity.append(
                f"{signal.message}; {snapshot.error_count} failed", "warning"
            )
        else:
            self._activity.append(f"{signal.message}", "success")

        analyzed = tuple(
            job.id for job in snapshot.jobs if job.status is DocumentStatus.COMPLETED
        )
        trigger = self._coordinator.claim(s, PipelineStage.DOCUMENT_ANALYSIS, analyzed)
        if trigger is not None:
            self._pending_starts.add(trigger.stage)
            self._activity.append("Starting question generation")
            effects.extend([
                PersistProgress(
                    trigger.stage, 0, StageStatus.PROCESSING, "Starting question generation",
                ),
                NotifyStageChange(trigger.stage),
                StartStage(trigger),
            ])
        return effects

    def _on_stage_done(self, signal: CompletionSignal) -> list[Effect]:
        s = self.session
        stage = signal.stage
        label = _STAGE_LABELS[stage]
        state = s.stage(stage)

        if not signal.succeeded:
            state.mark_failed(signal.message or f"{label} failed")
            s.finished = True
            self._activity.append(f"{label} failed: {state.message}", "error")
            return [PersistStatus(SessionStatus.FAILED)]

        state.mark_completed(signal.message)
        self._activity.append(f"{label} complete", "success")

        if stage is PipelineStage.QUESTION_GENERATION:
            trigger = self._coordinator.claim(s, stage)
            if trigger is not None:
                self._pending_starts.add(trigger.stage)
                self._activity.append("Starting report generation")
                return [
                    PersistProgress(
                        trigger.stage, 0, StageStatus.PROCESSING, "Starting report generation",
                    ),
                    NotifyStageChange(trigger.stage),
                    StartStage(trigger),
                ]

        s.finished = True
        self._activity.append("Pipeline complete", "success")
        logger.info("Session %s: pipeline complete", self.session_id)
        return [PersistStatus(SessionStatus.COMPLETED)]

    def _apply_transition(self, result: TransitionResult) -> list[Effect]:
        """Fold a finished stage start back into the session."""
        s = self.session
        stage = result.trigger.stage
        label = _STAGE_LABELS[stage]

        if result.outcome is TransitionOutcome.STARTED:
            start = result.result
            if stage is PipelineStage.DOCUMENT_ANALYSIS and start and start.total_documents:
                self._tracker.expect(start.total_documents)
                self._activity.append(f"Analyzing {start.total_documents} documents")
            else:
                self._activity.append(f"{label} started")
            signal = None
            if start is not None:
                signal = self._detector.evaluate_start_result(s, stage, start)
            if signal is None:
                return []
            self._last_written[stage] = 100.0
            return [
                PersistProgress(stage, 100, StageStatus.COMPLETED, signal.message),
                *self._on_stage_done(signal),
            ]

        if result.outcome is TransitionOutcome.TIMED_OUT:
            self._activity.append(
                f"{label} has not confirmed its start; still watching for progress",
                "warning",
            )
            return []

        state = s.stage(stage)
        if state.is_terminal:
            return []
        message = result.error or f"Failed to start {label.lower()}"
        state.mark_failed(message)
        s.stage_completed[stage] = True
        s.finished = True
        if stage is PipelineStage.DOCUMENT_ANALYSIS:
            self._tracker.fail_all(message)
        self._activity.append(f"Failed to start {label.lower()}: {message}", "error")
        return [
            PersistProgress(stage, round(state.progress), StageStatus.FAILED, message),
            PersistStatus(SessionStatus.FAILED),
        ]

    def _progress_write(self, stage: PipelineStage) -> list[Effect]:
        """Progress write for *stage*, unless below the write hysteresis."""
        progress = self.session.stage(stage).progress
        last = self._last_written.get(stage)
        if (
            last is not None
            and progress < 100
            and progress - last < self._settings.progress_write_delta
        ):
            return []
        self._last_written[stage] = progress
        return [PersistProgress(stage, round(progress))]

    # ------------------------------------------------------------------
    # Poll predicates
    # ------------------------------------------------------------------

    def _should_fetch(self) -> bool:
        """Fetch until documents are done and handed on, then only while a
        started later stage still reports through its stage record."""
        s = self.session
        if not self._initialized or s.finished or s.current_stage is PipelineStage.SETUP:
            return False
        if self._handed_off():
            return self._awaiting_stage_records()
        return True

    def _handed_off(self) -> bool:
        s = self.session
        return (
            s.stage_completed[PipelineStage.DOCUMENT_ANALYSIS]
            and s.next_stage_triggered[PipelineStage.DOCUMENT_ANALYSIS]
        )

    def _awaiting_stage_records(self) -> bool:
        s = self.session
        return any(
            s.stage(stage).status is StageStatus.PROCESSING
            and not s.stage_completed[stage]
            and stage not in self._pending_starts
            for stage in (PipelineStage.QUESTION_GENERATION, PipelineStage.REPORT)
        )

    def _cadence(self) -> Cadence:
        s = self.session
        if s.finished or self._stopped:
            return Cadence.STOPPED
        if s.current_stage is PipelineStage.SETUP:
            return Cadence.NORMAL
        if not s.stage_completed[PipelineStage.DOCUMENT_ANALYSIS]:
            if self._tracker.snapshot().analyzing_count > 0:
                return Cadence.FAST
            return Cadence.NORMAL
        if self._pending_starts:
            return Cadence.SETTLING
        if self._handed_off() and not self._awaiting_stage_records():
            return Cadence.STOPPED
        return Cadence.SLOW

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _run_effects(self, effects: list[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, NotifyStageChange):
                self._notify(effect.stage)
            elif isinstance(effect, StartStage):
                self._spawn(self._start_stage(effect.trigger))
            else:
                self._spawn(self._persist(effect))
        if effects:
            self._poller.wake()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Session %s: effect task failed", self.session_id, exc_info=exc,
            )

    async def _cancel_tasks(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _notify(self, stage: PipelineStage) -> None:
        logger.info("Session %s: stage -> %s", self.session_id, stage.value)
        for listener in list(self._listeners):
            try:
                listener(stage)
            except Exception:
                logger.exception("Session %s: stage listener failed", self.session_id)

    async def _start_stage(self, trigger: StageTrigger) -> None:
        try:
            result = await self._coordinator.execute(trigger)
        finally:
            if trigger.run_id == self.session.run_id:
                self._pending_starts.discard(trigger.stage)
        if trigger.run_id != self.session.run_id:
            logger.info(
                "Session %s: discarding %s start result from run %d",
                self.session_id, trigger.stage.value, trigger.run_id,
            )
            return
        self._run_effects(self._apply_transition(result))
        self._poller.wake()

    async def _bounded_write(self, description: str, write: Awaitable[None]) -> None:
        timeout = self._settings.write_timeout
        try:
            await asyncio.wait_for(write, timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise PersistenceTimeout(
                f"{description} not confirmed within {timeout:.1f}s"
            ) from exc

    async def _persist(self, effect: PersistProgress | PersistStatus) -> None:
        # Writes land in the order the reducer emitted them
        async with self._write_lock:
            if isinstance(effect, PersistProgress):
                description = f"{effect.stage.value} progress write"
                write = self._store.update_stage_progress(
                    self.session_id,
                    effect.stage.value,
                    effect.percent,
                    status=effect.status,
                    message=effect.message,
                )
            else:
                description = f"session status write ({effect.status.value})"
                write = self._store.update_session_status(self.session_id, effect.status)
            try:
                await self._bounded_write(description, write)
            except PipelineError as exc:
                logger.warning("Session %s: %s; continuing", self.session_id, exc)

    # ------------------------------------------------------------------
    # Push subscription
    # ------------------------------------------------------------------

    def _subscribe(self) -> None:
        if self._unsubscribe is None and isinstance(self._store, ProgressSubscriber):
            self._unsubscribe = self._store.subscribe(self.session_id, self.apply_change)

    def _release_subscription(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
