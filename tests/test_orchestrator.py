"""PipelineOrchestrator tests with in-memory collaborators.

The background poller runs with 60-second intervals so it never fires
during a test; fetches are driven explicitly with ``refresh()`` (poll path)
and ``PushStateStore.push()`` (push path), and ``drain()`` waits for the
effects each update spawns.

Mock strategy:
  - InMemoryStateStore plays the database; tests mutate its document and
    stage records the way the external workers would.
  - Fake workers record their start calls and return canned StartResults.
"""

import asyncio

import pytest

from conftest import DOCUMENT_IDS
from helpers.fakes import (
    FakeDocumentWorker,
    FakeQuestionWorker,
    FakeReportWorker,
    InMemoryStateStore,
    MANUAL_SETTINGS,
    PROJECT_ID,
    PushStateStore,
    SESSION_ID,
)
from proposal_db.models.enums import (
    DocumentStatus,
    PipelineStage,
    SessionStatus,
    StageStatus,
)
from proposal_pipeline.config import OrchestratorSettings
from proposal_pipeline.errors import TransientFetchError
from proposal_pipeline.models.records import StartResult, StateChange
from proposal_pipeline.models.session import DocumentOutcome
from proposal_pipeline.orchestrator import PipelineOrchestrator
from proposal_pipeline.poller import Cadence


DOC = PipelineStage.DOCUMENT_ANALYSIS
QG = PipelineStage.QUESTION_GENERATION
REPORT = PipelineStage.REPORT


def build(store, document_worker=None, question_worker=None, report_worker=None, settings=MANUAL_SETTINGS):
    return PipelineOrchestrator(
        SESSION_ID,
        PROJECT_ID,
        store,
        document_worker or FakeDocumentWorker(),
        question_worker or FakeQuestionWorker(),
        report_worker,
        settings=settings,
    )


def complete_all(store, ids=DOCUMENT_IDS):
    for doc_id in ids:
        store.set_document(doc_id, "completed", 100)


async def start(orchestrator):
    await orchestrator.start()
    await orchestrator.drain()


async def refresh(orchestrator):
    applied = await orchestrator.refresh()
    await orchestrator.drain()
    return applied


# =====================================================================
# Start
# =====================================================================


class TestStart:
    """setup -> document_analysis."""

    @pytest.mark.asyncio
    async def test_start_moves_to_document_analysis(self, orchestrator, store, document_worker):
        stages = []
        orchestrator.on_stage_change(stages.append)
        async with orchestrator:
            await start(orchestrator)
            s = orchestrator.session
            assert s.current_stage is DOC
            assert s.stage(DOC).status is StageStatus.PROCESSING
            assert document_worker.calls == [(SESSION_ID, PROJECT_ID)]
            assert stages == [DOC]
            assert SessionStatus.PROCESSING in store.status_writes
            assert orchestrator.documents().total_count == 4
            assert orchestrator.poller.running

    @pytest.mark.asyncio
    async def test_double_start_raises(self, orchestrator):
        async with orchestrator:
            await start(orchestrator)
            with pytest.raises(ValueError, match="already started"):
                await orchestrator.start()

    @pytest.mark.asyncio
    async def test_worker_total_extends_expected_documents(self, store):
        orchestrator = build(store, FakeDocumentWorker(StartResult(success=True, total_documents=6)))
        async with orchestrator:
            await start(orchestrator)
            assert orchestrator.documents().total_count == 6
            complete_all(store)
            await refresh(orchestrator)
            assert not orchestrator.session.stage_completed[DOC], \
                "Two expected documents have no row yet"

    @pytest.mark.asyncio
    async def test_rejected_start_fails_stage(self, store):
        orchestrator = build(store, FakeDocumentWorker(StartResult(success=False, error="quota")))
        async with orchestrator:
            await start(orchestrator)
            s = orchestrator.session
            assert s.stage(DOC).status is StageStatus.FAILED
            assert s.stage(DOC).message == "quota"
            assert s.finished
            assert orchestrator.documents().error_count == 4
            assert SessionStatus.FAILED in store.status_writes

    @pytest.mark.asyncio
    async def test_zero_documents_fails_stage(self, store):
        orchestrator = build(store, FakeDocumentWorker(StartResult(success=True, total_documents=0)))
        async with orchestrator:
            await start(orchestrator)
            assert orchestrator.session.stage(DOC).status is StageStatus.FAILED

    @pytest.mark.asyncio
    async def test_start_timeout_leaves_stage_processing(self, store):
        orchestrator = build(store, FakeDocumentWorker(delay=2.0))
        async with orchestrator:
            await start(orchestrator)
            assert orchestrator.session.stage(DOC).status is StageStatus.PROCESSING
            assert orchestrator.activity_log[0].level == "warning"
            # The worker came up anyway; progress is still observed
            complete_all(store)
            await refresh(orchestrator)
            assert orchestrator.session.stage_completed[DOC]


# =====================================================================
# Progress
# =====================================================================


class TestProgress:

    @pytest.mark.asyncio
    async def test_three_completed_one_analyzing(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            complete_all(store, DOCUMENT_IDS[:3])
            store.set_document("doc-4", "analyzing", 50)
            await refresh(orchestrator)
            assert orchestrator.session.stage(DOC).progress == pytest.approx(83.33, abs=0.01)
            assert orchestrator.get_overall_progress() == pytest.approx(50.0, abs=0.01)

    @pytest.mark.asyncio
    async def test_stage_progress_never_decreases(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            seen = []
            store.set_document("doc-1", "analyzing", 10)
            await refresh(orchestrator)
            seen.append(orchestrator.session.stage(DOC).progress)
            store.set_document("doc-1", "completed", 100)
            store.set_document("doc-2", "analyzing", 5)
            await refresh(orchestrator)
            seen.append(orchestrator.session.stage(DOC).progress)
            # A stale row reporting doc-1 as still analyzing
            store.set_document("doc-1", "analyzing", 90)
            await refresh(orchestrator)
            seen.append(orchestrator.session.stage(DOC).progress)
            assert seen == sorted(seen)
            assert orchestrator.documents().completed_count == 1

    @pytest.mark.asyncio
    async def test_progress_written_to_store(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            complete_all(store, DOCUMENT_IDS[:2])
            await refresh(orchestrator)
            assert ("document_analysis", 50, None) in store.stage_writes

    @pytest.mark.asyncio
    async def test_write_hysteresis(self, store):
        settings = OrchestratorSettings(
            fast_interval=60, normal_interval=60, settling_interval=60, slow_interval=60,
            settle_delay=0, write_timeout=0.5, progress_write_delta=40,
        )
        orchestrator = build(store, settings=settings)
        async with orchestrator:
            await start(orchestrator)
            store.set_document("doc-1", "analyzing", 10)
            await refresh(orchestrator)
            assert [w for w in store.stage_writes if w[2] is None] == [], \
                "An 8-point move is below the write threshold"
            complete_all(store, DOCUMENT_IDS[:2])
            await refresh(orchestrator)
            assert ("document_analysis", 50, None) in store.stage_writes


# =====================================================================
# Document stage completion
# =====================================================================


class TestDocumentCompletion:

    @pytest.mark.asyncio
    async def test_completion_triggers_questions_once(self, orchestrator, store, question_worker):
        stages = []
        orchestrator.on_stage_change(stages.append)
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            for _ in range(4):
                await refresh(orchestrator)
            s = orchestrator.session
            assert len(question_worker.calls) == 1, "Question generation started more than once"
            assert s.stage_completed[DOC] and s.next_stage_triggered[DOC]
            assert s.current_stage is QG
            assert s.stage(DOC).progress == 100
            assert s.stage(QG).status is StageStatus.PROCESSING
            assert s.document_outcome is DocumentOutcome.ALL_SUCCEEDED
            assert stages == [DOC, QG]
            assert ("document_analysis", 100, StageStatus.COMPLETED) in store.stage_writes
            assert ("question_generation", 0, StageStatus.PROCESSING) in store.stage_writes
            assert question_worker.calls[0][1].document_ids == DOCUMENT_IDS

    @pytest.mark.asyncio
    async def test_partial_failure_advances(self, orchestrator, store, question_worker):
        async with orchestrator:
            await start(orchestrator)
            complete_all(store, DOCUMENT_IDS[:3])
            store.set_document("doc-4", "failed", error="corrupt file")
            await refresh(orchestrator)
            assert orchestrator.session.document_outcome is DocumentOutcome.PARTIAL_FAILURE
            assert len(question_worker.calls) == 1
            assert question_worker.calls[0][1].document_ids == DOCUMENT_IDS[:3], \
                "Only successfully analyzed documents feed question generation"
            assert any(e.level == "warning" for e in orchestrator.activity_log)

    @pytest.mark.asyncio
    async def test_total_failure_fails_next_stage(self, orchestrator, store, question_worker):
        async with orchestrator:
            await start(orchestrator)
            for doc_id in DOCUMENT_IDS:
                store.set_document(doc_id, "error", error="unreadable")
            for _ in range(3):
                await refresh(orchestrator)
            s = orchestrator.session
            assert s.stage(QG).status is StageStatus.FAILED
            assert s.next_stage_triggered[DOC] is False
            assert question_worker.calls == []
            assert s.finished
            assert s.document_outcome is DocumentOutcome.TOTAL_FAILURE
            assert SessionStatus.FAILED in store.status_writes

    @pytest.mark.asyncio
    async def test_worker_reported_stage_failure(self, orchestrator, store, question_worker):
        async with orchestrator:
            await start(orchestrator)
            store.set_stage("document_analysis", StageStatus.FAILED, message="worker crashed")
            await refresh(orchestrator)
            s = orchestrator.session
            assert s.stage(DOC).status is StageStatus.FAILED
            assert s.stage(DOC).message == "worker crashed"
            assert question_worker.calls == []
            assert s.finished

    @pytest.mark.asyncio
    async def test_question_start_failure(self, store):
        question = FakeQuestionWorker(StartResult(success=False, error="no analyses found"))
        orchestrator = build(store, question_worker=question)
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            await refresh(orchestrator)
            s = orchestrator.session
            assert s.stage(QG).status is StageStatus.FAILED
            assert s.stage(QG).message == "no analyses found"
            assert s.finished
            # No retry on later fetches
            await refresh(orchestrator)
            assert len(question.calls) == 1


# =====================================================================
# Later stages
# =====================================================================


class TestLaterStages:

    @pytest.mark.asyncio
    async def test_finishes_after_questions_without_report_worker(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            await refresh(orchestrator)
            store.set_stage("question_generation", StageStatus.PROCESSING, 50)
            await refresh(orchestrator)
            assert orchestrator.get_overall_progress() == pytest.approx(80.0)

            store.set_stage("question_generation", StageStatus.COMPLETED, 100)
            await refresh(orchestrator)
            s = orchestrator.session
            assert s.stage(QG).status is StageStatus.COMPLETED
            assert s.stage(REPORT).status is StageStatus.PENDING
            assert s.finished
            assert orchestrator.get_overall_progress() == 100.0
            assert store.status_writes[-1] is SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_report_stage(self, store):
        report = FakeReportWorker()
        orchestrator = build(store, report_worker=report)
        stages = []
        orchestrator.on_stage_change(stages.append)
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            await refresh(orchestrator)
            store.set_stage("question_generation", StageStatus.COMPLETED, 100)
            await refresh(orchestrator)
            await refresh(orchestrator)
            assert len(report.calls) == 1, "Report started more than once"
            assert orchestrator.session.current_stage is REPORT
            assert not orchestrator.session.finished

            # Legacy stage name written by older report workers
            store.set_stage("report_generation", StageStatus.COMPLETED, 100)
            await refresh(orchestrator)
            assert orchestrator.session.finished
            assert orchestrator.get_overall_progress() == 100.0
            assert stages == [DOC, QG, REPORT]

    @pytest.mark.asyncio
    async def test_question_failure_record(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            await refresh(orchestrator)
            store.set_stage("question_generation", StageStatus.FAILED, message="model error")
            await refresh(orchestrator)
            assert orchestrator.session.stage(QG).status is StageStatus.FAILED
            assert store.status_writes[-1] is SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_inline_question_generation_completes_from_start(self, store):
        question = FakeQuestionWorker(StartResult(success=True, generated_count=12))
        orchestrator = build(store, question_worker=question)
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            await refresh(orchestrator)
            s = orchestrator.session
            assert s.stage_completed[QG]
            assert s.stage(QG).status is StageStatus.COMPLETED
            assert s.stage(QG).message == "12 questions generated"
            assert s.finished
            assert orchestrator.get_overall_progress() == 100.0
            assert ("question_generation", 100, StageStatus.COMPLETED) in store.stage_writes
            assert store.status_writes[-1] is SessionStatus.COMPLETED
            assert orchestrator.poller.cadence is Cadence.STOPPED

    @pytest.mark.asyncio
    async def test_inline_question_generation_then_report(self, store):
        question = FakeQuestionWorker(StartResult(success=True, generated_count=1))
        report = FakeReportWorker()
        orchestrator = build(store, question_worker=question, report_worker=report)
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            await refresh(orchestrator)
            s = orchestrator.session
            assert s.stage(QG).message == "1 question generated"
            assert len(report.calls) == 1
            assert s.current_stage is REPORT
            assert not s.finished
            # The report worker writes its own record, so polling continues
            assert await orchestrator.poller.tick() is True

    @pytest.mark.asyncio
    async def test_no_fetch_after_documents_handed_off(self, store):
        question = FakeQuestionWorker(StartResult(success=True, generated_count=3), delay=0.1)
        orchestrator = build(store, question_worker=question)
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            assert await orchestrator.refresh() is True
            fetches = store.fetch_count
            for _ in range(3):
                assert await orchestrator.poller.tick() is False, \
                    "Documents are done and question generation is triggered"
            assert store.fetch_count == fetches
            await orchestrator.drain()
            assert orchestrator.session.finished
            assert store.fetch_count == fetches


# =====================================================================
# Concurrency: push and poll, stale responses
# =====================================================================


class TestConcurrentUpdates:

    @pytest.mark.asyncio
    async def test_push_and_poll_trigger_once(self):
        store = PushStateStore(DOCUMENT_IDS)
        question = FakeQuestionWorker()
        orchestrator = build(store, question_worker=question)
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            await asyncio.gather(orchestrator.refresh(), store.push(), store.push())
            await orchestrator.drain()
            assert len(question.calls) == 1

    @pytest.mark.asyncio
    async def test_slow_fetch_discarded_after_push_advances_stage(self):
        store = PushStateStore(DOCUMENT_IDS)
        question = FakeQuestionWorker()
        orchestrator = build(store, question_worker=question)
        async with orchestrator:
            await start(orchestrator)
            store.fetch_gate = asyncio.Event()
            slow = asyncio.create_task(orchestrator.refresh())
            await asyncio.sleep(0)

            complete_all(store)
            await store.push()
            await orchestrator.drain()
            assert orchestrator.session.current_stage is QG

            store.fetch_gate.set()
            assert await slow is False, "Fetch captured before the advance must be discarded"
            await orchestrator.drain()
            assert len(question.calls) == 1

    @pytest.mark.asyncio
    async def test_push_for_other_session_rejected(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.apply_change(StateChange(session_id="other"))

    @pytest.mark.asyncio
    async def test_unsubscribed_on_stop(self):
        store = PushStateStore(DOCUMENT_IDS)
        orchestrator = build(store)
        await start(orchestrator)
        assert SESSION_ID in store.handlers
        await orchestrator.stop()
        assert SESSION_ID not in store.handlers

    @pytest.mark.asyncio
    async def test_poller_single_flight_with_slow_fetch(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            store.fetch_gate = asyncio.Event()
            first = asyncio.create_task(orchestrator.poller.tick())
            await asyncio.sleep(0)
            assert await orchestrator.poller.tick() is False
            assert store.fetch_count == 1
            store.fetch_gate.set()
            assert await first is True
            assert store.fetch_count == 1


# =====================================================================
# Errors
# =====================================================================


class TestErrors:

    @pytest.mark.asyncio
    async def test_fetch_error_raises_transient(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            store.fail_fetches = 1
            with pytest.raises(TransientFetchError):
                await orchestrator.refresh()
            assert orchestrator.activity_log[0].level == "warning"

    @pytest.mark.asyncio
    async def test_poller_recovers_from_fetch_error(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            store.fail_fetches = 1
            assert await orchestrator.poller.tick() is True, "A failed fetch must not escape tick()"
            assert orchestrator.activity_log[0].level == "warning"
            complete_all(store)
            await orchestrator.poller.tick()
            await orchestrator.drain()
            assert orchestrator.session.stage_completed[DOC]

    @pytest.mark.asyncio
    async def test_stalled_writes_do_not_block_pipeline(self, store, question_worker):
        store.write_gate = asyncio.Event()
        orchestrator = build(store, question_worker=question_worker)
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            await refresh(orchestrator)
            assert store.stage_writes == []
            assert len(question_worker.calls) == 1, \
                "Write timeouts must not stop the pipeline"


# =====================================================================
# Persisted writes
# =====================================================================


class SlowProgressWriteStore(InMemoryStateStore):
    """Delays writes of one progress value, like a slow database round trip."""

    def __init__(self, document_ids, slow_percent):
        super().__init__(document_ids)
        self.slow_percent = slow_percent

    async def update_stage_progress(self, session_id, stage, percent, *, status=None, message=None):
        if percent == self.slow_percent:
            await asyncio.sleep(0.1)
        await super().update_stage_progress(session_id, stage, percent, status=status, message=message)


class TestWrites:

    @pytest.mark.asyncio
    async def test_writes_land_in_emit_order(self):
        store = SlowProgressWriteStore(DOCUMENT_IDS, slow_percent=50)
        orchestrator = build(store)
        async with orchestrator:
            await start(orchestrator)
            complete_all(store, DOCUMENT_IDS[:2])
            await orchestrator.refresh()
            complete_all(store)
            await orchestrator.refresh()
            await orchestrator.drain()
            doc_writes = [w for w in store.stage_writes if w[0] == "document_analysis"]
            assert doc_writes == [
                ("document_analysis", 0, StageStatus.PROCESSING),
                ("document_analysis", 50, None),
                ("document_analysis", 100, StageStatus.COMPLETED),
            ], "A slow progress write must not land after the completion write"


# =====================================================================
# Consumer controls
# =====================================================================


class TestControls:

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            orchestrator.pause()
            assert await orchestrator.poller.tick() is False
            assert store.fetch_count == 0
            assert orchestrator.status().paused
            orchestrator.resume()
            assert await orchestrator.poller.tick() is True
            assert store.fetch_count == 1

    @pytest.mark.asyncio
    async def test_restart_resets_everything(self, orchestrator, store, document_worker, question_worker):
        async with orchestrator:
            await start(orchestrator)
            complete_all(store)
            await refresh(orchestrator)
            assert orchestrator.session.next_stage_triggered[DOC]

            await orchestrator.restart()
            s = orchestrator.session
            snap = orchestrator.documents()
            assert all(job.status is DocumentStatus.PENDING for job in snap.jobs)
            assert all(job.progress == 0 for job in snap.jobs)
            assert snap.total_count == 4
            assert not any(s.stage_completed.values())
            assert not any(s.next_stage_triggered.values())
            assert all(state.progress == 0 for state in s.stages.values())
            assert s.current_stage is PipelineStage.SETUP
            assert s.run_id == 1
            assert orchestrator.activity_log == ()
            assert store.reset_count == 1

            await start(orchestrator)
            assert len(document_worker.calls) == 2
            complete_all(store)
            await refresh(orchestrator)
            assert len(question_worker.calls) == 2, "A restarted run triggers its own next stage"

    @pytest.mark.asyncio
    async def test_fetch_from_previous_run_discarded(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            store.fetch_gate = asyncio.Event()
            slow = asyncio.create_task(orchestrator.refresh())
            await asyncio.sleep(0)
            complete_all(store)

            await orchestrator.restart()
            store.fetch_gate.set()
            assert await slow is False
            assert orchestrator.documents().completed_count == 0

    @pytest.mark.asyncio
    async def test_stop_records_cancellation(self, orchestrator, store):
        await start(orchestrator)
        await orchestrator.stop()
        assert not orchestrator.poller.running
        assert store.status_writes[-1] is SessionStatus.CANCELLED
        with pytest.raises(ValueError, match="has been stopped"):
            await orchestrator.start()

    @pytest.mark.asyncio
    async def test_status_view(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            store.set_document("doc-1", "analyzing", 40)
            await refresh(orchestrator)
            status = orchestrator.status()
            assert status.session_id == SESSION_ID
            assert status.current_stage is DOC
            assert status.stages["document_analysis"].status is StageStatus.PROCESSING
            assert status.documents.analyzing_count == 1
            assert status.poll_cadence == "fast"
            assert status.overall_progress == pytest.approx(5.0)
            assert [e.message for e in status.activity] == [
                "Document analysis started",
                "Starting document analysis for 4 documents",
            ]

    @pytest.mark.asyncio
    async def test_cadence_follows_phase(self, orchestrator, store):
        async with orchestrator:
            await start(orchestrator)
            assert orchestrator.poller.cadence is Cadence.NORMAL
            store.set_document("doc-1", "analyzing", 10)
            await refresh(orchestrator)
            assert orchestrator.poller.cadence is Cadence.FAST
            complete_all(store)
            await refresh(orchestrator)
            assert orchestrator.poller.cadence is Cadence.SLOW
