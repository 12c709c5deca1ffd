#!/usr/bin/env python3
"""Simulate a pre-analysis pipeline end-to-end with an in-memory store.

Runs a real ``PipelineOrchestrator`` (real poller, real stage transitions)
against simulated workers that write progress into an in-memory state
store, the way the production workers write into the database.  Prints the
stage transitions, the activity trail and the final status.

By default document outcomes are **randomised** (``--random``, on by
default): each document may fail with probability ``--fail-rate``.  Use
``--no-random`` for a deterministic all-success run.

Usage::

    # Default run (6 documents, random failures)
    python scripts/simulate_pipeline.py

    # Deterministic run with the report stage enabled
    python scripts/simulate_pipeline.py --no-random --reports

    # Force a total failure
    python scripts/simulate_pipeline.py --fail-rate 1.0

    # Push mode: the store notifies the orchestrator on every write
    python scripts/simulate_pipeline.py --push

    # Restart once mid-run
    python scripts/simulate_pipeline.py --restart-at 40
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import sys
import time
from pathlib import Path

# ---------------------------------------------------------------------------
# Ensure project root is on sys.path so we can import both the SDK and
# test mock infrastructure.
# ---------------------------------------------------------------------------
_SCRIPT_DIR = Path(__file__).resolve().parent
_REPO_ROOT = _SCRIPT_DIR.parent
sys.path.insert(0, str(_REPO_ROOT / "tests"))
sys.path.insert(0, str(_REPO_ROOT / "src"))

from helpers.fakes import InMemoryStateStore, PushStateStore  # noqa: E402

from proposal_db.models.enums import StageStatus  # noqa: E402
from proposal_pipeline.config import OrchestratorSettings  # noqa: E402
from proposal_pipeline.interfaces import (  # noqa: E402
    DocumentAnalysisWorker,
    QuestionGenerationWorker,
    ReportWorker,
)
from proposal_pipeline.models.records import StartResult  # noqa: E402
from proposal_pipeline.orchestrator import PipelineOrchestrator  # noqa: E402

# ---------------------------------------------------------------------------
# Constants for the simulation
# ---------------------------------------------------------------------------

SESSION_ID = "sim_session"
PROJECT_ID = "sim_project"

# Fast cadences so a full run takes a few seconds
SIM_SETTINGS = OrchestratorSettings(
    fast_interval=0.2,
    normal_interval=0.3,
    settling_interval=0.5,
    slow_interval=0.5,
    hysteresis=0.05,
    settle_delay=0.3,
    start_timeout=2.0,
    write_timeout=1.0,
    activity_log_size=50,
)

# Simulated worker step time (seconds) and progress per step
_STEP = 0.15
_DOC_INCREMENT = 25
_QG_INCREMENT = 20

_FILE_NAMES = [
    "rfp_main.pdf", "technical_annex.docx", "budget.xlsx",
    "timeline.pdf", "evaluation_criteria.pdf", "contract_draft.docx",
    "security_requirements.pdf", "appendix_a.pdf",
]


_quiet = False


def _print(*args, **kwargs) -> None:
    """Print wrapper that respects the --quiet flag."""
    if not _quiet:
        print(*args, **kwargs)


# ---------------------------------------------------------------------------
# Simulated workers: write progress into the store like the real ones
# ---------------------------------------------------------------------------


class _Writer:
    """Shared helpers for workers that mutate the in-memory store."""

    def __init__(self, store: InMemoryStateStore) -> None:
        self.store = store
        self.tasks: set[asyncio.Task] = set()

    def spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def notify(self) -> None:
        if isinstance(self.store, PushStateStore):
            await self.store.push()

    async def cancel(self) -> None:
        for task in list(self.tasks):
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)


class SimDocumentWorker(_Writer, DocumentAnalysisWorker):
    """Analyses every document concurrently; some fail."""

    def __init__(self, store, rng: random.Random, fail_rate: float) -> None:
        super().__init__(store)
        self.rng = rng
        self.fail_rate = fail_rate

    async def start(self, session_id, project_id):
        doc_ids = list(self.store.documents)
        for doc_id in doc_ids:
            self.spawn(self._analyze(doc_id))
        return StartResult(success=True, total_documents=len(doc_ids))

    async def _analyze(self, doc_id: str) -> None:
        await asyncio.sleep(self.rng.uniform(0, 3 * _STEP))
        will_fail = self.rng.random() < self.fail_rate
        progress = 0
        while progress < 100:
            await asyncio.sleep(self.rng.uniform(_STEP, 2 * _STEP))
            progress = min(100, progress + _DOC_INCREMENT)
            if will_fail and progress >= 50:
                self.store.set_document(doc_id, "failed", progress, error="Could not extract text")
                await self.notify()
                return
            status = "completed" if progress == 100 else "analyzing"
            self.store.set_document(doc_id, status, progress)
            await self.notify()


class SimQuestionWorker(_Writer, QuestionGenerationWorker):
    """Queues generation and writes question_generation stage progress until completed."""

    async def start(self, session_id, options):
        self.spawn(self._generate(options.max_questions))
        return StartResult(success=True)

    async def _generate(self, max_questions: int) -> None:
        progress = 0
        while progress < 100:
            await asyncio.sleep(_STEP)
            progress = min(100, progress + _QG_INCREMENT)
            status = StageStatus.COMPLETED if progress == 100 else StageStatus.PROCESSING
            message = f"Generated {max_questions * progress // 100} of {max_questions} questions"
            self.store.set_stage("question_generation", status, progress, message)
            await self.notify()


class SimReportWorker(_Writer, ReportWorker):
    """Writes a completed report record after a short delay."""

    async def start(self, session_id, options):
        self.spawn(self._render(options.format))
        return StartResult(success=True)

    async def _render(self, fmt: str) -> None:
        await asyncio.sleep(3 * _STEP)
        self.store.set_stage(
            "report", StageStatus.COMPLETED, 100, f"Report rendered as {fmt}",
        )
        await self.notify()


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------

_DOUBLE_LINE = "=" * 62


def log_header(title: str) -> None:
    _print(f"\n{_DOUBLE_LINE}")
    _print(f" {title}")
    _print(_DOUBLE_LINE)


def log_new_activity(orchestrator: PipelineOrchestrator, seen: set[tuple]) -> None:
    """Print activity entries not printed yet, oldest first."""
    for event in reversed(orchestrator.activity_log):
        key = (event.timestamp, event.message)
        if key in seen:
            continue
        seen.add(key)
        stamp = event.timestamp.strftime("%H:%M:%S.%f")[:-3]
        _print(f" {stamp} [{event.level.upper():7s}] {event.message}")


def log_status(orchestrator: PipelineOrchestrator) -> None:
    status = orchestrator.status()
    docs = status.documents
    log_header("RESULT")
    for name, stage in status.stages.items():
        message = f" - {stage.message}" if stage.message else ""
        _print(f" {name:<22s} {stage.status.value:<11s} {stage.progress:5.1f}%{message}")
    _print(f"\n Documents:   {docs.completed_count} completed, {docs.error_count} failed "
           f"of {docs.total_count}")
    outcome = status.document_outcome.value if status.document_outcome else "(none)"
    _print(f" Outcome:     {outcome}")
    _print(f" Overall:     {status.overall_progress:.1f}%")
    _print(f" Elapsed:     {status.elapsed_seconds:.1f}s (run {status.run_id})")


# ---------------------------------------------------------------------------
# Simulation
# ---------------------------------------------------------------------------


async def run_simulation(
    documents: int,
    use_random: bool,
    seed: int | None,
    fail_rate: float,
    reports: bool,
    push: bool,
    restart_at: float | None,
    timeout: float,
) -> bool:
    """Run one pipeline to completion.  Returns True when it finished."""
    rng = random.Random(seed)
    if not use_random:
        fail_rate = 0.0

    doc_ids = [f"doc-{i + 1}" for i in range(documents)]
    store = PushStateStore(doc_ids) if push else InMemoryStateStore(doc_ids)
    for i, doc_id in enumerate(doc_ids):
        store.documents[doc_id] = store.documents[doc_id].model_copy(
            update={"file_name": _FILE_NAMES[i % len(_FILE_NAMES)]}
        )

    document_worker = SimDocumentWorker(store, rng, fail_rate)
    question_worker = SimQuestionWorker(store)
    report_worker = SimReportWorker(store) if reports else None
    workers = [w for w in (document_worker, question_worker, report_worker) if w is not None]

    orchestrator = PipelineOrchestrator(
        SESSION_ID,
        PROJECT_ID,
        store,
        document_worker,
        question_worker,
        report_worker,
        settings=SIM_SETTINGS,
    )
    orchestrator.on_stage_change(
        lambda stage: log_header(f"PIPELINE STAGE: {stage.value}")
    )

    log_header(
        f"SIMULATION: {documents} documents, fail rate {fail_rate:.0%}, "
        f"{'push' if push else 'poll'} mode"
    )

    seen: set[tuple] = set()
    restarted = restart_at is None
    deadline = time.monotonic() + timeout
    async with orchestrator:
        await orchestrator.start()
        while not orchestrator.session.finished and time.monotonic() < deadline:
            await asyncio.sleep(0.1)
            log_new_activity(orchestrator, seen)
            if not restarted and orchestrator.get_overall_progress() >= restart_at:
                restarted = True
                log_header("RESTART")
                for worker in workers:
                    await worker.cancel()
                await orchestrator.restart()
                await orchestrator.start()
        await orchestrator.drain()
        log_new_activity(orchestrator, seen)
        log_status(orchestrator)
        finished = orchestrator.session.finished

        for worker in workers:
            await worker.cancel()

    if not finished:
        _print(f"\n [!] Pipeline did not finish within {timeout:.0f}s")
    return finished


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Simulate the pre-analysis pipeline end-to-end with an in-memory store.",
    )
    parser.add_argument(
        "-n", "--documents",
        type=int, default=6,
        help="Number of documents to analyse (default: 6)",
    )
    parser.add_argument(
        "--random",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Randomise document failures (default: on). Use --no-random for all-success.",
    )
    parser.add_argument(
        "--seed",
        type=int, default=None,
        help="RNG seed for reproducibility",
    )
    parser.add_argument(
        "--fail-rate",
        type=float, default=0.2,
        help="Per-document failure probability in random mode (default: 0.2)",
    )
    parser.add_argument(
        "--reports",
        action="store_true",
        help="Enable the report stage after question generation",
    )
    parser.add_argument(
        "--push",
        action="store_true",
        help="Deliver store writes as push notifications in addition to polling",
    )
    parser.add_argument(
        "--restart-at",
        type=float, default=None,
        help="Restart once when overall progress reaches this percentage",
    )
    parser.add_argument(
        "--timeout",
        type=float, default=60.0,
        help="Give up after this many seconds (default: 60)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show SDK debug logs",
    )
    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress all print output (exit code still reflects success/failure)",
    )
    args = parser.parse_args()

    global _quiet
    _quiet = args.quiet
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    if args.quiet:
        logging.disable(logging.CRITICAL)

    finished = asyncio.run(run_simulation(
        args.documents, args.random, args.seed, args.fail_rate,
        args.reports, args.push, args.restart_at, args.timeout,
    ))
    sys.exit(0 if finished else 1)


if __name__ == "__main__":
    main()
