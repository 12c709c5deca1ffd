"""Abstract interfaces for the orchestrator's external collaborators.

These ABCs define the contract that external implementations must fulfil.
The SDK ships one concrete state store (``RepositoryStateStore``, backed by
``proposal_db``); workers live in the consumer layer (``proposal_server``
posts to an HTTP worker service) or in tests as in-memory fakes.

Typical integration flow::

    store: PersistedStateStore = RepositoryStateStore()
    orchestrator = PipelineOrchestrator(
        session_id, project_id, store,
        document_worker=MyAnalysisWorker(...),
        question_worker=MyQuestionWorker(...),
    )
    async with orchestrator:
        await orchestrator.start()
        # ... workers write progress into the store; the orchestrator
        # polls it, advances stages and records activity ...
"""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from proposal_db.models.enums import SessionStatus, StageStatus
from proposal_pipeline.models.records import (
    DocumentStatusRecord,
    QuestionGenerationOptions,
    ReportGenerationOptions,
    StageRecord,
    StartResult,
    StateChange,
)

ChangeHandler = Callable[[StateChange], Awaitable[None]]


class PersistedStateStore(ABC):
    """Source of truth for stage and document state.

    Workers mutate this state asynchronously; the orchestrator reads it on
    every poll tick and writes back the progress it computes.  Read
    failures should raise ``TransientFetchError``.
    """

    @abstractmethod
    async def get_stage_progress(self, session_id: str) -> dict[str, StageRecord]:
        """Return the persisted record of every stage, keyed by stage name.

        Stages without a row are simply absent from the mapping.
        """
        ...

    @abstractmethod
    async def get_document_statuses(
        self, session_id: str
    ) -> dict[str, DocumentStatusRecord]:
        """Return the persisted status of every document, keyed by id."""
        ...

    @abstractmethod
    async def update_stage_progress(
        self,
        session_id: str,
        stage: str,
        percent: int,
        *,
        status: StageStatus | None = None,
        message: str | None = None,
    ) -> None:
        """Write a stage's progress percentage.

        Parameters
        ----------
        session_id:
            Pipeline session identifier.
        stage:
            Stage name (``PipelineStage`` value).
        percent:
            Progress in [0, 100].
        status, message:
            Optional stage status and message.  ``None`` leaves the
            persisted value unchanged.
        """
        ...

    @abstractmethod
    async def update_session_status(
        self, session_id: str, status: SessionStatus
    ) -> None:
        """Write the session's lifecycle status."""
        ...

    async def reset_session(self, session_id: str) -> None:
        """Discard persisted stage and document progress before a restart.

        Stores that cannot reset leave this as a no-op; the orchestrator
        then relies on ``run_id`` and stage gating to ignore old rows.
        """
        return None


class ProgressSubscriber(ABC):
    """Optional push capability of a state store.

    A store implementing both ``PersistedStateStore`` and this interface
    delivers changes as they happen; the orchestrator funnels them through
    the same reducer as poll fetches.
    """

    @abstractmethod
    def subscribe(
        self, session_id: str, handler: ChangeHandler
    ) -> Callable[[], None]:
        """Register *handler* for changes to *session_id*.

        Returns
        -------
        Callable[[], None]
            Unsubscribe function; calling it more than once is harmless.
        """
        ...


class DocumentAnalysisWorker(ABC):
    """Starts asynchronous per-document analysis for a session.

    Per-document progress is observed only through the state store.
    """

    @abstractmethod
    async def start(self, session_id: str, project_id: str) -> StartResult:
        """Begin analysis; report ``total_documents`` on success."""
        ...


class QuestionGenerationWorker(ABC):
    """Generates follow-up questions from the analysed documents."""

    @abstractmethod
    async def start(
        self, session_id: str, options: QuestionGenerationOptions
    ) -> StartResult:
        """Begin generation.

        A worker that generates inline answers with ``generated_count`` and
        the stage completes from that answer.  A worker that only queues the
        job leaves ``generated_count`` unset and writes a stage record when
        it finishes.
        """
        ...


class ReportWorker(ABC):
    """Produces the final report once questions are generated.

    Optional: without a report worker the pipeline finishes when question
    generation completes and the report stage stays pending.
    """

    @abstractmethod
    async def start(
        self, session_id: str, options: ReportGenerationOptions
    ) -> StartResult:
        """Begin report generation."""
        ...
