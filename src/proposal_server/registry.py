"""In-process registry of running orchestrators, keyed by session_id.

The server is the orchestrator's "reactive client": each pipeline created
through the API gets one ``PipelineOrchestrator`` living in this process
until it is deleted, evicted after finishing, or the server shuts down.
"""

import logging
from typing import Callable

from proposal_pipeline.models.records import (
    QuestionGenerationOptions,
    ReportGenerationOptions,
)
from proposal_pipeline.orchestrator import PipelineOrchestrator

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[
    [str, str, QuestionGenerationOptions | None, ReportGenerationOptions | None],
    PipelineOrchestrator,
]


class OrchestratorRegistry:
    """Creates, looks up and tears down orchestrators.

    Finished or stopped orchestrators stay readable until more than
    ``max_retained`` of them accumulate; ``create()`` then evicts the
    oldest ones.  Their session rows remain in the database.
    """

    def __init__(
        self,
        factory: OrchestratorFactory,
        max_active: int = 50,
        max_retained: int = 100,
    ) -> None:
        self._factory = factory
        self._max_active = max_active
        self._max_retained = max_retained
        # Insertion order is creation order
        self._orchestrators: dict[str, PipelineOrchestrator] = {}

    def __len__(self) -> int:
        return len(self._orchestrators)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._orchestrators

    @property
    def active_count(self) -> int:
        """Orchestrators that have not finished or been stopped."""
        return sum(1 for o in self._orchestrators.values() if not _is_done(o))

    def get(self, session_id: str) -> PipelineOrchestrator:
        orchestrator = self._orchestrators.get(session_id)
        if orchestrator is None:
            raise ValueError(f"Pipeline not found: session_id={session_id}")
        return orchestrator

    def list_pipelines(self, project_id: str | None = None) -> list[PipelineOrchestrator]:
        return [
            o for o in self._orchestrators.values()
            if project_id is None or o.project_id == project_id
        ]

    async def create(
        self,
        session_id: str,
        project_id: str,
        question_options: QuestionGenerationOptions | None = None,
        report_options: ReportGenerationOptions | None = None,
    ) -> PipelineOrchestrator:
        """Build and register an orchestrator (not yet started)."""
        if session_id in self._orchestrators:
            raise ValueError(f"Pipeline already exists: session_id={session_id}")
        if self.active_count >= self._max_active:
            raise ValueError(f"Active pipeline limit reached ({self._max_active})")
        await self.evict_finished()
        orchestrator = self._factory(session_id, project_id, question_options, report_options)
        self._orchestrators[session_id] = orchestrator
        logger.info("Registered pipeline %s (project %s)", session_id, project_id)
        return orchestrator

    async def evict_finished(self) -> list[str]:
        """Release the oldest finished orchestrators beyond ``max_retained``.

        Returns the evicted session ids.
        """
        done = [sid for sid, o in self._orchestrators.items() if _is_done(o)]
        evicted = done[:max(len(done) - self._max_retained, 0)]
        for session_id in evicted:
            await self.remove(session_id)
        if evicted:
            logger.info("Evicted %d finished pipelines", len(evicted))
        return evicted

    async def remove(self, session_id: str) -> None:
        """Stop the orchestrator and forget it."""
        orchestrator = self.get(session_id)
        await orchestrator.stop()
        del self._orchestrators[session_id]
        logger.info("Removed pipeline %s", session_id)

    async def shutdown(self) -> None:
        """Stop every orchestrator (server shutdown)."""
        for session_id in list(self._orchestrators):
            await self.remove(session_id)


def _is_done(orchestrator: PipelineOrchestrator) -> bool:
    return orchestrator.session.finished or orchestrator.stopped
