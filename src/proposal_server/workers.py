"""HTTP clients for the external stage workers.

Each worker posts a start request to the worker service and maps the JSON
reply onto ``StartResult``.  Progress itself is never read from these
replies; the workers write it into the database, where the orchestrator's
state store picks it up.

Worker service endpoints::

    POST /documents/analyze   {session_id, project_id}
    POST /questions/generate  {session_id, options}
    POST /reports/generate    {session_id, options}
"""

import logging
from typing import Any

import httpx

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

logger = logging.getLogger(__name__)


class WorkerClient:
    """Shared ``httpx.AsyncClient`` for every worker in the process."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def post(self, stage: str, path: str, payload: dict[str, Any]) -> StartResult:
        """POST *payload* to *path* and parse the reply.

        Transport errors and non-2xx replies raise ``JobStartError``; a 2xx
        reply with ``success: false`` is returned as-is.
        """
        try:
            response = await self._client.post(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _error_detail(exc.response)
            raise JobStartError(stage, f"worker returned {exc.response.status_code}: {detail}") from exc
        except httpx.HTTPError as exc:
            raise JobStartError(stage, f"worker unreachable: {exc}") from exc

        body = response.json()
        logger.debug("Worker %s replied: %s", path, body)
        return StartResult(
            success=bool(body.get("success", True)),
            total_documents=body.get("total_documents", body.get("totalDocuments")),
            generated_count=body.get("generated_count", body.get("generatedCount")),
            error=body.get("error"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)


class HttpDocumentAnalysisWorker(DocumentAnalysisWorker):
    def __init__(self, client: WorkerClient) -> None:
        self._client = client

    async def start(self, session_id: str, project_id: str) -> StartResult:
        return await self._client.post(
            "document_analysis",
            "/documents/analyze",
            {"session_id": session_id, "project_id": project_id},
        )


class HttpQuestionGenerationWorker(QuestionGenerationWorker):
    def __init__(self, client: WorkerClient) -> None:
        self._client = client

    async def start(
        self, session_id: str, options: QuestionGenerationOptions
    ) -> StartResult:
        return await self._client.post(
            "question_generation",
            "/questions/generate",
            {"session_id": session_id, "options": options.model_dump()},
        )


class HttpReportWorker(ReportWorker):
    def __init__(self, client: WorkerClient) -> None:
        self._client = client

    async def start(
        self, session_id: str, options: ReportGenerationOptions
    ) -> StartResult:
        return await self._client.post(
            "report",
            "/reports/generate",
            {"session_id": session_id, "options": options.model_dump()},
        )
