import pytest

from helpers.fakes import (
    FakeDocumentWorker,
    FakeQuestionWorker,
    InMemoryStateStore,
    MANUAL_SETTINGS,
    PROJECT_ID,
    SESSION_ID,
)
from proposal_pipeline.orchestrator import PipelineOrchestrator

DOCUMENT_IDS = ["doc-1", "doc-2", "doc-3", "doc-4"]


@pytest.fixture
def store():
    return InMemoryStateStore(DOCUMENT_IDS)

@pytest.fixture
def document_worker():
    return FakeDocumentWorker()

@pytest.fixture
def question_worker():
    return FakeQuestionWorker()

@pytest.fixture
def orchestrator(store, document_worker, question_worker):
    return PipelineOrchestrator(
        SESSION_ID,
        PROJECT_ID,
        store,
        document_worker,
        question_worker,
        settings=MANUAL_SETTINGS,
    )
