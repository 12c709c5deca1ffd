"""proposal_pipeline — orchestrator SDK for proposal pre-analysis pipelines.

Public API:
    PipelineOrchestrator    — drives one session through its stages
    OrchestratorSettings    — tuning knobs (intervals, timeouts, thresholds)
    load_settings           — settings from PIPELINE_* environment variables
    DocumentJobTracker      — merges document status updates monotonically
    CompletionDetector      — one-shot stage completion signals
    StageTransitionCoordinator — exactly-once next-stage starts
    AdaptivePoller, Cadence — phase-dependent polling scheduler
    ActivityLog             — bounded newest-first event trail
    compute_document_stage_progress, compute_overall_progress
    PersistedStateStore, ProgressSubscriber — state source interfaces
    DocumentAnalysisWorker, QuestionGenerationWorker, ReportWorker
    RepositoryStateStore    — PersistedStateStore backed by proposal_db
"""

from proposal_pipeline.activity_log import ActivityLog
from proposal_pipeline.aggregator import (
    compute_document_stage_progress,
    compute_overall_progress,
)
from proposal_pipeline.config import OrchestratorSettings, load_settings
from proposal_pipeline.coordinator import (
    StageTransitionCoordinator,
    StageTrigger,
    TransitionOutcome,
    TransitionResult,
)
from proposal_pipeline.detector import CompletionDetector, CompletionSignal
from proposal_pipeline.errors import (
    JobStartError,
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
from proposal_pipeline.orchestrator import PipelineOrchestrator
from proposal_pipeline.poller import AdaptivePoller, Cadence
from proposal_pipeline.state_store import RepositoryStateStore
from proposal_pipeline.tracker import DocumentJobTracker

__all__ = [
    "ActivityLog",
    "compute_document_stage_progress",
    "compute_overall_progress",
    "OrchestratorSettings",
    "load_settings",
    "StageTransitionCoordinator",
    "StageTrigger",
    "TransitionOutcome",
    "TransitionResult",
    "CompletionDetector",
    "CompletionSignal",
    "JobStartError",
    "PersistenceTimeout",
    "PipelineError",
    "TransientFetchError",
    "DocumentAnalysisWorker",
    "PersistedStateStore",
    "ProgressSubscriber",
    "QuestionGenerationWorker",
    "ReportWorker",
    "PipelineOrchestrator",
    "AdaptivePoller",
    "Cadence",
    "RepositoryStateStore",
    "DocumentJobTracker",
]
