"""Pipeline constants shared across the SDK.

Stage weights and ordering are fixed by the progress model.  The poll
cadences can be overridden via environment variables so deployments can
trade freshness for database load without code changes.
"""

import os

from proposal_db.models.enums import DocumentStatus, PipelineStage

# Forward order of the macro-stages.  ``current_stage`` only ever moves to
# a later index (a restart resets it to ``setup``).
STAGE_ORDER: list[PipelineStage] = [
    PipelineStage.SETUP,
    PipelineStage.DOCUMENT_ANALYSIS,
    PipelineStage.QUESTION_GENERATION,
    PipelineStage.REPORT,
]

# Stage that follows each stage which can trigger a successor.
NEXT_STAGE: dict[PipelineStage, PipelineStage] = {
    PipelineStage.SETUP: PipelineStage.DOCUMENT_ANALYSIS,
    PipelineStage.DOCUMENT_ANALYSIS: PipelineStage.QUESTION_GENERATION,
    PipelineStage.QUESTION_GENERATION: PipelineStage.REPORT,
}

# Stages whose completion is tracked with the one-shot
# stage_completed / next_stage_triggered flag pair.
TRANSITION_STAGES: tuple[PipelineStage, ...] = (
    PipelineStage.DOCUMENT_ANALYSIS,
    PipelineStage.QUESTION_GENERATION,
)

# Contribution of each stage to the overall percentage.  The report stage
# sits outside the weighted formula and counts as 100 once produced.
STAGE_WEIGHTS: dict[PipelineStage, float] = {
    PipelineStage.DOCUMENT_ANALYSIS: 0.6,
    PipelineStage.QUESTION_GENERATION: 0.4,
}

# Document-stage formula: completed documents earn 60 points, documents in
# flight earn up to 20, and the sum is rescaled so all-completed is 100.
COMPLETED_DOCUMENT_POINTS = 60.0
ANALYZING_DOCUMENT_POINTS = 20.0

# Poll cadences in seconds.
FAST_POLL_INTERVAL = float(os.getenv("PIPELINE_FAST_INTERVAL", "3"))
NORMAL_POLL_INTERVAL = float(os.getenv("PIPELINE_NORMAL_INTERVAL", "5"))
SETTLING_POLL_INTERVAL = float(os.getenv("PIPELINE_SETTLING_INTERVAL", "10"))
SLOW_POLL_INTERVAL = float(os.getenv("PIPELINE_SLOW_INTERVAL", "15"))

# Worker status strings vary between writers; everything is folded onto
# the four DocumentStatus values.  Unknown strings read as pending.
RAW_DOCUMENT_STATUSES: dict[str, DocumentStatus] = {
    "pending": DocumentStatus.PENDING,
    "queued": DocumentStatus.PENDING,
    "analyzing": DocumentStatus.ANALYZING,
    "in_progress": DocumentStatus.ANALYZING,
    "processing": DocumentStatus.ANALYZING,
    "completed": DocumentStatus.COMPLETED,
    "error": DocumentStatus.ERROR,
    "failed": DocumentStatus.ERROR,
}

# Stage names written by older workers.
RAW_STAGE_ALIASES: dict[str, str] = {
    "report_generation": PipelineStage.REPORT.value,
    "questions": PipelineStage.QUESTION_GENERATION.value,
    "analysis": PipelineStage.DOCUMENT_ANALYSIS.value,
}

# Default question-generation request sent once documents are analysed.
DEFAULT_QUESTION_CATEGORIES: list[str] = [
    "technical", "business", "risks", "budget", "timeline",
]
DEFAULT_MAX_QUESTIONS = 20
