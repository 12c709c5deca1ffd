"""Database-level enumerations for pre-analysis pipeline sessions."""

import enum


class SessionStatus(str, enum.Enum):
    """Lifecycle states for a pipeline session row.

    Transitions:
        created -> processing   (document analysis started)
        processing -> completed (question generation, or the report, finished)
        processing -> failed    (a stage failed; no automatic retry)
        * -> cancelled          (pipeline stopped by the consumer)
    """

    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineStage(str, enum.Enum):
    """Macro-stage of the pre-analysis pipeline.

    Transitions (forward only; a restart resets to ``setup``):
        setup -> document_analysis          (analysis worker started)
        document_analysis -> question_generation  (all documents processed)
        question_generation -> report       (questions generated)
    """

    SETUP = "setup"
    DOCUMENT_ANALYSIS = "document_analysis"
    QUESTION_GENERATION = "question_generation"
    REPORT = "report"


class StageStatus(str, enum.Enum):
    """Per-stage status.  ``completed`` and ``failed`` are terminal."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentStatus(str, enum.Enum):
    """Per-document analysis status.

    Monotonic: pending -> analyzing -> {completed | error}.
    """

    PENDING = "pending"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    ERROR = "error"
