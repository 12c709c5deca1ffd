"""ORM models for proposal_db."""

from proposal_db.models.base import Base
from proposal_db.models.enums import (
    DocumentStatus,
    PipelineStage,
    SessionStatus,
    StageStatus,
)
from proposal_db.models.progress import DocumentAnalysis, StageProgress
from proposal_db.models.session import AnalysisSession

__all__ = [
    "Base",
    "DocumentStatus",
    "PipelineStage",
    "SessionStatus",
    "StageStatus",
    "AnalysisSession",
    "DocumentAnalysis",
    "StageProgress",
]
