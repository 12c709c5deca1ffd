"""proposal_db — PostgreSQL persistence layer for pre-analysis pipelines.

This package provides the ORM models, async engine factory, and repository
for pipeline sessions, per-stage progress rows and per-document analysis
rows.  External workers write progress through the same tables; the
orchestrator SDK reads them through ``proposal_pipeline.state_store``.
"""

from proposal_db.engine import get_engine, get_session_factory
from proposal_db.models.enums import (
    DocumentStatus,
    PipelineStage,
    SessionStatus,
    StageStatus,
)
from proposal_db.models.progress import DocumentAnalysis, StageProgress
from proposal_db.models.session import AnalysisSession
from proposal_db.repository import PipelineRepository

__all__ = [
    "AnalysisSession",
    "DocumentAnalysis",
    "StageProgress",
    "DocumentStatus",
    "PipelineStage",
    "SessionStatus",
    "StageStatus",
    "get_engine",
    "get_session_factory",
    "PipelineRepository",
]
