"""Pydantic models for the Lens design critique pipeline.

This package contains all data models used throughout the pipeline:

KnowledgeEntry / KnowledgeMatch / RAGContext:
    Curated research corpus rows, ranked search hits, and the bounded
    research context assembled from them.

AnalysisSession / StageResult:
    A user's critique request and the append-only log of stage attempts.

PersonaCritique / Annotation:
    Structured output of one persona's critique of the uploaded screens.

SynthesisResult / PriorityMatrix / MaturityScore:
    Merged findings across personas and the score derived from them.

Example:
    >>> from models import AnalysisSession, SessionStatus
    >>> session = AnalysisSession.new(user_id="u1", image_urls=["https://..."], goal="Improve signup")
    >>> session.status
    <SessionStatus.DRAFT: 'draft'>
"""

from models.knowledge import Citation, KnowledgeEntry, KnowledgeMatch, RAGContext
from models.session import (
    STAGE_ORDER,
    AnalysisMode,
    AnalysisSession,
    SessionStatus,
    StageName,
    StageResult,
    StageStatus,
)
from models.critique import Annotation, PersonaCritique, Severity
from models.synthesis import MaturityScore, PriorityMatrix, SynthesisResult

__all__ = [
    "Citation",
    "KnowledgeEntry",
    "KnowledgeMatch",
    "RAGContext",
    "STAGE_ORDER",
    "AnalysisMode",
    "AnalysisSession",
    "SessionStatus",
    "StageName",
    "StageResult",
    "StageStatus",
    "Annotation",
    "PersonaCritique",
    "Severity",
    "MaturityScore",
    "PriorityMatrix",
    "SynthesisResult",
]
