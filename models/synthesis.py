"""Synthesis and maturity score models."""

from datetime import datetime

from pydantic import BaseModel, Field

from models.critique import Annotation, PersonaCritique, Severity
from models.knowledge import Citation
from models.session import utcnow


class PriorityMatrix(BaseModel):
    """Annotations bucketed by severity."""

    critical: list[Annotation] = Field(default_factory=list)
    suggested: list[Annotation] = Field(default_factory=list)
    enhancement: list[Annotation] = Field(default_factory=list)

    def bucket(self, severity: Severity) -> list[Annotation]:
        return getattr(self, severity.value)

    def counts(self) -> dict[str, int]:
        return {
            "critical": len(self.critical),
            "suggested": len(self.suggested),
            "enhancement": len(self.enhancement),
        }


class SynthesisResult(BaseModel):
    """Merged findings across all persona critiques of one session."""

    session_id: str = ""
    persona_feedback: list[PersonaCritique] = Field(default_factory=list)
    summary: str = ""
    priority_matrix: PriorityMatrix = Field(default_factory=PriorityMatrix)
    annotations: list[Annotation] = Field(default_factory=list)
    citations: list[Citation] = Field(default_factory=list)
    gripe_level: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def personas(self) -> list[str]:
        return [c.persona for c in self.persona_feedback]


class MaturityScore(BaseModel):
    """Bounded score derived from a session's synthesis result."""

    session_id: str
    overall_score: int = Field(ge=0, le=100)
    maturity_level: str
    critical_count: int = 0
    suggested_count: int = 0
    enhancement_count: int = 0
    dimensions: dict[str, int] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    def __str__(self) -> str:
        return f"MaturityScore({self.overall_score}/100, {self.maturity_level})"
