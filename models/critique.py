"""Critique output models.

PersonaCritique is the structured output the critique model is asked to
produce. Field descriptions double as instructions to the model.
"""

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Severity(str, Enum):
    CRITICAL = "critical"
    SUGGESTED = "suggested"
    ENHANCEMENT = "enhancement"

    @property
    def rank(self) -> int:
        """0 for the most severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 0,
    Severity.SUGGESTED: 1,
    Severity.ENHANCEMENT: 2,
}

_SEVERITY_ALIASES = {
    "high": Severity.CRITICAL,
    "critical": Severity.CRITICAL,
    "blocker": Severity.CRITICAL,
    "medium": Severity.SUGGESTED,
    "suggested": Severity.SUGGESTED,
    "moderate": Severity.SUGGESTED,
    "low": Severity.ENHANCEMENT,
    "enhancement": Severity.ENHANCEMENT,
    "minor": Severity.ENHANCEMENT,
}


def normalize_severity(value) -> Severity:
    """Coerce model-provided severity labels to Severity (default: suggested)."""
    if isinstance(value, Severity):
        return value
    return _SEVERITY_ALIASES.get(str(value or "").strip().lower(), Severity.SUGGESTED)


class Annotation(BaseModel):
    """A single finding pinned to a screen.

    Coordinates are percentages of the image width/height (0-100).
    """

    category: str = Field(default="usability", description="Finding category, e.g. 'accessibility'")
    severity: Severity = Field(default=Severity.SUGGESTED, description="critical, suggested, or enhancement")
    feedback: str = Field(description="What is wrong and how to fix it")
    title: str = Field(default="", description="Short title for the finding")
    image_index: int | None = Field(default=None, ge=0, description="0-based index of the screen")
    x: float | None = Field(default=None, ge=0, le=100, description="Horizontal position (%)")
    y: float | None = Field(default=None, ge=0, le=100, description="Vertical position (%)")
    persona: str = Field(default="", description="Persona that raised the finding")

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value):
        return normalize_severity(value)


class PersonaCritique(BaseModel):
    """Critique of the uploaded screens from one persona.

    Attributes:
        persona: Persona that produced this critique
        analysis: Narrative analysis
        recommendations: Actionable recommendations, most important first
        annotations: Findings pinned to screens
        biggest_gripe: The single most damaging issue
        wisdom: Key insight
        prediction: Expected outcome if the advice is followed
        model: Backend that produced the critique (filled by the agent)
    """

    persona: str = Field(default="clarity")
    analysis: str = Field(description="Honest analysis of the interface")
    recommendations: list[str] = Field(default_factory=list, description="Actionable recommendations")
    annotations: list[Annotation] = Field(default_factory=list, description="Findings pinned to screens")
    biggest_gripe: str = Field(default="", description="The main UX problem")
    wisdom: str = Field(default="", description="Key insight about the UX")
    prediction: str = Field(default="", description="What happens if the advice is followed")
    model: str = Field(default="")

    def __str__(self) -> str:
        preview = self.analysis[:50] + "..." if len(self.analysis) > 50 else self.analysis
        return f"PersonaCritique({self.persona}, '{preview}')"
