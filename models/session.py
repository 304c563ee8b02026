"""Session and stage-log models.

An AnalysisSession moves through draft -> processing -> completed / failed /
cancelled. While processing, the orchestrator appends one StageResult per
stage per attempt; rows are never rewritten once they finish.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED)


# Allowed status changes. FAILED -> PROCESSING is an explicit retry.
SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.DRAFT: frozenset({SessionStatus.PROCESSING, SessionStatus.CANCELLED}),
    SessionStatus.PROCESSING: frozenset({
        SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.CANCELLED,
    }),
    SessionStatus.FAILED: frozenset({SessionStatus.PROCESSING}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


class StageName(str, Enum):
    PROMPT_BUILDING = "prompt_building"
    CRITIQUE = "critique"
    SYNTHESIS = "synthesis"
    SCORING = "scoring"


STAGE_ORDER: tuple[StageName, ...] = (
    StageName.PROMPT_BUILDING,
    StageName.CRITIQUE,
    StageName.SYNTHESIS,
    StageName.SCORING,
)


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    SKIPPED = "skipped"


class AnalysisMode(str, Enum):
    SINGLE = "single"
    COMPARATIVE = "comparative"


class AnalysisSession(BaseModel):
    """A user's request to critique a set of stored images.

    Attributes:
        id: Session id
        user_id: Owning user (already authenticated upstream)
        status: Current lifecycle status
        image_urls: Stored image references, in upload order
        goal: Free-text goal the user wants the design to achieve
        personas: Critique personas to run, one critique each
        mode: Single-screen or comparative (multi-screen journey) analysis
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    user_id: str = Field(min_length=1)
    status: SessionStatus = SessionStatus.DRAFT
    image_urls: list[str] = Field(default_factory=list)
    goal: str = ""
    personas: list[str] = Field(default_factory=lambda: ["clarity"])
    mode: AnalysisMode = AnalysisMode.SINGLE
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("personas")
    @classmethod
    def _require_persona(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one persona is required")
        return value

    @classmethod
    def new(
        cls,
        user_id: str,
        image_urls: list[str],
        goal: str = "",
        personas: list[str] | None = None,
        mode: AnalysisMode = AnalysisMode.SINGLE,
    ) -> "AnalysisSession":
        return cls(
            user_id=user_id,
            image_urls=list(image_urls),
            goal=goal,
            personas=personas or ["clarity"],
            mode=mode,
        )

    @property
    def is_comparative(self) -> bool:
        return self.mode == AnalysisMode.COMPARATIVE or len(self.image_urls) > 1

    def __str__(self) -> str:
        return f"Session({self.id[:8]}, {self.status.value}, images={len(self.image_urls)})"


class StageResult(BaseModel):
    """One attempt of one stage for one session.

    Attributes:
        id: Row id (assigned by the database)
        attempt: Attempt number within the session (1 for the first run)
        payload: Stage output, JSON-serializable
        error_category: ErrorCategory value for failed attempts
    """

    id: int | None = None
    session_id: str
    stage: StageName
    attempt: int = 1
    status: StageStatus = StageStatus.PENDING
    started_at: datetime = Field(default_factory=utcnow)
    duration_ms: int = 0
    error: str | None = None
    error_category: str | None = None
    payload: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == StageStatus.SUCCESS
