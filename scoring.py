"""Maturity scoring.

A MaturityScore summarizes a session's synthesis result as a bounded
0-100 number and a level label, for comparing sessions over time.

Formula:
    100 - 12 * critical - 5 * suggested - 2 * enhancement + persona modifier

Persona modifiers:
    clarity        -5 when the gripe level is rage-cranked, -2 when medium
    mad_scientist  +3 (experimental findings are mostly enhancements)

The result is clipped to [0, 100] and rounded to an integer.

Each score also carries a five-dimension breakdown (usability,
accessibility, performance, clarity, delight; 0-20 each) and can be ranked
against every stored score with Database.score_percentile().
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field

from database import Database
from models.synthesis import MaturityScore, SynthesisResult

logger = logging.getLogger(__name__)

SEVERITY_WEIGHTS = {"critical": 12, "suggested": 5, "enhancement": 2}

GRIPE_MODIFIERS = {"rage-cranked": -5, "medium": -2}
PERSONA_MODIFIERS = {"mad_scientist": 3}

# (minimum score, level), highest first
MATURITY_LEVELS = [
    (80, "Expert"),
    (60, "Advanced"),
    (40, "Competent"),
    (20, "Developing"),
    (0, "Novice"),
]


# Dimension breakdown: each dimension is scored 0-20 from a base set by the
# clarity gripe level, adjusted by phrases in the critiques and by findings
# whose category belongs to the dimension.
DIMENSIONS = ("usability", "accessibility", "performance", "clarity", "delight")
DIMENSION_MAX = 20
DIMENSION_BASE = {"low": 15, "medium": 10, "rage-cranked": 5}

DIMENSION_PHRASES = {
    "usability": (("intuitive", 2), ("confusing", -3), ("easy to use", 3), ("friction", -2),
                  ("clear navigation", 2), ("lost", -3)),
    "accessibility": (("contrast", -3), ("accessible", 3), ("screen reader", 2), ("color blind", 1),
                      ("touch target", -2), ("keyboard", 2)),
    "performance": (("slow", -4), ("loading", -2), ("responsive", 3), ("snappy", 3), ("lag", -3),
                    ("instant", 2)),
    "clarity": (("unclear", -4), ("obvious", 3), ("label", -2), ("well organized", 3)),
    "delight": (("delight", 4), ("boring", -3), ("engaging", 3), ("fun", 2), ("personality", 2),
                ("generic", -2)),
}

DIMENSION_CATEGORIES = {
    "usability": ("usability", "navigation", "interaction", "validation", "conversion"),
    "accessibility": ("accessibility", "responsive"),
    "performance": ("performance",),
    "clarity": ("clarity", "readability"),
    "delight": ("delight", "visual"),
}

FINDING_PENALTIES = {"critical": 2, "suggested": 1, "enhancement": 0}


def _critique_text(synthesis: SynthesisResult) -> str:
    parts = []
    for critique in synthesis.persona_feedback:
        parts.extend([critique.analysis, critique.biggest_gripe, critique.wisdom, *critique.recommendations])
    for severity in SEVERITY_WEIGHTS:
        parts.extend(a.feedback for a in getattr(synthesis.priority_matrix, severity))
    return " ".join(parts).lower()


def dimension_scores(synthesis: SynthesisResult) -> dict[str, int]:
    """Per-dimension scores (0-20 each) for a synthesis result."""
    text = _critique_text(synthesis)
    base = DIMENSION_BASE.get(synthesis.gripe_level or "low", DIMENSION_BASE["low"])
    scores = {}
    for dimension in DIMENSIONS:
        score = base
        for phrase, adjustment in DIMENSION_PHRASES[dimension]:
            if re.search(rf"\b{re.escape(phrase)}\b", text):
                score += adjustment
        categories = DIMENSION_CATEGORIES[dimension]
        for severity, penalty in FINDING_PENALTIES.items():
            bucket = getattr(synthesis.priority_matrix, severity)
            score -= penalty * sum(1 for a in bucket if a.category.lower() in categories)
        scores[dimension] = max(0, min(DIMENSION_MAX, score))
    return scores


def maturity_level(score: int) -> str:
    for minimum, level in MATURITY_LEVELS:
        if score >= minimum:
            return level
    return MATURITY_LEVELS[-1][1]


def persona_modifier(synthesis: SynthesisResult) -> float:
    modifier = 0.0
    for persona in synthesis.personas:
        if persona == "clarity":
            modifier += GRIPE_MODIFIERS.get(synthesis.gripe_level or "low", 0)
        else:
            modifier += PERSONA_MODIFIERS.get(persona, 0)
    return modifier


@dataclass
class BackfillReport:
    """Outcome of one backfill run.

    Attributes:
        candidates: Completed sessions that lacked a score when the run started
        inserted: Scores written by this run
        skipped: Candidates that already had a score by the time they were reached
        failed: session_id -> error message
    """
    candidates: int = 0
    inserted: int = 0
    skipped: int = 0
    failed: dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        return (
            f"candidates={self.candidates} inserted={self.inserted} "
            f"skipped={self.skipped} failed={len(self.failed)}"
        )


class MaturityScorer:
    """Compute and backfill maturity scores."""

    def __init__(self, db: Database | None = None):
        self.db = db

    def score(self, synthesis: SynthesisResult) -> MaturityScore:
        counts = synthesis.priority_matrix.counts()
        raw = 100.0 - sum(SEVERITY_WEIGHTS[k] * counts[k] for k in SEVERITY_WEIGHTS)
        raw += persona_modifier(synthesis)
        overall = int(round(min(100.0, max(0.0, raw))))
        return MaturityScore(
            session_id=synthesis.session_id,
            overall_score=overall,
            maturity_level=maturity_level(overall),
            critical_count=counts["critical"],
            suggested_count=counts["suggested"],
            enhancement_count=counts["enhancement"],
            dimensions=dimension_scores(synthesis),
        )

    def _score_session(self, session_id: str) -> bool:
        synthesis = self.db.get_synthesis(session_id)
        if synthesis is None:
            raise LookupError(f"no synthesis result for session {session_id}")
        score = self.score(synthesis.model_copy(update={"session_id": session_id}))
        return self.db.insert_maturity_score(score)

    async def backfill(self, delay_seconds: float = 0.1) -> BackfillReport:
        """Score every completed session that has a synthesis result but no score.

        Safe to re-run: existing scores are never replaced, so a second run
        inserts nothing. A failure on one session is recorded and the batch
        continues. Sleeps `delay_seconds` between sessions.
        """
        if self.db is None:
            raise RuntimeError("MaturityScorer.backfill requires a database")

        session_ids = self.db.sessions_missing_scores()
        report = BackfillReport(candidates=len(session_ids))
        logger.info("Maturity backfill started | candidates=%d", len(session_ids))

        for i, session_id in enumerate(session_ids):
            if i > 0 and delay_seconds > 0:
                await asyncio.sleep(delay_seconds)
            try:
                if self._score_session(session_id):
                    report.inserted += 1
                else:
                    report.skipped += 1
            except Exception as e:
                logger.error("Backfill failed | session_id=%s error=%s", session_id, e, exc_info=True)
                report.failed[session_id] = str(e)

        logger.info("Maturity backfill complete | %s", report)
        return report
