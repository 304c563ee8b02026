"""Unit tests for MaturityScorer.

Tests the score formula, levels, and idempotent backfill.
"""

from unittest.mock import AsyncMock

import pytest

from models.critique import Annotation
from models.session import AnalysisSession, SessionStatus
from models.synthesis import PriorityMatrix, SynthesisResult
from scoring import DIMENSIONS, MaturityScorer, dimension_scores, maturity_level


def _synthesis(session_id: str = "s1", critical: int = 0, suggested: int = 0, enhancement: int = 0,
               personas=("strategic",), gripe: str | None = None) -> SynthesisResult:
    from models.critique import PersonaCritique

    def bucket(severity: str, n: int) -> list[Annotation]:
        return [Annotation(severity=severity, feedback=f"{severity} {i}") for i in range(n)]

    return SynthesisResult(
        session_id=session_id,
        persona_feedback=[PersonaCritique(persona=p, analysis="-") for p in personas],
        priority_matrix=PriorityMatrix(
            critical=bucket("critical", critical),
            suggested=bucket("suggested", suggested),
            enhancement=bucket("enhancement", enhancement),
        ),
        gripe_level=gripe,
    )


class TestScore:
    """Score formula and levels."""

    def test_formula(self):
        """Test 100 - 12*critical - 5*suggested - 2*enhancement."""
        score = MaturityScorer().score(_synthesis(critical=1, suggested=2, enhancement=1))

        assert score.overall_score == 76
        assert score.maturity_level == "Advanced"
        assert (score.critical_count, score.suggested_count, score.enhancement_count) == (1, 2, 1)

    def test_clipped_at_zero(self):
        score = MaturityScorer().score(_synthesis(critical=10))

        assert score.overall_score == 0
        assert score.maturity_level == "Novice"

    def test_clipped_at_hundred(self):
        """Test that the mad scientist bonus cannot push past 100."""
        score = MaturityScorer().score(_synthesis(personas=("mad_scientist",)))

        assert score.overall_score == 100
        assert score.maturity_level == "Expert"

    def test_clarity_gripe_modifiers(self):
        """Test the clarity penalty for rage-cranked and medium gripes."""
        scorer = MaturityScorer()

        assert scorer.score(_synthesis(suggested=2, personas=("clarity",), gripe="rage-cranked")).overall_score == 85
        assert scorer.score(_synthesis(suggested=2, personas=("clarity",), gripe="medium")).overall_score == 88
        assert scorer.score(_synthesis(suggested=2, personas=("clarity",), gripe="low")).overall_score == 90

    def test_mad_scientist_bonus(self):
        assert MaturityScorer().score(_synthesis(critical=2, personas=("mad_scientist",))).overall_score == 79

    @pytest.mark.parametrize("score,level", [
        (100, "Expert"), (80, "Expert"), (79, "Advanced"), (60, "Advanced"), (59, "Competent"),
        (40, "Competent"), (39, "Developing"), (20, "Developing"), (19, "Novice"), (0, "Novice"),
    ])
    def test_level_boundaries(self, score, level):
        assert maturity_level(score) == level


def _completed_session(db, session_id: str, with_synthesis: bool = True,
                       status: SessionStatus = SessionStatus.COMPLETED) -> None:
    db.create_session(AnalysisSession(id=session_id, user_id="u1", image_urls=["https://cdn.example.com/a.png"],
                                      status=status))
    if with_synthesis:
        db.save_synthesis(_synthesis(session_id=session_id, suggested=1))


class TestBackfill:
    """Idempotent backfill of missing scores."""

    @pytest.mark.asyncio
    async def test_backfill_inserts_missing_scores(self, db):
        for sid in ("s1", "s2", "s3"):
            _completed_session(db, sid)

        report = await MaturityScorer(db).backfill(delay_seconds=0)

        assert report.candidates == 3
        assert report.inserted == 3
        assert db.count_maturity_scores() == 3
        assert db.get_maturity_score("s1").overall_score == 95

    @pytest.mark.asyncio
    async def test_second_run_affects_nothing(self, db):
        """Test that re-running the backfill inserts zero rows."""
        _completed_session(db, "s1")
        _completed_session(db, "s2")
        scorer = MaturityScorer(db)

        await scorer.backfill(delay_seconds=0)
        second = await scorer.backfill(delay_seconds=0)

        assert second.candidates == 0
        assert second.inserted == 0
        assert db.count_maturity_scores() == 2

    @pytest.mark.asyncio
    async def test_only_completed_sessions_with_synthesis(self, db):
        """Test that sessions without synthesis or not completed are ignored."""
        _completed_session(db, "done")
        _completed_session(db, "no_synthesis", with_synthesis=False)
        _completed_session(db, "failed", status=SessionStatus.FAILED)

        report = await MaturityScorer(db).backfill(delay_seconds=0)

        assert report.candidates == 1
        assert db.get_maturity_score("done") is not None
        assert db.get_maturity_score("no_synthesis") is None
        assert db.get_maturity_score("failed") is None

    @pytest.mark.asyncio
    async def test_failure_isolated(self, db):
        """Test that one unreadable synthesis does not stop the batch."""
        _completed_session(db, "good")
        _completed_session(db, "bad")
        db.conn.execute("UPDATE synthesis_results SET result = '{broken' WHERE session_id = 'bad'")
        db.commit()

        report = await MaturityScorer(db).backfill(delay_seconds=0)

        assert report.inserted == 1
        assert "bad" in report.failed
        assert db.get_maturity_score("good") is not None

    @pytest.mark.asyncio
    async def test_sleeps_between_sessions(self, db, monkeypatch):
        """Test that the backfill pauses between sessions, not before the first."""
        for sid in ("s1", "s2", "s3"):
            _completed_session(db, sid)
        sleep = AsyncMock()
        monkeypatch.setattr("scoring.asyncio.sleep", sleep)

        await MaturityScorer(db).backfill(delay_seconds=0.25)

        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.25)

    def test_existing_score_not_replaced(self, db):
        """Test that the unique session constraint keeps the first score."""
        scorer = MaturityScorer(db)
        first = scorer.score(_synthesis(session_id="s1", critical=1))
        second = scorer.score(_synthesis(session_id="s1", critical=5))

        assert db.insert_maturity_score(first) is True
        assert db.insert_maturity_score(second) is False
        assert db.get_maturity_score("s1").overall_score == 88

    @pytest.mark.asyncio
    async def test_backfill_stores_dimensions(self, db):
        """Test that backfilled scores keep their breakdown across reruns."""
        _completed_session(db, "s1")
        scorer = MaturityScorer(db)

        await scorer.backfill(delay_seconds=0)
        stored = db.get_maturity_score("s1").dimensions
        await scorer.backfill(delay_seconds=0)

        assert stored == scorer.score(db.get_synthesis("s1")).dimensions
        assert db.get_maturity_score("s1").dimensions == stored
        assert all(0 <= v <= 20 for v in stored.values())


class TestDimensions:
    """Five-dimension breakdown."""

    @staticmethod
    def _with_text(analysis: str, gripe: str | None = None, annotations=()) -> SynthesisResult:
        from models.critique import PersonaCritique

        return SynthesisResult(
            session_id="s1",
            persona_feedback=[PersonaCritique(persona="clarity", analysis=analysis)],
            priority_matrix=PriorityMatrix(critical=list(annotations)),
            gripe_level=gripe,
        )

    def test_neutral_critique_uses_gripe_base(self):
        scores = dimension_scores(self._with_text("-"))

        assert set(scores) == set(DIMENSIONS)
        assert set(scores.values()) == {15}
        assert set(dimension_scores(self._with_text("-", gripe="rage-cranked")).values()) == {5}

    def test_phrases_adjust_matching_dimension(self):
        scores = dimension_scores(self._with_text("Low contrast text and a confusing flow, but keyboard support works."))

        assert scores["accessibility"] == 15 - 3 + 2
        assert scores["usability"] == 15 - 3
        assert scores["performance"] == 15

    def test_phrases_match_whole_words(self):
        """Test that 'flagship' does not count as 'lag' nor 'function' as 'fun'."""
        scores = dimension_scores(self._with_text("The flagship function page."))

        assert scores["performance"] == 15
        assert scores["delight"] == 15

    def test_findings_penalize_their_dimension(self):
        findings = [Annotation(category="accessibility", severity="critical", feedback=f"Issue {i}") for i in range(3)]

        scores = dimension_scores(self._with_text("-", annotations=findings))

        assert scores["accessibility"] == 15 - 3 * 2
        assert scores["usability"] == 15

    def test_bounded(self):
        findings = [Annotation(category="performance", severity="critical", feedback="slow lag") for _ in range(10)]
        low = dimension_scores(self._with_text("slow loading lag", gripe="rage-cranked", annotations=findings))
        high = dimension_scores(self._with_text("delight engaging fun personality"))

        assert low["performance"] == 0
        assert high["delight"] == 20
        assert all(0 <= v <= 20 for v in (*low.values(), *high.values()))

    def test_score_carries_dimensions(self):
        score = MaturityScorer().score(_synthesis(suggested=1))

        assert set(score.dimensions) == set(DIMENSIONS)


class TestPercentile:
    """Rank of a score among stored scores."""

    def test_no_scores_is_median(self, db):
        assert db.score_percentile(70) == 50

    def test_share_strictly_below(self, db):
        scorer = MaturityScorer(db)
        for sid, critical in (("a", 5), ("b", 2), ("c", 0)):
            db.insert_maturity_score(scorer.score(_synthesis(session_id=sid, critical=critical)))

        # stored: 40, 76, 100
        assert db.score_percentile(76) == 33
        assert db.score_percentile(0) == 0
        assert db.score_percentile(101) == 100
