"""Tests for StageOrchestrator.

The critique agent is an AsyncMock and embeddings come from a fake
provider, so every test runs against a real SQLite file without network.
"""

import asyncio
import dataclasses
import time
from unittest.mock import AsyncMock

import pytest

from agents.prompts import RESEARCH_START
from errors import (
    AccessDenied,
    AuthenticationFailure,
    CancellationRejected,
    EmbeddingUnavailable,
    ErrorCategory,
    InvalidTransition,
    NetworkError,
    SessionNotFound,
)
from knowledge.retriever import KnowledgeRetriever
from models.session import STAGE_ORDER, SessionStatus, StageName, StageResult, StageStatus
from pipeline import STALE_WORKER_ERROR, StageOrchestrator
from tools.images import ImageCheck

IMAGE = "https://cdn.example.com/screens/checkout.png"


@pytest.fixture
def orchestrator(db, settings, fake_critic, fake_provider):
    return StageOrchestrator(db, settings, fake_critic, retriever=KnowledgeRetriever(db, fake_provider))


def _statuses(db, session_id):
    return [(r.stage, r.status) for r in db.stage_results(session_id)]


def _backdate(db, session_id, minutes):
    db.conn.execute(
        "UPDATE sessions SET updated_at = ? WHERE id = ?",
        (time.time() - minutes * 60, session_id),
    )
    db.commit()


class TestRun:
    """Happy path and stage ordering."""

    @pytest.mark.asyncio
    async def test_stages_run_in_order(self, orchestrator, db):
        """Test that all four stages succeed in order and the session completes."""
        sid = await orchestrator.register_session("u1", [IMAGE], goal="More checkouts")

        session = await orchestrator.run(sid)

        assert session.status == SessionStatus.COMPLETED
        assert _statuses(db, sid) == [(stage, StageStatus.SUCCESS) for stage in STAGE_ORDER]
        assert all(r.attempt == 1 for r in db.stage_results(sid))
        assert db.get_synthesis(sid) is not None
        assert db.get_maturity_score(sid).overall_score == 81

    @pytest.mark.asyncio
    async def test_one_critique_per_persona(self, orchestrator, db, fake_critic):
        sid = await orchestrator.register_session("u1", [IMAGE], personas=["clarity", "strategic", "executive"])

        await orchestrator.run(sid)

        personas = [call.args[0].metadata["persona"] for call in fake_critic.critique.await_args_list]
        assert personas == ["clarity", "strategic", "executive"]
        assert db.get_synthesis(sid).personas == ["clarity", "strategic", "executive"]

    @pytest.mark.asyncio
    async def test_empty_corpus_prompt_has_no_research(self, orchestrator, fake_critic, fake_provider):
        """Test that an empty knowledge base produces an ungrounded prompt without embedding."""
        sid = await orchestrator.register_session("u1", [IMAGE], goal="More signups")

        session = await orchestrator.run(sid)

        assert session.status == SessionStatus.COMPLETED
        payload = fake_critic.critique.await_args.args[0]
        assert RESEARCH_START not in payload.prompt
        assert payload.metadata["knowledge_sources_used"] == 0
        assert fake_provider.calls == []

    @pytest.mark.asyncio
    async def test_research_citations_flow_to_synthesis(self, orchestrator, db, add_knowledge, fake_critic):
        """Test that matched research reaches the prompt and the synthesis citations."""
        add_knowledge("k1", 0.92, title="Checkout button contrast")
        add_knowledge("k2", 0.10)

        sid = await orchestrator.register_session("u1", [IMAGE], goal="More checkouts")
        await orchestrator.run(sid)

        prompt_row = db.latest_stage_results(sid)[StageName.PROMPT_BUILDING]
        assert prompt_row.payload["knowledge_sources_used"] == 1
        assert RESEARCH_START in fake_critic.critique.await_args.args[0].prompt
        assert [c.id for c in db.get_synthesis(sid).citations] == ["k1"]

    @pytest.mark.asyncio
    async def test_embedding_failure_is_not_fatal(self, db, settings, fake_critic, add_knowledge, make_provider):
        """Test that retrieval degrades to an empty context when embedding fails."""
        add_knowledge("k1", 0.92)
        provider = make_provider(error=EmbeddingUnavailable("all backends down"))
        orchestrator = StageOrchestrator(db, settings, fake_critic, retriever=KnowledgeRetriever(db, provider))

        sid = await orchestrator.register_session("u1", [IMAGE], goal="More checkouts")
        session = await orchestrator.run(sid)

        assert session.status == SessionStatus.COMPLETED
        assert db.get_synthesis(sid).citations == []

    @pytest.mark.asyncio
    async def test_run_requires_draft(self, orchestrator):
        sid = await orchestrator.register_session("u1", [IMAGE])
        await orchestrator.run(sid)

        with pytest.raises(InvalidTransition):
            await orchestrator.run(sid)

    @pytest.mark.asyncio
    async def test_run_requires_images(self, orchestrator, db):
        """Test that a session without images cannot start."""
        sid = await orchestrator.register_session("u1", [])

        with pytest.raises(InvalidTransition):
            await orchestrator.run(sid)
        assert db.get_session(sid).status == SessionStatus.DRAFT

    @pytest.mark.asyncio
    async def test_run_unknown_session(self, orchestrator):
        with pytest.raises(SessionNotFound):
            await orchestrator.run("missing")


class TestFailures:
    """Stage failures end the session and stop later stages."""

    @pytest.mark.asyncio
    async def test_critique_error_fails_session(self, orchestrator, db, fake_critic):
        """Test that a failing critique leaves no synthesis or scoring rows."""
        fake_critic.critique.side_effect = RuntimeError("model exploded")
        sid = await orchestrator.register_session("u1", [IMAGE])

        session = await orchestrator.run(sid)

        assert session.status == SessionStatus.FAILED
        assert _statuses(db, sid) == [
            (StageName.PROMPT_BUILDING, StageStatus.SUCCESS),
            (StageName.CRITIQUE, StageStatus.ERROR),
        ]
        critique_row = db.latest_stage_results(sid)[StageName.CRITIQUE]
        assert "model exploded" in critique_row.error
        assert critique_row.error_category == "unknown"
        assert db.get_synthesis(sid) is None
        assert db.get_maturity_score(sid) is None

    @pytest.mark.asyncio
    async def test_error_category_recorded(self, orchestrator, db, fake_critic):
        fake_critic.critique.side_effect = RuntimeError("429 rate limit reached")
        sid = await orchestrator.register_session("u1", [IMAGE])

        await orchestrator.run(sid)

        assert db.latest_stage_results(sid)[StageName.CRITIQUE].error_category == "rate_limit"

    @pytest.mark.asyncio
    async def test_provider_error_category_recorded(self, orchestrator, db, fake_critic):
        """Test that a typed provider error keeps its category on the stage row."""
        fake_critic.critique.side_effect = AuthenticationFailure(
            "All critique model backends failed", attempts=[("openai:gpt-4o", "bad key")],
        )
        sid = await orchestrator.register_session("u1", [IMAGE])

        await orchestrator.run(sid)

        row = db.latest_stage_results(sid)[StageName.CRITIQUE]
        assert row.status == StageStatus.ERROR
        assert row.error_category == "auth"

    @pytest.mark.asyncio
    async def test_stage_timeout(self, db, settings, fake_critic):
        """Test that a stage over its timeout is recorded as timeout and fails the session."""
        async def slow(payload, image_urls):
            await asyncio.sleep(5)

        fake_critic.critique.side_effect = slow
        fast = dataclasses.replace(settings, stage_timeouts={**settings.stage_timeouts, "critique": 0.05})
        orchestrator = StageOrchestrator(db, fast, fake_critic)
        sid = await orchestrator.register_session("u1", [IMAGE])

        session = await orchestrator.run(sid)

        row = db.latest_stage_results(sid)[StageName.CRITIQUE]
        assert session.status == SessionStatus.FAILED
        assert row.status == StageStatus.TIMEOUT
        assert row.error_category == "timeout"
        assert StageName.SYNTHESIS not in db.latest_stage_results(sid)


class TestRetry:
    """Resuming failed sessions."""

    @pytest.mark.asyncio
    async def test_retry_resumes_from_failed_stage(self, orchestrator, db, fake_critic):
        """Test that retry reuses prompt building and reruns critique as attempt 2."""
        working = fake_critic.critique.side_effect
        fake_critic.critique.side_effect = ConnectionError("connection reset")
        sid = await orchestrator.register_session("u1", [IMAGE])
        await orchestrator.run(sid)

        fake_critic.critique.side_effect = working
        session = await orchestrator.retry(sid, "u1")

        assert session.status == SessionStatus.COMPLETED
        rows = db.stage_results(sid)
        assert [(r.stage, r.attempt, r.status) for r in rows] == [
            (StageName.PROMPT_BUILDING, 1, StageStatus.SUCCESS),
            (StageName.CRITIQUE, 1, StageStatus.ERROR),
            (StageName.CRITIQUE, 2, StageStatus.SUCCESS),
            (StageName.SYNTHESIS, 2, StageStatus.SUCCESS),
            (StageName.SCORING, 2, StageStatus.SUCCESS),
        ]
        assert rows[1].error_category == "network"
        assert db.count_maturity_scores(sid) == 1

    @pytest.mark.asyncio
    async def test_retry_only_failed(self, orchestrator):
        sid = await orchestrator.register_session("u1", [IMAGE])
        await orchestrator.run(sid)

        with pytest.raises(InvalidTransition):
            await orchestrator.retry(sid, "u1")

    @pytest.mark.asyncio
    async def test_retry_other_user_denied(self, orchestrator, fake_critic):
        fake_critic.critique.side_effect = RuntimeError("boom")
        sid = await orchestrator.register_session("u1", [IMAGE])
        await orchestrator.run(sid)

        with pytest.raises(AccessDenied):
            await orchestrator.retry(sid, "u2")


class TestCancel:
    """Cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_draft(self, orchestrator, db):
        sid = await orchestrator.register_session("u1", [IMAGE])

        assert orchestrator.cancel(sid, "u1") is True
        assert db.get_session(sid).status == SessionStatus.CANCELLED
        with pytest.raises(InvalidTransition):
            await orchestrator.run(sid)

    @pytest.mark.asyncio
    async def test_cancel_during_critique_skips_next_stage(self, orchestrator, db, fake_critic):
        """Test that a cancel observed at the next boundary records a skipped stage."""
        working = fake_critic.critique.side_effect
        sid = await orchestrator.register_session("u1", [IMAGE])

        async def cancel_then_answer(payload, image_urls):
            orchestrator.cancel(sid, "u1")
            return await working(payload, image_urls)

        fake_critic.critique.side_effect = cancel_then_answer

        session = await orchestrator.run(sid)

        assert session.status == SessionStatus.CANCELLED
        assert _statuses(db, sid) == [
            (StageName.PROMPT_BUILDING, StageStatus.SUCCESS),
            (StageName.CRITIQUE, StageStatus.SUCCESS),
            (StageName.SYNTHESIS, StageStatus.SKIPPED),
        ]
        assert db.latest_stage_results(sid)[StageName.SYNTHESIS].error_category == "cancelled"
        assert db.get_synthesis(sid) is None

    @pytest.mark.asyncio
    async def test_cancel_terminal_rejected(self, orchestrator):
        sid = await orchestrator.register_session("u1", [IMAGE])
        await orchestrator.run(sid)

        with pytest.raises(CancellationRejected):
            orchestrator.cancel(sid, "u1")

    @pytest.mark.asyncio
    async def test_cancel_after_scoring_started_rejected(self, orchestrator, db):
        """Test that a session whose scoring stage is running cannot be cancelled."""
        sid = await orchestrator.register_session("u1", [IMAGE])
        db.update_session_status(sid, SessionStatus.PROCESSING)
        db.insert_stage_result(StageResult(session_id=sid, stage=StageName.SCORING, status=StageStatus.RUNNING))

        with pytest.raises(CancellationRejected):
            orchestrator.cancel(sid, "u1")
        assert db.get_session(sid).status == SessionStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_cancel_other_user_denied(self, orchestrator):
        sid = await orchestrator.register_session("u1", [IMAGE])

        with pytest.raises(AccessDenied):
            orchestrator.cancel(sid, "intruder")

    def test_cancel_unknown_session(self, orchestrator):
        with pytest.raises(SessionNotFound):
            orchestrator.cancel("missing", "u1")


class TestStuckSessions:
    """Sweep of sessions whose worker disappeared."""

    @pytest.mark.asyncio
    async def test_stale_processing_session_failed(self, orchestrator, db):
        """Test that a stale processing session is failed and its running row closed."""
        sid = await orchestrator.register_session("u1", [IMAGE])
        db.update_session_status(sid, SessionStatus.PROCESSING)
        db.insert_stage_result(StageResult(session_id=sid, stage=StageName.CRITIQUE, status=StageStatus.RUNNING))
        _backdate(db, sid, minutes=30)

        assert orchestrator.reset_stuck_sessions(10) == 1

        assert db.get_session(sid).status == SessionStatus.FAILED
        row = db.latest_stage_results(sid)[StageName.CRITIQUE]
        assert row.status == StageStatus.ERROR
        assert row.error == STALE_WORKER_ERROR
        assert orchestrator.last_sweep.stage_rows_closed == 1

    @pytest.mark.asyncio
    async def test_recent_processing_session_untouched(self, orchestrator, db):
        sid = await orchestrator.register_session("u1", [IMAGE])
        db.update_session_status(sid, SessionStatus.PROCESSING)

        assert orchestrator.reset_stuck_sessions(10) == 0
        assert db.get_session(sid).status == SessionStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_stale_imageless_draft_reset(self, orchestrator, db):
        """Test that stale drafts without images are refreshed, not failed."""
        sid = await orchestrator.register_session("u1", [])
        _backdate(db, sid, minutes=30)

        assert orchestrator.reset_stuck_sessions(10) == 0
        assert orchestrator.last_sweep.drafts_reset == [sid]
        assert db.get_session(sid).status == SessionStatus.DRAFT
        assert db.stale_sessions(SessionStatus.DRAFT, time.time() - 600) == []

    @pytest.mark.asyncio
    async def test_swept_session_can_be_retried(self, orchestrator, db):
        sid = await orchestrator.register_session("u1", [IMAGE])
        db.update_session_status(sid, SessionStatus.PROCESSING)
        _backdate(db, sid, minutes=30)
        orchestrator.reset_stuck_sessions(10)

        session = await orchestrator.retry(sid, "u1")

        assert session.status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_sweep_during_stage_stops_worker(self, orchestrator, db, fake_critic, sample_critique):
        """Test that a worker whose running row was swept records nothing more."""
        async def critique(payload, image_urls):
            _backdate(db, sid, minutes=30)
            assert orchestrator.reset_stuck_sessions(10) == 1
            return sample_critique

        fake_critic.critique.side_effect = critique
        sid = await orchestrator.register_session("u1", [IMAGE])

        session = await orchestrator.run(sid)

        assert session.status == SessionStatus.FAILED
        assert [(r.stage, r.status, r.attempt) for r in db.stage_results(sid)] == [
            (StageName.PROMPT_BUILDING, StageStatus.SUCCESS, 1),
            (StageName.CRITIQUE, StageStatus.ERROR, 1),
        ]
        assert db.latest_stage_results(sid)[StageName.CRITIQUE].error == STALE_WORKER_ERROR
        assert db.get_synthesis(sid) is None
        assert db.count_maturity_scores(sid) == 0

    @pytest.mark.asyncio
    async def test_retry_while_swept_worker_still_running(self, orchestrator, db, fake_critic, sample_critique):
        """Test that a retry owns the session once the old worker's row was swept."""
        started = asyncio.Event()
        release = asyncio.Event()
        calls = 0

        async def critique(payload, image_urls):
            nonlocal calls
            calls += 1
            if calls == 1:
                started.set()
                await release.wait()
            return sample_critique

        fake_critic.critique.side_effect = critique
        sid = await orchestrator.register_session("u1", [IMAGE])
        first = asyncio.create_task(orchestrator.run(sid))
        await started.wait()
        _backdate(db, sid, minutes=30)
        assert orchestrator.reset_stuck_sessions(10) == 1

        retried = await orchestrator.retry(sid, "u1")
        release.set()
        await first

        assert retried.status == SessionStatus.COMPLETED
        assert db.get_session(sid).status == SessionStatus.COMPLETED
        assert [(r.stage, r.status, r.attempt) for r in db.stage_results(sid)] == [
            (StageName.PROMPT_BUILDING, StageStatus.SUCCESS, 1),
            (StageName.CRITIQUE, StageStatus.ERROR, 1),
            (StageName.CRITIQUE, StageStatus.SUCCESS, 2),
            (StageName.SYNTHESIS, StageStatus.SUCCESS, 2),
            (StageName.SCORING, StageStatus.SUCCESS, 2),
        ]
        assert db.count_maturity_scores(sid) == 1

    @pytest.mark.asyncio
    async def test_stops_when_session_failed_elsewhere(self, orchestrator, db, fake_critic, sample_critique):
        """Test that no later stage starts once the session left processing."""
        async def critique(payload, image_urls):
            db.update_session_status(sid, SessionStatus.FAILED)
            return sample_critique

        fake_critic.critique.side_effect = critique
        sid = await orchestrator.register_session("u1", [IMAGE])

        session = await orchestrator.run(sid)

        assert session.status == SessionStatus.FAILED
        assert StageName.SYNTHESIS not in db.latest_stage_results(sid)
        assert db.get_synthesis(sid) is None


class TestWorkers:
    """Queue workers and batches."""

    @pytest.mark.asyncio
    async def test_worker_drains_queue(self, orchestrator, db):
        """Test that a worker runs queued sessions and survives bad ids."""
        first = await orchestrator.register_session("u1", [IMAGE])
        second = await orchestrator.register_session("u2", [IMAGE])
        for sid in (first, "missing", second):
            orchestrator.enqueue(sid)

        processed = await orchestrator.run_worker(stop_when_empty=True)

        assert processed == 3
        assert db.get_session(first).status == SessionStatus.COMPLETED
        assert db.get_session(second).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_worker_stops_on_cancel(self, orchestrator):
        task = asyncio.create_task(orchestrator.run_worker())
        await asyncio.sleep(0)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

    @pytest.mark.asyncio
    async def test_run_many(self, orchestrator, fake_critic):
        """Test that a batch counts completed, failed and unstartable sessions."""
        ids = [await orchestrator.register_session("u1", [IMAGE]) for _ in range(3)]

        stats = await orchestrator.run_many(ids + ["missing"])

        assert stats.sessions == 4
        assert stats.completed == 3
        assert stats.errors == 1
        assert stats.to_dict()["failed"] == 0


class TestRegister:
    """Draft registration and image validation."""

    @pytest.mark.asyncio
    async def test_register_stores_draft(self, orchestrator, db):
        sid = await orchestrator.register_session(
            "u1", [f"  {IMAGE}  "], goal="Clearer pricing", personas=["mirror"],
        )

        session = db.get_session(sid)
        assert session.status == SessionStatus.DRAFT
        assert session.image_urls == [IMAGE]
        assert session.personas == ["mirror"]

    @pytest.mark.asyncio
    async def test_malformed_url_rejected(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.register_session("u1", ["ftp://files.example.com/a.png"])

    @pytest.mark.asyncio
    async def test_too_many_images_rejected(self, orchestrator):
        with pytest.raises(ValueError):
            await orchestrator.register_session("u1", [IMAGE] * 11)

    @pytest.mark.asyncio
    async def test_image_check_failure_rejected(self, db, settings, fake_critic, monkeypatch):
        """Test that enabled image validation refuses unreachable images."""
        checking = dataclasses.replace(settings, validate_images=True)
        orchestrator = StageOrchestrator(db, checking, fake_critic)
        monkeypatch.setattr(
            "pipeline.check_images",
            AsyncMock(return_value=[ImageCheck(url=IMAGE, ok=False, status=404, error="HTTP 404")]),
        )

        with pytest.raises(ValueError, match="HTTP 404"):
            await orchestrator.register_session("u1", [IMAGE])
        assert db.list_sessions() == []

    @pytest.mark.asyncio
    async def test_unreachable_image_host_raises_network_error(self, db, settings, fake_critic, monkeypatch):
        checking = dataclasses.replace(settings, validate_images=True)
        orchestrator = StageOrchestrator(db, checking, fake_critic)
        monkeypatch.setattr(
            "pipeline.check_images",
            AsyncMock(return_value=[ImageCheck(
                url=IMAGE, ok=False, error="ClientConnectorError: refused", category=ErrorCategory.NETWORK,
            )]),
        )

        with pytest.raises(NetworkError, match="refused"):
            await orchestrator.register_session("u1", [IMAGE])
        assert db.list_sessions() == []
