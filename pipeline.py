"""Stage orchestration for design critique sessions.

This module drives one AnalysisSession through its stages:

Pipeline Flow:
    1. PROMPT_BUILDING: Retrieve research for the goal, assemble a bounded
       context, and build one prompt per persona
    2. CRITIQUE: Run the critique model once per persona (with fallback)
    3. SYNTHESIS: Merge critiques into summary, priority matrix, annotations
    4. SCORING: Compute and store the maturity score

Lifecycle:
    register_session() stores a draft; run() (or enqueue() + run_worker())
    moves it to processing and executes the stages in order. Every attempt of
    every stage appends a StageResult row. A failed or timed-out stage fails
    the session and no later stage starts. retry() resumes a failed session
    from its first unfinished stage, reusing the payloads of completed ones.

Cancellation:
    cancel() moves the session to cancelled. The running loop notices at the
    next stage boundary, records that stage as skipped, and stops. Once the
    scoring stage has started a session can no longer be cancelled.

Stuck sessions:
    reset_stuck_sessions() fails processing sessions that stopped updating
    and closes their running stage rows. A driver that is still alive finds
    its row already closed when the stage returns, discards the stage output
    and stops; at every stage boundary it also stops if the session left
    processing or a newer attempt exists. Only one driver ever writes a
    session's stage log at a time.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from agents.critic import CritiqueAgent
from agents.prompts import BASE_PROMPT, PromptBuilder, PromptPayload
from config import Config, PipelineSettings
from database import Database
from embeddings import EmbeddingProvider
from errors import (
    AccessDenied,
    CancellationRejected,
    ErrorCategory,
    InvalidTransition,
    LensError,
    SessionNotFound,
    StageError,
    StageTimeout,
    categorize_error,
    error_for_category,
    user_guidance,
)
from knowledge.context import ContextAssembler
from knowledge.retriever import KnowledgeRetriever
from models.critique import PersonaCritique
from models.knowledge import Citation
from models.session import (
    STAGE_ORDER,
    AnalysisMode,
    AnalysisSession,
    SessionStatus,
    StageName,
    StageResult,
    StageStatus,
)
from models.synthesis import MaturityScore, SynthesisResult
from observability.logging import session_context, stage_context
from observability.tracing import trace_operation
from scoring import MaturityScorer
from synthesis import SynthesisEngine
from tools.images import check_images, validate_image_urls

logger = logging.getLogger(__name__)

STALE_WORKER_ERROR = "stale worker"


@dataclass
class StageOutcome:
    """Result of invoking one stage.

    Attributes:
        success: Whether the stage produced its payload
        data: Stage payload (JSON-serializable) on success
        error: The stage error on failure
        lost: The stage row was already closed by someone else (the sweep),
            so this driver no longer owns the session
    """

    success: bool
    data: dict[str, Any] | None = None
    error: StageError | None = None
    lost: bool = False


@dataclass
class SweepReport:
    """Outcome of one stuck-session sweep.

    Attributes:
        failed: Processing sessions moved to failed
        stage_rows_closed: Running stage rows closed as "stale worker"
        drafts_reset: Image-less drafts whose timestamp was refreshed
    """

    failed: list[str] = field(default_factory=list)
    stage_rows_closed: int = 0
    drafts_reset: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return (
            f"failed={len(self.failed)} stage_rows_closed={self.stage_rows_closed} "
            f"drafts_reset={len(self.drafts_reset)}"
        )


@dataclass
class PipelineStats:
    """Statistics from a batch of session runs.

    Attributes:
        sessions: Sessions attempted
        completed: Sessions that reached completed
        failed: Sessions that ended failed
        cancelled: Sessions cancelled while running
        errors: Sessions that could not be started (not found, wrong status)
        duration: Total run time in seconds
    """

    sessions: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    errors: int = 0
    duration: float = 0.0

    def record(self, status: SessionStatus) -> None:
        if status == SessionStatus.COMPLETED:
            self.completed += 1
        elif status == SessionStatus.FAILED:
            self.failed += 1
        elif status == SessionStatus.CANCELLED:
            self.cancelled += 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = asdict(self)
        d["duration"] = round(d["duration"], 2)
        return d


StageHandler = Callable[[AnalysisSession, dict[str, Any]], Awaitable[dict[str, Any]]]


class StageOrchestrator:
    """Per-session state machine over the critique stages.

    Components:
        - Database: sessions, append-only stage log, synthesis and scores
        - KnowledgeRetriever + ContextAssembler: research context
        - PromptBuilder: one prompt per persona
        - CritiqueAgent: model calls with fallback
        - SynthesisEngine / MaturityScorer: pure post-processing

    All per-session state is passed explicitly; stage outputs are read back
    from the stage log on retry, never from orchestrator attributes.
    """

    def __init__(
        self,
        db: Database,
        settings: PipelineSettings,
        critic: CritiqueAgent,
        retriever: KnowledgeRetriever | None = None,
        assembler: ContextAssembler | None = None,
        prompt_builder: PromptBuilder | None = None,
        synthesis: SynthesisEngine | None = None,
        scorer: MaturityScorer | None = None,
    ):
        self.db = db
        self.settings = settings
        self.critic = critic
        self.retriever = retriever
        self.assembler = assembler or ContextAssembler(snippet_chars=settings.snippet_chars)
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.synthesis = synthesis or SynthesisEngine()
        self.scorer = scorer or MaturityScorer(db)
        self.last_sweep: SweepReport | None = None
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._handlers: dict[StageName, StageHandler] = {
            StageName.PROMPT_BUILDING: self._build_prompts,
            StageName.CRITIQUE: self._critique,
            StageName.SYNTHESIS: self._synthesize,
            StageName.SCORING: self._score,
        }

    @classmethod
    def from_config(cls, config: Config, db: Database | None = None) -> "StageOrchestrator":
        """Build an orchestrator with every component configured from Config."""
        db = db or Database(config.db_path)
        settings = config.pipeline_settings()
        retriever = None
        if settings.rag_enabled:
            retriever = KnowledgeRetriever(
                db,
                EmbeddingProvider.from_config(config),
                threshold=settings.match_threshold,
                top_k=settings.match_count,
            )

        if config.enable_logfire:
            from observability.tracing import setup_tracing
            setup_tracing(enabled=True, service_name="lens", token=config.logfire_token)

        return cls(
            db,
            settings,
            CritiqueAgent(config.critique_models),
            retriever=retriever,
            scorer=MaturityScorer(db),
        )

    # ------------------------------------------------------------------
    # Session control
    # ------------------------------------------------------------------

    async def register_session(
        self,
        user_id: str,
        image_urls: list[str],
        goal: str = "",
        personas: list[str] | None = None,
        mode: AnalysisMode = AnalysisMode.SINGLE,
    ) -> str:
        """Store a draft session and return its id.

        Raises:
            ValueError: If an image URL is malformed, or (with image
                validation enabled) does not resolve to an image
            ProviderError: If (with image validation enabled) the image host
                is unreachable, refuses access, or rate limits the check
        """
        urls = validate_image_urls(image_urls)
        if self.settings.validate_images and urls:
            checks = await check_images(urls, max_concurrent=self.settings.max_workers)
            bad = [c for c in checks if not c.ok]
            if bad:
                message = f"Image check failed for {bad[0].url}: {bad[0].error}"
                raise error_for_category(bad[0].category, message) or ValueError(message)

        session = AnalysisSession.new(user_id, urls, goal=goal, personas=personas, mode=mode)
        self.db.create_session(session)
        logger.info(
            "Session registered | session_id=%s user=%s images=%d personas=%s mode=%s",
            session.id, user_id, len(urls), ",".join(session.personas), session.mode.value,
        )
        return session.id

    def _owned_session(self, session_id: str, user_id: str | None) -> AnalysisSession:
        session = self.db.get_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session not found: {session_id}")
        if user_id is not None and session.user_id != user_id:
            raise AccessDenied(f"Session {session_id} does not belong to user {user_id}")
        return session

    async def run(self, session_id: str) -> AnalysisSession:
        """Execute a draft session from the first stage.

        Stage failures do not raise: they are recorded on the stage log and
        the session ends failed. The final session state is returned.

        Raises:
            SessionNotFound: Unknown session id
            InvalidTransition: Session is not a draft, or has no images
        """
        session = self._owned_session(session_id, None)
        if not session.image_urls:
            raise InvalidTransition(f"Session {session_id} has no images to analyze")
        if not self.db.update_session_status(session_id, SessionStatus.PROCESSING, expected=[SessionStatus.DRAFT]):
            raise InvalidTransition(
                f"Cannot run session {session_id} from status '{session.status.value}'"
            )
        return await self._drive(session, start_index=0, attempt=1, state={})

    async def retry(self, session_id: str, user_id: str) -> AnalysisSession:
        """Resume a failed session from its first stage without a success row.

        Raises:
            SessionNotFound: Unknown session id
            AccessDenied: Session belongs to another user
            InvalidTransition: Session is not failed
        """
        session = self._owned_session(session_id, user_id)
        if session.status != SessionStatus.FAILED:
            raise InvalidTransition(f"Only failed sessions can be retried (status '{session.status.value}')")

        latest = self.db.latest_stage_results(session_id)
        state: dict[str, Any] = {}
        start_index = len(STAGE_ORDER)
        for index, stage in enumerate(STAGE_ORDER):
            result = latest.get(stage)
            if result is None or not result.succeeded:
                start_index = index
                break
            self._restore(stage, result.payload or {}, state)

        if not self.db.update_session_status(session_id, SessionStatus.PROCESSING, expected=[SessionStatus.FAILED]):
            raise InvalidTransition(f"Session {session_id} changed status before retry")

        attempt = self.db.max_attempt(session_id) + 1
        resume = STAGE_ORDER[start_index].value if start_index < len(STAGE_ORDER) else "none"
        with session_context(session_id):
            logger.info("Session retry | attempt=%d resume_from=%s", attempt, resume)
        return await self._drive(session, start_index=start_index, attempt=attempt, state=state)

    def cancel(self, session_id: str, user_id: str) -> bool:
        """Cancel a draft or in-progress session.

        Returns:
            True when the session is now cancelled

        Raises:
            SessionNotFound: Unknown session id
            AccessDenied: Session belongs to another user
            CancellationRejected: Session is terminal or scoring has started
        """
        session = self._owned_session(session_id, user_id)
        if session.status.is_terminal:
            raise CancellationRejected(f"Session {session_id} is already {session.status.value}")

        if session.status == SessionStatus.PROCESSING:
            scoring = self.db.latest_stage_results(session_id).get(StageName.SCORING)
            if scoring is not None and scoring.status in (StageStatus.RUNNING, StageStatus.SUCCESS):
                raise CancellationRejected(f"Session {session_id} is already being scored")

        if not self.db.update_session_status(
            session_id,
            SessionStatus.CANCELLED,
            expected=[SessionStatus.DRAFT, SessionStatus.PROCESSING],
        ):
            raise CancellationRejected(f"Session {session_id} changed status during cancellation")

        with session_context(session_id):
            logger.info("Session cancelled | from=%s", session.status.value)
        return True

    def reset_stuck_sessions(self, staleness_minutes: int | None = None) -> int:
        """Fail processing sessions whose worker stopped updating them.

        Running stage rows of those sessions are closed as errors with
        "stale worker". Image-less drafts older than the window get their
        timestamp refreshed and are listed in `last_sweep`.

        Returns:
            Number of sessions moved to failed
        """
        minutes = self.settings.stale_session_minutes if staleness_minutes is None else staleness_minutes
        cutoff = time.time() - minutes * 60
        report = SweepReport()
        now = datetime.now(timezone.utc)

        for session in self.db.stale_sessions(SessionStatus.PROCESSING, cutoff):
            for row in self.db.running_stage_results(session.id):
                duration_ms = int((now - row.started_at).total_seconds() * 1000)
                if self.db.finish_stage_result(
                    row.id,
                    StageStatus.ERROR,
                    max(duration_ms, 0),
                    error=STALE_WORKER_ERROR,
                    error_category=ErrorCategory.TIMEOUT.value,
                    commit=False,
                ):
                    report.stage_rows_closed += 1
            if self.db.update_session_status(
                session.id, SessionStatus.FAILED, expected=[SessionStatus.PROCESSING], commit=False,
            ):
                report.failed.append(session.id)
                logger.warning("Stuck session failed | session_id=%s updated_at=%s", session.id, session.updated_at)

        for session in self.db.stale_sessions(SessionStatus.DRAFT, cutoff):
            if not session.image_urls:
                self.db.touch_session(session.id, commit=False)
                report.drafts_reset.append(session.id)

        self.db.commit()
        self.last_sweep = report
        logger.info("Stuck session sweep | minutes=%d %s", minutes, report)
        return len(report.failed)

    # ------------------------------------------------------------------
    # Queue-driven execution
    # ------------------------------------------------------------------

    def enqueue(self, session_id: str) -> None:
        """Queue a registered session for a worker."""
        self._queue.put_nowait(session_id)
        logger.debug("Session queued | session_id=%s depth=%d", session_id, self._queue.qsize())

    async def run_worker(self, stop_when_empty: bool = False) -> int:
        """Run queued sessions one at a time.

        Args:
            stop_when_empty: Return once the queue is drained instead of waiting

        Returns:
            Number of sessions taken from the queue
        """
        processed = 0
        try:
            while True:
                if stop_when_empty and self._queue.empty():
                    return processed
                session_id = await self._queue.get()
                processed += 1
                try:
                    await self.run(session_id)
                except LensError as e:
                    logger.warning("Queued session not run | session_id=%s error=%s", session_id, e)
                except Exception as e:
                    logger.error("Worker error | session_id=%s error=%s", session_id, e, exc_info=True)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.info("Worker stopped | processed=%d", processed)
            raise

    async def run_many(self, session_ids: list[str]) -> PipelineStats:
        """Run several draft sessions concurrently (bounded by max_workers)."""
        start = time.time()
        stats = PipelineStats(sessions=len(session_ids))
        semaphore = asyncio.Semaphore(self.settings.max_workers)

        async def run_one(session_id: str) -> None:
            async with semaphore:
                try:
                    session = await self.run(session_id)
                except LensError as e:
                    logger.warning("Session not run | session_id=%s error=%s", session_id, e)
                    stats.errors += 1
                    return
                stats.record(session.status)

        await asyncio.gather(*(run_one(sid) for sid in session_ids))
        stats.duration = time.time() - start
        logger.info(
            "Batch done | sessions=%d completed=%d failed=%d cancelled=%d errors=%d duration=%.1fs",
            stats.sessions, stats.completed, stats.failed, stats.cancelled, stats.errors, stats.duration,
        )
        return stats

    # ------------------------------------------------------------------
    # Stage loop
    # ------------------------------------------------------------------

    def _superseded_reason(self, session_id: str, attempt: int) -> str | None:
        """Why this driver must stop touching the session, or None to continue."""
        if self.db.max_attempt(session_id) > attempt:
            return "newer attempt running"
        session = self.db.get_session(session_id)
        if session is None:
            return "session deleted"
        if session.status not in (SessionStatus.PROCESSING, SessionStatus.CANCELLED):
            return f"status is {session.status.value}"
        return None

    async def _drive(
        self,
        session: AnalysisSession,
        start_index: int,
        attempt: int,
        state: dict[str, Any],
    ) -> AnalysisSession:
        with session_context(session.id):
            logger.info(
                "Session started | attempt=%d stages=%s",
                attempt, ",".join(s.value for s in STAGE_ORDER[start_index:]),
            )
            start = time.perf_counter()

            for stage in STAGE_ORDER[start_index:]:
                reason = self._superseded_reason(session.id, attempt)
                if reason is not None:
                    logger.warning("Session abandoned | stage=%s attempt=%d reason=%s", stage.value, attempt, reason)
                    return self.db.get_session(session.id)

                if self.db.get_session(session.id).status == SessionStatus.CANCELLED:
                    self.db.insert_stage_result(StageResult(
                        session_id=session.id,
                        stage=stage,
                        attempt=attempt,
                        status=StageStatus.SKIPPED,
                        error="cancelled",
                        error_category=ErrorCategory.CANCELLED.value,
                    ))
                    logger.info("Session stopped | reason=cancelled skipped_stage=%s", stage.value)
                    return self.db.get_session(session.id)

                with stage_context(stage.value):
                    outcome = await self._execute_stage(session, stage, attempt, state)
                if outcome.lost:
                    logger.warning(
                        "Session abandoned | stage=%s attempt=%d reason=stage row closed elsewhere",
                        stage.value, attempt,
                    )
                    return self.db.get_session(session.id)
                if not outcome.success:
                    self.db.update_session_status(session.id, SessionStatus.FAILED, expected=[SessionStatus.PROCESSING])
                    logger.error(
                        "Session failed | stage=%s category=%s error=%s hint=%s",
                        stage.value, outcome.error.category.value, outcome.error,
                        user_guidance(outcome.error.category),
                    )
                    return self.db.get_session(session.id)
                self._restore(stage, outcome.data, state)

            if self.db.update_session_status(session.id, SessionStatus.COMPLETED, expected=[SessionStatus.PROCESSING]):
                logger.info("Session completed | duration=%.1fs", time.perf_counter() - start)
            else:
                logger.warning("Session changed status while finishing | session_id=%s", session.id)
            return self.db.get_session(session.id)

    async def _execute_stage(
        self,
        session: AnalysisSession,
        stage: StageName,
        attempt: int,
        state: dict[str, Any],
    ) -> StageOutcome:
        """Run one stage under its timeout and record the attempt.

        The stage row is closed only if it is still running. When the sweep
        closed it first, the outcome is marked lost and nothing the stage
        produced is stored.
        """
        row_id = self.db.insert_stage_result(StageResult(
            session_id=session.id,
            stage=stage,
            attempt=attempt,
            status=StageStatus.RUNNING,
        ), commit=False)
        self.db.touch_session(session.id)

        timeout = self.settings.timeout_for(stage.value)
        logger.info("Stage started | stage=%s attempt=%d timeout=%gs", stage.value, attempt, timeout)
        start = time.perf_counter()

        try:
            with trace_operation(f"stage.{stage.value}", {"session_id": session.id, "attempt": attempt}) as attrs:
                payload = await asyncio.wait_for(self._handlers[stage](session, state), timeout=timeout)
                attrs["status"] = StageStatus.SUCCESS.value
        except asyncio.TimeoutError:
            duration_ms = int((time.perf_counter() - start) * 1000)
            error = StageTimeout(stage.value, timeout, duration_ms)
            closed = self.db.finish_stage_result(row_id, StageStatus.TIMEOUT, duration_ms, str(error), error.category.value)
            logger.warning("Stage timed out | stage=%s duration_ms=%d", stage.value, duration_ms)
            return StageOutcome(success=False, error=error, lost=not closed)
        except asyncio.CancelledError:
            logger.info("Stage interrupted | stage=%s", stage.value)
            raise
        except Exception as e:
            duration_ms = int((time.perf_counter() - start) * 1000)
            error = StageError(stage.value, str(e), duration_ms, categorize_error(e))
            closed = self.db.finish_stage_result(row_id, StageStatus.ERROR, duration_ms, str(e), error.category.value)
            logger.warning(
                "Stage failed | stage=%s duration_ms=%d type=%s error=%s",
                stage.value, duration_ms, type(e).__name__, e,
            )
            return StageOutcome(success=False, error=error, lost=not closed)

        duration_ms = int((time.perf_counter() - start) * 1000)
        # Stage outputs and the row close in one transaction
        self._persist(stage, payload)
        if not self.db.finish_stage_result(row_id, StageStatus.SUCCESS, duration_ms, payload=payload, commit=False):
            self.db.rollback()
            error = StageError(stage.value, STALE_WORKER_ERROR, duration_ms, ErrorCategory.TIMEOUT)
            logger.warning("Stage output discarded | stage=%s duration_ms=%d", stage.value, duration_ms)
            return StageOutcome(success=False, error=error, lost=True)
        self.db.commit()
        logger.info("Stage finished | stage=%s duration_ms=%d", stage.value, duration_ms)
        return StageOutcome(success=True, data=payload)

    def _persist(self, stage: StageName, payload: dict[str, Any]) -> None:
        """Write a stage's output tables without committing."""
        if stage == StageName.SYNTHESIS:
            self.db.save_synthesis(SynthesisResult.model_validate(payload["synthesis"]), commit=False)
        elif stage == StageName.SCORING:
            score = MaturityScore.model_validate(payload.pop("score"))
            payload["inserted"] = self.db.insert_maturity_score(score, commit=False)

    @staticmethod
    def _restore(stage: StageName, payload: dict[str, Any], state: dict[str, Any]) -> None:
        """Load a stage payload into the in-flight session state."""
        if stage == StageName.PROMPT_BUILDING:
            state["prompts"] = [PromptPayload.from_dict(p) for p in payload.get("prompts", [])]
            state["citations"] = [Citation.model_validate(c) for c in payload.get("citations", [])]
        elif stage == StageName.CRITIQUE:
            state["critiques"] = [PersonaCritique.model_validate(c) for c in payload.get("critiques", [])]
        elif stage == StageName.SYNTHESIS:
            state["synthesis"] = SynthesisResult.model_validate(payload["synthesis"])

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _build_prompts(self, session: AnalysisSession, state: dict[str, Any]) -> dict[str, Any]:
        matches = []
        if self.settings.rag_enabled and self.retriever is not None:
            matches = await self.retriever.retrieve(
                session.goal,
                threshold=self.settings.match_threshold,
                top_k=self.settings.match_count,
            )
        context = self.assembler.build(matches, self.settings.max_context_chars)

        prompts = [
            self.prompt_builder.build(
                BASE_PROMPT,
                context,
                persona,
                session.goal,
                len(session.image_urls),
                session.is_comparative,
            )
            for persona in session.personas
        ]
        logger.debug(
            "Prompts built | personas=%d research_blocks=%d context_chars=%d",
            len(prompts), context.knowledge_sources_used, len(context.text),
        )
        return {
            "prompts": [p.to_dict() for p in prompts],
            "citations": [c.model_dump(mode="json") for c in context.citations],
            "knowledge_sources_used": context.knowledge_sources_used,
            "total_relevant": context.total_relevant,
            "categories": dict(context.categories),
        }

    async def _critique(self, session: AnalysisSession, state: dict[str, Any]) -> dict[str, Any]:
        critiques = []
        for payload in state["prompts"]:
            critiques.append(await self.critic.critique(payload, session.image_urls))
        return {"critiques": [c.model_dump(mode="json") for c in critiques]}

    async def _synthesize(self, session: AnalysisSession, state: dict[str, Any]) -> dict[str, Any]:
        result = self.synthesis.synthesize(
            state["critiques"],
            goal=session.goal,
            image_count=len(session.image_urls),
            citations=state.get("citations", []),
            session_id=session.id,
        )
        return {"synthesis": result.model_dump(mode="json")}

    async def _score(self, session: AnalysisSession, state: dict[str, Any]) -> dict[str, Any]:
        score = self.scorer.score(state["synthesis"])
        return {
            "overall_score": score.overall_score,
            "maturity_level": score.maturity_level,
            "dimensions": dict(score.dimensions),
            "score": score.model_dump(mode="json"),
        }

    def close(self) -> None:
        """Clean up resources."""
        self.db.close()
