#!/usr/bin/env python3
"""Lens: Research-augmented design critique pipeline powered by PydanticAI agents.

This CLI tool registers critique sessions for stored screenshots, runs them
through retrieval, persona critique, synthesis and scoring, and maintains the
knowledge corpus the critiques are grounded in.

Commands:
    create          Register a draft session (optionally run it immediately)
    run             Run one or more draft sessions
    retry           Resume a failed session from its first unfinished stage
    cancel          Cancel a draft or in-progress session
    show            Show a session, its stage log, synthesis and score
    reset-stuck     Fail sessions whose worker stopped updating them
    backfill        Score completed sessions that have no maturity score
    ingest          Load knowledge entries from a JSON file
    embed-missing   Embed knowledge entries stored without an embedding
    search          Search the knowledge corpus
    status          Show configuration and database statistics

Examples:
    python main.py create --user u1 --image https://cdn.example.com/a.png --goal "More signups" --run
    python main.py retry 3f2a9c... --user u1
    python main.py cancel 3f2a9c... --user u1
    python main.py reset-stuck --minutes 10
    python main.py ingest data/knowledge_seed.json
    python main.py search "checkout form friction" --threshold 0.4

Environment:
    OPENAI_API_KEY: Embeddings and OpenAI critique models
    See config.py for all configuration options
"""

import argparse
import asyncio
import json
import logging
import sys

from config import Config
from database import Database
from errors import CancellationRejected, LensError
from observability.logging import setup_logging

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _session_summary(session) -> dict:
    return {
        "id": session.id,
        "user_id": session.user_id,
        "status": session.status.value,
        "mode": session.mode.value,
        "personas": session.personas,
        "images": len(session.image_urls),
        "goal": session.goal,
        "updated_at": session.updated_at.isoformat(),
    }


def cmd_create(args: argparse.Namespace, config: Config) -> int:
    """Register a draft session and print its id.

    Args:
        args: Parsed command line arguments
        config: Application configuration

    Returns:
        Exit code (0 for success)
    """
    from models.session import AnalysisMode
    from pipeline import StageOrchestrator

    async def create() -> int:
        orchestrator = StageOrchestrator.from_config(config)
        try:
            session_id = await orchestrator.register_session(
                args.user,
                args.image or [],
                goal=args.goal or "",
                personas=args.persona or config.default_personas,
                mode=AnalysisMode(args.mode),
            )
            print(session_id)
            if args.run:
                session = await orchestrator.run(session_id)
                _print_json(_session_summary(session))
                return 0 if session.status.value == "completed" else 1
            return 0
        finally:
            orchestrator.close()

    try:
        return asyncio.run(create())
    except (ValueError, LensError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_run(args: argparse.Namespace, config: Config) -> int:
    """Run draft sessions; several ids run concurrently."""
    from pipeline import StageOrchestrator

    async def run() -> int:
        orchestrator = StageOrchestrator.from_config(config)
        try:
            if len(args.session_ids) == 1:
                session = await orchestrator.run(args.session_ids[0])
                _print_json(_session_summary(session))
                return 0 if session.status.value == "completed" else 1
            if args.queue:
                for session_id in args.session_ids:
                    orchestrator.enqueue(session_id)
                processed = await orchestrator.run_worker(stop_when_empty=True)
                print(f"Processed {processed} queued session(s)")
                return 0
            stats = await orchestrator.run_many(args.session_ids)
            _print_json(stats.to_dict())
            return 0 if stats.failed == 0 and stats.errors == 0 else 1
        finally:
            orchestrator.close()

    try:
        return asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Stopped by user (Ctrl+C)")
        return 130
    except LensError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_retry(args: argparse.Namespace, config: Config) -> int:
    """Retry a failed session."""
    from pipeline import StageOrchestrator

    async def retry() -> int:
        orchestrator = StageOrchestrator.from_config(config)
        try:
            session = await orchestrator.retry(args.session_id, args.user)
        finally:
            orchestrator.close()
        _print_json(_session_summary(session))
        return 0 if session.status.value == "completed" else 1

    try:
        return asyncio.run(retry())
    except LensError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def cmd_cancel(args: argparse.Namespace, config: Config) -> int:
    """Cancel a session. Prints "unable to cancel" when it is too late."""
    from pipeline import StageOrchestrator

    orchestrator = StageOrchestrator.from_config(config)
    try:
        orchestrator.cancel(args.session_id, args.user)
    except CancellationRejected as e:
        print(f"Unable to cancel: {e}", file=sys.stderr)
        return 1
    except LensError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        orchestrator.close()
    print(f"Cancelled {args.session_id}")
    return 0


def cmd_show(args: argparse.Namespace, config: Config) -> int:
    """Display a session with its stage log, synthesis and score."""
    with Database(config.db_path) as db:
        session = db.get_session(args.session_id)
        if session is None:
            print(f"Session not found: {args.session_id}", file=sys.stderr)
            return 1
        stages = db.stage_results(session.id)
        synthesis = db.get_synthesis(session.id)
        score = db.get_maturity_score(session.id)
        percentile = db.score_percentile(score.overall_score) if score else None

    output = {
        "session": _session_summary(session),
        "stages": [
            {
                "stage": r.stage.value,
                "attempt": r.attempt,
                "status": r.status.value,
                "duration_ms": r.duration_ms,
                "error": r.error,
                "error_category": r.error_category,
            }
            for r in stages
        ],
    }
    if synthesis:
        output["synthesis"] = {
            "summary": synthesis.summary,
            "priority_matrix": synthesis.priority_matrix.counts(),
            "gripe_level": synthesis.gripe_level,
            "citations": [f"[{c.index}] {c.title}" for c in synthesis.citations],
        }
        if args.annotations:
            output["synthesis"]["annotations"] = [a.model_dump(mode="json") for a in synthesis.annotations]
    if score:
        output["score"] = {
            "overall_score": score.overall_score,
            "maturity_level": score.maturity_level,
            "percentile": percentile,
            "dimensions": score.dimensions,
        }

    _print_json(output)
    return 0


def cmd_reset_stuck(args: argparse.Namespace, config: Config) -> int:
    """Sweep sessions stuck in processing."""
    from pipeline import StageOrchestrator

    orchestrator = StageOrchestrator.from_config(config)
    try:
        count = orchestrator.reset_stuck_sessions(args.minutes)
        report = orchestrator.last_sweep
    finally:
        orchestrator.close()

    _print_json({
        "reset": count,
        "sessions": report.failed,
        "stage_rows_closed": report.stage_rows_closed,
        "drafts_reset": report.drafts_reset,
    })
    return 0


def cmd_backfill(args: argparse.Namespace, config: Config) -> int:
    """Insert missing maturity scores."""
    from scoring import MaturityScorer

    delay = config.backfill_delay_seconds if args.delay is None else args.delay
    with Database(config.db_path) as db:
        report = asyncio.run(MaturityScorer(db).backfill(delay_seconds=delay))

    _print_json({
        "candidates": report.candidates,
        "inserted": report.inserted,
        "skipped": report.skipped,
        "failed": report.failed,
    })
    return 0 if not report.failed else 1


def cmd_ingest(args: argparse.Namespace, config: Config) -> int:
    """Load knowledge entries from a JSON file."""
    from embeddings import EmbeddingProvider
    from knowledge.ingest import KnowledgeIngestor

    with Database(config.db_path) as db:
        ingestor = KnowledgeIngestor(db, EmbeddingProvider.from_config(config))
        report = asyncio.run(ingestor.ingest_file(args.path))

    print(f"Ingest complete | {report}")
    for error in report.errors:
        print(f"  - {error}", file=sys.stderr)
    return 0 if not report.errors else 1


def cmd_embed_missing(args: argparse.Namespace, config: Config) -> int:
    """Embed stored entries that have no embedding yet."""
    from embeddings import EmbeddingProvider
    from knowledge.ingest import KnowledgeIngestor

    with Database(config.db_path) as db:
        ingestor = KnowledgeIngestor(db, EmbeddingProvider.from_config(config))
        report = asyncio.run(ingestor.embed_missing(limit=args.limit or None))

    print(f"Embedding backfill complete | {report}")
    return 0


def cmd_search(args: argparse.Namespace, config: Config) -> int:
    """Search the knowledge corpus for a free-text query."""
    from embeddings import EmbeddingProvider
    from errors import EmbeddingUnavailable
    from knowledge.retriever import KnowledgeRetriever

    threshold = config.match_threshold if args.threshold is None else args.threshold
    top_k = config.match_count if args.top_k is None else args.top_k
    provider = EmbeddingProvider.from_config(config)

    try:
        vector, tag = asyncio.run(provider.embed_tagged(args.query))
    except EmbeddingUnavailable as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    with Database(config.db_path) as db:
        matches = KnowledgeRetriever(db).search(
            vector, threshold, top_k, category=args.category, model_tag=tag,
        )

    if not matches:
        print(f"No knowledge entries above similarity {threshold:.2f}.")
        return 0
    _print_json([m.to_dict() if args.full else {**m.to_dict(), "content": m.content[:200]} for m in matches])
    return 0


def cmd_status(args: argparse.Namespace, config: Config) -> int:
    """Display configuration and database statistics."""
    with Database(config.db_path) as db:
        db_stats = db.stats()

    status = {
        "config": {
            "critique_models": config.critique_models,
            "default_personas": config.default_personas,
            "embedding_backends": config.embedding_backends,
            "embedding_model": config.embedding_model,
            "rag_enabled": config.rag_enabled,
            "match_threshold": config.match_threshold,
            "match_count": config.match_count,
            "max_context_chars": config.max_context_chars,
            "stage_timeouts": config.pipeline_settings().stage_timeouts,
            "max_workers": config.max_workers,
            "enable_logfire": config.enable_logfire,
        },
        "database": {
            "path": str(config.db_path),
            **db_stats,
        },
    }

    _print_json(status)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Lens: Research-augmented design critique pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # create command
    create_parser = subparsers.add_parser("create", help="Register a draft session")
    create_parser.add_argument("--user", required=True, help="Owning user id")
    create_parser.add_argument(
        "--image",
        action="append",
        help="Stored image URL (repeat for multi-screen journeys)",
    )
    create_parser.add_argument("--goal", help="What the design should achieve")
    create_parser.add_argument(
        "--persona",
        action="append",
        help="Critique persona (repeatable, default: DEFAULT_PERSONAS)",
    )
    create_parser.add_argument(
        "--mode",
        choices=["single", "comparative"],
        default="single",
        help="Analysis mode (default: single)",
    )
    create_parser.add_argument(
        "--run",
        action="store_true",
        help="Run the session immediately after registering it",
    )

    # run command
    run_parser = subparsers.add_parser("run", help="Run draft sessions")
    run_parser.add_argument("session_ids", nargs="+", help="Session id(s)")
    run_parser.add_argument(
        "--queue",
        action="store_true",
        help="Run several sessions one at a time through the worker queue",
    )

    # retry command
    retry_parser = subparsers.add_parser("retry", help="Retry a failed session")
    retry_parser.add_argument("session_id")
    retry_parser.add_argument("--user", required=True, help="Owning user id")

    # cancel command
    cancel_parser = subparsers.add_parser("cancel", help="Cancel a session")
    cancel_parser.add_argument("session_id")
    cancel_parser.add_argument("--user", required=True, help="Owning user id")

    # show command
    show_parser = subparsers.add_parser("show", help="Show a session")
    show_parser.add_argument("session_id")
    show_parser.add_argument(
        "--annotations",
        action="store_true",
        help="Include every annotation in the output",
    )

    # reset-stuck command
    reset_parser = subparsers.add_parser("reset-stuck", help="Fail sessions stuck in processing")
    reset_parser.add_argument(
        "--minutes",
        type=int,
        default=None,
        help="Staleness window in minutes (default: STALE_SESSION_MINUTES)",
    )

    # backfill command
    backfill_parser = subparsers.add_parser("backfill", help="Insert missing maturity scores")
    backfill_parser.add_argument(
        "--delay",
        type=float,
        default=None,
        help="Seconds to sleep between sessions (default: BACKFILL_DELAY_SECONDS)",
    )

    # ingest command
    ingest_parser = subparsers.add_parser("ingest", help="Load knowledge entries from JSON")
    ingest_parser.add_argument("path", help="JSON file (list of entries or {\"entries\": [...]})")

    # embed-missing command
    embed_parser = subparsers.add_parser("embed-missing", help="Embed entries stored without an embedding")
    embed_parser.add_argument(
        "--limit",
        type=int,
        default=0,
        help="Max entries to embed (0 = all)",
    )

    # search command
    search_parser = subparsers.add_parser("search", help="Search the knowledge corpus")
    search_parser.add_argument("query")
    search_parser.add_argument("--threshold", type=float, default=None, help="Minimum similarity")
    search_parser.add_argument("--top-k", type=int, default=None, help="Maximum results")
    search_parser.add_argument("--category", help="Only search this category")
    search_parser.add_argument("--full", action="store_true", help="Print full entry content")

    # status command
    subparsers.add_parser("status", help="Show configuration and statistics")

    return parser


COMMANDS = {
    "create": cmd_create,
    "run": cmd_run,
    "retry": cmd_retry,
    "cancel": cmd_cancel,
    "show": cmd_show,
    "reset-stuck": cmd_reset_stuck,
    "backfill": cmd_backfill,
    "ingest": cmd_ingest,
    "embed-missing": cmd_embed_missing,
    "search": cmd_search,
    "status": cmd_status,
}

# Commands that call embedding or critique models
MODEL_COMMANDS = ("create", "run", "retry", "ingest", "embed-missing", "search")


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    # Load configuration
    config = Config.load()

    # Setup logging
    setup_logging(config, verbose=args.verbose)

    # Validate configuration for commands that need it
    if args.command in MODEL_COMMANDS:
        error = config.validate()
        if error:
            print(f"Configuration error: {error}", file=sys.stderr)
            return 1

    if args.command in COMMANDS:
        try:
            return COMMANDS[args.command](args, config)
        except Exception as e:
            logger.error("Command failed | cmd=%s error=%s", args.command, e, exc_info=True)
            print(f"Error: {e}", file=sys.stderr)
            return 1
    else:
        parser.print_help()
        return 0


if __name__ == "__main__":
    sys.exit(main())
