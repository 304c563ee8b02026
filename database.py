"""Database operations for the Lens critique pipeline.

This module provides SQLite-based storage for analysis sessions, the
append-only stage log, synthesis results, maturity scores, and the
knowledge corpus used for research-augmented prompts.

Database Schema:
    sessions table:
        - id (TEXT, PK): Session id
        - user_id (TEXT): Owning user
        - status (TEXT): draft/processing/completed/failed/cancelled
        - image_urls, personas (TEXT): JSON arrays
        - goal, mode (TEXT)
        - created_at, updated_at (REAL): Unix epoch seconds

    stage_results table (append-only):
        - id (INTEGER, PK): Insertion order
        - session_id, stage, attempt, status
        - started_at (REAL), duration_ms (INTEGER)
        - error, error_category (TEXT), payload (TEXT, JSON)

    synthesis_results table:
        - session_id (TEXT, PK), result (TEXT, JSON)

    maturity_scores table:
        - session_id (TEXT, UNIQUE): at most one score per session
        - dimensions (TEXT): JSON per-dimension scores

    knowledge_entries table:
        - id (TEXT, PK), title, content, category, source
        - embedding (BLOB): float32 vector, NULL until embedded
        - embedding_model (TEXT): model-version tag of the vector
        - dim (INTEGER): vector dimensionality

Features:
    - WAL mode for concurrent read/write access
    - Compare-and-set session status updates
    - Stage rows are only ever finished once (running -> final)
    - Snapshot reads of the knowledge corpus
    - Context manager support for auto-cleanup
"""

import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable

import numpy as np

from models.critique import Severity
from models.knowledge import KnowledgeEntry
from models.session import AnalysisSession, SessionStatus, StageName, StageResult, StageStatus
from models.synthesis import MaturityScore, SynthesisResult

logger = logging.getLogger(__name__)


@dataclass
class StoredVector:
    """A knowledge row as read by a corpus snapshot."""
    id: str
    title: str
    content: str
    category: str
    source: str
    embedding_model: str
    embedding: np.ndarray | None


def _embedding_to_blob(embedding) -> bytes:
    """Convert an embedding to a SQLite BLOB (float32)."""
    return np.asarray(embedding, dtype=np.float32).tobytes()


def _blob_to_embedding(blob: bytes) -> np.ndarray:
    """Convert SQLite BLOB to numpy embedding."""
    return np.frombuffer(blob, dtype=np.float32)


def _to_ts(value: datetime) -> float:
    return value.timestamp()


def _from_ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, timezone.utc)


class Database:
    """SQLite database for sessions, stage results, scores and knowledge.

    All methods are synchronous and short. The pipeline calls them from the
    event loop thread, so a single connection is enough.

    Example:
        >>> with Database("lens.db") as db:
        ...     db.create_session(session)
        ...     db.stage_results(session.id)
    """

    SCHEMA = """
    -- One row per analysis session
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'draft',
        image_urls TEXT NOT NULL DEFAULT '[]',   -- JSON array, upload order
        goal TEXT NOT NULL DEFAULT '',
        personas TEXT NOT NULL DEFAULT '["clarity"]',
        mode TEXT NOT NULL DEFAULT 'single',
        created_at REAL NOT NULL,
        updated_at REAL NOT NULL
    );

    -- Stuck-session sweep and status listing
    CREATE INDEX IF NOT EXISTS idx_sessions_status_updated ON sessions(status, updated_at);
    CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);

    -- Append-only stage log: one row per stage per attempt
    CREATE TABLE IF NOT EXISTS stage_results (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL,
        stage TEXT NOT NULL,
        attempt INTEGER NOT NULL DEFAULT 1,
        status TEXT NOT NULL,
        started_at REAL NOT NULL,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        error TEXT,
        error_category TEXT,
        payload TEXT                             -- JSON, NULL until success
    );

    CREATE INDEX IF NOT EXISTS idx_stage_results_session ON stage_results(session_id, id);

    CREATE TABLE IF NOT EXISTS synthesis_results (
        session_id TEXT PRIMARY KEY,
        result TEXT NOT NULL,                    -- SynthesisResult JSON
        created_at REAL NOT NULL
    );

    -- At most one score per session (backfill relies on this)
    CREATE TABLE IF NOT EXISTS maturity_scores (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id TEXT NOT NULL UNIQUE,
        overall_score INTEGER NOT NULL,
        maturity_level TEXT NOT NULL,
        critical_count INTEGER NOT NULL DEFAULT 0,
        suggested_count INTEGER NOT NULL DEFAULT 0,
        enhancement_count INTEGER NOT NULL DEFAULT 0,
        dimensions TEXT NOT NULL DEFAULT '{}',     -- JSON: dimension -> 0-20
        created_at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_maturity_scores_score ON maturity_scores(overall_score);

    -- Curated research corpus
    CREATE TABLE IF NOT EXISTS knowledge_entries (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        content TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT 'general',
        source TEXT NOT NULL DEFAULT '',
        freshness_score REAL NOT NULL DEFAULT 1.0,
        embedding BLOB,                          -- float32 vector
        embedding_model TEXT,                    -- '<backend>:<model>'
        dim INTEGER,
        created_at REAL NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_knowledge_category ON knowledge_entries(category);
    CREATE INDEX IF NOT EXISTS idx_knowledge_model ON knowledge_entries(embedding_model);
    """

    path: Path
    conn: sqlite3.Connection

    def __init__(self, path: Path | str):
        """Open (and create if needed) the database.

        Args:
            path: Path to SQLite database file, or ':memory:'
        """
        self.path = Path(path)
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row

        # WAL mode allows concurrent readers during writes
        self.conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()
        logger.debug("Database initialized | path=%s", self.path)

    def _init_schema(self) -> None:
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()
        self._migrate()

    def _migrate(self) -> None:
        """Add columns introduced after the first schema version."""
        cursor = self.conn.execute("PRAGMA table_info(maturity_scores)")
        columns = {row["name"] for row in cursor.fetchall()}

        if "dimensions" not in columns:
            self.conn.execute("ALTER TABLE maturity_scores ADD COLUMN dimensions TEXT NOT NULL DEFAULT '{}'")
            self.conn.commit()
            logger.info("Database migrated | added column=maturity_scores.dimensions")

    def commit(self) -> None:
        """Commit pending changes."""
        self.conn.commit()

    def rollback(self) -> None:
        """Discard uncommitted changes."""
        self.conn.rollback()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: AnalysisSession, commit: bool = True) -> None:
        self.conn.execute(
            """
            INSERT INTO sessions
            (id, user_id, status, image_urls, goal, personas, mode, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                session.id,
                session.user_id,
                session.status.value,
                json.dumps(session.image_urls),
                session.goal,
                json.dumps(session.personas),
                session.mode.value,
                _to_ts(session.created_at),
                _to_ts(session.updated_at),
            ),
        )
        if commit:
            self.conn.commit()
        logger.debug("Session saved | session_id=%s status=%s", session.id, session.status.value)

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> AnalysisSession:
        return AnalysisSession(
            id=row["id"],
            user_id=row["user_id"],
            status=SessionStatus(row["status"]),
            image_urls=json.loads(row["image_urls"]),
            goal=row["goal"],
            personas=json.loads(row["personas"]),
            mode=row["mode"],
            created_at=_from_ts(row["created_at"]),
            updated_at=_from_ts(row["updated_at"]),
        )

    def get_session(self, session_id: str) -> AnalysisSession | None:
        row = self.conn.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return self._row_to_session(row) if row else None

    def list_sessions(
        self,
        status: SessionStatus | None = None,
        user_id: str | None = None,
        limit: int = 50,
    ) -> list[AnalysisSession]:
        """Most recently updated sessions first."""
        clauses, params = [], []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = self.conn.execute(
            f"SELECT * FROM sessions {where} ORDER BY updated_at DESC, id LIMIT ?",
            (*params, limit),
        )
        return [self._row_to_session(row) for row in cursor.fetchall()]

    def update_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        expected: Iterable[SessionStatus] | None = None,
        commit: bool = True,
    ) -> bool:
        """Set a session's status, optionally only if it is currently in `expected`.

        Returns:
            True if the row was updated
        """
        sql = "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?"
        params: list[Any] = [status.value, time.time(), session_id]
        if expected is not None:
            allowed = [s.value for s in expected]
            sql += f" AND status IN ({','.join('?' * len(allowed))})"
            params.extend(allowed)
        cursor = self.conn.execute(sql, params)
        if commit:
            self.conn.commit()
        return cursor.rowcount > 0

    def touch_session(self, session_id: str, commit: bool = True) -> None:
        """Refresh updated_at (a worker heartbeat)."""
        self.conn.execute("UPDATE sessions SET updated_at = ? WHERE id = ?", (time.time(), session_id))
        if commit:
            self.conn.commit()

    def stale_sessions(self, status: SessionStatus, older_than: float) -> list[AnalysisSession]:
        """Sessions in `status` whose updated_at is before the given epoch time."""
        cursor = self.conn.execute(
            "SELECT * FROM sessions WHERE status = ? AND updated_at < ? ORDER BY updated_at",
            (status.value, older_than),
        )
        return [self._row_to_session(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Stage log
    # ------------------------------------------------------------------

    def insert_stage_result(self, result: StageResult, commit: bool = True) -> int:
        """Append a stage row. Returns the new row id."""
        cursor = self.conn.execute(
            """
            INSERT INTO stage_results
            (session_id, stage, attempt, status, started_at, duration_ms, error, error_category, payload)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.session_id,
                result.stage.value,
                result.attempt,
                result.status.value,
                _to_ts(result.started_at),
                result.duration_ms,
                result.error,
                result.error_category,
                json.dumps(result.payload) if result.payload is not None else None,
            ),
        )
        if commit:
            self.conn.commit()
        return cursor.lastrowid

    def finish_stage_result(
        self,
        result_id: int,
        status: StageStatus,
        duration_ms: int,
        error: str | None = None,
        error_category: str | None = None,
        payload: dict | None = None,
        commit: bool = True,
    ) -> bool:
        """Close an open (pending/running) stage row. Finished rows are never rewritten."""
        cursor = self.conn.execute(
            """
            UPDATE stage_results
            SET status = ?, duration_ms = ?, error = ?, error_category = ?, payload = ?
            WHERE id = ? AND status IN ('pending', 'running')
            """,
            (
                status.value,
                duration_ms,
                error,
                error_category,
                json.dumps(payload) if payload is not None else None,
                result_id,
            ),
        )
        if commit:
            self.conn.commit()
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_stage_result(row: sqlite3.Row) -> StageResult:
        return StageResult(
            id=row["id"],
            session_id=row["session_id"],
            stage=StageName(row["stage"]),
            attempt=row["attempt"],
            status=StageStatus(row["status"]),
            started_at=_from_ts(row["started_at"]),
            duration_ms=row["duration_ms"],
            error=row["error"],
            error_category=row["error_category"],
            payload=json.loads(row["payload"]) if row["payload"] else None,
        )

    def stage_results(self, session_id: str) -> list[StageResult]:
        """All stage rows of a session, in insertion order."""
        cursor = self.conn.execute(
            "SELECT * FROM stage_results WHERE session_id = ? ORDER BY id",
            (session_id,),
        )
        return [self._row_to_stage_result(row) for row in cursor.fetchall()]

    def latest_stage_results(self, session_id: str) -> dict[StageName, StageResult]:
        """Most recent row per stage."""
        latest: dict[StageName, StageResult] = {}
        for result in self.stage_results(session_id):
            latest[result.stage] = result
        return latest

    def running_stage_results(self, session_id: str) -> list[StageResult]:
        cursor = self.conn.execute(
            "SELECT * FROM stage_results WHERE session_id = ? AND status = 'running' ORDER BY id",
            (session_id,),
        )
        return [self._row_to_stage_result(row) for row in cursor.fetchall()]

    def max_attempt(self, session_id: str) -> int:
        row = self.conn.execute(
            "SELECT MAX(attempt) AS attempt FROM stage_results WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return row["attempt"] or 0

    # ------------------------------------------------------------------
    # Synthesis and scores
    # ------------------------------------------------------------------

    def save_synthesis(self, result: SynthesisResult, commit: bool = True) -> None:
        self.conn.execute(
            "INSERT OR REPLACE INTO synthesis_results (session_id, result, created_at) VALUES (?, ?, ?)",
            (result.session_id, result.model_dump_json(), _to_ts(result.created_at)),
        )
        if commit:
            self.conn.commit()

    def get_synthesis(self, session_id: str) -> SynthesisResult | None:
        row = self.conn.execute(
            "SELECT result FROM synthesis_results WHERE session_id = ?", (session_id,)
        ).fetchone()
        return SynthesisResult.model_validate_json(row["result"]) if row else None

    def insert_maturity_score(self, score: MaturityScore, commit: bool = True) -> bool:
        """Insert a score unless the session already has one.

        Returns:
            True if a row was inserted
        """
        cursor = self.conn.execute(
            """
            INSERT OR IGNORE INTO maturity_scores
            (session_id, overall_score, maturity_level, critical_count,
             suggested_count, enhancement_count, dimensions, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                score.session_id,
                score.overall_score,
                score.maturity_level,
                score.critical_count,
                score.suggested_count,
                score.enhancement_count,
                json.dumps(score.dimensions),
                _to_ts(score.created_at),
            ),
        )
        if commit:
            self.conn.commit()
        return cursor.rowcount > 0

    def get_maturity_score(self, session_id: str) -> MaturityScore | None:
        row = self.conn.execute(
            "SELECT * FROM maturity_scores WHERE session_id = ?", (session_id,)
        ).fetchone()
        if not row:
            return None
        return MaturityScore(
            session_id=row["session_id"],
            overall_score=row["overall_score"],
            maturity_level=row["maturity_level"],
            critical_count=row["critical_count"],
            suggested_count=row["suggested_count"],
            enhancement_count=row["enhancement_count"],
            dimensions=json.loads(row["dimensions"] or "{}"),
            created_at=_from_ts(row["created_at"]),
        )

    def score_percentile(self, overall_score: int) -> int:
        """Percentage of stored scores strictly below `overall_score` (50 with no scores)."""
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(CASE WHEN overall_score < ? THEN 1 ELSE 0 END), 0) AS below
            FROM maturity_scores
            """,
            (overall_score,),
        ).fetchone()
        if not row["total"]:
            return 50
        return round(row["below"] * 100 / row["total"])

    def count_maturity_scores(self, session_id: str | None = None) -> int:
        if session_id is None:
            row = self.conn.execute("SELECT COUNT(*) AS n FROM maturity_scores").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM maturity_scores WHERE session_id = ?", (session_id,)
            ).fetchone()
        return row["n"]

    def sessions_missing_scores(self) -> list[str]:
        """Completed sessions that have a synthesis result but no maturity score."""
        cursor = self.conn.execute(
            """
            SELECT s.id
            FROM sessions s
            JOIN synthesis_results r ON r.session_id = s.id
            LEFT JOIN maturity_scores m ON m.session_id = s.id
            WHERE s.status = ? AND m.session_id IS NULL
            ORDER BY s.created_at, s.id
            """,
            (SessionStatus.COMPLETED.value,),
        )
        return [row["id"] for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Knowledge corpus
    # ------------------------------------------------------------------

    def insert_knowledge(self, entry: KnowledgeEntry, commit: bool = True) -> bool:
        """Store an entry. Existing ids are left untouched (entries are immutable).

        Returns:
            True if the entry was inserted
        """
        blob = _embedding_to_blob(entry.embedding) if entry.embedding else None
        cursor = self.conn.execute(
            """
            INSERT OR IGNORE INTO knowledge_entries
            (id, title, content, category, source, freshness_score,
             embedding, embedding_model, dim, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.id,
                entry.title,
                entry.content,
                entry.category,
                entry.source,
                entry.freshness_score,
                blob,
                entry.embedding_model or None,
                entry.dim or None,
                _to_ts(entry.created_at),
            ),
        )
        if commit:
            self.conn.commit()
        return cursor.rowcount > 0

    def set_knowledge_embedding(
        self,
        entry_id: str,
        embedding: list[float],
        model_tag: str,
        commit: bool = True,
    ) -> bool:
        """Attach an embedding to an entry stored without one."""
        cursor = self.conn.execute(
            """
            UPDATE knowledge_entries
            SET embedding = ?, embedding_model = ?, dim = ?
            WHERE id = ? AND embedding IS NULL
            """,
            (_embedding_to_blob(embedding), model_tag, len(embedding), entry_id),
        )
        if commit:
            self.conn.commit()
        return cursor.rowcount > 0

    def knowledge_missing_embeddings(self, limit: int | None = None) -> list[KnowledgeEntry]:
        sql = "SELECT * FROM knowledge_entries WHERE embedding IS NULL ORDER BY id"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        cursor = self.conn.execute(sql, params)
        return [
            KnowledgeEntry(
                id=row["id"],
                title=row["title"],
                content=row["content"],
                category=row["category"],
                source=row["source"],
                freshness_score=row["freshness_score"],
                created_at=_from_ts(row["created_at"]),
            )
            for row in cursor.fetchall()
        ]

    def knowledge_exists(self, entry_id: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM knowledge_entries WHERE id = ?", (entry_id,)).fetchone()
        return row is not None

    def delete_knowledge(self, entry_id: str) -> bool:
        """Explicit curation: remove one entry."""
        cursor = self.conn.execute("DELETE FROM knowledge_entries WHERE id = ?", (entry_id,))
        self.conn.commit()
        if cursor.rowcount:
            logger.info("Knowledge entry deleted | id=%s", entry_id)
        return cursor.rowcount > 0

    def knowledge_snapshot(self, category: str | None = None) -> list[StoredVector]:
        """Copy the corpus (optionally one category) out of the database.

        A single SELECT reads one consistent snapshot under WAL, so rows
        added by a concurrent ingestion are either fully visible or absent.
        """
        sql = """
            SELECT id, title, content, category, source, embedding, embedding_model
            FROM knowledge_entries
        """
        params: tuple = ()
        if category is not None:
            sql += " WHERE category = ?"
            params = (category,)
        sql += " ORDER BY id"
        rows = self.conn.execute(sql, params).fetchall()
        return [
            StoredVector(
                id=row["id"],
                title=row["title"],
                content=row["content"],
                category=row["category"],
                source=row["source"],
                embedding_model=row["embedding_model"] or "",
                embedding=_blob_to_embedding(row["embedding"]) if row["embedding"] is not None else None,
            )
            for row in rows
        ]

    def knowledge_stats(self) -> dict[str, Any]:
        """Corpus counts: total, missing embeddings, per model tag, per category."""
        total = self.conn.execute("SELECT COUNT(*) AS n FROM knowledge_entries").fetchone()["n"]
        missing = self.conn.execute(
            "SELECT COUNT(*) AS n FROM knowledge_entries WHERE embedding IS NULL"
        ).fetchone()["n"]
        by_model = {
            row["embedding_model"]: row["n"]
            for row in self.conn.execute(
                """
                SELECT embedding_model, COUNT(*) AS n FROM knowledge_entries
                WHERE embedding IS NOT NULL GROUP BY embedding_model
                """
            )
        }
        by_category = {
            row["category"]: row["n"]
            for row in self.conn.execute(
                "SELECT category, COUNT(*) AS n FROM knowledge_entries GROUP BY category"
            )
        }
        return {"total": total, "missing_embeddings": missing, "by_model": by_model, "by_category": by_category}

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Get database statistics.

        Returns:
            Dictionary with session counts by status, stage row counts,
            score count and knowledge corpus counts
        """
        sessions = {status.value: 0 for status in SessionStatus}
        for row in self.conn.execute("SELECT status, COUNT(*) AS n FROM sessions GROUP BY status"):
            sessions[row["status"]] = row["n"]

        stages = {
            row["status"]: row["n"]
            for row in self.conn.execute("SELECT status, COUNT(*) AS n FROM stage_results GROUP BY status")
        }
        severities = {s.value: 0 for s in Severity}
        row = self.conn.execute(
            """
            SELECT COALESCE(SUM(critical_count), 0) AS critical,
                   COALESCE(SUM(suggested_count), 0) AS suggested,
                   COALESCE(SUM(enhancement_count), 0) AS enhancement
            FROM maturity_scores
            """
        ).fetchone()
        for key in severities:
            severities[key] = row[key]

        return {
            "sessions": sessions,
            "stage_results": stages,
            "maturity_scores": self.count_maturity_scores(),
            "findings": severities,
            "knowledge": self.knowledge_stats(),
        }

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
