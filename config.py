"""Configuration management for the Lens design critique pipeline.

This module provides centralized configuration for all pipeline components.
All settings are loaded from environment variables with sensible defaults.

Environment Variables:
    Credentials:
        OPENAI_API_KEY: OpenAI key (embeddings, optional critique backend)
        ANTHROPIC_API_KEY: Anthropic key for the default critique backend

    Models:
        CRITIQUE_MODELS: Comma-separated pydantic-ai model strings, tried in order,
            each optionally tagged with capabilities ("model[text]")
        EMBEDDING_BACKENDS: Comma-separated embedding backends ('openai', 'local')
        EMBEDDING_MODEL: OpenAI embedding model name
        LOCAL_EMBEDDING_MODEL: sentence-transformers model name
        EMBEDDING_MAX_CHARS: Input longer than this is truncated before embedding

    Retrieval:
        RAG_ENABLED: Enable research context retrieval
        MATCH_THRESHOLD: Minimum cosine similarity for a knowledge match
        MATCH_COUNT: Maximum number of matches per query (top-K)
        MAX_CONTEXT_CHARS: Character budget of the research context block
        SNIPPET_CHARS: Content characters kept per citation block

    Pipeline Behavior:
        PROMPT_TIMEOUT_SECONDS / CRITIQUE_TIMEOUT_SECONDS /
        SYNTHESIS_TIMEOUT_SECONDS / SCORING_TIMEOUT_SECONDS: Per-stage timeouts
        STALE_SESSION_MINUTES: Age after which a processing session is stuck
        BACKFILL_DELAY_SECONDS: Pause between sessions in maturity backfill
        MAX_WORKERS: Maximum sessions analyzed concurrently
        VALIDATE_IMAGES: Check image URLs are reachable when registering

    Output:
        DB_PATH: SQLite database file path
        LOG_DIR: Directory for log files

    Optional Features:
        ENABLE_LOGFIRE: Enable Logfire/OpenTelemetry tracing

    Logging:
        LOG_LEVEL: Logging verbosity (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        LOG_BACKUP_COUNT: Number of rotated log files to keep
        LOG_MAX_BYTES: Max log file size in bytes (0 = time-based rotation)
        LOG_FORMAT: Log format ('text' or 'json' for structured logging)
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


def _env(key: str, default: str = "") -> str:
    """Get string environment variable with optional default.

    Args:
        key: Environment variable name
        default: Value to return if not set

    Returns:
        Environment variable value or default
    """
    return os.environ.get(key, default)


def _env_int(key: str, default: int) -> int:
    """Get integer environment variable with default.

    Raises:
        ValueError: If value is set but cannot be parsed as integer
    """
    val = os.environ.get(key)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer value for {key}: '{val}'")


def _env_float(key: str, default: float) -> float:
    """Get float environment variable with default.

    Raises:
        ValueError: If value is set but cannot be parsed as float
    """
    val = os.environ.get(key)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Invalid float value for {key}: '{val}'")


def _env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable with default.

    Recognizes truthy values: '1', 'true', 'yes', 'on'
    Recognizes falsy values: '0', 'false', 'no', 'off'
    """
    val = os.environ.get(key, "").lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return default


def _env_list(key: str, default: list[str]) -> list[str]:
    """Get comma-separated list environment variable with default."""
    val = os.environ.get(key, "")
    items = [item.strip() for item in val.split(",") if item.strip()]
    return items or list(default)


# Critique backends in fallback order (pydantic-ai provider:model format).
# An entry may end with its input capabilities in brackets, e.g.
# "openai:llama3@http://localhost:8080/v1[text]"; untagged entries take
# text and images.
DEFAULT_CRITIQUE_MODELS = [
    "anthropic:claude-sonnet-4-20250514",
    "openai:gpt-4o",
]

MODEL_CAPABILITIES = ("text", "vision")

_CAPABILITY_TAG = re.compile(r"^(?P<model>.+?)\[(?P<caps>[a-z_,\s]*)\]$")


def parse_model_entry(entry: str) -> tuple[str, frozenset[str]]:
    """Split a CRITIQUE_MODELS entry into (model string, capabilities)."""
    entry = entry.strip()
    match = _CAPABILITY_TAG.match(entry)
    if not match:
        return entry, frozenset(MODEL_CAPABILITIES)
    caps = frozenset(c.strip() for c in match.group("caps").split(",") if c.strip())
    return match.group("model").strip(), caps


DEFAULT_EMBEDDING_BACKENDS = ["openai", "local"]

EMBEDDING_BACKEND_NAMES = ("openai", "local")

KNOWN_PERSONAS = ("clarity", "strategic", "mirror", "mad_scientist", "executive")


@dataclass(frozen=True)
class PipelineSettings:
    """Settings the orchestrator reads while running a session.

    Derived once from Config (see Config.pipeline_settings) and passed to the
    orchestrator at construction time. Nothing in the pipeline reads the
    environment directly.
    """

    rag_enabled: bool = True
    match_threshold: float = 0.5
    match_count: int = 8
    max_context_chars: int = 6000
    snippet_chars: int = 400
    stage_timeouts: dict[str, float] = field(default_factory=lambda: {
        "prompt_building": 30.0,
        "critique": 180.0,
        "synthesis": 30.0,
        "scoring": 15.0,
    })
    stale_session_minutes: int = 10
    backfill_delay_seconds: float = 0.1
    max_workers: int = 4
    validate_images: bool = False

    def timeout_for(self, stage: str) -> float:
        """Timeout in seconds for a stage (60s if the stage is unknown)."""
        return self.stage_timeouts.get(stage, 60.0)


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    Example:
        >>> config = Config.load()
        >>> if error := config.validate():
        ...     print(f"Config error: {error}")
    """

    # === Credentials ===
    openai_api_key: str = ""  # OPENAI_API_KEY
    anthropic_api_key: str = ""  # ANTHROPIC_API_KEY

    # === AI Models ===
    critique_models: list[str] = field(default_factory=lambda: DEFAULT_CRITIQUE_MODELS.copy())
    default_personas: list[str] = field(default_factory=lambda: ["clarity"])  # DEFAULT_PERSONAS

    # === Embeddings ===
    embedding_backends: list[str] = field(default_factory=lambda: DEFAULT_EMBEDDING_BACKENDS.copy())
    embedding_model: str = "text-embedding-3-small"  # EMBEDDING_MODEL
    local_embedding_model: str = "BAAI/bge-small-en-v1.5"  # LOCAL_EMBEDDING_MODEL
    embedding_max_chars: int = 8000  # EMBEDDING_MAX_CHARS - truncation point

    # === Retrieval ===
    rag_enabled: bool = True  # RAG_ENABLED
    match_threshold: float = 0.5  # MATCH_THRESHOLD
    match_count: int = 8  # MATCH_COUNT
    max_context_chars: int = 6000  # MAX_CONTEXT_CHARS
    snippet_chars: int = 400  # SNIPPET_CHARS

    # === Stage Timeouts (seconds) ===
    prompt_timeout: float = 30.0  # PROMPT_TIMEOUT_SECONDS
    critique_timeout: float = 180.0  # CRITIQUE_TIMEOUT_SECONDS
    synthesis_timeout: float = 30.0  # SYNTHESIS_TIMEOUT_SECONDS
    scoring_timeout: float = 15.0  # SCORING_TIMEOUT_SECONDS

    # === Maintenance ===
    stale_session_minutes: int = 10  # STALE_SESSION_MINUTES
    backfill_delay_seconds: float = 0.1  # BACKFILL_DELAY_SECONDS

    # === Pipeline Behavior ===
    max_workers: int = 4  # MAX_WORKERS - Concurrent sessions
    validate_images: bool = False  # VALIDATE_IMAGES

    # === Database ===
    db_path: Path = field(default_factory=lambda: Path("lens.db"))  # DB_PATH

    # === Output Directories ===
    log_dir: Path = field(default_factory=lambda: Path("log"))  # LOG_DIR

    # === Logging Configuration ===
    log_level: str = "INFO"  # LOG_LEVEL
    log_backup_count: int = 30  # LOG_BACKUP_COUNT
    log_max_bytes: int = 0  # LOG_MAX_BYTES - Max file size (0 = time-based rotation)
    log_format: str = "text"  # LOG_FORMAT - 'text' or 'json'

    # === Optional: Observability ===
    enable_logfire: bool = False  # ENABLE_LOGFIRE
    logfire_token: str = ""  # LOGFIRE_TOKEN

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls(
            openai_api_key=_env("OPENAI_API_KEY"),
            anthropic_api_key=_env("ANTHROPIC_API_KEY"),
            critique_models=_env_list("CRITIQUE_MODELS", DEFAULT_CRITIQUE_MODELS),
            default_personas=_env_list("DEFAULT_PERSONAS", ["clarity"]),
            embedding_backends=[b.lower() for b in _env_list("EMBEDDING_BACKENDS", DEFAULT_EMBEDDING_BACKENDS)],
            embedding_model=_env("EMBEDDING_MODEL", "text-embedding-3-small"),
            local_embedding_model=_env("LOCAL_EMBEDDING_MODEL", "BAAI/bge-small-en-v1.5"),
            embedding_max_chars=_env_int("EMBEDDING_MAX_CHARS", 8000),
            rag_enabled=_env_bool("RAG_ENABLED", True),
            match_threshold=_env_float("MATCH_THRESHOLD", 0.5),
            match_count=_env_int("MATCH_COUNT", 8),
            max_context_chars=_env_int("MAX_CONTEXT_CHARS", 6000),
            snippet_chars=_env_int("SNIPPET_CHARS", 400),
            prompt_timeout=_env_float("PROMPT_TIMEOUT_SECONDS", 30.0),
            critique_timeout=_env_float("CRITIQUE_TIMEOUT_SECONDS", 180.0),
            synthesis_timeout=_env_float("SYNTHESIS_TIMEOUT_SECONDS", 30.0),
            scoring_timeout=_env_float("SCORING_TIMEOUT_SECONDS", 15.0),
            stale_session_minutes=_env_int("STALE_SESSION_MINUTES", 10),
            backfill_delay_seconds=_env_float("BACKFILL_DELAY_SECONDS", 0.1),
            max_workers=_env_int("MAX_WORKERS", 4),
            validate_images=_env_bool("VALIDATE_IMAGES", False),
            db_path=Path(_env("DB_PATH", "lens.db")),
            log_dir=Path(_env("LOG_DIR", "log")),
            enable_logfire=_env_bool("ENABLE_LOGFIRE", False),
            logfire_token=_env("LOGFIRE_TOKEN"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            log_backup_count=_env_int("LOG_BACKUP_COUNT", 30),
            log_max_bytes=_env_int("LOG_MAX_BYTES", 0),
            log_format=_env("LOG_FORMAT", "text").lower(),
        )

    def pipeline_settings(self) -> PipelineSettings:
        """Derive the immutable settings struct handed to the orchestrator."""
        return PipelineSettings(
            rag_enabled=self.rag_enabled,
            match_threshold=self.match_threshold,
            match_count=self.match_count,
            max_context_chars=self.max_context_chars,
            snippet_chars=self.snippet_chars,
            stage_timeouts={
                "prompt_building": self.prompt_timeout,
                "critique": self.critique_timeout,
                "synthesis": self.synthesis_timeout,
                "scoring": self.scoring_timeout,
            },
            stale_session_minutes=self.stale_session_minutes,
            backfill_delay_seconds=self.backfill_delay_seconds,
            max_workers=self.max_workers,
            validate_images=self.validate_images,
        )

    def validate(self) -> str | None:
        """Validate configuration for required fields and valid values.

        Checks:
            - At least one critique model and one embedding backend
            - Embedding backends are known and have credentials
            - Retrieval values are within range
            - Numeric values are positive

        Returns:
            Error message string if invalid, None if valid.
        """
        if not self.critique_models:
            return "CRITIQUE_MODELS must list at least one model"
        parsed = [parse_model_entry(m) for m in self.critique_models]
        for model, caps in parsed:
            unknown = caps - set(MODEL_CAPABILITIES)
            if unknown:
                return f"Invalid capability '{sorted(unknown)[0]}' for critique model '{model}'"
        if not any("vision" in caps for _, caps in parsed):
            return "CRITIQUE_MODELS must include at least one vision-capable model"
        if not self.embedding_backends:
            return "EMBEDDING_BACKENDS must list at least one backend"
        for backend in self.embedding_backends:
            if backend not in EMBEDDING_BACKEND_NAMES:
                return f"Invalid embedding backend '{backend}' - must be one of {', '.join(EMBEDDING_BACKEND_NAMES)}"
        if "openai" in self.embedding_backends and not self.openai_api_key and len(self.embedding_backends) == 1:
            return "OPENAI_API_KEY is required when 'openai' is the only embedding backend"
        for persona in self.default_personas:
            if persona not in KNOWN_PERSONAS:
                return f"Invalid persona '{persona}' in DEFAULT_PERSONAS"
        if not 0.0 <= self.match_threshold <= 1.0:
            return "MATCH_THRESHOLD must be between 0 and 1"
        if self.match_count <= 0:
            return "MATCH_COUNT must be positive"
        if self.max_context_chars <= 0:
            return "MAX_CONTEXT_CHARS must be positive"
        if self.snippet_chars <= 0:
            return "SNIPPET_CHARS must be positive"
        if self.embedding_max_chars <= 0:
            return "EMBEDDING_MAX_CHARS must be positive"
        for name, value in (
            ("PROMPT_TIMEOUT_SECONDS", self.prompt_timeout),
            ("CRITIQUE_TIMEOUT_SECONDS", self.critique_timeout),
            ("SYNTHESIS_TIMEOUT_SECONDS", self.synthesis_timeout),
            ("SCORING_TIMEOUT_SECONDS", self.scoring_timeout),
        ):
            if value <= 0:
                return f"{name} must be positive"
        if self.stale_session_minutes <= 0:
            return "STALE_SESSION_MINUTES must be positive"
        # A stage only heartbeats when it starts
        longest = max(self.prompt_timeout, self.critique_timeout, self.synthesis_timeout, self.scoring_timeout)
        if self.stale_session_minutes * 60 <= longest:
            return f"STALE_SESSION_MINUTES must exceed the longest stage timeout ({longest:g}s)"
        if self.backfill_delay_seconds < 0:
            return "BACKFILL_DELAY_SECONDS must be non-negative"
        if self.max_workers <= 0:
            return "MAX_WORKERS must be positive"
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            return f"Invalid LOG_LEVEL '{self.log_level}' - must be DEBUG, INFO, WARNING, ERROR, or CRITICAL"
        if self.log_format not in ("text", "json"):
            return f"Invalid LOG_FORMAT '{self.log_format}' - must be 'text' or 'json'"
        if self.log_backup_count < 0:
            return "LOG_BACKUP_COUNT must be non-negative"
        if self.log_max_bytes < 0:
            return "LOG_MAX_BYTES must be non-negative"
        return None
