"""Observability: logging with session/stage context and optional tracing.

setup_logging:
    Console plus rotating file logging, text or JSON.

session_context / stage_context:
    Tag log lines with the running session id and stage.

setup_tracing / trace_operation:
    Optional Logfire spans around pipeline stages (ENABLE_LOGFIRE=true).
"""

from observability.logging import session_context, setup_logging, stage_context
from observability.tracing import TracingState, setup_tracing, trace_operation

__all__ = [
    "session_context",
    "setup_logging",
    "stage_context",
    "setup_tracing",
    "trace_operation",
    "TracingState",
]
