"""Optional Logfire tracing.

With ENABLE_LOGFIRE=true, Logfire instruments pydantic-ai agent runs
(critique calls) and the OpenAI SDK (embedding calls), and every pipeline
stage runs inside a `stage.<name>` span carrying the session id, attempt
and final status.

Requirements:
    pip install 'lens[tracing]'

Usage:
    >>> setup_tracing(enabled=True, service_name="lens")
    >>> with trace_operation("stage.critique", {"session_id": sid, "attempt": 1}) as attrs:
    ...     attrs["status"] = "success"
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator

logger = logging.getLogger(__name__)


@dataclass
class TracingState:
    """Process-wide tracing switch, set once by setup_tracing()."""
    enabled: bool = False
    service_name: str = "lens"


_state = TracingState()


def setup_tracing(enabled: bool = False, service_name: str = "lens", token: str = "") -> TracingState:
    """Configure Logfire and instrument model and embedding clients.

    Tracing stays off (with a warning) when logfire is not installed or
    fails to configure; the pipeline runs the same either way.
    """
    _state.enabled = False
    _state.service_name = service_name
    if not enabled:
        logger.debug("Tracing disabled")
        return _state

    try:
        import logfire
    except ImportError:
        logger.warning("Logfire not installed (pip install 'lens[tracing]'). Tracing disabled.")
        return _state

    try:
        logfire.configure(service_name=service_name, token=token or None)
        logfire.instrument_pydantic_ai()
        logfire.instrument_openai()
    except Exception as e:
        logger.error("Failed to configure Logfire | error=%s", e)
        return _state

    _state.enabled = True
    logger.info("Logfire tracing enabled | service=%s", service_name)
    return _state


@contextmanager
def trace_operation(
    name: str,
    attributes: dict[str, Any] | None = None,
) -> Generator[dict[str, Any], None, None]:
    """Span around one operation.

    Yields a dict the caller fills with result attributes; they are set on
    the span when the block exits normally. `duration_ms` is always added.
    """
    result_attrs: dict[str, Any] = {}
    start = time.perf_counter()

    if not _state.enabled:
        try:
            yield result_attrs
        finally:
            logger.debug("Operation '%s' finished | duration_ms=%d", name, (time.perf_counter() - start) * 1000)
        return

    import logfire

    with logfire.span(name, **(attributes or {})) as span:
        yield result_attrs
        result_attrs["duration_ms"] = int((time.perf_counter() - start) * 1000)
        for key, value in result_attrs.items():
            span.set_attribute(key, value)
