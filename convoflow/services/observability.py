# =============================================================================
# Observability Hooks — Span / Event Interface
# =============================================================================
#
# Every node runs inside a span (see graph/middleware.py) and may emit
# events on it. The backend is an external collaborator: anything that
# implements the Observability protocol can be injected through the
# run's services.
#
# The default LoggingObservability writes spans and events to the
# standard logger with state summaries redacted, which is enough to
# follow a run in the API logs.
# =============================================================================

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any, Protocol

from convoflow.graph.state import REDACTED_FIELDS, summarize_state

logger = logging.getLogger(__name__)


class Observability(Protocol):
    def start_span(self, trace_id: str, name: str, state: dict[str, Any]) -> str:
        ...

    def end_span(
        self,
        trace_id: str,
        span_id: str,
        name: str,
        update: dict[str, Any],
        elapsed_ms: float,
    ) -> None:
        ...

    def log_event(
        self, trace_id: str, span_id: str, event: str, payload: dict[str, Any]
    ) -> None:
        ...


class LoggingObservability:
    """Observability backend that writes to the `convoflow.trace` logger."""

    def __init__(
        self,
        logger_name: str = "convoflow.trace",
        redacted_fields: Iterable[str] = REDACTED_FIELDS,
    ) -> None:
        self._logger = logging.getLogger(logger_name)
        self.redacted_fields = frozenset(redacted_fields)

    def start_span(self, trace_id: str, name: str, state: dict[str, Any]) -> str:
        span_id = uuid.uuid4().hex[:16]
        self._logger.debug(
            "span.start trace=%s span=%s name=%s state=%s",
            trace_id, span_id, name, summarize_state(state, self.redacted_fields),
        )
        return span_id

    def end_span(
        self,
        trace_id: str,
        span_id: str,
        name: str,
        update: dict[str, Any],
        elapsed_ms: float,
    ) -> None:
        self._logger.debug(
            "span.end trace=%s span=%s name=%s elapsed=%.1fms keys=%s",
            trace_id, span_id, name, elapsed_ms, sorted(update),
        )

    def log_event(
        self, trace_id: str, span_id: str, event: str, payload: dict[str, Any]
    ) -> None:
        self._logger.info(
            "event trace=%s span=%s %s %s", trace_id, span_id, event, payload
        )
