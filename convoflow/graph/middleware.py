# =============================================================================
# Node Middleware — Interceptors Wrapped at Registration Time
# =============================================================================
#
# A middleware is `(name, fn) -> fn`: it receives a node's name and its
# async function and returns a new async function with the same contract.
# StateGraph(middleware=[...]) applies them in list order, outermost first:
#
#   StateGraph(middleware=[observability_middleware, logging_middleware,
#                          timing_middleware])
#
#   observability ─▶ logging ─▶ timing ─▶ node
#
# Node logic never knows it is wrapped, so a node can be unit-tested by
# calling it directly with a state and a RunConfig.
# =============================================================================

from __future__ import annotations

import functools
import logging
import time
from typing import Any

from convoflow.graph.engine import NodeFn, RunConfig
from convoflow.graph.state import RunState, summarize_state

logger = logging.getLogger(__name__)


def logging_middleware(name: str, fn: NodeFn) -> NodeFn:
    """Log a redacted summary of the state before and of the update after."""

    @functools.wraps(fn)
    async def wrapper(state: RunState, config: RunConfig) -> dict[str, Any]:
        fields = config.redacted_fields
        logger.info(
            "[%s] → %s pre=%s", config.run_id, name, summarize_state(state, fields)
        )
        update = await fn(state, config)
        logger.info(
            "[%s] ← %s post=%s",
            config.run_id, name, summarize_state(update or {}, fields),
        )
        return update

    return wrapper


def timing_middleware(name: str, fn: NodeFn) -> NodeFn:
    """Record the node's wall time in metadata.node_timings (milliseconds)."""

    @functools.wraps(fn)
    async def wrapper(state: RunState, config: RunConfig) -> dict[str, Any]:
        started = time.perf_counter()
        update = dict(await fn(state, config) or {})
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        # Build on the node's own metadata update if it returned one
        metadata = dict(update.get("metadata") or state.get("metadata", {}))
        timings = dict(metadata.get("node_timings", {}))
        timings[name] = elapsed_ms
        metadata["node_timings"] = timings
        update["metadata"] = metadata
        return update

    return wrapper


def observability_middleware(name: str, fn: NodeFn) -> NodeFn:
    """
    Open a span per node on the run's observability service.

    No-op when config.services carries no `observability`.
    """

    @functools.wraps(fn)
    async def wrapper(state: RunState, config: RunConfig) -> dict[str, Any]:
        observability = getattr(config.services, "observability", None)
        if observability is None:
            return await fn(state, config)

        trace_id = config.trace_id or state.get("metadata", {}).get("trace_id", "")
        span_id = observability.start_span(trace_id, name, state)
        started = time.perf_counter()
        try:
            update = await fn(state, config)
        except Exception as e:
            observability.log_event(trace_id, span_id, "node_error", {"error": str(e)})
            observability.end_span(
                trace_id, span_id, name, {}, (time.perf_counter() - started) * 1000
            )
            raise
        observability.end_span(
            trace_id, span_id, name, update or {}, (time.perf_counter() - started) * 1000
        )
        return update

    return wrapper


DEFAULT_MIDDLEWARE = (observability_middleware, logging_middleware, timing_middleware)
