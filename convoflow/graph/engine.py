# =============================================================================
# Graph Execution Engine — StateGraph Builder and Runner
# =============================================================================
#
# Sequences named async steps over a shared RunState:
#
#   entry ──▶ node ──▶ (static edge | conditional router) ──▶ node ... ──▶ END
#
# Each step:
#   1. invoke the current node:   update = await fn(state, config)
#   2. shallow-merge the update:  state = {**state, **update}
#   3. checkpoint:                store.put(run_id, step, state, principal)
#   4. pick the next node from its static edge or by calling its router
#
# DESIGN DECISION: One step at a time per run.
# A node may await I/O internally, but the engine never starts the next
# step before the previous one returned and was checkpointed. Checkpoint
# steps for a run are therefore strictly increasing and a crash leaves
# the last durable step consistent with a prefix of the execution.
#
# DESIGN DECISION: Builder and runner are separate objects.
# StateGraph is mutable and validated once by compile(); CompiledGraph is
# immutable and safe to share across concurrent requests.
#
# FAILURE MODES:
#   - node raises           → error recorded in metadata.errors, step not
#                             advanced, RunAbortedError (partial state)
#   - checkpoint write fails → RunAbortedError chained to the store error
#   - router returns unknown key → GraphRouteError (configuration error)
#   - too many steps        → GraphRecursionError
#   - cancel event / deadline → RunCancelledError, checked before each step
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Hashable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from convoflow.errors import (
    CheckpointNotFoundError,
    CheckpointReadError,
    GraphConfigurationError,
    GraphRecursionError,
    GraphRouteError,
    RunAbortedError,
    RunCancelledError,
)
from convoflow.graph.state import REDACTED_FIELDS, RunState, merge_state, record_error

logger = logging.getLogger(__name__)

START = "__start__"
END = "__end__"

NodeFn = Callable[[RunState, "RunConfig"], Awaitable[dict[str, Any]]]
RouteFn = Callable[[RunState], Hashable]
NodeMiddleware = Callable[[str, NodeFn], NodeFn]


# ---------------------------------------------------------------------------
# Run Configuration
# ---------------------------------------------------------------------------


@dataclass
class RunConfig:
    """
    Per-run context handed to every node alongside the state.

    `services` is the dependency bundle nodes pull collaborators from
    (LLM, tool registry, sandbox, observability). It is constructed once
    per request, never a module-level singleton.

    `redacted_fields` are the state keys node logs replace with size
    markers; `max_loops` is informational (routers bind it at build time).
    """

    run_id: str
    principal: Any = None
    trace_id: str | None = None
    services: Any = None
    max_loops: int | None = None
    recursion_limit: int = 50
    redacted_fields: frozenset[str] = REDACTED_FIELDS
    cancel_event: asyncio.Event | None = None
    deadline: float | None = None  # time.monotonic() value

    def is_cancelled(self) -> bool:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def remaining_seconds(self) -> float | None:
        """Seconds until the deadline, or None when the run has none."""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)


@dataclass
class StepEvent:
    """One completed step, as yielded by CompiledGraph.stream()."""

    step: int
    node: str
    update: dict[str, Any]
    state: RunState


# ---------------------------------------------------------------------------
# Checkpoint Store Protocol
# ---------------------------------------------------------------------------


class CheckpointRecordLike(Protocol):
    state: dict[str, Any]
    step: int


class CheckpointStore(Protocol):
    """What the engine needs from a checkpoint store."""

    async def get(self, run_id: str, principal: Any) -> CheckpointRecordLike:
        ...

    async def put(
        self, run_id: str, step: int, state: dict[str, Any], principal: Any
    ) -> None:
        ...


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@dataclass
class _Branch:
    route: RouteFn
    targets: dict[Hashable, str]


class StateGraph:
    """
    Mutable graph definition.

    Usage:
        graph = StateGraph(middleware=[logging_middleware])
        graph.add_node("select", select_node)
        graph.add_node("retrieve", retrieve_node)
        graph.set_entry_point("select")
        graph.add_edge("select", "retrieve")
        graph.add_edge("retrieve", END)
        app = graph.compile(checkpointer=store)

    Middleware wraps each node at registration time; the first entry in
    the list is the outermost wrapper.
    """

    def __init__(self, middleware: Sequence[NodeMiddleware] = ()) -> None:
        self._middleware = list(middleware)
        self._nodes: dict[str, NodeFn] = {}
        self._edges: dict[str, str] = {}
        self._branches: dict[str, _Branch] = {}
        self._entry: str | None = None

    def add_node(self, name: str, fn: NodeFn) -> StateGraph:
        """
        Register a step.

        Raises:
            GraphConfigurationError: If `name` is reserved or already registered.
        """
        if name in (START, END):
            raise GraphConfigurationError(f"Node name '{name}' is reserved")
        if name in self._nodes:
            raise GraphConfigurationError(f"Node '{name}' is already registered")

        wrapped = fn
        for middleware in reversed(self._middleware):
            wrapped = middleware(name, wrapped)
        self._nodes[name] = wrapped
        return self

    def add_edge(self, source: str, target: str) -> StateGraph:
        """Unconditional transition. `add_edge(START, name)` sets the entry."""
        if source == START:
            return self.set_entry_point(target)
        if source == END:
            raise GraphConfigurationError("END cannot have outgoing edges")
        self._check_unrouted(source)
        self._edges[source] = target
        return self

    def add_conditional_edges(
        self,
        source: str,
        route: RouteFn,
        targets: dict[Hashable, str],
    ) -> StateGraph:
        """
        Transition chosen at run time by `route(state)`.

        The engine moves to `targets[route(state)]`. A key missing from
        `targets` is a configuration error, raised when it happens.
        """
        if source in (START, END):
            raise GraphConfigurationError(f"'{source}' cannot have a router")
        if not targets:
            raise GraphConfigurationError(f"Router for '{source}' has no targets")
        self._check_unrouted(source)
        self._branches[source] = _Branch(route=route, targets=dict(targets))
        return self

    def set_entry_point(self, name: str) -> StateGraph:
        if self._entry is not None:
            raise GraphConfigurationError(
                f"Entry point already set to '{self._entry}'"
            )
        self._entry = name
        return self

    def compile(self, checkpointer: CheckpointStore | None = None) -> CompiledGraph:
        """
        Validate the definition and freeze it into a runnable graph.

        Raises:
            GraphConfigurationError: Missing entry point, dangling edge
                target, or a node without an outgoing transition.
        """
        if self._entry is None:
            raise GraphConfigurationError("No entry point set")
        if self._entry not in self._nodes:
            raise GraphConfigurationError(f"Entry point '{self._entry}' is not a node")

        for source, target in self._edges.items():
            self._check_target(source, target)
        for source, branch in self._branches.items():
            for target in branch.targets.values():
                self._check_target(source, target)

        for name in self._nodes:
            if name not in self._edges and name not in self._branches:
                raise GraphConfigurationError(f"Node '{name}' has no outgoing edge")

        return CompiledGraph(
            nodes=dict(self._nodes),
            edges=dict(self._edges),
            branches=dict(self._branches),
            entry=self._entry,
            checkpointer=checkpointer,
        )

    def _check_unrouted(self, source: str) -> None:
        if source in self._edges or source in self._branches:
            raise GraphConfigurationError(
                f"Node '{source}' already has an outgoing transition"
            )

    def _check_target(self, source: str, target: str) -> None:
        if source not in self._nodes:
            raise GraphConfigurationError(f"Edge from unknown node '{source}'")
        if target != END and target not in self._nodes:
            raise GraphConfigurationError(
                f"Edge from '{source}' to unknown node '{target}'"
            )


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class CompiledGraph:
    """Immutable, validated graph. Safe to share between concurrent runs."""

    def __init__(
        self,
        nodes: dict[str, NodeFn],
        edges: dict[str, str],
        branches: dict[str, _Branch],
        entry: str,
        checkpointer: CheckpointStore | None,
    ) -> None:
        self._nodes = nodes
        self._edges = edges
        self._branches = branches
        self._entry = entry
        self.checkpointer = checkpointer

    @property
    def nodes(self) -> list[str]:
        return list(self._nodes)

    async def invoke(self, initial_state: RunState, config: RunConfig) -> RunState:
        """
        Run from the entry node to END and return the final state.

        Raises:
            RunAbortedError: A node raised or a checkpoint write failed.
            RunCancelledError: The cancel event fired or the deadline passed.
            GraphRouteError: A router returned an unmapped key.
            GraphRecursionError: More than config.recursion_limit steps.
            AccessDeniedError: The run belongs to another user.
        """
        final = initial_state
        async for event in self.stream(initial_state, config):
            final = event.state
        return final

    async def stream(
        self, initial_state: RunState, config: RunConfig
    ) -> AsyncIterator[StepEvent]:
        """Same as invoke(), yielding a StepEvent after every step."""
        step = await self._last_step(config)
        async for event in self._run(initial_state, config, self._entry, step):
            yield event

    async def resume(self, config: RunConfig) -> RunState:
        """
        Continue an interrupted run from its last checkpoint.

        The next node is derived from metadata.current_node (the last
        completed step). A run whose state is already final is returned
        unchanged.

        Raises:
            CheckpointNotFoundError: Nothing stored for config.run_id.
        """
        final: RunState | None = None
        async for event in self.resume_stream(config):
            final = event.state
        if final is None:
            record = await self._require_checkpointer().get(
                config.run_id, config.principal
            )
            return record.state  # type: ignore[return-value]
        return final

    async def resume_stream(self, config: RunConfig) -> AsyncIterator[StepEvent]:
        record = await self._require_checkpointer().get(config.run_id, config.principal)
        state: RunState = record.state  # type: ignore[assignment]
        metadata = state.get("metadata", {})
        if metadata.get("is_final_state"):
            logger.info("Run %s already final, nothing to resume", config.run_id)
            return

        last = metadata.get("current_node")
        next_node = self._next(last, state) if last in self._nodes else self._entry
        if next_node == END:
            return

        logger.info(
            "Resuming run %s at node '%s' (after step %d)",
            config.run_id, next_node, record.step,
        )
        async for event in self._run(state, config, next_node, record.step):
            yield event

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    async def _run(
        self,
        initial_state: RunState,
        config: RunConfig,
        start: str,
        step: int,
    ) -> AsyncIterator[StepEvent]:
        state: RunState = dict(initial_state)  # type: ignore[assignment]
        current = start
        taken = 0
        started = time.perf_counter()

        logger.info("Run %s starting at '%s' (step %d)", config.run_id, current, step)

        while current != END:
            if config.is_cancelled():
                logger.warning("Run %s cancelled before '%s'", config.run_id, current)
                raise RunCancelledError(config.run_id, state)
            if taken >= config.recursion_limit:
                raise GraphRecursionError(config.recursion_limit, state)

            update = await self._call_node(current, state, config)
            state = merge_state(state, update)
            metadata = dict(state.get("metadata", {}))
            metadata["current_node"] = current
            state["metadata"] = metadata  # type: ignore[typeddict-item]

            step += 1
            taken += 1
            await self._persist(current, step, state, config)
            yield StepEvent(step=step, node=current, update=update, state=state)

            current = self._next(current, state)

        logger.info(
            "Run %s complete: %d steps in %.0fms",
            config.run_id, taken, (time.perf_counter() - started) * 1000,
        )

    async def _call_node(
        self, name: str, state: RunState, config: RunConfig
    ) -> dict[str, Any]:
        try:
            update = await self._nodes[name](state, config)
        except RunCancelledError as e:
            logger.warning("Run %s cancelled inside '%s'", config.run_id, name)
            raise RunCancelledError(config.run_id, state) from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Node '%s' failed in run %s: %s", name, config.run_id, e)
            failed = merge_state(state, record_error(state, name, str(e)))
            raise RunAbortedError(name, str(e), failed) from e

        if update is None:
            return {}
        if not isinstance(update, dict):
            failed = merge_state(
                state, record_error(state, name, "node returned a non-dict update")
            )
            raise RunAbortedError(
                name, f"expected dict, got {type(update).__name__}", failed
            )
        return update

    async def _persist(
        self, node: str, step: int, state: RunState, config: RunConfig
    ) -> None:
        if self.checkpointer is None:
            return
        try:
            await self.checkpointer.put(config.run_id, step, state, config.principal)
        except Exception as e:
            logger.error(
                "Checkpoint write failed for run %s at step %d: %s",
                config.run_id, step, e,
            )
            raise RunAbortedError(node, f"checkpoint write failed: {e}", state) from e

    async def _last_step(self, config: RunConfig) -> int:
        """
        Step of the stored checkpoint, or 0 when there is none.

        An unreadable checkpoint counts as no prior state, but numbering
        continues after its step when the store could report it, so the
        fresh run's writes pass the compare-and-swap.
        """
        if self.checkpointer is None:
            return 0
        try:
            record = await self.checkpointer.get(config.run_id, config.principal)
        except CheckpointNotFoundError:
            return 0
        except CheckpointReadError as e:
            step = e.step if e.step is not None else 0
            logger.warning(
                "Checkpoint read failed for run %s, starting fresh after step %d: %s",
                config.run_id, step, e,
            )
            return step
        return record.step

    def _next(self, current: str, state: RunState) -> str:
        if current in self._edges:
            return self._edges[current]
        branch = self._branches[current]
        key = branch.route(state)
        if key not in branch.targets:
            raise GraphRouteError(current, key, state)
        target = branch.targets[key]
        logger.debug("Router after '%s' chose %r → '%s'", current, key, target)
        return target

    def _require_checkpointer(self) -> CheckpointStore:
        if self.checkpointer is None:
            raise GraphConfigurationError("Graph was compiled without a checkpointer")
        return self.checkpointer
