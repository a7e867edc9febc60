# =============================================================================
# Orchestrator — Pipeline Graph Assembly and Public Entry Points
# =============================================================================
#
# GRAPH TOPOLOGY:
#
#   START ──▶ select ──▶ retrieve ──▶ rerank ──▶ evaluate ─┬─▶ synthesize ──▶ guard ──▶ END
#               ▲                                          │        ▲
#               └──────────────── widen ◀────── "widen" ───┤        │
#                                                          └─ "tool" ─▶ select_tool ──▶ run_tool
#
# The evaluate router exits to synthesis once metadata.iteration reaches
# max_loops, so the retrieval loop runs at most max_loops + 1 times.
#
# DESIGN DECISION: Graph built per call, services injected per run.
# Building the graph is a handful of dict inserts. Binding max_loops and
# the checkpoint store at build time keeps nodes free of globals, and
# tests get an isolated graph for free.
#
# DESIGN DECISION: One run_id per conversation.
# A follow-up message on an existing run starts a new turn on the same
# checkpoint: history, owner and options carry over, per-turn working
# fields (documents, evaluation, iteration, errors) are reset. The step
# counter keeps growing, so stale writers are still detected.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Sequence
from typing import Any

from convoflow.agents.evaluator import evaluate_node, make_route_after_evaluation
from convoflow.agents.guardrail import guard_node
from convoflow.agents.reranker import rerank_node
from convoflow.agents.retriever import retrieve_node
from convoflow.agents.selector import select_node
from convoflow.agents.services import PipelineServices
from convoflow.agents.synthesizer import synthesize_node
from convoflow.agents.tool_router import run_tool_node, select_tool_node
from convoflow.agents.widen import widen_node
from convoflow.config import Settings, settings as default_settings
from convoflow.db.engine import async_session_factory
from convoflow.errors import CheckpointNotFoundError, CheckpointReadError
from convoflow.graph.engine import (
    END,
    START,
    CheckpointStore,
    CompiledGraph,
    NodeMiddleware,
    RunConfig,
    StateGraph,
    StepEvent,
)
from convoflow.graph.middleware import DEFAULT_MIDDLEWARE
from convoflow.graph.state import ChatOptions, Message, RunState, new_run_state
from convoflow.services.auth import ANONYMOUS_PRINCIPAL, SYSTEM_USER_ID, Principal
from convoflow.services.checkpoints import SecureCheckpointStore
from convoflow.services.content import InMemoryContentStore
from convoflow.services.crypto import FieldCipher
from convoflow.services.llm import StructuredLLM, get_llm_provider
from convoflow.tools.builtin import build_default_registry
from convoflow.tools.registry import ToolRegistry
from convoflow.tools.sandbox import ToolSandbox

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Graph Assembly
# ---------------------------------------------------------------------------


def build_pipeline(
    max_loops: int | None = None,
    checkpointer: CheckpointStore | None = None,
    middleware: Sequence[NodeMiddleware] = DEFAULT_MIDDLEWARE,
) -> CompiledGraph:
    """
    Assemble and compile the retrieval/evaluation pipeline.

    Args:
        max_loops: Widening passes allowed before synthesis is forced.
            Defaults to settings.max_rag_loops.
        checkpointer: Store the engine writes after every step.
        middleware: Node wrappers, outermost first.
    """
    if max_loops is None:
        max_loops = default_settings.max_rag_loops

    builder = StateGraph(middleware=middleware)
    builder.add_node("select", select_node)
    builder.add_node("retrieve", retrieve_node)
    builder.add_node("rerank", rerank_node)
    builder.add_node("evaluate", evaluate_node)
    builder.add_node("widen", widen_node)
    builder.add_node("select_tool", select_tool_node)
    builder.add_node("run_tool", run_tool_node)
    builder.add_node("synthesize", synthesize_node)
    builder.add_node("guard", guard_node)

    builder.add_edge(START, "select")
    builder.add_edge("select", "retrieve")
    builder.add_edge("retrieve", "rerank")
    builder.add_edge("rerank", "evaluate")
    builder.add_conditional_edges(
        "evaluate",
        make_route_after_evaluation(max_loops),
        {"synthesize": "synthesize", "tool": "select_tool", "widen": "widen"},
    )
    builder.add_edge("widen", "select")
    builder.add_edge("select_tool", "run_tool")
    builder.add_edge("run_tool", "synthesize")
    builder.add_edge("synthesize", "guard")
    builder.add_edge("guard", END)

    return builder.compile(checkpointer=checkpointer)


# ---------------------------------------------------------------------------
# Service Construction
# ---------------------------------------------------------------------------


def build_services(
    llm: StructuredLLM | None = None,
    tools: ToolRegistry | None = None,
    settings: Settings | None = None,
) -> PipelineServices:
    """
    Default service bundle from settings.

    Without an explicit registry, retrieval runs against an empty
    in-memory content store; deployments pass a registry backed by
    their own search backend.
    """
    settings = settings or default_settings
    if llm is None:
        llm = StructuredLLM(
            get_llm_provider(),
            max_attempts=settings.llm_max_attempts,
            base_delay_ms=settings.llm_retry_base_delay_ms,
            max_delay_ms=settings.llm_retry_max_delay_ms,
        )
    if tools is None:
        content = InMemoryContentStore()
        tools = build_default_registry(content, content)

    sandbox = ToolSandbox(
        tools,
        llm,
        base_timeout_ms=settings.tool_base_timeout_ms,
        timeout_step_ms=settings.tool_timeout_step_ms,
        min_timeout_ms=settings.tool_min_timeout_ms,
        max_retries=settings.tool_max_retries,
        backoff_base_ms=settings.tool_backoff_base_ms,
        backoff_max_ms=settings.tool_backoff_max_ms,
    )
    return PipelineServices(llm=llm, tools=tools, sandbox=sandbox, settings=settings)


def build_checkpoint_store(
    session_factory: Any = None, settings: Settings | None = None
) -> SecureCheckpointStore:
    """
    Checkpoint store configured from settings.

    Without CHECKPOINT_ENCRYPTION_KEY a throwaway key is generated, so
    encrypted fields do not survive a restart.
    """
    settings = settings or default_settings
    if settings.checkpoint_encryption_key:
        cipher = FieldCipher.from_base64(settings.checkpoint_encryption_key)
    else:
        logger.warning(
            "CHECKPOINT_ENCRYPTION_KEY not set; using an ephemeral key. "
            "Encrypted checkpoint fields will be unreadable after restart."
        )
        cipher = FieldCipher.from_base64(FieldCipher.generate_key())

    return SecureCheckpointStore(
        session_factory or async_session_factory,
        cipher,
        sensitive_fields=settings.checkpoint_sensitive_fields,
        redacted_fields=settings.checkpoint_redacted_fields,
        ttl_seconds=settings.checkpoint_ttl_seconds,
        hide_foreign_runs=settings.checkpoint_hide_foreign_runs,
        decrypt_fail_closed=settings.checkpoint_decrypt_fail_closed,
    )


# ---------------------------------------------------------------------------
# Turn Preparation
# ---------------------------------------------------------------------------


def next_turn_state(
    prior: RunState, messages: list[Message], options: ChatOptions | None = None
) -> RunState:
    """
    Start a new turn on an existing conversation.

    Keeps history, owner and options (overlaid with `options`); resets
    every per-turn working field.
    """
    history = prior.get("messages", [])
    if not isinstance(history, list):
        # Field could not be decrypted (rotated key); the history is lost
        logger.warning("Prior messages unreadable, starting history afresh")
        history = []
    return new_run_state(
        [*history, *messages],
        prior.get("user_id", SYSTEM_USER_ID),
        run_id=prior.get("metadata", {}).get("run_id"),
        options={**prior.get("options", {}), **(options or {})},  # type: ignore[typeddict-item]
    )


async def prepare_turn(
    store: CheckpointStore,
    principal: Principal,
    messages: list[Message],
    run_id: str | None = None,
    options: ChatOptions | None = None,
) -> RunState:
    """
    Initial state for a turn: fresh when `run_id` is new, otherwise the
    stored conversation extended with `messages`.

    An unreadable checkpoint is treated as no prior state: the turn
    starts a fresh conversation on the same run_id.

    Raises:
        AccessDeniedError: `run_id` belongs to another user.
    """
    messages = [_stamp(m) for m in messages]
    if run_id is not None:
        try:
            record = await store.get(run_id, principal)
        except CheckpointNotFoundError:
            pass
        except CheckpointReadError as e:
            logger.warning("Prior state of %s unreadable, starting afresh: %s", run_id, e)
        else:
            logger.info("Continuing conversation %s", run_id)
            return next_turn_state(record.state, messages, options)  # type: ignore[arg-type]
    return new_run_state(messages, principal.user_id, run_id=run_id, options=options)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def run_chat(
    messages: list[Message],
    principal: Principal | None,
    *,
    store: CheckpointStore,
    services: PipelineServices,
    run_id: str | None = None,
    options: ChatOptions | None = None,
    cancel_event: asyncio.Event | None = None,
    timeout_seconds: float | None = None,
) -> RunState:
    """
    Run one conversational turn to completion.

    Args:
        messages: New messages for this turn (usually one user message).
        principal: Acting user; None runs as an anonymous system user.
        store: Checkpoint store, written after every step.
        services: LLM, tools and sandbox for the nodes.
        run_id: Conversation to continue, or None to start one.
        options: Per-turn knobs (context size, temperature, tool consent).
        cancel_event: Set to stop the run before its next step.
        timeout_seconds: Wall-clock budget for the whole turn.

    Returns:
        The final RunState, with the answer in generated_text.

    Raises:
        RunAbortedError, RunCancelledError, GraphRecursionError,
        AccessDeniedError: see CompiledGraph.invoke().
    """
    final: RunState | None = None
    async for event in stream_chat(
        messages,
        principal,
        store=store,
        services=services,
        run_id=run_id,
        options=options,
        cancel_event=cancel_event,
        timeout_seconds=timeout_seconds,
    ):
        final = event.state
    assert final is not None
    return final


async def stream_chat(
    messages: list[Message],
    principal: Principal | None,
    *,
    store: CheckpointStore,
    services: PipelineServices,
    run_id: str | None = None,
    options: ChatOptions | None = None,
    cancel_event: asyncio.Event | None = None,
    timeout_seconds: float | None = None,
) -> AsyncIterator[StepEvent]:
    """run_chat(), yielding a StepEvent after every step."""
    principal = principal or ANONYMOUS_PRINCIPAL
    initial = await prepare_turn(store, principal, messages, run_id, options)
    config = _run_config(initial, principal, services, cancel_event, timeout_seconds)
    graph = build_pipeline(services.settings.max_rag_loops, store)

    logger.info(
        "Starting turn: run_id=%s, user=%s, messages=%d",
        config.run_id, principal.user_id, len(initial.get("messages", [])),
    )
    async for event in graph.stream(initial, config):
        yield event


async def resume_chat(
    run_id: str,
    principal: Principal | None,
    *,
    store: CheckpointStore,
    services: PipelineServices,
    message: str | None = None,
    cancel_event: asyncio.Event | None = None,
    timeout_seconds: float | None = None,
) -> RunState:
    """
    Resume an interrupted run, or continue a finished one with `message`.

    Without a message, the run picks up after its last completed step;
    a run that already finished is returned as stored.

    Raises:
        CheckpointNotFoundError: Nothing stored for `run_id`.
        AccessDeniedError: The run belongs to another user.
    """
    principal = principal or ANONYMOUS_PRINCIPAL
    if message is not None:
        # Ownership is enforced by the store; a missing run is an error here
        try:
            await store.get(run_id, principal)
        except CheckpointReadError:
            # The row exists; prepare_turn starts the turn afresh
            pass
        return await run_chat(
            [{"role": "user", "content": message}],
            principal,
            store=store,
            services=services,
            run_id=run_id,
            cancel_event=cancel_event,
            timeout_seconds=timeout_seconds,
        )

    graph = build_pipeline(services.settings.max_rag_loops, store)
    config = RunConfig(
        run_id=run_id,
        principal=principal,
        services=services,
        max_loops=services.settings.max_rag_loops,
        recursion_limit=recursion_limit(services.settings),
        redacted_fields=services.settings.log_redacted_fields,
        cancel_event=cancel_event,
        deadline=_deadline(timeout_seconds),
    )
    return await graph.resume(config)


# ---------------------------------------------------------------------------
# Internal Helpers
# ---------------------------------------------------------------------------


def _stamp(message: Message) -> Message:
    stamped: Message = dict(message)  # type: ignore[assignment]
    stamped.setdefault("role", "user")
    stamped.setdefault("timestamp", time.time())
    return stamped


def _deadline(timeout_seconds: float | None) -> float | None:
    return None if timeout_seconds is None else time.monotonic() + timeout_seconds


def _run_config(
    state: RunState,
    principal: Principal,
    services: PipelineServices,
    cancel_event: asyncio.Event | None,
    timeout_seconds: float | None,
) -> RunConfig:
    metadata = state.get("metadata", {})
    return RunConfig(
        run_id=metadata.get("run_id") or str(uuid.uuid4()),
        principal=principal,
        trace_id=metadata.get("trace_id"),
        services=services,
        max_loops=services.settings.max_rag_loops,
        recursion_limit=recursion_limit(services.settings),
        redacted_fields=services.settings.log_redacted_fields,
        cancel_event=cancel_event,
        deadline=_deadline(timeout_seconds),
    )


def recursion_limit(settings: Settings) -> int:
    """
    Step ceiling for one invocation.

    Never below what a turn that widens max_rag_loops times needs:
    five steps per loop pass, plus the final pass and the
    tool/synthesis tail.
    """
    return max(settings.graph_recursion_limit, 5 * (settings.max_rag_loops + 1) + 4)
