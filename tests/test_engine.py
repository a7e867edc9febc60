# =============================================================================
# Unit Tests — Graph Execution Engine
# =============================================================================
#
# Covers graph construction errors, shallow-merge semantics, per-step
# checkpointing, node failures, routing errors, the step limit,
# cancellation and resume. Uses tiny hand-built graphs, no LLM.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
import time

import pytest

from convoflow.config import Settings
from convoflow.db.models import Checkpoint
from convoflow.errors import (
    AccessDeniedError,
    GraphConfigurationError,
    GraphRecursionError,
    GraphRouteError,
    RunAbortedError,
    RunCancelledError,
    StaleCheckpointError,
    ValidationError,
)
from convoflow.graph import END, START, RunConfig, StateGraph
from convoflow.graph.middleware import logging_middleware, timing_middleware
from convoflow.graph.state import merge_state, new_run_state
from convoflow.services.auth import Principal, Role
from tests.fakes import _run, make_services, make_session_factory, make_store

ALICE = Principal("alice", Role.USER)
BOB = Principal("bob", Role.USER)


def _state(**extra):
    state = new_run_state([{"role": "user", "content": "hi"}], "alice", run_id="r1")
    state.update(extra)
    return state


async def _append(state, config):
    return {"reasoning": [*state.get("reasoning", []), "a"]}


async def _overwrite(state, config):
    return {"reasoning": ["b"]}


def _counter_graph(limit_loops=None, checkpointer=None, middleware=()):
    """count → (count again | END) until reasoning has `limit_loops` entries."""
    builder = StateGraph(middleware=middleware)
    builder.add_node("count", _append)
    builder.add_edge(START, "count")
    builder.add_conditional_edges(
        "count",
        lambda s: "again" if len(s["reasoning"]) < (limit_loops or 1) else "done",
        {"again": "count", "done": END},
    )
    return builder.compile(checkpointer=checkpointer)


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestGraphConstruction:

    def test_duplicate_node_rejected(self):
        builder = StateGraph()
        builder.add_node("a", _append)
        with pytest.raises(GraphConfigurationError):
            builder.add_node("a", _append)

    def test_reserved_names_rejected(self):
        builder = StateGraph()
        with pytest.raises(GraphConfigurationError):
            builder.add_node(END, _append)

    def test_compile_requires_entry(self):
        builder = StateGraph()
        builder.add_node("a", _append)
        builder.add_edge("a", END)
        with pytest.raises(GraphConfigurationError):
            builder.compile()

    def test_compile_rejects_dangling_target(self):
        builder = StateGraph()
        builder.add_node("a", _append)
        builder.add_edge(START, "a")
        builder.add_edge("a", "missing")
        with pytest.raises(GraphConfigurationError):
            builder.compile()

    def test_compile_rejects_node_without_exit(self):
        builder = StateGraph()
        builder.add_node("a", _append)
        builder.add_node("b", _append)
        builder.add_edge(START, "a")
        builder.add_edge("a", END)
        with pytest.raises(GraphConfigurationError):
            builder.compile()

    def test_second_outgoing_edge_rejected(self):
        builder = StateGraph()
        builder.add_node("a", _append)
        builder.add_edge("a", END)
        with pytest.raises(GraphConfigurationError):
            builder.add_conditional_edges("a", lambda s: "x", {"x": END})


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecution:

    def test_merge_is_shallow_overwrite(self):
        merged = merge_state({"reasoning": ["a"], "user_id": "u"}, {"reasoning": ["b"]})
        assert merged == {"reasoning": ["b"], "user_id": "u"}

    def test_node_extends_sequence_itself(self):
        builder = StateGraph()
        builder.add_node("a", _append)
        builder.add_node("b", _overwrite)
        builder.add_edge(START, "a")
        builder.add_edge("a", "b")
        builder.add_edge("b", END)
        graph = builder.compile()

        final = _run(graph.invoke(_state(reasoning=["x"]), RunConfig(run_id="r1")))
        # "a" appended, "b" replaced the whole list
        assert final["reasoning"] == ["b"]

    def test_loop_until_router_exits(self):
        graph = _counter_graph(limit_loops=3)
        final = _run(graph.invoke(_state(), RunConfig(run_id="r1")))
        assert final["reasoning"] == ["a", "a", "a"]
        assert final["metadata"]["current_node"] == "count"

    def test_stream_yields_every_step(self):
        graph = _counter_graph(limit_loops=2)

        async def collect():
            return [e async for e in graph.stream(_state(), RunConfig(run_id="r1"))]

        events = _run(collect())
        assert [e.step for e in events] == [1, 2]
        assert all(e.node == "count" for e in events)

    def test_unknown_route_key_is_configuration_error(self):
        builder = StateGraph()
        builder.add_node("a", _append)
        builder.add_edge(START, "a")
        builder.add_conditional_edges("a", lambda s: "nowhere", {"x": END})
        graph = builder.compile()

        with pytest.raises(GraphRouteError) as exc_info:
            _run(graph.invoke(_state(), RunConfig(run_id="r1")))
        assert exc_info.value.key == "nowhere"

    def test_recursion_limit(self):
        builder = StateGraph()
        builder.add_node("spin", _append)
        builder.add_edge(START, "spin")
        builder.add_edge("spin", "spin")
        graph = builder.compile()

        with pytest.raises(GraphRecursionError):
            _run(graph.invoke(_state(), RunConfig(run_id="r1", recursion_limit=5)))

    def test_timing_middleware_records_node(self):
        graph = _counter_graph(middleware=[timing_middleware])
        final = _run(graph.invoke(_state(), RunConfig(run_id="r1")))
        assert "count" in final["metadata"]["node_timings"]

    def test_logging_middleware_redacts_configured_fields(self, caplog):
        graph = _counter_graph(middleware=[logging_middleware])
        state = _state(options={"tool_consent": ["web_search"]})
        config = RunConfig(run_id="r1", redacted_fields=frozenset({"options", "reasoning"}))

        with caplog.at_level(logging.INFO, logger="convoflow.graph.middleware"):
            _run(graph.invoke(state, config))

        assert "web_search" not in caplog.text
        assert "[dict: 1 keys]" in caplog.text
        # messages are outside the configured set here, so they show
        assert "'hi'" in caplog.text

    def test_trace_spans_redact_configured_fields(self, caplog):
        settings = Settings(checkpoint_redacted_fields=["options"], checkpoint_sensitive_fields=[])
        services, _ = make_services(settings=settings)
        assert services.observability.redacted_fields == frozenset({"options"})

        state = _state(options={"tool_consent": ["web_search"]})
        with caplog.at_level(logging.DEBUG, logger="convoflow.trace"):
            services.observability.start_span("t1", "select", state)

        assert "span.start" in caplog.text
        assert "web_search" not in caplog.text
        assert "[dict: 1 keys]" in caplog.text


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:

    def test_node_exception_aborts_with_error_recorded(self):
        async def boom(state, config):
            raise ValueError("kaput")

        builder = StateGraph()
        builder.add_node("a", _append)
        builder.add_node("boom", boom)
        builder.add_edge(START, "a")
        builder.add_edge("a", "boom")
        builder.add_edge("boom", END)
        graph = builder.compile()

        with pytest.raises(RunAbortedError) as exc_info:
            _run(graph.invoke(_state(), RunConfig(run_id="r1")))

        error = exc_info.value
        assert error.node == "boom"
        assert isinstance(error.__cause__, ValueError)
        # Partial state keeps the completed step and the recorded error
        assert error.state["reasoning"] == ["a"]
        assert error.state["metadata"]["errors"][-1]["node"] == "boom"
        assert error.state["metadata"]["current_node"] == "a"

    def test_abort_status_follows_cause(self):
        async def invalid(state, config):
            raise ValidationError("bad input")

        builder = StateGraph()
        builder.add_node("v", invalid)
        builder.add_edge(START, "v")
        builder.add_edge("v", END)

        with pytest.raises(RunAbortedError) as exc_info:
            _run(builder.compile().invoke(_state(), RunConfig(run_id="r1")))
        assert exc_info.value.status_code == 400

    def test_non_dict_update_aborts(self):
        async def wrong(state, config):
            return ["not", "a", "dict"]

        builder = StateGraph()
        builder.add_node("w", wrong)
        builder.add_edge(START, "w")
        builder.add_edge("w", END)

        with pytest.raises(RunAbortedError):
            _run(builder.compile().invoke(_state(), RunConfig(run_id="r1")))

    def test_cancel_event_stops_before_next_step(self):
        cancel = asyncio.Event()

        async def cancel_after(state, config):
            cancel.set()
            return {"reasoning": ["ran"]}

        builder = StateGraph()
        builder.add_node("first", cancel_after)
        builder.add_node("second", _append)
        builder.add_edge(START, "first")
        builder.add_edge("first", "second")
        builder.add_edge("second", END)

        with pytest.raises(RunCancelledError) as exc_info:
            _run(builder.compile().invoke(
                _state(), RunConfig(run_id="r1", cancel_event=cancel)
            ))
        assert exc_info.value.state["reasoning"] == ["ran"]

    def test_expired_deadline_cancels(self):
        graph = _counter_graph()
        config = RunConfig(run_id="r1", deadline=time.monotonic() - 1)
        with pytest.raises(RunCancelledError):
            _run(graph.invoke(_state(), config))


# ---------------------------------------------------------------------------
# Checkpointing and Resume
# ---------------------------------------------------------------------------


class TestCheckpointing:

    def test_checkpoint_after_every_step(self):
        async def scenario():
            store = await make_store()
            graph = _counter_graph(limit_loops=3, checkpointer=store)
            await graph.invoke(_state(), RunConfig(run_id="r1", principal=ALICE))
            return await store.get("r1", ALICE)

        record = _run(scenario())
        assert record.step == 3
        assert record.owner_id == "alice"
        assert record.state["reasoning"] == ["a", "a", "a"]

    def test_second_invoke_continues_step_numbering(self):
        async def scenario():
            store = await make_store()
            graph = _counter_graph(checkpointer=store)
            config = RunConfig(run_id="r1", principal=ALICE)
            await graph.invoke(_state(), config)
            await graph.invoke(_state(), config)
            return await store.get("r1", ALICE)

        assert _run(scenario()).step == 2

    def test_corrupt_checkpoint_starts_fresh_after_stored_step(self):
        async def scenario():
            factory = await make_session_factory()
            store = await make_store(session_factory=factory)
            graph = _counter_graph(limit_loops=3, checkpointer=store)
            config = RunConfig(run_id="r1", principal=ALICE)
            await graph.invoke(_state(), config)
            async with factory() as session:
                row = await session.get(Checkpoint, "r1")
                row.state_json = "{corrupt"
                await session.commit()
            final = await graph.invoke(_state(), config)
            return final, await store.get("r1", ALICE)

        final, record = _run(scenario())
        assert final["reasoning"] == ["a", "a", "a"]
        assert record.step == 6
        assert record.state["reasoning"] == ["a", "a", "a"]

    def test_foreign_run_write_rejected(self):
        async def scenario():
            store = await make_store()
            graph = _counter_graph(checkpointer=store)
            await graph.invoke(_state(), RunConfig(run_id="r1", principal=ALICE))
            await graph.invoke(_state(), RunConfig(run_id="r1", principal=BOB))

        with pytest.raises(AccessDeniedError):
            _run(scenario())

    def test_write_failure_aborts_run(self):
        class FailingStore:
            async def get(self, run_id, principal):
                from convoflow.errors import CheckpointNotFoundError
                raise CheckpointNotFoundError(run_id)

            async def put(self, run_id, step, state, principal):
                raise StaleCheckpointError(run_id, step, step)

        graph = _counter_graph(checkpointer=FailingStore())
        with pytest.raises(RunAbortedError) as exc_info:
            _run(graph.invoke(_state(), RunConfig(run_id="r1")))
        assert isinstance(exc_info.value.__cause__, StaleCheckpointError)
        assert exc_info.value.status_code == 409

    def test_resume_after_cancellation(self):
        cancel = asyncio.Event()

        async def first(state, config):
            cancel.set()
            return {"reasoning": ["first"]}

        async def second(state, config):
            return {"reasoning": [*state["reasoning"], "second"]}

        builder = StateGraph()
        builder.add_node("first", first)
        builder.add_node("second", second)
        builder.add_edge(START, "first")
        builder.add_edge("first", "second")
        builder.add_edge("second", END)

        async def scenario():
            store = await make_store()
            graph = builder.compile(checkpointer=store)
            with pytest.raises(RunCancelledError):
                await graph.invoke(
                    _state(), RunConfig(run_id="r1", principal=ALICE, cancel_event=cancel)
                )
            final = await graph.resume(RunConfig(run_id="r1", principal=ALICE))
            record = await store.get("r1", ALICE)
            return final, record

        final, record = _run(scenario())
        assert final["reasoning"] == ["first", "second"]
        assert record.step == 2

    def test_resume_final_run_returns_stored_state(self):
        async def finish(state, config):
            metadata = dict(state["metadata"], is_final_state=True)
            return {"metadata": metadata, "reasoning": ["done"]}

        builder = StateGraph()
        builder.add_node("finish", finish)
        builder.add_edge(START, "finish")
        builder.add_edge("finish", END)

        async def scenario():
            store = await make_store()
            graph = builder.compile(checkpointer=store)
            config = RunConfig(run_id="r1", principal=ALICE)
            await graph.invoke(_state(), config)
            return await graph.resume(config), await store.get("r1", ALICE)

        final, record = _run(scenario())
        assert final["reasoning"] == ["done"]
        assert record.step == 1
