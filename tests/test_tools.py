# =============================================================================
# Unit Tests — Tool Registry, Sandbox and Built-in Tools
# =============================================================================
#
# The sandbox is exercised with tiny in-test tools so deadlines stay in
# the tens of milliseconds. Backoff sleeps are replaced by a no-op.
# =============================================================================

from __future__ import annotations

import asyncio

import pytest
from pydantic import BaseModel

from convoflow.errors import (
    AccessDeniedError,
    ModelProcessingError,
    RunCancelledError,
    ToolNotFoundError,
    ToolRefusedError,
    ValidationError,
)
from convoflow.services.auth import Principal, Role, permission_granted
from convoflow.services.llm import _extract_json
from convoflow.tools.builtin import CALCULATOR, WEATHER, WEB_SEARCH, build_default_registry
from convoflow.tools.registry import ToolDefinition, ToolRegistry
from convoflow.tools.sandbox import (
    DEFAULT_FALLBACKS,
    FALLBACK_RELEVANCE,
    TOOL_RELEVANCE,
    ToolSandbox,
    tool_result_to_documents,
)
from tests.fakes import TOOL_CHOICE, _no_sleep, _run, make_llm, sample_content

USER = Principal("alice", Role.USER, frozenset({"tools:*"}))
NO_PERMS = Principal("bob", Role.USER)


class EchoInput(BaseModel):
    text: str


def _tool(execute, **kwargs) -> ToolDefinition:
    kwargs.setdefault("name", "echo")
    return ToolDefinition(
        description="test tool",
        input_schema=EchoInput,
        execute=execute,
        **kwargs,
    )


async def _echo(payload: EchoInput) -> str:
    return payload.text


def _sandbox(*tools: ToolDefinition, **kwargs) -> ToolSandbox:
    kwargs.setdefault("sleep", _no_sleep)
    return ToolSandbox(ToolRegistry(tools), **kwargs)


# ---------------------------------------------------------------------------
# Registry and Permissions
# ---------------------------------------------------------------------------


class TestRegistry:

    def test_duplicate_name_rejected(self):
        registry = ToolRegistry([CALCULATOR])
        with pytest.raises(ValueError):
            registry.register(CALCULATOR)

    def test_unknown_tool(self):
        with pytest.raises(ToolNotFoundError):
            ToolRegistry().get("nope")

    def test_risk_level_bounds(self):
        with pytest.raises(ValueError):
            _tool(_echo, risk_level=6)

    def test_catalog_follows_registered_categories(self):
        content = sample_content()
        registry = build_default_registry(content, content, ("web", "note"))
        assert registry.retrieval_categories() == ["web", "note"]
        assert {t.name for t in registry.external_tools()} == {"calculator", "weather", "web_search"}

    def test_available_for_filters_by_permission(self):
        registry = ToolRegistry([CALCULATOR, WEATHER])
        weather_only = Principal("u", Role.USER, frozenset({"tools:weather"}))
        assert [t.name for t in registry.available_for(weather_only)] == ["weather"]
        assert registry.available_for(NO_PERMS) == []

    def test_permission_wildcards(self):
        assert permission_granted({"*"}, "tools:weather")
        assert permission_granted({"tools:*"}, "tools:weather")
        assert not permission_granted({"tools:calculator"}, "tools:weather")


# ---------------------------------------------------------------------------
# Access and Intent Checks
# ---------------------------------------------------------------------------


class TestSandboxChecks:

    def test_missing_permission_denied(self):
        sandbox = _sandbox(_tool(_echo, required_permissions=("tools:echo",)))
        with pytest.raises(AccessDeniedError):
            _run(sandbox.execute_tool("echo", {"text": "hi"}, NO_PERMS))

    def test_minimum_role_enforced(self):
        sandbox = _sandbox(_tool(_echo, minimum_role=Role.ADMIN))
        with pytest.raises(AccessDeniedError):
            _run(sandbox.execute_tool("echo", {"text": "hi"}, USER))
        result = _run(sandbox.execute_tool("echo", {"text": "hi"}, Principal("root", Role.ADMIN)))
        assert result["output"] == "hi"

    def test_consent_required(self):
        sandbox = _sandbox(_tool(_echo, requires_consent=True))
        with pytest.raises(AccessDeniedError):
            _run(sandbox.execute_tool("echo", {"text": "hi"}, USER))
        result = _run(sandbox.execute_tool("echo", {"text": "hi"}, USER, consent=["echo"]))
        assert result["error"] is None
        result = _run(sandbox.execute_tool("echo", {"text": "hi"}, USER, consent=["*"]))
        assert result["error"] is None

    def test_high_risk_needs_strong_intent(self):
        tool = _tool(_echo, risk_level=4, trigger_patterns=(r"\bdelete\b", r"\bfile\b"))
        sandbox = _sandbox(tool)
        with pytest.raises(ToolRefusedError) as exc_info:
            _run(sandbox.execute_tool("echo", {"text": "x"}, USER, query="delete it"))
        assert exc_info.value.confidence == 0.5
        assert exc_info.value.threshold == 0.8

        result = _run(sandbox.execute_tool("echo", {"text": "x"}, USER, query="delete the file"))
        assert result["output"] == "x"

    def test_low_risk_threshold(self):
        tool = _tool(_echo, trigger_patterns=(r"\bweather\b", r"\brain\b"))
        sandbox = _sandbox(tool)
        result = _run(sandbox.execute_tool("echo", {"text": "x"}, USER, query="weather today?"))
        assert result["output"] == "x"
        with pytest.raises(ToolRefusedError):
            _run(sandbox.execute_tool("echo", {"text": "x"}, USER, query="hello"))

    def test_no_patterns_is_neutral(self):
        tool = _tool(_echo)
        assert ToolSandbox.intent_confidence(tool, "anything") == 0.5

    def test_invalid_arguments(self):
        sandbox = _sandbox(_tool(_echo))
        with pytest.raises(ValidationError):
            _run(sandbox.execute_tool("echo", {"wrong": 1}, USER))


# ---------------------------------------------------------------------------
# Deadlines, Retries and Fallback
# ---------------------------------------------------------------------------


class TestSandboxExecution:

    def test_deadline_scales_with_risk(self):
        sandbox = _sandbox(base_timeout_ms=5000, timeout_step_ms=1000, min_timeout_ms=250)
        assert sandbox.deadline_ms(_tool(_echo, risk_level=1)) == 4000
        assert sandbox.deadline_ms(_tool(_echo, risk_level=5)) == 250

    def test_backoff_is_capped(self):
        sandbox = _sandbox(backoff_base_ms=100, backoff_max_ms=1000)
        assert [sandbox.backoff_ms(n) for n in range(5)] == [100, 200, 400, 800, 1000]

    def test_transient_failure_is_retried(self):
        calls = []

        async def flaky(payload):
            calls.append(payload.text)
            if len(calls) < 2:
                raise ConnectionError("reset")
            return "ok"

        sandbox = _sandbox(_tool(flaky))
        result = _run(sandbox.execute_tool("echo", {"text": "x"}, USER))
        assert result["output"] == "ok"
        assert result["fallback_used"] is False
        assert len(calls) == 2

    def test_timeout_exhausts_retries_and_falls_back(self):
        calls = []

        async def slow(payload):
            calls.append(1)
            await asyncio.sleep(1)

        tool = _tool(slow, name="weather")
        sandbox = _sandbox(tool, base_timeout_ms=30, timeout_step_ms=0, min_timeout_ms=10)
        result = _run(sandbox.execute_tool("weather", {"text": "x"}, USER))

        assert len(calls) == 3
        assert result["fallback_used"] is True
        assert result["output"] == DEFAULT_FALLBACKS["weather"]
        assert "timed out" in result["error"]

    def test_tool_fallback_overrides_default(self):
        async def broken(payload):
            raise RuntimeError("down")

        tool = _tool(broken, fallback=lambda e: {"note": f"degraded: {e}"})
        sandbox = _sandbox(tool, max_retries=0)
        result = _run(sandbox.execute_tool("echo", {"text": "x"}, USER))
        assert result["output"]["note"].startswith("degraded")

    def test_cancel_event(self):
        cancel = asyncio.Event()
        cancel.set()
        sandbox = _sandbox(_tool(_echo))
        with pytest.raises(RunCancelledError):
            _run(sandbox.execute_tool("echo", {"text": "x"}, USER, cancel_event=cancel))

    def test_cancel_interrupts_running_tool(self):
        async def scenario():
            cancel = asyncio.Event()

            async def hang(payload):
                cancel.set()
                await asyncio.sleep(5)

            sandbox = _sandbox(_tool(hang))
            await sandbox.execute_tool("echo", {"text": "x"}, USER, cancel_event=cancel)

        with pytest.raises(RunCancelledError):
            _run(scenario())


# ---------------------------------------------------------------------------
# Built-in Tools
# ---------------------------------------------------------------------------


class TestBuiltinTools:

    def test_calculator(self):
        sandbox = _sandbox(CALCULATOR)
        result = _run(sandbox.execute_tool(
            "calculator", {"expression": "(2 + 3) * 4"}, USER, query="calculate 2+3"
        ))
        assert result["output"] == {"expression": "(2 + 3) * 4", "result": 20.0}

    def test_calculator_rejects_names(self):
        sandbox = _sandbox(CALCULATOR)
        with pytest.raises(ValidationError):
            _run(sandbox.execute_tool(
                "calculator", {"expression": "__import__('os')"}, USER, query="calculate"
            ))

    def test_calculator_division_by_zero_falls_back(self):
        sandbox = _sandbox(CALCULATOR)
        result = _run(sandbox.execute_tool(
            "calculator", {"expression": "1/0"}, USER, query="compute 1/0"
        ))
        assert result["fallback_used"] is True
        assert result["output"] == DEFAULT_FALLBACKS["calculator"]

    def test_weather_uses_requested_date(self):
        sandbox = _sandbox(WEATHER)
        result = _run(sandbox.execute_tool(
            "weather", {"location": "Paris", "date": "2025-06-02"}, USER,
            query="What's the weather in Paris tomorrow?",
        ))
        assert result["output"]["location"] == "Paris"
        assert result["output"]["date"] == "2025-06-02"

    def test_web_search_requires_consent(self):
        sandbox = _sandbox(WEB_SEARCH)
        with pytest.raises(AccessDeniedError):
            _run(sandbox.execute_tool(
                "web_search", {"query": "python"}, USER, query="search python"
            ))


# ---------------------------------------------------------------------------
# Tool Selection
# ---------------------------------------------------------------------------


class TestToolSelection:

    def test_valid_choice_is_normalised(self):
        llm, provider = make_llm({TOOL_CHOICE: {
            "tool_name": "weather",
            "arguments": {"location": "Paris", "date": "2025-06-02"},
            "confidence": 0.9,
            "reasoning": "weather question",
        }})
        sandbox = ToolSandbox(ToolRegistry([WEATHER, CALCULATOR]), llm, sleep=_no_sleep)
        choice = _run(sandbox.select_tool("weather in Paris tomorrow", "", USER, today="2025-06-01"))

        assert choice.tool_name == "weather"
        assert choice.arguments == {"location": "Paris", "date": "2025-06-02"}
        assert "2025-06-01" in provider.calls[0]["system"]

    def test_unknown_tool_is_noop(self):
        llm, _ = make_llm({TOOL_CHOICE: {"tool_name": "teleport", "confidence": 1.0}})
        sandbox = ToolSandbox(ToolRegistry([WEATHER]), llm, sleep=_no_sleep)
        choice = _run(sandbox.select_tool("beam me up", "", USER))
        assert choice.tool_name is None
        assert "teleport" in choice.reasoning

    def test_invalid_arguments_is_noop(self):
        llm, _ = make_llm({TOOL_CHOICE: {"tool_name": "weather", "arguments": {}}})
        sandbox = ToolSandbox(ToolRegistry([WEATHER]), llm, sleep=_no_sleep)
        assert _run(sandbox.select_tool("weather?", "", USER)).tool_name is None

    def test_only_permitted_tools_offered(self):
        llm, provider = make_llm({TOOL_CHOICE: {"tool_name": None}})
        sandbox = ToolSandbox(ToolRegistry([WEATHER]), llm, sleep=_no_sleep)
        choice = _run(sandbox.select_tool("weather?", "", NO_PERMS))
        assert choice.tool_name is None
        assert provider.calls == []

    def test_model_failure_raises(self):
        llm, _ = make_llm({TOOL_CHOICE: "not json at all"})
        sandbox = ToolSandbox(ToolRegistry([WEATHER]), llm, sleep=_no_sleep)
        with pytest.raises(ModelProcessingError):
            _run(sandbox.select_tool("weather?", "", USER))


# ---------------------------------------------------------------------------
# Output Normalisation
# ---------------------------------------------------------------------------


class TestToolResultToDocuments:

    def test_list_output_yields_one_document_per_item(self):
        docs = tool_result_to_documents({
            "tool_name": "web_search",
            "input": {"query": "q"},
            "output": [
                {"title": "A", "url": "https://a", "snippet": "alpha"},
                {"title": "B", "url": "https://b", "snippet": "beta"},
            ],
            "fallback_used": False,
        })
        assert [d["title"] for d in docs] == ["A", "B"]
        assert docs[0]["source"] == "tool:web_search"
        assert docs[0]["body"] == "alpha"
        assert docs[0]["relevance_score"] == TOOL_RELEVANCE

    def test_scalar_and_fallback_output(self):
        docs = tool_result_to_documents({
            "tool_name": "weather", "output": {"note": "Weather service unavailable"},
            "fallback_used": True,
        })
        assert len(docs) == 1
        assert docs[0]["relevance_score"] == FALLBACK_RELEVANCE
        assert docs[0]["metadata"]["fallback"] is True

    def test_no_output(self):
        assert tool_result_to_documents({"tool_name": "x", "output": None}) == []


class TestExtractJson:

    def test_fenced_json(self):
        assert _extract_json('```json\n{"a": 1}\n```') == '{"a": 1}'

    def test_prose_around_object(self):
        assert _extract_json('Sure! {"a": {"b": 2}} hope that helps') == '{"a": {"b": 2}}'

    def test_no_object(self):
        with pytest.raises(ValueError):
            _extract_json("no json here")
