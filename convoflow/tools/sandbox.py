# =============================================================================
# Tool Sandbox — Permission-Checked, Time-Boxed Tool Execution
# =============================================================================
#
# execute_tool() pipeline:
#
#   1. PERMISSIONS  role >= minimum_role (admins bypass) and every
#                   required permission held (wildcards allowed)
#                   → AccessDeniedError, tool not run
#   2. CONSENT      tools with requires_consent need the user's consent
#                   → AccessDeniedError
#   3. INTENT       trigger patterns vs. the user's query → confidence;
#                   risk >= 4 needs 0.8, others 0.5
#                   → ToolRefusedError
#   4. ARGUMENTS    validated against the tool's input schema
#                   → ValidationError
#   5. EXECUTION    deadline = base - risk * step (floored), up to
#                   max_retries retries with backoff base * 2^attempt
#                   (capped); a timeout or tool exception is transient
#   6. FALLBACK     retries exhausted → per-tool degraded payload; the
#                   last error is kept on the ToolResult for audit
#
# Steps 1-4 raise: they are decisions, not failures, and the caller
# records them. Step 5-6 never raise (except cancellation): the pipeline
# always gets a ToolResult it can synthesise from.
#
# DESIGN DECISION: Hand-rolled retry loop with asyncio.wait_for rather
# than a retry library. The deadline and backoff are per-tool values
# computed at call time, and cancellation must interrupt both the tool
# and the backoff sleep.
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from convoflow.errors import (
    AccessDeniedError,
    RunCancelledError,
    ToolExecutionError,
    ToolRefusedError,
    ValidationError,
)
from convoflow.graph.state import Document, ToolResult
from convoflow.services.auth import Principal
from convoflow.services.llm import StructuredLLM
from convoflow.tools.registry import ToolDefinition, ToolRegistry

logger = logging.getLogger(__name__)

HIGH_RISK_LEVEL = 4
HIGH_RISK_THRESHOLD = 0.8
DEFAULT_THRESHOLD = 0.5
# Intent confidence for tools that declare no trigger patterns
NEUTRAL_CONFIDENCE = 0.5


# ---------------------------------------------------------------------------
# Fallbacks
# ---------------------------------------------------------------------------

DEFAULT_FALLBACKS: dict[str, dict[str, Any]] = {
    "calculator": {
        "error": "Could not perform calculation",
        "suggestion": "Please try a simpler expression",
    },
    "weather": {
        "note": "Weather service unavailable",
        "message": "Unable to retrieve current weather information",
        "suggestion": "Please check a weather website for the latest forecast",
    },
    "web_search": {
        "note": "Search unavailable",
        "message": "Unable to perform web search",
        "suggestion": "Please try different search terms or try again later",
    },
    "calendar": {
        "note": "Calendar unavailable",
        "message": "Unable to access calendar information",
        "suggestion": "Please check your calendar application directly",
    },
}

GENERIC_FALLBACK: dict[str, Any] = {
    "note": "Tool unavailable",
    "message": "The requested tool could not complete",
    "suggestion": "Please try again later or rephrase your request",
}


# ---------------------------------------------------------------------------
# Tool selection schema
# ---------------------------------------------------------------------------


class ToolChoice(BaseModel):
    """Structured model output for tool selection."""

    tool_name: str | None = Field(
        default=None, description="Name of the tool to call, or null for none"
    )
    arguments: dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = ""


_SELECTION_SYSTEM = """You route a user's request to at most one external tool.

Available tools (name, description, JSON schema of the arguments):
{tools}

Pick the single tool that answers the request, fill in its arguments \
exactly as its schema requires, and rate your confidence from 0 to 1. \
If no tool fits, set tool_name to null. Today's date is {today}."""


# ---------------------------------------------------------------------------
# Sandbox
# ---------------------------------------------------------------------------


class ToolSandbox:
    """
    Selects and executes external tools under permission, intent, deadline
    and retry rules.

    Args:
        registry: Tools the sandbox may run.
        llm: Structured LLM used by select_tool().
        base_timeout_ms, timeout_step_ms, min_timeout_ms: Deadline per
            attempt is max(base - risk * step, min).
        max_retries: Retries after the first attempt.
        backoff_base_ms, backoff_max_ms: Backoff before retry n is
            min(base * 2^n, max).
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        llm: StructuredLLM | None = None,
        *,
        base_timeout_ms: int = 5000,
        timeout_step_ms: int = 1000,
        min_timeout_ms: int = 250,
        max_retries: int = 2,
        backoff_base_ms: int = 100,
        backoff_max_ms: int = 1000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self._llm = llm
        self._base_timeout_ms = base_timeout_ms
        self._timeout_step_ms = timeout_step_ms
        self._min_timeout_ms = min_timeout_ms
        self._max_retries = max_retries
        self._backoff_base_ms = backoff_base_ms
        self._backoff_max_ms = backoff_max_ms
        self._sleep = sleep

    # -----------------------------------------------------------------------
    # Selection
    # -----------------------------------------------------------------------

    async def select_tool(
        self,
        query: str,
        context: str,
        principal: Principal,
        today: str = "",
    ) -> ToolChoice:
        """
        Ask the model which tool (if any) should handle `query`.

        Only tools `principal` may run are offered. An unknown tool name
        or arguments that fail the tool's schema yield a no-op choice
        (tool_name None) with the reason recorded.

        Raises:
            ModelProcessingError: The model failed after retries.
        """
        tools = self.registry.available_for(principal)
        if not tools:
            return ToolChoice(reasoning="No tools available to this user")
        if self._llm is None:
            return ToolChoice(reasoning="No language model configured for tool selection")

        system = _SELECTION_SYSTEM.format(
            tools=json.dumps([t.describe() for t in tools], indent=2),
            today=today or time.strftime("%Y-%m-%d"),
        )
        user_message = f"Request: {query}"
        if context:
            user_message += f"\n\nWhat we already know:\n{context}"

        choice = await self._llm.invoke_structured(
            messages=[{"role": "user", "content": user_message}],
            schema=ToolChoice,
            instructions=system,
            temperature=0.0,
        )

        if not choice.tool_name or choice.tool_name.lower() == "none":
            return ToolChoice(reasoning=choice.reasoning or "Model chose no tool")

        offered = {t.name: t for t in tools}
        tool = offered.get(choice.tool_name)
        if tool is None:
            logger.warning("Model chose unknown tool '%s'", choice.tool_name)
            return ToolChoice(
                reasoning=f"Model chose unknown tool '{choice.tool_name}': {choice.reasoning}"
            )

        try:
            validated = tool.input_schema.model_validate(choice.arguments)
        except PydanticValidationError as e:
            logger.warning("Invalid arguments for tool '%s': %s", tool.name, e)
            return ToolChoice(
                reasoning=f"Model gave invalid arguments for '{tool.name}': {e.error_count()} errors"
            )

        return ToolChoice(
            tool_name=tool.name,
            arguments=validated.model_dump(mode="json"),
            confidence=choice.confidence,
            reasoning=choice.reasoning,
        )

    # -----------------------------------------------------------------------
    # Execution
    # -----------------------------------------------------------------------

    async def execute_tool(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        principal: Principal,
        *,
        query: str = "",
        consent: Iterable[str] = (),
        cancel_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """
        Run a tool with checks, deadline, retries and fallback.

        Args:
            tool_name: Registry name.
            arguments: Raw arguments, validated against the input schema.
            principal: Calling user.
            query: The user's original request, for the intent check.
            consent: Tool names the user consented to ("*" for all).
            cancel_event: Set to abandon the call promptly.

        Returns:
            ToolResult. On exhausted retries `output` holds the fallback
            payload and `error` the last failure.

        Raises:
            ToolNotFoundError: Unknown tool.
            AccessDeniedError: Role, permission or consent check failed.
            ToolRefusedError: Intent confidence below the threshold.
            ValidationError: Arguments do not match the input schema.
            RunCancelledError: cancel_event fired.
        """
        tool = self.registry.get(tool_name)
        self._check_access(tool, principal, consent)

        confidence = self.intent_confidence(tool, query)
        threshold = self.intent_threshold(tool)
        if confidence < threshold:
            logger.warning(
                "Tool '%s' refused: confidence %.2f < %.2f", tool.name, confidence, threshold
            )
            raise ToolRefusedError(tool.name, confidence, threshold)

        try:
            payload = tool.input_schema.model_validate(arguments)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid arguments for tool '{tool.name}': {e}") from e

        tool_input = payload.model_dump(mode="json")
        timeout_ms = self.deadline_ms(tool)
        started = time.perf_counter()
        last_error: ToolExecutionError | None = None

        for attempt in range(self._max_retries + 1):
            try:
                output = await self._run_once(tool, payload, timeout_ms / 1000, cancel_event)
            except RunCancelledError:
                raise
            except asyncio.TimeoutError:
                last_error = ToolExecutionError(tool.name, f"timed out after {timeout_ms}ms")
            except Exception as e:
                last_error = ToolExecutionError(tool.name, str(e) or type(e).__name__)
            else:
                elapsed = (time.perf_counter() - started) * 1000
                logger.info(
                    "Tool '%s' succeeded on attempt %d in %.0fms",
                    tool.name, attempt + 1, elapsed,
                )
                return {
                    "tool_name": tool.name,
                    "input": tool_input,
                    "output": _jsonable(output),
                    "error": None,
                    "execution_time_ms": round(elapsed, 2),
                    "fallback_used": False,
                }

            logger.warning(
                "Tool '%s' attempt %d/%d failed: %s",
                tool.name, attempt + 1, self._max_retries + 1, last_error,
            )
            if attempt < self._max_retries:
                await self._sleep(self.backoff_ms(attempt) / 1000)

        assert last_error is not None
        elapsed = (time.perf_counter() - started) * 1000
        logger.error("Tool '%s' exhausted retries, using fallback", tool.name)
        return {
            "tool_name": tool.name,
            "input": tool_input,
            "output": self._fallback(tool, last_error),
            "error": str(last_error),
            "execution_time_ms": round(elapsed, 2),
            "fallback_used": True,
        }

    # -----------------------------------------------------------------------
    # Policy
    # -----------------------------------------------------------------------

    def deadline_ms(self, tool: ToolDefinition) -> int:
        return max(
            self._base_timeout_ms - tool.risk_level * self._timeout_step_ms,
            self._min_timeout_ms,
        )

    def backoff_ms(self, attempt: int) -> int:
        return min(self._backoff_base_ms * (2 ** attempt), self._backoff_max_ms)

    @staticmethod
    def intent_threshold(tool: ToolDefinition) -> float:
        return HIGH_RISK_THRESHOLD if tool.risk_level >= HIGH_RISK_LEVEL else DEFAULT_THRESHOLD

    @staticmethod
    def intent_confidence(tool: ToolDefinition, query: str) -> float:
        """Fraction of the tool's trigger patterns found in `query`."""
        if not tool.trigger_patterns:
            return NEUTRAL_CONFIDENCE
        matched = sum(
            1 for pattern in tool.trigger_patterns
            if re.search(pattern, query, re.IGNORECASE)
        )
        return matched / len(tool.trigger_patterns)

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    def _check_access(
        self, tool: ToolDefinition, principal: Principal, consent: Iterable[str]
    ) -> None:
        if not principal.has_role(tool.minimum_role):
            raise AccessDeniedError(
                f"Tool '{tool.name}' requires role '{tool.minimum_role.name.lower()}'"
            )
        if not principal.has_permissions(tool.required_permissions):
            missing = sorted(set(tool.required_permissions) - set(principal.permissions))
            raise AccessDeniedError(
                f"Tool '{tool.name}' requires permissions {missing}"
            )
        consent = set(consent)
        if tool.requires_consent and "*" not in consent and tool.name not in consent:
            raise AccessDeniedError(f"Tool '{tool.name}' requires user consent")

    async def _run_once(
        self,
        tool: ToolDefinition,
        payload: BaseModel,
        timeout: float,
        cancel_event: asyncio.Event | None,
    ) -> Any:
        if cancel_event is None:
            return await asyncio.wait_for(tool.execute(payload), timeout)

        if cancel_event.is_set():
            raise RunCancelledError()
        work = asyncio.ensure_future(tool.execute(payload))
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            cancelled.cancel()
            if not work.done():
                work.cancel()

        if work in done:
            return work.result()
        if cancelled in done:
            raise RunCancelledError()
        raise asyncio.TimeoutError()

    def _fallback(self, tool: ToolDefinition, error: Exception) -> Any:
        if tool.fallback is not None:
            return tool.fallback(error)
        return dict(DEFAULT_FALLBACKS.get(tool.name, GENERIC_FALLBACK))


# ---------------------------------------------------------------------------
# Output Normalisation
# ---------------------------------------------------------------------------

TOOL_RELEVANCE = 0.95
FALLBACK_RELEVANCE = 0.3


def tool_result_to_documents(result: ToolResult) -> list[Document]:
    """
    Turn a tool's output (string, list, or object) into Documents.

    Lists yield one document per item; dict items use their title/url/
    snippet keys when present. Fallback payloads get a low relevance so
    real retrieval results outrank them.
    """
    output = result.get("output")
    if output is None:
        return []

    name = result.get("tool_name", "tool")
    score = FALLBACK_RELEVANCE if result.get("fallback_used") else TOOL_RELEVANCE
    items = output if isinstance(output, list) else [output]

    documents: list[Document] = []
    for i, item in enumerate(items, 1):
        title = f"{name} result" if len(items) == 1 else f"{name} result {i}"
        url = None
        if isinstance(item, dict):
            title = str(item.get("title") or title)
            url = item.get("url")
            body = item.get("snippet") or item.get("body") or json.dumps(item, indent=2)
        else:
            body = str(item)

        digest = hashlib.sha1(f"{name}:{body}".encode("utf-8")).hexdigest()[:12]
        documents.append({
            "id": f"tool:{name}:{digest}",
            "title": title,
            "body": str(body),
            "source": f"tool:{name}",
            "relevance_score": score,
            "url": url,
            "metadata": {"tool_input": result.get("input", {}), "fallback": bool(result.get("fallback_used"))},
        })
    return documents


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value
