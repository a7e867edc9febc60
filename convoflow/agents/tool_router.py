# =============================================================================
# Tool Router — Select and Run One External Tool
# =============================================================================
#
# select_tool  asks the sandbox which tool fits the request and records
#              the choice on task_entities["primary"]
# run_tool     executes it through the sandbox and turns the output
#              into documents for synthesis
#
# Sandbox refusals (permissions, consent, intent, bad arguments) are
# recorded as an errored ToolResult and the run goes on to synthesis.
# Only cancellation escapes this node.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from convoflow.agents.services import acting_principal, get_services
from convoflow.errors import (
    AccessDeniedError,
    ModelProcessingError,
    ToolNotFoundError,
    ToolRefusedError,
    ValidationError,
)
from convoflow.graph.engine import RunConfig
from convoflow.graph.state import (
    PRIMARY_TASK_ID,
    RunState,
    append_documents,
    append_tool_result,
    last_user_message,
    record_error,
    update_task_entity,
)
from convoflow.tools.sandbox import tool_result_to_documents

logger = logging.getLogger(__name__)

CONTEXT_TITLES = 5


async def select_tool_node(state: RunState, config: RunConfig) -> dict[str, Any]:
    services = get_services(config)
    question = last_user_message(state)

    context_lines = []
    evaluation = state.get("retrieval_evaluation") or {}
    if evaluation.get("reasoning"):
        context_lines.append(f"Retrieval assessment: {evaluation['reasoning']}")
    for doc in state.get("documents", [])[:CONTEXT_TITLES]:
        context_lines.append(f"- {doc.get('title', '')}")

    update: dict[str, Any] = {}
    try:
        choice = await services.sandbox.select_tool(
            question,
            "\n".join(context_lines),
            acting_principal(config),
            today=services.today().isoformat(),
        )
        tool_name, arguments = choice.tool_name, choice.arguments
        confidence, reason = choice.confidence, choice.reasoning
    except ModelProcessingError as e:
        logger.warning("Tool selection failed: %s", e)
        update.update(record_error(state, "select_tool", str(e)))
        tool_name, arguments, confidence, reason = None, {}, 0.0, "Tool selection unavailable"

    logger.info("Tool selected: %s (confidence %.2f)", tool_name, confidence)
    return {
        "task_entities": update_task_entity(
            state,
            PRIMARY_TASK_ID,
            tool_to_run=tool_name,
            tool_parameters=arguments,
            tool_selection_reason=reason,
            tool_selection_confidence=confidence,
        ),
        "reasoning": [*state.get("reasoning", []), reason],
        **update,
    }


async def run_tool_node(state: RunState, config: RunConfig) -> dict[str, Any]:
    services = get_services(config)
    entity = state.get("task_entities", {}).get(PRIMARY_TASK_ID, {})
    tool_name = entity.get("tool_to_run")
    if not tool_name:
        logger.info("No tool chosen, skipping execution")
        return {}

    arguments = entity.get("tool_parameters", {})
    try:
        result = await services.sandbox.execute_tool(
            tool_name,
            arguments,
            acting_principal(config),
            query=last_user_message(state),
            consent=state.get("options", {}).get("tool_consent", []),
            cancel_event=config.cancel_event,
        )
    except (AccessDeniedError, ToolNotFoundError, ToolRefusedError, ValidationError) as e:
        logger.warning("Tool '%s' not run: %s", tool_name, e)
        result = {
            "tool_name": tool_name,
            "input": arguments,
            "output": None,
            "error": str(e),
            "execution_time_ms": 0.0,
            "fallback_used": False,
        }

    update: dict[str, Any] = {
        "task_entities": append_tool_result(state, PRIMARY_TASK_ID, result),
        "documents": append_documents(
            state.get("documents", []), tool_result_to_documents(result)
        ),
    }
    if result.get("error"):
        update.update(record_error(state, "run_tool", f"{tool_name}: {result['error']}"))
    return update
