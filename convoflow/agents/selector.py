# =============================================================================
# Retrieval Selector — Choose {category, query} Tasks
# =============================================================================
#
# Given the latest user turn, recent history, and the catalog of
# retrieval categories that actually have a tool registered, the model
# proposes an ordered list of tasks plus a rationale.
#
# VALIDATION:
#   - tasks naming a category outside the catalog are dropped (logged)
#   - duplicates (same category:query) are dropped, order kept
#   - nothing usable (or a model failure) → fallback tasks: the raw
#     question (or the first refined query) against the default
#     categories that exist in the catalog
#
# On later loop iterations the widen node has left `refined_queries`
# in the state; they are offered to the model as hints.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from convoflow.agents.services import get_services
from convoflow.errors import ModelProcessingError
from convoflow.graph.engine import RunConfig
from convoflow.graph.state import (
    RetrievalTask,
    RunState,
    last_user_message,
    record_error,
    task_id,
    update_task_entity,
)

logger = logging.getLogger(__name__)

MAX_TASKS = 4
HISTORY_TURNS = 6


class TaskSpec(BaseModel):
    category: str
    query: str = Field(min_length=1)


class RetrievalSelection(BaseModel):
    tasks: list[TaskSpec] = Field(default_factory=list)
    reasoning: str = ""


_SELECTOR_SYSTEM = """You plan retrieval for a conversational assistant.

Choose which content categories to search and what to search for, so the \
assistant can answer the user's latest message.

Categories:
{catalog}

Rules:
- Use only the categories listed above
- Write each query as a focused search string, not a question
- Return at most {max_tasks} tasks, most useful first
- Explain your choice briefly in "reasoning\""""


async def select_node(state: RunState, config: RunConfig) -> dict[str, Any]:
    """Plan this iteration's retrieval tasks."""
    services = get_services(config)
    question = last_user_message(state)
    catalog = {
        category: (services.tools.retrieval_tool(category).description)
        for category in services.tools.retrieval_categories()
    }

    if not question or not catalog:
        reason = "no user message" if not question else "no retrieval tools registered"
        logger.warning("Selector skipped: %s", reason)
        return {"retrieval_tasks": [], **record_error(state, "select", reason)}

    update: dict[str, Any] = {}
    try:
        selection = await services.llm.invoke_structured(
            messages=[{"role": "user", "content": _build_prompt(state, question)}],
            schema=RetrievalSelection,
            instructions=_SELECTOR_SYSTEM.format(
                catalog="\n".join(f"- {c}: {d}" for c, d in catalog.items()),
                max_tasks=MAX_TASKS,
            ),
            temperature=0.7,
        )
        tasks = validate_tasks(selection.tasks, catalog)
        reasoning = selection.reasoning
    except ModelProcessingError as e:
        logger.warning("Selector model failed, using fallback tasks: %s", e)
        update.update(record_error(state, "select", str(e)))
        tasks, reasoning = [], ""

    if not tasks:
        tasks = fallback_tasks(
            question,
            state.get("refined_queries", []),
            list(catalog),
            services.settings.default_retrieval_categories,
        )
        reasoning = reasoning or "Fallback: searching default categories with the question"

    # Every task gets an entity; widening counters survive re-selection.
    working: RunState = {"task_entities": state.get("task_entities", {})}
    for task in tasks:
        existing = working["task_entities"].get(task["id"], {})
        working["task_entities"] = update_task_entity(
            working, task["id"], widening_attempts=existing.get("widening_attempts", 0)
        )

    logger.info(
        "Selected %d retrieval tasks: %s",
        len(tasks), [f"{t['category']}:{t['query']}" for t in tasks],
    )

    return {
        "retrieval_tasks": tasks,
        "task_entities": working["task_entities"],
        "reasoning": [*state.get("reasoning", []), reasoning],
        **update,
    }


def validate_tasks(
    specs: list[TaskSpec], catalog: dict[str, str] | list[str]
) -> list[RetrievalTask]:
    """Drop unknown categories and duplicates, keeping model order."""
    seen: set[str] = set()
    tasks: list[RetrievalTask] = []
    for spec in specs:
        category = spec.category.strip().lower()
        query = spec.query.strip()
        if category not in catalog:
            logger.warning("Selector proposed unknown category '%s'", spec.category)
            continue
        key = f"{category}:{query}"
        if key in seen or not query:
            continue
        seen.add(key)
        tasks.append({"id": task_id(category, query), "category": category, "query": query})
    return tasks[:MAX_TASKS]


def fallback_tasks(
    question: str,
    refined_queries: list[str],
    catalog: list[str],
    default_categories: list[str],
) -> list[RetrievalTask]:
    query = refined_queries[0] if refined_queries else question
    categories = [c for c in default_categories if c in catalog] or catalog[:1]
    return [{"id": task_id(c, query), "category": c, "query": query} for c in categories]


def _build_prompt(state: RunState, question: str) -> str:
    history = state.get("messages", [])[-HISTORY_TURNS:-1]
    parts = []
    if history:
        lines = [f"{m.get('role', 'user')}: {m.get('content', '')}" for m in history]
        parts.append("Conversation so far:\n" + "\n".join(lines))
    parts.append(f"Latest message: {question}")

    hints = state.get("refined_queries", [])
    if hints:
        parts.append(
            "Earlier retrieval was not good enough. Consider these refined "
            "queries:\n" + "\n".join(f"- {q}" for q in hints)
        )
    return "\n\n".join(parts)
