# =============================================================================
# Widen — Loosen Retrieval Before the Next Loop Iteration
# =============================================================================
#
# Runs when the evaluator found the documents inadequate and the loop
# budget is not spent. Per pass (iteration n after increment):
#
#   min_relevance    base - 0.1 * n, floored at 0.2
#   expand_synonyms  from n >= 1
#   include_related  from n >= 2
#   top_k            base + 4 * n
#
# It also asks the model for refined queries, which the selector uses
# as hints. If the model fails, a heuristic query keeps the loop moving.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from convoflow.agents.services import get_services
from convoflow.config import Settings
from convoflow.errors import ModelProcessingError
from convoflow.graph.engine import RunConfig
from convoflow.graph.state import (
    RetrievalParams,
    RunState,
    last_user_message,
    record_error,
    update_task_entity,
)

logger = logging.getLogger(__name__)

RELEVANCE_STEP = 0.1
RELEVANCE_FLOOR = 0.2
TOP_K_STEP = 4
MAX_REFINED_QUERIES = 3


class RefinedQueries(BaseModel):
    queries: list[str] = Field(default_factory=list)
    reasoning: str = ""


_REFINE_SYSTEM = """Earlier searches did not find enough to answer the user's question.

Write up to {limit} alternative search queries that approach the question \
from different angles: synonyms, broader terms, or the underlying topic."""


def widened_params(iteration: int, settings: Settings) -> RetrievalParams:
    return {
        "min_relevance": round(
            max(settings.retrieval_min_relevance - RELEVANCE_STEP * iteration, RELEVANCE_FLOOR), 2
        ),
        "expand_synonyms": iteration >= 1,
        "include_related": iteration >= 2,
        "top_k": settings.retrieval_top_k + TOP_K_STEP * iteration,
    }


def heuristic_queries(question: str) -> list[str]:
    return [f"{question} in more detail"] if question else []


async def widen_node(state: RunState, config: RunConfig) -> dict[str, Any]:
    services = get_services(config)
    metadata = dict(state.get("metadata", {}))
    iteration = metadata.get("iteration", 0) + 1
    metadata["iteration"] = iteration
    params = widened_params(iteration, services.settings)

    working: RunState = {
        "metadata": metadata,  # type: ignore[typeddict-item]
        "task_entities": state.get("task_entities", {}),
    }
    for task in state.get("retrieval_tasks", []):
        attempts = working["task_entities"].get(task["id"], {}).get("widening_attempts", 0)
        working["task_entities"] = update_task_entity(
            working, task["id"], widening_attempts=attempts + 1
        )

    question = last_user_message(state)
    evaluation = state.get("retrieval_evaluation") or {}
    try:
        refined = await services.llm.invoke_structured(
            messages=[{
                "role": "user",
                "content": (
                    f"Question: {question}\n"
                    f"Previous queries: {[t['query'] for t in state.get('retrieval_tasks', [])]}\n"
                    f"Why they fell short: {evaluation.get('reasoning', 'unknown')}"
                ),
            }],
            schema=RefinedQueries,
            instructions=_REFINE_SYSTEM.format(limit=MAX_REFINED_QUERIES),
            temperature=0.7,
        )
        queries = [q.strip() for q in refined.queries if q.strip()][:MAX_REFINED_QUERIES]
    except ModelProcessingError as e:
        logger.warning("Query refinement failed, using heuristic: %s", e)
        working.update(record_error(working, "widen", str(e)))
        queries = []

    queries = queries or heuristic_queries(question)
    logger.info(
        "Widening to iteration %d: min_relevance=%.2f synonyms=%s related=%s",
        iteration, params["min_relevance"], params["expand_synonyms"], params["include_related"],
    )

    return {
        "retrieval_params": params,
        "refined_queries": queries,
        "task_entities": working["task_entities"],
        "metadata": working["metadata"],
    }
