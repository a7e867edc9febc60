# =============================================================================
# Retriever — Run Each Retrieval Task's Tool
# =============================================================================
#
# Tasks run concurrently (asyncio.gather), each bounded by
# retrieval_timeout_seconds. A failing task is recorded in
# metadata.errors and the others still contribute; one slow category
# never sinks the whole turn.
#
# Results are merged into `documents` with append_documents(), which
# dedupes by id across loop iterations.
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from typing import Any

from convoflow.agents.services import get_services
from convoflow.config import Settings
from convoflow.graph.engine import RunConfig
from convoflow.graph.state import (
    Document,
    RetrievalParams,
    RetrievalTask,
    RunState,
    append_documents,
    record_errors,
)

logger = logging.getLogger(__name__)


def effective_params(state: RunState, settings: Settings) -> RetrievalParams:
    """Settings defaults overlaid with the widening state."""
    params: RetrievalParams = {
        "min_relevance": settings.retrieval_min_relevance,
        "expand_synonyms": False,
        "include_related": False,
        "top_k": settings.retrieval_top_k,
    }
    params.update(state.get("retrieval_params") or {})
    return params


async def retrieve_node(state: RunState, config: RunConfig) -> dict[str, Any]:
    services = get_services(config)
    tasks = state.get("retrieval_tasks", [])
    if not tasks:
        logger.info("No retrieval tasks to run")
        return {}

    params = effective_params(state, services.settings)
    timeout = services.settings.retrieval_timeout_seconds
    remaining = config.remaining_seconds()
    if remaining is not None:
        timeout = min(timeout, remaining)

    async def run_task(task: RetrievalTask) -> list[Document]:
        tool = services.tools.retrieval_tool(task["category"])
        if tool is None:
            raise LookupError(f"no retrieval tool for category '{task['category']}'")
        payload = tool.input_schema.model_validate({"query": task["query"], **params})
        return await asyncio.wait_for(tool.execute(payload), timeout)

    outcomes = await asyncio.gather(*(run_task(t) for t in tasks), return_exceptions=True)

    found: list[Document] = []
    failures: list[str] = []
    for task, outcome in zip(tasks, outcomes):
        if isinstance(outcome, asyncio.TimeoutError):
            failures.append(f"{task['category']}:{task['query']} timed out after {timeout:.1f}s")
        elif isinstance(outcome, asyncio.CancelledError):
            raise outcome
        elif isinstance(outcome, Exception):
            failures.append(f"{task['category']}:{task['query']} failed: {outcome}")
        else:
            for doc in outcome:
                metadata = dict(doc.get("metadata") or {})
                metadata.update(task_id=task["id"], retrieval_score=doc.get("relevance_score", 0.0))
                found.append({**doc, "metadata": metadata})

    for failure in failures:
        logger.warning("Retrieval %s", failure)

    documents = append_documents(state.get("documents", []), found)
    logger.info(
        "Retrieved %d documents from %d tasks (%d failed), %d total",
        len(found), len(tasks), len(failures), len(documents),
    )

    update: dict[str, Any] = {"documents": documents}
    if failures:
        update.update(record_errors(state, "retrieve", failures))
    return update
