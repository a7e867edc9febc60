# =============================================================================
# RunState — The Payload Threaded Through a Conversation
# =============================================================================
#
# The engine merges a node's partial result into the state by SHALLOW
# OVERWRITE: every top-level key a node returns replaces the stored value.
# Nothing is auto-appended. MERGE_RULES below documents, per field, who
# owns extension of the value; the helpers at the bottom of this module
# build the full new value for the append-managed fields so nodes never
# drop earlier entries by accident.
#
# DESIGN DECISION: Plain TypedDict (total=False) over Pydantic.
# The state is persisted as JSON after every step and partially
# encrypted, so it must stay a plain dict of JSON-compatible values.
# Nodes return only the keys they update.
# =============================================================================

from __future__ import annotations

import hashlib
import time
import uuid
from collections.abc import Iterable
from typing import Any, Literal

from typing_extensions import TypedDict

# Task id under which the tool router records its choice and results.
# Retrieval tasks use content-derived ids (see task_id()).
PRIMARY_TASK_ID = "primary"


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class Message(TypedDict, total=False):
    role: Literal["user", "assistant", "system"]
    content: str
    timestamp: float


class RetrievalTask(TypedDict):
    id: str
    category: str
    query: str


class Document(TypedDict, total=False):
    id: str
    title: str
    body: str
    source: str  # retrieval category, or "tool:<name>"
    relevance_score: float
    url: str | None
    metadata: dict[str, Any]


class ToolResult(TypedDict, total=False):
    tool_name: str
    input: dict[str, Any]
    output: Any
    error: str | None
    execution_time_ms: float
    fallback_used: bool


class TaskEntity(TypedDict, total=False):
    tool_to_run: str | None
    tool_parameters: dict[str, Any]
    tool_selection_reason: str
    tool_selection_confidence: float
    tool_results: list[ToolResult]
    widening_attempts: int


class RetrievalEvaluation(TypedDict):
    is_adequate: bool
    score: float
    reasoning: str


class ToolNecessity(TypedDict, total=False):
    is_tool_needed: bool
    confidence: float
    reasoning: str


class RetrievalParams(TypedDict, total=False):
    min_relevance: float
    expand_synonyms: bool
    include_related: bool
    top_k: int


class Source(TypedDict, total=False):
    index: int
    id: str
    title: str
    source: str
    url: str | None
    relevance_score: float


class ChatOptions(TypedDict, total=False):
    max_context_items: int
    temperature: float
    max_tokens: int
    include_source_info: bool
    tool_consent: list[str]  # tool names the user consented to, or ["*"]


class RunError(TypedDict):
    node: str
    message: str
    timestamp: float


class Metadata(TypedDict, total=False):
    run_id: str
    trace_id: str
    iteration: int
    current_node: str
    node_timings: dict[str, float]  # node name → milliseconds (latest run)
    errors: list[RunError]
    is_final_state: bool


class RunState(TypedDict, total=False):
    messages: list[Message]
    user_id: str
    options: ChatOptions
    retrieval_tasks: list[RetrievalTask]
    retrieval_params: RetrievalParams
    refined_queries: list[str]
    documents: list[Document]
    task_entities: dict[str, TaskEntity]
    retrieval_evaluation: RetrievalEvaluation | None
    tool_necessity: ToolNecessity | None
    reasoning: list[str]
    generated_text: str
    sources: list[Source]
    metadata: Metadata


# ---------------------------------------------------------------------------
# Merge Rules
# ---------------------------------------------------------------------------
# "overwrite": the returning node's value replaces the stored one.
# "node-appends": the node must return the full extended sequence/mapping,
#   built with the helpers below.
# ---------------------------------------------------------------------------

MERGE_RULES: dict[str, str] = {
    "messages": "node-appends",
    "user_id": "overwrite",
    "options": "overwrite",
    "retrieval_tasks": "overwrite",
    "retrieval_params": "overwrite",
    "refined_queries": "overwrite",
    "documents": "node-appends",
    "task_entities": "node-appends",
    "retrieval_evaluation": "overwrite",
    "tool_necessity": "overwrite",
    "reasoning": "node-appends",
    "generated_text": "overwrite",
    "sources": "overwrite",
    "metadata": "node-appends",
}


def merge_state(state: RunState, update: dict[str, Any]) -> RunState:
    """Shallow-merge a node's partial result into a new state dict."""
    merged: RunState = dict(state)  # type: ignore[assignment]
    merged.update(update)  # type: ignore[typeddict-item]
    return merged


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def new_run_state(
    messages: list[Message],
    user_id: str,
    run_id: str | None = None,
    options: ChatOptions | None = None,
) -> RunState:
    """
    Build the initial state for a fresh run.

    Args:
        messages: Conversation so far; the last user turn is the query.
        user_id: Acting user, persisted as the checkpoint owner.
        run_id: Existing conversation id, or None to mint one.
        options: Per-run knobs (context size, temperature, tool consent).
    """
    run_id = run_id or str(uuid.uuid4())
    return {
        "messages": list(messages),
        "user_id": user_id,
        "options": dict(options or {}),  # type: ignore[typeddict-item]
        "retrieval_tasks": [],
        "retrieval_params": {},
        "refined_queries": [],
        "documents": [],
        "task_entities": {},
        "retrieval_evaluation": None,
        "tool_necessity": None,
        "reasoning": [],
        "generated_text": "",
        "sources": [],
        "metadata": {
            "run_id": run_id,
            "trace_id": str(uuid.uuid4()),
            "iteration": 0,
            "current_node": "",
            "node_timings": {},
            "errors": [],
            "is_final_state": False,
        },
    }


def task_id(category: str, query: str) -> str:
    """Stable id for a retrieval task, identical across loop iterations."""
    digest = hashlib.sha1(f"{category}:{query}".encode("utf-8")).hexdigest()
    return f"{category}-{digest[:10]}"


def last_user_message(state: RunState) -> str:
    """Content of the most recent user turn, or "" if there is none."""
    for message in reversed(state.get("messages", [])):
        if message.get("role") == "user":
            return message.get("content", "")
    return ""


# ---------------------------------------------------------------------------
# Log Redaction
# ---------------------------------------------------------------------------
# Redacted fields never reach the logs. REDACTED_FIELDS is the default set
# (runs carry the configured one). Each is replaced by a
# marker that keeps the shape (type tag + size) without the content.
# ---------------------------------------------------------------------------

REDACTED_FIELDS = frozenset({"messages", "generated_text", "documents", "task_entities"})


def redaction_marker(value: Any) -> str:
    if isinstance(value, list):
        return f"[list: {len(value)} items]"
    if isinstance(value, dict):
        return f"[dict: {len(value)} keys]"
    if isinstance(value, str):
        return f"[str: {len(value)} chars]"
    return "[REDACTED]"


def redact(state: dict[str, Any], fields: Iterable[str] = REDACTED_FIELDS) -> dict[str, Any]:
    """Copy of `state` with every field in `fields` replaced by its marker."""
    fields = set(fields)
    return {
        key: redaction_marker(value) if key in fields and value is not None else value
        for key, value in state.items()
    }


def summarize_state(
    state: dict[str, Any], fields: Iterable[str] = REDACTED_FIELDS
) -> dict[str, Any]:
    """Compact view of a state or update for log lines, `fields` redacted."""
    summary = redact(state, fields)
    metadata = summary.get("metadata")
    if isinstance(metadata, dict):
        summary["metadata"] = {
            "iteration": metadata.get("iteration"),
            "errors": len(metadata.get("errors", [])),
        }
    for key in ("retrieval_tasks", "sources", "reasoning", "refined_queries"):
        if isinstance(summary.get(key), list):
            summary[key] = redaction_marker(summary[key])
    return summary


# ---------------------------------------------------------------------------
# Append Helpers
# ---------------------------------------------------------------------------


def record_error(state: RunState, node: str, message: str) -> dict[str, Any]:
    """Return a metadata update with one more entry in metadata.errors."""
    metadata: Metadata = dict(state.get("metadata", {}))  # type: ignore[assignment]
    errors = list(metadata.get("errors", []))
    errors.append({"node": node, "message": message, "timestamp": time.time()})
    metadata["errors"] = errors
    return {"metadata": metadata}


def record_errors(
    state: RunState, node: str, messages: Iterable[str]
) -> dict[str, Any]:
    """record_error() for several messages at once."""
    working: dict[str, Any] = {"metadata": state.get("metadata", {})}
    for message in messages:
        working = record_error(working, node, message)  # type: ignore[arg-type]
    return working


def append_documents(
    existing: list[Document], new: list[Document]
) -> list[Document]:
    """
    Merge documents, deduplicating by id.

    When the same id appears twice the higher relevance score wins and
    keeps the original position.
    """
    merged: list[Document] = [dict(doc) for doc in existing]  # type: ignore[misc]
    index = {doc.get("id"): i for i, doc in enumerate(merged)}
    for doc in new:
        doc_id = doc.get("id")
        if doc_id in index:
            current = merged[index[doc_id]]
            if doc.get("relevance_score", 0.0) > current.get("relevance_score", 0.0):
                merged[index[doc_id]] = dict(doc)  # type: ignore[assignment]
            continue
        index[doc_id] = len(merged)
        merged.append(dict(doc))  # type: ignore[arg-type]
    return merged


def update_task_entity(
    state: RunState, task: str, **fields: Any
) -> dict[str, TaskEntity]:
    """Return a full task_entities mapping with `fields` set on `task`."""
    entities = {k: dict(v) for k, v in state.get("task_entities", {}).items()}
    entity = entities.setdefault(task, {})
    entity.update(fields)
    return entities  # type: ignore[return-value]


def append_tool_result(
    state: RunState, task: str, result: ToolResult
) -> dict[str, TaskEntity]:
    """Return a full task_entities mapping with `result` appended to `task`."""
    entity = state.get("task_entities", {}).get(task, {})
    history = list(entity.get("tool_results", []))
    history.append(result)
    return update_task_entity(state, task, tool_results=history)
