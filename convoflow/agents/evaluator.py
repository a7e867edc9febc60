# =============================================================================
# Evaluator — Adequacy and Tool Necessity
# =============================================================================
#
# Two independent judgements per pass:
#
#   adequacy        can the documents answer the question?
#                   no documents          → inadequate, score 0
#                   model failure         → inadequate, score 0.5 (recorded)
#   tool necessity  does the question need an external tool as well?
#                   no tools for this user → not needed (1.0)
#                   adequate, score > 0.7 → not needed (0.9)
#                   model failure         → not needed (0.0, recorded)
#
# The fast paths skip a model call whenever the answer is already
# determined. route_after_evaluation() turns both judgements into the
# next step of the loop.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from pydantic import BaseModel, Field

from convoflow.agents.services import acting_principal, get_services
from convoflow.errors import ModelProcessingError
from convoflow.graph.engine import RouteFn, RunConfig
from convoflow.graph.state import (
    Document,
    RetrievalEvaluation,
    RunState,
    ToolNecessity,
    last_user_message,
    record_error,
)

logger = logging.getLogger(__name__)

ADEQUATE_FAST_PATH_SCORE = 0.7
EVIDENCE_DOCS = 8
EVIDENCE_CHARS = 500


class AdequacyJudgement(BaseModel):
    is_adequate: bool
    score: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class ToolNecessityJudgement(BaseModel):
    is_tool_needed: bool
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = ""


_ADEQUACY_SYSTEM = """You judge retrieval quality for a question-answering assistant.

Decide whether the retrieved documents contain enough information to \
answer the user's question accurately and completely. Score from 0 \
(useless) to 1 (fully sufficient)."""

_TOOL_SYSTEM = """You decide whether answering a request needs an external tool.

Tools available:
{tools}

A tool is needed only when the answer depends on live data, a \
computation, or an action the documents cannot provide."""


async def evaluate_node(state: RunState, config: RunConfig) -> dict[str, Any]:
    """Judge the documents, then decide whether a tool is required."""
    services = get_services(config)
    question = last_user_message(state)
    documents = state.get("documents", [])
    working: RunState = {"metadata": state.get("metadata", {})}

    # --- adequacy ---------------------------------------------------------
    if not documents:
        evaluation: RetrievalEvaluation = {
            "is_adequate": False, "score": 0.0, "reasoning": "No documents retrieved",
        }
    else:
        try:
            judgement = await services.llm.invoke_structured(
                messages=[{"role": "user", "content": _evidence_prompt(question, documents)}],
                schema=AdequacyJudgement,
                instructions=_ADEQUACY_SYSTEM,
            )
            evaluation = judgement.model_dump()  # type: ignore[assignment]
        except ModelProcessingError as e:
            logger.warning("Adequacy judgement failed: %s", e)
            working.update(record_error(working, "evaluate", str(e)))
            evaluation = {
                "is_adequate": False,
                "score": 0.5,
                "reasoning": "Evaluation unavailable; treating retrieval as inadequate",
            }

    # --- tool necessity ---------------------------------------------------
    tools = services.tools.available_for(acting_principal(config))
    if not tools:
        necessity: ToolNecessity = {
            "is_tool_needed": False, "confidence": 1.0, "reasoning": "No tools available",
        }
    elif evaluation["is_adequate"] and evaluation["score"] > ADEQUATE_FAST_PATH_SCORE:
        necessity = {
            "is_tool_needed": False,
            "confidence": 0.9,
            "reasoning": "Documents are sufficient",
        }
    else:
        try:
            judgement = await services.llm.invoke_structured(
                messages=[{"role": "user", "content": f"Request: {question}"}],
                schema=ToolNecessityJudgement,
                instructions=_TOOL_SYSTEM.format(
                    tools="\n".join(f"- {t.name}: {t.description}" for t in tools)
                ),
            )
            necessity = judgement.model_dump()  # type: ignore[assignment]
        except ModelProcessingError as e:
            logger.warning("Tool necessity judgement failed: %s", e)
            working.update(record_error(working, "evaluate", str(e)))
            necessity = {
                "is_tool_needed": False,
                "confidence": 0.0,
                "reasoning": "Tool check unavailable",
            }

    logger.info(
        "Evaluation: adequate=%s score=%.2f tool_needed=%s",
        evaluation["is_adequate"], evaluation["score"], necessity["is_tool_needed"],
    )

    update: dict[str, Any] = {
        "retrieval_evaluation": evaluation,
        "tool_necessity": necessity,
        "reasoning": [*state.get("reasoning", []), evaluation["reasoning"]],
    }
    if working["metadata"] is not state.get("metadata"):
        update["metadata"] = working["metadata"]
    return update


def make_route_after_evaluation(max_loops: int) -> RouteFn:
    """
    Router for the evaluate node.

    Returns "tool", "synthesize" or "widen". Once metadata.iteration
    reaches `max_loops` the loop always exits to synthesis.
    """

    def route_after_evaluation(state: RunState) -> str:
        necessity = state.get("tool_necessity") or {}
        if necessity.get("is_tool_needed"):
            return "tool"
        evaluation = state.get("retrieval_evaluation") or {}
        if evaluation.get("is_adequate"):
            return "synthesize"
        if state.get("metadata", {}).get("iteration", 0) >= max_loops:
            logger.info("Loop limit %d reached, synthesising with what we have", max_loops)
            return "synthesize"
        return "widen"

    return route_after_evaluation


def _evidence_prompt(question: str, documents: list[Document]) -> str:
    blocks = []
    for i, doc in enumerate(documents[:EVIDENCE_DOCS], 1):
        body = doc.get("body", "")[:EVIDENCE_CHARS]
        blocks.append(f"[{i}] {doc.get('title', '')} ({doc.get('source', '')})\n{body}")
    return f"Question: {question}\n\nRetrieved documents:\n\n" + "\n\n".join(blocks)
