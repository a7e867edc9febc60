# =============================================================================
# Synthesizer — Grounded Answer Generation
# =============================================================================
#
# Takes the best documents (and any tool output, which arrives as
# documents) and writes the answer with numbered citations.
#
# DESIGN DECISION: Context formatted with numbered references.
# Documents are presented as [1], [2], etc. and the same numbering is
# returned in `sources`, so every citation in the answer resolves to a
# source the caller can display. The guardrail strips citations that
# point past the end of the list.
#
# The top documents are taken by relevance_score, so tool results
# (scored 0.95) are always in context when a tool ran.
# =============================================================================

from __future__ import annotations

import logging
from typing import Any

from convoflow.agents.services import get_services
from convoflow.errors import ModelProcessingError
from convoflow.graph.engine import RunConfig
from convoflow.graph.state import (
    Document,
    RunState,
    Source,
    last_user_message,
    record_error,
)

logger = logging.getLogger(__name__)

HISTORY_TURNS = 6

SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer the user's latest message using "
    "the provided context.\n\n"
    "Rules:\n"
    "- Base factual claims on the provided context\n"
    "- Cite sources using [1], [2], etc. matching the context numbers\n"
    "- If the context does not contain the answer, say so plainly and "
    "answer only what you can\n"
    "- Tool results are current data; prefer them over older documents\n"
    "- Keep your answer concise and directly relevant"
)

NO_CONTEXT_ANSWER = (
    "I couldn't find any information to answer that. "
    "Please try rephrasing your question or adding more detail."
)

FAILURE_ANSWER = (
    "I'm sorry, I ran into a problem generating an answer. "
    "Please try again in a moment."
)


async def synthesize_node(state: RunState, config: RunConfig) -> dict[str, Any]:
    services = get_services(config)
    options = state.get("options", {})
    question = last_user_message(state)
    limit = options.get("max_context_items", services.settings.max_context_items)

    documents = sorted(
        state.get("documents", []),
        key=lambda d: d.get("relevance_score", 0.0),
        reverse=True,
    )[:limit]

    if not documents:
        logger.info("Synthesising without context")
        return {"generated_text": NO_CONTEXT_ANSWER, "sources": []}

    user_message = (
        f"{_format_history(state)}"
        f"Question: {question}\n\n"
        f"Context ({len(documents)} items):\n\n{format_context(documents)}"
    )

    logger.info("Synthesising answer from %d documents", len(documents))
    try:
        response = await services.llm.complete(
            messages=[{"role": "user", "content": user_message}],
            system=SYSTEM_PROMPT,
            temperature=options.get("temperature"),
            max_tokens=options.get("max_tokens"),
        )
    except ModelProcessingError as e:
        logger.error("Synthesis failed: %s", e)
        return {
            "generated_text": FAILURE_ANSWER,
            "sources": [],
            **record_error(state, "synthesize", str(e)),
        }

    logger.info(
        "Synthesis complete: model=%s, tokens=%d+%d",
        response.model, response.input_tokens, response.output_tokens,
    )
    return {"generated_text": response.content, "sources": build_sources(documents)}


def format_context(documents: list[Document]) -> str:
    """
    Number documents [1], [2], ... for citation.

    Each entry carries its title and origin so the model can judge
    freshness (tool output versus stored content).
    """
    parts = []
    for i, doc in enumerate(documents, 1):
        header = f"[{i}] {doc.get('title', 'Untitled')} (source: {doc.get('source', 'unknown')})"
        parts.append(f"{header}\n{doc.get('body', '')}")
    return "\n\n---\n\n".join(parts)


def build_sources(documents: list[Document]) -> list[Source]:
    return [
        {
            "index": i,
            "id": doc.get("id", ""),
            "title": doc.get("title", ""),
            "source": doc.get("source", ""),
            "url": doc.get("url"),
            "relevance_score": doc.get("relevance_score", 0.0),
        }
        for i, doc in enumerate(documents, 1)
    ]


def _format_history(state: RunState) -> str:
    history = state.get("messages", [])[-HISTORY_TURNS:-1]
    if not history:
        return ""
    lines = [f"{m.get('role', 'user')}: {m.get('content', '')}" for m in history]
    return "Conversation so far:\n" + "\n".join(lines) + "\n\n"
