# =============================================================================
# Reranker — Category-Aware Rescoring
# =============================================================================
#
# Two signals per document:
#   relevance   the retrieval backend's score (kept in
#               metadata.retrieval_score, so reranking is idempotent
#               across loop iterations)
#   overlap     fraction of query terms found in title + body
#
#   hybrid = 0.7 * relevance + 0.3 * overlap
#
# Each source has a floor on the retrieval score. Code snippets are
# noisy but still useful at low scores; documents must be clearly on
# topic. Tool output is always kept. While widening, the floors are
# relaxed down to the current min_relevance.
# =============================================================================

from __future__ import annotations

import logging
import re
from typing import Any

from convoflow.agents.retriever import effective_params
from convoflow.agents.services import get_services
from convoflow.graph.engine import RunConfig
from convoflow.graph.state import Document, RunState, last_user_message

logger = logging.getLogger(__name__)

SOURCE_THRESHOLDS: dict[str, float] = {
    "code": 0.3,
    "doc": 0.55,
    "note": 0.4,
    "web": 0.5,
}
TOOL_THRESHOLD = 0.0
DEFAULT_THRESHOLD = 0.2

RELEVANCE_WEIGHT = 0.7
OVERLAP_WEIGHT = 0.3

_TERM_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = frozenset(
    "a an and are as at be by for from how in is it of on or the to what when "
    "where which who why will with".split()
)


def source_threshold(source: str, min_relevance: float | None = None) -> float:
    if source.startswith("tool:"):
        return TOOL_THRESHOLD
    threshold = SOURCE_THRESHOLDS.get(source, DEFAULT_THRESHOLD)
    if min_relevance is not None:
        threshold = min(threshold, min_relevance)
    return threshold


def query_terms(text: str) -> set[str]:
    return {t for t in _TERM_RE.findall(text.lower()) if t not in _STOPWORDS}


def term_overlap(terms: set[str], doc: Document) -> float:
    if not terms:
        return 0.0
    words = set(_TERM_RE.findall(f"{doc.get('title', '')} {doc.get('body', '')}".lower()))
    return len(terms & words) / len(terms)


def rerank(
    documents: list[Document],
    query: str,
    min_relevance: float | None = None,
    max_results: int = 50,
) -> list[Document]:
    """
    Filter by per-source floors, rescore, and sort best-first.

    Args:
        documents: Candidate documents.
        query: Text the overlap signal is measured against.
        min_relevance: Current widening floor, or None on the first pass.
        max_results: Cap on the returned list.
    """
    terms = query_terms(query)
    ranked: list[Document] = []
    for doc in documents:
        metadata = dict(doc.get("metadata") or {})
        relevance = float(metadata.get("retrieval_score", doc.get("relevance_score", 0.0)))
        source = doc.get("source", "")
        if relevance < source_threshold(source, min_relevance):
            continue

        if source.startswith("tool:"):
            score = relevance
        else:
            overlap = term_overlap(terms, doc)
            score = RELEVANCE_WEIGHT * relevance + OVERLAP_WEIGHT * overlap
            metadata["term_overlap"] = round(overlap, 4)
        metadata["retrieval_score"] = relevance
        ranked.append({**doc, "relevance_score": round(score, 4), "metadata": metadata})

    ranked.sort(key=lambda d: d["relevance_score"], reverse=True)
    return ranked[:max_results]


async def rerank_node(state: RunState, config: RunConfig) -> dict[str, Any]:
    services = get_services(config)
    documents = state.get("documents", [])
    if not documents:
        return {"documents": []}

    widening = state.get("metadata", {}).get("iteration", 0) > 0
    min_relevance = (
        effective_params(state, services.settings)["min_relevance"] if widening else None
    )
    query = " ".join([last_user_message(state), *state.get("refined_queries", [])])
    ranked = rerank(documents, query, min_relevance, services.settings.rerank_max_results)

    logger.info("Reranked %d → %d documents", len(documents), len(ranked))
    return {"documents": ranked}
