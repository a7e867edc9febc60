# =============================================================================
# Content Interfaces — Search Backend + Content Source
# =============================================================================
#
# Retrieval tools are thin adapters over two external collaborators:
#
#   SearchBackend.search()      → ranked hits (id, title, score, ...)
#   ContentSource.fetch_batch() → raw bodies for those ids
#
# Production deployments plug in a vector store and a document service.
# InMemoryContentStore implements both over a list of documents with
# keyword-overlap scoring; it backs local development and tests.
# =============================================================================

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol

_TOKEN_RE = re.compile(r"[a-z0-9]+")


@dataclass
class SearchHit:
    id: str
    title: str
    score: float
    category: str
    url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class SearchBackend(Protocol):
    async def search(
        self,
        query: str,
        *,
        category: str,
        top_k: int,
        min_relevance: float,
        expand_synonyms: bool = False,
        include_related: bool = False,
    ) -> list[SearchHit]:
        ...


class ContentSource(Protocol):
    async def fetch(self, content_id: str) -> str | None:
        ...

    async def fetch_batch(self, content_ids: list[str]) -> dict[str, str]:
        ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------


@dataclass
class StoredContent:
    id: str
    title: str
    body: str
    category: str
    url: str | None = None
    tags: list[str] = field(default_factory=list)


class InMemoryContentStore:
    """
    Keyword search + content lookup over an in-process list.

    Score = fraction of query terms present in title/body/tags. With
    expand_synonyms, a term also matches any indexed word sharing its
    first five letters ("forecasts" ~ "forecast"). With include_related,
    documents sharing a tag with a direct hit are added at half score.
    """

    def __init__(self, items: list[StoredContent] | None = None) -> None:
        self._items: dict[str, StoredContent] = {}
        for item in items or []:
            self.add(item)

    def add(self, item: StoredContent) -> None:
        self._items[item.id] = item

    async def search(
        self,
        query: str,
        *,
        category: str,
        top_k: int,
        min_relevance: float,
        expand_synonyms: bool = False,
        include_related: bool = False,
    ) -> list[SearchHit]:
        terms = set(_tokens(query))
        if not terms:
            return []

        scored: dict[str, float] = {}
        for item in self._items.values():
            if item.category != category:
                continue
            words = set(_tokens(f"{item.title} {item.body} {' '.join(item.tags)}"))
            matched = sum(1 for t in terms if _matches(t, words, expand_synonyms))
            score = matched / len(terms)
            if score >= min_relevance:
                scored[item.id] = score

        if include_related and scored:
            hit_tags = {t for i in scored for t in self._items[i].tags}
            for item in self._items.values():
                if item.category == category and item.id not in scored:
                    if hit_tags.intersection(item.tags):
                        scored[item.id] = round(min(scored.values()) / 2, 4)

        ranked = sorted(scored.items(), key=lambda kv: kv[1], reverse=True)[:top_k]
        return [
            SearchHit(
                id=item_id,
                title=self._items[item_id].title,
                score=round(score, 4),
                category=category,
                url=self._items[item_id].url,
                metadata={"tags": list(self._items[item_id].tags)},
            )
            for item_id, score in ranked
        ]

    async def fetch(self, content_id: str) -> str | None:
        item = self._items.get(content_id)
        return item.body if item else None

    async def fetch_batch(self, content_ids: list[str]) -> dict[str, str]:
        return {i: self._items[i].body for i in content_ids if i in self._items}


def _tokens(text: str) -> list[str]:
    return _TOKEN_RE.findall(text.lower())


def _matches(term: str, words: set[str], expand: bool) -> bool:
    if term in words:
        return True
    if expand and len(term) >= 5:
        stem = term[:5]
        return any(w.startswith(stem) for w in words)
    return False
