# =============================================================================
# Built-in Tools
# =============================================================================
#
# External tools (run through the sandbox):
#   calculator  — risk 1, tools:calculator, arithmetic on + - * / ( )
#   weather     — risk 1, tools:weather, structured forecast for a place/date
#   web_search  — risk 2, tools:web_search, requires consent
#
# Retrieval tools (run by the retrieve node), one per catalog category:
#   make_retrieval_tool("web" | "doc" | "code" | "note", backend, content)
#
# The weather and web search tools return demo data. Swap their execute
# functions for real API clients without touching the sandbox.
# =============================================================================

from __future__ import annotations

import ast
import datetime as dt
import operator
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, Field

from convoflow.services.content import ContentSource, SearchBackend
from convoflow.tools.registry import ToolDefinition, ToolRegistry

RETRIEVAL_CATEGORIES: dict[str, str] = {
    "web": "Public web pages and news articles",
    "doc": "Uploaded documents, manuals and reports",
    "code": "Source code and technical snippets",
    "note": "The user's personal notes",
}


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


class CalculatorInput(BaseModel):
    expression: str = Field(
        min_length=1,
        max_length=200,
        pattern=r"^[0-9+\-*/().\s]*$",
        description="Arithmetic expression using digits, + - * / and parentheses",
    )


class CalculatorOutput(BaseModel):
    expression: str
    result: float


_BINARY_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
}
_UNARY_OPS = {ast.UAdd: operator.pos, ast.USub: operator.neg}


def _evaluate(node: ast.AST) -> float:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body)
    if isinstance(node, ast.Constant) and isinstance(node.value, (int, float)):
        return node.value
    if isinstance(node, ast.BinOp) and type(node.op) in _BINARY_OPS:
        return _BINARY_OPS[type(node.op)](_evaluate(node.left), _evaluate(node.right))
    if isinstance(node, ast.UnaryOp) and type(node.op) in _UNARY_OPS:
        return _UNARY_OPS[type(node.op)](_evaluate(node.operand))
    raise ValueError(f"Unsupported expression element: {type(node).__name__}")


async def _calculate(payload: CalculatorInput) -> CalculatorOutput:
    tree = ast.parse(payload.expression, mode="eval")
    return CalculatorOutput(expression=payload.expression, result=float(_evaluate(tree)))


# ---------------------------------------------------------------------------
# Weather
# ---------------------------------------------------------------------------


class WeatherInput(BaseModel):
    location: str = Field(min_length=1, description="City or place name")
    date: dt.date | None = Field(default=None, description="ISO date; today if omitted")


class Temperature(BaseModel):
    current: float
    min: float
    max: float


class WeatherReport(BaseModel):
    location: str
    date: dt.date
    temperature: Temperature
    conditions: str
    humidity: int
    wind_speed: float
    units: str = "metric"


async def _weather(payload: WeatherInput) -> WeatherReport:
    return WeatherReport(
        location=payload.location,
        date=payload.date or dt.date.today(),
        temperature=Temperature(current=22, min=18, max=25),
        conditions="Partly cloudy",
        humidity=65,
        wind_speed=10,
    )


# ---------------------------------------------------------------------------
# Web search
# ---------------------------------------------------------------------------


class WebSearchInput(BaseModel):
    query: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=10)


class SearchResultItem(BaseModel):
    title: str
    url: str
    snippet: str


async def _web_search(payload: WebSearchInput) -> list[SearchResultItem]:
    slug = "-".join(payload.query.lower().split())[:60]
    return [
        SearchResultItem(
            title=f"Result {i} for: {payload.query}",
            url=f"https://example.com/search/{slug}/{i}",
            snippet=f"Summary {i} of information about {payload.query}.",
        )
        for i in range(1, payload.limit + 1)
    ]


CALCULATOR = ToolDefinition(
    name="calculator",
    description="Evaluate an arithmetic expression",
    input_schema=CalculatorInput,
    output_schema=CalculatorOutput,
    execute=_calculate,
    required_permissions=("tools:calculator",),
    risk_level=1,
    trigger_patterns=(
        r"\b(calculate|compute|evaluate|solve|math|equation|arithmetic|formula)\b",
        r"\d\s*[-+*/]\s*\d",
    ),
)

WEATHER = ToolDefinition(
    name="weather",
    description="Weather forecast for a location on a given date",
    input_schema=WeatherInput,
    output_schema=WeatherReport,
    execute=_weather,
    required_permissions=("tools:weather",),
    risk_level=1,
    trigger_patterns=(
        r"\b(weather|temperature|forecast|rain|snow|sunny|cloudy|humidity|wind)\b",
    ),
)

WEB_SEARCH = ToolDefinition(
    name="web_search",
    description="Search the web for up-to-date information",
    input_schema=WebSearchInput,
    execute=_web_search,
    required_permissions=("tools:web_search",),
    risk_level=2,
    requires_consent=True,
    trigger_patterns=(
        r"\b(search|find|look up|google|information about|tell me about|what is)\b",
    ),
)

EXTERNAL_TOOLS = (CALCULATOR, WEATHER, WEB_SEARCH)


# ---------------------------------------------------------------------------
# Retrieval tools
# ---------------------------------------------------------------------------


class RetrievalQuery(BaseModel):
    query: str = Field(min_length=1)
    top_k: int = Field(default=8, ge=1, le=100)
    min_relevance: float = Field(default=0.5, ge=0.0, le=1.0)
    expand_synonyms: bool = False
    include_related: bool = False


def make_retrieval_tool(
    category: str,
    backend: SearchBackend,
    content: ContentSource,
    description: str | None = None,
) -> ToolDefinition:
    """
    Retrieval tool for one catalog category.

    Searches `backend`, then batch-fetches bodies from `content`. Hits
    whose body is missing are dropped.
    """

    async def _retrieve(payload: RetrievalQuery) -> list[dict[str, Any]]:
        hits = await backend.search(
            payload.query,
            category=category,
            top_k=payload.top_k,
            min_relevance=payload.min_relevance,
            expand_synonyms=payload.expand_synonyms,
            include_related=payload.include_related,
        )
        if not hits:
            return []
        bodies = await content.fetch_batch([hit.id for hit in hits])
        return [
            {
                "id": hit.id,
                "title": hit.title,
                "body": bodies[hit.id],
                "source": category,
                "relevance_score": hit.score,
                "url": hit.url,
                "metadata": dict(hit.metadata),
            }
            for hit in hits
            if hit.id in bodies
        ]

    return ToolDefinition(
        name=f"retrieve_{category}",
        description=description or RETRIEVAL_CATEGORIES.get(category, category),
        input_schema=RetrievalQuery,
        execute=_retrieve,
        category=category,
    )


def build_default_registry(
    backend: SearchBackend,
    content: ContentSource,
    categories: Iterable[str] = tuple(RETRIEVAL_CATEGORIES),
    external: Iterable[ToolDefinition] = EXTERNAL_TOOLS,
) -> ToolRegistry:
    """Registry with the built-in external tools plus one retrieval tool per category."""
    registry = ToolRegistry(external)
    for category in categories:
        registry.register(make_retrieval_tool(category, backend, content))
    return registry