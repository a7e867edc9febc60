# =============================================================================
# API Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming OUT of the API.
#
# DESIGN DECISION: Responses expose a curated view of RunState.
# The full state holds retrieval internals (task entities, raw document
# bodies, widening parameters). Clients get the answer, the sources it
# cites, tool results and recorded errors; GET /chat/{run_id} returns
# the history and a summary of the rest.
# =============================================================================

from typing import Any

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response for GET /health — confirms the API is running."""

    status: str = "ok"
    version: str
    service: str


class SourceItem(BaseModel):
    index: int = Field(description="Citation number used in the answer, e.g. [1]")
    id: str
    title: str
    source: str = Field(description="Retrieval category, or 'tool:<name>'")
    url: str | None = None
    relevance_score: float


class ToolResultItem(BaseModel):
    tool_name: str
    input: dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    error: str | None = None
    execution_time_ms: float = 0.0
    fallback_used: bool = False


class RunErrorItem(BaseModel):
    node: str
    message: str
    timestamp: float


class ChatResponse(BaseModel):
    """Response for POST /chat and POST /chat/{run_id}/resume."""

    run_id: str
    answer: str
    sources: list[SourceItem] = Field(default_factory=list)
    iterations: int = Field(description="Widening passes the retrieval loop took")
    tool_results: list[ToolResultItem] = Field(default_factory=list)
    errors: list[RunErrorItem] = Field(default_factory=list)
    is_final: bool


class MessageItem(BaseModel):
    role: str
    content: Any = None
    timestamp: float | None = None


class CheckpointResponse(BaseModel):
    """Response for GET /chat/{run_id}."""

    run_id: str
    owner_id: str
    step: int
    current_node: str
    is_final: bool
    iterations: int
    messages: list[MessageItem] = Field(default_factory=list)
    answer: str = ""
    sources: list[SourceItem] = Field(default_factory=list)
    errors: list[RunErrorItem] = Field(default_factory=list)
    created_at: int
    updated_at: int


class CheckpointStatsResponse(BaseModel):
    """Response for GET /admin/checkpoints/stats."""

    total: int
    oldest: int | None = None
    newest: int | None = None
    avg_size_bytes: float
    per_user_counts: dict[str, int] | None = None


class CleanupResponse(BaseModel):
    """Response for POST /admin/checkpoints/cleanup."""

    deleted: int
    max_age_seconds: int
