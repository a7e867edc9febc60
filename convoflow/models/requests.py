# =============================================================================
# API Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming INTO the API. FastAPI
# validates request bodies against them (422 on failure) and renders
# them in the OpenAPI docs.
#
# A chat request carries either a single `message` or a list of
# `messages` (for clients that keep their own history). Exactly one of
# the two must be given.
# =============================================================================

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ChatMessage(BaseModel):
    role: Literal["user", "assistant", "system"] = "user"
    content: str = Field(..., min_length=1, max_length=20000)


class ChatOptionsModel(BaseModel):
    """Per-turn knobs. Omitted fields fall back to server settings."""

    max_context_items: int | None = Field(default=None, ge=1, le=50)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, ge=1, le=32000)
    include_source_info: bool = True
    tool_consent: list[str] = Field(
        default_factory=list,
        description="Tools the user consents to run (e.g. 'web_search'), or '*' for all.",
    )

    def to_state(self) -> dict:
        """Options as stored in RunState, without unset fields."""
        return self.model_dump(exclude_none=True)


class ChatRequest(BaseModel):
    """
    Request body for POST /chat and POST /chat/stream.

    Example:
        {
            "message": "What's the weather in Paris tomorrow?",
            "options": {"tool_consent": ["web_search"]}
        }
    """

    message: str | None = Field(
        default=None,
        min_length=1,
        max_length=20000,
        description="The user's message for this turn",
    )
    messages: list[ChatMessage] | None = Field(
        default=None,
        description="Full message list; the last user message is the query",
    )
    run_id: str | None = Field(
        default=None,
        max_length=128,
        description="Existing conversation to continue. Omit to start a new one.",
    )
    options: ChatOptionsModel = Field(default_factory=ChatOptionsModel)

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {"message": "Summarise my notes on the Q3 planning meeting"},
                {
                    "message": "And what about Q4?",
                    "run_id": "3f1c2b6e-1f0a-4a57-9d52-8f7e0f1c9b11",
                },
            ]
        }
    )

    @model_validator(mode="after")
    def _one_of_message_or_messages(self) -> "ChatRequest":
        if (self.message is None) == (not self.messages):
            raise ValueError("Provide exactly one of 'message' or 'messages'")
        if self.messages and not any(m.role == "user" for m in self.messages):
            raise ValueError("'messages' must contain at least one user message")
        return self

    def to_messages(self) -> list[dict]:
        if self.message is not None:
            return [{"role": "user", "content": self.message}]
        return [m.model_dump() for m in self.messages or []]


class ResumeRequest(BaseModel):
    """
    Request body for POST /chat/{run_id}/resume.

    Without `message`, an interrupted run continues from its last
    checkpoint. With `message`, a new turn starts on the conversation.
    """

    message: str | None = Field(default=None, min_length=1, max_length=20000)


class CleanupRequest(BaseModel):
    """Request body for POST /admin/checkpoints/cleanup."""

    max_age_seconds: int | None = Field(
        default=None,
        ge=0,
        description="Delete checkpoints idle for longer than this. Defaults to the TTL.",
    )
