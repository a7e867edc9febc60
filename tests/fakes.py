# =============================================================================
# Test Doubles — Scripted LLM, In-Memory Store, Service Bundles
# =============================================================================
#
# Shared by the unit tests. Nothing here touches the network or Postgres:
#   - ScriptedProvider answers by matching a marker in the system prompt
#   - make_store() builds a SecureCheckpointStore on sqlite+aiosqlite
#     (in-memory, StaticPool so every session shares one connection)
#
# aiosqlite connections are bound to the event loop that opened them, so
# a store must be created and used inside the same asyncio.run() call.
# =============================================================================

from __future__ import annotations

import asyncio
import datetime as dt
import json
from typing import Any

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from convoflow.agents.services import PipelineServices
from convoflow.config import Settings
from convoflow.db.models import Checkpoint
from convoflow.services.checkpoints import SecureCheckpointStore
from convoflow.services.content import InMemoryContentStore, StoredContent
from convoflow.services.crypto import FieldCipher
from convoflow.services.llm import LLMResponse, StructuredLLM
from convoflow.tools.builtin import build_default_registry
from convoflow.tools.registry import ToolRegistry
from convoflow.tools.sandbox import ToolSandbox

# Markers that identify which prompt a call belongs to
SELECTOR = "You plan retrieval"
ADEQUACY = "You judge retrieval quality"
TOOL_NEED = "needs an external tool"
REFINE = "Earlier searches did not find enough"
TOOL_CHOICE = "You route a user's request"
ANSWER = "You are a helpful assistant"
REVIEW = "You review an assistant's answer"


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


async def _no_sleep(_seconds: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Scripted LLM
# ---------------------------------------------------------------------------


class ScriptedProvider:
    """
    LLMProvider stand-in.

    `script` maps a system-prompt marker to a reply: a dict (sent as
    JSON), a string, an Exception (raised), or a list of those consumed
    in order with the last one repeating. Unmatched calls raise.
    """

    def __init__(self, script: dict[str, Any] | None = None) -> None:
        self.script = dict(script or {})
        self.calls: list[dict[str, Any]] = []

    def calls_for(self, marker: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if marker in (c["system"] or "")]

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "system": system, "temperature": temperature})
        for marker, reply in self.script.items():
            if marker in (system or ""):
                if isinstance(reply, list):
                    reply = reply.pop(0) if len(reply) > 1 else reply[0]
                if isinstance(reply, Exception):
                    raise reply
                content = reply if isinstance(reply, str) else json.dumps(reply)
                return LLMResponse(content=content, model="fake", input_tokens=10, output_tokens=5)
        raise RuntimeError(f"No scripted reply for prompt: {(system or '')[:60]!r}")


def make_llm(script: dict[str, Any] | None = None) -> tuple[StructuredLLM, ScriptedProvider]:
    provider = ScriptedProvider(script)
    return StructuredLLM(provider, max_attempts=2, sleep=_no_sleep), provider


# ---------------------------------------------------------------------------
# Content and Services
# ---------------------------------------------------------------------------


def sample_content() -> InMemoryContentStore:
    return InMemoryContentStore([
        StoredContent(
            id="note-paris",
            title="Paris trip packing list",
            body="Pack an umbrella and a light jacket for the Paris trip.",
            category="note",
            tags=["travel"],
        ),
        StoredContent(
            id="web-paris",
            title="Visiting Paris in spring",
            body="Paris in spring is mild with occasional rain showers.",
            category="web",
            url="https://example.com/paris-spring",
            tags=["travel"],
        ),
        StoredContent(
            id="doc-q3",
            title="Q3 planning report",
            body="The Q3 planning report covers hiring targets and budget.",
            category="doc",
            tags=["planning"],
        ),
        StoredContent(
            id="code-retry",
            title="retry helper",
            body="def retry(fn, attempts): exponential backoff helper",
            category="code",
        ),
    ])


def make_services(
    script: dict[str, Any] | None = None,
    *,
    categories: tuple[str, ...] = ("web", "doc", "code", "note"),
    tools: ToolRegistry | None = None,
    settings: Settings | None = None,
    today: dt.date = dt.date(2025, 6, 1),
) -> tuple[PipelineServices, ScriptedProvider]:
    llm, provider = make_llm(script)
    if tools is None:
        content = sample_content()
        tools = build_default_registry(content, content, categories)
    sandbox = ToolSandbox(tools, llm, sleep=_no_sleep)
    services = PipelineServices(
        llm=llm,
        tools=tools,
        sandbox=sandbox,
        settings=settings or Settings(),
        today=lambda: today,
    )
    return services, provider


# ---------------------------------------------------------------------------
# Checkpoint Store
# ---------------------------------------------------------------------------


async def make_store(
    key: str | None = None,
    *,
    session_factory: Any = None,
    **kwargs: Any,
) -> SecureCheckpointStore:
    """In-memory store; pass `session_factory` to share a database between stores."""
    if session_factory is None:
        session_factory = await make_session_factory()
    cipher = FieldCipher.from_base64(key or FieldCipher.generate_key())
    return SecureCheckpointStore(session_factory, cipher, **kwargs)


async def make_session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Checkpoint.__table__.create)
    return async_sessionmaker(engine, expire_on_commit=False)
