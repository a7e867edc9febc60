# =============================================================================
# Multi-Provider LLM Abstraction + Structured Invocation
# =============================================================================
#
# Two layers:
#
#   LLMProvider (Protocol)            — raw text completion
#   ├── AnthropicProvider             — Claude via native Anthropic SDK
#   └── OpenAICompatibleProvider      — any OpenAI-compatible API
#
#   StructuredLLM                     — what pipeline nodes call
#   ├── invoke_structured()           — JSON output validated against a
#   │                                   Pydantic model, retried with backoff
#   └── complete()                    — free text, retried with backoff
#
# DESIGN DECISION: Protocol (structural typing) over ABC. Tests pass a
# fake provider with a `complete()` method and nothing else.
#
# DESIGN DECISION: Native SDKs over LangChain wrappers. Direct control of
# request parameters, fewer moving parts.
#
# DESIGN DECISION: Retries live in StructuredLLM, not in the providers.
# A malformed JSON answer is as retryable as a transport error, and only
# the structured layer can tell. After `max_attempts` the caller gets a
# ModelProcessingError and decides how to degrade.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from convoflow.config import settings
from convoflow.errors import ModelProcessingError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """Standardised response from any LLM provider."""

    content: str           # The generated text
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Both Anthropic and OpenAI-compatible implementations must provide
    the `complete()` method.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system"; use the system param).
            system: System prompt for the LLM.
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).

        Returns:
            LLMResponse with generated text and usage metrics.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }
        if system:
            kwargs["system"] = system

        response = await self._client.messages.create(**kwargs)

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    Provider for any API that follows the OpenAI chat completions spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperature if temperature is None else temperature,
        )

        content = response.choices[0].message.content or ""
        usage = response.usage

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

# Lazy singleton — the SDK clients pool their own connections
_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Return the configured LLM provider.

    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider

    The provider is shared; the StructuredLLM wrapping it is built per run
    by the orchestrator and injected into nodes.
    """
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            _provider = OpenAICompatibleProvider()
        else:
            _provider = AnthropicProvider()
    return _provider


# ---------------------------------------------------------------------------
# Structured Invocation
# ---------------------------------------------------------------------------

_STRUCTURED_SUFFIX = """

Respond with ONLY a JSON object (no markdown, no explanation) that \
validates against this JSON schema:
{schema}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


class StructuredLLM:
    """
    Retrying front-end over an LLMProvider.

    Args:
        provider: Any object with an async `complete()` (see LLMProvider).
        max_attempts: Total attempts per call, including the first.
        base_delay_ms: First backoff delay; doubles per attempt.
        max_delay_ms: Backoff cap.
        sleep: Awaitable sleep, injectable for tests.
    """

    def __init__(
        self,
        provider: LLMProvider,
        max_attempts: int = 3,
        base_delay_ms: int = 200,
        max_delay_ms: int = 2000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self._max_attempts = max(1, max_attempts)
        self._base_delay_ms = base_delay_ms
        self._max_delay_ms = max_delay_ms
        self._sleep = sleep

    async def invoke_structured(
        self,
        messages: list[dict[str, str]],
        schema: type[T],
        instructions: str,
        temperature: float = 0.0,
        max_tokens: int = 1024,
    ) -> T:
        """
        Ask the model for JSON matching `schema` and parse it.

        Transport errors, unparseable JSON, and schema violations are all
        retried with exponential backoff.

        Raises:
            ModelProcessingError: Every attempt failed.
        """
        system = instructions + _STRUCTURED_SUFFIX.format(
            schema=json.dumps(schema.model_json_schema())
        )
        last_error: Exception | None = None

        for attempt in range(self._max_attempts):
            try:
                response = await self.provider.complete(
                    messages=messages,
                    system=system,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                return schema.model_validate_json(_extract_json(response.content))
            except (PydanticValidationError, ValueError) as e:
                last_error = e
                logger.warning(
                    "Structured output for %s invalid (attempt %d/%d): %s",
                    schema.__name__, attempt + 1, self._max_attempts, e,
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    "LLM call for %s failed (attempt %d/%d): %s",
                    schema.__name__, attempt + 1, self._max_attempts, e,
                )

            if attempt < self._max_attempts - 1:
                await self._sleep(self._delay(attempt))

        raise ModelProcessingError(
            f"{schema.__name__}: no valid response after "
            f"{self._max_attempts} attempts: {last_error}",
            attempts=self._max_attempts,
        ) from last_error

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Free-text completion with the same retry policy.

        Raises:
            ModelProcessingError: Every attempt failed.
        """
        last_error: Exception | None = None
        for attempt in range(self._max_attempts):
            try:
                return await self.provider.complete(
                    messages=messages,
                    system=system,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except Exception as e:
                last_error = e
                logger.warning(
                    "LLM completion failed (attempt %d/%d): %s",
                    attempt + 1, self._max_attempts, e,
                )
            if attempt < self._max_attempts - 1:
                await self._sleep(self._delay(attempt))

        raise ModelProcessingError(
            f"Completion failed after {self._max_attempts} attempts: {last_error}",
            attempts=self._max_attempts,
        ) from last_error

    def _delay(self, attempt: int) -> float:
        """Backoff in seconds before attempt `attempt + 1`."""
        return min(self._base_delay_ms * (2 ** attempt), self._max_delay_ms) / 1000


def _extract_json(text: str) -> str:
    """
    Pull the JSON object out of a model reply.

    Tolerates markdown fences and prose around the object.

    Raises:
        ValueError: No JSON object found.
    """
    cleaned = _FENCE_RE.sub("", text.strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end < start:
        raise ValueError(f"No JSON object in model output: {text[:120]!r}")
    return cleaned[start:end + 1]
