# =============================================================================
# Guardrail — Final Checks on the Generated Answer
# =============================================================================
#
# Applied in order:
#   1. empty answer            → fallback text
#   2. secret-like tokens      → "[REDACTED]"
#   3. citations [n] with n outside 1..len(sources) → removed
#   4. length                  → capped at guardrail_max_answer_chars
#   5. optional model check    (guardrail_llm_validation); a rejected
#                              answer is replaced by the fallback
#
# Then the answer is appended to `messages` as the assistant turn and
# metadata.is_final_state is set.
# =============================================================================

from __future__ import annotations

import logging
import re
import time
from typing import Any

from pydantic import BaseModel

from convoflow.agents.services import get_services
from convoflow.errors import ModelProcessingError
from convoflow.graph.engine import RunConfig
from convoflow.graph.state import Metadata, RunState, last_user_message, record_error

logger = logging.getLogger(__name__)

FALLBACK_ANSWER = (
    "I wasn't able to produce a reliable answer to that. "
    "Could you rephrase or give a little more detail?"
)
TRUNCATION_SUFFIX = "\n\n[Answer truncated]"

SECRET_PATTERNS = (
    re.compile(r"\bsk-[A-Za-z0-9_\-]{16,}"),
    re.compile(r"\bcf-[A-Za-z0-9_\-]{16,}"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}"),
    re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----[\s\S]*?-----END [A-Z ]*PRIVATE KEY-----"),
)
_CITATION_RE = re.compile(r"\s?\[(\d+)\]")


class AnswerCheck(BaseModel):
    is_safe: bool
    reasoning: str = ""


_VALIDATION_SYSTEM = """You review an assistant's answer before it is shown.

Reject the answer (is_safe=false) only if it contains harmful \
instructions, personal data about third parties, or content unrelated to \
the question."""


def redact_secrets(text: str) -> tuple[str, int]:
    count = 0
    for pattern in SECRET_PATTERNS:
        text, n = pattern.subn("[REDACTED]", text)
        count += n
    return text, count


def strip_invalid_citations(text: str, source_count: int) -> str:
    def keep(match: re.Match[str]) -> str:
        return match.group(0) if 1 <= int(match.group(1)) <= source_count else ""

    return _CITATION_RE.sub(keep, text)


def cap_length(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: max(limit - len(TRUNCATION_SUFFIX), 0)].rstrip() + TRUNCATION_SUFFIX


async def guard_node(state: RunState, config: RunConfig) -> dict[str, Any]:
    services = get_services(config)
    settings = services.settings
    working: RunState = {"metadata": state.get("metadata", {})}

    answer = (state.get("generated_text") or "").strip()
    if not answer:
        logger.warning("Empty answer, using fallback")
        answer = FALLBACK_ANSWER

    answer, redacted = redact_secrets(answer)
    if redacted:
        logger.warning("Redacted %d secret-like tokens from the answer", redacted)

    answer = strip_invalid_citations(answer, len(state.get("sources", [])))
    answer = cap_length(answer, settings.guardrail_max_answer_chars)

    if settings.guardrail_llm_validation and answer != FALLBACK_ANSWER:
        try:
            check = await services.llm.invoke_structured(
                messages=[{
                    "role": "user",
                    "content": f"Question: {last_user_message(state)}\n\nAnswer: {answer}",
                }],
                schema=AnswerCheck,
                instructions=_VALIDATION_SYSTEM,
            )
            if not check.is_safe:
                logger.warning("Answer rejected by validation: %s", check.reasoning)
                working.update(
                    record_error(working, "guard", f"answer rejected: {check.reasoning}")
                )
                answer = FALLBACK_ANSWER
        except ModelProcessingError as e:
            # Advisory only: a model failure keeps the answer
            logger.warning("Answer validation unavailable: %s", e)
            working.update(record_error(working, "guard", str(e)))

    metadata: Metadata = dict(working["metadata"])  # type: ignore[assignment]
    metadata["is_final_state"] = True

    return {
        "generated_text": answer,
        "messages": [
            *state.get("messages", []),
            {"role": "assistant", "content": answer, "timestamp": time.time()},
        ],
        "metadata": metadata,
    }
