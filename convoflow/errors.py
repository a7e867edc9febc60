# =============================================================================
# Error Taxonomy
# =============================================================================
#
# Every error raised by convoflow derives from ConvoflowError and carries
# the HTTP status the API layer should answer with. Routes catch
# ConvoflowError and re-raise HTTPException(status_code, detail).
#
# RETRY POLICY (who handles what):
#   ValidationError        → never retried, surfaced to the caller
#   AccessDeniedError      → never retried, surfaced to the caller
#   ToolExecutionError     → retried by the sandbox, then wrapped in a fallback
#   ModelProcessingError   → retried inside StructuredLLM, then fatal to the
#                            calling node only (nodes record it and continue)
#   CheckpointReadError    → soft-fail: the engine treats it as "no prior state"
#   CheckpointWriteError   → hard-fail: aborts the run
#   RunAbortedError        → a node raised; carries the partial state
# =============================================================================

from __future__ import annotations

from typing import Any


class ConvoflowError(Exception):
    """Base class for all convoflow errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------


class ValidationError(ConvoflowError):
    """Malformed input to a schema (tool arguments, request payloads)."""

    status_code = 400


class AccessDeniedError(ConvoflowError):
    """Ownership, role, or permission violation."""

    status_code = 403


class NotFoundError(ConvoflowError):
    status_code = 404


class CheckpointNotFoundError(NotFoundError):
    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"No checkpoint for run '{run_id}'")


# ---------------------------------------------------------------------------
# Tool errors
# ---------------------------------------------------------------------------


class ToolExecutionError(ConvoflowError):
    """A tool failed after the sandbox exhausted its retries."""

    status_code = 502

    def __init__(self, tool_name: str, message: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Tool '{tool_name}' failed: {message}")


class ToolNotFoundError(ValidationError):
    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Unknown tool '{tool_name}'")


class ToolRefusedError(ConvoflowError):
    """The intent check did not reach the tool's risk-scaled threshold."""

    status_code = 422

    def __init__(self, tool_name: str, confidence: float, threshold: float) -> None:
        self.tool_name = tool_name
        self.confidence = confidence
        self.threshold = threshold
        super().__init__(
            f"Tool '{tool_name}' refused: intent confidence {confidence:.2f} "
            f"below required {threshold:.2f}"
        )


# ---------------------------------------------------------------------------
# Model errors
# ---------------------------------------------------------------------------


class ModelProcessingError(ConvoflowError):
    """The language model failed or returned unparseable output after retries."""

    status_code = 502

    def __init__(self, message: str, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


# ---------------------------------------------------------------------------
# Checkpoint errors
# ---------------------------------------------------------------------------


class CheckpointReadError(ConvoflowError):
    """
    The stored checkpoint could not be loaded.

    `step` is the stored step when the row itself was found (corrupt or
    undecryptable state), so a fresh run can keep counting after it.
    """

    def __init__(self, message: str, step: int | None = None) -> None:
        self.step = step
        super().__init__(message)


class CheckpointDecryptionError(CheckpointReadError):
    def __init__(self, run_id: str, field: str, step: int | None = None) -> None:
        self.run_id = run_id
        self.field = field
        super().__init__(f"Failed to decrypt field '{field}' for run '{run_id}'", step)


class CheckpointWriteError(ConvoflowError):
    pass


class StaleCheckpointError(CheckpointWriteError):
    """Compare-and-swap on step failed: another writer got there first."""

    status_code = 409

    def __init__(self, run_id: str, step: int, stored_step: int) -> None:
        self.run_id = run_id
        self.step = step
        self.stored_step = stored_step
        super().__init__(
            f"Stale checkpoint write for run '{run_id}': step {step} "
            f"is not after stored step {stored_step}"
        )


# ---------------------------------------------------------------------------
# Engine errors
# ---------------------------------------------------------------------------


class GraphConfigurationError(ConvoflowError):
    """The graph definition is invalid (duplicate node, unknown target, ...)."""


class GraphRouteError(GraphConfigurationError):
    """A conditional router returned a key missing from its target map."""

    def __init__(self, node: str, key: Any, state: dict) -> None:
        self.node = node
        self.key = key
        self.state = state
        super().__init__(f"Router for node '{node}' returned unknown key {key!r}")


class GraphRecursionError(ConvoflowError):
    def __init__(self, limit: int, state: dict) -> None:
        self.limit = limit
        self.state = state
        super().__init__(f"Run exceeded the step limit of {limit}")


class RunAbortedError(ConvoflowError):
    """
    A node raised or a checkpoint write failed. The run stops at `node`.

    `state` holds the partial state as of the failure (with the error
    recorded in metadata.errors) for diagnosis. The original exception is
    chained as `__cause__`.
    """

    def __init__(self, node: str, message: str, state: dict) -> None:
        self.node = node
        self.state = state
        super().__init__(f"Run aborted at node '{node}': {message}")

    @property
    def status_code(self) -> int:  # type: ignore[override]
        cause = self.__cause__
        if isinstance(cause, ConvoflowError):
            return cause.status_code
        return 500


class RunCancelledError(ConvoflowError):
    status_code = 499

    def __init__(self, run_id: str = "", state: dict | None = None) -> None:
        self.run_id = run_id
        self.state = state or {}
        super().__init__(f"Run '{run_id}' was cancelled")
