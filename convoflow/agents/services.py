# =============================================================================
# Pipeline Services — Dependencies Injected Into Every Node
# =============================================================================
#
# Built once per request by the orchestrator and carried on
# RunConfig.services. Nodes never reach for module-level singletons, so a
# test can run any node with fakes:
#
#   config = RunConfig(run_id="r1", principal=user, services=PipelineServices(
#       llm=StructuredLLM(FakeProvider(...)), tools=registry, sandbox=sandbox))
#   update = await evaluate_node(state, config)
# =============================================================================

from __future__ import annotations

import datetime as dt
from collections.abc import Callable
from dataclasses import dataclass, field

from convoflow.config import Settings, settings as default_settings
from convoflow.graph.engine import RunConfig
from convoflow.services.auth import ANONYMOUS_PRINCIPAL, Principal
from convoflow.services.llm import StructuredLLM
from convoflow.services.observability import LoggingObservability, Observability
from convoflow.tools.registry import ToolRegistry
from convoflow.tools.sandbox import ToolSandbox


@dataclass
class PipelineServices:
    llm: StructuredLLM
    tools: ToolRegistry
    sandbox: ToolSandbox
    observability: Observability | None = None
    settings: Settings = field(default_factory=lambda: default_settings)
    today: Callable[[], dt.date] = dt.date.today

    def __post_init__(self) -> None:
        if self.observability is None:
            self.observability = LoggingObservability(
                redacted_fields=self.settings.log_redacted_fields
            )


def get_services(config: RunConfig) -> PipelineServices:
    """
    Raises:
        RuntimeError: The run was started without services.
    """
    if not isinstance(config.services, PipelineServices):
        raise RuntimeError(f"Run {config.run_id} has no PipelineServices attached")
    return config.services


def acting_principal(config: RunConfig) -> Principal:
    """The run's principal; anonymous runs act as a plain system user."""
    return config.principal or ANONYMOUS_PRINCIPAL
