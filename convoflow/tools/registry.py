# =============================================================================
# Tool Registry — Immutable Tool Definitions + Catalog
# =============================================================================
#
# Two kinds of tool live in the same registry:
#
#   retrieval tools  (category set)  → run by the `retrieve` node, one per
#                                      catalog category (web, doc, ...)
#   external tools   (category None) → chosen by the tool router and run
#                                      inside the sandbox (weather, ...)
#
# The retrieval catalog offered to the selector is derived from what is
# actually registered, so the model can never be offered a category with
# no tool behind it.
#
# DESIGN DECISION: Frozen dataclass for ToolDefinition. Definitions are
# shared by concurrent runs; nothing may mutate one after registration.
# Input/output schemas are Pydantic models so the sandbox can validate
# arguments and the router can hand the model a JSON schema.
# =============================================================================

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from convoflow.errors import ToolNotFoundError
from convoflow.services.auth import Principal, Role


@dataclass(frozen=True)
class ToolDefinition:
    """
    A registered capability.

    Attributes:
        name: Unique registry key.
        description: Shown to the model when it chooses a tool.
        input_schema: Pydantic model the arguments must validate against.
        execute: Async callable taking the validated input model.
        output_schema: Optional Pydantic model describing the output.
        minimum_role: Lowest role allowed to run the tool.
        required_permissions: Every entry must be held by the caller.
        risk_level: 1 (harmless) to 5 (dangerous); scales the intent
            threshold and shortens the execution deadline.
        requires_consent: Only runs when the user consented to it.
        trigger_patterns: Regexes matched against the user's query for
            the sandbox intent check.
        fallback: Called with the last error when retries are exhausted;
            overrides the per-name default fallback.
        category: Retrieval category, or None for external tools.
    """

    name: str
    description: str
    input_schema: type[BaseModel]
    execute: Callable[[Any], Awaitable[Any]]
    output_schema: type[BaseModel] | None = None
    minimum_role: Role = Role.USER
    required_permissions: tuple[str, ...] = ()
    risk_level: int = 1
    requires_consent: bool = False
    trigger_patterns: tuple[str, ...] = ()
    fallback: Callable[[Exception], Any] | None = None
    category: str | None = None

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Tool name must not be empty")
        if not 1 <= self.risk_level <= 5:
            raise ValueError(
                f"Tool '{self.name}' risk_level must be 1-5, got {self.risk_level}"
            )

    @property
    def is_retrieval(self) -> bool:
        return self.category is not None

    def describe(self) -> dict[str, Any]:
        """Name, description and argument schema, for model prompts."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.input_schema.model_json_schema(),
        }


class ToolRegistry:
    """Name-indexed set of ToolDefinitions."""

    def __init__(self, tools: Iterable[ToolDefinition] = ()) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: ToolDefinition) -> None:
        """
        Add a tool.

        Raises:
            ValueError: A tool with the same name, or a second retrieval
                tool for the same category, is already registered.
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")
        if tool.is_retrieval and tool.category in self.retrieval_categories():
            raise ValueError(f"Retrieval category '{tool.category}' already has a tool")
        self._tools[tool.name] = tool

    def get(self, name: str) -> ToolDefinition:
        """
        Raises:
            ToolNotFoundError: No tool with that name.
        """
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def find(self, name: str | None) -> ToolDefinition | None:
        return self._tools.get(name) if name else None

    def subset(self, names: Iterable[str]) -> ToolRegistry:
        """Restricted registry holding only `names` (all must exist)."""
        return ToolRegistry(self.get(name) for name in names)

    def external_tools(self) -> list[ToolDefinition]:
        return [t for t in self._tools.values() if not t.is_retrieval]

    def available_for(self, principal: Principal) -> list[ToolDefinition]:
        """External tools whose role and permission requirements `principal` meets."""
        return [
            t for t in self.external_tools()
            if principal.has_role(t.minimum_role)
            and principal.has_permissions(t.required_permissions)
        ]

    def retrieval_categories(self) -> list[str]:
        return [t.category for t in self._tools.values() if t.category is not None]

    def retrieval_tool(self, category: str) -> ToolDefinition | None:
        for tool in self._tools.values():
            if tool.category == category:
                return tool
        return None

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
