"""Tool interface shared by every user-facing surface (CLI, agents, servers)."""

from __future__ import annotations

from typing import Any, Protocol, TypedDict, runtime_checkable


class ToolParameter(TypedDict, total=False):
    """JSON Schema for a single parameter."""

    type: str
    description: str
    format: str
    items: dict[str, Any]


class ToolInputSchema(TypedDict):
    """JSON Schema for tool input parameters."""

    type: str  # Always "object"
    properties: dict[str, ToolParameter]
    required: list[str]


@runtime_checkable
class Tool(Protocol):
    """
    A named operation with a JSON Schema input and a JSON-serializable result.

    Results always carry a "status" key; user-facing text goes in "message".
    """

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> ToolInputSchema: ...

    def is_async(self) -> bool: ...

    def execute(self, **kwargs: Any) -> dict[str, Any]: ...

    async def execute_async(self, **kwargs: Any) -> dict[str, Any]: ...
