"""Base implementation for tools implementing the Tool protocol."""

from __future__ import annotations

import inspect
from typing import Any

from finwire.tools.protocol import ToolInputSchema


class ToolArgumentError(ValueError):
    """Raised when a tool is called without a required argument."""


class StandardTool:
    """
    Base class for tools.

    Subclasses set ``_name``, ``_description`` and ``_input_schema`` and
    implement ``_execute_impl`` (sync or async). Required arguments are
    checked before ``_execute_impl`` runs.
    """

    _name: str
    _description: str
    _input_schema: ToolInputSchema

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> ToolInputSchema:
        return self._input_schema

    def is_async(self) -> bool:
        """Return True if this tool's _execute_impl is async."""
        return inspect.iscoroutinefunction(self._execute_impl)

    def execute(self, **kwargs: Any) -> dict[str, Any]:
        """Run a sync tool.

        Raises:
            RuntimeError: If called on an async tool
            ToolArgumentError: If a required argument is missing
        """
        if self.is_async():
            raise RuntimeError(
                f"{self.__class__.__name__} is async. Use execute_async() instead."
            )
        self._check_required(kwargs)
        return self._execute_impl(**kwargs)

    async def execute_async(self, **kwargs: Any) -> dict[str, Any]:
        """Run a sync or async tool."""
        self._check_required(kwargs)
        result = self._execute_impl(**kwargs)
        if inspect.iscoroutine(result):
            return await result
        return result

    def _check_required(self, kwargs: dict[str, Any]) -> None:
        missing = [
            key for key in self._input_schema["required"] if kwargs.get(key) is None
        ]
        if missing:
            raise ToolArgumentError(
                f"{self._name} missing required argument(s): {', '.join(missing)}"
            )

    def _execute_impl(self, **kwargs: Any) -> dict[str, Any]:
        raise NotImplementedError(
            f"{self.__class__.__name__} must implement _execute_impl"
        )
