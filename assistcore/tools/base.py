from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from typing import Any, Callable

from assistcore.types import ToolResult


def normalize_schema(schema: dict) -> dict:
    s = dict(schema or {})
    s.setdefault("type", "object")
    s.setdefault("properties", {})
    s.setdefault("additionalProperties", False)
    return s


class Tool(ABC):
    """A named, schema-described capability the model may invoke."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def description(self) -> str: ...

    @property
    @abstractmethod
    def parameters(self) -> dict: ...

    @abstractmethod
    async def execute(self, **kwargs) -> ToolResult: ...

    def to_openai_schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": normalize_schema(self.parameters),
            },
        }


class FunctionTool(Tool):
    """
    Adapt a plain (sync or async) callable into a ``Tool``.

    The callable receives the validated arguments as keyword arguments.  A
    ``ToolResult`` return value is passed through; anything else becomes the
    result content (strings verbatim, other values via ``str``).
    """

    def __init__(
        self,
        name: str,
        description: str,
        parameters: dict,
        fn: Callable[..., Any],
    ) -> None:
        self._name = name
        self._description = description
        self._parameters = parameters
        self._fn = fn

    @property
    def name(self) -> str:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def parameters(self) -> dict:
        return self._parameters

    async def execute(self, **kwargs) -> ToolResult:
        value = self._fn(**kwargs)
        if inspect.isawaitable(value):
            value = await value
        if isinstance(value, ToolResult):
            return value
        return ToolResult(success=True, content=value if isinstance(value, str) else str(value))


def tool(name: str, description: str, parameters: dict | None = None):
    """Decorator form of ``FunctionTool``."""

    def wrap(fn: Callable[..., Any]) -> FunctionTool:
        return FunctionTool(name, description, parameters or {}, fn)

    return wrap
