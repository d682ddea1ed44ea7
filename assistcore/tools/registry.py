from __future__ import annotations

import inspect
from importlib.metadata import entry_points

from assistcore.tools.base import Tool


class RegistryFrozenError(RuntimeError):
    """Raised when a tool is registered after the first turn was submitted."""


class ToolRegistry:
    """
    Tool definitions keyed by name.

    The registry is mutable only during setup.  ``freeze()`` is called when
    the first turn is submitted; from then on the set of definitions is
    fixed and may be shared between sessions.
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def register(self, tool: Tool, *, overwrite: bool = False) -> None:
        if self._frozen:
            raise RegistryFrozenError(
                f"Cannot register {tool.name!r}: tools are fixed once a turn has been submitted"
            )
        if tool.name in self._tools and not overwrite:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def require(self, name: str) -> Tool:
        t = self.get(name)
        if not t:
            raise KeyError(name)
        return t

    def list(self) -> list[Tool]:
        return sorted(self._tools.values(), key=lambda t: t.name)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def to_openai_schema(self) -> list[dict]:
        return [t.to_openai_schema() for t in self.list()]

    def load_plugins(
        self,
        *,
        enabled: bool,
        group: str = "assistcore.tools",
        allow_tools: set[str] | None = None,
        **dependencies: object,
    ) -> int:
        """Load tools from entry points, injecting dependencies by parameter name.

        A tool class whose ``__init__`` declares a parameter matching one of
        the keyword *dependencies* (e.g. ``screen``) receives it; other tools
        are constructed with no arguments.
        """
        if not enabled:
            return 0
        loaded = 0
        for ep in entry_points(group=group):
            if allow_tools and ep.name not in allow_tools:
                continue
            tool_cls = ep.load()
            sig = inspect.signature(tool_cls)
            kwargs = {
                key: value
                for key, value in dependencies.items()
                if key in sig.parameters and value is not None
            }
            self.register(tool_cls(**kwargs))
            loaded += 1
        return loaded
