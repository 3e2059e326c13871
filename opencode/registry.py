"""Name-keyed tool registry, built once at startup and read-only afterwards."""

import logging
from pathlib import Path

from .errors import ConfigError
from .messages import ToolDefinition
from .tools import Tool, UserDefinedTool, builtin_tools

logger = logging.getLogger(__name__)


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, Tool] = {}
        self._frozen = False

    def register(self, tool: Tool) -> None:
        if self._frozen:
            raise RuntimeError("tool registry is frozen; register tools before startup")
        if not tool.name:
            raise ValueError(f"tool {tool!r} has no name")
        if tool.name in self._tools:
            raise ValueError(f"duplicate tool name {tool.name!r}")
        self._tools[tool.name] = tool

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition() for tool in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def build_registry(
    root: str | Path | None = None, user_tools: list[dict] | None = None
) -> ToolRegistry:
    """Register the built-in tools plus any configured user tools, then freeze."""
    registry = ToolRegistry()
    for tool in builtin_tools(root):
        registry.register(tool)
    for entry in user_tools or []:
        tool = UserDefinedTool.from_config(entry, root=root)
        try:
            registry.register(tool)
        except ValueError as e:
            raise ConfigError(f"usertools: {e}") from e
        logger.debug("registered user tool %r", tool.name)
    return registry.freeze()
