"""
Tool Registry — the agent's catalog of capabilities.

A tool is anything that satisfies the Tool protocol: a name, a description,
a JSON Schema for its input, and an execute() that returns a ToolResult.
Concrete tools (shell, filesystem, web, chat posting) live outside this
package; the registry only needs the four-member contract.

The registry serves two purposes:

1. DISCOVERY: it renders the tools array attached to every model call.
2. DISPATCH: it maps the tool name in a tool_use block to the tool itself.

Tool descriptions are treated as prompts — they tell the model not just WHAT
a tool does, but WHEN to use it.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ToolResult:
    """The outcome of one tool invocation. Never mutated after creation."""

    output: str
    is_error: bool = False
    exit_code: Optional[int] = None

    @classmethod
    def success(cls, output: str) -> "ToolResult":
        return cls(output=output, is_error=False, exit_code=0)

    @classmethod
    def error(cls, output: str, exit_code: Optional[int] = 1) -> "ToolResult":
        return cls(output=output, is_error=True, exit_code=exit_code)


@runtime_checkable
class Tool(Protocol):
    """The capability contract every tool satisfies."""

    @property
    def name(self) -> str: ...

    @property
    def description(self) -> str: ...

    @property
    def input_schema(self) -> dict[str, Any]: ...

    def execute(self, tool_input: dict[str, Any]) -> Union[ToolResult, Awaitable[ToolResult]]: ...


@dataclass
class FunctionTool:
    """
    Adapts a plain function into a Tool.

    The handler receives the tool input as keyword arguments and may be sync
    or async. A str return value becomes a successful ToolResult; a ToolResult
    is passed through untouched.
    """

    name: str
    description: str
    input_schema: dict[str, Any]
    handler: Callable[..., Any]
    timeout: Optional[float] = None       # Per-tool timeout in seconds (None = use default)
    category: str = "general"

    def execute(self, tool_input: dict[str, Any]) -> Union[ToolResult, Awaitable[ToolResult]]:
        if inspect.iscoroutinefunction(self.handler):
            return self._execute_async(tool_input)
        return _coerce_result(self.handler(**tool_input))

    async def _execute_async(self, tool_input: dict[str, Any]) -> ToolResult:
        return _coerce_result(await self.handler(**tool_input))


def _coerce_result(value: Any) -> ToolResult:
    if isinstance(value, ToolResult):
        return value
    if value is None:
        return ToolResult.success("")
    return ToolResult.success(str(value))


def to_api_format(tool: Tool) -> dict[str, Any]:
    """
    Convert a tool to the shape the Messages API expects in its 'tools' array:
    {"name": ..., "description": ..., "input_schema": {JSON Schema}}
    """
    return {
        "name": tool.name,
        "description": tool.description,
        "input_schema": tool.input_schema,
    }


class ToolRegistry:
    """
    Name-keyed registry of tools available to the agent.

    Registration happens at startup. Name collisions are rejected unless the
    caller asks for an explicit replacement.
    """

    def __init__(self, tools: Optional[list[Tool]] = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool, *, allow_override: bool = False) -> None:
        """Register a tool, blocking accidental name collisions by default."""
        if not isinstance(tool, Tool):
            raise TypeError(f"{tool!r} does not implement the Tool interface")
        if tool.name in self._tools and not allow_override:
            logger.warning("tool_registry.name_collision", name=tool.name)
            raise ValueError(
                f"Tool '{tool.name}' is already registered. "
                "Use allow_override=True for an explicit replacement."
            )
        self._tools[tool.name] = tool
        logger.info("tool_registry.registered", name=tool.name)

    def unregister(self, name: str) -> bool:
        if name in self._tools:
            del self._tools[name]
            logger.info("tool_registry.unregistered", name=name)
            return True
        return False

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def get_api_tools(self) -> list[dict[str, Any]]:
        """Generate the tools array for a model call."""
        return [to_api_format(tool) for tool in self._tools.values()]

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    @property
    def count(self) -> int:
        return len(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools
