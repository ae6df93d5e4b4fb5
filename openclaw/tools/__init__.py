"""Tool system — the capability contract, the registry, and the dispatcher."""
from openclaw.tools.executor import ToolCall, ToolExecutionResult, ToolExecutor
from openclaw.tools.registry import FunctionTool, Tool, ToolRegistry, ToolResult

__all__ = [
    "Tool",
    "ToolResult",
    "FunctionTool",
    "ToolRegistry",
    "ToolCall",
    "ToolExecutor",
    "ToolExecutionResult",
]
