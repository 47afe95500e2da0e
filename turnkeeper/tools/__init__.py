"""Tools package for turnkeeper."""

from turnkeeper.tools.loop_detector import LoopDetector
from turnkeeper.tools.registry import (
    ToolCategory,
    ToolDescriptor,
    ToolParameter,
    ToolRegistry,
    ToolResult,
    WrappedTool,
    get_tool_registry,
    set_tool_registry,
)

__all__ = [
    "LoopDetector",
    "ToolCategory",
    "ToolDescriptor",
    "ToolParameter",
    "ToolRegistry",
    "ToolResult",
    "WrappedTool",
    "get_tool_registry",
    "set_tool_registry",
]
