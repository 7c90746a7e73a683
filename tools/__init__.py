"""Agent tools for CRM, scheduling, real estate, handoff and knowledge lookup."""

from tools.base import Tool, ToolContext, ToolName, ToolResult, call_with_timeout
from tools.registry import ToolRegistry, TOOL_CLASSES

__all__ = [
    "Tool", "ToolContext", "ToolName", "ToolResult", "call_with_timeout",
    "ToolRegistry", "TOOL_CLASSES"
]
