"""Tool registry and tool definitions."""

from agent_engine.tools.base import ToolDefinition, ToolSchema, qualified_tool_name, split_tool_name
from agent_engine.tools.registry import MCPToolRegistry, ToolRegistry

__all__ = [
    "MCPToolRegistry",
    "ToolDefinition",
    "ToolRegistry",
    "ToolSchema",
    "qualified_tool_name",
    "split_tool_name",
]
