"""Tool registry for MCP-style tool servers."""

from typing import Any, Protocol

from agent_engine.tools.base import ToolDefinition, ToolSchema, qualified_tool_name
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)


class ToolRegistry(Protocol):
    """What the agent needs from a tool backend."""

    def get_tools(self) -> list[ToolSchema]: ...

    async def execute_tool(self, server: str, tool: str, parameters: dict[str, Any]) -> Any: ...


class MCPToolRegistry:
    """In-process registry of tools grouped by server id."""

    def __init__(self):
        """Initialize an empty registry."""
        self._servers: dict[str, dict[str, ToolDefinition]] = {}

    def register_tool(self, server: str, tool: ToolDefinition) -> None:
        """Register a tool under a server id."""
        if "_" in server:
            raise ValueError(f"Server id must not contain underscores: {server}")
        self._servers.setdefault(server, {})[tool.name] = tool
        logger.debug(f"Registered tool {qualified_tool_name(server, tool.name)}")

    def get_tools(self) -> list[ToolSchema]:
        """Get schemas for every registered tool, named ``mcp_<server>_<tool>``."""
        return [
            ToolSchema(
                name=qualified_tool_name(server, tool.name),
                description=tool.description,
                input_schema=tool.get_json_schema(),
            )
            for server, tools in self._servers.items()
            for tool in tools.values()
        ]

    async def execute_tool(self, server: str, tool: str, parameters: dict[str, Any]) -> Any:
        """Validate parameters and run a tool.

        Raises:
            KeyError: If the server or tool is unknown
            pydantic.ValidationError: If the parameters do not match the schema
        """
        definition = self._servers.get(server, {}).get(tool)
        if definition is None:
            raise KeyError(f"Tool '{tool}' not found on server '{server}'")

        parsed = definition.parse_input(parameters)
        return await definition.handler(parsed)
