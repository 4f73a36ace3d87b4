"""Base types and definitions for tools."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

ToolHandler = Callable[[BaseModel], Awaitable[Any]]

MCP_PREFIX = "mcp_"


class ToolSchema(BaseModel):
    """Tool description advertised to the model."""

    name: str
    description: str
    input_schema: dict[str, Any]

    def to_function_spec(self) -> dict[str, Any]:
        """OpenAI-style function spec, accepted by every LangChain ``bind_tools``."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


@dataclass
class ToolDefinition:
    """Definition of a tool served by one registry server."""

    name: str
    description: str
    input_schema_class: type[BaseModel]
    handler: ToolHandler

    def get_json_schema(self) -> dict[str, Any]:
        """Get JSON schema for this tool's input."""
        return self.input_schema_class.model_json_schema()

    def parse_input(self, raw_input: dict[str, Any]) -> BaseModel:
        """Parse and validate tool input."""
        return self.input_schema_class.model_validate(raw_input)


def qualified_tool_name(server: str, tool: str) -> str:
    """Name under which a server's tool is exposed to the model."""
    return f"{MCP_PREFIX}{server}_{tool}"


def split_tool_name(name: str) -> tuple[str, str] | None:
    """Split ``mcp_<server>_<tool>`` into server and tool.

    The server id is the first segment after the prefix; everything after it
    is the tool name, underscores included. Returns None for other names.
    """
    if not name.startswith(MCP_PREFIX):
        return None
    parts = name.split("_")
    if len(parts) < 3 or not parts[1] or not all(parts[2:]):
        return None
    return parts[1], "_".join(parts[2:])
