"""Extraction of tool calls embedded as JSON in a model's text reply."""

import json
import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

from agent_engine.models.messages import ToolCall, new_id
from agent_engine.services.errors import ToolCallParseError
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)

FENCED_JSON_PATTERN = re.compile(r"```json[ \t]*\n(.*?)\n[ \t]*```", re.DOTALL)
EXCESS_NEWLINES_PATTERN = re.compile(r"\n\s*\n\s*\n")

# Tool names accepted in the `{"<tool>": {...}}` shorthand
DEFAULT_KNOWN_TOOLS = frozenset(
    {
        "read_file",
        "create_file",
        "edit_file",
        "list_directory",
        "bash",
        "glob",
        "grep",
        "todo_write",
        "todo_read",
        "mermaid",
        "get_diagnostics",
        "format_file",
        "undo_edit",
        "web_search",
        "delete_file",
    }
)


@dataclass
class ParsedReply:
    """Text reply with embedded tool calls separated out."""

    content: str
    tool_calls: list[ToolCall] | None = None


class ToolCallParser:
    """Find `{tool, parameters}` / `{name, arguments}` JSON in model text.

    Fenced ```json blocks are matched left to right. When none of them holds
    a tool call, a reply consisting of a single bare JSON object is tried.
    Tool names are opaque; underscores carry no meaning here.
    """

    def __init__(self, known_tools: Iterable[str] | None = None):
        self.known_tools = frozenset(known_tools) if known_tools is not None else DEFAULT_KNOWN_TOOLS

    def parse(self, text: str) -> ParsedReply:
        """Split a reply into visible content and tool calls.

        A malformed block that is shaped like a tool call leaves the whole
        reply untouched: the original text is returned with no calls.
        """
        if not text:
            return ParsedReply(content=text)

        try:
            tool_calls, matched_blocks = self._parse_fenced_blocks(text)
            if not tool_calls:
                tool_calls, matched_blocks = self._parse_bare_object(text)
        except ToolCallParseError as e:
            logger.debug(f"Ignoring malformed tool call block: {e}")
            return ParsedReply(content=text)

        if not tool_calls:
            return ParsedReply(content=text)

        content = text
        for block in matched_blocks:
            content = content.replace(block, "", 1)
        content = EXCESS_NEWLINES_PATTERN.sub("\n\n", content).strip()

        logger.debug(f"Parsed {len(tool_calls)} tool call(s): {[tc.name for tc in tool_calls]}")
        return ParsedReply(content=content, tool_calls=tool_calls)

    def _parse_fenced_blocks(self, text: str) -> tuple[list[ToolCall], list[str]]:
        tool_calls: list[ToolCall] = []
        matched: list[str] = []

        for match in FENCED_JSON_PATTERN.finditer(text):
            body = match.group(1)
            call = self._to_tool_call(self._load_block(body))
            if call is not None:
                tool_calls.append(call)
                matched.append(match.group(0))

        return tool_calls, matched

    def _parse_bare_object(self, text: str) -> tuple[list[ToolCall], list[str]]:
        stripped = text.strip()
        if not (stripped.startswith("{") and stripped.endswith("}")):
            return [], []

        call = self._to_tool_call(self._load_block(stripped))
        if call is None:
            return [], []
        return [call], [stripped]

    def _load_block(self, body: str) -> Any:
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            if _looks_like_tool_call(body):
                raise ToolCallParseError(f"invalid JSON in tool call block: {e}") from e
            return None

    def _to_tool_call(self, parsed: Any) -> ToolCall | None:
        if not isinstance(parsed, dict):
            return None

        name = parsed.get("tool") or parsed.get("name")
        params = parsed.get("parameters", parsed.get("arguments"))
        if isinstance(name, str) and name and isinstance(params, dict):
            return ToolCall(id=new_id(), name=name, parameters=params)

        for key, value in parsed.items():
            if key in self.known_tools and isinstance(value, dict):
                return ToolCall(id=new_id(), name=key, parameters=value)

        return None


def _looks_like_tool_call(body: str) -> bool:
    return any(f'"{key}"' in body for key in ("tool", "name", "parameters", "arguments"))
