"""Concurrent dispatch of a turn's tool calls to the tool registry."""

import asyncio
import json
from typing import Any

from agent_engine.models.messages import ToolCall, ToolOutcome, ToolResult
from agent_engine.services.content_store import ContentStore, format_summary_block
from agent_engine.services.errors import ToolExecutionError
from agent_engine.tools.base import split_tool_name
from agent_engine.tools.registry import ToolRegistry
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)


def flatten_tool_output(output: Any) -> str:
    """Reduce an MCP tool result to text.

    Lists are joined line by line (text items by their ``text``), objects use
    their ``text`` field when present and are JSON-encoded otherwise.
    """
    if isinstance(output, str):
        return output
    if isinstance(output, list):
        return "\n".join(_item_text(item) for item in output)
    if isinstance(output, dict):
        text = output.get("text")
        return text if isinstance(text, str) else json.dumps(output, default=str)
    if output is None:
        return ""
    return str(output)


def _item_text(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict) and "text" in item:
        return item["text"] if isinstance(item["text"], str) else ""
    return json.dumps(item, default=str)


class ToolExecutionCoordinator:
    """Fan a turn's tool calls out to the registry and fan the results back in.

    Results come back in call order regardless of completion order, and one
    failing call never affects its siblings.
    """

    def __init__(self, registry: ToolRegistry, content_store: ContentStore | None = None):
        self.registry = registry
        self.content_store = content_store

    async def execute(self, thread_id: str, calls: list[ToolCall], message_id: str) -> list[ToolResult]:
        """Run every call concurrently and return one result per call, in order."""
        if not calls:
            return []

        logger.info(f"Executing {len(calls)} tool call(s) for message {message_id} in thread {thread_id}")

        results: list[ToolResult | None] = [None] * len(calls)

        async def run(position: int, call: ToolCall) -> None:
            results[position] = await self._execute_one(call)

        async with asyncio.TaskGroup() as group:
            for position, call in enumerate(calls):
                group.create_task(run(position, call))

        return [result for result in results if result is not None]

    async def _execute_one(self, call: ToolCall) -> ToolResult:
        try:
            output = await self._dispatch(call)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"Tool {call.name} failed: {message}")
            return ToolResult(id=call.id, name=call.name, result=ToolOutcome(success=False, error=message))

        logger.debug(f"Tool {call.name} succeeded: {output[:100]}...")
        return ToolResult(id=call.id, name=call.name, result=ToolOutcome(success=True, output=output))

    async def _dispatch(self, call: ToolCall) -> str:
        route = split_tool_name(call.name)
        if route is None:
            raise ToolExecutionError(call.name, f"Tool '{call.name}' is not available from any tool server")

        server, tool = route
        raw_output = await self.registry.execute_tool(server, tool, call.parameters)
        return self._resolve_references(flatten_tool_output(raw_output))

    def _resolve_references(self, content: str) -> str:
        store = self.content_store
        if store is None:
            return content

        token = content.strip()
        if not store.is_reference(token):
            return content

        summary = store.get_summary(token)
        if summary is not None:
            return format_summary_block(summary, token)

        retrieved = store.retrieve(token)
        return retrieved if retrieved is not None else content
