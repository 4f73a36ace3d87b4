"""Reassembly of tool calls streamed as fragments."""

import json
from collections.abc import Iterable
from dataclasses import dataclass, field

from agent_engine.models.messages import RawToolCall, StreamChunk, ToolCall, ToolCallChunk, new_id
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _PendingCall:
    id: str | None = None
    name: str | None = None
    args: list[str] = field(default_factory=list)


class ToolCallAccumulator:
    """Collects tool-call fragments for one turn.

    Fragments are keyed by their ``index``: the first fragment for an index
    supplies id and name, every fragment appends to that index's argument
    buffer. Pre-assembled calls are kept in arrival order and come first.
    State is per turn; create a new accumulator for each turn.
    """

    def __init__(self):
        self._buffers: dict[int, _PendingCall] = {}
        self._assembled: list[RawToolCall] = []

    def ingest(self, chunks: Iterable[ToolCallChunk] | None) -> None:
        """Feed the ``tool_call_chunks`` of one stream chunk."""
        for fragment in chunks or ():
            pending = self._buffers.get(fragment.index)
            if pending is None:
                pending = _PendingCall(id=fragment.id, name=fragment.name)
                self._buffers[fragment.index] = pending
            else:
                # Some providers only send the name on a later fragment
                pending.id = pending.id or fragment.id
                pending.name = pending.name or fragment.name

            if fragment.args:
                pending.args.append(fragment.args)

    def ingest_tool_calls(self, tool_calls: Iterable[RawToolCall] | None) -> None:
        """Feed pre-assembled (non-chunked) tool calls."""
        self._assembled.extend(tool_calls or ())

    def ingest_chunk(self, chunk: StreamChunk) -> None:
        """Feed both kinds of tool-call data carried by a stream chunk."""
        self.ingest_tool_calls(chunk.tool_calls)
        self.ingest(chunk.tool_call_chunks)

    def finalize(self) -> list[ToolCall]:
        """Resolve everything ingested into tool calls.

        Buffers are parsed in ascending index order. A buffer whose JSON does
        not parse, or that never received a name, is dropped with a warning.
        """
        resolved: list[ToolCall] = []

        for raw in self._assembled:
            parameters = self._parse_args(raw.name, raw.args)
            if parameters is not None:
                resolved.append(ToolCall(id=raw.id or new_id(), name=raw.name, parameters=parameters))

        for index in sorted(self._buffers):
            pending = self._buffers[index]
            if not pending.name:
                logger.warning(f"Dropping tool call fragment at index {index}: no tool name received")
                continue
            parameters = self._parse_args(pending.name, "".join(pending.args))
            if parameters is not None:
                resolved.append(ToolCall(id=pending.id or new_id(), name=pending.name, parameters=parameters))

        return resolved

    @staticmethod
    def _parse_args(name: str, args: dict | str | None) -> dict | None:
        if isinstance(args, dict):
            return args
        if not args or not args.strip():
            # Tools without parameters stream no argument text at all
            return {}
        try:
            parsed = json.loads(args)
        except json.JSONDecodeError as e:
            logger.warning(f"Dropping tool call {name}: arguments are not valid JSON ({e})")
            return None
        if not isinstance(parsed, dict):
            logger.warning(f"Dropping tool call {name}: arguments are not a JSON object")
            return None
        return parsed
