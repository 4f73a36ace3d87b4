"""Message, attachment and tool-call data models."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from cuid2 import cuid_wrapper
from pydantic import BaseModel, ConfigDict, Field

from agent_engine.services.errors import InvalidStatusTransition

cuid = cuid_wrapper()


def new_id() -> str:
    """Generate a collision-resistant identifier for threads, messages and calls."""
    return cuid()


def utc_now() -> datetime:
    return datetime.now(UTC)


class MessageStatus(StrEnum):
    """Lifecycle of a conversation message.

    ``pending`` is the only non-terminal state; every other state is final.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ImageAttachment(BaseModel):
    """An image uploaded with a user message, carried as base64 or a data URL."""

    id: str = Field(default_factory=new_id)
    filename: str = ""
    mime_type: str = "image/jpeg"
    size: int = 0
    thumbnail: str = ""
    full_image: str = ""
    uploaded_at: datetime = Field(default_factory=utc_now)

    def image_data(self) -> str | None:
        """Best available image payload, preferring the full-size image."""
        return self.full_image or self.thumbnail or None


class NoteAttachment(BaseModel):
    """A note (e.g. from a mind-map node) attached to a user message."""

    id: str = Field(default_factory=new_id)
    title: str
    content: str
    node_label: str | None = None
    attached_at: datetime = Field(default_factory=utc_now)


class ToolCall(BaseModel):
    """A resolved tool invocation requested by the model in one turn."""

    id: str = Field(default_factory=new_id)
    name: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class ToolOutcome(BaseModel):
    """Normalized outcome of a single tool execution."""

    success: bool
    output: Any = None
    error: str | None = None


class ToolResult(BaseModel):
    """Result of one tool call, matched to the call by id and position."""

    id: str
    name: str
    result: ToolOutcome

    def as_text(self) -> str:
        """Render the result for the follow-up prompt."""
        if not self.result.success:
            return f"Error: {self.result.error or 'unknown error'}"

        output = self.result.output
        if isinstance(output, str):
            return output
        if isinstance(output, dict):
            if output.get("content"):
                return str(output["content"])
            if output.get("text"):
                return str(output["text"])
            return ", ".join(f"{key}: {value}" for key, value in output.items())
        return str(output)


class TokenMetrics(BaseModel):
    """Approximate generation statistics for one assistant message."""

    total_tokens: int = 0
    duration_ms: int = 0
    tokens_per_second: float = 0.0

    @classmethod
    def measure(cls, total_tokens: int, duration_ms: int) -> "TokenMetrics":
        rate = total_tokens / (duration_ms / 1000) if duration_ms > 0 else 0.0
        return cls(total_tokens=total_tokens, duration_ms=duration_ms, tokens_per_second=round(rate, 2))


class ConversationMessage(BaseModel):
    """A message in a conversation thread.

    Assistant messages are created ``pending`` and mutated in place while the
    reply streams; they are finalized exactly once.
    """

    id: str = Field(default_factory=new_id)
    role: Literal["user", "assistant", "system"]
    content: str = ""
    timestamp: datetime = Field(default_factory=utc_now)
    status: MessageStatus = MessageStatus.COMPLETED
    images: list[ImageAttachment] = Field(default_factory=list)
    notes: list[NoteAttachment] = Field(default_factory=list)
    tool_calls: list[ToolCall] | None = None
    tool_results: list[ToolResult] | None = None
    model: str | None = None
    citations: list[str] | None = None
    token_metrics: TokenMetrics | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == MessageStatus.PENDING

    def finalize(self, status: MessageStatus) -> None:
        """Move a pending message into a terminal status.

        Raises:
            InvalidStatusTransition: If the message is already final or the
                target status is not terminal
        """
        if self.status != MessageStatus.PENDING or status == MessageStatus.PENDING:
            raise InvalidStatusTransition(f"Cannot move message {self.id} from {self.status} to {status}")
        self.status = status

    def append_tool_results(self, results: list["ToolResult"]) -> None:
        """Record tool results; earlier results are never replaced."""
        if self.tool_results is None:
            self.tool_results = []
        self.tool_results.extend(results)


class ToolCallChunk(BaseModel):
    """Fragment of a streamed tool call, identified by its index."""

    index: int = 0
    id: str | None = None
    name: str | None = None
    args: str | None = None


class RawToolCall(BaseModel):
    """A pre-assembled tool call as delivered by the backend."""

    id: str | None = None
    name: str
    args: dict[str, Any] | str = Field(default_factory=dict)


class StreamChunk(BaseModel):
    """One chunk read from a model stream."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    content: str | list[Any] | dict[str, Any] | None = None
    tool_calls: list[RawToolCall] = Field(default_factory=list)
    tool_call_chunks: list[ToolCallChunk] = Field(default_factory=list)
    citations: list[str] | None = None

    @classmethod
    def from_message_chunk(cls, chunk: Any) -> "StreamChunk":
        """Build a StreamChunk from a LangChain message chunk, a dict or a plain string."""
        if isinstance(chunk, StreamChunk):
            return chunk
        if isinstance(chunk, str):
            return cls(content=chunk)
        if isinstance(chunk, dict):
            return cls.model_validate(chunk)

        raw_chunks = getattr(chunk, "tool_call_chunks", None) or []
        tool_call_chunks = [
            ToolCallChunk(
                index=tcc.get("index") if tcc.get("index") is not None else 0,
                id=tcc.get("id"),
                name=tcc.get("name"),
                args=tcc.get("args"),
            )
            for tcc in raw_chunks
        ]

        # LangChain derives tool_calls from tool_call_chunks on every chunk;
        # taking both would count the same call twice.
        tool_calls: list[RawToolCall] = []
        if not tool_call_chunks:
            for tc in getattr(chunk, "tool_calls", None) or []:
                if tc.get("name"):
                    tool_calls.append(RawToolCall(id=tc.get("id"), name=tc["name"], args=tc.get("args") or {}))

        additional = getattr(chunk, "additional_kwargs", None) or {}
        citations = additional.get("citations")

        return cls(
            content=getattr(chunk, "content", None),
            tool_calls=tool_calls,
            tool_call_chunks=tool_call_chunks,
            citations=list(citations) if citations else None,
        )

    @property
    def text(self) -> str:
        """Plain-text view of the chunk content."""
        return content_to_text(self.content)


def content_to_text(content: Any) -> str:
    """Normalize structured message content to text.

    Strings pass through; objects contribute their ``text`` or ``content``
    field; arrays concatenate the text of each part.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                if item.get("type", "text") == "text":
                    parts.append(str(item.get("text") or ""))
        return "".join(parts)
    if isinstance(content, dict):
        value = content.get("text") or content.get("content") or ""
        return value if isinstance(value, str) else content_to_text(value)
    return str(content)
