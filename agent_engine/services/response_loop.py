"""Multi-turn streaming loop that produces one assistant reply."""

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from agent_engine.clients.rate_limit import ModelRateLimiter
from agent_engine.models.llm import ProviderType
from agent_engine.models.messages import (
    ConversationMessage,
    MessageStatus,
    StreamChunk,
    TokenMetrics,
    ToolCall,
    ToolOutcome,
    ToolResult,
    content_to_text,
)
from agent_engine.services.accumulator import ToolCallAccumulator
from agent_engine.services.cancellation import CancellationController
from agent_engine.services.errors import CancellationError, error_classifier
from agent_engine.services.formatter import enforce_alternation
from agent_engine.services.notifier import EventBroadcaster
from agent_engine.services.streaming import ChunkChannel
from agent_engine.services.tool_execution import ToolExecutionCoordinator
from agent_engine.services.tool_parser import ToolCallParser
from agent_engine.utils.logging import get_logger
from agent_engine.utils.tokens import estimate_tokens

logger = get_logger(__name__)

T = TypeVar("T")

UpdateCallback = Callable[[ConversationMessage], Awaitable[None] | None]

TOOL_RESULTS_INSTRUCTION = (
    "Please respond to the user with the relevant information from the tool results. "
    "Include the actual content/data from the tools when it's helpful to the user."
)

MAX_TURNS_NOTICE = (
    "I apologize, but this reply has reached the maximum number of tool-calling turns ({max_turns}). "
    "Please send a new message to continue."
)

MAX_TURNS_TOOL_ERROR = "Not run: maximum number of tool-calling turns reached"
CANCELLED_TOOL_ERROR = "Not run: reply was cancelled"


class StreamingModel(Protocol):
    def astream(self, messages: list[BaseMessage], **kwargs: Any) -> Any: ...


class MessageSink(Protocol):
    async def save_message(self, thread_id: str, message: ConversationMessage) -> None: ...


@dataclass
class TurnOutcome:
    """What one model turn produced."""

    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)


def build_tool_followup(turn_text: str, results: list[ToolResult]) -> list[BaseMessage]:
    """Messages appended to the context after a tool batch."""
    body = "\n\n".join(f"Tool {result.name} result:\n{result.as_text()}" for result in results)
    followup: list[BaseMessage] = []
    if turn_text.strip():
        followup.append(AIMessage(content=turn_text))
    followup.append(HumanMessage(content=f"Tool execution results:\n{body}\n\n{TOOL_RESULTS_INSTRUCTION}"))
    return followup


class StreamingResponseLoop:
    """Drives a pending assistant message to a terminal status.

    Each turn streams the model's output into the message, then either runs
    the requested tools and starts another turn or completes. The number of
    turns is capped by ``max_turns``. ``run`` never raises for model failures
    or cancellation; the returned message carries the outcome in ``status``.
    """

    def __init__(
        self,
        *,
        thread_id: str,
        message: ConversationMessage,
        store: MessageSink,
        broadcaster: EventBroadcaster,
        coordinator: ToolExecutionCoordinator,
        parser: ToolCallParser,
        controller: CancellationController,
        provider: ProviderType,
        rate_limiter: ModelRateLimiter | None = None,
        rate_limit_key: str = "model",
        on_update: UpdateCallback | None = None,
        max_turns: int = 10,
        stream_buffer: int = 64,
    ):
        if max_turns < 1:
            raise ValueError(f"max_turns must be at least 1, got {max_turns}")

        self.thread_id = thread_id
        self.message = message
        self.store = store
        self.broadcaster = broadcaster
        self.coordinator = coordinator
        self.parser = parser
        self.controller = controller
        self.provider = provider
        self.rate_limiter = rate_limiter
        self.rate_limit_key = rate_limit_key
        self.on_update = on_update
        self.max_turns = max_turns
        self.stream_buffer = stream_buffer

        self._generated: list[str] = []
        self._started = time.monotonic()

    async def run(self, model: StreamingModel, messages: list[BaseMessage]) -> ConversationMessage:
        """Run turns until the reply completes, is cancelled or fails."""
        context = list(messages)
        status = MessageStatus.COMPLETED

        try:
            for turn in range(1, self.max_turns + 1):
                logger.info(f"Turn {turn}/{self.max_turns} for message {self.message.id} in thread {self.thread_id}")
                outcome = await self._stream_turn(model, context)

                if not outcome.tool_calls:
                    break

                if turn == self.max_turns:
                    logger.warning(f"Message {self.message.id} reached max turns ({self.max_turns}) with tools pending")
                    notice = MAX_TURNS_NOTICE.format(max_turns=self.max_turns)
                    self.message.content = f"{self.message.content}\n\n{notice}" if self.message.content else notice
                    self._skip_tools(outcome.tool_calls, MAX_TURNS_TOOL_ERROR)
                    break

                results = await self._run_tools(outcome.tool_calls)

                context.extend(build_tool_followup(outcome.text, results))
                if self.provider == ProviderType.PERPLEXITY and isinstance(context[0], SystemMessage):
                    context = enforce_alternation(context[0], context[1:])

                # The follow-up turn's text replaces the pre-tool text
                self.message.content = ""

        except CancellationError as e:
            logger.info(f"Reply {self.message.id} cancelled: {e}")
            status = MessageStatus.CANCELLED
        except asyncio.CancelledError:
            logger.info(f"Task running message {self.message.id} was cancelled")
            await self._finish(MessageStatus.CANCELLED)
            raise
        except Exception as e:
            if self.controller.cancelled:
                logger.info(f"Model stream ended by cancellation for message {self.message.id}: {e}")
                status = MessageStatus.CANCELLED
            else:
                return await self.fail(e)

        return await self._finish(status)

    async def fail(self, error: BaseException) -> ConversationMessage:
        """Finalize the message as failed, surfacing the classified error."""
        logger.error(f"Reply {self.message.id} failed: {error}", exc_info=error)
        classified = error_classifier.classify(error)
        content = self.message.content
        self.message.content = f"{content}\n\n{classified.user_message}" if content else classified.user_message
        logger.info(f"Classified failure of message {self.message.id} as {classified.category}")
        return await self._finish(MessageStatus.FAILED)

    async def _stream_turn(self, model: StreamingModel, context: list[BaseMessage]) -> TurnOutcome:
        if self.rate_limiter is not None:
            prompt_text = "".join(content_to_text(m.content) for m in context)
            await self._unless_cancelled(self.rate_limiter.acquire(self.rate_limit_key, estimate_tokens(prompt_text)))
            self.controller.raise_if_cancelled()

        accumulator = ToolCallAccumulator()
        turn_start = len(self.message.content)
        deltas: list[str] = []

        async with ChunkChannel(model.astream(context), maxsize=self.stream_buffer) as channel:
            async for raw in channel.receive(self.controller):
                chunk = StreamChunk.from_message_chunk(raw)
                accumulator.ingest_chunk(chunk)

                if chunk.citations:
                    self.message.citations = chunk.citations

                delta = chunk.text
                if delta:
                    deltas.append(delta)
                    self._generated.append(delta)
                    self.message.content += delta
                    await self._publish()

        self.controller.raise_if_cancelled()
        text = "".join(deltas)

        tool_calls = accumulator.finalize()
        if not tool_calls:
            parsed = self.parser.parse(text)
            if parsed.tool_calls:
                tool_calls = parsed.tool_calls
                text = parsed.content
                self.message.content = self.message.content[:turn_start] + parsed.content

        if tool_calls:
            logger.info(f"Model requested {len(tool_calls)} tool call(s): {[call.name for call in tool_calls]}")
            self.message.tool_calls = [*(self.message.tool_calls or []), *tool_calls]
            await self._publish()

        return TurnOutcome(text=text, tool_calls=tool_calls)

    async def _run_tools(self, calls: list[ToolCall]) -> list[ToolResult]:
        """Execute a tool batch, abandoning it as soon as the reply is cancelled.

        Raises:
            CancellationError: If the reply was cancelled before the batch finished
        """
        finished, results = await self._unless_cancelled(
            self.coordinator.execute(self.thread_id, calls, self.message.id)
        )

        if not finished or self.controller.cancelled:
            logger.info(f"Discarding tool batch of {len(calls)} call(s) for cancelled message {self.message.id}")
            self._skip_tools(calls, CANCELLED_TOOL_ERROR)
            self.controller.raise_if_cancelled()

        self.message.append_tool_results(results)
        await self._publish()
        return results

    def _skip_tools(self, calls: list[ToolCall], reason: str) -> None:
        """Record a failed result for each call that will not be executed."""
        self.message.append_tool_results(
            [ToolResult(id=call.id, name=call.name, result=ToolOutcome(success=False, error=reason)) for call in calls]
        )

    async def _unless_cancelled(self, awaitable: Awaitable[T]) -> tuple[bool, T | None]:
        """Await ``awaitable`` unless the controller trips first.

        Returns ``(True, result)`` when it completes. When the controller wins
        the awaitable is cancelled and ``(False, None)`` is returned.
        """
        task = asyncio.ensure_future(awaitable)
        tripped = asyncio.ensure_future(self.controller.wait())
        try:
            await asyncio.wait({task, tripped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            tripped.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})

        if task.cancelled():
            return False, None
        return True, task.result()

    async def _finish(self, status: MessageStatus) -> ConversationMessage:
        duration_ms = int((time.monotonic() - self._started) * 1000)
        self.message.token_metrics = TokenMetrics.measure(estimate_tokens("".join(self._generated)), duration_ms)
        self.message.finalize(status)
        logger.info(
            f"Message {self.message.id} finished as {status} after {duration_ms}ms "
            f"({self.message.token_metrics.total_tokens} tokens)"
        )
        await self._publish()
        return self.message.model_copy(deep=True)

    async def _publish(self) -> None:
        """Persist the message and notify listeners of its current state."""
        await self.store.save_message(self.thread_id, self.message)
        snapshot = self.message.model_copy(deep=True)
        self.broadcaster.broadcast_thread_update(self.thread_id, snapshot)

        if self.on_update is None:
            return
        try:
            result = self.on_update(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Update callback failed for message {self.message.id}: {e}", exc_info=True)
