"""Fan-out of conversation events to thread subscribers."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Literal

from pydantic import BaseModel

from agent_engine.models.messages import ConversationMessage
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)


class ConversationEvent(BaseModel):
    """A message creation or update pushed to thread subscribers."""

    type: Literal["message_create", "thread_update"]
    thread_id: str
    message: ConversationMessage


class EventBroadcaster:
    """Pushes conversation events to per-thread subscriber queues.

    Slow subscribers lose events instead of blocking the agent loop.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self._subscribers: dict[str, set[asyncio.Queue[ConversationEvent]]] = {}

    @asynccontextmanager
    async def subscribe(self, thread_id: str) -> AsyncIterator[asyncio.Queue[ConversationEvent]]:
        queue: asyncio.Queue[ConversationEvent] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(thread_id, set()).add(queue)
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(thread_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[thread_id]

    def broadcast_message_create(self, thread_id: str, message: ConversationMessage) -> None:
        self._publish(ConversationEvent(type="message_create", thread_id=thread_id, message=message))

    def broadcast_thread_update(self, thread_id: str, message: ConversationMessage) -> None:
        self._publish(ConversationEvent(type="thread_update", thread_id=thread_id, message=message))

    def _publish(self, event: ConversationEvent) -> None:
        for queue in self._subscribers.get(event.thread_id, ()):
            try:
                queue.put_nowait(event.model_copy(deep=True))
            except asyncio.QueueFull:
                logger.warning(f"Dropping {event.type} event for a slow subscriber on thread {event.thread_id}")
