"""In-memory conversation storage."""

import asyncio
from typing import Any

from agent_engine.models.messages import ConversationMessage, new_id
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)


class InMemoryConversationStore:
    """Thread-keyed message store for a single process.

    All mutation happens under one lock so that concurrent requests on the
    same thread observe a consistent message order.
    """

    def __init__(self):
        self.threads: dict[str, list[ConversationMessage]] = {}
        self._lock = asyncio.Lock()

    async def create_thread(self, thread_id: str | None = None) -> str:
        """Create a thread, or return the existing one with this id.

        Args:
            thread_id: Optional thread identifier

        Returns:
            The thread identifier
        """
        async with self._lock:
            thread_id = thread_id or new_id()
            if thread_id not in self.threads:
                self.threads[thread_id] = []
                logger.debug(f"Created thread {thread_id}")
            return thread_id

    async def has_thread(self, thread_id: str) -> bool:
        async with self._lock:
            return thread_id in self.threads

    async def add_message(self, thread_id: str, message: ConversationMessage) -> ConversationMessage:
        """Append a message to a thread, creating the thread if needed."""
        async with self._lock:
            self.threads.setdefault(thread_id, []).append(message)
            return message

    async def update_message(
        self, thread_id: str, message_id: str, changes: dict[str, Any]
    ) -> ConversationMessage | None:
        """Apply a partial update to a stored message.

        Args:
            thread_id: Thread identifier
            message_id: Message identifier
            changes: Field values to replace

        Returns:
            The updated message, or None if it does not exist
        """
        async with self._lock:
            for position, message in enumerate(self.threads.get(thread_id, [])):
                if message.id == message_id:
                    updated = message.model_copy(update=changes)
                    self.threads[thread_id][position] = updated
                    return updated
            return None

    async def save_message(self, thread_id: str, message: ConversationMessage) -> None:
        """Replace the stored copy of a message with the given one."""
        async with self._lock:
            messages = self.threads.get(thread_id, [])
            for position, stored in enumerate(messages):
                if stored.id == message.id:
                    messages[position] = message.model_copy(deep=True)
                    return
            logger.warning(f"Message {message.id} not found in thread {thread_id}; not saved")

    async def get_message(self, thread_id: str, message_id: str) -> ConversationMessage | None:
        async with self._lock:
            for message in self.threads.get(thread_id, []):
                if message.id == message_id:
                    return message.model_copy(deep=True)
            return None

    async def delete_message(self, thread_id: str, message_id: str) -> bool:
        async with self._lock:
            messages = self.threads.get(thread_id, [])
            remaining = [m for m in messages if m.id != message_id]
            if len(remaining) == len(messages):
                return False
            self.threads[thread_id] = remaining
            return True

    async def get_thread_messages(self, thread_id: str) -> list[ConversationMessage]:
        """Snapshot of a thread's messages in insertion order."""
        async with self._lock:
            return [m.model_copy(deep=True) for m in self.threads.get(thread_id, [])]

    async def clear_thread(self, thread_id: str) -> None:
        async with self._lock:
            if thread_id in self.threads:
                self.threads[thread_id] = []

    async def delete_thread(self, thread_id: str) -> bool:
        async with self._lock:
            return self.threads.pop(thread_id, None) is not None
