"""Bounded channel between a model stream and the turn loop."""

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from agent_engine.services.cancellation import CancellationController
from agent_engine.services.errors import ModelInvocationError
from agent_engine.utils.logging import get_logger

logger = get_logger(__name__)

_END = object()


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


class ChunkChannel:
    """Pumps a model stream into a bounded queue.

    The producer task reads the backend stream; the consumer iterates with
    ``receive``, which ends early when the controller trips instead of
    raising. Producer failures are re-raised in the consumer as
    ``ModelInvocationError``.
    """

    def __init__(self, source: AsyncIterator[Any], maxsize: int = 64):
        self._source = source
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._producer: asyncio.Task | None = None

    async def __aenter__(self) -> "ChunkChannel":
        self._producer = asyncio.create_task(self._produce())
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _produce(self) -> None:
        try:
            async for item in self._source:
                await self._queue.put(item)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._queue.put(_Failure(e))
            return
        await self._queue.put(_END)

    async def receive(self, controller: CancellationController) -> AsyncIterator[Any]:
        """Yield chunks in arrival order until the stream ends or is cancelled."""
        while True:
            if controller.cancelled:
                logger.debug("Stream closed early by cancellation")
                return

            next_item = asyncio.ensure_future(self._queue.get())
            tripped = asyncio.ensure_future(controller.wait())
            done, _ = await asyncio.wait({next_item, tripped}, return_when=asyncio.FIRST_COMPLETED)
            tripped.cancel()

            if next_item not in done:
                next_item.cancel()
                logger.debug("Stream closed early by cancellation")
                return

            item = next_item.result()
            if item is _END:
                return
            if isinstance(item, _Failure):
                raise ModelInvocationError(str(item.error) or type(item.error).__name__) from item.error
            yield item

    async def close(self) -> None:
        """Stop the producer and release the backend stream."""
        if self._producer is not None and not self._producer.done():
            self._producer.cancel()
            try:
                await self._producer
            except asyncio.CancelledError:
                pass

        aclose = getattr(self._source, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as e:
                logger.debug(f"Error while closing model stream: {e}")
