from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Set

from .models import StreamEnvelope

logger = logging.getLogger(__name__)


class Broadcaster:
    """Async fanout of stream envelopes to observer queues."""

    def __init__(self, *, ingress_queue_size: int = 1024, subscriber_queue_size: int = 256) -> None:
        self._subscriber_queue_size = max(8, int(subscriber_queue_size))
        self._ingress_queue: "asyncio.Queue[StreamEnvelope]" = asyncio.Queue(maxsize=max(16, int(ingress_queue_size)))
        self._subscribers: Set["asyncio.Queue[StreamEnvelope]"] = set()
        self._task: Optional[asyncio.Task[Any]] = None
        self._running = False
        self.published = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._fanout_loop(), name="logpipe-fanout")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._subscribers.clear()

    def publish(self, envelope: StreamEnvelope) -> None:
        self.published += 1
        _put_dropping_oldest(self._ingress_queue, envelope)

    def subscribe(self) -> "asyncio.Queue[StreamEnvelope]":
        queue: "asyncio.Queue[StreamEnvelope]" = asyncio.Queue(maxsize=self._subscriber_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[StreamEnvelope]") -> None:
        self._subscribers.discard(queue)

    async def _fanout_loop(self) -> None:
        while self._running:
            envelope = await self._ingress_queue.get()
            for subscriber in list(self._subscribers):
                _put_dropping_oldest(subscriber, envelope)


def _put_dropping_oldest(queue: "asyncio.Queue[StreamEnvelope]", envelope: StreamEnvelope) -> None:
    if queue.full():
        try:
            queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        else:
            logger.debug("queue full, dropped oldest envelope")
    try:
        queue.put_nowait(envelope)
    except asyncio.QueueFull:
        pass
