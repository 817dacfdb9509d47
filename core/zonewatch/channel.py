"""
In-Process Message Channel

At-least-once topic queues with explicit acknowledgment. A message must be
finished exactly once; messages a handler leaves unanswered (or that raise)
are redelivered until the attempt limit.
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable

from .exceptions import ChannelError

logger = logging.getLogger(__name__)


class Message:
    """A delivered message awaiting acknowledgment."""

    def __init__(self, topic: str, body: bytes, message_id: str | None = None, attempts: int = 1):
        self.id = message_id or uuid.uuid4().hex
        self.topic = topic
        self.body = body
        self.attempts = attempts
        self.finished = False
        self.requeued = False

    @property
    def responded(self) -> bool:
        return self.finished or self.requeued

    def finish(self):
        """Acknowledge the message; it will not be delivered again."""
        self._respond()
        self.finished = True

    def requeue(self):
        """Hand the message back for redelivery."""
        self._respond()
        self.requeued = True

    def _respond(self):
        if self.responded:
            raise ChannelError(f"Message {self.id} already responded to")

    def __repr__(self) -> str:
        return f"Message(id={self.id!r}, topic={self.topic!r}, attempts={self.attempts})"


class MessageChannel:
    """Named topics backed by asyncio queues.

    A topic given a capacity with ``bound()`` drops its oldest message when a
    publish would exceed it. Other topics are unbounded.
    """

    def __init__(self):
        self._topics: dict[str, asyncio.Queue] = {}
        self._capacities: dict[str, int] = {}
        self._closed = False
        self.overflowed = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def topic(self, name: str) -> asyncio.Queue:
        if name not in self._topics:
            self._topics[name] = asyncio.Queue()
        return self._topics[name]

    def depth(self, name: str) -> int:
        return self.topic(name).qsize()

    def bound(self, name: str, capacity: int):
        if capacity < 1:
            raise ValueError(f"Topic capacity must be at least 1, got {capacity}")
        self._capacities[name] = capacity

    async def publish(self, topic: str, body: bytes | str | dict) -> Message:
        """Publish a message to a topic.

        Raises:
            ChannelError: If the channel has been closed
        """
        if self._closed:
            raise ChannelError(f"Channel closed, cannot publish to {topic}")

        if isinstance(body, dict):
            body = json.dumps(body)
        if isinstance(body, str):
            body = body.encode("utf-8")

        queue = self.topic(topic)
        capacity = self._capacities.get(topic)
        if capacity is not None:
            while queue.qsize() >= capacity:
                dropped = queue.get_nowait()
                queue.task_done()
                self.overflowed += 1
                logger.warning(f"Topic {topic} full ({capacity}), dropping {dropped}")

        message = Message(topic, body)
        await queue.put(message)
        return message

    def redeliver(self, message: Message):
        self.topic(message.topic).put_nowait(
            Message(message.topic, message.body, message_id=message.id, attempts=message.attempts + 1)
        )

    def close(self):
        self._closed = True

    def reopen(self):
        self._closed = False


class Reader:
    """Consumes a topic, running up to ``max_in_flight`` handlers concurrently."""

    def __init__(
        self,
        channel: MessageChannel,
        topic: str,
        handler: Callable[[Message], Awaitable[None]],
        max_in_flight: int = 5,
        max_attempts: int = 5,
    ):
        self.channel = channel
        self.topic = topic
        self.handler = handler
        self.max_in_flight = max_in_flight
        self.max_attempts = max_attempts

        self.delivered = 0
        self.redelivered = 0
        self.dropped = 0

        self._semaphore = asyncio.Semaphore(max_in_flight)
        self._in_flight: set[asyncio.Task] = set()
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self):
        if self._running:
            logger.warning(f"Reader for {self.topic} already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Reader started on {self.topic} (max in flight: {self.max_in_flight})")

    async def stop(self):
        """Stop reading. In-flight handlers are cancelled; their messages are not acknowledged."""
        if not self._running:
            return

        self._running = False
        tasks = [t for t in (self._task, *self._in_flight) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        logger.info(f"Reader on {self.topic} stopped")

    async def join(self):
        """Wait until every published message on the topic has been handled."""
        await self.channel.topic(self.topic).join()

    async def _run_loop(self):
        queue = self.channel.topic(self.topic)
        while self._running:
            message = await queue.get()
            await self._semaphore.acquire()
            task = asyncio.create_task(self._dispatch(queue, message))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _dispatch(self, queue: asyncio.Queue, message: Message):
        self.delivered += 1
        try:
            await self.handler(message)
        except Exception as e:
            logger.error(f"Handler failed for {message}: {e}", exc_info=True)
        finally:
            self._semaphore.release()

        try:
            if not message.finished:
                if message.attempts >= self.max_attempts:
                    self.dropped += 1
                    logger.error(f"Dropping {message} after {message.attempts} attempts")
                else:
                    self.redelivered += 1
                    self.channel.redeliver(message)
        finally:
            queue.task_done()
