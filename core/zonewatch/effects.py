"""
Side Effect Dispatch

Accept/reject decisions are made synchronously by the correlation engine; the
resulting side effects (forwarding accepted readings downstream, persisting
anomaly records) are queued here and applied by a single worker, in the
order they were submitted.
"""

import asyncio
import logging
import random
from collections import deque
from dataclasses import dataclass

from .channel import MessageChannel
from .exceptions import ChannelError
from .models import AnomalyRecord, TelemetryEvent
from .settings import ChannelSettings
from .sinks import AnomalySink

logger = logging.getLogger(__name__)


def exponential_backoff(attempt: int, base_seconds: float, cap_seconds: float) -> float:
    return min(cap_seconds, base_seconds * (2 ** max(0, attempt - 1)))


@dataclass(frozen=True)
class Effect:
    """Outcome side effect: forward the event, or persist its anomaly record."""

    event: TelemetryEvent
    record: AnomalyRecord | None = None

    @property
    def is_rejection(self) -> bool:
        return self.record is not None


class EffectDispatcher:
    """Single worker applying effects from a FIFO queue."""

    def __init__(
        self,
        sink: AnomalySink,
        channel: MessageChannel,
        outbound_topic: str = "sensor-data",
        max_retries: int = 5,
        backoff_base_seconds: float = 0.5,
        backoff_cap_seconds: float = 10.0,
        dead_letter_size: int = 1000,
        jitter_fraction: float = 0.1,
    ):
        self.sink = sink
        self.channel = channel
        self.outbound_topic = outbound_topic
        self.max_retries = max(1, max_retries)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.jitter_fraction = jitter_fraction

        # Payloads that could not be forwarded after all retries
        self.dead_letters: deque[dict] = deque(maxlen=dead_letter_size)

        self.persisted = 0
        self.persist_failures = 0
        self.forwarded = 0
        self.dead_lettered = 0

        self._queue: asyncio.Queue[Effect] = asyncio.Queue()
        self._task: asyncio.Task | None = None
        self._running = False

    @classmethod
    def from_settings(
        cls, sink: AnomalySink, channel: MessageChannel, settings: ChannelSettings
    ) -> "EffectDispatcher":
        return cls(
            sink,
            channel,
            outbound_topic=settings.outbound_topic,
            max_retries=settings.max_retries,
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_cap_seconds=settings.backoff_cap_seconds,
            dead_letter_size=settings.dead_letter_size,
        )

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def submit(self, effect: Effect):
        """Queue an effect. Must be called from the event loop thread."""
        self._queue.put_nowait(effect)

    async def start(self):
        if self._running:
            logger.warning("Effect dispatcher already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Effect dispatcher started (forwarding to {self.outbound_topic})")

    async def stop(self):
        """Stop the worker. Queued effects are discarded."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info(f"Effect dispatcher stopped ({self.pending} pending effect(s) discarded)")

    async def join(self):
        """Wait until every submitted effect has been applied."""
        await self._queue.join()

    async def _run_loop(self):
        while self._running:
            effect = await self._queue.get()
            try:
                await self.apply(effect)
            except Exception as e:
                logger.error(f"Error applying effect for {effect.event.device_id}: {e}", exc_info=True)
            finally:
                self._queue.task_done()

    async def apply(self, effect: Effect):
        if effect.is_rejection:
            await self._persist(effect.record)
        else:
            await self._forward(effect.event)

    async def _persist(self, record: AnomalyRecord):
        try:
            await asyncio.to_thread(self.sink.insert, record)
            self.persisted += 1
        except Exception as e:
            self.persist_failures += 1
            logger.error(f"Failed to persist anomaly for {record.device_id}: {e}")

    async def _forward(self, event: TelemetryEvent):
        payload = event.to_payload()

        for attempt in range(1, self.max_retries + 1):
            try:
                await self.channel.publish(self.outbound_topic, payload)
                self.forwarded += 1
                return
            except ChannelError as e:
                if attempt >= self.max_retries:
                    logger.error(f"Forwarding {event.device_id} failed after {attempt} attempt(s): {e}")
                    break
                delay = exponential_backoff(attempt, self.backoff_base_seconds, self.backoff_cap_seconds)
                delay += delay * self.jitter_fraction * (2 * random.random() - 1)
                logger.warning(f"Forwarding {event.device_id} failed ({e}), retrying in {delay:.2f}s")
                await asyncio.sleep(max(0.0, delay))

        self.dead_letters.append(payload)
        self.dead_lettered += 1
