"""
Zonewatch Service

Wires the allocator, history store, correlation engine, channel reader,
effect dispatcher and optional device simulator together, and starts and
stops their background tasks.
"""

import logging

from .allocator import LivenessSweeper, SectionAllocator
from .channel import MessageChannel, Reader
from .correlation import CorrelationEngine
from .effects import EffectDispatcher
from .history import HistoryStore
from .settings import AppSettings
from .simulator import SimulationService
from .sinks import AnomalySink, MemoryAnomalySink, build_sink

logger = logging.getLogger(__name__)


class ZonewatchService:
    """Owns all engine state for one process."""

    def __init__(
        self,
        settings: AppSettings,
        sink: AnomalySink | None = None,
        channel: MessageChannel | None = None,
    ):
        self.settings = settings
        self.zones = settings.zones

        self.allocator = SectionAllocator(self.zones, settings.allocator)
        self.sweeper = LivenessSweeper(self.allocator)

        self.history = HistoryStore(self.zones, settings.correlation.window_capacity)
        self.channel = channel if channel is not None else MessageChannel()
        self.channel.bound(settings.channel.outbound_topic, settings.channel.outbound_capacity)
        self.sink = sink if sink is not None else build_sink(settings.influxdb)
        self.dispatcher = EffectDispatcher.from_settings(self.sink, self.channel, settings.channel)
        self.engine = CorrelationEngine(self.zones, self.history, settings.correlation, self.dispatcher)

        self.reader = Reader(
            self.channel,
            settings.channel.inbound_topic,
            self.engine.handle_message,
            max_in_flight=settings.channel.max_in_flight,
            max_attempts=settings.channel.max_delivery_attempts,
        )

        self.simulation: SimulationService | None = None
        if settings.simulation.devices > 0:
            self.simulation = SimulationService(
                self.allocator, self.channel, settings.simulation, settings.channel.inbound_topic
            )

        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            logger.warning("Zonewatch service already running")
            return

        await self.dispatcher.start()
        await self.reader.start()
        await self.sweeper.start()
        if self.simulation:
            await self.simulation.start()

        self._running = True
        logger.info(
            f"Zonewatch service started: {len(self.zones)} zone(s), "
            f"{self.zones.max_section} section(s), window {self.settings.correlation.window_capacity}"
        )

    async def stop(self):
        """Stop all tasks. In-memory history is dropped with the process."""
        if not self._running:
            return

        if self.simulation:
            await self.simulation.stop()
        await self.sweeper.stop()
        await self.reader.stop()
        await self.dispatcher.stop()

        self._running = False
        logger.info("Zonewatch service stopped")

    async def drain(self):
        """Wait until every inbound message and its side effect has been processed."""
        await self.reader.join()
        await self.dispatcher.join()

    def status(self) -> dict:
        status = {
            "running": self._running,
            "allocated_count": self.allocator.allocated_count,
            "correlation": self.engine.stats(),
            "effects": {
                "pending": self.dispatcher.pending,
                "persisted": self.dispatcher.persisted,
                "persist_failures": self.dispatcher.persist_failures,
                "forwarded": self.dispatcher.forwarded,
                "dead_lettered": self.dispatcher.dead_lettered,
            },
            "reader": {
                "delivered": self.reader.delivered,
                "redelivered": self.reader.redelivered,
                "dropped": self.reader.dropped,
            },
            "channel": {
                "outbound_depth": self.channel.depth(self.settings.channel.outbound_topic),
                "overflowed": self.channel.overflowed,
            },
            "simulated_devices": len(self.simulation.devices) if self.simulation else 0,
        }
        if isinstance(self.sink, MemoryAnomalySink):
            status["anomalies_stored"] = len(self.sink)
        return status
