"""
Device Simulator

Stands in for field devices during development: registers with the allocator,
reports readings within its zone's temperature band and, after a warm-up,
may switch into a fault mode for the rest of its life.
"""

import asyncio
import logging

import numpy as np

from .allocator import SectionAllocator
from .channel import MessageChannel
from .models import Assignment, FaultType, TemperatureSample
from .settings import SimulationSettings

logger = logging.getLogger(__name__)


class DeviceSimulator:
    """Generates readings for one allocated device."""

    UPPER_SHIFT = 1.4  # TOO_HIGH reports 40% above the band
    LOWER_SHIFT = 0.6  # TOO_LOW reports 40% below the band
    HUMIDITY_OFFSET = 5

    FAULT_TYPES = (
        FaultType.DEAD,
        FaultType.TOO_LOW,
        FaultType.TOO_HIGH,
        FaultType.FLUX,
        FaultType.EVERY_OTHER,
    )

    def __init__(
        self,
        assignment: Assignment,
        settings: SimulationSettings | None = None,
        rng: np.random.Generator | None = None,
    ):
        self.assignment = assignment
        self.settings = settings or SimulationSettings()
        self.rng = rng or np.random.default_rng(self.settings.seed)

        self.fault_type = FaultType.REAL
        self.reports = 0
        self._every_other_toggle = False

    @property
    def faulty(self) -> bool:
        return self.fault_type is not FaultType.REAL

    def _in_band(self, shift: float = 1.0) -> TemperatureSample:
        low, high = self.assignment.temp_range.min, self.assignment.temp_range.max
        offset = self.HUMIDITY_OFFSET
        temperature = round(float(self.rng.uniform(low * shift, high * shift)), 2)
        humidity = round(float(self.rng.uniform((low + offset) * shift, (high + offset) * shift)), 2)
        return TemperatureSample(temperature=temperature, humidity=humidity)

    def fault_reading(self) -> TemperatureSample:
        """Reading for the current fault mode."""
        if self.fault_type is FaultType.TOO_LOW:
            return self._in_band(self.LOWER_SHIFT)
        if self.fault_type is FaultType.TOO_HIGH:
            return self._in_band(self.UPPER_SHIFT)
        if self.fault_type is FaultType.FLUX:
            shift = self.LOWER_SHIFT if self.rng.random() < 0.5 else self.UPPER_SHIFT
            return self._in_band(shift)
        if self.fault_type is FaultType.EVERY_OTHER:
            # Alternate dead and plausible readings
            self._every_other_toggle = not self._every_other_toggle
            if self._every_other_toggle:
                return TemperatureSample(temperature=0.0, humidity=0.0)
            return self._in_band()
        if self.fault_type is FaultType.DEAD:
            return TemperatureSample(temperature=0.0, humidity=0.0)
        return self._in_band()

    def _maybe_enter_fault(self):
        if self.faulty or self.reports <= self.settings.warmup_reports:
            return
        if self.rng.uniform(0, 100) < self.settings.fault_percentage:
            self.fault_type = FaultType(self.rng.choice([f.value for f in self.FAULT_TYPES]))
            logger.info(
                f"Device {self.assignment.device_id} now in fault state: "
                f"{self.fault_type.value} - count: {self.reports}"
            )

    def next_payload(self) -> dict:
        """Next report in the device wire format."""
        self._maybe_enter_fault()
        sample = self.fault_reading() if self.faulty else self._in_band()
        self.reports += 1

        return {
            "id": self.assignment.device_id,
            "zone": self.assignment.zone_id,
            "section": self.assignment.section_id,
            "invalid": self.faulty,
            "type": self.fault_type.value,
            "temperature": {"temperature": sample.temperature, "humidity": sample.humidity},
        }


class SimulationService:
    """Background service running a fleet of simulated devices."""

    def __init__(
        self,
        allocator: SectionAllocator,
        channel: MessageChannel,
        settings: SimulationSettings,
        topic: str = "raw-sensor-data",
    ):
        self.allocator = allocator
        self.channel = channel
        self.settings = settings
        self.topic = topic
        self.devices: list[DeviceSimulator] = []

        self._rng = np.random.default_rng(settings.seed)
        self._task: asyncio.Task | None = None
        self._running = False

    async def start(self):
        if self._running:
            logger.warning("Simulation service already running")
            return

        self.devices = [
            DeviceSimulator(self.allocator.register(), self.settings, self._rng)
            for _ in range(self.settings.devices)
        ]

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Simulating {len(self.devices)} device(s), reporting every "
            f"{self.settings.report_interval_seconds}s"
        )

    async def stop(self):
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Simulation service stopped")

    async def report_once(self):
        """Send one report from every device."""
        for device in self.devices:
            payload = device.next_payload()
            try:
                self.allocator.touch(payload["id"], payload["zone"], payload["section"])
                await self.channel.publish(self.topic, payload)
            except Exception as e:
                logger.error(f"{payload['id']}: error occurred reporting data: {e}")

    async def _run_loop(self):
        while self._running:
            await self.report_once()
            await asyncio.sleep(self.settings.report_interval_seconds)
