"""
Section Allocator

Assigns devices to sections round-robin, tracks when each device last reported,
and evicts devices that stopped reporting.
"""

import asyncio
import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from .models import Allocation, Assignment
from .settings import AllocatorSettings, ZoneTable

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SectionAllocator:
    """
    Maps devices to a zone/section and tracks liveness.

    Each zone's allocation list is guarded by its own lock, so request-driven
    touches and the timer-driven sweep never interleave on the same list.
    """

    def __init__(
        self,
        zones: ZoneTable,
        settings: AllocatorSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.zones = zones
        self.settings = settings or AllocatorSettings()
        self.ttl = timedelta(seconds=self.settings.liveness_ttl_seconds)
        self._clock = clock or _utcnow

        self._allocations: dict[int, list[Allocation]] = {zone.id: [] for zone in zones}
        self._amounts: dict[int, int] = {zone.id: 0 for zone in zones}
        self._zone_locks: dict[int, threading.Lock] = {zone.id: threading.Lock() for zone in zones}

        self._count_lock = threading.Lock()
        self.allocated_count = 0

    def register(self) -> Assignment:
        """Allocate the next section round-robin to a new device.

        No uniqueness check is made; every call creates a new device id.

        Returns:
            The device's assignment (id, zone, section, temperature band)
        """
        with self._count_lock:
            section = (self.allocated_count % self.zones.max_section) + 1
            self.allocated_count += 1

        zone = self.zones.zone_for_section(section)
        allocation = Allocation(
            device_id=str(uuid.uuid4()),
            zone_id=zone.id,
            section_id=section,
            last_seen=self._clock(),
        )

        with self._zone_locks[zone.id]:
            self._allocations[zone.id].append(allocation)
            self._amounts[zone.id] += 1

        logger.info(
            f"Allocated device {allocation.device_id}: zone {zone.id}, section {section}, "
            f"range {zone.temp_range.min}-{zone.temp_range.max}"
        )
        return Assignment(
            device_id=allocation.device_id,
            zone_id=zone.id,
            section_id=section,
            temp_range=zone.temp_range,
        )

    def touch(self, device_id: str, zone_id: int, section_id: int):
        """Refresh a reporting device's liveness.

        The zone and section are taken as reported by the device; they are only
        checked against the zone table, not against the device's allocation.
        A device with no allocation in that zone gets one.

        Raises:
            UnknownZoneError: If the zone does not exist or does not own the section
        """
        self.zones.validate_reference(zone_id, section_id)
        now = self._clock()

        with self._zone_locks[zone_id]:
            allocations = self._allocations[zone_id]
            existing = next((a for a in allocations if a.device_id == device_id), None)
            if existing is not None:
                existing.last_seen = now
                return

            allocations.append(
                Allocation(device_id=device_id, zone_id=zone_id, section_id=section_id, last_seen=now)
            )
            self._amounts[zone_id] += 1

        logger.debug(f"Observed unregistered device {device_id} in zone {zone_id}, section {section_id}")

    def sweep(self) -> int:
        """Evict allocations not refreshed within the liveness TTL.

        Returns:
            Number of evicted allocations
        """
        now = self._clock()
        evicted = 0
        live_total = 0

        for zone_id, lock in self._zone_locks.items():
            with lock:
                allocations = self._allocations[zone_id]
                live = [a for a in allocations if now - a.last_seen < self.ttl]
                evicted += len(allocations) - len(live)
                self._allocations[zone_id] = live
                self._amounts[zone_id] = len(live)
                live_total += len(live)

        with self._count_lock:
            self.allocated_count = live_total

        if evicted:
            logger.info(f"Liveness sweep evicted {evicted} device(s), {live_total} live")
        return evicted

    def allocations(self, zone_id: int) -> list[Allocation]:
        self.zones.zone(zone_id)
        with self._zone_locks[zone_id]:
            return list(self._allocations[zone_id])

    def amount(self, zone_id: int) -> int:
        self.zones.zone(zone_id)
        with self._zone_locks[zone_id]:
            return self._amounts[zone_id]


class LivenessSweeper:
    """Background service that runs the allocator sweep on a fixed interval."""

    def __init__(self, allocator: SectionAllocator, interval_seconds: float | None = None):
        self.allocator = allocator
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else allocator.settings.sweep_interval_seconds
        )

        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        """Start the sweep loop."""
        if self._running:
            logger.warning("Liveness sweeper already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Liveness sweeper started (interval {self.interval_seconds}s, ttl {self.allocator.ttl})")

    async def stop(self):
        """Stop the sweep loop."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info("Liveness sweeper stopped")

    async def _run_loop(self):
        while self._running:
            await asyncio.sleep(self.interval_seconds)
            try:
                self.allocator.sweep()
            except Exception as e:
                logger.error(f"Error in liveness sweep: {e}", exc_info=True)
