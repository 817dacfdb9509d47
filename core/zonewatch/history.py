"""
Section History Tracking

Bounded, insertion-ordered in-memory history of accepted samples per section.
History is not persisted - a restart begins a new warm-up phase.
"""

import threading
from collections import deque
from dataclasses import asdict

import numpy as np

from .models import TemperatureSample
from .settings import ZoneTable


class SectionHistory:
    """Recent accepted samples for one section.

    Appends are serialized by a per-section lock. Every append publishes an
    immutable tuple snapshot, so readers never take the lock and reads of
    unrelated sections never wait on each other.
    """

    def __init__(self, section_id: int, capacity: int = 50):
        """Initialize section history.

        Args:
            section_id: Section number
            capacity: Maximum samples kept; oldest is evicted first
        """
        self.section_id = section_id
        self.capacity = capacity
        self.lock = threading.Lock()

        self._samples: deque[TemperatureSample] = deque(maxlen=capacity)
        self._snapshot: tuple[TemperatureSample, ...] = ()

    def append(self, sample: TemperatureSample):
        """Append a sample. Callers that decide-then-append hold ``lock`` around both."""
        self._samples.append(sample)
        self._snapshot = tuple(self._samples)

    def samples(self) -> tuple[TemperatureSample, ...]:
        return self._snapshot

    def mean(self) -> float | None:
        """Mean temperature, or None while the section has no history."""
        snapshot = self._snapshot
        if not snapshot:
            return None
        return float(np.mean([s.temperature for s in snapshot]))

    def clear(self):
        with self.lock:
            self._samples.clear()
            self._snapshot = ()

    def __len__(self) -> int:
        return len(self._snapshot)


class HistoryStore:
    """Pre-allocated section histories for every section in the zone table."""

    def __init__(self, zones: ZoneTable, capacity: int = 50):
        self.zones = zones
        self.capacity = capacity
        self._sections: dict[int, SectionHistory] = {
            section: SectionHistory(section, capacity)
            for section in range(1, zones.max_section + 1)
        }

    def section(self, section_id: int) -> SectionHistory:
        return self._sections[section_id]

    def total_samples(self) -> int:
        """Number of samples currently held across all sections."""
        return sum(len(h) for h in self._sections.values())

    def section_mean(self, section_id: int) -> float | None:
        return self._sections[section_id].mean()

    def zone_baseline(self, zone_id: int) -> float | None:
        """Mean of the per-section means of a zone, skipping empty sections.

        Returns:
            Baseline temperature, or None if no section of the zone has history yet
        """
        means = [
            mean
            for mean in (self._sections[s].mean() for s in self.zones.sections_of(zone_id))
            if mean is not None
        ]
        if not means:
            return None
        return float(np.mean(means))

    def snapshot(self, section_id: int | None = None) -> dict[int, list[dict]]:
        """History as plain dicts, for one section or all non-empty sections."""
        if section_id is not None:
            return {section_id: [asdict(s) for s in self._sections[section_id].samples()]}
        return {
            section: [asdict(s) for s in history.samples()]
            for section, history in self._sections.items()
            if len(history)
        }

    def clear(self):
        for history in self._sections.values():
            history.clear()
