"""Zonewatch zoned sensor network validation package."""

# Define public API
__all__ = [
    "AppSettings",
    "ZoneSettings",
    "ZoneTable",
    "load_settings",
    "TelemetryEvent",
    "TemperatureSample",
    "CorrelationResult",
    "AnomalyRecord",
    "SectionAllocator",
    "LivenessSweeper",
    "HistoryStore",
    "CorrelationEngine",
    "EffectDispatcher",
    "MessageChannel",
    "Reader",
    "ZonewatchService",
]

# Import settings
from .settings import AppSettings, ZoneSettings, ZoneTable, load_settings

# Import models
from .models import AnomalyRecord, CorrelationResult, TelemetryEvent, TemperatureSample

# Import engines
from .allocator import LivenessSweeper, SectionAllocator
from .history import HistoryStore
from .correlation import CorrelationEngine
from .effects import EffectDispatcher
from .channel import MessageChannel, Reader
from .service import ZonewatchService
