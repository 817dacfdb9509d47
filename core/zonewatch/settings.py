"""
Zonewatch Configuration Settings

Static zone table plus the tunables of the allocator, the correlation engine,
the message channel and the device simulator.
Settings are loaded from options.json (production) or config.yaml (development),
with a few environment overrides for container deployments.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field, fields, replace
from typing import Any

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigurationError, UnknownZoneError

logger = logging.getLogger(__name__)

OPTIONS_PATH = "/data/options.json"
DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "..", "..", "config.yaml")


def _camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


def _build(cls, data: dict | None):
    """Create a settings dataclass from a (possibly camelCase) dict."""
    converted = {_camel_to_snake(k): v for k, v in (data or {}).items()}
    known = {f.name for f in fields(cls)}
    unknown = set(converted) - known
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**converted)


@dataclass(frozen=True)
class ValueRange:
    """Inclusive numeric range."""

    min: float
    max: float

    def __contains__(self, value) -> bool:
        return self.min <= value <= self.max

    def to_dict(self) -> dict:
        return {"min": self.min, "max": self.max}

    @classmethod
    def from_value(cls, value) -> "ValueRange":
        if isinstance(value, ValueRange):
            return value
        if isinstance(value, dict):
            return cls(min=value["min"], max=value["max"])
        low, high = value
        return cls(min=low, max=high)


@dataclass(frozen=True)
class ZoneSettings:
    """Configuration for a single zone: its expected temperature band and the sections it owns."""

    id: int
    temp_range: ValueRange
    section_range: ValueRange

    @property
    def sections(self) -> range:
        return range(int(self.section_range.min), int(self.section_range.max) + 1)

    @classmethod
    def from_dict(cls, data: dict) -> "ZoneSettings":
        """Create from dictionary."""
        converted = {_camel_to_snake(k): v for k, v in data.items()}

        # Handle legacy layout: {"temperature": {...}, "sections": {...}}
        if "temperature" in converted:
            converted["temp_range"] = converted.pop("temperature")
        if "sections" in converted:
            converted["section_range"] = converted.pop("sections")

        try:
            return cls(
                id=int(converted["id"]),
                temp_range=ValueRange.from_value(converted["temp_range"]),
                section_range=ValueRange.from_value(converted["section_range"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid zone definition {data!r}: {e}") from e

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tempRange": self.temp_range.to_dict(),
            "sectionRange": self.section_range.to_dict(),
        }


class ZoneTable:
    """Ordered, validated set of zones covering sections 1..max_section exactly once."""

    def __init__(self, zones: list[ZoneSettings]):
        if not zones:
            raise ConfigurationError("Zone table is empty")

        self.zones: tuple[ZoneSettings, ...] = tuple(zones)
        self._by_id: dict[int, ZoneSettings] = {}
        self._by_section: dict[int, ZoneSettings] = {}

        for zone in self.zones:
            if zone.id in self._by_id:
                raise ConfigurationError(f"Duplicate zone id: {zone.id}")
            if zone.temp_range.min > zone.temp_range.max:
                raise ConfigurationError(f"Zone {zone.id}: temperature min exceeds max")
            if zone.section_range.min > zone.section_range.max:
                raise ConfigurationError(f"Zone {zone.id}: section min exceeds max")
            self._by_id[zone.id] = zone

            for section in zone.sections:
                owner = self._by_section.get(section)
                if owner is not None:
                    raise ConfigurationError(
                        f"Section {section} is claimed by zones {owner.id} and {zone.id}"
                    )
                self._by_section[section] = zone

        self.max_section = max(self._by_section)
        missing = [s for s in range(1, self.max_section + 1) if s not in self._by_section]
        if missing or min(self._by_section) < 1:
            raise ConfigurationError(
                f"Section ranges must partition 1..{self.max_section}, missing: {missing}"
            )

    def __iter__(self):
        return iter(self.zones)

    def __len__(self) -> int:
        return len(self.zones)

    def zone(self, zone_id: int) -> ZoneSettings:
        try:
            return self._by_id[zone_id]
        except KeyError:
            raise UnknownZoneError(f"Zone not found: {zone_id}") from None

    def zone_for_section(self, section: int) -> ZoneSettings:
        try:
            return self._by_section[section]
        except KeyError:
            raise UnknownZoneError(f"Section not found: {section}") from None

    def sections_of(self, zone_id: int) -> range:
        return self.zone(zone_id).sections

    def contains(self, zone_id: int, section: int) -> bool:
        zone = self._by_section.get(section)
        return zone is not None and zone.id == zone_id

    def validate_reference(self, zone_id: int, section: int) -> ZoneSettings:
        """Return the zone if the section belongs to it, raise UnknownZoneError otherwise."""
        zone = self.zone(zone_id)
        if section not in zone.section_range:
            raise UnknownZoneError(f"Section {section} does not belong to zone {zone_id}")
        return zone

    @classmethod
    def from_list(cls, data: list[dict]) -> "ZoneTable":
        return cls([ZoneSettings.from_dict(z) for z in data])


# Reference deployment: 36 sections in three zones
DEFAULT_ZONES = [
    {"id": 1, "tempRange": {"min": 50, "max": 60}, "sectionRange": {"min": 1, "max": 4}},
    {"id": 2, "tempRange": {"min": 40, "max": 50}, "sectionRange": {"min": 5, "max": 16}},
    {"id": 3, "tempRange": {"min": 20, "max": 40}, "sectionRange": {"min": 17, "max": 36}},
]


@dataclass(frozen=True)
class CorrelationSettings:
    """Correlation engine tunables."""

    window_capacity: int = 50  # Per-section history size and warm-up trigger
    zone_threshold_percent: float = 15.0
    section_threshold_percent: float = 12.5

    def __post_init__(self):
        if self.window_capacity < 1:
            raise ConfigurationError("window_capacity must be at least 1")


@dataclass(frozen=True)
class AllocatorSettings:
    """Section allocator liveness tunables."""

    liveness_ttl_seconds: float = 10.0
    sweep_interval_seconds: float = 5.0


@dataclass(frozen=True)
class ChannelSettings:
    """Message channel and outbound forwarding tunables."""

    inbound_topic: str = "raw-sensor-data"
    outbound_topic: str = "sensor-data"
    max_in_flight: int = 5
    max_delivery_attempts: int = 5
    max_retries: int = 5  # Outbound publish attempts before dead-lettering
    backoff_base_seconds: float = 0.5
    backoff_cap_seconds: float = 10.0
    dead_letter_size: int = 1000
    outbound_capacity: int = 1000  # Oldest forwarded messages are dropped past this depth


@dataclass(frozen=True)
class SimulationSettings:
    """In-process device simulator (disabled when devices == 0)."""

    devices: int = 0
    report_interval_seconds: float = 2.5
    fault_percentage: float = 5.0  # Chance per report (%) to enter a fault state
    warmup_reports: int = 10  # Reports before a device may start faulting
    seed: int | None = None


@dataclass(frozen=True)
class AppSettings:
    """All Zonewatch settings."""

    zones: ZoneTable = field(default_factory=lambda: ZoneTable.from_list(DEFAULT_ZONES))
    correlation: CorrelationSettings = field(default_factory=CorrelationSettings)
    allocator: AllocatorSettings = field(default_factory=AllocatorSettings)
    channel: ChannelSettings = field(default_factory=ChannelSettings)
    simulation: SimulationSettings = field(default_factory=SimulationSettings)
    influxdb: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "AppSettings":
        """Create from an options dictionary."""
        zone_configs = data.get("zones") or DEFAULT_ZONES
        return cls(
            zones=ZoneTable.from_list(zone_configs),
            correlation=_build(CorrelationSettings, data.get("correlation")),
            allocator=_build(AllocatorSettings, data.get("allocator")),
            channel=_build(ChannelSettings, data.get("channel")),
            simulation=_build(SimulationSettings, data.get("simulation")),
            influxdb=dict(data.get("influxdb") or {}),
        )


def _load_options(config_path: str | None, options_path: str) -> dict:
    """Read raw options from options.json, falling back to config.yaml."""
    if os.path.exists(options_path):
        with open(options_path) as f:
            options = json.load(f)
        logger.info(f"Loaded settings from {options_path}")
        return options

    path = config_path or DEFAULT_CONFIG_PATH
    if os.path.exists(path):
        with open(path) as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Loaded settings from {path}")
        return config.get("options", config)

    logger.warning("No configuration file found, using reference deployment")
    return {}


def _apply_env_overrides(settings: AppSettings) -> AppSettings:
    """Apply ZONEWATCH_* environment overrides."""
    load_dotenv()

    window = os.getenv("ZONEWATCH_WINDOW_CAPACITY")
    if window:
        settings = replace(
            settings, correlation=replace(settings.correlation, window_capacity=int(window))
        )

    in_flight = os.getenv("ZONEWATCH_MAX_IN_FLIGHT")
    if in_flight:
        settings = replace(settings, channel=replace(settings.channel, max_in_flight=int(in_flight)))

    devices = os.getenv("ZONEWATCH_SIM_DEVICES")
    if devices:
        settings = replace(settings, simulation=replace(settings.simulation, devices=int(devices)))

    return settings


def load_settings(config_path: str | None = None, options_path: str = OPTIONS_PATH) -> AppSettings:
    """Load settings from options.json or config.yaml, then apply environment overrides.

    Args:
        config_path: Development config file (defaults to config.yaml at the repo root)
        options_path: Production options file written by the add-on supervisor

    Returns:
        Validated application settings

    Raises:
        ConfigurationError: If the zone table or any section is invalid
    """
    try:
        settings = AppSettings.from_dict(_load_options(config_path, options_path))
        return _apply_env_overrides(settings)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e
