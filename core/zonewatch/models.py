"""
Zonewatch Data Models

Telemetry events, correlation outcomes and allocation records.
"""

import json
import math
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from .exceptions import MalformedTelemetryError
from .settings import ValueRange


class FaultType(str, Enum):
    """Reporting mode of a device: REAL for healthy data, anything else is injected fault data."""

    REAL = "REAL"
    DEAD = "DEAD"
    TOO_LOW = "TOO_LOW"
    TOO_HIGH = "TOO_HIGH"
    FLUX = "FLUX"
    EVERY_OTHER = "EVERY_OTHER"


class CorrelationReason(str, Enum):
    """Which correlation check rejected a reading."""

    NONE = "NONE"
    WITHIN_BOUNDING_ZONES = "WITHIN_BOUNDING_ZONES"
    NOT_WITHIN_ZONE = "NOT_WITHIN_ZONE"
    NOT_WITHIN_ZONE_SECTION = "NOT_WITHIN_ZONE_SECTION"


@dataclass(frozen=True)
class TemperatureSample:
    """A single temperature/humidity reading."""

    temperature: float
    humidity: float


@dataclass(frozen=True)
class TelemetryEvent:
    """One report from a device, as received on the inbound channel."""

    device_id: str
    zone_id: int
    section_id: int
    sample: TemperatureSample
    invalid: bool = False
    fault_type: FaultType | None = None

    @classmethod
    def from_payload(cls, payload: bytes | str | dict) -> "TelemetryEvent":
        """Parse an ingress payload.

        Accepts both the device wire shape
        ``{id, zone, section, invalid, type, temperature: {temperature, humidity}}``
        and the canonical shape ``{deviceId, zone, section, invalid, faultType, sample}``.

        Raises:
            MalformedTelemetryError: If the payload cannot be parsed
        """
        try:
            data = json.loads(payload) if isinstance(payload, (bytes, str)) else payload
            if not isinstance(data, dict):
                raise TypeError(f"expected an object, got {type(data).__name__}")

            device_id = data.get("deviceId", data.get("id"))
            if device_id is None or device_id == "":
                raise KeyError("deviceId")

            reading = data.get("sample", data.get("temperature"))
            if not isinstance(reading, dict):
                raise TypeError("sample must be an object")

            fault = data.get("faultType", data.get("type"))
            invalid = data.get("invalid", False)
            if not isinstance(invalid, bool):
                raise TypeError("invalid must be a boolean")

            return cls(
                device_id=str(device_id),
                zone_id=_as_int(data["zone"]),
                section_id=_as_int(data["section"]),
                sample=TemperatureSample(
                    temperature=_as_finite(reading["temperature"]),
                    humidity=_as_finite(reading.get("humidity", 0.0)),
                ),
                invalid=invalid,
                fault_type=FaultType(fault) if fault is not None else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedTelemetryError(f"Unparseable telemetry payload: {e}") from e

    def to_payload(self) -> dict[str, Any]:
        """Canonical wire dict used when forwarding downstream."""
        return {
            "deviceId": self.device_id,
            "zone": self.zone_id,
            "section": self.section_id,
            "invalid": self.invalid,
            "faultType": self.fault_type.value if self.fault_type else None,
            "sample": asdict(self.sample),
        }


def _as_int(value) -> int:
    # bool is an int subclass; reject it along with fractional numbers
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValueError(f"expected an integer, got {value!r}")
    return int(value)


def _as_finite(value) -> float:
    # json.loads and pydantic both accept NaN and Infinity
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"expected a finite number, got {value!r}")
    return number


@dataclass(frozen=True)
class CorrelationResult:
    """Outcome of the correlation pipeline for one event."""

    passed: bool
    reason: CorrelationReason = CorrelationReason.NONE
    deviation_percent: float = 0.0

    @classmethod
    def ok(cls, deviation_percent: float = 0.0) -> "CorrelationResult":
        return cls(passed=True, reason=CorrelationReason.NONE, deviation_percent=deviation_percent)


@dataclass(frozen=True)
class AnomalyRecord:
    """Persisted projection of a rejected event."""

    device_id: str
    zone_id: int
    section_id: int
    fault_type: str | None
    invalid: bool
    reason: str
    deviation_percent: float
    temperature: float
    humidity: float

    @classmethod
    def from_event(cls, event: TelemetryEvent, result: CorrelationResult) -> "AnomalyRecord":
        return cls(
            device_id=event.device_id,
            zone_id=event.zone_id,
            section_id=event.section_id,
            fault_type=event.fault_type.value if event.fault_type else None,
            invalid=event.invalid,
            reason=result.reason.value,
            deviation_percent=result.deviation_percent,
            temperature=event.sample.temperature,
            humidity=event.sample.humidity,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Allocation:
    """A device's place in a zone; last_seen is refreshed on every report."""

    device_id: str
    zone_id: int
    section_id: int
    last_seen: datetime


@dataclass(frozen=True)
class Assignment:
    """Registration result handed back to the device."""

    device_id: str
    zone_id: int
    section_id: int
    temp_range: ValueRange

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "zone": {
                "id": self.zone_id,
                "section": self.section_id,
                "tempRange": self.temp_range.to_dict(),
            },
        }
