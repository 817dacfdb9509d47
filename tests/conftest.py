from datetime import datetime, timedelta, timezone

import pytest

from core.zonewatch.history import HistoryStore
from core.zonewatch.models import TelemetryEvent, TemperatureSample
from core.zonewatch.settings import DEFAULT_ZONES, CorrelationSettings, ZoneTable


class FakeClock:
    """Manually advanced clock for liveness tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


def make_event(
    temperature: float,
    zone: int = 2,
    section: int = 5,
    invalid: bool = False,
    device_id: str = "device-1",
    humidity: float = 45.0,
) -> TelemetryEvent:
    return TelemetryEvent(
        device_id=device_id,
        zone_id=zone,
        section_id=section,
        sample=TemperatureSample(temperature=temperature, humidity=humidity),
        invalid=invalid,
    )


def seed(history: HistoryStore, section: int, *temperatures: float):
    for t in temperatures:
        history.section(section).append(TemperatureSample(temperature=t, humidity=0.0))


@pytest.fixture
def zones() -> ZoneTable:
    return ZoneTable.from_list(DEFAULT_ZONES)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def history(zones) -> HistoryStore:
    return HistoryStore(zones, capacity=50)


@pytest.fixture
def correlation_settings() -> CorrelationSettings:
    return CorrelationSettings(window_capacity=50)
