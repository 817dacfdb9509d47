import json

import pytest

from core.zonewatch.exceptions import MalformedTelemetryError
from core.zonewatch.models import (
    AnomalyRecord,
    Assignment,
    CorrelationReason,
    CorrelationResult,
    FaultType,
    TelemetryEvent,
)
from core.zonewatch.settings import ValueRange


def test_parse_device_wire_payload():
    body = json.dumps(
        {
            "id": "abc",
            "zone": 2,
            "section": 7,
            "invalid": True,
            "type": "TOO_HIGH",
            "temperature": {"temperature": 63.2, "humidity": 70.1},
        }
    ).encode()

    event = TelemetryEvent.from_payload(body)

    assert event.device_id == "abc"
    assert event.zone_id == 2
    assert event.section_id == 7
    assert event.invalid is True
    assert event.fault_type is FaultType.TOO_HIGH
    assert event.sample.temperature == 63.2
    assert event.sample.humidity == 70.1


def test_canonical_payload_parses_back():
    event = TelemetryEvent.from_payload(
        {"deviceId": "x", "zone": 1, "section": 2, "sample": {"temperature": 55, "humidity": 60}}
    )
    assert event.invalid is False
    assert event.fault_type is None
    assert TelemetryEvent.from_payload(event.to_payload()) == event


@pytest.mark.parametrize(
    "payload",
    [
        b"not json",
        b"[1, 2]",
        {"zone": 1, "section": 1, "sample": {"temperature": 1}},
        {"id": "a", "section": 1, "sample": {"temperature": 1}},
        {"id": "a", "zone": 1, "section": 1, "sample": {"temperature": "hot"}},
        {"id": "a", "zone": 1, "section": 1, "sample": 12.5},
        {"id": "a", "zone": 1, "section": 1.5, "sample": {"temperature": 1}},
        {"id": "a", "zone": 1, "section": 1, "invalid": "yes", "sample": {"temperature": 1}},
        {"id": "a", "zone": 1, "section": 1, "type": "MELTED", "sample": {"temperature": 1}},
        b'{"id": "a", "zone": 1, "section": 1, "sample": {"temperature": NaN}}',
        {"id": "a", "zone": 1, "section": 1, "sample": {"temperature": float("inf")}},
        {"id": "a", "zone": 1, "section": 1, "sample": {"temperature": 20, "humidity": float("-inf")}},
    ],
)
def test_malformed_payloads(payload):
    with pytest.raises(MalformedTelemetryError):
        TelemetryEvent.from_payload(payload)


def test_anomaly_record_projection():
    event = TelemetryEvent.from_payload(
        {
            "id": "dev",
            "zone": 3,
            "section": 20,
            "invalid": True,
            "type": "DEAD",
            "temperature": {"temperature": 0, "humidity": 0},
        }
    )
    result = CorrelationResult(
        passed=False, reason=CorrelationReason.NOT_WITHIN_ZONE, deviation_percent=100.0
    )

    record = AnomalyRecord.from_event(event, result)

    assert record.to_dict() == {
        "device_id": "dev",
        "zone_id": 3,
        "section_id": 20,
        "fault_type": "DEAD",
        "invalid": True,
        "reason": "NOT_WITHIN_ZONE",
        "deviation_percent": 100.0,
        "temperature": 0.0,
        "humidity": 0.0,
    }


def test_assignment_shape():
    assignment = Assignment("dev", 1, 3, ValueRange(50, 60))
    assert assignment.to_dict() == {
        "deviceId": "dev",
        "zone": {"id": 1, "section": 3, "tempRange": {"min": 50, "max": 60}},
    }
