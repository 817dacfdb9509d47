from unittest.mock import MagicMock

import pytest
import requests

from core.zonewatch.exceptions import SinkError
from core.zonewatch.models import AnomalyRecord
from core.zonewatch.sinks import (
    AnomalySink,
    InfluxDBAnomalySink,
    MemoryAnomalySink,
    build_sink,
    get_influxdb_config,
    to_line_protocol,
)


@pytest.fixture
def record():
    return AnomalyRecord(
        device_id="dev 1",
        zone_id=2,
        section_id=5,
        fault_type="TOO_HIGH",
        invalid=True,
        reason="NOT_WITHIN_ZONE",
        deviation_percent=40.5,
        temperature=63.0,
        humidity=70.0,
    )


def test_line_protocol(record):
    assert to_line_protocol(record) == (
        "device_anomaly,device=dev\\ 1,zone=2,section=5,reason=NOT_WITHIN_ZONE,fault_type=TOO_HIGH "
        "invalid=true,deviation_percent=40.5,temperature=63.0,humidity=70.0"
    )


def test_influx_sink_posts_line_protocol(record):
    sink = InfluxDBAnomalySink("http://influx:8086/", "zonewatch")
    sink.session = MagicMock()
    sink.session.post.return_value = MagicMock(status_code=204)

    sink.insert(record)

    args, kwargs = sink.session.post.call_args
    assert args[0] == "http://influx:8086/write"
    assert kwargs["params"] == {"db": "zonewatch"}
    assert kwargs["data"].startswith(b"device_anomaly,")


def test_influx_sink_raises_on_error_status(record):
    sink = InfluxDBAnomalySink("http://influx:8086", "zonewatch")
    sink.session = MagicMock()
    sink.session.post.return_value = MagicMock(status_code=500, text="boom")

    with pytest.raises(SinkError):
        sink.insert(record)


def test_influx_sink_raises_on_connection_error(record):
    sink = InfluxDBAnomalySink("http://influx:8086", "zonewatch")
    sink.session = MagicMock()
    sink.session.post.side_effect = requests.ConnectionError("refused")

    with pytest.raises(SinkError):
        sink.insert(record)


def test_build_sink():
    assert isinstance(build_sink(None), MemoryAnomalySink)
    assert isinstance(build_sink({"enabled": False}), MemoryAnomalySink)

    sink = build_sink({"enabled": True, "url": "http://influx:8086", "database": "zw"})
    assert isinstance(sink, InfluxDBAnomalySink)
    assert sink.database == "zw"


def test_influx_config_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("INFLUXDB_URL", "http://env:8086")
    monkeypatch.setenv("INFLUXDB_DB", "envdb")

    config = get_influxdb_config(options_path=str(tmp_path / "missing.json"))

    assert config["url"] == "http://env:8086"
    assert config["database"] == "envdb"


def test_sink_base_requires_insert():
    with pytest.raises(TypeError):
        AnomalySink()

    class NoInsert(AnomalySink):
        pass

    with pytest.raises(TypeError):
        NoInsert()
