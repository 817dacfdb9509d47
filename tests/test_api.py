import time

import pytest
from fastapi.testclient import TestClient

from backend.app import app


@pytest.fixture
def client(monkeypatch):
    for name in ("ZONEWATCH_WINDOW_CAPACITY", "ZONEWATCH_MAX_IN_FLIGHT", "ZONEWATCH_SIM_DEVICES"):
        monkeypatch.delenv(name, raising=False)
    with TestClient(app) as test_client:
        yield test_client


def wait_for(predicate, timeout: float = 2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["running"] is True


def test_register_round_robin(client):
    first = client.get("/register").json()
    second = client.post("/register").json()

    assert first["zone"] == {"id": 1, "section": 1, "tempRange": {"min": 50, "max": 60}}
    assert second["zone"]["section"] == 2
    assert first["deviceId"] != second["deviceId"]


def test_report_data_is_correlated(client):
    device = client.get("/register").json()
    payload = {
        "id": device["deviceId"],
        "zone": device["zone"]["id"],
        "section": device["zone"]["section"],
        "invalid": False,
        "type": "REAL",
        "temperature": {"temperature": 55.5, "humidity": 61.0},
    }

    response = client.post("/data", json=payload)

    assert response.status_code == 202
    assert wait_for(lambda: client.get("/api/sections/1/history").json()["count"] == 1)
    history = client.get("/api/sections/1/history").json()
    assert history["zone_id"] == 1
    assert history["history"] == [{"temperature": 55.5, "humidity": 61.0}]

    allocations = client.get("/api/zones/1/allocations").json()
    assert [a["deviceId"] for a in allocations["allocations"]] == [device["deviceId"]]


def test_report_data_canonical_shape(client):
    payload = {
        "deviceId": "observed",
        "zone": 3,
        "section": 20,
        "sample": {"temperature": 30.0, "humidity": 35.0},
    }
    assert client.post("/data", json=payload).status_code == 202
    assert client.get("/api/zones/3/allocations").json()["count"] == 1


def test_report_data_unknown_zone(client):
    payload = {"id": "x", "zone": 1, "section": 30, "temperature": {"temperature": 1, "humidity": 1}}
    assert client.post("/data", json=payload).status_code == 404


def test_report_data_malformed(client):
    assert client.post("/data", json={"id": "x", "zone": 1}).status_code == 422

    payload = {
        "id": "x",
        "zone": 1,
        "section": 1,
        "type": "MELTED",
        "temperature": {"temperature": 1, "humidity": 1},
    }
    assert client.post("/data", json=payload).status_code == 422


def test_zones_and_status(client):
    client.get("/register")

    zones = client.get("/api/zones").json()["zones"]
    assert [z["id"] for z in zones] == [1, 2, 3]
    assert zones[0]["amount"] == 1
    assert zones[1]["sectionRange"] == {"min": 5, "max": 16}

    status = client.get("/api/status").json()
    assert status["allocated_count"] == 1
    assert status["correlation"]["rejected"] == 0


def test_unknown_section_and_zone(client):
    assert client.get("/api/sections/37/history").status_code == 404
    assert client.get("/api/zones/9/allocations").status_code == 404
