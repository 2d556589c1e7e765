"""
test_api.py — API integration tests using FastAPI TestClient.
"""
import pytest
from fastapi.testclient import TestClient

from api import app, get_store, rate_limit_store
from config import API_KEY

AUTH_HEADERS = {"X-API-Key": API_KEY}
SECONDS_PER_DAY = 24 * 60 * 60


@pytest.fixture
def api(store):
    app.dependency_overrides[get_store] = lambda: store
    rate_limit_store.clear()
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def registered(api, clock):
    response = api.post("/devices", headers=AUTH_HEADERS, json={
        "device_id": 1, "location_id": 0, "created_at": clock.now - 30 * SECONDS_PER_DAY,
    })
    assert response.status_code == 201
    return 1


def test_health_returns_200(api):
    response = api.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_missing_api_key_returns_401(api):
    response = api.get("/devices/1")
    assert response.status_code == 401


def test_wrong_api_key_returns_401(api):
    response = api.get("/devices/1", headers={"X-API-Key": "nope"})
    assert response.status_code == 401


def test_register_and_get_device(api, registered):
    response = api.get(f"/devices/{registered}", headers=AUTH_HEADERS)
    assert response.status_code == 200
    data = response.json()
    assert data["device"]["current_location"] == 0
    assert len(data["dwell_history"]) == 1


def test_unknown_device_returns_404(api):
    response = api.get("/devices/404", headers=AUTH_HEADERS)
    assert response.status_code == 404
    assert response.json()["error"] == "ValidationError"


def test_register_at_unknown_location_returns_404(api):
    response = api.post("/devices", headers=AUTH_HEADERS, json={"device_id": 1, "location_id": 77})
    assert response.status_code == 404


def test_create_locations(api, store, clock):
    response = api.post("/locations", headers=AUTH_HEADERS, json={"count": 15})
    assert response.status_code == 200
    store.register_device(3, 14, clock.now)


def test_location_change(api, registered):
    response = api.post(f"/devices/{registered}/location", headers=AUTH_HEADERS, json={"location_id": 4})
    assert response.status_code == 200
    data = api.get(f"/devices/{registered}", headers=AUTH_HEADERS).json()
    assert data["device"]["history"] == "0,00:4,00:"


def test_activity_returns_score(api, registered, clock):
    response = api.post(f"/devices/{registered}/activity", headers=AUTH_HEADERS, json={
        "start_time": clock.now, "duration_s": 30, "direction": "out", "counterparty_id": 2,
    })
    assert response.status_code == 200
    data = response.json()
    assert data["scored"] is True
    assert data["suspicious_because"] is None
    assert "busy_out_pct" in data["facts"]


def test_activity_for_cohort_member_is_flagged(api, registered, store, clock):
    signature = store.device_row(registered)["last6"]
    response = api.post("/cohorts", headers=AUTH_HEADERS, json={"signatures": [signature]})
    assert response.json()["members"] == {signature: 1}

    response = api.post(f"/devices/{registered}/activity", headers=AUTH_HEADERS, json={
        "start_time": clock.now, "duration_s": 30, "direction": "out", "counterparty_id": 2,
    })
    assert response.json()["suspicious_because"] == "suspicious_device_has_no_incoming_calls"

    summary = api.get("/suspects/summary", headers=AUTH_HEADERS).json()
    assert summary == {"suspicious_device_has_no_incoming_calls": 1}
    cohorts = api.get("/cohorts", headers=AUTH_HEADERS).json()
    assert cohorts[0]["members"] == 1


def test_missing_rule_set_returns_503(api, registered, store, clock):
    store.replace_rule_set("SIMBOX", [])
    response = api.post(f"/devices/{registered}/activity", headers=AUTH_HEADERS, json={
        "start_time": clock.now, "duration_s": 30, "direction": "in", "counterparty_id": 2,
    })
    assert response.status_code == 503
    assert response.json()["error"] == "ConfigurationError"


def test_activity_payload_is_validated(api, registered):
    response = api.post(f"/devices/{registered}/activity", headers=AUTH_HEADERS, json={
        "duration_s": -1, "direction": "out", "counterparty_id": 2,
    })
    assert response.status_code == 422


def test_detect_cohorts_with_no_movers(api, registered):
    response = api.post("/cohorts/detect", headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.json()["largest"] == 0


@pytest.mark.parametrize("name,query,expected", [
    ("TOP_N", "", 5),
    ("HOURS_BACK_TO_CHECK", "", 3),
    ("NOT_A_PARAMETER", "?default=42", 42),
])
def test_parameter_lookup(api, name, query, expected):
    response = api.get(f"/parameters/{name}{query}", headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.json() == {"name": name, "value": expected}


def test_rate_limit_returns_429(api, monkeypatch):
    monkeypatch.setattr("api.RATE_LIMIT_PER_MINUTE", 2)
    for _ in range(2):
        assert api.get("/parameters/TOP_N", headers=AUTH_HEADERS).status_code == 200
    assert api.get("/parameters/TOP_N", headers=AUTH_HEADERS).status_code == 429


def test_stats_returns_200(api):
    response = api.get("/stats")
    assert response.status_code == 200
    assert "total" in response.json()
