import pytest
from fastapi.testclient import TestClient

import api_handler
from campus_data import default_campus_map
from config import NavConfig
from models import CampusMap
from pathFinding import PathFinder
from route_manager import NavigationSessionManager

client = TestClient(api_handler.app)


@pytest.fixture(autouse=True)
def setup_service(monkeypatch):
    cmap = default_campus_map()
    monkeypatch.setattr(api_handler, "campus_map", cmap)
    monkeypatch.setattr(api_handler, "pathfinder", PathFinder(cmap))
    monkeypatch.setattr(api_handler, "session_manager", NavigationSessionManager(cmap, NavConfig()))
    monkeypatch.setattr(api_handler, "mqtt_handler", None)
    yield


def _new_session():
    resp = client.post("/api/sessions")
    assert resp.status_code == 200
    return resp.json()["session_id"]


def test_route_success():
    resp = client.post("/api/route", json={"start_id": "ENT", "end_id": "AUD"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_distance"] == pytest.approx(35.0)
    assert [n["node_id"] for n in data["path"]] == ["ENT", "J1", "AUD"]
    assert data["path"][-1]["distance_from_start"] == pytest.approx(35.0)
    assert data["floor_changes"] == 0
    assert data["warnings"] == []


def test_route_with_floor_change():
    resp = client.post("/api/route", json={"start_id": "ENT", "end_id": "ECE"})
    data = resp.json()
    assert data["floor_changes"] == 1
    assert data["path"][-1]["is_waypoint"] is True
    assert data["warnings"] == ["Floor change"]


def test_route_unknown_waypoint_returns_404():
    resp = client.post("/api/route", json={"start_id": "ENT", "end_id": "MOON"})
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Waypoint MOON not found"


def test_route_no_path_returns_404(monkeypatch):
    monkeypatch.setattr(api_handler.pathfinder, "find_path", lambda *_: None)
    resp = client.post("/api/route", json={"start_id": "ENT", "end_id": "AUD"})
    assert resp.status_code == 404
    assert resp.json()["detail"] == "No path found to destination"


def test_route_requires_loaded_map(monkeypatch):
    monkeypatch.setattr(api_handler, "campus_map", None)
    resp = client.post("/api/route", json={"start_id": "ENT", "end_id": "AUD"})
    assert resp.status_code == 503


def test_map_and_destinations():
    body = client.get("/api/map").json()
    assert len(body["nodes"]) == 9
    assert {"from", "to"} <= set(body["edges"][0])

    names = [n["name"] for n in client.get("/api/destinations").json()]
    assert names == sorted(names)
    assert "West Corridor Junction" not in names


def test_session_flow():
    session_id = _new_session()

    status = client.post(f"/api/sessions/{session_id}/destination", json={"destination_id": "AUD"}).json()
    assert status["state"] == "awaiting_fix"

    status = client.post(f"/api/sessions/{session_id}/scan", json={"code": "ENT"}).json()
    assert status["state"] == "navigating"
    assert status["path"] == ["ENT", "J1", "AUD"]
    assert status["target_node"]["id"] == "J1"
    assert status["instruction"] == "Walk straight ahead toward the junction"
    assert status["position"]["accuracy"] == "exact"

    status = client.post(
        f"/api/sessions/{session_id}/orientation",
        json={"sample": {"source": "compass", "heading": 0}},
    ).json()
    assert status["heading"] == 0

    status = client.post(f"/api/sessions/{session_id}/motion", json={"x": 0, "y": 0, "z": 25, "timestamp_ms": 0}).json()
    assert status["steps_since_scan"] == 1
    assert status["position"]["accuracy"] == "estimated"

    status = client.post(f"/api/sessions/{session_id}/scan", json={"code": "AUD"}).json()
    assert status["state"] == "arrived"
    assert status["arrival"]["destination"]["id"] == "AUD"

    status = client.post(f"/api/sessions/{session_id}/reset").json()
    assert status["state"] == "idle"

    assert client.delete(f"/api/sessions/{session_id}").status_code == 200
    assert client.get(f"/api/sessions/{session_id}").status_code == 404


def test_unknown_scan_returns_unchanged_status():
    session_id = _new_session()
    before = client.get(f"/api/sessions/{session_id}").json()
    after = client.post(f"/api/sessions/{session_id}/scan", json={"code": "garbage"}).json()
    assert after == before


def test_floor_notice_dismiss():
    session_id = _new_session()
    client.post(f"/api/sessions/{session_id}/destination", json={"destination_id": "ECE"})
    status = client.post(f"/api/sessions/{session_id}/scan", json={"code": "EEE"}).json()
    assert status["floor_notice"]["direction"] == "up"

    status = client.post(f"/api/sessions/{session_id}/floor-notice/dismiss").json()
    assert status["floor_notice"] is None


def test_destination_unknown_waypoint_returns_404():
    session_id = _new_session()
    resp = client.post(f"/api/sessions/{session_id}/destination", json={"destination_id": "MOON"})
    assert resp.status_code == 404


def test_invalid_orientation_returns_422():
    session_id = _new_session()
    resp = client.post(f"/api/sessions/{session_id}/orientation", json={"sample": {"source": "gyro"}})
    assert resp.status_code == 422


def test_unknown_session_returns_404():
    resp = client.post("/api/sessions/nope/scan", json={"code": "ENT"})
    assert resp.status_code == 404
    assert resp.json()["detail"] == "Session not found"


def test_health():
    _new_session()
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["map_loaded"] is True
    assert body["nodes"] == 9
    assert body["active_sessions"] == 1
    assert body["mqtt"] is False


def test_route_over_parallel_edges_matches_total(monkeypatch):
    cmap = CampusMap.model_validate({
        "nodes": [
            {"id": "A", "name": "A", "floor": 0, "lat": 51.5, "lng": -0.1, "type": "entrance"},
            {"id": "B", "name": "B", "floor": 0, "lat": 51.501, "lng": -0.1, "type": "room"},
        ],
        "edges": [
            {"from": "A", "to": "B", "distance": 300},
            {"from": "A", "to": "B", "distance": 120},
        ],
    })
    monkeypatch.setattr(api_handler, "campus_map", cmap)
    monkeypatch.setattr(api_handler, "pathfinder", PathFinder(cmap))

    data = client.post("/api/route", json={"start_id": "A", "end_id": "B"}).json()
    assert data["total_distance"] == pytest.approx(120)
    assert data["path"][-1]["distance_from_start"] == pytest.approx(120)


def test_non_finite_motion_returns_422():
    session_id = _new_session()
    resp = client.post(
        f"/api/sessions/{session_id}/motion",
        content='{"x": NaN, "y": 0, "z": 9.8}',
        headers={"Content-Type": "application/json"},
    )
    assert resp.status_code == 422
