from datetime import datetime, timezone
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from status_pulse.api import create_app
from status_pulse.config import Settings
from status_pulse.timeutils import FixedClock

HEADERS = {"X-API-Key": "test-key"}


class DummyFacts:
    async def fetch_attendance(self, users, day):
        return []

    async def fetch_calendar(self, users, day):
        return []


def _at(day: int, hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 10, day, hour, minute, tzinfo=timezone.utc)


def _settings(tmp_path: Path, api_key="test-key") -> Settings:
    return Settings(
        database_path=tmp_path / "api.db",
        team_roster_path=tmp_path / "missing.csv",
        timezone=timezone.utc,
        api_key=api_key,
        default_start_time="09:00",
        default_end_time="18:00",
    )


@pytest.fixture
def client(tmp_path, database, clock):
    app = create_app(_settings(tmp_path), database=database, facts=DummyFacts(), clock=clock)
    client = TestClient(app)
    response = client.post(
        "/api/users",
        json={"id": "U2", "name": "Bob Stone", "department": "Design"},
        headers=HEADERS,
    )
    assert response.status_code == 201
    return client


def test_healthcheck_needs_no_key(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_requests_without_valid_key_are_rejected(client):
    assert client.get("/api/users").status_code == 401
    assert client.get("/api/users", headers={"X-API-Key": "wrong"}).status_code == 401


def test_unconfigured_key_returns_503(tmp_path, database, clock):
    app = create_app(_settings(tmp_path, api_key=None), database=database, facts=DummyFacts(), clock=clock)
    response = TestClient(app).get("/api/users", headers=HEADERS)
    assert response.status_code == 503


def test_created_user_gets_a_status(client):
    users = client.get("/api/users", headers=HEADERS).json()["users"]
    assert users[0]["work_schedule"] == {"start_time": "09:00", "end_time": "18:00"}
    status = client.get("/api/statuses/U2", headers=HEADERS).json()["status"]
    assert status["status"] == "on_duty"
    assert status["expires_at"] == _at(20, 18).isoformat()


def test_unknown_user_status_is_404(client):
    assert client.get("/api/statuses/NOPE", headers=HEADERS).status_code == 404
    response = client.post("/api/statuses/NOPE", json={"status": "wfh"}, headers=HEADERS)
    assert response.status_code == 404


def test_invalid_updates_are_422(client, clock):
    response = client.post("/api/statuses/U2", json={"status": "sleeping"}, headers=HEADERS)
    assert response.status_code == 422

    clock.set(_at(20, 22))
    response = client.post("/api/statuses/U2", json={"status": "on_duty"}, headers=HEADERS)
    assert response.status_code == 422
    assert "outside working hours" in response.json()["detail"]


def test_update_query_and_remove_override(client):
    response = client.post(
        "/api/statuses/U2",
        json={"status": "wfh", "detail": "plumber visit", "duration_minutes": 120},
        headers=HEADERS,
    )
    assert response.status_code == 200
    status = response.json()["status"]
    assert status["status"] == "wfh"
    assert status["detail"] == "plumber visit"
    slot_id = status["time_slots"][0]["id"]

    plain = client.get("/api/statuses", params={"status": "wfh"}, headers=HEADERS).json()
    assert [item["user_id"] for item in plain["statuses"]] == ["U2"]
    assert plain["statuses"][0]["detail"] is None

    detailed = client.get(
        "/api/statuses", params={"status": "wfh", "details": "true"}, headers=HEADERS
    ).json()
    assert detailed["statuses"][0]["detail"] == "plumber visit"

    slots = client.get("/api/statuses/U2/slots", headers=HEADERS).json()["time_slots"]
    assert [slot["id"] for slot in slots] == [slot_id]

    removed = client.delete(f"/api/statuses/U2/slots/{slot_id}", headers=HEADERS)
    assert removed.json()["status"]["status"] == "on_duty"
    assert client.delete(f"/api/statuses/U2/slots/{slot_id}", headers=HEADERS).status_code == 404


def test_naive_calendar_times_use_configured_timezone(client):
    response = client.post(
        "/api/calendar",
        json={
            "id": "evt-1",
            "user_id": "U2",
            "title": "Roadmap",
            "start_time": "2026-10-20T09:30:00",
            "end_time": "2026-10-20T10:30:00",
        },
        headers=HEADERS,
    )
    assert response.status_code == 200
    status = response.json()["status"]
    assert status["status"] == "meeting"
    assert status["expires_at"] == _at(20, 10, 30).isoformat()


def test_attendance_for_unknown_user_is_404(client):
    response = client.post(
        "/api/attendance",
        json={
            "id": "att-1",
            "user_id": "NOPE",
            "date": "2026-10-20",
            "status": "on_leave",
            "start_time": "2026-10-20T09:00:00+00:00",
            "end_time": "2026-10-20T18:00:00+00:00",
        },
        headers=HEADERS,
    )
    assert response.status_code == 404


def test_sync_and_diagnostics(client, clock):
    response = client.post("/api/sync", json={"force_refresh": True}, headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["statuses_updated"] == 1

    info = client.get("/api/sync", headers=HEADERS).json()
    assert info["last_sync_at"] == clock.now().isoformat()

    report = client.get("/api/consistency", headers=HEADERS).json()
    assert report == {"is_consistent": True, "issues": []}

    refreshed = client.post("/api/statuses/refresh", headers=HEADERS).json()
    assert refreshed["success"] is True
    assert [item["user_id"] for item in refreshed["statuses"]] == ["U2"]


def test_user_tags(client):
    tagged = client.put("/api/users/U2/tag", json={"tag": "offsite"}, headers=HEADERS).json()
    assert tagged["user"]["tag"] == "offsite"

    added = client.post("/api/users/U2/custom-tags", json={"tag": "oncall"}, headers=HEADERS)
    assert added.json()["user"]["custom_tags"] == ["oncall"]

    removed = client.delete("/api/users/U2/custom-tags/oncall", headers=HEADERS)
    assert removed.json()["user"]["custom_tags"] == []

    missing = client.put("/api/users/NOPE/tag", json={"tag": "x"}, headers=HEADERS)
    assert missing.status_code == 404


def test_schedule_change_refreshes_status(client):
    response = client.put(
        "/api/users/U2/schedule",
        json={"start_time": "11:00", "end_time": "19:00"},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert response.json()["status"]["status"] == "off_duty"
