"""Tests for the alert engine HTTP API."""

import pytest
from fastapi.testclient import TestClient

from src.alert_engine.api import create_app


@pytest.fixture
def client(store):
    return TestClient(create_app(store))


def _create(client, **overrides):
    body = {"title": "CPU high", "message": "95% on db-1", "severity": "medium", "category": "system"}
    body.update(overrides)
    response = client.post("/alerts", json=body)
    assert response.status_code == 201
    return response.json()["alert_id"]


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}


class TestAlertRoutes:
    def test_create_and_get(self, client):
        alert_id = _create(client, metadata={"host": "db-1", "value": 95}, tags=["db"])
        response = client.get(f"/alerts/{alert_id}")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "active"
        assert data["metadata"] == {"host": "db-1", "value": 95.0}
        assert data["tags"] == ["db"]
        assert {a["channel"] for a in data["delivery_attempts"]} == {"in_app", "push"}

    def test_invalid_severity(self, client):
        response = client.post("/alerts", json={"title": "x", "severity": "fatal", "category": "system"})
        assert response.status_code == 422

    def test_invalid_metadata(self, client):
        response = client.post(
            "/alerts", json={"title": "x", "severity": "low", "category": "system", "metadata": {"colour": "red"}},
        )
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_missing_alert(self, client):
        response = client.get("/alerts/does-not-exist")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"

    def test_acknowledge_and_resolve(self, client):
        alert_id = _create(client)
        ack = client.post(f"/alerts/{alert_id}/acknowledge", json={"user_id": "alice"})
        assert ack.json() == {"success": True, "alert_id": alert_id}
        again = client.post(f"/alerts/{alert_id}/acknowledge", json={"user_id": "alice"})
        assert again.json()["success"] is False
        resolved = client.post(f"/alerts/{alert_id}/resolve", json={"user_id": "alice"})
        assert resolved.json()["success"] is True
        assert client.get(f"/alerts/{alert_id}").json()["resolved_by"] == "alice"

    def test_snooze(self, client):
        alert_id = _create(client)
        response = client.post(f"/alerts/{alert_id}/snooze", json={"user_id": "alice", "duration_minutes": 15})
        assert response.json()["success"] is True
        assert client.get(f"/alerts/{alert_id}").json()["status"] == "snoozed"

    def test_snooze_critical_rejected(self, client):
        alert_id = _create(client, severity="critical")
        response = client.post(f"/alerts/{alert_id}/snooze", json={"user_id": "alice"})
        assert response.status_code == 422

    def test_escalate(self, client):
        alert_id = _create(client)
        assert client.post(f"/alerts/{alert_id}/escalate").json()["success"] is True
        data = client.get(f"/alerts/{alert_id}").json()
        assert data["escalation_level"] == 1
        assert data["status"] == "escalated"

    def test_interactions(self, client, store):
        alert_id = _create(client)
        response = client.post(f"/alerts/{alert_id}/interactions", json={"user_id": "alice", "event_type": "viewed"})
        assert response.json()["success"] is True
        assert store.analytics.has_user_interacted(alert_id, "alice")

        bad = client.post(f"/alerts/{alert_id}/interactions", json={"user_id": "alice", "event_type": "liked"})
        assert bad.status_code == 422

    def test_active_and_statistics(self, client):
        _create(client, severity="low")
        critical = _create(client, severity="critical")
        active = client.get("/alerts/active").json()
        assert [a["alert_id"] for a in active][0] == critical
        stats = client.get("/alerts/statistics").json()
        assert stats["total"] == 2
        assert stats["by_severity"]["critical"] == 1


class TestPreferenceRoutes:
    def test_get_and_patch(self, client):
        prefs = client.get("/preferences/alice").json()
        assert prefs["user_id"] == "alice"
        updated = client.patch("/preferences/alice", json={"channels": {"sms": {"enabled": True}}})
        assert updated.status_code == 200
        assert updated.json()["channels"]["sms"]["enabled"] is True

    def test_patch_invalid(self, client):
        response = client.patch("/preferences/alice", json={"quiet_hours": {"start": "7am"}})
        assert response.status_code == 422
        assert response.json()["error"]["details"][0]["field"] == "quiet_hours.start"

    def test_export_import(self, client):
        client.patch("/preferences/alice", json={"grouping_window_minutes": 15})
        payload = client.get("/preferences/alice/export").json()["payload"]
        imported = client.post("/preferences/bob/import", json={"payload": payload})
        assert imported.json()["grouping_window_minutes"] == 15
        assert imported.json()["user_id"] == "bob"


class TestNotificationRoutes:
    def test_groups_and_dismiss(self, client):
        _create(client)
        groups = client.get("/notifications/current-user/groups").json()
        assert len(groups) == 1
        assert groups[0]["count"] == 1

        group_id = groups[0]["group_id"]
        result = client.post(f"/notifications/current-user/groups/{group_id}/dismiss").json()
        assert (result["processed"], result["succeeded"]) == (1, 1)
        assert client.get("/notifications/current-user/groups").json() == []

    def test_unknown_group(self, client):
        response = client.post("/notifications/current-user/groups/system_1/dismiss")
        assert response.status_code == 404

    def test_unknown_operation(self, client):
        _create(client)
        group_id = client.get("/notifications/current-user/groups").json()[0]["group_id"]
        response = client.post(f"/notifications/current-user/groups/{group_id}/archive")
        assert response.status_code == 422
