"""Tests for the dashboard JSON API."""

import pytest

from dashboard.app import create_app
from encounter_src.models import ResourceKind, StaffRole


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "CLINIC_DB_PATH": str(tmp_path / "clinic.db"),
        "SSE_HEARTBEAT_SECONDS": 1,
    })
    clinic = app.clinic
    clinic.db.add_staff("Dr. Adams", StaffRole.DOCTOR, staff_id="doc-1")
    clinic.db.add_staff("Nurse Baker", StaffRole.NURSE, staff_id="nurse-1")
    clinic.db.add_patient("Jane Doe", patient_number="P-001", patient_id="pat-1")
    clinic.db.add_patient("John Roe", patient_number="P-002", patient_id="pat-2")
    clinic.resources.add_resource(ResourceKind.ROOM, "Room 1", resource_id="room-1")
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def check_in(client, patient_id="pat-1"):
    response = client.post(
        "/api/encounters",
        json={"patient_id": patient_id, "chief_complaint": "Fever"},
        headers={"X-User": "desk-1"},
    )
    assert response.status_code == 201
    return response.get_json()


class TestEncounterEndpoints:
    """Tests for encounter routes and error mapping."""

    def test_check_in(self, client):
        data = check_in(client)

        assert data["status"] == "checked_in"
        assert data["patient_id"] == "pat-1"
        assert data["physician_id"] == "doc-1"

    def test_duplicate_check_in_is_conflict(self, client):
        first = check_in(client)

        response = client.post("/api/encounters", json={"patient_id": "pat-1"})

        assert response.status_code == 409
        body = response.get_json()
        assert body["error"] == "DuplicateActiveEncounter"
        assert body["encounter_id"] == first["id"]

    def test_missing_patient_id(self, client):
        response = client.post("/api/encounters", json={})

        assert response.status_code == 400
        assert response.get_json()["errors"] == {"patient_id": "Required"}

    def test_unknown_encounter(self, client):
        response = client.get("/api/encounters/missing")

        assert response.status_code == 404
        assert response.get_json()["error"] == "NotFoundError"

    def test_invalid_vitals(self, client):
        encounter = check_in(client)
        client.post(f"/api/encounters/{encounter['id']}/resource", json={"resource_id": "room-1"})

        response = client.post(
            f"/api/encounters/{encounter['id']}/vitals", json={"heart_rate": 500}
        )

        assert response.status_code == 400
        assert "heart_rate" in response.get_json()["errors"]

    def test_occupied_room(self, client):
        first = check_in(client, "pat-1")
        second = check_in(client, "pat-2")
        client.post(f"/api/encounters/{first['id']}/resource", json={"resource_id": "room-1"})

        response = client.post(
            f"/api/encounters/{second['id']}/resource", json={"resource_id": "room-1"}
        )

        assert response.status_code == 409
        body = response.get_json()
        assert body["resource_id"] == "room-1"
        assert body["occupant_encounter_id"] == first["id"]

    def test_bad_enum_value(self, client):
        encounter = check_in(client)

        response = client.post(
            f"/api/encounters/{encounter['id']}/routing", json={"department": "surgery"}
        )

        assert response.status_code == 400
        assert "department" in response.get_json()["errors"]

    def test_patient_queue(self, client):
        encounter = check_in(client)

        queue = client.get("/api/patient-queue").get_json()

        assert [item["id"] for item in queue] == [encounter["id"]]
        assert queue[0]["patient_name"] == "Jane Doe"

    def test_health(self, client):
        check_in(client)

        data = client.get("/api/health").get_json()

        assert data["status"] == "ok"
        assert data["outbox"]["pending"] == 0


class TestApiKey:
    """Tests for the API key check."""

    def test_key_required_when_configured(self, app, client):
        app.config["DASHBOARD_API_KEY"] = "secret"

        assert client.get("/api/patient-queue").status_code == 401
        assert client.get("/api/patient-queue?key=secret").status_code == 200
        response = client.get("/api/patient-queue", headers={"X-API-Key": "secret"})
        assert response.status_code == 200


class TestNotificationEndpoints:
    """Tests for notification and critical result routes."""

    def test_user_required(self, client):
        assert client.get("/api/notifications").status_code == 400

    def test_list_and_mark_read(self, client):
        check_in(client)

        alerts = client.get("/api/notifications", headers={"X-User": "nurse-1"}).get_json()
        assert [a["alert_type"] for a in alerts] == ["patient_checked_in"]

        response = client.post(
            "/api/notifications/read",
            json={"ids": [alerts[0]["id"]]},
            headers={"X-User": "nurse-1"},
        )
        assert response.get_json() == {"success": True, "marked_read": 1}
        assert client.get("/api/notifications?user=nurse-1").get_json() == []

    def test_stream_headers(self, client):
        response = client.get("/api/notifications/stream", headers={"X-User": "nurse-1"})

        assert response.status_code == 200
        assert response.mimetype == "text/event-stream"
        response.close()

    def test_critical_result_acknowledge(self, client):
        encounter = check_in(client)
        order = client.post(
            f"/api/encounters/{encounter['id']}/orders",
            json={"department": "lab", "item_name": "Glucose"},
        ).get_json()
        client.post(f"/api/orders/{order['id']}/results", json={"results": {"glucose": 30}})

        results = client.get("/api/critical-results?provider=doc-1").get_json()
        assert len(results) == 1

        response = client.post(
            f"/api/critical-results/{results[0]['id']}/acknowledge",
            headers={"X-User": "doc-1"},
        )

        assert response.status_code == 200
        assert response.get_json()["acknowledged_by"] == "doc-1"
        assert client.get("/api/critical-results").get_json() == []
