"""Tests for the Flask JSON API in app.py."""

import csv
import io

import pytest

import app as habitlab_app
import db
from errors import StoreUnavailableError


@pytest.fixture
def client():
    habitlab_app.app.config["TESTING"] = True
    habitlab_app.SESSIONS.clear()
    with habitlab_app.app.test_client() as client:
        yield client
    habitlab_app.SESSIONS.clear()


@pytest.fixture
def signed_in(client, user_id):
    response = client.post("/api/session", json={"user_id": user_id})
    assert response.status_code == 200
    return client


@pytest.fixture
def with_experiment(signed_in, settings_form):
    response = signed_in.post(
        "/api/experiment", json=dict(settings_form, confirmed=True)
    )
    assert response.status_code == 200
    return signed_in, response.get_json()["experiment"]


class TestSession:
    def test_requires_sign_in(self, client):
        assert client.get("/api/state").status_code == 401
        assert client.post("/api/record", json={}).status_code == 401

    def test_sign_in_returns_view(self, client, user_id):
        response = client.post("/api/session", json={"user_id": user_id})

        view = response.get_json()["view"]
        assert view["state"] == "no_active_experiment"
        assert view["settings"]["editable"] is True

    def test_sign_in_needs_user_id(self, client):
        assert client.post("/api/session", json={}).status_code == 400

    def test_sign_out_clears_session(self, signed_in, user_id):
        signed_in.delete("/api/session")

        assert user_id not in habitlab_app.SESSIONS
        assert signed_in.get("/api/state").status_code == 401


class TestExperimentRoutes:
    def test_create_needs_confirmation(self, signed_in, settings_form, user_id):
        response = signed_in.post("/api/experiment", json=settings_form)

        assert response.status_code == 400
        assert db.find_all_experiments(user_id) == []

    def test_validation_errors_listed(self, signed_in):
        response = signed_in.post("/api/experiment", json={"confirmed": True})

        body = response.get_json()
        assert response.status_code == 400
        assert body["success"] is False
        assert "action" in body["errors"]

    def test_wrong_typed_field_is_bad_request(self, signed_in, settings_form):
        response = signed_in.post(
            "/api/experiment", json=dict(settings_form, action=5, confirmed=True)
        )

        assert response.status_code == 400
        assert "action" in response.get_json()["errors"]

    def test_non_object_body_is_bad_request(self, signed_in):
        response = signed_in.post("/api/experiment", json=["not", "a", "form"])

        assert response.status_code == 400
        assert "errors" in response.get_json()

    def test_create_locks_settings(self, with_experiment):
        client, experiment = with_experiment

        view = client.get("/api/state").get_json()["view"]

        assert view["state"] == "active_no_record"
        assert view["settings"]["editable"] is False
        assert view["experiment"]["id"] == experiment["id"]

    def test_second_experiment_conflicts(self, with_experiment, settings_form):
        client, _ = with_experiment

        response = client.post(
            "/api/experiment", json=dict(settings_form, confirmed=True)
        )

        assert response.status_code == 409

    def test_end_experiment(self, with_experiment):
        client, _ = with_experiment

        response = client.post("/api/experiment/end", json={"confirmed": True})

        assert response.status_code == 200
        assert response.get_json()["view"]["state"] == "no_active_experiment"

    def test_end_without_experiment(self, signed_in):
        response = signed_in.post("/api/experiment/end", json={"confirmed": True})

        assert response.status_code == 404


class TestRecordRoutes:
    def test_save_then_edit(self, with_experiment, carried_out_input):
        client, _ = with_experiment

        response = client.post(
            "/api/record", json=dict(carried_out_input, confirmed=True)
        )
        body = response.get_json()
        assert response.status_code == 200
        assert body["view"]["state"] == "active_recorded"
        assert body["view"]["record"]["editable"] is False

        view = client.post("/api/record/edit").get_json()["view"]
        assert view["record"]["editable"] is True

        today = client.get("/api/record/today").get_json()["record"]
        assert today["concentration"] == 4

    def test_save_twice_keeps_one_record(self, with_experiment, carried_out_input, user_id):
        client, experiment = with_experiment

        client.post("/api/record", json=dict(carried_out_input, confirmed=True))
        client.post(
            "/api/record", json={"carried_out": False, "confirmed": True}
        )

        stored = db.find_records(user_id, experiment["id"])
        assert len(stored) == 1
        assert stored[0].carried_out is False

    def test_invalid_record(self, with_experiment, carried_out_input):
        client, _ = with_experiment

        response = client.post(
            "/api/record",
            json=dict(carried_out_input, concentration=9, confirmed=True),
        )

        assert response.status_code == 400
        assert "concentration" in response.get_json()["errors"]

    def test_malformed_metric_is_bad_request(self, with_experiment, carried_out_input):
        client, _ = with_experiment

        response = client.post(
            "/api/record",
            json=dict(carried_out_input, fatigue="--3", confirmed=True),
        )

        assert response.status_code == 400
        assert "fatigue" in response.get_json()["errors"]

    def test_record_without_experiment(self, signed_in, carried_out_input):
        response = signed_in.post(
            "/api/record", json=dict(carried_out_input, confirmed=True)
        )

        assert response.status_code == 404


class TestResultsRoutes:
    def test_results_and_export(self, with_experiment, carried_out_input):
        client, experiment = with_experiment
        client.post("/api/record", json=dict(carried_out_input, confirmed=True))

        listing = client.get("/api/experiments").get_json()
        assert listing["default_experiment_id"] == experiment["id"]

        result = client.get(f"/api/results/{experiment['id']}").get_json()
        assert result["available"] is True
        assert result["summary"]["record_count"] == 1

        response = client.get(f"/api/results/{experiment['id']}/export.csv")
        assert response.status_code == 200
        assert response.mimetype == "text/csv"
        assert "experiment_data_" in response.headers["Content-Disposition"]
        rows = list(csv.reader(io.StringIO(response.get_data(as_text=True))))
        assert len(rows) == 2

    def test_results_reflect_new_record(self, with_experiment, carried_out_input):
        client, experiment = with_experiment
        url = f"/api/results/{experiment['id']}"
        assert client.get(url).get_json()["summary"]["record_count"] == 0

        client.post("/api/record", json=dict(carried_out_input, confirmed=True))

        assert client.get(url).get_json()["summary"]["record_count"] == 1

    def test_experiment_list_degrades_when_store_down(self, signed_in, monkeypatch):
        def broken(*args, **kwargs):
            raise StoreUnavailableError("database is locked")

        monkeypatch.setattr(db, "find_all_experiments", broken)

        response = signed_in.get("/api/experiments")

        assert response.status_code == 200
        body = response.get_json()
        assert body["available"] is False
        assert body["experiments"] == []
        assert body["default_experiment_id"] is None

    def test_unknown_results(self, signed_in):
        assert signed_in.get("/api/results/999").status_code == 404


class TestNotificationRoutes:
    def test_register_token(self, signed_in, user_id):
        response = signed_in.post("/api/device-token", json={"token": "tok-1"})

        assert response.status_code == 200
        assert db.get_device_tokens(user_id) == ["tok-1"]

    def test_register_needs_token(self, signed_in):
        assert signed_in.post("/api/device-token", json={}).status_code == 400

    def test_test_notification_without_tokens(self, signed_in):
        assert signed_in.post("/api/notifications/test").status_code == 404
