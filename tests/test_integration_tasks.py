"""Integration tests for task and settings endpoints over HTTP."""

import pytest
from fastapi.testclient import TestClient

from daytick import app as app_module

PASSWORD = "TestPassword123!"


def _signed_in_client(email: str) -> TestClient:
    client = TestClient(app_module.app)
    response = client.post("/api/register", json={"email": email, "password": PASSWORD})
    assert response.status_code == 201, response.text
    return client


@pytest.fixture
def client():
    return _signed_in_client("owner@example.com")


@pytest.fixture
def intruder():
    return _signed_in_client("intruder@example.com")


def _create(client: TestClient, title: str, planned_at: str) -> dict:
    response = client.post("/api/tasks", json={"title": title, "planned_at": planned_at})
    assert response.status_code == 201, response.text
    return response.json()["data"]


def _titles(response) -> list:
    assert response.status_code == 200, response.text
    return [t["title"] for t in response.json()["data"]]


class TestTaskCrud:
    def test_create_and_fetch(self, client):
        created = _create(client, "write plan", "2024-03-04")

        assert created["completed"] is False
        response = client.get(f"/api/tasks/{created['id']}")
        assert response.status_code == 200
        assert response.json()["data"]["title"] == "write plan"

    @pytest.mark.parametrize(
        "payload",
        [
            {"title": "x", "planned_at": "2024-13-01"},
            {"title": "x", "planned_at": "04/03/2024"},
            {"title": "", "planned_at": "2024-03-04"},
            {"planned_at": "2024-03-04"},
        ],
    )
    def test_create_rejects_invalid_payload(self, client, payload):
        response = client.post("/api/tasks", json=payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_create_requires_session(self):
        response = TestClient(app_module.app).post(
            "/api/tasks", json={"title": "x", "planned_at": "2024-03-04"}
        )
        assert response.status_code == 401

    def test_update_partial(self, client):
        created = _create(client, "draft", "2024-03-04")

        response = client.patch(f"/api/tasks/{created['id']}", json={"completed": True})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["completed"] is True
        assert data["title"] == "draft"

    def test_update_requires_a_field(self, client):
        created = _create(client, "draft", "2024-03-04")
        response = client.patch(f"/api/tasks/{created['id']}", json={})
        assert response.status_code == 400

    def test_delete_returns_removed_task(self, client):
        created = _create(client, "temp", "2024-03-04")

        response = client.delete(f"/api/tasks/{created['id']}")

        assert response.status_code == 200
        assert response.json()["data"]["id"] == created["id"]
        assert client.get(f"/api/tasks/{created['id']}").status_code == 404

    @pytest.mark.parametrize("task_id", ["abc", "0", "-3", "1.5"])
    def test_invalid_task_id(self, client, task_id):
        response = client.get(f"/api/tasks/{task_id}")
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid task id"

    def test_missing_task(self, client):
        assert client.get("/api/tasks/9999").status_code == 404

    def test_other_users_task_is_forbidden(self, client, intruder):
        created = _create(client, "private", "2024-03-04")

        assert intruder.get(f"/api/tasks/{created['id']}").status_code == 403
        assert (
            intruder.patch(f"/api/tasks/{created['id']}", json={"title": "mine"}).status_code
            == 403
        )
        assert intruder.delete(f"/api/tasks/{created['id']}").status_code == 403
        assert client.get(f"/api/tasks/{created['id']}").json()["data"]["title"] == "private"


class TestTaskSearch:
    @pytest.fixture
    def seeded(self, client):
        _create(client, "c", "2024-01-03")
        _create(client, "a", "2024-01-01")
        done = _create(client, "b", "2024-01-02")
        client.patch(f"/api/tasks/{done['id']}", json={"completed": True})
        return client

    def test_default_order_is_newest_first(self, seeded):
        assert _titles(seeded.get("/api/tasks")) == ["b", "a", "c"]

    def test_only_own_tasks_are_listed(self, seeded, intruder):
        _create(intruder, "theirs", "2024-01-01")
        assert "theirs" not in _titles(seeded.get("/api/tasks"))

    def test_order_by_planned_at(self, seeded):
        asc = seeded.get("/api/tasks", params={"order_col": "planned_at", "order_dir": "asc"})
        desc = seeded.get("/api/tasks", params={"order_col": "planned_at", "order_dir": "desc"})

        assert _titles(asc) == ["a", "b", "c"]
        assert _titles(desc) == ["c", "b", "a"]

    def test_id_order_ignores_direction(self, seeded):
        response = seeded.get("/api/tasks", params={"order_dir": "sideways"})
        assert _titles(response) == ["b", "a", "c"]

    def test_unknown_order_column_falls_back_to_id(self, seeded):
        response = seeded.get("/api/tasks", params={"order_col": "title", "order_dir": "asc"})
        assert _titles(response) == ["b", "a", "c"]

    @pytest.mark.parametrize("params", [{"order_col": "planned_at"}, {"order_col": "created_at", "order_dir": "up"}])
    def test_bad_direction_for_sortable_column(self, seeded, params):
        response = seeded.get("/api/tasks", params=params)
        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid order direction"

    def test_date_bounds_are_exclusive(self, seeded):
        response = seeded.get("/api/tasks", params={"after": "2024-01-01", "before": "2024-01-03"})
        assert _titles(response) == ["b"]

    def test_unparseable_filters_are_ignored(self, seeded):
        response = seeded.get(
            "/api/tasks",
            params={"after": "yesterday", "completed": "maybe", "limit": "-1"},
        )
        assert len(_titles(response)) == 3

    def test_completed_filter(self, seeded):
        assert _titles(seeded.get("/api/tasks", params={"completed": "true"})) == ["b"]
        assert _titles(seeded.get("/api/tasks", params={"completed": "false"})) == ["a", "c"]

    def test_limit_and_offset(self, seeded):
        response = seeded.get(
            "/api/tasks",
            params={"order_col": "planned_at", "order_dir": "asc", "limit": "1", "offset": "1"},
        )
        assert _titles(response) == ["b"]

    def test_count(self, seeded):
        response = seeded.get("/api/tasks/count")
        assert response.status_code == 200
        assert response.json()["data"] == {"count": 3}

        filtered = seeded.get("/api/tasks/count", params={"completed": "false", "after": "2024-01-01"})
        assert filtered.json()["data"]["count"] == 1


class TestSettings:
    def test_defaults(self, client):
        data = client.get("/api/me").json()["data"]

        assert data["email"] == "owner@example.com"
        assert data["start_of_week"] == 1
        assert data["rollover_time"] == "00:00"

    def test_update(self, client):
        response = client.patch("/api/me", json={"start_of_week": 7, "rollover_time": "04:30"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["start_of_week"] == 7
        assert data["rollover_time"] == "04:30"
        assert client.get("/api/me").json()["data"]["start_of_week"] == 7

    @pytest.mark.parametrize(
        "payload",
        [
            {"start_of_week": 0},
            {"start_of_week": 8},
            {"rollover_time": "25:00"},
            {"rollover_time": "12:60"},
            {"rollover_time": "noon"},
        ],
    )
    def test_update_rejects_invalid_values(self, client, payload):
        response = client.patch("/api/me", json=payload)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
