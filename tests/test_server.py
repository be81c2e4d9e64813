"""Tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from parallel_runner.api import create_app
from parallel_runner.core.policy import ManualPolicy

pytestmark = pytest.mark.git


@pytest.fixture
def launcher(make_launcher):
    return make_launcher()


@pytest.fixture
def client(make_orchestrator, launcher):
    app = create_app(make_orchestrator(launcher=launcher))
    with TestClient(app) as client:
        yield client


@pytest.fixture
def manual_client(make_orchestrator, launcher):
    app = create_app(make_orchestrator(launcher=launcher, policy=ManualPolicy()))
    with TestClient(app) as client:
        yield client


def _create(client, repo, **body):
    response = client.post("/api/sessions", json={"repo_path": str(repo), **body})
    assert response.status_code == 201, response.text
    return response.json()


class TestSessionLifecycle:
    def test_create_report_and_read_back(self, client, repo_with_git):
        session = _create(client, repo_with_git, agent_count=2, task_description="fix bug")
        assert session["state"] == "active"
        assert [a["status"] for a in session["agents"]] == ["running", "running"]

        response = client.post(
            f"/api/sessions/{session['id']}/reports",
            json={
                "reports": [
                    {"agent_id": "agent-2", "status": "finished"},
                    {"agent_id": "agent-1", "status": "finished"},
                ]
            },
        )
        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "completed"
        assert body["outcome"] == "winner: agent-1"

        fetched = client.get(f"/api/sessions/{session['id']}").json()
        assert fetched["state"] == "completed"
        events = client.get(f"/api/sessions/{session['id']}/events").json()
        assert "winner_selected" in [e["event_type"] for e in events]

    def test_list_with_state_filter(self, client, repo_with_git):
        first = _create(client, repo_with_git, agent_count=1)
        second = _create(client, repo_with_git, agent_count=1)
        client.post(f"/api/sessions/{second['id']}/abort")

        active = client.get("/api/sessions", params={"state": "active"}).json()
        everything = client.get("/api/sessions").json()

        assert [s["id"] for s in active] == [first["id"]]
        assert {s["id"] for s in everything} == {first["id"], second["id"]}

    def test_abort_twice(self, client, repo_with_git):
        session = _create(client, repo_with_git, agent_count=1)
        for _ in range(2):
            response = client.post(f"/api/sessions/{session['id']}/abort")
            assert response.status_code == 200
            assert response.json()["outcome"] == "aborted by operator"

    def test_manual_winner(self, manual_client, launcher, repo_with_git):
        session = _create(manual_client, repo_with_git, agent_count=2)
        launcher.agents["agent-1"].finish()

        response = manual_client.post(
            f"/api/sessions/{session['id']}/winner", json={"agent_id": "agent-1"}
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "winner: agent-1"


class TestErrors:
    def test_unknown_session(self, client):
        assert client.get("/api/sessions/task-missing").status_code == 404
        assert client.get("/api/sessions/task-missing/events").status_code == 404

    def test_not_a_repository(self, client, tmp_path):
        response = client.post("/api/sessions", json={"repo_path": str(tmp_path)})
        assert response.status_code == 422
        assert "Not a git repository" in response.json()["detail"]

    def test_invalid_agent_count(self, client, repo_with_git):
        response = client.post(
            "/api/sessions", json={"repo_path": str(repo_with_git), "agent_count": 0}
        )
        assert response.status_code == 400

    def test_reports_cannot_claim_winner(self, client, repo_with_git):
        session = _create(client, repo_with_git, agent_count=1)
        response = client.post(
            f"/api/sessions/{session['id']}/reports",
            json={"reports": [{"agent_id": "agent-1", "status": "winner"}]},
        )
        assert response.status_code == 400

    def test_report_for_unknown_agent(self, client, repo_with_git):
        session = _create(client, repo_with_git, agent_count=1)
        response = client.post(
            f"/api/sessions/{session['id']}/reports",
            json={"reports": [{"agent_id": "agent-9", "status": "finished"}]},
        )
        assert response.status_code == 404

    def test_empty_report_batch_rejected(self, client, repo_with_git):
        session = _create(client, repo_with_git, agent_count=1)
        response = client.post(f"/api/sessions/{session['id']}/reports", json={"reports": []})
        assert response.status_code == 422

    def test_abort_completed_session_conflicts(self, client, repo_with_git):
        session = _create(client, repo_with_git, agent_count=1)
        client.post(
            f"/api/sessions/{session['id']}/reports",
            json={"reports": [{"agent_id": "agent-1", "status": "finished"}]},
        )
        response = client.post(f"/api/sessions/{session['id']}/abort")
        assert response.status_code == 409

    def test_choosing_running_agent_conflicts(self, manual_client, repo_with_git):
        session = _create(manual_client, repo_with_git, agent_count=1)
        response = manual_client.post(
            f"/api/sessions/{session['id']}/winner", json={"agent_id": "agent-1"}
        )
        assert response.status_code == 409
