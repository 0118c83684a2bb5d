import re
import time
import uuid

from fastapi.testclient import TestClient

from orchestrator_api.main import app, state_machine
from orchestrator_api.schemas import TaskStatus


client = TestClient(app)


def _signup() -> dict[str, str]:
    response = client.post(
        "/auth/signup",
        json={"email": f"user-{uuid.uuid4().hex[:10]}@example.com", "password": "password-123"},
    )
    assert response.status_code == 201
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _create_project(headers: dict[str, str]) -> str:
    response = client.post("/projects", json={"name": "orchestrated"}, headers=headers)
    assert response.status_code == 201
    return response.json()["id"]


def _create_agent(headers: dict[str, str], name: str = "coder") -> str:
    response = client.post("/agents", json={"name": name, "role": "developer"}, headers=headers)
    assert response.status_code == 201
    return response.json()["id"]


def _create_task(headers: dict[str, str], assignee_ids: list[str] | None = None) -> str:
    project_id = _create_project(headers)
    if assignee_ids is None:
        assignee_ids = [_create_agent(headers)]
    response = client.post(
        f"/projects/{project_id}/tasks",
        json={"title": "write hello.txt", "description": "create the file", "assignee_ids": assignee_ids},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["id"]


def _wait_for_terminal(task_id: str, headers: dict[str, str], timeout_seconds: float = 5.0) -> dict:
    deadline = time.time() + timeout_seconds
    while time.time() < deadline:
        current = client.get(f"/tasks/{task_id}", headers=headers)
        assert current.status_code == 200
        body = current.json()
        if body["status"] in ("COMPLETED", "FAILED"):
            return body
        time.sleep(0.03)
    raise AssertionError(f"task {task_id} did not reach terminal status in time")


def test_run_is_accepted_and_completes() -> None:
    headers = _signup()
    task_id = _create_task(headers)

    response = client.post(f"/orchestrator/tasks/{task_id}/run", headers=headers)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "initiated"
    assert body["taskId"] == task_id
    assert re.fullmatch(r"exec_\d+_[a-z0-9]+", body["executionId"])
    assert body["message"]
    assert _wait_for_terminal(task_id, headers)["status"] == "COMPLETED"


def test_run_without_assignees_is_rejected() -> None:
    headers = _signup()
    task_id = _create_task(headers, assignee_ids=[])

    response = client.post(f"/orchestrator/tasks/{task_id}/run", headers=headers)

    assert response.status_code == 400
    assert "assignees" in response.json()["detail"]


def test_run_of_completed_task_is_rejected() -> None:
    headers = _signup()
    task_id = _create_task(headers)
    assert client.post(f"/orchestrator/tasks/{task_id}/run", headers=headers).status_code == 201
    _wait_for_terminal(task_id, headers)

    response = client.post(f"/orchestrator/tasks/{task_id}/run", headers=headers)

    assert response.status_code == 400
    assert "completed" in response.json()["detail"]


def test_run_of_running_task_conflicts() -> None:
    headers = _signup()
    task_id = _create_task(headers)
    state_machine.begin(task_id, agent_id="system", agent_name="System")
    try:
        response = client.post(f"/orchestrator/tasks/{task_id}/run", headers=headers)
        assert response.status_code == 409
        assert "already running" in response.json()["detail"]
    finally:
        state_machine.force_fail(task_id)


def test_failed_task_needs_reset_before_rerun() -> None:
    headers = _signup()
    task_id = _create_task(headers)
    state_machine.begin(task_id, agent_id="system", agent_name="System")
    state_machine.force_fail(task_id)

    refused = client.post(f"/orchestrator/tasks/{task_id}/run", headers=headers)
    assert refused.status_code == 400
    assert "reset" in refused.json()["detail"]

    reset = client.post(f"/orchestrator/tasks/{task_id}/reset", headers=headers)
    assert reset.status_code == 200
    assert reset.json()["status"] == "PENDING"

    accepted = client.post(f"/orchestrator/tasks/{task_id}/run", headers=headers)
    assert accepted.status_code == 201
    assert _wait_for_terminal(task_id, headers)["status"] == "COMPLETED"


def test_reset_of_running_task_conflicts() -> None:
    headers = _signup()
    task_id = _create_task(headers)
    state_machine.begin(task_id, agent_id="system", agent_name="System")
    try:
        assert client.post(f"/orchestrator/tasks/{task_id}/reset", headers=headers).status_code == 409
    finally:
        state_machine.force_fail(task_id)


def test_task_of_another_user_is_not_found() -> None:
    owner = _signup()
    stranger = _signup()
    task_id = _create_task(owner)

    response = client.post(f"/orchestrator/tasks/{task_id}/run", headers=stranger)

    assert response.status_code == 404
    assert client.get(f"/tasks/{task_id}", headers=owner).json()["status"] == "PENDING"


def test_unknown_and_malformed_task_ids() -> None:
    headers = _signup()

    assert client.post(f"/orchestrator/tasks/{uuid.uuid4()}/run", headers=headers).status_code == 404
    malformed = client.post("/orchestrator/tasks/not-a-uuid/run", headers=headers)
    assert malformed.status_code == 400
    assert "invalid task id" in malformed.json()["detail"]


def test_run_requires_bearer_token() -> None:
    headers = _signup()
    task_id = _create_task(headers)

    assert client.post(f"/orchestrator/tasks/{task_id}/run").status_code == 401
    invalid = client.post(f"/orchestrator/tasks/{task_id}/run", headers={"Authorization": "Bearer nope"})
    assert invalid.status_code == 401
    basic = client.post(f"/orchestrator/tasks/{task_id}/run", headers={"Authorization": "Basic abc"})
    assert basic.status_code == 401


def test_rapid_fire_requests_accept_exactly_one() -> None:
    headers = _signup()
    task_id = _create_task(headers)

    codes = [client.post(f"/orchestrator/tasks/{task_id}/run", headers=headers).status_code for _ in range(5)]

    assert codes[0] == 201
    assert codes.count(201) == 1
    assert all(code in (400, 409) for code in codes[1:])
    _wait_for_terminal(task_id, headers)


def test_memory_is_inspectable_after_run() -> None:
    headers = _signup()
    agent_id = _create_agent(headers)
    task_id = _create_task(headers, assignee_ids=[agent_id])
    assert client.post(f"/orchestrator/tasks/{task_id}/run", headers=headers).status_code == 201
    _wait_for_terminal(task_id, headers)

    memory = client.get(f"/orchestrator/tasks/{task_id}/memory/{agent_id}", headers=headers)
    assert memory.status_code == 200
    body = memory.json()
    assert body["total_original_steps"] == 3
    assert body["is_compressed"] is False
    assert body["rendered"].startswith("Global goal: write hello.txt: create the file")
    assert [step["action"] for step in body["steps"]][0] == "ls -la ."

    stats = client.get(f"/agents/{agent_id}/memory/stats", headers=headers)
    assert stats.status_code == 200
    assert stats.json()["total_memories"] == 1

    missing = client.get(f"/orchestrator/tasks/{task_id}/memory/{_create_agent(headers)}", headers=headers)
    assert missing.status_code == 404


def test_executions_are_scoped_to_caller() -> None:
    headers = _signup()

    response = client.get("/orchestrator/executions", headers=headers)

    assert response.status_code == 200
    assert response.json() == []
    assert client.get("/orchestrator/executions").status_code == 401


def test_task_status_is_visible_in_project_listing() -> None:
    headers = _signup()
    project_id = _create_project(headers)
    agent_id = _create_agent(headers)
    created = client.post(
        f"/projects/{project_id}/tasks",
        json={"title": "listed", "assignee_ids": [agent_id]},
        headers=headers,
    ).json()
    client.post(f"/orchestrator/tasks/{created['id']}/run", headers=headers)
    _wait_for_terminal(created["id"], headers)

    completed = client.get(
        f"/projects/{project_id}/tasks",
        params={"status": TaskStatus.COMPLETED.value},
        headers=headers,
    )
    assert [task["id"] for task in completed.json()] == [created["id"]]
