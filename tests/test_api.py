from __future__ import annotations

from collections.abc import Callable

from fastapi.testclient import TestClient

from conftest import (
    COUNTER_FILES,
    FailingGateway,
    ScriptedGateway,
    project_json,
    split_rounds,
    wait_for_terminal,
)

ClientFactory = Callable[..., TestClient]


def test_health(make_client: ClientFactory) -> None:
    client = make_client()

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "service": "codegen-orchestrator",
        "gateway_configured": False,
    }


def test_generate_lifecycle_over_http(make_client: ClientFactory) -> None:
    client = make_client(ScriptedGateway(split_rounds(project_json(), 3)))

    submit = client.post(
        "/tasks",
        json={"kind": "generate", "payload": {"description": "a counter app", "style": "minimal"}},
    )
    assert submit.status_code == 200
    assert submit.json()["status"] == "pending"
    task_id = submit.json()["task_id"]

    body = wait_for_terminal(client, task_id)

    assert body["status"] == "completed"
    assert body["progress"] == 100
    assert body["result"]["provenance"] == "model"
    assert body["result"]["files"] == COUNTER_FILES
    assert body["metadata"]["rounds"] == 3
    assert body["metadata"]["style"] == "minimal"


def test_gateway_failure_still_completes(make_client: ClientFactory) -> None:
    client = make_client(FailingGateway())

    task_id = client.post("/tasks", json={"payload": {"description": "landing page"}}).json()["task_id"]
    body = wait_for_terminal(client, task_id)

    assert body["status"] == "completed"
    assert body["result"]["provenance"] == "fallback"
    assert body["error"] is None


def test_unknown_task_is_404(make_client: ClientFactory) -> None:
    client = make_client()

    assert client.get("/tasks/does-not-exist").status_code == 404
    assert client.delete("/tasks/does-not-exist").status_code == 404


def test_bad_payloads_are_400(make_client: ClientFactory) -> None:
    client = make_client()

    export = client.post("/tasks", json={"kind": "export", "payload": {}})
    empty = client.post("/tasks", json={"kind": "generate", "payload": {"description": ""}})
    no_files = client.post("/tasks", json={"kind": "modify", "payload": {"instruction": "x"}})

    assert export.status_code == 400
    assert empty.status_code == 400
    assert no_files.status_code == 400
    assert client.get("/tasks/stats").json()["total"] == 0


def test_unknown_kind_is_422(make_client: ClientFactory) -> None:
    client = make_client()

    response = client.post("/tasks", json={"kind": "deploy", "payload": {}})

    assert response.status_code == 422


def test_list_stats_and_delete(make_client: ClientFactory) -> None:
    client = make_client(ScriptedGateway([([project_json()], "stop")], repeat_last=True))
    generate_id = client.post("/tasks", json={"payload": {"description": "counter"}}).json()["task_id"]
    modify_id = client.post(
        "/tasks",
        json={"kind": "modify", "payload": {"files": COUNTER_FILES, "instruction": "rename"}},
    ).json()["task_id"]
    wait_for_terminal(client, generate_id)
    wait_for_terminal(client, modify_id)

    listed = client.get("/tasks").json()["tasks"]
    assert [task["task_id"] for task in listed] == [modify_id, generate_id]
    only_modify = client.get("/tasks", params={"kind": "modify"}).json()["tasks"]
    assert [task["task_id"] for task in only_modify] == [modify_id]

    stats = client.get("/tasks/stats").json()
    assert stats["total"] == 2
    assert stats["completed"] == 2
    assert stats["running"] == 0

    deleted = client.delete(f"/tasks/{generate_id}")
    assert deleted.status_code == 200
    assert deleted.json() == {"task_id": generate_id, "deleted": True}
    assert client.get(f"/tasks/{generate_id}").status_code == 404
    assert client.get("/tasks/stats").json()["total"] == 1
