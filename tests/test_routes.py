import pytest

from claimflow.exceptions import EngineUnavailable
from claimflow.models import WorkflowInstance


@pytest.fixture
def seeded(org, expense_template):
    return org


def _start(client, org, business_id="EXP-100", amount=250):
    return client.post(
        "/api/workflows",
        json={
            "business_type": "EXPENSE",
            "business_id": business_id,
            "applicant_id": org["engineer"].id,
            "amount": amount,
            "title": "Team dinner",
        },
    )


def _current_task(engine, instance):
    return engine.current_task_id(instance["engine_instance_id"])


def test_start_workflow(client, seeded):
    response = _start(client, seeded)

    assert response.status_code == 201
    body = response.get_json()
    assert body["instance"]["status"] == "RUNNING"
    assert body["instance"]["title"] == "Team dinner"


def test_start_workflow_missing_fields(client, seeded):
    response = client.post("/api/workflows", json={"business_type": "EXPENSE"})

    assert response.status_code == 400
    body = response.get_json()
    assert body["code"] == "ValidationError"
    assert body["details"]["fields"] == ["amount", "applicant_id", "business_id"]


def test_engine_outage_maps_to_503(client, engine, seeded):
    engine.fail("start_instance", EngineUnavailable("Workflow engine timed out."))

    response = _start(client, seeded)

    assert response.status_code == 503
    assert response.get_json()["code"] == "EngineUnavailable"
    assert WorkflowInstance.query.count() == 0


def test_approve_then_approve_again(client, engine, seeded):
    instance = _start(client, seeded).get_json()["instance"]
    task_id = _current_task(engine, instance)
    url = f"/api/workflows/{instance['id']}/tasks/{task_id}/approve"

    first = client.post(url, json={"comment": "ok"})
    second = client.post(url, json={"comment": "ok"})

    assert first.status_code == 200
    assert first.get_json()["node"]["status"] == "COMPLETED"
    assert second.status_code == 409
    assert second.get_json()["code"] == "TaskAlreadyProcessed"


def test_reject_without_comment(client, engine, seeded):
    instance = _start(client, seeded).get_json()["instance"]
    task_id = _current_task(engine, instance)

    response = client.post(f"/api/workflows/{instance['id']}/tasks/{task_id}/reject", json={})

    assert response.status_code == 400
    assert response.get_json()["details"]["field"] == "comment"


def test_return_and_returnable_nodes(client, engine, seeded):
    instance = _start(client, seeded).get_json()["instance"]
    client.post(f"/api/workflows/{instance['id']}/tasks/{_current_task(engine, instance)}/approve", json={})
    finance_task = _current_task(engine, instance)
    detail = client.get(f"/api/workflows/{instance['id']}").get_json()["instance"]
    finance_node = next(node for node in detail["nodes"] if node["task_id"] == finance_task)

    nodes = client.get(f"/api/workflows/nodes/{finance_node['id']}/returnable").get_json()["nodes"]
    response = client.post(
        f"/api/workflows/{instance['id']}/tasks/{finance_task}/return",
        json={"target_node_key": nodes[0]["node_key"], "comment": "Attach the receipt"},
    )

    assert [node["node_key"] for node in nodes] == ["managerApproval"]
    assert response.status_code == 200
    assert response.get_json()["instance"]["current_node_name"] == "Line manager approval"


def test_batch_endpoint(client, engine, seeded):
    instance = _start(client, seeded).get_json()["instance"]

    response = client.post(
        "/api/workflows/tasks/batch",
        json={
            "items": [
                {"task_id": _current_task(engine, instance), "action": "approve"},
                {"task_id": "task-missing", "action": "approve"},
            ]
        },
    )

    body = response.get_json()
    assert response.status_code == 200
    assert body["success_count"] == 1
    assert body["failure_ids"] == ["task-missing"]
    assert body["success_rate"] == 50.0


def test_batch_requires_items(client, seeded):
    response = client.post("/api/workflows/tasks/batch", json={"items": []})

    assert response.status_code == 400


def test_pending_listing(client, seeded):
    _start(client, seeded)

    response = client.get(f"/api/workflows/users/{seeded['tech_manager'].id}/pending?per_page=5")

    body = response.get_json()
    assert response.status_code == 200
    assert body["total"] == 1
    assert body["per_page"] == 5
    assert body["items"][0]["applicant_name"] == "Eli Evans"


def test_unknown_instance(client, seeded):
    response = client.get("/api/workflows/999")

    assert response.status_code == 404
    assert response.get_json()["code"] == "InstanceNotFound"


def test_suspend_and_resume(client, seeded):
    instance = _start(client, seeded).get_json()["instance"]

    suspended = client.post(f"/api/workflows/{instance['id']}/suspend")
    suspended_again = client.post(f"/api/workflows/{instance['id']}/suspend")
    resumed = client.post(f"/api/workflows/{instance['id']}/resume")

    assert suspended.get_json()["instance"]["status"] == "SUSPENDED"
    assert suspended_again.status_code == 409
    assert resumed.get_json()["instance"]["status"] == "RUNNING"


def test_history_endpoint(client, engine, seeded):
    instance = _start(client, seeded).get_json()["instance"]

    response = client.get(f"/api/workflows/{instance['id']}/history")

    history = response.get_json()["history"]
    assert response.status_code == 200
    assert history[0]["assignee_name"] == "Mia Moore"


def test_identity_sync_endpoint(client, seeded):
    response = client.post("/api/workflows/identity/sync", json={"email": "eli.evans@claimflow.local", "sub": "kc-8"})

    assert response.status_code == 200
    assert response.get_json()["user"]["id"] == seeded["engineer"].id
