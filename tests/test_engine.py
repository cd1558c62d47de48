from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from claimflow.exceptions import EngineError, EngineUnavailable, ProcessDefinitionNotFound
from claimflow.services.engine import FlowableEngine, get_engine


def _response(status=200, payload=None, text=""):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    response.text = text
    return response


@pytest.fixture
def session():
    return MagicMock()


@pytest.fixture
def flowable(session):
    return FlowableEngine("http://engine.local/flowable-rest/service/", "rest-admin", "secret", timeout=2.5, session=session)


def test_session_is_authenticated(flowable, session):
    assert session.auth == ("rest-admin", "secret")
    assert flowable.base_url == "http://engine.local/flowable-rest/service"


def test_start_instance_posts_typed_variables(flowable, session):
    session.request.return_value = _response(201, {"id": "proc-9"})

    instance_id = flowable.start_instance("expenseApproval", "EXP-1", {"amount": Decimal("12.50"), "managerId": 7})

    assert instance_id == "proc-9"
    args, kwargs = session.request.call_args
    assert args == ("POST", "http://engine.local/flowable-rest/service/runtime/process-instances")
    assert kwargs["timeout"] == 2.5
    assert kwargs["json"]["processDefinitionKey"] == "expenseApproval"
    assert kwargs["json"]["businessKey"] == "EXP-1"
    assert {"name": "amount", "value": 12.5} in kwargs["json"]["variables"]
    assert {"name": "managerId", "value": 7} in kwargs["json"]["variables"]


def test_unknown_process_definition(flowable, session):
    session.request.return_value = _response(404, text="no deployed process definition found")

    with pytest.raises(ProcessDefinitionNotFound) as excinfo:
        flowable.start_instance("missing", "EXP-1", {})

    assert excinfo.value.details == {"process_key": "missing"}


@pytest.mark.parametrize(
    "failure",
    [requests.Timeout("read timed out"), requests.ConnectionError("connection refused")],
)
def test_transport_failures_mean_unavailable(flowable, session, failure):
    session.request.side_effect = failure

    with pytest.raises(EngineUnavailable):
        flowable.start_instance("expenseApproval", "EXP-1", {})


def test_server_errors_mean_unavailable(flowable, session):
    session.request.return_value = _response(503, text="maintenance")

    with pytest.raises(EngineUnavailable) as excinfo:
        flowable.complete_task("task-1")

    assert excinfo.value.details["status"] == 503


def test_client_errors_are_engine_errors(flowable, session):
    session.request.return_value = _response(409, text="task is suspended")

    with pytest.raises(EngineError) as excinfo:
        flowable.complete_task("task-1")

    assert not isinstance(excinfo.value, EngineUnavailable)
    assert excinfo.value.details["status"] == 409


def test_current_task_is_mapped(flowable, session):
    session.request.return_value = _response(
        200,
        {
            "data": [
                {
                    "id": "task-3",
                    "name": "Finance approval",
                    "assignee": "4",
                    "taskDefinitionKey": "financeApproval",
                    "executionId": "exec-3",
                    "processInstanceId": "proc-1",
                    "createTime": "2024-03-01T10:00:00.000+01:00",
                }
            ]
        },
    )

    task = flowable.get_current_task("proc-1")

    assert task.id == "task-3"
    assert task.assignee == "4"
    assert task.definition_key == "financeApproval"
    assert task.created_at == datetime(2024, 3, 1, 9, 0)
    assert task.due_date is None
    _, kwargs = session.request.call_args
    assert kwargs["params"]["processInstanceId"] == "proc-1"


def test_no_current_task(flowable, session):
    session.request.return_value = _response(200, {"data": []})

    assert flowable.get_current_task("proc-1") is None


def test_instance_end_detection(flowable, session):
    session.request.return_value = _response(200, {"id": "proc-1", "endTime": "2024-03-02T08:00:00.000Z"})
    assert flowable.is_instance_ended("proc-1") is True

    session.request.return_value = _response(200, {"id": "proc-1", "endTime": None})
    assert flowable.is_instance_ended("proc-1") is False

    session.request.return_value = _response(404)
    assert flowable.is_instance_ended("proc-unknown") is False


def test_instance_end_carries_delete_reason(flowable, session):
    session.request.return_value = _response(
        200,
        {"id": "proc-1", "endTime": "2024-03-02T08:00:00.000Z", "deleteReason": "Rejected: Missing receipts"},
    )

    end = flowable.get_instance_end("proc-1")

    assert end.delete_reason == "Rejected: Missing receipts"
    assert end.ended_at == datetime(2024, 3, 2, 8, 0)

    session.request.return_value = _response(200, {"id": "proc-1", "endTime": "2024-03-02T08:00:00.000Z"})
    assert flowable.get_instance_end("proc-1").delete_reason is None

    session.request.return_value = _response(200, {"id": "proc-1", "endTime": None})
    assert flowable.get_instance_end("proc-1") is None


def test_move_to_activity_changes_state(flowable, session):
    session.request.return_value = _response(200, {})

    flowable.move_to_activity("proc-1", "financeApproval", "managerApproval")

    args, kwargs = session.request.call_args
    assert args[1].endswith("runtime/process-instances/proc-1/change-state")
    assert kwargs["json"] == {"cancelActivityIds": ["financeApproval"], "startActivityIds": ["managerApproval"]}


def test_history_carries_task_comments(flowable, session):
    session.request.side_effect = [
        _response(
            200,
            {
                "data": [
                    {"id": "task-1", "name": "Line manager approval", "assignee": "7", "taskDefinitionKey": "managerApproval"},
                    {"id": "task-2", "name": "Finance approval", "assignee": "4", "taskDefinitionKey": "financeApproval"},
                ]
            },
        ),
        _response(200, [{"taskId": "task-1", "message": "Looks fine"}, {"taskId": None, "message": "process note"}]),
    ]

    history = flowable.get_history("proc-1")

    assert [task.id for task in history] == ["task-1", "task-2"]
    assert history[0].comments == ["Looks fine"]
    assert history[1].comments == []


def test_task_counts(flowable, session):
    session.request.return_value = _response(200, {"data": [], "total": 12})

    assert flowable.count_tasks_for_user("7") == 12
    _, kwargs = session.request.call_args
    assert kwargs["params"]["candidateOrAssigned"] == "7"


def test_app_exposes_configured_engine(app, engine):
    assert get_engine() is engine
