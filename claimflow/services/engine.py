"""Adapter boundary to the external BPM engine.

``WorkflowEngine`` lists every operation the orchestrator consumes.
``FlowableEngine`` implements it against the Flowable REST API; every call is
bounded by ``ENGINE_TIMEOUT_SECONDS`` and infrastructure failures surface as
``EngineUnavailable``.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests
from flask import Flask, current_app

from claimflow.exceptions import EngineError, EngineUnavailable, ProcessDefinitionNotFound

logger = logging.getLogger(__name__)

EXTENSION_KEY = "claimflow.engine"


@dataclass
class EngineTask:
    id: str
    name: Optional[str]
    assignee: Optional[str]
    definition_key: Optional[str]
    execution_id: Optional[str]
    process_instance_id: Optional[str]
    created_at: Optional[datetime] = None
    due_date: Optional[datetime] = None


@dataclass
class HistoricTask:
    id: str
    name: Optional[str]
    assignee: Optional[str]
    definition_key: Optional[str]
    process_instance_id: Optional[str]
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    delete_reason: Optional[str] = None
    comments: List[str] = field(default_factory=list)


@dataclass
class InstanceEnd:
    """How a process instance ended; ``delete_reason`` is None for a normal completion."""

    ended_at: Optional[datetime] = None
    delete_reason: Optional[str] = None


class WorkflowEngine(abc.ABC):
    """Operations consumed from the BPM engine."""

    @abc.abstractmethod
    def start_instance(self, process_key: str, business_key: str, variables: Dict[str, Any]) -> str:
        """Start a process instance and return its engine id."""

    @abc.abstractmethod
    def get_current_task(self, instance_id: str) -> Optional[EngineTask]:
        """Return the open task of an instance, if any."""

    @abc.abstractmethod
    def add_comment(self, task_id: str, instance_id: str, text: str) -> None:
        ...

    @abc.abstractmethod
    def complete_task(self, task_id: str) -> None:
        ...

    @abc.abstractmethod
    def terminate_instance(self, instance_id: str, reason: str) -> None:
        ...

    @abc.abstractmethod
    def move_to_activity(self, instance_id: str, from_activity_key: str, to_activity_key: str) -> None:
        ...

    @abc.abstractmethod
    def suspend_instance(self, instance_id: str) -> None:
        ...

    @abc.abstractmethod
    def activate_instance(self, instance_id: str) -> None:
        ...

    @abc.abstractmethod
    def get_instance_end(self, instance_id: str) -> Optional[InstanceEnd]:
        """Return how the instance ended, or None while it is still running."""

    def is_instance_ended(self, instance_id: str) -> bool:
        return self.get_instance_end(instance_id) is not None

    @abc.abstractmethod
    def get_variables(self, instance_id: str) -> Dict[str, Any]:
        ...

    @abc.abstractmethod
    def query_tasks_for_user(self, user_id: str, first: int, max_results: int) -> List[EngineTask]:
        """Open tasks the user is assigned to or a candidate for, newest first."""

    @abc.abstractmethod
    def count_tasks_for_user(self, user_id: str) -> int:
        ...

    @abc.abstractmethod
    def query_finished_tasks_for_user(self, user_id: str, first: int, max_results: int) -> List[HistoricTask]:
        """Finished tasks assigned to the user, most recently ended first."""

    @abc.abstractmethod
    def count_finished_tasks_for_user(self, user_id: str) -> int:
        ...

    @abc.abstractmethod
    def get_history(self, instance_id: str) -> List[HistoricTask]:
        """All tasks of an instance in start order, with their comments."""

    @abc.abstractmethod
    def count_active_definitions(self, process_key: str) -> int:
        ...


def _engine_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _parse_time(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        parsed = datetime.strptime(raw, "%Y-%m-%dT%H:%M:%S.%f%z")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class FlowableEngine(WorkflowEngine):
    """Flowable REST API client."""

    def __init__(
        self,
        base_url: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        verify: bool = True,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.verify = verify
        if username:
            self.session.auth = (username, password or "")

    @classmethod
    def from_config(cls, config) -> "FlowableEngine":
        return cls(
            base_url=config["ENGINE_BASE_URL"],
            username=config.get("ENGINE_USERNAME"),
            password=config.get("ENGINE_PASSWORD"),
            timeout=float(config.get("ENGINE_TIMEOUT_SECONDS", 10)),
            verify=config.get("ENGINE_VERIFY_TLS", True),
        )

    # -- transport ---------------------------------------------------------

    def _request(self, method: str, path: str, *, allow_not_found: bool = False, **kwargs) -> Optional[requests.Response]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.Timeout as exc:
            logger.error("Engine call %s %s timed out after %ss", method, path, self.timeout)
            raise EngineUnavailable(f"Workflow engine timed out on {method} {path}.") from exc
        except requests.RequestException as exc:
            logger.error("Engine call %s %s failed: %s", method, path, exc)
            raise EngineUnavailable(f"Workflow engine is unreachable: {exc}") from exc

        if response.status_code == 404 and allow_not_found:
            return None
        if response.status_code >= 500:
            raise EngineUnavailable(
                f"Workflow engine answered {response.status_code} on {method} {path}.",
                details={"status": response.status_code},
            )
        if response.status_code >= 400:
            raise EngineError(
                f"Workflow engine rejected {method} {path}: {response.text[:200]}",
                details={"status": response.status_code},
            )
        return response

    def _data(self, path: str, **params) -> Dict[str, Any]:
        return self._request("GET", path, params=params).json()

    # -- runtime -----------------------------------------------------------

    def start_instance(self, process_key: str, business_key: str, variables: Dict[str, Any]) -> str:
        payload = {
            "processDefinitionKey": process_key,
            "businessKey": business_key,
            "variables": [{"name": name, "value": _engine_value(value)} for name, value in variables.items()],
        }
        try:
            response = self._request("POST", "runtime/process-instances", json=payload)
        except EngineUnavailable:
            raise
        except EngineError as exc:
            if exc.details.get("status") in (400, 404):
                raise ProcessDefinitionNotFound(process_key) from exc
            raise
        instance_id = response.json()["id"]
        logger.info("Started engine instance %s for business key %s", instance_id, business_key)
        return instance_id

    def get_current_task(self, instance_id: str) -> Optional[EngineTask]:
        data = self._data("runtime/tasks", processInstanceId=instance_id, sort="createTime", order="asc")
        tasks = data.get("data") or []
        return self._task(tasks[0]) if tasks else None

    def add_comment(self, task_id: str, instance_id: str, text: str) -> None:
        self._request(
            "POST",
            f"runtime/tasks/{task_id}/comments",
            json={"message": text, "saveProcessInstanceId": True},
        )

    def complete_task(self, task_id: str) -> None:
        self._request("POST", f"runtime/tasks/{task_id}", json={"action": "complete"})

    def terminate_instance(self, instance_id: str, reason: str) -> None:
        self._request("DELETE", f"runtime/process-instances/{instance_id}", params={"deleteReason": reason})

    def move_to_activity(self, instance_id: str, from_activity_key: str, to_activity_key: str) -> None:
        self._request(
            "POST",
            f"runtime/process-instances/{instance_id}/change-state",
            json={"cancelActivityIds": [from_activity_key], "startActivityIds": [to_activity_key]},
        )

    def suspend_instance(self, instance_id: str) -> None:
        self._request("PUT", f"runtime/process-instances/{instance_id}", json={"action": "suspend"})

    def activate_instance(self, instance_id: str) -> None:
        self._request("PUT", f"runtime/process-instances/{instance_id}", json={"action": "activate"})

    def get_instance_end(self, instance_id: str) -> Optional[InstanceEnd]:
        response = self._request("GET", f"history/historic-process-instances/{instance_id}", allow_not_found=True)
        if response is None:
            return None
        data = response.json()
        if not data.get("endTime"):
            return None
        return InstanceEnd(ended_at=_parse_time(data["endTime"]), delete_reason=data.get("deleteReason"))

    def get_variables(self, instance_id: str) -> Dict[str, Any]:
        response = self._request("GET", f"runtime/process-instances/{instance_id}/variables", allow_not_found=True)
        if response is None:
            return {}
        return {item["name"]: item.get("value") for item in response.json()}

    # -- queries -----------------------------------------------------------

    def query_tasks_for_user(self, user_id: str, first: int, max_results: int) -> List[EngineTask]:
        data = self._data(
            "runtime/tasks",
            candidateOrAssigned=user_id,
            start=first,
            size=max_results,
            sort="createTime",
            order="desc",
        )
        return [self._task(item) for item in data.get("data") or []]

    def count_tasks_for_user(self, user_id: str) -> int:
        return int(self._data("runtime/tasks", candidateOrAssigned=user_id, size=1).get("total", 0))

    def query_finished_tasks_for_user(self, user_id: str, first: int, max_results: int) -> List[HistoricTask]:
        data = self._data(
            "history/historic-task-instances",
            taskAssignee=user_id,
            finished="true",
            start=first,
            size=max_results,
            sort="endTime",
            order="desc",
        )
        return [self._historic_task(item) for item in data.get("data") or []]

    def count_finished_tasks_for_user(self, user_id: str) -> int:
        data = self._data("history/historic-task-instances", taskAssignee=user_id, finished="true", size=1)
        return int(data.get("total", 0))

    def get_history(self, instance_id: str) -> List[HistoricTask]:
        data = self._data(
            "history/historic-task-instances",
            processInstanceId=instance_id,
            sort="startTime",
            order="asc",
            size=1000,
        )
        tasks = [self._historic_task(item) for item in data.get("data") or []]

        comments_response = self._request(
            "GET",
            f"history/historic-process-instances/{instance_id}/comments",
            allow_not_found=True,
        )
        comments_by_task: Dict[str, List[str]] = {}
        for comment in comments_response.json() if comments_response is not None else []:
            task_id = comment.get("taskId")
            if task_id:
                comments_by_task.setdefault(task_id, []).append(comment.get("message") or "")
        for task in tasks:
            task.comments = comments_by_task.get(task.id, [])
        return tasks

    def count_active_definitions(self, process_key: str) -> int:
        data = self._data("repository/process-definitions", key=process_key, suspended="false", size=1)
        return int(data.get("total", 0))

    # -- mapping -----------------------------------------------------------

    @staticmethod
    def _task(item: Dict[str, Any]) -> EngineTask:
        return EngineTask(
            id=item["id"],
            name=item.get("name"),
            assignee=item.get("assignee"),
            definition_key=item.get("taskDefinitionKey"),
            execution_id=item.get("executionId"),
            process_instance_id=item.get("processInstanceId"),
            created_at=_parse_time(item.get("createTime")),
            due_date=_parse_time(item.get("dueDate")),
        )

    @staticmethod
    def _historic_task(item: Dict[str, Any]) -> HistoricTask:
        return HistoricTask(
            id=item["id"],
            name=item.get("name"),
            assignee=item.get("assignee"),
            definition_key=item.get("taskDefinitionKey"),
            process_instance_id=item.get("processInstanceId"),
            started_at=_parse_time(item.get("startTime")),
            ended_at=_parse_time(item.get("endTime")),
            duration_ms=item.get("durationInMillis"),
            delete_reason=item.get("deleteReason"),
        )


def init_engine(app: Flask, engine: Optional[WorkflowEngine] = None) -> WorkflowEngine:
    """Attach the engine adapter to the application."""
    engine = engine or FlowableEngine.from_config(app.config)
    app.extensions[EXTENSION_KEY] = engine
    return engine


def get_engine() -> WorkflowEngine:
    return current_app.extensions[EXTENSION_KEY]
