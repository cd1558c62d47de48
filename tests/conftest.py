import itertools
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytest

from claimflow import create_app, db
from claimflow.exceptions import EngineError, ProcessDefinitionNotFound
from claimflow.models import User, UserRole, WorkflowTemplate
from claimflow.services.engine import EngineTask, HistoricTask, InstanceEnd, WorkflowEngine
from claimflow.services.workflow_service import WorkflowService

APPROVAL_STEPS = (
    ("managerApproval", "Line manager approval", "managerId"),
    ("financeApproval", "Finance approval", "financeManagerId"),
    ("complianceApproval", "Compliance approval", "complianceManagerId"),
    ("functionalHeadApproval", "Functional head approval", "functionalHeadId"),
    ("executiveApproval", "Executive approval", "executiveId"),
)


class FakeEngine(WorkflowEngine):
    """In-process engine running a linear approval chain.

    Each step is assigned to the user id held in the process variable named by
    the step. ``fail(method, error)`` makes the next calls of ``method`` raise.
    """

    def __init__(self, deployed_keys=("expenseApproval",), steps=APPROVAL_STEPS):
        self.deployed_keys = set(deployed_keys)
        self.steps = steps
        self.instances: Dict[str, Dict[str, Any]] = {}
        self.tasks: Dict[str, EngineTask] = {}
        self.finished: List[HistoricTask] = []
        self.comments: Dict[str, List[str]] = {}
        self.calls: List[Tuple[Any, ...]] = []
        self.failures: Dict[str, Exception] = {}
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, 9, 0)

    # -- test helpers ------------------------------------------------------

    def fail(self, method: str, error: Exception) -> None:
        self.failures[method] = error

    def recover(self, method: str) -> None:
        self.failures.pop(method, None)

    def calls_to(self, method: str) -> List[Tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == method]

    def current_task_id(self, instance_id: str) -> Optional[str]:
        return self.instances[instance_id]["current"]

    def _call(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        error = self.failures.get(method)
        if error is not None:
            raise error

    def _tick(self) -> datetime:
        self._clock += timedelta(minutes=1)
        return self._clock

    def _instance(self, instance_id: str) -> Dict[str, Any]:
        if instance_id not in self.instances:
            raise EngineError(f"Unknown process instance {instance_id}", details={"status": 404})
        return self.instances[instance_id]

    def _open_step(self, instance_id: str, index: int) -> None:
        instance = self.instances[instance_id]
        if index >= len(self.steps):
            instance["current"] = None
            instance["ended"] = True
            return
        key, name, variable = self.steps[index]
        assignee = instance["variables"].get(variable)
        task_id = f"task-{next(self._ids)}"
        self.tasks[task_id] = EngineTask(
            id=task_id,
            name=name,
            assignee=str(assignee) if assignee is not None else None,
            definition_key=key,
            execution_id=f"exec-{task_id}",
            process_instance_id=instance_id,
            created_at=self._tick(),
        )
        instance["current"] = task_id
        instance["step"] = index

    def _finish_current(self, instance: Dict[str, Any], delete_reason: Optional[str] = None) -> None:
        task = self.tasks.get(instance["current"]) if instance["current"] else None
        if task is None:
            return
        ended = self._tick()
        self.finished.append(
            HistoricTask(
                id=task.id,
                name=task.name,
                assignee=task.assignee,
                definition_key=task.definition_key,
                process_instance_id=task.process_instance_id,
                started_at=task.created_at,
                ended_at=ended,
                duration_ms=int((ended - task.created_at).total_seconds() * 1000),
                delete_reason=delete_reason,
            )
        )
        instance["current"] = None

    # -- WorkflowEngine ----------------------------------------------------

    def start_instance(self, process_key, business_key, variables):
        self._call("start_instance", process_key, business_key)
        if process_key not in self.deployed_keys:
            raise ProcessDefinitionNotFound(process_key)
        instance_id = f"proc-{next(self._ids)}"
        self.instances[instance_id] = {
            "process_key": process_key,
            "business_key": business_key,
            "variables": dict(variables),
            "current": None,
            "step": None,
            "ended": False,
            "suspended": False,
            "delete_reason": None,
        }
        self._open_step(instance_id, 0)
        return instance_id

    def get_current_task(self, instance_id):
        self._call("get_current_task", instance_id)
        instance = self._instance(instance_id)
        return self.tasks[instance["current"]] if instance["current"] else None

    def add_comment(self, task_id, instance_id, text):
        self._call("add_comment", task_id, instance_id, text)
        self.comments.setdefault(task_id, []).append(text)

    def complete_task(self, task_id):
        self._call("complete_task", task_id)
        task = self.tasks.get(task_id)
        instance = self.instances.get(task.process_instance_id) if task else None
        if instance is None or instance["current"] != task_id:
            raise EngineError(f"Task {task_id} is not active", details={"status": 404})
        if instance["suspended"]:
            raise EngineError(f"Process instance {task.process_instance_id} is suspended", details={"status": 409})
        step = instance["step"]
        self._finish_current(instance)
        self._open_step(task.process_instance_id, step + 1)

    def terminate_instance(self, instance_id, reason):
        self._call("terminate_instance", instance_id, reason)
        instance = self._instance(instance_id)
        self._finish_current(instance, delete_reason=reason)
        instance["ended"] = True
        instance["delete_reason"] = reason

    def move_to_activity(self, instance_id, from_activity_key, to_activity_key):
        self._call("move_to_activity", instance_id, from_activity_key, to_activity_key)
        instance = self._instance(instance_id)
        keys = [step[0] for step in self.steps]
        if to_activity_key not in keys:
            raise EngineError(f"Unknown activity {to_activity_key}", details={"status": 400})
        self._finish_current(instance, delete_reason=f"Change activity to {to_activity_key}")
        self._open_step(instance_id, keys.index(to_activity_key))

    def suspend_instance(self, instance_id):
        self._call("suspend_instance", instance_id)
        self._instance(instance_id)["suspended"] = True

    def activate_instance(self, instance_id):
        self._call("activate_instance", instance_id)
        self._instance(instance_id)["suspended"] = False

    def get_instance_end(self, instance_id):
        self._call("get_instance_end", instance_id)
        instance = self._instance(instance_id)
        if not instance["ended"]:
            return None
        return InstanceEnd(ended_at=self._clock, delete_reason=instance["delete_reason"])

    def get_variables(self, instance_id):
        self._call("get_variables", instance_id)
        return dict(self._instance(instance_id)["variables"])

    def _open_tasks_for(self, user_id):
        tasks = [
            self.tasks[instance["current"]]
            for instance in self.instances.values()
            if instance["current"] and self.tasks[instance["current"]].assignee == user_id
        ]
        return sorted(tasks, key=lambda task: task.created_at, reverse=True)

    def _finished_tasks_for(self, user_id):
        tasks = [task for task in self.finished if task.assignee == user_id]
        return sorted(tasks, key=lambda task: task.ended_at, reverse=True)

    def query_tasks_for_user(self, user_id, first, max_results):
        self._call("query_tasks_for_user", user_id, first, max_results)
        return self._open_tasks_for(user_id)[first:first + max_results]

    def count_tasks_for_user(self, user_id):
        self._call("count_tasks_for_user", user_id)
        return len(self._open_tasks_for(user_id))

    def query_finished_tasks_for_user(self, user_id, first, max_results):
        self._call("query_finished_tasks_for_user", user_id, first, max_results)
        return self._finished_tasks_for(user_id)[first:first + max_results]

    def count_finished_tasks_for_user(self, user_id):
        self._call("count_finished_tasks_for_user", user_id)
        return len(self._finished_tasks_for(user_id))

    def get_history(self, instance_id):
        self._call("get_history", instance_id)
        instance = self._instance(instance_id)
        history = [task for task in self.finished if task.process_instance_id == instance_id]
        if instance["current"]:
            task = self.tasks[instance["current"]]
            history.append(
                HistoricTask(
                    id=task.id,
                    name=task.name,
                    assignee=task.assignee,
                    definition_key=task.definition_key,
                    process_instance_id=instance_id,
                    started_at=task.created_at,
                )
            )
        for task in history:
            task.comments = list(self.comments.get(task.id, []))
        return sorted(history, key=lambda task: task.started_at)

    def count_active_definitions(self, process_key):
        self._call("count_active_definitions", process_key)
        return 1 if process_key in self.deployed_keys else 0


@pytest.fixture
def make_engine():
    return FakeEngine


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def app(engine):
    app = create_app("testing", engine=engine)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _user(user_id, name, email, department, role=UserRole.EMPLOYEE, title=None, manager_id=None, is_active=True):
    return User(
        id=user_id,
        name=name,
        email=email,
        department=department,
        role=role,
        title=title,
        manager_id=manager_id,
        is_active=is_active,
    )


@pytest.fixture
def org(app):
    """A small organization chart keyed by nickname."""
    users = {
        "admin": _user(1, "Ada Admin", "admin@claimflow.local", "Administration", UserRole.ADMIN),
        "ceo": _user(2, "Cora Chen", "cora.chen@claimflow.local", "Executive", UserRole.MANAGER, "CEO"),
        "coo": _user(3, "Omar Odell", "omar.odell@claimflow.local", "Operations", UserRole.MANAGER, "COO"),
        "cfo": _user(4, "Fiona Fisher", "fiona.fisher@claimflow.local", "Finance", UserRole.MANAGER, "CFO"),
        "cco": _user(5, "Carl Kent", "carl.kent@claimflow.local", "Compliance", UserRole.MANAGER, "CCO"),
        "cto": _user(6, "Tess Tran", "tess.tran@claimflow.local", "Technology", UserRole.MANAGER, "CTO"),
        "tech_manager": _user(
            7, "Mia Moore", "mia.moore@claimflow.local", "Technology", UserRole.MANAGER, "Engineering Manager", 6
        ),
        "engineer": _user(8, "Eli Evans", "eli.evans@claimflow.local", "Technology", manager_id=7),
        "accountant": _user(9, "Fay Fox", "fay.fox@claimflow.local", "Finance", manager_id=10),
        "former_manager": _user(
            10, "Ian Idle", "ian.idle@claimflow.local", "Finance", UserRole.MANAGER, "Controller", is_active=False
        ),
    }
    db.session.add_all(users.values())
    db.session.commit()
    return users


@pytest.fixture
def expense_template(app):
    template = WorkflowTemplate(
        name="Expense approval",
        process_key="expenseApproval",
        type="expense",
        status="active",
        is_deployed=True,
    )
    db.session.add(template)
    db.session.commit()
    return template


@pytest.fixture
def service(engine, org, expense_template):
    return WorkflowService(engine=engine)
