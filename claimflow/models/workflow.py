"""Local mirror of engine process instances and their task nodes."""
from __future__ import annotations

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import update

from claimflow import db
from claimflow.exceptions import InvalidStatusTransition
from claimflow.utils.helpers import isoformat, utcnow


class InstanceStatus(enum.Enum):
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    SUSPENDED = "SUSPENDED"
    TERMINATED = "TERMINATED"


class NodeStatus(enum.Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    RETURNED = "RETURNED"


TERMINAL_STATUSES = frozenset({InstanceStatus.COMPLETED, InstanceStatus.REJECTED, InstanceStatus.TERMINATED})

ALLOWED_TRANSITIONS = {
    InstanceStatus.CREATED: frozenset({InstanceStatus.RUNNING}),
    InstanceStatus.RUNNING: frozenset(
        {
            InstanceStatus.COMPLETED,
            InstanceStatus.REJECTED,
            InstanceStatus.TERMINATED,
            InstanceStatus.SUSPENDED,
        }
    ),
    InstanceStatus.SUSPENDED: frozenset({InstanceStatus.RUNNING}),
    InstanceStatus.COMPLETED: frozenset(),
    InstanceStatus.REJECTED: frozenset(),
    InstanceStatus.TERMINATED: frozenset(),
}

OPEN_NODE_STATUSES = (NodeStatus.PENDING, NodeStatus.IN_PROGRESS)


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    return value


class WorkflowInstance(db.Model):
    __tablename__ = "workflow_instances"
    # open_slot is 1 while the instance is live and NULL once terminal; NULLs
    # never collide, so only one live instance per business record fits.
    __table_args__ = (
        db.UniqueConstraint("business_type", "business_id", "open_slot", name="uq_workflow_instance_open_business"),
    )

    id = db.Column(db.Integer, primary_key=True)
    engine_instance_id = db.Column(db.String(64), unique=True, nullable=True, index=True)
    business_type = db.Column(db.String(50), nullable=False)
    business_id = db.Column(db.String(50), nullable=False)
    open_slot = db.Column(db.Integer, nullable=True, default=1)
    title = db.Column(db.String(200), nullable=True)
    status = db.Column(
        db.Enum(InstanceStatus, name="workflow_instance_status"),
        nullable=False,
        default=InstanceStatus.CREATED,
    )
    applicant_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True, index=True)
    applicant_name = db.Column(db.String(100), nullable=True)
    started_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    ended_at = db.Column(db.DateTime, nullable=True)
    current_node_name = db.Column(db.String(100), nullable=True)
    current_assignee = db.Column(db.String(100), nullable=True)
    variables = db.Column(db.JSON, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    applicant = db.relationship("User", lazy="joined")
    nodes = db.relationship(
        "WorkflowNode",
        back_populates="instance",
        lazy="selectin",
        order_by="WorkflowNode.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, target: InstanceStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def transition_to(self, target: InstanceStatus) -> None:
        if not self.can_transition_to(target):
            raise InvalidStatusTransition(self.id, self.status.value, target.value)
        self.status = target
        if target in TERMINAL_STATUSES:
            self._close()

    def record_engine_end(self, target: InstanceStatus) -> None:
        """Close a live instance the engine has already ended.

        The engine outcome wins over the local lifecycle, so any non-terminal
        status (a suspended one included) may move to ``target``.
        """
        if target not in TERMINAL_STATUSES or self.is_terminal:
            raise InvalidStatusTransition(self.id, self.status.value, target.value)
        self.status = target
        self._close()

    def _close(self) -> None:
        self.open_slot = None
        self.ended_at = utcnow()
        self.current_node_name = None
        self.current_assignee = None

    def snapshot_variables(self, variables: Dict[str, Any]) -> None:
        self.variables = _jsonable(variables)

    @classmethod
    def get(cls, instance_id: int) -> Optional["WorkflowInstance"]:
        return db.session.get(cls, instance_id)

    @classmethod
    def find_open(cls, business_type: str, business_id: str) -> Optional["WorkflowInstance"]:
        return cls.query.filter_by(business_type=business_type, business_id=business_id, open_slot=1).first()

    @classmethod
    def find_latest(cls, business_type: str, business_id: str) -> Optional["WorkflowInstance"]:
        return (
            cls.query.filter_by(business_type=business_type, business_id=business_id)
            .order_by(cls.id.desc())
            .first()
        )

    @classmethod
    def find_by_engine_id(cls, engine_instance_id: str) -> Optional["WorkflowInstance"]:
        return cls.query.filter_by(engine_instance_id=engine_instance_id).first()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "engine_instance_id": self.engine_instance_id,
            "business_type": self.business_type,
            "business_id": self.business_id,
            "title": self.title,
            "status": self.status.value if self.status else None,
            "applicant_id": self.applicant_id,
            "applicant_name": self.applicant_name,
            "started_at": isoformat(self.started_at),
            "ended_at": isoformat(self.ended_at),
            "current_node_name": self.current_node_name,
            "current_assignee": self.current_assignee,
        }

    def __repr__(self) -> str:
        return (
            f"<WorkflowInstance {self.business_type}:{self.business_id} "
            f"status={self.status.value if self.status else None}>"
        )


class WorkflowNode(db.Model):
    __tablename__ = "workflow_nodes"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(db.Integer, db.ForeignKey("workflow_instances.id"), nullable=False, index=True)
    task_id = db.Column(db.String(64), unique=True, nullable=False)
    node_key = db.Column(db.String(50), nullable=True)
    node_name = db.Column(db.String(100), nullable=True)
    status = db.Column(
        db.Enum(NodeStatus, name="workflow_node_status"),
        nullable=False,
        default=NodeStatus.PENDING,
    )
    assignee_id = db.Column(db.Integer, nullable=True, index=True)
    assignee_name = db.Column(db.String(100), nullable=True)
    proxy_id = db.Column(db.Integer, nullable=True)
    proxy_name = db.Column(db.String(100), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    comment = db.Column(db.String(500), nullable=True)
    is_returned = db.Column(db.Boolean, default=False, nullable=False)
    execution_id = db.Column(db.String(64), nullable=True)
    due_date = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    instance = db.relationship("WorkflowInstance", back_populates="nodes", lazy="joined")

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_NODE_STATUSES

    def claim(self, status: NodeStatus, comment: Optional[str], is_returned: bool = False) -> bool:
        """Move an open node to ``status`` with a guarded UPDATE.

        Returns False when another request already moved the node out of an
        open status. The change is flushed, not committed.
        """
        cls = type(self)
        result = db.session.execute(
            update(cls)
            .where(cls.id == self.id, cls.status.in_(OPEN_NODE_STATUSES))
            .values(
                status=status,
                comment=comment,
                approved_at=utcnow(),
                is_returned=is_returned,
                version_id=cls.version_id + 1,
            )
            .execution_options(synchronize_session=False)
        )
        db.session.expire(self)
        return result.rowcount == 1

    @classmethod
    def get(cls, node_id: int) -> Optional["WorkflowNode"]:
        return db.session.get(cls, node_id)

    @classmethod
    def find_by_task_id(cls, task_id: str) -> Optional["WorkflowNode"]:
        return cls.query.filter_by(task_id=task_id).first()

    @classmethod
    def for_instance(cls, instance_id: int) -> List["WorkflowNode"]:
        return cls.query.filter_by(instance_id=instance_id).order_by(cls.id.asc()).all()

    @classmethod
    def completed_before(cls, node: "WorkflowNode") -> List["WorkflowNode"]:
        return (
            cls.query.filter(
                cls.instance_id == node.instance_id,
                cls.status == NodeStatus.COMPLETED,
                cls.id < node.id,
            )
            .order_by(cls.id.asc())
            .all()
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "task_id": self.task_id,
            "node_key": self.node_key,
            "node_name": self.node_name,
            "status": self.status.value if self.status else None,
            "assignee_id": self.assignee_id,
            "assignee_name": self.assignee_name,
            "proxy_id": self.proxy_id,
            "proxy_name": self.proxy_name,
            "approved_at": isoformat(self.approved_at),
            "comment": self.comment,
            "is_returned": self.is_returned,
            "execution_id": self.execution_id,
            "due_date": isoformat(self.due_date),
        }

    def __repr__(self) -> str:
        return f"<WorkflowNode task_id={self.task_id} status={self.status.value if self.status else None}>"
