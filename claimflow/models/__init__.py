"""Application data models exposed for easy imports."""
from claimflow import db  # noqa: F401
from .user import User, UserRole  # noqa: F401
from .workflow import (
    ALLOWED_TRANSITIONS,
    InstanceStatus,
    NodeStatus,
    WorkflowInstance,
    WorkflowNode,
)  # noqa: F401
from .template import WorkflowTemplate  # noqa: F401

__all__ = [
    "db",
    "User",
    "UserRole",
    "ALLOWED_TRANSITIONS",
    "InstanceStatus",
    "NodeStatus",
    "WorkflowInstance",
    "WorkflowNode",
    "WorkflowTemplate",
]
