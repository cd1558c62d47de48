"""Error taxonomy for the approval workflow layer.

Every error carries a message, a stable ``error_code`` and a ``details`` dict
with the identifiers needed to explain the failure (task id, instance id,
reason). ``status_code`` is the HTTP status the approvals blueprint answers
with.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class WorkflowError(Exception):
    """Base class for all claimflow errors."""

    status_code = 500

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.error_code, "details": self.details}


class ValidationError(WorkflowError):
    """Caller supplied missing or malformed input."""

    status_code = 400


class NotFoundError(WorkflowError):
    status_code = 404


class UserNotFound(NotFoundError):
    def __init__(self, user_id: Any):
        super().__init__(f"User {user_id} not found.", details={"user_id": user_id})


class InstanceNotFound(NotFoundError):
    def __init__(self, instance_id: Any):
        super().__init__(f"Workflow instance {instance_id} not found.", details={"instance_id": instance_id})


class TaskNotFound(NotFoundError):
    def __init__(self, task_id: Any):
        super().__init__(f"Task {task_id} not found.", details={"task_id": task_id})


class NodeNotFound(NotFoundError):
    def __init__(self, node_id: Any):
        super().__init__(f"Workflow node {node_id} not found.", details={"node_id": node_id})


class NoApproverFound(WorkflowError):
    """Routing exhausted every fallback for a required role."""

    status_code = 422

    def __init__(self, role: str, applicant_id: Any = None):
        super().__init__(
            f"No approver could be resolved for role '{role}'.",
            details={"role": role, "applicant_id": applicant_id},
        )
        self.role = role


class TaskAlreadyProcessed(WorkflowError):
    status_code = 409

    def __init__(self, task_id: Any, status: Optional[str] = None):
        super().__init__(
            f"Task {task_id} has already been processed.",
            details={"task_id": task_id, "status": status},
        )


class InvalidStatusTransition(WorkflowError):
    status_code = 409

    def __init__(self, instance_id: Any, current: str, target: str):
        super().__init__(
            f"Workflow instance {instance_id} cannot move from {current} to {target}.",
            details={"instance_id": instance_id, "from": current, "to": target},
        )


class NoDeployedTemplate(WorkflowError):
    """No usable process definition exists for a business type."""

    status_code = 503

    def __init__(self, business_type: str, template_count: int, deployed_count: int):
        super().__init__(
            f"No deployed workflow template is available for business type '{business_type}'. "
            f"{template_count} template(s) exist, {deployed_count} of them deployed. "
            "Create and deploy a workflow template, then retry.",
            details={
                "business_type": business_type,
                "template_count": template_count,
                "deployed_count": deployed_count,
            },
        )


class EngineError(WorkflowError):
    """The external workflow engine refused or failed a request."""

    status_code = 502


class EngineUnavailable(EngineError):
    """Infrastructure failure or timeout talking to the engine."""

    status_code = 503


class ProcessDefinitionNotFound(EngineError):
    status_code = 503

    def __init__(self, process_key: str):
        super().__init__(
            f"No deployed process definition matches key '{process_key}'.",
            details={"process_key": process_key},
        )
