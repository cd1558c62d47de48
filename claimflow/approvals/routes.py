"""Approval workflow routes."""
from __future__ import annotations

import logging
from typing import Any, Dict

from flask import request

from claimflow.exceptions import ValidationError, WorkflowError
from claimflow.services.user_sync import sync_identity
from claimflow.services.workflow_service import workflow_service
from claimflow.utils.helpers import json_response, page_args

from . import approvals_bp

logger = logging.getLogger(__name__)


def _payload() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


@approvals_bp.errorhandler(WorkflowError)
def handle_workflow_error(error: WorkflowError) -> Any:
    if error.status_code >= 500:
        logger.error("%s: %s", error.error_code, error.message)
    return json_response(error.to_dict(), status=error.status_code)


@approvals_bp.route("", methods=["POST"])
def start_workflow() -> Any:
    """Start an approval workflow for a business record."""
    payload = _payload()
    missing = {"business_type", "business_id", "applicant_id", "amount"} - {
        key for key, value in payload.items() if value not in (None, "")
    }
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(sorted(missing))}", details={"fields": sorted(missing)})

    instance = workflow_service.start_workflow(
        business_type=payload["business_type"],
        business_id=str(payload["business_id"]),
        applicant_id=payload["applicant_id"],
        amount=payload["amount"],
        title=payload.get("title"),
        extra_vars=payload.get("variables"),
    )
    return json_response({"message": "Workflow started.", "instance": instance}, status=201)


@approvals_bp.route("", methods=["GET"])
def list_instances() -> Any:
    page, per_page = page_args()
    result = workflow_service.list_instances(
        status=request.args.get("status"),
        applicant_id=request.args.get("applicant_id", type=int),
        page=page,
        per_page=per_page,
    )
    return json_response(result.to_dict())


@approvals_bp.route("/<int:instance_id>", methods=["GET"])
def get_instance(instance_id: int) -> Any:
    return json_response({"instance": workflow_service.get_instance(instance_id)})


@approvals_bp.route("/<int:instance_id>", methods=["DELETE"])
def purge_instance(instance_id: int) -> Any:
    workflow_service.purge_instance(instance_id)
    return json_response({"message": f"Workflow instance {instance_id} purged."})


@approvals_bp.route("/<int:instance_id>/history", methods=["GET"])
def get_history(instance_id: int) -> Any:
    return json_response({"history": workflow_service.get_history(instance_id)})


@approvals_bp.route("/<int:instance_id>/reconcile", methods=["POST"])
def reconcile_instance(instance_id: int) -> Any:
    return json_response({"instance": workflow_service.reconcile_instance(instance_id)})


@approvals_bp.route("/<int:instance_id>/tasks/<task_id>/approve", methods=["POST"])
def approve_task(instance_id: int, task_id: str) -> Any:
    """Approve the current task of a workflow instance."""
    result = workflow_service.approve(instance_id, task_id, _payload().get("comment"))
    return json_response({"message": "Task approved.", **result})


@approvals_bp.route("/<int:instance_id>/tasks/<task_id>/reject", methods=["POST"])
def reject_task(instance_id: int, task_id: str) -> Any:
    """Reject a task; this ends the workflow."""
    result = workflow_service.reject(instance_id, task_id, _payload().get("comment"))
    return json_response({"message": "Task rejected.", **result})


@approvals_bp.route("/<int:instance_id>/tasks/<task_id>/return", methods=["POST"])
def return_task(instance_id: int, task_id: str) -> Any:
    """Send the workflow back to an earlier completed step."""
    payload = _payload()
    result = workflow_service.return_to(instance_id, task_id, payload.get("target_node_key"), payload.get("comment"))
    return json_response({"message": "Task returned.", **result})


@approvals_bp.route("/nodes/<int:node_id>/returnable", methods=["GET"])
def returnable_nodes(node_id: int) -> Any:
    return json_response({"nodes": workflow_service.get_returnable_nodes(node_id)})


@approvals_bp.route("/tasks/batch", methods=["POST"])
def batch_approve() -> Any:
    items = _payload().get("items")
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list.", details={"field": "items"})
    result = workflow_service.batch_approve(item for item in items if isinstance(item, dict))
    return json_response(result.to_dict())


@approvals_bp.route("/users/<int:user_id>/pending", methods=["GET"])
def pending_tasks(user_id: int) -> Any:
    page, per_page = page_args()
    return json_response(workflow_service.get_pending_tasks(user_id, page, per_page).to_dict())


@approvals_bp.route("/users/<int:user_id>/handled", methods=["GET"])
def handled_tasks(user_id: int) -> Any:
    page, per_page = page_args()
    return json_response(workflow_service.get_handled_tasks(user_id, page, per_page).to_dict())


@approvals_bp.route("/<int:instance_id>/suspend", methods=["POST"])
def suspend_workflow(instance_id: int) -> Any:
    return json_response({"instance": workflow_service.suspend_workflow(instance_id)})


@approvals_bp.route("/<int:instance_id>/resume", methods=["POST"])
def resume_workflow(instance_id: int) -> Any:
    return json_response({"instance": workflow_service.resume_workflow(instance_id)})


@approvals_bp.route("/<int:instance_id>/terminate", methods=["POST"])
def terminate_workflow(instance_id: int) -> Any:
    instance = workflow_service.terminate_workflow(instance_id, _payload().get("reason"))
    return json_response({"instance": instance})


@approvals_bp.route("/identity/sync", methods=["POST"])
def sync_user_identity() -> Any:
    """Upsert the local user for a freshly authenticated identity."""
    user = sync_identity(_payload())
    return json_response({"user": user.to_dict()})
