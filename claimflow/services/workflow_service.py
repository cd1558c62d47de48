"""Workflow orchestration: the only place that talks to the BPM engine.

Every mutating operation follows the same shape: validate and load local
state, claim the node with a guarded update (flushed, not committed), call the
engine, then commit. A failure before or during the engine call rolls the
session back and leaves nothing behind. A local failure after the engine has
accepted the change is logged and repaired by ``reconcile_instance`` on the
next read.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from flask import current_app
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from claimflow import db
from claimflow.exceptions import (
    EngineError,
    InstanceNotFound,
    InvalidStatusTransition,
    NodeNotFound,
    TaskAlreadyProcessed,
    TaskNotFound,
    UserNotFound,
    ValidationError,
    WorkflowError,
)
from claimflow.models import InstanceStatus, NodeStatus, User, WorkflowInstance, WorkflowNode
from claimflow.services.approver_routing import ApproverRouter
from claimflow.services.engine import EngineTask, HistoricTask, WorkflowEngine, get_engine
from claimflow.services.results import BatchResult, Page
from claimflow.services.template_resolver import ProcessDefinitionKeyResolver
from claimflow.utils.helpers import isoformat, utcnow

logger = logging.getLogger(__name__)

NODE_DISPLAY_STATUS = {
    NodeStatus.PENDING: "pending",
    NodeStatus.IN_PROGRESS: "in-progress",
    NodeStatus.COMPLETED: "approved",
    NodeStatus.REJECTED: "rejected",
    NodeStatus.RETURNED: "pending",
}

BATCH_ACTIONS = ("approve", "reject")

REJECT_REASON_PREFIX = "Rejected: "
TERMINATE_REASON_PREFIX = "Terminated: "
RETURN_COMMENT_PREFIX = "Returned: "
# Flowable deletes a task moved away by change-state with this reason.
CHANGE_ACTIVITY_REASON_PREFIX = "Change activity"


def _require_comment(comment: Optional[str], action: str) -> str:
    if comment is None or not str(comment).strip():
        raise ValidationError(f"A comment is required to {action} a task.", details={"field": "comment"})
    return str(comment).strip()


def _parse_user_id(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("Cannot parse engine assignee id %r", raw)
        return None


def _parse_instance_id(raw: Any) -> int:
    try:
        return int(raw)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid workflow instance id {raw!r}.", details={"field": "instance_id"}) from exc


def _user_name(raw: Optional[str]) -> Optional[str]:
    user_id = _parse_user_id(raw)
    user = User.get(user_id) if user_id is not None else None
    return user.name if user else raw


class WorkflowService:
    """Coordinates approver routing, the engine and the local mirror."""

    def __init__(
        self,
        engine: Optional[WorkflowEngine] = None,
        router: Optional[ApproverRouter] = None,
        key_resolver: Optional[ProcessDefinitionKeyResolver] = None,
    ):
        self._engine = engine
        self.router = router or ApproverRouter()
        self._key_resolver = key_resolver

    @property
    def engine(self) -> WorkflowEngine:
        return self._engine or get_engine()

    @property
    def key_resolver(self) -> ProcessDefinitionKeyResolver:
        if self._key_resolver is not None:
            return self._key_resolver
        return ProcessDefinitionKeyResolver(self.engine, current_app.config.get("COMPAT_PROCESS_KEY"))

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start_workflow(
        self,
        business_type: str,
        business_id: str,
        applicant_id: int,
        amount: Any,
        title: Optional[str] = None,
        extra_vars: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Start an approval instance for a business record.

        Returns the already-open instance when one exists for the same
        business record, including when a concurrent start wins the race.
        """
        if not business_type or not business_id:
            raise ValidationError("Business type and business id are required.", details={"field": "business_id"})

        applicant = User.get(applicant_id)
        if applicant is None:
            raise UserNotFound(applicant_id)
        if not applicant.is_active:
            raise ValidationError(
                f"Applicant {applicant_id} is not an active employee.",
                details={"field": "applicant_id", "applicant_id": applicant_id},
            )

        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"Invalid claim amount {amount!r}.", details={"field": "amount"}) from exc
        if amount < 0:
            raise ValidationError("Claim amount cannot be negative.", details={"field": "amount"})

        existing = self._live_instance(business_type, business_id)
        if existing is not None:
            logger.warning("Instance %s already open for %s:%s, returning it", existing.id, business_type, business_id)
            return existing.to_dict()

        chain = self.router.resolve_chain(applicant, amount)
        process_key = self.key_resolver.resolve(business_type)

        variables: Dict[str, Any] = {
            "applicantId": applicant.id,
            "applicantName": applicant.name,
            "department": applicant.department,
            **chain.to_variables(),
            "amount": amount,
            "businessType": business_type,
            "businessId": business_id,
        }
        if extra_vars:
            variables.update(extra_vars)

        # Placeholder reserves the (business_type, business_id) slot.
        instance = WorkflowInstance(
            business_type=business_type,
            business_id=business_id,
            title=title,
            status=InstanceStatus.CREATED,
            applicant_id=applicant.id,
            applicant_name=applicant.name,
        )
        db.session.add(instance)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            existing = self._live_instance(business_type, business_id)
            if existing is None:
                raise
            logger.warning("Concurrent start for %s:%s, returning instance %s", business_type, business_id, existing.id)
            return existing.to_dict()
        placeholder_id = instance.id

        try:
            engine_instance_id = self.engine.start_instance(process_key, business_id, variables)
        except Exception:
            logger.exception("Engine start failed for %s:%s, removing placeholder %s", business_type, business_id, placeholder_id)
            self._discard_placeholder(placeholder_id)
            raise

        instance.engine_instance_id = engine_instance_id
        instance.transition_to(InstanceStatus.RUNNING)
        instance.snapshot_variables(variables)
        db.session.commit()
        logger.info(
            "Started workflow %s (engine %s) for %s:%s with process %s",
            instance.id,
            engine_instance_id,
            business_type,
            business_id,
            process_key,
        )

        self._sync_safely(instance)
        return instance.to_dict()

    def _live_instance(self, business_type: str, business_id: str) -> Optional[WorkflowInstance]:
        """The open instance of a business record, after clearing a stale placeholder.

        A placeholder that never received an engine id within
        ``PLACEHOLDER_TIMEOUT_SECONDS`` belongs to a start that died between
        reserving the slot and reaching the engine.
        """
        existing = WorkflowInstance.find_open(business_type, business_id)
        if existing is None or not self._is_stale_placeholder(existing):
            return existing
        logger.warning(
            "Discarding stale placeholder %s for %s:%s started at %s",
            existing.id,
            business_type,
            business_id,
            existing.started_at,
        )
        self._discard_placeholder(existing.id)
        return WorkflowInstance.find_open(business_type, business_id)

    @staticmethod
    def _is_stale_placeholder(instance: WorkflowInstance) -> bool:
        if instance.status != InstanceStatus.CREATED or instance.engine_instance_id:
            return False
        timeout = timedelta(seconds=float(current_app.config.get("PLACEHOLDER_TIMEOUT_SECONDS", 30)))
        return instance.started_at is not None and utcnow() - instance.started_at > timeout

    def _discard_placeholder(self, instance_id: int) -> None:
        try:
            db.session.rollback()
            db.session.execute(
                delete(WorkflowInstance)
                .where(
                    WorkflowInstance.id == instance_id,
                    WorkflowInstance.status == InstanceStatus.CREATED,
                    WorkflowInstance.engine_instance_id.is_(None),
                )
                .execution_options(synchronize_session="fetch")
            )
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not remove placeholder instance %s", instance_id)

    # ------------------------------------------------------------------
    # Task actions
    # ------------------------------------------------------------------

    def approve(self, instance_id: Optional[int], task_id: str, comment: Optional[str] = None) -> Dict[str, Any]:
        node = self._open_node(instance_id, task_id)
        instance = node.instance
        engine_instance_id = instance.engine_instance_id
        comment = comment.strip() if comment else None

        if not node.claim(NodeStatus.COMPLETED, comment):
            db.session.rollback()
            raise TaskAlreadyProcessed(task_id)

        try:
            if comment:
                self.engine.add_comment(task_id, engine_instance_id, comment)
            self.engine.complete_task(task_id)
        except Exception:
            db.session.rollback()
            raise

        self._commit_after_engine("approve", task_id)
        self._sync_safely(instance)
        logger.info("Task %s approved on instance %s", task_id, instance.id)
        return self._action_result(node, instance)

    def reject(self, instance_id: Optional[int], task_id: str, comment: Optional[str]) -> Dict[str, Any]:
        comment = _require_comment(comment, "reject")
        node = self._open_node(instance_id, task_id)
        instance = node.instance
        engine_instance_id = instance.engine_instance_id

        if not node.claim(NodeStatus.REJECTED, comment):
            db.session.rollback()
            raise TaskAlreadyProcessed(task_id)

        try:
            self.engine.add_comment(task_id, engine_instance_id, comment)
            self.engine.terminate_instance(engine_instance_id, f"{REJECT_REASON_PREFIX}{comment}")
        except Exception:
            db.session.rollback()
            raise

        instance.transition_to(InstanceStatus.REJECTED)
        self._commit_after_engine("reject", task_id)
        logger.info("Task %s rejected, instance %s closed", task_id, instance.id)
        return self._action_result(node, instance)

    def return_to(
        self,
        instance_id: Optional[int],
        task_id: str,
        target_node_key: Optional[str],
        comment: Optional[str],
    ) -> Dict[str, Any]:
        comment = _require_comment(comment, "return")
        if not target_node_key or not target_node_key.strip():
            raise ValidationError("A target node is required to return a task.", details={"field": "target_node_key"})
        target_node_key = target_node_key.strip()

        node = self._open_node(instance_id, task_id)
        instance = node.instance
        engine_instance_id = instance.engine_instance_id
        from_key = node.node_key

        returnable = {candidate.node_key for candidate in WorkflowNode.completed_before(node)}
        if target_node_key not in returnable:
            raise ValidationError(
                f"Node '{target_node_key}' is not a completed earlier step of this workflow.",
                details={"field": "target_node_key", "task_id": task_id, "returnable": sorted(returnable)},
            )

        text = f"{RETURN_COMMENT_PREFIX}{comment}"
        if not node.claim(NodeStatus.RETURNED, text, is_returned=True):
            db.session.rollback()
            raise TaskAlreadyProcessed(task_id)

        try:
            self.engine.add_comment(task_id, engine_instance_id, text)
            self.engine.move_to_activity(engine_instance_id, from_key, target_node_key)
        except Exception:
            db.session.rollback()
            raise

        self._commit_after_engine("return", task_id)
        self._sync_safely(instance)
        logger.info("Task %s returned to %s on instance %s", task_id, target_node_key, instance.id)
        return self._action_result(node, instance)

    def get_returnable_nodes(self, node_id: int) -> List[Dict[str, Any]]:
        node = WorkflowNode.get(node_id)
        if node is None:
            raise NodeNotFound(node_id)
        return [
            {
                "node_id": candidate.id,
                "node_key": candidate.node_key,
                "node_name": candidate.node_name,
                "assignee_name": candidate.assignee_name,
                "approved_at": isoformat(candidate.approved_at) or "",
            }
            for candidate in WorkflowNode.completed_before(node)
        ]

    def batch_approve(self, items: Iterable[Mapping[str, Any]]) -> BatchResult:
        """Apply approve/reject actions one by one; a bad item never stops the batch."""
        items = list(items)
        result = BatchResult(total_count=len(items), operation_type="BATCH_APPROVAL")

        for row_index, item in enumerate(items, start=1):
            task_id = item.get("task_id")
            action = str(item.get("action") or "").strip().lower()
            try:
                if not task_id:
                    raise ValidationError("task_id is required.", details={"field": "task_id"})
                if action == "approve":
                    self.approve(None, task_id, item.get("comment"))
                elif action == "reject":
                    self.reject(None, task_id, item.get("comment"))
                else:
                    raise ValidationError(
                        f"Unsupported action '{action}', expected one of {', '.join(BATCH_ACTIONS)}.",
                        details={"field": "action"},
                    )
                result.add_success(task_id)
            except WorkflowError as exc:
                db.session.rollback()
                field_name = exc.details.get("field")
                logger.warning("Batch item %s (task %s) failed: %s", row_index, task_id, exc.message)
                result.add_failure(
                    task_id,
                    f"Task {task_id}: {exc.message}",
                    row_index=row_index,
                    field_name=field_name,
                    original_value=action if field_name == "action" else None,
                )
            except Exception as exc:
                db.session.rollback()
                logger.exception("Batch item %s (task %s) failed unexpectedly", row_index, task_id)
                result.add_failure(task_id, f"Task {task_id}: {exc}", row_index=row_index)

        logger.info("Batch approval finished: %s succeeded, %s failed", result.success_count, result.failure_count)
        return result

    # ------------------------------------------------------------------
    # Administrative transitions
    # ------------------------------------------------------------------

    def suspend_workflow(self, instance_id: int) -> Dict[str, Any]:
        instance = self._instance(instance_id)
        self._check_transition(instance, InstanceStatus.SUSPENDED)
        self.engine.suspend_instance(instance.engine_instance_id)
        instance.transition_to(InstanceStatus.SUSPENDED)
        self._commit_after_engine("suspend", instance.engine_instance_id)
        return instance.to_dict()

    def resume_workflow(self, instance_id: int) -> Dict[str, Any]:
        instance = self._instance(instance_id)
        if instance.status != InstanceStatus.SUSPENDED:
            raise InvalidStatusTransition(instance.id, instance.status.value, InstanceStatus.RUNNING.value)
        self.engine.activate_instance(instance.engine_instance_id)
        instance.transition_to(InstanceStatus.RUNNING)
        self._commit_after_engine("resume", instance.engine_instance_id)
        return instance.to_dict()

    def terminate_workflow(self, instance_id: int, reason: Optional[str]) -> Dict[str, Any]:
        reason = _require_comment(reason, "terminate")
        instance = self._instance(instance_id)
        self._check_transition(instance, InstanceStatus.TERMINATED)
        self.engine.terminate_instance(instance.engine_instance_id, f"{TERMINATE_REASON_PREFIX}{reason}")
        instance.transition_to(InstanceStatus.TERMINATED)
        self._commit_after_engine("terminate", instance.engine_instance_id)
        return instance.to_dict()

    def reconcile_instance(self, instance_id: int) -> Dict[str, Any]:
        """Re-derive the local mirror of an instance from the engine."""
        instance = self._instance(instance_id)
        self._sync_instance_state(instance)
        db.session.commit()
        return instance.to_dict()

    def purge_instance(self, instance_id: int) -> None:
        """Administrative reset: delete an instance and all of its nodes."""
        instance = self._instance(instance_id)
        logger.warning("Purging workflow instance %s (%s:%s)", instance.id, instance.business_type, instance.business_id)
        db.session.delete(instance)
        db.session.commit()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_instance(self, instance_id: int) -> Dict[str, Any]:
        instance = self._instance(instance_id)
        if instance.status == InstanceStatus.RUNNING:
            self._sync_safely(instance)

        detail = instance.to_dict()
        nodes = WorkflowNode.for_instance(instance.id)
        detail["nodes"] = [node.to_dict() for node in nodes]
        detail["progress"] = self.progress(nodes)
        detail["variables"] = instance.variables or {}
        if instance.status == InstanceStatus.RUNNING and instance.engine_instance_id:
            try:
                detail["variables"] = self.engine.get_variables(instance.engine_instance_id)
            except EngineError:
                logger.warning("Live variables unavailable for instance %s, using snapshot", instance.id)
        return detail

    @staticmethod
    def progress(nodes: List[WorkflowNode]) -> int:
        """Percentage of steps approved; returned steps never count."""
        if not nodes:
            return 0
        done = sum(1 for node in nodes if node.status == NodeStatus.COMPLETED and not node.is_returned)
        return int(done * 100 / len(nodes))

    def list_instances(
        self,
        status: Optional[str] = None,
        applicant_id: Optional[int] = None,
        page: int = 1,
        per_page: Optional[int] = None,
    ) -> Page:
        per_page = per_page or current_app.config.get("DEFAULT_PAGE_SIZE", 20)
        query = WorkflowInstance.query
        if status:
            try:
                query = query.filter(WorkflowInstance.status == InstanceStatus[status.upper()])
            except KeyError as exc:
                raise ValidationError(f"Unknown instance status '{status}'.", details={"field": "status"}) from exc
        if applicant_id is not None:
            query = query.filter(WorkflowInstance.applicant_id == applicant_id)

        total = query.count()
        rows = query.order_by(WorkflowInstance.id.desc()).offset((page - 1) * per_page).limit(per_page).all()
        return Page(items=[row.to_dict() for row in rows], page=page, per_page=per_page, total=total)

    def get_history(self, instance_id: int) -> List[Dict[str, Any]]:
        instance = self._instance(instance_id)
        if not instance.engine_instance_id:
            return []

        nodes = {node.task_id: node for node in WorkflowNode.for_instance(instance.id)}
        history = []
        for task in self.engine.get_history(instance.engine_instance_id):
            entry = {
                "task_id": task.id,
                "task_name": task.name,
                "node_key": task.definition_key,
                "assignee": task.assignee,
                "started_at": isoformat(task.started_at),
                "ended_at": isoformat(task.ended_at),
                "duration_ms": task.duration_ms,
                "delete_reason": task.delete_reason,
                "comment": task.comments[0] if task.comments else None,
            }
            assignee_id = _parse_user_id(task.assignee)
            assignee = User.get(assignee_id) if assignee_id is not None else None
            if assignee is not None:
                entry["assignee_name"] = assignee.name
                entry["assignee_department"] = assignee.department
            node = nodes.get(task.id)
            if node is not None:
                entry["node_status"] = node.status.value
                entry["node_comment"] = node.comment
                entry["approved_at"] = isoformat(node.approved_at)
            history.append(entry)
        return history

    def get_pending_tasks(self, user_id: Optional[int], page: int = 1, per_page: Optional[int] = None) -> Page:
        """Open tasks for a user. Any failure yields an empty page."""
        per_page = per_page or current_app.config.get("DEFAULT_PAGE_SIZE", 20)
        if user_id is None:
            return Page.empty(page, per_page)
        try:
            first = (max(page, 1) - 1) * per_page
            tasks = self.engine.query_tasks_for_user(str(user_id), first, per_page)
            total = self.engine.count_tasks_for_user(str(user_id))
            items = [self._pending_item(task, user_id) for task in tasks]
        except Exception:
            logger.exception("Failed to load pending tasks for user %s", user_id)
            return Page.empty(page, per_page)
        return Page(items=items, page=page, per_page=per_page, total=total)

    def get_handled_tasks(self, user_id: Optional[int], page: int = 1, per_page: Optional[int] = None) -> Page:
        """Finished tasks of a user. Any failure yields an empty page."""
        per_page = per_page or current_app.config.get("DEFAULT_PAGE_SIZE", 20)
        if user_id is None:
            return Page.empty(page, per_page)
        try:
            first = (max(page, 1) - 1) * per_page
            tasks = self.engine.query_finished_tasks_for_user(str(user_id), first, per_page)
            total = self.engine.count_finished_tasks_for_user(str(user_id))
            items = [self._handled_item(task) for task in tasks]
        except Exception:
            logger.exception("Failed to load handled tasks for user %s", user_id)
            return Page.empty(page, per_page)
        return Page(items=items, page=page, per_page=per_page, total=total)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _instance(self, instance_id: int) -> WorkflowInstance:
        instance = WorkflowInstance.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    @staticmethod
    def _check_transition(instance: WorkflowInstance, target: InstanceStatus) -> None:
        if not instance.can_transition_to(target):
            raise InvalidStatusTransition(instance.id, instance.status.value, target.value)

    def _open_node(self, instance_id: Optional[int], task_id: str) -> WorkflowNode:
        if instance_id is not None:
            instance_id = _parse_instance_id(instance_id)
        node = WorkflowNode.find_by_task_id(task_id)
        if node is None:
            raise TaskNotFound(task_id)
        if instance_id is not None and node.instance_id != instance_id:
            raise ValidationError(
                f"Task {task_id} does not belong to workflow instance {instance_id}.",
                details={"task_id": task_id, "instance_id": instance_id},
            )
        if not node.is_open:
            raise TaskAlreadyProcessed(task_id, node.status.value)
        instance = node.instance
        if instance.status != InstanceStatus.RUNNING:
            raise ValidationError(
                f"Workflow instance {instance.id} is {instance.status.value}, not RUNNING.",
                details={"instance_id": instance.id, "task_id": task_id},
            )
        return node

    def _commit_after_engine(self, action: str, reference: Optional[str]) -> None:
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception(
                "Engine accepted %s for %s but the local mirror was not saved; it will be reconciled on next read",
                action,
                reference,
            )

    def _sync_safely(self, instance: WorkflowInstance) -> None:
        try:
            self._sync_instance_state(instance)
            db.session.commit()
        except (EngineError, InvalidStatusTransition, SQLAlchemyError):
            db.session.rollback()
            logger.exception("Could not refresh instance %s from the engine; will reconcile on next read", instance.id)

    def _sync_instance_state(self, instance: WorkflowInstance) -> None:
        if not instance.engine_instance_id or instance.is_terminal:
            return
        if instance.status == InstanceStatus.CREATED:
            instance.transition_to(InstanceStatus.RUNNING)

        end = self.engine.get_instance_end(instance.engine_instance_id)
        if end is not None:
            self._close_finished_nodes(instance, current_task_id=None)
            status = self._end_status(end.delete_reason)
            instance.record_engine_end(status)
            logger.info("Workflow instance %s ended in the engine as %s", instance.id, status.value)
            return

        task = self.engine.get_current_task(instance.engine_instance_id)
        self._close_finished_nodes(instance, current_task_id=task.id if task else None)
        if task is not None:
            self._record_task(instance, task)

    @staticmethod
    def _end_status(delete_reason: Optional[str]) -> InstanceStatus:
        if not delete_reason:
            return InstanceStatus.COMPLETED
        if delete_reason.startswith(REJECT_REASON_PREFIX):
            return InstanceStatus.REJECTED
        return InstanceStatus.TERMINATED

    def _close_finished_nodes(self, instance: WorkflowInstance, current_task_id: Optional[str]) -> None:
        """Apply engine history to open nodes whose task is no longer current."""
        stale = [
            node
            for node in WorkflowNode.for_instance(instance.id)
            if node.is_open and node.task_id != current_task_id
        ]
        if not stale:
            return

        finished = {task.id: task for task in self.engine.get_history(instance.engine_instance_id)}
        for node in stale:
            task = finished.get(node.task_id)
            if task is None or task.ended_at is None:
                continue
            outcome = self._node_outcome(task)
            if outcome is None:
                logger.info("Task %s was cancelled in the engine (%s), node %s left as is", task.id, task.delete_reason, node.id)
                continue
            node.status, node.comment = outcome
            node.is_returned = node.status == NodeStatus.RETURNED
            node.approved_at = task.ended_at
            logger.info("Closed node %s (task %s) as %s from engine history", node.id, task.id, node.status.value)

    @staticmethod
    def _node_outcome(task: HistoricTask) -> Optional[Tuple[NodeStatus, Optional[str]]]:
        comment = task.comments[0] if task.comments else None
        reason = task.delete_reason
        if (comment or "").startswith(RETURN_COMMENT_PREFIX) or (reason or "").startswith(CHANGE_ACTIVITY_REASON_PREFIX):
            return NodeStatus.RETURNED, comment
        if not reason:
            return NodeStatus.COMPLETED, comment
        if reason.startswith(REJECT_REASON_PREFIX):
            return NodeStatus.REJECTED, reason[len(REJECT_REASON_PREFIX):]
        return None

    def _record_task(self, instance: WorkflowInstance, task: EngineTask) -> WorkflowNode:
        assignee_id = _parse_user_id(task.assignee)
        assignee = User.get(assignee_id) if assignee_id is not None else None

        instance.current_node_name = task.name
        instance.current_assignee = assignee.name if assignee else task.assignee

        node = WorkflowNode.find_by_task_id(task.id)
        if node is None:
            node = WorkflowNode(
                instance_id=instance.id,
                task_id=task.id,
                node_key=task.definition_key,
                node_name=task.name,
                status=NodeStatus.PENDING,
                assignee_id=assignee_id,
                assignee_name=assignee.name if assignee else None,
                execution_id=task.execution_id,
                due_date=task.due_date,
            )
            db.session.add(node)
            logger.info("Recorded task %s (%s) for instance %s", task.id, task.name, instance.id)
        return node

    @staticmethod
    def _action_result(node: WorkflowNode, instance: WorkflowInstance) -> Dict[str, Any]:
        return {"node": node.to_dict(), "instance": instance.to_dict()}

    def _pending_item(self, task: EngineTask, user_id: int) -> Dict[str, Any]:
        instance = WorkflowInstance.find_by_engine_id(task.process_instance_id) if task.process_instance_id else None
        node = WorkflowNode.find_by_task_id(task.id)
        variables = (instance.variables or {}) if instance else {}

        item: Dict[str, Any] = {
            "task_id": task.id,
            "engine_instance_id": task.process_instance_id,
            "task_name": task.name,
            "node_key": task.definition_key,
            "created_at": isoformat(task.created_at),
            "due_date": isoformat(task.due_date),
            "amount": variables.get("amount"),
            "instance_id": None,
            "node_id": None,
            "title": None,
            "business_type": variables.get("businessType"),
            "business_id": variables.get("businessId"),
            "applicant_name": variables.get("applicantName"),
            "department": None,
        }
        if instance is not None:
            item.update(
                instance_id=instance.id,
                title=instance.title,
                business_type=instance.business_type,
                business_id=instance.business_id,
                applicant_name=instance.applicant_name,
                department=instance.applicant.department if instance.applicant else None,
            )
        if node is not None:
            item.update(
                node_id=node.id,
                status=NODE_DISPLAY_STATUS.get(node.status, "pending"),
                delegated=node.proxy_id is not None and node.proxy_id == user_id,
                assignee=node.assignee_name or _user_name(task.assignee),
            )
        else:
            item.update(status="pending", delegated=False, assignee=_user_name(task.assignee))
        return item

    def _handled_item(self, task: HistoricTask) -> Dict[str, Any]:
        instance = WorkflowInstance.find_by_engine_id(task.process_instance_id) if task.process_instance_id else None
        node = WorkflowNode.find_by_task_id(task.id)

        item: Dict[str, Any] = {
            "task_id": task.id,
            "engine_instance_id": task.process_instance_id,
            "task_name": task.name,
            "node_key": task.definition_key,
            "created_at": isoformat(task.started_at),
            "approved_at": isoformat(task.ended_at),
            "instance_id": None,
            "node_id": None,
            "status": None,
            "comment": None,
        }
        if instance is not None:
            variables = instance.variables or {}
            item.update(
                instance_id=instance.id,
                title=instance.title,
                applicant_name=instance.applicant_name,
                business_type=instance.business_type,
                business_id=instance.business_id,
                amount=variables.get("amount"),
            )
        if node is not None:
            item.update(
                node_id=node.id,
                status=NODE_DISPLAY_STATUS.get(node.status, "pending"),
                node_status=node.status.value,
                comment=node.comment,
                is_returned=node.is_returned,
            )
        return item


workflow_service = WorkflowService()
