"""
Action Executor - The full approval action vocabulary

Every action runs the same pipeline:

1. Validate identity fields and action inputs (MISSING_* codes)
2. Load the instance; terminal instances are refused
3. Take the per-instance lock and compare versions
4. Find the step (stage instance)
5. Check permission, except for the administrative actions
6. Dispatch to the handler

Approve and reject go through ``ApprovalEngine.apply_decision`` so quorum,
veto and completion rules live in one place.
"""
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from .event_bus import EventBus, WorkflowEventHandler
from .instance_engine import ApprovalEngine, StageProgress
from ..config.settings import Settings
from ..domain.enums import (
    TERMINAL_INSTANCE_STATUSES, ActionType, ApprovalEventType, BypassDecision,
    Decision, EscalationKind, InstanceStatus, StageStatus, TaskStatus,
    WorkflowEventType
)
from ..domain.errors import (
    ActionNotAllowedError, ConcurrencyError, DomainError, InstanceNotFoundError,
    InstanceTerminalError, InvalidStateError, NotFoundError, NotRequesterError,
    StepNotFoundError, TaskNotPendingError, UnknownActionError, ValidationError
)
from ..domain.models import (
    ActionRequest, ActionResult, ApprovalEscalation, ApprovalInstance,
    ApprovalTask, ChangeRequest, HoldInfo, PermissionCheck, StageInstance
)
from ..utils.idgen import generate_escalation_id
from ..utils.logger import get_logger
from ..utils.time import ensure_utc, utc_now

logger = get_logger(__name__)


# Administrative actions bypass the assignee/allowed-actions check
SPECIAL_ACTIONS = frozenset({
    ActionType.RESUME,
    ActionType.RECALL,
    ActionType.WITHDRAW,
    ActionType.BYPASS,
    ActionType.REASSIGN,
    ActionType.COMMENT,
    ActionType.RELEASE,
})

# Special actions reserved for approval administrators; the user who placed
# a hold may still resume or release it
ADMIN_ACTIONS = frozenset({
    ActionType.BYPASS,
    ActionType.REASSIGN,
    ActionType.RESUME,
    ActionType.RELEASE,
})

# Actions a user may take without holding a pending task
NON_APPROVER_ACTIONS = frozenset({
    ActionType.ESCALATE,
    ActionType.HOLD,
    ActionType.WITHDRAW,
})

DEFAULT_AVAILABLE_ACTIONS = [
    ActionType.APPROVE,
    ActionType.REJECT,
    ActionType.DELEGATE,
    ActionType.REQUEST_CHANGES,
]

ACTION_EVENTS = {
    ActionType.APPROVE: WorkflowEventType.ACTION_APPROVE,
    ActionType.REJECT: WorkflowEventType.ACTION_REJECT,
    ActionType.REQUEST_CHANGES: WorkflowEventType.ACTION_REQUEST_CHANGES,
    ActionType.DELEGATE: WorkflowEventType.ACTION_DELEGATE,
    ActionType.ESCALATE: WorkflowEventType.ACTION_ESCALATE,
    ActionType.HOLD: WorkflowEventType.ACTION_HOLD,
    ActionType.RESUME: WorkflowEventType.ACTION_RESUME,
    ActionType.RECALL: WorkflowEventType.ACTION_RECALL,
    ActionType.WITHDRAW: WorkflowEventType.ACTION_WITHDRAW,
    ActionType.BYPASS: WorkflowEventType.ACTION_BYPASS,
    ActionType.REASSIGN: WorkflowEventType.ACTION_REASSIGN,
    ActionType.COMMENT: WorkflowEventType.ACTION_COMMENT,
    ActionType.RELEASE: WorkflowEventType.ACTION_RELEASE,
}


def _missing(message: str, error_code: str) -> ValidationError:
    return ValidationError(message, error_code=error_code)


class ActionExecutor:
    """
    Executes approval actions against an instance step

    Expected failures are returned as ``ActionResult(success=False)`` with
    an ``error_code``; nothing domain-related is raised to the caller.
    """

    def __init__(self, engine: ApprovalEngine, settings: Settings):
        self.engine = engine
        self.settings = settings
        self.instance_repo = engine.instance_repo
        self.event_repo = engine.event_repo
        self.directory_repo = engine.directory_repo
        self.event_bus: EventBus = engine.event_bus

        self._handlers: Dict[ActionType, Callable[..., ActionResult]] = {
            ActionType.APPROVE: self._approve,
            ActionType.REJECT: self._reject,
            ActionType.REQUEST_CHANGES: self._request_changes,
            ActionType.DELEGATE: self._delegate,
            ActionType.ESCALATE: self._escalate,
            ActionType.HOLD: self._hold,
            ActionType.RESUME: self._resume,
            ActionType.RECALL: self._recall,
            ActionType.WITHDRAW: self._withdraw,
            ActionType.BYPASS: self._bypass,
            ActionType.REASSIGN: self._reassign,
            ActionType.COMMENT: self._comment,
            ActionType.RELEASE: self._release,
        }

    def register_handler(self, handler: WorkflowEventHandler) -> None:
        """Subscribe to workflow events"""
        self.event_bus.register_handler(handler)

    # =========================================================================
    # Entry Point
    # =========================================================================

    def execute_action(self, request: ActionRequest) -> ActionResult:
        """Validate, lock, authorize and dispatch one action"""
        try:
            action = self._validate(request)

            instance = self.instance_repo.get_instance(request.tenant_id, request.instance_id)
            if instance is None:
                raise InstanceNotFoundError(f"Instance {request.instance_id} not found")
            if instance.status in TERMINAL_INSTANCE_STATUSES:
                raise InstanceTerminalError(
                    f"Instance is already {instance.status.value}",
                    details={"status": instance.status.value}
                )
            read_version = instance.version

            with self.engine.instance_lock(request.tenant_id, request.instance_id):
                instance = self.instance_repo.get_instance(request.tenant_id, request.instance_id)
                expected = request.expected_version if request.expected_version is not None else read_version
                if instance.version != expected:
                    raise ConcurrencyError(
                        "Instance was modified by another request",
                        details={"expected_version": expected, "actual_version": instance.version}
                    )
                if instance.status in TERMINAL_INSTANCE_STATUSES:
                    raise InstanceTerminalError(f"Instance is already {instance.status.value}")

                stage = self._get_step(instance, request.step_id)
                if stage is None:
                    raise StepNotFoundError(f"Step {request.step_id} not found")

                if action not in SPECIAL_ACTIONS:
                    check = self._check_permission(instance, stage, request.user_id, action)
                else:
                    check = self._check_admin(instance, request, action)
                if not check.allowed:
                    raise ActionNotAllowedError(check.reason or "Action not allowed")

                handler = self._handlers.get(action)
                if handler is None:
                    raise UnknownActionError(f"Unknown action: {action.value}")

                result = handler(instance, stage, request)

            logger.info(
                f"Action {action.value} executed",
                extra={
                    "tenant_id": request.tenant_id,
                    "instance_id": request.instance_id,
                    "stage_id": request.step_id,
                    "user_id": request.user_id,
                    "action": action.value,
                    "status": result.instance_status.value if result.instance_status else None
                }
            )
            return result

        except DomainError as e:
            logger.warning(
                f"Action {request.action} failed: {e.message}",
                extra={
                    "tenant_id": request.tenant_id,
                    "instance_id": request.instance_id,
                    "action": request.action,
                    "error_code": e.error_code
                }
            )
            return ActionResult(
                success=False,
                action=request.action,
                error=e.message,
                error_code=e.error_code
            )

    def _validate(self, request: ActionRequest) -> ActionType:
        """Check identity fields and per-action inputs"""
        if not request.tenant_id:
            raise _missing("tenant_id is required", "MISSING_TENANT_ID")
        if not request.instance_id:
            raise _missing("instance_id is required", "MISSING_INSTANCE_ID")
        if not request.step_id:
            raise _missing("step_id is required", "MISSING_STEP_ID")
        if not request.user_id:
            raise _missing("user_id is required", "MISSING_USER_ID")

        try:
            action = ActionType(request.action)
        except ValueError:
            raise UnknownActionError(f"Unknown action: {request.action}")

        if action == ActionType.REJECT and not request.reason:
            raise _missing("Rejection reason is required", "MISSING_REASON")
        if action == ActionType.REQUEST_CHANGES and not request.requested_changes:
            raise _missing("Requested changes are required", "MISSING_CHANGES")
        if action == ActionType.DELEGATE and not request.delegate_to_user_id:
            raise _missing("Delegate user is required", "MISSING_DELEGATE")
        if action == ActionType.ESCALATE and not request.escalation_reason:
            raise _missing("Escalation reason is required", "MISSING_REASON")
        if action == ActionType.HOLD and not request.hold_reason:
            raise _missing("Hold reason is required", "MISSING_REASON")
        if action == ActionType.BYPASS:
            if not request.reason:
                raise _missing("Bypass reason is required", "MISSING_REASON")
            if request.decision not in (BypassDecision.APPROVE.value, BypassDecision.REJECT.value):
                raise _missing("Bypass decision must be approve or reject", "MISSING_DECISION")
        if action == ActionType.REASSIGN:
            if not request.to_approver_id:
                raise _missing("Target approver is required", "MISSING_APPROVER")
            if not request.reason:
                raise _missing("Reassignment reason is required", "MISSING_REASON")
        if action == ActionType.COMMENT and not request.comment_text:
            raise _missing("Comment text is required", "MISSING_COMMENT")

        return action

    # =========================================================================
    # Permissions
    # =========================================================================

    def can_perform_action(
        self,
        tenant_id: str,
        instance_id: str,
        step_id: str,
        user_id: str,
        action: str
    ) -> PermissionCheck:
        """Whether the user may take ``action`` on the step right now"""
        instance = self.instance_repo.get_instance(tenant_id, instance_id)
        if instance is None:
            return PermissionCheck(allowed=False, reason="Instance not found")
        try:
            action_type = ActionType(action)
        except ValueError:
            return PermissionCheck(allowed=False, reason=f"Unknown action '{action}'")
        return self._check_permission(instance, self._get_step(instance, step_id), user_id, action_type)

    def get_available_actions(
        self,
        tenant_id: str,
        instance_id: str,
        step_id: str,
        user_id: str
    ) -> List[ActionType]:
        """Actions offered to a user holding a pending task on the step"""
        instance = self.instance_repo.get_instance(tenant_id, instance_id)
        if instance is None:
            return []
        stage = self._get_step(instance, step_id)
        if stage is None:
            return []
        if self._find_pending_task(stage, user_id) is None:
            return []

        if not stage.allowed_actions:
            return list(DEFAULT_AVAILABLE_ACTIONS)
        actions = []
        for name in stage.allowed_actions:
            try:
                actions.append(ActionType(name))
            except ValueError:
                logger.warning(f"Ignoring unknown allowed action '{name}'", extra={"stage_id": stage.stage_id})
        return actions

    def _check_permission(
        self,
        instance: ApprovalInstance,
        stage: Optional[StageInstance],
        user_id: str,
        action: ActionType
    ) -> PermissionCheck:
        if instance.status in TERMINAL_INSTANCE_STATUSES:
            return PermissionCheck(allowed=False, reason="Workflow is already completed")
        if instance.status == InstanceStatus.ON_HOLD and action != ActionType.RELEASE:
            return PermissionCheck(allowed=False, reason="Workflow is on hold")
        if stage is None:
            return PermissionCheck(allowed=False, reason="Step not found")
        if stage.status != StageStatus.OPEN:
            return PermissionCheck(allowed=False, reason="Step is not active")

        if action not in NON_APPROVER_ACTIONS and self._find_pending_task(stage, user_id) is None:
            return PermissionCheck(allowed=False, reason="No pending approval for this user")

        if stage.allowed_actions and action.value not in stage.allowed_actions:
            return PermissionCheck(allowed=False, reason=f"Action '{action.value}' is not allowed for this step")

        return PermissionCheck(allowed=True)

    def is_admin(self, roles: List[str]) -> bool:
        """Whether any of ``roles`` is an approval administrator role"""
        return bool(set(roles) & set(self.settings.admin_roles_list))

    def _check_admin(
        self,
        instance: ApprovalInstance,
        request: ActionRequest,
        action: ActionType
    ) -> PermissionCheck:
        if action not in ADMIN_ACTIONS or self.is_admin(request.roles):
            return PermissionCheck(allowed=True)
        if action in (ActionType.RESUME, ActionType.RELEASE):
            # Not on hold: the handler reports NOT_ON_HOLD
            if instance.status != InstanceStatus.ON_HOLD:
                return PermissionCheck(allowed=True)
            if instance.hold_info and instance.hold_info.held_by == request.user_id:
                return PermissionCheck(allowed=True)
        return PermissionCheck(
            allowed=False,
            reason=f"Action '{action.value}' requires an approval administrator role"
        )

    def _get_step(self, instance: ApprovalInstance, step_id: str) -> Optional[StageInstance]:
        stage = self.instance_repo.get_stage(instance.tenant_id, step_id)
        if stage is None or stage.instance_id != instance.instance_id:
            return None
        return stage

    def _find_pending_task(self, stage: StageInstance, user_id: str) -> Optional[ApprovalTask]:
        """Pending task of the user on the step; direct assignment wins over group"""
        pending = [
            t for t in self.instance_repo.get_tasks_for_stage(stage.tenant_id, stage.stage_id)
            if t.status == TaskStatus.PENDING
        ]
        for task in pending:
            if task.approver_id == user_id:
                return task
        for task in pending:
            if self.engine.is_assignee(task, user_id):
                return task
        return None

    def _require_pending_task(self, stage: StageInstance, user_id: str) -> ApprovalTask:
        task = self._find_pending_task(stage, user_id)
        if task is None:
            raise ActionNotAllowedError(
                "No pending approval found for this user",
                error_code="NO_PENDING_APPROVAL"
            )
        return task

    # =========================================================================
    # Helpers
    # =========================================================================

    def _emit(
        self,
        action: ActionType,
        instance: ApprovalInstance,
        stage: Optional[StageInstance],
        user_id: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        self.event_bus.emit(
            ACTION_EVENTS[action],
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            step_id=stage.stage_id if stage else None,
            actor_id=user_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            payload=payload
        )

    def _result(
        self,
        action: ActionType,
        instance: ApprovalInstance,
        stage: Optional[StageInstance],
        progress: Optional[StageProgress] = None,
        task_id: Optional[str] = None
    ) -> ActionResult:
        if progress is not None:
            instance = progress.instance
            stage = progress.stage or stage
        return ActionResult(
            success=True,
            action=action.value,
            instance_status=instance.status,
            step_status=stage.status if stage else None,
            instance_version=instance.version,
            task_id=task_id,
            activated_step_ids=progress.activated_stage_ids if progress else [],
            workflow_complete=progress.workflow_complete if progress else False,
            final_outcome=progress.final_outcome if progress else None
        )

    def _reload(self, instance: ApprovalInstance) -> ApprovalInstance:
        return self.instance_repo.get_instance(instance.tenant_id, instance.instance_id)

    def _reload_stage(self, stage: StageInstance) -> StageInstance:
        return self.instance_repo.get_stage(stage.tenant_id, stage.stage_id) or stage

    # =========================================================================
    # Decisions
    # =========================================================================

    def _approve(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        task = self._require_pending_task(stage, request.user_id)
        progress = self.engine.apply_decision(
            instance, task, Decision.APPROVED, request.user_id, request.comment
        )
        self._emit(ActionType.APPROVE, progress.instance, stage, request.user_id, {"task_id": task.task_id})
        return self._result(ActionType.APPROVE, instance, stage, progress, task.task_id)

    def _reject(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        task = self._require_pending_task(stage, request.user_id)
        progress = self.engine.apply_decision(
            instance, task, Decision.REJECTED, request.user_id, request.reason
        )
        self._emit(
            ActionType.REJECT, progress.instance, stage, request.user_id,
            {"task_id": task.task_id, "reason": request.reason}
        )
        return self._result(ActionType.REJECT, instance, stage, progress, task.task_id)

    def _request_changes(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        task = self._require_pending_task(stage, request.user_id)
        revision = instance.revision_count + 1
        change_request = ChangeRequest(
            requested_by=request.user_id,
            requested_at=utc_now(),
            requested_changes=request.requested_changes,
            fields_to_change=request.fields_to_change,
            stage_id=stage.stage_id
        )
        instance = self.engine.update_instance(instance, {
            "revision_count": revision,
            "last_change_request": change_request,
        })
        self._emit(ActionType.REQUEST_CHANGES, instance, stage, request.user_id, {
            "task_id": task.task_id,
            "requested_changes": request.requested_changes,
            "fields_to_change": request.fields_to_change,
            "revision_number": revision,
        })
        return self._result(ActionType.REQUEST_CHANGES, instance, stage, task_id=task.task_id)

    # =========================================================================
    # Reassignment
    # =========================================================================

    def _require_principal(self, tenant_id: str, principal_id: str) -> None:
        principal = self.directory_repo.get_principal(tenant_id, principal_id)
        if principal is None or not principal.is_active:
            raise NotFoundError(
                f"Approver {principal_id} not found",
                details={"principal_id": principal_id},
                error_code="APPROVER_NOT_FOUND"
            )

    def _hand_over(
        self,
        instance: ApprovalInstance,
        stage: StageInstance,
        task: ApprovalTask,
        new_status: TaskStatus,
        to_user_id: str,
        actor_id: str,
        note: Optional[str],
        strategy: str
    ) -> ApprovalTask:
        """Close ``task`` as delegated/reassigned and open a task for ``to_user_id``"""
        updated = self.instance_repo.update_task(
            instance.tenant_id,
            task.task_id,
            {
                "status": new_status,
                "decided_at": utc_now(),
                "decided_by": actor_id,
                "decision_note": note,
                "delegated_to": to_user_id,
            },
            expected_status=TaskStatus.PENDING
        )
        if updated is None:
            raise TaskNotPendingError(f"Task {task.task_id} is no longer pending")
        self.engine.cancel_timers(instance, [task.task_id])

        return self.engine.add_task(
            instance,
            stage,
            to_user_id,
            source_task=task,
            resolved_assignment={
                "strategy": strategy,
                "principal_id": to_user_id,
                "assigned_by": actor_id,
                "source_task_id": task.task_id,
                "reason": note,
            }
        )

    def _delegate(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        task = self._require_pending_task(stage, request.user_id)
        self._require_principal(instance.tenant_id, request.delegate_to_user_id)

        new_task = self._hand_over(
            instance, stage, task, TaskStatus.DELEGATED, request.delegate_to_user_id,
            request.user_id, request.reason or request.comment, "delegation"
        )
        self._emit(ActionType.DELEGATE, instance, stage, request.user_id, {
            "task_id": task.task_id,
            "new_task_id": new_task.task_id,
            "delegate_to_user_id": request.delegate_to_user_id,
            "reason": request.reason,
        })
        return self._result(ActionType.DELEGATE, self._reload(instance), stage, task_id=new_task.task_id)

    def _reassign(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        if stage.status != StageStatus.OPEN:
            raise InvalidStateError(
                f"Cannot reassign approvers on {stage.status.value} step",
                error_code="INVALID_STEP_STATUS"
            )
        self._require_principal(instance.tenant_id, request.to_approver_id)

        if request.from_approver_id:
            source = next(
                (t for t in self.instance_repo.get_tasks_for_stage(instance.tenant_id, stage.stage_id)
                 if t.approver_id == request.from_approver_id and t.status == TaskStatus.PENDING),
                None
            )
            if source is None:
                raise NotFoundError(
                    "Original approver not found or not pending",
                    details={"from_approver_id": request.from_approver_id},
                    error_code="APPROVER_NOT_FOUND"
                )
            new_task = self._hand_over(
                instance, stage, source, TaskStatus.REASSIGNED, request.to_approver_id,
                request.user_id, f"Reassigned: {request.reason}", "reassignment"
            )
        else:
            new_task = self.engine.add_task(
                instance,
                stage,
                request.to_approver_id,
                source_task=None,
                resolved_assignment={
                    "strategy": "reassignment",
                    "principal_id": request.to_approver_id,
                    "assigned_by": request.user_id,
                    "reason": request.reason,
                }
            )

        payload = {
            "from_approver_id": request.from_approver_id,
            "to_approver_id": request.to_approver_id,
            "new_task_id": new_task.task_id,
            "reason": request.reason,
        }
        self._emit(ActionType.REASSIGN, instance, stage, request.user_id, payload)
        self.event_bus.emit(
            WorkflowEventType.STEP_ESCALATED,
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            step_id=stage.stage_id,
            actor_id=request.user_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            payload={**payload, "is_reassignment": True}
        )
        return self._result(ActionType.REASSIGN, self._reload(instance), stage, task_id=new_task.task_id)

    # =========================================================================
    # Escalation & Hold
    # =========================================================================

    def _escalate(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        previous_level = stage.escalation_level
        new_level = request.target_level if request.target_level is not None else previous_level + 1

        stage = self.instance_repo.update_stage(
            instance.tenant_id, stage.stage_id, {"escalation_level": new_level}
        ) or stage
        instance = self.engine.update_instance(instance, {
            "escalation_level": instance.escalation_level + 1,
        })

        escalation = ApprovalEscalation(
            escalation_id=generate_escalation_id(),
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            stage_id=stage.stage_id,
            kind=EscalationKind.MANUAL.value,
            payload={
                "reason": request.escalation_reason,
                "escalated_by": request.user_id,
                "previous_level": previous_level,
                "new_level": new_level,
            },
            occurred_at=utc_now()
        )
        self.event_repo.append_escalation(escalation)

        self._emit(ActionType.ESCALATE, instance, stage, request.user_id, {
            "escalation_reason": request.escalation_reason,
            "previous_level": previous_level,
            "new_level": new_level,
        })
        self.event_bus.emit(
            WorkflowEventType.STEP_ESCALATED,
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            step_id=stage.stage_id,
            actor_id=request.user_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            payload={"escalation_level": new_level, "reason": request.escalation_reason}
        )
        return self._result(ActionType.ESCALATE, instance, stage)

    def _hold(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        hold_info = HoldInfo(
            held_by=request.user_id,
            held_at=utc_now(),
            reason=request.hold_reason,
            expected_resume_at=request.expected_resume_at
        )
        instance = self.engine.update_instance(instance, {
            "status": InstanceStatus.ON_HOLD,
            "hold_info": hold_info,
        })
        self._emit(ActionType.HOLD, instance, stage, request.user_id, {
            "hold_reason": request.hold_reason,
            "expected_resume_at": hold_info.model_dump(mode="json")["expected_resume_at"],
        })
        return self._result(ActionType.HOLD, instance, stage)

    def _require_on_hold(self, instance: ApprovalInstance) -> None:
        if instance.status != InstanceStatus.ON_HOLD:
            raise InvalidStateError("Instance is not on hold", error_code="NOT_ON_HOLD")

    def _resume(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        self._require_on_hold(instance)
        instance = self.engine.update_instance(instance, {
            "status": InstanceStatus.OPEN,
            "hold_info": None,
        })
        self._emit(ActionType.RESUME, instance, stage, request.user_id, {"comment": request.comment})
        return self._result(ActionType.RESUME, instance, stage)

    def _release(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        """Resume and push every pending due date out by the time spent on hold"""
        self._require_on_hold(instance)
        now = utc_now()
        held_at = ensure_utc(instance.hold_info.held_at) if instance.hold_info else now
        held_for = max(now - held_at, timedelta(0))

        instance = self.engine.update_instance(instance, {
            "status": InstanceStatus.OPEN,
            "hold_info": None,
        })

        shifted = 0
        if held_for > timedelta(0):
            stages: Dict[str, Optional[StageInstance]] = {}
            for task in self.instance_repo.get_tasks_for_instance(instance.tenant_id, instance.instance_id):
                if task.status != TaskStatus.PENDING or task.due_at is None:
                    continue
                updated = self.instance_repo.update_task(
                    instance.tenant_id,
                    task.task_id,
                    {"due_at": ensure_utc(task.due_at) + held_for},
                    expected_status=TaskStatus.PENDING
                )
                if updated is None:
                    continue
                if task.stage_id not in stages:
                    stages[task.stage_id] = self.instance_repo.get_stage(instance.tenant_id, task.stage_id)
                self.engine.cancel_timers(instance, [task.task_id])
                if stages[task.stage_id] is not None:
                    self.engine.schedule_timers(updated, stages[task.stage_id])
                shifted += 1

        hold_ms = int(held_for.total_seconds() * 1000)
        self._emit(ActionType.RELEASE, instance, stage, request.user_id, {
            "hold_duration_ms": hold_ms,
            "tasks_shifted": shifted,
            "comment": request.comment,
        })
        self.event_bus.emit(
            WorkflowEventType.WORKFLOW_STARTED,
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            actor_id=request.user_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            payload={"is_resume": True, "hold_duration_ms": hold_ms, "released_by": request.user_id}
        )
        return self._result(ActionType.RELEASE, instance, stage)

    # =========================================================================
    # Requester Actions
    # =========================================================================

    def _close_by_requester(
        self,
        action: ActionType,
        instance: ApprovalInstance,
        stage: StageInstance,
        request: ActionRequest
    ) -> ActionResult:
        if instance.requester_id != request.user_id:
            raise NotRequesterError(f"Only the requester can {action.value} this submission")

        reason = "recalled" if action == ActionType.RECALL else "withdrawn"
        instance = self.engine.close_instance(
            instance,
            status=InstanceStatus.WITHDRAWN,
            reason=reason,
            actor_id=request.user_id,
            note=request.reason or f"{reason.capitalize()} by requester"
        )
        self._emit(action, instance, stage, request.user_id, {"reason": request.reason})

        result = self._result(action, instance, self._reload_stage(stage))
        result.workflow_complete = True
        result.final_outcome = "withdrawn"
        return result

    def _recall(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        return self._close_by_requester(ActionType.RECALL, instance, stage, request)

    def _withdraw(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        return self._close_by_requester(ActionType.WITHDRAW, instance, stage, request)

    # =========================================================================
    # Bypass
    # =========================================================================

    def _bypass(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        """
        Force the step's outcome

        Pending tasks take the decision. A rejection vetoes the instance; an
        approval completes the step and either advances or, with
        ``skip_remaining_steps``, skips every later stage and completes.
        """
        if stage.status != StageStatus.OPEN:
            raise InvalidStateError(
                f"Cannot bypass a {stage.status.value} step",
                error_code="INVALID_STEP_STATUS"
            )

        approve = request.decision == BypassDecision.APPROVE.value
        new_status = TaskStatus.APPROVED if approve else TaskStatus.REJECTED
        now = utc_now()

        decided = []
        for task in self.instance_repo.get_tasks_for_stage(instance.tenant_id, stage.stage_id):
            if task.status != TaskStatus.PENDING:
                continue
            updated = self.instance_repo.update_task(
                instance.tenant_id,
                task.task_id,
                {
                    "status": new_status,
                    "decided_at": now,
                    "decided_by": request.user_id,
                    "decision_note": f"Bypassed: {request.reason}",
                },
                expected_status=TaskStatus.PENDING
            )
            if updated is None:
                continue
            decided.append(task.task_id)
            self.event_bus.record(
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                event_type=ApprovalEventType.TASK_APPROVED if approve else ApprovalEventType.TASK_REJECTED,
                actor_id=request.user_id,
                task_id=task.task_id,
                stage_id=stage.stage_id,
                payload={"bypass": True, "reason": request.reason}
            )
        self.engine.cancel_timers(instance, decided)

        bypass_payload = {"bypass": True, "reason": request.reason}
        if not approve:
            progress = self.engine.reject_instance(instance, stage, request.user_id, payload=bypass_payload)
        else:
            if request.skip_remaining_steps:
                self._skip_later_stages(instance, stage, request)
            progress = self.engine.complete_stage(instance, stage, request.user_id, payload=bypass_payload)

        self._emit(ActionType.BYPASS, progress.instance, stage, request.user_id, {
            "decision": request.decision,
            "reason": request.reason,
            "skip_remaining_steps": request.skip_remaining_steps,
            "task_ids": decided,
        })
        return self._result(ActionType.BYPASS, instance, stage, progress)

    def _skip_later_stages(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> None:
        now = utc_now()
        for other in self.instance_repo.get_stages(instance.tenant_id, instance.instance_id):
            if other.stage_id == stage.stage_id or other.status not in (StageStatus.PENDING, StageStatus.OPEN):
                continue
            canceled = self.instance_repo.cancel_pending_tasks(
                instance.tenant_id, instance.instance_id, other.stage_id, note="Skipped by bypass"
            )
            self.engine.cancel_timers(instance, canceled)
            self.instance_repo.update_stage(
                instance.tenant_id,
                other.stage_id,
                {"status": StageStatus.SKIPPED, "outcome": "bypassed", "completed_at": now}
            )
            self.event_bus.record(
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                event_type=ApprovalEventType.STAGE_SKIPPED,
                actor_id=request.user_id,
                stage_id=other.stage_id,
                payload={"stage_no": other.stage_no, "reason": "bypass"}
            )

    # =========================================================================
    # Comment
    # =========================================================================

    def _comment(self, instance: ApprovalInstance, stage: StageInstance, request: ActionRequest) -> ActionResult:
        self._emit(ActionType.COMMENT, instance, stage, request.user_id, {
            "comment": request.comment_text,
            "is_internal": request.is_internal,
        })
        return self._result(ActionType.COMMENT, instance, stage)
