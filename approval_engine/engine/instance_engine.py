"""
Approval Engine - The approval state machine

Owns instance creation, stage activation, decision application, stage
completion and instance finalization. The action executor layers its richer
vocabulary on top and routes every approve/reject through ``apply_decision``.

=============================================================================
STATE MACHINE
=============================================================================

Instance:  open <-> on_hold
           open -> completed | canceled (reason rejected/canceled/...) | withdrawn

Stage:     pending -> open -> completed | canceled
           pending -> skipped   (no assignees, or a bypass skipped it)
           pending -> canceled  (instance closed before it activated)

Stages activate lazily: creation materializes every stage record but only
opens the first stage that resolves assignees. Completing stage N opens the
next pending stage; when none is left the instance completes.

Every mutation of an instance happens under the per-instance advisory lock
and through the version-checked update, so an instance leaves ``open`` once.
=============================================================================
"""
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict

from .approver_resolver import ApproverResolver
from .event_bus import EventBus
from .quorum import evaluate_stage
from .sla_timers import SlaTimerService
from ..config.settings import Settings
from ..domain.enums import (
    ACTIVE_INSTANCE_STATUSES, TERMINAL_INSTANCE_STATUSES,
    ApprovalEventType, ApproverType, Decision, EmptyStagePolicy,
    InstanceStatus, StageMode, StageStatus, TaskStatus, WorkflowEventType
)
from ..domain.errors import (
    ActionNotAllowedError, ApproverResolutionError, DomainError,
    InstanceNotFoundError, InstanceTerminalError, InvalidStateError,
    LockUnavailableError, StepNotFoundError, TaskNotFoundError,
    TaskNotPendingError, TemplateNotFoundError, TemplateValidationError
)
from ..domain.models import (
    ApprovalInstance, ApprovalTask, ApprovalTemplate,
    AssignmentSnapshot, CreateInstanceRequest, CreateInstanceResult,
    DecisionRequest, DecisionResult, EscalationPage, EventPage, PageMeta,
    ResolvedAssignee, StageInstance
)
from ..repositories.directory_repo import DirectoryRepository
from ..repositories.event_repo import EventRepository
from ..repositories.instance_repo import InstanceRepository
from ..repositories.template_repo import TemplateRepository
from ..clients.lifecycle_client import LifecycleManager
from ..utils.idgen import (
    generate_instance_id, generate_lock_token, generate_snapshot_id,
    generate_stage_id, generate_task_id
)
from ..utils.logger import get_logger
from ..utils.time import calculate_due_at, utc_now

logger = get_logger(__name__)


class StageProgress(BaseModel):
    """Where an instance stands after a decision or action"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    instance: ApprovalInstance
    stage: Optional[StageInstance] = None
    activated_stage_ids: List[str] = []
    task_count: int = 0
    workflow_complete: bool = False
    final_outcome: Optional[str] = None
    lifecycle_resumed: bool = False


class ApprovalEngine:
    """
    Central orchestrator for approval instances

    Collaborators are passed in; nothing is looked up from module globals.
    """

    def __init__(
        self,
        template_repo: TemplateRepository,
        instance_repo: InstanceRepository,
        event_repo: EventRepository,
        directory_repo: DirectoryRepository,
        resolver: ApproverResolver,
        event_bus: EventBus,
        sla_timers: SlaTimerService,
        settings: Settings,
        lifecycle_manager: Optional[LifecycleManager] = None
    ):
        self.template_repo = template_repo
        self.instance_repo = instance_repo
        self.event_repo = event_repo
        self.directory_repo = directory_repo
        self.resolver = resolver
        self.event_bus = event_bus
        self.sla_timers = sla_timers
        self.settings = settings
        self.lifecycle_manager = lifecycle_manager

    # =========================================================================
    # Locking
    # =========================================================================

    @contextmanager
    def instance_lock(self, tenant_id: str, instance_id: str) -> Iterator[str]:
        """
        Hold the per-instance advisory lock for the duration of the block

        Polls every ``lock_poll_interval_ms`` until ``instance_lock_timeout_ms``
        has elapsed, then raises LockUnavailableError.
        """
        token = generate_lock_token()
        deadline = time.monotonic() + self.settings.instance_lock_timeout_ms / 1000
        while not self.instance_repo.acquire_lock(
            tenant_id, instance_id, token, self.settings.instance_lock_duration_seconds
        ):
            if time.monotonic() >= deadline:
                raise LockUnavailableError(
                    "Could not acquire lock on instance - another action may be in progress",
                    details={"instance_id": instance_id}
                )
            time.sleep(self.settings.lock_poll_interval_ms / 1000)

        try:
            yield token
        finally:
            self.instance_repo.release_lock(tenant_id, instance_id, token)

    def update_instance(self, instance: ApprovalInstance, updates: Dict[str, Any]) -> ApprovalInstance:
        return self.instance_repo.update_instance(
            instance.tenant_id, instance.instance_id, instance.version, updates
        )

    # =========================================================================
    # Instance Creation
    # =========================================================================

    def create_approval_instance(self, request: CreateInstanceRequest) -> CreateInstanceResult:
        """
        Create an approval instance from a template

        Algorithm:
        1. Load the template (ID first, then active version by code)
        2. Materialize every stage as pending
        3. Activate the first stage that resolves assignees
        4. Return counts, or a structured failure; nothing is raised
        """
        try:
            template = self._load_template(request.tenant_id, request.template)
            if template is None:
                return CreateInstanceResult(
                    success=False,
                    error=f"Template {request.template} not found",
                    error_code=TemplateNotFoundError.error_code
                )

            stage_defs = template.sorted_stages()
            if not stage_defs:
                return CreateInstanceResult(
                    success=False,
                    error=f"Template {template.code} has no stages",
                    error_code=TemplateNotFoundError.error_code
                )

            now = utc_now()
            context = dict(request.context)
            if request.requester_id:
                context.setdefault("requester_id", request.requester_id)

            instance = ApprovalInstance(
                instance_id=generate_instance_id(),
                tenant_id=request.tenant_id,
                entity_name=request.entity_name,
                entity_id=request.entity_id,
                transition_id=request.transition_id,
                operation_code=request.operation_code,
                template_id=template.template_id,
                template_code=template.code,
                template_version=template.version_no,
                requester_id=request.requester_id,
                status=InstanceStatus.OPEN,
                metadata={"assignment_context": context},
                created_at=now,
                updated_at=now
            )

            stages = []
            for stage_def in stage_defs:
                try:
                    mode = StageMode(stage_def.mode)
                except ValueError:
                    raise TemplateValidationError(
                        f"Stage {stage_def.stage_no} has invalid mode {stage_def.mode}",
                        details={"stage_no": stage_def.stage_no}
                    )
                stages.append(StageInstance(
                    stage_id=generate_stage_id(),
                    tenant_id=request.tenant_id,
                    instance_id=instance.instance_id,
                    stage_no=stage_def.stage_no,
                    name=stage_def.name,
                    mode=mode,
                    quorum=stage_def.quorum,
                    sla=stage_def.sla,
                    allowed_actions=stage_def.allowed_actions or list(template.allowed_actions),
                    status=StageStatus.PENDING
                ))

            self.instance_repo.create_instance(instance)
            self.instance_repo.create_stages(stages)

            self.event_bus.record(
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                event_type=ApprovalEventType.INSTANCE_CREATED,
                actor_id=request.requester_id,
                payload={
                    "template_id": template.template_id,
                    "template_code": template.code,
                    "template_version": template.version_no,
                    "stage_count": len(stages),
                }
            )
            self.event_bus.emit(
                WorkflowEventType.WORKFLOW_STARTED,
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                actor_id=request.requester_id,
                entity_name=instance.entity_name,
                entity_id=instance.entity_id,
                payload={"template_code": template.code}
            )

            try:
                progress = self.advance(instance, template, after_stage_no=0, actor_id=request.requester_id)
            except ApproverResolutionError as e:
                self._abort_creation(instance, e)
                raise

            logger.info(
                f"Approval instance created with {progress.task_count} tasks",
                extra={
                    "tenant_id": instance.tenant_id,
                    "instance_id": instance.instance_id,
                    "template_id": template.template_id,
                    "status": progress.instance.status.value
                }
            )
            return CreateInstanceResult(
                success=True,
                instance_id=instance.instance_id,
                stage_count=len(stages),
                task_count=progress.task_count
            )

        except DomainError as e:
            logger.warning(
                f"Approval instance creation failed: {e.message}",
                extra={"tenant_id": request.tenant_id, "error_code": e.error_code}
            )
            return CreateInstanceResult(success=False, error=e.message, error_code=e.error_code)
        except Exception as e:
            logger.exception(
                f"Unexpected error creating approval instance: {e}",
                extra={"tenant_id": request.tenant_id}
            )
            return CreateInstanceResult(success=False, error=str(e), error_code="INTERNAL_ERROR")

    def _load_template(self, tenant_id: str, id_or_code: str) -> Optional[ApprovalTemplate]:
        template = self.template_repo.get_by_id(tenant_id, id_or_code)
        if template is None:
            template = self.template_repo.get_active_by_code(tenant_id, id_or_code)
        return template

    def _template_for(self, instance: ApprovalInstance) -> ApprovalTemplate:
        template = self.template_repo.get_by_id(instance.tenant_id, instance.template_id)
        if template is None:
            raise TemplateNotFoundError(
                f"Template {instance.template_id} of instance {instance.instance_id} no longer exists"
            )
        return template

    def _abort_creation(self, instance: ApprovalInstance, error: DomainError) -> None:
        """Close an instance whose first stages could not be staffed"""
        current = self.instance_repo.get_instance(instance.tenant_id, instance.instance_id)
        if current is None or current.status not in ACTIVE_INSTANCE_STATUSES:
            return
        self.close_instance(
            current,
            status=InstanceStatus.CANCELED,
            reason="no_approvers",
            actor_id=self.settings.system_actor_id,
            note=error.message
        )

    # =========================================================================
    # Stage Activation
    # =========================================================================

    def advance(
        self,
        instance: ApprovalInstance,
        template: ApprovalTemplate,
        after_stage_no: int,
        actor_id: Optional[str]
    ) -> StageProgress:
        """Open the next pending stage after ``after_stage_no``, or complete the instance"""
        for stage in self.instance_repo.get_stages(instance.tenant_id, instance.instance_id):
            if stage.stage_no <= after_stage_no or stage.status != StageStatus.PENDING:
                continue

            tasks = self.activate_stage(instance, stage, template)
            if tasks:
                instance = self.update_instance(instance, {"current_stage_no": stage.stage_no})
                return StageProgress(
                    instance=instance,
                    activated_stage_ids=[stage.stage_id],
                    task_count=len(tasks)
                )

        return self.finalize_instance(instance, actor_id)

    def activate_stage(
        self,
        instance: ApprovalInstance,
        stage: StageInstance,
        template: ApprovalTemplate
    ) -> List[ApprovalTask]:
        """
        Resolve assignees and open a pending stage

        Returns the created tasks. An empty list means the stage was skipped
        under the ``skip`` policy; the ``fail`` policy raises instead.
        """
        rules = [r for r in template.rules if r.stage_no is None or r.stage_no == stage.stage_no]
        context = dict(instance.metadata.get("assignment_context") or {})
        resolution = self.resolver.resolve_with_rule(rules, context, instance.tenant_id)

        assignees: List[ResolvedAssignee] = []
        seen = set()
        for assignee in resolution.assignees:
            if assignee.approver_id and assignee.approver_id not in seen:
                seen.add(assignee.approver_id)
                assignees.append(assignee)

        now = utc_now()

        if not assignees:
            if self.settings.empty_stage_policy == EmptyStagePolicy.FAIL.value:
                raise ApproverResolutionError(
                    f"No approvers could be resolved for stage {stage.stage_no}",
                    details={"instance_id": instance.instance_id, "stage_no": stage.stage_no}
                )
            self.instance_repo.update_stage(
                instance.tenant_id,
                stage.stage_id,
                {"status": StageStatus.SKIPPED, "outcome": "skipped", "completed_at": now},
                expected_status=StageStatus.PENDING.value
            )
            self.event_bus.record(
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                event_type=ApprovalEventType.STAGE_SKIPPED,
                stage_id=stage.stage_id,
                payload={"stage_no": stage.stage_no, "reason": "no_approvers"}
            )
            logger.info(
                f"Stage {stage.stage_no} skipped: no approvers resolved",
                extra={"tenant_id": instance.tenant_id, "instance_id": instance.instance_id, "stage_id": stage.stage_id}
            )
            return []

        due_at = calculate_due_at(now, stage.sla.due_in_minutes) if stage.sla else None
        tasks = [
            ApprovalTask(
                task_id=generate_task_id(),
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                stage_id=stage.stage_id,
                stage_no=stage.stage_no,
                approver_id=assignee.approver_id,
                approver_type=assignee.approver_type,
                status=TaskStatus.PENDING,
                due_at=due_at,
                created_at=now
            )
            for assignee in assignees
        ]
        self.instance_repo.create_tasks(tasks)

        for task, assignee in zip(tasks, assignees):
            self._write_snapshot(task, assignee.model_dump(mode="json"), assignee.rule_id)

        opened = self.instance_repo.update_stage(
            instance.tenant_id,
            stage.stage_id,
            {"status": StageStatus.OPEN, "activated_at": now},
            expected_status=StageStatus.PENDING.value
        ) or stage

        self.event_bus.record(
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            event_type=ApprovalEventType.STAGE_ACTIVATED,
            stage_id=stage.stage_id,
            payload={
                "stage_no": stage.stage_no,
                "task_count": len(tasks),
                "rule_id": resolution.matched_rule_id,
                "strategy": resolution.strategy,
            }
        )
        self.event_bus.emit(
            WorkflowEventType.STEP_ACTIVATED,
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            step_id=stage.stage_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            payload={"stage_no": stage.stage_no, "approver_ids": [t.approver_id for t in tasks]}
        )

        for task in tasks:
            self.schedule_timers(task, opened)

        return tasks

    def add_task(
        self,
        instance: ApprovalInstance,
        stage: StageInstance,
        approver_id: str,
        source_task: Optional[ApprovalTask],
        resolved_assignment: Dict[str, Any]
    ) -> ApprovalTask:
        """
        Add a pending task to an open stage (delegation and reassignment)

        The new task inherits the due date of ``source_task`` when present.
        """
        now = utc_now()
        due_at = source_task.due_at if source_task else (
            calculate_due_at(now, stage.sla.due_in_minutes) if stage.sla else None
        )
        task = ApprovalTask(
            task_id=generate_task_id(),
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            stage_id=stage.stage_id,
            stage_no=stage.stage_no,
            approver_id=approver_id,
            approver_type=ApproverType.PRINCIPAL,
            status=TaskStatus.PENDING,
            due_at=due_at,
            delegated_from=source_task.approver_id if source_task else None,
            created_at=now
        )
        self.instance_repo.create_tasks([task])
        self._write_snapshot(task, resolved_assignment, None)
        self.schedule_timers(task, stage)
        return task

    def _write_snapshot(self, task: ApprovalTask, resolved_assignment: Dict[str, Any], rule_id: Optional[str]) -> None:
        self.instance_repo.create_snapshot(AssignmentSnapshot(
            snapshot_id=generate_snapshot_id(),
            tenant_id=task.tenant_id,
            instance_id=task.instance_id,
            task_id=task.task_id,
            stage_no=task.stage_no,
            resolved_assignment=resolved_assignment,
            resolved_from_rule_id=rule_id,
            created_at=task.created_at
        ))

    def schedule_timers(self, task: ApprovalTask, stage: StageInstance) -> None:
        """Queue SLA timers for a task; failures only get logged"""
        try:
            self.sla_timers.schedule_for_task(task, stage)
        except Exception as e:
            logger.error(
                f"Failed to schedule SLA timers: {e}",
                extra={"tenant_id": task.tenant_id, "instance_id": task.instance_id, "task_id": task.task_id}
            )

    def cancel_timers(self, instance: ApprovalInstance, task_ids: List[str]) -> None:
        """Drop SLA timers for tasks; failures only get logged"""
        if not task_ids:
            return
        try:
            self.sla_timers.cancel_timers(instance.tenant_id, instance.instance_id, task_ids)
        except Exception as e:
            logger.error(
                f"Failed to cancel SLA timers: {e}",
                extra={"tenant_id": instance.tenant_id, "instance_id": instance.instance_id}
            )

    # =========================================================================
    # Decisions
    # =========================================================================

    def make_decision(self, request: DecisionRequest) -> DecisionResult:
        """
        Apply an approve/reject decision to a task

        Expected failures come back as ``success=False`` with an error code.
        """
        try:
            task = self.instance_repo.get_task(request.tenant_id, request.task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {request.task_id} not found")

            with self.instance_lock(request.tenant_id, task.instance_id):
                task = self.instance_repo.get_task(request.tenant_id, request.task_id)
                instance = self.instance_repo.get_instance(request.tenant_id, task.instance_id)
                if instance is None:
                    raise InstanceNotFoundError(f"Instance {task.instance_id} not found")
                if not self.is_assignee(task, request.decided_by):
                    raise ActionNotAllowedError(
                        "User is not an assignee of this task",
                        details={"task_id": task.task_id}
                    )

                progress = self.apply_decision(
                    instance, task, request.decision, request.decided_by, request.note
                )

            return DecisionResult(
                success=True,
                task_id=task.task_id,
                task_status=TaskStatus(request.decision.value),
                stage_status=progress.stage.status if progress.stage else None,
                instance_status=progress.instance.status,
                transition_triggered=progress.lifecycle_resumed
            )
        except DomainError as e:
            logger.warning(
                f"Decision rejected: {e.message}",
                extra={"tenant_id": request.tenant_id, "task_id": request.task_id, "error_code": e.error_code}
            )
            return DecisionResult(
                success=False,
                task_id=request.task_id,
                error=e.message,
                error_code=e.error_code
            )

    def apply_decision(
        self,
        instance: ApprovalInstance,
        task: ApprovalTask,
        decision: Decision,
        decided_by: str,
        note: Optional[str] = None
    ) -> StageProgress:
        """
        Decision core shared with the action executor; caller holds the lock

        Raises:
            TaskNotPendingError: Task already decided
            InstanceTerminalError: Instance already closed
            InvalidStateError: Instance on hold or stage not open
        """
        if task.status != TaskStatus.PENDING:
            raise TaskNotPendingError(
                f"Task {task.task_id} is already {task.status.value}",
                details={"task_id": task.task_id, "status": task.status.value}
            )
        if instance.status in TERMINAL_INSTANCE_STATUSES:
            raise InstanceTerminalError(f"Instance {instance.instance_id} is {instance.status.value}")
        if instance.status == InstanceStatus.ON_HOLD:
            raise InvalidStateError(f"Instance {instance.instance_id} is on hold")

        stage = self.instance_repo.get_stage(instance.tenant_id, task.stage_id)
        if stage is None:
            raise StepNotFoundError(f"Stage {task.stage_id} not found")
        if stage.status != StageStatus.OPEN:
            raise InvalidStateError(f"Stage {stage.stage_no} is {stage.status.value}")

        new_status = TaskStatus.APPROVED if decision == Decision.APPROVED else TaskStatus.REJECTED
        updated = self.instance_repo.update_task(
            instance.tenant_id,
            task.task_id,
            {
                "status": new_status,
                "decided_at": utc_now(),
                "decided_by": decided_by,
                "decision_note": note,
            },
            expected_status=TaskStatus.PENDING
        )
        if updated is None:
            raise TaskNotPendingError(f"Task {task.task_id} was decided concurrently")

        self.cancel_timers(instance, [task.task_id])

        self.event_bus.record(
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            event_type=(
                ApprovalEventType.TASK_APPROVED if new_status == TaskStatus.APPROVED
                else ApprovalEventType.TASK_REJECTED
            ),
            actor_id=decided_by,
            task_id=task.task_id,
            stage_id=stage.stage_id,
            payload={"note": note} if note else {}
        )
        logger.info(
            f"Task {new_status.value}",
            extra={
                "tenant_id": instance.tenant_id,
                "instance_id": instance.instance_id,
                "task_id": task.task_id,
                "user_id": decided_by,
                "status": new_status.value
            }
        )

        return self.evaluate_stage_completion(instance, stage, decided_by)

    def evaluate_stage_completion(
        self,
        instance: ApprovalInstance,
        stage: StageInstance,
        actor_id: Optional[str]
    ) -> StageProgress:
        """Close the stage when its quorum is met or a rejection vetoes it"""
        tasks = self.instance_repo.get_tasks_for_stage(instance.tenant_id, stage.stage_id)
        verdict = evaluate_stage(stage.mode, stage.quorum, tasks)

        if not verdict.complete:
            return StageProgress(instance=instance, stage=stage)
        if verdict.rejected:
            return self.reject_instance(instance, stage, actor_id)
        return self.complete_stage(instance, stage, actor_id)

    def complete_stage(
        self,
        instance: ApprovalInstance,
        stage: StageInstance,
        actor_id: Optional[str],
        payload: Optional[Dict[str, Any]] = None
    ) -> StageProgress:
        """Mark a stage approved and move on to the next one"""
        now = utc_now()
        leftovers = self.instance_repo.cancel_pending_tasks(
            instance.tenant_id, instance.instance_id, stage.stage_id, note="Stage completed"
        )
        self.cancel_timers(instance, leftovers)

        completed = self.instance_repo.update_stage(
            instance.tenant_id,
            stage.stage_id,
            {"status": StageStatus.COMPLETED, "outcome": "approved", "completed_at": now},
            expected_status=StageStatus.OPEN.value
        ) or stage

        self.event_bus.record(
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            event_type=ApprovalEventType.STAGE_COMPLETED,
            actor_id=actor_id,
            stage_id=stage.stage_id,
            payload={"stage_no": stage.stage_no, "canceled_task_ids": leftovers, **(payload or {})}
        )
        self.event_bus.emit(
            WorkflowEventType.STEP_COMPLETED,
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            step_id=stage.stage_id,
            actor_id=actor_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            payload={"stage_no": stage.stage_no, "outcome": "approved"}
        )

        try:
            progress = self.advance(instance, self._template_for(instance), stage.stage_no, actor_id)
        except ApproverResolutionError as e:
            progress = self._abort_unstaffed(instance, e)
        progress.stage = completed
        return progress

    def _abort_unstaffed(self, instance: ApprovalInstance, error: ApproverResolutionError) -> StageProgress:
        """
        Close an instance whose next stage resolved nobody under the fail policy

        The decision that completed the previous stage stands; the instance
        is canceled with reason ``no_approvers`` instead of waiting forever.
        """
        logger.warning(
            f"Closing instance, next stage has no approvers: {error.message}",
            extra={"tenant_id": instance.tenant_id, "instance_id": instance.instance_id, "error_code": error.error_code}
        )
        current = self.instance_repo.get_instance(instance.tenant_id, instance.instance_id) or instance
        closed = self.close_instance(
            current,
            status=InstanceStatus.CANCELED,
            reason="no_approvers",
            actor_id=self.settings.system_actor_id,
            note=error.message
        )
        return StageProgress(instance=closed, workflow_complete=True, final_outcome="no_approvers")

    def reject_instance(
        self,
        instance: ApprovalInstance,
        stage: StageInstance,
        actor_id: Optional[str],
        payload: Optional[Dict[str, Any]] = None
    ) -> StageProgress:
        """A rejection cancels the stage and the whole instance"""
        rejected_stage = self.instance_repo.update_stage(
            instance.tenant_id,
            stage.stage_id,
            {"status": StageStatus.CANCELED, "outcome": "rejected", "completed_at": utc_now()}
        ) or stage

        self.event_bus.record(
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            event_type=ApprovalEventType.STAGE_REJECTED,
            actor_id=actor_id,
            stage_id=stage.stage_id,
            payload={"stage_no": stage.stage_no, **(payload or {})}
        )

        instance = self.close_instance(
            instance,
            status=InstanceStatus.CANCELED,
            reason="rejected",
            actor_id=actor_id,
            note="Instance rejected"
        )
        self.event_bus.emit(
            WorkflowEventType.STEP_COMPLETED,
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            step_id=stage.stage_id,
            actor_id=actor_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id,
            payload={"stage_no": stage.stage_no, "outcome": "rejected"}
        )
        return StageProgress(
            instance=instance,
            stage=rejected_stage,
            workflow_complete=True,
            final_outcome="rejected"
        )

    # =========================================================================
    # Instance Completion
    # =========================================================================

    def finalize_instance(self, instance: ApprovalInstance, actor_id: Optional[str]) -> StageProgress:
        """Complete the instance once and resume the waiting lifecycle transition"""
        if instance.status not in ACTIVE_INSTANCE_STATUSES:
            return StageProgress(
                instance=instance,
                workflow_complete=True,
                final_outcome="approved" if instance.status == InstanceStatus.COMPLETED else None
            )

        instance = self.update_instance(instance, {
            "status": InstanceStatus.COMPLETED,
            "current_stage_no": None,
            "completed_at": utc_now(),
        })
        self.event_bus.record(
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            event_type=ApprovalEventType.INSTANCE_COMPLETED,
            actor_id=actor_id
        )
        self.event_bus.emit(
            WorkflowEventType.WORKFLOW_APPROVED,
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            actor_id=actor_id,
            entity_name=instance.entity_name,
            entity_id=instance.entity_id
        )
        logger.info(
            "Approval instance completed",
            extra={"tenant_id": instance.tenant_id, "instance_id": instance.instance_id, "status": "completed"}
        )

        resumed = self._resume_lifecycle(instance)
        return StageProgress(
            instance=instance,
            workflow_complete=True,
            final_outcome="approved",
            lifecycle_resumed=resumed
        )

    def close_instance(
        self,
        instance: ApprovalInstance,
        status: InstanceStatus,
        reason: str,
        actor_id: Optional[str],
        note: Optional[str] = None
    ) -> ApprovalInstance:
        """
        Move an active instance to a terminal status other than completed

        Cancels all pending tasks and their timers, cancels stages that are
        still pending or open, and records the matching event.
        """
        if instance.status in TERMINAL_INSTANCE_STATUSES:
            raise InstanceTerminalError(f"Instance {instance.instance_id} is {instance.status.value}")

        now = utc_now()
        canceled = self.instance_repo.cancel_pending_tasks(
            instance.tenant_id, instance.instance_id, note=note
        )
        self.cancel_timers(instance, canceled)

        for stage in self.instance_repo.get_stages(instance.tenant_id, instance.instance_id):
            if stage.status in (StageStatus.PENDING, StageStatus.OPEN):
                self.instance_repo.update_stage(
                    instance.tenant_id,
                    stage.stage_id,
                    {"status": StageStatus.CANCELED, "outcome": reason, "completed_at": now}
                )

        instance = self.update_instance(instance, {
            "status": status,
            "context": {**instance.context, "reason": reason, "note": note},
            "hold_info": None,
            "completed_at": now,
        })

        if status == InstanceStatus.CANCELED and reason == "rejected":
            self.event_bus.record(
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                event_type=ApprovalEventType.INSTANCE_REJECTED,
                actor_id=actor_id,
                payload={"canceled_task_ids": canceled}
            )
            self.event_bus.emit(
                WorkflowEventType.WORKFLOW_REJECTED,
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                actor_id=actor_id,
                entity_name=instance.entity_name,
                entity_id=instance.entity_id
            )
        else:
            self.event_bus.record(
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                event_type=ApprovalEventType.INSTANCE_CANCELED,
                actor_id=actor_id,
                payload={"status": status.value, "reason": reason, "note": note, "canceled_task_ids": canceled}
            )
            self.event_bus.emit(
                WorkflowEventType.WORKFLOW_CANCELLED,
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                actor_id=actor_id,
                entity_name=instance.entity_name,
                entity_id=instance.entity_id,
                payload={"status": status.value, "reason": reason}
            )

        logger.info(
            f"Approval instance closed: {reason}",
            extra={"tenant_id": instance.tenant_id, "instance_id": instance.instance_id, "status": status.value}
        )
        return instance

    def _resume_lifecycle(self, instance: ApprovalInstance) -> bool:
        """Replay the gated lifecycle transition; failures become events"""
        if self.lifecycle_manager is None or not instance.operation_code:
            return False

        ctx = {
            "actor_id": self.settings.system_actor_id,
            "tenant_id": instance.tenant_id,
            "approval_bypass": True,
            "approval_instance_id": instance.instance_id,
            "transition_id": instance.transition_id,
        }
        try:
            self.lifecycle_manager.transition(
                instance.entity_name, instance.entity_id, instance.operation_code, ctx
            )
        except Exception as e:
            logger.error(
                f"Lifecycle resume failed: {e}",
                extra={"tenant_id": instance.tenant_id, "instance_id": instance.instance_id}
            )
            self.event_bus.record(
                tenant_id=instance.tenant_id,
                instance_id=instance.instance_id,
                event_type=ApprovalEventType.LIFECYCLE_RESUME_FAILED,
                actor_id=self.settings.system_actor_id,
                payload={"operation_code": instance.operation_code, "error": str(e)}
            )
            return False

        self.event_bus.record(
            tenant_id=instance.tenant_id,
            instance_id=instance.instance_id,
            event_type=ApprovalEventType.LIFECYCLE_RESUMED,
            actor_id=self.settings.system_actor_id,
            payload={"operation_code": instance.operation_code}
        )
        return True

    # =========================================================================
    # Administrative Cancel
    # =========================================================================

    def cancel_instance(
        self,
        tenant_id: str,
        instance_id: str,
        actor_id: str,
        note: Optional[str] = None
    ) -> ApprovalInstance:
        """Cancel an active instance (``context.reason = "canceled"``)"""
        if self.instance_repo.get_instance(tenant_id, instance_id) is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")

        with self.instance_lock(tenant_id, instance_id):
            instance = self.instance_repo.get_instance(tenant_id, instance_id)
            return self.close_instance(
                instance,
                status=InstanceStatus.CANCELED,
                reason="canceled",
                actor_id=actor_id,
                note=note
            )

    # =========================================================================
    # Queries
    # =========================================================================

    def is_assignee(self, task: ApprovalTask, user_id: str) -> bool:
        """True when the task is addressed to the user or one of their groups"""
        if task.approver_id == user_id:
            return True
        if task.approver_type == ApproverType.GROUP:
            return task.approver_id in self.directory_repo.get_group_ids_for_principal(task.tenant_id, user_id)
        return False

    def get_instance(self, tenant_id: str, instance_id: str) -> ApprovalInstance:
        instance = self.instance_repo.get_instance(tenant_id, instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance {instance_id} not found")
        return instance

    def get_instance_for_entity(
        self,
        tenant_id: str,
        entity_name: str,
        entity_id: str
    ) -> Optional[ApprovalInstance]:
        """Open or on-hold instance of an entity"""
        return self.instance_repo.find_active_for_entity(tenant_id, entity_name, entity_id)

    def get_tasks_for_user(self, tenant_id: str, user_id: str) -> List[ApprovalTask]:
        """Pending tasks addressed to the user directly or through a group"""
        approver_ids = [user_id] + self.directory_repo.get_group_ids_for_principal(tenant_id, user_id)
        return self.instance_repo.find_pending_tasks_for_approvers(tenant_id, approver_ids)

    def get_stages(self, tenant_id: str, instance_id: str) -> List[StageInstance]:
        return self.instance_repo.get_stages(tenant_id, instance_id)

    def get_tasks(self, tenant_id: str, instance_id: str) -> List[ApprovalTask]:
        return self.instance_repo.get_tasks_for_instance(tenant_id, instance_id)

    def get_assignment_snapshot(self, tenant_id: str, task_id: str) -> AssignmentSnapshot:
        snapshot = self.instance_repo.get_snapshot_for_task(tenant_id, task_id)
        if snapshot is None:
            raise TaskNotFoundError(f"No assignment snapshot for task {task_id}")
        return snapshot

    def _page_bounds(self, page: int, page_size: int):
        page = max(page, 1)
        page_size = min(max(page_size, 1), self.settings.template_page_size_max)
        return page, page_size, (page - 1) * page_size

    def get_events(
        self,
        tenant_id: str,
        instance_id: str,
        page: int = 1,
        page_size: int = 50,
        event_type: Optional[str] = None
    ) -> EventPage:
        """Event log of an instance, oldest first"""
        self.get_instance(tenant_id, instance_id)
        page, page_size, skip = self._page_bounds(page, page_size)
        events, total = self.event_repo.list_events(tenant_id, instance_id, skip, page_size, event_type)
        return EventPage(items=events, meta=PageMeta.build(page, page_size, total))

    def get_escalations(
        self,
        tenant_id: str,
        instance_id: str,
        page: int = 1,
        page_size: int = 50
    ) -> EscalationPage:
        """Escalation rows of an instance"""
        self.get_instance(tenant_id, instance_id)
        page, page_size, skip = self._page_bounds(page, page_size)
        escalations, total = self.event_repo.list_escalations(tenant_id, instance_id, skip, page_size)
        return EscalationPage(items=escalations, meta=PageMeta.build(page, page_size, total))

    def health_check(self) -> Dict[str, Any]:
        """Store and scheduler status"""
        database = self.instance_repo.ping()
        scheduler_running = self.sla_timers.job_queue.is_running
        return {
            "status": database.get("status", "unhealthy"),
            "database": database,
            "scheduler": "running" if scheduler_running else "stopped",
        }
