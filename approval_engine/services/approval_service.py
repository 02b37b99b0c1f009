"""Approval Service - Caller-facing facade over the engine and the executor"""
from typing import Any, Dict, List, Optional

from ..domain.enums import ActionType, Decision, StageStatus
from ..domain.errors import ActionNotAllowedError, InstanceNotFoundError, StepNotFoundError
from ..domain.models import (
    ActionRequest, ActionResult, ActorContext, ApprovalInstance, ApprovalTask,
    AssignmentSnapshot, CreateInstanceRequest, CreateInstanceResult,
    DecisionRequest, DecisionResult, EscalationPage, EventPage, InstanceDetail
)
from ..engine.action_executor import ActionExecutor
from ..engine.instance_engine import ApprovalEngine
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ApprovalService:
    """
    Service for approval runtime operations

    Fills in tenant and actor from the caller's context and resolves the
    current step when a request does not name one.
    """

    def __init__(self, engine: ApprovalEngine, executor: ActionExecutor):
        self.engine = engine
        self.executor = executor

    def start(
        self,
        actor: ActorContext,
        template: str,
        entity_name: str,
        entity_id: str,
        context: Optional[Dict[str, Any]] = None,
        transition_id: Optional[str] = None,
        operation_code: Optional[str] = None
    ) -> CreateInstanceResult:
        """Open an approval instance requested by ``actor``"""
        return self.engine.create_approval_instance(CreateInstanceRequest(
            tenant_id=actor.tenant_id,
            template=template,
            entity_name=entity_name,
            entity_id=entity_id,
            transition_id=transition_id,
            operation_code=operation_code,
            requester_id=actor.user_id,
            context=context or {}
        ))

    def get_detail(self, tenant_id: str, instance_id: str) -> InstanceDetail:
        """Instance with its stages and tasks"""
        instance = self.engine.get_instance(tenant_id, instance_id)
        return InstanceDetail(
            instance=instance,
            stages=self.engine.get_stages(tenant_id, instance_id),
            tasks=self.engine.get_tasks(tenant_id, instance_id)
        )

    def get_for_entity(self, tenant_id: str, entity_name: str, entity_id: str) -> ApprovalInstance:
        """Open or on-hold instance of an entity"""
        instance = self.engine.get_instance_for_entity(tenant_id, entity_name, entity_id)
        if instance is None:
            raise InstanceNotFoundError(
                f"No open approval for {entity_name}/{entity_id}",
                details={"entity_name": entity_name, "entity_id": entity_id}
            )
        return instance

    def current_step_id(self, tenant_id: str, instance_id: str) -> str:
        """ID of the open stage of an instance"""
        for stage in self.engine.get_stages(tenant_id, instance_id):
            if stage.status == StageStatus.OPEN:
                return stage.stage_id
        raise StepNotFoundError(f"Instance {instance_id} has no open step")

    # =========================================================================
    # Actions & Decisions
    # =========================================================================

    def execute(
        self,
        actor: ActorContext,
        instance_id: str,
        payload: Dict[str, Any]
    ) -> ActionResult:
        """Run an executor action as ``actor``; ``step_id`` defaults to the open step"""
        data = dict(payload)
        if not data.get("step_id"):
            try:
                data["step_id"] = self.current_step_id(actor.tenant_id, instance_id)
            except StepNotFoundError:
                data["step_id"] = ""
        data.update({
            "tenant_id": actor.tenant_id,
            "instance_id": instance_id,
            "user_id": actor.user_id,
            "roles": list(actor.roles),
        })
        return self.executor.execute_action(ActionRequest.model_validate(data))

    def available_actions(
        self,
        actor: ActorContext,
        instance_id: str,
        step_id: Optional[str] = None
    ) -> List[ActionType]:
        """Actions the actor can take on the step"""
        if not step_id:
            try:
                step_id = self.current_step_id(actor.tenant_id, instance_id)
            except StepNotFoundError:
                return []
        return self.executor.get_available_actions(actor.tenant_id, instance_id, step_id, actor.user_id)

    def decide(
        self,
        actor: ActorContext,
        task_id: str,
        decision: Decision,
        note: Optional[str] = None
    ) -> DecisionResult:
        """Approve or reject a task as ``actor``"""
        return self.engine.make_decision(DecisionRequest(
            tenant_id=actor.tenant_id,
            task_id=task_id,
            decision=decision,
            decided_by=actor.user_id,
            note=note
        ))

    def cancel(self, actor: ActorContext, instance_id: str, note: Optional[str] = None) -> ApprovalInstance:
        """Administrative cancel"""
        if not self.executor.is_admin(actor.roles):
            raise ActionNotAllowedError("Canceling an instance requires an approval administrator role")
        return self.engine.cancel_instance(actor.tenant_id, instance_id, actor.user_id, note)

    # =========================================================================
    # Queries
    # =========================================================================

    def my_tasks(self, actor: ActorContext) -> List[ApprovalTask]:
        return self.engine.get_tasks_for_user(actor.tenant_id, actor.user_id)

    def snapshot(self, tenant_id: str, task_id: str) -> AssignmentSnapshot:
        return self.engine.get_assignment_snapshot(tenant_id, task_id)

    def events(
        self,
        tenant_id: str,
        instance_id: str,
        page: int = 1,
        page_size: int = 50,
        event_type: Optional[str] = None
    ) -> EventPage:
        return self.engine.get_events(tenant_id, instance_id, page, page_size, event_type)

    def escalations(self, tenant_id: str, instance_id: str, page: int = 1, page_size: int = 50) -> EscalationPage:
        return self.engine.get_escalations(tenant_id, instance_id, page, page_size)
