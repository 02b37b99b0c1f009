"""Approval Gate Service - Lifecycle transition gating on approvals

The lifecycle module asks ``check_gate`` before applying a transition. A
gate with an approval template blocks the transition until an approval
instance for the entity completes; the first check starts that instance.
When it completes, the engine replays the transition with
``approval_bypass`` set, which this check lets through.
"""
from typing import Any, Dict, Optional

from ..domain.enums import GateOutcome, InstanceStatus
from ..domain.models import CreateInstanceRequest, GateDecision, TransitionGate
from ..engine.instance_engine import ApprovalEngine
from ..repositories.instance_repo import InstanceRepository
from ..repositories.lifecycle_repo import LifecycleRepository
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ApprovalGateService:
    """Bridge between lifecycle transition gates and approval instances"""

    def __init__(
        self,
        engine: ApprovalEngine,
        instance_repo: InstanceRepository,
        lifecycle_repo: LifecycleRepository
    ):
        self.engine = engine
        self.instance_repo = instance_repo
        self.lifecycle_repo = lifecycle_repo

    def requires_approval(self, tenant_id: str, transition_id: str) -> Optional[str]:
        """Approval template ID gating a transition, if any"""
        gate = self.lifecycle_repo.get_gate(tenant_id, transition_id)
        if gate is None:
            return None
        return gate.approval_template_id

    def check_gate(
        self,
        tenant_id: str,
        gate: TransitionGate,
        entity_name: Optional[str],
        entity_id: Optional[str],
        ctx: Optional[Dict[str, Any]] = None
    ) -> GateDecision:
        """
        Decide whether a gated transition may proceed

        A canceled or withdrawn approval keeps blocking until the caller
        passes ``ctx["resubmit"]``, which starts a fresh instance.
        """
        ctx = ctx or {}

        if not gate.approval_template_id:
            return GateDecision(allowed=True, outcome=GateOutcome.ALLOWED)

        if ctx.get("approval_bypass"):
            return GateDecision(
                allowed=True,
                outcome=GateOutcome.ALLOWED,
                instance_id=ctx.get("approval_instance_id"),
                reason="Approval bypass"
            )

        if not entity_name or not entity_id:
            logger.info(
                f"Approval required for transition {gate.transition_id} but no entity context; skipping",
                extra={"tenant_id": tenant_id}
            )
            return GateDecision(
                allowed=True,
                outcome=GateOutcome.ALLOWED,
                reason="No entity context; approval check skipped"
            )

        existing = self.instance_repo.find_latest_for_entity(tenant_id, entity_name, entity_id)
        if existing is not None and existing.transition_id not in (None, gate.transition_id):
            if existing.status in (InstanceStatus.OPEN, InstanceStatus.ON_HOLD):
                return GateDecision(
                    allowed=False,
                    outcome=GateOutcome.APPROVAL_PENDING,
                    instance_id=existing.instance_id,
                    reason="Another approval is pending for this entity"
                )
            existing = None

        if existing is not None:
            if existing.status in (InstanceStatus.OPEN, InstanceStatus.ON_HOLD):
                return GateDecision(
                    allowed=False,
                    outcome=GateOutcome.APPROVAL_PENDING,
                    instance_id=existing.instance_id,
                    reason="Approval pending"
                )
            if existing.status == InstanceStatus.COMPLETED:
                return GateDecision(
                    allowed=True,
                    outcome=GateOutcome.ALLOWED,
                    instance_id=existing.instance_id
                )
            if not ctx.get("resubmit"):
                reason = "Approval was rejected" if existing.is_rejected else f"Approval was {existing.status.value}"
                return GateDecision(
                    allowed=False,
                    outcome=GateOutcome.APPROVAL_REJECTED,
                    instance_id=existing.instance_id,
                    reason=reason
                )

        result = self.engine.create_approval_instance(CreateInstanceRequest(
            tenant_id=tenant_id,
            template=gate.approval_template_id,
            entity_name=entity_name,
            entity_id=entity_id,
            transition_id=gate.transition_id,
            operation_code=gate.operation_code,
            requester_id=ctx.get("actor_id"),
            context=dict(ctx.get("context") or {})
        ))
        if not result.success:
            return GateDecision(
                allowed=False,
                outcome=GateOutcome.APPROVAL_ERROR,
                reason=f"Failed to create approval: {result.error}"
            )

        # Blocked even when every stage was skipped; completion replays the transition
        return GateDecision(
            allowed=False,
            outcome=GateOutcome.APPROVAL_REQUIRED,
            instance_id=result.instance_id,
            reason="Approval workflow initiated"
        )
