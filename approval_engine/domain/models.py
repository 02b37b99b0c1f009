"""Domain Models - Pydantic schemas for all entities"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Optional, Union
from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from .enums import (
    ApproverType, GateOutcome, InstanceStatus,
    QuorumType, StageMode, StageStatus, TaskStatus, Decision
)
from ..utils.idgen import generate_rule_id
from ..utils.time import ensure_utc, utc_now


# Datetimes read back from MongoDB may be naive; normalize to aware UTC
UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]


# ============================================================================
# Identity
# ============================================================================

class ActorContext(BaseModel):
    """Current actor context from the bearer token"""
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(..., description="Principal ID of the caller")
    tenant_id: str = Field(..., description="Tenant the caller acts in")
    display_name: Optional[str] = Field(None, description="Display name if present in token")
    roles: List[str] = Field(default_factory=list, description="Assigned roles")


# ============================================================================
# Conditions
# ============================================================================

class ConditionRule(BaseModel):
    """Leaf comparison of a context field against a literal"""
    model_config = ConfigDict(extra="forbid")

    field: str = Field(..., description="Dot-path into the evaluation context")
    operator: str = Field(..., description="Comparison operator (eq, gt, in, matches, ...)")
    value: Any = Field(None, description="Literal to compare against")


class ConditionGroup(BaseModel):
    """AND/OR group of rules or nested groups"""
    model_config = ConfigDict(extra="forbid")

    operator: str = Field("and", description="and | or")
    conditions: List[Union["ConditionGroup", ConditionRule]] = Field(default_factory=list)


ConditionGroup.model_rebuild()


# ============================================================================
# Directory (organization data consumed by the resolver)
# ============================================================================

class Principal(BaseModel):
    """A user that can be assigned approval tasks"""
    principal_id: str
    tenant_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    org_unit_ids: List[str] = Field(default_factory=list, description="Org units the principal is attached to")
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class PrincipalGroup(BaseModel):
    """Named group of principals"""
    group_id: str
    tenant_id: str
    code: str
    name: Optional[str] = None
    member_ids: List[str] = Field(default_factory=list)


class RoleGrant(BaseModel):
    """Role held by a principal, optionally time-limited"""
    tenant_id: str
    principal_id: str
    role_code: str
    expires_at: Optional[UtcDatetime] = None


class OrgUnit(BaseModel):
    """Organizational unit node; parent pointers may form cycles in bad data"""
    org_unit_id: str
    tenant_id: str
    code: str
    name: Optional[str] = None
    parent_id: Optional[str] = None


class ResolvedAssignee(BaseModel):
    """A concrete principal or group produced by a routing rule"""
    principal_id: Optional[str] = None
    group_id: Optional[str] = None
    strategy: str = Field(..., description="Strategy that produced this assignee")
    rule_id: Optional[str] = Field(None, description="Routing rule that matched")

    @property
    def approver_id(self) -> str:
        return self.principal_id or self.group_id or ""

    @property
    def approver_type(self) -> ApproverType:
        return ApproverType.PRINCIPAL if self.principal_id else ApproverType.GROUP


class ResolutionResult(BaseModel):
    """Outcome of running the routing rules for one context"""
    assignees: List[ResolvedAssignee] = Field(default_factory=list)
    matched_rule_id: Optional[str] = None
    strategy: Optional[str] = None


# ============================================================================
# Template Definition
# ============================================================================

class QuorumRule(BaseModel):
    """Completion threshold for a parallel stage"""
    model_config = ConfigDict(extra="forbid")

    type: QuorumType = Field(..., description="all | any | majority | count | percentage")
    value: Optional[float] = Field(None, description="Approvals (count) or percent (percentage)")


class StageSla(BaseModel):
    """Per-stage SLA: due date, reminder lead time and escalation payload"""
    model_config = ConfigDict(extra="forbid")

    due_in_minutes: int = Field(..., gt=0, description="Minutes from activation until tasks are due")
    reminder_before_minutes: Optional[int] = Field(None, ge=0, description="Reminder lead time before due")
    escalation: Dict[str, Any] = Field(default_factory=dict, description="Escalation payload (kind, target)")


class TemplateStage(BaseModel):
    """Stage definition within a template version"""
    model_config = ConfigDict(extra="forbid")

    stage_no: int = Field(..., description="1-based position; must be contiguous")
    name: Optional[str] = Field(None, description="Display name")
    mode: str = Field(StageMode.SERIAL.value, description="serial | parallel")
    quorum: Optional[QuorumRule] = Field(None, description="Parallel completion rule")
    sla: Optional[StageSla] = Field(None, description="Optional SLA timers")
    allowed_actions: List[str] = Field(default_factory=list, description="Restricts executor actions when set")


class TemplateRule(BaseModel):
    """Prioritized routing rule; conditions and assign_to kept raw for validation"""
    model_config = ConfigDict(extra="forbid")

    rule_id: str = Field(default_factory=generate_rule_id)
    priority: Optional[int] = Field(None, description="Lower evaluates first; defaults to 100")
    conditions: Any = Field(None, description="ConditionGroup document")
    assign_to: Any = Field(None, description="Assignment target: {strategy, ...}")
    stage_no: Optional[int] = Field(None, description="Restrict rule to one stage")


class ApprovalTemplate(BaseModel):
    """One version of an approval template"""
    model_config = ConfigDict(extra="forbid")

    template_id: str = Field(..., description="Version-specific ID")
    tenant_id: str
    code: str = Field(..., description="Stable across versions")
    name: str
    description: Optional[str] = None
    version_no: int = 1
    is_active: bool = True
    escalation_style: Optional[str] = None
    behaviors: Dict[str, Any] = Field(default_factory=dict)
    allowed_actions: List[str] = Field(default_factory=list)
    stages: List[TemplateStage] = Field(default_factory=list)
    rules: List[TemplateRule] = Field(default_factory=list)
    compiled_artifact: Optional[Dict[str, Any]] = None
    compiled_hash: Optional[str] = None
    compiled_at: Optional[UtcDatetime] = None
    created_by: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utc_now)
    updated_at: UtcDatetime = Field(default_factory=utc_now)

    def sorted_stages(self) -> List[TemplateStage]:
        return sorted(self.stages, key=lambda s: s.stage_no)


class TemplateCreateRequest(BaseModel):
    """Payload to create a template (version 1)"""
    model_config = ConfigDict(extra="forbid")

    code: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    escalation_style: Optional[str] = None
    behaviors: Dict[str, Any] = Field(default_factory=dict)
    allowed_actions: List[str] = Field(default_factory=list)
    stages: List[TemplateStage] = Field(default_factory=list)
    rules: List[TemplateRule] = Field(default_factory=list)


class TemplateUpdateRequest(BaseModel):
    """Payload to create the next version; omitted fields are copied"""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    escalation_style: Optional[str] = None
    behaviors: Optional[Dict[str, Any]] = None
    allowed_actions: Optional[List[str]] = None
    stages: Optional[List[TemplateStage]] = None
    rules: Optional[List[TemplateRule]] = None


class ValidationIssue(BaseModel):
    """One validation finding"""
    path: str
    message: str


class TemplateValidationResult(BaseModel):
    """Structural validation outcome"""
    valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)


class CompiledTemplate(BaseModel):
    """Frozen, hash-addressed snapshot of a template version"""
    template_id: str
    code: str
    version: int
    stages: List[Dict[str, Any]]
    rules: List[Dict[str, Any]]
    compiled_hash: str
    compiled_at: UtcDatetime


class DiffField(BaseModel):
    """Value of one attribute in two versions"""
    v1: Any = None
    v2: Any = None
    changed: bool


class TemplateDiff(BaseModel):
    """Attribute-level diff between two versions of a code"""
    code: str
    v1: int
    v2: int
    name: DiffField
    stage_count: DiffField
    rule_count: DiffField
    escalation_style: DiffField


class AffectedTransition(BaseModel):
    """Lifecycle transition gated by a template"""
    transition_id: str
    entity_name: str
    operation_code: Optional[str] = None


class ImpactAnalysis(BaseModel):
    """Which lifecycle transitions reference a template"""
    template_id: str
    affected_transitions: List[AffectedTransition] = Field(default_factory=list)


class StageResolutionPreview(BaseModel):
    """Who a stage would be assigned to for a sample context"""
    stage_no: int
    matched_rule_id: Optional[str] = None
    strategy: Optional[str] = None
    assignees: List[ResolvedAssignee] = Field(default_factory=list)


class PageMeta(BaseModel):
    """Pagination metadata"""
    page: int
    page_size: int
    total: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def build(cls, page: int, page_size: int, total: int) -> "PageMeta":
        total_pages = (total + page_size - 1) // page_size if page_size else 0
        return cls(
            page=page,
            page_size=page_size,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class TemplatePage(BaseModel):
    items: List[ApprovalTemplate]
    meta: PageMeta


# ============================================================================
# Runtime Records
# ============================================================================

class HoldInfo(BaseModel):
    """Why and since when an instance is on hold"""
    held_by: str
    held_at: UtcDatetime
    reason: str
    expected_resume_at: Optional[UtcDatetime] = None


class ChangeRequest(BaseModel):
    """Latest request_changes payload"""
    requested_by: str
    requested_at: UtcDatetime
    requested_changes: str
    fields_to_change: List[str] = Field(default_factory=list)
    stage_id: Optional[str] = None


class ApprovalInstance(BaseModel):
    """One approval run for a business event"""
    model_config = ConfigDict(extra="forbid")

    instance_id: str
    tenant_id: str
    entity_name: str
    entity_id: str
    transition_id: Optional[str] = None
    operation_code: Optional[str] = None
    template_id: str
    template_code: str
    template_version: int
    requester_id: Optional[str] = None
    status: InstanceStatus = InstanceStatus.OPEN
    context: Dict[str, Any] = Field(default_factory=dict, description="Outcome context (reason)")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Assignment context, transition")
    current_stage_no: Optional[int] = None
    escalation_level: int = 0
    revision_count: int = 0
    last_change_request: Optional[ChangeRequest] = None
    hold_info: Optional[HoldInfo] = None
    version: int = 1
    locked_by: Optional[str] = None
    lock_expires_ms: Optional[int] = None
    created_at: UtcDatetime = Field(default_factory=utc_now)
    updated_at: UtcDatetime = Field(default_factory=utc_now)
    completed_at: Optional[UtcDatetime] = None

    @property
    def is_rejected(self) -> bool:
        return self.status == InstanceStatus.CANCELED and self.context.get("reason") == "rejected"


class StageInstance(BaseModel):
    """Instance-scoped stage"""
    model_config = ConfigDict(extra="forbid")

    stage_id: str
    tenant_id: str
    instance_id: str
    stage_no: int
    name: Optional[str] = None
    mode: StageMode = StageMode.SERIAL
    quorum: Optional[QuorumRule] = None
    sla: Optional[StageSla] = None
    allowed_actions: List[str] = Field(default_factory=list)
    status: StageStatus = StageStatus.PENDING
    outcome: Optional[str] = None
    escalation_level: int = 0
    activated_at: Optional[UtcDatetime] = None
    completed_at: Optional[UtcDatetime] = None


class ApprovalTask(BaseModel):
    """One assignee's decision slot in a stage"""
    model_config = ConfigDict(extra="forbid")

    task_id: str
    tenant_id: str
    instance_id: str
    stage_id: str
    stage_no: int
    approver_id: str
    approver_type: ApproverType = ApproverType.PRINCIPAL
    status: TaskStatus = TaskStatus.PENDING
    decided_at: Optional[UtcDatetime] = None
    decided_by: Optional[str] = None
    decision_note: Optional[str] = None
    due_at: Optional[UtcDatetime] = None
    delegated_from: Optional[str] = None
    delegated_to: Optional[str] = None
    reminder_count: int = 0
    created_at: UtcDatetime = Field(default_factory=utc_now)


class AssignmentSnapshot(BaseModel):
    """Write-once record of how a task's assignee was derived"""
    model_config = ConfigDict(extra="forbid")

    snapshot_id: str
    tenant_id: str
    instance_id: str
    task_id: str
    stage_no: int
    resolved_assignment: Dict[str, Any]
    resolved_from_rule_id: Optional[str] = None
    created_at: UtcDatetime = Field(default_factory=utc_now)


class ApprovalEvent(BaseModel):
    """Append-only event log entry"""
    model_config = ConfigDict(extra="forbid")

    event_id: str
    tenant_id: str
    instance_id: str
    event_type: str
    task_id: Optional[str] = None
    stage_id: Optional[str] = None
    actor_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    correlation_id: Optional[str] = None
    occurred_at: UtcDatetime = Field(default_factory=utc_now)


class ApprovalEscalation(BaseModel):
    """Append-only escalation record"""
    model_config = ConfigDict(extra="forbid")

    escalation_id: str
    tenant_id: str
    instance_id: str
    task_id: Optional[str] = None
    stage_id: Optional[str] = None
    kind: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    occurred_at: UtcDatetime = Field(default_factory=utc_now)


class EventPage(BaseModel):
    items: List[ApprovalEvent]
    meta: PageMeta


class EscalationPage(BaseModel):
    items: List[ApprovalEscalation]
    meta: PageMeta


class InstanceDetail(BaseModel):
    """Instance with its stages and tasks"""
    instance: ApprovalInstance
    stages: List[StageInstance]
    tasks: List[ApprovalTask]


# ============================================================================
# Engine Requests & Results
# ============================================================================

class CreateInstanceRequest(BaseModel):
    """Ask the engine to open an approval instance"""
    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    template: str = Field(..., description="Template ID or active template code")
    entity_name: str
    entity_id: str
    transition_id: Optional[str] = None
    operation_code: Optional[str] = None
    requester_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict, description="Assignment context for rule evaluation")


class CreateInstanceResult(BaseModel):
    """Structured outcome of instance creation"""
    success: bool
    instance_id: Optional[str] = None
    stage_count: int = 0
    task_count: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None


class DecisionRequest(BaseModel):
    """Decision on a single task"""
    model_config = ConfigDict(extra="forbid")

    tenant_id: str
    task_id: str
    decision: Decision
    decided_by: str
    note: Optional[str] = None


class DecisionResult(BaseModel):
    """Structured outcome of a decision"""
    success: bool
    task_id: Optional[str] = None
    task_status: Optional[TaskStatus] = None
    stage_status: Optional[StageStatus] = None
    instance_status: Optional[InstanceStatus] = None
    transition_triggered: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None


class ActionRequest(BaseModel):
    """Input for the action executor; identity fields validated by the executor"""
    model_config = ConfigDict(extra="forbid")

    tenant_id: str = ""
    instance_id: str = ""
    step_id: str = Field("", description="Stage instance ID")
    user_id: str = ""
    roles: List[str] = Field(default_factory=list, description="Roles of the acting user")
    action: str = Field(..., description="One of the ActionType values")
    reason: Optional[str] = None
    comment: Optional[str] = None
    requested_changes: Optional[str] = None
    fields_to_change: List[str] = Field(default_factory=list)
    delegate_to_user_id: Optional[str] = None
    escalation_reason: Optional[str] = None
    target_level: Optional[int] = None
    hold_reason: Optional[str] = None
    expected_resume_at: Optional[UtcDatetime] = None
    decision: Optional[str] = Field(None, description="Bypass outcome: approve | reject")
    skip_remaining_steps: bool = False
    from_approver_id: Optional[str] = None
    to_approver_id: Optional[str] = None
    comment_text: Optional[str] = None
    is_internal: bool = False
    expected_version: Optional[int] = Field(None, description="Version the caller last read")


class ActionResult(BaseModel):
    """Structured outcome of an executor action"""
    success: bool
    action: Optional[str] = None
    instance_status: Optional[InstanceStatus] = None
    step_status: Optional[StageStatus] = None
    instance_version: Optional[int] = None
    task_id: Optional[str] = None
    activated_step_ids: List[str] = Field(default_factory=list)
    workflow_complete: bool = False
    final_outcome: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class PermissionCheck(BaseModel):
    allowed: bool
    reason: Optional[str] = None


class WorkflowEvent(BaseModel):
    """Typed event delivered to registered handlers"""
    event_id: str
    event_type: str
    tenant_id: str
    instance_id: str
    step_id: Optional[str] = None
    entity_name: Optional[str] = None
    entity_id: Optional[str] = None
    actor_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: UtcDatetime = Field(default_factory=utc_now)


# ============================================================================
# Lifecycle Gate Bridge
# ============================================================================

class TransitionGate(BaseModel):
    """Lifecycle transition gate that may require an approval"""
    tenant_id: str
    transition_id: str
    entity_name: str
    operation_code: Optional[str] = None
    approval_template_id: Optional[str] = None


class GateDecision(BaseModel):
    """Whether a lifecycle transition may proceed"""
    allowed: bool
    outcome: GateOutcome
    instance_id: Optional[str] = None
    reason: Optional[str] = None
