"""Domain Enumerations - All status and type definitions"""
from enum import Enum


class StageMode(str, Enum):
    """How the tasks of a stage are decided"""
    SERIAL = "serial"      # Every assignee must respond, in any order
    PARALLEL = "parallel"  # Completion governed by the quorum rule


class QuorumType(str, Enum):
    """Completion threshold for a parallel stage"""
    ALL = "all"
    ANY = "any"
    MAJORITY = "majority"
    COUNT = "count"
    PERCENTAGE = "percentage"


class InstanceStatus(str, Enum):
    """Lifecycle of an approval instance"""
    OPEN = "open"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELED = "canceled"  # context.reason distinguishes rejection from admin cancel
    WITHDRAWN = "withdrawn"


class StageStatus(str, Enum):
    """Lifecycle of a stage within an instance"""
    PENDING = "pending"  # Materialized, not yet activated
    OPEN = "open"
    COMPLETED = "completed"
    CANCELED = "canceled"
    SKIPPED = "skipped"


class TaskStatus(str, Enum):
    """Lifecycle of a single approver task"""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELED = "canceled"
    DELEGATED = "delegated"
    REASSIGNED = "reassigned"


class Decision(str, Enum):
    """Decision submitted against a task"""
    APPROVED = "approved"
    REJECTED = "rejected"


class ApproverType(str, Enum):
    """What an approver ID refers to"""
    PRINCIPAL = "principal"
    GROUP = "group"


class AssignmentStrategy(str, Enum):
    """How a routing rule expands into assignees"""
    DIRECT = "direct"
    ROLE = "role"
    GROUP = "group"
    HIERARCHY = "hierarchy"
    DEPARTMENT = "department"
    CUSTOM_FIELD = "custom_field"


class LogicalOperator(str, Enum):
    """Combinator for a condition group"""
    AND = "and"
    OR = "or"


class ConditionOperator(str, Enum):
    """Comparison operators for condition rules"""
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES = "matches"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    BETWEEN = "between"
    EMPTY = "empty"
    NOT_EMPTY = "not_empty"
    DATE_BEFORE = "date_before"
    DATE_AFTER = "date_after"


class ActionType(str, Enum):
    """Actions accepted by the action executor"""
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"
    DELEGATE = "delegate"
    ESCALATE = "escalate"
    HOLD = "hold"
    RESUME = "resume"
    RECALL = "recall"
    WITHDRAW = "withdraw"
    BYPASS = "bypass"
    REASSIGN = "reassign"
    COMMENT = "comment"
    RELEASE = "release"


class BypassDecision(str, Enum):
    """Forced outcome of a bypass"""
    APPROVE = "approve"
    REJECT = "reject"


class EmptyStagePolicy(str, Enum):
    """What to do with a stage whose rules resolve nobody"""
    SKIP = "skip"
    FAIL = "fail"


class EscalationKind(str, Enum):
    """Kinds of escalation rows"""
    SLA_BREACH = "sla_breach"
    MANUAL = "manual"


class SlaJobType(str, Enum):
    """Job types handled by the SLA timer subsystem"""
    REMINDER = "approval.sla.reminder"
    ESCALATION = "approval.sla.escalation"


class ApprovalEventType(str, Enum):
    """Event log entry types written by the engine"""
    INSTANCE_CREATED = "instance_created"
    INSTANCE_COMPLETED = "instance_completed"
    INSTANCE_REJECTED = "instance_rejected"
    INSTANCE_CANCELED = "instance_canceled"
    STAGE_ACTIVATED = "stage_activated"
    STAGE_SKIPPED = "stage_skipped"
    STAGE_COMPLETED = "stage_completed"
    STAGE_REJECTED = "stage_rejected"
    TASK_APPROVED = "task_approved"
    TASK_REJECTED = "task_rejected"
    LIFECYCLE_RESUMED = "lifecycle_resumed"
    LIFECYCLE_RESUME_FAILED = "lifecycle_resume_failed"
    SLA_REMINDER_SCHEDULED = "sla_reminder_scheduled"
    SLA_ESCALATION_SCHEDULED = "sla_escalation_scheduled"
    SLA_REMINDER_SENT = "sla_reminder_sent"
    SLA_ESCALATION_EXECUTED = "sla_escalation_executed"
    SLA_TIMERS_CANCELLED = "sla_timers_cancelled"


class WorkflowEventType(str, Enum):
    """Typed events fanned out to registered handlers"""
    ACTION_APPROVE = "action.approve"
    ACTION_REJECT = "action.reject"
    ACTION_REQUEST_CHANGES = "action.request_changes"
    ACTION_DELEGATE = "action.delegate"
    ACTION_ESCALATE = "action.escalate"
    ACTION_HOLD = "action.hold"
    ACTION_RESUME = "action.resume"
    ACTION_RECALL = "action.recall"
    ACTION_WITHDRAW = "action.withdraw"
    ACTION_BYPASS = "action.bypass"
    ACTION_REASSIGN = "action.reassign"
    ACTION_COMMENT = "action.comment"
    ACTION_RELEASE = "action.release"
    STEP_ACTIVATED = "step.activated"
    STEP_COMPLETED = "step.completed"
    STEP_ESCALATED = "step.escalated"
    WORKFLOW_STARTED = "workflow.started"
    WORKFLOW_APPROVED = "workflow.approved"
    WORKFLOW_REJECTED = "workflow.rejected"
    WORKFLOW_CANCELLED = "workflow.cancelled"


class GateOutcome(str, Enum):
    """Result of a lifecycle approval gate check"""
    ALLOWED = "ALLOWED"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"
    APPROVAL_PENDING = "APPROVAL_PENDING"
    APPROVAL_REJECTED = "APPROVAL_REJECTED"
    APPROVAL_ERROR = "APPROVAL_ERROR"


# Instance statuses that can no longer change
TERMINAL_INSTANCE_STATUSES = frozenset({
    InstanceStatus.COMPLETED,
    InstanceStatus.CANCELED,
    InstanceStatus.WITHDRAWN,
})

# Instance statuses that count as "open" for the one-per-entity rule
ACTIVE_INSTANCE_STATUSES = frozenset({InstanceStatus.OPEN, InstanceStatus.ON_HOLD})

# Task statuses that carry a vote in quorum evaluation
VOTING_TASK_STATUSES = frozenset({
    TaskStatus.PENDING,
    TaskStatus.APPROVED,
    TaskStatus.REJECTED,
})
