"""Approval Engine - Routing, state machine, actions and SLA timers"""
from .condition_evaluator import ConditionEvaluator
from .approver_resolver import ApproverResolver
from .event_bus import EventBus
from .sla_timers import SlaTimerService
from .instance_engine import ApprovalEngine
from .action_executor import ActionExecutor

__all__ = [
    "ConditionEvaluator",
    "ApproverResolver",
    "EventBus",
    "SlaTimerService",
    "ApprovalEngine",
    "ActionExecutor",
]
