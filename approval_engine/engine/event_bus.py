"""Event Bus - Best-effort event log writes and workflow event fan-out"""
from typing import Any, Callable, Dict, List, Optional

from ..domain.enums import WorkflowEventType
from ..domain.models import ApprovalEvent, WorkflowEvent
from ..repositories.event_repo import EventRepository
from ..utils.idgen import generate_event_id
from ..utils.logger import get_correlation_id, get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)

WorkflowEventHandler = Callable[[WorkflowEvent], None]


class EventBus:
    """
    Append-only event writer shared by the engine, executor and timers

    Writes never fail the caller: a storage error is logged and the
    operation that produced the event carries on.
    """

    def __init__(self, event_repo: EventRepository):
        self.event_repo = event_repo
        self._handlers: List[WorkflowEventHandler] = []

    def register_handler(self, handler: WorkflowEventHandler) -> None:
        """Subscribe to every workflow event"""
        self._handlers.append(handler)

    def record(
        self,
        tenant_id: str,
        instance_id: str,
        event_type: str,
        actor_id: Optional[str] = None,
        task_id: Optional[str] = None,
        stage_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> Optional[ApprovalEvent]:
        """Append an event to the instance log"""
        event_type_value = getattr(event_type, "value", event_type)
        event = ApprovalEvent(
            event_id=generate_event_id(),
            tenant_id=tenant_id,
            instance_id=instance_id,
            event_type=event_type_value,
            task_id=task_id,
            stage_id=stage_id,
            actor_id=actor_id,
            payload=payload or {},
            correlation_id=get_correlation_id(),
            occurred_at=utc_now()
        )
        try:
            return self.event_repo.append_event(event)
        except Exception as e:
            logger.error(
                f"Failed to record event {event_type_value}: {e}",
                extra={"tenant_id": tenant_id, "instance_id": instance_id, "event_type": event_type_value}
            )
            return None

    def emit(
        self,
        event_type: WorkflowEventType,
        tenant_id: str,
        instance_id: str,
        step_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        entity_name: Optional[str] = None,
        entity_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> WorkflowEvent:
        """Persist a workflow event and deliver it to every handler"""
        event = WorkflowEvent(
            event_id=generate_event_id(),
            event_type=event_type.value,
            tenant_id=tenant_id,
            instance_id=instance_id,
            step_id=step_id,
            entity_name=entity_name,
            entity_id=entity_id,
            actor_id=actor_id,
            payload=payload or {},
            timestamp=utc_now()
        )

        self.record(
            tenant_id=tenant_id,
            instance_id=instance_id,
            event_type=event.event_type,
            actor_id=actor_id,
            stage_id=step_id,
            payload=event.payload
        )

        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(
                    f"Workflow event handler failed for {event.event_type}: {e}",
                    extra={"tenant_id": tenant_id, "instance_id": instance_id, "event_type": event.event_type}
                )

        return event
