"""Event Repository - Append-only approval event log and escalation records"""
from typing import List, Optional, Tuple
from pymongo import ASCENDING
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import ESCALATIONS, EVENTS, get_collection
from ..domain.models import ApprovalEscalation, ApprovalEvent
from ..utils.logger import get_logger

logger = get_logger(__name__)


class EventRepository:
    """
    Repository for the approval audit trail.

    Events and escalations are immutable: there is no update or delete.
    """

    def __init__(self, db: Optional[Database] = None):
        self._events: Collection = get_collection(EVENTS, db)
        self._escalations: Collection = get_collection(ESCALATIONS, db)

    def append_event(self, event: ApprovalEvent) -> ApprovalEvent:
        """Append an event"""
        doc = event.model_dump(mode="json")
        doc["_id"] = event.event_id
        self._events.insert_one(doc)
        logger.debug(
            f"Appended event {event.event_type}",
            extra={
                "tenant_id": event.tenant_id,
                "instance_id": event.instance_id,
                "event_type": event.event_type
            }
        )
        return event

    def list_events(
        self,
        tenant_id: str,
        instance_id: str,
        skip: int = 0,
        limit: int = 50,
        event_type: Optional[str] = None
    ) -> Tuple[List[ApprovalEvent], int]:
        """Events of an instance in occurrence order, with total count"""
        query = {"tenant_id": tenant_id, "instance_id": instance_id}
        if event_type:
            query["event_type"] = event_type
        total = self._events.count_documents(query)
        cursor = (
            self._events.find(query)
            .sort("occurred_at", ASCENDING)
            .skip(skip)
            .limit(limit)
        )
        events = []
        for doc in cursor:
            doc.pop("_id", None)
            events.append(ApprovalEvent.model_validate(doc))
        return events, total

    def append_escalation(self, escalation: ApprovalEscalation) -> ApprovalEscalation:
        """Append an escalation record"""
        doc = escalation.model_dump(mode="json")
        doc["_id"] = escalation.escalation_id
        self._escalations.insert_one(doc)
        logger.info(
            f"Recorded escalation: {escalation.kind}",
            extra={
                "tenant_id": escalation.tenant_id,
                "instance_id": escalation.instance_id,
                "task_id": escalation.task_id
            }
        )
        return escalation

    def list_escalations(
        self,
        tenant_id: str,
        instance_id: str,
        skip: int = 0,
        limit: int = 50
    ) -> Tuple[List[ApprovalEscalation], int]:
        """Escalations of an instance, with total count"""
        query = {"tenant_id": tenant_id, "instance_id": instance_id}
        total = self._escalations.count_documents(query)
        cursor = (
            self._escalations.find(query)
            .sort("occurred_at", ASCENDING)
            .skip(skip)
            .limit(limit)
        )
        escalations = []
        for doc in cursor:
            doc.pop("_id", None)
            escalations.append(ApprovalEscalation.model_validate(doc))
        return escalations, total
