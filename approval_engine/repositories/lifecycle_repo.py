"""Lifecycle Repository - Read access to lifecycle transition gates"""
from typing import List, Optional
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import TRANSITION_GATES, get_collection
from ..domain.models import TransitionGate


class LifecycleRepository:
    """Transition gates are owned by the lifecycle module; this side only reads"""

    def __init__(self, db: Optional[Database] = None):
        self._gates: Collection = get_collection(TRANSITION_GATES, db)

    def find_gates_for_templates(self, tenant_id: str, template_ids: List[str]) -> List[TransitionGate]:
        """Gates whose approval template is any of the given IDs"""
        cursor = self._gates.find({
            "tenant_id": tenant_id,
            "approval_template_id": {"$in": template_ids},
        }).sort("transition_id", 1)
        gates = []
        for doc in cursor:
            doc.pop("_id", None)
            gates.append(TransitionGate.model_validate(doc))
        return gates

    def get_gate(self, tenant_id: str, transition_id: str) -> Optional[TransitionGate]:
        """Gate of a transition"""
        doc = self._gates.find_one({"tenant_id": tenant_id, "transition_id": transition_id})
        if doc:
            doc.pop("_id", None)
            return TransitionGate.model_validate(doc)
        return None

    def upsert_gate(self, gate: TransitionGate) -> TransitionGate:
        """Insert or replace a gate"""
        self._gates.replace_one(
            {"tenant_id": gate.tenant_id, "transition_id": gate.transition_id},
            gate.model_dump(mode="json"),
            upsert=True
        )
        return gate
