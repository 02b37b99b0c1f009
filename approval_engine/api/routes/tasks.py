"""Task API Routes - Approver inbox and decisions"""
from typing import List, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from ..deps import get_container, get_correlation_id_dep, get_current_user_dep, result_response
from ...container import Container
from ...domain.enums import Decision
from ...domain.models import ActorContext, ApprovalTask, AssignmentSnapshot, DecisionResult

router = APIRouter(dependencies=[Depends(get_correlation_id_dep)])


class DecisionBody(BaseModel):
    """Approve or reject one task"""
    model_config = ConfigDict(extra="forbid")

    decision: Decision
    note: Optional[str] = None


@router.get("/mine", response_model=List[ApprovalTask])
def my_tasks(
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Pending tasks assigned to the caller directly or through a group"""
    return container.approval_service.my_tasks(actor)


@router.post("/{task_id}/decision", response_model=DecisionResult)
def decide_task(
    task_id: str,
    body: DecisionBody,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    result = container.approval_service.decide(actor, task_id, body.decision, body.note)
    return result_response(result)


@router.get("/{task_id}/snapshot", response_model=AssignmentSnapshot)
def task_snapshot(
    task_id: str,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Why this approver was chosen, as recorded at assignment time"""
    return container.approval_service.snapshot(actor.tenant_id, task_id)
