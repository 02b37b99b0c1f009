"""Instance API Routes - Start, inspect and act on approval instances"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field

from ..deps import get_container, get_correlation_id_dep, get_current_user_dep, result_response
from ...container import Container
from ...domain.enums import ActionType
from ...domain.models import (
    ActionRequest, ActionResult, ActorContext, ApprovalInstance,
    CreateInstanceResult, EscalationPage, EventPage, InstanceDetail
)

router = APIRouter(dependencies=[Depends(get_correlation_id_dep)])


# ============================================================================
# Request/Response Models
# ============================================================================

class StartInstanceRequest(BaseModel):
    """Start an approval for a business entity"""
    model_config = ConfigDict(extra="forbid")

    template: str = Field(..., min_length=1, description="Template ID or active template code")
    entity_name: str = Field(..., min_length=1)
    entity_id: str = Field(..., min_length=1)
    transition_id: Optional[str] = None
    operation_code: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    note: Optional[str] = None


class AvailableActionsResponse(BaseModel):
    instance_id: str
    step_id: Optional[str] = None
    actions: List[ActionType]


# ============================================================================
# Routes
# ============================================================================

@router.post("", response_model=CreateInstanceResult, status_code=status.HTTP_201_CREATED)
def start_instance(
    request: StartInstanceRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """
    Open an approval instance

    The body reports ``success=False`` with an error code when no instance
    was created.
    """
    result = container.approval_service.start(
        actor,
        template=request.template,
        entity_name=request.entity_name,
        entity_id=request.entity_id,
        context=request.context,
        transition_id=request.transition_id,
        operation_code=request.operation_code
    )
    return result_response(result, status.HTTP_201_CREATED)


@router.get("/by-entity", response_model=ApprovalInstance)
def get_instance_for_entity(
    entity_name: str = Query(..., min_length=1),
    entity_id: str = Query(..., min_length=1),
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Open or on-hold approval of an entity"""
    return container.approval_service.get_for_entity(actor.tenant_id, entity_name, entity_id)


@router.get("/{instance_id}", response_model=InstanceDetail)
def get_instance(
    instance_id: str,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    return container.approval_service.get_detail(actor.tenant_id, instance_id)


@router.get("/{instance_id}/events", response_model=EventPage)
def list_instance_events(
    instance_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    event_type: Optional[str] = Query(None),
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Audit trail, oldest first"""
    return container.approval_service.events(actor.tenant_id, instance_id, page, page_size, event_type)


@router.get("/{instance_id}/escalations", response_model=EscalationPage)
def list_instance_escalations(
    instance_id: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    return container.approval_service.escalations(actor.tenant_id, instance_id, page, page_size)


@router.post("/{instance_id}/actions", response_model=ActionResult)
def execute_action(
    instance_id: str,
    request: ActionRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """
    Run a workflow action on the instance

    Tenant and user come from the token; ``step_id`` defaults to the open step.
    """
    payload = request.model_dump(exclude={"tenant_id", "instance_id", "user_id", "roles"})
    result = container.approval_service.execute(actor, instance_id, payload)
    return result_response(result)


@router.get("/{instance_id}/available-actions", response_model=AvailableActionsResponse)
def get_available_actions(
    instance_id: str,
    step_id: Optional[str] = Query(None),
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    actions = container.approval_service.available_actions(actor, instance_id, step_id)
    return AvailableActionsResponse(instance_id=instance_id, step_id=step_id, actions=actions)


@router.post("/{instance_id}/cancel", response_model=ApprovalInstance)
def cancel_instance(
    instance_id: str,
    request: Optional[CancelRequest] = None,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Administrative cancel; pending work is withdrawn and timers removed"""
    note = request.note if request else None
    return container.approval_service.cancel(actor, instance_id, note)
