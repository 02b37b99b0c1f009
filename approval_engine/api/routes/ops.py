"""Ops API Routes - Timer rehydration and health"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..deps import get_container, get_correlation_id_dep, get_current_user_dep
from ...container import Container
from ...domain.models import ActorContext

router = APIRouter(dependencies=[Depends(get_correlation_id_dep)])


class RehydrateResponse(BaseModel):
    tenant_id: str
    rehydrated_tasks: int


@router.post("/sla/rehydrate", response_model=RehydrateResponse)
def rehydrate_sla_timers(
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Re-queue reminders and escalations for the caller's tenant"""
    count = container.sla_timers.rehydrate_pending_timers(actor.tenant_id)
    return RehydrateResponse(tenant_id=actor.tenant_id, rehydrated_tasks=count)


@router.get("/health")
def health(container: Container = Depends(get_container)):
    """Store and scheduler status; no auth required"""
    return container.engine.health_check()
