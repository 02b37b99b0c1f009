"""Template API Routes - Authoring, versioning and compilation"""
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field

from ..deps import get_container, get_correlation_id_dep, get_current_user_dep
from ...container import Container
from ...domain.models import (
    ActorContext, ApprovalTemplate, CompiledTemplate, ImpactAnalysis,
    StageResolutionPreview, TemplateCreateRequest, TemplateDiff, TemplatePage,
    TemplateUpdateRequest, TemplateValidationResult
)
from ...utils.logger import get_logger

logger = get_logger(__name__)
router = APIRouter(dependencies=[Depends(get_correlation_id_dep)])


# ============================================================================
# Request/Response Models
# ============================================================================

class RollbackRequest(BaseModel):
    """Re-activate an older version as a new one"""
    model_config = ConfigDict(extra="forbid")

    version_no: int = Field(..., ge=1)


class TestResolutionRequest(BaseModel):
    """Sample assignment context for a routing dry run"""
    model_config = ConfigDict(extra="forbid")

    context: Dict[str, Any] = Field(default_factory=dict)
    stage_no: Optional[int] = Field(None, ge=1)


class DeleteResponse(BaseModel):
    code: str
    deleted_versions: int


# ============================================================================
# Routes
# ============================================================================

@router.post("", response_model=ApprovalTemplate, status_code=status.HTTP_201_CREATED)
def create_template(
    request: TemplateCreateRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Create version 1 of a template code"""
    template = container.template_service.create(actor.tenant_id, request, actor.user_id)
    logger.info(
        f"Created template {template.code}",
        extra={"tenant_id": actor.tenant_id, "template_id": template.template_id, "user_id": actor.user_id}
    )
    return template


@router.get("", response_model=TemplatePage)
def list_templates(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1),
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Active template versions of the tenant"""
    return container.template_service.list(actor.tenant_id, page, page_size)


@router.get("/{id_or_code}", response_model=ApprovalTemplate)
def get_template(
    id_or_code: str,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    return container.template_service.get(actor.tenant_id, id_or_code)


@router.put("/{template_id}", response_model=ApprovalTemplate)
def update_template(
    template_id: str,
    request: TemplateUpdateRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """
    Create the next version of a template

    Running instances stay on the version they were created with.
    """
    return container.template_service.update(actor.tenant_id, template_id, request, actor.user_id)


@router.delete("/{code}", response_model=DeleteResponse)
def delete_template(
    code: str,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    deleted = container.template_service.delete(actor.tenant_id, code)
    return DeleteResponse(code=code, deleted_versions=deleted)


@router.post("/{id_or_code}/validate", response_model=TemplateValidationResult)
def validate_template(
    id_or_code: str,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    service = container.template_service
    return service.validate(service.get(actor.tenant_id, id_or_code))


@router.post("/{id_or_code}/compile", response_model=CompiledTemplate)
def compile_template(
    id_or_code: str,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    return container.template_service.compile(actor.tenant_id, id_or_code)


@router.get("/{code}/versions", response_model=List[ApprovalTemplate])
def list_template_versions(
    code: str,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    return container.template_service.list_versions(actor.tenant_id, code)


@router.post("/{code}/rollback", response_model=ApprovalTemplate)
def rollback_template(
    code: str,
    request: RollbackRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    return container.template_service.rollback(actor.tenant_id, code, request.version_no, actor.user_id)


@router.get("/{code}/diff", response_model=TemplateDiff)
def diff_template_versions(
    code: str,
    v1: int = Query(..., ge=1),
    v2: int = Query(..., ge=1),
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    return container.template_service.diff(actor.tenant_id, code, v1, v2)


@router.get("/{id_or_code}/impact", response_model=ImpactAnalysis)
def template_impact(
    id_or_code: str,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Instances and gates that reference any version of the template"""
    return container.template_service.impact_analysis(actor.tenant_id, id_or_code)


@router.post("/{id_or_code}/test-resolution", response_model=List[StageResolutionPreview])
def test_template_resolution(
    id_or_code: str,
    request: TestResolutionRequest,
    actor: ActorContext = Depends(get_current_user_dep),
    container: Container = Depends(get_container)
):
    """Dry-run routing rules without creating anything"""
    return container.template_service.test_resolution(
        actor.tenant_id, id_or_code, request.context, request.stage_no
    )
