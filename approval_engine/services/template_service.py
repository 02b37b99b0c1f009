"""Template Service - Approval template store with an append-only version chain"""
import hashlib
import json
from typing import Any, Dict, List, Optional, Union

from ..config.settings import Settings
from ..domain.enums import ActionType, AssignmentStrategy, QuorumType, StageMode
from ..domain.errors import (
    AlreadyExistsError, TemplateNotFoundError, TemplateValidationError
)
from ..domain.models import (
    AffectedTransition, ApprovalTemplate, CompiledTemplate, DiffField,
    ImpactAnalysis, PageMeta, StageResolutionPreview, TemplateCreateRequest,
    TemplateDiff, TemplatePage, TemplateUpdateRequest, TemplateValidationResult,
    ValidationIssue
)
from ..engine.approver_resolver import ApproverResolver
from ..repositories.lifecycle_repo import LifecycleRepository
from ..repositories.template_repo import TemplateRepository
from ..utils.idgen import generate_template_id
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)

KNOWN_STRATEGIES = {s.value for s in AssignmentStrategy}
KNOWN_MODES = {m.value for m in StageMode}
KNOWN_ACTIONS = {a.value for a in ActionType}


def compute_compiled_hash(template: ApprovalTemplate) -> str:
    """
    Content hash of the semantically relevant parts of a version

    Covers code, version, stage ``(stage_no, mode, quorum)`` and rule
    ``(priority, conditions, assign_to)``; keys are sorted so the hash is
    stable across recompiles.
    """
    content = {
        "code": template.code,
        "version": template.version_no,
        "stages": [
            {
                "stage_no": stage.stage_no,
                "mode": stage.mode,
                "quorum": stage.quorum.model_dump(mode="json") if stage.quorum else None,
            }
            for stage in template.sorted_stages()
        ],
        "rules": [
            {
                "priority": rule.priority,
                "conditions": rule.conditions,
                "assign_to": rule.assign_to,
            }
            for rule in template.rules
        ],
    }
    encoded = json.dumps(content, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class TemplateService:
    """Service for approval template operations"""

    def __init__(
        self,
        template_repo: TemplateRepository,
        lifecycle_repo: LifecycleRepository,
        resolver: ApproverResolver,
        settings: Settings
    ):
        self.repo = template_repo
        self.lifecycle_repo = lifecycle_repo
        self.resolver = resolver
        self.settings = settings

    # =========================================================================
    # CRUD
    # =========================================================================

    def create(
        self,
        tenant_id: str,
        request: TemplateCreateRequest,
        actor_id: Optional[str] = None
    ) -> ApprovalTemplate:
        """Create version 1 of a new template code"""
        if self.repo.get_max_version(tenant_id, request.code) > 0:
            raise AlreadyExistsError(
                f"Template code {request.code} already exists",
                details={"code": request.code}
            )

        now = utc_now()
        template = ApprovalTemplate(
            template_id=generate_template_id(),
            tenant_id=tenant_id,
            code=request.code,
            name=request.name,
            description=request.description,
            version_no=1,
            is_active=True,
            escalation_style=request.escalation_style,
            behaviors=request.behaviors,
            allowed_actions=request.allowed_actions,
            stages=request.stages,
            rules=request.rules,
            created_by=actor_id,
            created_at=now,
            updated_at=now
        )
        return self.repo.create_template(template)

    def get(self, tenant_id: str, id_or_code: str) -> ApprovalTemplate:
        """Get a version by ID, falling back to the active version of a code"""
        template = self.repo.get_by_id(tenant_id, id_or_code)
        if template is None:
            template = self.repo.get_active_by_code(tenant_id, id_or_code)
        if template is None:
            raise TemplateNotFoundError(f"Template {id_or_code} not found")
        return template

    def list(self, tenant_id: str, page: int = 1, page_size: int = 20) -> TemplatePage:
        """Active versions, paginated"""
        page = max(page, 1)
        page_size = min(max(page_size, 1), self.settings.template_page_size_max)
        items, total = self.repo.list_active(tenant_id, skip=(page - 1) * page_size, limit=page_size)
        return TemplatePage(items=items, meta=PageMeta.build(page, page_size, total))

    def update(
        self,
        tenant_id: str,
        template_id: str,
        request: TemplateUpdateRequest,
        actor_id: Optional[str] = None
    ) -> ApprovalTemplate:
        """
        Create the next version

        The new version replaces the active one. Fields omitted from the
        request, stages and rules included, are copied from ``template_id``.
        """
        base = self.get(tenant_id, template_id)
        changes = request.model_dump(exclude_unset=True)
        return self._new_version(tenant_id, base, changes, actor_id)

    def delete(self, tenant_id: str, code: str) -> int:
        """Remove every version of a code; returns how many were removed"""
        deleted = self.repo.delete_by_code(tenant_id, code)
        if deleted == 0:
            raise TemplateNotFoundError(f"Template {code} not found")
        return deleted

    # =========================================================================
    # Versions
    # =========================================================================

    def list_versions(self, tenant_id: str, code: str) -> List[ApprovalTemplate]:
        """All versions of a code, newest first"""
        versions = self.repo.list_versions(tenant_id, code)
        if not versions:
            raise TemplateNotFoundError(f"Template {code} not found")
        return versions

    def rollback(
        self,
        tenant_id: str,
        code: str,
        target_version: int,
        actor_id: Optional[str] = None
    ) -> ApprovalTemplate:
        """Clone ``target_version`` into a new, active version"""
        target = self.repo.get_version(tenant_id, code, target_version)
        if target is None:
            raise TemplateNotFoundError(
                f"Version {target_version} of template {code} not found",
                details={"code": code, "version_no": target_version}
            )
        logger.info(
            f"Rolling back template {code} to v{target_version}",
            extra={"tenant_id": tenant_id, "template_id": target.template_id}
        )
        return self._new_version(tenant_id, target, {}, actor_id)

    def _new_version(
        self,
        tenant_id: str,
        base: ApprovalTemplate,
        changes: Dict[str, Any],
        actor_id: Optional[str]
    ) -> ApprovalTemplate:
        """
        Insert the next version and make it the active one

        The new version is inserted inactive and only activated once the
        previous version is switched off, so a failure at any step leaves
        the previously active version in place.
        """
        now = utc_now()
        data = base.model_dump()
        data.update(changes)
        data.update({
            "template_id": generate_template_id(),
            "version_no": self.repo.get_max_version(tenant_id, base.code) + 1,
            "is_active": False,
            "compiled_artifact": None,
            "compiled_hash": None,
            "compiled_at": None,
            "created_by": actor_id,
            "created_at": now,
            "updated_at": now,
        })
        created = self.repo.create_template(ApprovalTemplate.model_validate(data))

        active = self.repo.get_active_by_code(tenant_id, base.code)
        if active is not None:
            self.repo.set_active(tenant_id, active.template_id, False)
        try:
            self.repo.set_active(tenant_id, created.template_id, True)
        except Exception:
            if active is not None:
                self.repo.set_active(tenant_id, active.template_id, True)
            raise
        return created.model_copy(update={"is_active": True})

    def diff(self, tenant_id: str, code: str, v1: int, v2: int) -> TemplateDiff:
        """Attribute-level comparison of two versions"""
        first = self.repo.get_version(tenant_id, code, v1)
        second = self.repo.get_version(tenant_id, code, v2)
        if first is None or second is None:
            missing = v1 if first is None else v2
            raise TemplateNotFoundError(
                f"Version {missing} of template {code} not found",
                details={"code": code, "version_no": missing}
            )

        def field(a: Any, b: Any) -> DiffField:
            return DiffField(v1=a, v2=b, changed=a != b)

        return TemplateDiff(
            code=code,
            v1=v1,
            v2=v2,
            name=field(first.name, second.name),
            stage_count=field(len(first.stages), len(second.stages)),
            rule_count=field(len(first.rules), len(second.rules)),
            escalation_style=field(first.escalation_style, second.escalation_style)
        )

    def impact_analysis(self, tenant_id: str, id_or_code: str) -> ImpactAnalysis:
        """Lifecycle transitions gated by any version of the template's code"""
        template = self.get(tenant_id, id_or_code)
        version_ids = [v.template_id for v in self.repo.list_versions(tenant_id, template.code)]
        gates = self.lifecycle_repo.find_gates_for_templates(tenant_id, version_ids)
        return ImpactAnalysis(
            template_id=template.template_id,
            affected_transitions=[
                AffectedTransition(
                    transition_id=gate.transition_id,
                    entity_name=gate.entity_name,
                    operation_code=gate.operation_code
                )
                for gate in gates
            ]
        )

    # =========================================================================
    # Validation & Compilation
    # =========================================================================

    def validate(self, template: Union[ApprovalTemplate, TemplateCreateRequest]) -> TemplateValidationResult:
        """
        Structural validation; never raises

        Errors: no stages, stage numbers not contiguous from 1, unknown mode,
        bad quorum, no rules, unknown strategy, non-object conditions.
        """
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []

        stages = sorted(template.stages, key=lambda s: s.stage_no)
        if not stages:
            errors.append(ValidationIssue(path="stages", message="Template must have at least one stage"))
        else:
            numbers = [s.stage_no for s in stages]
            if numbers != list(range(1, len(numbers) + 1)):
                errors.append(ValidationIssue(
                    path="stages",
                    message=f"Stage numbers must be contiguous from 1, got {numbers}"
                ))

        for i, stage in enumerate(stages):
            path = f"stages[{i}]"
            if stage.mode not in KNOWN_MODES:
                errors.append(ValidationIssue(
                    path=f"{path}.mode",
                    message=f"Stage {stage.stage_no} mode must be serial or parallel"
                ))
            if stage.quorum is not None:
                if stage.mode == StageMode.SERIAL.value:
                    warnings.append(ValidationIssue(
                        path=f"{path}.quorum",
                        message=f"Stage {stage.stage_no} is serial; its quorum is ignored"
                    ))
                elif stage.quorum.type in (QuorumType.COUNT, QuorumType.PERCENTAGE):
                    value = stage.quorum.value
                    if value is None or value <= 0:
                        errors.append(ValidationIssue(
                            path=f"{path}.quorum.value",
                            message=f"Stage {stage.stage_no} {stage.quorum.type.value} quorum needs a positive value"
                        ))
                    elif stage.quorum.type == QuorumType.PERCENTAGE and value > 100:
                        errors.append(ValidationIssue(
                            path=f"{path}.quorum.value",
                            message=f"Stage {stage.stage_no} percentage quorum cannot exceed 100"
                        ))
            for action in stage.allowed_actions:
                if action not in KNOWN_ACTIONS:
                    warnings.append(ValidationIssue(
                        path=f"{path}.allowed_actions",
                        message=f"Unknown action '{action}'"
                    ))

        if not template.rules:
            errors.append(ValidationIssue(path="rules", message="Template must have at least one routing rule"))

        stage_numbers = {s.stage_no for s in stages}
        for i, rule in enumerate(template.rules):
            path = f"rules[{i}]"
            assign_to = rule.assign_to
            strategy = assign_to.get("strategy") if isinstance(assign_to, dict) else None
            if strategy not in KNOWN_STRATEGIES:
                errors.append(ValidationIssue(
                    path=f"{path}.assign_to.strategy",
                    message=f"Unknown assignment strategy: {strategy}"
                ))
            if rule.conditions is not None and not isinstance(rule.conditions, dict):
                errors.append(ValidationIssue(
                    path=f"{path}.conditions",
                    message="Conditions must be an object"
                ))
            if rule.stage_no is not None and rule.stage_no not in stage_numbers:
                warnings.append(ValidationIssue(
                    path=f"{path}.stage_no",
                    message=f"Rule targets stage {rule.stage_no}, which does not exist"
                ))

        return TemplateValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def compile(self, tenant_id: str, id_or_code: str) -> CompiledTemplate:
        """Validate and freeze a version into a hash-addressed artifact"""
        template = self.get(tenant_id, id_or_code)
        validation = self.validate(template)
        if not validation.valid:
            raise TemplateValidationError(
                f"Template {template.code} v{template.version_no} is invalid",
                details={"errors": [e.model_dump() for e in validation.errors]}
            )

        compiled = CompiledTemplate(
            template_id=template.template_id,
            code=template.code,
            version=template.version_no,
            stages=[s.model_dump(mode="json") for s in template.sorted_stages()],
            rules=[r.model_dump(mode="json") for r in template.rules],
            compiled_hash=compute_compiled_hash(template),
            compiled_at=utc_now()
        )
        self.repo.save_compiled(
            tenant_id, template.template_id, compiled.model_dump(), compiled.compiled_hash
        )
        return compiled

    def test_resolution(
        self,
        tenant_id: str,
        id_or_code: str,
        context: Dict[str, Any],
        stage_no: Optional[int] = None
    ) -> List[StageResolutionPreview]:
        """Dry-run the routing rules of each stage against a sample context"""
        template = self.get(tenant_id, id_or_code)
        previews = []
        for stage in template.sorted_stages():
            if stage_no is not None and stage.stage_no != stage_no:
                continue
            rules = [r for r in template.rules if r.stage_no is None or r.stage_no == stage.stage_no]
            resolution = self.resolver.resolve_with_rule(rules, context, tenant_id)
            previews.append(StageResolutionPreview(
                stage_no=stage.stage_no,
                matched_rule_id=resolution.matched_rule_id,
                strategy=resolution.strategy,
                assignees=resolution.assignees
            ))
        return previews
