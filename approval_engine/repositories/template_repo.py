"""Template Repository - Data access for approval template versions"""
from typing import Any, Dict, List, Optional, Tuple
from pymongo import ASCENDING, DESCENDING
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from pydantic_core import to_jsonable_python

from .mongo_client import TEMPLATES, get_collection
from ..domain.models import ApprovalTemplate
from ..domain.errors import AlreadyExistsError, TemplateNotFoundError
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class TemplateRepository:
    """Repository for approval templates (append-only version chain)"""

    def __init__(self, db: Optional[Database] = None):
        self._templates: Collection = get_collection(TEMPLATES, db)

    def _to_model(self, doc: Optional[Dict[str, Any]]) -> Optional[ApprovalTemplate]:
        if not doc:
            return None
        doc.pop("_id", None)
        return ApprovalTemplate.model_validate(doc)

    # =========================================================================
    # Create / Read
    # =========================================================================

    def create_template(self, template: ApprovalTemplate) -> ApprovalTemplate:
        """Insert a template version"""
        doc = template.model_dump(mode="json")
        doc["_id"] = template.template_id

        try:
            self._templates.insert_one(doc)
        except DuplicateKeyError:
            raise AlreadyExistsError(
                f"Template {template.code} v{template.version_no} already exists",
                details={"code": template.code, "version_no": template.version_no}
            )

        logger.info(
            f"Created template version: {template.code} v{template.version_no}",
            extra={"tenant_id": template.tenant_id, "template_id": template.template_id}
        )
        return template

    def get_by_id(self, tenant_id: str, template_id: str) -> Optional[ApprovalTemplate]:
        """Get a template version by ID"""
        doc = self._templates.find_one({"tenant_id": tenant_id, "template_id": template_id})
        return self._to_model(doc)

    def get_active_by_code(self, tenant_id: str, code: str) -> Optional[ApprovalTemplate]:
        """Get the active version for a code"""
        doc = self._templates.find_one({"tenant_id": tenant_id, "code": code, "is_active": True})
        return self._to_model(doc)

    def get_version(self, tenant_id: str, code: str, version_no: int) -> Optional[ApprovalTemplate]:
        """Get a specific version of a code"""
        doc = self._templates.find_one(
            {"tenant_id": tenant_id, "code": code, "version_no": version_no}
        )
        return self._to_model(doc)

    def list_active(
        self,
        tenant_id: str,
        skip: int = 0,
        limit: int = 20
    ) -> Tuple[List[ApprovalTemplate], int]:
        """List active versions with total count"""
        query = {"tenant_id": tenant_id, "is_active": True}
        total = self._templates.count_documents(query)
        cursor = (
            self._templates.find(query)
            .sort([("code", ASCENDING)])
            .skip(skip)
            .limit(limit)
        )
        return [self._to_model(doc) for doc in cursor], total

    def list_versions(self, tenant_id: str, code: str) -> List[ApprovalTemplate]:
        """All versions of a code, newest first"""
        cursor = self._templates.find({"tenant_id": tenant_id, "code": code}).sort(
            "version_no", DESCENDING
        )
        return [self._to_model(doc) for doc in cursor]

    def get_max_version(self, tenant_id: str, code: str) -> int:
        """Highest version number for a code (0 when none)"""
        doc = self._templates.find_one(
            {"tenant_id": tenant_id, "code": code},
            sort=[("version_no", DESCENDING)]
        )
        return int(doc["version_no"]) if doc else 0

    # =========================================================================
    # Version chain mutations
    # =========================================================================

    def set_active(self, tenant_id: str, template_id: str, is_active: bool) -> None:
        """Flip the active flag of a version"""
        result = self._templates.update_one(
            {"tenant_id": tenant_id, "template_id": template_id},
            {"$set": {"is_active": is_active, "updated_at": to_jsonable_python(utc_now())}}
        )
        if result.matched_count == 0:
            raise TemplateNotFoundError(f"Template {template_id} not found")

    def save_compiled(
        self,
        tenant_id: str,
        template_id: str,
        artifact: Dict[str, Any],
        compiled_hash: str
    ) -> None:
        """Persist the compiled artifact and its hash alongside the version"""
        self._templates.update_one(
            {"tenant_id": tenant_id, "template_id": template_id},
            {"$set": {
                "compiled_artifact": to_jsonable_python(artifact),
                "compiled_hash": compiled_hash,
                "compiled_at": to_jsonable_python(artifact.get("compiled_at")),
            }}
        )
        logger.info(
            f"Stored compiled artifact {compiled_hash[:12]}",
            extra={"tenant_id": tenant_id, "template_id": template_id}
        )

    def delete_by_code(self, tenant_id: str, code: str) -> int:
        """Remove every version of a code"""
        result = self._templates.delete_many({"tenant_id": tenant_id, "code": code})
        logger.info(
            f"Deleted {result.deleted_count} versions of template {code}",
            extra={"tenant_id": tenant_id}
        )
        return result.deleted_count
