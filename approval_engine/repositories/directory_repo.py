"""Directory Repository - Principals, groups, role grants and org units

Read side is what the approver resolver consumes; the upsert helpers exist for
seeding and for the IAM module that owns this data.
"""
from typing import Any, List, Optional
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import GROUPS, ORG_UNITS, PRINCIPALS, ROLE_GRANTS, get_collection
from ..domain.models import OrgUnit, Principal, PrincipalGroup, RoleGrant
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)


class DirectoryRepository:
    """Repository for organization data"""

    def __init__(self, db: Optional[Database] = None):
        self._principals: Collection = get_collection(PRINCIPALS, db)
        self._groups: Collection = get_collection(GROUPS, db)
        self._role_grants: Collection = get_collection(ROLE_GRANTS, db)
        self._org_units: Collection = get_collection(ORG_UNITS, db)

    # =========================================================================
    # Principals
    # =========================================================================

    def get_principal(self, tenant_id: str, principal_id: str) -> Optional[Principal]:
        """Get principal by ID"""
        doc = self._principals.find_one({"tenant_id": tenant_id, "principal_id": principal_id})
        if doc:
            doc.pop("_id", None)
            return Principal.model_validate(doc)
        return None

    def find_principal_ids_in_org_units(self, tenant_id: str, org_unit_ids: List[str]) -> List[str]:
        """Active principals attached to any of the given org units"""
        if not org_unit_ids:
            return []
        cursor = self._principals.find(
            {"tenant_id": tenant_id, "org_unit_ids": {"$in": org_unit_ids}, "is_active": True},
            {"principal_id": 1}
        ).sort("principal_id", 1)
        return [doc["principal_id"] for doc in cursor]

    def find_principal_ids_by_metadata(self, tenant_id: str, field_path: str, value: Any) -> List[str]:
        """Active principals whose metadata contains ``field_path == value``"""
        cursor = self._principals.find(
            {"tenant_id": tenant_id, f"metadata.{field_path}": value, "is_active": True},
            {"principal_id": 1}
        ).sort("principal_id", 1)
        return [doc["principal_id"] for doc in cursor]

    def upsert_principal(self, principal: Principal) -> Principal:
        """Insert or replace a principal"""
        doc = principal.model_dump(mode="json")
        self._principals.replace_one(
            {"tenant_id": principal.tenant_id, "principal_id": principal.principal_id},
            doc,
            upsert=True
        )
        return principal

    # =========================================================================
    # Groups
    # =========================================================================

    def get_group_by_code(self, tenant_id: str, code: str) -> Optional[PrincipalGroup]:
        """Get a group by code"""
        doc = self._groups.find_one({"tenant_id": tenant_id, "code": code})
        if doc:
            doc.pop("_id", None)
            return PrincipalGroup.model_validate(doc)
        return None

    def get_group_ids_for_principal(self, tenant_id: str, principal_id: str) -> List[str]:
        """IDs of the groups a principal belongs to"""
        cursor = self._groups.find(
            {"tenant_id": tenant_id, "member_ids": principal_id},
            {"group_id": 1}
        )
        return [doc["group_id"] for doc in cursor]

    def upsert_group(self, group: PrincipalGroup) -> PrincipalGroup:
        """Insert or replace a group"""
        self._groups.replace_one(
            {"tenant_id": group.tenant_id, "group_id": group.group_id},
            group.model_dump(mode="json"),
            upsert=True
        )
        return group

    # =========================================================================
    # Roles
    # =========================================================================

    def find_role_holder_ids(self, tenant_id: str, role_code: str) -> List[str]:
        """Principals holding a role whose grant has not expired"""
        now = utc_now()
        holders = set()
        for doc in self._role_grants.find({"tenant_id": tenant_id, "role_code": role_code}):
            doc.pop("_id", None)
            grant = RoleGrant.model_validate(doc)
            if grant.expires_at is not None and grant.expires_at <= now:
                continue
            holders.add(grant.principal_id)
        return sorted(holders)

    def add_role_grant(self, grant: RoleGrant) -> RoleGrant:
        """Record a role grant"""
        self._role_grants.insert_one(grant.model_dump(mode="json"))
        return grant

    # =========================================================================
    # Org units
    # =========================================================================

    def get_org_unit(self, tenant_id: str, org_unit_id: str) -> Optional[OrgUnit]:
        """Get org unit by ID"""
        doc = self._org_units.find_one({"tenant_id": tenant_id, "org_unit_id": org_unit_id})
        if doc:
            doc.pop("_id", None)
            return OrgUnit.model_validate(doc)
        return None

    def get_org_unit_by_code(self, tenant_id: str, code: str) -> Optional[OrgUnit]:
        """Get org unit by code"""
        doc = self._org_units.find_one({"tenant_id": tenant_id, "code": code})
        if doc:
            doc.pop("_id", None)
            return OrgUnit.model_validate(doc)
        return None

    def get_child_org_unit_ids(self, tenant_id: str, parent_ids: List[str]) -> List[str]:
        """Direct children of the given org units"""
        if not parent_ids:
            return []
        cursor = self._org_units.find(
            {"tenant_id": tenant_id, "parent_id": {"$in": parent_ids}},
            {"org_unit_id": 1}
        )
        return [doc["org_unit_id"] for doc in cursor]

    def upsert_org_unit(self, org_unit: OrgUnit) -> OrgUnit:
        """Insert or replace an org unit"""
        self._org_units.replace_one(
            {"tenant_id": org_unit.tenant_id, "org_unit_id": org_unit.org_unit_id},
            org_unit.model_dump(mode="json"),
            upsert=True
        )
        return org_unit

