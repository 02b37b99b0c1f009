"""Approver Resolver - Expand routing rules into concrete assignees

Rules are tried in ascending priority; the first rule whose conditions match
and whose target expands to at least one assignee wins. Expansion results of
the directory-backed strategies are cached per tenant for a fixed TTL.
"""
import json
from typing import Any, Dict, List, Optional, Sequence

from .condition_evaluator import ConditionEvaluator
from ..config.settings import Settings
from ..domain.enums import AssignmentStrategy
from ..domain.models import ResolutionResult, ResolvedAssignee, TemplateRule
from ..repositories.cache_repo import CacheRepository
from ..repositories.directory_repo import DirectoryRepository
from ..utils.logger import get_logger

logger = get_logger(__name__)

CACHE_PREFIX = "approver"


def has_conditions(conditions: Any) -> bool:
    """True when a rule carries a non-empty condition group"""
    return isinstance(conditions, dict) and bool(conditions.get("conditions"))


class ApproverResolver:
    """
    Resolve assignees from routing rules

    Strategies:
    - direct: principal_id / group_id literal, or an ``assignees`` list
    - role: holders of role_code, optionally within the ou_scope subtree
    - group: members of group_code
    - hierarchy: principals of the OU ``skip_levels`` above the requester's
      primary (first listed) org unit
    - department: principals of department_code (or ou_code)
    - custom_field: principals whose metadata has field_path == field_value
    """

    def __init__(
        self,
        directory_repo: DirectoryRepository,
        cache: Optional[CacheRepository],
        evaluator: ConditionEvaluator,
        settings: Settings
    ):
        self.directory_repo = directory_repo
        self.cache = cache
        self.evaluator = evaluator
        self.cache_ttl_seconds = settings.approver_cache_ttl_seconds
        self.default_priority = settings.default_rule_priority
        self.max_org_depth = settings.max_org_depth

    # =========================================================================
    # Public API
    # =========================================================================

    def resolve_assignees(
        self,
        rules: Sequence[TemplateRule],
        context: Dict[str, Any],
        tenant_id: str
    ) -> List[ResolvedAssignee]:
        """Assignees of the first matching rule; empty when nothing resolves"""
        return self.resolve_with_rule(rules, context, tenant_id).assignees

    def resolve_with_rule(
        self,
        rules: Sequence[TemplateRule],
        context: Dict[str, Any],
        tenant_id: str
    ) -> ResolutionResult:
        """
        Resolve assignees and report which rule produced them

        Sorting is stable, so rules with equal priority keep input order.
        """
        ordered = sorted(
            rules,
            key=lambda r: r.priority if r.priority is not None else self.default_priority
        )

        for rule in ordered:
            if has_conditions(rule.conditions):
                if not self.evaluator.evaluate(rule.conditions, context):
                    continue

            if not isinstance(rule.assign_to, dict):
                continue

            strategy = self._strategy_of(rule.assign_to)
            assignees = self._resolve_target(rule.assign_to, strategy, context, tenant_id, rule.rule_id)
            if assignees:
                logger.debug(
                    f"Rule {rule.rule_id} resolved {len(assignees)} assignees via {strategy}",
                    extra={"tenant_id": tenant_id}
                )
                return ResolutionResult(
                    assignees=assignees,
                    matched_rule_id=rule.rule_id,
                    strategy=strategy
                )

        return ResolutionResult()

    # =========================================================================
    # Target Resolution
    # =========================================================================

    def _strategy_of(self, assign_to: Dict[str, Any]) -> str:
        raw = assign_to.get("strategy") or AssignmentStrategy.DIRECT.value
        try:
            return AssignmentStrategy(raw).value
        except ValueError:
            # Unknown strategy falls back to direct
            return AssignmentStrategy.DIRECT.value

    def _resolve_target(
        self,
        assign_to: Dict[str, Any],
        strategy: str,
        context: Dict[str, Any],
        tenant_id: str,
        rule_id: str
    ) -> List[ResolvedAssignee]:
        if strategy == AssignmentStrategy.ROLE.value:
            principal_ids = self._resolve_by_role(
                assign_to.get("role_code"), tenant_id, assign_to.get("ou_scope")
            )
        elif strategy == AssignmentStrategy.GROUP.value:
            principal_ids = self._resolve_by_group(assign_to.get("group_code"), tenant_id)
        elif strategy == AssignmentStrategy.HIERARCHY.value:
            requester_id = context.get("requester_id") or context.get("user_id") or ""
            skip_levels = assign_to.get("skip_levels")
            principal_ids = self._resolve_by_hierarchy(
                requester_id, tenant_id, int(skip_levels) if skip_levels is not None else 1
            )
        elif strategy == AssignmentStrategy.DEPARTMENT.value:
            code = assign_to.get("department_code") or assign_to.get("ou_code")
            principal_ids = self._resolve_by_department(code, tenant_id)
        elif strategy == AssignmentStrategy.CUSTOM_FIELD.value:
            principal_ids = self._resolve_by_custom_field(
                assign_to.get("field_path"), assign_to.get("field_value"), tenant_id
            )
        else:
            return self._resolve_direct(assign_to, rule_id)

        return [
            ResolvedAssignee(principal_id=pid, strategy=strategy, rule_id=rule_id)
            for pid in principal_ids
        ]

    def _resolve_direct(self, assign_to: Dict[str, Any], rule_id: str) -> List[ResolvedAssignee]:
        """Literal principal/group IDs; accepts the single-target form too"""
        entries = assign_to.get("assignees")
        if not isinstance(entries, list):
            entries = [assign_to]

        assignees = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            principal_id = entry.get("principal_id")
            group_id = entry.get("group_id")
            if principal_id or group_id:
                assignees.append(ResolvedAssignee(
                    principal_id=principal_id,
                    group_id=None if principal_id else group_id,
                    strategy=AssignmentStrategy.DIRECT.value,
                    rule_id=rule_id
                ))
        return assignees

    def _resolve_by_role(self, role_code: Optional[str], tenant_id: str, ou_scope: Optional[str]) -> List[str]:
        if not role_code:
            return []

        cache_key = f"{CACHE_PREFIX}:{tenant_id}:role:{role_code}:{ou_scope or '*'}"
        cached = self._get_cache(cache_key)
        if cached is not None:
            return cached

        principal_ids = self.directory_repo.find_role_holder_ids(tenant_id, role_code)
        if ou_scope:
            scope_root = self.directory_repo.get_org_unit_by_code(tenant_id, ou_scope)
            if scope_root is None:
                principal_ids = []
            else:
                subtree = self._collect_subtree(tenant_id, scope_root.org_unit_id)
                in_scope = set(self.directory_repo.find_principal_ids_in_org_units(tenant_id, subtree))
                principal_ids = [pid for pid in principal_ids if pid in in_scope]

        self._set_cache(cache_key, principal_ids)
        return principal_ids

    def _resolve_by_group(self, group_code: Optional[str], tenant_id: str) -> List[str]:
        if not group_code:
            return []

        cache_key = f"{CACHE_PREFIX}:{tenant_id}:group:{group_code}"
        cached = self._get_cache(cache_key)
        if cached is not None:
            return cached

        group = self.directory_repo.get_group_by_code(tenant_id, group_code)
        principal_ids = list(dict.fromkeys(group.member_ids)) if group else []
        self._set_cache(cache_key, principal_ids)
        return principal_ids

    def _resolve_by_hierarchy(self, requester_id: str, tenant_id: str, skip_levels: int) -> List[str]:
        """
        Walk ``skip_levels`` hops up the requester's OU parent chain

        skip_levels = 1 is the parent of the requester's OU (direct manager).
        The walk stops on a revisited unit or after max_org_depth hops, so a
        cyclic parent chain yields no assignees instead of looping.
        """
        if not requester_id:
            return []

        requester = self.directory_repo.get_principal(tenant_id, requester_id)
        if requester is None or not requester.org_unit_ids:
            return []

        start = self.directory_repo.get_org_unit(tenant_id, requester.org_unit_ids[0])
        if start is None:
            return []

        visited = {start.org_unit_id}
        current_id = start.parent_id
        level = 1
        while current_id and level < max(skip_levels, 1):
            if current_id in visited or len(visited) > self.max_org_depth:
                logger.warning(
                    f"Org unit cycle or depth limit reached at {current_id}",
                    extra={"tenant_id": tenant_id, "user_id": requester_id}
                )
                return []
            visited.add(current_id)
            unit = self.directory_repo.get_org_unit(tenant_id, current_id)
            if unit is None:
                return []
            current_id = unit.parent_id
            level += 1

        if not current_id or current_id in visited:
            return []

        cache_key = f"{CACHE_PREFIX}:{tenant_id}:hierarchy:{current_id}"
        cached = self._get_cache(cache_key)
        if cached is not None:
            return cached

        principal_ids = self.directory_repo.find_principal_ids_in_org_units(tenant_id, [current_id])
        self._set_cache(cache_key, principal_ids)
        return principal_ids

    def _resolve_by_department(self, ou_code: Optional[str], tenant_id: str) -> List[str]:
        if not ou_code:
            return []

        cache_key = f"{CACHE_PREFIX}:{tenant_id}:dept:{ou_code}"
        cached = self._get_cache(cache_key)
        if cached is not None:
            return cached

        unit = self.directory_repo.get_org_unit_by_code(tenant_id, ou_code)
        principal_ids = (
            self.directory_repo.find_principal_ids_in_org_units(tenant_id, [unit.org_unit_id])
            if unit else []
        )
        self._set_cache(cache_key, principal_ids)
        return principal_ids

    def _resolve_by_custom_field(self, field_path: Optional[str], field_value: Any, tenant_id: str) -> List[str]:
        if not field_path:
            return []

        # JSON keeps 1 and "1" apart; the store matches them differently
        value_key = json.dumps(field_value, sort_keys=True, default=str)
        cache_key = f"{CACHE_PREFIX}:{tenant_id}:custom:{field_path}:{value_key}"
        cached = self._get_cache(cache_key)
        if cached is not None:
            return cached

        principal_ids = self.directory_repo.find_principal_ids_by_metadata(tenant_id, field_path, field_value)
        self._set_cache(cache_key, principal_ids)
        return principal_ids

    def _collect_subtree(self, tenant_id: str, root_id: str) -> List[str]:
        """Root plus all descendants, breadth first, bounded by max_org_depth"""
        seen = [root_id]
        frontier = [root_id]
        depth = 0
        while frontier and depth < self.max_org_depth:
            children = [
                child for child in self.directory_repo.get_child_org_unit_ids(tenant_id, frontier)
                if child not in seen
            ]
            seen.extend(children)
            frontier = children
            depth += 1
        return seen

    # =========================================================================
    # Cache (failures never propagate)
    # =========================================================================

    def _get_cache(self, key: str) -> Optional[List[str]]:
        if self.cache is None:
            return None
        try:
            raw = self.cache.get(key)
            if raw is None:
                return None
            value = json.loads(raw)
            return value if isinstance(value, list) else None
        except Exception as e:
            logger.warning(f"Approver cache read failed for {key}: {e}")
            return None

    def _set_cache(self, key: str, principal_ids: List[str]) -> None:
        if self.cache is None:
            return
        try:
            self.cache.set(key, json.dumps(principal_ids), self.cache_ttl_seconds)
        except Exception as e:
            logger.warning(f"Approver cache write failed for {key}: {e}")
