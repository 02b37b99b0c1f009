"""
Pytest Configuration and Fixtures

Every test gets a fresh mongomock database, a container wired with an
in-memory job queue and a recording lifecycle manager, and a small
directory for tenant ``acme``:

    ou_company (CORP)
    └── ou_finance (FIN)          u_cfo, u_auditor
        └── ou_ap (FIN-AP)        u_clerk, u_clerk2
    ou_sales (SALES)              u_sales

    group TREASURY = u_cfo, u_auditor
    role AUDITOR   = u_auditor
"""
from typing import Any, Callable, Dict, List, Optional

import mongomock
import pytest

from approval_engine.clients.lifecycle_client import LifecycleManager
from approval_engine.config.settings import Settings
from approval_engine.container import Container
from approval_engine.domain.errors import LifecycleError
from approval_engine.domain.models import (
    ActorContext, ApprovalTemplate, CreateInstanceRequest, OrgUnit, Principal,
    PrincipalGroup, RoleGrant, TemplateCreateRequest
)
from approval_engine.utils.idgen import generate_id

TENANT = "acme"


# ============================================================================
# Test doubles
# ============================================================================

class FakeJobQueue:
    """Records queued jobs; tests fire them by ID"""

    def __init__(self):
        self.jobs: Dict[str, Dict[str, Any]] = {}
        self.removed: List[str] = []
        self.handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {}
        self.running = False

    def start(self) -> None:
        self.running = True

    def shutdown(self) -> None:
        self.running = False

    @property
    def is_running(self) -> bool:
        return self.running

    def process(self, job_type: str, handler: Callable[[Dict[str, Any]], None]) -> None:
        self.handlers[job_type] = handler

    def add(
        self,
        job_type: str,
        data: Dict[str, Any],
        delay_ms: int = 0,
        attempts: int = 1,
        backoff_ms: int = 0,
        job_id: Optional[str] = None
    ) -> str:
        job_id = job_id or generate_id("JOB")
        self.jobs[job_id] = {
            "job_type": job_type,
            "data": data,
            "delay_ms": delay_ms,
            "attempts": attempts,
            "backoff_ms": backoff_ms,
        }
        return job_id

    def remove(self, job_id: str) -> bool:
        if job_id in self.jobs:
            del self.jobs[job_id]
            self.removed.append(job_id)
            return True
        return False

    def fire(self, job_id: str) -> None:
        job = self.jobs.pop(job_id)
        self.handlers[job["job_type"]](job["data"])


class FakeLifecycleManager(LifecycleManager):
    """Records replayed transitions; can be told to fail"""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.fail = False

    def transition(self, entity_name, entity_id, operation_code, ctx):
        if self.fail:
            raise LifecycleError("lifecycle manager down")
        self.calls.append({
            "entity_name": entity_name,
            "entity_id": entity_id,
            "operation_code": operation_code,
            "ctx": ctx,
        })
        return {"status": "ok"}


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        mongo_db="approval_engine_test",
        logs_path=str(tmp_path / "logs"),
        jwt_secret="test-secret-that-is-long-enough-for-hs256",
        instance_lock_timeout_ms=200,
        lock_poll_interval_ms=10,
        scheduler_enabled=False,
        rehydrate_on_startup=False,
        debug=True,
    )


@pytest.fixture
def db():
    return mongomock.MongoClient(tz_aware=True)["approval_engine_test"]


@pytest.fixture
def job_queue() -> FakeJobQueue:
    return FakeJobQueue()


@pytest.fixture
def lifecycle() -> FakeLifecycleManager:
    return FakeLifecycleManager()


@pytest.fixture
def container(settings, db, job_queue, lifecycle) -> Container:
    return Container(settings, db, job_queue=job_queue, lifecycle_manager=lifecycle)


@pytest.fixture
def directory(container):
    repo = container.directory_repo
    for unit in [
        OrgUnit(org_unit_id="ou_company", tenant_id=TENANT, code="CORP"),
        OrgUnit(org_unit_id="ou_finance", tenant_id=TENANT, code="FIN", parent_id="ou_company"),
        OrgUnit(org_unit_id="ou_ap", tenant_id=TENANT, code="FIN-AP", parent_id="ou_finance"),
        OrgUnit(org_unit_id="ou_sales", tenant_id=TENANT, code="SALES"),
    ]:
        repo.upsert_org_unit(unit)

    for principal_id, units, metadata in [
        ("u_ceo", ["ou_company"], {}),
        ("u_cfo", ["ou_finance"], {}),
        ("u_auditor", ["ou_finance"], {"cost_center": "CC-9"}),
        ("u_clerk", ["ou_ap"], {"cost_center": "CC-1"}),
        ("u_clerk2", ["ou_ap"], {}),
        ("u_sales", ["ou_sales"], {}),
    ]:
        repo.upsert_principal(Principal(
            principal_id=principal_id, tenant_id=TENANT, org_unit_ids=units, metadata=metadata
        ))

    repo.upsert_group(PrincipalGroup(
        group_id="grp_treasury", tenant_id=TENANT, code="TREASURY", member_ids=["u_cfo", "u_auditor"]
    ))
    repo.add_role_grant(RoleGrant(tenant_id=TENANT, principal_id="u_auditor", role_code="AUDITOR"))
    return repo


def direct_rule(stage_no: int, *principal_ids: str, priority: Optional[int] = None) -> Dict[str, Any]:
    """Routing rule that assigns the given principals to one stage"""
    return {
        "stage_no": stage_no,
        "priority": priority,
        "assign_to": {"strategy": "direct", "assignees": [{"principal_id": pid} for pid in principal_ids]},
    }


@pytest.fixture
def make_template(container) -> Callable[..., ApprovalTemplate]:
    """Create a template; ``stages`` and ``rules`` are plain dicts"""
    def _make(
        stages: List[Dict[str, Any]],
        rules: List[Dict[str, Any]],
        code: Optional[str] = None,
        **fields: Any
    ) -> ApprovalTemplate:
        request = TemplateCreateRequest(
            code=code or generate_id("CODE"),
            name=fields.pop("name", "Test template"),
            stages=stages,
            rules=rules,
            **fields
        )
        return container.template_service.create(TENANT, request, actor_id="designer")
    return _make


@pytest.fixture
def start(container):
    """Start an instance and return it; fails the test if creation fails"""
    def _start(
        template: ApprovalTemplate,
        entity_id: Optional[str] = None,
        requester_id: str = "u_clerk",
        operation_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        result = container.engine.create_approval_instance(CreateInstanceRequest(
            tenant_id=TENANT,
            template=template.template_id,
            entity_name="purchase_order",
            entity_id=entity_id or generate_id("PO"),
            requester_id=requester_id,
            operation_code=operation_code,
            transition_id="po_submit" if operation_code else None,
            context=context or {}
        ))
        assert result.success, result.error
        return container.engine.get_instance(TENANT, result.instance_id)
    return _start


@pytest.fixture
def actor() -> Callable[[str], ActorContext]:
    return lambda user_id: ActorContext(user_id=user_id, tenant_id=TENANT)
