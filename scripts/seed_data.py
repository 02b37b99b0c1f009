"""
Seed Data Script - Creates a sample directory and purchase-order template
Run: python -m scripts.seed_data [--tenant demo]
"""
import argparse

from approval_engine.config.settings import get_settings
from approval_engine.container import Container
from approval_engine.domain.errors import AlreadyExistsError
from approval_engine.domain.models import (
    OrgUnit, Principal, PrincipalGroup, RoleGrant, TemplateCreateRequest, TransitionGate
)
from approval_engine.repositories.mongo_client import create_indexes


def seed_directory(container: Container, tenant_id: str) -> None:
    """Org tree company > finance > accounts payable, with one person per unit"""
    repo = container.directory_repo

    units = [
        OrgUnit(org_unit_id="ou_company", tenant_id=tenant_id, code="COMPANY", name="Company"),
        OrgUnit(org_unit_id="ou_finance", tenant_id=tenant_id, code="FIN", name="Finance", parent_id="ou_company"),
        OrgUnit(org_unit_id="ou_ap", tenant_id=tenant_id, code="FIN-AP", name="Accounts Payable", parent_id="ou_finance"),
    ]
    for unit in units:
        repo.upsert_org_unit(unit)

    people = [
        Principal(principal_id="u_ceo", tenant_id=tenant_id, display_name="Chief Executive", org_unit_ids=["ou_company"]),
        Principal(principal_id="u_cfo", tenant_id=tenant_id, display_name="Finance Director", org_unit_ids=["ou_finance"]),
        Principal(
            principal_id="u_clerk", tenant_id=tenant_id, display_name="AP Clerk",
            org_unit_ids=["ou_ap"], metadata={"cost_center": "CC-100"}
        ),
        Principal(principal_id="u_auditor", tenant_id=tenant_id, display_name="Internal Auditor", org_unit_ids=["ou_finance"]),
    ]
    for person in people:
        repo.upsert_principal(person)

    repo.upsert_group(PrincipalGroup(
        group_id="grp_treasury", tenant_id=tenant_id, code="TREASURY",
        name="Treasury", member_ids=["u_cfo", "u_auditor"]
    ))
    repo.add_role_grant(RoleGrant(tenant_id=tenant_id, principal_id="u_auditor", role_code="AUDITOR"))

    print(f"Seeded {len(units)} org units and {len(people)} principals")


def seed_template(container: Container, tenant_id: str) -> None:
    """Two-stage PO approval: manager, then treasury quorum for large amounts"""
    request = TemplateCreateRequest(
        code="PO_APPROVAL",
        name="Purchase Order Approval",
        description="Manager sign-off, then treasury for orders above 10k",
        stages=[
            {"stage_no": 1, "name": "Manager", "mode": "serial",
             "sla": {"due_in_minutes": 1440, "reminder_before_minutes": 240}},
            {"stage_no": 2, "name": "Treasury", "mode": "parallel",
             "quorum": {"type": "majority"},
             "sla": {"due_in_minutes": 2880, "escalation": {"kind": "sla_breach", "target": "u_ceo"}}},
        ],
        rules=[
            {"stage_no": 1, "priority": 10,
             "assign_to": {"strategy": "hierarchy", "skip_levels": 1}},
            {"stage_no": 2, "priority": 10,
             "conditions": {"operator": "and", "conditions": [
                 {"field": "amount", "operator": "gt", "value": 10000}
             ]},
             "assign_to": {"strategy": "group", "group_code": "TREASURY"}},
        ]
    )

    try:
        template = container.template_service.create(tenant_id, request, actor_id="seed")
    except AlreadyExistsError:
        print("Template PO_APPROVAL already exists. Skipping.")
        return

    container.template_service.compile(tenant_id, template.template_id)
    container.lifecycle_repo.upsert_gate(TransitionGate(
        tenant_id=tenant_id,
        transition_id="po_submit",
        entity_name="purchase_order",
        operation_code="SUBMIT",
        approval_template_id=template.template_id
    ))
    print(f"Created template {template.code} v{template.version_no}: {template.template_id}")


def main():
    parser = argparse.ArgumentParser(description="Seed sample approval data")
    parser.add_argument("--tenant", default="demo", help="Tenant to seed (default: demo)")
    args = parser.parse_args()

    container = Container.build(get_settings())
    create_indexes(container.db)
    seed_directory(container, args.tenant)
    seed_template(container, args.tenant)
    print("\n[OK] Seed data created successfully!")


if __name__ == "__main__":
    main()
