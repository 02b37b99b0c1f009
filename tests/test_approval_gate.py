"""Tests for lifecycle transition gating"""
import pytest

from approval_engine.domain.enums import Decision, GateOutcome, InstanceStatus
from approval_engine.domain.models import DecisionRequest, TransitionGate

from .conftest import TENANT, direct_rule

ENTITY = ("purchase_order", "PO-100")


@pytest.fixture
def gate(container, make_template):
    template = make_template([{"stage_no": 1}], [direct_rule(1, "u_cfo")], code="PO_APPROVAL")
    gate = TransitionGate(
        tenant_id=TENANT,
        transition_id="po_submit",
        entity_name="purchase_order",
        operation_code="SUBMIT",
        approval_template_id=template.template_id
    )
    container.lifecycle_repo.upsert_gate(gate)
    return gate


def check(container, gate, ctx=None, entity=ENTITY):
    return container.gate_service.check_gate(TENANT, gate, entity[0], entity[1], ctx or {"actor_id": "u_clerk"})


def decide_all(container, instance_id, decision=Decision.APPROVED):
    for task in container.engine.get_tasks(TENANT, instance_id):
        container.engine.make_decision(DecisionRequest(
            tenant_id=TENANT, task_id=task.task_id, decision=decision, decided_by=task.approver_id
        ))


def test_requires_approval(container, gate):
    assert container.gate_service.requires_approval(TENANT, "po_submit") == gate.approval_template_id
    assert container.gate_service.requires_approval(TENANT, "po_close") is None


def test_ungated_transition(container):
    open_gate = TransitionGate(tenant_id=TENANT, transition_id="po_close", entity_name="purchase_order")
    decision = check(container, open_gate)
    assert decision.allowed
    assert decision.outcome == GateOutcome.ALLOWED


def test_first_check_starts_an_approval(container, gate):
    decision = check(container, gate, {"actor_id": "u_clerk", "context": {"amount": 900}})

    assert not decision.allowed
    assert decision.outcome == GateOutcome.APPROVAL_REQUIRED
    instance = container.engine.get_instance(TENANT, decision.instance_id)
    assert (instance.transition_id, instance.operation_code) == ("po_submit", "SUBMIT")
    assert instance.requester_id == "u_clerk"
    assert instance.metadata["assignment_context"]["amount"] == 900


def test_pending_approval_blocks(container, gate):
    first = check(container, gate)
    second = check(container, gate)

    assert second.outcome == GateOutcome.APPROVAL_PENDING
    assert second.instance_id == first.instance_id


def test_completed_approval_allows(container, lifecycle, gate):
    first = check(container, gate)
    decide_all(container, first.instance_id)

    assert lifecycle.calls[0]["ctx"]["approval_bypass"] is True
    decision = check(container, gate)
    assert decision.allowed
    assert decision.instance_id == first.instance_id


def test_bypass_context_lets_replay_through(container, gate):
    decision = check(container, gate, {"approval_bypass": True, "approval_instance_id": "INS-1"})
    assert decision.allowed
    assert decision.instance_id == "INS-1"


def test_missing_entity_context_is_allowed(container, gate):
    decision = container.gate_service.check_gate(TENANT, gate, None, None)
    assert decision.allowed
    assert "skipped" in decision.reason


def test_rejection_blocks_until_resubmit(container, gate):
    first = check(container, gate)
    decide_all(container, first.instance_id, Decision.REJECTED)

    blocked = check(container, gate)
    assert blocked.outcome == GateOutcome.APPROVAL_REJECTED
    assert blocked.reason == "Approval was rejected"

    resubmitted = check(container, gate, {"actor_id": "u_clerk", "resubmit": True})
    assert resubmitted.outcome == GateOutcome.APPROVAL_REQUIRED
    assert resubmitted.instance_id != first.instance_id


def test_canceled_approval_blocks(container, gate):
    first = check(container, gate)
    container.engine.cancel_instance(TENANT, first.instance_id, "admin")

    blocked = check(container, gate)
    assert blocked.outcome == GateOutcome.APPROVAL_REJECTED
    assert blocked.reason == "Approval was canceled"


def test_other_transition_pending_blocks(container, gate, make_template):
    amend_template = make_template([{"stage_no": 1}], [direct_rule(1, "u_ceo")], code="PO_AMEND")
    amend = TransitionGate(
        tenant_id=TENANT, transition_id="po_amend", entity_name="purchase_order",
        operation_code="AMEND", approval_template_id=amend_template.template_id
    )
    submit = check(container, gate)

    decision = check(container, amend)

    assert decision.outcome == GateOutcome.APPROVAL_PENDING
    assert decision.instance_id == submit.instance_id
    assert decision.reason == "Another approval is pending for this entity"

    decide_all(container, submit.instance_id)
    started = check(container, amend)
    assert started.outcome == GateOutcome.APPROVAL_REQUIRED
    assert started.instance_id != submit.instance_id


def test_creation_failure(container):
    broken = TransitionGate(
        tenant_id=TENANT, transition_id="po_submit", entity_name="purchase_order",
        approval_template_id="TPL-missing"
    )
    decision = check(container, broken)
    assert decision.outcome == GateOutcome.APPROVAL_ERROR
    assert not decision.allowed


def test_fully_skipped_approval_still_blocks(container, lifecycle, make_template):
    template = make_template([{"stage_no": 1}], [], code="EMPTY")
    empty_gate = TransitionGate(
        tenant_id=TENANT, transition_id="po_submit", entity_name="purchase_order",
        operation_code="SUBMIT", approval_template_id=template.template_id
    )

    decision = check(container, empty_gate)

    assert decision.outcome == GateOutcome.APPROVAL_REQUIRED
    assert container.engine.get_instance(TENANT, decision.instance_id).status == InstanceStatus.COMPLETED
    assert len(lifecycle.calls) == 1
