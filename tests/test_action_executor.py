"""Tests for the action executor"""
from datetime import timedelta

import pytest

from approval_engine.domain.enums import (
    ActionType, Decision, InstanceStatus, StageStatus, TaskStatus
)
from approval_engine.domain.models import ActionRequest, DecisionRequest, HoldInfo
from approval_engine.engine.sla_timers import escalation_job_id, reminder_job_id
from approval_engine.utils.time import utc_now

from .conftest import TENANT, direct_rule

SINGLE = [{"stage_no": 1}]
SLA_STAGE = [{"stage_no": 1, "sla": {"due_in_minutes": 120, "reminder_before_minutes": 30}}]
ADMIN = ["approval_admin"]


def act(container, instance, action, user_id, step_id=None, **fields):
    if step_id is None:
        step_id = container.approval_service.current_step_id(TENANT, instance.instance_id)
    return container.executor.execute_action(ActionRequest(
        tenant_id=TENANT,
        instance_id=instance.instance_id,
        step_id=step_id,
        user_id=user_id,
        action=action,
        **fields
    ))


def tasks_by_approver(container, instance):
    return {t.approver_id: t for t in container.engine.get_tasks(TENANT, instance.instance_id)}


def reload(container, instance):
    return container.engine.get_instance(TENANT, instance.instance_id)


@pytest.fixture
def single(make_template, start):
    """Open instance with one serial stage assigned to u_cfo and u_ceo"""
    template = make_template(SINGLE, [direct_rule(1, "u_cfo", "u_ceo")])
    return start(template, requester_id="u_clerk")


class TestValidation:

    @pytest.mark.parametrize("action,fields,code", [
        ("reject", {}, "MISSING_REASON"),
        ("request_changes", {}, "MISSING_CHANGES"),
        ("delegate", {}, "MISSING_DELEGATE"),
        ("escalate", {}, "MISSING_REASON"),
        ("hold", {}, "MISSING_REASON"),
        ("bypass", {"decision": "approve"}, "MISSING_REASON"),
        ("bypass", {"reason": "Urgent"}, "MISSING_DECISION"),
        ("bypass", {"reason": "Urgent", "decision": "maybe"}, "MISSING_DECISION"),
        ("reassign", {"reason": "Leave"}, "MISSING_APPROVER"),
        ("reassign", {"to_approver_id": "u_ceo"}, "MISSING_REASON"),
        ("comment", {}, "MISSING_COMMENT"),
        ("teleport", {}, "UNKNOWN_ACTION"),
    ])
    def test_missing_inputs(self, container, single, action, fields, code):
        result = act(container, single, action, "u_cfo", **fields)
        assert not result.success
        assert result.error_code == code

    def test_missing_step(self, container, single):
        result = act(container, single, "approve", "u_cfo", step_id="")
        assert result.error_code == "MISSING_STEP_ID"

    def test_unknown_step(self, container, single):
        result = act(container, single, "approve", "u_cfo", step_id="STG-missing")
        assert result.error_code == "STEP_NOT_FOUND"

    def test_unknown_instance(self, container):
        result = container.executor.execute_action(ActionRequest(
            tenant_id=TENANT, instance_id="INS-missing", step_id="STG-1", user_id="u_cfo", action="approve"
        ))
        assert result.error_code == "INSTANCE_NOT_FOUND"


class TestGuards:

    def test_stale_expected_version(self, container, single):
        result = act(container, single, "approve", "u_cfo", expected_version=single.version + 5)
        assert result.error_code == "CONCURRENCY_CONFLICT"

    def test_terminal_instance(self, container, single):
        step_id = container.engine.get_stages(TENANT, single.instance_id)[0].stage_id
        container.engine.cancel_instance(TENANT, single.instance_id, "admin")

        result = act(container, single, "approve", "u_cfo", step_id=step_id)

        assert result.error_code == "INSTANCE_TERMINAL"

    def test_non_assignee(self, container, single):
        result = act(container, single, "approve", "u_sales")
        assert result.error_code == "ACTION_NOT_ALLOWED"

    def test_stage_allowed_actions(self, container, directory, make_template, start):
        template = make_template(
            [{"stage_no": 1, "allowed_actions": ["approve", "reject"]}], [direct_rule(1, "u_cfo")]
        )
        instance = start(template)

        result = act(container, instance, "delegate", "u_cfo", delegate_to_user_id="u_ceo")

        assert result.error_code == "ACTION_NOT_ALLOWED"

    def test_lock_held_elsewhere(self, container, single):
        container.instance_repo.acquire_lock(TENANT, single.instance_id, "other-holder", 60)
        result = act(container, single, "approve", "u_cfo")
        assert result.error_code == "LOCK_UNAVAILABLE"


class TestDecisions:

    def test_approve(self, container, single):
        first = act(container, single, "approve", "u_cfo", comment="Fine")
        assert first.success
        assert first.action == "approve"
        assert first.instance_status == InstanceStatus.OPEN
        assert tasks_by_approver(container, single)["u_cfo"].decision_note == "Fine"

        last = act(container, single, "approve", "u_ceo")
        assert last.workflow_complete
        assert last.final_outcome == "approved"
        assert last.step_status == StageStatus.COMPLETED

    def test_reject(self, container, single):
        result = act(container, single, "reject", "u_ceo", reason="Not in budget")

        assert result.workflow_complete
        assert result.final_outcome == "rejected"
        instance = reload(container, single)
        assert instance.is_rejected
        assert tasks_by_approver(container, single)["u_ceo"].decision_note == "Not in budget"

    def test_approve_advances_to_next_stage(self, container, make_template, start):
        template = make_template([{"stage_no": 1}, {"stage_no": 2}], [direct_rule(1, "u_cfo"), direct_rule(2, "u_ceo")])
        instance = start(template)

        result = act(container, instance, "approve", "u_cfo")

        stage_two = container.engine.get_stages(TENANT, instance.instance_id)[1]
        assert result.activated_step_ids == [stage_two.stage_id]
        assert not result.workflow_complete

    def test_request_changes(self, container, single):
        result = act(
            container, single, "request_changes", "u_cfo",
            requested_changes="Attach the quote", fields_to_change=["attachments"]
        )

        assert result.success
        instance = reload(container, single)
        assert instance.status == InstanceStatus.OPEN
        assert instance.revision_count == 1
        assert instance.last_change_request.requested_changes == "Attach the quote"
        assert instance.last_change_request.fields_to_change == ["attachments"]
        assert tasks_by_approver(container, single)["u_cfo"].status == TaskStatus.PENDING


class TestHandOver:

    def test_delegate(self, container, directory, make_template, start):
        template = make_template(SLA_STAGE, [direct_rule(1, "u_cfo")])
        instance = start(template)
        original = tasks_by_approver(container, instance)["u_cfo"]

        result = act(container, instance, "delegate", "u_cfo", delegate_to_user_id="u_auditor", reason="Travelling")

        tasks = tasks_by_approver(container, instance)
        assert tasks["u_cfo"].status == TaskStatus.DELEGATED
        assert tasks["u_cfo"].delegated_to == "u_auditor"
        assert tasks["u_auditor"].task_id == result.task_id
        assert tasks["u_auditor"].delegated_from == "u_cfo"
        assert tasks["u_auditor"].due_at == original.due_at
        snapshot = container.engine.get_assignment_snapshot(TENANT, result.task_id)
        assert snapshot.resolved_assignment["strategy"] == "delegation"

        done = act(container, instance, "approve", "u_auditor")
        assert done.final_outcome == "approved"

    def test_delegate_to_unknown_principal(self, container, directory, single):
        result = act(container, single, "delegate", "u_cfo", delegate_to_user_id="u_ghost")
        assert result.error_code == "APPROVER_NOT_FOUND"

    def test_reassign_from_approver(self, container, directory, single):
        result = act(
            container, single, "reassign", "admin", roles=ADMIN,
            from_approver_id="u_ceo", to_approver_id="u_auditor", reason="On leave"
        )

        tasks = tasks_by_approver(container, single)
        assert result.success
        assert tasks["u_ceo"].status == TaskStatus.REASSIGNED
        assert tasks["u_auditor"].status == TaskStatus.PENDING

    def test_reassign_adds_approver(self, container, directory, single):
        act(container, single, "reassign", "admin", roles=ADMIN, to_approver_id="u_auditor", reason="Extra eyes")

        tasks = tasks_by_approver(container, single)
        assert set(tasks) == {"u_cfo", "u_ceo", "u_auditor"}
        assert tasks["u_ceo"].status == TaskStatus.PENDING

    def test_reassign_unknown_source(self, container, directory, single):
        result = act(
            container, single, "reassign", "admin", roles=ADMIN,
            from_approver_id="u_sales", to_approver_id="u_auditor", reason="x"
        )
        assert result.error_code == "APPROVER_NOT_FOUND"


class TestEscalationAndHold:

    def test_escalate_by_non_approver(self, container, single):
        result = act(container, single, "escalate", "u_clerk", escalation_reason="Waiting a week")

        assert result.success
        assert reload(container, single).escalation_level == 1
        assert container.engine.get_stages(TENANT, single.instance_id)[0].escalation_level == 1
        escalations = container.engine.get_escalations(TENANT, single.instance_id).items
        assert escalations[0].kind == "manual"
        assert escalations[0].payload["new_level"] == 1

    def test_escalate_to_target_level(self, container, single):
        act(container, single, "escalate", "u_clerk", escalation_reason="Urgent", target_level=3)
        assert container.engine.get_stages(TENANT, single.instance_id)[0].escalation_level == 3

    def test_hold_blocks_decisions(self, container, single):
        held = act(container, single, "hold", "u_cfo", hold_reason="Vendor audit")
        assert held.instance_status == InstanceStatus.ON_HOLD
        assert reload(container, single).hold_info.reason == "Vendor audit"

        assert act(container, single, "approve", "u_cfo").error_code == "ACTION_NOT_ALLOWED"
        task = tasks_by_approver(container, single)["u_cfo"]
        decision = container.engine.make_decision(DecisionRequest(
            tenant_id=TENANT, task_id=task.task_id, decision=Decision.APPROVED, decided_by="u_cfo"
        ))
        assert decision.error_code == "INVALID_STATE"

    def test_resume(self, container, single):
        act(container, single, "hold", "u_cfo", hold_reason="Vendor audit")
        resumed = act(container, single, "resume", "u_cfo", comment="Audit done")

        assert resumed.instance_status == InstanceStatus.OPEN
        assert reload(container, single).hold_info is None
        assert act(container, single, "approve", "u_cfo").success

    def test_resume_when_not_on_hold(self, container, single):
        assert act(container, single, "resume", "u_cfo").error_code == "NOT_ON_HOLD"
        assert act(container, single, "release", "u_cfo").error_code == "NOT_ON_HOLD"

    def test_release_by_other_user_requires_admin(self, container, single):
        act(container, single, "hold", "u_cfo", hold_reason="Vendor audit")

        denied = act(container, single, "release", "u_ceo")
        assert denied.error_code == "ACTION_NOT_ALLOWED"
        assert reload(container, single).status == InstanceStatus.ON_HOLD

        assert act(container, single, "release", "u_cfo").instance_status == InstanceStatus.OPEN

    def test_release_shifts_due_dates(self, container, job_queue, make_template, start):
        template = make_template(SLA_STAGE, [direct_rule(1, "u_cfo")])
        instance = start(template)
        before = tasks_by_approver(container, instance)["u_cfo"]

        act(container, instance, "hold", "u_cfo", hold_reason="Budget freeze")
        held = reload(container, instance)
        container.instance_repo.update_instance(TENANT, instance.instance_id, held.version, {
            "hold_info": HoldInfo(held_by="u_cfo", held_at=utc_now() - timedelta(hours=1), reason="Budget freeze")
        })

        result = act(container, instance, "release", "u_admin", roles=ADMIN)

        assert result.instance_status == InstanceStatus.OPEN
        after = tasks_by_approver(container, instance)["u_cfo"]
        assert after.due_at - before.due_at >= timedelta(hours=1)
        assert reminder_job_id(after.task_id) in job_queue.jobs
        assert escalation_job_id(after.task_id) in job_queue.jobs


class TestRequesterActions:

    def test_recall_requires_requester(self, container, single):
        assert act(container, single, "recall", "u_cfo").error_code == "NOT_REQUESTER"

    def test_recall(self, container, single):
        result = act(container, single, "recall", "u_clerk", reason="Wrong vendor")

        assert result.final_outcome == "withdrawn"
        instance = reload(container, single)
        assert instance.status == InstanceStatus.WITHDRAWN
        assert instance.context["reason"] == "recalled"
        assert {t.status for t in tasks_by_approver(container, single).values()} == {TaskStatus.CANCELED}

    def test_withdraw(self, container, single):
        result = act(container, single, "withdraw", "u_clerk")
        assert result.workflow_complete
        assert reload(container, single).context["reason"] == "withdrawn"


class TestBypass:

    @pytest.fixture
    def three_stages(self, make_template, start):
        template = make_template(
            [{"stage_no": 1}, {"stage_no": 2}, {"stage_no": 3}],
            [direct_rule(1, "u_cfo", "u_ceo"), direct_rule(2, "u_auditor"), direct_rule(3, "u_sales")]
        )
        return start(template, operation_code="SUBMIT")

    @pytest.mark.parametrize("action,fields", [
        ("bypass", {"decision": "approve", "reason": "Self approval"}),
        ("reassign", {"to_approver_id": "u_sales", "reason": "Friendlier approver"}),
    ])
    def test_admin_actions_require_role(self, container, three_stages, action, fields):
        result = act(container, three_stages, action, "u_sales", roles=["employee"], **fields)

        assert not result.success
        assert result.error_code == "ACTION_NOT_ALLOWED"
        instance = reload(container, three_stages)
        assert instance.status == InstanceStatus.OPEN
        statuses = [s.status for s in container.engine.get_stages(TENANT, three_stages.instance_id)]
        assert statuses == [StageStatus.OPEN, StageStatus.PENDING, StageStatus.PENDING]
        stage_one = [t for t in container.engine.get_tasks(TENANT, three_stages.instance_id) if t.stage_no == 1]
        assert {t.status for t in stage_one} == {TaskStatus.PENDING}

    def test_bypass_approve_advances(self, container, three_stages):
        result = act(container, three_stages, "bypass", "admin", roles=ADMIN, decision="approve", reason="CEO call")

        assert result.success
        assert not result.workflow_complete
        statuses = [s.status for s in container.engine.get_stages(TENANT, three_stages.instance_id)]
        assert statuses == [StageStatus.COMPLETED, StageStatus.OPEN, StageStatus.PENDING]
        decided = [t for t in container.engine.get_tasks(TENANT, three_stages.instance_id) if t.stage_no == 1]
        assert {t.status for t in decided} == {TaskStatus.APPROVED}

    def test_bypass_skip_remaining(self, container, lifecycle, three_stages):
        result = act(
            container, three_stages, "bypass", "admin", roles=ADMIN,
            decision="approve", reason="Emergency", skip_remaining_steps=True
        )

        assert result.workflow_complete
        assert result.final_outcome == "approved"
        statuses = [s.status for s in container.engine.get_stages(TENANT, three_stages.instance_id)]
        assert statuses == [StageStatus.COMPLETED, StageStatus.SKIPPED, StageStatus.SKIPPED]
        assert len(lifecycle.calls) == 1

    def test_bypass_reject(self, container, lifecycle, three_stages):
        result = act(container, three_stages, "bypass", "admin", roles=ADMIN, decision="reject", reason="Fraud check")

        assert result.final_outcome == "rejected"
        assert reload(container, three_stages).is_rejected
        assert lifecycle.calls == []


class TestCommentsAndEvents:

    def test_comment_is_logged(self, container, single):
        received = []
        container.executor.register_handler(received.append)

        result = act(container, single, "comment", "u_sales", comment_text="Any update?", is_internal=True)

        assert result.success
        assert [e.event_type for e in received] == ["action.comment"]
        assert received[0].payload == {"comment": "Any update?", "is_internal": True}

    def test_failing_handler_does_not_break_action(self, container, single):
        def broken(event):
            raise RuntimeError("subscriber down")

        container.executor.register_handler(broken)
        assert act(container, single, "approve", "u_cfo").success


class TestAvailableActions:

    def test_defaults_for_assignee(self, container, single):
        step_id = container.approval_service.current_step_id(TENANT, single.instance_id)
        actions = container.executor.get_available_actions(TENANT, single.instance_id, step_id, "u_cfo")
        assert actions == [ActionType.APPROVE, ActionType.REJECT, ActionType.DELEGATE, ActionType.REQUEST_CHANGES]

    def test_nothing_for_others(self, container, single):
        step_id = container.approval_service.current_step_id(TENANT, single.instance_id)
        assert container.executor.get_available_actions(TENANT, single.instance_id, step_id, "u_sales") == []

    def test_stage_restriction(self, container, make_template, start):
        template = make_template(
            [{"stage_no": 1, "allowed_actions": ["approve", "teleport"]}], [direct_rule(1, "u_cfo")]
        )
        instance = start(template)
        step_id = container.approval_service.current_step_id(TENANT, instance.instance_id)

        assert container.executor.get_available_actions(TENANT, instance.instance_id, step_id, "u_cfo") == [
            ActionType.APPROVE
        ]

    def test_can_perform_action(self, container, single):
        step_id = container.approval_service.current_step_id(TENANT, single.instance_id)
        assert container.executor.can_perform_action(TENANT, single.instance_id, step_id, "u_cfo", "approve").allowed
        check = container.executor.can_perform_action(TENANT, single.instance_id, step_id, "u_sales", "approve")
        assert not check.allowed
        assert check.reason == "No pending approval for this user"
