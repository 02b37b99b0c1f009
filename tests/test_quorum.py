"""Tests for stage completion rules"""
import pytest

from approval_engine.domain.enums import QuorumType, StageMode, TaskStatus
from approval_engine.domain.models import ApprovalTask, QuorumRule
from approval_engine.engine.quorum import evaluate_stage, required_approvals


def tasks(*statuses):
    return [
        ApprovalTask(
            task_id=f"T{i}", tenant_id="acme", instance_id="I", stage_id="S",
            stage_no=1, approver_id=f"u{i}", status=status
        )
        for i, status in enumerate(statuses)
    ]


A, R, P = TaskStatus.APPROVED, TaskStatus.REJECTED, TaskStatus.PENDING


def test_serial_needs_everyone():
    assert not evaluate_stage(StageMode.SERIAL, None, tasks(A, P)).complete
    assert evaluate_stage(StageMode.SERIAL, None, tasks(A, A)).complete


def test_rejection_vetoes_any_mode():
    for mode, quorum in [
        (StageMode.SERIAL, None),
        (StageMode.PARALLEL, QuorumRule(type=QuorumType.ANY)),
        (StageMode.PARALLEL, QuorumRule(type=QuorumType.MAJORITY)),
    ]:
        verdict = evaluate_stage(mode, quorum, tasks(A, R, P))
        assert verdict.complete and verdict.rejected
        assert verdict.outcome == "rejected"


@pytest.mark.parametrize("quorum,statuses,complete", [
    (QuorumRule(type=QuorumType.ALL), (A, A, P), False),
    (QuorumRule(type=QuorumType.ALL), (A, A, A), True),
    (QuorumRule(type=QuorumType.ANY), (A, P, P), True),
    (QuorumRule(type=QuorumType.MAJORITY), (A, P, P), False),
    (QuorumRule(type=QuorumType.MAJORITY), (A, A, P), True),
    (QuorumRule(type=QuorumType.COUNT, value=2), (A, P, P, P), False),
    (QuorumRule(type=QuorumType.COUNT, value=2), (A, A, P, P), True),
    (QuorumRule(type=QuorumType.PERCENTAGE, value=50), (A, P, P, P), False),
    (QuorumRule(type=QuorumType.PERCENTAGE, value=50), (A, A, P, P), True),
    (QuorumRule(type=QuorumType.PERCENTAGE, value=34), (A, P, P), False),
])
def test_parallel_quorums(quorum, statuses, complete):
    assert evaluate_stage(StageMode.PARALLEL, quorum, tasks(*statuses)).complete is complete


def test_unreachable_count_closes_when_nobody_is_pending():
    quorum = QuorumRule(type=QuorumType.COUNT, value=5)
    assert not evaluate_stage(StageMode.PARALLEL, quorum, tasks(A, P)).complete
    assert evaluate_stage(StageMode.PARALLEL, quorum, tasks(A, A)).complete


def test_handed_over_tasks_do_not_vote():
    statuses = tasks(TaskStatus.DELEGATED, TaskStatus.CANCELED, A)
    verdict = evaluate_stage(StageMode.SERIAL, None, statuses)
    assert verdict.complete
    assert verdict.tally.total == 1


def test_no_tasks_is_never_complete():
    assert not evaluate_stage(StageMode.SERIAL, None, []).complete


def test_required_approvals():
    assert required_approvals(None, 4) == 4
    assert required_approvals(QuorumRule(type=QuorumType.MAJORITY), 4) == 3
    assert required_approvals(QuorumRule(type=QuorumType.PERCENTAGE, value=75), 3) == 3
