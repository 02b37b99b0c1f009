"""Tests for SLA reminders, escalations and rehydration"""
from datetime import timedelta

import pytest

from approval_engine.domain.enums import Decision, SlaJobType, TaskStatus
from approval_engine.domain.models import DecisionRequest
from approval_engine.engine.sla_timers import escalation_job_id, reminder_job_id
from approval_engine.utils.time import utc_now

from .conftest import TENANT, direct_rule

SLA = {
    "due_in_minutes": 120,
    "reminder_before_minutes": 30,
    "escalation": {"kind": "sla_breach", "target": "u_ceo"},
}


@pytest.fixture
def sla_instance(make_template, start):
    template = make_template([{"stage_no": 1, "sla": SLA}], [direct_rule(1, "u_cfo", "u_auditor")])
    return start(template)


def task_of(container, instance, approver_id):
    return next(t for t in container.engine.get_tasks(TENANT, instance.instance_id) if t.approver_id == approver_id)


def event_types(container, instance):
    return [e.event_type for e in container.engine.get_events(TENANT, instance.instance_id, page_size=100).items]


def test_timers_are_keyed_by_task(container, job_queue, sla_instance):
    task = task_of(container, sla_instance, "u_cfo")

    reminder = job_queue.jobs[reminder_job_id(task.task_id)]
    escalation = job_queue.jobs[escalation_job_id(task.task_id)]

    assert reminder["job_type"] == SlaJobType.REMINDER.value
    assert escalation["job_type"] == SlaJobType.ESCALATION.value
    assert reminder["attempts"] == container.settings.reminder_attempts
    assert escalation["data"]["payload"] == SLA["escalation"]
    # Reminder lands 30 minutes before the due date
    assert escalation["delay_ms"] - reminder["delay_ms"] == pytest.approx(30 * 60 * 1000, abs=2000)
    assert len(job_queue.jobs) == 4


def test_no_sla_no_timers(container, job_queue, make_template, start):
    template = make_template([{"stage_no": 1}], [direct_rule(1, "u_cfo")])
    instance = start(template)

    assert job_queue.jobs == {}
    assert task_of(container, instance, "u_cfo").due_at is None


def test_escalation_only_without_reminder(container, job_queue, make_template, start):
    template = make_template([{"stage_no": 1, "sla": {"due_in_minutes": 60}}], [direct_rule(1, "u_cfo")])
    instance = start(template)
    task = task_of(container, instance, "u_cfo")

    assert list(job_queue.jobs) == [escalation_job_id(task.task_id)]


def test_reminder_fires(container, job_queue, sla_instance):
    task = task_of(container, sla_instance, "u_cfo")

    job_queue.fire(reminder_job_id(task.task_id))

    assert task_of(container, sla_instance, "u_cfo").reminder_count == 1
    assert "sla_reminder_sent" in event_types(container, sla_instance)


def test_escalation_fires(container, job_queue, sla_instance):
    task = task_of(container, sla_instance, "u_cfo")

    job_queue.fire(escalation_job_id(task.task_id))

    rows = container.engine.get_escalations(TENANT, sla_instance.instance_id).items
    assert len(rows) == 1
    assert rows[0].kind == "sla_breach"
    assert rows[0].task_id == task.task_id
    assert rows[0].payload["target"] == "u_ceo"
    assert rows[0].payload["approver_id"] == "u_cfo"
    assert "sla_escalation_executed" in event_types(container, sla_instance)


def test_decision_cancels_timers(container, job_queue, sla_instance):
    task = task_of(container, sla_instance, "u_cfo")

    container.engine.make_decision(DecisionRequest(
        tenant_id=TENANT, task_id=task.task_id, decision=Decision.APPROVED, decided_by="u_cfo"
    ))

    assert reminder_job_id(task.task_id) in job_queue.removed
    assert escalation_job_id(task.task_id) in job_queue.removed
    other = task_of(container, sla_instance, "u_auditor")
    assert escalation_job_id(other.task_id) in job_queue.jobs
    assert "sla_timers_cancelled" in event_types(container, sla_instance)


def test_late_timer_is_a_no_op(container, sla_instance):
    task = task_of(container, sla_instance, "u_cfo")
    container.engine.make_decision(DecisionRequest(
        tenant_id=TENANT, task_id=task.task_id, decision=Decision.APPROVED, decided_by="u_cfo"
    ))
    data = {"tenant_id": TENANT, "instance_id": sla_instance.instance_id, "task_id": task.task_id}

    container.sla_timers.process_reminder(data)
    container.sla_timers.process_escalation(data)

    assert task_of(container, sla_instance, "u_cfo").reminder_count == 0
    assert container.engine.get_escalations(TENANT, sla_instance.instance_id).items == []


def test_closing_instance_cancels_every_timer(container, job_queue, sla_instance):
    container.engine.cancel_instance(TENANT, sla_instance.instance_id, "admin")
    assert job_queue.jobs == {}
    assert len(job_queue.removed) == 4


def test_past_fire_time_is_not_queued(container, job_queue):
    job_id = container.sla_timers.schedule_reminder(TENANT, "INS-1", "TSK-1", utc_now() - timedelta(minutes=1))
    assert job_id is None
    assert job_queue.jobs == {}


class TestRehydration:

    def test_requeues_pending_tasks(self, container, job_queue, sla_instance):
        job_queue.jobs.clear()

        count = container.sla_timers.rehydrate_pending_timers(TENANT)

        assert count == 2
        task = task_of(container, sla_instance, "u_cfo")
        assert reminder_job_id(task.task_id) in job_queue.jobs
        assert job_queue.jobs[escalation_job_id(task.task_id)]["data"]["payload"] == SLA["escalation"]

    def test_repeated_rehydration_does_not_duplicate(self, container, job_queue, sla_instance):
        container.sla_timers.rehydrate_pending_timers(TENANT)
        container.sla_timers.rehydrate_pending_timers(TENANT)
        assert len(job_queue.jobs) == 4

    def test_reminder_uses_remaining_time_ratio(self, container, job_queue, sla_instance):
        job_queue.jobs.clear()
        container.sla_timers.rehydrate_pending_timers(TENANT)

        task = task_of(container, sla_instance, "u_cfo")
        reminder = job_queue.jobs[reminder_job_id(task.task_id)]
        escalation = job_queue.jobs[escalation_job_id(task.task_id)]
        ratio = container.settings.rehydration_reminder_ratio
        assert reminder["delay_ms"] == pytest.approx(escalation["delay_ms"] * ratio, rel=0.01)

    def test_skips_overdue_and_decided_tasks(self, container, job_queue, sla_instance):
        cfo = task_of(container, sla_instance, "u_cfo")
        auditor = task_of(container, sla_instance, "u_auditor")
        container.instance_repo.update_task(TENANT, cfo.task_id, {"due_at": utc_now() - timedelta(minutes=5)})
        container.instance_repo.update_task(TENANT, auditor.task_id, {"status": TaskStatus.APPROVED})
        job_queue.jobs.clear()

        assert container.sla_timers.rehydrate_pending_timers(TENANT) == 0
        assert job_queue.jobs == {}

    def test_scoped_to_tenant(self, container, sla_instance):
        assert container.sla_timers.rehydrate_pending_timers("other-tenant") == 0
        assert container.sla_timers.rehydrate_pending_timers() == 2
