"""SLA Timers - Reminder and escalation jobs per approval task

Queued jobs are advisory. Every handler reloads the task and does nothing
unless it is still pending, so a timer that fires after a decision is a
no-op. Job IDs are ``{task_id}:reminder`` and ``{task_id}:escalation``, and
re-adding a job with the same ID replaces it, which keeps rehydration after
repeated restarts from stacking duplicates.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .event_bus import EventBus
from ..config.settings import Settings
from ..domain.enums import ApprovalEventType, EscalationKind, SlaJobType, TaskStatus
from ..domain.models import ApprovalEscalation, ApprovalTask, StageInstance
from ..repositories.event_repo import EventRepository
from ..repositories.instance_repo import InstanceRepository
from ..scheduler.job_queue import JobQueue
from ..utils.idgen import generate_escalation_id
from ..utils.logger import get_logger
from ..utils.time import ensure_utc, format_iso, millis_until, utc_now

logger = get_logger(__name__)


def reminder_job_id(task_id: str) -> str:
    return f"{task_id}:reminder"


def escalation_job_id(task_id: str) -> str:
    return f"{task_id}:escalation"


class SlaTimerService:
    """Schedule, fire, cancel and rehydrate SLA timers"""

    def __init__(
        self,
        instance_repo: InstanceRepository,
        event_repo: EventRepository,
        event_bus: EventBus,
        job_queue: JobQueue,
        settings: Settings
    ):
        self.instance_repo = instance_repo
        self.event_repo = event_repo
        self.event_bus = event_bus
        self.job_queue = job_queue
        self.settings = settings

    def register_handlers(self) -> None:
        """Attach the job handlers to the queue"""
        self.job_queue.process(SlaJobType.REMINDER.value, self.process_reminder)
        self.job_queue.process(SlaJobType.ESCALATION.value, self.process_escalation)

    # =========================================================================
    # Scheduling
    # =========================================================================

    def schedule_reminder(
        self,
        tenant_id: str,
        instance_id: str,
        task_id: str,
        fire_at: datetime
    ) -> Optional[str]:
        """Queue a reminder; returns None when ``fire_at`` has already passed"""
        delay_ms = millis_until(fire_at)
        if delay_ms <= 0:
            return None

        job_id = self.job_queue.add(
            SlaJobType.REMINDER.value,
            {"tenant_id": tenant_id, "instance_id": instance_id, "task_id": task_id},
            delay_ms=delay_ms,
            attempts=self.settings.reminder_attempts,
            backoff_ms=self.settings.reminder_backoff_ms,
            job_id=reminder_job_id(task_id)
        )
        self.event_bus.record(
            tenant_id=tenant_id,
            instance_id=instance_id,
            event_type=ApprovalEventType.SLA_REMINDER_SCHEDULED,
            task_id=task_id,
            payload={"fire_at": format_iso(fire_at), "job_id": job_id}
        )
        return job_id

    def schedule_escalation(
        self,
        tenant_id: str,
        instance_id: str,
        task_id: str,
        fire_at: datetime,
        payload: Optional[Dict[str, Any]] = None
    ) -> Optional[str]:
        """Queue an escalation; returns None when ``fire_at`` has already passed"""
        delay_ms = millis_until(fire_at)
        if delay_ms <= 0:
            return None

        job_id = self.job_queue.add(
            SlaJobType.ESCALATION.value,
            {
                "tenant_id": tenant_id,
                "instance_id": instance_id,
                "task_id": task_id,
                "payload": payload or {},
            },
            delay_ms=delay_ms,
            attempts=self.settings.escalation_attempts,
            backoff_ms=self.settings.escalation_backoff_ms,
            job_id=escalation_job_id(task_id)
        )
        self.event_bus.record(
            tenant_id=tenant_id,
            instance_id=instance_id,
            event_type=ApprovalEventType.SLA_ESCALATION_SCHEDULED,
            task_id=task_id,
            payload={"fire_at": format_iso(fire_at), "job_id": job_id}
        )
        return job_id

    def schedule_for_task(self, task: ApprovalTask, stage: StageInstance) -> List[str]:
        """
        Derive both timers from the stage SLA

        The reminder fires ``reminder_before_minutes`` ahead of the due date
        and the escalation fires at the due date.
        """
        if stage.sla is None or task.due_at is None:
            return []

        job_ids = []
        due_at = ensure_utc(task.due_at)
        if stage.sla.reminder_before_minutes:
            reminder_at = due_at - timedelta(minutes=stage.sla.reminder_before_minutes)
            job_id = self.schedule_reminder(task.tenant_id, task.instance_id, task.task_id, reminder_at)
            if job_id:
                job_ids.append(job_id)

        job_id = self.schedule_escalation(
            task.tenant_id,
            task.instance_id,
            task.task_id,
            due_at,
            payload=dict(stage.sla.escalation)
        )
        if job_id:
            job_ids.append(job_id)
        return job_ids

    def cancel_timers(self, tenant_id: str, instance_id: str, task_ids: List[str]) -> int:
        """Remove the queued jobs of the given tasks; returns how many were removed"""
        if not task_ids:
            return 0

        removed = 0
        for task_id in task_ids:
            for job_id in (reminder_job_id(task_id), escalation_job_id(task_id)):
                try:
                    if self.job_queue.remove(job_id):
                        removed += 1
                except Exception as e:
                    logger.warning(
                        f"Could not remove timer {job_id}: {e}",
                        extra={"tenant_id": tenant_id, "task_id": task_id}
                    )

        self.event_bus.record(
            tenant_id=tenant_id,
            instance_id=instance_id,
            event_type=ApprovalEventType.SLA_TIMERS_CANCELLED,
            task_id=task_ids[0] if len(task_ids) == 1 else None,
            payload={"task_ids": task_ids, "removed_jobs": removed}
        )
        return removed

    # =========================================================================
    # Handlers
    # =========================================================================

    def _load_pending_task(self, data: Dict[str, Any]) -> Optional[ApprovalTask]:
        task = self.instance_repo.get_task(data["tenant_id"], data["task_id"])
        if task is None or task.status != TaskStatus.PENDING:
            logger.debug(
                f"Timer for task {data['task_id']} ignored; task no longer pending",
                extra={"tenant_id": data["tenant_id"], "task_id": data["task_id"]}
            )
            return None
        return task

    def process_reminder(self, data: Dict[str, Any]) -> None:
        """Fire a reminder if the task is still pending"""
        task = self._load_pending_task(data)
        if task is None:
            return

        self.instance_repo.increment_reminder_count(task.tenant_id, task.task_id)
        self.event_bus.record(
            tenant_id=task.tenant_id,
            instance_id=task.instance_id,
            event_type=ApprovalEventType.SLA_REMINDER_SENT,
            task_id=task.task_id,
            stage_id=task.stage_id,
            payload={"approver_id": task.approver_id, "reminder_no": task.reminder_count + 1}
        )
        logger.info(
            f"SLA reminder sent for task {task.task_id}",
            extra={"tenant_id": task.tenant_id, "instance_id": task.instance_id, "task_id": task.task_id}
        )

    def process_escalation(self, data: Dict[str, Any]) -> None:
        """Record an SLA breach if the task is still pending"""
        task = self._load_pending_task(data)
        if task is None:
            return

        escalation = ApprovalEscalation(
            escalation_id=generate_escalation_id(),
            tenant_id=task.tenant_id,
            instance_id=task.instance_id,
            task_id=task.task_id,
            stage_id=task.stage_id,
            kind=EscalationKind.SLA_BREACH.value,
            payload={
                **(data.get("payload") or {}),
                "approver_id": task.approver_id,
                "due_at": format_iso(task.due_at) if task.due_at else None,
            },
            occurred_at=utc_now()
        )
        self.event_repo.append_escalation(escalation)
        self.event_bus.record(
            tenant_id=task.tenant_id,
            instance_id=task.instance_id,
            event_type=ApprovalEventType.SLA_ESCALATION_EXECUTED,
            task_id=task.task_id,
            stage_id=task.stage_id,
            payload={"escalation_id": escalation.escalation_id}
        )

    # =========================================================================
    # Rehydration
    # =========================================================================

    def rehydrate_pending_timers(self, tenant_id: Optional[str] = None) -> int:
        """
        Re-queue timers for pending tasks after a restart

        For each pending task with a future due date, a reminder is placed at
        ``rehydration_reminder_ratio`` of the remaining time and an escalation
        at the due date. Returns the number of tasks rehydrated.
        """
        now = utc_now()
        stages: Dict[str, Optional[StageInstance]] = {}
        count = 0

        for task in self.instance_repo.find_pending_tasks_with_due(tenant_id):
            due_at = ensure_utc(task.due_at)
            if due_at <= now:
                continue

            remaining = due_at - now
            reminder_at = now + remaining * self.settings.rehydration_reminder_ratio
            self.schedule_reminder(task.tenant_id, task.instance_id, task.task_id, reminder_at)

            if task.stage_id not in stages:
                stages[task.stage_id] = self.instance_repo.get_stage(task.tenant_id, task.stage_id)
            stage = stages[task.stage_id]
            payload = dict(stage.sla.escalation) if stage and stage.sla else {}
            self.schedule_escalation(task.tenant_id, task.instance_id, task.task_id, due_at, payload)
            count += 1

        logger.info(
            f"Rehydrated SLA timers for {count} pending tasks",
            extra={"tenant_id": tenant_id}
        )
        return count
