"""Job Queue - Delayed jobs with bounded retry on top of APScheduler

Handles:
- One-shot delayed jobs keyed by a caller-chosen ID (re-adding replaces)
- Per job-type handlers
- Exponential backoff retries: the n-th retry waits backoff_ms * 2**(n-1)
"""
import socket
import os
from datetime import timedelta
from typing import Any, Callable, Dict, Optional
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.date import DateTrigger

from ..utils.idgen import generate_id
from ..utils.logger import get_logger
from ..utils.time import utc_now

logger = get_logger(__name__)

JobHandler = Callable[[Dict[str, Any]], None]


class JobQueue:
    """
    In-process delayed job queue.

    Jobs live in the scheduler's memory job store, so they do not survive a
    restart; the SLA subsystem rehydrates them from task due dates instead.
    """

    def __init__(self, scheduler: Optional[BaseScheduler] = None):
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._handlers: Dict[str, JobHandler] = {}
        self._worker_id = f"{socket.gethostname()}-{os.getpid()}-{generate_id()[:8]}"

    def start(self) -> None:
        """Start the scheduler"""
        if self.scheduler.running:
            logger.warning("Job queue already running")
            return
        self.scheduler.start()
        logger.info("Job queue started", extra={"job_id": self._worker_id})

    def shutdown(self) -> None:
        """Stop the scheduler without waiting for running jobs"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Job queue stopped")

    @property
    def is_running(self) -> bool:
        return self.scheduler.running

    def process(self, job_type: str, handler: JobHandler) -> None:
        """Register the handler for a job type"""
        self._handlers[job_type] = handler

    def add(
        self,
        job_type: str,
        data: Dict[str, Any],
        delay_ms: int = 0,
        attempts: int = 1,
        backoff_ms: int = 0,
        job_id: Optional[str] = None
    ) -> str:
        """
        Schedule a job

        Args:
            job_type: Registered handler key
            data: Handler payload
            delay_ms: Delay before the first attempt
            attempts: Total attempts including the first
            backoff_ms: Base delay between retries
            job_id: Stable ID; an existing job with this ID is replaced

        Returns:
            The job ID
        """
        job_id = job_id or generate_id("JOB")
        self._schedule(job_type, data, job_id, max(delay_ms, 0), 1, max(attempts, 1), backoff_ms)
        return job_id

    def remove(self, job_id: str) -> bool:
        """Remove a queued job; False when it is not queued"""
        try:
            self.scheduler.remove_job(job_id)
            return True
        except JobLookupError:
            return False

    def _schedule(
        self,
        job_type: str,
        data: Dict[str, Any],
        job_id: str,
        delay_ms: int,
        attempt: int,
        attempts: int,
        backoff_ms: int
    ) -> None:
        self.scheduler.add_job(
            self._execute,
            trigger=DateTrigger(run_date=utc_now() + timedelta(milliseconds=delay_ms)),
            id=job_id,
            name=job_type,
            kwargs={
                "job_type": job_type,
                "data": data,
                "job_id": job_id,
                "attempt": attempt,
                "attempts": attempts,
                "backoff_ms": backoff_ms,
            },
            replace_existing=True,
            misfire_grace_time=None
        )
        logger.debug(
            f"Queued {job_type} attempt {attempt}/{attempts} in {delay_ms}ms",
            extra={"job_id": job_id}
        )

    def _execute(
        self,
        job_type: str,
        data: Dict[str, Any],
        job_id: str,
        attempt: int,
        attempts: int,
        backoff_ms: int
    ) -> None:
        handler = self._handlers.get(job_type)
        if handler is None:
            logger.warning(f"No handler registered for {job_type}", extra={"job_id": job_id})
            return

        try:
            handler(data)
        except Exception as e:
            if attempt >= attempts:
                logger.error(
                    f"Job {job_type} failed after {attempt} attempts: {e}",
                    extra={"job_id": job_id}
                )
                return

            delay_ms = backoff_ms * 2 ** (attempt - 1)
            logger.warning(
                f"Job {job_type} failed (attempt {attempt}/{attempts}), retrying in {delay_ms}ms: {e}",
                extra={"job_id": job_id}
            )
            self._schedule(job_type, data, job_id, delay_ms, attempt + 1, attempts, backoff_ms)
