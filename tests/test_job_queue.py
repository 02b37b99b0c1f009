"""Tests for the delayed job queue

The scheduler is never started, so queued jobs stay pending and can be
inspected without a worker thread picking them up.
"""
from datetime import timedelta

import pytest
from apscheduler.schedulers.background import BackgroundScheduler

from approval_engine.scheduler.job_queue import JobQueue
from approval_engine.utils.time import utc_now


@pytest.fixture
def queue():
    return JobQueue(BackgroundScheduler(timezone="UTC"))


def test_add_uses_caller_id(queue):
    job_id = queue.add("mail", {"to": "u_cfo"}, delay_ms=60000, job_id="TSK-1:reminder")

    job = queue.scheduler.get_job(job_id)
    assert job_id == "TSK-1:reminder"
    assert job.name == "mail"
    assert job.kwargs["data"] == {"to": "u_cfo"}
    assert job.kwargs["attempt"] == 1


def test_add_generates_id(queue):
    job_id = queue.add("mail", {})
    assert job_id.startswith("JOB")
    assert queue.scheduler.get_job(job_id) is not None


def test_remove(queue):
    queue.add("mail", {}, delay_ms=60000, job_id="TSK-1:escalation")
    assert queue.remove("TSK-1:escalation") is True
    assert queue.remove("TSK-1:escalation") is False


def test_execute_dispatches_to_handler(queue):
    received = []
    queue.process("mail", received.append)

    queue._execute("mail", {"to": "u_cfo"}, "J1", attempt=1, attempts=1, backoff_ms=0)

    assert received == [{"to": "u_cfo"}]


def test_failed_job_is_retried_with_backoff(queue):
    def failing(data):
        raise RuntimeError("smtp down")

    queue.process("mail", failing)
    queue._execute("mail", {}, "J1", attempt=2, attempts=3, backoff_ms=60000)

    job = queue.scheduler.get_job("J1")
    assert job.kwargs["attempt"] == 3
    # Second retry waits twice the base backoff
    delay = job.trigger.run_date - utc_now()
    assert timedelta(seconds=110) < delay <= timedelta(seconds=120)


def test_last_attempt_is_dropped(queue):
    def failing(data):
        raise RuntimeError("smtp down")

    queue.process("mail", failing)
    queue._execute("mail", {}, "J1", attempt=3, attempts=3, backoff_ms=1000)

    assert queue.scheduler.get_job("J1") is None


def test_unknown_job_type_is_ignored(queue):
    queue._execute("nobody", {}, "J1", attempt=1, attempts=1, backoff_ms=0)
    assert queue.scheduler.get_job("J1") is None


def test_start_and_shutdown(queue):
    assert not queue.is_running
    queue.start()
    try:
        assert queue.is_running
    finally:
        queue.shutdown()
    assert not queue.is_running
