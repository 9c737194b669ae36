"""Job functions executed by rq workers.

Each entry point builds the processor for this worker process and drives
one handler to completion with ``asyncio.run``. Exceptions propagate so rq
applies the retry policy; ``on_job_failure`` runs after every failed try.
"""

from __future__ import annotations

import asyncio
import logging

from rq import get_current_job

from taskrelay.models import KIND_EXECUTE, KIND_FEEDBACK, KIND_RETRY, JobPayload
from taskrelay.processor import Attempt
from taskrelay.queue import EVENT_JOB_FAILED, job_attempt, publish_event

log = logging.getLogger(__name__)


def _attempt() -> Attempt:
    job = get_current_job()
    number, max_attempts = job_attempt(job)
    backoff_base = float(job.meta.get("backoff_base", 0) or 0) if job else 0.0
    return Attempt(number=number, max_attempts=max_attempts, backoff_base=backoff_base)


def run_execute_job(payload: JobPayload) -> str:
    from taskrelay.runtime import build_processor

    return asyncio.run(build_processor().execute(payload, _attempt()))


def run_feedback_job(payload: JobPayload) -> str:
    from taskrelay.runtime import build_processor

    return asyncio.run(build_processor().feedback(payload, _attempt()))


def run_retry_job(payload: JobPayload) -> str:
    from taskrelay.runtime import build_processor

    return asyncio.run(build_processor().retry(payload, _attempt()))


JOB_HANDLERS = {
    KIND_EXECUTE: run_execute_job,
    KIND_FEEDBACK: run_feedback_job,
    KIND_RETRY: run_retry_job,
}


def on_job_failure(job, _connection, _exc_type, exc_value, _traceback):
    """rq failure callback. Surfaces terminal failures only.

    rq invokes this for every failed try; while ``retries_left`` is non-zero
    the job is already rescheduled and nothing is surfaced.
    """
    if job.retries_left:
        log.info("Job %s failed, %d retries left", job.id, job.retries_left)
        return
    attempt, max_attempts = job_attempt(job)
    label = str(exc_value) if exc_value is not None else ""
    if not label and isinstance(exc_value, BaseException):
        label = exc_value.__class__.__name__
    log.error("Job %s finally failed after %d attempts: %s", job.id, max_attempts, label)
    publish_event(
        EVENT_JOB_FAILED,
        job.meta.get("work_item_id"),
        extra={
            "job_id": job.id,
            "kind": job.meta.get("kind"),
            "identifier": job.meta.get("identifier"),
            "attempts": attempt,
            "max_attempts": max_attempts,
            "error": label,
        },
    )
