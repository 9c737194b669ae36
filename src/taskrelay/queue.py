"""rq-based job queue and Redis Stream event broadcast for taskrelay.

Pollers and the retry command enqueue jobs here; rq workers drain them and
own all retry/backoff bookkeeping. Successful jobs are discarded at once;
durable outcomes live in the Session Store.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
import sys
import time
import uuid
from collections.abc import Iterator
from contextlib import suppress
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError
from rq import Callback, Queue, Retry, get_current_job
from rq.job import Job
from rq.registry import FailedJobRegistry, ScheduledJobRegistry, StartedJobRegistry
from rq.suspension import is_suspended, resume, suspend

from taskrelay.models import JOB_KINDS, JobPayload
from taskrelay.paths import LOG_DIR

if TYPE_CHECKING:
    from taskrelay.config import Settings

log = logging.getLogger(__name__)

REDIS_URL = os.environ.get("TASKRELAY_REDIS_URL", "redis://localhost:6379/0")

QUEUE_JOBS = "taskrelay:jobs"

FAILURE_TTL = 7 * 24 * 3600  # failed jobs expire from Redis after 7 days

# rq hard deadline sits past the in-process agent timeout so the job can
# still report its own failure.
JOB_TIMEOUT_GRACE = 60

EVENTS_STREAM = "taskrelay:events"
# Max entries retained in the stream
EVENTS_STREAM_MAXLEN = int(os.environ.get("TASKRELAY_EVENTS_STREAM_MAXLEN", "1000"))

EVENT_VERSION = 1  # Bump when payload shape changes

# Event kinds pushed to dashboard subscribers
EVENT_STARTED = "started"
EVENT_PROGRESS = "progress"
EVENT_SESSION_CAPTURED = "sessionCaptured"
EVENT_COMPLETED = "completed"
EVENT_STATS_REFRESHED = "statsRefreshed"
EVENT_LOG = "log"
EVENT_JOB_FAILED = "jobFailed"
EVENT_PAUSED = "executionPaused"
EVENT_RESUMED = "executionResumed"

_pool = ConnectionPool.from_url(REDIS_URL)


def get_redis() -> Redis:
    return Redis(connection_pool=_pool)


def get_queue(name: str = QUEUE_JOBS) -> Queue:
    return Queue(name, connection=get_redis())


# -- retry policy --


def backoff_intervals(max_attempts: int, base_delay: float) -> list[int]:
    """Delays (seconds) before each retry: ``base * 2**(n-1)`` for retry n.

    ``max_attempts=3, base_delay=5`` -> ``[5, 10]``: two retries after the
    first attempt, 15 s cumulative before the terminal failure.
    """
    return [int(round(base_delay * 2 ** (n - 1))) for n in range(1, max(max_attempts, 1))]


def retry_delay(attempt: int, base_delay: float) -> int:
    """Delay that follows failed attempt number *attempt* (1-based)."""
    return int(round(base_delay * 2 ** (attempt - 1)))


@dataclass
class JobOptions:
    """Per-job retry and deadline policy."""

    max_attempts: int = 3
    backoff_base: float = 5.0
    timeout: float = 10800.0

    @classmethod
    def from_settings(cls, settings: Settings) -> JobOptions:
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base=settings.backoff_base,
            timeout=settings.task_timeout,
        )

    def retry(self) -> Retry | None:
        if self.max_attempts <= 1:
            return None
        return Retry(
            max=self.max_attempts - 1,
            interval=backoff_intervals(self.max_attempts, self.backoff_base),
        )


def _handler_for(kind: str):
    from taskrelay.jobs import JOB_HANDLERS

    try:
        return JOB_HANDLERS[kind]
    except KeyError:
        raise ValueError(f"Unknown job kind '{kind}'. Must be one of: {list(JOB_KINDS)}") from None


def enqueue_job(
    kind: str,
    payload: JobPayload,
    options: JobOptions | None = None,
    *,
    queue_name: str = QUEUE_JOBS,
) -> Job:
    """Push a job and return at once; a worker picks it up.

    The queue does not deduplicate: callers claim the work item in the
    tracker before enqueueing.
    """
    handler = _handler_for(kind)
    options = options or JobOptions()
    item = payload["item"]
    job_id = f"{kind}-{item['id']}-{uuid.uuid4().hex[:8]}"
    q = get_queue(queue_name)
    job = q.enqueue(
        handler,
        payload,
        job_id=job_id,
        retry=options.retry(),
        job_timeout=int(options.timeout) + JOB_TIMEOUT_GRACE,
        result_ttl=0,
        failure_ttl=FAILURE_TTL,
        on_failure=Callback("taskrelay.jobs.on_job_failure"),
        meta={
            "kind": kind,
            "work_item_id": item["id"],
            "identifier": item.get("identifier"),
            "title": item.get("title"),
            "max_attempts": options.max_attempts,
            "backoff_base": options.backoff_base,
        },
        description=f"{kind.capitalize()} {item.get('identifier') or item['id']}",
    )
    log.info("Enqueued %s job %s (max_attempts=%d)", kind, job_id, options.max_attempts)
    return job


def job_attempt(job: Job | None) -> tuple[int, int]:
    """Return ``(attempt, max_attempts)`` for a job, 1-based.

    rq decrements ``retries_left`` when it schedules a retry, so the attempt
    in progress is ``max_attempts - retries_left``.
    """
    if job is None:
        return 1, 1
    max_attempts = int(job.meta.get("max_attempts", 1) or 1)
    retries_left = job.retries_left or 0
    return max(max_attempts - retries_left, 1), max_attempts


def current_attempt() -> tuple[int, int]:
    """Attempt counters of the job this worker is executing."""
    return job_attempt(get_current_job())


def update_current_job_meta(**fields: Any) -> None:
    """Mirror live task state into the running job's meta for other processes.

    No-op outside a worker. Best-effort like :func:`publish_event`.
    """
    job = get_current_job()
    if job is None:
        return
    job.meta.update(fields)
    try:
        job.save_meta()
    except RedisError:
        log.debug("Could not save meta for job %s", job.id)


# -- pause / resume --


def pause_execution() -> None:
    """Stop workers from dequeuing new jobs. In-flight jobs run to completion."""
    suspend(get_redis())


def resume_execution() -> None:
    resume(get_redis())


def is_paused() -> bool:
    try:
        return bool(is_suspended(get_redis()))
    except RedisError:
        return False


# -- events --


def publish_event(event_type: str, task_id: str | None, *, extra: dict | None = None) -> None:
    """Publish a dashboard event to the Redis Stream. Redis errors are logged and dropped.

    *extra* is merged into the payload (progress, session id, stats, ...).
    """
    event: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "type": event_type,
        "task_id": task_id,
        "v": EVENT_VERSION,
        "ts": datetime.now(UTC).isoformat(),
    }
    if extra:
        event.update(extra)
    payload = json.dumps(event, default=str)
    try:
        r = get_redis()
        r.xadd(EVENTS_STREAM, {"data": payload}, maxlen=EVENTS_STREAM_MAXLEN, approximate=True)
    except RedisError:
        log.warning("Event publish failed (Redis unavailable): %s %s", event_type, task_id)


@dataclass(frozen=True)
class EventFilter:
    """Which dashboard events a watcher wants. Empty fields match everything."""

    task_id: str | None = None
    types: frozenset[str] = frozenset()

    def accepts(self, event: dict[str, Any]) -> bool:
        if self.task_id is not None and event.get("task_id") != self.task_id:
            return False
        return not self.types or event.get("type") in self.types


def _text(value: str | bytes) -> str:
    return value.decode() if isinstance(value, bytes) else value


def decode_event(entry_id: str | bytes, fields: dict) -> dict[str, Any] | None:
    """Parse one stream entry; malformed entries yield None."""
    raw = fields.get("data") or fields.get(b"data")
    if not raw:
        return None
    try:
        event = json.loads(_text(raw))
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    if not isinstance(event, dict):
        return None
    event["_stream_id"] = _text(entry_id)
    return event


class EventSubscriber:
    """Follows the event stream from a cursor.

    ``cursor="$"`` starts at new entries, ``"0"`` replays what the stream
    still retains. Iterating yields matching events and ``None`` after every
    idle read, so a caller can stop between events.
    """

    BATCH = 10

    def __init__(
        self,
        *,
        task_id: str | None = None,
        types: set[str] | None = None,
        timeout: float = 30.0,
        cursor: str = "$",
    ):
        self.filter = EventFilter(task_id=task_id, types=frozenset(types or ()))
        self.timeout = timeout
        self.cursor = cursor
        self._redis = get_redis()

    def read(self) -> list[dict[str, Any]]:
        """One blocking ``XREAD``: the matching events, cursor moved past all of them.

        A Redis outage waits out the timeout and returns nothing.
        """
        try:
            batches = self._redis.xread(
                {EVENTS_STREAM: self.cursor}, block=int(self.timeout * 1000), count=self.BATCH
            )
        except RedisError as exc:
            log.warning("Event stream unavailable: %s", exc)
            time.sleep(self.timeout)
            return []
        matched = []
        for _stream, entries in batches or []:
            for entry_id, fields in entries:
                self.cursor = _text(entry_id)
                event = decode_event(entry_id, fields)
                if event is not None and self.filter.accepts(event):
                    matched.append(event)
        return matched

    def __iter__(self) -> Iterator[dict[str, Any] | None]:
        while True:
            events = self.read()
            if not events:
                yield None
            yield from events


# -- workers --


def worker_command(queue_name: str = QUEUE_JOBS, *, burst: bool = False) -> list[str]:
    cmd = [
        sys.executable,
        "-m",
        "rq.cli",
        "worker",
        "--with-scheduler",
        "--url",
        REDIS_URL,
    ]
    if burst:
        cmd.append("--burst")
    cmd.append(queue_name)
    return cmd


def spawn_workers(
    count: int, queue_name: str = QUEUE_JOBS, *, burst: bool = False
) -> list[subprocess.Popen]:
    """Spawn *count* rq worker processes (the worker pool).

    Each worker runs one job end-to-end at a time, so *count* is the
    concurrency limit. Output goes to ``~/.config/taskrelay/logs/worker-N.log``.
    """
    LOG_DIR.mkdir(parents=True, exist_ok=True, mode=0o700)
    procs: list[subprocess.Popen] = []
    for n in range(count):
        with open(LOG_DIR / f"worker-{n}.log", "a") as log_fh:
            proc = subprocess.Popen(
                worker_command(queue_name, burst=burst),
                stdout=log_fh,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        # parent closes its copy; child keeps writing
        log.info("Spawned worker pid=%d for %s", proc.pid, queue_name)
        procs.append(proc)
    return procs


# -- inspection --


def _exception_context(exc: Exception) -> dict[str, str]:
    message = str(exc) or repr(exc)
    return {"error_type": type(exc).__name__, "error": message}


def get_queue_counts(queue_name: str = QUEUE_JOBS) -> dict[str, int]:
    """Return job counts for status display."""
    q = get_queue(queue_name)
    return {
        "queued": len(q),
        "scheduled": len(ScheduledJobRegistry(queue=q)),
        "running": len(StartedJobRegistry(queue=q)),
        "failed": len(FailedJobRegistry(queue=q)),
    }


def get_queue_counts_safe(queue_name: str = QUEUE_JOBS) -> dict[str, Any]:
    """Queue counts that never raise; ``ok`` is False when Redis is down."""
    try:
        return {"ok": True, **get_queue_counts(queue_name)}
    except Exception as exc:
        return {
            "ok": False,
            "queued": None,
            "scheduled": None,
            "running": None,
            "failed": None,
            **_exception_context(exc),
        }


def _age_seconds_from(ts: datetime | None) -> float | None:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=UTC)
    return max((datetime.now(UTC) - ts).total_seconds(), 0.0)


def _job_row(job: Job, state: str) -> dict[str, Any]:
    attempt, max_attempts = job_attempt(job)
    return {
        "job_id": job.id,
        "state": state,
        "kind": job.meta.get("kind"),
        "task_id": job.meta.get("work_item_id"),
        "identifier": job.meta.get("identifier"),
        "title": job.meta.get("title"),
        "attempt": attempt,
        "max_attempts": max_attempts,
        "waiting_seconds": _age_seconds_from(job.enqueued_at),
    }


def list_queued_jobs(queue_name: str = QUEUE_JOBS) -> list[dict[str, Any]]:
    """Jobs waiting to run: queued now, or scheduled for a backoff retry."""
    redis = get_redis()
    q = Queue(queue_name, connection=redis)
    rows: list[dict[str, Any]] = []
    for job in q.jobs:
        rows.append(_job_row(job, "queued"))
    for job_id in ScheduledJobRegistry(queue=q).get_job_ids():
        try:
            job = Job.fetch(job_id, connection=redis)
        except Exception:
            continue
        rows.append(_job_row(job, "scheduled"))
    return rows


def list_running_jobs(queue_name: str = QUEUE_JOBS) -> list[dict[str, Any]]:
    """Jobs a worker is executing now, with the live state mirrored in meta."""
    redis = get_redis()
    q = Queue(queue_name, connection=redis)
    rows: list[dict[str, Any]] = []
    for job_id in StartedJobRegistry(queue=q).get_job_ids():
        try:
            job = Job.fetch(job_id, connection=redis)
        except Exception:
            continue
        row = _job_row(job, "running")
        row["progress"] = job.meta.get("progress", 0)
        row["current_step"] = job.meta.get("current_step")
        row["session_id"] = job.meta.get("session_id")
        row["started_at"] = job.started_at.isoformat() if job.started_at else None
        row["duration_seconds"] = _age_seconds_from(job.started_at)
        rows.append(row)
    return rows


def get_failed_jobs(queue_name: str = QUEUE_JOBS) -> list[dict[str, Any]]:
    """List terminally failed jobs with their exception info."""
    redis = get_redis()
    q = Queue(queue_name, connection=redis)
    jobs = []
    for job_id in FailedJobRegistry(queue=q).get_job_ids():
        try:
            job = Job.fetch(job_id, connection=redis)
        except Exception:
            continue
        row = _job_row(job, "failed")
        row["exc_info"] = job.exc_info
        row["ended_at"] = str(job.ended_at) if job.ended_at else None
        jobs.append(row)
    return jobs


def flush_failed_jobs(queue_name: str = QUEUE_JOBS) -> int:
    """Clear the failed job registry. Returns the number of entries removed."""
    q = get_queue(queue_name)
    registry = FailedJobRegistry(queue=q)
    job_ids = registry.get_job_ids()
    for job_id in job_ids:
        try:
            registry.remove(job_id, delete_job=True)
        except Exception:
            # job data already expired; drop the registry entry only
            with suppress(Exception):
                registry.remove(job_id, delete_job=False)
    return len(job_ids)
