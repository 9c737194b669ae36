"""Tests for the rq-based queue layer."""

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import RedisError
from rq.job import Job

from taskrelay.models import KIND_EXECUTE, KIND_FEEDBACK, WorkItem, make_payload
from taskrelay.queue import (
    FAILURE_TTL,
    JOB_TIMEOUT_GRACE,
    QUEUE_JOBS,
    JobOptions,
    backoff_intervals,
    enqueue_job,
    get_queue_counts_safe,
    is_paused,
    job_attempt,
    list_running_jobs,
    retry_delay,
    update_current_job_meta,
    worker_command,
)


def _payload():
    return make_payload(WorkItem(id="wi-1", identifier="ENG-1", title="Fix typo"))


# -- retry policy --


def test_backoff_intervals_double():
    assert backoff_intervals(3, 5) == [5, 10]
    assert backoff_intervals(4, 2) == [2, 4, 8]


def test_backoff_intervals_single_attempt_has_no_retries():
    assert backoff_intervals(1, 5) == []
    assert backoff_intervals(0, 5) == []


def test_retry_delay_matches_intervals():
    assert [retry_delay(n, 5) for n in (1, 2)] == backoff_intervals(3, 5)


def test_job_options_retry():
    retry = JobOptions(max_attempts=3, backoff_base=5).retry()
    assert retry is not None
    assert retry.max == 2
    assert retry.intervals == [5, 10]
    assert JobOptions(max_attempts=1).retry() is None


def test_job_options_from_settings(settings, monkeypatch):
    monkeypatch.setenv("TASKRELAY_MAX_ATTEMPTS", "4")
    monkeypatch.setenv("TASKRELAY_TASK_TIMEOUT", "600")
    options = JobOptions.from_settings(settings)
    assert options.max_attempts == 4
    assert options.backoff_base == 5.0
    assert options.timeout == 600.0


# -- enqueue --


def test_enqueue_job_passes_retry_and_meta():
    mock_queue = MagicMock()
    with patch("taskrelay.queue.get_queue", return_value=mock_queue) as get_queue:
        enqueue_job(KIND_EXECUTE, _payload(), JobOptions(max_attempts=3, timeout=100))

    get_queue.assert_called_once_with(QUEUE_JOBS)
    args, kwargs = mock_queue.enqueue.call_args
    assert args[0].__name__ == "run_execute_job"
    assert args[1]["item"]["id"] == "wi-1"
    assert kwargs["job_id"].startswith("execute-wi-1-")
    assert kwargs["retry"].max == 2
    assert kwargs["job_timeout"] == 100 + JOB_TIMEOUT_GRACE
    assert kwargs["result_ttl"] == 0
    assert kwargs["failure_ttl"] == FAILURE_TTL
    assert kwargs["on_failure"] is not None
    assert kwargs["meta"] == {
        "kind": KIND_EXECUTE,
        "work_item_id": "wi-1",
        "identifier": "ENG-1",
        "title": "Fix typo",
        "max_attempts": 3,
        "backoff_base": 5.0,
    }
    assert kwargs["description"] == "Execute ENG-1"


def test_enqueue_job_ids_are_unique():
    mock_queue = MagicMock()
    with patch("taskrelay.queue.get_queue", return_value=mock_queue):
        enqueue_job(KIND_FEEDBACK, _payload())
        enqueue_job(KIND_FEEDBACK, _payload())
    ids = [c.kwargs["job_id"] for c in mock_queue.enqueue.call_args_list]
    assert ids[0] != ids[1]


def test_enqueue_job_unknown_kind():
    with pytest.raises(ValueError, match="Unknown job kind 'bogus'"):
        enqueue_job("bogus", _payload())


def test_enqueue_job_redis_error_propagates():
    with (
        patch("taskrelay.queue.get_queue", side_effect=RedisError("down")),
        pytest.raises(RedisError),
    ):
        enqueue_job(KIND_EXECUTE, _payload())


# -- attempts and meta --


def _job(max_attempts, retries_left):
    job = MagicMock()
    job.meta = {"max_attempts": max_attempts}
    job.retries_left = retries_left
    return job


def test_job_attempt():
    assert job_attempt(None) == (1, 1)
    assert job_attempt(_job(3, 2)) == (1, 3)
    assert job_attempt(_job(3, 1)) == (2, 3)
    assert job_attempt(_job(3, 0)) == (3, 3)
    assert job_attempt(_job(1, None)) == (1, 1)


def test_rq_schedules_retries_on_the_backoff_schedule():
    """Drive rq's own retry bookkeeping: 5 s then 10 s, then the final attempt."""
    retry = JobOptions(max_attempts=3, backoff_base=5).retry()
    job = Job.create(
        "taskrelay.jobs.run_execute_job",
        args=(_payload(),),
        connection=MagicMock(),
        meta={"max_attempts": 3},
    )
    # What Queue.enqueue copies from the Retry object.
    job.retries_left = retry.max
    job.retry_intervals = retry.intervals
    queue = MagicMock()

    observed = []
    for _ in range(retry.max):
        attempt, _max = job_attempt(job)
        before = datetime.now(UTC)
        job.retry(queue, MagicMock())
        scheduled_at = queue.schedule_job.call_args[0][1]
        observed.append((attempt, round((scheduled_at - before).total_seconds())))

    assert observed == [(1, 5), (2, 10)]
    assert [delay for attempt, delay in observed] == [retry_delay(a, 5) for a, _ in observed]
    assert job_attempt(job) == (3, 3)
    assert job.retries_left == 0


def test_update_current_job_meta_outside_worker():
    with patch("taskrelay.queue.get_current_job", return_value=None):
        update_current_job_meta(progress=50)


def test_update_current_job_meta_saves():
    job = MagicMock()
    job.meta = {"kind": "execute"}
    with patch("taskrelay.queue.get_current_job", return_value=job):
        update_current_job_meta(progress=50, current_step="Using tool: Bash")
    assert job.meta["progress"] == 50
    assert job.meta["kind"] == "execute"
    job.save_meta.assert_called_once()


def test_update_current_job_meta_redis_error_is_dropped():
    job = MagicMock()
    job.meta = {}
    job.save_meta.side_effect = RedisError("down")
    with patch("taskrelay.queue.get_current_job", return_value=job):
        update_current_job_meta(progress=10)


# -- inspection --


def test_queue_counts_safe_when_redis_down():
    with patch("taskrelay.queue.get_queue", side_effect=RedisError("down")):
        counts = get_queue_counts_safe()
    assert counts["ok"] is False
    assert counts["queued"] is None
    assert counts["error_type"] == "RedisError"


def test_is_paused_false_when_redis_down():
    with patch("taskrelay.queue.is_suspended", side_effect=RedisError("down")):
        assert is_paused() is False


def test_list_running_jobs_reads_meta():
    started = datetime.now(UTC) - timedelta(seconds=30)
    job = MagicMock()
    job.id = "execute-wi-1-abc"
    job.meta = {
        "kind": "execute",
        "work_item_id": "wi-1",
        "identifier": "ENG-1",
        "title": "Fix typo",
        "max_attempts": 3,
        "progress": 35,
        "current_step": "Using tool: Edit",
        "session_id": "sess-1",
    }
    job.retries_left = 2
    job.started_at = started
    job.enqueued_at = started
    registry = MagicMock()
    registry.get_job_ids.return_value = [job.id]

    with (
        patch("taskrelay.queue.get_redis"),
        patch("taskrelay.queue.Queue"),
        patch("taskrelay.queue.StartedJobRegistry", return_value=registry),
        patch("taskrelay.queue.Job.fetch", return_value=job),
    ):
        rows = list_running_jobs()

    assert len(rows) == 1
    row = rows[0]
    assert row["task_id"] == "wi-1"
    assert row["state"] == "running"
    assert row["progress"] == 35
    assert row["session_id"] == "sess-1"
    assert row["attempt"] == 1
    assert row["duration_seconds"] >= 30


def test_worker_command():
    cmd = worker_command(burst=True)
    assert cmd[1:5] == ["-m", "rq.cli", "worker", "--with-scheduler"]
    assert cmd[-2:] == ["--burst", QUEUE_JOBS]
