"""Error taxonomy for the orchestration core."""

from __future__ import annotations


class TaskRelayError(Exception):
    """Base class for taskrelay errors."""


class AgentFailure(TaskRelayError):
    """The execution agent errored or reported a failure marker."""

    def __init__(self, message: str, *, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id


class JobTimeout(TaskRelayError):
    """A job exceeded its deadline. Counts as a retry-eligible failure."""

    def __init__(self, timeout: float):
        super().__init__(f"Job exceeded its {timeout:g}s timeout")
        self.timeout = timeout


class DurabilityWriteFailure(TaskRelayError):
    """A Session Store write failed; the task is no longer durably tracked."""


class RetryRejected(TaskRelayError):
    """A manual retry was refused (missing item, wrong status, or no session)."""
