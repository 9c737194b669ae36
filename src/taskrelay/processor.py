"""Job processor: the execute / feedback / retry state machines.

Every handler reports in the same order: tracker status transition, then
tracker note, then local report (monitor + Session Store). A handler that
fails re-raises after reporting so rq applies the retry policy.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from taskrelay.agent import AgentOutcome, ExecutionAgent, run_agent
from taskrelay.config import Settings
from taskrelay.models import JobPayload, WorkItem
from taskrelay.monitor import TaskMonitor
from taskrelay.prompts import (
    SYSTEM_PROMPT,
    build_feedback_prompt,
    build_retry_prompt,
    build_task_prompt,
)
from taskrelay.queue import retry_delay
from taskrelay.review_gate import DECISION_IN_REVIEW, classify, review_text
from taskrelay.sessions import SessionStore
from taskrelay.tracker import ProjectTracker

log = logging.getLogger(__name__)

SUMMARY_LIMIT = 500
ERROR_LIMIT = 2000

REVIEW_NOTE = (
    "👀 **{what} completed, awaiting human review**\n\n"
    "Please check the execution result, then:\n"
    '- ✅ Approved → Change status to "Done"\n'
    "- 🔄 Needs changes → Reply with feedback\n"
    '- ❌ Cancel task → Change status to "Canceled"'
)


@dataclass(frozen=True)
class Attempt:
    """Which try of a job this is, and the policy that schedules the next one."""

    number: int = 1
    max_attempts: int = 1
    backoff_base: float = 0.0

    @property
    def final(self) -> bool:
        return self.number >= self.max_attempts

    @property
    def next_delay(self) -> int:
        return retry_delay(self.number, self.backoff_base)


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class JobProcessor:
    def __init__(
        self,
        tracker: ProjectTracker,
        agent: ExecutionAgent,
        monitor: TaskMonitor,
        store: SessionStore,
        settings: Settings,
    ) -> None:
        self.tracker = tracker
        self.agent = agent
        self.monitor = monitor
        self.store = store
        self.settings = settings

    # -- shared steps --

    async def _run(
        self, item: WorkItem, prompt: str, *, resume_session_id: str | None, start_step: str
    ) -> AgentOutcome:
        return await run_agent(
            self.agent,
            prompt,
            resume_session_id=resume_session_id,
            system_prompt=SYSTEM_PROMPT,
            on_progress=lambda step, pct: self.monitor.progress(item.id, step, pct),
            on_session=lambda sid: self.monitor.capture_session(item.id, sid),
            timeout=self.settings.task_timeout,
            start_step=start_step,
        )

    def _finish(
        self, item: WorkItem, outcome: AgentOutcome, *, gate_text: str, what: str, started: float
    ) -> str:
        """Apply the review gate, then status, note and local report."""
        decision = classify(gate_text, self.settings.review_keywords)
        if decision == DECISION_IN_REVIEW:
            self.tracker.set_status(item.id, self.settings.status_in_review)
            self.tracker.add_note(item.id, REVIEW_NOTE.format(what=what))
            log.info("%s completed, waiting for review", item.identifier)
        else:
            duration = round(time.monotonic() - started)
            self.tracker.set_status(item.id, self.settings.status_done)
            self.tracker.add_note(
                item.id,
                f"🎉 {what} completed\n\n"
                f"**Execution Summary:**\n{_clip(outcome.summary, SUMMARY_LIMIT)}\n\n"
                f"**Duration:** {duration} seconds",
            )
            log.info("%s completed successfully", item.identifier)
        self.monitor.complete(item.id, True)
        return decision

    def _fail(self, item: WorkItem, exc: Exception, attempt: Attempt, *, what: str) -> None:
        cause = str(exc) or type(exc).__name__
        error_block = f"**Error:**\n```\n{_clip(cause, ERROR_LIMIT)}\n```"
        if attempt.final:
            log.error(
                "%s failed on final attempt %d/%d: %s",
                item.identifier,
                attempt.number,
                attempt.max_attempts,
                cause,
            )
            self.tracker.set_status(item.id, self.settings.status_failed)
            self.tracker.add_note(
                item.id,
                f"❌ {what} failed\n\n{error_block}\n\n"
                f"**Retry attempts:** {attempt.number}/{attempt.max_attempts}",
            )
        else:
            log.warning(
                "%s failed on attempt %d/%d, retrying in %ds: %s",
                item.identifier,
                attempt.number,
                attempt.max_attempts,
                attempt.next_delay,
                cause,
            )
            self.tracker.add_note(
                item.id,
                f"⚠️ {what} failed (attempt {attempt.number}/{attempt.max_attempts})\n\n"
                f"{error_block}\n\nRetrying in {attempt.next_delay} seconds.",
            )
        self.monitor.complete(item.id, False, cause)

    # -- handlers --

    async def execute(self, payload: JobPayload, attempt: Attempt | None = None) -> str:
        """Run a freshly claimed item."""
        attempt = attempt or Attempt()
        item = WorkItem.from_dict(payload["item"])
        log.info(
            "Processing task %s (attempt %d/%d)",
            item.identifier,
            attempt.number,
            attempt.max_attempts,
        )
        self.monitor.start(item.id, item.identifier, item.title)
        started = time.monotonic()
        try:
            outcome = await self._run(
                item,
                build_task_prompt(item),
                resume_session_id=None,
                start_step="🚀 Starting task execution",
            )
        except Exception as exc:
            self._fail(item, exc, attempt, what="Task execution")
            raise
        return self._finish(
            item, outcome, gate_text=review_text(item), what="Task", started=started
        )

    async def feedback(self, payload: JobPayload, attempt: Attempt | None = None) -> str:
        """Resume the item's session with merged human feedback.

        The review gate runs over the feedback text: an approval such as
        "looks good" completes the item, a request to "rewrite" it goes back
        to review.
        """
        attempt = attempt or Attempt()
        item = WorkItem.from_dict(payload["item"])
        feedback_text = payload.get("feedback_text", "")
        comment_ids = payload.get("comment_ids", [])
        session_id = payload.get("resume_session_id")
        log.info("Processing feedback for %s (session %s)", item.identifier, session_id)
        self.monitor.start(item.id, item.identifier, item.title, label="feedback")
        started = time.monotonic()
        try:
            self.tracker.set_status(item.id, self.settings.status_claimed)
            self.tracker.add_note(item.id, "🔄 Processing your feedback...")
            outcome = await self._run(
                item,
                build_feedback_prompt(item, feedback_text),
                resume_session_id=session_id,
                start_step="🔄 Processing feedback",
            )
        except Exception as exc:
            self._fail(item, exc, attempt, what="Feedback processing")
            raise
        if not self.store.mark_comments_processed(comment_ids, item.id):
            log.error(
                "Comments %s for %s were not recorded; they may be processed again",
                ", ".join(comment_ids),
                item.identifier,
            )
        return self._finish(
            item, outcome, gate_text=feedback_text, what="Feedback", started=started
        )

    async def retry(self, payload: JobPayload, attempt: Attempt | None = None) -> str:
        """Resume the item's session with the fixed diagnose-and-retry prompt."""
        attempt = attempt or Attempt()
        item = WorkItem.from_dict(payload["item"])
        session_id = payload.get("resume_session_id")
        log.info("Processing retry for %s (session %s)", item.identifier, session_id)
        self.monitor.start(item.id, item.identifier, item.title, label="retry")
        started = time.monotonic()
        try:
            self.tracker.set_status(item.id, self.settings.status_claimed)
            self.tracker.add_note(item.id, "🔄 Retrying task execution...")
            outcome = await self._run(
                item,
                build_retry_prompt(item),
                resume_session_id=session_id,
                start_step="🔄 Retrying task",
            )
        except Exception as exc:
            self._fail(item, exc, attempt, what="Retry")
            raise
        return self._finish(
            item, outcome, gate_text=review_text(item), what="Retry", started=started
        )
