"""Discovery and review pollers plus the ticker that drives them.

A poller run never overlaps itself: when the ticker fires while the previous
run is still in flight, the new run is skipped with a warning. Errors inside
a run are logged and the next tick proceeds normally.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from redis.exceptions import RedisError

from taskrelay.config import Settings
from taskrelay.errors import TaskRelayError
from taskrelay.models import KIND_EXECUTE, KIND_FEEDBACK, JobPayload, make_payload
from taskrelay.prompts import merge_feedback
from taskrelay.queue import JobOptions, enqueue_job
from taskrelay.sessions import SessionStore
from taskrelay.tracker import ProjectTracker, is_system_comment

log = logging.getLogger(__name__)

ACK_NOTE = "🚀 Task received by system, execution starting soon..."

Enqueue = Callable[[str, JobPayload, JobOptions], object]


class Poller:
    name = "poller"

    def __init__(
        self,
        tracker: ProjectTracker,
        settings: Settings,
        *,
        enqueue: Enqueue | None = None,
    ) -> None:
        self.tracker = tracker
        self.settings = settings
        self._enqueue = enqueue or enqueue_job
        self._guard = threading.Lock()

    @property
    def in_progress(self) -> bool:
        return self._guard.locked()

    def interval(self) -> float:
        return self.settings.poll_interval

    def run_once(self) -> int | None:
        """One guarded run. Returns jobs enqueued, or None if skipped/failed."""
        if not self._guard.acquire(blocking=False):
            log.warning("Previous %s run still in progress, skipping", self.name)
            return None
        try:
            return self.poll()
        except Exception:
            log.exception("%s run failed", self.name)
            return None
        finally:
            self._guard.release()

    def poll(self) -> int:
        raise NotImplementedError

    def options(self) -> JobOptions:
        return JobOptions.from_settings(self.settings)


class DiscoveryPoller(Poller):
    """Claim ready items and enqueue an ``execute`` job for each."""

    name = "discovery"

    def poll(self) -> int:
        items = self.tracker.list_items_by_status(self.settings.status_ready)
        if not items:
            log.debug("No ready items")
            return 0
        log.info("Found %d ready item(s)", len(items))
        enqueued = 0
        for item in items:
            if not self.tracker.claim(item.id):
                log.info("Item %s already claimed, skipping", item.identifier)
                continue
            self.tracker.add_note(item.id, ACK_NOTE)
            try:
                self._enqueue(KIND_EXECUTE, make_payload(item), self.options())
            except RedisError:
                # The claim stands; the item needs an operator.
                log.exception(
                    "Enqueue failed for claimed item %s; it stays '%s' with no job. "
                    "Move it back to '%s' to have it picked up again.",
                    item.identifier,
                    self.settings.status_claimed,
                    self.settings.status_ready,
                )
                continue
            enqueued += 1
            log.info("Item %s added to queue", item.identifier)
        return enqueued


class ReviewPoller(Poller):
    """Turn new human comments on in-review items into ``feedback`` jobs."""

    name = "review"

    def __init__(
        self,
        tracker: ProjectTracker,
        settings: Settings,
        store: SessionStore,
        *,
        enqueue: Enqueue | None = None,
    ) -> None:
        super().__init__(tracker, settings, enqueue=enqueue)
        self.store = store

    def interval(self) -> float:
        return self.settings.review_poll_interval

    def poll(self) -> int:
        items = self.tracker.list_items_by_status(self.settings.status_in_review)
        log.debug("Found %d item(s) in review", len(items))
        enqueued = 0
        for item in items:
            session_id = self.store.session_id_for(item.id)
            if not session_id:
                log.warning("No session for %s, skipping", item.identifier)
                continue
            try:
                comments = self.tracker.list_comments(item.id)
            except TaskRelayError as exc:
                log.error("Could not read comments of %s: %s", item.identifier, exc)
                continue
            human = [c for c in comments if not is_system_comment(c.body)]
            fresh_ids = set(self.store.unprocessed([c.id for c in human]))
            fresh = sorted((c for c in human if c.id in fresh_ids), key=lambda c: c.created_at)
            if not fresh:
                log.debug("No new comments for %s", item.identifier)
                continue

            log.info("Found %d new comment(s) for %s", len(fresh), item.identifier)
            # The item leaves review before its job exists: the next run must
            # not see these comments again, and the job owns every later status.
            if not self.tracker.set_status(item.id, self.settings.status_claimed):
                log.warning("Could not move %s out of review, skipping", item.identifier)
                continue
            payload = make_payload(
                item,
                feedback_text=merge_feedback([c.body for c in fresh]),
                comment_ids=[c.id for c in fresh],
                resume_session_id=session_id,
            )
            try:
                self._enqueue(KIND_FEEDBACK, payload, self.options())
            except RedisError:
                log.exception("Enqueue failed for feedback on %s", item.identifier)
                # No job was created, so the comments are still unprocessed.
                if not self.tracker.set_status(item.id, self.settings.status_in_review):
                    log.error(
                        "%s is stuck in '%s' with no job. Move it back to '%s'.",
                        item.identifier,
                        self.settings.status_claimed,
                        self.settings.status_in_review,
                    )
                continue
            enqueued += 1
            log.info(
                "Feedback job for %s added to queue (session: %s)", item.identifier, session_id
            )
        return enqueued


class Ticker:
    """Fires ``poller.run_once`` on its own thread every interval.

    The interval is re-read before each wait so setting changes apply
    without a restart.
    """

    def __init__(self, poller: Poller) -> None:
        self.poller = poller
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name=f"ticker-{self.poller.name}"
        )
        self._thread.start()
        log.info("%s poller started", self.poller.name)

    def stop(self, timeout: float = 15) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        log.info("%s poller stopped", self.poller.name)

    def tick(self) -> threading.Thread:
        run = threading.Thread(
            target=self.poller.run_once, daemon=True, name=f"poll-{self.poller.name}"
        )
        run.start()
        return run

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._stop.wait(timeout=self.poller.interval())
