"""Tests for the execute / feedback / retry handlers."""

import pytest
from conftest import FakeAgent, agent_script, failing_agent

from taskrelay.errors import AgentFailure, JobTimeout
from taskrelay.models import WorkItem, make_payload
from taskrelay.processor import Attempt, JobProcessor
from taskrelay.queue import EVENT_COMPLETED, EVENT_SESSION_CAPTURED
from taskrelay.review_gate import DECISION_DONE, DECISION_IN_REVIEW


def _processor(tracker, agent, monitor, store, settings):
    return JobProcessor(tracker, agent, monitor, store, settings)


def _claimed(tracker, title="Check status", description=None):
    item = tracker.add_item(
        "wi-1", title, identifier="ENG-1", description=description, status="In Progress"
    )
    return make_payload(WorkItem(**item.to_dict()))


# -- attempt policy --


def test_attempt_final_and_delay():
    assert Attempt().final
    first = Attempt(number=1, max_attempts=3, backoff_base=5)
    assert not first.final
    assert first.next_delay == 5
    assert Attempt(number=2, max_attempts=3, backoff_base=5).next_delay == 10
    assert Attempt(number=3, max_attempts=3, backoff_base=5).final


# -- execute --


@pytest.mark.asyncio
async def test_execute_done_path(tracker, monitor, store, settings, events):
    agent = FakeAgent(agent_script(session_id="sess-1", tools=("Bash",), text="Status is green"))
    proc = _processor(tracker, agent, monitor, store, settings)

    decision = await proc.execute(_claimed(tracker))

    assert decision == DECISION_DONE
    assert tracker.status("wi-1") == "Done"
    note = tracker.notes_for("wi-1")[-1]
    assert "🎉 Task completed" in note
    assert "Status is green" in note
    assert store.get("wi-1")["session_id"] == "sess-1"
    assert store.get("wi-1")["success"] is True
    assert events.of(EVENT_COMPLETED)[0]["success"] is True
    assert agent.calls[0]["resume_session_id"] is None
    assert "ENG-1" in agent.calls[0]["prompt"]


@pytest.mark.asyncio
async def test_execute_review_path(tracker, monitor, store, settings, events):
    proc = _processor(tracker, FakeAgent(), monitor, store, settings)
    decision = await proc.execute(_claimed(tracker, title="Write changelog"))

    assert decision == DECISION_IN_REVIEW
    assert tracker.status("wi-1") == "In Review"
    assert "awaiting human review" in tracker.notes_for("wi-1")[-1]
    assert store.get("wi-1")["success"] is True


@pytest.mark.asyncio
async def test_execute_reports_status_then_note_then_local(tracker, monitor, store, settings):
    order = []
    real_set_status, real_add_note = tracker.set_status, tracker.add_note
    real_complete = monitor.complete

    def set_status(item_id, status):
        order.append("status")
        return real_set_status(item_id, status)

    def add_note(item_id, text):
        order.append("note")
        return real_add_note(item_id, text)

    def complete(task_id, success, detail=None):
        order.append("complete")
        real_complete(task_id, success, detail)

    tracker.set_status, tracker.add_note, monitor.complete = set_status, add_note, complete
    await _processor(tracker, FakeAgent(), monitor, store, settings).execute(_claimed(tracker))
    assert order == ["status", "note", "complete"]


@pytest.mark.asyncio
async def test_execute_non_final_failure_keeps_claim(tracker, monitor, store, settings, events):
    proc = _processor(tracker, failing_agent("agent crashed"), monitor, store, settings)

    with pytest.raises(AgentFailure):
        await proc.execute(_claimed(tracker), Attempt(1, 3, 5))

    assert tracker.status("wi-1") == "In Progress"
    note = tracker.notes_for("wi-1")[-1]
    assert "⚠️ Task execution failed (attempt 1/3)" in note
    assert "Retrying in 5 seconds" in note
    assert store.get("wi-1")["success"] is False
    assert events.of(EVENT_COMPLETED)[0]["detail"] == "agent crashed"


@pytest.mark.asyncio
async def test_execute_final_failure_marks_failed(tracker, monitor, store, settings):
    proc = _processor(tracker, failing_agent("agent crashed"), monitor, store, settings)

    with pytest.raises(AgentFailure):
        await proc.execute(_claimed(tracker), Attempt(3, 3, 5))

    assert tracker.status("wi-1") == "Failed"
    note = tracker.notes_for("wi-1")[-1]
    assert "❌ Task execution failed" in note
    assert "**Retry attempts:** 3/3" in note
    assert "agent crashed" in note


@pytest.mark.asyncio
async def test_execute_failure_marker_in_text(tracker, monitor, store, settings):
    agent = FakeAgent(agent_script(text="❌ Task failed: missing API token"))
    proc = _processor(tracker, agent, monitor, store, settings)
    with pytest.raises(AgentFailure):
        await proc.execute(_claimed(tracker))
    assert tracker.status("wi-1") == "Failed"
    assert "missing API token" in tracker.notes_for("wi-1")[-1]


@pytest.mark.asyncio
async def test_execute_timeout_counts_as_failure(tracker, monitor, store, settings):
    class Hanging:
        async def run(self, prompt, *, resume_session_id=None, system_prompt=None):
            raise JobTimeout(1)
            yield  # pragma: no cover

    proc = _processor(tracker, Hanging(), monitor, store, settings)
    with pytest.raises(JobTimeout):
        await proc.execute(_claimed(tracker), Attempt(1, 2, 5))
    assert "timeout" in tracker.notes_for("wi-1")[-1]


@pytest.mark.asyncio
async def test_long_summary_is_clipped(tracker, monitor, store, settings):
    agent = FakeAgent(agent_script(text="x" * 900))
    await _processor(tracker, agent, monitor, store, settings).execute(_claimed(tracker))
    note = tracker.notes_for("wi-1")[-1]
    assert "x" * 500 + "..." in note
    assert "x" * 501 not in note


@pytest.mark.asyncio
async def test_session_ids_are_captured_in_order(tracker, monitor, store, settings, events):
    from taskrelay.agent import EVENT_RESULT, EVENT_SESSION_ID, AgentEvent

    script = [
        AgentEvent(EVENT_SESSION_ID, session_id="s-1"),
        AgentEvent(EVENT_SESSION_ID, session_id="s-2"),
        AgentEvent(EVENT_RESULT, text="ok"),
    ]
    await _processor(tracker, FakeAgent(script), monitor, store, settings).execute(
        _claimed(tracker)
    )
    captured = [e["session_id"] for e in events.of(EVENT_SESSION_CAPTURED)]
    assert captured == ["s-1", "s-2"]
    assert store.get("wi-1")["session_id"] == "s-2"


# -- feedback --


def _feedback_payload(tracker, store, text, comment_ids=("c-1",)):
    item = tracker.add_item("wi-1", "Write changelog", identifier="ENG-1", status="In Progress")
    store.start("wi-1", identifier="ENG-1", title="Write changelog")
    store.capture_session("wi-1", "sess-1")
    return make_payload(
        WorkItem(**item.to_dict()),
        feedback_text=text,
        comment_ids=list(comment_ids),
        resume_session_id="sess-1",
    )


@pytest.mark.asyncio
async def test_feedback_approval_completes(tracker, monitor, store, settings):
    agent = FakeAgent(agent_script(session_id="sess-1", text="Thanks, closing."))
    payload = _feedback_payload(tracker, store, "looks good")

    decision = await _processor(tracker, agent, monitor, store, settings).feedback(payload)

    assert decision == DECISION_DONE
    assert tracker.status("wi-1") == "Done"
    assert agent.calls[0]["resume_session_id"] == "sess-1"
    assert "looks good" in agent.calls[0]["prompt"]
    assert store.unprocessed(["c-1"]) == []
    notes = tracker.notes_for("wi-1")
    assert "Processing your feedback" in notes[0]
    assert "🎉 Feedback completed" in notes[-1]


@pytest.mark.asyncio
async def test_feedback_change_request_returns_to_review(tracker, monitor, store, settings):
    payload = _feedback_payload(tracker, store, "please rewrite the intro")
    decision = await _processor(tracker, FakeAgent(), monitor, store, settings).feedback(payload)
    assert decision == DECISION_IN_REVIEW
    assert tracker.status("wi-1") == "In Review"


@pytest.mark.asyncio
async def test_feedback_failure_leaves_comments_unprocessed(tracker, monitor, store, settings):
    payload = _feedback_payload(tracker, store, "looks good")
    proc = _processor(tracker, failing_agent(), monitor, store, settings)
    with pytest.raises(AgentFailure):
        await proc.feedback(payload, Attempt(1, 1, 5))
    assert store.unprocessed(["c-1"]) == ["c-1"]
    assert tracker.status("wi-1") == "Failed"
    assert "❌ Feedback processing failed" in tracker.notes_for("wi-1")[-1]


@pytest.mark.asyncio
async def test_feedback_marking_failure_is_logged(tracker, monitor, store, settings, caplog):
    payload = _feedback_payload(tracker, store, "looks good")
    store.mark_comments_processed = lambda ids, item_id: False
    decision = await _processor(tracker, FakeAgent(), monitor, store, settings).feedback(payload)
    assert decision == DECISION_DONE
    assert "may be processed again" in caplog.text


# -- retry --


@pytest.mark.asyncio
async def test_retry_resumes_session(tracker, monitor, store, settings):
    item = tracker.add_item("wi-1", "Check status", identifier="ENG-1", status="In Progress")
    store.start("wi-1", identifier="ENG-1", title="Check status")
    payload = make_payload(WorkItem(**item.to_dict()), resume_session_id="sess-old")
    agent = FakeAgent(agent_script(session_id="sess-old"))

    decision = await _processor(tracker, agent, monitor, store, settings).retry(payload)

    assert decision == DECISION_DONE
    assert agent.calls[0]["resume_session_id"] == "sess-old"
    assert "task retry" in agent.calls[0]["prompt"]
    assert "Retrying task execution" in tracker.notes_for("wi-1")[0]
    assert monitor.completed()[0].title == "[retry] Check status"
