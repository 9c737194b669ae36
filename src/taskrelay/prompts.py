"""Prompt builders for agent runs."""

from __future__ import annotations

from taskrelay.models import WorkItem

FEEDBACK_SEPARATOR = "\n\n---\n\n"

SYSTEM_PROMPT = """\
You are a task execution assistant working on items from a project tracker.
Status changes and tracker comments are handled by the orchestrator that
started you; do not change the item's status yourself.

Work through the task step by step and finish with a short summary of what
you did and where the deliverables are.

If the task cannot be completed, end your reply with a line that starts with
"❌ Task failed" followed by the reason."""

RETRY_PROMPT = """\
This is a task retry. Please review the previous execution history, identify
the cause of failure, and complete the task.

1. Review the previous error messages
2. Analyze the failure cause
3. Take a different approach or fix the error
4. Re-execute the task"""


def build_task_prompt(item: WorkItem) -> str:
    priority = item.priority if item.priority is not None else "None"
    return f"""\
You are now executing the following task.

## Task Information
- Issue ID: {item.id}
- Identifier: {item.identifier}
- Title: {item.title}
- Description:
{item.description or "None"}
- Priority: {priority}

## Reporting
- Keep your final summary concise; it is posted to the tracker.
- Wrap key data and code in Markdown code blocks.
- If you cannot finish, say why and end with "❌ Task failed".

Now please begin executing the task.
"""


def build_feedback_prompt(item: WorkItem, feedback: str) -> str:
    return f"""\
## User Feedback

The user has provided feedback on your previous execution of task "{item.title}":

---
{feedback}
---

Process the feedback: apply any requested changes, then summarize what you
did. If the user only approves, reply with a one-line confirmation.

## Task Information
- Issue ID: {item.id}
- Identifier: {item.identifier}
- Title: {item.title}

You have the full context of the previous run; continue from where you left off.
"""


def build_retry_prompt(item: WorkItem) -> str:
    return f"{RETRY_PROMPT}\n\nTask: {item.identifier} {item.title}\n"


def merge_feedback(bodies: list[str]) -> str:
    """Join comment bodies (already oldest-first) into one feedback text."""
    return FEEDBACK_SEPARATOR.join(body.strip() for body in bodies if body.strip())
