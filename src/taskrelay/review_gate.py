"""Review gate: route a successfully executed item to done or human review.

Matching is case-insensitive substring search over title + description, so
"Rewrite" matches "write". Keep the trigger list narrow.
"""

from __future__ import annotations

from collections.abc import Iterable

from taskrelay.models import WorkItem

DECISION_DONE = "done"
DECISION_IN_REVIEW = "in_review"


def matched_keywords(text: str, triggers: Iterable[str]) -> list[str]:
    """Return the trigger words found in *text*, in trigger order."""
    haystack = text.lower()
    return [word for word in triggers if word and word.lower() in haystack]


def classify(text: str, triggers: Iterable[str]) -> str:
    """Pure decision: ``in_review`` if any trigger occurs in *text*, else ``done``."""
    return DECISION_IN_REVIEW if matched_keywords(text, triggers) else DECISION_DONE


def review_text(item: WorkItem) -> str:
    return f"{item.title} {item.description or ''}"
