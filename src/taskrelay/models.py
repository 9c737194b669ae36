"""Data shapes shared by pollers, the queue, and the job processor."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, TypedDict

# Job kinds
KIND_EXECUTE = "execute"
KIND_FEEDBACK = "feedback"
KIND_RETRY = "retry"
JOB_KINDS = (KIND_EXECUTE, KIND_FEEDBACK, KIND_RETRY)


@dataclass
class WorkItem:
    """A unit of work owned by the external tracker.

    The core never mutates these fields; status changes go through the
    tracker collaborator.
    """

    id: str
    identifier: str
    title: str
    description: str | None = None
    priority: int | None = None
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        return cls(
            id=data["id"],
            identifier=data.get("identifier") or data["id"],
            title=data.get("title") or "",
            description=data.get("description"),
            priority=data.get("priority"),
            status=data.get("status"),
        )


@dataclass
class Comment:
    id: str
    body: str
    created_at: datetime
    author: str | None = None


class JobPayload(TypedDict, total=False):
    item: dict[str, Any]
    feedback_text: str
    comment_ids: list[str]
    resume_session_id: str


def make_payload(
    item: WorkItem,
    *,
    feedback_text: str | None = None,
    comment_ids: list[str] | None = None,
    resume_session_id: str | None = None,
) -> JobPayload:
    """Build a plain-dict job payload (what rq stores in Redis)."""
    payload: JobPayload = {"item": item.to_dict()}
    if feedback_text is not None:
        payload["feedback_text"] = feedback_text
    if comment_ids is not None:
        payload["comment_ids"] = list(comment_ids)
    if resume_session_id is not None:
        payload["resume_session_id"] = resume_session_id
    return payload


@dataclass
class StepRecord:
    step: str
    progress: int
    at: datetime


@dataclass
class RunningTaskInfo:
    """Live state of one in-flight task, owned by the monitor."""

    task_id: str
    identifier: str
    title: str
    started_at: datetime
    progress: int = 0
    current_step: str | None = None
    step_history: list[StepRecord] = field(default_factory=list)
    session_id: str | None = None

    def to_dict(self, now: datetime | None = None) -> dict[str, Any]:
        data: dict[str, Any] = {
            "task_id": self.task_id,
            "identifier": self.identifier,
            "title": self.title,
            "status": "running",
            "progress": self.progress,
            "current_step": self.current_step,
            "steps": [
                {"step": s.step, "progress": s.progress, "at": s.at.isoformat()}
                for s in self.step_history
            ],
            "started_at": self.started_at.isoformat(),
            "session_id": self.session_id,
        }
        if now is not None:
            data["duration_seconds"] = max((now - self.started_at).total_seconds(), 0.0)
        return data


@dataclass
class CompletedTaskInfo:
    task_id: str
    identifier: str
    title: str
    started_at: datetime
    completed_at: datetime
    success: bool
    session_id: str | None = None
    detail: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> CompletedTaskInfo:
        """Build from a finished Session Store row."""
        return cls(
            task_id=row["work_item_id"],
            identifier=row["identifier"],
            title=row["title"],
            started_at=datetime.fromisoformat(row["started_at"]),
            completed_at=datetime.fromisoformat(row["completed_at"]),
            success=bool(row["success"]),
            session_id=row["session_id"],
            detail=row.get("detail"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "identifier": self.identifier,
            "title": self.title,
            "status": "completed" if self.success else "failed",
            "success": self.success,
            "session_id": self.session_id,
            "detail": self.detail,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat(),
            "duration_seconds": max(
                (self.completed_at - self.started_at).total_seconds(), 0.0
            ),
        }
