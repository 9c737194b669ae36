"""Project tracker collaborator: the system of record for work items.

The orchestration core only talks to :class:`ProjectTracker`. ``LinearTracker``
is the shipped adapter (Linear GraphQL API over ``requests``).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from taskrelay.config import Settings
from taskrelay.errors import TaskRelayError
from taskrelay.models import Comment, WorkItem

log = logging.getLogger(__name__)

# Prefix of every comment the system posts; the review poller ignores these.
SYSTEM_COMMENT_MARKER = "🤖 \n"


def system_note(text: str) -> str:
    """Prefix *text* with the automated-comment marker."""
    return text if text.startswith(SYSTEM_COMMENT_MARKER) else SYSTEM_COMMENT_MARKER + text


def is_system_comment(body: str) -> bool:
    return body.startswith(SYSTEM_COMMENT_MARKER)


class TrackerError(TaskRelayError):
    """The tracker could not be reached or rejected a request."""


@runtime_checkable
class ProjectTracker(Protocol):
    """Structural interface the pollers, processor and monitor depend on.

    Read methods raise :class:`TrackerError` on transport failure; mutating
    methods return False instead.
    """

    def list_items_by_status(self, status: str) -> list[WorkItem]: ...

    def get_item(self, item_id: str) -> WorkItem | None: ...

    def claim(self, item_id: str) -> bool: ...

    def set_status(self, item_id: str, status: str) -> bool: ...

    def add_note(self, item_id: str, text: str) -> bool: ...

    def list_comments(self, item_id: str) -> list[Comment]: ...

    def count_by_status(self, statuses: list[str]) -> dict[str, int]: ...


# -- Linear --

_TEAMS_QUERY = "query { teams { nodes { id key name } } }"

_STATES_QUERY = """
query($teamId: String!) {
  team(id: $teamId) { states { nodes { id name type } } }
}
"""

_ISSUE_FIELDS = "id identifier title description priority state { id name }"

_PAGE_SIZE = 100


def _issues_by_state_query(fields: str) -> str:
    return f"""
query($teamId: ID!, $stateId: ID!, $after: String) {{
  issues(
    filter: {{ team: {{ id: {{ eq: $teamId }} }}, state: {{ id: {{ eq: $stateId }} }} }}
    first: {_PAGE_SIZE}
    after: $after
  ) {{
    nodes {{ {fields} }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""


_ISSUES_BY_STATE_QUERY = _issues_by_state_query(_ISSUE_FIELDS)
_ISSUE_IDS_BY_STATE_QUERY = _issues_by_state_query("id")

_ISSUE_QUERY = f"""
query($id: String!) {{ issue(id: $id) {{ {_ISSUE_FIELDS} }} }}
"""

_COMMENTS_QUERY = """
query($id: String!) {
  issue(id: $id) { comments(first: 100) { nodes { id body createdAt user { name } } } }
}
"""

_UPDATE_STATE_MUTATION = """
mutation($id: String!, $stateId: String!) {
  issueUpdate(id: $id, input: { stateId: $stateId }) { success }
}
"""

_COMMENT_MUTATION = """
mutation($issueId: String!, $body: String!) {
  commentCreate(input: { issueId: $issueId, body: $body }) { success }
}
"""


def _parse_ts(value: str | None) -> datetime:
    if not value:
        return datetime.min.replace(tzinfo=UTC)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _issue_to_item(node: dict[str, Any]) -> WorkItem:
    state = node.get("state") or {}
    return WorkItem(
        id=node["id"],
        identifier=node.get("identifier") or node["id"],
        title=node.get("title") or "",
        description=node.get("description"),
        priority=node.get("priority"),
        status=state.get("name"),
    )


class LinearTracker:
    """Linear GraphQL adapter.

    Workflow state names are mapped to ids through a per-team cache that is
    refreshed once on a miss. ``claim`` re-reads the issue and only moves it
    when it is still in the ready status; Linear has no conditional update,
    so this narrows but does not close the race between two pollers.
    """

    DEFAULT_TIMEOUT = 30
    DEFAULT_RETRY_COUNT = 3
    DEFAULT_BACKOFF_FACTOR = 0.5

    def __init__(
        self,
        settings: Settings,
        *,
        api_key: str | None = None,
        team_id: str | None = None,
        api_url: str | None = None,
        timeout: float | None = None,
        session: requests.Session | None = None,
    ):
        self.settings = settings
        self.api_key = api_key or settings.resolve("linear_api_key")
        self.api_url = api_url or settings.resolve("linear_api_url")
        self._team_id = team_id or settings.resolve("linear_team_id")
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        if not self.api_key:
            raise ValueError(
                "Linear API key required. Set TASKRELAY_LINEAR_API_KEY or "
                "'taskrelay settings set linear_api_key ...'."
            )
        self._session = session or self._create_session()
        self._state_ids: dict[str, str] = {}
        self._state_lock = threading.Lock()

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update(
            {
                "Authorization": self.api_key or "",
                "Content-Type": "application/json",
                "User-Agent": "taskrelay",
            }
        )
        retry_strategy = Retry(
            total=self.DEFAULT_RETRY_COUNT,
            backoff_factor=self.DEFAULT_BACKOFF_FACTOR,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def close(self) -> None:
        self._session.close()

    def __enter__(self) -> LinearTracker:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # -- transport --

    def _graphql(self, query: str, variables: dict[str, Any] | None = None) -> dict[str, Any]:
        try:
            response = self._session.post(
                self.api_url,
                json={"query": query, "variables": variables or {}},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            raise TrackerError(f"Linear request failed: {exc}") from exc
        if response.status_code >= 400:
            raise TrackerError(f"Linear API error [{response.status_code}]: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError as exc:
            raise TrackerError(
                f"Linear returned a non-JSON response: {response.text[:200]!r}"
            ) from exc
        if not isinstance(body, dict):
            raise TrackerError(f"Linear returned an unexpected body: {type(body).__name__}")
        if body.get("errors"):
            messages = "; ".join(str(e.get("message", e)) for e in body["errors"])
            raise TrackerError(f"Linear GraphQL error: {messages}")
        return body.get("data") or {}

    def team_id(self) -> str:
        if self._team_id:
            return self._team_id
        teams = self._graphql(_TEAMS_QUERY).get("teams", {}).get("nodes", [])
        if not teams:
            raise TrackerError("No Linear teams visible to this API key")
        self._team_id = teams[0]["id"]
        log.info("Using first available Linear team: %s", teams[0].get("key"))
        return self._team_id

    def refresh_states(self) -> None:
        data = self._graphql(_STATES_QUERY, {"teamId": self.team_id()})
        nodes = (data.get("team") or {}).get("states", {}).get("nodes", [])
        with self._state_lock:
            self._state_ids = {node["name"]: node["id"] for node in nodes}
        log.debug("Linear state cache refreshed: %s", ", ".join(sorted(self._state_ids)))

    def state_id(self, status: str) -> str:
        with self._state_lock:
            state_id = self._state_ids.get(status)
        if state_id:
            return state_id
        self.refresh_states()
        with self._state_lock:
            state_id = self._state_ids.get(status)
        if not state_id:
            raise TrackerError(f'Status "{status}" not found in Linear workflow')
        return state_id

    # -- reads --

    def _issue_nodes(self, query: str, status: str) -> Iterator[dict[str, Any]]:
        """Walk every page of issues in *status*."""
        variables: dict[str, Any] = {
            "teamId": self.team_id(),
            "stateId": self.state_id(status),
            "after": None,
        }
        while True:
            issues = self._graphql(query, variables).get("issues") or {}
            yield from issues.get("nodes", [])
            page = issues.get("pageInfo") or {}
            if not page.get("hasNextPage") or not page.get("endCursor"):
                return
            variables["after"] = page["endCursor"]

    def list_items_by_status(self, status: str) -> list[WorkItem]:
        return [_issue_to_item(node) for node in self._issue_nodes(_ISSUES_BY_STATE_QUERY, status)]

    def get_item(self, item_id: str) -> WorkItem | None:
        data = self._graphql(_ISSUE_QUERY, {"id": item_id})
        node = data.get("issue")
        return _issue_to_item(node) if node else None

    def list_comments(self, item_id: str) -> list[Comment]:
        data = self._graphql(_COMMENTS_QUERY, {"id": item_id})
        nodes = (data.get("issue") or {}).get("comments", {}).get("nodes", [])
        comments = [
            Comment(
                id=node["id"],
                body=node.get("body") or "",
                created_at=_parse_ts(node.get("createdAt")),
                author=(node.get("user") or {}).get("name"),
            )
            for node in nodes
        ]
        comments.sort(key=lambda c: c.created_at)
        return comments

    def count_by_status(self, statuses: list[str]) -> dict[str, int]:
        return {
            status: sum(1 for _ in self._issue_nodes(_ISSUE_IDS_BY_STATE_QUERY, status))
            for status in statuses
        }

    # -- writes --

    def set_status(self, item_id: str, status: str) -> bool:
        try:
            data = self._graphql(
                _UPDATE_STATE_MUTATION, {"id": item_id, "stateId": self.state_id(status)}
            )
        except TrackerError as exc:
            log.error("Failed to set status of %s to %s: %s", item_id, status, exc)
            return False
        ok = bool((data.get("issueUpdate") or {}).get("success"))
        if ok:
            log.info("Work item %s status updated to %s", item_id, status)
        return ok

    def claim(self, item_id: str) -> bool:
        ready = self.settings.status_ready
        try:
            current = self.get_item(item_id)
        except TrackerError as exc:
            log.error("Failed to read %s before claiming: %s", item_id, exc)
            return False
        if current is None or current.status != ready:
            return False
        return self.set_status(item_id, self.settings.status_claimed)

    def add_note(self, item_id: str, text: str) -> bool:
        try:
            data = self._graphql(_COMMENT_MUTATION, {"issueId": item_id, "body": system_note(text)})
        except TrackerError as exc:
            log.error("Failed to add note to %s: %s", item_id, exc)
            return False
        return bool((data.get("commentCreate") or {}).get("success"))
