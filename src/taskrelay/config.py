"""Runtime configuration: settings table, then environment, then defaults.

Values are resolved fresh on every access because operators may change
settings while the service runs. Environment variables use the
``TASKRELAY_`` prefix and the upper-cased key (``poll_interval`` ->
``TASKRELAY_POLL_INTERVAL``).
"""

from __future__ import annotations

import logging
import os
import sqlite3
from pathlib import Path

from taskrelay.db import connect, get_setting
from taskrelay.paths import DEFAULT_DB_PATH

log = logging.getLogger(__name__)

ENV_PREFIX = "TASKRELAY_"

DEFAULT_REVIEW_KEYWORDS = (
    "write",
    "generate",
    "create",
    "send",
    "email",
    "article",
    "report",
    "delete",
    "modify",
    "update",
    "code",
    "script",
)

DEFAULTS: dict[str, str | None] = {
    "poll_interval": "30",
    "review_poll_interval": "30",
    "max_attempts": "3",
    "backoff_base": "5",
    "task_timeout": "10800",
    "concurrency": "3",
    "completed_cache_size": "100",
    "review_keywords": ",".join(DEFAULT_REVIEW_KEYWORDS),
    "status_ready": "Todo",
    "status_claimed": "In Progress",
    "status_in_review": "In Review",
    "status_done": "Done",
    "status_failed": "Failed",
    "linear_api_key": None,
    "linear_team_id": None,
    "linear_api_url": "https://api.linear.app/graphql",
    "agent_command": "claude",
    "agent_model": None,
    "workspace_path": None,
}

# Keys never echoed back in full by the CLI.
SECRET_KEYS = frozenset({"linear_api_key"})


def env_name(key: str) -> str:
    return ENV_PREFIX + key.upper()


class Settings:
    """Passive accessor over the ordered fallback chain.

    Holds no cached values; each getter calls :meth:`resolve`.
    """

    def __init__(self, db_path: Path | None = None, *, use_db: bool = True):
        self.db_path = db_path or DEFAULT_DB_PATH
        self.use_db = use_db

    def _db_value(self, key: str) -> str | None:
        if not self.use_db:
            return None
        try:
            with connect(self.db_path) as conn:
                return get_setting(conn, key)
        except sqlite3.Error:
            log.debug("Settings table unavailable, using environment for %s", key)
            return None

    def resolve_with_source(self, key: str) -> tuple[str | None, str]:
        """Return ``(value, source)`` where source is db, env or default."""
        if key not in DEFAULTS:
            raise KeyError(f"Unknown setting '{key}'")
        value = self._db_value(key)
        if value:
            return value, "db"
        value = os.environ.get(env_name(key))
        if value:
            return value, "env"
        return DEFAULTS[key], "default"

    def resolve(self, key: str) -> str | None:
        return self.resolve_with_source(key)[0]

    def _number(self, key: str, cast: type[int] | type[float], minimum: float) -> int | float:
        raw = self.resolve(key)
        default = cast(DEFAULTS[key])  # type: ignore[arg-type]
        try:
            value = cast(raw)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            log.warning("Invalid value %r for %s, using default %s", raw, key, default)
            return default
        if value < minimum:
            log.warning("Value %r for %s is below %s, using default %s", raw, key, minimum, default)
            return default
        return value

    # -- scheduling --

    @property
    def poll_interval(self) -> float:
        return float(self._number("poll_interval", float, 1))

    @property
    def review_poll_interval(self) -> float:
        return float(self._number("review_poll_interval", float, 1))

    # -- queue policy --

    @property
    def max_attempts(self) -> int:
        return int(self._number("max_attempts", int, 1))

    @property
    def backoff_base(self) -> float:
        return float(self._number("backoff_base", float, 0))

    @property
    def task_timeout(self) -> float:
        return float(self._number("task_timeout", float, 1))

    @property
    def concurrency(self) -> int:
        return int(self._number("concurrency", int, 1))

    @property
    def completed_cache_size(self) -> int:
        return int(self._number("completed_cache_size", int, 1))

    # -- review gate --

    @property
    def review_keywords(self) -> tuple[str, ...]:
        raw = self.resolve("review_keywords") or ""
        return tuple(word.strip().lower() for word in raw.split(",") if word.strip())

    # -- tracker status names --

    @property
    def status_ready(self) -> str:
        return self.resolve("status_ready") or "Todo"

    @property
    def status_claimed(self) -> str:
        return self.resolve("status_claimed") or "In Progress"

    @property
    def status_in_review(self) -> str:
        return self.resolve("status_in_review") or "In Review"

    @property
    def status_done(self) -> str:
        return self.resolve("status_done") or "Done"

    @property
    def status_failed(self) -> str:
        return self.resolve("status_failed") or "Failed"

    def tracked_statuses(self) -> list[str]:
        return [
            self.status_ready,
            self.status_claimed,
            self.status_in_review,
            self.status_done,
            self.status_failed,
        ]


def mask_value(key: str, value: str | None) -> str | None:
    """Hide all but the last four characters of secret settings."""
    if value is None or key not in SECRET_KEYS:
        return value
    if len(value) <= 4:
        return "****"
    return "*" * (len(value) - 4) + value[-4:]
