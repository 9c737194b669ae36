"""Canonical filesystem paths for taskrelay configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

TASKRELAY_CONFIG_DIR = Path.home() / ".config" / "taskrelay"

_env_db = os.environ.get("TASKRELAY_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else TASKRELAY_CONFIG_DIR / "taskrelay.db"

LOG_DIR = TASKRELAY_CONFIG_DIR / "logs"
