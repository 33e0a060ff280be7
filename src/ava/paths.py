"""Canonical filesystem paths for ava configuration and state."""

from __future__ import annotations

import os
from pathlib import Path

AVA_CONFIG_DIR = Path.home() / ".config" / "ava"

CONFIG_PATH = AVA_CONFIG_DIR / "config.toml"

_env_db = os.environ.get("AVA_DB_PATH")
DEFAULT_DB_PATH = Path(_env_db).expanduser() if _env_db else AVA_CONFIG_DIR / "ava.db"
