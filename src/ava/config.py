"""Runtime settings for ava.

Settings are resolved from, in order of precedence:

1. explicit keyword overrides passed to :func:`load_settings`
2. ``AVA_*`` environment variables
3. the ``[ava]`` table of ``~/.config/ava/config.toml``
4. built-in defaults

Example ``config.toml``::

    [ava]
    redis_url = "redis://localhost:6379/1"
    notify_mode = "queue"
    workspace = "acme"
    user = "u-123"
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from ava.paths import CONFIG_PATH, DEFAULT_DB_PATH

log = logging.getLogger(__name__)

VALID_NOTIFY_MODES = ("stream", "queue", "off")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

_ENV_KEYS = {
    "db_path": "AVA_DB_PATH",
    "redis_url": "AVA_REDIS_URL",
    "notify_mode": "AVA_NOTIFY_MODE",
    "db_timeout": "AVA_DB_TIMEOUT",
    "redis_timeout": "AVA_REDIS_TIMEOUT",
    "base_url": "AVA_BASE_URL",
    "log_level": "AVA_LOG_LEVEL",
    "workspace": "AVA_WORKSPACE",
    "user": "AVA_USER",
}


@dataclass(frozen=True)
class Settings:
    db_path: Path = DEFAULT_DB_PATH
    redis_url: str = "redis://localhost:6379/0"
    notify_mode: str = "stream"
    db_timeout: float = 10.0
    redis_timeout: float = 5.0
    base_url: str = "http://localhost:3000"
    log_level: str = "WARNING"
    workspace: str | None = None
    user: str | None = None

    @property
    def upgrade_url(self) -> str:
        return f"{self.base_url.rstrip('/')}/docs/pricing"


def _read_config_file(path: Path) -> dict[str, Any]:
    """Return the ``[ava]`` table, or an empty dict on any read/parse failure."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except (OSError, tomllib.TOMLDecodeError):
        log.warning("Failed to parse %s, using defaults", path, exc_info=True)
        return {}
    section = raw.get("ava") if isinstance(raw, dict) else None
    return section if isinstance(section, dict) else {}


def _coerce(name: str, value: Any) -> Any:
    if name == "db_path":
        return Path(str(value)).expanduser()
    if name in ("db_timeout", "redis_timeout"):
        timeout = float(value)
        if timeout <= 0:
            raise ValueError(f"{name} must be positive, got {value!r}")
        return timeout
    if name == "notify_mode":
        mode = str(value).strip().lower()
        if mode not in VALID_NOTIFY_MODES:
            raise ValueError(
                f"Invalid notify_mode '{value}'. Must be one of: {list(VALID_NOTIFY_MODES)}"
            )
        return mode
    if name == "log_level":
        level = str(value).strip().upper()
        if level not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log_level '{value}'. Must be one of: {list(VALID_LOG_LEVELS)}"
            )
        return level
    if value is None:
        return None
    return str(value)


def load_settings(config_path: Path | None = None, **overrides: Any) -> Settings:
    """Resolve settings from overrides, environment, and the TOML config file."""
    known = {f.name for f in fields(Settings)}
    unknown = set(overrides) - known
    if unknown:
        raise ValueError(f"Unknown settings: {sorted(unknown)}")

    values: dict[str, Any] = {}
    for name, value in _read_config_file(config_path or CONFIG_PATH).items():
        if name in known:
            values[name] = value
        else:
            log.warning("Ignoring unknown config key '%s'", name)
    for name, env_key in _ENV_KEYS.items():
        env_value = os.environ.get(env_key)
        if env_value:
            values[name] = env_value
    values.update({k: v for k, v in overrides.items() if v is not None})

    return replace(Settings(), **{k: _coerce(k, v) for k, v in values.items()})


def configure_logging(level: str) -> None:
    """Configure root logging once for an entry point."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
