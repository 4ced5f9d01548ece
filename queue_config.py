"""Configuration for the decision queue.

Loaded from ~/.arbiter/config.json (shared with the chat adapter, whose own
sections are ignored here).  Every key is optional:

    {
      "queue": {
        "dir": "~/.arbiter/queue",
        "watchInterval": 2000,
        "debounceMs": 300,
        "useEvents": true
      },
      "notifications": {"enabled": true},
      "session": {"timeoutSeconds": 300}
    }

ENVIRONMENT
-----------
    ARBITER_QUEUE_DIR        overrides queue.dir
    ARBITER_WATCH_INTERVAL   overrides queue.watchInterval (seconds)
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("QueueConfig")

DEFAULT_CONFIG_PATH = Path.home() / ".arbiter" / "config.json"
DEFAULT_QUEUE_DIR = Path.home() / ".arbiter" / "queue"

QUEUE_FOLDERS = ("pending", "completed", "notify")


class ConfigError(Exception):
    """The configuration file exists but can't be used."""


@dataclass
class QueueConfig:
    queue_dir: Path = DEFAULT_QUEUE_DIR
    watch_interval: float = 2.0
    debounce: float = 0.3
    use_events: bool = True
    notifications_enabled: bool = True
    session_timeout: float = 300.0


def _section(raw: dict, name: str) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be an object")
    return value


def _number(value, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"Config field '{name}' must be a positive number")
    return float(value)


def load_config(config_path: str | Path | None = None) -> QueueConfig:
    """Load configuration, falling back to defaults for anything missing.

    A missing file is not an error.  A file that can't be read or parsed
    raises ConfigError.
    """
    path = Path(config_path).expanduser() if config_path else DEFAULT_CONFIG_PATH
    config = QueueConfig()

    if path.exists():
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigError(f"Failed to parse config file: {path}\n{exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigError(f"Config file must contain a JSON object: {path}")

        queue = _section(raw, "queue")
        if "dir" in queue:
            config.queue_dir = Path(str(queue["dir"]))
        if "watchInterval" in queue:
            config.watch_interval = _number(queue["watchInterval"], "queue.watchInterval") / 1000
        if "debounceMs" in queue:
            config.debounce = _number(queue["debounceMs"], "queue.debounceMs") / 1000
        if "useEvents" in queue:
            config.use_events = bool(queue["useEvents"])

        notifications = _section(raw, "notifications")
        if "enabled" in notifications:
            config.notifications_enabled = bool(notifications["enabled"])

        session = _section(raw, "session")
        if "timeoutSeconds" in session:
            config.session_timeout = _number(session["timeoutSeconds"], "session.timeoutSeconds")
    else:
        logger.debug("No config file at %s — using defaults", path)

    # ---- Environment overrides ----
    env_dir = os.getenv("ARBITER_QUEUE_DIR", "").strip()
    if env_dir:
        config.queue_dir = Path(env_dir)

    env_interval = os.getenv("ARBITER_WATCH_INTERVAL", "").strip()
    if env_interval:
        try:
            config.watch_interval = _number(float(env_interval), "ARBITER_WATCH_INTERVAL")
        except ValueError as exc:
            raise ConfigError(f"ARBITER_WATCH_INTERVAL must be a number, got '{env_interval}'") from exc

    config.queue_dir = config.queue_dir.expanduser()
    return config


def ensure_queue_folders(queue_dir: Path) -> dict[str, Path]:
    """Create the pending/completed/notify folders and return a name→Path mapping."""
    folders: dict[str, Path] = {}
    for name in QUEUE_FOLDERS:
        p = Path(queue_dir) / name
        p.mkdir(parents=True, exist_ok=True)
        folders[name] = p
    return folders
