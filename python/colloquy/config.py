"""
Configuration for agent sessions.

Values are resolved in this order, highest priority first:
1. Keys passed explicitly in a SessionConfig dict
2. Environment variables
3. Module defaults

Environment Variables:
- COLLOQUY_TOOL_TIMEOUT: Upper bound in seconds for a single tool call (default: 30)
- COLLOQUY_EVENT_TIMEOUT: Max seconds to wait for the next generation event (default: 300)
- COLLOQUY_MAX_ITERATIONS: Max model round-trips in one turn (default: 25)
- COLLOQUY_MAX_EXECUTION_TIME: Max seconds for a whole turn (default: 600)
- COLLOQUY_MAX_HISTORY_MESSAGES: Messages sent to the model per request (default: 200)
- COLLOQUY_COMMIT_RETRIES: Retries for a failed store commit (default: 3)
- COLLOQUY_COMMIT_BACKOFF: Initial backoff in seconds between commit retries (default: 0.1)
- COLLOQUY_BUSY_POLICY: "queue" or "reject" for concurrent turns on one conversation (default: queue)
- COLLOQUY_MAX_HANDLED_ACTIONS: Scheduled action ids remembered per conversation for duplicate detection (default: 100)
- COLLOQUY_SQLITE_PATH: Path of the SQLite database used by SQLiteStore (default: colloquy.db)
- COLLOQUY_DATABASE_URL: PostgreSQL connection URL used by PostgresStore
- COLLOQUY_DATABASE_INSTANCE / COLLOQUY_DATABASE_USER / COLLOQUY_DATABASE_PASSWORD:
  Alternative to COLLOQUY_DATABASE_URL
"""

import os
from typing import Optional, TypedDict, NotRequired
from urllib.parse import quote

TOOL_TIMEOUT_DEFAULT = 30.0
EVENT_TIMEOUT_DEFAULT = 300.0
MAX_ITERATIONS_DEFAULT = 25
MAX_EXECUTION_TIME_DEFAULT = 600.0
MAX_HISTORY_MESSAGES_DEFAULT = 200
COMMIT_RETRIES_DEFAULT = 3
COMMIT_BACKOFF_DEFAULT = 0.1
BUSY_POLICY_DEFAULT = "queue"
MAX_HANDLED_ACTIONS_DEFAULT = 100
SQLITE_PATH_DEFAULT = "colloquy.db"

BUSY_POLICIES = ("queue", "reject")


class SessionConfig(TypedDict):
  """Configuration for an AgentSession.

  Every key is optional. Missing keys come from the environment or defaults.

  Example:
    config = {
      "tool_timeout": 10.0,
      "max_iterations": 8,
      "busy_policy": "reject",
    }
    session = AgentSession(gateway, store, registry, config=config)
  """

  tool_timeout: NotRequired[float]
  event_timeout: NotRequired[float]
  max_iterations: NotRequired[int]
  max_execution_time: NotRequired[float]
  max_history_messages: NotRequired[int]
  commit_retries: NotRequired[int]
  commit_backoff: NotRequired[float]
  busy_policy: NotRequired[str]
  max_handled_actions: NotRequired[int]


_ENV_KEYS = {
  "tool_timeout": ("COLLOQUY_TOOL_TIMEOUT", float),
  "event_timeout": ("COLLOQUY_EVENT_TIMEOUT", float),
  "max_iterations": ("COLLOQUY_MAX_ITERATIONS", int),
  "max_execution_time": ("COLLOQUY_MAX_EXECUTION_TIME", float),
  "max_history_messages": ("COLLOQUY_MAX_HISTORY_MESSAGES", int),
  "commit_retries": ("COLLOQUY_COMMIT_RETRIES", int),
  "commit_backoff": ("COLLOQUY_COMMIT_BACKOFF", float),
  "busy_policy": ("COLLOQUY_BUSY_POLICY", str),
  "max_handled_actions": ("COLLOQUY_MAX_HANDLED_ACTIONS", int),
}


def default_config() -> SessionConfig:
  return {
    "tool_timeout": TOOL_TIMEOUT_DEFAULT,
    "event_timeout": EVENT_TIMEOUT_DEFAULT,
    "max_iterations": MAX_ITERATIONS_DEFAULT,
    "max_execution_time": MAX_EXECUTION_TIME_DEFAULT,
    "max_history_messages": MAX_HISTORY_MESSAGES_DEFAULT,
    "commit_retries": COMMIT_RETRIES_DEFAULT,
    "commit_backoff": COMMIT_BACKOFF_DEFAULT,
    "busy_policy": BUSY_POLICY_DEFAULT,
    "max_handled_actions": MAX_HANDLED_ACTIONS_DEFAULT,
  }


def load_config_from_env() -> SessionConfig:
  """Read the session settings that are present in the environment."""
  config: SessionConfig = {}
  for key, (env_name, cast) in _ENV_KEYS.items():
    raw = os.environ.get(env_name)
    if raw is None or raw.strip() == "":
      continue
    try:
      config[key] = cast(raw.strip())
    except ValueError:
      raise ValueError(f"{env_name} must be a valid {cast.__name__}, got {raw!r}")
  return config


def resolve_config(config: Optional[SessionConfig] = None) -> SessionConfig:
  resolved = default_config()
  resolved.update(load_config_from_env())
  if config:
    resolved.update({k: v for k, v in config.items() if v is not None})
  validate_config(resolved)
  return resolved


def validate_config(config: SessionConfig):
  for key in ("tool_timeout", "event_timeout", "max_execution_time"):
    if config[key] <= 0:
      raise ValueError(f"{key} must be greater than 0")
  if config["max_iterations"] < 1:
    raise ValueError("max_iterations must be at least 1")
  if config["max_history_messages"] < 1:
    raise ValueError("max_history_messages must be at least 1")
  if config["commit_retries"] < 0:
    raise ValueError("commit_retries must not be negative")
  if config["commit_backoff"] < 0:
    raise ValueError("commit_backoff must not be negative")
  if config["max_handled_actions"] < 1:
    raise ValueError("max_handled_actions must be at least 1")
  if config["busy_policy"] not in BUSY_POLICIES:
    raise ValueError(f"busy_policy must be one of {', '.join(BUSY_POLICIES)}")


def get_sqlite_path() -> str:
  return os.environ.get("COLLOQUY_SQLITE_PATH", SQLITE_PATH_DEFAULT)


def get_database_url() -> Optional[str]:
  """
  Resolve the PostgreSQL URL.

  :return: The URL, or None when no database is configured
  """
  url = os.environ.get("COLLOQUY_DATABASE_URL")
  if url:
    return url

  instance = os.environ.get("COLLOQUY_DATABASE_INSTANCE")
  if not instance:
    return None

  user = os.environ.get("COLLOQUY_DATABASE_USER", "")
  password = os.environ.get("COLLOQUY_DATABASE_PASSWORD", "")
  return f"postgresql://{user}:{quote(password)}@{instance}"
