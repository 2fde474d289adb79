"""
Logging setup for colloquy.

Levels come from COLLOQUY_LOG_LEVELS, a comma separated list where a bare
level sets the default and "name=level" overrides one logger:

  COLLOQUY_LOG_LEVELS="warning,session=debug,store=info"

COLLOQUY_LOGGING=0 leaves logging unconfigured.
"""

import logging
import logging.config
import os

from contextlib import contextmanager
from typing import Optional, Protocol

FORMAT = os.getenv("COLLOQUY_LOG_FORMAT", "%(asctime)s %(log_color)s%(levelname)5s%(reset)s %(name)-10s %(message)s")
if os.getenv("COLLOQUY_LOG_SHOW_SOURCE"):
  FORMAT += " [%(pathname)s:%(lineno)d]"

# loggers owned by this package
PACKAGE_LOGGERS = ("session", "store", "tool", "scheduler", "model")

# chatty third-party loggers, WARNING unless named in the levels
QUIET_LOGGERS = ("asyncio", "httpcore", "httpx", "LiteLLM", "LiteLLM Router", "psycopg")

LOG_COLORS = {"DEBUG": "blue", "INFO": "green", "WARN": "yellow", "ERROR": "red", "FATAL": "bold_red"}

_levels: dict[str, str] = {}
_configured = False


def create_log_levels(log_levels: Optional[str]) -> dict[str, str]:
  """Parse a string like "info,session=debug" into {"default": "INFO", "session": "DEBUG"}."""
  levels = {"default": "INFO"}
  for entry in (log_levels or "").split(","):
    name, sep, level = entry.partition("=")
    if not sep:
      name, level = "default", name
    if level.strip():
      levels[name.strip()] = level.strip().upper()
  return levels


def create_logging_config(levels: dict[str, str], log_format: str) -> dict:
  default = levels.get("default", "INFO")

  def logger(level: str) -> dict:
    return {"handlers": ["default"], "level": level, "propagate": False}

  loggers = {name: logger(levels.get(name, "WARNING")) for name in QUIET_LOGGERS}
  loggers.update({name: logger(levels.get(name, default)) for name in PACKAGE_LOGGERS})
  # names outside both lists, e.g. "aiosqlite=debug"
  for name, level in levels.items():
    if name != "default" and name not in loggers:
      loggers[name] = logger(level)

  return {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
      "default": {"()": "colloquy.logs.formatter.Formatter", "format": log_format, "log_colors": LOG_COLORS},
    },
    "handlers": {
      "default": {"class": "logging.StreamHandler", "formatter": "default", "level": "NOTSET"},
    },
    "loggers": loggers,
    "root": {"level": default, "handlers": ["default"]},
  }


def get_log_levels() -> dict[str, str]:
  if not _levels:
    _levels.update(create_log_levels(os.environ.get("COLLOQUY_LOG_LEVELS")))
  return dict(_levels)


def set_log_levels(log_levels: Optional[str]):
  _levels.clear()
  _levels.update(create_log_levels(log_levels))
  apply_log_levels()


def set_log_level(name: str, level: str):
  """Change the level of one logger, or of all package loggers with name "default"."""
  get_log_levels()
  _levels[name] = level.upper()
  apply_log_levels()


def apply_log_levels():
  global _configured
  _configured = True
  if os.environ.get("COLLOQUY_LOGGING", "1") == "0":
    return
  logging.config.dictConfig(create_logging_config(get_log_levels(), FORMAT))


def get_logger(name: str) -> logging.Logger:
  if not _configured:
    apply_log_levels()
  return logging.getLogger(name)


def info(msg, *args, **kwargs):
  get_logger("session").info(msg, *args, stacklevel=2, **kwargs)


def warning(msg, *args, **kwargs):
  get_logger("session").warning(msg, *args, stacklevel=2, **kwargs)


def debug(msg, *args, **kwargs):
  get_logger("session").debug(msg, *args, stacklevel=2, **kwargs)


def error(msg, *args, **kwargs):
  get_logger("session").error(msg, *args, stacklevel=2, **kwargs)


class LoggerAware(Protocol):
  logger: logging.Logger


class InfoContext(LoggerAware):
  @contextmanager
  def info(self, before_msg, after_msg):
    self.logger.info(before_msg)
    yield
    self.logger.info(after_msg)
