from logging import Logger

from .formatter import Formatter
from .logs import InfoContext, get_logger, get_log_levels, set_log_level, set_log_levels, apply_log_levels
from .logs import debug, info, warning, error

__all__ = [
  "Logger",
  "Formatter",
  "InfoContext",
  "get_logger",
  "get_log_levels",
  "set_log_level",
  "set_log_levels",
  "apply_log_levels",
  "debug",
  "info",
  "warning",
  "error",
]
