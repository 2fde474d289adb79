import copy

from colorlog import ColoredFormatter
from datetime import datetime, UTC

GREY = "\033[38;5;245m"
RESET = "\033[0m"

# four or five letters keep the message column aligned
SHORT_LEVEL_NAMES = {"WARNING": "WARN", "CRITICAL": "FATAL"}


class Formatter(ColoredFormatter):
  """
  Colored log lines with UTC timestamps.

  Timestamps and logger names are greyed out so messages stand out. Records
  are copied before they are decorated; other handlers see them unchanged.
  """

  def __init__(self, *args, **kwargs):
    kwargs.setdefault("datefmt", "%Y-%m-%dT%H:%M:%S.%fZ")
    super().__init__(*args, **kwargs)

  def format(self, record) -> str:
    record = copy.copy(record)
    record.levelname = SHORT_LEVEL_NAMES.get(record.levelname, record.levelname)
    return super().format(record)

  def formatTime(self, record, datefmt=None) -> str:
    created = datetime.fromtimestamp(record.created, UTC)
    formatted = created.strftime(datefmt) if datefmt else created.isoformat()
    return f"{GREY}{formatted}{RESET}"

  def formatMessage(self, record) -> str:
    record.name = f"{GREY}{record.name}{RESET}"
    return super().formatMessage(record)
