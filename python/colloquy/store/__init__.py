from .protocol import ConversationStore, ScheduleStore
from .in_memory import InMemoryStore
from .sqlite import SQLiteStore
from .postgres import PostgresStore
from .pairing import (
  get_tool_use_ids,
  get_tool_result_id,
  find_safe_trim_count,
  window_messages,
  validate_tool_pairing,
  check_tool_pairing,
)

__all__ = [
  "ConversationStore",
  "ScheduleStore",
  "InMemoryStore",
  "SQLiteStore",
  "PostgresStore",
  "get_tool_use_ids",
  "get_tool_result_id",
  "find_safe_trim_count",
  "window_messages",
  "validate_tool_pairing",
  "check_tool_pairing",
]
