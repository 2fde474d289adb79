import asyncio
import json
import sqlite3
import time

from contextlib import closing
from pathlib import Path
from typing import List, Optional

from .pairing import check_tool_pairing
from ..config import get_sqlite_path
from ..errors import IntegrityError, StorageError
from ..logs import get_logger
from ..messages import Conversation, ConversationMessage, MessageConverter, ScheduledAction

logger = get_logger("store")


_CONVERSATIONS_DDL = """
CREATE TABLE IF NOT EXISTS conversations (
  id TEXT PRIMARY KEY,
  state TEXT NOT NULL,
  updated_at REAL NOT NULL
);
"""

_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS messages (
  id TEXT PRIMARY KEY,
  conversation_id TEXT NOT NULL,
  seq INTEGER NOT NULL,
  role TEXT NOT NULL,
  message TEXT NOT NULL,
  FOREIGN KEY(conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);
"""

_SCHEDULED_ACTIONS_DDL = """
CREATE TABLE IF NOT EXISTS scheduled_actions (
  id TEXT PRIMARY KEY,
  conversation_id TEXT NOT NULL,
  fire_at REAL NOT NULL,
  payload TEXT NOT NULL
);
"""

_CREATE_INDEXES = [
  "CREATE INDEX IF NOT EXISTS idx_messages_conversation_seq ON messages(conversation_id, seq);",
  "CREATE INDEX IF NOT EXISTS idx_scheduled_actions_fire_at ON scheduled_actions(fire_at);",
]


def _ensure_pragmas(connection: sqlite3.Connection) -> None:
  connection.execute("PRAGMA foreign_keys = ON;")
  connection.execute("PRAGMA journal_mode = WAL;")


class SQLiteStore:
  """
  Conversation and schedule store backed by a SQLite file.

  All SQLite work happens in a worker thread. Writes are serialized with an
  asyncio lock and each commit is a single IMMEDIATE transaction, so a crash
  mid-commit leaves the previous state intact.
  """

  def __init__(self, path: Optional[str] = None):
    path = Path(path or get_sqlite_path())
    if not path.is_absolute():
      path = Path.cwd() / path
    self.path = str(path)
    self.write_lock = asyncio.Lock()
    self.initialized = False
    self.converter = MessageConverter.create()

  async def init(self) -> None:
    """Create tables and indexes if they do not exist."""
    if self.initialized:
      return

    Path(self.path).parent.mkdir(parents=True, exist_ok=True)

    def _init() -> None:
      with closing(self._connect()) as connection:
        connection.execute(_CONVERSATIONS_DDL)
        connection.execute(_MESSAGES_DDL)
        connection.execute(_SCHEDULED_ACTIONS_DDL)
        for statement in _CREATE_INDEXES:
          connection.execute(statement)

    await self._run(_init)
    self.initialized = True
    logger.info(f"Conversation database initialised at {self.path}")

  async def close(self) -> None:
    # Connections are opened per operation.
    return None

  async def load(self, conversation_id: str) -> Optional[Conversation]:
    await self.init()

    def _load():
      with closing(self._connect()) as connection:
        conversation_row = connection.execute(
          "SELECT id, state, updated_at FROM conversations WHERE id = ?", (conversation_id,)
        ).fetchone()
        if conversation_row is None:
          return None, []
        message_rows = connection.execute(
          "SELECT message FROM messages WHERE conversation_id = ? ORDER BY seq ASC", (conversation_id,)
        ).fetchall()
        return conversation_row, message_rows

    conversation_row, message_rows = await self._run(_load)
    if conversation_row is None:
      return None

    messages = [self.converter.message_from_json(row["message"]) for row in message_rows]
    check_tool_pairing(conversation_id, messages)

    return Conversation(
      id=conversation_row["id"],
      messages=messages,
      state=json.loads(conversation_row["state"]),
      updated_at=conversation_row["updated_at"],
    )

  async def commit(self, conversation_id: str, new_messages: List[ConversationMessage], new_state: dict) -> None:
    await self.init()

    rows = [(m.id, m.role.value, self.converter.message_to_json(m)) for m in new_messages]
    state_json = json.dumps(new_state)
    now = time.time()

    def _commit() -> int:
      with closing(self._connect()) as connection:
        connection.execute("BEGIN IMMEDIATE")
        try:
          existing = connection.execute(
            "SELECT id, message FROM messages WHERE conversation_id = ? ORDER BY seq ASC", (conversation_id,)
          ).fetchall()
          stored_ids = {row["id"] for row in existing}
          appended = [row for row in rows if row[0] not in stored_ids]

          messages = [self.converter.message_from_json(row["message"]) for row in existing]
          messages += [self.converter.message_from_json(row[2]) for row in appended]
          check_tool_pairing(conversation_id, messages)

          connection.execute(
            "INSERT INTO conversations (id, state, updated_at) VALUES (?, ?, ?)"
            " ON CONFLICT(id) DO UPDATE SET state = excluded.state, updated_at = excluded.updated_at",
            (conversation_id, state_json, now),
          )

          next_seq = len(existing)
          for message_id, role, message_json in appended:
            next_seq += 1
            connection.execute(
              "INSERT OR IGNORE INTO messages (id, conversation_id, seq, role, message) VALUES (?, ?, ?, ?, ?)",
              (message_id, conversation_id, next_seq, role, message_json),
            )
          connection.execute("COMMIT")
          return len(appended)
        except BaseException:
          connection.execute("ROLLBACK")
          raise

    async with self.write_lock:
      written = await self._run(_commit)
    logger.debug(f"Committed {written} messages to conversation '{conversation_id}'")

  async def save_action(self, action: ScheduledAction) -> None:
    await self.init()
    async with self.write_lock:
      await self._run(
        self._execute,
        "INSERT INTO scheduled_actions (id, conversation_id, fire_at, payload) VALUES (?, ?, ?, ?)"
        " ON CONFLICT(id) DO UPDATE SET fire_at = excluded.fire_at, payload = excluded.payload",
        (action.id, action.conversation_id, action.fire_at, json.dumps(action.payload)),
      )

  async def delete_action(self, action_id: str) -> bool:
    await self.init()
    async with self.write_lock:
      deleted = await self._run(self._execute, "DELETE FROM scheduled_actions WHERE id = ?", (action_id,))
    return deleted > 0

  async def load_actions(self) -> List[ScheduledAction]:
    await self.init()
    rows = await self._run(
      self._fetchall, "SELECT id, conversation_id, fire_at, payload FROM scheduled_actions ORDER BY fire_at ASC"
    )
    return [
      ScheduledAction(
        id=row["id"],
        conversation_id=row["conversation_id"],
        fire_at=row["fire_at"],
        payload=json.loads(row["payload"]),
      )
      for row in rows
    ]

  def _connect(self) -> sqlite3.Connection:
    # Autocommit mode; transactions are opened explicitly.
    connection = sqlite3.connect(self.path, isolation_level=None)
    connection.row_factory = sqlite3.Row
    _ensure_pragmas(connection)
    return connection

  def _execute(self, query: str, params: tuple = ()) -> int:
    with closing(self._connect()) as connection:
      cursor = connection.execute(query, params)
      return cursor.rowcount

  def _fetchall(self, query: str, params: tuple = ()) -> list[sqlite3.Row]:
    with closing(self._connect()) as connection:
      return connection.execute(query, params).fetchall()

  async def _run(self, func, *args):
    try:
      return await asyncio.to_thread(func, *args)
    except IntegrityError:
      raise
    except sqlite3.Error as e:
      raise StorageError(f"SQLite operation failed: {e}") from e
