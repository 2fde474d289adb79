import asyncio
import json
import time

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from typing import List, Optional
from urllib.parse import urlparse

from .pairing import check_tool_pairing
from ..config import get_database_url
from ..errors import IntegrityError, StorageError
from ..logs import get_logger
from ..messages import Conversation, ConversationMessage, MessageConverter, ScheduledAction

logger = get_logger("store")


_SCHEMA = [
  """
  CREATE TABLE IF NOT EXISTS conversations (
    id TEXT PRIMARY KEY,
    state JSONB NOT NULL,
    updated_at DOUBLE PRECISION NOT NULL
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL REFERENCES conversations(id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    role TEXT NOT NULL,
    message JSONB NOT NULL
  )
  """,
  """
  CREATE TABLE IF NOT EXISTS scheduled_actions (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    fire_at DOUBLE PRECISION NOT NULL,
    payload JSONB NOT NULL
  )
  """,
  "CREATE INDEX IF NOT EXISTS idx_messages_conversation_seq ON messages (conversation_id, seq)",
  "CREATE INDEX IF NOT EXISTS idx_scheduled_actions_fire_at ON scheduled_actions (fire_at)",
]


def anonymize_url(url: str) -> str:
  parsed = urlparse(url)
  host = parsed.hostname or ""
  if parsed.port:
    host = f"{host}:{parsed.port}"
  return f"{parsed.scheme}://*****:*****@{host}{parsed.path}"


class PostgresStore:
  """
  Conversation and schedule store backed by PostgreSQL.

  One async connection is shared and guarded by a lock. Each commit runs in a
  single transaction that takes a per-conversation advisory lock, so commits
  from several processes to the same conversation are serialized.
  """

  def __init__(self, url: Optional[str] = None, max_retries: int = 3):
    self.url = url or get_database_url()
    if not self.url:
      raise ValueError("No database configured. Set COLLOQUY_DATABASE_URL or pass url.")
    self.max_retries = max_retries
    self.connection = None
    self.lock = asyncio.Lock()
    self.converter = MessageConverter.create()

  async def initialize_database(self):
    """Connect with retry logic and create the schema."""
    if self.connection:
      return

    logger.info("Connecting to database at %s", anonymize_url(self.url))

    for attempt in range(self.max_retries):
      try:
        self.connection = await psycopg.AsyncConnection.connect(
          self.url, row_factory=dict_row, keepalives=1, keepalives_idle=30, keepalives_interval=5, keepalives_count=5
        )
        break
      except psycopg.OperationalError as e:
        if attempt == self.max_retries - 1:
          logger.error(f"Failed to connect after {self.max_retries} attempts: {e}")
          raise StorageError(f"Failed to connect to database: {e}") from e
        logger.warning(f"Database connection attempt {attempt + 1} failed, retrying...")
        await asyncio.sleep(2**attempt)  # Exponential backoff

    async with self.connection.cursor() as cur:
      for statement in _SCHEMA:
        await cur.execute(statement)
    await self.connection.commit()

  async def close(self):
    if self.connection:
      await self.connection.close()
      self.connection = None

  async def load(self, conversation_id: str) -> Optional[Conversation]:
    await self.initialize_database()

    try:
      async with self.lock:
        async with self.connection.cursor() as cur:
          await cur.execute("SELECT id, state, updated_at FROM conversations WHERE id = %s", (conversation_id,))
          conversation_row = await cur.fetchone()
          if conversation_row is None:
            await self.connection.commit()
            return None
          await cur.execute(
            "SELECT message FROM messages WHERE conversation_id = %s ORDER BY seq", (conversation_id,)
          )
          message_rows = await cur.fetchall()
        await self.connection.commit()
    except psycopg.Error as e:
      raise StorageError(f"Failed to load conversation '{conversation_id}': {e}") from e

    messages = self.converter.messages_from_dicts([row["message"] for row in message_rows])
    check_tool_pairing(conversation_id, messages)

    return Conversation(
      id=conversation_row["id"],
      messages=messages,
      state=conversation_row["state"],
      updated_at=conversation_row["updated_at"],
    )

  async def commit(self, conversation_id: str, new_messages: List[ConversationMessage], new_state: dict) -> None:
    await self.initialize_database()
    now = time.time()

    try:
      async with self.lock:
        async with self.connection.transaction():
          async with self.connection.cursor() as cur:
            await cur.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (conversation_id,))
            await cur.execute(
              "SELECT id, message FROM messages WHERE conversation_id = %s ORDER BY seq", (conversation_id,)
            )
            existing = await cur.fetchall()
            stored_ids = {row["id"] for row in existing}
            appended = [m for m in new_messages if m.id not in stored_ids]

            messages = self.converter.messages_from_dicts([row["message"] for row in existing]) + appended
            check_tool_pairing(conversation_id, messages)

            await cur.execute(
              "INSERT INTO conversations (id, state, updated_at) VALUES (%s, %s, %s)"
              " ON CONFLICT (id) DO UPDATE SET state = EXCLUDED.state, updated_at = EXCLUDED.updated_at",
              (conversation_id, Jsonb(new_state), now),
            )
            if appended:
              await cur.executemany(
                "INSERT INTO messages (id, conversation_id, seq, role, message) VALUES (%s, %s, %s, %s, %s)"
                " ON CONFLICT (id) DO NOTHING",
                [
                  (m.id, conversation_id, len(existing) + i + 1, m.role.value, Jsonb(self.converter.message_to_dict(m)))
                  for i, m in enumerate(appended)
                ],
              )
    except IntegrityError:
      raise
    except psycopg.Error as e:
      raise StorageError(f"Failed to commit conversation '{conversation_id}': {e}") from e

    logger.debug(f"Committed {len(appended)} messages to conversation '{conversation_id}'")

  async def save_action(self, action: ScheduledAction) -> None:
    await self._execute(
      "INSERT INTO scheduled_actions (id, conversation_id, fire_at, payload) VALUES (%s, %s, %s, %s)"
      " ON CONFLICT (id) DO UPDATE SET fire_at = EXCLUDED.fire_at, payload = EXCLUDED.payload",
      (action.id, action.conversation_id, action.fire_at, Jsonb(action.payload)),
    )

  async def delete_action(self, action_id: str) -> bool:
    return await self._execute("DELETE FROM scheduled_actions WHERE id = %s", (action_id,)) > 0

  async def load_actions(self) -> List[ScheduledAction]:
    await self.initialize_database()
    try:
      async with self.lock:
        async with self.connection.cursor() as cur:
          await cur.execute("SELECT id, conversation_id, fire_at, payload FROM scheduled_actions ORDER BY fire_at")
          rows = await cur.fetchall()
        await self.connection.commit()
    except psycopg.Error as e:
      raise StorageError(f"Failed to load scheduled actions: {e}") from e

    return [
      ScheduledAction(
        id=row["id"],
        conversation_id=row["conversation_id"],
        fire_at=row["fire_at"],
        payload=row["payload"] if isinstance(row["payload"], dict) else json.loads(row["payload"]),
      )
      for row in rows
    ]

  async def health_check(self) -> bool:
    """Check if database connection is healthy."""
    if not self.connection:
      return False

    try:
      async with self.lock:
        async with self.connection.cursor() as cur:
          await cur.execute("SELECT 1")
          await cur.fetchone()
        await self.connection.commit()
      return True
    except psycopg.Error as e:
      logger.error(f"Database health check failed: {e}")
      return False

  async def _execute(self, query: str, params: tuple) -> int:
    await self.initialize_database()
    try:
      async with self.lock:
        async with self.connection.cursor() as cur:
          await cur.execute(query, params)
          rowcount = cur.rowcount
        await self.connection.commit()
      return rowcount
    except psycopg.Error as e:
      raise StorageError(f"Database operation failed: {e}") from e
