import asyncio
import copy
import time

from typing import Dict, List, Optional

from .pairing import check_tool_pairing
from ..logs import get_logger
from ..messages import Conversation, ConversationMessage, ScheduledAction

logger = get_logger("store")


class InMemoryStore:
  """
  Conversation and schedule store held in process memory.

  Commits build a new Conversation and swap it in under a lock, so readers
  never observe half of a commit. Loads return deep copies.
  """

  def __init__(self):
    self.lock = asyncio.Lock()
    self.conversations: Dict[str, Conversation] = {}
    self.actions: Dict[str, ScheduledAction] = {}
    self.metrics = {
      "commits": 0,
      "messages_written": 0,
      "duplicates_skipped": 0,
    }

  async def load(self, conversation_id: str) -> Optional[Conversation]:
    async with self.lock:
      conversation = self.conversations.get(conversation_id)
      if conversation is None:
        return None
      return copy.deepcopy(conversation)

  async def commit(self, conversation_id: str, new_messages: List[ConversationMessage], new_state: dict) -> None:
    async with self.lock:
      current = self.conversations.get(conversation_id) or Conversation(id=conversation_id)

      stored_ids = {m.id for m in current.messages}
      to_append = []
      for message in new_messages:
        if message.id in stored_ids:
          self.metrics["duplicates_skipped"] += 1
          continue
        stored_ids.add(message.id)
        to_append.append(copy.deepcopy(message))

      messages = current.messages + to_append
      check_tool_pairing(conversation_id, messages)

      self.conversations[conversation_id] = Conversation(
        id=conversation_id,
        messages=messages,
        state=copy.deepcopy(new_state),
        updated_at=time.time(),
      )
      self.metrics["commits"] += 1
      self.metrics["messages_written"] += len(to_append)
      logger.debug(f"Committed {len(to_append)} messages to conversation '{conversation_id}'")

  async def save_action(self, action: ScheduledAction) -> None:
    async with self.lock:
      self.actions[action.id] = copy.deepcopy(action)

  async def delete_action(self, action_id: str) -> bool:
    async with self.lock:
      return self.actions.pop(action_id, None) is not None

  async def load_actions(self) -> List[ScheduledAction]:
    async with self.lock:
      return sorted((copy.deepcopy(a) for a in self.actions.values()), key=lambda a: a.fire_at)
