from typing import List, Optional, Protocol, runtime_checkable

from ..messages import Conversation, ConversationMessage, ScheduledAction


@runtime_checkable
class ConversationStore(Protocol):
  """
  Durable memory for conversations.

  `commit` is the only write. It appends `new_messages` and replaces the state
  blob as one atomic unit: after a crash either everything in the commit is
  visible or nothing is. Message ids already stored are skipped, so retrying
  a commit with identical input does not duplicate messages.
  """

  async def load(self, conversation_id: str) -> Optional[Conversation]: ...

  async def commit(self, conversation_id: str, new_messages: List[ConversationMessage], new_state: dict) -> None: ...


@runtime_checkable
class ScheduleStore(Protocol):
  """Durable records of armed scheduled actions."""

  async def save_action(self, action: ScheduledAction) -> None: ...

  async def delete_action(self, action_id: str) -> bool: ...

  async def load_actions(self) -> List[ScheduledAction]: ...
