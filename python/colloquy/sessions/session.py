import asyncio
import json

from copy import deepcopy
from typing import AsyncIterator, Dict, Optional, Set

from .turn import Turn
from ..config import SessionConfig, resolve_config
from ..errors import (
  ColloquyError,
  ConversationBusyError,
  DuplicateDeliveryError,
  StorageError,
  ValidationError,
)
from ..logs import get_logger
from ..messages import (
  Conversation,
  ErrorEvent,
  ErrorKind,
  OutputEvent,
  ScheduledAction,
  UserMessage,
)
from ..models.gateway import ModelGateway
from ..scheduler import Scheduler
from ..store.protocol import ConversationStore
from ..tools.registry import ToolRegistry

logger = get_logger("session")

# Marks the end of a turn's event queue.
_END = object()


class AgentSession:
  """
  The agent session core.

  Turns an inbound user message plus durable conversation memory into a
  stream of OutputEvents, running tool round-trips in between, and commits
  the result atomically.

  Turns for one conversation never overlap: a per-conversation lock
  serializes them, and the busy policy decides whether a second message waits
  ("queue") or is refused with an ErrorEvent of kind "busy" ("reject"). Turns
  for different conversations run in parallel.

  Each turn runs in its own task and feeds its events through a queue. A
  caller that stops iterating does not stop the turn; it still runs to a
  committed state, and the result can be read with get_conversation().

  Example:
    session = AgentSession(LiteLLMGateway("openai/gpt-4o-mini"), SQLiteStore("chat.db"), ToolRegistry())
    async for event in session.handle_message("conversation-1", "What's the weather in Paris?"):
      print(event.to_dict())
  """

  def __init__(
    self,
    gateway: ModelGateway,
    store: ConversationStore,
    registry: Optional[ToolRegistry] = None,
    scheduler: Optional[Scheduler] = None,
    config: Optional[SessionConfig] = None,
    instructions: Optional[str] = None,
  ):
    self.gateway = gateway
    self.store = store
    self.registry = registry if registry is not None else ToolRegistry()
    self.scheduler = scheduler
    self.config = resolve_config(config)
    self.instructions = instructions

    self.locks: Dict[str, asyncio.Lock] = {}
    self.active: Dict[str, int] = {}
    self.tasks: Set[asyncio.Task] = set()

  async def start(self):
    """Start delivering scheduled actions to this session."""
    if self.scheduler is not None:
      await self.scheduler.start(self.handle_scheduled_action)

  async def close(self):
    """Wait for running turns to commit, then stop the scheduler."""
    await self.wait_idle()
    if self.scheduler is not None:
      await self.scheduler.stop()

  async def wait_idle(self):
    """Wait until no turn is running."""
    while self.tasks:
      await asyncio.gather(*list(self.tasks), return_exceptions=True)

  async def get_conversation(self, conversation_id: str) -> Conversation:
    conversation = await self.store.load(conversation_id)
    return conversation if conversation is not None else Conversation(id=conversation_id)

  def handle_message(self, conversation_id: str, content: str) -> AsyncIterator[OutputEvent]:
    """
    Start a turn for an inbound user message.

    Returns:
      An async iterator over the turn's events. It ends after exactly one
      terminal event (TurnCompleteEvent or ErrorEvent).

    Raises:
      ValidationError: If the conversation id or content is empty
    """
    if not conversation_id:
      raise ValidationError("conversation_id must not be empty")
    if content is None or not content.strip():
      raise ValidationError("Message content must not be empty")

    if self.config["busy_policy"] == "reject" and self.active.get(conversation_id, 0) > 0:
      error = ConversationBusyError(conversation_id)
      logger.info(str(error))
      return single_event(ErrorEvent(str(error), ErrorKind.BUSY, conversation_id))

    queue = self._start_turn(conversation_id, UserMessage(content=content))
    return drain(queue)

  async def handle_scheduled_action(self, action: ScheduledAction):
    """
    Deliver a fired scheduled action as an inbound message and run the turn.

    Raises:
      ColloquyError: If the turn could not be made durable, so the scheduler
        keeps the action and retries it
    """
    payload = action.payload or {}
    content = payload.get("message") or json.dumps(payload)
    user_message = UserMessage(content=content, scheduled_action_id=action.id)

    terminal = None
    async for event in drain(self._start_turn(action.conversation_id, user_message)):
      terminal = event

    if isinstance(terminal, ErrorEvent) and terminal.kind in (ErrorKind.STORAGE, ErrorKind.INTERNAL):
      raise ColloquyError(f"Scheduled action '{action.id}' was not delivered: {terminal.reason}")

  def _start_turn(self, conversation_id: str, user_message: UserMessage) -> asyncio.Queue:
    queue: asyncio.Queue = asyncio.Queue()
    self.active[conversation_id] = self.active.get(conversation_id, 0) + 1
    if conversation_id not in self.locks:
      self.locks[conversation_id] = asyncio.Lock()

    task = asyncio.create_task(self._run_turn(conversation_id, user_message, queue))
    self.tasks.add(task)
    task.add_done_callback(self.tasks.discard)
    return queue

  async def _run_turn(self, conversation_id: str, user_message: UserMessage, queue: asyncio.Queue):
    try:
      async with self.locks[conversation_id]:
        conversation = await self.store.load(conversation_id)
        if conversation is None:
          conversation = Conversation(id=conversation_id)

        action_id = user_message.scheduled_action_id
        if action_id and action_id in conversation.state.get("handled_actions", []):
          raise DuplicateDeliveryError(action_id, conversation_id)

        working_state = deepcopy(conversation.state)
        binding = await self.registry.bind(conversation_id, working_state)
        turn = Turn(
          conversation,
          user_message,
          gateway=self.gateway,
          store=self.store,
          binding=binding,
          config=self.config,
          emit=queue.put_nowait,
          working_state=working_state,
          instructions=self.instructions,
        )
        await turn.execute()
    except DuplicateDeliveryError as e:
      logger.debug(f"Ignoring duplicate delivery: {e}")
    except StorageError as e:
      logger.error(f"Failed to load conversation '{conversation_id}': {e}")
      queue.put_nowait(ErrorEvent(str(e), ErrorKind.STORAGE, conversation_id))
    except Exception as e:
      logger.error(f"Turn failed for conversation '{conversation_id}': {type(e).__name__}: {e}", exc_info=True)
      queue.put_nowait(ErrorEvent(f"Internal error: {type(e).__name__}: {e}", ErrorKind.INTERNAL, conversation_id))
    finally:
      queue.put_nowait(_END)
      self.active[conversation_id] -= 1
      if self.active[conversation_id] == 0:
        del self.active[conversation_id]
        del self.locks[conversation_id]


async def drain(queue: asyncio.Queue) -> AsyncIterator[OutputEvent]:
  while True:
    event = await queue.get()
    if event is _END:
      return
    yield event


async def single_event(event: OutputEvent) -> AsyncIterator[OutputEvent]:
  yield event
