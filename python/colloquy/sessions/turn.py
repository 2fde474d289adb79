import asyncio
import json
import time

from copy import deepcopy
from enum import Enum
from typing import Callable, List, Optional, Tuple, TYPE_CHECKING

from ..config import SessionConfig
from ..errors import (
  ColloquyError,
  GatewayError,
  IntegrityError,
  IterationLimitError,
  StorageError,
  TurnTimeoutError,
)
from ..logs import get_logger
from ..messages import (
  AssistantMessage,
  Conversation,
  ConversationMessage,
  ErrorEvent,
  ErrorKind,
  GenerationError,
  OutputEvent,
  SystemMessage,
  TextDelta,
  TextDeltaEvent,
  ToolCall,
  ToolCallRequested,
  ToolInvokedEvent,
  ToolResultEvent,
  TurnComplete,
  TurnCompleteEvent,
  UserMessage,
)
from ..store.pairing import window_messages
from ..tools.registry import ToolBinding

if TYPE_CHECKING:
  from ..models.gateway import ModelGateway
  from ..store.protocol import ConversationStore

logger = get_logger("session")


class State(Enum):
  """
  Turn states.

    IDLE -> GENERATING -> (AWAITING_TOOL_RESULTS -> GENERATING)* -> PERSISTING -> IDLE

  A round that requests tools moves to AWAITING_TOOL_RESULTS; a round without
  tool requests is the final round and moves to PERSISTING. Gateway errors,
  limits and timeouts also move to PERSISTING, which commits every round that
  completed before the failure.
  """

  IDLE = "idle"
  GENERATING = "generating"
  AWAITING_TOOL_RESULTS = "awaiting_tool_results"
  PERSISTING = "persisting"


def display_arguments(arguments: str):
  """Arguments as the caller should see them: parsed when they are valid JSON."""
  if not arguments:
    return {}
  try:
    return json.loads(arguments)
  except json.JSONDecodeError:
    return arguments


class Turn:
  """
  One request/response cycle for one conversation.

  Created per inbound message and discarded afterwards. Messages produced by
  the turn accumulate in `pending` and reach the store in a single commit at
  the end, together with the updated AgentState. A round's messages are added
  to `pending` only once the round has completed, so a failure never persists
  half a round.

  Attributes:
    state: Current State
    iteration: Number of generation rounds started
    pending: Messages of completed rounds, not yet committed
    working_state: The turn's copy of the conversation's AgentState
  """

  def __init__(
    self,
    conversation: Conversation,
    user_message: UserMessage,
    gateway: "ModelGateway",
    store: "ConversationStore",
    binding: ToolBinding,
    config: SessionConfig,
    emit: Callable[[OutputEvent], None],
    working_state: Optional[dict] = None,
    instructions: Optional[str] = None,
  ):
    self.conversation = conversation
    self.conversation_id = conversation.id
    self.user_message = user_message
    self.gateway = gateway
    self.store = store
    self.binding = binding
    self.config = config
    self.emit = emit
    self.instructions = instructions

    self.state = State.IDLE
    self.iteration = 0
    self.pending: List[ConversationMessage] = [user_message]
    self.working_state = working_state if working_state is not None else deepcopy(conversation.state)

  async def execute(self) -> OutputEvent:
    """
    Run the turn to completion and emit its events.

    Returns:
      The terminal event, which has also been emitted
    """
    max_execution_time = self.config["max_execution_time"]
    error: Optional[ErrorEvent] = None

    try:
      async with asyncio.timeout(max_execution_time):
        await self._run_rounds()
    except TimeoutError:
      timeout_error = TurnTimeoutError(max_execution_time, conversation_id=self.conversation_id)
      logger.error(timeout_error.message)
      error = ErrorEvent(timeout_error.message, ErrorKind.TIMEOUT, self.conversation_id)
    except IterationLimitError as e:
      logger.warning(str(e))
      error = ErrorEvent(str(e), ErrorKind.LIMIT, self.conversation_id)
    except GatewayError as e:
      logger.error(f"Generation failed for conversation '{self.conversation_id}': {e}")
      error = ErrorEvent(str(e), ErrorKind.GATEWAY, self.conversation_id)

    storage_error = await self._persist()
    terminal = storage_error or error
    if terminal is None:
      terminal = TurnCompleteEvent(self.conversation_id, len(self.conversation.messages) + len(self.pending))

    self.state = State.IDLE
    self.emit(terminal)
    return terminal

  async def _run_rounds(self):
    while True:
      if self.iteration >= self.config["max_iterations"]:
        raise IterationLimitError(self.config["max_iterations"])

      self.iteration += 1
      self.state = State.GENERATING
      logger.debug(f"[TURN→{self.state.name}] conversation={self.conversation_id}, iteration={self.iteration}")

      text, tool_calls = await self._generate_round()

      if not tool_calls:
        self.pending.append(AssistantMessage(content=text))
        return

      self.state = State.AWAITING_TOOL_RESULTS
      logger.debug(f"[TURN→{self.state.name}] {len(tool_calls)} tool calls requested")
      await self._run_tools(text, tool_calls)

  async def _generate_round(self) -> Tuple[str, List[ToolCall]]:
    """
    Consume one generation stream until TurnComplete.

    Text deltas are forwarded as they arrive. Tool requests are collected and
    only acted on after the round has ended.
    """
    event_timeout = self.config["event_timeout"]
    text_parts: List[str] = []
    tool_calls: List[ToolCall] = []

    stream = self.gateway.generate(self.history(), self.binding.specs)
    try:
      while True:
        try:
          async with asyncio.timeout(event_timeout):
            event = await anext(stream)
        except StopAsyncIteration:
          raise GatewayError("Generation ended without completing the round")
        except TimeoutError:
          raise GatewayError(f"No generation event within {event_timeout}s")
        except ColloquyError:
          raise
        except Exception as e:
          raise GatewayError(f"{type(e).__name__}: {e}") from e

        match event:
          case TextDelta(text=text):
            text_parts.append(text)
            self.emit(TextDeltaEvent(text))
          case ToolCallRequested(tool_call=tool_call):
            tool_calls.append(tool_call)
          case TurnComplete():
            return "".join(text_parts), tool_calls
          case GenerationError(reason=reason):
            raise GatewayError(reason)
          case _:
            logger.warning(f"Ignoring unexpected generation event: {event!r}")
    finally:
      aclose = getattr(stream, "aclose", None)
      if aclose is not None:
        await aclose()

  async def _run_tools(self, text: str, tool_calls: List[ToolCall]):
    for tool_call in tool_calls:
      self.emit(ToolInvokedEvent(tool_call.id, tool_call.name, display_arguments(tool_call.arguments)))

    tool_timeout = self.config["tool_timeout"]
    # The join is a barrier: results come back in request order whatever order the tools finish in.
    results = await asyncio.gather(*(self.binding.execute(tool_call, tool_timeout) for tool_call in tool_calls))

    self.pending.append(AssistantMessage(content=text, tool_calls=list(tool_calls)))
    self.pending.extend(result.to_message() for result in results)

    for result in results:
      self.emit(ToolResultEvent(result.tool_call_id, result.name, result.outcome))

  def history(self) -> List[ConversationMessage]:
    """The model input: instructions followed by a window over stored and pending messages."""
    messages = window_messages(self.conversation.messages + self.pending, self.config["max_history_messages"])
    if self.instructions:
      return [SystemMessage(self.instructions)] + messages
    return messages

  def next_state(self) -> dict:
    state = self.working_state
    state["turns"] = state.get("turns", 0) + 1
    state["last_turn_at"] = time.time()
    if self.user_message.scheduled_action_id:
      handled = state.setdefault("handled_actions", [])
      if self.user_message.scheduled_action_id not in handled:
        handled.append(self.user_message.scheduled_action_id)
      # only recently fired actions can be delivered again
      del handled[: -self.config["max_handled_actions"]]
    return state

  async def _persist(self) -> Optional[ErrorEvent]:
    """
    Commit pending messages and state as one unit, retrying storage errors
    with exponential backoff.

    Returns:
      An ErrorEvent if the commit could not be made durable, None otherwise
    """
    self.state = State.PERSISTING
    logger.debug(f"[TURN→{self.state.name}] committing {len(self.pending)} messages")

    new_state = self.next_state()
    retries = self.config["commit_retries"]
    backoff = self.config["commit_backoff"]

    for attempt in range(retries + 1):
      try:
        await self.store.commit(self.conversation_id, self.pending, new_state)
        return None
      except IntegrityError as e:
        logger.error(f"Refusing to commit conversation '{self.conversation_id}': {e}")
        return ErrorEvent(str(e), ErrorKind.STORAGE, self.conversation_id)
      except StorageError as e:
        if attempt == retries:
          logger.error(f"Commit failed after {retries + 1} attempts for conversation '{self.conversation_id}': {e}")
          return ErrorEvent(f"Failed to persist conversation: {e}", ErrorKind.STORAGE, self.conversation_id)
        logger.warning(f"Commit attempt {attempt + 1} failed for conversation '{self.conversation_id}', retrying...")
        await asyncio.sleep(backoff * 2**attempt)
