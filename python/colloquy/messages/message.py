import cattrs
import json
import time
import uuid

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, List, Union


def new_id() -> str:
  return uuid.uuid4().hex


class ConversationRole(Enum):
  USER = "user"
  SYSTEM = "system"
  ASSISTANT = "assistant"
  TOOL = "tool"


@dataclass(frozen=True)
class FunctionToolCall:
  name: str
  arguments: str = ""


@dataclass(frozen=True)
class ToolCall:
  """A tool call requested by the model. Never mutated once created."""

  id: str
  function: FunctionToolCall
  type: str = "function"

  @property
  def name(self) -> str:
    return self.function.name

  @property
  def arguments(self) -> str:
    return self.function.arguments


@dataclass
class UserMessage:
  content: str
  id: str = field(default_factory=new_id)
  timestamp: float = field(default_factory=time.time)
  scheduled_action_id: Optional[str] = None
  role: ConversationRole = ConversationRole.USER


@dataclass
class SystemMessage:
  content: str
  role: ConversationRole = ConversationRole.SYSTEM


@dataclass
class AssistantMessage:
  content: str = ""
  tool_calls: List[ToolCall] = field(default_factory=list)
  id: str = field(default_factory=new_id)
  timestamp: float = field(default_factory=time.time)
  role: ConversationRole = ConversationRole.ASSISTANT


@dataclass
class ToolCallResponseMessage:
  tool_call_id: str
  name: str
  content: str = ""
  success: bool = True
  id: str = field(default_factory=new_id)
  timestamp: float = field(default_factory=time.time)
  role: ConversationRole = ConversationRole.TOOL


ConversationMessage = Union[UserMessage, SystemMessage, AssistantMessage, ToolCallResponseMessage]


class FailureKind(Enum):
  UNKNOWN_TOOL = "unknown_tool"
  VALIDATION = "validation"
  EXECUTION = "execution"
  TIMEOUT = "timeout"


@dataclass(frozen=True)
class Success:
  payload: Any = None


@dataclass(frozen=True)
class Failure:
  reason: str
  kind: FailureKind = FailureKind.EXECUTION


ToolOutcome = Union[Success, Failure]


@dataclass(frozen=True)
class ToolCallResult:
  """
  The resolution of exactly one ToolCall.

  A result is produced for every request, including unknown tools, rejected
  arguments, exceptions and timeouts, so the model always sees an answer.
  """

  tool_call_id: str
  name: str
  outcome: ToolOutcome

  @property
  def success(self) -> bool:
    return isinstance(self.outcome, Success)

  def content(self) -> str:
    if isinstance(self.outcome, Failure):
      return f"Tool call failed ({self.outcome.kind.value}): {self.outcome.reason}"

    payload = self.outcome.payload
    if payload is None:
      return ""
    if isinstance(payload, str):
      return payload
    return json.dumps(payload, default=str)

  def to_message(self) -> ToolCallResponseMessage:
    return ToolCallResponseMessage(
      tool_call_id=self.tool_call_id,
      name=self.name,
      content=self.content(),
      success=self.success,
    )


@dataclass
class Conversation:
  """
  The durable unit of memory for one dialogue.

  `messages` is append-only and ordered; `state` is an application defined,
  JSON-serializable dict.
  """

  id: str
  messages: List[ConversationMessage] = field(default_factory=list)
  state: dict = field(default_factory=dict)
  updated_at: Optional[float] = None


CACHE = None


class MessageConverter:
  @staticmethod
  def create():
    global CACHE
    if CACHE:
      return CACHE

    CACHE = MessageConverter()
    return CACHE

  def __init__(self):
    self.converter = cattrs.Converter()
    self._register_hooks()

  def _register_hooks(self):
    # ConversationMessage
    @self.converter.register_structure_hook
    def structure_conversation_message(obj: dict, cls) -> ConversationMessage:
      role = obj.get("role")
      mapping = {
        "user": UserMessage,
        "system": SystemMessage,
        "assistant": AssistantMessage,
        "tool": ToolCallResponseMessage,
      }
      typ = mapping.get(role)
      if typ is None:
        raise ValueError(f"Unknown conversation role: {role}")
      return self.converter.structure(obj, typ)

  def conversation_message_from_dict(self, data: dict) -> ConversationMessage:
    return self.converter.structure(data, ConversationMessage)

  def message_to_dict(self, message: ConversationMessage) -> dict:
    return self.converter.unstructure(message)

  def message_from_json(self, data: str) -> ConversationMessage:
    return self.conversation_message_from_dict(json.loads(data))

  def message_to_json(self, message: ConversationMessage) -> str:
    return json.dumps(self.message_to_dict(message))

  def messages_to_dicts(self, messages: List[ConversationMessage]) -> List[dict]:
    return [self.message_to_dict(m) for m in messages]

  def messages_from_dicts(self, data: List[dict]) -> List[ConversationMessage]:
    return [self.conversation_message_from_dict(m) for m in data]


@dataclass
class ScheduledAction:
  """A deferred action owned by the Scheduler. `payload` must be JSON-serializable."""

  conversation_id: str
  fire_at: float
  payload: dict = field(default_factory=dict)
  id: str = field(default_factory=new_id)
