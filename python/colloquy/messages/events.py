"""
Events flowing through a turn.

GenerationEvents come from the model gateway into the session core.
OutputEvents go from the session core to the caller. Every OutputEvent can be
turned into a plain dict with a "type" discriminator, so a host can frame it
for whatever transport it uses.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from .message import Failure, FailureKind, Success, ToolCall, ToolOutcome


# =============================================================================
# GENERATION EVENTS (model gateway -> session core)
# =============================================================================


@dataclass(frozen=True)
class TextDelta:
  text: str


@dataclass(frozen=True)
class ToolCallRequested:
  tool_call: ToolCall


@dataclass(frozen=True)
class TurnComplete:
  pass


@dataclass(frozen=True)
class GenerationError:
  reason: str


GenerationEvent = Union[TextDelta, ToolCallRequested, TurnComplete, GenerationError]


# =============================================================================
# OUTPUT EVENTS (session core -> caller)
# =============================================================================


class ErrorKind(Enum):
  GATEWAY = "gateway"
  STORAGE = "storage"
  TIMEOUT = "timeout"
  LIMIT = "limit"
  BUSY = "busy"
  INTERNAL = "internal"


class OutputEventType(Enum):
  TEXT_DELTA = "text_delta"
  TOOL_INVOKED = "tool_invoked"
  TOOL_RESULT = "tool_result"
  TURN_COMPLETE = "turn_complete"
  ERROR = "error"


def outcome_to_dict(outcome: ToolOutcome) -> dict:
  if isinstance(outcome, Success):
    return {"status": "success", "payload": outcome.payload}
  return {"status": "failure", "reason": outcome.reason, "kind": outcome.kind.value}


def outcome_from_dict(data: dict) -> ToolOutcome:
  if data.get("status") == "success":
    return Success(data.get("payload"))
  return Failure(data.get("reason", ""), FailureKind(data.get("kind", FailureKind.EXECUTION.value)))


@dataclass(frozen=True)
class TextDeltaEvent:
  text: str
  type: OutputEventType = OutputEventType.TEXT_DELTA

  def to_dict(self) -> dict:
    return {"type": self.type.value, "text": self.text}


@dataclass(frozen=True)
class ToolInvokedEvent:
  tool_call_id: str
  name: str
  arguments: Any
  type: OutputEventType = OutputEventType.TOOL_INVOKED

  def to_dict(self) -> dict:
    return {"type": self.type.value, "tool_call_id": self.tool_call_id, "name": self.name, "arguments": self.arguments}


@dataclass(frozen=True)
class ToolResultEvent:
  tool_call_id: str
  name: str
  outcome: ToolOutcome
  type: OutputEventType = OutputEventType.TOOL_RESULT

  @property
  def success(self) -> bool:
    return isinstance(self.outcome, Success)

  def to_dict(self) -> dict:
    return {
      "type": self.type.value,
      "tool_call_id": self.tool_call_id,
      "name": self.name,
      "outcome": outcome_to_dict(self.outcome),
    }


@dataclass(frozen=True)
class TurnCompleteEvent:
  conversation_id: str
  message_count: int
  type: OutputEventType = OutputEventType.TURN_COMPLETE

  def to_dict(self) -> dict:
    return {"type": self.type.value, "conversation_id": self.conversation_id, "message_count": self.message_count}


@dataclass(frozen=True)
class ErrorEvent:
  reason: str
  kind: ErrorKind = ErrorKind.INTERNAL
  conversation_id: Optional[str] = None
  type: OutputEventType = OutputEventType.ERROR

  def to_dict(self) -> dict:
    return {
      "type": self.type.value,
      "reason": self.reason,
      "kind": self.kind.value,
      "conversation_id": self.conversation_id,
    }


OutputEvent = Union[TextDeltaEvent, ToolInvokedEvent, ToolResultEvent, TurnCompleteEvent, ErrorEvent]

TERMINAL_EVENTS = (TurnCompleteEvent, ErrorEvent)


def is_terminal(event: OutputEvent) -> bool:
  return isinstance(event, TERMINAL_EVENTS)
