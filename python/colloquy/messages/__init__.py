from .message import (
  new_id,
  ConversationRole,
  FunctionToolCall,
  ToolCall,
  UserMessage,
  SystemMessage,
  AssistantMessage,
  ToolCallResponseMessage,
  ConversationMessage,
  FailureKind,
  Success,
  Failure,
  ToolOutcome,
  ToolCallResult,
  Conversation,
  ScheduledAction,
  MessageConverter,
)
from .events import (
  TextDelta,
  ToolCallRequested,
  TurnComplete,
  GenerationError,
  GenerationEvent,
  ErrorKind,
  OutputEventType,
  TextDeltaEvent,
  ToolInvokedEvent,
  ToolResultEvent,
  TurnCompleteEvent,
  ErrorEvent,
  OutputEvent,
  is_terminal,
  outcome_to_dict,
  outcome_from_dict,
)

__all__ = [
  "new_id",
  "ConversationRole",
  "FunctionToolCall",
  "ToolCall",
  "UserMessage",
  "SystemMessage",
  "AssistantMessage",
  "ToolCallResponseMessage",
  "ConversationMessage",
  "FailureKind",
  "Success",
  "Failure",
  "ToolOutcome",
  "ToolCallResult",
  "Conversation",
  "ScheduledAction",
  "MessageConverter",
  "TextDelta",
  "ToolCallRequested",
  "TurnComplete",
  "GenerationError",
  "GenerationEvent",
  "ErrorKind",
  "OutputEventType",
  "TextDeltaEvent",
  "ToolInvokedEvent",
  "ToolResultEvent",
  "TurnCompleteEvent",
  "ErrorEvent",
  "OutputEvent",
  "is_terminal",
  "outcome_to_dict",
  "outcome_from_dict",
]
