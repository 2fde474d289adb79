from .config import SessionConfig, resolve_config, load_config_from_env
from .errors import (
  ColloquyError,
  ValidationError,
  ToolExecutionError,
  ColloquyTimeoutError,
  ToolTimeoutError,
  TurnTimeoutError,
  GatewayError,
  StorageError,
  IntegrityError,
  DuplicateDeliveryError,
  ConversationBusyError,
  IterationLimitError,
)
from .logs import info, debug, warning, error, get_logger, set_log_level, set_log_levels
from .messages import (
  Conversation,
  ConversationRole,
  UserMessage,
  AssistantMessage,
  ToolCallResponseMessage,
  SystemMessage,
  ToolCall,
  FunctionToolCall,
  ToolCallResult,
  Success,
  Failure,
  FailureKind,
  ScheduledAction,
  TextDelta,
  ToolCallRequested,
  TurnComplete,
  GenerationError,
  TextDeltaEvent,
  ToolInvokedEvent,
  ToolResultEvent,
  TurnCompleteEvent,
  ErrorEvent,
  ErrorKind,
)
from .models import ModelGateway, LiteLLMGateway
from .scheduler import Scheduler
from .sessions import AgentSession
from .store import ConversationStore, ScheduleStore, InMemoryStore, SQLiteStore, PostgresStore
from .tools import (
  InvokableTool,
  Tool,
  ToolFactory,
  ToolRegistry,
  ResolvedTool,
  GetCurrentTimeUtcTool,
  GetCurrentTimeTool,
  WeatherTool,
  ReminderTools,
)

__all__ = [
  "SessionConfig",
  "resolve_config",
  "load_config_from_env",
  "ColloquyError",
  "ValidationError",
  "ToolExecutionError",
  "ColloquyTimeoutError",
  "ToolTimeoutError",
  "TurnTimeoutError",
  "GatewayError",
  "StorageError",
  "IntegrityError",
  "DuplicateDeliveryError",
  "ConversationBusyError",
  "IterationLimitError",
  "info",
  "debug",
  "warning",
  "error",
  "get_logger",
  "set_log_level",
  "set_log_levels",
  "Conversation",
  "ConversationRole",
  "UserMessage",
  "AssistantMessage",
  "ToolCallResponseMessage",
  "SystemMessage",
  "ToolCall",
  "FunctionToolCall",
  "ToolCallResult",
  "Success",
  "Failure",
  "FailureKind",
  "ScheduledAction",
  "TextDelta",
  "ToolCallRequested",
  "TurnComplete",
  "GenerationError",
  "TextDeltaEvent",
  "ToolInvokedEvent",
  "ToolResultEvent",
  "TurnCompleteEvent",
  "ErrorEvent",
  "ErrorKind",
  "ModelGateway",
  "LiteLLMGateway",
  "Scheduler",
  "AgentSession",
  "ConversationStore",
  "ScheduleStore",
  "InMemoryStore",
  "SQLiteStore",
  "PostgresStore",
  "InvokableTool",
  "Tool",
  "ToolFactory",
  "ToolRegistry",
  "ResolvedTool",
  "GetCurrentTimeUtcTool",
  "GetCurrentTimeTool",
  "WeatherTool",
  "ReminderTools",
]
