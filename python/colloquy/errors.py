"""
Exception classes for the agent session core.

Each class maps to one recovery point in a turn: tool argument and execution
errors are folded into failed tool results, gateway and storage errors end the
turn with an error event, and duplicate deliveries of scheduled actions are
dropped without surfacing anything to the caller.
"""

import asyncio
from typing import Optional, Dict, Any


class ColloquyError(Exception):
  """Base class for all errors raised by this package."""


class ValidationError(ColloquyError):
  """
  Raised when input does not satisfy its contract.

  For tool calls this means the arguments failed the tool's JSON schema; the
  tool is not invoked and the turn continues with a failed result.

  Attributes:
    tool_name: Name of the tool whose arguments were rejected, if any
    errors: Individual validation messages
  """

  def __init__(self, message: str, tool_name: Optional[str] = None, errors: Optional[list[str]] = None):
    super().__init__(message)
    self.message = message
    self.tool_name = tool_name
    self.errors = errors or []


class ToolExecutionError(ColloquyError):
  """Raised when a tool raised an exception while running."""

  def __init__(self, tool_name: str, cause: BaseException):
    self.tool_name = tool_name
    self.cause = cause
    super().__init__(f"Tool '{tool_name}' failed: {type(cause).__name__}: {cause}")


class ColloquyTimeoutError(asyncio.TimeoutError, ColloquyError):
  """
  Base class for timeouts.

  Provides context about what operation timed out and a suggestion for
  resolution.

  Attributes:
    method: The method or operation that timed out
    timeout: The timeout value in seconds
    context: Additional context about the operation
    message: Human-readable error message
  """

  def __init__(
    self,
    method: str,
    timeout: float,
    context: Optional[Dict[str, Any]] = None,
    message: Optional[str] = None,
  ):
    self.method = method
    self.timeout = timeout
    self.context = context or {}

    if message is None:
      message = self._build_message()

    self.message = message
    super().__init__(message)

  def _build_message(self) -> str:
    parts = [f"{self.method} timed out after {self.timeout}s."]

    if self.context:
      context_parts = [f"{k}: {v}" for k, v in self.context.items() if v is not None]
      if context_parts:
        parts.append(f"Context: {', '.join(context_parts)}.")

    parts.append(self._get_suggestion())

    return " ".join(parts)

  def _get_suggestion(self) -> str:
    return "Consider increasing the timeout value."


class ToolTimeoutError(ColloquyTimeoutError, ToolExecutionError):
  """
  Raised when a tool does not return within the configured tool timeout.

  Long-running side effects belong in a scheduled action, not in the tool
  call itself.
  """

  def __init__(self, tool_name: str, timeout: float, tool_call_id: Optional[str] = None):
    self.tool_name = tool_name
    self.cause = None
    ColloquyTimeoutError.__init__(
      self,
      method=f"Tool '{tool_name}'",
      timeout=timeout,
      context={"tool_call_id": tool_call_id},
    )

  def _get_suggestion(self) -> str:
    return "Consider increasing tool_timeout or deferring the work with a scheduled action."


class TurnTimeoutError(ColloquyTimeoutError):
  """Raised when a whole turn exceeds max_execution_time."""

  def __init__(self, timeout: float, conversation_id: Optional[str] = None):
    super().__init__(
      method="AgentSession.handle_message()",
      timeout=timeout,
      context={"conversation_id": conversation_id},
    )

  def _get_suggestion(self) -> str:
    return "Consider increasing max_execution_time or reducing the number of tool round-trips."


class GatewayError(ColloquyError):
  """Raised when the model gateway fails to produce a generation."""


class StorageError(ColloquyError):
  """Raised when the conversation or schedule store cannot complete an operation."""


class IntegrityError(StorageError):
  """Raised when a message sequence contains a tool result without its request."""


class DuplicateDeliveryError(ColloquyError):
  """Raised when a scheduled action that was already handled is delivered again."""

  def __init__(self, action_id: str, conversation_id: str):
    self.action_id = action_id
    self.conversation_id = conversation_id
    super().__init__(f"Scheduled action '{action_id}' was already handled for conversation '{conversation_id}'")


class ConversationBusyError(ColloquyError):
  """Raised when a conversation already has a running turn and the busy policy is 'reject'."""

  def __init__(self, conversation_id: str):
    self.conversation_id = conversation_id
    super().__init__(f"Conversation '{conversation_id}' is busy with another turn")


class IterationLimitError(ColloquyError):
  """Raised when a turn needs more model round-trips than max_iterations allows."""

  def __init__(self, max_iterations: int):
    self.max_iterations = max_iterations
    super().__init__(f"Reached max_iterations ({max_iterations}) before the model produced a final answer")
