from typing import AsyncIterator, List, Protocol, runtime_checkable

from ..messages import ConversationMessage, GenerationEvent


@runtime_checkable
class ModelGateway(Protocol):
  """
  Produces the next assistant output for a conversation.

  One call to generate() is one round. The stream yields TextDelta and
  ToolCallRequested events in any interleaving and ends with exactly one
  TurnComplete or GenerationError.
  """

  def generate(self, history: List[ConversationMessage], available_tools: List[dict]) -> AsyncIterator[GenerationEvent]: ...
