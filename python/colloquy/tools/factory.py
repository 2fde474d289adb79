"""
Tool factory protocol for conversation-bound tool creation.

Some tools need to know which conversation they act for: a reminder must be
delivered back to the conversation that asked for it. A factory is registered
once and asked for fresh tool instances at the start of every turn.

Usage:
  class NotesToolFactory:
    def create_tools(self, conversation_id, state):
      notes = state.setdefault("notes", [])

      def add_note(text: str) -> str:
        '''Remember a note for later in this conversation.'''
        notes.append(text)
        return "noted"

      return [Tool(add_note)]

  registry = ToolRegistry()
  registry.register(NotesToolFactory())

The `state` passed to create_tools is the turn's working copy of the
conversation's AgentState. Changes made to it are committed together with the
turn's messages, or discarded with them if the turn fails.
"""

from typing import List, Protocol, runtime_checkable
from .protocol import InvokableTool


@runtime_checkable
class ToolFactory(Protocol):
  """
  Protocol for creating tools bound to one conversation.

  The registry calls create_tools() once per turn, so implementations should
  be cheap and must not assume the returned tools outlive the turn.
  """

  def create_tools(self, conversation_id: str, state: dict) -> List[InvokableTool]:
    """
    Create tools for a specific conversation.

    Args:
      conversation_id: The conversation the turn belongs to
      state: The turn's working AgentState (mutable)

    Returns:
      List of InvokableTool instances ready for use during the turn
    """
    ...


__all__ = ["ToolFactory"]
