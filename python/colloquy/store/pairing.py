"""
Tool request/result pairing.

An assistant message that carries tool_calls is answered by one tool message
per call. Providers reject a history in which a tool message has no earlier
request, so history windows and commits must keep every pair whole.
"""

from itertools import dropwhile
from typing import Dict, List, Optional, Set, Tuple

from ..errors import IntegrityError
from ..logs import get_logger
from ..messages import AssistantMessage, ConversationMessage, ToolCallResponseMessage

logger = get_logger("store")


def get_tool_use_ids(message: ConversationMessage) -> List[str]:
  """Ids of the tool calls an assistant message requests, empty for other messages."""
  if not isinstance(message, AssistantMessage):
    return []
  return [call.id for call in message.tool_calls if call.id]


def get_tool_result_id(message: ConversationMessage) -> Optional[str]:
  if isinstance(message, ToolCallResponseMessage):
    return message.tool_call_id
  return None


def find_safe_trim_count(messages: List[ConversationMessage], requested_trim_count: int) -> int:
  """
  How many messages can be dropped from the front, at most `requested_trim_count`.

  The cut moves back to the requesting message whenever it would fall between
  a request and one of its results. Walking from the end catches results that
  come into the window as the cut moves back.
  """
  if requested_trim_count <= 0 or not messages:
    return 0

  # a result answers the nearest earlier request with its id; ids repeat across turns
  latest_request: Dict[str, int] = {}
  answered_by: Dict[int, int] = {}
  for index, message in enumerate(messages):
    for call_id in get_tool_use_ids(message):
      latest_request[call_id] = index
    call_id = get_tool_result_id(message)
    if call_id in latest_request:
      answered_by[index] = latest_request[call_id]

  cut = min(requested_trim_count, len(messages))
  index = len(messages) - 1
  while index >= cut:
    request_index = answered_by.get(index, index)
    if request_index < cut:
      logger.debug(f"Trim moved from {cut} to {request_index} to keep a tool call with its result")
      cut = request_index
    index -= 1

  return cut


def window_messages(messages: List[ConversationMessage], max_messages: int) -> List[ConversationMessage]:
  """
  The most recent `max_messages` messages, as a new list.

  The window grows past `max_messages` when a tool pair straddles the cut, and
  never starts with a tool result.
  """
  if len(messages) <= max_messages:
    return list(messages)

  cut = find_safe_trim_count(messages, len(messages) - max_messages)
  return list(dropwhile(lambda message: get_tool_result_id(message) is not None, messages[cut:]))


def validate_tool_pairing(messages: List[ConversationMessage]) -> Tuple[bool, Optional[str]]:
  """
  Check that every tool result answers a request of the assistant message
  right before it, with only tool results in between.

  Ids only need to be unique within one assistant message: any user or
  assistant message closes the requests before it, so a later turn may reuse
  an id. Requests without results are valid; a round can be committed while
  its results are still being produced.

  Returns:
    (True, None) when valid, (False, reason) otherwise
  """
  open_calls: Set[str] = set()
  closed_calls: Set[str] = set()

  for message in messages:
    call_id = get_tool_result_id(message)
    if call_id is None:
      if open_calls:
        logger.debug(f"Tool calls without results: {sorted(open_calls)}")
      open_calls = set(get_tool_use_ids(message))
      closed_calls = set()
      continue
    if call_id in closed_calls:
      return False, f"Duplicate tool result: {call_id}"
    if call_id not in open_calls:
      return False, f"Orphaned tool result (no preceding tool request): {call_id}"
    open_calls.remove(call_id)
    closed_calls.add(call_id)

  return True, None


def check_tool_pairing(conversation_id: str, messages: List[ConversationMessage]):
  valid, reason = validate_tool_pairing(messages)
  if not valid:
    raise IntegrityError(f"Conversation '{conversation_id}': {reason}")
