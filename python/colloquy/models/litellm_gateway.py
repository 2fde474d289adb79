import litellm

from copy import deepcopy
from typing import AsyncIterator, Dict, List, Optional

from ..logs import get_logger
from ..messages import (
  ConversationMessage,
  FunctionToolCall,
  GenerationError,
  GenerationEvent,
  TextDelta,
  ToolCall,
  ToolCallRequested,
  TurnComplete,
  new_id,
)


class LiteLLMGateway:
  """
  Model gateway backed by litellm.

  Any model string litellm understands works, e.g. "openai/gpt-4o-mini" or
  "anthropic/claude-3-5-haiku-latest". Extra keyword arguments (temperature,
  api_base, api_key, ...) are passed through on every request.
  """

  def __init__(self, model: str, **kwargs):
    self.logger = get_logger("model")
    self.model = model
    self.kwargs = kwargs
    self.kwargs.setdefault("drop_params", True)

  async def generate(
    self, history: List[ConversationMessage], available_tools: List[dict]
  ) -> AsyncIterator[GenerationEvent]:
    self.logger.info(f"Processing {len(history)} messages with model '{self.model}'")
    messages = normalize_messages(history)
    self.logger.debug(f"Sending the following messages to the model: {messages}")

    kwargs = dict(self.kwargs)
    if available_tools:
      kwargs["tools"] = available_tools

    accumulated_tool_calls: List[Optional[Dict]] = []
    finish_reason = None

    try:
      chunks = await litellm.acompletion(model=self.model, messages=messages, stream=True, **kwargs)
      async for chunk in chunks:
        if not chunk.choices:
          continue
        choice = chunk.choices[0]
        delta = choice.delta

        if getattr(delta, "content", None):
          yield TextDelta(delta.content)

        if getattr(delta, "tool_calls", None):
          accumulate_tool_calls(accumulated_tool_calls, delta.tool_calls)

        if choice.finish_reason:
          finish_reason = choice.finish_reason
    except Exception as e:
      self.logger.error(f"Model '{self.model}' failed: {type(e).__name__}: {e}")
      yield GenerationError(f"{type(e).__name__}: {e}")
      return

    self.logger.debug(f"The model finished with reason '{finish_reason}'")
    for tc in accumulated_tool_calls:
      if tc is None:
        continue
      yield ToolCallRequested(
        ToolCall(id=tc["id"], function=FunctionToolCall(name=tc["name"], arguments=tc["arguments"]))
      )
    yield TurnComplete()


def accumulate_tool_calls(accumulated: List[Optional[Dict]], deltas) -> None:
  """Merge streamed tool call fragments, keyed by their index."""
  for tc in deltas:
    tc_index = getattr(tc, "index", None) or 0
    while len(accumulated) <= tc_index:
      accumulated.append(None)

    function = getattr(tc, "function", None)
    name = getattr(function, "name", None) if function else None
    arguments = getattr(function, "arguments", None) if function else None

    if accumulated[tc_index] is None:
      accumulated[tc_index] = {
        "id": getattr(tc, "id", None) or f"call_{new_id()}",
        "name": name or "unknown",
        "arguments": arguments or "",
      }
    else:
      if name and accumulated[tc_index]["name"] == "unknown":
        accumulated[tc_index]["name"] = name
      if arguments:
        accumulated[tc_index]["arguments"] += arguments


def message_to_dict(message: ConversationMessage) -> dict:
  msg_dict = {"role": message.role.value, "content": message.content}

  tool_calls = getattr(message, "tool_calls", None)
  if tool_calls:
    msg_dict["tool_calls"] = [
      {
        "id": tool_call.id,
        "type": tool_call.type,
        "function": {
          "name": tool_call.function.name,
          "arguments": tool_call.function.arguments,
        },
      }
      for tool_call in tool_calls
    ]

  if getattr(message, "tool_call_id", None):
    msg_dict["tool_call_id"] = message.tool_call_id
    msg_dict["name"] = message.name

  return msg_dict


def normalize_messages(messages: List[ConversationMessage] | List[dict]) -> List[dict]:
  """Convert conversation messages to the chat completion format litellm expects."""
  messages = [deepcopy(m) if isinstance(m, dict) else message_to_dict(m) for m in messages]

  for message in messages:
    # an assistant message that only requests tools has no content
    if message.get("role") == "assistant" and message.get("tool_calls") and not message.get("content"):
      message["content"] = None

  # compact consecutive plain messages of the same role
  compacted: List[dict] = []
  for msg in messages:
    last = compacted[-1] if compacted else None
    if (
      last is not None
      and msg["role"] in ("user", "assistant", "system")
      and last["role"] == msg["role"]
      and not last.get("tool_calls")
      and not msg.get("tool_calls")
      and last.get("content")
      and msg.get("content")
    ):
      last["content"] += "\n\n" + msg["content"]
    else:
      compacted.append(msg)
  messages = compacted

  # delete messages without useful information
  new_messages = []
  for message in messages:
    match message.get("role"):
      case "system" | "user" if not message.get("content", None):
        continue
      case "assistant" if not message.get("content", None) and not message.get("tool_calls", None):
        continue
      case _:
        new_messages.append(message)

  return new_messages
