"""
The tool registry: name to tool lookup, argument validation and execution.

Tools are registered once. At the start of a turn the session binds the
registry to the conversation, which asks every factory for its tools and
collects the specs the model is offered. The binding then resolves and runs
tool calls for the rest of the turn.

Every tool call resolves to a ToolCallResult:
  - unknown name           -> Failure(unknown_tool)
  - arguments fail schema  -> Failure(validation), tool not invoked
  - tool raises            -> Failure(execution)
  - exceeds timeout        -> Failure(timeout)

The schema check is strict and runs before a Tool coerces its arguments, so
"2" for an integer parameter is a validation failure here.
"""

import asyncio

import jsonschema

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .factory import ToolFactory
from .protocol import InvokableTool
from .tool import Tool, parse_arguments
from ..errors import ToolExecutionError, ToolTimeoutError, ValidationError
from ..logs import get_logger
from ..messages import Failure, FailureKind, Success, ToolCall, ToolCallResult

logger = get_logger("tool")

EMPTY_SCHEMA = {"type": "object", "properties": {}}


@dataclass(frozen=True)
class ResolvedTool:
  name: str
  input_schema: dict
  invoke: Callable[[Optional[str]], Awaitable[Any]]


def tool_name(tool) -> str:
  return tool.name if hasattr(tool, "name") else str(tool)


def input_schema_from_spec(spec: dict) -> dict:
  return spec.get("function", {}).get("parameters") or EMPTY_SCHEMA


def validate(resolved: ResolvedTool, json_argument: Optional[str]) -> dict:
  """
  Check the raw model arguments against the tool's JSON schema.

  Returns:
    The parsed arguments

  Raises:
    ValidationError: when the arguments are not a JSON object or violate the schema
  """
  try:
    args = parse_arguments(json_argument)
  except ValidationError as e:
    raise ValidationError(e.message, tool_name=resolved.name, errors=[e.message])

  validator_cls = jsonschema.validators.validator_for(resolved.input_schema)
  validator = validator_cls(resolved.input_schema)
  errors = sorted(validator.iter_errors(args), key=lambda e: list(e.path))
  if errors:
    messages = [error_message(e) for e in errors]
    raise ValidationError(f"Schema validation failed: {'; '.join(messages)}", tool_name=resolved.name, errors=messages)
  return args


def error_message(error: jsonschema.ValidationError) -> str:
  if error.path:
    return f"{'.'.join(str(p) for p in error.path)}: {error.message}"
  return error.message


class ToolBinding:
  """
  The tools available to one turn of one conversation.

  Built by ToolRegistry.bind(). Specs are computed once, so the model sees the
  same tool set for every round of the turn.
  """

  def __init__(self, conversation_id: Optional[str], tools: Dict[str, InvokableTool], specs: List[dict]):
    self.conversation_id = conversation_id
    self.tools = tools
    self.specs = specs
    # specs are listed in the same order as tools
    self._schemas = {name: input_schema_from_spec(spec) for name, spec in zip(tools, specs)}

  def resolve(self, name: str) -> Optional[ResolvedTool]:
    tool = self.tools.get(name)
    if tool is None:
      return None
    return ResolvedTool(name=name, input_schema=self._schemas.get(name, EMPTY_SCHEMA), invoke=tool.invoke)

  async def execute(self, tool_call: ToolCall, timeout: float) -> ToolCallResult:
    """Run one tool call to a ToolCallResult. Never raises for tool-side failures."""
    resolved = self.resolve(tool_call.name)
    if resolved is None:
      logger.warning(f"Model requested unknown tool '{tool_call.name}'")
      return failure(tool_call, f"Unknown tool '{tool_call.name}'", FailureKind.UNKNOWN_TOOL)

    try:
      validate(resolved, tool_call.arguments)
      async with asyncio.timeout(timeout):
        payload = await resolved.invoke(tool_call.arguments)
    except ValidationError as e:
      logger.info(f"Rejected arguments for tool '{tool_call.name}': {e.message}")
      return failure(tool_call, e.message, FailureKind.VALIDATION)
    except TimeoutError:
      error = ToolTimeoutError(tool_call.name, timeout, tool_call_id=tool_call.id)
      logger.warning(error.message)
      return failure(tool_call, error.message, FailureKind.TIMEOUT)
    except Exception as e:
      error = ToolExecutionError(tool_call.name, e)
      logger.error(str(error))
      logger.debug(f"Tool '{tool_call.name}' failed with arguments {tool_call.arguments}", exc_info=True)
      return failure(tool_call, str(error), FailureKind.EXECUTION)

    return ToolCallResult(tool_call_id=tool_call.id, name=tool_call.name, outcome=Success(payload))


def failure(tool_call: ToolCall, reason: str, kind: FailureKind) -> ToolCallResult:
  return ToolCallResult(tool_call_id=tool_call.id, name=tool_call.name, outcome=Failure(reason, kind))


class ToolRegistry:
  """
  Registry of static tools and tool factories.

  Plain functions are wrapped in Tool. Objects with a create_tools() method
  are treated as factories. The built-in time tools are registered unless
  include_builtin is False.
  """

  def __init__(self, tools: Optional[List] = None, include_builtin: bool = True):
    self.tools: Dict[str, InvokableTool] = {}
    self.factories: List[ToolFactory] = []

    if include_builtin:
      from .builtin import GetCurrentTimeUtcTool, GetCurrentTimeTool

      self.register(GetCurrentTimeUtcTool())
      self.register(GetCurrentTimeTool())

    for tool in tools or []:
      self.register(tool)

  def register(self, tool_or_factory: Union[InvokableTool, ToolFactory, Callable]):
    if isinstance(tool_or_factory, ToolFactory):
      self.factories.append(tool_or_factory)
      return tool_or_factory

    tool = tool_or_factory
    if not (hasattr(tool, "spec") and hasattr(tool, "invoke")):
      if not callable(tool):
        raise TypeError(f"Cannot register {type(tool).__name__} as a tool")
      tool = Tool(tool)

    name = tool_name(tool)
    if name in self.tools:
      raise ValueError(f"A tool named '{name}' is already registered")
    self.tools[name] = tool
    logger.debug(f"Registered tool '{name}'")
    return tool

  def _tools_for(self, conversation_id: Optional[str], state: Optional[dict]) -> Dict[str, InvokableTool]:
    tools = dict(self.tools)
    if conversation_id is None:
      return tools

    state = state if state is not None else {}
    for factory in self.factories:
      for tool in factory.create_tools(conversation_id, state):
        name = tool_name(tool)
        if name in tools:
          raise ValueError(f"Tool factory produced '{name}', which is already registered")
        tools[name] = tool
    return tools

  async def bind(self, conversation_id: Optional[str], state: Optional[dict] = None) -> ToolBinding:
    tools = self._tools_for(conversation_id, state)
    specs = [await tool.spec() for tool in tools.values()]
    return ToolBinding(conversation_id, tools, specs)

  async def resolve(
    self, name: str, conversation_id: Optional[str] = None, state: Optional[dict] = None
  ) -> Optional[ResolvedTool]:
    binding = await self.bind(conversation_id, state)
    return binding.resolve(name)

  async def specs(self, conversation_id: Optional[str] = None, state: Optional[dict] = None) -> List[dict]:
    binding = await self.bind(conversation_id, state)
    return binding.specs

  @staticmethod
  def validate(resolved: ResolvedTool, json_argument: Optional[str]) -> dict:
    return validate(resolved, json_argument)
