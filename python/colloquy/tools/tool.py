import asyncio
import inspect
import json
import re

from functools import wraps
from types import UnionType
from typing import Any, Callable, Dict, Optional, Tuple, Union, get_args, get_origin, get_type_hints

from docstring_parser import parse

from .protocol import InvokableTool
from ..errors import ValidationError
from ..logs.logs import InfoContext, get_logger

MAX_JSON_SIZE = 1024 * 1024  # 1MB

TOOL_NAME_PATTERN = re.compile(r"^[a-z0-9_-]+$")

JSON_SCHEMA_TYPES = {
  bool: "boolean",
  int: "integer",
  float: "number",
  str: "string",
  list: "array",
  dict: "object",
}

# type names as written in docstrings, e.g. "city (str): ..."
DOCSTRING_TYPES = {python_type.__name__: schema_type for python_type, schema_type in JSON_SCHEMA_TYPES.items()}

TRUE_STRINGS = ("true", "1", "yes", "on")
FALSE_STRINGS = ("false", "0", "no", "off")


class Tool(InvokableTool, InfoContext):
  """
  Wraps a plain Python function, sync or async, as a tool the model can call.

  The tool name is the function name. The description and parameter
  descriptions come from the docstring, and the JSON schema of the arguments
  from the signature and its type hints.

  Bad arguments raise ValidationError before the function runs. Anything the
  function raises propagates to the caller unchanged.
  """

  def __init__(self, func: Callable, name: Optional[str] = None):
    self.logger = get_logger("tool")
    self.name, self._spec = function_spec(func, name)
    if not TOOL_NAME_PATTERN.match(self.name):
      raise ValueError(f"Tool name '{self.name}' may only contain [a-z0-9_-] characters")

    self.func = wrap(func)
    self.signature = inspect.signature(func)
    self.type_hints = get_type_hints(func)

  async def spec(self) -> dict:
    return self._spec

  async def invoke(self, json_argument: Optional[str]) -> Any:
    with self.info(f"Invoke tool: '{self.name}'", f"Invoked tool: '{self.name}'"):
      self.logger.debug(f"The tool arguments are: {json_argument}")
      try:
        args = self.prepare_arguments(json_argument)
      except ValueError as e:
        raise ValidationError(str(e), tool_name=self.name, errors=[str(e)]) from e

      result = await self.func(**args)
      self.logger.debug(f"The tool call succeeded: {result}")
      return result

  def prepare_arguments(self, json_argument: Optional[str]) -> Dict[str, Any]:
    """
    Turn the model's JSON arguments into keyword arguments for the function.

    Raises:
      ValueError: If the JSON is malformed or too large, does not fit the
        signature, or holds a value that cannot be coerced to its type hint
    """
    args = load_arguments(json_argument)
    check_signature(self.signature, args)
    return {name: self.coerce(name, value) for name, value in args.items()}

  def coerce(self, name: str, value: Any) -> Any:
    hint = self.type_hints.get(name)
    if hint is None:
      return value

    expected = non_optional(hint)
    try:
      coerced = coerce_value(value, expected)
    except (ValueError, TypeError):
      type_name = getattr(expected, "__name__", str(expected))
      raise ValueError(
        f"Argument '{name}' has invalid type: expected {type_name}, got {type(value).__name__} (value: {value!r})"
      )

    if type(coerced) is not type(value):
      self.logger.debug(f"Coerced argument '{name}': {value!r} -> {coerced!r}")
    return coerced


def load_arguments(json_argument: Optional[str]) -> Dict[str, Any]:
  """Parse a JSON object of arguments. Empty input means no arguments."""
  if json_argument is None or json_argument.strip() == "":
    return {}

  if len(json_argument) > MAX_JSON_SIZE:
    raise ValueError(f"JSON argument too large: {len(json_argument):,} bytes (max: {MAX_JSON_SIZE:,})")

  try:
    args = json.loads(json_argument)
  except json.JSONDecodeError as e:
    raise ValueError(f"Invalid JSON format: {e}")

  if not isinstance(args, dict):
    raise ValueError(f"JSON argument must be an object, got {type(args).__name__}")
  return args


def parse_arguments(json_argument: Optional[str]) -> Dict[str, Any]:
  """load_arguments for callers outside a Tool, raising ValidationError."""
  try:
    return load_arguments(json_argument)
  except ValueError as e:
    raise ValidationError(str(e), errors=[str(e)]) from e


def check_signature(signature: inspect.Signature, args: Dict[str, Any]):
  unexpected = sorted(set(args) - set(signature.parameters))
  if unexpected:
    raise ValueError(f"Unexpected arguments: {', '.join(unexpected)}")

  missing = sorted(
    name for name, p in signature.parameters.items() if p.default is inspect.Parameter.empty and name not in args
  )
  if missing:
    raise ValueError(f"Missing required arguments: {', '.join(missing)}")


def non_optional(hint):
  """Optional[X] and X | None both become X."""
  if get_origin(hint) in (Union, UnionType):
    members = [member for member in get_args(hint) if member is not type(None)]
    if members:
      return members[0]
  return hint


def coerce_value(value, expected_type):
  """
  Coerce a JSON value to the expected Python type.

  Used when a Tool is invoked directly, e.g. "3" for an int or 2.0 for 2.
  Calls made through a ToolBinding are checked against the JSON schema first,
  so only values the schema already accepts reach this, such as 2.0 for an
  integer. Container types are checked but not converted; unknown types pass
  through.

  Raises:
    ValueError: If the value has the right shape but cannot be parsed
    TypeError: If the value has the wrong shape
  """
  if value is None or expected_type is Any:
    return value

  origin = get_origin(expected_type) or expected_type
  if origin in (list, dict):
    if isinstance(value, origin):
      return value
    raise TypeError(f"Cannot coerce {type(value).__name__} to {origin.__name__}")

  coercer = COERCERS.get(origin)
  return coercer(value) if coercer else value


def to_int(value) -> int:
  if isinstance(value, bool):
    raise TypeError("Cannot coerce bool to int")
  if isinstance(value, int):
    return value
  if isinstance(value, str):
    return int(value)
  if isinstance(value, float) and value.is_integer():
    return int(value)
  raise TypeError(f"Cannot coerce {type(value).__name__} to int")


def to_float(value) -> float:
  if isinstance(value, bool):
    raise TypeError("Cannot coerce bool to float")
  if isinstance(value, float):
    return value
  if isinstance(value, (int, str)):
    return float(value)
  raise TypeError(f"Cannot coerce {type(value).__name__} to float")


def to_bool(value) -> bool:
  if isinstance(value, bool):
    return value
  if isinstance(value, str):
    lowered = value.lower()
    if lowered in TRUE_STRINGS:
      return True
    if lowered in FALSE_STRINGS:
      return False
    raise ValueError(f"Cannot coerce string '{value}' to bool")
  if isinstance(value, (int, float)):
    return bool(value)
  raise TypeError(f"Cannot coerce {type(value).__name__} to bool")


def to_str(value) -> str:
  return value if isinstance(value, str) else str(value)


COERCERS = {int: to_int, float: to_float, bool: to_bool, str: to_str}


def wrap(f) -> Callable:
  """Async functions are awaited; sync functions run in a worker thread so they cannot block the loop."""
  if inspect.iscoroutinefunction(f):
    return f

  @wraps(f)
  async def wrapper(**kwargs):
    r = await asyncio.to_thread(f, **kwargs)
    if inspect.iscoroutine(r):
      return await r
    return r

  return wrapper


def function_spec(f: Callable, name: Optional[str] = None) -> Tuple[str, dict]:
  name = name or f.__name__
  parameters = {"type": "object", "properties": {}, "required": []}

  hints = get_type_hints(f)
  documented = parameter_info_from_docstring(f.__doc__)
  for p_name, p in inspect.signature(f).parameters.items():
    doc_type, doc_description = documented.get(p_name, (None, None))
    # a type in the docstring wins over the type hint
    schema_type = DOCSTRING_TYPES.get(doc_type, "string") if doc_type else schema_type_for(hints.get(p_name))

    # models send null for omitted optional arguments
    if p.default is None:
      schema_type = [schema_type, "null"]

    parameters["properties"][p_name] = {"type": schema_type, "description": doc_description or f"parameter {p_name}"}
    if p.default is inspect.Parameter.empty:
      parameters["required"].append(p_name)

  description = description_from_docstring(f.__doc__) or f"Function {name}"
  return name, {"type": "function", "function": {"name": name, "description": description, "parameters": parameters}}


def schema_type_for(hint) -> str:
  if hint is None:
    return "string"
  hint = non_optional(hint)
  return JSON_SCHEMA_TYPES.get(get_origin(hint) or hint, "string")


def description_from_docstring(docstring: Optional[str]) -> Optional[str]:
  if not docstring:
    return None

  parsed = parse(docstring)
  parts = [p for p in (parsed.short_description, parsed.long_description) if p]
  return "\n\n".join(parts) if parts else inspect.cleandoc(docstring)


def parameter_info_from_docstring(docstring: Optional[str]) -> Dict[str, Tuple[Optional[str], Optional[str]]]:
  if not docstring:
    return {}
  return {p.arg_name: (p.type_name, p.description) for p in parse(docstring).params}
