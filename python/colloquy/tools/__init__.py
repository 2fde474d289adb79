from .protocol import InvokableTool
from .tool import Tool
from .factory import ToolFactory
from .registry import ToolRegistry, ToolBinding, ResolvedTool, validate
from .builtin import GetCurrentTimeUtcTool, GetCurrentTimeTool, WeatherTool, ReminderTools

__all__ = [
  "InvokableTool",
  "Tool",
  "ToolFactory",
  "ToolRegistry",
  "ToolBinding",
  "ResolvedTool",
  "validate",
  "GetCurrentTimeUtcTool",
  "GetCurrentTimeTool",
  "WeatherTool",
  "ReminderTools",
]
