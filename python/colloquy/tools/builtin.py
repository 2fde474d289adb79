"""
Built-in tools.

The time tools are registered with every ToolRegistry. The weather tool and
the reminder tools need collaborators (an HTTP client, a Scheduler) and are
registered explicitly:

  registry = ToolRegistry()
  registry.register(WeatherTool())
  registry.register(ReminderTools(scheduler))
"""

import time

import httpx

from datetime import datetime, UTC
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .protocol import InvokableTool
from .tool import Tool, parse_arguments
from ..errors import ValidationError
from ..logs import get_logger

if TYPE_CHECKING:
  from ..scheduler import Scheduler

logger = get_logger("tool")

GEOCODING_URL_DEFAULT = "https://geocoding-api.open-meteo.com/v1/search"
FORECAST_URL_DEFAULT = "https://api.open-meteo.com/v1/forecast"
WEATHER_TIMEOUT_DEFAULT = 10.0

# WMO weather interpretation codes used by Open-Meteo
WEATHER_CODES = {
  0: "Clear sky",
  1: "Mainly clear",
  2: "Partly cloudy",
  3: "Overcast",
  45: "Fog",
  48: "Depositing rime fog",
  51: "Light drizzle",
  53: "Moderate drizzle",
  55: "Dense drizzle",
  61: "Slight rain",
  63: "Moderate rain",
  65: "Heavy rain",
  71: "Slight snow",
  73: "Moderate snow",
  75: "Heavy snow",
  80: "Rain showers",
  81: "Heavy rain showers",
  82: "Violent rain showers",
  95: "Thunderstorm",
  96: "Thunderstorm with hail",
  99: "Thunderstorm with heavy hail",
}


class GetCurrentTimeUtcTool(InvokableTool):
  """
  Built-in tool that returns the current UTC time.

  Returns:
    Current UTC time as ISO 8601 string (e.g., "2024-01-15T14:30:00+00:00")
  """

  def __init__(self):
    super().__init__()
    self.name = "get_current_time_utc"
    self.description = (
      "Get the current time in UTC timezone. "
      "Returns the time formatted as ISO 8601 (e.g., '2024-01-15T14:30:00+00:00'). "
      "Use this when you need to know the current time for scheduling, "
      "timestamps, or time-based decisions."
    )

  async def invoke(self, json_argument: Optional[str]) -> str:
    return datetime.now(UTC).isoformat()

  async def spec(self) -> dict:
    return {
      "type": "function",
      "function": {
        "name": self.name,
        "description": self.description,
        "parameters": {
          "type": "object",
          "properties": {},
        },
      },
    }


class GetCurrentTimeTool(InvokableTool):
  """
  Built-in tool that returns the current time in a specific timezone.

  Args:
    timezone: IANA timezone name (e.g., 'America/New_York', 'Europe/London', 'Asia/Tokyo')

  Returns:
    Current time in the specified timezone as ISO 8601 string
  """

  def __init__(self):
    super().__init__()
    self.name = "get_current_time"
    self.description = (
      "Get the current time in a specific timezone. "
      "Returns the time formatted as ISO 8601. "
      "Accepts IANA timezone names like 'America/New_York', 'Europe/London', 'Asia/Tokyo'. "
      "Use this when you need to know the current time in a specific location."
    )

  async def invoke(self, json_argument: Optional[str]) -> str:
    params = parse_arguments(json_argument)
    timezone_name = params.get("timezone", "UTC")

    try:
      tz = ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as e:
      raise ValidationError(
        f"Invalid timezone '{timezone_name}'. Use IANA timezone names like 'America/New_York', "
        f"'Europe/London', 'Asia/Tokyo'. Error: {e}",
        tool_name=self.name,
      ) from e
    return datetime.now(tz).isoformat()

  async def spec(self) -> dict:
    return {
      "type": "function",
      "function": {
        "name": self.name,
        "description": self.description,
        "parameters": {
          "type": "object",
          "properties": {
            "timezone": {
              "type": "string",
              "description": "IANA timezone name (e.g., 'America/New_York', 'Europe/London', 'Asia/Tokyo'). Defaults to UTC.",
            }
          },
        },
      },
    }


class WeatherTool(InvokableTool):
  """
  Current weather for a city, looked up with the Open-Meteo geocoding and
  forecast APIs.

  Pass `client` to share an httpx.AsyncClient (or to test with a mock
  transport). Without one, a client is created per call.
  """

  def __init__(
    self,
    client: Optional[httpx.AsyncClient] = None,
    geocoding_url: str = GEOCODING_URL_DEFAULT,
    forecast_url: str = FORECAST_URL_DEFAULT,
    timeout: float = WEATHER_TIMEOUT_DEFAULT,
  ):
    super().__init__()
    self.name = "weather"
    self.description = (
      "Get the current weather for a city. "
      "Returns temperature in Celsius, relative humidity, wind speed and a short description of conditions."
    )
    self.client = client
    self.geocoding_url = geocoding_url
    self.forecast_url = forecast_url
    self.timeout = timeout

  async def spec(self) -> dict:
    return {
      "type": "function",
      "function": {
        "name": self.name,
        "description": self.description,
        "parameters": {
          "type": "object",
          "properties": {
            "city": {"type": "string", "minLength": 1, "description": "Name of the city, e.g. 'Paris'"},
          },
          "required": ["city"],
        },
      },
    }

  async def invoke(self, json_argument: Optional[str]) -> Dict[str, Any]:
    params = parse_arguments(json_argument)
    city = str(params.get("city", "")).strip()
    if not city:
      raise ValidationError("Missing required argument: city", tool_name=self.name)

    if self.client is not None:
      return await self._lookup(self.client, city)

    async with httpx.AsyncClient(timeout=self.timeout) as client:
      return await self._lookup(client, city)

  async def _lookup(self, client: httpx.AsyncClient, city: str) -> Dict[str, Any]:
    response = await client.get(self.geocoding_url, params={"name": city, "count": 1, "format": "json"})
    response.raise_for_status()
    results = response.json().get("results") or []
    if not results:
      raise ValueError(f"Unknown city '{city}'")
    place = results[0]

    response = await client.get(
      self.forecast_url,
      params={
        "latitude": place["latitude"],
        "longitude": place["longitude"],
        "current": "temperature_2m,relative_humidity_2m,wind_speed_10m,weather_code",
      },
    )
    response.raise_for_status()
    current = response.json().get("current") or {}

    code = current.get("weather_code")
    weather = {
      "city": place.get("name", city),
      "country": place.get("country"),
      "temperature_c": current.get("temperature_2m"),
      "humidity_percent": current.get("relative_humidity_2m"),
      "wind_speed_kmh": current.get("wind_speed_10m"),
      "conditions": WEATHER_CODES.get(code, "Unknown"),
      "observed_at": current.get("time"),
    }
    logger.debug(f"Weather for '{city}': {weather}")
    return weather


def parse_fire_at(delay_seconds: Optional[float], at: Optional[str], now: float) -> float:
  if (delay_seconds is None) == (at is None):
    raise ValidationError("Provide exactly one of 'delay_seconds' or 'at'")

  if delay_seconds is not None:
    if delay_seconds < 0:
      raise ValidationError("'delay_seconds' must not be negative")
    return now + delay_seconds

  try:
    when = datetime.fromisoformat(at)
  except ValueError as e:
    raise ValidationError(f"'at' must be an ISO 8601 timestamp, got {at!r}") from e
  if when.tzinfo is None:
    when = when.replace(tzinfo=UTC)
  return when.timestamp()


class ReminderTools:
  """
  Tool factory for reminders delivered back into the conversation.

  schedule_reminder arms a Scheduler entry and returns at once; when it fires
  the session runs a new turn with the reminder as the inbound message.
  Reminders armed during a turn are recorded in the conversation's state under
  "reminders".

  Both tools act on the Scheduler at once, not at commit. If the turn then
  fails to commit, an armed reminder still fires and a cancelled one stays
  cancelled, while the stored "reminders" state and tool messages do not
  show it.
  """

  def __init__(self, scheduler: "Scheduler"):
    self.scheduler = scheduler

  def create_tools(self, conversation_id: str, state: dict) -> List[InvokableTool]:
    scheduler = self.scheduler

    async def schedule_reminder(message: str, delay_seconds: Optional[float] = None, at: Optional[str] = None) -> dict:
      """
      Schedule a reminder that is sent back to this conversation later.

      Args:
        message (str): What to remind about
        delay_seconds (float): Seconds from now until the reminder fires
        at (str): ISO 8601 time at which the reminder fires, instead of delay_seconds
      """
      if not message.strip():
        raise ValidationError("'message' must not be empty")
      fire_at = parse_fire_at(delay_seconds, at, time.time())
      reminder_id = await scheduler.arm(conversation_id, fire_at, {"kind": "reminder", "message": f"Reminder: {message}"})
      fire_at_iso = datetime.fromtimestamp(fire_at, UTC).isoformat()
      state.setdefault("reminders", {})[reminder_id] = {"message": message, "fire_at": fire_at_iso}
      return {"reminder_id": reminder_id, "fire_at": fire_at_iso, "status": "scheduled"}

    async def cancel_reminder(reminder_id: str) -> dict:
      """
      Cancel a reminder scheduled earlier in this conversation.

      Args:
        reminder_id (str): The id returned by schedule_reminder
      """
      owned = {a.id for a in scheduler.pending(conversation_id)}
      cancelled = reminder_id in owned and await scheduler.cancel(reminder_id)
      state.get("reminders", {}).pop(reminder_id, None)
      return {"reminder_id": reminder_id, "status": "cancelled" if cancelled else "not_found"}

    return [Tool(schedule_reminder), Tool(cancel_reminder)]
