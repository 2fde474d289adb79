"""
Tests for AgentSession turns.

Covers the full turn life cycle: streaming, tool round-trips, ordering of
results, failure folding, limits, timeouts, busy policies and atomic commits.
"""

import asyncio
import threading
import time
import httpx
import pytest

from mock_utils import (
  FlakyStore,
  MockGateway,
  Stall,
  collect,
  error_round,
  event_types,
  fast_config,
  text_round,
  tool_call,
  tool_round,
)

from colloquy import (
  AgentSession,
  AssistantMessage,
  ErrorEvent,
  ErrorKind,
  FailureKind,
  InMemoryStore,
  SystemMessage,
  TextDelta,
  ToolCallResponseMessage,
  ToolRegistry,
  TurnComplete,
  TurnCompleteEvent,
  UserMessage,
  ValidationError,
  WeatherTool,
)
from colloquy.store.pairing import validate_tool_pairing


def weather_client(calls=None) -> httpx.AsyncClient:
  def handler(request: httpx.Request) -> httpx.Response:
    if calls is not None:
      calls.append(request)
    if "geocoding" in request.url.host:
      return httpx.Response(
        200,
        json={"results": [{"name": "Paris", "country": "France", "latitude": 48.85, "longitude": 2.35}]},
      )
    return httpx.Response(
      200,
      json={
        "current": {
          "time": "2026-10-19T12:00",
          "temperature_2m": 18.0,
          "relative_humidity_2m": 60,
          "wind_speed_10m": 12.5,
          "weather_code": 1,
        }
      },
    )

  return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def assert_single_terminal(events):
  terminal = [e for e in events if isinstance(e, (TurnCompleteEvent, ErrorEvent))]
  assert len(terminal) == 1
  assert events[-1] is terminal[0]


def roles(conversation):
  return [m.role.value for m in conversation.messages]


# =============================================================================
# SECTION 1: Basic turns
# =============================================================================


class TestBasicTurn:
  """Tests for turns without tool calls."""

  @pytest.mark.asyncio
  async def test_streams_text_and_completes(self):
    store = InMemoryStore()
    session = AgentSession(MockGateway([text_round("Hello there friend")]), store, config=fast_config())

    events = await collect(session.handle_message("c1", "Hi"))

    assert event_types(events) == ["text_delta", "text_delta", "text_delta", "turn_complete"]
    assert "".join(e.text for e in events[:-1]) == "Hello there friend"
    assert events[-1].conversation_id == "c1"
    assert events[-1].message_count == 2

    conversation = await store.load("c1")
    assert roles(conversation) == ["user", "assistant"]
    assert conversation.messages[0].content == "Hi"
    assert conversation.messages[1].content == "Hello there friend"

  @pytest.mark.asyncio
  async def test_state_tracks_turns(self):
    store = InMemoryStore()
    session = AgentSession(MockGateway(), store, config=fast_config())

    await collect(session.handle_message("c1", "one"))
    await collect(session.handle_message("c1", "two"))

    conversation = await store.load("c1")
    assert conversation.state["turns"] == 2
    assert conversation.state["last_turn_at"] > 0
    assert len(conversation.messages) == 4

  @pytest.mark.asyncio
  async def test_history_includes_instructions_and_prior_turns(self):
    gateway = MockGateway()
    session = AgentSession(gateway, InMemoryStore(), config=fast_config(), instructions="Be brief.")

    await collect(session.handle_message("c1", "first"))
    await collect(session.handle_message("c1", "second"))

    history = gateway.calls[1]["history"]
    assert isinstance(history[0], SystemMessage)
    assert history[0].content == "Be brief."
    assert [m.content for m in history[1:]] == ["first", "OK", "second"]

  @pytest.mark.asyncio
  async def test_history_is_windowed(self):
    gateway = MockGateway()
    session = AgentSession(gateway, InMemoryStore(), config=fast_config(max_history_messages=2))

    await collect(session.handle_message("c1", "first"))
    await collect(session.handle_message("c1", "second"))

    history = gateway.calls[1]["history"]
    assert [m.content for m in history] == ["OK", "second"]

  @pytest.mark.asyncio
  async def test_offers_registered_tool_specs(self):
    gateway = MockGateway()
    session = AgentSession(gateway, InMemoryStore(), config=fast_config())

    await collect(session.handle_message("c1", "what time is it?"))

    names = [spec["function"]["name"] for spec in gateway.calls[0]["tools"]]
    assert "get_current_time_utc" in names
    assert "get_current_time" in names

  def test_empty_content_is_rejected(self):
    session = AgentSession(MockGateway(), InMemoryStore(), config=fast_config())

    with pytest.raises(ValidationError):
      session.handle_message("c1", "   ")
    with pytest.raises(ValidationError):
      session.handle_message("", "hello")

  @pytest.mark.asyncio
  async def test_unknown_conversation_loads_empty(self):
    session = AgentSession(MockGateway(), InMemoryStore(), config=fast_config())

    conversation = await session.get_conversation("missing")

    assert conversation.id == "missing"
    assert conversation.messages == []


# =============================================================================
# SECTION 2: Tool round-trips
# =============================================================================


class TestToolRoundTrips:
  """Tests for rounds that request tools."""

  @pytest.mark.asyncio
  async def test_weather_round_trip(self):
    store = InMemoryStore()
    registry = ToolRegistry([WeatherTool(client=weather_client())])
    gateway = MockGateway(
      [
        tool_round(tool_call("weather", {"city": "Paris"}, id="call_1"), text="Let me check."),
        text_round("It is 18°C and mainly clear in Paris."),
      ]
    )
    session = AgentSession(gateway, store, registry, config=fast_config())

    events = await collect(session.handle_message("c1", "What's the weather in Paris?"))

    assert event_types(events)[0] == "text_delta"
    assert event_types(events)[1:3] == ["tool_invoked", "tool_result"]
    assert event_types(events)[-1] == "turn_complete"
    assert_single_terminal(events)

    invoked, result = events[1], events[2]
    assert invoked.tool_call_id == "call_1"
    assert invoked.name == "weather"
    assert invoked.arguments == {"city": "Paris"}
    assert result.success
    assert result.outcome.payload["temperature_c"] == 18.0
    assert result.outcome.payload["conditions"] == "Mainly clear"

    conversation = await store.load("c1")
    assert roles(conversation) == ["user", "assistant", "tool", "assistant"]
    assert events[-1].message_count == 4

    request = conversation.messages[1]
    assert isinstance(request, AssistantMessage)
    assert request.content == "Let me check."
    assert [c.id for c in request.tool_calls] == ["call_1"]

    response = conversation.messages[2]
    assert isinstance(response, ToolCallResponseMessage)
    assert response.tool_call_id == "call_1"
    assert '"temperature_c": 18.0' in response.content

    valid, message = validate_tool_pairing(conversation.messages)
    assert valid, message

  @pytest.mark.asyncio
  async def test_second_round_sees_tool_results(self):
    gateway = MockGateway([tool_round(tool_call("get_current_time_utc", id="call_t")), text_round("done")])
    session = AgentSession(gateway, InMemoryStore(), config=fast_config())

    await collect(session.handle_message("c1", "time?"))

    history = gateway.calls[1]["history"]
    assert [m.role.value for m in history] == ["user", "assistant", "tool"]
    assert history[2].tool_call_id == "call_t"

  @pytest.mark.asyncio
  async def test_results_keep_request_order(self):
    finished = []

    async def slow_lookup() -> str:
      await asyncio.sleep(0.05)
      finished.append("slow")
      return "slow"

    async def fast_lookup() -> str:
      finished.append("fast")
      return "fast"

    store = InMemoryStore()
    registry = ToolRegistry([slow_lookup, fast_lookup])
    gateway = MockGateway(
      [
        tool_round(tool_call("slow_lookup", id="call_slow"), tool_call("fast_lookup", id="call_fast")),
        text_round("both done"),
      ]
    )
    session = AgentSession(gateway, store, registry, config=fast_config())

    events = await collect(session.handle_message("c1", "look both up"))

    assert finished == ["fast", "slow"]
    invoked = [e.tool_call_id for e in events if e.type.value == "tool_invoked"]
    results = [e.tool_call_id for e in events if e.type.value == "tool_result"]
    assert invoked == ["call_slow", "call_fast"]
    assert results == ["call_slow", "call_fast"]

    conversation = await store.load("c1")
    tool_messages = [m for m in conversation.messages if isinstance(m, ToolCallResponseMessage)]
    assert [m.tool_call_id for m in tool_messages] == ["call_slow", "call_fast"]
    assert [m.content for m in tool_messages] == ["slow", "fast"]

  @pytest.mark.asyncio
  async def test_tools_run_concurrently(self):
    partner_started = asyncio.Event()

    async def wait_for_partner() -> str:
      await partner_started.wait()
      return "met"

    async def partner() -> str:
      partner_started.set()
      return "here"

    registry = ToolRegistry([wait_for_partner, partner])
    gateway = MockGateway([tool_round(tool_call("wait_for_partner"), tool_call("partner")), text_round("ok")])
    session = AgentSession(gateway, InMemoryStore(), registry, config=fast_config(tool_timeout=0.5))

    events = await collect(session.handle_message("c1", "go"))

    results = [e for e in events if e.type.value == "tool_result"]
    assert [r.success for r in results] == [True, True]

  @pytest.mark.asyncio
  async def test_unknown_tool_fails_and_turn_continues(self):
    store = InMemoryStore()
    gateway = MockGateway([tool_round(tool_call("teleport", {"to": "Mars"})), text_round("I cannot do that.")])
    session = AgentSession(gateway, store, config=fast_config())

    events = await collect(session.handle_message("c1", "beam me up"))

    result = next(e for e in events if e.type.value == "tool_result")
    assert not result.success
    assert result.outcome.kind == FailureKind.UNKNOWN_TOOL
    assert isinstance(events[-1], TurnCompleteEvent)

    conversation = await store.load("c1")
    tool_message = conversation.messages[2]
    assert tool_message.success is False
    assert "unknown_tool" in tool_message.content

  @pytest.mark.asyncio
  async def test_invalid_arguments_are_not_passed_to_tool(self):
    requests = []
    registry = ToolRegistry([WeatherTool(client=weather_client(requests))])
    gateway = MockGateway([tool_round(tool_call("weather", {})), text_round("Which city?")])
    session = AgentSession(gateway, InMemoryStore(), registry, config=fast_config())

    events = await collect(session.handle_message("c1", "weather?"))

    result = next(e for e in events if e.type.value == "tool_result")
    assert result.outcome.kind == FailureKind.VALIDATION
    assert "city" in result.outcome.reason
    assert requests == []
    assert isinstance(events[-1], TurnCompleteEvent)

  @pytest.mark.asyncio
  async def test_tool_exception_becomes_failed_result(self):
    def explode():
      raise RuntimeError("kaboom")

    registry = ToolRegistry([explode])
    gateway = MockGateway([tool_round(tool_call("explode")), text_round("That failed.")])
    session = AgentSession(gateway, InMemoryStore(), registry, config=fast_config())

    events = await collect(session.handle_message("c1", "explode"))

    result = next(e for e in events if e.type.value == "tool_result")
    assert result.outcome.kind == FailureKind.EXECUTION
    assert "kaboom" in result.outcome.reason
    assert isinstance(events[-1], TurnCompleteEvent)

  @pytest.mark.asyncio
  async def test_tool_timeout_becomes_failed_result(self):
    async def sleepy():
      await asyncio.sleep(5)

    registry = ToolRegistry([sleepy])
    gateway = MockGateway([tool_round(tool_call("sleepy")), text_round("Too slow.")])
    session = AgentSession(gateway, InMemoryStore(), registry, config=fast_config(tool_timeout=0.05))

    events = await collect(session.handle_message("c1", "sleep"))

    result = next(e for e in events if e.type.value == "tool_result")
    assert result.outcome.kind == FailureKind.TIMEOUT
    assert "timed out" in result.outcome.reason
    assert isinstance(events[-1], TurnCompleteEvent)

  @pytest.mark.asyncio
  async def test_blocking_sync_tool_times_out(self):
    def slow_sync() -> str:
      time.sleep(0.5)
      return "done"

    registry = ToolRegistry([slow_sync])
    gateway = MockGateway([tool_round(tool_call("slow_sync")), text_round("Too slow.")])
    session = AgentSession(gateway, InMemoryStore(), registry, config=fast_config(tool_timeout=0.1))

    started = time.monotonic()
    events = await collect(session.handle_message("c1", "go"))

    result = next(e for e in events if e.type.value == "tool_result")
    assert result.outcome.kind == FailureKind.TIMEOUT
    assert time.monotonic() - started < 0.4
    assert isinstance(events[-1], TurnCompleteEvent)

  @pytest.mark.asyncio
  async def test_sync_tools_run_concurrently(self):
    barrier = threading.Barrier(2, timeout=0.5)

    def left() -> str:
      barrier.wait()
      return "left"

    def right() -> str:
      barrier.wait()
      return "right"

    registry = ToolRegistry([left, right])
    gateway = MockGateway([tool_round(tool_call("left"), tool_call("right")), text_round("ok")])
    session = AgentSession(gateway, InMemoryStore(), registry, config=fast_config())

    events = await collect(session.handle_message("c1", "go"))

    results = [e for e in events if e.type.value == "tool_result"]
    assert [r.outcome.payload for r in results] == ["left", "right"]

  @pytest.mark.asyncio
  async def test_tool_call_ids_may_repeat_across_turns(self):
    def echo(text: str) -> str:
      return text

    store = InMemoryStore()
    registry = ToolRegistry([echo])
    gateway = MockGateway(
      [
        tool_round(tool_call("echo", {"text": "one"}, id="call_0")),
        text_round("first"),
        tool_round(tool_call("echo", {"text": "two"}, id="call_0")),
        text_round("second"),
      ]
    )
    session = AgentSession(gateway, store, registry, config=fast_config())

    first = await collect(session.handle_message("c1", "echo one"))
    second = await collect(session.handle_message("c1", "echo two"))

    assert isinstance(first[-1], TurnCompleteEvent)
    assert isinstance(second[-1], TurnCompleteEvent)
    assert second[-1].message_count == 8

    conversation = await store.load("c1")
    assert roles(conversation) == ["user", "assistant", "tool", "assistant"] * 2
    assert [m.content for m in conversation.messages if isinstance(m, ToolCallResponseMessage)] == ["one", "two"]


# =============================================================================
# SECTION 3: Gateway failures, limits and timeouts
# =============================================================================


class TestTurnFailures:
  """Tests for turns that end with an ErrorEvent."""

  @pytest.mark.asyncio
  async def test_gateway_error_keeps_completed_rounds(self):
    store = InMemoryStore()
    gateway = MockGateway([tool_round(tool_call("get_current_time_utc")), error_round("rate limited", text="partial")])
    session = AgentSession(gateway, store, config=fast_config())

    events = await collect(session.handle_message("c1", "time?"))

    assert event_types(events) == ["tool_invoked", "tool_result", "text_delta", "error"]
    assert events[-1].kind == ErrorKind.GATEWAY
    assert "rate limited" in events[-1].reason
    assert_single_terminal(events)

    conversation = await store.load("c1")
    assert roles(conversation) == ["user", "assistant", "tool"]
    assert all(m.content != "partial" for m in conversation.messages)

  @pytest.mark.asyncio
  async def test_gateway_exception_is_reported(self):
    store = InMemoryStore()
    gateway = MockGateway([[TextDelta("a"), RuntimeError("connection reset")]])
    session = AgentSession(gateway, store, config=fast_config())

    events = await collect(session.handle_message("c1", "hello"))

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].kind == ErrorKind.GATEWAY
    assert "connection reset" in events[-1].reason

    conversation = await store.load("c1")
    assert roles(conversation) == ["user"]

  @pytest.mark.asyncio
  async def test_stream_without_turn_complete_is_gateway_error(self):
    gateway = MockGateway([[TextDelta("dangling")]])
    session = AgentSession(gateway, InMemoryStore(), config=fast_config())

    events = await collect(session.handle_message("c1", "hello"))

    assert events[-1].kind == ErrorKind.GATEWAY

  @pytest.mark.asyncio
  async def test_stalled_gateway_times_out(self):
    gateway = MockGateway([[Stall(seconds=1.0), TurnComplete()]])
    session = AgentSession(gateway, InMemoryStore(), config=fast_config(event_timeout=0.05))

    events = await collect(session.handle_message("c1", "hello"))

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].kind == ErrorKind.GATEWAY
    assert "No generation event" in events[-1].reason

  @pytest.mark.asyncio
  async def test_max_iterations_ends_turn(self):
    store = InMemoryStore()
    gateway = MockGateway(repeat=lambda: tool_round(tool_call("get_current_time_utc")))
    session = AgentSession(gateway, store, config=fast_config(max_iterations=2))

    events = await collect(session.handle_message("c1", "loop forever"))

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].kind == ErrorKind.LIMIT
    assert gateway.call_count == 2

    conversation = await store.load("c1")
    assert roles(conversation) == ["user", "assistant", "tool", "assistant", "tool"]

  @pytest.mark.asyncio
  async def test_turn_timeout(self):
    store = InMemoryStore()
    gateway = MockGateway([[Stall(seconds=1.0), TurnComplete()]])
    session = AgentSession(gateway, store, config=fast_config(max_execution_time=0.05))

    events = await collect(session.handle_message("c1", "hello"))

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].kind == ErrorKind.TIMEOUT
    assert_single_terminal(events)

    conversation = await store.load("c1")
    assert roles(conversation) == ["user"]


# =============================================================================
# SECTION 4: Persistence
# =============================================================================


class TestPersistence:
  """Tests for the end-of-turn commit."""

  @pytest.mark.asyncio
  async def test_commit_is_retried(self):
    store = FlakyStore(fail_commits=2)
    session = AgentSession(MockGateway(), store, config=fast_config(commit_retries=3))

    events = await collect(session.handle_message("c1", "hello"))

    assert isinstance(events[-1], TurnCompleteEvent)
    assert store.commit_attempts == 3
    conversation = await store.load("c1")
    assert roles(conversation) == ["user", "assistant"]

  @pytest.mark.asyncio
  async def test_failed_commit_keeps_pre_turn_state(self):
    store = FlakyStore()
    session = AgentSession(MockGateway(), store, config=fast_config(commit_retries=1))
    await collect(session.handle_message("c1", "first"))

    store.fail_commits = 10
    events = await collect(session.handle_message("c1", "second"))

    assert isinstance(events[-1], ErrorEvent)
    assert events[-1].kind == ErrorKind.STORAGE
    assert_single_terminal(events)

    conversation = await store.load("c1")
    assert [m.content for m in conversation.messages] == ["first", "OK"]
    assert conversation.state["turns"] == 1

  @pytest.mark.asyncio
  async def test_failed_first_commit_leaves_nothing(self):
    store = FlakyStore(fail_commits=10)
    session = AgentSession(MockGateway(), store, config=fast_config(commit_retries=1))

    events = await collect(session.handle_message("c1", "hello"))

    assert events[-1].kind == ErrorKind.STORAGE
    assert store.commit_attempts == 2
    assert await store.load("c1") is None

  @pytest.mark.asyncio
  async def test_disconnected_caller_does_not_stop_turn(self):
    store = InMemoryStore()
    gateway = MockGateway([[TextDelta("Hello"), Stall(seconds=0.05), TextDelta(" there"), TurnComplete()]])
    session = AgentSession(gateway, store, config=fast_config())

    events = session.handle_message("c1", "hi")
    first = await anext(events)
    await events.aclose()
    await session.wait_idle()

    assert first.text == "Hello"
    conversation = await store.load("c1")
    assert roles(conversation) == ["user", "assistant"]
    assert conversation.messages[1].content == "Hello there"


# =============================================================================
# SECTION 5: Concurrency
# =============================================================================


class TestConcurrency:
  """Tests for overlapping turns."""

  @pytest.mark.asyncio
  async def test_queue_policy_serializes_turns(self):
    gate = asyncio.Event()
    store = InMemoryStore()
    gateway = MockGateway([[Stall(event=gate), *text_round("first")], text_round("second")])
    session = AgentSession(gateway, store, config=fast_config(busy_policy="queue"))

    first = session.handle_message("c1", "one")
    second = session.handle_message("c1", "two")
    pending = asyncio.gather(collect(first), collect(second))
    await asyncio.sleep(0.01)
    gate.set()
    first_events, second_events = await pending

    assert isinstance(first_events[-1], TurnCompleteEvent)
    assert isinstance(second_events[-1], TurnCompleteEvent)

    conversation = await store.load("c1")
    assert [m.content for m in conversation.messages] == ["one", "first", "two", "second"]
    assert [m.content for m in gateway.calls[1]["history"]] == ["one", "first", "two"]

  @pytest.mark.asyncio
  async def test_reject_policy_refuses_second_turn(self):
    gate = asyncio.Event()
    store = InMemoryStore()
    gateway = MockGateway([[Stall(event=gate), *text_round("first")]])
    session = AgentSession(gateway, store, config=fast_config(busy_policy="reject"))

    first = session.handle_message("c1", "one")
    rejected = await collect(session.handle_message("c1", "two"))
    gate.set()
    first_events = await collect(first)

    assert len(rejected) == 1
    assert rejected[0].kind == ErrorKind.BUSY
    assert rejected[0].conversation_id == "c1"
    assert isinstance(first_events[-1], TurnCompleteEvent)

    conversation = await store.load("c1")
    assert [m.content for m in conversation.messages] == ["one", "first"]

  @pytest.mark.asyncio
  async def test_reject_policy_allows_sequential_turns(self):
    session = AgentSession(MockGateway(), InMemoryStore(), config=fast_config(busy_policy="reject"))

    first = await collect(session.handle_message("c1", "one"))
    second = await collect(session.handle_message("c1", "two"))

    assert isinstance(first[-1], TurnCompleteEvent)
    assert isinstance(second[-1], TurnCompleteEvent)
    assert second[-1].message_count == 4

  @pytest.mark.asyncio
  async def test_conversations_run_in_parallel(self):
    class BarrierGateway:
      def __init__(self):
        self.started = 0
        self.both = asyncio.Event()

      async def generate(self, history, available_tools):
        self.started += 1
        if self.started == 2:
          self.both.set()
        await self.both.wait()
        yield TextDelta("together")
        yield TurnComplete()

    store = InMemoryStore()
    session = AgentSession(BarrierGateway(), store, config=fast_config(event_timeout=0.5))

    a, b = await asyncio.gather(
      collect(session.handle_message("a", "hello")),
      collect(session.handle_message("b", "hello")),
    )

    assert isinstance(a[-1], TurnCompleteEvent)
    assert isinstance(b[-1], TurnCompleteEvent)
    assert session.active == {}
    assert session.locks == {}

  @pytest.mark.asyncio
  async def test_user_message_ids_are_unique(self):
    store = InMemoryStore()
    session = AgentSession(MockGateway(), store, config=fast_config())

    await collect(session.handle_message("c1", "same"))
    await collect(session.handle_message("c1", "same"))

    conversation = await store.load("c1")
    users = [m for m in conversation.messages if isinstance(m, UserMessage)]
    assert len(users) == 2
    assert users[0].id != users[1].id
