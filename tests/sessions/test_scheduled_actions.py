"""
Tests for scheduled actions delivered into conversations.

These cover the reminder tools end to end, duplicate deliveries, and
re-arming of persisted actions after a restart.
"""

import time

import pytest

from mock_utils import FlakyStore, MockGateway, collect, fast_config, text_round, tool_call, tool_round, wait_for

from colloquy import (
  AgentSession,
  ErrorKind,
  InMemoryStore,
  ReminderTools,
  Scheduler,
  ScheduledAction,
  SQLiteStore,
  ToolRegistry,
  TurnCompleteEvent,
  UserMessage,
)


def user_messages(conversation):
  return [m for m in conversation.messages if isinstance(m, UserMessage)]


class TestScheduledDelivery:
  """Tests for AgentSession.handle_scheduled_action()."""

  @pytest.mark.asyncio
  async def test_action_runs_a_turn(self):
    store = InMemoryStore()
    gateway = MockGateway([text_round("Time to stretch!")])
    session = AgentSession(gateway, store, config=fast_config())
    action = ScheduledAction(conversation_id="c1", fire_at=time.time(), payload={"message": "Reminder: stretch"})

    await session.handle_scheduled_action(action)

    conversation = await store.load("c1")
    assert [m.content for m in conversation.messages] == ["Reminder: stretch", "Time to stretch!"]
    assert conversation.messages[0].scheduled_action_id == action.id
    assert conversation.state["handled_actions"] == [action.id]

  @pytest.mark.asyncio
  async def test_duplicate_delivery_is_ignored(self):
    store = InMemoryStore()
    gateway = MockGateway()
    session = AgentSession(gateway, store, config=fast_config())
    action = ScheduledAction(conversation_id="c1", fire_at=time.time(), payload={"message": "ping"})

    await session.handle_scheduled_action(action)
    await session.handle_scheduled_action(action)

    conversation = await store.load("c1")
    assert len(user_messages(conversation)) == 1
    assert gateway.call_count == 1
    assert conversation.state["turns"] == 1

  @pytest.mark.asyncio
  async def test_handled_actions_keep_only_recent_ids(self):
    store = InMemoryStore()
    session = AgentSession(MockGateway(), store, config=fast_config(max_handled_actions=2))
    now = time.time()
    actions = [ScheduledAction(conversation_id="c1", fire_at=now, payload={"message": f"ping {i}"}) for i in range(3)]

    for action in actions:
      await session.handle_scheduled_action(action)

    conversation = await store.load("c1")
    assert conversation.state["handled_actions"] == [actions[1].id, actions[2].id]

    await session.handle_scheduled_action(actions[2])

    conversation = await store.load("c1")
    assert len(user_messages(conversation)) == 3

  @pytest.mark.asyncio
  async def test_payload_without_message_is_serialized(self):
    store = InMemoryStore()
    session = AgentSession(MockGateway(), store, config=fast_config())
    action = ScheduledAction(conversation_id="c1", fire_at=time.time(), payload={"kind": "digest", "count": 3})

    await session.handle_scheduled_action(action)

    conversation = await store.load("c1")
    assert conversation.messages[0].content == '{"kind": "digest", "count": 3}'


class TestReminders:
  """Tests for reminders scheduled from inside a turn."""

  @pytest.mark.asyncio
  async def test_reminder_fires_back_into_conversation(self):
    store = InMemoryStore()
    scheduler = Scheduler(store, retry_delay=0.01)
    registry = ToolRegistry([ReminderTools(scheduler)])
    gateway = MockGateway(
      [
        tool_round(tool_call("schedule_reminder", {"message": "drink water", "delay_seconds": 0.05})),
        text_round("I will remind you."),
        text_round("Time to drink water!"),
      ]
    )
    session = AgentSession(gateway, store, registry, scheduler=scheduler, config=fast_config())
    await session.start()

    events = await collect(session.handle_message("c1", "remind me to drink water"))

    result = next(e for e in events if e.type.value == "tool_result")
    assert result.success
    reminder_id = result.outcome.payload["reminder_id"]
    assert result.outcome.payload["status"] == "scheduled"
    assert isinstance(events[-1], TurnCompleteEvent)

    async def delivered():
      conversation = await store.load("c1")
      return len(user_messages(conversation)) == 2 and len(conversation.messages) == 6

    await wait_for(delivered)
    await wait_for(lambda: not scheduler.pending())
    await session.close()

    conversation = await store.load("c1")
    reminder = user_messages(conversation)[1]
    assert reminder.content == "Reminder: drink water"
    assert reminder.scheduled_action_id == reminder_id
    assert conversation.messages[-1].content == "Time to drink water!"
    assert reminder_id in conversation.state["reminders"]
    assert await store.load_actions() == []

  @pytest.mark.asyncio
  async def test_cancel_reminder(self):
    store = InMemoryStore()
    scheduler = Scheduler(store)
    registry = ToolRegistry([ReminderTools(scheduler)])
    gateway = MockGateway([tool_round(tool_call("schedule_reminder", {"message": "call mom", "delay_seconds": 3600}))])
    session = AgentSession(gateway, store, registry, scheduler=scheduler, config=fast_config())
    await session.start()

    events = await collect(session.handle_message("c1", "remind me in an hour"))
    reminder_id = next(e for e in events if e.type.value == "tool_result").outcome.payload["reminder_id"]
    assert [a.id for a in scheduler.pending("c1")] == [reminder_id]

    gateway.rounds = [tool_round(tool_call("cancel_reminder", {"reminder_id": reminder_id}))]
    events = await collect(session.handle_message("c1", "never mind"))
    result = next(e for e in events if e.type.value == "tool_result")
    await session.close()

    assert result.outcome.payload["status"] == "cancelled"
    assert scheduler.pending() == []
    assert await store.load_actions() == []
    conversation = await store.load("c1")
    assert reminder_id not in conversation.state["reminders"]

  @pytest.mark.asyncio
  async def test_cancel_applies_even_when_the_turn_is_not_committed(self):
    store = FlakyStore()
    scheduler = Scheduler(store)
    registry = ToolRegistry([ReminderTools(scheduler)])
    gateway = MockGateway([tool_round(tool_call("schedule_reminder", {"message": "call mom", "delay_seconds": 3600}))])
    session = AgentSession(gateway, store, registry, scheduler=scheduler, config=fast_config(commit_retries=0))
    await session.start()

    events = await collect(session.handle_message("c1", "remind me in an hour"))
    reminder_id = next(e for e in events if e.type.value == "tool_result").outcome.payload["reminder_id"]

    store.fail_commits = 1
    gateway.rounds = [tool_round(tool_call("cancel_reminder", {"reminder_id": reminder_id}))]
    events = await collect(session.handle_message("c1", "never mind"))
    await session.close()

    assert events[-1].kind == ErrorKind.STORAGE
    assert scheduler.pending() == []
    assert await store.load_actions() == []
    conversation = await store.load("c1")
    assert reminder_id in conversation.state["reminders"]

  @pytest.mark.asyncio
  async def test_cannot_cancel_another_conversations_reminder(self):
    store = InMemoryStore()
    scheduler = Scheduler(store)
    other_id = await scheduler.arm("other", time.time() + 3600, {"message": "secret"})
    registry = ToolRegistry([ReminderTools(scheduler)])
    gateway = MockGateway([tool_round(tool_call("cancel_reminder", {"reminder_id": other_id}))])
    session = AgentSession(gateway, store, registry, scheduler=scheduler, config=fast_config())

    events = await collect(session.handle_message("c1", "cancel it"))

    result = next(e for e in events if e.type.value == "tool_result")
    assert result.outcome.payload["status"] == "not_found"
    assert [a.id for a in scheduler.pending("other")] == [other_id]

  @pytest.mark.asyncio
  async def test_reminder_needs_exactly_one_time(self):
    store = InMemoryStore()
    scheduler = Scheduler(store)
    registry = ToolRegistry([ReminderTools(scheduler)])
    gateway = MockGateway([tool_round(tool_call("schedule_reminder", {"message": "stretch"}))])
    session = AgentSession(gateway, store, registry, scheduler=scheduler, config=fast_config())

    events = await collect(session.handle_message("c1", "remind me sometime"))

    result = next(e for e in events if e.type.value == "tool_result")
    assert not result.success
    assert result.outcome.kind.value == "validation"
    assert scheduler.pending() == []


class TestRestart:
  """Tests for actions that outlive the process that armed them."""

  @pytest.mark.asyncio
  async def test_persisted_action_is_delivered_after_restart(self, tmp_path):
    path = str(tmp_path / "colloquy.db")

    # First process arms an action and goes away before it fires.
    first_store = SQLiteStore(path)
    first_scheduler = Scheduler(first_store)
    action_id = await first_scheduler.arm("c1", time.time() - 1, {"message": "Reminder: standup"})

    store = SQLiteStore(path)
    scheduler = Scheduler(store, retry_delay=0.01)
    gateway = MockGateway([text_round("Standup time!")])
    session = AgentSession(gateway, store, scheduler=scheduler, config=fast_config())
    await session.start()

    await wait_for(lambda: not scheduler.pending())
    await session.close()

    conversation = await store.load("c1")
    assert [m.content for m in conversation.messages] == ["Reminder: standup", "Standup time!"]
    assert conversation.messages[0].scheduled_action_id == action_id
    assert await store.load_actions() == []

  @pytest.mark.asyncio
  async def test_redelivery_after_crash_is_deduplicated(self, tmp_path):
    path = str(tmp_path / "colloquy.db")
    store = SQLiteStore(path)
    gateway = MockGateway()
    session = AgentSession(gateway, store, config=fast_config())

    # The turn committed but the process died before the record was deleted.
    action = ScheduledAction(conversation_id="c1", fire_at=time.time() - 1, payload={"message": "ping"})
    await store.save_action(action)
    await session.handle_scheduled_action(action)

    scheduler = Scheduler(SQLiteStore(path), retry_delay=0.01)
    restarted = AgentSession(gateway, SQLiteStore(path), scheduler=scheduler, config=fast_config())
    await restarted.start()
    await wait_for(lambda: not scheduler.pending())
    await restarted.close()

    conversation = await store.load("c1")
    assert len(user_messages(conversation)) == 1
    assert gateway.call_count == 1
    assert await store.load_actions() == []
