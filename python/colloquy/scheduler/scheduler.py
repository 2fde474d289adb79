"""
Durable timers for deferred actions.

An action is persisted before its timer starts, and its record is deleted
only after the callback has handled it. A crash anywhere in between leaves the
record in place, and start() re-arms it on the next run. Delivery is
therefore at-least-once; the callback must tolerate duplicates.
"""

import asyncio
import time

from typing import Awaitable, Callable, Dict, List, Optional, Set

from ..logs import get_logger
from ..messages import ScheduledAction
from ..store.protocol import ScheduleStore

RETRY_DELAY_DEFAULT = 5.0

ScheduledCallback = Callable[[ScheduledAction], Awaitable[None]]


class Scheduler:
  def __init__(
    self,
    store: ScheduleStore,
    callback: Optional[ScheduledCallback] = None,
    retry_delay: float = RETRY_DELAY_DEFAULT,
    clock: Callable[[], float] = time.time,
  ):
    self.logger = get_logger("scheduler")
    self.store = store
    self.callback = callback
    self.retry_delay = retry_delay
    self.clock = clock

    self._actions: Dict[str, ScheduledAction] = {}
    self._timers: Dict[str, asyncio.Task] = {}
    self._firing: Set[str] = set()
    self._running = False

    self._fired = 0
    self._failed = 0

  @property
  def running(self) -> bool:
    return self._running

  async def start(self, callback: Optional[ScheduledCallback] = None) -> None:
    """
    Start firing actions, re-arming every action found in the store.

    Actions whose fire time has already passed fire immediately.
    """
    if callback is not None:
      self.callback = callback
    if self._running:
      return

    self._running = True
    actions = await self.store.load_actions()
    for action in actions:
      if action.id not in self._timers:
        self._actions[action.id] = action
        self._start_timer(action)

    self.logger.info(f"Started scheduler with {len(actions)} persisted actions")

  async def stop(self) -> None:
    """Cancel all timers. Records stay in the store and are re-armed by start()."""
    if not self._running:
      return

    self._running = False
    timers = list(self._timers.values())
    self._timers.clear()
    for timer in timers:
      timer.cancel()
    await asyncio.gather(*timers, return_exceptions=True)
    self.logger.info("Stopped scheduler")

  async def arm(self, conversation_id: str, fire_at: float, payload: dict) -> str:
    """
    Persist a new action and start its timer.

    :return: The id of the new action
    """
    action = ScheduledAction(conversation_id=conversation_id, fire_at=fire_at, payload=payload)
    await self.store.save_action(action)
    self._actions[action.id] = action
    if self._running:
      self._start_timer(action)

    self.logger.debug(f"Armed action '{action.id}' for conversation '{conversation_id}' in {fire_at - self.clock():.1f}s")
    return action.id

  async def cancel(self, action_id: str) -> bool:
    """
    Remove an action and its timer.

    :return: True if the action existed
    """
    known = self._actions.pop(action_id, None) is not None
    timer = self._timers.pop(action_id, None)
    # An action being delivered finishes its delivery; only the record goes.
    if timer is not None and action_id not in self._firing:
      timer.cancel()

    deleted = await self.store.delete_action(action_id)
    if known or deleted:
      self.logger.debug(f"Cancelled action '{action_id}'")
    return known or deleted

  def pending(self, conversation_id: Optional[str] = None) -> List[ScheduledAction]:
    actions = [a for a in self._actions.values() if conversation_id is None or a.conversation_id == conversation_id]
    return sorted(actions, key=lambda a: a.fire_at)

  def stats(self) -> dict:
    return {
      "pending": len(self._actions),
      "timers": len(self._timers),
      "fired": self._fired,
      "failed": self._failed,
      "running": self._running,
    }

  def _start_timer(self, action: ScheduledAction):
    self._timers[action.id] = asyncio.create_task(self._run_timer(action))

  async def _run_timer(self, action: ScheduledAction):
    await asyncio.sleep(max(0.0, action.fire_at - self.clock()))

    while self._running and action.id in self._actions:
      if self.callback is None:
        self.logger.warning(f"No callback set, action '{action.id}' stays pending")
        self._timers.pop(action.id, None)
        return

      self._firing.add(action.id)
      try:
        await self.callback(action)
      except Exception as e:
        self._failed += 1
        self.logger.error(f"Scheduled action '{action.id}' failed, retrying in {self.retry_delay}s: {e}")
        await asyncio.sleep(self.retry_delay)
        continue
      finally:
        self._firing.discard(action.id)

      self._fired += 1
      self._timers.pop(action.id, None)
      self._actions.pop(action.id, None)
      await self.store.delete_action(action.id)
      self.logger.debug(f"Delivered action '{action.id}'")
      return
