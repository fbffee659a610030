"""
Debounced "conversation settled" detection.

One cancellable schedule per call. `reset` replaces whatever is pending, so a
burst of resets leaves a single armed schedule and only that one can fire.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_SETTLE_DELAY_SECONDS = 2.0


class TimerState(str, Enum):
    ARMED = "armed"
    FIRED = "fired"
    CANCELLED = "cancelled"


@dataclass
class _Schedule:
    generation: int
    state: TimerState = TimerState.ARMED
    task: Optional[asyncio.Task] = field(default=None, repr=False)


class SettleTimer:
    """Per-call debounce timer that awaits `on_fire(call_id)` once the delay elapses."""

    def __init__(
        self,
        on_fire: Callable[[str], Awaitable[None]],
        *,
        default_delay: float = DEFAULT_SETTLE_DELAY_SECONDS,
    ):
        self._on_fire = on_fire
        self.default_delay = default_delay
        self._schedules: dict[str, _Schedule] = {}
        self._generation = 0

    def reset(self, call_id: str, delay: Optional[float] = None) -> int:
        """Cancel any pending schedule for the call and arm a new one. Returns its generation."""
        self.cancel(call_id)

        self._generation += 1
        schedule = _Schedule(generation=self._generation)
        wait = self.default_delay if delay is None else max(0.0, float(delay))
        schedule.task = asyncio.create_task(self._run(call_id, schedule, wait))
        self._schedules[call_id] = schedule
        return schedule.generation

    def cancel(self, call_id: str) -> bool:
        """Cancel the pending schedule, if any. Returns True if one was armed."""
        schedule = self._schedules.pop(call_id, None)
        if schedule is None or schedule.state != TimerState.ARMED:
            return False

        schedule.state = TimerState.CANCELLED
        if schedule.task and not schedule.task.done() and schedule.task is not asyncio.current_task():
            schedule.task.cancel()
        return True

    def is_pending(self, call_id: str) -> bool:
        schedule = self._schedules.get(call_id)
        return schedule is not None and schedule.state == TimerState.ARMED

    def cancel_all(self) -> None:
        for call_id in list(self._schedules):
            self.cancel(call_id)

    async def _run(self, call_id: str, schedule: _Schedule, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        # A newer reset or a cancel may have landed while we were waking up.
        if schedule.state != TimerState.ARMED or self._schedules.get(call_id) is not schedule:
            return

        schedule.state = TimerState.FIRED
        self._schedules.pop(call_id, None)
        logger.debug("Settle timer fired", call_id=call_id, generation=schedule.generation)

        try:
            await self._on_fire(call_id)
        except Exception as e:
            logger.error("Settle handler failed", call_id=call_id, error=str(e))
