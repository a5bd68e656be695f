"""
Simulated clock and future event list.

The clock is the sole driver of simulated time. Time is kept as an integer
tick count; a fixed tick rate converts between ticks and simulated seconds.
"""

from __future__ import annotations

import heapq
import logging
import math
from typing import Any, Callable, Optional

from .errors import ConfigurationError, InvariantViolation
from .events import Event, EventType, describe

logger = logging.getLogger(__name__)


class SimulationClock:
    """Tick counter with a fixed number of ticks per simulated second."""

    def __init__(self, ticks_per_second: float = 1000.0):
        if not ticks_per_second > 0:
            raise ConfigurationError(
                f"ticks_per_second must be positive, got {ticks_per_second}"
            )
        self.ticks_per_second = float(ticks_per_second)
        self.ticks: int = 0

    def ticks_for(self, seconds: float) -> int:
        """Convert simulated seconds to ticks, rounding to the nearest tick."""
        return int(math.floor(seconds * self.ticks_per_second + 0.5))

    def ticks_ceil(self, seconds: float) -> int:
        """Convert simulated seconds to ticks, rounding up."""
        return int(math.ceil(seconds * self.ticks_per_second))

    def time_of(self, ticks: int) -> float:
        """Simulated seconds corresponding to a tick count."""
        return ticks / self.ticks_per_second

    @property
    def time(self) -> float:
        """Current simulated time in seconds."""
        return self.time_of(self.ticks)


class EventQueue:
    """
    Min-heap of events keyed by (tick, insertion sequence).

    Handlers never execute follow-up work inline; they schedule it. The queue
    refuses to be run re-entrantly from inside a handler.
    """

    def __init__(self, clock: SimulationClock):
        self.clock = clock
        self._heap: list[Event] = []
        self._seq = 0
        self._running = False
        self.executed = 0

    def __len__(self) -> int:
        return sum(1 for e in self._heap if not e.cancelled)

    @property
    def is_running(self) -> bool:
        return self._running

    def schedule(
        self,
        action: Callable[[], None],
        at_tick: int,
        event_type: EventType,
        data: Optional[dict[str, Any]] = None,
    ) -> Event:
        """Insert an event to run at an absolute tick."""
        if at_tick < self.clock.ticks:
            raise InvariantViolation(
                f"event {event_type.name} scheduled at tick {at_tick}, "
                f"before current tick {self.clock.ticks}"
            )
        self._seq += 1
        event = Event(
            tick=int(at_tick),
            seq=self._seq,
            event_type=event_type,
            action=action,
            data=data or {},
        )
        heapq.heappush(self._heap, event)
        return event

    def schedule_in(
        self,
        action: Callable[[], None],
        delay_ticks: int,
        event_type: EventType,
        data: Optional[dict[str, Any]] = None,
    ) -> Event:
        """Insert an event to run a number of ticks from now."""
        if delay_ticks < 0:
            raise InvariantViolation(
                f"negative delay {delay_ticks} for event {event_type.name}"
            )
        return self.schedule(action, self.clock.ticks + delay_ticks, event_type, data)

    def peek(self) -> Optional[Event]:
        """Next live event without removing it."""
        self._drop_cancelled()
        return self._heap[0] if self._heap else None

    def _drop_cancelled(self) -> None:
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)

    def run(self, until_tick: Optional[int] = None) -> int:
        """
        Execute events in order.

        Args:
            until_tick: Stop before the first event at or after this tick.
                When given, the clock is left at ``until_tick``.

        Returns:
            Number of events executed by this call
        """
        if self._running:
            raise InvariantViolation("event queue run() called re-entrantly")
        if until_tick is not None and until_tick < self.clock.ticks:
            raise InvariantViolation(
                f"run until tick {until_tick} is before current tick {self.clock.ticks}"
            )

        self._running = True
        count = 0
        try:
            while True:
                self._drop_cancelled()
                if not self._heap:
                    break
                if until_tick is not None and self._heap[0].tick >= until_tick:
                    break
                event = heapq.heappop(self._heap)
                self.clock.ticks = event.tick
                event.fired = True
                logger.debug("dispatch %s", describe(event))
                event.action()
                count += 1
        finally:
            self._running = False

        if until_tick is not None:
            self.clock.ticks = until_tick
        self.executed += count
        return count

    def clear(self) -> None:
        """Drop every scheduled event."""
        for event in self._heap:
            event.cancel()
        self._heap = []
