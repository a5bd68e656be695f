"""
Event types for the simulation engine.

Defines the events that drive the discrete-event simulation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Callable, Optional


class EventType(Enum):
    """Types of events in the simulation."""

    INIT = auto()  # One-time setup call at tick 0
    TRIP_START = auto()  # Trip generator fires
    TRIP_END = auto()  # Rider reaches destination hub
    TRIP_RESUME = auto()  # Round-trip rider leaves the destination again
    WORKER_DEPART = auto()  # Worker leaves its storage hub
    WORKER_ARRIVE = auto()  # Worker reaches the hub it was sent to
    WORKER_RETURN = auto()  # Worker back at its storage hub
    BALANCER_RETRY = auto()  # Quiet period elapsed for a hub
    NO_PICKUP_CHECK = auto()  # Storage hub idle-hub scan
    METRICS_SNAPSHOT = auto()  # Periodic metrics collection


@dataclass(order=True)
class Event:
    """
    A scheduled simulation event.

    Events are ordered by tick, then by insertion sequence so that events
    sharing a tick run in the order they were scheduled.
    """

    tick: int
    seq: int
    event_type: EventType = field(compare=False)
    action: Callable[[], None] = field(compare=False, repr=False)
    data: dict[str, Any] = field(default_factory=dict, compare=False)
    cancelled: bool = field(default=False, compare=False)
    fired: bool = field(default=False, compare=False)

    def cancel(self) -> None:
        """Mark the event so the queue skips it."""
        self.cancelled = True

    @property
    def pending(self) -> bool:
        return not (self.cancelled or self.fired)


def describe(event: Optional[Event]) -> str:
    """Short text form used in log records."""
    if event is None:
        return "<none>"
    flag = " (cancelled)" if event.cancelled else ""
    return f"{event.event_type.name}@{event.tick}#{event.seq}{flag}"
