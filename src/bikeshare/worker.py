"""
Hub workers: mobile agents that move bicycles between a storage hub and
the hubs it serves.

A dispatched worker runs idle -> traveling -> servicing -> traveling -> idle.
Every leg is a scheduled event; travel times come from the sys domain's
delay table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING, Optional

from ..simulation.errors import ConfigurationError, InvariantViolation
from ..simulation.events import EventType
from .listeners import HubWorkerListener

if TYPE_CHECKING:
    from ..simulation.engine import BikeShareSimulation
    from .domain import SysDomain
    from .hub import Hub, StorageHub

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    """What a worker is currently doing."""

    IDLE = auto()
    TRAVELING = auto()
    SERVICING = auto()


@dataclass
class WorkerTask:
    """A single dispatch: the hub to service and the intended transfer."""

    hub: Hub
    amount: int  # > 0 deliver to hub, < 0 collect from hub
    collect_overflow: bool
    dispatched_tick: int


class HubWorker:
    """A worker carrying at most ``capacity`` bicycles."""

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        capacity: int,
        storage_hub: StorageHub,
        sys_domain: Optional[SysDomain] = None,
        count: int = 0,
    ):
        if capacity <= 0:
            raise ConfigurationError(f"worker {name!r}: capacity must be positive, got {capacity}")
        if not 0 <= count <= capacity:
            raise ConfigurationError(f"worker {name!r}: count {count} outside [0, {capacity}]")
        if storage_hub is None:
            raise ConfigurationError(f"worker {name!r} needs a storage hub")
        self.sim = sim
        self.name = name
        self.capacity = capacity
        self.bike_count = count
        self.initial_bike_count = count
        self.storage_hub = storage_hub
        self.domain = sys_domain or storage_hub.sys_domain
        self.current_hub: Hub = storage_hub
        self.state = WorkerState.IDLE
        self.task: Optional[WorkerTask] = None
        self.completed_tasks = 0
        self._listeners: list[HubWorkerListener] = []

        sim.register_worker(self)
        self.domain.add_worker(self)
        storage_hub.add_worker(self)

    @property
    def is_idle(self) -> bool:
        return self.state is WorkerState.IDLE

    # Listeners

    def add_worker_listener(self, listener: HubWorkerListener) -> None:
        self._listeners.append(listener)

    def remove_worker_listener(self, listener: HubWorkerListener) -> None:
        self._listeners.remove(listener)

    def _fire(self, method: str, hub: Hub, *args) -> None:
        time = self.sim.current_time
        ticks = self.sim.current_ticks
        for listener in list(self._listeners):
            getattr(listener, method)(self, time, ticks, hub, *args)

    def fire_queued(self, hub: Hub) -> None:
        self._fire("queued", hub)

    def fire_dequeued(self, hub: Hub) -> None:
        self._fire("dequeued", hub)

    def _set_count(self, hub: Hub, new_count: int) -> None:
        if not 0 <= new_count <= self.capacity:
            raise InvariantViolation(
                f"worker {self.name!r}: count {new_count} outside [0, {self.capacity}]"
            )
        old = self.bike_count
        self.bike_count = new_count
        if old != new_count:
            self._fire("changed_count", hub, old, new_count)

    # Dispatch

    def dispatch(self, hub: Hub, amount: int, collect_overflow: bool = False) -> WorkerTask:
        """
        Send the worker to ``hub``.

        Departure is scheduled at the current tick rather than run inline, so
        a dispatch made from inside a listener never mutates state re-entrantly.
        """
        if not self.is_idle:
            raise InvariantViolation(f"worker {self.name!r} dispatched while {self.state.name}")
        self.task = WorkerTask(hub, amount, collect_overflow, self.sim.current_ticks)
        self.state = WorkerState.TRAVELING
        self.sim.queue.schedule_in(
            self._depart, 0, EventType.WORKER_DEPART,
            {"worker": self.name, "hub": hub.name, "amount": amount},
        )
        logger.debug(
            "worker %s dispatched to %s (amount=%d, overflow=%s)",
            self.name, hub.name, amount, collect_overflow,
        )
        return self.task

    def _depart(self) -> None:
        task = self.task
        if task.amount > 0:
            room = self.capacity - self.bike_count
            loaded = self.storage_hub.take_bikes(min(task.amount, room))
            self._set_count(self.storage_hub, self.bike_count + loaded)
        self._travel(task.hub, self._arrive, EventType.WORKER_ARRIVE)

    def _travel(self, dest: Hub, then, event_type: EventType) -> None:
        origin = self.current_hub
        self._fire("left_hub", origin)
        self.state = WorkerState.TRAVELING
        delay = self.domain.get_delay(origin, dest, 1)
        logger.debug("worker %s: %s -> %s in %.1fs", self.name, origin.name, dest.name, delay)
        self.sim.queue.schedule_in(
            then, self.sim.ticks_for(delay), event_type,
            {"worker": self.name, "from": origin.name, "to": dest.name},
        )

    def _arrive(self) -> None:
        hub = self.task.hub
        self.current_hub = hub
        self.state = WorkerState.SERVICING
        self._fire("entered_hub", hub)
        serving = self.domain.serving_storage_hub(hub) or self.storage_hub
        serving.record_visit(hub)

        # Counts may have moved while travelling; work from the current state.
        deficit = hub.nominal - hub.bike_count
        if deficit > 0 and self.bike_count > 0:
            added = hub.add_bikes(min(deficit, self.bike_count))
            self._set_count(hub, self.bike_count - added)
        elif deficit < 0:
            room = self.capacity - self.bike_count
            taken = hub.take_bikes(min(-deficit, room))
            self._set_count(hub, self.bike_count + taken)

        service_ticks = 0
        if self.task.collect_overflow and hub.overflow > 0:
            n = min(hub.overflow, self.capacity - self.bike_count)
            if n > 0:
                service_ticks = hub.pickup_overflow(n)
                self._set_count(hub, self.bike_count + n)

        self.sim.queue.schedule_in(
            self._leave, service_ticks, EventType.WORKER_DEPART,
            {"worker": self.name, "hub": hub.name},
        )

    def _leave(self) -> None:
        self._travel(self.storage_hub, self._return, EventType.WORKER_RETURN)

    def _return(self) -> None:
        shub = self.storage_hub
        self.current_hub = shub
        self._fire("entered_hub", shub)
        if self.bike_count > 0:
            stored = shub.add_bikes(self.bike_count)
            self._set_count(shub, self.bike_count - stored)
        self.state = WorkerState.IDLE
        self.task = None
        self.completed_tasks += 1
        shub.queue_worker(self)

    def __repr__(self) -> str:
        return f"HubWorker({self.name!r}, count={self.bike_count}, state={self.state.name})"
