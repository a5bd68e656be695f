"""
Hubs: fixed locations holding a bounded number of shared bicycles.

A hub's bicycle count is only changed through the pickup/dropoff style
operations below; each change is reported to hub-data listeners, condition
listeners and the domains the hub belongs to.
"""

from __future__ import annotations

import logging
import sys
from collections import deque
from typing import TYPE_CHECKING, Optional

from ..simulation.errors import ConfigurationError, InvariantViolation
from ..simulation.events import EventType
from .listeners import HubConditionListener, HubDataListener, NoPickupListener

if TYPE_CHECKING:
    from ..simulation.engine import BikeShareSimulation
    from ..stochastic.variates import RandomVariate
    from .domain import ExtDomain, SysDomain, UsrDomain
    from .worker import HubWorker

logger = logging.getLogger(__name__)

UNBOUNDED = sys.maxsize


class Hub:
    """
    A bike-share hub.

    Invariant: ``0 <= bike_count <= capacity``. Bicycles that do not fit are
    counted in ``overflow`` instead.
    """

    is_storage = False

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        capacity: int,
        lower_trigger: int,
        nominal: int,
        upper_trigger: int,
        count: int,
        over_count: int = 0,
        x: float = 0.0,
        y: float = 0.0,
        pickup_time: Optional[RandomVariate] = None,
        usr_domain: Optional[UsrDomain] = None,
        sys_domain: Optional[SysDomain] = None,
        ext_domains: Optional[list[ExtDomain]] = None,
    ):
        self._validate(capacity, lower_trigger, nominal, upper_trigger, count, over_count, name)
        self.sim = sim
        self.name = name
        self.capacity = capacity
        self.lower_trigger = lower_trigger
        self.nominal = nominal
        self.upper_trigger = upper_trigger
        self.bike_count = count
        self.initial_bike_count = count
        self.overflow = over_count
        self.x = float(x)
        self.y = float(y)
        self.pickup_time = pickup_time
        self.usr_domain = usr_domain
        self.sys_domain = sys_domain
        self.ext_domains: list[ExtDomain] = []

        self._data_listeners: list[HubDataListener] = []
        self._condition_listeners: list[HubConditionListener] = []

        sim.register_hub(self)
        for domain in self.domains:
            domain.add_hub(self)
        for domain in ext_domains or []:
            self.join_domain(domain)

    @staticmethod
    def _validate(capacity, lower, nominal, upper, count, over_count, name) -> None:
        if capacity <= 0:
            raise ConfigurationError(f"hub {name!r}: capacity must be positive, got {capacity}")
        if not 0 <= lower <= nominal <= upper <= capacity:
            raise ConfigurationError(
                f"hub {name!r}: need 0 <= lowerTrigger ({lower}) <= nominal ({nominal}) "
                f"<= upperTrigger ({upper}) <= capacity ({capacity})"
            )
        if not 0 <= count <= capacity:
            raise ConfigurationError(
                f"hub {name!r}: count {count} outside [0, {capacity}]"
            )
        if over_count < 0:
            raise ConfigurationError(f"hub {name!r}: overCount must be >= 0, got {over_count}")

    @property
    def domains(self) -> list:
        return [d for d in (self.usr_domain, self.sys_domain) if d is not None] + self.ext_domains

    def join_domain(self, domain: ExtDomain) -> None:
        """Make this hub reachable through an external domain."""
        if domain.kind != "ext":
            raise ConfigurationError(
                f"hub {self.name!r}: only external domains can be joined, got {domain!r}"
            )
        if domain not in self.ext_domains:
            self.ext_domains.append(domain)
            domain.add_hub(self)

    def need_bikes(self) -> int:
        """Bicycles missing below the lower trigger."""
        if self.bike_count < self.lower_trigger:
            return self.lower_trigger - self.bike_count
        return 0

    def excess_bikes(self) -> int:
        """Bicycles above the upper trigger."""
        if self.bike_count > self.upper_trigger:
            return self.bike_count - self.upper_trigger
        return 0

    # Listeners

    def add_hub_data_listener(self, listener: HubDataListener) -> None:
        """Subscribe; the listener immediately receives the current state."""
        self._data_listeners.append(listener)
        listener.hub_changed(
            self, self.bike_count, True, self.overflow, True,
            self.sim.current_time, self.sim.current_ticks,
        )

    def remove_hub_data_listener(self, listener: HubDataListener) -> None:
        self._data_listeners.remove(listener)

    def add_condition_listener(self, listener: HubConditionListener) -> None:
        self._condition_listeners.append(listener)
        listener.hub_condition_changed(
            self, self.need_bikes(), self.excess_bikes(), self.overflow
        )

    def remove_condition_listener(self, listener: HubConditionListener) -> None:
        self._condition_listeners.remove(listener)

    def _state(self) -> tuple[int, int, int, int]:
        return self.bike_count, self.overflow, self.need_bikes(), self.excess_bikes()

    def _changed(self, before: tuple[int, int, int, int]) -> None:
        self._check_invariants()
        old_count, old_overflow, old_need, old_excess = before
        count_changed = old_count != self.bike_count
        overflow_changed = old_overflow != self.overflow
        if not (count_changed or overflow_changed):
            return

        need = self.need_bikes()
        excess = self.excess_bikes()
        if need != old_need or excess != old_excess or overflow_changed:
            for listener in list(self._condition_listeners):
                listener.hub_condition_changed(self, need, excess, self.overflow)

        time = self.sim.current_time
        ticks = self.sim.current_ticks
        for listener in list(self._data_listeners):
            listener.hub_changed(
                self, self.bike_count, count_changed,
                self.overflow, overflow_changed, time, ticks,
            )

        for domain in self.domains:
            domain.on_hub_changed(self)

    def _check_invariants(self) -> None:
        if self.bike_count < 0 or self.bike_count > self.capacity:
            raise InvariantViolation(
                f"hub {self.name!r}: bike count {self.bike_count} "
                f"outside [0, {self.capacity}]"
            )
        if self.overflow < 0:
            raise InvariantViolation(
                f"hub {self.name!r}: negative overflow count {self.overflow}"
            )

    # Rider operations

    def pickup(self, n: int = 1) -> bool:
        """
        Take ``n`` bicycles for departing riders.

        All or nothing: when fewer than ``n`` are available nothing changes
        and False is returned.
        """
        if n < 0:
            raise ValueError(f"pickup count must be >= 0, got {n}")
        if self.bike_count < n:
            logger.debug("%s: pickup of %d failed, count = %d", self.name, n, self.bike_count)
            return False
        before = self._state()
        self.bike_count -= n
        self._changed(before)
        return True

    def dropoff(self, n: int = 1, will_overflow: bool = False) -> int:
        """
        Accept ``n`` arriving bicycles.

        Bicycles beyond capacity, or all of them when the riders chose the
        overflow area, are added to the overflow count.

        Returns:
            Number of bicycles placed in the preferred area
        """
        if n < 0:
            raise ValueError(f"dropoff count must be >= 0, got {n}")
        before = self._state()
        placed = 0 if will_overflow else min(n, self.capacity - self.bike_count)
        self.bike_count += placed
        self.overflow += n - placed
        self._changed(before)
        return placed

    # Worker operations

    def take_bikes(self, n: int) -> int:
        """Remove up to ``n`` bicycles; returns the number removed."""
        if n < 0:
            raise ValueError(f"take count must be >= 0, got {n}")
        before = self._state()
        taken = min(n, self.bike_count)
        self.bike_count -= taken
        self._changed(before)
        return taken

    def add_bikes(self, n: int) -> int:
        """Add up to ``n`` bicycles without overflowing; returns the number added."""
        if n < 0:
            raise ValueError(f"add count must be >= 0, got {n}")
        before = self._state()
        added = min(n, self.capacity - self.bike_count)
        self.bike_count += added
        self._changed(before)
        return added

    def incr_overflow(self, n: int) -> None:
        if n < 0:
            raise ValueError(f"overflow increment must be >= 0, got {n}")
        before = self._state()
        self.overflow += n
        self._changed(before)

    def pickup_overflow(self, n: int) -> int:
        """
        Remove ``n`` bicycles from the overflow area.

        Returns:
            Ticks consumed, summing one ``pickup_time`` sample per bicycle
        """
        if n < 0 or n > self.overflow:
            raise ValueError(
                f"hub {self.name!r}: cannot pick up {n} of {self.overflow} overflow bicycles"
            )
        interval = 0.0
        if self.pickup_time is not None:
            for _ in range(n):
                interval += self.pickup_time.sample()
        before = self._state()
        self.overflow -= n
        self._changed(before)
        return self.sim.ticks_for(interval)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, count={self.bike_count}, overflow={self.overflow})"


class StorageHub(Hub):
    """
    Depot backing a pool of workers.

    Has no capacity limit of its own. Optionally scans the hubs it serves
    every ``interval_no_pickup`` seconds and raises an alert for each hub no
    worker has visited within that interval.
    """

    is_storage = True

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        sys_domain: SysDomain,
        count: Optional[int] = None,
        lower_trigger: int = 0,
        nominal: int = 0,
        upper_trigger: int = UNBOUNDED,
        x: float = 0.0,
        y: float = 0.0,
        interval_no_pickup: Optional[float] = None,
    ):
        if sys_domain is None:
            raise ConfigurationError(f"storage hub {name!r} needs a sys domain")
        if interval_no_pickup is not None and not interval_no_pickup > 0:
            raise ConfigurationError(
                f"storage hub {name!r}: intervalNoPickup must be positive, got {interval_no_pickup}"
            )
        super().__init__(
            sim, name,
            capacity=UNBOUNDED,
            lower_trigger=lower_trigger,
            nominal=nominal,
            upper_trigger=upper_trigger,
            count=nominal if count is None else count,
            x=x, y=y,
            sys_domain=sys_domain,
        )
        self.interval_no_pickup = interval_no_pickup
        self.workers: list[HubWorker] = []
        self.idle_workers: deque[HubWorker] = deque()
        self.last_visit: dict[str, int] = {}
        self._alert_listeners: list[NoPickupListener] = []
        if interval_no_pickup is not None:
            sim.schedule_init(self._start_monitoring)

    def add_worker(self, worker: HubWorker) -> None:
        if worker in self.workers:
            return
        self.workers.append(worker)
        self.idle_workers.append(worker)

    def served_hubs(self) -> list[Hub]:
        """User hubs of the sys domain for which this is the nearest storage hub."""
        return [
            hub for hub in self.sys_domain.user_hubs
            if self.sys_domain.serving_storage_hub(hub) is self
        ]

    def has_idle_worker(self) -> bool:
        return bool(self.idle_workers)

    def poll_worker(self) -> Optional[HubWorker]:
        """Remove and return an idle worker, or None when all are busy."""
        if not self.idle_workers:
            logger.debug("%s: no workers available", self.name)
            return None
        worker = self.idle_workers.popleft()
        worker.fire_dequeued(self)
        return worker

    def queue_worker(self, worker: HubWorker) -> None:
        """Return a worker to the idle queue and let balancers retry pending hubs."""
        if worker not in self.workers:
            raise InvariantViolation(f"{worker.name!r} does not belong to {self.name!r}")
        self.idle_workers.append(worker)
        logger.debug("%s: worker %s queued", self.name, worker.name)
        worker.fire_queued(self)
        for balancer in self.sys_domain.balancers:
            balancer.worker_available(self, worker)

    def record_visit(self, hub: Hub) -> None:
        self.last_visit[hub.name] = self.sim.current_ticks

    # No-pickup monitoring

    def add_no_pickup_listener(self, listener: NoPickupListener) -> None:
        self._alert_listeners.append(listener)

    def remove_no_pickup_listener(self, listener: NoPickupListener) -> None:
        self._alert_listeners.remove(listener)

    def _start_monitoring(self) -> None:
        start = self.sim.current_ticks
        for hub in self.served_hubs():
            self.last_visit.setdefault(hub.name, start)
        self._schedule_check()

    def _schedule_check(self) -> None:
        self.sim.queue.schedule_in(
            self._check_no_pickup,
            self.sim.ticks_for(self.interval_no_pickup),
            EventType.NO_PICKUP_CHECK,
            {"storage_hub": self.name},
        )

    def _check_no_pickup(self) -> None:
        now = self.sim.current_ticks
        limit = self.sim.ticks_for(self.interval_no_pickup)
        for hub in self.served_hubs():
            last = self.last_visit.setdefault(hub.name, 0)
            if now - last >= limit:
                idle = self.sim.clock.time_of(now - last)
                logger.warning(
                    "%s: hub %s not visited for %.0f seconds", self.name, hub.name, idle
                )
                for listener in list(self._alert_listeners):
                    listener.no_pickup_alert(self, hub, self.sim.current_time, now, idle)
        self._schedule_check()
