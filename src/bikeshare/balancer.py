"""
Hub balancing control loop.

A balancer watches the user hubs of one sys domain and dispatches workers
whenever a hub falls outside its trigger band, subject to a per-hub quiet
period between consecutive dispatches. Workers come from the nearest
storage hub that has one idle (and, for a delivery, bicycles to load).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from ..simulation.errors import ConfigurationError
from ..simulation.events import Event, EventType

if TYPE_CHECKING:
    from ..simulation.engine import BikeShareSimulation
    from .domain import SysDomain
    from .hub import Hub, StorageHub
    from .worker import HubWorker

logger = logging.getLogger(__name__)


class TriggerPolicy:
    """Deficit below ``lower_trigger``, surplus above ``upper_trigger``."""

    name = "triggers"

    def deficit(self, hub: Hub) -> bool:
        return hub.bike_count < hub.lower_trigger

    def surplus(self, hub: Hub) -> bool:
        return hub.bike_count > hub.upper_trigger

    def __repr__(self) -> str:
        return "TriggerPolicy()"


class ThresholdPolicy:
    """
    Deficit below ``threshold * capacity``, surplus above
    ``(1 - threshold) * capacity``. The same fraction applies to every hub.
    """

    name = "threshold"

    def __init__(self, threshold: float):
        if not 0.0 < threshold <= 0.5:
            raise ConfigurationError(f"threshold must be in (0, 0.5], got {threshold}")
        self.threshold = threshold

    def deficit(self, hub: Hub) -> bool:
        return hub.bike_count < self.threshold * hub.capacity

    def surplus(self, hub: Hub) -> bool:
        return hub.bike_count > (1.0 - self.threshold) * hub.capacity

    def __repr__(self) -> str:
        return f"ThresholdPolicy({self.threshold})"


@dataclass
class Dispatch:
    """One balancer decision, kept for reporting."""

    tick: int
    hub: str
    worker: str
    amount: int
    collect_overflow: bool


class HubBalancer:
    """
    Keeps the hubs of a sys domain near their nominal counts.

    Hubs that need work while no worker is idle stay pending and are
    re-evaluated whenever a worker returns to a storage hub of the domain.
    Hubs blocked only by the quiet period get a single retry event at its end.
    """

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        sys_domain: SysDomain,
        quiet_period: float = 0.0,
        policy: Optional[TriggerPolicy | ThresholdPolicy] = None,
        collect_overflow: bool = True,
    ):
        if quiet_period < 0:
            raise ConfigurationError(f"balancer {name!r}: quietPeriod must be >= 0, got {quiet_period}")
        if sys_domain is None:
            raise ConfigurationError(f"balancer {name!r} needs a sys domain")
        self.sim = sim
        self.name = name
        self.domain = sys_domain
        self.quiet_period = quiet_period
        self.quiet_ticks = sim.ticks_for(quiet_period)
        self.policy = policy or TriggerPolicy()
        self.collect_overflow = collect_overflow

        self.last_action: dict[str, int] = {}
        self.in_service: dict[str, tuple[Hub, HubWorker]] = {}
        self.pending: dict[str, Hub] = {}
        self._retries: dict[str, Event] = {}
        self.dispatches: list[Dispatch] = []

        sys_domain.add_balancer(self)
        sim.register_balancer(self)
        sim.schedule_init(self.evaluate_all)

    def work_for(self, hub: Hub) -> Optional[int]:
        """
        Bicycles to move to (positive) or from (negative) ``hub``.

        Returns:
            The transfer toward nominal, 0 for overflow-only work, or None
            when the hub needs nothing
        """
        amount = hub.nominal - hub.bike_count
        if amount > 0 and self.policy.deficit(hub):
            return amount
        if amount < 0 and self.policy.surplus(hub):
            return amount
        if self.collect_overflow and hub.overflow > 0:
            return 0
        return None

    def evaluate_all(self) -> None:
        for hub in self.domain.user_hubs:
            self.evaluate(hub)

    def hub_changed(self, hub: Hub) -> None:
        self.evaluate(hub)

    def evaluate(self, hub: Hub) -> bool:
        """Dispatch a worker to ``hub`` if it needs one; True when dispatched."""
        if hub.name in self.in_service:
            return False
        amount = self.work_for(hub)
        if amount is None:
            self.pending.pop(hub.name, None)
            return False

        now = self.sim.current_ticks
        last = self.last_action.get(hub.name)
        if last is not None and now - last < self.quiet_ticks:
            self._schedule_retry(hub, last + self.quiet_ticks)
            return False

        overflow = self.collect_overflow and hub.overflow > 0
        ranked = self.domain.storage_hubs_by_distance(hub)
        if amount > 0 and not overflow and all(s.bike_count == 0 for s in ranked):
            logger.warning(
                "%s: %s needs bicycles but storage has none", self.name, hub.name
            )
            self.pending[hub.name] = hub
            return False

        shub = self._storage_hub_for(ranked, amount, overflow)
        if shub is None:
            self.pending[hub.name] = hub
            logger.debug("%s: %s pending, no usable idle worker", self.name, hub.name)
            return False

        if amount > 0:
            amount = min(amount, shub.bike_count)
        worker = shub.poll_worker()
        if amount > 0:
            amount = min(amount, worker.capacity - worker.bike_count)
        else:
            amount = -min(-amount, worker.capacity - worker.bike_count)
        self.pending.pop(hub.name, None)
        self.last_action[hub.name] = now
        self.in_service[hub.name] = (hub, worker)
        self.dispatches.append(Dispatch(now, hub.name, worker.name, amount, overflow))
        worker.dispatch(hub, amount, overflow)
        return True

    @staticmethod
    def _storage_hub_for(
        ranked: list[StorageHub], amount: int, overflow: bool
    ) -> Optional[StorageHub]:
        """Nearest storage hub with an idle worker and, for a delivery, stock."""
        for shub in ranked:
            if not shub.has_idle_worker():
                continue
            if amount > 0 and shub.bike_count == 0 and not overflow:
                continue
            return shub
        return None

    def _schedule_retry(self, hub: Hub, at_tick: int) -> None:
        existing = self._retries.get(hub.name)
        if existing is not None and existing.pending:
            return

        def retry() -> None:
            self._retries.pop(hub.name, None)
            self.evaluate(hub)

        self._retries[hub.name] = self.sim.queue.schedule(
            retry, at_tick, EventType.BALANCER_RETRY,
            {"balancer": self.name, "hub": hub.name},
        )

    def worker_available(self, storage_hub: StorageHub, worker: HubWorker) -> None:
        """
        Called when ``worker`` has finished its task and queued at ``storage_hub``.

        The hub this balancer sent the worker to is released even if another
        balancer has already dispatched the worker again. Pending hubs are then
        retried while the storage hub still has an idle worker.
        """
        released = []
        for name, (hub, assigned) in list(self.in_service.items()):
            if assigned is worker:
                del self.in_service[name]
                released.append(hub)

        candidates = list(self.pending.values())
        candidates += [h for h in released if h.name not in self.pending]
        for hub in candidates:
            if not storage_hub.has_idle_worker():
                break
            self.evaluate(hub)

    def __repr__(self) -> str:
        return f"HubBalancer({self.name!r}, policy={self.policy!r}, quiet={self.quiet_period})"
