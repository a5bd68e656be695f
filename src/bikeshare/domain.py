"""
Hub domains: named groupings that scope delays and notifications.

A user domain carries the delay table riders travel by. A system domain
carries the delay table workers travel by, knows its storage hubs, and
forwards hub changes to the balancers attached to it. An external domain
models another way to travel between hubs (a shuttle, a bus line); a user
domain whose parent is an external domain lets riders choose between the two.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Union

from ..simulation.errors import ConfigurationError

if TYPE_CHECKING:
    from ..simulation.engine import BikeShareSimulation
    from ..stochastic.delay import DelayTable, ScheduledDelayTable
    from .balancer import HubBalancer
    from .hub import Hub, StorageHub
    from .worker import HubWorker

logger = logging.getLogger(__name__)


class HubDomain:
    """Base class for user, system and external domains."""

    kind = "domain"

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        delay_table: Optional[Union[DelayTable, ScheduledDelayTable]] = None,
    ):
        self.sim = sim
        self.name = name
        self.delay_table = delay_table
        self.hubs: list[Hub] = []
        sim.register_domain(self)

    def set_delay_table(self, table: Union[DelayTable, ScheduledDelayTable]) -> None:
        self.delay_table = table

    def add_hub(self, hub: Hub) -> None:
        if hub not in self.hubs:
            self.hubs.append(hub)

    def contains(self, hub: Hub) -> bool:
        return hub in self.hubs

    def _table(self) -> Union[DelayTable, ScheduledDelayTable]:
        if self.delay_table is None:
            raise ConfigurationError(f"domain {self.name!r} has no delay table")
        return self.delay_table

    def get_delay(self, hub1: Hub, hub2: Hub, n: int = 1) -> float:
        """Sampled travel time in seconds between two hubs, leaving now."""
        if hub1 is hub2:
            return 0.0
        return self._table().get_delay(hub1, hub2, n, self.sim.current_time)

    def estimate_delay(self, hub1: Hub, hub2: Hub, n: int = 1) -> float:
        """Expected travel time in seconds between two hubs, leaving now."""
        if hub1 is hub2:
            return 0.0
        return self._table().estimate_delay(hub1, hub2, n, self.sim.current_time)

    def latest_starting_time(self, hub1: Hub, hub2: Hub) -> float:
        """Latest time a trip ready now can leave and still arrive as early as possible."""
        return self._table().latest_starting_time(self.sim.current_time, hub1, hub2)

    def on_hub_changed(self, hub: Hub) -> None:
        """Called after any count change of a member hub."""

    def validate(self) -> None:
        if self.hubs and self.delay_table is None:
            raise ConfigurationError(
                f"domain {self.name!r} has hubs but no delay table"
            )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class UsrDomain(HubDomain):
    """
    Domain in which riders travel between hubs.

    With an external ``parent`` domain, riders going between two hubs that
    both belong to the parent may travel by that mode instead of by bicycle.
    """

    kind = "usr"

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        delay_table: Optional[Union[DelayTable, ScheduledDelayTable]] = None,
        parent: Optional[ExtDomain] = None,
    ):
        if parent is not None and not isinstance(parent, ExtDomain):
            raise ConfigurationError(f"usr domain {name!r}: parent must be an external domain")
        super().__init__(sim, name, delay_table)
        self.parent = parent


class ExtDomain(HubDomain):
    """Domain for travel without shared bicycles, usually on a timetable."""

    kind = "ext"


class SysDomain(HubDomain):
    """Domain in which workers move bicycles between hubs and storage."""

    kind = "sys"

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        delay_table: Optional[DelayTable] = None,
    ):
        super().__init__(sim, name, delay_table)
        self.storage_hubs: list[StorageHub] = []
        self.workers: list[HubWorker] = []
        self.balancers: list[HubBalancer] = []

    @property
    def user_hubs(self) -> list[Hub]:
        return [h for h in self.hubs if not h.is_storage]

    def add_hub(self, hub: Hub) -> None:
        super().add_hub(hub)
        if hub.is_storage and hub not in self.storage_hubs:
            self.storage_hubs.append(hub)

    def add_worker(self, worker: HubWorker) -> None:
        if worker not in self.workers:
            self.workers.append(worker)

    def add_balancer(self, balancer: HubBalancer) -> None:
        self.balancers.append(balancer)

    def storage_hubs_by_distance(self, hub: Hub) -> list[StorageHub]:
        """Storage hubs of this domain, nearest to ``hub`` first; ties keep registration order."""
        return sorted(
            self.storage_hubs,
            key=lambda shub: (shub.x - hub.x) ** 2 + (shub.y - hub.y) ** 2,
        )

    def serving_storage_hub(self, hub: Hub) -> Optional[StorageHub]:
        """Nearest storage hub of this domain; ties go to the earliest registered."""
        ranked = self.storage_hubs_by_distance(hub)
        return ranked[0] if ranked else None

    def on_hub_changed(self, hub: Hub) -> None:
        if hub.is_storage:
            return
        for balancer in self.balancers:
            balancer.hub_changed(hub)

    def validate(self) -> None:
        super().validate()
        if self.balancers and not self.storage_hubs:
            raise ConfigurationError(
                f"sys domain {self.name!r} has a balancer but no storage hub"
            )
