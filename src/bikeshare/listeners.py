"""
Observer interfaces for hubs, trips and workers.

Each interface is an adapter: every callback has a no-op default so a
listener overrides only what it needs. Callbacks run synchronously inside
the event that caused them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .domain import HubDomain
    from .hub import Hub, StorageHub
    from .worker import HubWorker


class HubDataListener:
    """Receives every bicycle-count or overflow-count change of a hub."""

    def hub_changed(
        self,
        hub: Hub,
        bike_count: int,
        bike_count_changed: bool,
        overflow_count: int,
        overflow_changed: bool,
        sim_time: float,
        sim_ticks: int,
    ) -> None:
        pass


class HubConditionListener:
    """Receives need/excess/overflow changes (used by sys domains)."""

    def hub_condition_changed(
        self, hub: Hub, need: int, excess: int, overflow: int
    ) -> None:
        pass


class TripDataListener:
    """Trip lifecycle notifications."""

    def trip_started(
        self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub, domain: HubDomain
    ) -> None:
        pass

    def trip_ended(self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub) -> None:
        pass

    def trip_failed_at_start(
        self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub
    ) -> None:
        pass

    def trip_pause_start(
        self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub
    ) -> None:
        pass

    def trip_pause_end(
        self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub, domain: HubDomain
    ) -> None:
        pass

    def trip_failed_midstream(
        self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub
    ) -> None:
        pass


class HubWorkerListener:
    """Worker movement and load notifications."""

    def changed_count(
        self,
        worker: HubWorker,
        sim_time: float,
        sim_ticks: int,
        hub: Hub,
        old_count: int,
        new_count: int,
    ) -> None:
        pass

    def entered_hub(self, worker: HubWorker, sim_time: float, sim_ticks: int, hub: Hub) -> None:
        pass

    def left_hub(self, worker: HubWorker, sim_time: float, sim_ticks: int, hub: Hub) -> None:
        pass

    def queued(self, worker: HubWorker, sim_time: float, sim_ticks: int, hub: Hub) -> None:
        pass

    def dequeued(self, worker: HubWorker, sim_time: float, sim_ticks: int, hub: Hub) -> None:
        pass


class NoPickupListener:
    """Alerts from storage hubs about hubs no worker has visited lately."""

    def no_pickup_alert(
        self,
        storage_hub: StorageHub,
        hub: Hub,
        sim_time: float,
        sim_ticks: int,
        idle_seconds: float,
    ) -> None:
        pass
