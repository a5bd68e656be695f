"""
Metrics collection and aggregation for bike-share runs.

The collector subscribes to hubs, trip generators, workers and storage
hubs, keeps flat records of every notification, takes periodic snapshots
and exports pandas DataFrames for analysis.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import numpy as np
import pandas as pd

from ..bikeshare.listeners import (
    HubDataListener,
    HubWorkerListener,
    NoPickupListener,
    TripDataListener,
)

if TYPE_CHECKING:
    from ..bikeshare.domain import HubDomain
    from ..bikeshare.hub import Hub, StorageHub
    from ..bikeshare.worker import HubWorker


@dataclass
class TripRecord:
    """Record of one trip, updated as its notifications arrive."""

    trip_id: int
    start_hub: str
    start_time: float
    status: str = "in_transit"  # in_transit, paused, completed, failed_at_start, failed_midstream
    domain: Optional[str] = None
    end_hub: Optional[str] = None
    end_time: Optional[float] = None
    pause_hub: Optional[str] = None
    pause_start: Optional[float] = None
    pause_end: Optional[float] = None

    @property
    def travel_time(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


@dataclass
class HubRecord:
    """A hub's counts after a change."""

    time: float
    ticks: int
    hub: str
    bike_count: int
    bike_count_changed: bool
    overflow: int
    overflow_changed: bool


@dataclass
class WorkerRecord:
    """A worker's carried count after a change."""

    time: float
    ticks: int
    worker: str
    hub: str
    old_count: int
    new_count: int


@dataclass
class AlertRecord:
    """A no-pickup alert raised by a storage hub."""

    time: float
    storage_hub: str
    hub: str
    idle_seconds: float


@dataclass
class TimeSliceMetrics:
    """Metrics for a time slice (e.g., 5-minute window)."""

    time: float
    trips_started: int = 0
    trips_ended: int = 0
    trips_failed: int = 0
    active_trips: int = 0
    bikes_at_hubs: int = 0
    total_overflow: int = 0
    busy_workers: int = 0
    hub_counts: dict[str, int] = field(default_factory=dict)


class MetricsCollector(HubDataListener, TripDataListener, HubWorkerListener, NoPickupListener):
    """
    Collects and aggregates simulation metrics.

    Provides both real-time snapshots and post-simulation analysis.
    """

    def __init__(self, snapshot_interval: float = 300.0):
        """
        Initialize metrics collector.

        Args:
            snapshot_interval: Seconds between time-slice snapshots
        """
        self.snapshot_interval = snapshot_interval

        self.trips: dict[int, TripRecord] = {}
        self.hub_records: list[HubRecord] = []
        self.worker_records: list[WorkerRecord] = []
        self.alerts: list[AlertRecord] = []

        # Time series
        self.time_slices: list[TimeSliceMetrics] = []

        # Running counters
        self.trips_started = 0
        self.trips_ended = 0
        self.trips_failed = 0
        self.worker_visits = 0
        self.bikes_moved = 0
        self.hub_overflow: dict[str, int] = {}

    # Hub data

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
        self.hub_records.append(
            HubRecord(
                sim_time, sim_ticks, hub.name, bike_count,
                bike_count_changed, overflow_count, overflow_changed,
            )
        )
        self.hub_overflow[hub.name] = overflow_count

    # Trips

    def trip_started(
        self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub, domain: HubDomain
    ) -> None:
        self.trips_started += 1
        self.trips[trip_id] = TripRecord(
            trip_id, hub.name, sim_time, domain=domain.name if domain else None
        )

    def trip_ended(self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub) -> None:
        self.trips_ended += 1
        record = self.trips.get(trip_id)
        if record is not None:
            record.status = "completed"
            record.end_hub = hub.name
            record.end_time = sim_time

    def trip_failed_at_start(
        self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub
    ) -> None:
        self.trips_failed += 1
        self.trips[trip_id] = TripRecord(trip_id, hub.name, sim_time, status="failed_at_start")

    def trip_pause_start(self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub) -> None:
        record = self.trips.get(trip_id)
        if record is not None:
            record.status = "paused"
            record.pause_hub = hub.name
            record.pause_start = sim_time

    def trip_pause_end(
        self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub, domain: HubDomain
    ) -> None:
        record = self.trips.get(trip_id)
        if record is not None:
            record.status = "in_transit"
            record.pause_end = sim_time

    def trip_failed_midstream(
        self, trip_id: int, sim_time: float, sim_ticks: int, hub: Hub
    ) -> None:
        self.trips_failed += 1
        record = self.trips.get(trip_id)
        if record is not None:
            record.status = "failed_midstream"
            record.end_hub = hub.name
            record.end_time = sim_time

    # Workers

    def changed_count(
        self,
        worker: HubWorker,
        sim_time: float,
        sim_ticks: int,
        hub: Hub,
        old_count: int,
        new_count: int,
    ) -> None:
        self.worker_records.append(
            WorkerRecord(sim_time, sim_ticks, worker.name, hub.name, old_count, new_count)
        )
        if not hub.is_storage:
            self.bikes_moved += abs(new_count - old_count)

    def entered_hub(self, worker: HubWorker, sim_time: float, sim_ticks: int, hub: Hub) -> None:
        if not hub.is_storage:
            self.worker_visits += 1

    # Storage hub alerts

    def no_pickup_alert(
        self,
        storage_hub: StorageHub,
        hub: Hub,
        sim_time: float,
        sim_ticks: int,
        idle_seconds: float,
    ) -> None:
        self.alerts.append(AlertRecord(sim_time, storage_hub.name, hub.name, idle_seconds))

    # Snapshots and summaries

    def take_snapshot(
        self,
        time: float,
        hubs: list[Hub],
        workers: list[HubWorker],
    ) -> TimeSliceMetrics:
        """Take a time-slice snapshot."""
        user_hubs = [h for h in hubs if not h.is_storage]
        snapshot = TimeSliceMetrics(
            time=time,
            trips_started=self.trips_started,
            trips_ended=self.trips_ended,
            trips_failed=self.trips_failed,
            active_trips=sum(
                1 for t in self.trips.values() if t.status in ("in_transit", "paused")
            ),
            bikes_at_hubs=sum(h.bike_count for h in user_hubs),
            total_overflow=sum(h.overflow for h in user_hubs),
            busy_workers=sum(1 for w in workers if not w.is_idle),
            hub_counts={h.name: h.bike_count for h in hubs},
        )
        self.time_slices.append(snapshot)
        return snapshot

    def get_summary_metrics(self) -> dict[str, Any]:
        """
        Compute summary metrics for the simulation.

        Returns:
            Dictionary of aggregate metrics
        """
        travel_times = [
            t.travel_time for t in self.trips.values() if t.status == "completed"
        ]
        return {
            "total_trips": len(self.trips),
            "completed_trips": len(travel_times),
            "failed_trips": self.trips_failed,
            "avg_trip_time": float(np.mean(travel_times)) if travel_times else 0.0,
            "median_trip_time": float(np.median(travel_times)) if travel_times else 0.0,
            "total_overflow": int(sum(self.hub_overflow.values())),
            "worker_moves": self.worker_visits,
            "bikes_moved": self.bikes_moved,
            "no_pickup_alerts": len(self.alerts),
        }

    def to_dataframe(self) -> pd.DataFrame:
        """Convert trip records to DataFrame."""
        if not self.trips:
            return pd.DataFrame()

        records = []
        for t in self.trips.values():
            row = asdict(t)
            row["travel_time"] = t.travel_time
            records.append(row)
        return pd.DataFrame(records)

    def hubs_dataframe(self) -> pd.DataFrame:
        """Every hub change as one row."""
        return pd.DataFrame([asdict(r) for r in self.hub_records])

    def workers_dataframe(self) -> pd.DataFrame:
        """Every worker count change as one row."""
        return pd.DataFrame([asdict(r) for r in self.worker_records])

    def time_series(self) -> list[dict]:
        return [asdict(ts) for ts in self.time_slices]

    def reset(self) -> None:
        """Reset all metrics."""
        self.trips = {}
        self.hub_records = []
        self.worker_records = []
        self.alerts = []
        self.time_slices = []
        self.trips_started = 0
        self.trips_ended = 0
        self.trips_failed = 0
        self.worker_visits = 0
        self.bikes_moved = 0
        self.hub_overflow = {}
