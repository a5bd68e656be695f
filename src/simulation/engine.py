"""
Event-driven simulation engine.

Owns the clock, the event queue, the run's random generator and every
configured entity, and drives the run while a metrics collector listens.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

import numpy as np

from .clock import EventQueue, SimulationClock
from .errors import ConfigurationError, InvariantViolation
from .events import Event, EventType
from .metrics import MetricsCollector

if TYPE_CHECKING:
    from ..bikeshare.balancer import HubBalancer
    from ..bikeshare.domain import HubDomain
    from ..bikeshare.hub import Hub
    from ..bikeshare.trips import TripGenerator
    from ..bikeshare.worker import HubWorker

logger = logging.getLogger(__name__)


@dataclass
class SimulationConfig:
    """Configuration for a simulation run."""

    name: str = "bikeshare"
    ticks_per_second: float = 1000.0
    duration_seconds: float = 14400  # 4 hours
    metrics_interval: float = 300.0  # 5 minutes, 0 disables snapshots
    random_seed: Optional[int] = 42

    def __post_init__(self):
        if not self.ticks_per_second > 0:
            raise ConfigurationError(f"ticks_per_second must be positive, got {self.ticks_per_second}")
        if not self.duration_seconds > 0:
            raise ConfigurationError(f"duration must be positive, got {self.duration_seconds}")
        if self.metrics_interval < 0:
            raise ConfigurationError(f"metrics interval must be >= 0, got {self.metrics_interval}")


@dataclass
class SimulationResult:
    """Results from a simulation run."""

    config: SimulationConfig
    metrics: dict[str, Any]
    raw_data: Any  # DataFrame of trip records
    time_series: list[dict]
    duration_seconds: float
    final_ticks: int = 0
    events_executed: int = 0


class BikeShareSimulation:
    """
    Discrete-event simulation of a bike-share network.

    Entities register themselves on construction; the simulation keeps them
    in name-keyed tables. All randomness comes from ``self.rng``, so a run is
    determined by its configuration and seed.
    """

    def __init__(
        self,
        config: Optional[SimulationConfig] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        self.config = config or SimulationConfig()
        self.clock = SimulationClock(self.config.ticks_per_second)
        self.queue = EventQueue(self.clock)
        self.rng = rng or np.random.default_rng(self.config.random_seed)

        self.domains: dict[str, HubDomain] = {}
        self.hubs: dict[str, Hub] = {}
        self.workers: dict[str, HubWorker] = {}
        self.balancers: dict[str, HubBalancer] = {}
        self.trip_generators: dict[str, TripGenerator] = {}

        self.metrics = MetricsCollector(snapshot_interval=self.config.metrics_interval)
        self._metrics_attached = False
        self._validated = False
        self._last_trip_id = 0

    # Registration

    def _register(self, table: dict, kind: str, entity) -> None:
        if entity.name in table:
            raise ConfigurationError(f"duplicate {kind} name {entity.name!r}")
        table[entity.name] = entity

    def register_domain(self, domain: HubDomain) -> None:
        self._register(self.domains, "domain", domain)

    def register_hub(self, hub: Hub) -> None:
        self._register(self.hubs, "hub", hub)

    def register_worker(self, worker: HubWorker) -> None:
        self._register(self.workers, "worker", worker)

    def register_balancer(self, balancer: HubBalancer) -> None:
        self._register(self.balancers, "balancer", balancer)

    def register_trip_generator(self, generator: TripGenerator) -> None:
        self._register(self.trip_generators, "trip generator", generator)

    # Time

    @property
    def current_ticks(self) -> int:
        return self.clock.ticks

    @property
    def current_time(self) -> float:
        """Current simulated time in seconds."""
        return self.clock.time

    def ticks_for(self, seconds: float) -> int:
        return self.clock.ticks_for(seconds)

    def schedule_init(self, action: Callable[[], None]) -> Event:
        """Run ``action`` at the current tick, after anything already queued there."""
        return self.queue.schedule(action, self.clock.ticks, EventType.INIT)

    def next_trip_id(self) -> int:
        self._last_trip_id += 1
        return self._last_trip_id

    # Inventory

    def bikes_in_transit(self) -> int:
        from ..bikeshare.trips import TripState

        return sum(
            trip.n_bikes
            for gen in self.trip_generators.values()
            for trip in gen.active_trips.values()
            if trip.state is TripState.IN_TRANSIT and trip.bike_mode
        )

    def bike_inventory(self) -> dict[str, int]:
        """Where every bicycle is right now; ``total`` is conserved over a run."""
        docked = sum(h.bike_count for h in self.hubs.values())
        overflow = sum(h.overflow for h in self.hubs.values())
        carried = sum(w.bike_count for w in self.workers.values())
        in_transit = self.bikes_in_transit()
        return {
            "docked": docked,
            "overflow": overflow,
            "carried": carried,
            "in_transit": in_transit,
            "total": docked + overflow + carried + in_transit,
        }

    # Run control

    def validate(self) -> None:
        """Check cross-entity configuration before the first run."""
        for domain in self.domains.values():
            domain.validate()
        for name, hub in self.hubs.items():
            if hub.usr_domain is None and hub.sys_domain is None:
                raise ConfigurationError(f"hub {name!r} belongs to no domain")
        self._validated = True

    def attach_metrics(self) -> None:
        """Subscribe the metrics collector to every entity and start snapshots."""
        if self._metrics_attached:
            return
        self._metrics_attached = True
        for hub in self.hubs.values():
            hub.add_hub_data_listener(self.metrics)
            if hub.is_storage:
                hub.add_no_pickup_listener(self.metrics)
        for generator in self.trip_generators.values():
            generator.add_trip_data_listener(self.metrics)
        for worker in self.workers.values():
            worker.add_worker_listener(self.metrics)
        if self.config.metrics_interval > 0:
            self._schedule_snapshot()

    def _schedule_snapshot(self) -> None:
        self.queue.schedule_in(
            self._snapshot,
            self.ticks_for(self.config.metrics_interval),
            EventType.METRICS_SNAPSHOT,
        )

    def _snapshot(self) -> None:
        self.metrics.take_snapshot(
            self.current_time, list(self.hubs.values()), list(self.workers.values())
        )
        self._schedule_snapshot()

    def run(self, until_tick: Optional[int] = None) -> SimulationResult:
        """
        Run the simulation.

        Args:
            until_tick: Stop before the first event at or after this tick
                (defaults to the configured duration)

        Returns:
            SimulationResult with metrics and data
        """
        import time as time_module

        start_wall_time = time_module.time()
        if not self._validated:
            self.validate()
        self.attach_metrics()

        end_tick = self.ticks_for(self.config.duration_seconds) if until_tick is None else until_tick
        logger.info(
            "%s: running from %.1fs to %.1fs (%d hubs, %d workers, %d generators)",
            self.config.name, self.current_time, self.clock.time_of(end_tick),
            len(self.hubs), len(self.workers), len(self.trip_generators),
        )
        try:
            executed = self.queue.run(end_tick)
        except InvariantViolation as exc:
            logger.critical("invariant violated at tick %d: %s", self.clock.ticks, exc)
            raise

        wall_time = time_module.time() - start_wall_time
        metrics = self.metrics.get_summary_metrics()
        logger.info(
            "%s: %d events in %.2fs wall time, %d trips (%d failed)",
            self.config.name, executed, wall_time,
            metrics["total_trips"], metrics["failed_trips"],
        )
        return SimulationResult(
            config=self.config,
            metrics=metrics,
            raw_data=self.metrics.to_dataframe(),
            time_series=self.metrics.time_series(),
            duration_seconds=wall_time,
            final_ticks=self.clock.ticks,
            events_executed=executed,
        )

    def run_for(self, seconds: float) -> SimulationResult:
        """Advance the simulation by ``seconds`` of simulated time."""
        return self.run(self.clock.ticks + self.ticks_for(seconds))

    def stop(self) -> None:
        """Stop every trip generator; trips and workers under way still finish."""
        for generator in self.trip_generators.values():
            generator.stop()


def run_simulation(
    config: Union[dict, str],
    seed: Optional[int] = None,
    duration_hours: Optional[float] = None,
) -> SimulationResult:
    """
    Convenience function to build and run a simulation.

    Args:
        config: Configuration dictionary or path to a YAML file
        seed: Overrides ``simulation.random_seed``
        duration_hours: Overrides ``simulation.duration_hours``

    Returns:
        SimulationResult
    """
    from ..bikeshare.config import build_simulation, load_config

    if isinstance(config, str):
        config = load_config(config)
    config = dict(config)
    sim_section = dict(config.get("simulation") or {})
    if seed is not None:
        sim_section["random_seed"] = seed
    if duration_hours is not None:
        sim_section.pop("duration_minutes", None)
        sim_section.pop("duration_seconds", None)
        sim_section["duration_hours"] = duration_hours
    config["simulation"] = sim_section

    sim = build_simulation(config)
    return sim.run()
