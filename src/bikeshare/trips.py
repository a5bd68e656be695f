"""
Trips and trip generators.

A trip goes Created -> PickupAttempt, then either FailedAtStart (no
bicycle at the origin) or InTransit -> DropoffAttempt -> Completed. Trip
generators are, together with balancers, the only components that create
new work for the event queue.

When the origin's user domain has an external parent domain that also
contains both endpoints, each trip chooses between riding and the external
mode by comparing the two expected delays. Riders using the external mode
leave and return no bicycles.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import TYPE_CHECKING, Callable, Optional, Union

import numpy as np

from ..simulation.errors import ConfigurationError
from ..simulation.events import Event, EventType
from ..stochastic.variates import ExponentialRV, IntegerRV, RandomVariate
from .listeners import TripDataListener

if TYPE_CHECKING:
    from ..simulation.engine import BikeShareSimulation
    from .domain import HubDomain
    from .hub import Hub

logger = logging.getLogger(__name__)


class TripState(Enum):
    """Lifecycle states of a trip."""

    CREATED = auto()
    PICKUP_ATTEMPT = auto()
    IN_TRANSIT = auto()
    DROPOFF_ATTEMPT = auto()
    COMPLETED = auto()
    FAILED_AT_START = auto()
    PAUSED = auto()  # Round trip waiting at its destination
    FAILED_MIDSTREAM = auto()  # Round trip found no bicycle for the way back


@dataclass
class Trip:
    """One rider group travelling between two hubs."""

    trip_id: int
    starting_hub: Hub
    destination_hub: Hub
    start_tick: int
    n_bikes: int = 1
    will_overflow: bool = False
    bike_mode: bool = True  # False when travelling in an external domain
    state: TripState = TripState.CREATED
    domain: Optional[HubDomain] = None
    end_tick: Optional[int] = None
    completion: Optional[Event] = field(default=None, repr=False)


@dataclass
class WeightedHub:
    hub: Hub
    cvalue: float  # cumulative normalized weight
    overflow_prob: float


def check_route(owner: str, src: Hub, dest: Hub) -> None:
    """Riders leaving ``src`` can only ride to hubs of its user domain."""
    usr = src.usr_domain
    if usr is None:
        raise ConfigurationError(f"{owner!r}: hub {src.name!r} has no user domain")
    if not usr.contains(dest):
        raise ConfigurationError(
            f"{owner!r}: hub {dest.name!r} is not in user domain {usr.name!r} of hub {src.name!r}"
        )


class LogitModeChoice:
    """
    Binary logit choice between riding and an external mode.

    Each option's utility is minus its expected delay over ``scale``
    seconds. Calling the model with the two delays returns the probability
    of riding a shared bicycle.
    """

    def __init__(self, scale: float = 60.0):
        if not scale > 0:
            raise ConfigurationError(f"mode choice scale must be positive, got {scale}")
        self.scale = scale

    def __call__(self, bike_delay: float, ext_delay: float) -> float:
        scaled = -np.array([bike_delay, ext_delay]) / self.scale

        # Numerical stability
        scaled = scaled - scaled.max()
        exp_util = np.exp(scaled)
        return float(exp_util[0] / exp_util.sum())

    def __repr__(self) -> str:
        return f"LogitModeChoice(scale={self.scale})"


class WeightedHubs:
    """Weighted random choice among hubs, each with an overflow probability."""

    def __init__(self, weights: dict[Hub, tuple[float, float]]):
        if not weights:
            raise ConfigurationError("at least one destination hub is required")
        total = 0.0
        for hub, (prob, oprob) in weights.items():
            if not prob > 0:
                raise ConfigurationError(f"hub {hub.name!r}: prob must be positive, got {prob}")
            if not 0.0 <= oprob <= 1.0:
                raise ConfigurationError(
                    f"hub {hub.name!r}: overflowProb must be in [0, 1], got {oprob}"
                )
            total += prob
        running = 0.0
        self.entries: list[WeightedHub] = []
        for hub, (prob, oprob) in weights.items():
            running += prob / total
            self.entries.append(WeightedHub(hub, running, oprob))
        self._cvalues = np.array([e.cvalue for e in self.entries])
        self._cvalues[-1] = 1.0

    @property
    def hubs(self) -> list[Hub]:
        return [e.hub for e in self.entries]

    def choose(self, rng: np.random.Generator) -> WeightedHub:
        index = int(np.searchsorted(self._cvalues, rng.random(), side="right"))
        return self.entries[min(index, len(self.entries) - 1)]


class TripGenerator(ABC):
    """
    Base class for trip generators.

    Subclasses implement ``next_interval()`` (seconds until the next
    action, negative to stop) and ``action()`` (start trips; return False to
    stop). The first action runs ``initial_delay`` seconds after start.
    """

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        initial_delay: float = 0.0,
        auto_start: bool = True,
        mode_choice: Optional[Callable[[float, float], float]] = None,
    ):
        if initial_delay < 0:
            raise ConfigurationError(f"{name!r}: initial delay must be >= 0, got {initial_delay}")
        self.sim = sim
        self.name = name
        self.rng = sim.rng
        self._initial_delay = initial_delay
        self.mode_choice = mode_choice
        self._frozen = False
        self._event: Optional[Event] = None
        self._listeners: list[TripDataListener] = []
        self.active_trips: dict[int, Trip] = {}

        self.trips_tried = 0
        self.trips_failed = 0
        self.trips_completed = 0

        sim.register_trip_generator(self)
        if auto_start:
            sim.schedule_init(self.start)

    @property
    def initial_delay(self) -> float:
        return self._initial_delay

    @initial_delay.setter
    def initial_delay(self, delay: float) -> None:
        if self._frozen:
            raise RuntimeError(f"trip generator {self.name!r} already started")
        if delay < 0:
            raise ConfigurationError(f"initial delay must be >= 0, got {delay}")
        self._initial_delay = delay

    @property
    def trips_in_progress(self) -> int:
        return len(self.active_trips)

    @property
    def is_running(self) -> bool:
        return self._event is not None and self._event.pending

    @abstractmethod
    def next_interval(self) -> float:
        pass

    @abstractmethod
    def action(self) -> bool:
        pass

    def start(self) -> None:
        if self.is_running:
            return
        self._frozen = True
        logger.debug("trip generator %s started", self.name)
        self._schedule(self._initial_delay)

    def stop(self) -> None:
        """Cancel future trip starts; trips already under way still finish."""
        if self._event is not None:
            self._event.cancel()
            self._event = None
            logger.debug("trip generator %s stopped", self.name)

    def _schedule(self, seconds: float) -> None:
        self._event = self.sim.queue.schedule_in(
            self._run, self.sim.ticks_for(seconds), EventType.TRIP_START,
            {"generator": self.name},
        )

    def _run(self) -> None:
        self._event = None
        if self.action():
            interval = self.next_interval()
            if interval >= 0.0:
                self._schedule(interval)

    # Listeners

    def add_trip_data_listener(self, listener: TripDataListener) -> None:
        self._listeners.append(listener)

    def remove_trip_data_listener(self, listener: TripDataListener) -> None:
        self._listeners.remove(listener)

    def _fire(self, method: str, trip_id: int, hub: Hub, *args) -> None:
        time = self.sim.current_time
        ticks = self.sim.current_ticks
        for listener in list(self._listeners):
            getattr(listener, method)(trip_id, time, ticks, hub, *args)

    # Trip mechanics

    def send(
        self,
        src: Hub,
        dest: Hub,
        n: int = 1,
        will_overflow: bool = False,
        on_arrival: Optional[Callable[[Trip], None]] = None,
    ) -> Trip:
        """Start one trip; failure to find bicycles is reported, not raised."""
        check_route(self.name, src, dest)
        trip = Trip(
            trip_id=self.sim.next_trip_id(),
            starting_hub=src,
            destination_hub=dest,
            start_tick=self.sim.current_ticks,
            n_bikes=n,
            will_overflow=will_overflow,
        )
        self.trips_tried += 1
        if not self._depart(trip, src, dest, on_arrival or self._finish):
            trip.state = TripState.FAILED_AT_START
            self.trips_failed += 1
            self._fire("trip_failed_at_start", trip.trip_id, src)
        else:
            self._fire("trip_started", trip.trip_id, src, trip.domain)
        return trip

    def choose_mode(self, src: Hub, dest: Hub, n: int = 1) -> tuple[HubDomain, bool]:
        """
        Pick how ``n`` riders travel from ``src`` to ``dest``.

        Without a usable external domain the riders ride. Otherwise, with no
        ``mode_choice`` (or no external departure at all) they take whichever
        mode has the shorter expected delay; with one, they ride with the
        probability it returns.

        Returns:
            The domain whose delay table times the trip, and whether the
            riders take shared bicycles
        """
        usr = src.usr_domain
        ext = usr.parent
        if ext is None or not (ext.contains(src) and ext.contains(dest)):
            return usr, True

        bike_delay = usr.estimate_delay(src, dest, n)
        ext_delay = ext.estimate_delay(src, dest, n)
        if self.mode_choice is None or np.isinf(ext_delay):
            ride = bike_delay < ext_delay
        else:
            p = self.mode_choice(bike_delay, ext_delay)
            ride = p >= 1.0 or (p > 0.0 and self.rng.random() < p)
        return (usr, True) if ride else (ext, False)

    def _depart(
        self, trip: Trip, src: Hub, dest: Hub, on_arrival: Callable[[Trip], None]
    ) -> bool:
        trip.state = TripState.PICKUP_ATTEMPT
        domain, bike_mode = self.choose_mode(src, dest, trip.n_bikes)
        if bike_mode and not src.pickup(trip.n_bikes):
            self.active_trips.pop(trip.trip_id, None)
            logger.debug("trip %d could not leave %s", trip.trip_id, src.name)
            return False

        trip.state = TripState.IN_TRANSIT
        trip.domain = domain
        trip.bike_mode = bike_mode
        if not bike_mode:
            trip.will_overflow = False
        self.active_trips[trip.trip_id] = trip
        delay = domain.get_delay(src, dest, trip.n_bikes)
        logger.debug(
            "trip %d: %d %s %s -> %s via %s, %.1fs%s",
            trip.trip_id, trip.n_bikes, "bicycle(s)" if bike_mode else "rider(s)",
            src.name, dest.name, domain.name, delay,
            " (overflow area)" if trip.will_overflow else "",
        )

        def arrive() -> None:
            trip.state = TripState.DROPOFF_ATTEMPT
            if trip.bike_mode:
                dest.dropoff(trip.n_bikes, trip.will_overflow)
            on_arrival(trip)

        trip.completion = self.sim.queue.schedule_in(
            arrive, self.sim.ticks_for(delay), EventType.TRIP_END,
            {"trip_id": trip.trip_id, "generator": self.name},
        )
        return True

    def _finish(self, trip: Trip) -> None:
        trip.state = TripState.COMPLETED
        trip.end_tick = self.sim.current_ticks
        self.active_trips.pop(trip.trip_id, None)
        self.trips_completed += 1
        self._fire("trip_ended", trip.trip_id, trip.destination_hub)


class BasicTripGenerator(TripGenerator):
    """
    Trips from one starting hub with exponential interarrival times.

    Each trip picks its destination from the weighted set and, with that
    destination's overflow probability, leaves its bicycles in the
    destination's overflow area.
    """

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        starting_hub: Hub,
        mean_ia_time: float,
        destinations: dict[Hub, tuple[float, float]],
        n_bicycles: int = 1,
        interarrival: Optional[RandomVariate] = None,
        initial_delay: float = 0.0,
        auto_start: bool = True,
        mode_choice: Optional[Callable[[float, float], float]] = None,
    ):
        if not mean_ia_time > 0:
            raise ConfigurationError(f"{name!r}: meanIATime must be positive, got {mean_ia_time}")
        if n_bicycles < 1:
            raise ConfigurationError(f"{name!r}: nBicycles must be >= 1, got {n_bicycles}")
        for dest in destinations:
            check_route(name, starting_hub, dest)
        super().__init__(sim, name, initial_delay, auto_start, mode_choice)
        self.starting_hub = starting_hub
        self.n_bicycles = n_bicycles
        self.destinations = WeightedHubs(destinations)
        self.mean_ia_time = mean_ia_time
        self.interarrival = interarrival or ExponentialRV(mean_ia_time, rng=sim.rng)

    def set_mean(self, mean_ia_time: float) -> None:
        """Change the mean interarrival time, restarting if running."""
        if not mean_ia_time > 0:
            raise ConfigurationError(f"meanIATime must be positive, got {mean_ia_time}")
        if mean_ia_time == self.mean_ia_time:
            return
        was_running = self.is_running
        if was_running:
            self.stop()
        self.mean_ia_time = mean_ia_time
        self.interarrival = ExponentialRV(mean_ia_time, rng=self.rng)
        if was_running:
            self._schedule(self.next_interval())

    def next_interval(self) -> float:
        return self.interarrival.sample()

    def action(self) -> bool:
        dest = self.destinations.choose(self.rng)
        will_overflow = self.rng.random() < dest.overflow_prob
        self.send(self.starting_hub, dest.hub, self.n_bicycles, will_overflow)
        return True


class BurstTripGenerator(TripGenerator):
    """
    A single batch of ``burst_size`` one-rider trips.

    Fan-out: all trips leave the central hub at ``burst_time``. Fan-in: trips
    leave the other hubs early enough that they are expected to reach the
    central hub at ``burst_time``.
    """

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        central_hub: Hub,
        burst_time: float,
        burst_size: Union[int, IntegerRV],
        others: dict[Hub, tuple[float, float]],
        fan_in: bool = False,
        estimation_count: int = 25,
        estimation_factor: float = 1.0,
        estimation_offset: float = 0.0,
        auto_start: bool = True,
        mode_choice: Optional[Callable[[float, float], float]] = None,
    ):
        size = burst_size.sample() if isinstance(burst_size, IntegerRV) else int(burst_size)
        if size < 0:
            raise ConfigurationError(f"{name!r}: burstSize must be >= 0, got {size}")
        if burst_time < sim.current_time:
            raise ConfigurationError(
                f"{name!r}: burstTime {burst_time} is before the current time {sim.current_time}"
            )
        if estimation_count < 0 or not estimation_factor > 0 or estimation_offset < 0:
            raise ConfigurationError(f"{name!r}: invalid fan-in estimation parameters")
        for other in others:
            if fan_in:
                check_route(name, other, central_hub)
            else:
                check_route(name, central_hub, other)
        super().__init__(
            sim, name,
            initial_delay=0.0 if fan_in else burst_time - sim.current_time,
            auto_start=auto_start,
            mode_choice=mode_choice,
        )
        self.central_hub = central_hub
        self.burst_time = burst_time
        self.burst_size = size
        self.others = WeightedHubs(others)
        self.fan_in = fan_in
        self.estimation_count = estimation_count
        self.estimation_factor = estimation_factor
        self.estimation_offset = estimation_offset
        self._fan_in_events: list[Event] = []

    def next_interval(self) -> float:
        return -1.0

    def action(self) -> bool:
        if self.fan_in:
            self._schedule_fan_in()
        else:
            for _ in range(self.burst_size):
                other = self.others.choose(self.rng)
                will_overflow = self.rng.random() < other.overflow_prob
                self.send(self.central_hub, other.hub, 1, will_overflow)
        return False

    def _schedule_fan_in(self) -> None:
        now = self.sim.current_time
        for _ in range(self.burst_size):
            other = self.others.choose(self.rng).hub
            delay = other.usr_domain.estimate_delay(
                other, self.central_hub, max(self.estimation_count, 1)
            )
            delay = delay * self.estimation_factor + self.estimation_offset
            start = max(self.burst_time - delay, now)
            event = self.sim.queue.schedule_in(
                lambda src=other: self.send(src, self.central_hub, 1, False),
                self.sim.ticks_for(start - now),
                EventType.TRIP_START,
                {"generator": self.name, "from": other.name},
            )
            self._fan_in_events.append(event)

    def stop(self) -> None:
        super().stop()
        for event in self._fan_in_events:
            if event.pending:
                event.cancel()
        self._fan_in_events.clear()


class RoundTripGenerator(TripGenerator):
    """
    Trips that go out to a destination, wait there, and come back.

    The return leg can fail midstream when the destination has no bicycle
    left for the riders at that moment.
    """

    def __init__(
        self,
        sim: BikeShareSimulation,
        name: str,
        hub: Hub,
        mean_ia_time: float,
        destinations: dict[Hub, tuple[float, float]],
        wait: RandomVariate,
        n_bicycles: int = 1,
        return_overflow_prob: float = 0.0,
        initial_delay: float = 0.0,
        auto_start: bool = True,
        mode_choice: Optional[Callable[[float, float], float]] = None,
    ):
        if not mean_ia_time > 0:
            raise ConfigurationError(f"{name!r}: meanIATime must be positive, got {mean_ia_time}")
        if n_bicycles < 1:
            raise ConfigurationError(f"{name!r}: nBicycles must be >= 1, got {n_bicycles}")
        if not 0.0 <= return_overflow_prob <= 1.0:
            raise ConfigurationError(f"{name!r}: returnOverflowProb must be in [0, 1]")
        for dest in destinations:
            check_route(name, hub, dest)
            check_route(name, dest, hub)
        super().__init__(sim, name, initial_delay, auto_start, mode_choice)
        self.hub = hub
        self.mean_ia_time = mean_ia_time
        self.interarrival = ExponentialRV(mean_ia_time, rng=sim.rng)
        self.destinations = WeightedHubs(destinations)
        self.wait = wait
        self.n_bicycles = n_bicycles
        self.return_overflow_prob = return_overflow_prob
        self.trips_failed_midstream = 0

    def next_interval(self) -> float:
        return self.interarrival.sample()

    def action(self) -> bool:
        dest = self.destinations.choose(self.rng)
        will_overflow = self.rng.random() < dest.overflow_prob
        return_overflow = self.rng.random() < self.return_overflow_prob
        wait = self.wait.sample()

        def paused(trip: Trip) -> None:
            trip.state = TripState.PAUSED
            self._fire("trip_pause_start", trip.trip_id, dest.hub)
            self.sim.queue.schedule_in(
                lambda: self._return_leg(trip, return_overflow),
                self.sim.ticks_for(wait),
                EventType.TRIP_RESUME,
                {"trip_id": trip.trip_id, "generator": self.name},
            )

        self.send(self.hub, dest.hub, self.n_bicycles, will_overflow, on_arrival=paused)
        return True

    def _return_leg(self, trip: Trip, will_overflow: bool) -> None:
        src = trip.destination_hub
        trip.destination_hub = self.hub
        trip.will_overflow = will_overflow
        if self._depart(trip, src, self.hub, self._finish):
            self._fire("trip_pause_end", trip.trip_id, src, trip.domain)
        else:
            trip.state = TripState.FAILED_MIDSTREAM
            self.trips_failed_midstream += 1
            self._fire("trip_failed_midstream", trip.trip_id, src)
