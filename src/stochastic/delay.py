"""
Travel delay models.

DelayModel turns a distance, a sampled speed and a stop model into a
traversal time. DelayTable holds the per-domain parameters and resolves
hub pairs to distances. ScheduledDelayTable answers the same questions from
a timetable of departures.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import numpy as np

from ..simulation.errors import ConfigurationError
from .variates import RandomVariate

if TYPE_CHECKING:
    from ..bikeshare.hub import Hub

logger = logging.getLogger(__name__)

# Speeds are floored here (m/s) so distance / speed is always defined.
MIN_SPEED = 0.1

SPEED_ESTIMATION_SAMPLES = 10000


class DelayModel:
    """Distance / speed plus randomized waits at stops."""

    def __init__(self, rng: Optional[np.random.Generator] = None):
        self.rng = rng or np.random.default_rng()

    def compute_delay(
        self,
        distance: float,
        speed_sample: float,
        stop_count: int,
        stop_probability: float,
        max_wait: float,
    ) -> float:
        """
        Compute a total traversal delay in seconds.

        Each of ``stop_count`` stops independently delays the traveller with
        probability ``stop_probability`` by a wait drawn uniformly from
        [0, max_wait].
        """
        if speed_sample <= 0:
            raise ValueError(f"speed sample must be positive, got {speed_sample}")
        delay = distance / speed_sample
        for _ in range(stop_count):
            if self.rng.random() < stop_probability:
                delay += self.rng.random() * max_wait
        return delay

    @staticmethod
    def expected_delay(
        distance: float,
        mean_speed: float,
        stop_count: int,
        stop_probability: float,
        max_wait: float,
    ) -> float:
        """Mean of compute_delay for a fixed speed."""
        return distance / mean_speed + stop_count * stop_probability * max_wait / 2.0


@dataclass
class DelayEntry:
    """Stop model and distance for one (origin, destination) pair."""

    dist: float
    n_stops: int = 0
    stop_probability: float = 0.0
    max_wait: float = 0.0

    def __post_init__(self):
        if self.dist < 0:
            raise ConfigurationError(f"dist must be >= 0, got {self.dist}")
        if self.n_stops < 0:
            raise ConfigurationError(f"nStops must be >= 0, got {self.n_stops}")
        if not 0.0 <= self.stop_probability <= 1.0:
            raise ConfigurationError(
                f"stopProbability must be in [0, 1], got {self.stop_probability}"
            )
        if self.max_wait < 0:
            raise ConfigurationError(f"maxWait must be >= 0, got {self.max_wait}")

    def scaled(self, dist: float) -> "DelayEntry":
        """Copy with the stop count scaled to a different distance."""
        if self.dist > 0:
            stops = int(np.floor(self.n_stops * (dist / self.dist) + 0.5))
        else:
            stops = 0
        return DelayEntry(
            dist=dist,
            n_stops=stops,
            stop_probability=self.stop_probability,
            max_wait=self.max_wait,
        )


class DelayTable:
    """
    Delay parameters for one domain.

    Hub pairs without an explicit entry use a blend of Euclidean and
    Manhattan distance weighted by ``dist_fraction``.
    """

    def __init__(
        self,
        name: str,
        speed_rv: RandomVariate,
        default_entry: DelayEntry,
        dist_fraction: float = 0.5,
        rng: Optional[np.random.Generator] = None,
    ):
        if not 0.0 <= dist_fraction <= 1.0:
            raise ConfigurationError(
                f"distFraction must be in [0, 1], got {dist_fraction}"
            )
        self.name = name
        self.speed_rv = speed_rv
        self.speed_rv.tighten_minimum(MIN_SPEED, True)
        self.default_entry = default_entry
        self.dist_fraction = dist_fraction
        self.model = DelayModel(rng or speed_rv.rng)
        self.entries: dict[tuple[str, str], DelayEntry] = {}
        self._estimated_speed: dict[int, float] = {}

    def add_entry(self, src: str, dest: str, entry: DelayEntry) -> None:
        """Explicit parameters for travel from hub ``src`` to hub ``dest``."""
        self.entries[(src, dest)] = entry
        self._estimated_speed.clear()

    def distance(self, src: "Hub", dest: "Hub") -> float:
        dx = src.x - dest.x
        dy = src.y - dest.y
        euclid = float(np.hypot(dx, dy))
        manhattan = abs(dx) + abs(dy)
        return euclid * (1.0 - self.dist_fraction) + manhattan * self.dist_fraction

    def entry_for(self, src: "Hub", dest: "Hub") -> DelayEntry:
        entry = self.entries.get((src.name, dest.name))
        if entry is None:
            entry = self.default_entry.scaled(self.distance(src, dest))
        return entry

    def group_speed(self, n: int) -> float:
        """A group of ``n`` riders travels at its slowest member's speed."""
        speed = self.speed_rv.sample()
        for _ in range(1, n):
            speed = min(speed, self.speed_rv.sample())
        return speed

    def estimated_speed(self, n: int) -> float:
        speed = self._estimated_speed.get(n)
        if speed is None:
            # Estimation uses a private stream so it never shifts the run's draws.
            saved = self.speed_rv.rng
            self.speed_rv.rng = np.random.default_rng(n)
            try:
                speed = float(
                    np.mean([self.group_speed(n) for _ in range(SPEED_ESTIMATION_SAMPLES)])
                )
            finally:
                self.speed_rv.rng = saved
            self._estimated_speed[n] = speed
        return speed

    def latest_starting_time(self, time: float, src: "Hub", dest: "Hub") -> float:
        """Travel is unscheduled, so leaving later always arrives later."""
        return time

    def get_delay(self, src: "Hub", dest: "Hub", n: int = 1, time: float = 0.0) -> float:
        """Sampled delay in seconds for ``n`` riders travelling together; ``time`` is unused."""
        entry = self.entry_for(src, dest)
        speed = self.group_speed(max(n, 1))
        delay = self.model.compute_delay(
            entry.dist, speed, entry.n_stops, entry.stop_probability, entry.max_wait
        )
        logger.debug(
            "%s: delay %s -> %s = %.1fs (dist=%.1f, speed=%.2f)",
            self.name, src.name, dest.name, delay, entry.dist, speed,
        )
        return delay

    def estimate_delay(self, src: "Hub", dest: "Hub", n: int = 1, time: float = 0.0) -> float:
        """Expected delay in seconds, without consuming random draws."""
        entry = self.entry_for(src, dest)
        return DelayModel.expected_delay(
            entry.dist,
            self.estimated_speed(max(n, 1)),
            entry.n_stops,
            entry.stop_probability,
            entry.max_wait,
        )


class ScheduledDelayTable:
    """
    Timetable delays, for travel that only leaves at fixed times.

    Each (origin, destination) pair holds scheduled departures with their
    arrival times. A traveller ready at ``time`` takes the departure at or
    after ``time`` with the earliest arrival (the latest such departure when
    several arrive together), so the delay includes waiting for it. With no
    such departure the delay is infinite.
    """

    def __init__(self, name: str):
        self.name = name
        # (src, dest) -> sorted [(arrival, departure), ...]
        self.entries: dict[tuple[str, str], list[tuple[float, float]]] = {}

    def add_entry(self, src: str, dest: str, start: float, end: float) -> None:
        """One scheduled trip from hub ``src`` at ``start`` reaching ``dest`` at ``end``."""
        if not end > start:
            raise ConfigurationError(
                f"{self.name}: {src} -> {dest} must arrive after it leaves ({start} -> {end})"
            )
        trips = self.entries.setdefault((src, dest), [])
        key = (float(end), float(start))
        index = bisect.bisect_left(trips, key)
        if index < len(trips) and trips[index] == key:
            return
        trips.insert(index, key)

    def add_periodic_entries(
        self,
        src: str,
        dest: str,
        initial_time: float,
        cutoff_time: float,
        period: float,
        duration: float,
    ) -> int:
        """
        Departures every ``period`` seconds from ``initial_time`` while the
        departure is at or before ``cutoff_time``; each takes ``duration``.

        Returns:
            Number of departures added
        """
        if not period > 0:
            raise ConfigurationError(f"{self.name}: period must be positive, got {period}")
        if not duration > 0:
            raise ConfigurationError(f"{self.name}: duration must be positive, got {duration}")
        if cutoff_time < initial_time:
            raise ConfigurationError(
                f"{self.name}: cutoff time {cutoff_time} is before initial time {initial_time}"
            )
        count = 0
        start = initial_time
        while start <= cutoff_time:
            self.add_entry(src, dest, start, start + duration)
            count += 1
            start = initial_time + count * period
        return count

    def next_trip(self, src: "Hub", dest: "Hub", time: float) -> Optional[tuple[float, float]]:
        """The ``(arrival, departure)`` a traveller ready at ``time`` takes, or None."""
        trips = self.entries.get((src.name, dest.name))
        if not trips:
            return None
        # arrivals at or before ``time`` cannot have left at or after it
        index = bisect.bisect_right(trips, (time, np.inf))
        for i in range(index, len(trips)):
            arrival, departure = trips[i]
            if departure >= time:
                while i + 1 < len(trips) and trips[i + 1][0] == arrival:
                    i += 1
                return trips[i]
        return None

    def latest_starting_time(self, time: float, src: "Hub", dest: "Hub") -> float:
        """Departure time of the trip taken when ready at ``time``; -inf when there is none."""
        trip = self.next_trip(src, dest, time)
        return -np.inf if trip is None else trip[1]

    def get_delay(self, src: "Hub", dest: "Hub", n: int = 1, time: float = 0.0) -> float:
        """Seconds from ``time`` until arrival at ``dest``; inf when nothing runs."""
        if src is dest:
            return 0.0
        trip = self.next_trip(src, dest, time)
        if trip is None:
            return np.inf
        return trip[0] - time

    def estimate_delay(self, src: "Hub", dest: "Hub", n: int = 1, time: float = 0.0) -> float:
        """A timetable is exact, so the estimate is the delay itself."""
        return self.get_delay(src, dest, n, time)
