"""
YAML configuration for bike-share scenarios.

Each entity section parses into a small dataclass that validates its own
fields; ``build_simulation`` resolves names across sections and constructs
the object graph in a fixed order (variates, delay tables, domains, hubs,
storage hubs, workers, balancers, trip generators).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from ..simulation.engine import BikeShareSimulation, SimulationConfig
from ..simulation.errors import ConfigurationError
from ..stochastic.delay import DelayEntry, DelayTable, ScheduledDelayTable
from ..stochastic.variates import (
    ConstantIntRV,
    ConstantRV,
    ExponentialRV,
    GaussianRV,
    IntegerRV,
    LogNormalRV,
    RandomVariate,
    UniformIntRV,
    UniformRV,
)
from .balancer import HubBalancer, ThresholdPolicy, TriggerPolicy
from .domain import ExtDomain, SysDomain, UsrDomain
from .hub import UNBOUNDED, Hub, StorageHub
from .trips import BasicTripGenerator, BurstTripGenerator, LogitModeChoice, RoundTripGenerator
from .worker import HubWorker

logger = logging.getLogger(__name__)

SECTIONS = (
    "simulation",
    "variates",
    "delay_tables",
    "domains",
    "hubs",
    "storage_hubs",
    "workers",
    "balancers",
    "trip_generators",
    "logging",
    "output",
)


def load_config(config_path: Union[str, Path]) -> dict[str, Any]:
    """Load configuration from YAML file."""
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        config = yaml.safe_load(f)

    if not isinstance(config, dict):
        raise ConfigurationError(f"{config_path}: expected a mapping at the top level")
    return config


def _parse(cls, name: str, data: Optional[dict[str, Any]]):
    """Build a config dataclass from one YAML mapping, rejecting unknown keys."""
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{cls.__name__} {name!r}: expected a mapping, got {data!r}")
    known = {f.name for f in fields(cls)} - {"name"}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"{cls.__name__} {name!r}: unknown keys {unknown}")
    try:
        return cls(name=name, **data)
    except TypeError as e:
        raise ConfigurationError(f"{cls.__name__} {name!r}: {e}") from e


def _destinations(owner: str, raw: dict[str, Any]) -> dict[str, tuple[float, float]]:
    """``{hub: prob}`` or ``{hub: {prob, overflow_prob}}`` -> ``{hub: (prob, overflow_prob)}``."""
    if not raw:
        raise ConfigurationError(f"{owner!r}: at least one destination is required")
    result = {}
    for hub, entry in raw.items():
        if isinstance(entry, dict):
            unknown = sorted(set(entry) - {"prob", "overflow_prob"})
            if unknown:
                raise ConfigurationError(f"{owner!r}: destination {hub!r} has unknown keys {unknown}")
            prob = float(entry.get("prob", 1.0))
            oprob = float(entry.get("overflow_prob", 0.0))
        else:
            prob, oprob = float(entry), 0.0
        if not prob > 0:
            raise ConfigurationError(f"{owner!r}: destination {hub!r} prob must be positive")
        if not 0.0 <= oprob <= 1.0:
            raise ConfigurationError(f"{owner!r}: destination {hub!r} overflow_prob must be in [0, 1]")
        result[hub] = (prob, oprob)
    return result


# Entity configs


@dataclass
class VariateConfig:
    """A named random variate; ``type`` selects the distribution."""

    name: str
    type: str
    mean: Optional[float] = None
    sd: Optional[float] = None
    mu: Optional[float] = None
    sigma: Optional[float] = None
    low: Optional[float] = None
    high: Optional[float] = None
    value: Optional[float] = None
    minimum: Optional[float] = None
    enforce_raw: bool = False

    REQUIRED = {
        "gaussian": ("mean", "sd"),
        "lognormal": ("mu", "sigma"),
        "exponential": ("mean",),
        "uniform": ("low", "high"),
        "constant": ("value",),
        "constant_int": ("value",),
        "uniform_int": ("low", "high"),
    }

    def __post_init__(self):
        required = self.REQUIRED.get(self.type)
        if required is None:
            raise ConfigurationError(
                f"variate {self.name!r}: unknown type {self.type!r}, "
                f"expected one of {sorted(self.REQUIRED)}"
            )
        missing = [key for key in required if getattr(self, key) is None]
        if missing:
            raise ConfigurationError(f"variate {self.name!r}: missing {missing}")

    @property
    def is_integer(self) -> bool:
        return self.type in ("constant_int", "uniform_int")

    def build(self, rng) -> Union[RandomVariate, IntegerRV]:
        """Create a fresh variate drawing from ``rng``."""
        if self.type == "gaussian":
            rv = GaussianRV(self.mean, self.sd, rng=rng)
        elif self.type == "lognormal":
            rv = LogNormalRV(self.mu, self.sigma, rng=rng)
        elif self.type == "exponential":
            rv = ExponentialRV(self.mean, rng=rng)
        elif self.type == "uniform":
            rv = UniformRV(self.low, self.high, rng=rng)
        elif self.type == "constant":
            rv = ConstantRV(self.value, rng=rng)
        elif self.type == "constant_int":
            return ConstantIntRV(int(self.value), rng=rng)
        else:
            return UniformIntRV(int(self.low), int(self.high), rng=rng)
        if self.minimum is not None:
            rv.set_minimum(self.minimum, self.enforce_raw)
        return rv


@dataclass
class DelayTableConfig:
    """Speed variate plus the default (and optional per-pair) stop model."""

    name: str
    speed: str
    dist: float
    n_stops: int = 0
    stop_probability: float = 0.0
    max_wait: float = 0.0
    dist_fraction: float = 0.5
    entries: list[dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if not 0.0 <= self.dist_fraction <= 1.0:
            raise ConfigurationError(f"delay table {self.name!r}: dist_fraction must be in [0, 1]")
        for entry in self.entries:
            if "from" not in entry or "to" not in entry:
                raise ConfigurationError(
                    f"delay table {self.name!r}: each entry needs 'from' and 'to'"
                )
            unknown = sorted(set(entry) - {"from", "to", "dist", "n_stops", "stop_probability", "max_wait"})
            if unknown:
                raise ConfigurationError(f"delay table {self.name!r}: entry has unknown keys {unknown}")

    def default_entry(self) -> DelayEntry:
        return DelayEntry(self.dist, self.n_stops, self.stop_probability, self.max_wait)


@dataclass
class ScheduledDelayTableConfig:
    """
    A timetable. Each entry is one departure (``start``, ``end``) or a
    periodic series (``initial_time``, ``cutoff_time``, ``period``, ``duration``).
    """

    name: str
    entries: list[dict[str, Any]] = field(default_factory=list)

    SINGLE = ("start", "end")
    PERIODIC = ("initial_time", "cutoff_time", "period", "duration")

    def __post_init__(self):
        if not self.entries:
            raise ConfigurationError(f"scheduled delay table {self.name!r}: no entries")
        for entry in self.entries:
            keys = set(entry) - {"from", "to"}
            if "from" not in entry or "to" not in entry:
                raise ConfigurationError(
                    f"scheduled delay table {self.name!r}: each entry needs 'from' and 'to'"
                )
            if keys != set(self.SINGLE) and keys != set(self.PERIODIC):
                raise ConfigurationError(
                    f"scheduled delay table {self.name!r}: entry needs {list(self.SINGLE)} "
                    f"or {list(self.PERIODIC)}, got {sorted(keys)}"
                )

    def build(self) -> ScheduledDelayTable:
        table = ScheduledDelayTable(self.name)
        for entry in self.entries:
            if "start" in entry:
                table.add_entry(entry["from"], entry["to"], float(entry["start"]), float(entry["end"]))
            else:
                table.add_periodic_entries(
                    entry["from"], entry["to"],
                    float(entry["initial_time"]), float(entry["cutoff_time"]),
                    float(entry["period"]), float(entry["duration"]),
                )
        return table


@dataclass
class DomainConfig:
    """``kind`` is usr, sys or ext; only a usr domain may name an ext ``parent``."""

    name: str
    kind: str
    delay_table: Optional[str] = None
    parent: Optional[str] = None

    KINDS = ("usr", "sys", "ext")

    def __post_init__(self):
        if self.kind not in self.KINDS:
            raise ConfigurationError(
                f"domain {self.name!r}: kind must be one of {list(self.KINDS)}, got {self.kind!r}"
            )
        if self.parent is not None and self.kind != "usr":
            raise ConfigurationError(f"domain {self.name!r}: only a usr domain can have a parent")


@dataclass
class HubConfig:
    """A user hub. Thresholds must satisfy lower <= nominal <= upper <= capacity."""

    name: str
    capacity: int
    count: int
    lower_trigger: int = 0
    nominal: Optional[int] = None
    upper_trigger: Optional[int] = None
    over_count: int = 0
    x: float = 0.0
    y: float = 0.0
    pickup_time: Optional[str] = None
    usr_domain: Optional[str] = None
    sys_domain: Optional[str] = None
    ext_domains: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.nominal is None:
            self.nominal = self.capacity // 2
        if self.upper_trigger is None:
            self.upper_trigger = self.capacity
        Hub._validate(
            self.capacity, self.lower_trigger, self.nominal, self.upper_trigger,
            self.count, self.over_count, self.name,
        )
        if self.usr_domain is None and self.sys_domain is None:
            raise ConfigurationError(f"hub {self.name!r} must belong to a usr or sys domain")


@dataclass
class StorageHubConfig:
    name: str
    sys_domain: str
    count: Optional[int] = None
    lower_trigger: int = 0
    nominal: int = 0
    upper_trigger: int = UNBOUNDED
    x: float = 0.0
    y: float = 0.0
    interval_no_pickup: Optional[float] = None

    def __post_init__(self):
        if self.count is not None and self.count < 0:
            raise ConfigurationError(f"storage hub {self.name!r}: count must be >= 0")
        if self.interval_no_pickup is not None and not self.interval_no_pickup > 0:
            raise ConfigurationError(f"storage hub {self.name!r}: interval_no_pickup must be positive")


@dataclass
class WorkerConfig:
    name: str
    storage_hub: str
    capacity: int
    count: int = 0

    def __post_init__(self):
        if self.capacity <= 0:
            raise ConfigurationError(f"worker {self.name!r}: capacity must be positive")
        if not 0 <= self.count <= self.capacity:
            raise ConfigurationError(f"worker {self.name!r}: count outside [0, capacity]")


@dataclass
class BalancerConfig:
    """
    Balancer for one sys domain. ``policy`` is ``triggers`` (each hub's
    lower/upper trigger) or ``threshold`` (a fraction of capacity).
    """

    name: str
    sys_domain: str
    quiet_period: float = 0.0
    policy: str = "triggers"
    threshold: Optional[float] = None
    collect_overflow: bool = True

    def __post_init__(self):
        if self.quiet_period < 0:
            raise ConfigurationError(f"balancer {self.name!r}: quiet_period must be >= 0")
        if self.policy == "triggers":
            if self.threshold is not None:
                raise ConfigurationError(
                    f"balancer {self.name!r}: threshold given but policy is 'triggers'"
                )
        elif self.policy == "threshold":
            if self.threshold is None or not 0.0 < self.threshold <= 0.5:
                raise ConfigurationError(
                    f"balancer {self.name!r}: threshold policy needs threshold in (0, 0.5]"
                )
        else:
            raise ConfigurationError(f"balancer {self.name!r}: unknown policy {self.policy!r}")

    def build_policy(self) -> Union[TriggerPolicy, ThresholdPolicy]:
        if self.policy == "threshold":
            return ThresholdPolicy(self.threshold)
        return TriggerPolicy()


@dataclass
class BasicTripGenConfig:
    name: str
    starting_hub: str
    mean_ia_time: float
    destinations: dict[str, Any]
    n_bicycles: int = 1
    initial_delay: float = 0.0
    interarrival: Optional[str] = None
    mode_choice_scale: Optional[float] = None

    def __post_init__(self):
        if not self.mean_ia_time > 0:
            raise ConfigurationError(f"trip generator {self.name!r}: mean_ia_time must be positive")
        if self.n_bicycles < 1:
            raise ConfigurationError(f"trip generator {self.name!r}: n_bicycles must be >= 1")
        if self.initial_delay < 0:
            raise ConfigurationError(f"trip generator {self.name!r}: initial_delay must be >= 0")
        self.destinations = _destinations(self.name, self.destinations)


@dataclass
class BurstTripGenConfig:
    name: str
    central_hub: str
    burst_time: float
    burst_size: Union[int, str]
    others: dict[str, Any]
    fan_in: bool = False
    estimation_count: int = 25
    estimation_factor: float = 1.0
    estimation_offset: float = 0.0
    mode_choice_scale: Optional[float] = None

    def __post_init__(self):
        if self.burst_time < 0:
            raise ConfigurationError(f"trip generator {self.name!r}: burst_time must be >= 0")
        if isinstance(self.burst_size, int) and self.burst_size < 0:
            raise ConfigurationError(f"trip generator {self.name!r}: burst_size must be >= 0")
        if self.estimation_count < 0 or not self.estimation_factor > 0 or self.estimation_offset < 0:
            raise ConfigurationError(f"trip generator {self.name!r}: invalid estimation parameters")
        self.others = _destinations(self.name, self.others)


@dataclass
class RoundTripGenConfig:
    name: str
    hub: str
    mean_ia_time: float
    destinations: dict[str, Any]
    wait: str
    n_bicycles: int = 1
    return_overflow_prob: float = 0.0
    initial_delay: float = 0.0
    mode_choice_scale: Optional[float] = None

    def __post_init__(self):
        if not self.mean_ia_time > 0:
            raise ConfigurationError(f"trip generator {self.name!r}: mean_ia_time must be positive")
        if self.n_bicycles < 1:
            raise ConfigurationError(f"trip generator {self.name!r}: n_bicycles must be >= 1")
        if not 0.0 <= self.return_overflow_prob <= 1.0:
            raise ConfigurationError(f"trip generator {self.name!r}: return_overflow_prob must be in [0, 1]")
        self.destinations = _destinations(self.name, self.destinations)


TRIP_GENERATOR_TYPES = {
    "basic": BasicTripGenConfig,
    "burst": BurstTripGenConfig,
    "round_trip": RoundTripGenConfig,
}


def parse_simulation_config(section: Optional[dict[str, Any]]) -> SimulationConfig:
    """The ``simulation`` section; durations may be given in hours, minutes or seconds."""
    section = dict(section or {})
    known = {
        "name", "ticks_per_second", "duration_hours", "duration_minutes",
        "duration_seconds", "random_seed", "metrics_interval_seconds",
    }
    unknown = sorted(set(section) - known)
    if unknown:
        raise ConfigurationError(f"simulation: unknown keys {unknown}")

    durations = [k for k in ("duration_hours", "duration_minutes", "duration_seconds") if k in section]
    if len(durations) > 1:
        raise ConfigurationError(f"simulation: give only one of {durations}")
    duration = 4.0 * 3600
    if "duration_hours" in section:
        duration = float(section["duration_hours"]) * 3600
    elif "duration_minutes" in section:
        duration = float(section["duration_minutes"]) * 60
    elif "duration_seconds" in section:
        duration = float(section["duration_seconds"])

    return SimulationConfig(
        name=section.get("name", "bikeshare"),
        ticks_per_second=float(section.get("ticks_per_second", 1000.0)),
        duration_seconds=duration,
        metrics_interval=float(section.get("metrics_interval_seconds", 300.0)),
        random_seed=section.get("random_seed", 42),
    )


class _Builder:
    """Resolves names across sections while constructing entities."""

    def __init__(self, config: dict[str, Any]):
        unknown = sorted(set(config) - set(SECTIONS))
        if unknown:
            raise ConfigurationError(f"unknown configuration sections {unknown}")
        self.config = config
        self.sim = BikeShareSimulation(parse_simulation_config(config.get("simulation")))
        self.variates = {
            name: _parse(VariateConfig, name, data)
            for name, data in (config.get("variates") or {}).items()
        }
        self.tables: dict[str, Union[DelayTable, ScheduledDelayTable]] = {}

    def section(self, key: str) -> dict[str, Any]:
        data = self.config.get(key) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"section {key!r} must be a mapping of name -> settings")
        return data

    def variate(self, owner: str, name: str, integer: bool = False):
        vc = self.variates.get(name)
        if vc is None:
            raise ConfigurationError(f"{owner!r}: unknown variate {name!r}")
        if vc.is_integer != integer:
            kind = "an integer" if integer else "a real-valued"
            raise ConfigurationError(f"{owner!r}: variate {name!r} is not {kind} variate")
        return vc.build(self.sim.rng)

    def lookup(self, table: dict, kind: str, owner: str, name: str):
        try:
            return table[name]
        except KeyError:
            raise ConfigurationError(f"{owner!r}: unknown {kind} {name!r}") from None

    def hub_weights(self, owner: str, raw: dict[str, tuple[float, float]]) -> dict:
        return {self.lookup(self.sim.hubs, "hub", owner, hub): w for hub, w in raw.items()}

    def build(self) -> BikeShareSimulation:
        sim = self.sim

        for name, data in self.section("delay_tables").items():
            data = dict(data or {})
            table_type = data.pop("type", "standard")
            if table_type == "scheduled":
                self.tables[name] = _parse(ScheduledDelayTableConfig, name, data).build()
                continue
            if table_type != "standard":
                raise ConfigurationError(
                    f"delay table {name!r}: unknown type {table_type!r}, expected 'standard' or 'scheduled'"
                )
            dc = _parse(DelayTableConfig, name, data)
            table = DelayTable(
                name, self.variate(name, dc.speed), dc.default_entry(),
                dist_fraction=dc.dist_fraction, rng=sim.rng,
            )
            for entry in dc.entries:
                table.add_entry(
                    entry["from"], entry["to"],
                    DelayEntry(
                        entry.get("dist", dc.dist),
                        entry.get("n_stops", dc.n_stops),
                        entry.get("stop_probability", dc.stop_probability),
                        entry.get("max_wait", dc.max_wait),
                    ),
                )
            self.tables[name] = table

        domain_configs = [_parse(DomainConfig, name, data) for name, data in self.section("domains").items()]
        # parents before the usr domains that name them
        order = {"ext": 0, "sys": 1, "usr": 2}
        for dc in sorted(domain_configs, key=lambda c: order[c.kind]):
            table = None
            if dc.delay_table is not None:
                table = self.lookup(self.tables, "delay table", dc.name, dc.delay_table)
                if isinstance(table, ScheduledDelayTable) and dc.kind != "ext":
                    raise ConfigurationError(
                        f"domain {dc.name!r}: scheduled delay table {table.name!r} can only serve an ext domain"
                    )
            if dc.kind == "ext":
                ExtDomain(sim, dc.name, table)
            elif dc.kind == "usr":
                UsrDomain(sim, dc.name, table, parent=self._domain(dc.name, dc.parent, ExtDomain))
            else:
                SysDomain(sim, dc.name, table)

        for name, data in self.section("hubs").items():
            hc = _parse(HubConfig, name, data)
            Hub(
                sim, name,
                capacity=hc.capacity,
                lower_trigger=hc.lower_trigger,
                nominal=hc.nominal,
                upper_trigger=hc.upper_trigger,
                count=hc.count,
                over_count=hc.over_count,
                x=hc.x, y=hc.y,
                pickup_time=self.variate(name, hc.pickup_time) if hc.pickup_time else None,
                usr_domain=self._domain(name, hc.usr_domain, UsrDomain),
                sys_domain=self._domain(name, hc.sys_domain, SysDomain),
                ext_domains=[self._domain(name, ext, ExtDomain) for ext in hc.ext_domains],
            )

        for name, data in self.section("storage_hubs").items():
            sc = _parse(StorageHubConfig, name, data)
            StorageHub(
                sim, name,
                sys_domain=self._domain(name, sc.sys_domain, SysDomain),
                count=sc.count,
                lower_trigger=sc.lower_trigger,
                nominal=sc.nominal,
                upper_trigger=sc.upper_trigger,
                x=sc.x, y=sc.y,
                interval_no_pickup=sc.interval_no_pickup,
            )

        for table in self.tables.values():
            for src, dest in table.entries:
                for hub in (src, dest):
                    self.lookup(sim.hubs, "hub", table.name, hub)

        for name, data in self.section("workers").items():
            wc = _parse(WorkerConfig, name, data)
            shub = self.lookup(sim.hubs, "storage hub", name, wc.storage_hub)
            if not shub.is_storage:
                raise ConfigurationError(f"worker {name!r}: {wc.storage_hub!r} is not a storage hub")
            HubWorker(sim, name, wc.capacity, shub, count=wc.count)

        for name, data in self.section("balancers").items():
            bc = _parse(BalancerConfig, name, data)
            HubBalancer(
                sim, name,
                self._domain(name, bc.sys_domain, SysDomain),
                quiet_period=bc.quiet_period,
                policy=bc.build_policy(),
                collect_overflow=bc.collect_overflow,
            )

        for name, data in self.section("trip_generators").items():
            self._trip_generator(name, data)

        sim.validate()
        logger.info(
            "built %s: %d domains, %d hubs, %d workers, %d balancers, %d trip generators",
            sim.config.name, len(sim.domains), len(sim.hubs), len(sim.workers),
            len(sim.balancers), len(sim.trip_generators),
        )
        return sim

    def _domain(self, owner: str, name: Optional[str], kind):
        if name is None:
            return None
        domain = self.lookup(self.sim.domains, "domain", owner, name)
        if not isinstance(domain, kind):
            article = "an" if kind.kind[0] in "aeiou" else "a"
            raise ConfigurationError(f"{owner!r}: domain {name!r} is not {article} {kind.kind} domain")
        return domain

    def _trip_generator(self, name: str, data: dict[str, Any]) -> None:
        data = dict(data or {})
        gen_type = data.pop("type", "basic")
        cls = TRIP_GENERATOR_TYPES.get(gen_type)
        if cls is None:
            raise ConfigurationError(
                f"trip generator {name!r}: unknown type {gen_type!r}, "
                f"expected one of {sorted(TRIP_GENERATOR_TYPES)}"
            )
        gc = _parse(cls, name, data)
        sim = self.sim
        mode_choice = None
        if gc.mode_choice_scale is not None:
            mode_choice = LogitModeChoice(gc.mode_choice_scale)

        if isinstance(gc, BasicTripGenConfig):
            BasicTripGenerator(
                sim, name,
                starting_hub=self.lookup(sim.hubs, "hub", name, gc.starting_hub),
                mean_ia_time=gc.mean_ia_time,
                destinations=self.hub_weights(name, gc.destinations),
                n_bicycles=gc.n_bicycles,
                interarrival=self.variate(name, gc.interarrival) if gc.interarrival else None,
                initial_delay=gc.initial_delay,
                mode_choice=mode_choice,
            )
        elif isinstance(gc, BurstTripGenConfig):
            size = gc.burst_size
            if isinstance(size, str):
                size = self.variate(name, size, integer=True)
            BurstTripGenerator(
                sim, name,
                central_hub=self.lookup(sim.hubs, "hub", name, gc.central_hub),
                burst_time=gc.burst_time,
                burst_size=size,
                others=self.hub_weights(name, gc.others),
                fan_in=gc.fan_in,
                estimation_count=gc.estimation_count,
                estimation_factor=gc.estimation_factor,
                estimation_offset=gc.estimation_offset,
                mode_choice=mode_choice,
            )
        else:
            RoundTripGenerator(
                sim, name,
                hub=self.lookup(sim.hubs, "hub", name, gc.hub),
                mean_ia_time=gc.mean_ia_time,
                destinations=self.hub_weights(name, gc.destinations),
                wait=self.variate(name, gc.wait),
                n_bicycles=gc.n_bicycles,
                return_overflow_prob=gc.return_overflow_prob,
                initial_delay=gc.initial_delay,
                mode_choice=mode_choice,
            )


def build_simulation(config: dict[str, Any]) -> BikeShareSimulation:
    """
    Construct a ready-to-run simulation from a configuration mapping.

    Args:
        config: Parsed YAML (see ``load_config``)

    Returns:
        BikeShareSimulation with every entity registered and validated

    Raises:
        ConfigurationError: On any invalid value or unresolved name
    """
    return _Builder(config).build()
