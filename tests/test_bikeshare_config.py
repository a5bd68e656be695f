"""
Tests for src/bikeshare/config.py module.

Tests cover:
- Loading the shipped YAML scenarios
- Building and running the two-hub scenario from a mapping
- Name resolution across sections and unknown-key rejection
- Balancer policy options
- Variate construction
- External domains, timetables and mode choice
"""

import copy
from pathlib import Path

import numpy as np
import pytest
import yaml

from src.bikeshare.balancer import ThresholdPolicy, TriggerPolicy
from src.bikeshare.config import (
    VariateConfig,
    build_simulation,
    load_config,
    parse_simulation_config,
)
from src.bikeshare.domain import ExtDomain
from src.bikeshare.trips import BasicTripGenerator, BurstTripGenerator, LogitModeChoice, RoundTripGenerator
from src.simulation.errors import ConfigurationError
from src.stochastic.delay import ScheduledDelayTable
from src.stochastic.variates import (
    ConstantIntRV,
    ConstantRV,
    ExponentialRV,
    GaussianRV,
    LogNormalRV,
    UniformIntRV,
    UniformRV,
)

CONFIGS = Path(__file__).resolve().parent.parent / "configs"


@pytest.fixture
def two_hubs():
    """The two-hub scenario as a fresh mapping."""
    return load_config(CONFIGS / "two_hubs.yaml")


def with_balancer(config, **balancer):
    """Add a sys domain, depot, worker and balancer around the two hubs."""
    config["domains"]["ops"] = {"kind": "sys", "delay_table": "street"}
    for hub in config["hubs"].values():
        hub["sys_domain"] = "ops"
    config["storage_hubs"] = {"depot": {"sys_domain": "ops", "count": 10}}
    config["workers"] = {"van": {"storage_hub": "depot", "capacity": 4}}
    config["balancers"] = {"balancer": {"sys_domain": "ops", **balancer}}
    return config


class TestLoadConfig:
    """Tests for load_config."""

    def test_missing_file(self, tmp_path):
        """A missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_top_level_must_be_mapping(self, tmp_path):
        """A YAML list at the top level is rejected."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError, match="mapping"):
            load_config(path)

    def test_round_trip_through_yaml(self, tmp_path, two_hubs):
        """A dumped configuration loads back unchanged."""
        path = tmp_path / "copy.yaml"
        path.write_text(yaml.dump(two_hubs))
        assert load_config(path) == two_hubs


class TestSimulationSection:
    """Tests for parse_simulation_config."""

    def test_defaults(self):
        """An empty section gives a four hour run at 1000 ticks/s."""
        config = parse_simulation_config(None)
        assert config.duration_seconds == 4 * 3600
        assert config.ticks_per_second == 1000.0
        assert config.random_seed == 42

    @pytest.mark.parametrize(
        "section,seconds",
        [
            ({"duration_hours": 2}, 7200.0),
            ({"duration_minutes": 20}, 1200.0),
            ({"duration_seconds": 90}, 90.0),
        ],
    )
    def test_duration_units(self, section, seconds):
        """Durations may be given in hours, minutes or seconds."""
        assert parse_simulation_config(section).duration_seconds == seconds

    def test_conflicting_durations(self):
        """Only one duration key is allowed."""
        with pytest.raises(ConfigurationError, match="only one"):
            parse_simulation_config({"duration_hours": 1, "duration_minutes": 5})

    def test_unknown_key(self):
        """Unknown simulation keys are rejected."""
        with pytest.raises(ConfigurationError, match="unknown keys"):
            parse_simulation_config({"speedup": 10})


class TestBuildTwoHubs:
    """Tests for building the two-hub scenario."""

    def test_entities(self, two_hubs):
        """Every section becomes registered entities."""
        sim = build_simulation(two_hubs)
        assert sim.config.name == "two_hubs"
        assert sim.config.duration_seconds == 1200.0
        assert set(sim.hubs) == {"east", "west"}
        assert set(sim.domains) == {"riders"}
        assert set(sim.trip_generators) == {"east_to_west", "west_to_east"}
        gen = sim.trip_generators["east_to_west"]
        assert isinstance(gen, BasicTripGenerator)
        assert gen.destinations.hubs == [sim.hubs["west"]]

    def test_run_restores_counts(self, two_hubs):
        """Both hubs finish with five bicycles."""
        sim = build_simulation(two_hubs)
        result = sim.run()
        assert sim.hubs["east"].bike_count == 5
        assert sim.hubs["west"].bike_count == 5
        assert result.metrics["total_trips"] == 4
        assert result.metrics["failed_trips"] == 0

    def test_destination_mapping_form(self, two_hubs):
        """Destinations accept a mapping with prob and overflow_prob."""
        two_hubs["trip_generators"]["east_to_west"]["destinations"] = {
            "west": {"prob": 1.0, "overflow_prob": 1.0}
        }
        sim = build_simulation(two_hubs)
        entry = sim.trip_generators["east_to_west"].destinations.entries[0]
        assert entry.overflow_prob == 1.0
        sim.run()
        # both east riders used the overflow area at west
        assert sim.hubs["west"].overflow == 2

    def test_hub_defaults(self, two_hubs):
        """nominal defaults to half capacity, upper trigger to capacity."""
        two_hubs["hubs"]["east"] = {"capacity": 12, "count": 3, "usr_domain": "riders"}
        sim = build_simulation(two_hubs)
        east = sim.hubs["east"]
        assert east.nominal == 6
        assert east.upper_trigger == 12
        assert east.lower_trigger == 0


class TestConfigurationErrors:
    """Invalid configurations fail while building."""

    @pytest.mark.parametrize(
        "mutate,match",
        [
            (lambda c: c.update(extras={}), "unknown configuration sections"),
            (lambda c: c["hubs"]["east"].update(colour="red"), "unknown keys"),
            (lambda c: c["hubs"]["east"].update(usr_domain="nowhere"), "unknown domain"),
            (lambda c: c["hubs"]["east"].pop("usr_domain"), "must belong"),
            (lambda c: c["hubs"]["east"].update(nominal=9), "nominal"),
            (lambda c: c["hubs"]["east"].pop("capacity"), "capacity"),
            (lambda c: c["hubs"]["east"].update(sys_domain="riders"), "not a sys domain"),
            (lambda c: c["delay_tables"]["street"].update(speed="missing"), "unknown variate"),
            (lambda c: c["delay_tables"]["street"].update(entries=[{"from": "east", "to": "north"}]),
             "unknown hub"),
            (lambda c: c["delay_tables"]["street"].update(entries=[{"to": "east"}]), "'from' and 'to'"),
            (lambda c: c["variates"]["rider_speed"].update(type="weibull"), "unknown type"),
            (lambda c: c["variates"].update(rider_speed={"type": "gaussian", "mean": 4.0}), "missing"),
            (lambda c: c["variates"].update(rider_speed={"type": "constant_int", "value": 4}),
             "not a real-valued"),
            (lambda c: c["domains"]["riders"].update(kind="admin"), "kind"),
            (lambda c: c["trip_generators"]["east_to_west"].update(type="teleport"), "unknown type"),
            (lambda c: c["trip_generators"]["east_to_west"].update(destinations={"north": 1.0}),
             "unknown hub"),
            (lambda c: c["trip_generators"]["east_to_west"].update(destinations={"west": 0.0}),
             "prob must be positive"),
            (lambda c: c["trip_generators"]["east_to_west"].update(destinations={}),
             "at least one destination"),
            (lambda c: c["trip_generators"]["east_to_west"].update(mean_ia_time=0), "mean_ia_time"),
        ],
    )
    def test_invalid(self, two_hubs, mutate, match):
        """Each bad value is reported as a ConfigurationError."""
        config = copy.deepcopy(two_hubs)
        mutate(config)
        with pytest.raises(ConfigurationError, match=match):
            build_simulation(config)

    def test_duplicate_names_across_sections(self, two_hubs):
        """A storage hub may not reuse a user hub's name."""
        config = with_balancer(two_hubs)
        config["storage_hubs"] = {"east": {"sys_domain": "ops"}}
        config["workers"]["van"]["storage_hub"] = "east"
        with pytest.raises(ConfigurationError, match="duplicate"):
            build_simulation(config)

    def test_worker_needs_storage_hub(self, two_hubs):
        """Workers must be based at a storage hub."""
        config = with_balancer(two_hubs)
        config["workers"]["van"]["storage_hub"] = "east"
        with pytest.raises(ConfigurationError, match="not a storage hub"):
            build_simulation(config)


class TestBalancerSection:
    """Tests for balancer policy configuration."""

    def test_default_policy_is_triggers(self, two_hubs):
        """Without a policy key, hub triggers are used."""
        sim = build_simulation(with_balancer(two_hubs, quiet_period=300))
        balancer = sim.balancers["balancer"]
        assert isinstance(balancer.policy, TriggerPolicy)
        assert balancer.quiet_period == 300
        assert balancer.collect_overflow is True

    def test_threshold_policy(self, two_hubs):
        """The threshold policy carries its fraction."""
        sim = build_simulation(with_balancer(two_hubs, policy="threshold", threshold=0.2))
        policy = sim.balancers["balancer"].policy
        assert isinstance(policy, ThresholdPolicy)
        assert policy.threshold == 0.2

    @pytest.mark.parametrize(
        "options,match",
        [
            ({"threshold": 0.2}, "policy is 'triggers'"),
            ({"policy": "threshold"}, "threshold policy needs"),
            ({"policy": "threshold", "threshold": 0.7}, "threshold policy needs"),
            ({"policy": "random"}, "unknown policy"),
            ({"quiet_period": -5}, "quiet_period"),
        ],
    )
    def test_invalid_policy(self, two_hubs, options, match):
        """Policy options are validated together."""
        with pytest.raises(ConfigurationError, match=match):
            build_simulation(with_balancer(two_hubs, **options))

    def test_balancer_needs_sys_domain(self, two_hubs):
        """A balancer cannot be attached to a user domain."""
        config = with_balancer(two_hubs)
        config["balancers"]["balancer"]["sys_domain"] = "riders"
        with pytest.raises(ConfigurationError, match="not a sys domain"):
            build_simulation(config)


class TestDowntownScenario:
    """Tests for the shipped four-hub scenario."""

    @pytest.fixture
    def config(self):
        return load_config(CONFIGS / "downtown_balanced.yaml")

    def test_builds(self, config):
        """All entity kinds are present and wired."""
        sim = build_simulation(config)
        assert set(sim.workers) == {"van_1", "van_2"}
        assert sim.hubs["depot"].is_storage
        assert sim.hubs["depot"].bike_count == 40
        assert isinstance(sim.trip_generators["morning_rush"], BurstTripGenerator)
        assert isinstance(sim.trip_generators["errands"], RoundTripGenerator)
        assert 8 <= sim.trip_generators["morning_rush"].burst_size <= 14
        assert ("depot", "station") in sim.domains["operations"].delay_table.entries
        assert sim.hubs["station"].pickup_time is not None

    def test_run_conserves_bicycles(self, config):
        """Two hours with riders, a burst and workers keep every bicycle."""
        config["simulation"].pop("duration_hours")
        config["simulation"]["duration_minutes"] = 120
        sim = build_simulation(config)
        before = sim.bike_inventory()["total"]
        result = sim.run()
        assert sim.bike_inventory()["total"] == before
        assert result.metrics["total_trips"] > 0
        assert result.final_ticks == sim.ticks_for(7200.0)


class TestVariateConfig:
    """Tests for VariateConfig.build."""

    @pytest.mark.parametrize(
        "data,cls",
        [
            ({"type": "gaussian", "mean": 1.0, "sd": 0.5}, GaussianRV),
            ({"type": "lognormal", "mu": 0.0, "sigma": 1.0}, LogNormalRV),
            ({"type": "exponential", "mean": 60.0}, ExponentialRV),
            ({"type": "uniform", "low": 1.0, "high": 2.0}, UniformRV),
            ({"type": "constant", "value": 3.0}, ConstantRV),
            ({"type": "constant_int", "value": 3}, ConstantIntRV),
            ({"type": "uniform_int", "low": 1, "high": 4}, UniformIntRV),
        ],
    )
    def test_types(self, data, cls):
        """Each type builds the matching variate."""
        rng = np.random.default_rng(0)
        rv = VariateConfig(name="v", **data).build(rng)
        assert isinstance(rv, cls)
        assert rv.rng is rng

    def test_minimum_applied(self):
        """minimum and enforce_raw are carried onto the variate."""
        vc = VariateConfig(name="v", type="gaussian", mean=0.0, sd=1.0, minimum=0.5, enforce_raw=True)
        rv = vc.build(np.random.default_rng(0))
        assert rv.minimum == 0.5
        assert rv.enforce_raw is True

    def test_integer_variate_as_burst_size(self, two_hubs):
        """burst_size may name an integer variate."""
        two_hubs["variates"]["riders"] = {"type": "constant_int", "value": 3}
        two_hubs["trip_generators"]["rush"] = {
            "type": "burst",
            "central_hub": "east",
            "burst_time": 60,
            "burst_size": "riders",
            "others": {"west": 1.0},
        }
        sim = build_simulation(two_hubs)
        assert sim.trip_generators["rush"].burst_size == 3

    def test_real_variate_as_burst_size(self, two_hubs):
        """A real-valued variate cannot size a burst."""
        two_hubs["trip_generators"]["rush"] = {
            "type": "burst",
            "central_hub": "east",
            "burst_time": 60,
            "burst_size": "rider_speed",
            "others": {"west": 1.0},
        }
        with pytest.raises(ConfigurationError, match="not an integer"):
            build_simulation(two_hubs)


class TestRouteChecks:
    """Trip destinations are checked against the rider's user domain."""

    def test_destination_in_other_user_domain(self, two_hubs):
        """A hub riders of the origin cannot reach fails the build."""
        two_hubs["domains"]["islanders"] = {"kind": "usr", "delay_table": "street"}
        two_hubs["hubs"]["north"] = {"capacity": 10, "count": 5, "usr_domain": "islanders"}
        two_hubs["trip_generators"]["east_to_west"]["destinations"] = {"west": 1.0, "north": 1.0}
        with pytest.raises(ConfigurationError, match="'north' is not in user domain 'riders'"):
            build_simulation(two_hubs)


def with_shuttle(config, start=0.0, end=60.0):
    """Add a one-departure east -> west shuttle that both hubs are on."""
    config["delay_tables"]["shuttle_times"] = {
        "type": "scheduled",
        "entries": [{"from": "east", "to": "west", "start": start, "end": end}],
    }
    config["domains"]["shuttle"] = {"kind": "ext", "delay_table": "shuttle_times"}
    config["domains"]["riders"]["parent"] = "shuttle"
    for hub in config["hubs"].values():
        hub["ext_domains"] = ["shuttle"]
    return config


class TestExternalDomainSection:
    """Tests for ext domains, scheduled delay tables and mode choice settings."""

    def test_entities(self, two_hubs):
        """The shuttle domain, its timetable and the parent link are built."""
        sim = build_simulation(with_shuttle(two_hubs))
        shuttle = sim.domains["shuttle"]
        assert isinstance(shuttle, ExtDomain)
        assert isinstance(shuttle.delay_table, ScheduledDelayTable)
        assert sim.domains["riders"].parent is shuttle
        assert sim.hubs["east"].ext_domains == [shuttle]
        assert shuttle.contains(sim.hubs["west"])

    def test_first_departure_taken(self, two_hubs):
        """The east rider at 0 takes the shuttle; the one at 600 has none left and rides."""
        sim = build_simulation(with_shuttle(two_hubs))
        result = sim.run()
        # west riders at 0 and 600 ride east; one east rider rides west
        assert sim.hubs["east"].bike_count == 6
        assert sim.hubs["west"].bike_count == 4
        assert result.metrics["total_trips"] == 4
        assert result.metrics["failed_trips"] == 0

    def test_slow_shuttle_ignored(self, two_hubs):
        """With a shuttle slower than the bicycle the counts are as without one."""
        sim = build_simulation(with_shuttle(two_hubs, end=1000.0))
        sim.run()
        assert sim.hubs["east"].bike_count == 5
        assert sim.hubs["west"].bike_count == 5

    def test_mode_choice_scale(self, two_hubs):
        """mode_choice_scale gives the generator a logit choice model."""
        config = with_shuttle(two_hubs)
        config["trip_generators"]["east_to_west"]["mode_choice_scale"] = 90
        sim = build_simulation(config)
        model = sim.trip_generators["east_to_west"].mode_choice
        assert isinstance(model, LogitModeChoice)
        assert model.scale == 90
        assert sim.trip_generators["west_to_east"].mode_choice is None

    def test_periodic_entries(self, two_hubs):
        """A periodic entry expands into one departure per period."""
        config = with_shuttle(two_hubs)
        config["delay_tables"]["shuttle_times"]["entries"] = [
            {"from": "west", "to": "east", "initial_time": 0, "cutoff_time": 1200,
             "period": 300, "duration": 120},
        ]
        sim = build_simulation(config)
        departures = sim.domains["shuttle"].delay_table.entries[("west", "east")]
        assert [start for _, start in departures] == [0.0, 300.0, 600.0, 900.0, 1200.0]

    @pytest.mark.parametrize(
        "mutate,match",
        [
            (lambda c: c["domains"]["riders"].update(parent="ops"), "not an ext domain"),
            (lambda c: c["domains"]["riders"].update(parent="ferry"), "unknown domain"),
            (lambda c: c["domains"]["shuttle"].update(parent="shuttle"), "only a usr domain"),
            (lambda c: c["domains"]["riders"].update(delay_table="shuttle_times"),
             "can only serve an ext domain"),
            (lambda c: c["hubs"]["east"].update(ext_domains=["riders"]), "not an ext domain"),
            (lambda c: c["delay_tables"]["shuttle_times"].update(type="teleport"), "unknown type"),
            (lambda c: c["delay_tables"]["shuttle_times"].update(entries=[]), "no entries"),
            (lambda c: c["delay_tables"]["shuttle_times"]["entries"][0].pop("end"), "entry needs"),
            (lambda c: c["delay_tables"]["shuttle_times"]["entries"][0].update(period=60), "entry needs"),
            (lambda c: c["delay_tables"]["shuttle_times"]["entries"][0].update(to="north"), "unknown hub"),
            (lambda c: c["delay_tables"]["shuttle_times"]["entries"][0].update(end=0), "arrive after"),
            (lambda c: c["trip_generators"]["east_to_west"].update(mode_choice_scale=0), "scale"),
        ],
    )
    def test_invalid(self, two_hubs, mutate, match):
        """Each bad ext setting is reported as a ConfigurationError."""
        config = with_balancer(with_shuttle(two_hubs))
        mutate(config)
        with pytest.raises(ConfigurationError, match=match):
            build_simulation(config)


class TestHarborShuttleScenario:
    """Tests for the shipped shuttle scenario."""

    @pytest.fixture
    def config(self):
        return load_config(CONFIGS / "harbor_shuttle.yaml")

    def test_builds(self, config):
        """The timetable covers both directions and the campus is off the route."""
        sim = build_simulation(config)
        table = sim.domains["shuttle"].delay_table
        assert len(table.entries[("harbor", "museum")]) == 10
        assert len(table.entries[("museum", "harbor")]) == 8
        assert not sim.domains["shuttle"].contains(sim.hubs["campus"])
        assert sim.trip_generators["harbor_out"].mode_choice.scale == 120

    def test_run_conserves_bicycles(self, config):
        """Shuttle riders leave the bicycle count untouched."""
        sim = build_simulation(config)
        before = sim.bike_inventory()["total"]
        result = sim.run()
        assert sim.bike_inventory()["total"] == before
        assert result.metrics["total_trips"] > 0
