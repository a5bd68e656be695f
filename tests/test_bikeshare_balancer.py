"""
Tests for src/bikeshare/balancer.py module.

Tests cover:
- Trigger and threshold policies
- Deficit/surplus dispatch toward nominal, bounded by worker and storage
- Quiet period and retry events
- Pending hubs served when a worker returns
- Choosing among several storage hubs; balancers sharing workers
- Overflow collection
- Bicycle conservation with riders and workers active together
"""

import logging

import pytest

from src.bikeshare.balancer import Dispatch, HubBalancer, ThresholdPolicy, TriggerPolicy
from src.bikeshare.domain import SysDomain, UsrDomain
from src.bikeshare.hub import Hub, StorageHub
from src.bikeshare.trips import BasicTripGenerator
from src.bikeshare.worker import HubWorker
from src.simulation.engine import BikeShareSimulation, SimulationConfig
from src.simulation.errors import ConfigurationError
from src.simulation.events import EventType
from src.stochastic.delay import DelayEntry, DelayTable
from src.stochastic.variates import ConstantRV, ExponentialRV


@pytest.fixture
def sim():
    """One-hour simulation without snapshots."""
    return BikeShareSimulation(SimulationConfig(duration_seconds=3600, metrics_interval=0, random_seed=3))


@pytest.fixture
def sys_domain(sim):
    """Workers travel at 10 m/s; every leg of 1000 m takes 100 s."""
    table = DelayTable("vans", ConstantRV(10.0), DelayEntry(dist=1000.0), dist_fraction=0.0, rng=sim.rng)
    return SysDomain(sim, "ops", table)


def user_hub(sim, sys_domain, name="h", count=5, x=1000.0, y=0.0, **kwargs):
    kwargs.setdefault("capacity", 10)
    kwargs.setdefault("lower_trigger", 2)
    kwargs.setdefault("nominal", 5)
    kwargs.setdefault("upper_trigger", 8)
    return Hub(sim, name, count=count, x=x, y=y, sys_domain=sys_domain, **kwargs)


def at(sim, seconds, action):
    """Run ``action`` at an absolute simulated time."""
    sim.queue.schedule(action, sim.ticks_for(seconds), EventType.TRIP_START)


def retries(sim):
    return [e for e in sim.queue._heap if e.event_type is EventType.BALANCER_RETRY and e.pending]


class TestPolicies:
    """Tests for TriggerPolicy and ThresholdPolicy."""

    def test_trigger_policy(self, sim, sys_domain):
        """Triggers compare against each hub's own bounds."""
        policy = TriggerPolicy()
        assert policy.deficit(user_hub(sim, sys_domain, "low", count=1))
        assert policy.surplus(user_hub(sim, sys_domain, "high", count=9))
        ok = user_hub(sim, sys_domain, "ok", count=2)
        assert not policy.deficit(ok)
        assert not policy.surplus(ok)

    def test_threshold_policy(self, sim, sys_domain):
        """A threshold is a fraction of capacity on both sides."""
        policy = ThresholdPolicy(0.3)
        assert policy.deficit(user_hub(sim, sys_domain, "a", count=2))
        assert not policy.deficit(user_hub(sim, sys_domain, "b", count=3))
        assert policy.surplus(user_hub(sim, sys_domain, "c", count=8))
        assert not policy.surplus(user_hub(sim, sys_domain, "d", count=7))

    @pytest.mark.parametrize("threshold", [0.0, -0.1, 0.6])
    def test_threshold_out_of_range(self, threshold):
        """Thresholds live in (0, 0.5]."""
        with pytest.raises(ConfigurationError, match="threshold"):
            ThresholdPolicy(threshold)


class TestWorkFor:
    """Tests for HubBalancer.work_for."""

    def test_amounts(self, sim, sys_domain):
        """Work moves the hub to nominal, not just inside the band."""
        balancer = HubBalancer(sim, "b", sys_domain)
        assert balancer.work_for(user_hub(sim, sys_domain, "low", count=1)) == 4
        assert balancer.work_for(user_hub(sim, sys_domain, "high", count=10)) == -5
        assert balancer.work_for(user_hub(sim, sys_domain, "ok", count=7)) is None

    def test_overflow_only_work(self, sim, sys_domain):
        """A hub inside its band with overflow needs a zero-amount visit."""
        hub = user_hub(sim, sys_domain, count=5, over_count=3)
        assert HubBalancer(sim, "b", sys_domain).work_for(hub) == 0
        assert HubBalancer(sim, "b2", sys_domain, collect_overflow=False).work_for(hub) is None

    def test_negative_quiet_period(self, sim, sys_domain):
        """A negative quiet period is rejected."""
        with pytest.raises(ConfigurationError):
            HubBalancer(sim, "b", sys_domain, quiet_period=-1.0)

    def test_requires_storage_hub(self, sim, sys_domain):
        """A balanced sys domain must have a storage hub."""
        user_hub(sim, sys_domain)
        HubBalancer(sim, "b", sys_domain)
        with pytest.raises(ConfigurationError, match="no storage hub"):
            sim.validate()


class TestDispatch:
    """Tests for worker dispatch decisions."""

    def test_deficit_at_start(self, sim, sys_domain):
        """Hubs are evaluated at tick 0 and refilled to nominal."""
        depot = StorageHub(sim, "depot", sys_domain, count=20)
        hub = user_hub(sim, sys_domain, count=1)
        HubWorker(sim, "w", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain)
        sim.run(sim.ticks_for(250.0))
        assert balancer.dispatches == [Dispatch(0, "h", "w", 4, False)]
        assert hub.bike_count == 5
        assert depot.bike_count == 16
        assert balancer.in_service == {}
        assert balancer.pending == {}

    def test_surplus_collected(self, sim, sys_domain):
        """Surplus bicycles are taken back to storage."""
        depot = StorageHub(sim, "depot", sys_domain, count=20)
        hub = user_hub(sim, sys_domain, count=10, upper_trigger=8)
        worker = HubWorker(sim, "w", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain)
        sim.run(sim.ticks_for(250.0))
        assert balancer.dispatches[0].amount == -5
        assert hub.bike_count == 5
        assert depot.bike_count == 25
        assert worker.bike_count == 0

    def test_amount_bounded_by_worker_capacity(self, sim, sys_domain):
        """A worker never plans to move more than it can carry."""
        depot = StorageHub(sim, "depot", sys_domain, count=20)
        hub = user_hub(sim, sys_domain, capacity=20, lower_trigger=5, nominal=15, upper_trigger=20, count=0)
        HubWorker(sim, "w", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain)
        sim.run(sim.ticks_for(250.0))
        assert balancer.dispatches[0].amount == 6
        assert hub.bike_count == 6
        # 6 >= lower_trigger, so no second visit
        assert len(balancer.dispatches) == 1

    def test_amount_bounded_by_storage(self, sim, sys_domain):
        """Deliveries are limited to what storage holds."""
        depot = StorageHub(sim, "depot", sys_domain, count=3)
        hub = user_hub(sim, sys_domain, count=0)
        HubWorker(sim, "w", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain)
        sim.run(sim.ticks_for(250.0))
        assert balancer.dispatches[0].amount == 3
        assert hub.bike_count == 3
        assert depot.bike_count == 0

    def test_empty_storage_leaves_hub_pending(self, sim, sys_domain, caplog):
        """With nothing to deliver the hub waits and a warning is logged."""
        depot = StorageHub(sim, "depot", sys_domain, count=0)
        hub = user_hub(sim, sys_domain, count=0)
        worker = HubWorker(sim, "w", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain)
        with caplog.at_level(logging.WARNING, logger="src.bikeshare.balancer"):
            sim.run(sim.ticks_for(10.0))
        assert "has none" in caplog.text
        assert balancer.dispatches == []
        assert balancer.pending == {"h": hub}
        assert worker.is_idle

    def test_no_double_dispatch(self, sim, sys_domain):
        """A hub being serviced is not assigned a second worker."""
        depot = StorageHub(sim, "depot", sys_domain, count=20)
        hub = user_hub(sim, sys_domain, count=1)
        HubWorker(sim, "w1", 6, depot)
        w2 = HubWorker(sim, "w2", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain)
        at(sim, 50.0, lambda: hub.take_bikes(1))
        sim.run(sim.ticks_for(250.0))
        assert len(balancer.dispatches) == 1
        assert w2.completed_tasks == 0
        # arrived to find 0 and delivered the 4 it carried
        assert hub.bike_count == 4
        assert len(depot.idle_workers) == 2

    def test_pending_served_on_return(self, sim, sys_domain):
        """Hubs waiting for a worker are served as soon as one returns."""
        depot = StorageHub(sim, "depot", sys_domain, count=20)
        h1 = user_hub(sim, sys_domain, "h1", count=1, x=1000.0)
        h2 = user_hub(sim, sys_domain, "h2", count=1, x=0.0, y=1000.0)
        HubWorker(sim, "w", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain)

        sim.run(sim.ticks_for(150.0))
        assert list(balancer.pending) == ["h2"]

        sim.run(sim.ticks_for(450.0))
        assert [(d.tick, d.hub) for d in balancer.dispatches] == [
            (0, "h1"),
            (sim.ticks_for(200.0), "h2"),
        ]
        assert h1.bike_count == h2.bike_count == 5
        assert depot.bike_count == 12
        assert balancer.pending == {}


class TestStorageHubChoice:
    """Tests for choosing among several storage hubs."""

    def test_farther_storage_hub_worker_used(self, sim, sys_domain):
        """When the nearest storage hub has no idle worker, a farther one's worker goes."""
        near = StorageHub(sim, "near", sys_domain, count=20, x=990.0)
        far = StorageHub(sim, "far", sys_domain, count=20, x=-1000.0)
        hub = user_hub(sim, sys_domain, count=0)
        HubWorker(sim, "w", 6, far)
        balancer = HubBalancer(sim, "b", sys_domain)
        sim.run(sim.ticks_for(250.0))
        assert balancer.dispatches == [Dispatch(0, "h", "w", 5, False)]
        assert hub.bike_count == 5
        assert far.bike_count == 15
        assert near.bike_count == 20
        assert balancer.pending == {}
        # the visit counts for the hub's own depot
        assert "h" in near.last_visit
        assert "h" not in far.last_visit

    def test_empty_nearest_storage_skipped(self, sim, sys_domain):
        """A delivery comes from the nearest storage hub that has bicycles, bounded by its stock."""
        near = StorageHub(sim, "near", sys_domain, count=0, x=990.0)
        far = StorageHub(sim, "far", sys_domain, count=3, x=-1000.0)
        hub = user_hub(sim, sys_domain, count=0)
        w_near = HubWorker(sim, "w_near", 6, near)
        HubWorker(sim, "w_far", 6, far)
        balancer = HubBalancer(sim, "b", sys_domain)
        sim.run(sim.ticks_for(250.0))
        assert balancer.dispatches == [Dispatch(0, "h", "w_far", 3, False)]
        assert hub.bike_count == 3
        assert far.bike_count == 0
        assert w_near.completed_tasks == 0

    def test_pending_served_by_any_returning_worker(self, sim, sys_domain):
        """A pending hub is retried when a worker returns to a storage hub that is not its nearest."""
        StorageHub(sim, "near", sys_domain, count=20, x=1000.0, y=10.0)
        far = StorageHub(sim, "far", sys_domain, count=20, x=-1000.0)
        user_hub(sim, sys_domain, "h1", count=0)
        h2 = user_hub(sim, sys_domain, "h2", count=0)
        HubWorker(sim, "w", 6, far)
        balancer = HubBalancer(sim, "b", sys_domain)

        sim.run(sim.ticks_for(300.0))
        assert list(balancer.pending) == ["h2"]

        sim.run(sim.ticks_for(650.0))
        # 200 s out to h1 and 200 s back before h2 can be served
        assert [(d.tick, d.hub) for d in balancer.dispatches] == [
            (0, "h1"),
            (sim.ticks_for(400.0), "h2"),
        ]
        assert h2.bike_count == 5
        assert balancer.pending == {}


class TestSharedWorkers:
    """Two balancers drawing on the same workers."""

    def test_service_released_when_other_balancer_redispatches(self, sim, sys_domain):
        """A returning worker frees its hub even if another balancer sends it straight out again."""
        depot = StorageHub(sim, "depot", sys_domain, count=20)
        h1 = user_hub(sim, sys_domain, "h1", count=1)
        h2 = user_hub(sim, sys_domain, "h2", count=5)
        HubWorker(sim, "w", 6, depot)
        # a only reacts to empty hubs, b to each hub's lower trigger
        a = HubBalancer(sim, "a", sys_domain, policy=ThresholdPolicy(0.1))
        b = HubBalancer(sim, "b", sys_domain)
        at(sim, 50.0, lambda: h2.take_bikes(5))
        at(sim, 500.0, lambda: h1.take_bikes(4))

        sim.run(sim.ticks_for(250.0))
        assert [(d.tick, d.hub) for d in a.dispatches] == [(sim.ticks_for(200.0), "h2")]
        assert "h1" not in b.in_service

        sim.run(sim.ticks_for(550.0))
        assert [(d.tick, d.hub) for d in b.dispatches] == [
            (0, "h1"),
            (sim.ticks_for(500.0), "h1"),
        ]
        assert h2.bike_count == 5


class TestQuietPeriod:
    """Tests for the per-hub quiet period."""

    @pytest.fixture
    def setup(self, sim, sys_domain):
        depot = StorageHub(sim, "depot", sys_domain, count=30)
        hub = user_hub(sim, sys_domain, count=1)
        HubWorker(sim, "w", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain, quiet_period=600.0)
        return depot, hub, balancer

    def test_retry_after_quiet_period(self, sim, setup):
        """A hub that needs work again too soon is retried when the period ends."""
        depot, hub, balancer = setup
        at(sim, 300.0, lambda: hub.take_bikes(4))
        sim.run(sim.ticks_for(599.0))
        assert len(balancer.dispatches) == 1
        assert hub.bike_count == 1

        sim.run(sim.ticks_for(900.0))
        assert [d.tick for d in balancer.dispatches] == [0, sim.ticks_for(600.0)]
        assert hub.bike_count == 5

    def test_single_retry_event(self, sim, setup):
        """Repeated changes during the quiet period share one retry."""
        depot, hub, balancer = setup
        at(sim, 300.0, lambda: hub.take_bikes(4))
        at(sim, 400.0, lambda: hub.take_bikes(1))
        sim.run(sim.ticks_for(450.0))
        pending = retries(sim)
        assert len(pending) == 1
        assert pending[0].tick == sim.ticks_for(600.0)

    def test_recovered_hub_not_dispatched(self, sim, setup):
        """A hub back inside its band by retry time is left alone."""
        depot, hub, balancer = setup
        at(sim, 300.0, lambda: hub.take_bikes(4))
        at(sim, 500.0, lambda: hub.add_bikes(3))
        sim.run(sim.ticks_for(900.0))
        assert len(balancer.dispatches) == 1
        assert hub.bike_count == 4


class TestOverflowCollection:
    """Tests for overflow pickup visits."""

    def test_overflow_collected(self, sim, sys_domain):
        """A hub with overflow gets a zero-amount visit that clears it."""
        depot = StorageHub(sim, "depot", sys_domain, count=20)
        hub = user_hub(sim, sys_domain, count=5, over_count=2)
        HubWorker(sim, "w", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain)
        sim.run(sim.ticks_for(250.0))
        assert balancer.dispatches == [Dispatch(0, "h", "w", 0, True)]
        assert hub.overflow == 0
        assert hub.bike_count == 5
        assert depot.bike_count == 22

    def test_overflow_ignored_when_disabled(self, sim, sys_domain):
        """Without collect_overflow, overflow alone does not dispatch."""
        depot = StorageHub(sim, "depot", sys_domain, count=20)
        hub = user_hub(sim, sys_domain, count=5, over_count=2)
        HubWorker(sim, "w", 6, depot)
        balancer = HubBalancer(sim, "b", sys_domain, collect_overflow=False)
        sim.run(sim.ticks_for(250.0))
        assert balancer.dispatches == []
        assert hub.overflow == 2


class TestConservation:
    """Riders and workers together never create or destroy bicycles."""

    def test_inventory_constant(self):
        """The bicycle total is unchanged at every checkpoint."""
        sim = BikeShareSimulation(SimulationConfig(duration_seconds=7200, metrics_interval=600, random_seed=11))
        street = DelayTable("street", ConstantRV(4.0), DelayEntry(dist=1000.0), rng=sim.rng)
        roads = DelayTable("roads", ConstantRV(10.0), DelayEntry(dist=1000.0), rng=sim.rng)
        usr = UsrDomain(sim, "riders", street)
        ops = SysDomain(sim, "ops", roads)
        hubs = {}
        for name, x, y in (("a", 0.0, 0.0), ("b", 1000.0, 0.0), ("c", 0.0, 1000.0)):
            hubs[name] = Hub(sim, name, capacity=10, lower_trigger=2, nominal=5, upper_trigger=8,
                             count=5, x=x, y=y, usr_domain=usr, sys_domain=ops)
        depot = StorageHub(sim, "depot", ops, count=10, x=500.0, y=500.0)
        HubWorker(sim, "van1", 4, depot)
        HubWorker(sim, "van2", 4, depot)
        balancer = HubBalancer(sim, "b", ops, quiet_period=300.0)
        BasicTripGenerator(sim, "from_a", hubs["a"], 120.0,
                           {hubs["b"]: (0.7, 0.1), hubs["c"]: (0.3, 0.0)})
        BasicTripGenerator(sim, "from_b", hubs["b"], 400.0, {hubs["a"]: (1.0, 0.0)},
                           interarrival=ExponentialRV(400.0, rng=sim.rng))

        total = sim.bike_inventory()["total"]
        assert total == 25
        for _ in range(120):
            sim.run_for(60.0)
            assert sim.bike_inventory()["total"] == total
        assert balancer.dispatches
