"""
Bike-share network entities: hubs, domains, workers, trips and balancers.

Scenario files are loaded through ``src.bikeshare.config``.
"""

from .balancer import HubBalancer, ThresholdPolicy, TriggerPolicy
from .domain import ExtDomain, HubDomain, SysDomain, UsrDomain
from .hub import UNBOUNDED, Hub, StorageHub
from .listeners import (
    HubConditionListener,
    HubDataListener,
    HubWorkerListener,
    NoPickupListener,
    TripDataListener,
)
from .trips import (
    BasicTripGenerator,
    BurstTripGenerator,
    LogitModeChoice,
    RoundTripGenerator,
    Trip,
    TripGenerator,
    TripState,
)
from .worker import HubWorker, WorkerState, WorkerTask

__all__ = [
    # Hubs
    "Hub",
    "StorageHub",
    "UNBOUNDED",
    # Domains
    "HubDomain",
    "UsrDomain",
    "SysDomain",
    "ExtDomain",
    # Workers
    "HubWorker",
    "WorkerState",
    "WorkerTask",
    # Trips
    "Trip",
    "TripState",
    "TripGenerator",
    "BasicTripGenerator",
    "BurstTripGenerator",
    "RoundTripGenerator",
    "LogitModeChoice",
    # Balancing
    "HubBalancer",
    "TriggerPolicy",
    "ThresholdPolicy",
    # Listeners
    "HubDataListener",
    "HubConditionListener",
    "TripDataListener",
    "HubWorkerListener",
    "NoPickupListener",
]
