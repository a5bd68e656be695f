"""
Discrete-event simulation kernel for bike-share experiments.

Provides the tick clock, the event queue, the run engine and metrics.
"""

from .clock import EventQueue, SimulationClock
from .engine import BikeShareSimulation, SimulationConfig, SimulationResult, run_simulation
from .errors import ConfigurationError, InvariantViolation
from .events import Event, EventType
from .metrics import (
    AlertRecord,
    HubRecord,
    MetricsCollector,
    TimeSliceMetrics,
    TripRecord,
    WorkerRecord,
)

__all__ = [
    # Engine
    "SimulationConfig",
    "BikeShareSimulation",
    "SimulationResult",
    "run_simulation",
    # Clock
    "SimulationClock",
    "EventQueue",
    # Events
    "Event",
    "EventType",
    # Errors
    "ConfigurationError",
    "InvariantViolation",
    # Metrics
    "MetricsCollector",
    "TripRecord",
    "HubRecord",
    "WorkerRecord",
    "AlertRecord",
    "TimeSliceMetrics",
]
