"""
Synaptic Dispatch: capability-constrained, priority-first assignment and
routing of emergency resources on a ticking clock.
"""

__version__ = "1.0.0"

from .capabilities import Capability, Priority, requirement_vector
from .errors import (ConcurrentCycleConflict, DispatchError, MalformedSnapshot, NoPathFound,
                     ProviderUnavailable, RegistryCorrupted, RouteTimeout, RoutingError,
                     UnknownEntity, UnsatisfiableRequirement)
from .matcher import Matcher, MatcherConfig, MatchResult
from .models import Assignment, Emergency, EmergencyStatus, Location, Resource, ResourceStatus, Route
from .registry import FleetRegistry
from .routing import (MapboxDirectionsProvider, RoadNetworkProvider, Router, RoutingProvider,
                      StraightLineProvider)
from .scheduler import DispatchScheduler, LogicalClock, MonotonicClock, build_scheduler
