"""Shared fixtures and routing test doubles."""

import asyncio
from typing import Dict, List, Optional

import pytest

from synaptic_dispatch.capabilities import Capability, Priority, requirement_vector
from synaptic_dispatch.config import SchedulerConfig
from synaptic_dispatch.errors import NoPathFound, ProviderUnavailable
from synaptic_dispatch.matcher import Matcher
from synaptic_dispatch.models import Emergency, EmergencyStatus, Location, Resource, Route
from synaptic_dispatch.registry import FleetRegistry
from synaptic_dispatch.routing import Router, RoutingProvider, StraightLineProvider
from synaptic_dispatch.scheduler import DispatchScheduler, LogicalClock


def make_resource(rid, lat, lon, capability="A") -> Resource:
    return Resource(id=str(rid), location=Location(lat, lon), capability=Capability.parse(capability))


def make_emergency(eid, lat, lon, requirements, priority="Immediate", offset=0,
                   status=EmergencyStatus.PENDING) -> Emergency:
    return Emergency(
        id=str(eid),
        location=Location(lat, lon),
        requirements=requirement_vector(requirements),
        priority=Priority.parse(priority),
        arrival_offset=offset,
        status=status,
    )


def resource_dict(rid, lat, lon, capability="A") -> Dict:
    return {"id": rid, "lat": lat, "lon": lon, "capability": capability}


def emergency_dict(eid, lat, lon, requirements, priority="Immediate", offset=0) -> Dict:
    data = {"id": eid, "lat": lat, "lon": lon, "priority": priority, "requirements": requirements}
    if offset is not None:
        data["offset"] = offset
    return data


class CountingProvider(StraightLineProvider):
    """Straight-line provider that records every call."""

    name = "counting"

    def __init__(self, speed_kmh: float = 60.0):
        super().__init__(speed_kmh)
        self.calls: List = []

    async def fetch_route(self, origin: Location, destination: Location) -> Route:
        self.calls.append((origin, destination))
        return await super().fetch_route(origin, destination)


class FailingProvider(RoutingProvider):
    """Fails the first `failures` calls with `error`, then routes in a straight line."""

    name = "failing"

    def __init__(self, failures: Optional[int] = None, error: Exception = None):
        self.failures = failures
        self.error = error or ProviderUnavailable("provider down")
        self.calls = 0
        self._fallback = StraightLineProvider()

    async def fetch_route(self, origin: Location, destination: Location) -> Route:
        self.calls += 1
        if self.failures is None or self.calls <= self.failures:
            raise self.error
        return await self._fallback.fetch_route(origin, destination)


class SlowProvider(StraightLineProvider):
    """Sleeps before answering; used for timeouts and in-flight cycles."""

    name = "slow"

    def __init__(self, delay_s: float):
        super().__init__()
        self.delay_s = delay_s
        self.started = 0
        self.finished = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def fetch_route(self, origin: Location, destination: Location) -> Route:
        self.started += 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay_s)
        finally:
            self.in_flight -= 1
        self.finished += 1
        return await super().fetch_route(origin, destination)


class NoPathProvider(RoutingProvider):
    name = "no_path"

    async def fetch_route(self, origin, destination):
        raise NoPathFound("disconnected")


def make_scheduler(provider: Optional[RoutingProvider] = None, timeout_s: float = 5.0,
                   service_time_s: Optional[float] = None,
                   pending_timeout_s: Optional[float] = None,
                   max_route_attempts: int = 3) -> DispatchScheduler:
    config = SchedulerConfig(clock="logical", service_time_s=service_time_s,
                             pending_timeout_s=pending_timeout_s)
    return DispatchScheduler(
        registry=FleetRegistry(),
        matcher=Matcher(),
        router=Router(provider or CountingProvider(), timeout_s=timeout_s),
        clock=LogicalClock(),
        config=config,
        max_route_attempts=max_route_attempts,
    )


@pytest.fixture
def registry():
    return FleetRegistry()


@pytest.fixture
def perth_snapshot():
    """Police car near the scene, ambulance slightly further away."""
    return {
        "cars": [
            resource_dict(1, -32.0, 116.0, "A"),
            resource_dict(2, -32.01, 115.9, "E"),
        ],
        "emergencies": [
            emergency_dict(10, -32.0, 115.9, [0, 0, 0, 0, 1], "Immediate", 0),
        ],
    }
