#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Core data model: locations, resources, emergencies, routes and assignments.

Times on the scheduling clock are integer milliseconds. Route ETAs are seconds,
distances are meters.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from shapely.geometry import LineString, Point

from .capabilities import Capability, Priority, describe, supply_vector

# Radius of the Earth in meters
EARTH_RADIUS_M = 6371000


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the haversine distance between two points in meters.

    Args:
        lat1, lon1: First point coordinates
        lat2, lon2: Second point coordinates

    Returns:
        Distance in meters
    """
    lat1_rad = np.radians(lat1)
    lon1_rad = np.radians(lon1)
    lat2_rad = np.radians(lat2)
    lon2_rad = np.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = np.sin(dlat / 2) ** 2 + np.cos(lat1_rad) * np.cos(lat2_rad) * np.sin(dlon / 2) ** 2
    c = 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def id_sort_key(value: str) -> Tuple[int, Any]:
    """Numeric ids sort numerically and before any non-numeric id."""
    try:
        return (0, int(value), value)
    except ValueError:
        return (1, 0, value)


@dataclass(frozen=True)
class Location:
    lat: float
    lon: float

    def distance_to(self, other: "Location") -> float:
        return haversine_m(self.lat, self.lon, other.lat, other.lon)

    def rounded(self, precision: int) -> Tuple[float, float]:
        return (round(self.lat, precision), round(self.lon, precision))

    def to_lonlat(self) -> List[float]:
        return [self.lon, self.lat]


class ResourceStatus(str, Enum):
    AVAILABLE = "available"
    EN_ROUTE = "en_route"
    BUSY = "busy"
    OUT_OF_SERVICE = "out_of_service"


class EmergencyStatus(str, Enum):
    SCHEDULED = "scheduled"
    PENDING = "pending"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


ACTIVE_EMERGENCY_STATES = (EmergencyStatus.PENDING, EmergencyStatus.ASSIGNED)


@dataclass
class Resource:
    """A vehicle in the fleet. Never destroyed during a run."""

    id: str
    location: Location
    capability: Capability
    status: ResourceStatus = ResourceStatus.AVAILABLE
    emergency_id: Optional[str] = None
    dispatched_at: Optional[int] = None  # clock ms when its current route started
    arrived_at: Optional[int] = None

    @property
    def supply(self) -> np.ndarray:
        return supply_vector([self.capability])

    def release(self) -> None:
        self.status = ResourceStatus.AVAILABLE
        self.emergency_id = None
        self.dispatched_at = None
        self.arrived_at = None

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "lat": self.location.lat,
            "lon": self.location.lon,
            "capability": self.capability.value,
            "status": self.status.value,
            "emergency_id": self.emergency_id,
        }


@dataclass
class Emergency:
    id: str
    location: Location
    requirements: np.ndarray
    priority: Priority
    arrival_offset: int
    status: EmergencyStatus = EmergencyStatus.SCHEDULED
    admitted_at: Optional[int] = None
    on_scene_at: Optional[int] = None
    closed_at: Optional[int] = None
    unsatisfiable: bool = False

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_EMERGENCY_STATES

    def sort_key(self) -> Tuple:
        # Immediate first, then earliest arrival, then id for a total order
        return (self.priority.rank, self.arrival_offset, id_sort_key(self.id))

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "lat": self.location.lat,
            "lon": self.location.lon,
            "priority": self.priority.value,
            "requirements": describe(self.requirements),
            "offset": self.arrival_offset,
            "status": self.status.value,
            "unsatisfiable": self.unsatisfiable,
        }


@dataclass
class Route:
    origin: Location
    destination: Location
    geometry: List[Tuple[float, float]]  # (lat, lon) waypoints
    distance_m: float
    eta_s: float
    provider: str = ""

    @property
    def route_id(self) -> str:
        return (f"{self.origin.lat}-{self.origin.lon}:"
                f"{self.destination.lat}-{self.destination.lon}")

    def to_geojson(self) -> Dict:
        return {
            "type": "LineString",
            "coordinates": [[lon, lat] for lat, lon in self.geometry],
        }

    def position_at(self, fraction: float) -> Location:
        """Point reached after travelling `fraction` (0-1) of the geometry."""
        fraction = min(1.0, max(0.0, fraction))
        if len(self.geometry) < 2:
            return self.destination if fraction >= 1.0 else self.origin

        # Planar interpolation over (lon, lat) is close enough at city scale
        line = LineString([(lon, lat) for lat, lon in self.geometry])
        if line.length == 0:
            return self.origin
        point: Point = line.interpolate(fraction, normalized=True)
        return Location(lat=point.y, lon=point.x)

    def with_endpoints(self, origin: Location, destination: Location) -> "Route":
        """Same path re-labelled for endpoints that share its cache key."""
        return Route(origin, destination, list(self.geometry), self.distance_m,
                     self.eta_s, self.provider)


@dataclass
class Assignment:
    """Resources bound to one emergency, with a route per resource once known."""

    emergency_id: str
    resource_ids: Tuple[str, ...]
    routes: Dict[str, Route] = field(default_factory=dict)
    route_failures: Dict[str, int] = field(default_factory=dict)
    created_at: int = 0

    def unrouted(self) -> List[str]:
        return [rid for rid in self.resource_ids if rid not in self.routes]

    @property
    def fully_routed(self) -> bool:
        return not self.unrouted()
