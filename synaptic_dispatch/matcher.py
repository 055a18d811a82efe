#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Matcher
=======
Greedy, priority-first assignment of available resources to pending
emergencies.

Emergencies are taken strictly in priority order (Immediate, Urgent,
Non-Urgent; earlier arrival first within a level). Each one gets the nearest
feasible set of resources still in the pool, and those resources leave the
pool for the rest of the pass. There is no backtracking across emergencies.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from .capabilities import CAPABILITY_ORDER, satisfies, shortfall, supply_vector
from .errors import UnsatisfiableRequirement
from .models import Assignment, Emergency, Location, Resource, id_sort_key

logger = logging.getLogger("DispatchMatcher")

DISTANCE_METRICS = ("haversine", "euclidean")


def _euclidean_degrees(a: Location, b: Location) -> float:
    return math.hypot(a.lat - b.lat, a.lon - b.lon)


def _haversine(a: Location, b: Location) -> float:
    return a.distance_to(b)


@dataclass
class MatcherConfig:
    """
    Tunables for the assignment rule.

    Attributes:
        distance_metric: "haversine" (meters) or "euclidean" (degrees); only
            used to rank candidates
        prefer_single_resource: Dispatch one resource when a single one covers
            the whole requirement, before trying combinations
        max_distance_km: Ignore resources further than this from the scene.
            The radius only limits who can be dispatched now: an emergency
            the fleet could cover, but with nobody inside the radius, is
            deferred rather than flagged unsatisfiable, and is matched once
            a resource comes within range
    """

    distance_metric: str = "haversine"
    prefer_single_resource: bool = True
    max_distance_km: Optional[float] = None

    def __post_init__(self):
        if self.distance_metric not in DISTANCE_METRICS:
            raise ValueError(f"distance_metric must be one of {DISTANCE_METRICS}, "
                             f"got {self.distance_metric!r}")
        if self.max_distance_km is not None and self.max_distance_km <= 0:
            raise ValueError("max_distance_km must be positive")


@dataclass
class MatchResult:
    assignments: List[Assignment] = field(default_factory=list)
    unsatisfiable: List[UnsatisfiableRequirement] = field(default_factory=list)
    deferred: List[str] = field(default_factory=list)  # feasible, but not with what is free now

    @property
    def unsatisfiable_ids(self) -> List[str]:
        return [report.emergency_id for report in self.unsatisfiable]

    def assigned_resource_ids(self) -> List[str]:
        return [rid for assignment in self.assignments for rid in assignment.resource_ids]


class Matcher:
    """Computes assignments for one matching pass. Holds no state between passes."""

    def __init__(self, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()
        self._distance: Callable[[Location, Location], float] = (
            _haversine if self.config.distance_metric == "haversine" else _euclidean_degrees)

    def _within_radius(self, resource: Resource, emergency: Emergency) -> bool:
        if self.config.max_distance_km is None:
            return True
        return resource.location.distance_to(emergency.location) <= self.config.max_distance_km * 1000

    def _ranked_candidates(self, emergency: Emergency, pool: Dict[str, Resource]) -> List[Resource]:
        """Useful resources for this emergency, nearest first, ties broken by id."""
        needed = {CAPABILITY_ORDER[i] for i, n in enumerate(emergency.requirements) if n > 0}
        candidates = [r for r in pool.values()
                      if r.capability in needed and self._within_radius(r, emergency)]
        return sorted(candidates, key=lambda r: (self._distance(r.location, emergency.location),
                                                 id_sort_key(r.id)))

    def _select(self, emergency: Emergency, candidates: List[Resource]) -> Optional[List[Resource]]:
        requirement = emergency.requirements

        if self.config.prefer_single_resource:
            for resource in candidates:
                if satisfies(resource.supply, requirement):
                    return [resource]

        # Each resource supplies one unit of one capability, so taking the
        # nearest resource for every outstanding unit is a minimal cover
        outstanding = requirement.copy()
        chosen: List[Resource] = []
        for resource in candidates:
            slot = resource.capability.slot
            if outstanding[slot] > 0:
                chosen.append(resource)
                outstanding[slot] -= 1
                if not outstanding.any():
                    return chosen
        return None

    def match(self, pending: Sequence[Emergency], available: Sequence[Resource],
              fleet_supply: Optional[np.ndarray] = None) -> MatchResult:
        """
        Run one matching pass.

        Args:
            pending: Pending emergencies (any order; re-sorted here)
            available: Resources free to dispatch
            fleet_supply: Capability counts of the whole in-service fleet, used
                to tell "not now" apart from "never". Defaults to the supply
                of `available`.

        Returns:
            MatchResult with assignments in the order they were made
        """
        if fleet_supply is None:
            fleet_supply = supply_vector(r.capability for r in available)

        pool: Dict[str, Resource] = {r.id: r for r in available}
        result = MatchResult()

        for emergency in sorted(pending, key=Emergency.sort_key):
            if not satisfies(fleet_supply, emergency.requirements):
                missing = shortfall(fleet_supply, emergency.requirements)
                result.unsatisfiable.append(UnsatisfiableRequirement(
                    emergency.id, {cap.value: n for cap, n in missing.items()}))
                continue

            if not pool:
                result.deferred.append(emergency.id)
                continue

            chosen = self._select(emergency, self._ranked_candidates(emergency, pool))
            if chosen is None:
                result.deferred.append(emergency.id)
                logger.debug(f"Emergency {emergency.id} deferred: not enough free resources")
                continue

            for resource in chosen:
                del pool[resource.id]
            result.assignments.append(Assignment(
                emergency_id=emergency.id,
                resource_ids=tuple(r.id for r in chosen),
            ))
            logger.debug(f"Matched emergency {emergency.id} ({emergency.priority.value}) "
                         f"with {[r.id for r in chosen]}")

        return result
