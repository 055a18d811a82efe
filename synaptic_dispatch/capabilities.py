#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Capability Model
================
The closed set of capability tags shared by resources and emergencies, the
priority levels emergencies carry, and the fixed-size requirement vectors the
matcher works with.

A requirement vector is a numpy integer array with one slot per capability,
indexed in catalogue order. A resource supplies exactly one unit of its own
capability, so its supply vector is one-hot.
"""

from enum import Enum
from typing import Dict, Iterable, List, Mapping, Union

import numpy as np


class Capability(str, Enum):
    """Functional type of a resource, or a functional need of an emergency."""

    POLICE_CAR = "A"
    POLICE_VAN = "B"
    MOTORCYCLE = "C"
    FIRE_TRUCK = "D"
    AMBULANCE = "E"

    @property
    def slot(self) -> int:
        return CAPABILITY_ORDER.index(self)

    @property
    def label(self) -> str:
        return CAPABILITY_CATALOGUE[self]["label"]

    @classmethod
    def parse(cls, value: Union["Capability", str]) -> "Capability":
        """
        Resolve a capability from its wire letter, enum name or display label.

        Args:
            value: e.g. "E", "ambulance", "AMBULANCE", "Police car", "police_car"

        Returns:
            The matching Capability

        Raises:
            ValueError: if the tag is not part of the catalogue
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError(f"Capability tag must be a string, got {type(value).__name__}")

        token = _normalise(value)
        for capability in cls:
            if token in (_normalise(capability.value), _normalise(capability.name),
                         _normalise(capability.label)):
                return capability

        raise ValueError(f"Unknown capability tag: {value!r}")


class Priority(str, Enum):
    """Emergency priority level. Lower rank is served first."""

    IMMEDIATE = "Immediate"
    URGENT = "Urgent"
    NON_URGENT = "Non-Urgent"

    @property
    def rank(self) -> int:
        return PRIORITY_ORDER.index(self)

    @classmethod
    def parse(cls, value: Union["Priority", str, int]) -> "Priority":
        """Accepts wire names ("Non-Urgent", "NonUrgent", "non_urgent") or levels 0-2."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"Invalid priority: {value!r}")
        if isinstance(value, int):
            if 0 <= value < len(PRIORITY_ORDER):
                return PRIORITY_ORDER[value]
            raise ValueError(f"Priority level out of range: {value}")
        if isinstance(value, str):
            token = _normalise(value)
            for priority in cls:
                if token in (_normalise(priority.value), _normalise(priority.name)):
                    return priority
        raise ValueError(f"Unknown priority: {value!r}")


CAPABILITY_ORDER: List[Capability] = list(Capability)
PRIORITY_ORDER: List[Priority] = list(Priority)
NUM_CAPABILITIES = len(CAPABILITY_ORDER)
# Largest count accepted for a single capability
MAX_COUNT = int(np.iinfo(np.int32).max)

# Display metadata, owned by the map client; the core only needs the tags
CAPABILITY_CATALOGUE: Dict[Capability, Dict[str, str]] = {
    Capability.POLICE_CAR: {"label": "Police car", "icon": "police_car"},
    Capability.POLICE_VAN: {"label": "Police van", "icon": "police_van"},
    Capability.MOTORCYCLE: {"label": "Motorcycle", "icon": "motorcycle"},
    Capability.FIRE_TRUCK: {"label": "Fire truck", "icon": "fire_truck"},
    Capability.AMBULANCE: {"label": "Ambulance", "icon": "ambulance"},
}


def _normalise(token: str) -> str:
    return "".join(ch for ch in token.strip().lower() if ch.isalnum())


def empty_vector() -> np.ndarray:
    return np.zeros(NUM_CAPABILITIES, dtype=np.int64)


def requirement_vector(requirements: Union[Iterable, Mapping, np.ndarray]) -> np.ndarray:
    """
    Build a requirement vector.

    Args:
        requirements: One of
            - a count list with one entry per capability, e.g. [0, 0, 0, 0, 1]
            - a mapping of capability tag to count, e.g. {"E": 1, "A": 2}
            - a multiset of capability tags, e.g. ["A", "A", "E"]

    Returns:
        Integer array of length NUM_CAPABILITIES

    Raises:
        ValueError: on unknown tags, negative counts, a wrong length or an
            all-zero requirement
    """
    vector = empty_vector()

    if isinstance(requirements, Mapping):
        for tag, count in requirements.items():
            vector[Capability.parse(tag).slot] += _count(count)
    else:
        items = list(requirements.tolist() if isinstance(requirements, np.ndarray) else requirements)
        if items and all(isinstance(item, (int, np.integer)) and not isinstance(item, bool)
                         for item in items):
            if len(items) != NUM_CAPABILITIES:
                raise ValueError(f"Requirement vector must have {NUM_CAPABILITIES} entries, "
                                 f"got {len(items)}")
            for i, count in enumerate(items):
                vector[i] = _count(count)
        else:
            for tag in items:
                vector[Capability.parse(tag).slot] += 1

    if vector.sum() == 0:
        raise ValueError("Requirement vector must ask for at least one resource")

    return vector


def _count(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, np.integer)):
        raise ValueError(f"Requirement count must be an integer, got {value!r}")
    if value < 0:
        raise ValueError(f"Requirement count must be non-negative, got {value}")
    if value > MAX_COUNT:
        raise ValueError(f"Requirement count {value} is out of range")
    return int(value)


def supply_vector(capabilities: Iterable[Capability]) -> np.ndarray:
    """Aggregate capability counts of a group of resources."""
    vector = empty_vector()
    for capability in capabilities:
        vector[capability.slot] += 1
    return vector


def satisfies(supply: np.ndarray, requirement: np.ndarray) -> bool:
    """True if supply meets or exceeds requirement component-wise."""
    return bool(np.all(supply >= requirement))


def shortfall(supply: np.ndarray, requirement: np.ndarray) -> Dict[Capability, int]:
    missing = np.maximum(requirement - supply, 0)
    return {CAPABILITY_ORDER[i]: int(n) for i, n in enumerate(missing) if n > 0}


def describe(vector: np.ndarray) -> Dict[str, int]:
    """Readable {tag: count} view of a vector, zero entries dropped."""
    return {CAPABILITY_ORDER[i].value: int(n) for i, n in enumerate(vector) if n > 0}
