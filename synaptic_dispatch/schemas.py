#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Wire models for the ingestion boundary.

The map client posts `{cars: [...], emergencies: [...]}` where cars carry
`id, lat, lon, capability` and emergencies carry `id, lat, lon, priority,
requirements` (and optionally `offset`). Validation happens here, before the
registry is touched, so a malformed snapshot never mutates state.
"""

from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import (AliasChoices, BaseModel, Field, ValidationError, field_validator,
                      model_validator)

from .capabilities import Capability, Priority, requirement_vector
from .errors import MalformedSnapshot


def _coerce_id(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValueError(f"id must be a string or integer, got {value!r}")
    value = str(value).strip()
    if not value:
        raise ValueError("id must not be empty")
    return value


class ResourcePayload(BaseModel):
    id: str
    lat: float = Field(ge=-90, le=90, validation_alias=AliasChoices("lat", "latitude"))
    lon: float = Field(ge=-180, le=180,
                       validation_alias=AliasChoices("lon", "lng", "long", "longitude"))
    capability: Capability

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value):
        return _coerce_id(value)

    @field_validator("capability", mode="before")
    @classmethod
    def _capability(cls, value):
        return Capability.parse(value)


class EmergencyPayload(BaseModel):
    id: str
    lat: float = Field(ge=-90, le=90, validation_alias=AliasChoices("lat", "latitude"))
    lon: float = Field(ge=-180, le=180,
                       validation_alias=AliasChoices("lon", "lng", "long", "longitude"))
    priority: Priority
    requirements: Tuple[int, ...]
    offset: Optional[int] = Field(
        None, ge=0, validation_alias=AliasChoices("offset", "arrivalOffset", "arrival_offset"))

    @model_validator(mode="before")
    @classmethod
    def _requirements_from_capability(cls, data):
        # Older clients only send the capability multiset
        if isinstance(data, dict) and "requirements" not in data and "capability" in data:
            data = dict(data)
            data["requirements"] = data["capability"]
        return data

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value):
        return _coerce_id(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _priority(cls, value):
        return Priority.parse(value)

    @field_validator("requirements", mode="before")
    @classmethod
    def _requirements(cls, value):
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple, dict)):
            raise ValueError(f"requirements must be a count list, a tag list or a mapping, "
                             f"got {type(value).__name__}")
        return tuple(int(n) for n in requirement_vector(value))


class SnapshotPayload(BaseModel):
    resources: List[ResourcePayload] = Field(
        default_factory=list, validation_alias=AliasChoices("resources", "cars", "fleet"))
    emergencies: List[EmergencyPayload] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_ids(self):
        for name, items in (("resource", self.resources), ("emergency", self.emergencies)):
            seen = set()
            for item in items:
                if item.id in seen:
                    raise ValueError(f"Duplicate {name} id {item.id!r} in snapshot")
                seen.add(item.id)
        return self


def parse_snapshot(data: Union[SnapshotPayload, Dict[str, Any]]) -> SnapshotPayload:
    """
    Validate a raw snapshot.

    Raises:
        MalformedSnapshot: carrying pydantic's error list
    """
    if isinstance(data, SnapshotPayload):
        return data
    if not isinstance(data, dict):
        raise MalformedSnapshot(f"Snapshot must be a JSON object, got {type(data).__name__}")
    try:
        return SnapshotPayload.model_validate(data)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        raise MalformedSnapshot(f"Malformed snapshot: {e.error_count()} error(s)",
                                errors=errors) from e


# --- Response payload ---

class RoutePayload(BaseModel):
    id: str
    geometry: Dict[str, Any]
    eta: float
    distance: float


class AssignmentPayload(BaseModel):
    emergency_id: str = Field(serialization_alias="emergencyId")
    resource_id: str = Field(serialization_alias="resourceId")
    status: str
    route: Optional[RoutePayload] = None
    progress: float = 0.0
    position: Optional[List[float]] = None


class OptimiseResponse(BaseModel):
    time: int
    cycle: int
    assignments: List[AssignmentPayload] = Field(default_factory=list)
    unsatisfiable: List[str] = Field(default_factory=list)
    pending: List[str] = Field(default_factory=list)
    events: List[Dict[str, Any]] = Field(default_factory=list)
