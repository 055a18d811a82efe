#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Domain events emitted by the registry and drained by the scheduler."""

from dataclasses import asdict, dataclass
from typing import Dict, Tuple


@dataclass(frozen=True)
class DomainEvent:
    at: int

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["type"] = self.kind
        return data


@dataclass(frozen=True)
class EmergencyAdmitted(DomainEvent):
    emergency_id: str


@dataclass(frozen=True)
class ResourceFreed(DomainEvent):
    resource_id: str
    reason: str


@dataclass(frozen=True)
class EmergencyResolved(DomainEvent):
    emergency_id: str
    outcome: str  # "resolved", "cancelled" or "expired"


@dataclass(frozen=True)
class AssignmentRevoked(DomainEvent):
    emergency_id: str
    resource_ids: Tuple[str, ...]
    reason: str
