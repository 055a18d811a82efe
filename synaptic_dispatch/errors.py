#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""Exception taxonomy for the dispatch core."""

from typing import Any, Dict, List, Optional


class DispatchError(Exception):
    """Base class for every error raised by synaptic_dispatch."""


class MalformedSnapshot(DispatchError):
    """A snapshot failed validation. The registry was not touched."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class UnsatisfiableRequirement(DispatchError):
    """
    No combination of resources in the whole fleet can meet an emergency's
    requirement vector. Reported to the operator, never retried blindly.
    """

    def __init__(self, emergency_id: str, missing: Dict[str, int]):
        self.emergency_id = emergency_id
        self.missing = missing
        needs = ", ".join(f"{count}x{tag}" for tag, count in sorted(missing.items()))
        super().__init__(f"Emergency {emergency_id} is unsatisfiable by the fleet (short {needs})")


class RoutingError(DispatchError):
    """A routing provider could not produce a route."""


class ProviderUnavailable(RoutingError):
    """Provider unreachable, rate limited or answering with a server error."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class RouteTimeout(ProviderUnavailable):
    """A provider call exceeded the per-call timeout."""


class NoPathFound(RoutingError):
    """The provider answered, but there is no path between the endpoints."""


class ConcurrentCycleConflict(DispatchError):
    """A scheduling cycle was started while another one was in flight."""


class RegistryCorrupted(DispatchError):
    """
    Registry invariants no longer hold (e.g. a resource held by two
    emergencies). Indicates a logic bug; the process should be restarted.
    """


class UnknownEntity(DispatchError, KeyError):
    """Operator action on an id the registry does not know."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "unknown entity"


class ConfigError(DispatchError):
    """Configuration file could not be read or parsed."""
