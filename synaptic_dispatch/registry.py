#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Fleet & Incident Registry
=========================
Owns the current resource states, the known emergencies and the live
assignments binding them. The scheduler is the single writer: every mutation
happens inside a scheduling cycle or under the scheduler's cycle lock.
"""

import logging
from typing import Callable, Dict, List, Optional, Sequence, Set, Union

import numpy as np

from .capabilities import describe, empty_vector, requirement_vector, satisfies, supply_vector
from .errors import MalformedSnapshot, RegistryCorrupted, UnknownEntity, UnsatisfiableRequirement
from .events import (AssignmentRevoked, DomainEvent, EmergencyAdmitted, EmergencyResolved,
                     ResourceFreed)
from .models import (Assignment, Emergency, EmergencyStatus, Location, Resource,
                     ResourceStatus, Route, id_sort_key)
from .schemas import SnapshotPayload, parse_snapshot

logger = logging.getLogger("FleetRegistry")

# Position updates closer than this do not count as a move
DEFAULT_MOVE_TOLERANCE_M = 50.0


class FleetRegistry:
    """
    Holds the fleet, the emergencies and the assignments between them.

    Emits EmergencyAdmitted, ResourceFreed, EmergencyResolved and
    AssignmentRevoked events, queued until drained and pushed to listeners.
    """

    def __init__(self, move_tolerance_m: float = DEFAULT_MOVE_TOLERANCE_M):
        """
        Initialize an empty registry.

        Args:
            move_tolerance_m: Distance a resource must move before its routes
                are considered stale
        """
        self.move_tolerance_m = move_tolerance_m
        self.now = 0

        self.resources: Dict[str, Resource] = {}
        self.emergencies: Dict[str, Emergency] = {}
        self.assignments: Dict[str, Assignment] = {}  # keyed by emergency id

        self._events: List[DomainEvent] = []
        self._listeners: List[Callable[[DomainEvent], None]] = []
        self._moved: Dict[str, Location] = {}  # resource id -> location before the move
        self._reported: Dict[str, Location] = {}  # last position each resource was reported at

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, listener: Callable[[DomainEvent], None]) -> None:
        self._listeners.append(listener)

    def _emit(self, event: DomainEvent) -> None:
        self._events.append(event)
        for listener in self._listeners:
            listener(event)

    def drain_events(self) -> List[DomainEvent]:
        events, self._events = self._events, []
        return events

    def drain_moved(self) -> Dict[str, Location]:
        """Resources that moved beyond tolerance since the last drain, with their old location."""
        moved, self._moved = self._moved, {}
        return moved

    # ------------------------------------------------------------------
    # Ingestion and admission
    # ------------------------------------------------------------------

    def ingest_snapshot(self, snapshot: Union[SnapshotPayload, Dict]) -> Dict[str, int]:
        """
        Merge a client snapshot into the registry.

        New resources are registered as available, known resources get a
        position update when the reported position changed since the last
        snapshot (a resource parked at a scene is not pulled back to a stale
        client position). New emergencies are scheduled for admission at their
        offset (or now if they carry none); known emergencies are left alone
        since the client keeps re-sending every emergency it has seen.

        Args:
            snapshot: Raw snapshot dict or an already validated SnapshotPayload

        Returns:
            Counts of what changed

        Raises:
            MalformedSnapshot: if validation fails; nothing is applied
        """
        new_resources, position_updates, new_emergencies = self._stage(parse_snapshot(snapshot))

        for resource in new_resources:
            self.resources[resource.id] = resource
            self._reported[resource.id] = resource.location
            logger.debug(f"Registered {resource.capability.label} {resource.id} at "
                         f"{resource.location.lat},{resource.location.lon}")

        moved = 0
        for resource, location in position_updates:
            if resource.location.distance_to(location) > self.move_tolerance_m:
                self._moved.setdefault(resource.id, resource.location)
                moved += 1
            resource.location = location
            self._reported[resource.id] = location

        for emergency in new_emergencies:
            self.emergencies[emergency.id] = emergency
            logger.debug(f"Scheduled emergency {emergency.id} ({emergency.priority.value}) "
                         f"for t={emergency.arrival_offset}ms")

        counts = {
            "resources_added": len(new_resources),
            "resources_moved": moved,
            "emergencies_added": len(new_emergencies),
        }
        logger.info(f"Ingested snapshot: {counts}")
        return counts

    def validate_snapshot(self, snapshot: Union[SnapshotPayload, Dict]) -> SnapshotPayload:
        """
        Check a snapshot against the current state without applying it.

        Raises:
            MalformedSnapshot: on schema errors or a conflicting capability
        """
        snapshot = parse_snapshot(snapshot)
        self._stage(snapshot)
        return snapshot

    def _stage(self, snapshot: SnapshotPayload):
        # Nothing is written here so a rejection leaves the registry untouched
        new_resources: List[Resource] = []
        position_updates: List[tuple] = []
        for item in snapshot.resources:
            location = Location(item.lat, item.lon)
            existing = self.resources.get(item.id)
            if existing is None:
                new_resources.append(Resource(id=item.id, location=location,
                                              capability=item.capability))
            elif existing.capability is not item.capability:
                raise MalformedSnapshot(
                    f"Resource {item.id} changed capability from "
                    f"{existing.capability.value} to {item.capability.value}")
            elif self._reported.get(item.id) != location:
                position_updates.append((existing, location))

        new_emergencies: List[Emergency] = []
        for item in snapshot.emergencies:
            if item.id in self.emergencies:
                continue
            new_emergencies.append(Emergency(
                id=item.id,
                location=Location(item.lat, item.lon),
                requirements=requirement_vector(list(item.requirements)),
                priority=item.priority,
                arrival_offset=item.offset if item.offset is not None else self.now,
            ))

        return new_resources, position_updates, new_emergencies

    def tick(self, now: int) -> List[Emergency]:
        """
        Advance the registry clock and admit every scheduled emergency whose
        arrival offset has elapsed.

        Args:
            now: Clock time in ms, never earlier than the previous tick

        Returns:
            The emergencies admitted by this tick, in priority order
        """
        if now < self.now:
            raise ValueError(f"Clock moved backwards: {now} < {self.now}")
        self.now = now

        due = sorted(
            (e for e in self.emergencies.values()
             if e.status is EmergencyStatus.SCHEDULED and e.arrival_offset <= now),
            key=Emergency.sort_key,
        )
        for emergency in due:
            emergency.status = EmergencyStatus.PENDING
            emergency.admitted_at = now
            self._emit(EmergencyAdmitted(at=now, emergency_id=emergency.id))
            logger.info(f"Admitted emergency {emergency.id} ({emergency.priority.value}) "
                        f"needing {describe(emergency.requirements)}")
        return due

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def pending_emergencies(self) -> List[Emergency]:
        """Pending emergencies, Immediate first and earliest arrival first."""
        return sorted((e for e in self.emergencies.values()
                       if e.status is EmergencyStatus.PENDING), key=Emergency.sort_key)

    def available_resources(self) -> List[Resource]:
        return sorted((r for r in self.resources.values()
                       if r.status is ResourceStatus.AVAILABLE), key=lambda r: id_sort_key(r.id))

    def fleet_supply(self) -> np.ndarray:
        """Capability counts of every resource still in service, busy or not."""
        return supply_vector(r.capability for r in self.resources.values()
                             if r.status is not ResourceStatus.OUT_OF_SERVICE)

    def get_resource(self, resource_id: str) -> Resource:
        try:
            return self.resources[resource_id]
        except KeyError:
            raise UnknownEntity(f"Unknown resource {resource_id}") from None

    def get_emergency(self, emergency_id: str) -> Emergency:
        try:
            return self.emergencies[emergency_id]
        except KeyError:
            raise UnknownEntity(f"Unknown emergency {emergency_id}") from None

    # ------------------------------------------------------------------
    # Assignment lifecycle
    # ------------------------------------------------------------------

    def commit_assignment(self, assignment: Assignment) -> None:
        """
        Bind an assignment produced by the matcher. Resources go en route and
        the emergency becomes assigned.

        Raises:
            RegistryCorrupted: if the assignment would break an invariant
        """
        emergency = self.get_emergency(assignment.emergency_id)
        if emergency.status is not EmergencyStatus.PENDING:
            raise RegistryCorrupted(f"Emergency {emergency.id} is {emergency.status.value}, "
                                    f"cannot be assigned")
        if not assignment.resource_ids:
            raise RegistryCorrupted(f"Empty assignment for emergency {emergency.id}")

        resources = [self.get_resource(rid) for rid in assignment.resource_ids]
        for resource in resources:
            if resource.status is not ResourceStatus.AVAILABLE or resource.emergency_id:
                raise RegistryCorrupted(
                    f"Resource {resource.id} is {resource.status.value} "
                    f"(held by {resource.emergency_id}), cannot join emergency {emergency.id}")

        if not satisfies(supply_vector(r.capability for r in resources), emergency.requirements):
            raise RegistryCorrupted(f"Assignment for {emergency.id} does not cover "
                                    f"{describe(emergency.requirements)}")

        for resource in resources:
            resource.status = ResourceStatus.EN_ROUTE
            resource.emergency_id = emergency.id
            resource.dispatched_at = None
            resource.arrived_at = None

        emergency.status = EmergencyStatus.ASSIGNED
        emergency.unsatisfiable = False
        assignment.created_at = self.now
        self.assignments[emergency.id] = assignment
        logger.info(f"Assigned {', '.join(assignment.resource_ids)} to emergency {emergency.id}")

    def record_route(self, emergency_id: str, resource_id: str, route: Route) -> None:
        """Attach a computed route; the resource's ETA countdown starts now."""
        assignment = self.assignments[emergency_id]
        resource = self.resources[resource_id]
        assignment.routes[resource_id] = route
        assignment.route_failures.pop(resource_id, None)
        resource.dispatched_at = self.now
        logger.debug(f"Route for {resource_id} -> {emergency_id}: "
                     f"{route.distance_m:.0f}m, ETA {route.eta_s:.1f}s")

    def record_route_failure(self, emergency_id: str, resource_id: str) -> int:
        """Count a failed routing attempt. Returns the consecutive failure count."""
        assignment = self.assignments[emergency_id]
        failures = assignment.route_failures.get(resource_id, 0) + 1
        assignment.route_failures[resource_id] = failures
        return failures

    def drop_route(self, emergency_id: str, resource_id: str) -> None:
        """Forget a route so the pair is routed again (e.g. after the resource moved)."""
        assignment = self.assignments.get(emergency_id)
        if assignment and assignment.routes.pop(resource_id, None) is not None:
            self.resources[resource_id].dispatched_at = None

    def revoke_assignment(self, emergency_id: str, reason: str) -> Assignment:
        """
        Undo an assignment: its resources become available again and the
        emergency goes back to pending.
        """
        assignment = self.assignments.pop(emergency_id, None)
        if assignment is None:
            raise UnknownEntity(f"No assignment for emergency {emergency_id}")

        for rid in assignment.resource_ids:
            resource = self.resources[rid]
            if resource.emergency_id == emergency_id:
                if resource.status is ResourceStatus.OUT_OF_SERVICE:
                    resource.emergency_id = None
                    continue
                resource.release()
                self._emit(ResourceFreed(at=self.now, resource_id=rid, reason=reason))

        emergency = self.emergencies[emergency_id]
        if emergency.status is EmergencyStatus.ASSIGNED:
            emergency.status = EmergencyStatus.PENDING
            emergency.on_scene_at = None

        self._emit(AssignmentRevoked(at=self.now, emergency_id=emergency_id,
                                     resource_ids=assignment.resource_ids, reason=reason))
        logger.warning(f"Revoked assignment for emergency {emergency_id} ({reason})")
        return assignment

    def flag_unsatisfiable(self, reports: Sequence[UnsatisfiableRequirement]) -> None:
        """Mark exactly the reported emergencies as unsatisfiable."""
        flagged: Set[str] = {report.emergency_id for report in reports}
        for report in reports:
            emergency = self.emergencies.get(report.emergency_id)
            if emergency is not None and not emergency.unsatisfiable:
                emergency.unsatisfiable = True
                logger.warning(str(report))
        for emergency in self.emergencies.values():
            if emergency.unsatisfiable and emergency.id not in flagged:
                emergency.unsatisfiable = False

    # ------------------------------------------------------------------
    # Service progression
    # ------------------------------------------------------------------

    def advance_service(self, service_time_ms: Optional[int]) -> List[str]:
        """
        Move en-route resources whose ETA has elapsed to the scene, and
        resolve emergencies that have been on scene for the service time.

        Args:
            service_time_ms: Time on scene before resolution, None to keep
                emergencies open until resolved by the operator

        Returns:
            Ids of the emergencies resolved
        """
        now = self.now
        serviced = []

        for emergency_id, assignment in self.assignments.items():
            emergency = self.emergencies[emergency_id]
            for rid, route in assignment.routes.items():
                resource = self.resources[rid]
                if (resource.status is ResourceStatus.EN_ROUTE
                        and resource.dispatched_at is not None
                        and now >= resource.dispatched_at + route.eta_s * 1000):
                    resource.status = ResourceStatus.BUSY
                    resource.arrived_at = now
                    resource.location = emergency.location
                    logger.info(f"Resource {rid} arrived at emergency {emergency_id}")

            if emergency.on_scene_at is None and all(
                    self.resources[rid].status is ResourceStatus.BUSY
                    for rid in assignment.resource_ids):
                emergency.on_scene_at = now

            if (service_time_ms is not None and emergency.on_scene_at is not None
                    and now >= emergency.on_scene_at + service_time_ms):
                serviced.append(emergency_id)

        for emergency_id in serviced:
            self.resolve_emergency(emergency_id)
        return serviced

    def expire_stale(self, timeout_ms: Optional[int]) -> List[str]:
        """Expire emergencies left pending for longer than timeout_ms."""
        if timeout_ms is None:
            return []

        expired = [e for e in self.emergencies.values()
                   if e.status is EmergencyStatus.PENDING
                   and e.admitted_at is not None
                   and self.now - e.admitted_at >= timeout_ms]
        for emergency in expired:
            self._close(emergency, EmergencyStatus.EXPIRED)
            logger.warning(f"Emergency {emergency.id} expired after {timeout_ms}ms unserved")
        return [e.id for e in expired]

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def resolve_emergency(self, emergency_id: str) -> Emergency:
        """Close an active emergency as serviced and free its resources."""
        emergency = self.get_emergency(emergency_id)
        if not emergency.is_active:
            raise UnknownEntity(f"Emergency {emergency_id} is not active "
                                f"({emergency.status.value})")
        self._close(emergency, EmergencyStatus.RESOLVED)
        logger.info(f"Resolved emergency {emergency_id}")
        return emergency

    def cancel_emergency(self, emergency_id: str) -> Emergency:
        """Cancel a scheduled or active emergency."""
        emergency = self.get_emergency(emergency_id)
        if not (emergency.is_active or emergency.status is EmergencyStatus.SCHEDULED):
            raise UnknownEntity(f"Emergency {emergency_id} is already closed "
                                f"({emergency.status.value})")
        self._close(emergency, EmergencyStatus.CANCELLED)
        logger.info(f"Cancelled emergency {emergency_id}")
        return emergency

    def retire_resource(self, resource_id: str) -> Resource:
        """Take a resource permanently out of service, revoking its assignment."""
        resource = self.get_resource(resource_id)
        if resource.status is ResourceStatus.OUT_OF_SERVICE:
            return resource

        emergency_id = resource.emergency_id
        resource.status = ResourceStatus.OUT_OF_SERVICE
        if emergency_id is not None and emergency_id in self.assignments:
            self.revoke_assignment(emergency_id, reason=f"resource {resource_id} retired")
        resource.emergency_id = None
        resource.dispatched_at = None
        logger.info(f"Resource {resource_id} is out of service")
        return resource

    def _close(self, emergency: Emergency, outcome: EmergencyStatus) -> None:
        assignment = self.assignments.pop(emergency.id, None)
        if assignment is not None:
            for rid in assignment.resource_ids:
                resource = self.resources[rid]
                if resource.emergency_id != emergency.id:
                    continue
                if resource.status is ResourceStatus.OUT_OF_SERVICE:
                    resource.emergency_id = None
                    continue
                resource.release()
                self._emit(ResourceFreed(at=self.now, resource_id=rid, reason=outcome.value))

        emergency.status = outcome
        emergency.closed_at = self.now
        emergency.unsatisfiable = False
        self._emit(EmergencyResolved(at=self.now, emergency_id=emergency.id,
                                     outcome=outcome.value))

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def check_invariants(self) -> None:
        """
        Verify the registry is consistent.

        Raises:
            RegistryCorrupted: on a double-assigned resource, an assigned
                emergency that is not covered, or dangling bindings
        """
        holder: Dict[str, str] = {}
        for emergency_id, assignment in self.assignments.items():
            emergency = self.emergencies.get(emergency_id)
            if emergency is None or emergency.status is not EmergencyStatus.ASSIGNED:
                raise RegistryCorrupted(f"Assignment held for non-assigned emergency {emergency_id}")

            supply = empty_vector()
            for rid in assignment.resource_ids:
                if rid in holder:
                    raise RegistryCorrupted(f"Resource {rid} assigned to both "
                                            f"{holder[rid]} and {emergency_id}")
                holder[rid] = emergency_id
                resource = self.resources.get(rid)
                if resource is None or resource.emergency_id != emergency_id:
                    raise RegistryCorrupted(f"Resource {rid} is not bound to {emergency_id}")
                if resource.status not in (ResourceStatus.EN_ROUTE, ResourceStatus.BUSY):
                    raise RegistryCorrupted(f"Resource {rid} is {resource.status.value} "
                                            f"while assigned to {emergency_id}")
                supply += resource.supply

            if not satisfies(supply, emergency.requirements):
                raise RegistryCorrupted(f"Emergency {emergency_id} is assigned but not covered")

        for emergency in self.emergencies.values():
            if emergency.status is EmergencyStatus.ASSIGNED and emergency.id not in self.assignments:
                raise RegistryCorrupted(f"Emergency {emergency.id} is assigned without resources")

        for resource in self.resources.values():
            if resource.emergency_id is not None and holder.get(resource.id) != resource.emergency_id:
                raise RegistryCorrupted(f"Resource {resource.id} points at "
                                        f"{resource.emergency_id} without an assignment")

    def summary(self) -> Dict:
        by_status: Dict[str, int] = {}
        for resource in self.resources.values():
            by_status[resource.status.value] = by_status.get(resource.status.value, 0) + 1
        emergencies: Dict[str, int] = {}
        for emergency in self.emergencies.values():
            emergencies[emergency.status.value] = emergencies.get(emergency.status.value, 0) + 1
        return {
            "time": self.now,
            "resources": by_status,
            "emergencies": emergencies,
            "assignments": len(self.assignments),
            "fleet_supply": describe(self.fleet_supply()),
        }
