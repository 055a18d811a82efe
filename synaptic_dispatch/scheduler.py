#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Scheduler / Clock Loop
======================
Drives the dispatch cycle

    Idle -> Admitting -> Matching -> Routing -> Publishing -> Idle

on every tick. Exactly one cycle is in flight at a time: a tick arriving
while a cycle runs is coalesced into a single pending tick, and snapshots
submitted mid-cycle are applied at the start of the next one.
"""

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .config import DispatchConfig, SchedulerConfig
from .errors import ConcurrentCycleConflict, MalformedSnapshot, RegistryCorrupted, RoutingError
from .matcher import Matcher
from .models import Assignment, Emergency, ResourceStatus, Route
from .registry import FleetRegistry
from .routing import MAX_ROUTE_ATTEMPTS, Router, RoutingProvider, StraightLineProvider, build_router
from .schemas import AssignmentPayload, OptimiseResponse, RoutePayload, SnapshotPayload

logger = logging.getLogger("DispatchScheduler")

Publisher = Callable[[Dict[str, Any]], Any]


class CyclePhase(str, Enum):
    IDLE = "idle"
    ADMITTING = "admitting"
    MATCHING = "matching"
    ROUTING = "routing"
    PUBLISHING = "publishing"


class LogicalClock:
    """Manually advanced clock in milliseconds, for tests and simulations."""

    def __init__(self, start_ms: int = 0):
        self._now = int(start_ms)

    def now(self) -> int:
        return self._now

    def advance(self, ms: int) -> int:
        if ms < 0:
            raise ValueError("Cannot advance the clock by a negative amount")
        self._now += int(ms)
        return self._now

    def set(self, ms: int) -> int:
        if ms < self._now:
            raise ValueError(f"Clock is monotonic: {ms} < {self._now}")
        self._now = int(ms)
        return self._now


class MonotonicClock:
    """Milliseconds since construction, optionally sped up."""

    def __init__(self, speed: float = 1.0):
        self.speed = speed
        self._start = time.monotonic()

    def now(self) -> int:
        return int((time.monotonic() - self._start) * 1000 * self.speed)


class DispatchScheduler:
    """
    Single scheduling authority over a FleetRegistry.

    The registry is only written inside a cycle or under the cycle lock, so
    matching always sees a consistent view.
    """

    def __init__(self, registry: Optional[FleetRegistry] = None,
                 matcher: Optional[Matcher] = None,
                 router: Optional[Router] = None,
                 clock=None,
                 config: Optional[SchedulerConfig] = None,
                 max_route_attempts: int = MAX_ROUTE_ATTEMPTS):
        """
        Initialize the scheduler.

        Args:
            registry: Store to drive; a new one is created if omitted
            matcher: Assignment policy
            router: Router used for every dispatched pair
            clock: Object with a `now()` method returning ms
            config: Tick interval, service time and timeouts
            max_route_attempts: Failed routing attempts before an assignment
                is revoked
        """
        self.config = config or SchedulerConfig()
        self.registry = registry or FleetRegistry(move_tolerance_m=self.config.move_tolerance_m)
        self.matcher = matcher or Matcher()
        self.router = router or Router(StraightLineProvider())
        self.clock = clock or LogicalClock()
        self.max_route_attempts = max_route_attempts

        self.phase = CyclePhase.IDLE
        self.cycle = 0
        self.last_payload: Optional[Dict[str, Any]] = None
        self.running = False

        self._lock: Optional[asyncio.Lock] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._pending_tick: Optional[int] = None
        self._deferred: List[SnapshotPayload] = []
        self._publishers: List[Publisher] = []
        self._waiters: List[asyncio.Future] = []
        self._stopping = False

        logger.info("Dispatch scheduler initialized")

    # asyncio primitives are created on first use so they bind to the running loop
    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _get_wakeup(self) -> asyncio.Event:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        return self._wakeup

    @property
    def busy(self) -> bool:
        return self._lock is not None and self._lock.locked()

    def add_publisher(self, publisher: Publisher) -> None:
        """Register a callable (sync or async) receiving every published payload."""
        self._publishers.append(publisher)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def submit_snapshot(self, snapshot: Union[SnapshotPayload, Dict]) -> SnapshotPayload:
        """
        Validate a snapshot now and queue it for the next cycle's Admitting
        phase.

        Raises:
            MalformedSnapshot: the snapshot is rejected and nothing is queued
        """
        snapshot = self.registry.validate_snapshot(snapshot)
        self._deferred.append(snapshot)
        if self._wakeup is not None:
            self._wakeup.set()
        logger.debug(f"Queued snapshot with {len(snapshot.resources)} resources and "
                     f"{len(snapshot.emergencies)} emergencies")
        return snapshot

    async def tick(self, now: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Run one cycle at `now` (defaults to the clock).

        If a cycle is already running the tick is coalesced into the pending
        tick, which the running cycle picks up when it finishes.

        Returns:
            The published payload, or None if the tick was coalesced or the
            cycle failed
        """
        now = self.clock.now() if now is None else now
        lock = self._get_lock()

        if lock.locked():
            self._pending_tick = now if self._pending_tick is None else max(self._pending_tick, now)
            logger.debug(f"Cycle in flight, coalesced tick at t={now}ms")
            return None

        async with lock:
            payload = await self._run_cycle(now)
            pending = await self._run_pending()
        return pending or payload

    async def _run_pending(self) -> Optional[Dict[str, Any]]:
        payload = None
        while self._pending_tick is not None and not self._stopping:
            now, self._pending_tick = self._pending_tick, None
            payload = await self._run_cycle(now)
        return payload

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _run_cycle(self, now: int) -> Optional[Dict[str, Any]]:
        if self.phase is not CyclePhase.IDLE:
            raise ConcurrentCycleConflict(f"Cycle started while {self.phase.value}")

        self.cycle += 1
        started = time.perf_counter()
        try:
            self.phase = CyclePhase.ADMITTING
            self._admit(now)

            self.phase = CyclePhase.MATCHING
            result = self.matcher.match(self.registry.pending_emergencies(),
                                        self.registry.available_resources(),
                                        fleet_supply=self.registry.fleet_supply())
            self.registry.flag_unsatisfiable(result.unsatisfiable)

            self.phase = CyclePhase.ROUTING
            pairs = self._pairs_to_route(result.assignments)
            outcomes = await self.router.route_many(
                [(self.registry.resources[rid].location, self.registry.emergencies[eid].location)
                 for eid, rid in pairs])

            self.phase = CyclePhase.PUBLISHING
            for assignment in result.assignments:
                self.registry.commit_assignment(assignment)
            self._record_routes(pairs, outcomes)
            self.registry.check_invariants()
            payload = self._build_payload(now)

        except RegistryCorrupted:
            logger.critical(f"Registry invariant violated in cycle {self.cycle}, "
                            f"dispatch state can no longer be trusted", exc_info=True)
            raise
        except Exception:
            logger.exception(f"Cycle {self.cycle} failed at t={now}ms")
            return None
        finally:
            self.phase = CyclePhase.IDLE

        logger.info(f"Cycle {self.cycle} at t={now}ms: {len(result.assignments)} new assignment(s), "
                    f"{len(pairs)} route(s), {len(result.deferred)} deferred, "
                    f"{len(result.unsatisfiable)} unsatisfiable "
                    f"({(time.perf_counter() - started) * 1000:.1f}ms)")
        await self._publish(payload)
        return payload

    def _admit(self, now: int) -> None:
        deferred, self._deferred = self._deferred, []
        for snapshot in deferred:
            try:
                self.registry.ingest_snapshot(snapshot)
            except MalformedSnapshot as e:
                # Conflicts with a snapshot applied earlier in the same batch
                logger.error(f"Dropped queued snapshot: {e}")

        for rid, old_location in self.registry.drain_moved().items():
            self.router.invalidate_endpoint(old_location)
            resource = self.registry.resources[rid]
            if resource.status is ResourceStatus.EN_ROUTE and resource.emergency_id:
                self.registry.drop_route(resource.emergency_id, rid)
                logger.info(f"Resource {rid} moved, rerouting to emergency {resource.emergency_id}")

        self.registry.tick(now)
        self.registry.advance_service(self.config.service_time_ms)
        self.registry.expire_stale(self.config.pending_timeout_ms)

    def _pairs_to_route(self, new_assignments: List[Assignment]) -> List[Tuple[str, str]]:
        """(emergency id, resource id) pairs that need a route this cycle."""
        pairs = []
        for emergency_id, assignment in self.registry.assignments.items():
            for rid in assignment.unrouted():
                if self.registry.resources[rid].status is ResourceStatus.EN_ROUTE:
                    pairs.append((emergency_id, rid))
        for assignment in new_assignments:
            pairs.extend((assignment.emergency_id, rid) for rid in assignment.resource_ids)
        return pairs

    def _record_routes(self, pairs: List[Tuple[str, str]],
                       outcomes: List[Union[Route, RoutingError]]) -> None:
        to_revoke: Dict[str, str] = {}
        for (emergency_id, rid), outcome in zip(pairs, outcomes):
            if isinstance(outcome, Route):
                self.registry.record_route(emergency_id, rid, outcome)
                continue

            failures = self.registry.record_route_failure(emergency_id, rid)
            logger.warning(f"Route {rid} -> {emergency_id} failed "
                           f"({failures}/{self.max_route_attempts}): {outcome}")
            if failures >= self.max_route_attempts:
                to_revoke[emergency_id] = (f"routing failed {failures} times for resource {rid}: "
                                           f"{type(outcome).__name__}")

        for emergency_id, reason in to_revoke.items():
            self.registry.revoke_assignment(emergency_id, reason)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _build_payload(self, now: int) -> Dict[str, Any]:
        registry = self.registry
        assignments = []

        ordered = sorted(registry.assignments.values(),
                         key=lambda a: Emergency.sort_key(registry.emergencies[a.emergency_id]))
        for assignment in ordered:
            for rid in assignment.resource_ids:
                resource = registry.resources[rid]
                route = assignment.routes.get(rid)
                item = AssignmentPayload(emergency_id=assignment.emergency_id, resource_id=rid,
                                         status=resource.status.value)
                if route is not None:
                    item.progress = self._progress(resource, route, now)
                    position = route.position_at(item.progress)
                    item.position = [position.lat, position.lon]
                    item.route = RoutePayload(id=route.route_id, geometry=route.to_geojson(),
                                              eta=route.eta_s, distance=route.distance_m)
                assignments.append(item)

        response = OptimiseResponse(
            time=now,
            cycle=self.cycle,
            assignments=assignments,
            unsatisfiable=[e.id for e in registry.pending_emergencies() if e.unsatisfiable],
            pending=[e.id for e in registry.pending_emergencies() if not e.unsatisfiable],
            events=[event.to_dict() for event in registry.drain_events()],
        )
        return response.model_dump(by_alias=True)

    @staticmethod
    def _progress(resource, route: Route, now: int) -> float:
        if resource.status is ResourceStatus.BUSY:
            return 1.0
        if resource.dispatched_at is None:
            return 0.0
        if route.eta_s <= 0:
            return 1.0
        return min(1.0, max(0.0, (now - resource.dispatched_at) / (route.eta_s * 1000)))

    async def _publish(self, payload: Dict[str, Any]) -> None:
        self.last_payload = payload

        for publisher in self._publishers:
            try:
                result = publisher(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Publisher {publisher!r} failed")

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(payload)

    async def wait_for_publish(self, timeout: Optional[float] = None,
                               after_cycle: Optional[int] = None) -> Dict[str, Any]:
        """
        Wait for the next published payload.

        Args:
            timeout: Seconds to wait before asyncio.TimeoutError
            after_cycle: Skip payloads from this cycle number and earlier
        """
        async def _next():
            while True:
                waiter = asyncio.get_running_loop().create_future()
                self._waiters.append(waiter)
                payload = await waiter
                if after_cycle is None or payload["cycle"] > after_cycle:
                    return payload

        return await asyncio.wait_for(_next(), timeout)

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    async def run(self, interval_s: Optional[float] = None) -> None:
        """
        Tick every `interval_s` until stopped, waking early when a snapshot
        is submitted. Only a RegistryCorrupted error ends the loop on its own.
        """
        interval = interval_s or self.config.tick_interval_s
        wakeup = self._get_wakeup()
        self._stopping = False
        self.running = True
        logger.info(f"Scheduler loop started (interval {interval}s)")

        try:
            while not self._stopping:
                await self.tick()
                if self._stopping:
                    break
                try:
                    await asyncio.wait_for(wakeup.wait(), timeout=interval)
                except asyncio.TimeoutError:
                    pass  # interval elapsed
                wakeup.clear()
        finally:
            self.running = False
            logger.info("Scheduler loop stopped")

    async def stop(self) -> None:
        """
        Stop the loop between cycles. Waits for the in-flight cycle, including
        its routing calls, to finish before returning.
        """
        self._stopping = True
        self._pending_tick = None
        if self._wakeup is not None:
            self._wakeup.set()

        async with self._get_lock():
            pass

        waiters, self._waiters = self._waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.cancel()

    async def close(self) -> None:
        await self.stop()
        await self.router.close()

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    async def _exclusive(self, action: Callable, *args):
        async with self._get_lock():
            result = action(*args)
            await self._run_pending()
        if self._wakeup is not None:
            self._wakeup.set()
        return result

    async def resolve_emergency(self, emergency_id: str):
        return await self._exclusive(self.registry.resolve_emergency, emergency_id)

    async def cancel_emergency(self, emergency_id: str):
        return await self._exclusive(self.registry.cancel_emergency, emergency_id)

    async def retire_resource(self, resource_id: str):
        return await self._exclusive(self.registry.retire_resource, resource_id)

    def status(self) -> Dict[str, Any]:
        summary = self.registry.summary()
        summary.update({
            "cycle": self.cycle,
            "phase": self.phase.value,
            "running": self.running,
            "queued_snapshots": len(self._deferred),
            "route_cache": {"size": self.router.cache_size, **self.router.stats},
        })
        return summary


def build_scheduler(config: Optional[DispatchConfig] = None,
                    provider: Optional[RoutingProvider] = None,
                    clock=None) -> DispatchScheduler:
    """Wire a scheduler, registry, matcher and router from configuration."""
    config = config or DispatchConfig()
    if clock is None:
        clock = (LogicalClock() if config.scheduler.clock == "logical"
                 else MonotonicClock(speed=config.scheduler.clock_speed))

    return DispatchScheduler(
        registry=FleetRegistry(move_tolerance_m=config.scheduler.move_tolerance_m),
        matcher=Matcher(config.matcher),
        router=build_router(config.router, provider=provider),
        clock=clock,
        config=config.scheduler,
        max_route_attempts=config.router.max_attempts,
    )
