import asyncio
import logging

import pytest

from synaptic_dispatch.config import DispatchConfig
from synaptic_dispatch.errors import (ConcurrentCycleConflict, MalformedSnapshot, ProviderUnavailable,
                                      RegistryCorrupted)
from synaptic_dispatch.models import EmergencyStatus, ResourceStatus
from synaptic_dispatch.scheduler import CyclePhase, LogicalClock, build_scheduler

from conftest import (CountingProvider, FailingProvider, SlowProvider, emergency_dict,
                      make_scheduler, resource_dict)


def run(coro):
    return asyncio.run(coro)


def pairs(payload):
    return [(a["emergencyId"], a["resourceId"]) for a in payload["assignments"]]


class TestLogicalClock:

    def test_advance_and_set(self):
        clock = LogicalClock()
        assert clock.advance(3000) == 3000
        assert clock.set(5000) == 5000
        with pytest.raises(ValueError):
            clock.set(4000)
        with pytest.raises(ValueError):
            clock.advance(-1)


class TestCycle:

    def test_snapshot_applied_on_next_tick(self, perth_snapshot):
        scheduler = make_scheduler()
        scheduler.submit_snapshot(perth_snapshot)
        assert scheduler.registry.resources == {}

        payload = run(scheduler.tick(0))

        assert pairs(payload) == [("10", "2")]
        assert scheduler.registry.resources["1"].status is ResourceStatus.AVAILABLE
        assert scheduler.registry.resources["2"].status is ResourceStatus.EN_ROUTE
        assert scheduler.registry.emergencies["10"].status is EmergencyStatus.ASSIGNED

    def test_payload_shape(self, perth_snapshot):
        scheduler = make_scheduler()
        scheduler.submit_snapshot(perth_snapshot)
        payload = run(scheduler.tick(0))

        item = payload["assignments"][0]
        assert item["status"] == "en_route"
        assert item["progress"] == 0.0
        assert item["position"] == [-32.01, 115.9]
        assert item["route"]["id"] == "-32.01-115.9:-32.0-115.9"
        assert item["route"]["geometry"]["type"] == "LineString"
        assert item["route"]["eta"] > 0
        assert payload["time"] == 0
        assert payload["cycle"] == 1
        assert payload["unsatisfiable"] == []
        assert [e["type"] for e in payload["events"]] == ["EmergencyAdmitted"]

    def test_malformed_snapshot_rejected_at_submission(self):
        scheduler = make_scheduler()
        with pytest.raises(MalformedSnapshot):
            scheduler.submit_snapshot({"cars": [resource_dict(1, -32.0, 115.9, "Z")]})
        assert scheduler.status()["queued_snapshots"] == 0

    def test_immediate_admitted_later_is_matched_first(self):
        scheduler = make_scheduler()
        scheduler.submit_snapshot({
            "cars": [resource_dict(1, -32.0, 115.9, "A")],
            "emergencies": [
                emergency_dict("urgent", -32.0, 115.9, ["A"], "Urgent", 0),
                emergency_dict("immediate", -32.5, 115.9, ["A"], "Immediate", 1000),
            ],
        })
        payload = run(scheduler.tick(2000))
        assert pairs(payload) == [("immediate", "1")]
        assert payload["pending"] == ["urgent"]

    def test_earlier_arrival_served_first_then_waits_for_release(self):
        scheduler = make_scheduler()
        scheduler.submit_snapshot({
            "cars": [resource_dict(1, -32.0, 115.9, "E")],
            "emergencies": [
                emergency_dict("first", -32.0, 115.9, ["E"], "Urgent", 0),
                emergency_dict("second", -32.1, 115.9, ["E"], "Urgent", 1000),
            ],
        })

        async def scenario():
            first = await scheduler.tick(0)
            second = await scheduler.tick(1000)
            await scheduler.resolve_emergency("first")
            third = await scheduler.tick(2000)
            return first, second, third

        first, second, third = run(scenario())
        assert pairs(first) == [("first", "1")]
        assert pairs(second) == [("first", "1")]
        assert second["pending"] == ["second"]
        assert pairs(third) == [("second", "1")]

    def test_unsatisfiable_reported_then_cleared(self):
        scheduler = make_scheduler()
        scheduler.submit_snapshot({
            "cars": [resource_dict(1, -32.0, 115.9, "A")],
            "emergencies": [emergency_dict("fire", -32.0, 115.9, ["D"])],
        })
        payload = run(scheduler.tick(0))
        assert payload["unsatisfiable"] == ["fire"]
        assert payload["assignments"] == []
        assert scheduler.registry.emergencies["fire"].status is EmergencyStatus.PENDING

        scheduler.submit_snapshot({"cars": [resource_dict(2, -32.1, 115.9, "D")]})
        payload = run(scheduler.tick(3000))
        assert payload["unsatisfiable"] == []
        assert pairs(payload) == [("fire", "2")]

    def test_busy_fleet_is_pending_not_unsatisfiable(self):
        scheduler = make_scheduler()
        scheduler.submit_snapshot({
            "cars": [resource_dict(1, -32.0, 115.9, "E")],
            "emergencies": [emergency_dict(1, -32.0, 115.9, ["E"]),
                            emergency_dict(2, -32.0, 115.9, ["E"], "Urgent")],
        })
        payload = run(scheduler.tick(0))
        assert payload["unsatisfiable"] == []
        assert payload["pending"] == ["2"]


class TestRoutingFailures:

    def test_three_timeouts_revoke_assignment(self, perth_snapshot):
        scheduler = make_scheduler(provider=SlowProvider(delay_s=1.0), timeout_s=0.01)
        scheduler.submit_snapshot(perth_snapshot)

        async def scenario():
            return [await scheduler.tick(t) for t in (0, 3000, 6000)]

        first, second, third = run(scenario())

        assert pairs(first) == [("10", "2")]
        assert first["assignments"][0]["route"] is None
        assert scheduler.registry.resources["2"].status is ResourceStatus.AVAILABLE
        assert scheduler.registry.emergencies["10"].status is EmergencyStatus.PENDING
        assert pairs(second) == [("10", "2")]
        assert third["assignments"] == []
        assert third["pending"] == ["10"]
        assert "AssignmentRevoked" in [e["type"] for e in third["events"]]
        scheduler.registry.check_invariants()

    def test_route_recovers_before_threshold(self, perth_snapshot):
        provider = FailingProvider(failures=2, error=ProviderUnavailable("flaky"))
        scheduler = make_scheduler(provider=provider)
        scheduler.submit_snapshot(perth_snapshot)

        async def scenario():
            return [await scheduler.tick(t) for t in (0, 3000, 6000)]

        payloads = run(scenario())

        assert [p["assignments"][0]["route"] is None for p in payloads] == [True, True, False]
        assert scheduler.registry.assignments["10"].route_failures == {}
        assert scheduler.registry.resources["2"].dispatched_at == 6000

    def test_moved_resource_is_rerouted(self, perth_snapshot):
        provider = CountingProvider()
        scheduler = make_scheduler(provider=provider)
        scheduler.submit_snapshot(perth_snapshot)

        async def scenario():
            await scheduler.tick(0)
            moved = dict(perth_snapshot, cars=[resource_dict(1, -32.0, 116.0, "A"),
                                               resource_dict(2, -32.02, 115.9, "E")])
            scheduler.submit_snapshot(moved)
            return await scheduler.tick(3000)

        payload = run(scenario())

        assert len(provider.calls) == 2
        assert payload["assignments"][0]["route"]["geometry"]["coordinates"][0] == [115.9, -32.02]
        assert scheduler.registry.resources["2"].dispatched_at == 3000


class TestServiceLifecycle:

    def test_arrival_then_resolution(self, perth_snapshot):
        scheduler = make_scheduler(service_time_s=60)
        scheduler.submit_snapshot(perth_snapshot)

        async def scenario():
            first = await scheduler.tick(0)
            eta_ms = int(first["assignments"][0]["route"]["eta"] * 1000) + 1
            on_scene = await scheduler.tick(eta_ms)
            done = await scheduler.tick(eta_ms + 60000)
            return on_scene, done

        on_scene, done = run(scenario())

        assert on_scene["assignments"][0]["status"] == "busy"
        assert on_scene["assignments"][0]["progress"] == 1.0
        assert done["assignments"] == []
        assert scheduler.registry.emergencies["10"].status is EmergencyStatus.RESOLVED
        assert scheduler.registry.resources["2"].status is ResourceStatus.AVAILABLE
        assert {"ResourceFreed", "EmergencyResolved"} <= {e["type"] for e in done["events"]}

    def test_progress_interpolates_position(self, perth_snapshot):
        scheduler = make_scheduler()
        scheduler.submit_snapshot(perth_snapshot)

        async def scenario():
            first = await scheduler.tick(0)
            half = int(first["assignments"][0]["route"]["eta"] * 500)
            return await scheduler.tick(half)

        item = run(scenario())["assignments"][0]
        assert item["progress"] == pytest.approx(0.5, abs=0.01)
        assert item["position"][0] == pytest.approx(-32.005, abs=0.0002)

    def test_pending_timeout(self):
        scheduler = make_scheduler(pending_timeout_s=10)
        scheduler.submit_snapshot({"emergencies": [emergency_dict(1, -32.0, 115.9, ["E"])]})

        async def scenario():
            await scheduler.tick(0)
            return await scheduler.tick(10000)

        payload = run(scenario())
        assert payload["unsatisfiable"] == []
        assert scheduler.registry.emergencies["1"].status is EmergencyStatus.EXPIRED

    def test_retire_through_scheduler(self, perth_snapshot):
        scheduler = make_scheduler()
        scheduler.submit_snapshot(perth_snapshot)

        async def scenario():
            await scheduler.tick(0)
            await scheduler.retire_resource("2")
            return await scheduler.tick(3000)

        payload = run(scenario())
        assert payload["assignments"] == []
        assert payload["unsatisfiable"] == ["10"]


class TestConcurrency:

    def test_ticks_during_cycle_are_coalesced(self, perth_snapshot):
        provider = SlowProvider(delay_s=0.05)
        scheduler = make_scheduler(provider=provider)
        scheduler.submit_snapshot(perth_snapshot)

        async def scenario():
            in_flight = asyncio.create_task(scheduler.tick(0))
            await asyncio.sleep(0.01)
            assert scheduler.phase is CyclePhase.ROUTING
            coalesced = [await scheduler.tick(1000), await scheduler.tick(2000)]
            return coalesced, await in_flight

        coalesced, payload = run(scenario())

        assert coalesced == [None, None]
        assert scheduler.cycle == 2
        assert payload["cycle"] == 2
        assert payload["time"] == 2000

    def test_snapshot_mid_cycle_is_deferred(self, perth_snapshot):
        scheduler = make_scheduler(provider=SlowProvider(delay_s=0.05))
        scheduler.submit_snapshot(perth_snapshot)

        async def scenario():
            in_flight = asyncio.create_task(scheduler.tick(0))
            await asyncio.sleep(0.01)
            scheduler.submit_snapshot({"emergencies": [emergency_dict(11, -32.0, 115.9, ["A"])]})
            await in_flight
            assert "11" not in scheduler.registry.emergencies
            return await scheduler.tick(3000)

        payload = run(scenario())
        assert ("11", "1") in pairs(payload)

    def test_cycle_guard(self):
        scheduler = make_scheduler()
        scheduler.phase = CyclePhase.MATCHING
        with pytest.raises(ConcurrentCycleConflict):
            run(scheduler._run_cycle(0))

    def test_stop_waits_for_routing(self, perth_snapshot):
        provider = SlowProvider(delay_s=0.05)
        scheduler = make_scheduler(provider=provider)
        scheduler.submit_snapshot(perth_snapshot)

        async def scenario():
            loop_task = asyncio.create_task(scheduler.run(interval_s=10))
            await asyncio.sleep(0.01)
            assert provider.started == 1 and provider.finished == 0
            await scheduler.stop()
            assert provider.finished == 1
            assert scheduler.phase is CyclePhase.IDLE
            await loop_task

        run(scenario())
        assert scheduler.running is False
        assert scheduler.registry.resources["2"].status is ResourceStatus.EN_ROUTE
        assert scheduler.last_payload["assignments"][0]["route"] is not None

    def test_run_loop_wakes_on_snapshot(self, perth_snapshot):
        scheduler = make_scheduler()
        published = []

        async def scenario():
            event = asyncio.Event()

            def publisher(payload):
                published.append(payload)
                event.set()

            scheduler.add_publisher(publisher)
            loop_task = asyncio.create_task(scheduler.run(interval_s=10))
            await asyncio.wait_for(event.wait(), 1)
            event.clear()

            scheduler.submit_snapshot(perth_snapshot)
            await asyncio.wait_for(event.wait(), 1)
            await scheduler.stop()
            await loop_task

        run(scenario())
        assert published[0]["assignments"] == []
        assert pairs(published[1]) == [("10", "2")]


class TestFailureHandling:

    def test_failed_cycle_logs_and_continues(self, perth_snapshot, caplog, monkeypatch):
        scheduler = make_scheduler()
        scheduler.submit_snapshot(perth_snapshot)
        original = scheduler.matcher.match
        calls = []

        def flaky_match(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return original(*args, **kwargs)

        monkeypatch.setattr(scheduler.matcher, "match", flaky_match)

        async def scenario():
            return await scheduler.tick(0), await scheduler.tick(3000)

        with caplog.at_level(logging.ERROR, logger="DispatchScheduler"):
            failed, recovered = run(scenario())

        assert failed is None
        assert "Cycle 1 failed" in caplog.text
        assert pairs(recovered) == [("10", "2")]
        assert scheduler.phase is CyclePhase.IDLE

    def test_registry_corruption_is_fatal(self, perth_snapshot, monkeypatch):
        scheduler = make_scheduler()
        scheduler.submit_snapshot(perth_snapshot)

        def corrupted():
            raise RegistryCorrupted("resource 2 held twice")

        monkeypatch.setattr(scheduler.registry, "check_invariants", corrupted)
        with pytest.raises(RegistryCorrupted):
            run(scheduler.tick(0))
        assert scheduler.phase is CyclePhase.IDLE

    def test_failing_publisher_does_not_break_cycle(self, perth_snapshot):
        scheduler = make_scheduler()
        scheduler.submit_snapshot(perth_snapshot)

        def broken(payload):
            raise RuntimeError("client went away")

        scheduler.add_publisher(broken)
        payload = run(scheduler.tick(0))
        assert pairs(payload) == [("10", "2")]


class TestBuildScheduler:

    def test_from_config(self):
        config = DispatchConfig.from_dict({
            "scheduler": {"clock": "logical", "service_time_s": None},
            "router": {"max_attempts": 5, "timeout_s": 2},
            "matcher": {"max_distance_km": 25},
        })
        scheduler = build_scheduler(config)
        assert isinstance(scheduler.clock, LogicalClock)
        assert scheduler.max_route_attempts == 5
        assert scheduler.router.timeout_s == 2
        assert scheduler.matcher.config.max_distance_km == 25
        assert scheduler.config.service_time_ms is None
