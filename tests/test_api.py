import pytest
from fastapi.testclient import TestClient

from synaptic_dispatch.api import create_app
from synaptic_dispatch.config import DispatchConfig
from synaptic_dispatch.sample import sample_snapshot

from conftest import emergency_dict, make_scheduler, resource_dict


@pytest.fixture
def scheduler():
    return make_scheduler()


@pytest.fixture
def client(scheduler):
    with TestClient(create_app(scheduler=scheduler)) as test_client:
        yield test_client


class TestInfoEndpoints:

    def test_root(self, client):
        body = client.get("/").json()
        assert body["name"] == "Synaptic Dispatch API"
        assert body["status"] == "idle"

    def test_capabilities(self, client):
        body = client.get("/capabilities").json()
        assert [c["tag"] for c in body["capabilities"]] == ["A", "B", "C", "D", "E"]
        assert body["capabilities"][4]["icon"] == "ambulance"
        assert body["priorities"] == ["Immediate", "Urgent", "Non-Urgent"]

    def test_status(self, client, perth_snapshot):
        client.post("/optimise/", json=perth_snapshot)
        body = client.get("/status").json()
        assert body["cycle"] == 1
        assert body["resources"] == {"available": 1, "en_route": 1}
        assert body["route_cache"]["provider_calls"] == 1

    def test_assignments_before_first_cycle(self, client):
        assert client.get("/assignments").status_code == 404


class TestOptimise:

    def test_returns_plan(self, client, perth_snapshot):
        response = client.post("/optimise/", json=perth_snapshot)
        assert response.status_code == 200
        body = response.json()
        assert body["assignments"][0]["emergencyId"] == "10"
        assert body["assignments"][0]["resourceId"] == "2"
        assert body["assignments"][0]["route"]["geometry"]["type"] == "LineString"
        assert body["unsatisfiable"] == []
        assert client.get("/assignments").json() == body

    def test_malformed_snapshot(self, client, scheduler):
        response = client.post("/optimise/", json={"cars": [resource_dict(1, -32, 115.9, "Z")]})
        assert response.status_code == 422
        assert response.json()["detail"]["errors"]
        assert scheduler.registry.resources == {}

    def test_requirements_not_a_list(self, client):
        emergency = emergency_dict(7, -32, 115.9, [0, 0, 0, 0, 1])
        emergency["requirements"] = 5
        response = client.post("/optimise/", json={"emergencies": [emergency]})
        assert response.status_code == 422

    def test_not_an_object(self, client):
        assert client.post("/optimise/", json=[1, 2]).status_code == 422

    def test_client_resends_everything(self, client, scheduler):
        # The map client re-posts all emergencies seen so far on every poll
        snapshot = sample_snapshot()
        first = client.post("/optimise/", json=snapshot).json()
        scheduler.clock.advance(6000)
        second = client.post("/optimise/", json=snapshot).json()

        assert [a["emergencyId"] for a in first["assignments"]] == ["1"]
        assert {a["emergencyId"] for a in second["assignments"]} == {"1", "3"}
        assert second["cycle"] == 2

    def test_unsatisfiable_listed(self, client):
        body = client.post("/optimise/", json={
            "cars": [resource_dict(1, -32, 115.9, "A")],
            "emergencies": [emergency_dict(7, -32, 115.9, [0, 0, 0, 1, 0])],
        }).json()
        assert body["unsatisfiable"] == ["7"]


class TestOperatorEndpoints:

    def test_resolve(self, client, perth_snapshot):
        client.post("/optimise/", json=perth_snapshot)
        body = client.post("/emergencies/10/resolve").json()
        assert body["status"] == "resolved"
        assert client.get("/status").json()["resources"] == {"available": 2}

    def test_cancel(self, client, perth_snapshot):
        client.post("/optimise/", json=perth_snapshot)
        assert client.post("/emergencies/10/cancel").json()["status"] == "cancelled"

    def test_retire(self, client, perth_snapshot):
        client.post("/optimise/", json=perth_snapshot)
        body = client.post("/resources/2/retire").json()
        assert body["status"] == "out_of_service"

    @pytest.mark.parametrize("path", [
        "/emergencies/404/resolve",
        "/emergencies/404/cancel",
        "/resources/404/retire",
    ])
    def test_unknown_ids(self, client, path):
        response = client.post(path)
        assert response.status_code == 404
        assert "404" in response.json()["detail"]


class TestBackgroundLoop:

    def test_autorun_publishes_on_snapshot(self, perth_snapshot):
        config = DispatchConfig.from_dict({"api": {"autorun": True},
                                           "scheduler": {"clock": "logical", "tick_interval_s": 30}})
        scheduler = make_scheduler()
        app = create_app(scheduler=scheduler, config=config)

        with TestClient(app) as client:
            body = client.post("/optimise/", json=perth_snapshot).json()
            assert body["assignments"][0]["resourceId"] == "2"

        assert scheduler.running is False
