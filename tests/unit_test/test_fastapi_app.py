"""
Unit tests for the HTTP API.

The app is built around in-memory backends; the lifespan is not entered, so
the queue workers stay idle and reconciliation only runs when asked inline.
"""

import pytest
from fastapi.testclient import TestClient

from rollout_operator.factory import with_component
from rollout_operator.fastapi_app import create_app
from rollout_operator.kube_types import AppKey
from tests.fakes import FakeJobBackend, FakeWorkloadBackend, InMemoryStatusStore, spec_of

KEY = AppKey(namespace="default", name="shop")


@pytest.fixture
def store():
    store = InMemoryStatusStore()
    store.put(KEY, spec_of(
        with_component("db", version="1.0.0", image="shop/db", replicas=2),
        with_component("api", version="1.0.0", image="shop/api", update_order=1),
    ))
    return store


@pytest.fixture
def app(store):
    return create_app(store=store, workloads=FakeWorkloadBackend(), jobs=FakeJobBackend())


@pytest.fixture
def http(app):
    return TestClient(app)


class TestHealth:
    def test_health(self, http):
        assert http.get("/health").json() == {"status": "healthy"}
        assert http.get("/api/health").json() == {"status": "healthy"}


class TestApplications:
    def test_list(self, http):
        response = http.get("/api/applications")
        assert response.status_code == 200
        assert response.json() == [{"namespace": "default", "name": "shop"}]

    def test_status_of_missing_application(self, http):
        assert http.get("/api/applications/default/nope/status").status_code == 404

    def test_inline_reconcile_updates_status(self, http):
        response = http.post("/api/applications/default/shop/reconcile", params={"wait": "true"})
        assert response.status_code == 202
        body = response.json()
        assert body["queued"] is False
        assert body["requeueAfter"] is not None

        status = http.get("/api/applications/default/shop/status").json()["status"]
        assert status["componentStatus"]["db"]["phase"] == "Updating"
        assert status["componentStatus"]["api"]["message"] == "waiting for db to converge"

    def test_reconcile_is_queued(self, http, app):
        response = http.post("/api/applications/default/shop/reconcile")
        assert response.status_code == 202
        assert response.json()["queued"] is True
        assert len(app.state.operator.queue) == 1

    def test_plan_is_a_dry_run(self, http, store):
        response = http.get("/api/applications/default/shop/plan")
        assert response.status_code == 200
        body = response.json()
        assert [step["component"] for step in body["steps"]] == ["db"]
        assert body["steps"][0]["action"] == "Apply"
        assert body["steps"][0]["maxSurge"] == 1
        assert body["waiting"] == {"api": "waiting for db to converge"}
        assert store.writes == 0

    def test_plan_of_invalid_spec(self, http, store):
        spec = spec_of(with_component("api", version="1.0.0", image="shop/api"))
        spec["updateStrategy"] = {"type": "RollingUpdate", "maxUnavailable": 0, "maxSurge": 0}
        store.put(KEY, spec)
        assert http.get("/api/applications/default/shop/plan").status_code == 422


class TestManifests:
    def test_defaults_are_filled_in(self, http):
        response = http.post("/api/manifests", json={"name": "shop"})
        assert response.status_code == 200
        manifest = response.json()
        assert manifest["kind"] == "Application"
        assert manifest["metadata"] == {"name": "shop", "namespace": "default"}
        component = manifest["spec"]["components"]["default"]
        assert component["version"] == "1.0.0"
        assert component["resources"]["limits"] == {"cpu": "100m", "memory": "128Mi"}
        assert manifest["spec"]["globalConfig"]["registry"] == "default-registry.example.com"

    def test_declared_components_replace_the_default(self, http):
        response = http.post("/api/manifests", json={
            "name": "shop",
            "namespace": "prod",
            "components": {"api": {"version": "2.0.0", "image": "shop/api", "updateOrder": 1}},
        })
        assert response.status_code == 200
        components = response.json()["spec"]["components"]
        assert list(components) == ["api"]
        assert components["api"]["updateOrder"] == 1
        assert components["api"]["replicas"] == 1

    def test_invalid_strategy_is_rejected(self, http):
        response = http.post("/api/manifests", json={
            "name": "shop",
            "updateStrategy": {"maxUnavailable": 0, "maxSurge": 0},
        })
        assert response.status_code == 422


class TestWithoutCluster:
    def test_endpoints_report_unavailable(self):
        http = TestClient(create_app())
        assert http.get("/health").status_code == 200
        assert http.get("/api/applications").status_code == 503
