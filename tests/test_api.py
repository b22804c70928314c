"""Unit tests for the HTTP API."""

import pytest
from fastapi.testclient import TestClient

from api import APIServer
from capabilities import CapabilitySnapshot
from events import EventBus


@pytest.fixture
def server():
    return APIServer(event_bus=EventBus())


@pytest.fixture
def client(server):
    return TestClient(server.app)


class TestHealth:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readyz_before_start(self, client):
        assert client.get("/readyz").status_code == 503

    def test_readyz_after_start(self, server, client):
        server.set_ready(["apimanager"])

        response = client.get("/readyz")

        assert response.status_code == 200
        assert response.json() == {"status": "ready", "controllers": ["apimanager"]}


class TestCapabilities:
    def test_not_discovered(self, client):
        assert client.get("/api/v1/capabilities").status_code == 503

    def test_capabilities(self, server, client):
        server.set_capabilities(
            CapabilitySnapshot.from_pairs(
                [("apps", "Deployment"), ("", "ConfigMap")], ["apps/v1", "v1"]
            )
        )

        response = client.get("/api/v1/capabilities")

        assert response.status_code == 200
        assert response.json() == {
            "group_versions": ["apps/v1", "v1"],
            "kinds": [
                {"group": "", "kind": "ConfigMap"},
                {"group": "apps", "kind": "Deployment"},
            ],
        }


class TestEvents:
    def test_without_event_bus(self):
        client = TestClient(APIServer().app)

        assert client.get("/api/v1/events").status_code == 503


class TestServer:
    def test_log_level_lowercased(self):
        assert APIServer(log_level="DEBUG").log_level == "debug"

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await APIServer().stop()
