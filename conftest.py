"""Shared fixtures for the orbitctl test suite."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from orbitctl.gateway import BackendGateway
from orbitctl.provisioning import ProvisioningTracker
from orbitctl.registry import ServiceRegistry
from orbitctl.storage import Storage

BASE_URL = "http://orbit.test/api"


class FakeClock:
    """Manually advanced clock."""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeBackend:
    """Routes httpx requests to canned responses and records every call.

    A route value is either a ``(status, json)`` tuple, an exception instance
    to raise, or a callable taking the request.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, method: str, path: str, response) -> None:
        self.routes[(method, path)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len("/api"):]
        self.calls.append((request.method, path))
        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404, json={"success": False, "error": "Not found"})
        if isinstance(route, Exception):
            raise route
        if callable(route):
            return route(request)
        status, body = route
        return httpx.Response(status, json=body)

    def called(self, method: str, path: str) -> int:
        return self.calls.count((method, path))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def gateway(backend):
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    return BackendGateway(BASE_URL, client=client)


@pytest.fixture
def storage(tmp_path):
    return Storage(str(tmp_path / "state"))


@pytest.fixture
def registry(clock):
    registry = ServiceRegistry(clock=clock)
    registry.set_active_environment(1)
    return registry


@pytest.fixture
def tracker():
    return ProvisioningTracker()


def status_payload(**statuses):
    """``/status`` body in the current response shape."""
    return {
        "success": True,
        "data": {
            "services": {
                name: {"status": status, "health": None, "container": f"orbit-{name}", "type": "docker"}
                for name, status in statuses.items()
            }
        },
    }
