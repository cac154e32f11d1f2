"""Tests for the orbitctl command line."""

import httpx
import pytest
from click.testing import CliRunner
from pydantic import ValidationError

from conftest import BASE_URL, status_payload
from orbitctl import cli as cli_module
from orbitctl.cli import cli
from orbitctl.config import Settings
from orbitctl.gateway import BackendGateway
from orbitctl.models import EnvironmentCache, PendingJob, Service, ServiceAction, utcnow
from orbitctl.storage import Storage


@pytest.fixture(autouse=True)
def fresh_settings(monkeypatch):
    monkeypatch.setattr(cli_module, "_settings", None)


@pytest.fixture
def data_dir(tmp_path):
    return str(tmp_path / "state")


@pytest.fixture
def invoke(data_dir, backend, monkeypatch):
    """Run the CLI against the fake backend with an isolated data dir."""
    monkeypatch.setattr(
        cli_module, "build_gateway",
        lambda settings: BackendGateway(
            BASE_URL, client=httpx.AsyncClient(transport=httpx.MockTransport(backend.handler)),
        ),
    )
    runner = CliRunner()

    def _invoke(*args, **kwargs):
        return runner.invoke(cli, ["--data-dir", data_dir, *args], **kwargs)

    return _invoke


def seed(data_dir, clock, **jobs):
    Storage(data_dir).save_environments({1: EnvironmentCache(
        services={"redis": Service(name="redis", status="running")},
        pending_jobs={
            job_id: PendingJob(job_id=job_id, service="redis", action=ServiceAction.RESTART,
                               started_at=clock(), error=error)
            for job_id, error in jobs.items()
        },
        last_updated=clock(),
    )})


class TestConfig:

    def test_show(self, invoke):
        result = invoke("--api-url", "http://remote.test/api", "--env", "4", "config", "show")

        assert result.exit_code == 0
        assert "http://remote.test/api" in result.output
        assert "environment:     4" in result.output
        assert "disabled (polling)" in result.output

    def test_reverb_url(self):
        settings = Settings(reverb_enabled=True, reverb_app_key="orbit", reverb_host="orbit.test",
                            reverb_port=443, reverb_scheme="https")
        assert settings.reverb_url.startswith("wss://orbit.test:443/app/orbit?protocol=7")

    def test_reverb_scheme_typo_rejected(self):
        with pytest.raises(ValidationError):
            Settings(reverb_scheme="htps")


class TestServices:

    def test_status_fetches_and_prints(self, invoke, backend):
        backend.on("GET", "/status", (200, status_payload(redis="running", mysql="stopped")))

        result = invoke("status")

        assert result.exit_code == 0
        assert "redis" in result.output
        assert "Running: 1/2" in result.output

    def test_status_shows_cache_when_backend_down(self, invoke, data_dir, clock):
        seed(data_dir, clock)

        result = invoke("status", "--refresh")

        assert result.exit_code == 0
        assert "showing cached status" in result.output
        assert "Running: 1/1" in result.output

    def test_restart_registers_job(self, invoke, backend):
        backend.on("POST", "/services/redis/restart", (202, {"success": True, "jobId": "01JX"}))

        result = invoke("service", "restart", "redis")
        assert result.exit_code == 0
        assert "job 01JX" in result.output

        listing = invoke("jobs", "list")
        assert "01JX" in listing.output
        assert "restart" in listing.output

    def test_host_service_path(self, invoke, backend):
        backend.on("POST", "/host-services/caddy/stop", (200, {"success": True, "message": "Stopped"}))

        result = invoke("service", "stop", "caddy", "--host")

        assert result.exit_code == 0
        assert "Stopped" in result.output

    def test_failed_dispatch_exits_nonzero(self, invoke, backend):
        backend.on("POST", "/services/redis/start", (500, {"error": "Docker not running"}))

        result = invoke("service", "start", "redis")

        assert result.exit_code == 1
        assert "Docker not running" in result.output

    def test_all_restart(self, invoke, backend):
        backend.on("POST", "/restart", (200, {"success": True}))
        backend.on("GET", "/status", (200, status_payload(redis="running")))

        result = invoke("all", "restart")

        assert result.exit_code == 0
        assert backend.called("GET", "/status") == 1
        assert "Running: 1/1" in result.output


class TestJobs:

    def test_list_empty(self, invoke):
        result = invoke("jobs", "list")
        assert result.exit_code == 0
        assert "No pending jobs" in result.output

    def test_clear_by_service(self, invoke, data_dir, clock):
        seed(data_dir, clock, j1="exit 1", j2=None)

        result = invoke("jobs", "clear", "redis")

        assert result.exit_code == 0
        assert set(Storage(data_dir).load_environments()[1].pending_jobs) == {"j2"}

    def test_recover(self, invoke, backend, data_dir):
        seed(data_dir, utcnow, j1=None)
        backend.on("GET", "/jobs/j1", (200, {"status": "completed"}))

        result = invoke("jobs", "recover")

        assert "Resolved 1 of 1" in result.output
        assert backend.called("GET", "/jobs/j1") == 1
        assert Storage(data_dir).load_environments()[1].pending_jobs == {}


class TestProjects:

    def test_list(self, invoke, backend):
        backend.on("GET", "/projects", (200, {"success": True, "data": {"projects": [
            {"slug": "blog", "name": "Blog", "status": "cloning"},
        ]}}))

        result = invoke("projects", "list")

        assert result.exit_code == 0
        assert "blog" in result.output
        assert "cloning" in result.output

    def test_list_backend_down(self, invoke):
        result = invoke("projects", "list")
        assert result.exit_code == 1
        assert "Could not list projects" in result.output

    def test_create(self, invoke, backend):
        backend.on("POST", "/projects", (200, {"success": True, "slug": "my-cool-app"}))

        result = invoke("projects", "create", "My Cool App", "--php", "8.4")

        assert result.exit_code == 0
        assert "my-cool-app" in result.output

    def test_delete(self, invoke, backend):
        backend.on("DELETE", "/projects/blog", (200, {"success": True}))

        result = invoke("projects", "delete", "blog", "--yes")

        assert result.exit_code == 0
        assert "blog: deleted" in result.output

    def test_delete_failure(self, invoke, backend):
        backend.on("DELETE", "/projects/blog", (422, {"success": False, "error": "Failed to delete project"}))

        result = invoke("projects", "delete", "blog", "--yes")

        assert result.exit_code == 1
        assert "Failed to delete project" in result.output

    def test_delete_requires_confirmation(self, invoke, backend):
        result = invoke("projects", "delete", "blog", input="n\n")

        assert result.exit_code == 1
        assert backend.called("DELETE", "/projects/blog") == 0
