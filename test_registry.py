"""Tests for the service registry."""

import asyncio

import httpx
import pytest

from conftest import status_payload
from orbitctl.models import EnvironmentCache, PendingJob, Service, ServiceAction
from orbitctl.registry import ServiceRegistry


def seed_services(registry, **statuses):
    env = registry.current_env
    for name, status in statuses.items():
        env.services[name] = Service(name=name, status=status)
    env.last_updated = registry.clock()


def add_job(registry, job_id, service, action=ServiceAction.RESTART, **kwargs):
    registry.current_env.pending_jobs[job_id] = PendingJob(
        job_id=job_id, service=service, action=action,
        started_at=kwargs.pop("started_at", registry.clock()), **kwargs,
    )


class TestEnvironments:

    def test_set_active_environment_creates_empty_cache(self, clock):
        """Test: Unseen environments get an empty cache."""
        registry = ServiceRegistry(clock=clock)
        assert registry.current_env is None
        assert registry.services == {}

        registry.set_active_environment(7)

        assert registry.active_environment_id == 7
        assert registry.current_env == EnvironmentCache()

    def test_switching_keeps_other_caches_readable(self, registry):
        """Test: Switching environments preserves every cache."""
        seed_services(registry, redis="running")
        registry.set_active_environment(2)

        assert registry.services == {}
        assert "redis" in registry.environment(1).services

        registry.set_active_environment(1)
        assert registry.services["redis"].status == "running"


class TestStaleness:

    def test_never_fetched_is_stale(self, registry):
        assert registry.is_stale

    def test_six_minutes_old_is_stale(self, registry, clock):
        """Test: Cache older than five minutes is stale."""
        registry.current_env.last_updated = clock()
        clock.advance(minutes=6)
        assert registry.is_stale

    def test_four_minutes_old_is_fresh(self, registry, clock):
        registry.current_env.last_updated = clock()
        clock.advance(minutes=4)
        assert not registry.is_stale


class TestFetch:

    @pytest.mark.asyncio
    async def test_fetch_replaces_services(self, registry, backend, gateway, clock):
        """Test: A successful fetch replaces the map and stamps last_updated."""
        seed_services(registry, old="running")
        backend.on("GET", "/status", (200, status_payload(redis="running", caddy="stopped")))

        assert await registry.fetch_services(gateway) is True

        assert set(registry.services) == {"redis", "caddy"}
        assert registry.services["redis"].container == "orbit-redis"
        assert registry.current_env.last_updated == clock()
        assert registry.services_running == 1
        assert registry.services_total == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"services": {"redis": {"status": "running"}}},
        {"data": {"services": {"redis": {"status": "running"}}}},
        {"success": True, "data": {"services": {"redis": {"status": "running"}}}},
    ])
    async def test_fetch_accepts_legacy_shapes(self, registry, backend, gateway, payload):
        backend.on("GET", "/status", (200, payload))

        await registry.fetch_services(gateway)

        assert registry.services["redis"].status == "running"

    @pytest.mark.asyncio
    async def test_fetch_failure_preserves_cache(self, registry, backend, gateway, clock):
        """Test: Non-2xx responses leave the cache untouched and do not raise."""
        seed_services(registry, redis="running")
        stamped = registry.current_env.last_updated
        backend.on("GET", "/status", (500, {"error": "boom"}))

        assert await registry.fetch_services(gateway) is False

        assert registry.services["redis"].status == "running"
        assert registry.current_env.last_updated == stamped

    @pytest.mark.asyncio
    async def test_fetch_network_failure_preserves_cache(self, registry, backend, gateway):
        seed_services(registry, redis="running")
        backend.on("GET", "/status", httpx.ConnectError("refused"))

        assert await registry.fetch_services(gateway) is False
        assert "redis" in registry.services

    @pytest.mark.asyncio
    async def test_refresh_if_stale_skips_fresh_cache(self, registry, backend, gateway):
        seed_services(registry, redis="running")
        backend.on("GET", "/status", (200, status_payload(redis="stopped")))

        await registry.refresh_if_stale(gateway)

        assert backend.called("GET", "/status") == 0
        assert registry.services["redis"].status == "running"

    @pytest.mark.asyncio
    async def test_cancelled_fetch_applies_nothing(self, registry, backend, gateway):
        """Test: An aborted fetch propagates cancellation without mutating state."""
        seed_services(registry, redis="running")
        started = asyncio.Event()

        async def slow_status():
            started.set()
            await asyncio.sleep(10)
            return {}

        gateway.fetch_status = slow_status
        task = asyncio.create_task(registry.fetch_services(gateway))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert registry.services["redis"].status == "running"


class TestDispatch:

    @pytest.mark.asyncio
    async def test_job_lifecycle(self, registry, backend, gateway):
        """Test: Dispatch with a jobId registers a job; the success event removes it."""
        seed_services(registry, redis="stopped")
        backend.on("POST", "/services/redis/start", (200, {"success": True, "jobId": "abc"}))

        result = await registry.start_service("redis", gateway)

        assert result.success and result.job_id == "abc"
        assert list(registry.pending_jobs) == ["abc"]
        assert registry.pending_jobs["abc"].service == "redis"
        assert registry.services["redis"].status == "stopped"
        assert registry.is_service_pending("redis")

        registry.handle_service_status_changed("abc", "redis", "running")

        assert registry.pending_jobs == {}
        assert registry.services["redis"].status == "running"
        assert not registry.is_service_pending("redis")

    @pytest.mark.asyncio
    async def test_host_services_use_host_path(self, registry, backend, gateway):
        backend.on("POST", "/host-services/php-fpm/restart", (200, {"success": True, "jobId": "h1"}))

        await registry.restart_service("php-fpm", gateway, "host")

        assert backend.called("POST", "/host-services/php-fpm/restart") == 1
        assert registry.pending_jobs["h1"].action == ServiceAction.RESTART

    @pytest.mark.asyncio
    async def test_enable_and_disable(self, registry, backend, gateway):
        backend.on("POST", "/services/mailpit/enable", (200, {"success": True, "jobId": "e1"}))
        backend.on("POST", "/services/mailpit/disable", (200, {"success": True}))

        await registry.enable_service("mailpit", gateway)
        result = await registry.disable_service("mailpit", gateway)

        assert result.success
        assert list(registry.pending_jobs) == ["e1"]

    @pytest.mark.asyncio
    async def test_dispatch_without_job_id_registers_nothing(self, registry, backend, gateway):
        backend.on("POST", "/services/redis/stop", (200, {"success": True, "message": "stopped"}))

        result = await registry.stop_service("redis", gateway)

        assert result.success
        assert registry.pending_jobs == {}

    @pytest.mark.asyncio
    async def test_dispatch_failure_is_returned(self, registry, backend, gateway):
        """Test: Backend and network failures come back as failed results."""
        backend.on("POST", "/services/redis/start", (422, {"success": False, "error": "no such service"}))
        backend.on("POST", "/services/caddy/start", httpx.ConnectError("refused"))

        rejected = await registry.start_service("redis", gateway)
        unreachable = await registry.start_service("caddy", gateway)

        assert not rejected.success and rejected.error == "no such service"
        assert not unreachable.success and "refused" in unreachable.error
        assert registry.pending_jobs == {}

    @pytest.mark.asyncio
    async def test_dispatch_rejects_unknown_action(self, registry, gateway):
        with pytest.raises(ValueError):
            await registry.dispatch_service_action("redis", "explode", gateway)

    @pytest.mark.asyncio
    async def test_global_actions_never_register_jobs(self, registry, backend, gateway):
        backend.on("POST", "/restart", (200, {"success": True, "jobId": "bulk"}))

        result = await registry.restart_all(gateway)

        assert result.success
        assert registry.pending_jobs == {}
        assert backend.called("POST", "/restart") == 1

    @pytest.mark.asyncio
    async def test_concurrent_dual_dispatch(self, registry, backend, gateway):
        """Test: Two restarts of one service track independently."""
        seed_services(registry, caddy="running")
        job_ids = iter(["j1", "j2"])
        backend.on(
            "POST", "/services/caddy/restart",
            lambda request: httpx.Response(200, json={"success": True, "jobId": next(job_ids)}),
        )

        await asyncio.gather(
            registry.restart_service("caddy", gateway),
            registry.restart_service("caddy", gateway),
        )
        assert set(registry.pending_jobs) == {"j1", "j2"}
        assert registry.is_service_pending("caddy")

        registry.handle_service_status_changed("j1", "caddy", "error", error="timeout")

        assert registry.pending_jobs["j1"].error == "timeout"
        assert registry.pending_jobs["j2"].error is None
        assert registry.get_service_error("caddy") == "timeout"
        assert registry.is_service_pending("caddy")


class TestStatusEvents:

    def test_event_is_idempotent(self, registry):
        """Test: Applying the same event twice equals applying it once."""
        seed_services(registry, redis="stopped", caddy="running")
        add_job(registry, "abc", "redis", ServiceAction.START)
        add_job(registry, "other", "caddy")

        registry.handle_service_status_changed("abc", "redis", "running")
        once = (registry.current_env.model_dump()["services"], registry.current_env.model_dump()["pending_jobs"])
        registry.handle_service_status_changed("abc", "redis", "running")
        twice = (registry.current_env.model_dump()["services"], registry.current_env.model_dump()["pending_jobs"])

        assert once == twice
        assert list(registry.pending_jobs) == ["other"]

    def test_failure_event_is_idempotent(self, registry):
        seed_services(registry, redis="running")
        add_job(registry, "abc", "redis")

        registry.handle_service_status_changed("abc", "redis", "error", "timeout")
        registry.handle_service_status_changed("abc", "redis", "error", "timeout")

        assert registry.pending_jobs["abc"].error == "timeout"
        assert registry.services["redis"].status == "error"

    def test_unknown_job_and_bulk_events(self, registry, clock):
        """Test: Unknown or missing job ids only update the service."""
        seed_services(registry, redis="stopped")
        add_job(registry, "keep", "redis")
        clock.advance(seconds=30)

        registry.handle_service_status_changed("nope", "redis", "running")
        registry.handle_service_status_changed(None, "redis", "running")

        assert list(registry.pending_jobs) == ["keep"]
        assert registry.services["redis"].status == "running"
        assert registry.current_env.last_updated == clock()

    def test_unknown_service_is_ignored(self, registry):
        registry.handle_service_status_changed(None, "ghost", "running")
        assert "ghost" not in registry.services

    def test_event_without_active_environment(self, clock):
        registry = ServiceRegistry(clock=clock)
        registry.handle_service_status_changed("abc", "redis", "running")
        assert registry.environments == {}

    def test_clear_errors(self, registry):
        """Test: Dismissal removes failed jobs only."""
        add_job(registry, "j1", "caddy", error="timeout")
        add_job(registry, "j2", "caddy")
        add_job(registry, "j3", "redis", error="oom")

        registry.clear_service_error("caddy")
        assert set(registry.pending_jobs) == {"j2", "j3"}

        registry.clear_pending_job_error("j3")
        assert set(registry.pending_jobs) == {"j2"}
        assert registry.get_service_error("redis") is None


class TestRecovery:

    @pytest.mark.asyncio
    async def test_orphaned_job_dropped_without_network(self, registry, backend, gateway, clock):
        """Test: Jobs older than five minutes are swept without asking the backend."""
        add_job(registry, "old", "redis")
        clock.advance(seconds=301)
        backend.on("GET", "/jobs/old", httpx.ConnectError("down"))

        await registry.recover_pending_jobs(gateway)

        assert registry.pending_jobs == {}
        assert backend.calls == []

    @pytest.mark.asyncio
    async def test_recovery_applies_job_outcomes(self, registry, backend, gateway):
        add_job(registry, "done", "redis")
        add_job(registry, "bad", "caddy")
        add_job(registry, "running", "mysql")
        add_job(registry, "missing", "mailpit")
        backend.on("GET", "/jobs/done", (200, {"success": True, "status": "completed"}))
        backend.on("GET", "/jobs/bad", (200, {"success": True, "status": "failed", "error": "port in use"}))
        backend.on("GET", "/jobs/running", (200, {"success": True, "status": "processing"}))

        await registry.recover_pending_jobs(gateway)

        assert set(registry.pending_jobs) == {"bad", "running"}
        assert registry.get_service_error("caddy") == "port in use"

    @pytest.mark.asyncio
    async def test_recovery_network_error_clears_job(self, registry, backend, gateway):
        add_job(registry, "j1", "redis")
        backend.on("GET", "/jobs/j1", httpx.ReadTimeout("slow"))

        await registry.recover_pending_jobs(gateway)

        assert registry.pending_jobs == {}

    @pytest.mark.asyncio
    async def test_recovery_keeps_sticky_errors(self, registry, backend, gateway):
        add_job(registry, "j1", "redis", error="timeout")

        await registry.recover_pending_jobs(gateway)

        assert registry.get_service_error("redis") == "timeout"
        assert backend.calls == []


class TestPersistence:

    @pytest.mark.asyncio
    async def test_caches_survive_restart(self, storage, backend, gateway, clock):
        """Test: Environment caches are reloaded from storage."""
        registry = ServiceRegistry(storage, clock=clock)
        registry.set_active_environment(3)
        backend.on("GET", "/status", (200, status_payload(redis="running")))
        backend.on("POST", "/services/redis/stop", (200, {"success": True, "jobId": "s1"}))
        await registry.fetch_services(gateway)
        await registry.stop_service("redis", gateway)

        reloaded = ServiceRegistry(storage, clock=clock)
        reloaded.set_active_environment(3)

        assert reloaded.services["redis"].status == "running"
        assert reloaded.pending_jobs["s1"].started_at == clock()
        assert reloaded.current_env.last_updated == clock()
        assert not reloaded.is_stale
