"""Per-environment service status and in-flight job tracking."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union

from .gateway import BackendGateway, GatewayError
from .models import (
    DispatchResult,
    EnvironmentCache,
    GlobalAction,
    PendingJob,
    Service,
    ServiceAction,
    ServiceType,
    utcnow,
)
from .storage import Storage

logger = logging.getLogger(__name__)

STALE_TTL = timedelta(minutes=5)
JOB_STALE_TIMEOUT = timedelta(minutes=5)


class ServiceRegistry:
    """Single source of truth for service status in the active environment.

    Every environment seen gets its own :class:`EnvironmentCache`. Only the
    active environment is mutated by dispatch and events; all caches remain
    readable through :meth:`environment`.
    """

    def __init__(
        self,
        storage: Optional[Storage] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.clock = clock
        self.environments: Dict[int, EnvironmentCache] = storage.load_environments() if storage else {}
        self.active_environment_id: Optional[int] = None

    def _persist(self) -> None:
        if self.storage is not None:
            self.storage.save_environments(self.environments)

    @property
    def current_env(self) -> Optional[EnvironmentCache]:
        if self.active_environment_id is None:
            return None
        return self.environments.get(self.active_environment_id)

    def environment(self, env_id: int) -> Optional[EnvironmentCache]:
        """Cache for any environment, active or not."""
        return self.environments.get(env_id)

    def set_active_environment(self, env_id: int) -> None:
        """Switch context, creating an empty cache for unseen environments."""
        self.active_environment_id = env_id
        if env_id not in self.environments:
            self.environments[env_id] = EnvironmentCache()

    # Derived reads

    @property
    def services(self) -> Dict[str, Service]:
        env = self.current_env
        return env.services if env else {}

    @property
    def pending_jobs(self) -> Dict[str, PendingJob]:
        env = self.current_env
        return env.pending_jobs if env else {}

    @property
    def services_running(self) -> int:
        return sum(1 for s in self.services.values() if s.status == "running")

    @property
    def services_total(self) -> int:
        return len(self.services)

    @property
    def is_stale(self) -> bool:
        env = self.current_env
        if env is None or env.last_updated is None:
            return True
        return self.clock() - env.last_updated > STALE_TTL

    def is_service_pending(self, service: str) -> bool:
        return any(job.service == service for job in self.pending_jobs.values())

    def get_service_error(self, service: str) -> Optional[str]:
        for job in self.pending_jobs.values():
            if job.service == service and job.error:
                return job.error
        return None

    # Fetching

    async def fetch_services(self, gateway: BackendGateway) -> bool:
        """Replace the active environment's service map from ``/status``.

        Returns False when the fetch failed; the cache is left untouched.
        """
        if self.current_env is None:
            return False
        env_id = self.active_environment_id

        try:
            services = await gateway.fetch_status()
        except GatewayError as e:
            logger.error(f"Failed to fetch services: {e}")
            return False

        env = self.environments[env_id]
        env.services = services
        env.last_updated = self.clock()
        self._persist()
        return True

    async def refresh_if_stale(self, gateway: BackendGateway) -> bool:
        """Fetch services only when the cache cannot be trusted for display."""
        if self.is_stale:
            return await self.fetch_services(gateway)
        return True

    # Dispatch

    async def dispatch_service_action(
        self,
        service: str,
        action: Union[ServiceAction, str],
        gateway: BackendGateway,
        service_type: Union[ServiceType, str] = ServiceType.DOCKER,
    ) -> DispatchResult:
        """Send a single-service action, registering a pending job if one is issued.

        The service map is not touched; the eventual status event (or a
        refresh) brings it up to date.
        """
        action = ServiceAction(action)
        if self.current_env is None:
            return DispatchResult(success=False, error="No active environment")
        env_id = self.active_environment_id

        result = await gateway.dispatch_service_action(service, action, service_type)

        if result.job_id:
            env = self.environments[env_id]
            env.pending_jobs[result.job_id] = PendingJob(
                job_id=result.job_id,
                service=service,
                action=action,
                started_at=self.clock(),
            )
            self._persist()
        elif not result.success:
            logger.warning(f"Failed to {action.value} service {service}: {result.error}")

        return result

    async def start_service(self, service: str, gateway: BackendGateway,
                            service_type: Union[ServiceType, str] = ServiceType.DOCKER) -> DispatchResult:
        return await self.dispatch_service_action(service, ServiceAction.START, gateway, service_type)

    async def stop_service(self, service: str, gateway: BackendGateway,
                           service_type: Union[ServiceType, str] = ServiceType.DOCKER) -> DispatchResult:
        return await self.dispatch_service_action(service, ServiceAction.STOP, gateway, service_type)

    async def restart_service(self, service: str, gateway: BackendGateway,
                              service_type: Union[ServiceType, str] = ServiceType.DOCKER) -> DispatchResult:
        return await self.dispatch_service_action(service, ServiceAction.RESTART, gateway, service_type)

    async def enable_service(self, service: str, gateway: BackendGateway) -> DispatchResult:
        return await self.dispatch_service_action(service, ServiceAction.ENABLE, gateway)

    async def disable_service(self, service: str, gateway: BackendGateway) -> DispatchResult:
        return await self.dispatch_service_action(service, ServiceAction.DISABLE, gateway)

    async def dispatch_global_action(
        self,
        action: Union[GlobalAction, str],
        gateway: BackendGateway,
    ) -> DispatchResult:
        """Bulk start/stop/restart. Fire-and-forget: no job is registered."""
        action = GlobalAction(action)
        result = await gateway.dispatch_global_action(action)
        if not result.success:
            logger.warning(f"Failed to {action.value} all services: {result.error}")
        return result

    async def start_all(self, gateway: BackendGateway) -> DispatchResult:
        return await self.dispatch_global_action(GlobalAction.START, gateway)

    async def stop_all(self, gateway: BackendGateway) -> DispatchResult:
        return await self.dispatch_global_action(GlobalAction.STOP, gateway)

    async def restart_all(self, gateway: BackendGateway) -> DispatchResult:
        return await self.dispatch_global_action(GlobalAction.RESTART, gateway)

    # Events

    def handle_service_status_changed(
        self,
        job_id: Optional[str],
        service: str,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        """Apply a ``service.status.changed`` event to the active environment.

        A failed job keeps its entry with the error attached so it can be shown
        next to the service until dismissed. Unknown job ids and ``None``
        (bulk actions) only update the service status.
        """
        env = self.current_env
        if env is None:
            return

        job = env.pending_jobs.get(job_id) if job_id else None
        if job is not None:
            if error:
                job.error = error
            else:
                del env.pending_jobs[job_id]

        if service in env.services:
            env.services[service].status = status

        env.last_updated = self.clock()
        self._persist()

    def clear_pending_job_error(self, job_id: str) -> None:
        env = self.current_env
        if env is not None and env.pending_jobs.pop(job_id, None) is not None:
            self._persist()

    def clear_service_error(self, service: str) -> None:
        """Dismiss every failed job recorded for ``service``."""
        env = self.current_env
        if env is None:
            return

        job_ids = [
            job_id for job_id, job in env.pending_jobs.items()
            if job.service == service and job.error
        ]
        for job_id in job_ids:
            del env.pending_jobs[job_id]
        if job_ids:
            self._persist()

    async def recover_pending_jobs(self, gateway: BackendGateway) -> None:
        """Reconcile pending jobs after a restart or a realtime reconnect.

        Jobs older than the stale timeout are dropped without asking the
        backend. A job whose record cannot be fetched is treated as resolved.
        """
        env = self.current_env
        if env is None:
            return

        for job_id, job in list(env.pending_jobs.items()):
            if self.clock() - job.started_at > JOB_STALE_TIMEOUT:
                logger.info(f"Dropping orphaned job {job_id} ({job.action.value} {job.service})")
                env.pending_jobs.pop(job_id, None)
                continue

            if job.error:
                continue

            try:
                result = await gateway.get_job(job_id)
            except GatewayError as e:
                logger.info(f"Job {job_id} lookup failed, clearing it: {e}")
                env.pending_jobs.pop(job_id, None)
                continue

            if job_id not in env.pending_jobs:
                # Resolved by an event while the lookup was in flight
                continue
            if result.status == "completed":
                del env.pending_jobs[job_id]
            elif result.status == "failed":
                env.pending_jobs[job_id].error = result.error or "Job failed"

        self._persist()
