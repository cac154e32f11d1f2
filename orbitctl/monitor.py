"""Long-running loop that keeps the registry and tracker reconciled."""

import asyncio
import logging
import signal
from typing import Callable, List, Optional, Set

from .gateway import BackendGateway, GatewayError
from .models import ConnectionStatus, ProjectView, RealtimeMessage
from .provisioning import ProvisioningTracker
from .realtime import (
    PROVISION_STATUS_EVENT,
    PROVISIONING_CHANNEL,
    EventDispatcher,
    EventSource,
    connection_warning,
)
from .registry import ServiceRegistry

logger = logging.getLogger(__name__)


class Monitor:
    """Consumes realtime events and falls back to polling when they stop.

    On every (re)connect the pending-job recovery sweep runs, since events
    may have been missed while disconnected. A tracker counter bump (a
    project became ready or was deleted) schedules one debounced refresh of
    the project list.
    """

    def __init__(
        self,
        gateway: BackendGateway,
        registry: ServiceRegistry,
        tracker: ProvisioningTracker,
        source: EventSource,
        poll_interval: float = 10.0,
        refresh_debounce: float = 1.0,
        on_event: Optional[Callable[[RealtimeMessage], None]] = None,
    ):
        self.gateway = gateway
        self.registry = registry
        self.tracker = tracker
        self.source = source
        self.dispatcher = EventDispatcher(registry, tracker)
        self.poll_interval = poll_interval
        self.refresh_debounce = refresh_debounce
        self.on_event = on_event
        self.running = False
        self.projects: List[ProjectView] = []
        self._tasks: Set[asyncio.Task] = set()
        self._refresh_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

        source.on_status_change(self._handle_status_change)

    @property
    def connection_warning(self) -> Optional[str]:
        return connection_warning(self.source.status)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background reconciliation failed", exc_info=task.exception())

    def _handle_status_change(self, status: ConnectionStatus) -> None:
        if status == ConnectionStatus.CONNECTED and self.running:
            self._spawn(self.reconcile())

    # Reconciliation steps

    async def reconcile(self) -> None:
        """Catch up on anything the realtime channel may have missed."""
        await self.registry.recover_pending_jobs(self.gateway)
        await self.registry.refresh_if_stale(self.gateway)
        await self.recover_provisioning()
        await self.refresh_projects()

    async def poll_once(self) -> None:
        """One polling round used while realtime delivery is unavailable."""
        await self.registry.fetch_services(self.gateway)
        await self.registry.recover_pending_jobs(self.gateway)
        await self.recover_provisioning()
        await self.refresh_projects()

    async def recover_provisioning(self) -> None:
        """Ask the backend about projects still mid-creation."""
        for slug in self.tracker.in_flight():
            try:
                data = await self.gateway.provision_status(slug)
            except GatewayError as e:
                logger.debug(f"Provision status for {slug} unavailable: {e}")
                continue

            payload = data.get("data") if isinstance(data.get("data"), dict) else data
            status = payload.get("status")
            if not status:
                continue
            event = {
                "slug": slug,
                "status": status,
                "error": payload.get("error"),
                "project_id": payload.get("project_id"),
            }
            if self.tracker.handle_event(event) and self.on_event:
                self.on_event(RealtimeMessage(
                    channel=PROVISIONING_CHANNEL, event=PROVISION_STATUS_EVENT, data=event,
                ))

    async def refresh_projects(self) -> bool:
        """Re-fetch the project list and merge it with tracked state."""
        try:
            listing = await self.gateway.fetch_projects()
        except GatewayError as e:
            logger.warning(f"Failed to refresh projects: {e}")
            return False

        self.tracker.prune_confirmed(listing.projects)
        self.tracker.prune_deleted(listing.projects)
        self.projects = self.tracker.reconcile(listing.projects)
        return True

    def schedule_refresh(self) -> None:
        """Coalesce refresh requests arriving within the debounce window."""
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = self._spawn(self._debounced_refresh())

    async def _debounced_refresh(self) -> None:
        await asyncio.sleep(self.refresh_debounce)
        await self.refresh_projects()

    # Loop

    def install_signal_handlers(self) -> None:
        """Stop gracefully on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, lambda: self._spawn(self.stop()))
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform's event loop
                pass

    async def run(self) -> None:
        """Run until :meth:`stop` is called.

        If the source gives up (a fatal realtime error) the monitor keeps
        polling instead of exiting.
        """
        self.running = True
        self._stopped.clear()
        logger.info("Monitor started")

        if self.source.status == ConnectionStatus.UNAVAILABLE:
            await self.poll_once()

        poller = asyncio.create_task(self._poll_loop())
        try:
            await self._consume()
            if self.running:
                logger.warning("Realtime source ended, continuing with polling")
                await self._stopped.wait()
        finally:
            self.running = False
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass
            logger.info("Monitor stopped")

    async def _consume(self) -> None:
        async for message in self.source.messages():
            counts = (self.tracker.project_ready_count, self.tracker.project_deleted_count)
            if self.dispatcher.dispatch(message) and self.on_event:
                self.on_event(message)
            if counts != (self.tracker.project_ready_count, self.tracker.project_deleted_count):
                self.schedule_refresh()
            if not self.running:
                break

    async def _poll_loop(self) -> None:
        while self.running:
            await asyncio.sleep(self.poll_interval)
            if self.source.status == ConnectionStatus.CONNECTED:
                continue
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Polling error: {e}", exc_info=True)

    async def stop(self) -> None:
        """Stop consuming and cancel in-flight reconciliation."""
        self.running = False
        self._stopped.set()
        await self.source.close()
        for task in list(self._tasks):
            if task is not asyncio.current_task():
                task.cancel()
