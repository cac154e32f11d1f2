"""CLI interface for orbitctl."""

import asyncio
import sys
from typing import List, Optional

import click

from .config import Settings, setup_logging
from .gateway import BackendGateway, GatewayError
from .models import ConnectionStatus, ProjectView, RealtimeMessage, ServiceType
from .monitor import Monitor
from .provisioning import ProvisioningTracker
from .realtime import create_event_source
from .registry import ServiceRegistry
from .storage import Storage


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def build_registry(settings: Settings) -> ServiceRegistry:
    """Registry backed by on-disk caches, with the configured environment active."""
    registry = ServiceRegistry(Storage(settings.data_dir))
    registry.set_active_environment(settings.environment_id)
    return registry


def build_gateway(settings: Settings) -> BackendGateway:
    return BackendGateway(settings.api_url, timeout=settings.request_timeout)


def run(coro):
    return asyncio.run(coro)


def fail(message: str) -> None:
    click.echo(f"✗ {message}", err=True)
    sys.exit(1)


@click.group()
@click.option("--api-url", envvar="ORBIT_API_URL", help="Base URL of the Orbit API")
@click.option("--env", "environment_id", type=int, envvar="ORBIT_ENVIRONMENT_ID", help="Environment id")
@click.option("--data-dir", envvar="ORBIT_DATA_DIR", help="Directory for cached state")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(api_url: Optional[str], environment_id: Optional[int], data_dir: Optional[str], verbose: bool):
    """orbitctl - Orbit development environment control"""
    settings = get_settings()
    if api_url:
        settings.api_url = api_url
    if environment_id is not None:
        settings.environment_id = environment_id
    if data_dir:
        settings.data_dir = data_dir
    setup_logging("DEBUG" if verbose else settings.log_level)


# Services

def print_services(registry: ServiceRegistry) -> None:
    services = registry.services
    if not services:
        click.echo("No services found")
        return

    click.echo(f"\n{'Service':<20} {'Type':<8} {'Status':<10} {'Health':<12} {'Note':<30}")
    click.echo("-" * 82)
    for name, service in sorted(services.items()):
        note = ""
        error = registry.get_service_error(name)
        if error:
            note = f"error: {error}"[:30]
        elif registry.is_service_pending(name):
            note = "pending..."
        elif service.required:
            note = "required"
        click.echo(
            f"{name:<20} {service.type.value:<8} {service.status:<10} "
            f"{(service.health or '-'):<12} {note:<30}"
        )
    click.echo(f"\nRunning: {registry.services_running}/{registry.services_total}\n")


@cli.command()
@click.option("--refresh", is_flag=True, help="Fetch even if the cache is fresh")
def status(refresh: bool):
    """Show service status for the active environment.

    Example:
        orbitctl status --refresh
    """
    settings = get_settings()
    registry = build_registry(settings)

    async def _status():
        async with build_gateway(settings) as gateway:
            if refresh:
                return await registry.fetch_services(gateway)
            return await registry.refresh_if_stale(gateway)

    if not run(_status()):
        click.echo("! Could not reach the backend, showing cached status", err=True)
    print_services(registry)


@cli.group()
def service():
    """Control a single service"""
    pass


def _dispatch(action: str, name: str, host: bool = False) -> None:
    settings = get_settings()
    registry = build_registry(settings)
    service_type = ServiceType.HOST if host else ServiceType.DOCKER

    async def _run():
        async with build_gateway(settings) as gateway:
            return await registry.dispatch_service_action(name, action, gateway, service_type)

    result = run(_run())
    if not result.success:
        fail(f"Failed to {action} {name}: {result.error or 'unknown error'}")
    if result.job_id:
        click.echo(f"✓ {action.capitalize()} {name} dispatched (job {result.job_id})")
    else:
        click.echo(f"✓ {action.capitalize()} {name}: {result.message or 'done'}")


@service.command("start")
@click.argument("name")
@click.option("--host", is_flag=True, help="Host daemon rather than a container")
def service_start(name: str, host: bool):
    """Start a service."""
    _dispatch("start", name, host)


@service.command("stop")
@click.argument("name")
@click.option("--host", is_flag=True, help="Host daemon rather than a container")
def service_stop(name: str, host: bool):
    """Stop a service."""
    _dispatch("stop", name, host)


@service.command("restart")
@click.argument("name")
@click.option("--host", is_flag=True, help="Host daemon rather than a container")
def service_restart(name: str, host: bool):
    """Restart a service."""
    _dispatch("restart", name, host)


@service.command("enable")
@click.argument("name")
def service_enable(name: str):
    """Enable an optional service."""
    _dispatch("enable", name)


@service.command("disable")
@click.argument("name")
def service_disable(name: str):
    """Disable an optional service."""
    _dispatch("disable", name)


@cli.command("all")
@click.argument("action", type=click.Choice(["start", "stop", "restart"]))
def all_services(action: str):
    """Start, stop or restart every service.

    Example:
        orbitctl all restart
    """
    settings = get_settings()
    registry = build_registry(settings)

    async def _run():
        async with build_gateway(settings) as gateway:
            result = await registry.dispatch_global_action(action, gateway)
            if result.success:
                await registry.fetch_services(gateway)
            return result

    result = run(_run())
    if not result.success:
        fail(f"Failed to {action} all services: {result.error or 'unknown error'}")
    click.echo(f"✓ {action.capitalize()} all services: done")
    print_services(registry)


# Jobs

@cli.group()
def jobs():
    """Inspect in-flight service jobs"""
    pass


@jobs.command("list")
def jobs_list():
    """List pending jobs for the active environment."""
    registry = build_registry(get_settings())
    pending = registry.pending_jobs

    if not pending:
        click.echo("No pending jobs")
        return

    click.echo(f"\n{'Job':<38} {'Service':<16} {'Action':<8} {'Started':<20} {'Error':<20}")
    click.echo("-" * 104)
    for job_id, job in pending.items():
        started = job.started_at.strftime("%Y-%m-%d %H:%M:%S")
        click.echo(
            f"{job_id:<38} {job.service:<16} {job.action.value:<8} {started:<20} {(job.error or '')[:20]:<20}"
        )
    click.echo()


@jobs.command("recover")
def jobs_recover():
    """Reconcile pending jobs with the backend."""
    settings = get_settings()
    registry = build_registry(settings)
    before = len(registry.pending_jobs)

    async def _run():
        async with build_gateway(settings) as gateway:
            await registry.recover_pending_jobs(gateway)

    run(_run())
    click.echo(f"✓ Resolved {before - len(registry.pending_jobs)} of {before} pending job(s)")


@jobs.command("clear")
@click.argument("target")
def jobs_clear(target: str):
    """Dismiss a failed job by job id or by service name."""
    registry = build_registry(get_settings())
    if target in registry.pending_jobs:
        registry.clear_pending_job_error(target)
    else:
        registry.clear_service_error(target)
    click.echo(f"✓ Cleared {target}")


# Projects

@cli.group()
def projects():
    """Manage projects"""
    pass


def print_projects(views: List[ProjectView]) -> None:
    if not views:
        click.echo("No projects found")
        return

    click.echo(f"\n{'Slug':<30} {'Status':<22} {'Note':<30}")
    click.echo("-" * 82)
    for view in views:
        status = view.deletion_status.value if view.deletion_status else (view.status or "")
        note = view.error or ("not listed yet" if view.placeholder else "")
        click.echo(f"{view.slug:<30} {status:<22} {note[:30]:<30}")
    click.echo()


@projects.command("list")
def projects_list():
    """List projects in the active environment."""
    settings = get_settings()
    tracker = ProvisioningTracker()

    async def _run():
        async with build_gateway(settings) as gateway:
            return await gateway.fetch_projects()

    try:
        listing = run(_run())
    except GatewayError as e:
        fail(f"Could not list projects: {e}")
    print_projects(tracker.reconcile(listing.projects))


def _follow(settings: Settings, gateway: BackendGateway, tracker: ProvisioningTracker,
            slug: str, deletion: bool = False):
    """Watch realtime events until ``slug`` reaches a terminal state."""
    registry = build_registry(settings)
    source = create_event_source(settings, settings.environment_id)

    def on_event(message: RealtimeMessage) -> None:
        if message.data.get("slug") != slug:
            return
        click.echo(f"  {slug}: {message.data.get('status')}")
        entry = tracker.get_deletion(slug) if deletion else tracker.get_project_status(slug)
        if entry is not None and entry.status.is_terminal:
            asyncio.get_running_loop().create_task(monitor.stop())

    monitor = Monitor(
        gateway, registry, tracker, source,
        poll_interval=settings.poll_interval,
        refresh_debounce=settings.refresh_debounce,
        on_event=on_event,
    )
    if source.status == ConnectionStatus.UNAVAILABLE:
        click.echo("! Realtime updates not configured, run `orbitctl projects list` to check progress", err=True)
        return None
    return monitor.run()


@projects.command("create")
@click.argument("name")
@click.option("--template", help="Template repository")
@click.option("--org", help="GitHub organisation for the new repository")
@click.option("--php", "php_version", help="PHP version")
@click.option("--db", "db_driver", type=click.Choice(["sqlite", "pgsql"]), help="Database driver")
@click.option("--visibility", type=click.Choice(["private", "public"]))
@click.option("--follow", is_flag=True, help="Wait and print provisioning progress")
def projects_create(name: str, template: Optional[str], org: Optional[str], php_version: Optional[str],
                    db_driver: Optional[str], visibility: Optional[str], follow: bool):
    """Create a project.

    Example:
        orbitctl projects create "My Cool App" --php 8.4 --follow
    """
    settings = get_settings()
    tracker = ProvisioningTracker()

    async def _run():
        async with build_gateway(settings) as gateway:
            result = await gateway.create_project(
                name, template=template, org=org, php_version=php_version,
                db_driver=db_driver, visibility=visibility,
            )
            if result.success:
                tracker.track_project(result.slug)
                if follow:
                    waiter = _follow(settings, gateway, tracker, result.slug)
                    if waiter is not None:
                        await waiter
            return result

    result = run(_run())
    if not result.success:
        fail(f"Failed to create project: {result.error or 'unknown error'}")

    tracked = tracker.get_project_status(result.slug)
    click.echo(f"✓ Project '{name}' is being created ({result.slug})")
    if follow and tracked is not None:
        if tracked.error:
            fail(f"{result.slug}: {tracked.status.value} - {tracked.error}")
        click.echo(f"  {result.slug}: {tracked.status.value}")


@projects.command("delete")
@click.argument("slug")
@click.option("--keep-db", is_flag=True, help="Keep the project's database")
@click.confirmation_option(prompt="Are you sure you want to delete this project?")
def projects_delete(slug: str, keep_db: bool):
    """Delete a project.

    Example:
        orbitctl projects delete my-cool-app --keep-db
    """
    settings = get_settings()
    tracker = ProvisioningTracker()
    tracker.track_deletion(slug)

    async def _run():
        async with build_gateway(settings) as gateway:
            return await gateway.delete_project(slug, keep_db=keep_db)

    result = run(_run())
    if result.success:
        tracker.mark_deletion_complete(slug)
    else:
        tracker.mark_deletion_failed(slug, result.error)

    deletion = tracker.get_deletion(slug)
    if deletion.error:
        fail(f"Failed to delete {slug}: {deletion.error}")
    click.echo(f"✓ Project {slug}: {deletion.status.value}")


# Watch

@cli.command()
def watch():
    """Follow realtime status changes until interrupted.

    Falls back to polling when no realtime server is configured.
    """
    settings = get_settings()
    registry = build_registry(settings)
    tracker = ProvisioningTracker()

    def on_event(message: RealtimeMessage) -> None:
        data = message.data
        subject = data.get("service") or data.get("slug") or "?"
        suffix = f" ({data['error']})" if data.get("error") else ""
        click.echo(f"[{message.event}] {subject}: {data.get('status')}{suffix}")

    async def _run():
        async with build_gateway(settings) as gateway:
            source = create_event_source(settings, settings.environment_id)
            monitor = Monitor(
                gateway, registry, tracker, source,
                poll_interval=settings.poll_interval,
                refresh_debounce=settings.refresh_debounce,
                on_event=on_event,
            )

            def on_status(status: ConnectionStatus) -> None:
                warning = monitor.connection_warning
                if warning:
                    click.echo(f"! {warning}", err=True)

            source.on_status_change(on_status)
            monitor.install_signal_handlers()
            await monitor.run()

    click.echo(f"Watching environment {settings.environment_id} (Ctrl+C to stop)")
    run(_run())


# Config

@cli.group()
def config():
    """Inspect configuration"""
    pass


@config.command()
def show():
    """Show current configuration.

    Example:
        orbitctl config show
    """
    cfg = get_settings()

    click.echo("\nCurrent Configuration:")
    click.echo(f"  api-url:         {cfg.api_url}")
    click.echo(f"  environment:     {cfg.environment_id}")
    click.echo(f"  data-dir:        {cfg.data_dir}")
    click.echo(f"  realtime:        {cfg.reverb_url or 'disabled (polling)'}")
    click.echo(f"  poll-interval:   {cfg.poll_interval} seconds")
    click.echo()


if __name__ == "__main__":
    cli()
