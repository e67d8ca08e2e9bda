"""CLI for Hearth: run pulls and pushes, the realtime worker and the API."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click

from hearth.calendar.errors import CalendarSyncError
from hearth.calendar.models import PushAction
from hearth.config import ConfigError, HearthConfig, resolve_config
from hearth.core.logging import configure_logging
from hearth.core.metrics import init_metrics
from hearth.db import Database
from hearth.migrations import run_migrations
from hearth.services import open_services

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Directory containing hearth.toml (defaults to $HEARTH_CONFIG_DIR)",
)
@click.pass_context
def cli(ctx: click.Context, config_dir: Path | None) -> None:
    """Hearth: two-way calendar sync for the family organizer."""
    try:
        config = resolve_config(config_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc

    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(
        config.logging.level,
        config.logging.format,
        log_root,
        instance_name=ctx.invoked_subcommand or "cli",
    )
    init_metrics(config.name)
    ctx.obj = config


def _echo_json(payload: object) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _run(coro) -> None:
    """Run *coro* and turn sync failures into a non-zero exit."""
    try:
        asyncio.run(coro)
    except CalendarSyncError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# Pull
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--user", "user_id", default=None, help="Only pull calendars of this user")
@click.option("--calendar", "calendar_id", default=None, help="Only pull this provider calendar")
@click.pass_obj
def pull(config: HearthConfig, user_id: str | None, calendar_id: str | None) -> None:
    """Run one pull cycle and print the per-calendar results."""
    _run(_pull(config, user_id, calendar_id))


async def _pull(config: HearthConfig, user_id: str | None, calendar_id: str | None) -> None:
    services = await open_services(config)
    try:
        batch = await services.pull.run_batch(user_id=user_id, calendar_id=calendar_id)
        if any(r.created + r.updated + r.deleted for r in batch.calendars):
            await services.cross_context.broadcast()
        _echo_json(batch.model_dump(mode="json"))
    finally:
        await services.close()


@cli.command()
@click.option(
    "--interval",
    type=float,
    default=None,
    help="Seconds between pull cycles (defaults to pull.poll_interval_s)",
)
@click.pass_obj
def worker(config: HearthConfig, interval: float | None) -> None:
    """Poll the provider forever and dispatch realtime change notifications."""
    click.echo(f"Starting {config.name} sync worker")
    asyncio.run(_worker(config, interval))


async def _worker(config: HearthConfig, interval: float | None) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    services = await open_services(config)
    # SIGHUP asks for a full pull without waiting out the interval.
    loop.add_signal_handler(signal.SIGHUP, services.pull.request_immediate_pull)
    try:
        await services.start_realtime()
        tasks = [
            asyncio.create_task(services.pull.poll_forever(interval), name="hearth-pull-poller")
        ]
        if services.watches.enabled:
            tasks.append(
                asyncio.create_task(services.watches.renew_forever(), name="hearth-watch-renewal")
            )
        await shutdown_event.wait()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
    finally:
        await services.close()


# ---------------------------------------------------------------------------
# Watch channels
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--user", "user_id", default=None, help="Only this user (requires --calendar)")
@click.option("--calendar", "calendar_id", default=None, help="Only this provider calendar")
@click.option("--stop", is_flag=True, help="Stop the channel instead of registering it")
@click.pass_obj
def watch(config: HearthConfig, user_id: str | None, calendar_id: str | None, stop: bool) -> None:
    """Register (or renew) provider push-notification channels."""
    if (user_id is None) != (calendar_id is None):
        raise click.UsageError("--user and --calendar must be given together")
    if stop and user_id is None:
        raise click.UsageError("--stop needs --user and --calendar")
    if not config.watch.webhook_url and not stop:
        raise click.ClickException("watch.webhook_url is not configured")
    _run(_watch(config, user_id, calendar_id, stop))


async def _watch(
    config: HearthConfig, user_id: str | None, calendar_id: str | None, stop: bool
) -> None:
    services = await open_services(config)
    try:
        if stop:
            stopped = await services.watches.stop_watch(user_id, calendar_id)
            click.echo("Watch channel stopped" if stopped else "No watch channel registered")
            return
        if user_id is not None and calendar_id is not None:
            results = [await services.watches.ensure_watch(user_id, calendar_id)]
        else:
            results = await services.watches.ensure_all()
        _echo_json([r.model_dump(mode="json") for r in results])
    finally:
        await services.close()


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------


@cli.command()
@click.argument("event_id")
@click.option("--user", "user_id", required=True, help="User whose credentials are used")
@click.option("--calendar", "calendar_id", default=None, help="Target provider calendar")
@click.option(
    "--action",
    type=click.Choice([a.value for a in PushAction]),
    default=PushAction.UPDATE.value,
    show_default=True,
)
@click.pass_obj
def push(
    config: HearthConfig, event_id: str, user_id: str, calendar_id: str | None, action: str
) -> None:
    """Mirror one local event to the provider."""
    _run(_push(config, event_id, PushAction(action), user_id, calendar_id))


@cli.command()
@click.argument("event_id")
@click.option("--user", "user_id", required=True, help="User whose credentials are used")
@click.option("--calendar", "calendar_id", default=None, help="Provider calendar to delete from")
@click.pass_obj
def unpush(config: HearthConfig, event_id: str, user_id: str, calendar_id: str | None) -> None:
    """Delete the remote counterpart of one local event and stop syncing it."""
    _run(_push(config, event_id, PushAction.DELETE, user_id, calendar_id))


async def _push(
    config: HearthConfig,
    event_id: str,
    action: PushAction,
    user_id: str,
    calendar_id: str | None,
) -> None:
    services = await open_services(config)
    try:
        result = await services.push.push(
            event_id, action, user_id=user_id, calendar_id=calendar_id
        )
        # ICS mail is sent from the worker pool; let it finish before closing.
        await services.pool.join()
        _echo_json(result.model_dump(mode="json"))
    finally:
        await services.close()


@cli.command("push-pending")
@click.option("--user", "user_id", required=True, help="User whose credentials are used")
@click.option("--calendar", "calendar_id", default=None, help="Only push events of this calendar")
@click.pass_obj
def push_pending(config: HearthConfig, user_id: str, calendar_id: str | None) -> None:
    """Push every sync-enabled event that has no remote counterpart yet."""
    _run(_push_pending(config, user_id, calendar_id))


async def _push_pending(config: HearthConfig, user_id: str, calendar_id: str | None) -> None:
    services = await open_services(config)
    try:
        results = await services.push.push_pending(user_id=user_id, calendar_id=calendar_id)
        await services.pool.join()
        _echo_json([r.model_dump(mode="json") for r in results])
    finally:
        await services.close()


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


@cli.command()
@click.pass_obj
def refresh(config: HearthConfig) -> None:
    """Tell every running Hearth process to refresh all domains."""
    _run(_refresh(config))


async def _refresh(config: HearthConfig) -> None:
    services = await open_services(config)
    try:
        marker = await services.cross_context.broadcast()
        click.echo(f"Refresh broadcast at {marker}")
    finally:
        await services.close()


# ---------------------------------------------------------------------------
# Serve / migrate
# ---------------------------------------------------------------------------


@cli.command()
@click.option("--host", default=None, help="Bind address (defaults to hearth.api.host)")
@click.option("--port", type=int, default=None, help="Bind port (defaults to hearth.api.port)")
@click.option("--no-realtime", is_flag=True, help="Do not start LISTEN and the dispatcher")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, no_realtime: bool) -> None:
    """Run the sync HTTP API under uvicorn."""
    import uvicorn

    from hearth.api.app import create_app

    config: HearthConfig = ctx.obj
    config_dir = ctx.parent.params.get("config_dir") if ctx.parent else None
    app = create_app(config_dir=config_dir, realtime=not no_realtime)
    uvicorn.run(
        app,
        host=host or config.api.host,
        port=port or config.api.port,
        log_config=None,
    )


@cli.command()
@click.pass_obj
def migrate(config: HearthConfig) -> None:
    """Upgrade the Hearth database schema to the latest revision."""
    db = Database.from_env(config.db_name, config.db_schema)
    click.echo(f"Migrating database {db.db_name} (schema={db.schema or 'public'})")
    asyncio.run(run_migrations(db.dsn, db.schema))
    click.echo("Migrations complete")
