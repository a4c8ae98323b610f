"""Command-line entry point for operating Cally against the configured database."""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click
from pydantic import BaseModel

from cally.config import CallyConfig, ConfigError, load_config
from cally.core.logging import configure_logging
from cally.credentials.models import AccountSelector, Provider
from cally.db import Database, ensure_schema
from cally.errors import CallyError, InvalidInputError, error_payload
from cally.events.models import EventOrigin, TimeWindow
from cally.services import CallyServices, open_services


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(item) for item in value]
    return value


def _emit(value: Any) -> None:
    click.echo(json.dumps(_jsonable(value), indent=2, default=str))


def _fail(payload: dict[str, Any]) -> None:
    click.echo(json.dumps(payload, indent=2), err=True)
    sys.exit(1)


def _parse_moment(value: str, option: str) -> datetime:
    try:
        moment = datetime.fromisoformat(value)
    except ValueError as exc:
        raise click.BadParameter(f"not an ISO 8601 timestamp: {value}", param_hint=option) from exc
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=UTC)


def _run(ctx: click.Context, action: Callable[[CallyServices], Awaitable[Any]]) -> None:
    config: CallyConfig = ctx.obj["config"]

    async def _main() -> Any:
        async with open_services(config) as services:
            return await action(services)

    try:
        result = asyncio.run(_main())
    except CallyError as exc:
        _fail(error_payload(exc))
    else:
        _emit(result)


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to cally.toml",
)
@click.option("--log-level", default=None, help="Override [cally.logging].level")
@click.option(
    "--log-format",
    type=click.Choice(["text", "json"]),
    default=None,
    help="Override [cally.logging].format",
)
@click.pass_context
def cli(
    ctx: click.Context, config_path: Path | None, log_level: str | None, log_format: str | None
) -> None:
    """Cally: calendar and Jira sync with task time tracking."""
    try:
        config = load_config(config_path) if config_path is not None else CallyConfig()
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=log_level or config.logging.level,
        fmt=log_format or config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    ctx.obj = {"config": config}


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database and every table if missing."""
    config: CallyConfig = ctx.obj["config"]

    async def _main() -> None:
        db = Database.from_env(config.db_name)
        await db.provision()
        pool = await db.connect()
        try:
            await ensure_schema(pool)
        finally:
            await db.close()

    asyncio.run(_main())
    click.echo(f"Schema ready in database {config.db_name}")


@cli.command()
@click.argument("user_id")
@click.argument("provider", type=click.Choice([p.value for p in Provider]))
@click.option("--account-id", default=None, help="Provider account id (default: primary)")
@click.pass_context
def token(ctx: click.Context, user_id: str, provider: str, account_id: str | None) -> None:
    """Obtain a valid token, refreshing if needed. The token itself is never printed."""

    async def action(services: CallyServices) -> dict[str, Any]:
        access = await services.credentials.get_valid_token(
            user_id, Provider(provider), AccountSelector(account_id=account_id)
        )
        return {
            "credential_id": str(access.credential_id),
            "provider": access.provider.value,
            "account_id": access.account_id,
            "account_name": access.account_name,
            "expires_at": access.expires_at.isoformat() if access.expires_at else None,
        }

    _run(ctx, action)


@cli.command("sync-calendar")
@click.argument("user_id")
@click.option("--calendar-id", default="primary", show_default=True)
@click.option("--all", "all_calendars", is_flag=True, help="Reconcile every calendar")
@click.pass_context
def sync_calendar(ctx: click.Context, user_id: str, calendar_id: str, all_calendars: bool) -> None:
    """Reconcile cached Google Calendar events for the current year."""

    async def action(services: CallyServices) -> Any:
        if all_calendars:
            return await services.calendar.reconcile_all_calendars(user_id)
        return await services.calendar.reconcile(user_id, calendar_id)

    _run(ctx, action)


@cli.command("sync-issues")
@click.argument("user_id")
@click.pass_context
def sync_issues(ctx: click.Context, user_id: str) -> None:
    """Refresh the status of every cached Jira task."""

    async def action(services: CallyServices) -> Any:
        return await services.issues.reconcile_issue_statuses(user_id)

    _run(ctx, action)


@cli.command()
@click.argument("user_id")
@click.option("--include-done", is_flag=True, help="Include issues in the Done category")
@click.pass_context
def issues(ctx: click.Context, user_id: str, include_done: bool) -> None:
    """List assigned Jira issues across every connected account."""

    async def action(services: CallyServices) -> Any:
        return await services.issues.fetch_assigned_issues(user_id, exclude_done=not include_done)

    _run(ctx, action)


@cli.command()
@click.argument("user_id")
@click.pass_context
def overruns(ctx: click.Context, user_id: str) -> None:
    """Check the current main task against its estimate."""

    async def action(services: CallyServices) -> Any:
        check = await services.time_manager.check_for_overruns(user_id)
        return check if check is not None else {"type": "ok"}

    _run(ctx, action)


@cli.command()
@click.argument("user_id")
@click.option("--limit", type=int, default=None, help="Maximum number of suggestions")
@click.pass_context
def suggestions(ctx: click.Context, user_id: str, limit: int | None) -> None:
    """Suggest what to work on next today."""

    async def action(services: CallyServices) -> Any:
        return await services.time_manager.get_next_task_suggestions(user_id, limit=limit)

    _run(ctx, action)


@cli.command()
@click.argument("user_id")
@click.option("--start", default=None, help="ISO start of the window (UTC when no offset)")
@click.option("--end", default=None, help="ISO end of the window, exclusive")
@click.option(
    "--type", "event_type", type=click.Choice([o.value for o in EventOrigin]), default=None
)
@click.pass_context
def events(
    ctx: click.Context,
    user_id: str,
    start: str | None,
    end: str | None,
    event_type: str | None,
) -> None:
    """List cached events, optionally within a window and of one origin."""
    if (start is None) != (end is None):
        raise click.UsageError("--start and --end must be given together")
    window: TimeWindow | None = None
    if start is not None and end is not None:
        try:
            window = TimeWindow(_parse_moment(start, "--start"), _parse_moment(end, "--end"))
        except InvalidInputError as exc:
            _fail(error_payload(exc))

    async def action(services: CallyServices) -> Any:
        origin = EventOrigin(event_type) if event_type is not None else None
        return await services.events.list_events(user_id, window, origin)

    _run(ctx, action)


@cli.command("event-stats")
@click.argument("user_id")
@click.pass_context
def event_stats(ctx: click.Context, user_id: str) -> None:
    """Count cached events: total, today, upcoming and per origin."""

    async def action(services: CallyServices) -> Any:
        return await services.events.event_stats(user_id)

    _run(ctx, action)


if __name__ == "__main__":
    cli()
