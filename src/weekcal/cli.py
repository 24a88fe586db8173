"""CLI for weekcal: sync a declared weekly routine into Google Calendar."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import click

from weekcal import __version__
from weekcal.config import DEFAULT_CONFIG_FILENAME, ConfigError, WeekcalConfig, load_config
from weekcal.core.anchor import expand_template, next_week_start
from weekcal.core.cleanup import CleanupReport
from weekcal.core.logging import configure_logging
from weekcal.credentials import (
    build_authorization_url,
    exchange_code_for_tokens,
    extract_authorization_code,
    load_client_secrets,
    load_credentials,
    save_token,
)
from weekcal.errors import CredentialError, InvalidTimeOfDayError
from weekcal.gateway import CalendarGateway
from weekcal.google import GoogleCalendarGateway
from weekcal.service import SyncResult, SyncService

logger = logging.getLogger(__name__)


def _build_gateway(config: WeekcalConfig) -> CalendarGateway:
    credentials = load_credentials(
        config.credentials.client_secrets_file,
        config.credentials.token_file,
    )
    return GoogleCalendarGateway(
        calendar_id=config.calendar_id,
        timezone=config.timezone,
        credentials=credentials,
    )


def _load(ctx: click.Context) -> WeekcalConfig:
    config_path: Path = ctx.obj["config_path"]
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Config error: {exc}", err=True)
        sys.exit(2)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    return config


def _service(config: WeekcalConfig) -> SyncService:
    try:
        gateway = _build_gateway(config)
    except CredentialError as exc:
        click.echo(f"Credential error: {exc}", err=True)
        click.echo("Run `weekcal authorize` to create a token file.", err=True)
        sys.exit(2)
    return SyncService(config, gateway)


def _echo_sync_result(result: SyncResult) -> None:
    report = result.report
    for outcome in report.outcomes:
        marker = "ok" if outcome.settled else "FAILED"
        detail = f"{outcome.created} created, {outcome.updated} updated"
        if outcome.recovered:
            detail += ", recreated"
        click.echo(f"  {marker:<7} {outcome.key:<40} {detail}")
        for error in outcome.errors:
            click.echo(f"          - {error}")
    click.echo(
        f"{report.created} created, {report.updated} updated, "
        f"{report.recovered} recreated, {len(report.failed)} failed"
    )
    if not result.persisted:
        click.echo("Warning: event ids could not be saved; the next run will recreate events.")


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=Path(DEFAULT_CONFIG_FILENAME),
    show_default=True,
    help="Path to weekcal.toml (or a directory containing it)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path) -> None:
    """weekcal: keep Google Calendar in step with a declared weekly routine."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Update tracked events and create missing ones for the coming week."""
    config = _load(ctx)
    service = _service(config)

    async def _run() -> SyncResult:
        try:
            return await service.sync()
        finally:
            await service.shutdown()

    result = asyncio.run(_run())
    _echo_sync_result(result)
    if not result.ok:
        sys.exit(1)


@cli.command()
@click.option("--settle", type=float, default=None, help="Seconds to wait after deleting")
@click.pass_context
def cleanup(ctx: click.Context, settle: float | None) -> None:
    """Delete every event recorded in the state file."""
    config = _load(ctx)
    service = _service(config)

    async def _run() -> CleanupReport:
        try:
            return await service.cleanup(settle_seconds=settle)
        finally:
            await service.shutdown()

    report = asyncio.run(_run())
    click.echo(f"Deleted {len(report.deleted)} event(s), {len(report.failed)} failed")
    for key, error in report.failed.items():
        click.echo(f"  {key}: {error}")


@cli.command()
@click.option("--settle", type=float, default=None, help="Seconds to wait after deleting")
@click.pass_context
def rebuild(ctx: click.Context, settle: float | None) -> None:
    """Delete every tracked event, then recreate all templates from scratch."""
    config = _load(ctx)
    service = _service(config)

    async def _run() -> tuple[CleanupReport, SyncResult]:
        try:
            return await service.rebuild(settle_seconds=settle)
        finally:
            await service.shutdown()

    cleanup_report, result = asyncio.run(_run())
    click.echo(
        f"Deleted {len(cleanup_report.deleted)} event(s), {len(cleanup_report.failed)} failed"
    )
    _echo_sync_result(result)
    if not result.ok:
        sys.exit(1)


@cli.command("templates")
@click.pass_context
def templates_cmd(ctx: click.Context) -> None:
    """List configured templates and when they land next week."""
    config = _load(ctx)
    if not config.templates:
        click.echo("No templates configured")
        return

    week_start = next_week_start(datetime.now(ZoneInfo(config.timezone)))
    click.echo(f"Week of {week_start.isoformat()} ({config.timezone})")
    click.echo(f"{'Title':<32} {'Start':<6} {'Length':<8} {'Days'}")
    click.echo("-" * 80)
    for template in config.templates:
        minutes = int(template.duration.total_seconds() // 60)
        length = f"{minutes // 60}h{minutes % 60:02d}m"
        try:
            occurrences = expand_template(template, week_start, config.timezone)
        except InvalidTimeOfDayError as exc:
            click.echo(f"{template.title:<32} {'ERROR':<6} {length:<8} {exc}")
            continue
        days = ", ".join(
            f"{o.weekday.short_name} {o.start_at.strftime('%m-%d')}" for o in occurrences
        )
        click.echo(f"{template.title:<32} {template.start_time:<6} {length:<8} {days}")


@cli.command()
@click.pass_context
def authorize(ctx: click.Context) -> None:
    """Run the OAuth consent flow and save a token file."""
    config = _load(ctx)
    try:
        client = load_client_secrets(config.credentials.client_secrets_file)
    except CredentialError as exc:
        click.echo(f"Credential error: {exc}", err=True)
        sys.exit(2)

    url, _state = build_authorization_url(client)
    click.echo("Go to the following link in your browser, then paste the authorization code")
    click.echo("(or the full URL you were redirected to):")
    click.echo(url)
    raw_code = click.prompt("Authorization code", type=str)

    try:
        code = extract_authorization_code(raw_code)
        tokens = asyncio.run(exchange_code_for_tokens(client, code))
    except CredentialError as exc:
        click.echo(f"Authorization failed: {exc}", err=True)
        sys.exit(1)

    save_token(config.credentials.token_file, tokens)
    click.echo(f"Saved credential file to: {config.credentials.token_file}")
