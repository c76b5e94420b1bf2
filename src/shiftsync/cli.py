"""CLI for shiftsync: watch the inbox, or extract shifts from a single PDF."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import httpx
from dotenv import load_dotenv

from shiftsync import __version__
from shiftsync.calendar.google import (
    GoogleCalendarClient,
    GoogleOAuthClient,
    GoogleOAuthCredentials,
)
from shiftsync.calendar.sync import CalendarSync
from shiftsync.config import ShiftSyncConfig
from shiftsync.connectors.cursor import CursorStore
from shiftsync.connectors.imap import ImapMailbox, ImapSettings
from shiftsync.connectors.metrics import WatcherMetrics, start_metrics_server
from shiftsync.connectors.supervisor import ReconnectSupervisor
from shiftsync.core.logging import configure_logging
from shiftsync.pipeline import ShiftPipeline, extract_from_pdf
from shiftsync.schedule.models import ExtractionError

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--env-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Load environment variables from this file (default: ./.env if present)",
)
def cli(env_file: Path | None) -> None:
    """shiftsync: weekly schedule PDFs from the inbox into Google Calendar."""
    load_dotenv(dotenv_path=env_file)


@cli.command()
def watch() -> None:
    """Watch the mailbox and sync every new schedule until SIGINT/SIGTERM."""
    try:
        config = ShiftSyncConfig.from_env()
    except ValueError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)

    configure_logging(
        level=config.log_level,
        fmt=config.log_format,
        mailbox=f"{config.email_username}@{config.email_host}",
    )
    asyncio.run(run_watcher(config))


@cli.command()
@click.argument("pdf", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--name", envvar="TARGET_NAME", required=True, help="Row label to extract")
@click.option(
    "--filename",
    default=None,
    help="Weekplanning filename carrying the date range (default: the PDF's own name)",
)
def extract(pdf: Path, name: str, filename: str | None) -> None:
    """Print the shifts of NAME found in PDF as JSON."""
    configure_logging(level="WARNING")
    try:
        shifts = extract_from_pdf(pdf.read_bytes(), filename or pdf.name, name)
    except ExtractionError as exc:
        click.echo(f"Extraction failed: {exc}", err=True)
        sys.exit(1)
    click.echo(json.dumps([shift.to_dict() for shift in shifts], indent=2))


async def run_watcher(config: ShiftSyncConfig) -> None:
    """Wire the mailbox, pipeline and calendar together and run until shutdown."""
    identity = f"{config.email_username}@{config.email_host}"
    metrics = WatcherMetrics(identity)
    if config.metrics_port is not None:
        start_metrics_server(config.metrics_port)
        logger.info("Serving metrics on port %d", config.metrics_port)

    settings = ImapSettings(
        host=config.email_host,
        port=config.email_port,
        username=config.email_username,
        password=config.email_password,
        mailbox=config.email_mailbox,
        socket_timeout_s=config.email_socket_timeout_s,
    )
    credentials = GoogleOAuthCredentials(
        client_id=config.google_client_id,
        client_secret=config.google_client_secret,
        refresh_token=config.google_refresh_token,
    )

    async with httpx.AsyncClient(timeout=30.0) as http_client:
        calendar = CalendarSync(
            GoogleCalendarClient(GoogleOAuthClient(credentials, http_client), http_client),
            config.calendar_id,
            timezone=config.calendar_timezone,
            summary_prefix=config.event_summary_prefix,
            replace_week=config.calendar_replace_week,
            metrics=metrics,
        )
        pipeline = ShiftPipeline(
            target_sender=config.target_sender,
            target_name=config.target_name,
            calendar=calendar,
            debug_mode=config.debug_mode,
            debug_sender=config.debug_sender,
            metrics=metrics,
        )
        supervisor = ReconnectSupervisor(
            lambda: ImapMailbox(settings),
            pipeline.handle,
            CursorStore(config.cursor_kind, config.cursor_path),
            reconnect_backoff_s=config.reconnect_backoff_s,
            logout_timeout_s=config.logout_timeout_s,
            poll_interval_s=config.poll_interval_s,
            metrics=metrics,
        )
        supervisor.install_signal_handlers()
        await supervisor.run()
