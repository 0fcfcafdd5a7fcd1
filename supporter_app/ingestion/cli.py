"""
Flask CLI commands for ingestion operations.

Scheduled jobs can be run inline here for backfills and incident response;
the worker runs the same code paths on its beat schedule.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from supporter_app.ingestion.adapters import build_clients
from supporter_app.ingestion.celery_app import INGESTION_QUEUE, SCHEDULED_QUEUE, get_celery_app
from supporter_app.ingestion.errors import (
    InvalidMergeRequest,
    MalformedMessage,
    MergeConflict,
    SupporterNotFound,
    UnknownSourceSystem,
)
from supporter_app.ingestion.pipeline.classifier import run_classification
from supporter_app.ingestion.pipeline.ft_poller import poll_futureticketing
from supporter_app.ingestion.pipeline.merge_service import MergeService
from supporter_app.ingestion.pipeline.product_meanings import load_product_mappings
from supporter_app.ingestion.pipeline.reconciler import ReconciliationJob, build_reconcilers
from supporter_app.ingestion.pipeline.tag_sync import run_tag_sync
from supporter_app.ingestion.processors import get_processor
from supporter_app.models.base import db
from supporter_app.utils.ingestion import get_ingestion_sources, is_ingestion_enabled


def _load_app(ctx: click.Context):
    info = ctx.ensure_object(ScriptInfo)
    return info.load_app()


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group(name="ingestion", invoke_without_command=True)
@click.pass_context
def ingestion_cli(ctx):
    """
    Supporter ingestion commands.

    Lists the enabled sources when invoked without a subcommand.
    """
    app = _load_app(ctx)
    if not is_ingestion_enabled(app):
        raise click.ClickException(
            "Ingestion is disabled via INGESTION_ENABLED=false. Enable it to run ingestion CLI commands."
        )
    if ctx.invoked_subcommand is None:
        ctx.invoke(ingestion_status)


def get_disabled_ingestion_group() -> click.Group:
    """
    Return a minimal command group that informs the operator ingestion is disabled.
    """

    @click.group(name="ingestion", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Ingestion commands are unavailable because INGESTION_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Ingestion Celery app is unavailable. Ensure INGESTION_ENABLED=true and the "
            "ingestion package initialises before running worker commands."
        )
    return celery_app


@ingestion_cli.command("status")
@click.pass_context
def ingestion_status(ctx):
    """Show enabled sources and whether their credentials are configured."""
    app = _load_app(ctx)
    sources = get_ingestion_sources(app)
    if not sources:
        click.echo("No ingestion sources configured.")
        return
    state = app.extensions.get("ingestion", {})
    missing = state.get("missing_settings", {})
    click.echo("Enabled ingestion sources:")
    for source in sources:
        gaps = missing.get(source) or []
        suffix = f" (missing: {', '.join(gaps)})" if gaps else ""
        click.echo(f"  - {source}{suffix}")


@ingestion_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the ingestion background worker."""
    app = _load_app(ctx)
    state = app.extensions.get("ingestion", {})
    if not state.get("worker_enabled") and not app.config.get("INGESTION_WORKER_ENABLED"):
        click.echo(
            "Warning: INGESTION_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option(
    "--queues",
    default=f"{INGESTION_QUEUE},{SCHEDULED_QUEUE}",
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.option("--beat/--no-beat", default=False, help="Embed the beat scheduler in this worker.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """
    Start the Celery worker in the current process.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    state = app.extensions.get("ingestion")
    if state is not None:
        state["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    click.echo(f"Starting ingestion worker (queues: {queues}, loglevel: {loglevel}, beat: {beat})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    app = _load_app(ctx)
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("ingestion.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'ingestion.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    _echo_json(payload)


@ingestion_cli.command("classify")
@click.pass_context
def ingestion_classify(ctx):
    """Run the supporter type classifier now."""
    _load_app(ctx)
    summary = run_classification()
    _echo_json(summary.to_dict())


@ingestion_cli.command("reconcile")
@click.option("--lookback-hours", type=click.IntRange(min=1), help="Override the configured lookback window.")
@click.pass_context
def ingestion_reconcile(ctx, lookback_hours: Optional[int]):
    """Re-fetch recent source activity and backfill missing events."""
    app = _load_app(ctx)
    reconcilers = build_reconcilers(build_clients(app.config), db.session)
    if not reconcilers:
        raise click.ClickException("No source credentials configured; nothing to reconcile.")
    run = ReconciliationJob(reconcilers, db.session).run(lookback_hours=lookback_hours)
    _echo_json(run.to_dict())


@ingestion_cli.command("sync-tags")
@click.pass_context
def ingestion_sync_tags(ctx):
    """Push managed tags to Mailchimp."""
    app = _load_app(ctx)
    clients = build_clients(app.config)
    if clients.mailchimp is None:
        raise click.ClickException("MAILCHIMP_API_KEY is not configured.")
    _echo_json(run_tag_sync(clients.mailchimp).to_dict())


@ingestion_cli.command("poll-ft")
@click.pass_context
def ingestion_poll_ft(ctx):
    """Pull customers, orders and entries from Future Ticketing."""
    app = _load_app(ctx)
    clients = build_clients(app.config)
    if clients.futureticketing is None:
        raise click.ClickException("FUTURE_TICKETING_API_URL and FUTURE_TICKETING_API_KEY must be configured.")
    _echo_json(poll_futureticketing(clients.futureticketing).to_dict())


@ingestion_cli.command("merge")
@click.argument("source_id")
@click.argument("target_id")
@click.option("--reason", required=True, help="Why these supporters are the same person.")
@click.option("--actor", default="cli", show_default=True, help="Operator recorded in the audit log.")
@click.pass_context
def ingestion_merge(ctx, source_id: str, target_id: str, reason: str, actor: str):
    """Merge SOURCE_ID into TARGET_ID; the source supporter is deleted."""
    _load_app(ctx)
    try:
        target = MergeService().merge(source_id, target_id, actor=actor, reason=reason)
    except (InvalidMergeRequest, MergeConflict, SupporterNotFound) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Merged {source_id} into {target.id}.")


@ingestion_cli.command("ingest")
@click.argument("source_system")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="JSON file holding one message or a list of messages.",
)
@click.pass_context
def ingestion_ingest(ctx, source_system: str, file_path: Path):
    """Process queue message(s) from a file without going through the worker."""
    _load_app(ctx)
    try:
        payload = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{file_path} is not valid JSON: {exc}") from exc
    messages = payload if isinstance(payload, list) else [payload]

    try:
        processor = get_processor(source_system.lower())
    except UnknownSourceSystem as exc:
        raise click.ClickException(str(exc)) from exc

    results = []
    for message in messages:
        try:
            results.append(processor.ingest(message).to_dict())
        except MalformedMessage as exc:
            raise click.ClickException(str(exc)) from exc
    _echo_json(results)


@ingestion_cli.command("load-product-mappings")
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="YAML mapping file. Defaults to PRODUCT_MAPPING_PATH.",
)
@click.pass_context
def ingestion_load_product_mappings(ctx, file_path: Optional[Path]):
    """Seed Future Ticketing product meanings from YAML."""
    app = _load_app(ctx)
    path = file_path or Path(app.config["PRODUCT_MAPPING_PATH"])
    if not path.exists():
        raise click.ClickException(f"Product mapping file not found: {path}")
    try:
        summary = load_product_mappings(path)
        db.session.commit()
    except ValueError as exc:
        db.session.rollback()
        raise click.ClickException(str(exc)) from exc
    _echo_json(summary.to_dict())
