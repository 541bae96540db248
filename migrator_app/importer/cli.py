"""
CLI commands for the legacy migration importer.
"""

from __future__ import annotations

import json
import tempfile
from pathlib import Path
from typing import Optional, Sequence
from uuid import uuid4

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from migrator_app.importer.adapters.archive import ExtractionError
from migrator_app.importer.adapters.tabular import TabularParseError
from migrator_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from migrator_app.importer.contracts.legacy import EntityType
from migrator_app.importer.mapping import get_active_mapping
from migrator_app.importer.pipeline.chirotouch import (
    DATASET_ORDER,
    PipelineSettings,
    preview_archive,
    preview_table,
    validate_column_mapping,
)
from migrator_app.importer.pipeline.run_ledger import ImportRunLedger
from migrator_app.importer.submission import (
    EnqueueError,
    create_archive_run,
    create_table_run,
    enqueue_run,
    run_inline,
)
from migrator_app.importer.utils import remove_stale_entries, resolve_upload_directory, resolve_work_directory
from migrator_app.models.base import db
from migrator_app.models.importer.schema import ImportRun
from migrator_app.utils.importer import is_importer_enabled

TABLE_SUFFIXES = (".csv", ".xlsx")


@click.group(name="importer")
@click.pass_context
def importer_cli(ctx):
    """Legacy practice-management import commands."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _resolve_celery(app) -> Celery:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


def _parse_column_mapping(pairs: Sequence[str]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    for pair in pairs:
        field_name, sep, column = pair.partition("=")
        if not sep or not field_name.strip() or not column.strip():
            raise click.BadParameter(f"Expected FIELD=COLUMN, received '{pair}'.", param_hint="--column")
        mapping[field_name.strip()] = column.strip()
    return mapping


def _format_summary(ledger: ImportRunLedger) -> str:
    summary = ledger.summary
    payload = ledger.summary_payload()
    entity_counts = ", ".join(f"{key}={count}" for key, count in ledger.entity_counts.items() if count) or "none"
    folders = ", ".join(
        f"{progress.folder_name} ({progress.processed_count}/{progress.file_count})"
        for progress in ledger.folders.values()
    ) or "n/a"
    lines = [
        f"Run {ledger.run_id} finished with status {ledger.status.value}.",
        f"  processed          : {summary.total_processed}",
        f"  succeeded          : {summary.success_count}",
        f"  errors             : {summary.error_count}",
        f"  duplicates         : {summary.duplicate_count}",
        f"  skipped            : {summary.skipped_count}",
        f"  warnings           : {len(ledger.warnings)}",
        f"  success_rate       : {payload['success_rate']}%",
        f"  processing_time    : {payload['processing_time'] or 'n/a'}",
        f"  historical_notes   : {ledger.historical_notes_created}",
        f"  entities           : {entity_counts}",
        f"  folders            : {folders}",
    ]
    if ledger.error_summary:
        lines.append(f"  error_summary      : {ledger.error_summary}")
    for issue in payload["errors"]:
        lines.append(f"  ! {issue['message']}")
    return "\n".join(lines)


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """Start the Celery worker in the current process."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """Validate worker connectivity by executing the heartbeat task."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))


@importer_cli.command("run")
@click.option("--tenant", "tenant_id", required=True, help="Clinic (tenant) receiving the imported records.")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="ZIP export archive, or a single CSV/XLSX file together with --entity.",
)
@click.option(
    "--entity",
    type=click.Choice([entity.value for entity in EntityType]),
    help="Entity type of a single CSV/XLSX file.",
)
@click.option(
    "--column",
    "columns",
    multiple=True,
    metavar="FIELD=COLUMN",
    help="Explicit column mapping for a single-file import. Repeatable.",
)
@click.option(
    "--exclude",
    multiple=True,
    type=click.Choice(DATASET_ORDER),
    help="Dataset to leave out of an archive import. Repeatable.",
)
@click.option("--imported-by", default="cli", show_default=True, help="Recorded as the run's importer.")
@click.option(
    "--inline/--no-inline",
    default=False,
    help="Run inline within the CLI process instead of queueing via Celery.",
)
@click.option(
    "--summary-json",
    is_flag=True,
    help="Emit the machine-readable run summary after completion (inline runs only).",
)
@click.pass_context
def importer_run(
    ctx,
    tenant_id: str,
    file_path: Path,
    entity: Optional[str],
    columns: Sequence[str],
    exclude: Sequence[str],
    imported_by: str,
    inline: bool,
    summary_json: bool,
):
    """Import a legacy export for one clinic."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if summary_json and not inline:
        raise click.ClickException("--summary-json is only available for --inline runs.")

    file_path = file_path.resolve()
    suffix = file_path.suffix.lower()
    if suffix == ".zip":
        if entity or columns:
            raise click.ClickException("--entity and --column only apply to single CSV/XLSX files.")
        selection = [key for key in DATASET_ORDER if key not in set(exclude)]
        work_dir = resolve_work_directory(app) / f"cli-{uuid4().hex}"
        run = create_archive_run(
            tenant_id=tenant_id,
            archive_path=file_path,
            work_dir=work_dir,
            selection=selection,
            keep_file=True,
            imported_by=imported_by,
            notes=f"CLI import from {file_path}",
        )
    elif suffix in TABLE_SUFFIXES:
        if entity is None:
            raise click.ClickException("--entity is required when importing a single CSV/XLSX file.")
        if exclude:
            raise click.ClickException("--exclude only applies to ZIP archives.")
        column_mapping = _parse_column_mapping(columns)
        try:
            validate_column_mapping(get_active_mapping().build_mapper(), entity, column_mapping)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
        run = create_table_run(
            tenant_id=tenant_id,
            file_path=file_path,
            entity=entity,
            column_mapping=column_mapping,
            keep_file=True,
            imported_by=imported_by,
            notes=f"CLI import from {file_path}",
        )
    else:
        raise click.ClickException(f"Unsupported file type '{suffix or file_path.name}'. Use .zip, .csv or .xlsx.")

    run_id = run.id
    if not inline:
        _resolve_celery(app)
        try:
            task_id = enqueue_run(app, run)
        except EnqueueError as exc:
            raise click.ClickException(str(exc)) from exc
        click.echo(json.dumps({"run_id": run_id, "task_id": task_id, "status": "queued", "tenant_id": tenant_id}))
        return

    run = db.session.get(ImportRun, run_id)
    if run is None:
        raise click.ClickException(f"Import run {run_id} could not be reloaded before execution.")
    try:
        ledger = run_inline(run)
    except Exception as exc:
        raise click.ClickException(f"Import run {run_id} failed: {exc}") from exc

    click.echo(_format_summary(ledger))
    if summary_json:
        click.echo(json.dumps(ledger.summary_payload(), indent=2, sort_keys=True))


@importer_cli.command("preview")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    help="ZIP export archive or a single CSV/XLSX file.",
)
@click.option(
    "--entity",
    type=click.Choice([entity.value for entity in EntityType]),
    help="Entity type used to suggest a column mapping for a single file.",
)
@click.pass_context
def importer_preview(ctx, file_path: Path, entity: Optional[str]):
    """Show what an export contains without importing anything."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    settings = PipelineSettings.from_app(app)
    suffix = file_path.suffix.lower()

    try:
        if suffix == ".zip":
            with tempfile.TemporaryDirectory(prefix="importer-preview-") as work_dir:
                payload = preview_archive(file_path, work_dir, settings=settings)
        elif suffix in TABLE_SUFFIXES:
            payload = preview_table(file_path, entity=entity, settings=settings)
        else:
            raise click.ClickException(f"Unsupported file type '{suffix or file_path.name}'. Use .zip, .csv or .xlsx.")
    except (ExtractionError, TabularParseError) as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(json.dumps(payload, indent=2, default=str))


@importer_cli.command("cleanup-uploads")
@click.option(
    "--max-age-hours",
    default=72,
    show_default=True,
    type=int,
    help="Remove importer uploads and extraction directories older than the specified number of hours.",
)
@click.pass_context
def importer_cleanup_uploads(ctx, max_age_hours: int):
    """Delete stale importer uploads and working directories."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()

    uploads_dir = resolve_upload_directory(app)
    work_root = resolve_work_directory(app)
    removed_uploads = remove_stale_entries(uploads_dir, max_age_hours=max_age_hours)
    removed_work = remove_stale_entries(work_root, max_age_hours=max_age_hours)

    click.echo(f"Removed {removed_uploads} upload file(s) older than {max_age_hours} hours from {uploads_dir}.")
    click.echo(f"Removed {removed_work} working director(ies) older than {max_age_hours} hours from {work_root}.")
