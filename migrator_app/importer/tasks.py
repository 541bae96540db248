"""
Importer Celery tasks.

Commit tasks load the ``ImportRun`` created by the web or CLI surface and hand
it to the pipeline, which finalizes the run itself. A soft time limit marks
the run cancelled instead of failed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

from celery import shared_task
from celery.exceptions import SoftTimeLimitExceeded
from flask import current_app

from migrator_app.importer.pipeline.chirotouch import commit_archive, commit_table
from migrator_app.importer.utils import cleanup_upload
from migrator_app.models.base import db
from migrator_app.models.importer.schema import ImportRun, ImportRunStatus

CANCEL_EXCEPTIONS = (SoftTimeLimitExceeded,)


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
    }


def _load_pending_run(run_id: int) -> ImportRun:
    run = db.session.get(ImportRun, run_id)
    if run is None:
        raise ValueError(f"Import run {run_id} not found.")
    if run.status != ImportRunStatus.PENDING:
        raise ValueError(f"Import run {run_id} is {run.status.value}; only pending runs can be committed.")
    return run


def _mark_failed(run: ImportRun, message: str) -> None:
    run.status = ImportRunStatus.FAILED
    run.error_summary = message
    run.finished_at = datetime.now(timezone.utc)
    db.session.commit()


def _recover(run_id: int, exc: Exception) -> None:
    """Fail a run the pipeline never started, e.g. on invalid parameters."""
    db.session.rollback()
    run = db.session.get(ImportRun, run_id)
    if run is not None and not run.is_terminal:
        _mark_failed(run, str(exc) or exc.__class__.__name__)


@shared_task(name="importer.pipeline.commit_archive", bind=True)
def commit_archive_task(
    self,
    *,
    run_id: int,
    archive_path: str,
    work_dir: str,
    selection: Sequence[str] | None = None,
    keep_file: bool = False,
) -> dict[str, Any]:
    """
    Import a full export archive for an existing pending run.
    """

    run = _load_pending_run(run_id)
    path = Path(archive_path)
    if not path.exists() and not Path(work_dir).exists():
        _mark_failed(run, f"Archive not found: {archive_path}")
        raise FileNotFoundError(f"Archive not found: {archive_path}")

    cleanup_target: Path | None = None if keep_file else path
    try:
        ledger = commit_archive(
            run,
            path,
            work_dir=work_dir,
            selection=selection,
            cancel_exceptions=CANCEL_EXCEPTIONS,
        )
        return ledger.summary_payload()
    except Exception as exc:
        _recover(run_id, exc)
        current_app.logger.exception(
            "Importer archive task failed",
            extra={"importer_run_id": run_id, "importer_task_id": self.request.id, "importer_error": str(exc)},
        )
        raise
    finally:
        if cleanup_target is not None:
            cleanup_upload(cleanup_target)


@shared_task(name="importer.pipeline.commit_table", bind=True)
def commit_table_task(
    self,
    *,
    run_id: int,
    file_path: str,
    entity: str,
    column_mapping: Mapping[str, str] | None = None,
    keep_file: bool = False,
) -> dict[str, Any]:
    """
    Import one CSV/XLSX file as ``entity`` for an existing pending run.
    """

    run = _load_pending_run(run_id)
    path = Path(file_path)
    if not path.exists():
        _mark_failed(run, f"File not found: {file_path}")
        raise FileNotFoundError(f"File not found: {file_path}")

    cleanup_target: Path | None = None if keep_file else path
    try:
        ledger = commit_table(
            run,
            path,
            entity,
            column_mapping=column_mapping,
            cancel_exceptions=CANCEL_EXCEPTIONS,
        )
        return ledger.summary_payload()
    except Exception as exc:
        _recover(run_id, exc)
        current_app.logger.exception(
            "Importer table task failed",
            extra={"importer_run_id": run_id, "importer_task_id": self.request.id, "importer_error": str(exc)},
        )
        raise
    finally:
        if cleanup_target is not None:
            cleanup_upload(cleanup_target)
