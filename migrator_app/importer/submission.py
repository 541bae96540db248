"""
Create pending import runs and hand them to the worker or run them inline.

Shared by the HTTP upload endpoints and the ``flask importer run`` command.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Sequence

from flask import current_app

from migrator_app.importer.celery_app import get_celery_app
from migrator_app.importer.contracts.legacy import EntityType
from migrator_app.importer.pipeline.chirotouch import (
    IMPORT_TYPE_BY_ENTITY,
    commit_archive,
    commit_table,
    normalize_selection,
)
from migrator_app.importer.pipeline.run_ledger import ImportRunLedger
from migrator_app.models.base import db
from migrator_app.models.importer.schema import ImportRun, ImportRunStatus, ImportType

ARCHIVE_TASK = "importer.pipeline.commit_archive"
TABLE_TASK = "importer.pipeline.commit_table"


class EnqueueError(RuntimeError):
    """The worker could not accept the run; the run has been marked failed."""


def create_run(
    *,
    tenant_id: str,
    import_type: ImportType,
    file_path: Path,
    original_file_name: str | None = None,
    imported_by: str | None = None,
    params: Mapping[str, Any] | None = None,
    notes: str | None = None,
) -> ImportRun:
    """Persist a ``PENDING`` run describing the file to import."""

    suffix = file_path.suffix.lstrip(".").lower() or None
    run = ImportRun(
        tenant_id=tenant_id,
        import_type=import_type,
        status=ImportRunStatus.PENDING,
        original_file_name=original_file_name or file_path.name,
        file_size=file_path.stat().st_size if file_path.exists() else None,
        file_type=suffix,
        imported_by=imported_by,
        notes=notes,
        counts_json={},
        ingest_params_json={"file_path": str(file_path), **dict(params or {})},
    )
    db.session.add(run)
    db.session.commit()
    return run


def create_archive_run(
    *,
    tenant_id: str,
    archive_path: Path,
    work_dir: Path,
    selection: Sequence[str] | Mapping[str, bool] | None = None,
    keep_file: bool = False,
    **kwargs: Any,
) -> ImportRun:
    selected = normalize_selection(selection)
    return create_run(
        tenant_id=tenant_id,
        import_type=ImportType.CHIROTOUCH_FULL,
        file_path=archive_path,
        params={"work_dir": str(work_dir), "selected_datasets": list(selected), "keep_file": keep_file},
        **kwargs,
    )


def create_table_run(
    *,
    tenant_id: str,
    file_path: Path,
    entity: EntityType | str,
    column_mapping: Mapping[str, str] | None = None,
    keep_file: bool = False,
    **kwargs: Any,
) -> ImportRun:
    entity = EntityType(entity)
    return create_run(
        tenant_id=tenant_id,
        import_type=IMPORT_TYPE_BY_ENTITY[entity],
        file_path=file_path,
        params={"entity": entity.value, "column_mapping": dict(column_mapping or {}), "keep_file": keep_file},
        **kwargs,
    )


def _task_kwargs(run: ImportRun) -> tuple[str, dict[str, Any]]:
    params = run.ingest_params_json or {}
    if run.import_type == ImportType.CHIROTOUCH_FULL:
        return ARCHIVE_TASK, {
            "run_id": run.id,
            "archive_path": params["file_path"],
            "work_dir": params["work_dir"],
            "selection": params.get("selected_datasets"),
            "keep_file": bool(params.get("keep_file", False)),
        }
    return TABLE_TASK, {
        "run_id": run.id,
        "file_path": params["file_path"],
        "entity": params["entity"],
        "column_mapping": params.get("column_mapping") or {},
        "keep_file": bool(params.get("keep_file", False)),
    }


def enqueue_run(app, run: ImportRun) -> str:
    """
    Queue ``run`` on the importer worker and return the Celery task id.

    Raises:
        EnqueueError: The worker is not configured or rejected the task.
    """

    celery_app = get_celery_app(app)
    if celery_app is None:
        _fail(run, "Importer worker is not configured.")
        raise EnqueueError("Importer worker is not configured; cannot queue import.")

    task_name, kwargs = _task_kwargs(run)
    try:
        async_result = celery_app.send_task(task_name, kwargs=kwargs)
    except Exception as exc:
        current_app.logger.exception(
            "Failed to enqueue importer run",
            extra={"importer_run_id": run.id, "importer_task": task_name},
        )
        _fail(run, str(exc))
        raise EnqueueError(f"Failed to enqueue importer run {run.id}: {exc}") from exc

    current_app.logger.info(
        "Importer run queued",
        extra={"importer_run_id": run.id, "importer_task_id": async_result.id, "importer_task": task_name},
    )
    return async_result.id


def run_inline(run: ImportRun, **pipeline_kwargs: Any) -> ImportRunLedger:
    """Execute ``run`` in the current process with its stored parameters."""

    params = run.ingest_params_json or {}
    if run.import_type == ImportType.CHIROTOUCH_FULL:
        return commit_archive(
            run,
            params["file_path"],
            work_dir=params["work_dir"],
            selection=params.get("selected_datasets"),
            **pipeline_kwargs,
        )
    return commit_table(
        run,
        params["file_path"],
        params["entity"],
        column_mapping=params.get("column_mapping"),
        **pipeline_kwargs,
    )


def _fail(run: ImportRun, message: str) -> None:
    db.session.refresh(run)
    run.status = ImportRunStatus.FAILED
    run.error_summary = message
    run.finished_at = datetime.now(timezone.utc)
    db.session.commit()
