"""
Importer blueprint endpoints: upload and preview, commit, run reporting, and health.

Every data endpoint is scoped to the clinic named by the ``X-Tenant-ID``
header.
"""

from __future__ import annotations

import math
import time
from http import HTTPStatus
from typing import Any

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import NoResultFound

from config.monitoring import ImporterMonitoring
from migrator_app.importer.adapters.archive import ExtractionError
from migrator_app.importer.adapters.tabular import TabularParseError
from migrator_app.importer.contracts.legacy import EntityType
from migrator_app.importer.mapping import MappingLoadError, get_active_mapping
from migrator_app.importer.pipeline.chirotouch import (
    DATASET_ORDER,
    PipelineSettings,
    normalize_selection,
    preview_archive,
    preview_table,
    validate_column_mapping,
)
from migrator_app.importer.pipeline.run_service import (
    DEFAULT_STATS_DAYS,
    ImportRunService,
    RunFilters,
    serialize_clinic_stats,
    serialize_issue,
    serialize_summary,
)
from migrator_app.importer.submission import (
    EnqueueError,
    create_archive_run,
    create_table_run,
    enqueue_run,
    run_inline,
)
from migrator_app.importer.utils import (
    allowed_file,
    cleanup_upload,
    find_upload,
    persist_upload,
    remove_work_dir,
    work_dir_for_upload,
)
from migrator_app.models.base import db
from migrator_app.models.importer.schema import ImportRun
from migrator_app.utils.importer import get_allowed_extensions, get_max_upload_bytes, is_importer_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")

TENANT_HEADER = "X-Tenant-ID"

_run_service = ImportRunService()


def _json_error(message: str, status: HTTPStatus, **extra: Any):
    return jsonify({"error": message, **extra}), status


def _too_large(max_bytes: int):
    return _json_error(
        f"File exceeds the {max_bytes // (1024 * 1024)} MB upload limit.", HTTPStatus.REQUEST_ENTITY_TOO_LARGE
    )


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _tenant_id() -> str | None:
    value = (request.headers.get(TENANT_HEADER) or "").strip()
    return value or None


def _split_csv(value: str | None):
    if not value:
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
                "datasets": list(DATASET_ORDER),
                "entities": [entity.value for entity in EntityType],
                "allowed_extensions": list(get_allowed_extensions(current_app)),
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    worker_enabled = importer_state.get("worker_enabled", False)
    try:
        timeout_seconds = float(request.args.get("timeout", 5))
    except ValueError:
        return _json_error("timeout must be a number of seconds.", HTTPStatus.BAD_REQUEST)
    if not math.isfinite(timeout_seconds) or timeout_seconds <= 0:
        return _json_error("timeout must be a positive number of seconds.", HTTPStatus.BAD_REQUEST)
    payload: dict[str, Any] = {
        "worker_enabled": worker_enabled,
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not worker_enabled:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set IMPORTER_WORKER_ENABLED=true."
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("importer.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT
    payload["status"] = "ok"
    return jsonify(payload), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Upload, preview and commit
# ---------------------------------------------------------------------------


@importer_blueprint.post("/uploads")
def importer_upload():
    """
    Store an uploaded export and return its preview.

    ZIP archives are extracted once into a per-upload working directory that
    the later commit reuses.
    """
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response
    if _tenant_id() is None:
        return _json_error(f"Missing {TENANT_HEADER} header.", HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    file_storage = request.files.get("file")
    if file_storage is None or not file_storage.filename:
        ImporterMonitoring.record_upload(duration_seconds=0.0, status="invalid_request")
        return _json_error("No file uploaded.", HTTPStatus.BAD_REQUEST)

    allowed = get_allowed_extensions(current_app)
    if not allowed_file(file_storage.filename, allowed):
        ImporterMonitoring.record_upload(duration_seconds=0.0, status="invalid_request")
        return _json_error(
            f"Unsupported file type. Allowed extensions: {', '.join(allowed)}.", HTTPStatus.BAD_REQUEST
        )

    max_bytes = get_max_upload_bytes(current_app)
    if request.content_length is not None and request.content_length > max_bytes:
        ImporterMonitoring.record_upload(duration_seconds=0.0, status="too_large")
        return _too_large(max_bytes)

    entity = request.form.get("entity") or None
    if entity is not None and entity not in {member.value for member in EntityType}:
        return _json_error(f"Unknown entity '{entity}'.", HTTPStatus.BAD_REQUEST)

    stored_path = persist_upload(file_storage, current_app)
    size = stored_path.stat().st_size
    if size > max_bytes:
        cleanup_upload(stored_path)
        ImporterMonitoring.record_upload(duration_seconds=time.perf_counter() - start_time, status="too_large")
        return _too_large(max_bytes)

    upload_id = stored_path.stem
    settings = PipelineSettings.from_app(current_app)
    is_archive = stored_path.suffix.lower() == ".zip"
    try:
        if is_archive:
            preview = preview_archive(stored_path, work_dir_for_upload(current_app, upload_id), settings=settings)
        else:
            preview = preview_table(stored_path, entity=entity, settings=settings)
    except (ExtractionError, TabularParseError) as exc:
        cleanup_upload(stored_path)
        if is_archive:
            remove_work_dir(work_dir_for_upload(current_app, upload_id))
        ImporterMonitoring.record_upload(duration_seconds=time.perf_counter() - start_time, status="unreadable")
        current_app.logger.warning(
            "Importer upload could not be read",
            extra={"importer_upload_id": upload_id, "importer_error": str(exc)},
        )
        return _json_error(str(exc), HTTPStatus.UNPROCESSABLE_ENTITY)
    except MappingLoadError as exc:
        current_app.logger.exception("Importer mapping could not be loaded", extra={"importer_upload_id": upload_id})
        return _json_error(str(exc), HTTPStatus.INTERNAL_SERVER_ERROR)

    duration = time.perf_counter() - start_time
    ImporterMonitoring.record_upload(duration_seconds=duration, status="success")
    current_app.logger.info(
        "Importer upload previewed",
        extra={
            "importer_upload_id": upload_id,
            "importer_tenant_id": _tenant_id(),
            "importer_file_type": stored_path.suffix.lstrip("."),
            "importer_file_size": size,
            "importer_response_time_ms": round(duration * 1000, 2),
        },
    )
    return (
        jsonify(
            {
                "upload_id": upload_id,
                "file_name": file_storage.filename,
                "file_type": stored_path.suffix.lstrip(".").lower(),
                "file_size": size,
                "kind": "archive" if is_archive else "table",
                "preview": preview,
            }
        ),
        HTTPStatus.CREATED,
    )


@importer_blueprint.post("/uploads/<upload_id>/commit")
def importer_commit(upload_id: str):
    """
    Create an import run for a previewed upload and execute or queue it.

    Runs execute inline when ``inline`` is true, or when no worker is enabled
    and ``inline`` is omitted.
    """
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response
    tenant_id = _tenant_id()
    if tenant_id is None:
        return _json_error(f"Missing {TENANT_HEADER} header.", HTTPStatus.BAD_REQUEST)

    upload_path = find_upload(current_app, upload_id)
    if upload_path is None:
        return _json_error(f"Upload {upload_id} not found.", HTTPStatus.NOT_FOUND)

    body = request.get_json(silent=True) or {}
    worker_enabled = bool(current_app.config.get("IMPORTER_WORKER_ENABLED", False))
    inline = bool(body.get("inline", not worker_enabled))
    common = {
        "tenant_id": tenant_id,
        "keep_file": False,
        "original_file_name": body.get("file_name") or upload_path.name,
        "imported_by": body.get("imported_by"),
    }

    try:
        if upload_path.suffix.lower() == ".zip":
            selection = body.get("selection")
            normalize_selection(selection)
            run = create_archive_run(
                archive_path=upload_path,
                work_dir=work_dir_for_upload(current_app, upload_id),
                selection=selection,
                **common,
            )
        else:
            entity = body.get("entity")
            if not entity:
                return _json_error("An entity is required for single-file imports.", HTTPStatus.BAD_REQUEST)
            column_mapping = body.get("column_mapping") or {}
            if not isinstance(column_mapping, dict):
                return _json_error("column_mapping must be an object.", HTTPStatus.BAD_REQUEST)
            validate_column_mapping(get_active_mapping().build_mapper(), entity, column_mapping)
            run = create_table_run(file_path=upload_path, entity=entity, column_mapping=column_mapping, **common)
    except ValueError as exc:
        ImporterMonitoring.record_commit(status="invalid_request", mode="inline" if inline else "queued")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    run_id = run.id
    if not inline:
        try:
            task_id = enqueue_run(current_app, run)
        except EnqueueError as exc:
            ImporterMonitoring.record_commit(status="error", mode="queued")
            return _json_error(str(exc), HTTPStatus.SERVICE_UNAVAILABLE, run_id=run_id)
        ImporterMonitoring.record_commit(status="success", mode="queued")
        return jsonify({"run_id": run_id, "task_id": task_id, "status": "queued"}), HTTPStatus.ACCEPTED

    try:
        ledger = run_inline(run)
    except Exception:
        ImporterMonitoring.record_commit(status="error", mode="inline")
        failed = db.session.get(ImportRun, run_id)
        return _json_error(
            "Import failed.",
            HTTPStatus.INTERNAL_SERVER_ERROR,
            run_id=run_id,
            status=failed.status.value if failed is not None else None,
        )
    finally:
        cleanup_upload(upload_path)

    ImporterMonitoring.record_commit(status="success", mode="inline")
    return jsonify(ledger.summary_payload()), HTTPStatus.OK


# ---------------------------------------------------------------------------
# Run reporting
# ---------------------------------------------------------------------------


@importer_blueprint.get("/runs")
def importer_runs_list():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response
    tenant_id = _tenant_id()
    if tenant_id is None:
        return _json_error(f"Missing {TENANT_HEADER} header.", HTTPStatus.BAD_REQUEST)

    raw = request.args
    try:
        filters = RunFilters.coerce(
            tenant_id=tenant_id,
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            sort=raw.get("sort"),
            statuses=_split_csv(raw.get("status")),
            import_types=_split_csv(raw.get("import_type")),
            search=raw.get("search"),
            started_from=raw.get("started_from"),
            started_to=raw.get("started_to"),
        )
    except ValueError as exc:
        ImporterMonitoring.record_runs_list(duration_seconds=0.0, status="invalid_request")
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = _run_service.list_runs(filters)
    duration = time.perf_counter() - start_time
    ImporterMonitoring.record_runs_list(duration_seconds=duration, status="success")

    response_payload = {
        "runs": [serialize_summary(item) for item in result.items],
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "total_pages": result.total_pages,
        "filters": {
            "page": filters.page,
            "page_size": filters.page_size,
            "sort": filters.sort,
            "statuses": [status.value for status in filters.statuses],
            "import_types": [import_type.value for import_type in filters.import_types],
            "search": filters.search,
            "started_from": filters.started_from.isoformat() if filters.started_from else None,
            "started_to": filters.started_to.isoformat() if filters.started_to else None,
        },
    }
    current_app.logger.info(
        "Importer runs list retrieved",
        extra={
            "importer_tenant_id": tenant_id,
            "importer_run_count": len(result.items),
            "importer_total_runs": result.total,
            "importer_response_time_ms": round(duration * 1000, 2),
        },
    )
    return jsonify(response_payload), HTTPStatus.OK


@importer_blueprint.get("/runs/<int:run_id>")
def importer_run_detail(run_id: int):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response
    tenant_id = _tenant_id()
    if tenant_id is None:
        return _json_error(f"Missing {TENANT_HEADER} header.", HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    try:
        run = _run_service.get_run(run_id, tenant_id)
    except NoResultFound:
        ImporterMonitoring.record_runs_detail(duration_seconds=time.perf_counter() - start_time, status="not_found")
        return _json_error(f"Import run {run_id} not found.", HTTPStatus.NOT_FOUND)

    kind = request.args.get("kind") or None
    try:
        issues = _run_service.get_issues(run, kind=kind)
    except ValueError:
        return _json_error(f"Unsupported issue kind '{kind}'.", HTTPStatus.BAD_REQUEST)

    payload = serialize_summary(_run_service.summarize(run))
    payload.update(
        {
            "counts_json": run.counts_json or {},
            "ingest_params": run.ingest_params_json or {},
            "notes": run.notes,
            "issues": [serialize_issue(issue) for issue in issues],
        }
    )
    ImporterMonitoring.record_runs_detail(duration_seconds=time.perf_counter() - start_time, status="success")
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.get("/runs/stats")
def importer_runs_stats():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response
    tenant_id = _tenant_id()
    if tenant_id is None:
        return _json_error(f"Missing {TENANT_HEADER} header.", HTTPStatus.BAD_REQUEST)

    raw_days = request.args.get("days")
    try:
        days = int(raw_days) if raw_days not in (None, "") else DEFAULT_STATS_DAYS
        stats = _run_service.get_clinic_stats(tenant_id, days=days)
    except ValueError:
        ImporterMonitoring.record_runs_stats(status="invalid_request")
        return _json_error("days must be a positive integer.", HTTPStatus.BAD_REQUEST)

    ImporterMonitoring.record_runs_stats(status="success")
    return jsonify(serialize_clinic_stats(stats)), HTTPStatus.OK
