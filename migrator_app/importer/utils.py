"""
Importer-specific utilities for uploaded files, working directories, and cleanup.
"""

from __future__ import annotations

import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable
from uuid import uuid4

from flask import current_app
from werkzeug.datastructures import FileStorage
from werkzeug.utils import secure_filename

from migrator_app.utils.importer import DEFAULT_ALLOWED_EXTENSIONS

DEFAULT_UPLOAD_SUBDIR = "import_uploads"
DEFAULT_WORK_SUBDIR = "import_work"
DEFAULT_DOCUMENT_SUBDIR = "patient_documents"


def _normalize_dir(configured_path: str | None, instance_path: str, *, default_subdir: str) -> Path:
    if not configured_path:
        return Path(instance_path) / default_subdir

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def _resolve(app, config_key: str, default_subdir: str) -> Path:
    directory = _normalize_dir(app.config.get(config_key), app.instance_path, default_subdir=default_subdir)
    directory.mkdir(parents=True, exist_ok=True)
    return directory


def resolve_upload_directory(app) -> Path:
    """Determine and create (if necessary) the importer upload directory."""

    return _resolve(app, "IMPORTER_UPLOAD_DIR", DEFAULT_UPLOAD_SUBDIR)


def resolve_work_directory(app) -> Path:
    """Root under which each upload gets its own extraction directory."""

    return _resolve(app, "IMPORTER_WORK_DIR", DEFAULT_WORK_SUBDIR)


def resolve_document_directory(app) -> Path:
    """Root of the per-tenant document store for attached files."""

    return _resolve(app, "IMPORTER_DOCUMENT_DIR", DEFAULT_DOCUMENT_SUBDIR)


def work_dir_for_upload(app, upload_id: str) -> Path:
    return resolve_work_directory(app) / secure_filename(upload_id)


def allowed_file(filename: str, allowed_extensions: Iterable[str] = DEFAULT_ALLOWED_EXTENSIONS) -> bool:
    """Validate the uploaded filename extension against the allowed set."""

    if not filename or "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in {ext.lower() for ext in allowed_extensions}


def persist_upload(file_storage: FileStorage, app) -> Path:
    """
    Persist the uploaded file to disk and return the fully-qualified path.

    Files are stored under ``resolve_upload_directory(app)`` using a UUID-based
    filename to avoid collisions. The stem of the stored name doubles as the
    upload id; the original extension is preserved.
    """

    upload_dir = resolve_upload_directory(app)
    original_name = secure_filename(file_storage.filename or "")
    extension = Path(original_name).suffix.lower()

    target_path = upload_dir / f"{uuid4().hex}{extension}"
    file_storage.save(target_path)
    current_app.logger.debug("Importer upload persisted to %s", target_path)
    return target_path


def find_upload(app, upload_id: str) -> Path | None:
    """Locate a persisted upload by id, ignoring anything that is not a plain hex id."""

    if not upload_id or not all(char in "0123456789abcdef" for char in upload_id):
        return None
    for path in resolve_upload_directory(app).glob(f"{upload_id}.*"):
        if path.is_file():
            return path
    return None


def cleanup_upload(path: Path) -> None:
    """Remove a stored upload, logging but ignoring filesystem errors."""

    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove importer upload %s: %s", path, exc)


def remove_work_dir(path: Path | str) -> None:
    """Delete an extraction working directory, logging but ignoring filesystem errors."""

    path = Path(path)
    if not path.exists():
        return
    try:
        shutil.rmtree(path)
    except OSError as exc:
        current_app.logger.warning("Failed to remove importer work directory %s: %s", path, exc)


def remove_stale_entries(directory: Path, *, max_age_hours: int) -> int:
    """Delete files and directories in ``directory`` older than ``max_age_hours``."""

    if not directory.exists():
        return 0
    cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
    removed = 0
    for path in directory.iterdir():
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime, timezone.utc)
        except FileNotFoundError:  # pragma: no cover - race condition
            continue
        if modified >= cutoff:
            continue
        if path.is_dir():
            remove_work_dir(path)
        else:
            cleanup_upload(path)
        removed += 1
    return removed
