"""
Utility helpers for importer feature flag and upload limit checks.
"""

from __future__ import annotations

from typing import Tuple

from flask import current_app

DEFAULT_ALLOWED_EXTENSIONS: Tuple[str, ...] = ("csv", "xlsx", "zip")
DEFAULT_MAX_UPLOAD_MB = 250


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_importer_enabled(app=None) -> bool:
    """Return True when the importer feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("IMPORTER_ENABLED", False))


def get_allowed_extensions(app=None) -> Tuple[str, ...]:
    """Return the lower-cased upload extensions the importer accepts."""
    config = _get_config(app)
    extensions = config.get("IMPORTER_ALLOWED_EXTENSIONS") or DEFAULT_ALLOWED_EXTENSIONS
    return tuple(ext.lower().lstrip(".") for ext in extensions)


def get_max_upload_bytes(app=None) -> int:
    config = _get_config(app)
    return int(config.get("IMPORTER_MAX_UPLOAD_MB", DEFAULT_MAX_UPLOAD_MB)) * 1024 * 1024
