# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer setting, falling back to ``default`` on bad input."""
    if value in (None, ""):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _coerce_float(value, default, *, minimum=None):
    if value in (None, ""):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if minimum is not None and number < minimum:
        return default
    return number


def _parse_extension_list(value, default):
    """
    Parse a comma-separated extension list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Lower-cased extensions without leading dots.
    """
    if not value:
        return default

    seen = set()
    extensions = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower().lstrip(".")
        if not item or item in seen:
            continue
        seen.add(item)
        extensions.append(item)
    return tuple(extensions) or default


class Config:
    # SECRET_KEY must be set via environment variable in production.
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Importer feature flags and worker
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=False)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 60 * 60, minimum=1)
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"), 55 * 60, minimum=1)

    # Importer storage; relative paths resolve against the instance folder
    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_WORK_DIR = os.environ.get("IMPORTER_WORK_DIR")
    IMPORTER_DOCUMENT_DIR = os.environ.get("IMPORTER_DOCUMENT_DIR")
    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 250, minimum=1)
    IMPORTER_MAX_EXTRACTED_MB = _coerce_int(os.environ.get("IMPORTER_MAX_EXTRACTED_MB"), 4096, minimum=1)
    IMPORTER_ALLOWED_EXTENSIONS = _parse_extension_list(
        os.environ.get("IMPORTER_ALLOWED_EXTENSIONS"), ("csv", "xlsx", "zip")
    )
    IMPORTER_MAPPING_PATH = os.environ.get(
        "IMPORTER_MAPPING_PATH",
        os.path.join(os.path.dirname(__file__), "mappings", "chirotouch_v1.yaml"),
    )

    # Batch scheduling and reporting
    IMPORTER_BATCH_SIZE = _coerce_int(os.environ.get("IMPORTER_BATCH_SIZE"), 100, minimum=1)
    IMPORTER_BATCH_PAUSE_SECONDS = _coerce_float(os.environ.get("IMPORTER_BATCH_PAUSE_SECONDS"), 0.1, minimum=0.0)
    IMPORTER_MEMORY_CEILING_MB = _coerce_int(os.environ.get("IMPORTER_MEMORY_CEILING_MB"), 1024, minimum=1)
    IMPORTER_MAX_ROWS_PER_FILE = _coerce_int(os.environ.get("IMPORTER_MAX_ROWS_PER_FILE"), 50000, minimum=1)
    IMPORTER_REPORT_CAP = _coerce_int(os.environ.get("IMPORTER_REPORT_CAP"), 10, minimum=1)
    IMPORTER_PREVIEW_ROWS = _coerce_int(os.environ.get("IMPORTER_PREVIEW_ROWS"), 5, minimum=1)
    IMPORTER_PREVIEW_FILES = _coerce_int(os.environ.get("IMPORTER_PREVIEW_FILES"), 10, minimum=1)


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URIs need forward slashes, also on Windows
    db_path = os.path.join(instance_path, "migrator_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    IMPORTER_BATCH_PAUSE_SECONDS = 0.0


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
