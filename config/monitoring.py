# config/monitoring.py

import os

from prometheus_client import Counter, Histogram


class MonitoringConfig:
    """Logging and metrics configuration"""

    METRICS_ENDPOINT = os.environ.get("METRICS_ENDPOINT", "/metrics")

    # Logging Configuration
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT = os.environ.get("LOG_FORMAT", "json")  # 'json' or 'text'
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    LOG_FILE_MAX_BYTES = int(os.environ.get("LOG_FILE_MAX_BYTES", 10485760))  # 10MB
    LOG_FILE_BACKUP_COUNT = int(os.environ.get("LOG_FILE_BACKUP_COUNT", 10))

    # Console and File Logging
    ENABLE_FILE_LOGGING = os.environ.get("ENABLE_FILE_LOGGING", "true").lower() == "true"
    ENABLE_CONSOLE_LOGGING = os.environ.get("ENABLE_CONSOLE_LOGGING", "true").lower() == "true"

    # Application Info
    APP_NAME = os.environ.get("APP_NAME", "Practice Migrator")
    APP_VERSION = os.environ.get("APP_VERSION", "1.0.0")


class DevelopmentMonitoringConfig(MonitoringConfig):
    """Development-specific monitoring configuration"""

    LOG_LEVEL = "DEBUG"
    LOG_FORMAT = "text"  # More readable in development
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = True


class ProductionMonitoringConfig(MonitoringConfig):
    """Production-specific monitoring configuration"""

    LOG_LEVEL = "INFO"
    LOG_FORMAT = "json"  # Structured logging for production
    ENABLE_FILE_LOGGING = True
    ENABLE_CONSOLE_LOGGING = False  # Usually handled by container orchestration


class TestingMonitoringConfig(MonitoringConfig):
    """Testing-specific monitoring configuration"""

    LOG_LEVEL = "WARNING"
    LOG_FORMAT = "text"
    ENABLE_FILE_LOGGING = False
    ENABLE_CONSOLE_LOGGING = False


_LATENCY_BUCKETS = (0.01, 0.05, 0.1, 0.25, 0.5, 1, 2, 5)


class ImporterMonitoring:
    """Prometheus metric helpers for importer HTTP endpoints."""

    UPLOAD_COUNTER = Counter(
        "importer_upload_requests_total",
        "Total importer upload/preview requests.",
        labelnames=("status",),
    )
    UPLOAD_LATENCY = Histogram(
        "importer_upload_request_seconds",
        "Latency histogram for importer upload/preview requests.",
        labelnames=("status",),
        buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60),
    )
    COMMIT_COUNTER = Counter(
        "importer_commit_requests_total",
        "Total importer commit requests by execution mode.",
        labelnames=("status", "mode"),
    )
    RUNS_LIST_COUNTER = Counter(
        "importer_runs_list_requests_total",
        "Total importer runs list API requests.",
        labelnames=("status",),
    )
    RUNS_LIST_LATENCY = Histogram(
        "importer_runs_list_request_seconds",
        "Latency histogram for importer runs list API.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )
    RUNS_DETAIL_COUNTER = Counter(
        "importer_runs_detail_requests_total",
        "Total importer run detail API requests.",
        labelnames=("status",),
    )
    RUNS_DETAIL_LATENCY = Histogram(
        "importer_runs_detail_request_seconds",
        "Latency histogram for importer run detail API.",
        labelnames=("status",),
        buckets=_LATENCY_BUCKETS,
    )
    RUNS_STATS_COUNTER = Counter(
        "importer_runs_stats_requests_total",
        "Total importer clinic stats API requests.",
        labelnames=("status",),
    )

    @classmethod
    def record_upload(cls, *, duration_seconds: float, status: str):
        cls.UPLOAD_COUNTER.labels(status=status).inc()
        cls.UPLOAD_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_commit(cls, *, status: str, mode: str):
        cls.COMMIT_COUNTER.labels(status=status, mode=mode).inc()

    @classmethod
    def record_runs_list(cls, *, duration_seconds: float, status: str):
        cls.RUNS_LIST_COUNTER.labels(status=status).inc()
        cls.RUNS_LIST_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_runs_detail(cls, *, duration_seconds: float, status: str):
        cls.RUNS_DETAIL_COUNTER.labels(status=status).inc()
        cls.RUNS_DETAIL_LATENCY.labels(status=status).observe(max(duration_seconds, 0.0))

    @classmethod
    def record_runs_stats(cls, *, status: str):
        cls.RUNS_STATS_COUNTER.labels(status=status).inc()
