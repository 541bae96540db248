import json
import logging

import pytest

from config.base import _coerce_bool, _coerce_int, _parse_extension_list
from config.validation import validate_environment
from migrator_app.models.base import db
from migrator_app.utils.logging_config import JSONFormatter


class TestApp:
    """Application wiring: config, error handlers and metrics"""

    def test_app_creation(self, app):
        assert app is not None
        assert app.config["TESTING"] is True
        assert app.config["SQLALCHEMY_DATABASE_URI"] == "sqlite:///:memory:"

    def test_app_database_initialization(self, app):
        assert db.engine is not None
        assert db.session is not None

    def test_unknown_route_returns_json_404(self, client):
        response = client.get("/does-not-exist")

        assert response.status_code == 404
        assert response.get_json() == {"error": "Not found."}

    def test_importer_routes_absent_when_disabled(self, client):
        response = client.get("/importer/runs", headers={"X-Tenant-ID": "clinic-001"})

        assert response.status_code == 404

    def test_metrics_endpoint_exposes_importer_metrics(self, client):
        response = client.get("/metrics")

        assert response.status_code == 200
        body = response.get_data(as_text=True)
        assert "importer_upload_requests_total" in body
        assert "importer_rows_total" in body

    def test_disabled_importer_cli(self, runner):
        result = runner.invoke(args=["importer"])

        assert result.exit_code != 0
        assert "IMPORTER_ENABLED=false" in result.output


class TestConfigParsing:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(None, False), ("yes", True), ("OFF", False), ("maybe", False), (True, True)],
    )
    def test_coerce_bool(self, value, expected):
        assert _coerce_bool(value) is expected

    def test_coerce_int_falls_back_on_bad_values(self):
        assert _coerce_int("25", 10) == 25
        assert _coerce_int("abc", 10) == 10
        assert _coerce_int("0", 10, minimum=1) == 10

    def test_parse_extension_list(self):
        assert _parse_extension_list(".ZIP, csv,zip", ("csv",)) == ("zip", "csv")
        assert _parse_extension_list("", ("csv",)) == ("csv",)


class TestEnvironmentValidation:
    def test_non_production_is_always_valid(self):
        assert validate_environment("development") == (True, [])

    def test_production_requires_secrets_and_broker(self, monkeypatch):
        monkeypatch.delenv("SECRET_KEY", raising=False)
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("CELERY_BROKER_URL", raising=False)
        monkeypatch.setenv("IMPORTER_ENABLED", "true")
        monkeypatch.setenv("IMPORTER_WORKER_ENABLED", "true")
        monkeypatch.setenv("IMPORTER_MAPPING_PATH", "/nonexistent/mapping.yaml")

        is_valid, errors = validate_environment("production")

        assert is_valid is False
        joined = "\n".join(errors)
        assert "SECRET_KEY" in joined
        assert "DATABASE_URL" in joined
        assert "CELERY_BROKER_URL" in joined
        assert "IMPORTER_MAPPING_PATH" in joined

    def test_production_with_complete_environment(self, monkeypatch):
        monkeypatch.setenv("SECRET_KEY", "a" * 64)
        monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/migrator")
        monkeypatch.setenv("IMPORTER_ENABLED", "false")

        assert validate_environment("production") == (True, [])


def test_json_formatter_includes_extra_fields():
    record = logging.makeLogRecord(
        {"name": "migrator_app.importer", "levelname": "INFO", "msg": "Importer run queued", "importer_run_id": 7}
    )

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "Importer run queued"
    assert payload["importer_run_id"] == 7
    assert payload["logger"] == "migrator_app.importer"
