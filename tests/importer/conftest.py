from __future__ import annotations

import csv
import io
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import pytest
from flask import Flask

from config import TestingConfig
from migrator_app.importer import init_importer
from migrator_app.importer.pipeline.chirotouch import PipelineSettings
from migrator_app.importer.pipeline.run_ledger import ImportRunLedger
from migrator_app.importer.pipeline.scheduler import BatchPolicy
from migrator_app.importer.pipeline.store import RecordStore
from migrator_app.models import ImportRun, ImportRunStatus, ImportType, Patient, db


def build_importer_app(tmp_path: Path, **overrides) -> Flask:
    """
    Construct a Flask app with the importer enabled on its own SQLite file.
    """
    instance_dir = tmp_path / "instance"
    instance_dir.mkdir(parents=True, exist_ok=True)
    app = Flask(__name__, instance_path=str(instance_dir))
    app.config.from_object(TestingConfig)
    app.config.update(
        SQLALCHEMY_DATABASE_URI=f"sqlite:///{(tmp_path / 'importer.db').as_posix()}",
        IMPORTER_ENABLED=True,
        IMPORTER_UPLOAD_DIR=str(tmp_path / "uploads"),
        IMPORTER_WORK_DIR=str(tmp_path / "work"),
        IMPORTER_DOCUMENT_DIR=str(tmp_path / "documents"),
        IMPORTER_BATCH_PAUSE_SECONDS=0.0,
        CELERY_SQLITE_PATH=str(instance_dir / "celery.sqlite"),
        CELERY_CONFIG={"task_always_eager": True, "task_eager_propagates": True},
    )
    app.config.update(overrides)
    db.init_app(app)
    init_importer(app)
    return app


@pytest.fixture
def importer_app(tmp_path):
    app = build_importer_app(tmp_path)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def importer_app_factory():
    return build_importer_app


@pytest.fixture
def importer_client(importer_app):
    return importer_app.test_client()


@pytest.fixture
def importer_runner(importer_app):
    return importer_app.test_cli_runner()


def csv_text(header: Sequence[str], rows: Iterable[Sequence[object]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()


@pytest.fixture
def make_csv_text():
    return csv_text


@pytest.fixture
def write_csv(tmp_path):
    def _write(name: str, header: Sequence[str], rows: Iterable[Sequence[object]]) -> Path:
        path = tmp_path / "files" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(csv_text(header, rows), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def build_export(tmp_path):
    """Write a ZIP export whose members are given as ``{path: content}``."""

    def _build(members: Mapping[str, str | bytes], name: str = "export.zip") -> Path:
        path = tmp_path / "exports" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for member, content in members.items():
                archive.writestr(member, content)
        return path

    return _build


class FakeSampler:
    """Memory sampler returning scripted readings (last value repeats)."""

    def __init__(self, *readings_mb: float) -> None:
        self.readings = [int(value * 1024 * 1024) for value in readings_mb] or [0]
        self.calls = 0

    def memory_usage_bytes(self) -> int:
        index = min(self.calls, len(self.readings) - 1)
        self.calls += 1
        return self.readings[index]


@pytest.fixture
def fake_sampler():
    return FakeSampler


@pytest.fixture
def pipeline_settings(tmp_path):
    return PipelineSettings(
        batch_policy=BatchPolicy(pause_seconds=0.0),
        document_dir=tmp_path / "documents",
    )


@pytest.fixture
def store(importer_app):
    return RecordStore(db.session)


@pytest.fixture
def ledger(tenant_id):
    return ImportRunLedger(tenant_id=tenant_id, run_id=1)


@pytest.fixture
def make_patient(importer_app, tenant_id):
    def _make(record_number: str, first_name: str = "Jane", last_name: str = "Doe", *, tenant: str | None = None):
        patient = Patient(
            tenant_id=tenant or tenant_id,
            record_number=record_number,
            first_name=first_name,
            last_name=last_name,
        )
        db.session.add(patient)
        db.session.commit()
        return patient

    return _make


@pytest.fixture
def pending_run(importer_app, tenant_id):
    def _factory(
        *,
        import_type: ImportType = ImportType.CHIROTOUCH_FULL,
        tenant: str | None = None,
        file_name: str = "export.zip",
    ) -> ImportRun:
        run = ImportRun(
            tenant_id=tenant or tenant_id,
            import_type=import_type,
            status=ImportRunStatus.PENDING,
            original_file_name=file_name,
            counts_json={},
        )
        db.session.add(run)
        db.session.commit()
        return run

    return _factory


@pytest.fixture
def run_factory(importer_app, tenant_id):
    """Finished runs with stored counters for reporting tests."""

    def _factory(
        *,
        tenant: str | None = None,
        status: ImportRunStatus = ImportRunStatus.COMPLETED,
        import_type: ImportType = ImportType.CHIROTOUCH_FULL,
        file_name: str = "export.zip",
        processed: int = 10,
        succeeded: int = 8,
        errors: int = 1,
        duplicates: int = 1,
        skipped: int = 0,
        duration_seconds: int = 120,
        started_offset_minutes: int = 0,
        created_at: datetime | None = None,
    ) -> ImportRun:
        now = datetime.now(timezone.utc).replace(microsecond=0)
        started_at = now - timedelta(minutes=started_offset_minutes)
        run = ImportRun(
            tenant_id=tenant or tenant_id,
            import_type=import_type,
            status=status,
            original_file_name=file_name,
            started_at=started_at,
            finished_at=started_at + timedelta(seconds=duration_seconds),
            duration_ms=duration_seconds * 1000,
            imported_by="tester",
            counts_json={
                "summary": {
                    "total_processed": processed,
                    "success_count": succeeded,
                    "error_count": errors,
                    "duplicate_count": duplicates,
                    "skipped_count": skipped,
                },
                "chirotouch_data": {"patients_imported": succeeded, "folders_processed": []},
                "historical_notes_created": 0,
                "is_chirotouch": import_type == ImportType.CHIROTOUCH_FULL,
                "issue_totals": {"errors": errors, "duplicates": duplicates, "warnings": 0},
            },
        )
        if created_at is not None:
            run.created_at = created_at
        db.session.add(run)
        db.session.commit()
        return run

    return _factory
