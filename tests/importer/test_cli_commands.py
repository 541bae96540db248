import json
import os
import time
from unittest.mock import Mock, patch

from sqlalchemy import select

from migrator_app.models.base import db
from migrator_app.models import ImportRun, ImportRunStatus, ImportType, Patient

PATIENTS_CSV = "Record Number,First Name,Last Name,DOB\n1001,Jane,Doe,1980-01-02\n,John,Smith,\n"


def test_importer_run_cli_inline_archive(importer_runner, build_export, tmp_path):
    archive = build_export({"00_Tables/Patients.csv": PATIENTS_CSV})

    result = importer_runner.invoke(
        args=["importer", "run", "--tenant", "clinic-001", "--file", str(archive), "--inline", "--summary-json"]
    )

    assert result.exit_code == 0, result.output
    assert "finished with status completed" in result.output
    assert "succeeded          : 1" in result.output
    assert "! Row 2: Missing required field(s): record_number" in result.output
    assert '"patients_imported": 1' in result.output

    run = db.session.scalars(select(ImportRun)).one()
    assert run.status == ImportRunStatus.COMPLETED
    assert run.imported_by == "cli"
    assert archive.exists()
    assert list((tmp_path / "work").iterdir()) == []


def test_importer_run_cli_queues_by_default(importer_runner, build_export):
    archive = build_export({"00_Tables/Patients.csv": PATIENTS_CSV})

    async_result = Mock()
    async_result.id = "celery-task-123"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("migrator_app.importer.submission.get_celery_app", return_value=celery_app):
        result = importer_runner.invoke(
            args=["importer", "run", "--tenant", "clinic-001", "--file", str(archive), "--exclude", "scanned_docs"]
        )

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output.strip())
    assert payload["status"] == "queued"
    assert payload["task_id"] == async_result.id
    assert payload["tenant_id"] == "clinic-001"

    run = db.session.get(ImportRun, payload["run_id"])
    assert run.status == ImportRunStatus.PENDING
    assert run.import_type == ImportType.CHIROTOUCH_FULL
    assert "scanned_docs" not in run.ingest_params_json["selected_datasets"]
    assert celery_app.send_task.call_args.kwargs["kwargs"]["keep_file"] is True


def test_importer_run_cli_summary_json_requires_inline(importer_runner, build_export):
    archive = build_export({"00_Tables/Patients.csv": PATIENTS_CSV})

    result = importer_runner.invoke(
        args=["importer", "run", "--tenant", "clinic-001", "--file", str(archive), "--summary-json"]
    )

    assert result.exit_code != 0
    assert "--summary-json is only available for --inline runs" in result.output
    assert db.session.scalars(select(ImportRun)).first() is None


def test_importer_run_cli_single_table(importer_runner, write_csv):
    path = write_csv("clients.csv", ["Chart", "Given", "Family"], [["A-1", "Ann", "Lee"]])
    base_args = ["importer", "run", "--tenant", "clinic-001", "--file", str(path), "--inline"]

    missing_entity = importer_runner.invoke(args=base_args)
    assert missing_entity.exit_code != 0
    assert "--entity is required" in missing_entity.output

    unknown_field = importer_runner.invoke(args=[*base_args, "--entity", "patients", "--column", "nickname=Given"])
    assert unknown_field.exit_code != 0
    assert "nickname" in unknown_field.output

    malformed = importer_runner.invoke(args=[*base_args, "--entity", "patients", "--column", "Chart"])
    assert malformed.exit_code == 2

    result = importer_runner.invoke(
        args=[
            *base_args,
            "--entity",
            "patients",
            "--column",
            "record_number=Chart",
            "--column",
            "first_name=Given",
            "--column",
            "last_name=Family",
        ]
    )
    assert result.exit_code == 0, result.output
    assert db.session.scalars(select(Patient)).one().record_number == "A-1"
    assert db.session.scalars(select(ImportRun)).one().import_type == ImportType.PATIENTS


def test_importer_run_cli_rejects_unknown_file_type(importer_runner, tmp_path):
    notes = tmp_path / "notes.txt"
    notes.write_text("hello", encoding="utf-8")

    result = importer_runner.invoke(args=["importer", "run", "--tenant", "clinic-001", "--file", str(notes)])

    assert result.exit_code != 0
    assert "Unsupported file type" in result.output


def test_importer_preview_cli(importer_runner, build_export):
    archive = build_export({"00_Tables/Patients.csv": PATIENTS_CSV, "02_Scanned Docs/1001_intake.pdf": b"%PDF"})

    result = importer_runner.invoke(args=["importer", "preview", "--file", str(archive)])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output)
    assert payload["datasets"]["patients"]["row_count"] == 2
    assert payload["categories"]["scanned_docs"] == 1
    assert db.session.scalars(select(Patient)).first() is None


def test_importer_preview_cli_unreadable_archive(importer_runner, tmp_path):
    broken = tmp_path / "broken.zip"
    broken.write_bytes(b"not a zip")

    result = importer_runner.invoke(args=["importer", "preview", "--file", str(broken)])

    assert result.exit_code != 0
    assert "corrupt archive" in result.output


def test_cleanup_uploads_removes_stale_entries(importer_runner, tmp_path):
    uploads = tmp_path / "uploads"
    work = tmp_path / "work"
    uploads.mkdir(exist_ok=True)
    (work / "old-extraction").mkdir(parents=True)
    stale = uploads / "stale.zip"
    fresh = uploads / "fresh.zip"
    stale.write_bytes(b"x")
    fresh.write_bytes(b"x")
    old = time.time() - 5 * 24 * 3600
    os.utime(stale, (old, old))
    os.utime(work / "old-extraction", (old, old))

    result = importer_runner.invoke(args=["importer", "cleanup-uploads", "--max-age-hours", "72"])

    assert result.exit_code == 0, result.output
    assert "Removed 1 upload file(s) older than 72 hours" in result.output
    assert "Removed 1 working director(ies) older than 72 hours" in result.output
    assert not stale.exists()
    assert fresh.exists()
    assert not (work / "old-extraction").exists()
