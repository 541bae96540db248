from __future__ import annotations

from unittest.mock import patch

import pytest
from celery.exceptions import SoftTimeLimitExceeded
from sqlalchemy import select

from migrator_app.importer.tasks import commit_archive_task, commit_table_task
from migrator_app.models import ImportRun, ImportRunStatus, ImportType, Patient, db

PATIENTS_CSV = "Record Number,First Name,Last Name\n1001,Jane,Doe\n"


def test_table_task_imports_and_removes_upload(pending_run, write_csv):
    path = write_csv("patients.csv", ["Record Number", "First Name", "Last Name"], [["1001", "Jane", "Doe"]])
    run = pending_run(import_type=ImportType.PATIENTS, file_name="patients.csv")

    payload = commit_table_task.run(run_id=run.id, file_path=str(path), entity="patients")

    assert payload["status"] == "completed"
    assert payload["summary"]["success_count"] == 1
    assert db.session.get(ImportRun, run.id).status == ImportRunStatus.COMPLETED
    assert db.session.scalars(select(Patient)).one().record_number == "1001"
    assert not path.exists()


def test_table_task_keeps_file_when_asked(pending_run, write_csv):
    path = write_csv("patients.csv", ["Record Number", "First Name", "Last Name"], [["1001", "Jane", "Doe"]])
    run = pending_run(import_type=ImportType.PATIENTS)

    commit_table_task.run(run_id=run.id, file_path=str(path), entity="patients", keep_file=True)

    assert path.exists()


def test_table_task_missing_file_fails_run(pending_run, tmp_path):
    run = pending_run(import_type=ImportType.PATIENTS)

    with pytest.raises(FileNotFoundError):
        commit_table_task.run(run_id=run.id, file_path=str(tmp_path / "gone.csv"), entity="patients")

    stored = db.session.get(ImportRun, run.id)
    assert stored.status == ImportRunStatus.FAILED
    assert stored.error_summary.startswith("File not found")


def test_task_refuses_non_pending_run(run_factory, write_csv):
    run = run_factory(status=ImportRunStatus.COMPLETED)
    path = write_csv("patients.csv", ["Record Number"], [["1001"]])

    with pytest.raises(ValueError, match="only pending runs"):
        commit_table_task.run(run_id=run.id, file_path=str(path), entity="patients")

    with pytest.raises(ValueError, match="not found"):
        commit_table_task.run(run_id=9999, file_path=str(path), entity="patients")


def test_table_task_invalid_mapping_fails_run(pending_run, write_csv):
    path = write_csv("patients.csv", ["Chart"], [["1001"]])
    run = pending_run(import_type=ImportType.PATIENTS)

    with pytest.raises(ValueError):
        commit_table_task.run(
            run_id=run.id, file_path=str(path), entity="patients", column_mapping={"shoe_size": "Chart"}
        )

    stored = db.session.get(ImportRun, run.id)
    assert stored.status == ImportRunStatus.FAILED
    assert "shoe_size" in stored.error_summary


def test_soft_time_limit_cancels_run(pending_run, write_csv):
    path = write_csv("patients.csv", ["Record Number", "First Name", "Last Name"], [["1001", "Jane", "Doe"]])
    run = pending_run(import_type=ImportType.PATIENTS)

    with patch(
        "migrator_app.importer.pipeline.chirotouch._RunContext.import_table",
        side_effect=SoftTimeLimitExceeded("time limit"),
    ):
        with pytest.raises(SoftTimeLimitExceeded):
            commit_table_task.run(run_id=run.id, file_path=str(path), entity="patients")

    stored = db.session.get(ImportRun, run.id)
    assert stored.status == ImportRunStatus.CANCELLED
    assert "time limit" in stored.error_summary
    assert stored.finished_at is not None


def test_archive_task_imports_export(pending_run, build_export, tmp_path):
    archive = build_export({"00_Tables/Patients.csv": PATIENTS_CSV})
    run = pending_run()
    work_dir = tmp_path / "work" / "task-1"

    payload = commit_archive_task.run(run_id=run.id, archive_path=str(archive), work_dir=str(work_dir))

    assert payload["chirotouch_data"]["patients_imported"] == 1
    assert payload["is_chirotouch"] is True
    assert not archive.exists()
    assert not work_dir.exists()


def test_archive_task_missing_archive_fails_run(pending_run, tmp_path):
    run = pending_run()

    with pytest.raises(FileNotFoundError):
        commit_archive_task.run(
            run_id=run.id, archive_path=str(tmp_path / "gone.zip"), work_dir=str(tmp_path / "work" / "none")
        )

    stored = db.session.get(ImportRun, run.id)
    assert stored.status == ImportRunStatus.FAILED
    assert stored.error_summary.startswith("Archive not found")
    assert stored.finished_at is not None
