from __future__ import annotations

import io
import zipfile
from unittest.mock import Mock, patch

from sqlalchemy import select

from migrator_app.models import ImportRun, ImportRunStatus, Patient, db

HEADERS = {"X-Tenant-ID": "clinic-001"}
PATIENTS_CSV = "Record Number,First Name,Last Name,DOB\n1001,Jane,Doe,1980-01-02\n,John,Smith,\n"


def _zip_bytes(members: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, content in members.items():
            archive.writestr(name, content)
    return buffer.getvalue()


def _upload(client, content: bytes, filename: str, **form):
    data = {"file": (io.BytesIO(content), filename), **form}
    return client.post("/importer/uploads", data=data, headers=HEADERS, content_type="multipart/form-data")


def test_health_lists_datasets(importer_client):
    response = importer_client.get("/importer/health")

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["enabled"] is True
    assert "patients" in payload["entities"]
    assert payload["datasets"][-1] == "scanned_docs"
    assert payload["allowed_extensions"] == ["csv", "xlsx", "zip"]


def test_archive_upload_preview_then_inline_commit(importer_client, importer_app, tmp_path):
    upload = _upload(importer_client, _zip_bytes({"00_Tables/Patients.csv": PATIENTS_CSV}), "export.zip")

    assert upload.status_code == 201, upload.get_json()
    body = upload.get_json()
    assert body["kind"] == "archive"
    assert body["file_name"] == "export.zip"
    assert body["preview"]["is_chirotouch"] is True
    assert body["preview"]["datasets"]["patients"]["row_count"] == 2
    assert db.session.scalars(select(Patient)).first() is None

    commit = importer_client.post(
        f"/importer/uploads/{body['upload_id']}/commit",
        json={"inline": True, "file_name": "export.zip", "imported_by": "front-desk"},
        headers=HEADERS,
    )

    assert commit.status_code == 200, commit.get_json()
    summary = commit.get_json()
    assert summary["status"] == "completed"
    assert summary["summary"]["success_count"] == 1
    assert summary["summary"]["error_count"] == 1
    assert summary["chirotouch_data"]["patients_imported"] == 1

    run = db.session.get(ImportRun, summary["run_id"])
    assert run.tenant_id == "clinic-001"
    assert run.original_file_name == "export.zip"
    assert run.imported_by == "front-desk"
    assert list((tmp_path / "uploads").iterdir()) == []
    assert not (tmp_path / "work" / body["upload_id"]).exists()


def test_table_upload_suggests_mapping_and_commits(importer_client):
    csv_bytes = b"Chart Number,FirstName,LastName\nA-1,Ann,Lee\n"
    upload = _upload(importer_client, csv_bytes, "clients.csv", entity="patients")

    assert upload.status_code == 201
    body = upload.get_json()
    assert body["kind"] == "table"
    assert body["preview"]["suggested_mapping"]["record_number"] == "Chart Number"

    missing_entity = importer_client.post(
        f"/importer/uploads/{body['upload_id']}/commit", json={"inline": True}, headers=HEADERS
    )
    assert missing_entity.status_code == 400

    bad_mapping = importer_client.post(
        f"/importer/uploads/{body['upload_id']}/commit",
        json={"inline": True, "entity": "patients", "column_mapping": {"shoe_size": "Chart Number"}},
        headers=HEADERS,
    )
    assert bad_mapping.status_code == 400
    assert "shoe_size" in bad_mapping.get_json()["error"]

    list_column = importer_client.post(
        f"/importer/uploads/{body['upload_id']}/commit",
        json={"inline": True, "entity": "patients", "column_mapping": {"record_number": ["Chart Number"]}},
        headers=HEADERS,
    )
    assert list_column.status_code == 400
    assert "must be strings" in list_column.get_json()["error"]
    assert db.session.scalars(select(ImportRun)).first() is None

    commit = importer_client.post(
        f"/importer/uploads/{body['upload_id']}/commit",
        json={"inline": True, "entity": "patients"},
        headers=HEADERS,
    )
    assert commit.status_code == 200, commit.get_json()
    assert commit.get_json()["is_chirotouch"] is False
    assert db.session.scalars(select(Patient)).one().record_number == "A-1"


def test_commit_queues_on_worker(importer_client):
    upload = _upload(importer_client, _zip_bytes({"00_Tables/Patients.csv": PATIENTS_CSV}), "export.zip")
    upload_id = upload.get_json()["upload_id"]

    async_result = Mock()
    async_result.id = "celery-task-123"
    celery_app = Mock()
    celery_app.send_task.return_value = async_result

    with patch("migrator_app.importer.submission.get_celery_app", return_value=celery_app):
        response = importer_client.post(
            f"/importer/uploads/{upload_id}/commit",
            json={"inline": False, "selection": ["patients"]},
            headers=HEADERS,
        )

    assert response.status_code == 202, response.get_json()
    payload = response.get_json()
    assert payload == {"run_id": payload["run_id"], "task_id": "celery-task-123", "status": "queued"}
    assert celery_app.send_task.call_args.args == ("importer.pipeline.commit_archive",)
    kwargs = celery_app.send_task.call_args.kwargs["kwargs"]
    assert kwargs["run_id"] == payload["run_id"]
    assert kwargs["selection"] == ["patients"]
    assert db.session.get(ImportRun, payload["run_id"]).status == ImportRunStatus.PENDING


def test_commit_without_worker_fails_run(importer_client):
    upload = _upload(importer_client, PATIENTS_CSV.encode(), "patients.csv", entity="patients")
    upload_id = upload.get_json()["upload_id"]

    with patch("migrator_app.importer.submission.get_celery_app", return_value=None):
        response = importer_client.post(
            f"/importer/uploads/{upload_id}/commit",
            json={"inline": False, "entity": "patients"},
            headers=HEADERS,
        )

    assert response.status_code == 503
    run = db.session.get(ImportRun, response.get_json()["run_id"])
    assert run.status == ImportRunStatus.FAILED
    assert "not configured" in run.error_summary


def test_commit_rejects_unknown_selection(importer_client):
    upload = _upload(importer_client, _zip_bytes({"00_Tables/Patients.csv": PATIENTS_CSV}), "export.zip")
    upload_id = upload.get_json()["upload_id"]

    response = importer_client.post(
        f"/importer/uploads/{upload_id}/commit", json={"inline": True, "selection": ["billing"]}, headers=HEADERS
    )

    assert response.status_code == 400
    assert db.session.scalars(select(ImportRun)).first() is None


def test_commit_unknown_upload(importer_client):
    response = importer_client.post("/importer/uploads/deadbeef/commit", json={}, headers=HEADERS)
    assert response.status_code == 404


def test_upload_validation(importer_client, tmp_path):
    no_tenant = importer_client.post(
        "/importer/uploads",
        data={"file": (io.BytesIO(b"x"), "export.zip")},
        content_type="multipart/form-data",
    )
    assert no_tenant.status_code == 400

    assert _upload(importer_client, b"hello", "notes.txt").status_code == 400
    assert _upload(importer_client, b"a,b\n", "table.csv", entity="invoices").status_code == 400

    unreadable = _upload(importer_client, b"not a zip", "broken.zip")
    assert unreadable.status_code == 422
    assert "corrupt archive" in unreadable.get_json()["error"]
    assert list((tmp_path / "uploads").iterdir()) == []


def test_upload_over_limit(tmp_path, importer_app_factory):
    app = importer_app_factory(tmp_path, IMPORTER_MAX_UPLOAD_MB=0)

    response = _upload(app.test_client(), b"a,b\n1,2\n", "table.csv")

    assert response.status_code == 413
    assert "upload limit" in response.get_json()["error"]


def test_disabled_importer_returns_404(importer_app, importer_client):
    importer_app.config["IMPORTER_ENABLED"] = False

    response = importer_client.get("/importer/runs", headers=HEADERS)

    assert response.status_code == 404
    assert response.get_json()["error"] == "Importer is disabled."


def test_worker_health_disabled(importer_client):
    payload = importer_client.get("/importer/worker_health").get_json()

    assert payload["status"] == "disabled"
    assert payload["worker_enabled"] is False


def test_worker_health_rejects_bad_timeout(importer_client):
    for timeout in ("abc", "0", "-1", "nan"):
        response = importer_client.get(f"/importer/worker_health?timeout={timeout}")

        assert response.status_code == 400
        assert "timeout" in response.get_json()["error"]
