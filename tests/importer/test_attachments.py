from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest
from sqlalchemy import select

from migrator_app.importer.adapters.archive import ExtractedFile
from migrator_app.importer.pipeline.attachments import (
    AttachmentLinker,
    LinkOutcome,
    extract_patient_token,
)
from migrator_app.importer.pipeline.classify import CHART_NOTES, SCANNED_DOCS
from migrator_app.importer.pipeline.run_ledger import MISSING_PATIENT
from migrator_app.models import HistoricalNote, PatientFile, db


@pytest.fixture
def linker(store, tenant_id, ledger, tmp_path):
    return AttachmentLinker(store, tenant_id, ledger, document_dir=tmp_path / "documents")


@pytest.fixture
def export_file(tmp_path):
    def _write(relative_path: str, content: str | bytes) -> ExtractedFile:
        path = tmp_path / "work" / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8") if isinstance(content, str) else content
        path.write_bytes(data)
        return ExtractedFile(relative_path, path, len(data))

    return _write


@pytest.mark.parametrize(
    ("filename", "pattern", "token", "parts"),
    [
        ("1001_intake.pdf", "numeric", "1001", ()),
        ("P1234_scan.pdf", "p_number", "P1234", ("1234",)),
        ("AB123.pdf", "letter_digit", "AB123", ()),
        ("Smith_John_03_14_2023.txt", "first_last", "Smith_John", ("Smith", "John")),
        ("Jane Doe visit.txt", "first_space_last", "Jane Doe", ("Jane", "Doe")),
    ],
)
def test_extract_patient_token(filename, pattern, token, parts):
    result = extract_patient_token(filename)

    assert (result.pattern, result.token, result.parts) == (pattern, token, parts)


def test_extract_patient_token_ignores_noise_and_provider():
    assert extract_patient_token("scan.pdf") is None
    assert extract_patient_token("Smith_John_Dr_Amy_Chen_2023-03-14.txt").parts == ("Smith", "John")


def test_scanned_document_is_copied_and_recorded(linker, ledger, make_patient, export_file, tmp_path, tenant_id):
    patient = make_patient("1001")
    extracted = export_file("02_Scanned Docs/1001_intake.pdf", b"%PDF-1.4")

    result = linker.link(extracted, SCANNED_DOCS, folder="02_Scanned Docs")

    assert result.outcome is LinkOutcome.LINKED
    assert result.patient_id == patient.id
    stored = db.session.get(PatientFile, result.patient_file_id)
    assert stored.category == "Scanned Documents"
    assert stored.original_name == "1001_intake.pdf"
    assert stored.stored_name.startswith(f"{patient.id}_")
    assert stored.stored_name.endswith(".pdf")
    assert Path(stored.file_path).parent == tmp_path / "documents" / tenant_id
    assert Path(stored.file_path).read_bytes() == b"%PDF-1.4"
    assert ledger.entity_counts["scanned_docs_attached"] == 1
    assert ledger.summary.total_processed == 1


def test_relinking_same_file_is_duplicate(linker, ledger, make_patient, export_file):
    make_patient("1001")
    extracted = export_file("02_Scanned Docs/1001_intake.pdf", b"%PDF-1.4")
    linker.link(extracted, SCANNED_DOCS)

    result = linker.link(extracted, SCANNED_DOCS)

    assert result.outcome is LinkOutcome.DUPLICATE
    assert ledger.summary.duplicate_count == 1
    assert len(db.session.scalars(select(PatientFile)).all()) == 1


def test_chart_note_creates_historical_note(linker, ledger, make_patient, export_file):
    patient = make_patient("John", "John", "Smith")
    extracted = export_file("03_Chart Notes/Smith_John_03_14_2023.txt", "Subjective: back pain\nPlan: ice and rest")

    result = linker.link(extracted, CHART_NOTES, folder="03_Chart Notes")

    assert result.outcome is LinkOutcome.LINKED
    note = db.session.get(HistoricalNote, result.historical_note_id)
    assert note.patient_id == patient.id
    assert note.patient_file_id == result.patient_file_id
    assert (note.subjective, note.objective, note.assessment, note.plan) == ("back pain", "", "", "ice and rest")
    assert note.visit_date == date(2023, 3, 14)
    assert note.is_authoritative is False
    assert ledger.entity_counts["chart_notes_attached"] == 1
    assert ledger.historical_notes_created == 1


def test_chart_note_without_sections_is_attached_only(linker, ledger, make_patient, export_file):
    make_patient("1001")
    extracted = export_file("03_Chart Notes/1001_visit.txt", "Called to reschedule.")

    result = linker.link(extracted, CHART_NOTES)

    assert result.outcome is LinkOutcome.LINKED
    assert result.historical_note_id is None
    assert db.session.scalars(select(HistoricalNote)).first() is None
    assert ledger.historical_notes_created == 0


def test_unmatched_file_is_warning_not_error(linker, ledger, make_patient, export_file):
    make_patient("1001")
    extracted = export_file("02_Scanned Docs/9999_intake.pdf", b"%PDF")

    result = linker.link(extracted, SCANNED_DOCS)

    assert result.outcome is LinkOutcome.MISSING_PATIENT
    assert ledger.summary.error_count == 0
    warning = ledger.warnings_of_type(MISSING_PATIENT)[0]
    assert warning.record_key == "9999"
    assert db.session.scalars(select(PatientFile)).first() is None


def test_rejects_unknown_category(linker, export_file):
    with pytest.raises(ValueError):
        linker.link(export_file("misc/1001.pdf", b"x"), "tables")
