from __future__ import annotations

import zipfile

import pytest

from migrator_app.importer.adapters.archive import (
    EXTRACTION_MARKER,
    ExtractionError,
    ensure_extracted,
    extract_archive,
    scan_extracted,
)


def test_extract_archive_streams_nested_members(build_export, tmp_path):
    archive = build_export(
        {
            "00_Tables/Patients.csv": "Record Number,First Name,Last Name\n1001,Jane,Doe\n",
            "03_Chart Notes/2023/1001_visit.txt": "Subjective: sore neck",
            "__MACOSX/._Patients.csv": "junk",
            "00_Tables/.DS_Store": "junk",
        }
    )

    extracted = extract_archive(archive, tmp_path / "work")

    paths = [item.relative_path for item in extracted]
    assert paths == ["00_Tables/Patients.csv", "03_Chart Notes/2023/1001_visit.txt"]
    assert (tmp_path / "work" / "03_Chart Notes" / "2023" / "1001_visit.txt").read_text() == "Subjective: sore neck"
    assert extracted[0].name == "Patients.csv"
    assert extracted[0].suffix == ".csv"
    assert extracted[0].size == len("Record Number,First Name,Last Name\n1001,Jane,Doe\n")


def test_extract_archive_rejects_path_traversal(tmp_path):
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as handle:
        handle.writestr("../outside.txt", "nope")

    with pytest.raises(ExtractionError) as excinfo:
        extract_archive(archive, tmp_path / "work")

    assert "unsafe member path" in str(excinfo.value)
    assert not (tmp_path / "outside.txt").exists()


def test_extract_archive_reports_corrupt_archive(tmp_path):
    archive = tmp_path / "broken.zip"
    archive.write_bytes(b"this is not a zip file")

    with pytest.raises(ExtractionError) as excinfo:
        extract_archive(archive, tmp_path / "work")

    assert excinfo.value.archive_path == archive
    assert "corrupt archive" in str(excinfo.value)


def test_ensure_extracted_reuses_completed_directory(build_export, tmp_path):
    archive = build_export({"00_Tables/Providers.csv": "NPI,First Name,Last Name\n1,Ann,Lee\n"})
    work_dir = tmp_path / "work"

    first = ensure_extracted(archive, work_dir)
    assert (work_dir / EXTRACTION_MARKER).exists()

    archive.unlink()
    second = ensure_extracted(archive, work_dir)

    assert [item.relative_path for item in second] == [item.relative_path for item in first]


def test_scan_extracted_skips_marker_file(build_export, tmp_path):
    archive = build_export({"02_Scanned Docs/1001_intake.pdf": b"%PDF-1.4"})
    ensure_extracted(archive, tmp_path / "work")

    scanned = scan_extracted(tmp_path / "work")

    assert [item.relative_path for item in scanned] == ["02_Scanned Docs/1001_intake.pdf"]


def test_extract_archive_enforces_uncompressed_limit(build_export, tmp_path):
    archive = build_export({"00_Tables/Patients.csv": "x" * 2048})

    with pytest.raises(ExtractionError, match="extraction limit"):
        ensure_extracted(archive, tmp_path / "capped", max_total_bytes=1024)

    assert not (tmp_path / "capped" / EXTRACTION_MARKER).exists()
    assert len(extract_archive(archive, tmp_path / "roomy", max_total_bytes=4096)) == 1
