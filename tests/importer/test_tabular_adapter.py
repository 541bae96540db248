from __future__ import annotations

from datetime import datetime

import pytest
from openpyxl import Workbook

from migrator_app.importer.adapters.tabular import (
    TabularParseError,
    count_csv_rows,
    count_table_rows,
    iter_csv_rows,
    iter_table_rows,
    iter_xlsx_rows,
    read_headers,
)


def _write_workbook(path, rows):
    workbook = Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    workbook.save(path)
    return path


def test_iter_csv_rows_strips_bom_and_skips_blank_rows(tmp_path):
    path = tmp_path / "patients.csv"
    path.write_text("\ufeffRecord Number , First Name\n1001,Jane\n,\n1002,John\n", encoding="utf-8")

    rows = list(iter_csv_rows(path))

    assert [row.values for row in rows] == [
        {"Record Number": "1001", "First Name": "Jane"},
        {"Record Number": "1002", "First Name": "John"},
    ]
    assert [row.sequence_number for row in rows] == [1, 3]


def test_iter_csv_rows_is_lazy_and_restartable(tmp_path):
    path = tmp_path / "codes.csv"
    path.write_text("Code,Description\n98940,CMT 1-2\n98941,CMT 3-4\n", encoding="utf-8")

    first_pass = iter_csv_rows(path)
    assert next(first_pass).values["Code"] == "98940"
    first_pass.close()

    assert [row.values["Code"] for row in iter_csv_rows(path)] == ["98940", "98941"]
    assert count_csv_rows(path) == 2


def test_iter_csv_rows_requires_header(tmp_path):
    path = tmp_path / "empty.csv"
    path.write_text("", encoding="utf-8")

    with pytest.raises(TabularParseError):
        list(iter_csv_rows(path))


def test_read_headers_for_csv_and_missing_file(tmp_path):
    path = tmp_path / "ledger.csv"
    path.write_text("Patient ID,Date,Amount\n1,2023-01-01,10\n", encoding="utf-8")

    assert read_headers(path) == ("Patient ID", "Date", "Amount")
    with pytest.raises(TabularParseError):
        read_headers(tmp_path / "missing.csv")


def test_iter_xlsx_rows_converts_cells_to_text(tmp_path):
    path = _write_workbook(
        tmp_path / "appointments.xlsx",
        [
            ["Patient ID", "Appointment Date", "Duration", "Notes"],
            ["1001", datetime(2023, 3, 14), 45.0, "Follow up"],
            [None, None, None, None],
            ["1002", datetime(2023, 3, 15, 10, 30), 30, None],
        ],
    )

    rows = list(iter_xlsx_rows(path))

    assert rows[0].values == {
        "Patient ID": "1001",
        "Appointment Date": "2023-03-14",
        "Duration": "45",
        "Notes": "Follow up",
    }
    assert rows[1].values["Appointment Date"] == "2023-03-15 10:30:00"
    assert rows[1].values.get("Notes") is None
    assert len(rows) == 2


def test_table_dispatch_by_extension(tmp_path):
    xlsx = _write_workbook(tmp_path / "providers.xlsx", [["NPI", "Last Name"], ["123", "Lee"]])
    csv_path = tmp_path / "providers.csv"
    csv_path.write_text("NPI,Last Name\n123,Lee\n456,Kim\n", encoding="utf-8")

    assert read_headers(xlsx) == ("NPI", "Last Name")
    assert [row.values["NPI"] for row in iter_table_rows(xlsx)] == ["123"]
    assert count_table_rows(csv_path) == 2


def test_unreadable_workbook_raises_parse_error(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"not really a workbook")

    with pytest.raises(TabularParseError):
        list(iter_xlsx_rows(path))
