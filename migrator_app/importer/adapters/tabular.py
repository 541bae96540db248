"""Streaming readers for legacy tabular exports (CSV and XLSX).

Rows are yielded lazily as ordered ``header -> value`` mappings. Nothing here
knows about canonical fields; column names stay exactly as the exporting tool
wrote them until the field mapper resolves them.
"""

from __future__ import annotations

import csv
import zipfile
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Iterator

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

LegacyRow = dict[str, str | None]

CSV_ENCODING = "utf-8-sig"


class TabularAdapterError(Exception):
    """Base exception for tabular adapter failures."""


class TabularParseError(TabularAdapterError):
    """Raised when a file cannot be decoded as a table."""

    def __init__(self, path: Path | str, message: str) -> None:
        super().__init__(f"{Path(path).name}: {message}")
        self.path = Path(path)


@dataclass(frozen=True)
class TabularRow:
    """One data row together with its position in the source file."""

    sequence_number: int
    source_line: int
    values: LegacyRow


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff")


def _row_is_blank(values: LegacyRow) -> bool:
    return all(value is None or (isinstance(value, str) and value.strip() == "") for value in values.values())


def _open_csv(path: Path):
    return path.open("r", encoding=CSV_ENCODING, errors="replace", newline="")


def read_headers(path: Path | str) -> tuple[str, ...]:
    """Return the sanitized header row of a CSV or XLSX file."""

    path = Path(path)
    if path.suffix.lower() == ".xlsx":
        return tuple(_xlsx_headers(path))
    try:
        with _open_csv(path) as handle:
            reader = csv.reader(handle)
            first = next(reader, None)
    except (csv.Error, OSError) as exc:
        raise TabularParseError(path, str(exc)) from exc
    return tuple(_sanitize_header(item) for item in (first or ()))


def iter_csv_rows(path: Path | str, *, skip_blank_rows: bool = True) -> Iterator[TabularRow]:
    """
    Lazily yield rows from a CSV file.

    The file handle stays open only while the generator is being consumed;
    restarting means calling this function again.

    Raises:
        TabularParseError: The file is missing, has no header row, or the CSV
            reader rejects its content.
    """

    path = Path(path)
    try:
        with _open_csv(path) as handle:
            reader = csv.DictReader(handle)
            if reader.fieldnames is None:
                raise TabularParseError(path, "file has no header row")
            reader.fieldnames = [_sanitize_header(name) for name in reader.fieldnames]
            for sequence_number, raw_row in enumerate(reader, start=1):
                values: LegacyRow = {key: value for key, value in raw_row.items() if key is not None}
                if skip_blank_rows and _row_is_blank(values):
                    continue
                yield TabularRow(sequence_number=sequence_number, source_line=reader.line_num, values=values)
    except csv.Error as exc:
        raise TabularParseError(path, f"malformed CSV ({exc})") from exc
    except OSError as exc:
        raise TabularParseError(path, str(exc)) from exc


def count_csv_rows(path: Path | str) -> int:
    """Count non-blank data rows with a single streaming pass."""

    return sum(1 for _ in iter_csv_rows(path))


def _xlsx_cell_to_text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.hour == 0 and value.minute == 0 and value.second == 0:
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _xlsx_headers(path: Path) -> list[str]:
    for row in iter_xlsx_rows(path, header_only=True):
        return list(row.values)
    return []


def iter_xlsx_rows(path: Path | str, *, header_only: bool = False) -> Iterator[TabularRow]:
    """
    Lazily yield rows from the first worksheet of an XLSX workbook.

    The workbook is opened in openpyxl's read-only mode so rows stream from
    the archive instead of being loaded up front. With ``header_only`` a
    single row mapping each header to itself is yielded.
    """

    path = Path(path)
    try:
        workbook = load_workbook(filename=str(path), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise TabularParseError(path, f"unreadable workbook ({exc})") from exc

    try:
        worksheet = workbook.active
        rows = worksheet.iter_rows(values_only=True)
        header_cells = next(rows, None)
        if header_cells is None:
            raise TabularParseError(path, "worksheet is empty")
        headers = [_sanitize_header(_xlsx_cell_to_text(cell)) for cell in header_cells]
        if header_only:
            yield TabularRow(sequence_number=0, source_line=1, values={name: name for name in headers if name})
            return
        for sequence_number, cells in enumerate(rows, start=1):
            values: LegacyRow = {}
            for header, cell in zip(headers, cells):
                if header:
                    values[header] = _xlsx_cell_to_text(cell)
            if _row_is_blank(values):
                continue
            yield TabularRow(sequence_number=sequence_number, source_line=sequence_number + 1, values=values)
    finally:
        workbook.close()


def iter_table_rows(path: Path | str) -> Iterator[TabularRow]:
    """Dispatch to the CSV or XLSX reader based on the file extension."""

    path = Path(path)
    if path.suffix.lower() == ".xlsx":
        return iter_xlsx_rows(path)
    return iter_csv_rows(path)


def count_table_rows(path: Path | str) -> int:
    return sum(1 for _ in iter_table_rows(path))
