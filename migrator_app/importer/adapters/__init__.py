"""Source adapters: archive extraction and tabular readers."""

from .archive import ExtractedFile, ExtractionError, ensure_extracted, extract_archive, scan_extracted
from .tabular import (
    LegacyRow,
    TabularAdapterError,
    TabularParseError,
    TabularRow,
    count_csv_rows,
    count_table_rows,
    iter_csv_rows,
    iter_table_rows,
    iter_xlsx_rows,
    read_headers,
)

__all__ = [
    "ExtractedFile",
    "ExtractionError",
    "ensure_extracted",
    "extract_archive",
    "scan_extracted",
    "LegacyRow",
    "TabularAdapterError",
    "TabularParseError",
    "TabularRow",
    "count_csv_rows",
    "count_table_rows",
    "iter_csv_rows",
    "iter_table_rows",
    "iter_xlsx_rows",
    "read_headers",
]
