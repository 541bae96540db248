"""
Structure detection for extracted legacy exports.

Folder names vary between export tool versions (``00_Tables``, ``Tables``,
``01 - Ledger History``), so every category owns an ordered list of
case-insensitive patterns tried against a file's leading path segment. The
pattern tables below are data; supporting a new export variant means adding
a pattern, not a branch.
"""

from __future__ import annotations

import re
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, Mapping, Pattern, Sequence, Tuple

from migrator_app.importer.adapters.archive import ExtractedFile
from migrator_app.importer.contracts.legacy import EntityType

TABLES = "tables"
LEDGER = "ledger"
SCANNED_DOCS = "scanned_docs"
CHART_NOTES = "chart_notes"

_PREFIX = r"^(?:\d+\s*[_\-. ]*\s*)?"


def _patterns(*expressions: str) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(expression, re.IGNORECASE) for expression in expressions)


# Category iteration order is significant: first match wins.
FOLDER_PATTERNS: "OrderedDict[str, Tuple[Pattern[str], ...]]" = OrderedDict(
    [
        (TABLES, _patterns(_PREFIX + r"tables?$", _PREFIX + r"data[_\- ]?tables?$")),
        (LEDGER, _patterns(_PREFIX + r"ledger[_\- ]?history$", _PREFIX + r"ledgers?$")),
        (SCANNED_DOCS, _patterns(_PREFIX + r"scanned[_\- ]?doc(?:ument)?s?$", _PREFIX + r"scans?$")),
        (CHART_NOTES, _patterns(_PREFIX + r"chart[_\- ]?notes?$", _PREFIX + r"soap[_\- ]?notes?$")),
    ]
)

# Table files are routed to an entity by filename; order matters because
# ``PatientInsurance.csv`` must land on insurance, not patients.
TABLE_ROUTES: Tuple[Tuple[Pattern[str], EntityType], ...] = (
    (re.compile(r"soap|progress[_\- ]?notes?", re.IGNORECASE), EntityType.SOAP_NOTES),
    (re.compile(r"insur|payer|carrier", re.IGNORECASE), EntityType.INSURANCE),
    (re.compile(r"appoint|appt|(?<!fee)(?<!fee[_\- ])schedul", re.IGNORECASE), EntityType.APPOINTMENTS),
    (re.compile(r"provider|doctor|physician|staff", re.IGNORECASE), EntityType.PROVIDERS),
    (re.compile(r"diagnos|icd", re.IGNORECASE), EntityType.DIAGNOSIS_CODES),
    (re.compile(r"service|procedure|cpt|fee[_\- ]?schedule", re.IGNORECASE), EntityType.SERVICE_CODES),
    (re.compile(r"ledger|transaction|payment", re.IGNORECASE), EntityType.LEDGER),
    (re.compile(r"patient", re.IGNORECASE), EntityType.PATIENTS),
)

TABULAR_SUFFIXES: Tuple[str, ...] = (".csv", ".xlsx")
NOTE_SUFFIXES: Tuple[str, ...] = (".pdf", ".txt", ".rtf")
CHART_NOTE_NAME_PATTERN = re.compile(r"chart|note|soap|visit|progress", re.IGNORECASE)
CHART_NOTE_DIR_PATTERN = re.compile(r"notes|chart", re.IGNORECASE)


@dataclass
class DatasetClassification:
    """Files assigned to each known dataset category."""

    categories: dict[str, list[ExtractedFile]] = field(
        default_factory=lambda: {name: [] for name in FOLDER_PATTERNS}
    )
    unclassified: list[ExtractedFile] = field(default_factory=list)
    root_prefix: str | None = None
    used_chart_note_fallback: bool = False

    @property
    def is_chirotouch(self) -> bool:
        return bool(self.categories[TABLES] or self.categories[LEDGER] or self.categories[CHART_NOTES])

    @property
    def is_empty(self) -> bool:
        return not any(self.categories.values())

    def files(self, category: str) -> list[ExtractedFile]:
        return self.categories.get(category, [])

    def table_datasets(self) -> "OrderedDict[EntityType, list[ExtractedFile]]":
        """
        Route tabular files from the tables and ledger folders to entity types.

        Ledger-folder files always load as ledger rows. Table files that no
        route claims are reported by :meth:`unrouted_tables`.
        """

        datasets: "OrderedDict[EntityType, list[ExtractedFile]]" = OrderedDict((entity, []) for entity in EntityType)
        for extracted in self.categories[TABLES]:
            if extracted.suffix not in TABULAR_SUFFIXES:
                continue
            entity = route_table_file(extracted.name)
            if entity is not None:
                datasets[entity].append(extracted)
        for extracted in self.categories[LEDGER]:
            if extracted.suffix in TABULAR_SUFFIXES:
                datasets[EntityType.LEDGER].append(extracted)
        return datasets

    def unrouted_tables(self) -> list[ExtractedFile]:
        return [
            extracted
            for extracted in self.categories[TABLES]
            if extracted.suffix not in TABULAR_SUFFIXES or route_table_file(extracted.name) is None
        ]

    def counts(self) -> dict[str, int]:
        return {name: len(files) for name, files in self.categories.items()}


def route_table_file(file_name: str) -> EntityType | None:
    for pattern, entity in TABLE_ROUTES:
        if pattern.search(file_name):
            return entity
    return None


def _match_category(segment: str, patterns: Mapping[str, Sequence[Pattern[str]]]) -> str | None:
    for category, expressions in patterns.items():
        if any(expression.search(segment) for expression in expressions):
            return category
    return None


def _common_root(files: Sequence[ExtractedFile]) -> str | None:
    """
    Return a single wrapper directory shared by every file, if any.

    Some export tools nest everything under one folder named after the
    practice; that wrapper is skipped when it is not itself a category.
    """

    roots = {extracted.parts[0] for extracted in files if len(extracted.parts) > 1}
    if len(roots) != 1 or any(len(extracted.parts) == 1 for extracted in files):
        return None
    root = next(iter(roots))
    if _match_category(root, FOLDER_PATTERNS) is not None:
        return None
    return root


def _leading_segment(extracted: ExtractedFile, root: str | None) -> str | None:
    parts = extracted.parts
    if root is not None:
        parts = parts[1:]
    if len(parts) < 2:
        return None
    return parts[0]


def _looks_like_chart_note(extracted: ExtractedFile) -> bool:
    if extracted.suffix not in NOTE_SUFFIXES:
        return False
    if CHART_NOTE_NAME_PATTERN.search(extracted.name):
        return True
    parent = PurePosixPath(extracted.relative_path).parent.name
    return bool(parent and CHART_NOTE_DIR_PATTERN.search(parent))


def classify_files(files: Iterable[ExtractedFile]) -> DatasetClassification:
    """
    Assign extracted files to dataset categories.

    Never raises: an archive with no recognizable content yields an empty
    classification. Results are sorted by relative path, so the outcome does
    not depend on the order files were supplied in.
    """

    ordered = sorted(files, key=lambda extracted: extracted.relative_path)
    classification = DatasetClassification(root_prefix=_common_root(ordered))

    for extracted in ordered:
        segment = _leading_segment(extracted, classification.root_prefix)
        category = _match_category(segment, FOLDER_PATTERNS) if segment else None
        if category is None:
            classification.unclassified.append(extracted)
        else:
            classification.categories[category].append(extracted)

    if not classification.categories[CHART_NOTES]:
        recovered = [extracted for extracted in classification.unclassified if _looks_like_chart_note(extracted)]
        if recovered:
            classification.categories[CHART_NOTES].extend(recovered)
            recovered_paths = {extracted.relative_path for extracted in recovered}
            classification.unclassified = [
                extracted
                for extracted in classification.unclassified
                if extracted.relative_path not in recovered_paths
            ]
            classification.used_chart_note_fallback = True

    return classification


def folder_name(extracted: ExtractedFile, root: str | None = None) -> str:
    """Top-level folder a file was found in, ignoring any wrapper directory."""

    return _leading_segment(extracted, root) or "(root)"
