"""Importer pipeline helpers."""

from __future__ import annotations

from .attachments import AttachmentLinker, LinkOutcome, LinkResult, extract_patient_token
from .chirotouch import (
    DATASET_ORDER,
    PipelineSettings,
    commit_archive,
    commit_table,
    normalize_selection,
    preview_archive,
    preview_table,
)
from .classify import DatasetClassification, classify_files
from .loaders import IMPORTERS, EntityImporter, RowOutcome, importer_for
from .patient_lookup import MatchTier, PatientMatch, PatientResolver
from .run_ledger import ImportRunLedger, IssueRecord, RunLedgerFrozenError
from .run_service import ImportRunService, RunFilters
from .scheduler import BatchPolicy, BatchScheduler, MemorySampler, PsutilMemorySampler
from .soap import SoapNote, extract_soap_note, strip_rtf
from .store import RecordStore

__all__ = [
    "AttachmentLinker",
    "LinkOutcome",
    "LinkResult",
    "extract_patient_token",
    "DATASET_ORDER",
    "PipelineSettings",
    "commit_archive",
    "commit_table",
    "normalize_selection",
    "preview_archive",
    "preview_table",
    "DatasetClassification",
    "classify_files",
    "IMPORTERS",
    "EntityImporter",
    "RowOutcome",
    "importer_for",
    "MatchTier",
    "PatientMatch",
    "PatientResolver",
    "ImportRunLedger",
    "IssueRecord",
    "RunLedgerFrozenError",
    "ImportRunService",
    "RunFilters",
    "BatchPolicy",
    "BatchScheduler",
    "MemorySampler",
    "PsutilMemorySampler",
    "SoapNote",
    "extract_soap_note",
    "strip_rtf",
    "RecordStore",
]
