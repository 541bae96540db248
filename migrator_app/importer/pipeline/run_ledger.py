"""
In-memory accumulator for one import run.

A single ``ImportRunLedger`` is created per run and passed explicitly through
every pipeline stage; nothing about a run lives in module or app globals, so
concurrent runs for different tenants never share state. Once the ledger
reaches a terminal status it is frozen and any further mutation raises.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from migrator_app.models.importer.schema import (
    ImportIssue,
    ImportIssueKind,
    ImportRun,
    ImportRunStatus,
    format_duration,
)

logger = logging.getLogger(__name__)

DEFAULT_REPORT_CAP = 10

# Issue type tags.
MISSING_PATIENT = "missing_patient"
INVALID_DATE = "invalid_date"
MISSING_FILE = "missing_file"
FORMAT_ISSUE = "format_issue"
DATA_MISMATCH = "data_mismatch"
MEMORY_LIMIT = "memory_limit"
LARGE_DATASET = "large_dataset"
AMBIGUOUS_PATIENT = "ambiguous_patient"
UNRECOGNIZED_ARCHIVE = "unrecognized_archive"
MISSING_FIELD = "missing_field"
DATABASE_ERROR = "database_error"

# Per-entity success counters surfaced as ``chirotouch_data``.
ENTITY_COUNT_KEYS: tuple[str, ...] = (
    "patients_imported",
    "providers_imported",
    "insurance_imported",
    "diagnosis_codes_imported",
    "service_codes_imported",
    "appointments_imported",
    "ledger_records_imported",
    "soap_notes_imported",
    "chart_notes_attached",
    "scanned_docs_attached",
)


class RunLedgerFrozenError(RuntimeError):
    """Raised when a terminal run ledger is mutated."""


@dataclass(frozen=True)
class IssueRecord:
    """One error, duplicate, or warning captured during a run."""

    kind: ImportIssueKind
    issue_type: str
    message: str
    file_name: str | None = None
    folder_path: str | None = None
    record_key: str | None = None
    row_number: int | None = None
    details: Mapping[str, Any] | None = None
    recorded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict[str, Any]:
        payload = {
            "type": self.issue_type,
            "message": self.message,
            "file_name": self.file_name,
            "folder_path": self.folder_path,
            "record_key": self.record_key,
            "row_number": self.row_number,
            "timestamp": self.recorded_at.isoformat(),
        }
        if self.details:
            payload["details"] = dict(self.details)
        return payload


@dataclass
class RunCounters:
    total_processed: int = 0
    success_count: int = 0
    error_count: int = 0
    duplicate_count: int = 0
    skipped_count: int = 0


@dataclass
class FolderProgress:
    folder_name: str
    file_count: int = 0
    processed_count: int = 0
    error_count: int = 0


class ImportRunLedger:
    """Mutable audit accumulator for a single run."""

    def __init__(
        self,
        *,
        tenant_id: str,
        run_id: int | None = None,
        report_cap: int = DEFAULT_REPORT_CAP,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.tenant_id = tenant_id
        self.run_id = run_id
        self.report_cap = report_cap
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.status = ImportRunStatus.PENDING
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.is_chirotouch: bool | None = None
        self.error_summary: str | None = None
        self.summary = RunCounters()
        self.entity_counts: dict[str, int] = {key: 0 for key in ENTITY_COUNT_KEYS}
        self.historical_notes_created = 0
        self.folders: "OrderedDict[str, FolderProgress]" = OrderedDict()
        self.errors: list[IssueRecord] = []
        self.duplicates: list[IssueRecord] = []
        self.warnings: list[IssueRecord] = []
        self._issue_log: list[IssueRecord] = []
        self._persisted_issues = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_frozen(self) -> bool:
        return self.status.is_terminal

    def _ensure_mutable(self) -> None:
        if self.is_frozen:
            raise RunLedgerFrozenError(f"Import run ledger is {self.status.value}; it can no longer change.")

    def start(self) -> None:
        self._ensure_mutable()
        self.status = ImportRunStatus.PROCESSING
        self.started_at = self._clock()

    def finish(self, status: ImportRunStatus = ImportRunStatus.COMPLETED, *, error_summary: str | None = None) -> None:
        """Move to a terminal status and freeze the ledger."""

        self._ensure_mutable()
        if not status.is_terminal:
            raise ValueError(f"{status.value} is not a terminal status.")
        if self.started_at is None:
            self.started_at = self._clock()
        self.finished_at = self._clock()
        self.error_summary = error_summary
        self.status = status

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None:
            return None
        finished = self.finished_at or self._clock()
        return int((finished - self.started_at).total_seconds() * 1000)

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    def track_folder(self, folder_name: str, *, file_count: int = 0) -> FolderProgress:
        self._ensure_mutable()
        progress = self.folders.get(folder_name)
        if progress is None:
            progress = FolderProgress(folder_name=folder_name)
            self.folders[folder_name] = progress
        progress.file_count += file_count
        return progress

    def record_processed(self, count: int = 1, *, folder: str | None = None) -> None:
        self._ensure_mutable()
        self.summary.total_processed += count
        if folder is not None:
            self.track_folder(folder).processed_count += count

    def record_success(self, entity_key: str) -> None:
        self._ensure_mutable()
        if entity_key not in self.entity_counts:
            raise KeyError(f"Unknown entity counter '{entity_key}'.")
        self.summary.success_count += 1
        self.entity_counts[entity_key] += 1

    def record_historical_note(self) -> None:
        self._ensure_mutable()
        self.historical_notes_created += 1

    def record_skipped(self, count: int = 1) -> None:
        self._ensure_mutable()
        if count > 0:
            self.summary.skipped_count += count

    # ------------------------------------------------------------------
    # Issues
    # ------------------------------------------------------------------

    def record_error(self, issue_type: str, message: str, **context: Any) -> IssueRecord:
        self._ensure_mutable()
        issue = self._build_issue(ImportIssueKind.ERROR, issue_type, message, context)
        self.errors.append(issue)
        self._issue_log.append(issue)
        self.summary.error_count += 1
        if issue.folder_path:
            self.track_folder(issue.folder_path).error_count += 1
        logger.info(
            "Import row error: %s",
            message,
            extra={"importer_run_id": self.run_id, "importer_issue_type": issue_type, "importer_file": issue.file_name},
        )
        return issue

    def record_duplicate(self, issue_type: str, message: str, **context: Any) -> IssueRecord:
        self._ensure_mutable()
        issue = self._build_issue(ImportIssueKind.DUPLICATE, issue_type, message, context)
        self.duplicates.append(issue)
        self._issue_log.append(issue)
        self.summary.duplicate_count += 1
        return issue

    def record_warning(self, issue_type: str, message: str, **context: Any) -> IssueRecord:
        self._ensure_mutable()
        issue = self._build_issue(ImportIssueKind.WARNING, issue_type, message, context)
        self.warnings.append(issue)
        self._issue_log.append(issue)
        logger.warning(
            "Import warning (%s): %s",
            issue_type,
            message,
            extra={"importer_run_id": self.run_id, "importer_issue_type": issue_type, "importer_file": issue.file_name},
        )
        return issue

    def warnings_of_type(self, issue_type: str) -> list[IssueRecord]:
        return [issue for issue in self.warnings if issue.issue_type == issue_type]

    def _build_issue(self, kind: ImportIssueKind, issue_type: str, message: str, context: Mapping[str, Any]):
        return IssueRecord(
            kind=kind,
            issue_type=issue_type,
            message=message,
            file_name=context.get("file_name"),
            folder_path=context.get("folder_path"),
            record_key=context.get("record_key"),
            row_number=context.get("row_number"),
            details=context.get("details"),
            recorded_at=self._clock(),
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def counts_payload(self) -> dict[str, Any]:
        """Full counter payload stored on ``ImportRun.counts_json``."""

        return {
            "summary": asdict(self.summary),
            "chirotouch_data": {
                **self.entity_counts,
                "folders_processed": [asdict(progress) for progress in self.folders.values()],
            },
            "historical_notes_created": self.historical_notes_created,
            "is_chirotouch": self.is_chirotouch,
            "issue_totals": {
                "errors": len(self.errors),
                "duplicates": len(self.duplicates),
                "warnings": len(self.warnings),
            },
        }

    def summary_payload(self) -> dict[str, Any]:
        """Caller-facing summary with issue lists capped at ``report_cap``."""

        cap = self.report_cap
        duration_ms = self.duration_ms
        processed = self.summary.total_processed
        return {
            "run_id": self.run_id,
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": duration_ms,
            "processing_time": format_duration(duration_ms) if duration_ms is not None else None,
            "success_rate": round(self.summary.success_count / processed * 100) if processed else 0,
            **self.counts_payload(),
            "errors": [issue.as_dict() for issue in self.errors[:cap]],
            "duplicates": [issue.as_dict() for issue in self.duplicates[:cap]],
            "warnings": [issue.as_dict() for issue in self.warnings[:cap]],
            "error_summary": self.error_summary,
        }

    def persist(self, run: ImportRun, session: Session) -> ImportRun:
        """
        Copy counters, timestamps, and every not-yet-persisted issue onto ``run``.

        The caller owns the commit. A run that is already terminal in the
        database is never rewritten.
        """

        if run.is_terminal:
            raise RunLedgerFrozenError(f"Import run {run.id} is already {run.status.value}.")

        run.status = self.status
        run.started_at = self.started_at
        run.finished_at = self.finished_at
        run.duration_ms = self.duration_ms if self.finished_at else None
        run.counts_json = self.counts_payload()
        run.error_summary = self.error_summary

        issues = self._issue_log
        pending = issues[self._persisted_issues :]
        for sequence, issue in enumerate(pending, start=self._persisted_issues + 1):
            session.add(
                ImportIssue(
                    run_id=run.id,
                    sequence=sequence,
                    kind=issue.kind,
                    issue_type=issue.issue_type,
                    message=issue.message,
                    file_name=issue.file_name,
                    folder_path=issue.folder_path,
                    record_key=issue.record_key,
                    row_number=issue.row_number,
                    details_json=dict(issue.details) if issue.details else None,
                    recorded_at=issue.recorded_at,
                )
            )
        self._persisted_issues = len(issues)
        session.flush()
        return run
