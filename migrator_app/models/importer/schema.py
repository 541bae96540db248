"""
SQLAlchemy models for the migration importer ledger.

An ``ImportRun`` is the durable audit record for one migration attempt. The
complete list of errors, duplicates, and warnings is persisted as
``ImportIssue`` rows; callers only ever see a capped sample.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ImportRunStatus(str, enum.Enum):
    """Lifecycle states for an import run."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ImportRunStatus.COMPLETED, ImportRunStatus.FAILED, ImportRunStatus.CANCELLED})


class ImportType(str, enum.Enum):
    """What the operator asked to import."""

    CHIROTOUCH_FULL = "chirotouch-full"
    PATIENTS = "patients"
    PROVIDERS = "providers"
    INSURANCE = "insurance"
    APPOINTMENTS = "appointments"
    LEDGER = "ledger"
    SERVICE_CODES = "service-codes"
    DIAGNOSIS_CODES = "icd-codes"
    SOAP_NOTES = "soap-notes"


class ImportIssueKind(str, enum.Enum):
    ERROR = "error"
    DUPLICATE = "duplicate"
    WARNING = "warning"


class ImportRun(BaseModel):
    """Metadata describing a single migration attempt."""

    __tablename__ = "import_runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(db.String(50), nullable=False, index=True)
    import_type: Mapped[ImportType] = mapped_column(
        Enum(ImportType, name="import_type_enum"),
        nullable=False,
        default=ImportType.CHIROTOUCH_FULL,
        index=True,
    )
    source: Mapped[str] = mapped_column(db.String(100), nullable=False, default="ChiroTouch")
    original_file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    file_size: Mapped[int | None] = mapped_column(db.BigInteger, nullable=True)
    file_type: Mapped[str | None] = mapped_column(db.String(10), nullable=True)
    status: Mapped[ImportRunStatus] = mapped_column(
        Enum(ImportRunStatus, name="import_run_status_enum"),
        nullable=False,
        default=ImportRunStatus.PENDING,
        index=True,
    )
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    finished_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    duration_ms: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    imported_by: Mapped[str | None] = mapped_column(db.String(100), nullable=True)
    counts_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Summary counters plus per-entity counts and folders processed.",
    )
    error_summary: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    ingest_params_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Stored parameters for the run (file_path, work_dir, selected_datasets, column_mapping).",
    )

    issues = relationship(
        "ImportIssue",
        back_populates="import_run",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="ImportIssue.sequence",
    )

    __table_args__ = (Index("idx_import_runs_tenant_created", "tenant_id", "created_at"),)

    @property
    def is_terminal(self) -> bool:
        return ImportRunStatus(self.status).is_terminal

    @property
    def summary_counts(self) -> dict:
        return dict((self.counts_json or {}).get("summary", {}))

    @property
    def success_rate(self) -> int:
        """Rounded percentage of processed rows that succeeded."""
        summary = self.summary_counts
        processed = int(summary.get("total_processed", 0) or 0)
        if processed == 0:
            return 0
        return round(int(summary.get("success_count", 0) or 0) / processed * 100)

    @property
    def processing_time_formatted(self) -> str | None:
        if self.duration_ms is None:
            return None
        return format_duration(self.duration_ms)


class ImportIssue(BaseModel):
    """One error, duplicate, or warning recorded during an import run."""

    __tablename__ = "import_issues"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(
        ForeignKey("import_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(db.Integer, nullable=False)
    kind: Mapped[ImportIssueKind] = mapped_column(
        Enum(ImportIssueKind, name="import_issue_kind_enum"),
        nullable=False,
        index=True,
    )
    issue_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    message: Mapped[str] = mapped_column(db.Text, nullable=False)
    file_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    folder_path: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    record_key: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    row_number: Mapped[int | None] = mapped_column(db.Integer, nullable=True)
    details_json: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )

    import_run = relationship("ImportRun", back_populates="issues")

    __table_args__ = (Index("idx_import_issues_run_kind", "run_id", "kind"),)


def format_duration(duration_ms: int) -> str:
    """Render a duration as ``1h 2m 3s``, dropping leading zero units."""

    total_seconds = int(duration_ms // 1000)
    hours, remainder = divmod(total_seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
