"""
Service helpers for importer run querying, filtering, and serialization.

The runs API consumes these helpers to provide paginated listings, detail
payloads with the full issue list, and per-clinic statistics while keeping
SQLAlchemy logic centralized and easily testable.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, Iterable, Mapping

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import NoResultFound
from sqlalchemy.orm import Session

from migrator_app.models import db
from migrator_app.models.importer.schema import (
    ImportIssue,
    ImportIssueKind,
    ImportRun,
    ImportRunStatus,
    ImportType,
    format_duration,
)

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-started_at"
DEFAULT_STATS_DAYS = 30

VALID_SORT_FIELDS = {
    "id": ImportRun.id,
    "run_id": ImportRun.id,
    "import_type": ImportRun.import_type,
    "status": ImportRun.status,
    "started_at": ImportRun.started_at,
    "finished_at": ImportRun.finished_at,
    "created_at": ImportRun.created_at,
}


@dataclass(frozen=True)
class RunFilters:
    """Canonical set of filter options applied to importer runs queries."""

    tenant_id: str
    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[ImportRunStatus, ...] = field(default_factory=tuple)
    import_types: tuple[ImportType, ...] = field(default_factory=tuple)
    search: str | None = None
    started_from: datetime | None = None
    started_to: datetime | None = None

    @classmethod
    def coerce(
        cls,
        *,
        tenant_id: str,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
        import_types: Iterable[str] | None = None,
        search: str | None = None,
        started_from: str | datetime | None = None,
        started_to: str | datetime | None = None,
    ) -> "RunFilters":
        """
        Coerce mixed user input into a validated ``RunFilters`` instance.
        """

        if not tenant_id:
            raise ValueError("A tenant id is required.")

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        sort_key = resolved_sort.lstrip("-")
        if sort_key not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{sort_key}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value)
        resolved_types = tuple(_coerce_import_type(value) for value in (import_types or ()) if value)

        resolved_search = search.strip() if isinstance(search, str) and search.strip() else None

        resolved_started_from = _coerce_datetime(started_from)
        resolved_started_to = _coerce_datetime(started_to, end_of_day=True)

        if resolved_started_from and resolved_started_to and resolved_started_from > resolved_started_to:
            raise ValueError("started_from must be before started_to.")

        return cls(
            tenant_id=tenant_id,
            page=resolved_page,
            page_size=resolved_size,
            sort=resolved_sort,
            statuses=resolved_statuses,
            import_types=resolved_types,
            search=resolved_search,
            started_from=resolved_started_from,
            started_to=resolved_started_to,
        )


@dataclass(slots=True)
class RunSummary:
    """Summarized representation of an importer run."""

    id: int
    tenant_id: str
    import_type: str
    status: str
    original_file_name: str | None
    started_at: datetime | None
    finished_at: datetime | None
    duration_ms: int | None
    processing_time: str | None
    total_processed: int
    success_count: int
    error_count: int
    duplicate_count: int
    skipped_count: int
    success_rate: int
    is_chirotouch: bool | None
    imported_by: str | None
    error_summary: str | None
    counts_digest: Mapping[str, Any]


@dataclass(slots=True)
class RunListResult:
    """Paginated result set for importer runs."""

    items: list[RunSummary]
    total: int
    page: int
    page_size: int
    total_pages: int


@dataclass(slots=True)
class ImportTypeStats:
    import_type: str
    runs: int
    records_processed: int
    records_succeeded: int
    errors: int
    average_duration_ms: int | None


@dataclass(slots=True)
class ClinicStats:
    """Per-tenant import statistics over a trailing window."""

    tenant_id: str
    days: int
    total_runs: int
    statuses: Mapping[str, int]
    by_import_type: list[ImportTypeStats]


class ImportRunService:
    """Facade for querying importer runs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    # ---------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------

    def list_runs(self, filters: RunFilters) -> RunListResult:
        query = self._apply_filters(self._base_query(filters.tenant_id), filters)

        total = query.count()
        if total == 0:
            return RunListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        paginated = (
            query.order_by(_resolve_sort_expression(filters.sort))
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
            .all()
        )

        total_pages = (total + filters.page_size - 1) // filters.page_size
        return RunListResult(
            items=[self.summarize(run) for run in paginated],
            total=total,
            page=filters.page,
            page_size=filters.page_size,
            total_pages=total_pages,
        )

    def get_run(self, run_id: int, tenant_id: str) -> ImportRun:
        """Fetch a run scoped to ``tenant_id``; runs of other tenants are not found."""

        run = self._base_query(tenant_id).filter(ImportRun.id == run_id).one_or_none()
        if run is None:
            raise NoResultFound(f"Import run {run_id} not found.")
        return run

    def get_issues(self, run: ImportRun, *, kind: ImportIssueKind | str | None = None) -> list[ImportIssue]:
        query = self.session.query(ImportIssue).filter(ImportIssue.run_id == run.id)
        if kind is not None:
            query = query.filter(ImportIssue.kind == ImportIssueKind(kind))
        return query.order_by(ImportIssue.sequence.asc()).all()

    def summarize(self, run: ImportRun) -> RunSummary:
        counts_json = run.counts_json or {}
        summary = run.summary_counts
        status = run.status.value if isinstance(run.status, ImportRunStatus) else str(run.status)
        import_type = run.import_type.value if isinstance(run.import_type, ImportType) else str(run.import_type)
        return RunSummary(
            id=run.id,
            tenant_id=run.tenant_id,
            import_type=import_type,
            status=status,
            original_file_name=run.original_file_name,
            started_at=run.started_at,
            finished_at=run.finished_at,
            duration_ms=run.duration_ms,
            processing_time=run.processing_time_formatted,
            total_processed=_int(summary.get("total_processed")),
            success_count=_int(summary.get("success_count")),
            error_count=_int(summary.get("error_count")),
            duplicate_count=_int(summary.get("duplicate_count")),
            skipped_count=_int(summary.get("skipped_count")),
            success_rate=run.success_rate,
            is_chirotouch=counts_json.get("is_chirotouch"),
            imported_by=run.imported_by,
            error_summary=run.error_summary,
            counts_digest={
                "chirotouch_data": dict(counts_json.get("chirotouch_data", {})),
                "historical_notes_created": _int(counts_json.get("historical_notes_created")),
                "issue_totals": dict(counts_json.get("issue_totals", {})),
            },
        )

    def get_clinic_stats(
        self,
        tenant_id: str,
        *,
        days: int = DEFAULT_STATS_DAYS,
        now: datetime | None = None,
    ) -> ClinicStats:
        """Aggregate runs created for ``tenant_id`` within the trailing ``days`` window."""

        if days < 1:
            raise ValueError("days must be a positive integer.")
        since = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        runs = self._base_query(tenant_id).filter(ImportRun.created_at >= since).all()

        statuses: dict[str, int] = {}
        buckets: dict[str, dict[str, Any]] = {}
        for run in runs:
            status = run.status.value if isinstance(run.status, ImportRunStatus) else str(run.status)
            statuses[status] = statuses.get(status, 0) + 1

            import_type = run.import_type.value if isinstance(run.import_type, ImportType) else str(run.import_type)
            bucket = buckets.setdefault(
                import_type, {"runs": 0, "processed": 0, "succeeded": 0, "errors": 0, "durations": []}
            )
            summary = run.summary_counts
            bucket["runs"] += 1
            bucket["processed"] += _int(summary.get("total_processed"))
            bucket["succeeded"] += _int(summary.get("success_count"))
            bucket["errors"] += _int(summary.get("error_count"))
            if run.duration_ms is not None:
                bucket["durations"].append(run.duration_ms)

        by_type = [
            ImportTypeStats(
                import_type=import_type,
                runs=bucket["runs"],
                records_processed=bucket["processed"],
                records_succeeded=bucket["succeeded"],
                errors=bucket["errors"],
                average_duration_ms=(
                    round(sum(bucket["durations"]) / len(bucket["durations"])) if bucket["durations"] else None
                ),
            )
            for import_type, bucket in sorted(buckets.items())
        ]
        return ClinicStats(
            tenant_id=tenant_id,
            days=days,
            total_runs=len(runs),
            statuses=statuses,
            by_import_type=by_type,
        )

    # ---------------------------------------------------------------------
    # Internal helpers
    # ---------------------------------------------------------------------

    def _base_query(self, tenant_id: str):
        return self.session.query(ImportRun).filter(ImportRun.tenant_id == tenant_id)

    def _apply_filters(self, query, filters: RunFilters):
        predicates = []

        if filters.statuses:
            predicates.append(ImportRun.status.in_(filters.statuses))

        if filters.import_types:
            predicates.append(ImportRun.import_type.in_(filters.import_types))

        if filters.started_from:
            predicates.append(ImportRun.started_at >= filters.started_from)

        if filters.started_to:
            predicates.append(ImportRun.started_at <= filters.started_to)

        if filters.search:
            predicates.append(_build_search_predicate(filters.search))

        if predicates:
            query = query.filter(and_(*predicates))
        return query


# -------------------------------------------------------------------------
# Serialization
# -------------------------------------------------------------------------


def serialize_summary(summary: RunSummary) -> dict[str, Any]:
    return {
        "id": summary.id,
        "run_id": summary.id,
        "tenant_id": summary.tenant_id,
        "import_type": summary.import_type,
        "status": summary.status,
        "original_file_name": summary.original_file_name,
        "started_at": _isoformat(summary.started_at),
        "finished_at": _isoformat(summary.finished_at),
        "duration_ms": summary.duration_ms,
        "processing_time": summary.processing_time,
        "total_processed": summary.total_processed,
        "success_count": summary.success_count,
        "error_count": summary.error_count,
        "duplicate_count": summary.duplicate_count,
        "skipped_count": summary.skipped_count,
        "success_rate": summary.success_rate,
        "is_chirotouch": summary.is_chirotouch,
        "imported_by": summary.imported_by,
        "error_summary": summary.error_summary,
        "counts": dict(summary.counts_digest),
    }


def serialize_issue(issue: ImportIssue) -> dict[str, Any]:
    return {
        "sequence": issue.sequence,
        "kind": issue.kind.value if isinstance(issue.kind, ImportIssueKind) else str(issue.kind),
        "type": issue.issue_type,
        "message": issue.message,
        "file_name": issue.file_name,
        "folder_path": issue.folder_path,
        "record_key": issue.record_key,
        "row_number": issue.row_number,
        "details": issue.details_json,
        "recorded_at": _isoformat(issue.recorded_at),
    }


def serialize_clinic_stats(stats: ClinicStats) -> dict[str, Any]:
    return {
        "tenant_id": stats.tenant_id,
        "days": stats.days,
        "total_runs": stats.total_runs,
        "statuses": dict(stats.statuses),
        "by_import_type": [
            {
                "import_type": entry.import_type,
                "runs": entry.runs,
                "records_processed": entry.records_processed,
                "records_succeeded": entry.records_succeeded,
                "errors": entry.errors,
                "average_duration_ms": entry.average_duration_ms,
                "average_duration": (
                    format_duration(entry.average_duration_ms) if entry.average_duration_ms is not None else None
                ),
            }
            for entry in stats.by_import_type
        ],
    }


# -------------------------------------------------------------------------
# Helper functions
# -------------------------------------------------------------------------


def _int(value: Any) -> int:
    return int(value or 0)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | ImportRunStatus) -> ImportRunStatus:
    if isinstance(value, ImportRunStatus):
        return value
    normalized = str(value).strip().lower()
    try:
        return ImportRunStatus(normalized)
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _coerce_import_type(value: str | ImportType) -> ImportType:
    if isinstance(value, ImportType):
        return value
    normalized = str(value).strip().lower()
    try:
        return ImportType(normalized)
    except ValueError:
        raise ValueError(f"Unsupported import type filter '{value}'.") from None


def _coerce_datetime(candidate: str | datetime | None, *, end_of_day: bool = False) -> datetime | None:
    if candidate in (None, ""):
        return None
    if isinstance(candidate, datetime):
        return candidate if candidate.tzinfo else candidate.replace(tzinfo=timezone.utc)
    text = str(candidate).strip()
    for fmt in ("%Y-%m-%d", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S"):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y-%m-%d":
            parsed = datetime.combine(parsed.date(), time.max if end_of_day else time.min)
        return parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"Unable to parse datetime value '{candidate}'. Expected ISO-like formats.")


def _resolve_sort_expression(sort: str):
    descending = sort.startswith("-")
    expression = VALID_SORT_FIELDS.get(sort.lstrip("-"))
    if expression is None:
        raise ValueError(f"Unsupported sort field '{sort}'.")
    return expression.desc() if descending else expression.asc()


def _build_search_predicate(term: str):
    """Search by run id exact match or original file name partial match."""
    predicates = [func.lower(ImportRun.original_file_name).like(f"%{term.lower()}%")]
    if term.isdigit():
        predicates.append(ImportRun.id == int(term))
    return or_(*predicates)
