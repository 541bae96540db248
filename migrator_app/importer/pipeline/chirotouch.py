"""
Preview and commit orchestration for legacy practice-management exports.

Datasets are processed sequentially in dependency order: reference data
first, then patients, then everything that resolves a patient by key.
Only an unreadable archive fails a run; every other problem is recorded on
the run ledger and the pipeline moves on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence, Tuple, Type

from flask import current_app
from sqlalchemy.orm import Session

from migrator_app.importer.adapters.archive import ExtractedFile, ExtractionError, ensure_extracted
from migrator_app.importer.adapters.tabular import (
    TabularParseError,
    TabularRow,
    count_table_rows,
    iter_table_rows,
    read_headers,
)
from migrator_app.importer.contracts.legacy import EntityType, FieldMapper
from migrator_app.importer.mapping import get_active_mapping
from migrator_app.importer.metrics import record_run_completion
from migrator_app.importer.utils import remove_work_dir, resolve_document_directory
from migrator_app.models import ImportRun, ImportRunStatus, ImportType, db

from .attachments import AttachmentLinker
from .classify import CHART_NOTES, SCANNED_DOCS, DatasetClassification, classify_files, folder_name
from .loaders import importer_for
from .patient_lookup import PatientResolver
from .run_ledger import FORMAT_ISSUE, MISSING_FILE, UNRECOGNIZED_ARCHIVE, ImportRunLedger
from .scheduler import BatchPolicy, BatchScheduler, MemorySampler
from .store import RecordStore

# Processing order. Patients precede every dataset that resolves a patient.
DATASET_ORDER: Tuple[str, ...] = (
    EntityType.PROVIDERS.value,
    EntityType.DIAGNOSIS_CODES.value,
    EntityType.SERVICE_CODES.value,
    EntityType.PATIENTS.value,
    EntityType.INSURANCE.value,
    EntityType.APPOINTMENTS.value,
    EntityType.SOAP_NOTES.value,
    EntityType.LEDGER.value,
    CHART_NOTES,
    SCANNED_DOCS,
)

IMPORT_TYPE_BY_ENTITY: dict[EntityType, ImportType] = {
    EntityType.PATIENTS: ImportType.PATIENTS,
    EntityType.PROVIDERS: ImportType.PROVIDERS,
    EntityType.INSURANCE: ImportType.INSURANCE,
    EntityType.APPOINTMENTS: ImportType.APPOINTMENTS,
    EntityType.LEDGER: ImportType.LEDGER,
    EntityType.SERVICE_CODES: ImportType.SERVICE_CODES,
    EntityType.DIAGNOSIS_CODES: ImportType.DIAGNOSIS_CODES,
    EntityType.SOAP_NOTES: ImportType.SOAP_NOTES,
}

UNRECOGNIZED_MESSAGE = (
    "No recognizable export folders were found. Expected folders such as 00_Tables, "
    "01_Ledger History, 02_Scanned Docs or 03_Chart Notes."
)


@dataclass(frozen=True)
class PipelineSettings:
    batch_policy: BatchPolicy = field(default_factory=BatchPolicy)
    report_cap: int = 10
    preview_rows: int = 5
    preview_files: int = 10
    document_dir: Path = Path("documents")
    max_extracted_bytes: int | None = None

    @classmethod
    def from_app(cls, app) -> "PipelineSettings":
        config = app.config
        return cls(
            batch_policy=BatchPolicy.from_config(config),
            report_cap=int(config.get("IMPORTER_REPORT_CAP", 10)),
            preview_rows=int(config.get("IMPORTER_PREVIEW_ROWS", 5)),
            preview_files=int(config.get("IMPORTER_PREVIEW_FILES", 10)),
            document_dir=resolve_document_directory(app),
            max_extracted_bytes=int(config.get("IMPORTER_MAX_EXTRACTED_MB", 4096)) * 1024 * 1024,
        )


def normalize_selection(selection: Iterable[str] | Mapping[str, bool] | None) -> Tuple[str, ...]:
    """
    Return the selected dataset keys in processing order.

    ``None`` selects everything. A mapping selects the keys whose value is
    truthy. Unknown keys raise ``ValueError``.
    """

    if selection is None:
        return DATASET_ORDER
    if isinstance(selection, Mapping):
        named = {str(key) for key in selection}
        chosen = {str(key) for key, enabled in selection.items() if enabled}
    else:
        chosen = named = {str(key) for key in selection}
    unknown = sorted(named - set(DATASET_ORDER))
    if unknown:
        raise ValueError(f"Unknown dataset(s): {', '.join(unknown)}. Choose from {', '.join(DATASET_ORDER)}.")
    return tuple(key for key in DATASET_ORDER if key in chosen)


def validate_column_mapping(mapper: FieldMapper, entity: EntityType | str, column_mapping: Mapping[str, str]) -> None:
    known = set(mapper.field_names(entity))
    unknown = sorted(set(column_mapping) - known)
    if unknown:
        raise ValueError(
            f"Unknown field(s) for {EntityType(entity).value}: {', '.join(unknown)}. "
            f"Valid fields: {', '.join(sorted(known))}."
        )
    invalid = sorted(name for name, column in column_mapping.items() if not isinstance(column, str))
    if invalid:
        raise ValueError(f"Column names must be strings; check field(s): {', '.join(invalid)}.")


def _active_mapper() -> FieldMapper:
    return get_active_mapping().build_mapper()


def _suggest_columns(mapper: FieldMapper, entity: EntityType, headers: Sequence[str]) -> dict[str, str]:
    present = set(headers)
    suggestion: dict[str, str] = {}
    for spec in mapper.fields_for(entity):
        for candidate in spec.candidates:
            if candidate in present:
                suggestion[spec.name] = candidate
                break
    return suggestion


# ----------------------------------------------------------------------
# Preview
# ----------------------------------------------------------------------


def _preview_file(path: Path, preview_rows: int) -> dict[str, Any]:
    headers = read_headers(path)
    sample = [row.values for row in islice(iter_table_rows(path), preview_rows)]
    return {"headers": list(headers), "sample_rows": sample, "row_count": count_table_rows(path)}


def preview_table(
    path: Path | str,
    *,
    entity: EntityType | str | None = None,
    settings: PipelineSettings | None = None,
    mapper: FieldMapper | None = None,
) -> dict[str, Any]:
    """Headers, the first rows, and the row count of a single CSV/XLSX file."""

    settings = settings or PipelineSettings()
    path = Path(path)
    payload: dict[str, Any] = {"file_name": path.name, "file_type": path.suffix.lstrip(".").lower()}
    payload.update(_preview_file(path, settings.preview_rows))
    if entity is not None:
        entity = EntityType(entity)
        mapper = mapper or _active_mapper()
        payload["entity"] = entity.value
        payload["fields"] = list(mapper.field_names(entity))
        payload["suggested_mapping"] = _suggest_columns(mapper, entity, payload["headers"])
    return payload


def preview_archive(
    archive_path: Path | str,
    work_dir: Path | str,
    *,
    settings: PipelineSettings | None = None,
) -> dict[str, Any]:
    """
    Extract and classify an export without committing anything.

    Raises:
        ExtractionError: The archive cannot be read.
    """

    settings = settings or PipelineSettings()
    files = ensure_extracted(archive_path, work_dir, max_total_bytes=settings.max_extracted_bytes)
    classification = classify_files(files)
    root = classification.root_prefix

    datasets: dict[str, Any] = {}
    for entity, entity_files in classification.table_datasets().items():
        if not entity_files:
            continue
        entries = []
        for extracted in entity_files:
            entry: dict[str, Any] = {"file_name": extracted.name, "folder": folder_name(extracted, root)}
            try:
                entry.update(_preview_file(extracted.absolute_path, settings.preview_rows))
            except TabularParseError as exc:
                entry["error"] = str(exc)
            entries.append(entry)
        datasets[entity.value] = {
            "files": entries,
            "row_count": sum(entry.get("row_count", 0) for entry in entries),
        }

    for category in (CHART_NOTES, SCANNED_DOCS):
        category_files = classification.files(category)
        datasets[category] = {
            "file_count": len(category_files),
            "total_size": sum(extracted.size for extracted in category_files),
            "files": [
                {"file_name": extracted.name, "size": extracted.size}
                for extracted in category_files[: settings.preview_files]
            ],
        }

    warnings = []
    if classification.is_empty:
        warnings.append({"type": UNRECOGNIZED_ARCHIVE, "message": UNRECOGNIZED_MESSAGE})
    warnings.extend(
        {"type": FORMAT_ISSUE, "message": f"{extracted.name} does not match a known table."}
        for extracted in classification.unrouted_tables()
    )

    return {
        "is_chirotouch": classification.is_chirotouch,
        "categories": classification.counts(),
        "used_chart_note_fallback": classification.used_chart_note_fallback,
        "unclassified_count": len(classification.unclassified),
        "datasets": datasets,
        "warnings": warnings,
        "available_datasets": list(DATASET_ORDER),
    }


# ----------------------------------------------------------------------
# Commit
# ----------------------------------------------------------------------


class _RunContext:
    """Collaborators shared by every dataset of one run."""

    def __init__(
        self,
        run: ImportRun,
        *,
        settings: PipelineSettings,
        mapper: FieldMapper,
        sampler: MemorySampler | None,
        session: Session,
    ) -> None:
        self.run = run
        self.settings = settings
        self.mapper = mapper
        self.session = session
        self.ledger = ImportRunLedger(tenant_id=run.tenant_id, run_id=run.id, report_cap=settings.report_cap)
        self.store = RecordStore(session)
        self.resolver = PatientResolver(self.store, run.tenant_id, ledger=self.ledger)
        self.scheduler = BatchScheduler(self.ledger, policy=settings.batch_policy, sampler=sampler)

    def start(self, params: Mapping[str, Any]) -> None:
        self.ledger.start()
        self.run.status = ImportRunStatus.PROCESSING
        self.run.started_at = self.ledger.started_at
        self.run.ingest_params_json = {**(self.run.ingest_params_json or {}), **params}
        self.session.commit()
        current_app.logger.info(
            "Importer run started",
            extra={
                "importer_run_id": self.run.id,
                "importer_tenant_id": self.run.tenant_id,
                **{f"importer_{key}": value for key, value in params.items()},
            },
        )

    def finish(self, status: ImportRunStatus, *, error_summary: str | None = None) -> ImportRunLedger:
        ledger = self.ledger
        ledger.finish(status, error_summary=error_summary)
        run = self.session.get(ImportRun, self.run.id) or self.run
        ledger.persist(run, self.session)
        self.session.commit()
        duration_ms = ledger.duration_ms
        record_run_completion(status=status.value, duration_seconds=duration_ms / 1000 if duration_ms else None)
        summary = ledger.summary
        current_app.logger.info(
            "Importer run finished",
            extra={
                "importer_run_id": run.id,
                "importer_status": status.value,
                "importer_rows_processed": summary.total_processed,
                "importer_rows_succeeded": summary.success_count,
                "importer_rows_errored": summary.error_count,
                "importer_rows_duplicates": summary.duplicate_count,
                "importer_rows_skipped": summary.skipped_count,
                "importer_warnings": len(ledger.warnings),
            },
        )
        return ledger

    def fail(self, exc: BaseException, cancel_exceptions: Tuple[Type[BaseException], ...]) -> ImportRunLedger:
        self.session.rollback()
        status = ImportRunStatus.CANCELLED if isinstance(exc, cancel_exceptions) else ImportRunStatus.FAILED
        current_app.logger.exception(
            "Importer run aborted",
            extra={"importer_run_id": self.run.id, "importer_status": status.value, "importer_error": str(exc)},
        )
        return self.finish(status, error_summary=str(exc) or exc.__class__.__name__)

    def import_table(
        self,
        extracted_path: Path,
        file_name: str,
        entity: EntityType,
        *,
        folder: str | None,
        column_mapping: Mapping[str, str] | None = None,
    ) -> None:
        importer = importer_for(entity, self.store, self.run.tenant_id, self.ledger, resolver=self.resolver)
        mapper = self.mapper

        def handle(row: TabularRow):
            if column_mapping:
                canonical = mapper.map_with_columns(
                    row.values, entity, column_mapping, sequence_number=row.sequence_number, file_name=file_name
                )
            else:
                canonical = mapper.map_row(row.values, entity, sequence_number=row.sequence_number, file_name=file_name)
            return importer.import_row(canonical, folder=folder)

        try:
            total_rows = count_table_rows(extracted_path)
            self.scheduler.run(
                iter_table_rows(extracted_path),
                handle,
                file_name=file_name,
                folder=folder,
                total_rows=total_rows,
            )
        except TabularParseError as exc:
            issue_type = MISSING_FILE if not extracted_path.exists() else FORMAT_ISSUE
            self.ledger.record_warning(
                issue_type,
                f"Skipped {file_name}: {exc}",
                file_name=file_name,
                folder_path=folder,
            )


def _import_classified(ctx: _RunContext, classification: DatasetClassification, selected: Sequence[str]) -> None:
    ledger = ctx.ledger
    root = classification.root_prefix
    tables = classification.table_datasets()
    attachments = {CHART_NOTES: classification.files(CHART_NOTES), SCANNED_DOCS: classification.files(SCANNED_DOCS)}

    work: list[tuple[str, list[ExtractedFile]]] = []
    for key in selected:
        files = attachments[key] if key in attachments else tables[EntityType(key)]
        work.append((key, files))
        for extracted in files:
            ledger.track_folder(folder_name(extracted, root), file_count=1)

    for extracted in classification.unrouted_tables():
        ledger.record_warning(
            FORMAT_ISSUE,
            f"{extracted.name} does not match a known table and was not imported.",
            file_name=extracted.name,
            folder_path=folder_name(extracted, root),
        )

    linker: AttachmentLinker | None = None
    for key, files in work:
        if key in attachments:
            linker = linker or AttachmentLinker(
                ctx.store,
                ctx.run.tenant_id,
                ledger,
                document_dir=ctx.settings.document_dir,
                resolver=ctx.resolver,
            )
            for extracted in files:
                linker.link(extracted, key, folder=folder_name(extracted, root))
            continue
        for extracted in files:
            ctx.import_table(
                extracted.absolute_path,
                extracted.name,
                EntityType(key),
                folder=folder_name(extracted, root),
            )


def commit_archive(
    run: ImportRun,
    archive_path: Path | str,
    *,
    work_dir: Path | str,
    selection: Iterable[str] | Mapping[str, bool] | None = None,
    settings: PipelineSettings | None = None,
    mapper: FieldMapper | None = None,
    sampler: MemorySampler | None = None,
    session: Session | None = None,
    cancel_exceptions: Tuple[Type[BaseException], ...] = (),
) -> ImportRunLedger:
    """
    Import a full export archive into the record store for ``run.tenant_id``.

    The run is always finalized: an unreadable archive marks it failed and
    returns; any other unexpected exception marks it failed (or cancelled
    when it is one of ``cancel_exceptions``) and re-raises. The working
    directory is removed only when the run completes.
    """

    selected = normalize_selection(selection)
    ctx = _RunContext(
        run,
        settings=settings or PipelineSettings.from_app(current_app),
        mapper=mapper or _active_mapper(),
        sampler=sampler,
        session=session or db.session,
    )
    work_dir = Path(work_dir)
    ctx.start({"work_dir": str(work_dir), "selected_datasets": list(selected)})

    try:
        try:
            files = ensure_extracted(archive_path, work_dir, max_total_bytes=ctx.settings.max_extracted_bytes)
        except ExtractionError as exc:
            current_app.logger.warning(
                "Importer archive extraction failed",
                extra={"importer_run_id": run.id, "importer_error": str(exc)},
            )
            return ctx.finish(ImportRunStatus.FAILED, error_summary=str(exc))

        classification = classify_files(files)
        ctx.ledger.is_chirotouch = classification.is_chirotouch
        if classification.is_empty:
            ctx.ledger.record_warning(UNRECOGNIZED_ARCHIVE, UNRECOGNIZED_MESSAGE, file_name=Path(archive_path).name)
        _import_classified(ctx, classification, selected)
    except Exception as exc:
        ctx.fail(exc, cancel_exceptions)
        raise

    ledger = ctx.finish(ImportRunStatus.COMPLETED)
    remove_work_dir(work_dir)
    return ledger


def commit_table(
    run: ImportRun,
    file_path: Path | str,
    entity: EntityType | str,
    *,
    column_mapping: Mapping[str, str] | None = None,
    settings: PipelineSettings | None = None,
    mapper: FieldMapper | None = None,
    sampler: MemorySampler | None = None,
    session: Session | None = None,
    cancel_exceptions: Tuple[Type[BaseException], ...] = (),
) -> ImportRunLedger:
    """Import one CSV/XLSX file as ``entity``, optionally with an explicit column mapping."""

    entity = EntityType(entity)
    mapper = mapper or _active_mapper()
    column_mapping = dict(column_mapping or {})
    validate_column_mapping(mapper, entity, column_mapping)
    ctx = _RunContext(
        run,
        settings=settings or PipelineSettings.from_app(current_app),
        mapper=mapper,
        sampler=sampler,
        session=session or db.session,
    )
    path = Path(file_path)
    ctx.start({"entity": entity.value, "file_path": str(path), "column_mapping": column_mapping})
    ctx.ledger.is_chirotouch = False

    try:
        ctx.import_table(path, run.original_file_name or path.name, entity, folder=None, column_mapping=column_mapping)
    except Exception as exc:
        ctx.fail(exc, cancel_exceptions)
        raise

    return ctx.finish(ImportRunStatus.COMPLETED)
