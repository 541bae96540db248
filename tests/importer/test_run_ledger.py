from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from migrator_app.importer.pipeline.run_ledger import (
    MISSING_FIELD,
    MISSING_PATIENT,
    ImportRunLedger,
    RunLedgerFrozenError,
)
from migrator_app.models import ImportIssue, ImportIssueKind, ImportRunStatus, db


def _clock(*offsets_seconds: int):
    base = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
    moments = iter(base + timedelta(seconds=offset) for offset in offsets_seconds)
    last = [base]

    def _now():
        last[0] = next(moments, last[0])
        return last[0]

    return _now


def test_finish_freezes_ledger(tenant_id):
    ledger = ImportRunLedger(tenant_id=tenant_id, run_id=7)
    ledger.start()
    ledger.finish(ImportRunStatus.COMPLETED)

    assert ledger.is_frozen
    with pytest.raises(RunLedgerFrozenError):
        ledger.record_processed()
    with pytest.raises(RunLedgerFrozenError):
        ledger.record_warning(MISSING_PATIENT, "late warning")
    with pytest.raises(RunLedgerFrozenError):
        ledger.finish(ImportRunStatus.FAILED)


def test_finish_requires_terminal_status(tenant_id):
    ledger = ImportRunLedger(tenant_id=tenant_id)

    with pytest.raises(ValueError):
        ledger.finish(ImportRunStatus.PROCESSING)


def test_unknown_entity_counter_is_rejected(tenant_id):
    with pytest.raises(KeyError):
        ImportRunLedger(tenant_id=tenant_id).record_success("invoices_imported")


def test_summary_caps_issue_lists_but_not_totals(tenant_id):
    ledger = ImportRunLedger(tenant_id=tenant_id, run_id=3, report_cap=2, clock=_clock(0, 1, 2, 3, 65))
    ledger.start()
    for row in range(1, 4):
        ledger.record_processed()
        ledger.record_error(MISSING_FIELD, f"Row {row}: Missing required field(s): last_name", row_number=row)
    ledger.record_processed()
    ledger.record_success("patients_imported")
    ledger.finish()

    payload = ledger.summary_payload()

    assert [issue["row_number"] for issue in payload["errors"]] == [1, 2]
    assert payload["summary"]["error_count"] == 3
    assert payload["issue_totals"] == {"errors": 3, "duplicates": 0, "warnings": 0}
    assert payload["chirotouch_data"]["patients_imported"] == 1
    assert payload["success_rate"] == 25
    assert payload["duration_ms"] == 65_000
    assert payload["processing_time"] == "1m 5s"
    assert payload["status"] == "completed"


def test_persist_writes_issues_once_in_order(pending_run, tenant_id):
    run = pending_run()
    ledger = ImportRunLedger(tenant_id=tenant_id, run_id=run.id)
    ledger.start()
    ledger.record_error(MISSING_PATIENT, "Row 1: Patient not found: 9999", record_key="9999", row_number=1)
    ledger.persist(run, db.session)
    db.session.commit()

    ledger.record_duplicate("patients", "Patient 1001 already exists", record_key="1001")
    ledger.record_warning("large_dataset", "too big", details={"total_rows": 10})
    ledger.finish(ImportRunStatus.COMPLETED)
    ledger.persist(run, db.session)
    db.session.commit()

    statement = select(ImportIssue).where(ImportIssue.run_id == run.id).order_by(ImportIssue.sequence)
    issues = list(db.session.scalars(statement))
    assert [(issue.sequence, issue.kind) for issue in issues] == [
        (1, ImportIssueKind.ERROR),
        (2, ImportIssueKind.DUPLICATE),
        (3, ImportIssueKind.WARNING),
    ]
    assert issues[2].details_json == {"total_rows": 10}
    assert run.status == ImportRunStatus.COMPLETED
    assert run.counts_json["summary"]["duplicate_count"] == 1
    assert run.duration_ms is not None


def test_persist_refuses_terminal_run(pending_run, tenant_id):
    run = pending_run()
    run.status = ImportRunStatus.FAILED
    db.session.commit()
    ledger = ImportRunLedger(tenant_id=tenant_id, run_id=run.id)

    with pytest.raises(RunLedgerFrozenError):
        ledger.persist(run, db.session)
