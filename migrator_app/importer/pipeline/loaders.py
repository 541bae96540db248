"""
Create-only entity importers for canonical legacy rows.

Every importer looks its business key up before creating anything. A row
whose key already exists is recorded as a duplicate and left untouched, so
re-running the same export is always safe. Each created row is committed on
its own; a failure rolls back only that row.
"""

from __future__ import annotations

import enum
import logging
import math
import re
from datetime import date, datetime, timezone
from typing import Any, ClassVar, Type

from sqlalchemy.exc import SQLAlchemyError

from migrator_app.importer.contracts.legacy import CanonicalRow, EntityType
from migrator_app.importer.metrics import record_row_outcome
from migrator_app.models import (
    Appointment,
    BaseModel,
    DiagnosticCode,
    HistoricalNote,
    Insurance,
    LedgerEntry,
    Patient,
    PatientAlias,
    PatientAliasType,
    Provider,
    ServiceCode,
)

from .patient_lookup import PatientResolver
from .run_ledger import (
    DATA_MISMATCH,
    DATABASE_ERROR,
    INVALID_DATE,
    MISSING_FIELD,
    MISSING_PATIENT,
    ImportRunLedger,
)
from .store import RecordStore

logger = logging.getLogger(__name__)

IMPORT_SOURCE = "ChiroTouch"

DATE_FORMATS: tuple[str, ...] = (
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%m/%d/%y",
    "%Y/%m/%d",
    "%Y%m%d",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M %p",
)
TIME_FORMATS: tuple[str, ...] = ("%H:%M", "%H:%M:%S", "%I:%M %p", "%I:%M%p", "%I %p")
# Largest value a signed 32-bit INTEGER column accepts.
MAX_INTEGER = 2**31 - 1
TRUE_VALUES = frozenset({"1", "true", "yes", "y", "t", "x", "primary"})
_AMOUNT_STRIP = re.compile(r"[$,\s]")
_PROVIDER_TITLE = re.compile(r"^(?:dr\.?|doctor)\s+", re.IGNORECASE)

# Legacy alias columns in the order they back-fill a blank record number.
ALIAS_FIELDS: tuple[tuple[str, PatientAliasType], ...] = (
    ("legacy_patient_id", PatientAliasType.LEGACY_PATIENT_ID),
    ("legacy_account_number", PatientAliasType.LEGACY_ACCOUNT_NUMBER),
    ("legacy_client_id", PatientAliasType.LEGACY_CLIENT_ID),
)


class RowOutcome(str, enum.Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    FAILED = "failed"


class RowError(Exception):
    """A row failed validation or foreign-key resolution."""

    def __init__(self, message: str, *, issue_type: str = MISSING_FIELD, record_key: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.issue_type = issue_type
        self.record_key = record_key


class DuplicateRecord(Exception):
    """The row's business key already exists in the record store."""

    def __init__(self, message: str, *, record_key: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.record_key = record_key


# ----------------------------------------------------------------------
# Value coercion
# ----------------------------------------------------------------------


def parse_date(value: str) -> date | None:
    """Parse a legacy date string; blank returns ``None``, garbage raises ``ValueError``."""

    value = (value or "").strip()
    if not value:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"Unrecognized date '{value}'")


def parse_time(value: str, default: str = "09:00") -> str:
    value = (value or "").strip()
    if not value:
        return default
    for fmt in TIME_FORMATS:
        try:
            return datetime.strptime(value.upper(), fmt).strftime("%H:%M")
        except ValueError:
            continue
    raise ValueError(f"Unrecognized time '{value}'")


def parse_amount(value: str, default: float = 0.0) -> float:
    """Parse currency text such as ``$1,200.50`` or ``(25.00)``; ``inf``/``nan`` raise ``ValueError``."""

    text = _AMOUNT_STRIP.sub("", value or "")
    if not text:
        return default
    negative = text.startswith("(") and text.endswith(")")
    if negative:
        text = text[1:-1]
    amount = float(text)
    if not math.isfinite(amount):
        raise ValueError(f"Non-finite amount '{value}'")
    return -amount if negative else amount


def parse_bool(value: str) -> bool:
    return (value or "").strip().lower() in TRUE_VALUES


def parse_int(
    value: str,
    default: int | None = None,
    *,
    minimum: int = 0,
    maximum: int = MAX_INTEGER,
) -> int | None:
    """Parse a whole number that fits an ``INTEGER`` column; anything else raises ``ValueError``."""

    text = (value or "").strip()
    if not text:
        return default
    number = float(text)
    if not math.isfinite(number):
        raise ValueError(f"Non-finite number '{value}'")
    result = int(number)
    if not minimum <= result <= maximum:
        raise ValueError(f"Number '{value}' is outside {minimum}..{maximum}")
    return result


def split_full_name(full_name: str) -> tuple[str, str]:
    """Split ``Dr. John Smith`` or ``Smith, John`` into ``(first, last)``."""

    name = _PROVIDER_TITLE.sub("", (full_name or "").strip())
    if "," in name:
        last, _, first = name.partition(",")
        return first.strip(), last.strip()
    parts = name.split()
    if not parts:
        return "", ""
    if len(parts) == 1:
        return parts[0], ""
    return " ".join(parts[:-1]), parts[-1]


# ----------------------------------------------------------------------
# Importers
# ----------------------------------------------------------------------


class EntityImporter:
    """
    Base class: lookup-before-create for one entity type.

    Subclasses implement :meth:`build` which either returns the created record
    or raises :class:`RowError` / :class:`DuplicateRecord`.
    """

    entity: ClassVar[EntityType]
    model: ClassVar[Type[BaseModel]]
    counter_key: ClassVar[str]

    def __init__(
        self,
        store: RecordStore,
        tenant_id: str,
        ledger: ImportRunLedger,
        *,
        resolver: PatientResolver | None = None,
    ) -> None:
        self.store = store
        self.tenant_id = tenant_id
        self.ledger = ledger
        self.resolver = resolver or PatientResolver(store, tenant_id, ledger=ledger)

    def import_row(self, row: CanonicalRow, *, folder: str | None = None) -> RowOutcome:
        context: dict[str, Any] = {
            "file_name": row.file_name,
            "folder_path": folder,
            "row_number": row.sequence_number,
        }
        try:
            self.build(row, context)
            self.store.commit()
        except DuplicateRecord as exc:
            self.store.rollback()
            self.ledger.record_duplicate(self.entity.value, exc.message, record_key=exc.record_key, **context)
            record_row_outcome(self.entity.value, "duplicate")
            return RowOutcome.DUPLICATE
        except RowError as exc:
            self.store.rollback()
            self.ledger.record_error(
                exc.issue_type,
                f"Row {row.sequence_number}: {exc.message}",
                record_key=exc.record_key,
                **context,
            )
            record_row_outcome(self.entity.value, "failed")
            return RowOutcome.FAILED
        except (SQLAlchemyError, OverflowError) as exc:
            self.store.rollback()
            logger.warning(
                "Database error importing %s row %s: %s",
                self.entity.value,
                row.sequence_number,
                exc,
                extra={"importer_run_id": self.ledger.run_id, "importer_file": row.file_name},
            )
            self.ledger.record_error(
                DATABASE_ERROR,
                f"Row {row.sequence_number}: database error: {exc.__class__.__name__}",
                **context,
            )
            record_row_outcome(self.entity.value, "failed")
            return RowOutcome.FAILED

        self.ledger.record_success(self.counter_key)
        record_row_outcome(self.entity.value, "created")
        return RowOutcome.CREATED

    def build(self, row: CanonicalRow, context: dict[str, Any]) -> BaseModel:
        raise NotImplementedError

    # helpers ----------------------------------------------------------

    def _require(self, row: CanonicalRow, *fields: str) -> None:
        missing = [name for name in fields if not row.text(name)]
        if missing:
            raise RowError(f"Missing required field(s): {', '.join(missing)}")

    def _required_date(self, row: CanonicalRow, field_name: str) -> date:
        raw = row.text(field_name)
        if not raw:
            raise RowError(f"Missing required field(s): {field_name}")
        try:
            return parse_date(raw)
        except ValueError:
            raise RowError(f"Invalid {field_name.replace('_', ' ')}: '{raw}'", issue_type=INVALID_DATE) from None

    def _number(self, row: CanonicalRow, field_name: str, parser, *args):
        raw = row.text(field_name)
        try:
            return parser(raw, *args)
        except (ValueError, OverflowError):
            raise RowError(f"Invalid {field_name.replace('_', ' ')}: '{raw}'", record_key=raw) from None

    def _resolve_patient(self, row: CanonicalRow, *, allow_name_match: bool = False) -> Patient:
        token = row.text("patient_record_number")
        if not token:
            raise RowError("Missing required field(s): patient_record_number", issue_type=MISSING_PATIENT)
        match = self.resolver.resolve(token, allow_name_match=allow_name_match, file_name=row.file_name)
        if match is None:
            raise RowError(f"Patient not found: {token}", issue_type=MISSING_PATIENT, record_key=token)
        return match.patient


class PatientImporter(EntityImporter):
    entity = EntityType.PATIENTS
    model = Patient
    counter_key = "patients_imported"

    def build(self, row: CanonicalRow, context: dict[str, Any]) -> Patient:
        aliases = [(alias_type, row.text(name)) for name, alias_type in ALIAS_FIELDS if row.text(name)]
        record_number = row.text("record_number") or (aliases[0][1] if aliases else "")
        if not record_number:
            raise RowError("Missing required field(s): record_number")
        self._require(row, "first_name", "last_name")

        for identifier in dict.fromkeys([record_number, *(value for _, value in aliases)]):
            existing = self.resolver.by_key(identifier)
            if existing is not None:
                raise DuplicateRecord(
                    f"Patient {identifier} already exists (patient {existing.patient.id})",
                    record_key=identifier,
                )

        date_of_birth = None
        raw_dob = row.text("date_of_birth")
        try:
            date_of_birth = parse_date(raw_dob)
        except ValueError:
            self.ledger.record_warning(
                INVALID_DATE,
                f"Row {row.sequence_number}: unparseable date of birth '{raw_dob}' ignored",
                record_key=record_number,
                **context,
            )

        patient = self.store.create(
            Patient,
            self.tenant_id,
            record_number=record_number,
            first_name=row.text("first_name"),
            last_name=row.text("last_name"),
            date_of_birth=date_of_birth,
            gender=row.text("gender") or None,
            phone=row.text("phone") or None,
            email=row.text("email") or None,
            street=row.text("street") or None,
            city=row.text("city") or None,
            state=row.text("state") or None,
            zip_code=row.text("zip_code") or None,
            notes=row.text("notes") or None,
            imported=True,
            import_source=IMPORT_SOURCE,
            imported_at=datetime.now(timezone.utc),
        )
        for alias_type, value in aliases:
            self.store.create(PatientAlias, self.tenant_id, patient_id=patient.id, alias_type=alias_type, value=value)
        return patient


class ProviderImporter(EntityImporter):
    entity = EntityType.PROVIDERS
    model = Provider
    counter_key = "providers_imported"

    def build(self, row: CanonicalRow, context: dict[str, Any]) -> Provider:
        first_name, last_name = row.text("first_name"), row.text("last_name")
        if not (first_name and last_name) and row.text("full_name"):
            first_name, last_name = split_full_name(row.text("full_name"))
        if not first_name or not last_name:
            raise RowError("Missing required field(s): provider first and last name")

        npi = row.text("npi")
        key = {"npi": npi} if npi else {"first_name": first_name, "last_name": last_name}
        if self.store.find_one(Provider, self.tenant_id, **key) is not None:
            label = npi or f"{first_name} {last_name}"
            raise DuplicateRecord(f"Provider {label} already exists", record_key=npi or None)

        return self.store.create(
            Provider,
            self.tenant_id,
            first_name=first_name,
            last_name=last_name,
            npi=npi or None,
            credentials=row.text("credentials") or None,
            specialty=row.text("specialty") or None,
        )


class InsuranceImporter(EntityImporter):
    entity = EntityType.INSURANCE
    model = Insurance
    counter_key = "insurance_imported"

    def build(self, row: CanonicalRow, context: dict[str, Any]) -> Insurance:
        self._require(row, "insurance_name")
        patient = self._resolve_patient(row)
        insurance_name, member_id = row.text("insurance_name"), row.text("member_id")
        if self.store.find_one(
            Insurance,
            self.tenant_id,
            patient_id=patient.id,
            insurance_name=insurance_name,
            member_id=member_id,
        ):
            raise DuplicateRecord(
                f"Insurance {insurance_name} ({member_id or 'no member id'}) already exists for patient "
                f"{patient.record_number}",
                record_key=patient.record_number,
            )
        return self.store.create(
            Insurance,
            self.tenant_id,
            patient_id=patient.id,
            insurance_name=insurance_name,
            member_id=member_id,
            group_id=row.text("group_id") or None,
            copay=self._number(row, "copay", parse_amount),
            is_primary=parse_bool(row.text("is_primary")),
        )


class DiagnosisImporter(EntityImporter):
    entity = EntityType.DIAGNOSIS_CODES
    model = DiagnosticCode
    counter_key = "diagnosis_codes_imported"

    def build(self, row: CanonicalRow, context: dict[str, Any]) -> DiagnosticCode:
        code = row.text("code").upper()
        if not code:
            raise RowError("Missing required field(s): code")
        if self.store.find_one(DiagnosticCode, self.tenant_id, code=code) is not None:
            raise DuplicateRecord(f"Diagnosis code {code} already exists", record_key=code)
        return self.store.create(
            DiagnosticCode,
            self.tenant_id,
            code=code,
            description=row.text("description") or code,
            category=row.text("category") or "Other",
            body_system=row.text("body_system") or "Other",
            commonly_used=parse_bool(row.text("commonly_used")),
        )


class ServiceCodeImporter(EntityImporter):
    entity = EntityType.SERVICE_CODES
    model = ServiceCode
    counter_key = "service_codes_imported"

    def build(self, row: CanonicalRow, context: dict[str, Any]) -> ServiceCode:
        code = row.text("code")
        if not code:
            raise RowError("Missing required field(s): code")
        if self.store.find_one(ServiceCode, self.tenant_id, code=code) is not None:
            raise DuplicateRecord(f"Service code {code} already exists", record_key=code)
        is_package = parse_bool(row.text("is_package"))
        return self.store.create(
            ServiceCode,
            self.tenant_id,
            code=code,
            description=row.text("description") or code,
            category=row.text("category") or "Other",
            unit_rate=self._number(row, "unit_rate", parse_amount),
            is_package=is_package,
            total_sessions=self._number(row, "total_sessions", parse_int) if is_package else None,
        )


class AppointmentImporter(EntityImporter):
    entity = EntityType.APPOINTMENTS
    model = Appointment
    counter_key = "appointments_imported"

    def build(self, row: CanonicalRow, context: dict[str, Any]) -> Appointment:
        patient = self._resolve_patient(row)
        appointment_date = self._required_date(row, "appointment_date")
        appointment_time = self._number(row, "appointment_time", parse_time)
        if self.store.find_one(
            Appointment,
            self.tenant_id,
            patient_id=patient.id,
            appointment_date=appointment_date,
            appointment_time=appointment_time,
        ):
            raise DuplicateRecord(
                f"Appointment on {appointment_date.isoformat()} {appointment_time} already exists for patient "
                f"{patient.record_number}",
                record_key=patient.record_number,
            )
        return self.store.create(
            Appointment,
            self.tenant_id,
            patient_id=patient.id,
            appointment_date=appointment_date,
            appointment_time=appointment_time,
            visit_type=row.text("visit_type") or "Regular Visit",
            duration_minutes=self._number(row, "duration", parse_int, 30),
            provider_name=row.text("provider_name") or None,
            notes=row.text("notes") or None,
        )


class LedgerImporter(EntityImporter):
    """Ledger rows are the one table that falls back to patient name matching."""

    entity = EntityType.LEDGER
    model = LedgerEntry
    counter_key = "ledger_records_imported"

    def build(self, row: CanonicalRow, context: dict[str, Any]) -> LedgerEntry:
        patient = self._resolve_patient(row, allow_name_match=True)
        transaction_date = self._required_date(row, "transaction_date")
        transaction_type = row.text("transaction_type") or "Payment"
        amount = self._number(row, "amount", parse_amount)
        description = row.text("description")
        if self.store.find_one(
            LedgerEntry,
            self.tenant_id,
            patient_id=patient.id,
            transaction_date=transaction_date,
            transaction_type=transaction_type,
            amount=amount,
            description=description,
        ):
            raise DuplicateRecord(
                f"Ledger {transaction_type} of {amount:.2f} on {transaction_date.isoformat()} already exists for "
                f"patient {patient.record_number}",
                record_key=patient.record_number,
            )
        return self.store.create(
            LedgerEntry,
            self.tenant_id,
            patient_id=patient.id,
            transaction_date=transaction_date,
            transaction_type=transaction_type,
            description=description,
            amount=amount,
            payment_method=row.text("payment_method") or None,
            notes=row.text("notes") or None,
        )


class SoapNoteImporter(EntityImporter):
    """
    Tabular SOAP notes become non-authoritative historical notes.

    One note per patient and visit date is kept for this source; a second row
    for the same visit is a duplicate, never a merge.
    """

    entity = EntityType.SOAP_NOTES
    model = HistoricalNote
    counter_key = "soap_notes_imported"
    source = "soap_notes_import"

    def build(self, row: CanonicalRow, context: dict[str, Any]) -> HistoricalNote:
        patient = self._resolve_patient(row)
        visit_date = self._required_date(row, "appointment_date")
        sections = {name: row.text(name) for name in ("subjective", "objective", "assessment", "plan")}
        if not any(sections.values()):
            raise RowError("Missing required field(s): at least one of subjective, objective, assessment, plan")
        if self.store.find_one(
            HistoricalNote,
            self.tenant_id,
            patient_id=patient.id,
            visit_date=visit_date,
            source=self.source,
        ):
            raise DuplicateRecord(
                f"SOAP note for {visit_date.isoformat()} already exists for patient {patient.record_number}",
                record_key=patient.record_number,
            )

        pain_scale = None
        raw_pain = row.text("pain_scale")
        try:
            pain_scale = parse_int(raw_pain, maximum=10)
        except ValueError:
            self.ledger.record_warning(
                DATA_MISMATCH,
                f"Row {row.sequence_number}: pain scale '{raw_pain}' is not 0-10 and was ignored",
                record_key=patient.record_number,
                **context,
            )

        return self.store.create(
            HistoricalNote,
            self.tenant_id,
            patient_id=patient.id,
            source_file_name=row.file_name or "",
            visit_date=visit_date,
            provider_name=row.text("provider_name") or None,
            pain_scale=pain_scale,
            is_authoritative=False,
            source=self.source,
            **sections,
        )


IMPORTERS: dict[EntityType, Type[EntityImporter]] = {
    importer.entity: importer
    for importer in (
        PatientImporter,
        ProviderImporter,
        InsuranceImporter,
        DiagnosisImporter,
        ServiceCodeImporter,
        AppointmentImporter,
        LedgerImporter,
        SoapNoteImporter,
    )
}


def importer_for(
    entity: EntityType | str,
    store: RecordStore,
    tenant_id: str,
    ledger: ImportRunLedger,
    *,
    resolver: PatientResolver | None = None,
) -> EntityImporter:
    return IMPORTERS[EntityType(entity)](store, tenant_id, ledger, resolver=resolver)
